import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from outreach_flow.errors import DispatchRetriesExhaustedError, GraphError, ThrottledError
from outreach_flow.models.execution import (
    ConditionExecutionRecord,
    DispatchRecord,
    Execution,
    JournalEntry,
    StageExecutionRecord,
    utc_now,
)
from outreach_flow.models.flow import ConditionNode, EndNode, FlowNode, StageNode
from outreach_flow.services.conditions import split_by_values
from outreach_flow.services.dispatch_guard import DispatchGuard
from outreach_flow.services.engagement import DispatchEngagementSource, EngagementSource
from outreach_flow.services.flow_graph import FlowGraph, parse_flow_graph
from outreach_flow.services.providers import MessageContent, ProviderRegistry
from outreach_flow.services.queue import TaskQueue

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    run_id: str
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    execution_ids: List[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "processed": self.processed,
            "failed": self.failed,
            "skipped": self.skipped,
            "executions": len(self.execution_ids),
        }


class FlowExecutor:
    """
    Advances executions through their flow graph.

    One sweep loads every in-progress execution whose next node is due and
    runs exactly one node transition for each. Sends go through the dispatch
    guard; throttled sends are re-queued, never slept on. Condition checks
    are handed to the queue and re-enter the walk through `verify_condition`.
    """

    def __init__(
        self,
        repository,
        guard: DispatchGuard,
        providers: ProviderRegistry,
        queue: TaskQueue,
        engagement: Optional[EngagementSource] = None,
        concurrency: int = 4,
        max_deferrals: int = 20,
        default_evaluation_delay_hours: float = 24,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.repository = repository
        self.guard = guard
        self.providers = providers
        self.queue = queue
        self.engagement = engagement or DispatchEngagementSource(repository)
        self.concurrency = max(1, concurrency)
        self.max_deferrals = max_deferrals
        self.default_evaluation_delay_hours = default_evaluation_delay_hours
        self.clock = clock
        self.run_id = str(uuid.uuid4())[:8]

    def _log_flow(self, execution_id: str, message: str, level: str = "info", **kwargs):
        """Structured logging for flow execution"""
        log_data = {
            "run_id": self.run_id,
            "execution_id": execution_id,
            "message": message,
            **kwargs,
        }
        if level == "info":
            logger.info(f"[FLOW] {log_data}")
        elif level == "warning":
            logger.warning(f"[FLOW] {log_data}")
        elif level == "error":
            logger.error(f"[FLOW] {log_data}")
        elif level == "debug":
            logger.debug(f"[FLOW] {log_data}")

    async def _add_journal_entry(
        self, execution_id: str, message: str, node: Optional[FlowNode] = None, details: Optional[dict] = None
    ):
        try:
            await self.repository.add_journal_entry(
                JournalEntry(
                    execution_id=execution_id,
                    message=message,
                    node_id=node.id if node else None,
                    node_type=node.kind if node else None,
                    details=details,
                )
            )
        except Exception as e:
            logger.error(f"[JOURNAL_ERROR] Failed to add journal entry for execution {execution_id}: {e}", exc_info=True)

    async def load_graph(self, execution: Execution) -> FlowGraph:
        flow = await self.repository.get_flow(execution.flow_id)
        if flow is None:
            raise GraphError(f"Flow {execution.flow_id} not found")
        return parse_flow_graph(flow.graph)

    async def fail_execution(self, execution_id: str, message: str):
        try:
            execution = await self.repository.get_execution(execution_id)
            if execution is None or execution.is_terminal:
                return
            execution.state = "failed"
            execution.error_message = message
            execution.finished_at = self.clock()
            await self.repository.save_execution(execution)
            self._log_flow(execution_id, f"Execution failed: {message}", level="error")
            await self._add_journal_entry(execution_id, f"Execution failed: {message}")
        except Exception as e:
            logger.error(f"[FLOW] Could not mark execution {execution_id} failed: {e}", exc_info=True)

    # ------------------------------------------------------------------ sweep

    async def start_execution(self, execution_id: str) -> Optional[Execution]:
        """
        Put a pending execution on its entry node, due now; the next sweep runs it.
        Executions that already started are returned untouched.
        """
        execution = await self.repository.get_execution(execution_id)
        if execution is None:
            logger.warning(f"[FLOW] Execution {execution_id} not found, nothing to start")
            return None
        if execution.state != "pending":
            logger.info(f"[FLOW] Execution {execution_id} already {execution.state}, not starting")
            return execution
        graph = await self.load_graph(execution)
        now = self.clock()
        execution.state = "in_progress"
        execution.started_at = now
        execution.next_node_id = execution.next_node_id or graph.entry_node_id()
        execution.next_node_scheduled_at = now
        await self.repository.save_execution(execution)
        await self._add_journal_entry(
            execution.execution_id, "Execution started", details={"entry_node": execution.next_node_id}
        )
        return execution

    async def run_sweep(self) -> SweepReport:
        self.run_id = str(uuid.uuid4())[:8]
        report = SweepReport(run_id=self.run_id)
        logger.info(f"=== SWEEP {self.run_id} STARTED ===")

        due = await self.repository.find_due_executions(self.clock())
        logger.info(f"[SWEEP] {len(due)} executions due")
        semaphore = asyncio.Semaphore(self.concurrency)

        async def worker(execution: Execution) -> str:
            async with semaphore:
                return await self.process_execution(execution)

        outcomes = await asyncio.gather(*(worker(execution) for execution in due))
        for execution, outcome in zip(due, outcomes):
            report.execution_ids.append(execution.execution_id)
            if outcome == "failed":
                report.failed += 1
            elif outcome == "skipped":
                report.skipped += 1
            else:
                report.processed += 1

        logger.info(f"=== SWEEP {self.run_id} COMPLETED === {report.as_dict()}")
        return report

    async def process_execution(self, execution: Execution) -> str:
        """One transition for one execution. Never raises: failures stay with this execution."""
        try:
            return await self._advance(execution)
        except GraphError as e:
            await self.fail_execution(execution.execution_id, str(e))
            return "failed"
        except DispatchRetriesExhaustedError as e:
            await self._fail_exhausted(execution.execution_id, e)
            return "failed"
        except Exception as e:
            logger.error(f"[SWEEP] Unexpected error on execution {execution.execution_id}: {e}", exc_info=True)
            await self.fail_execution(execution.execution_id, f"Unexpected error: {e}")
            return "failed"

    async def _advance(self, execution: Execution) -> str:
        graph = await self.load_graph(execution)
        node = graph.resolve_node(execution.next_node_id)
        self._log_flow(execution.execution_id, "Advancing", node_id=node.id, node_type=node.kind)

        if isinstance(node, EndNode):
            await self._complete_at_end(execution, node)
            return "processed"

        record = await self._load_or_create_record(execution, node)
        if record.state == "executing":
            self._log_flow(execution.execution_id, "Node already executing, skipping", node_id=node.id)
            return "skipped"
        if record.is_terminal:
            # finished earlier but the execution was never moved on
            self._log_flow(execution.execution_id, f"Node already {record.state}, re-resolving", node_id=node.id)
            await self._resolve_from_record(execution, graph, node, record)
            return "skipped"

        if isinstance(node, StageNode):
            await self._execute_stage(execution, graph, node, record)
        else:
            await self._execute_condition(execution, graph, node, record)
        return "processed"

    async def _load_or_create_record(self, execution: Execution, node: FlowNode) -> StageExecutionRecord:
        record = await self.repository.get_node_record(execution.execution_id, node.id)
        if record is None:
            record = await self.repository.create_node_record(
                StageExecutionRecord(
                    execution_id=execution.execution_id,
                    node_id=node.id,
                    node_type=node.kind,
                    scheduled_at=execution.next_node_scheduled_at,
                )
            )
        return record

    async def _complete_at_end(self, execution: Execution, node: EndNode):
        record = await self._load_or_create_record(execution, node)
        if record.state != "completed":
            record.state = "completed"
            record.executed = True
            record.executed_at = self.clock()
            await self.repository.save_node_record(record)
        await self._complete_execution(execution, node)

    async def _complete_execution(self, execution: Execution, node: FlowNode, next_node_id: Optional[str] = None):
        execution.state = "completed"
        execution.current_node_id = node.id
        execution.next_node_id = next_node_id
        execution.next_node_scheduled_at = None
        execution.finished_at = self.clock()
        await self.repository.save_execution(execution)
        self._log_flow(execution.execution_id, "Execution completed", node_id=node.id)
        await self._add_journal_entry(execution.execution_id, "Execution completed", node=node)

    async def _resolve_from_record(
        self, execution: Execution, graph: FlowGraph, node: FlowNode, record: StageExecutionRecord
    ):
        if isinstance(node, ConditionNode):
            condition = await self.repository.get_condition_record(record.record_id)
            result = bool(condition and condition.result)
            population = None
            if condition is not None:
                population = condition.branch_yes if result else condition.branch_no
            await self.resolve_next(execution, graph, node, branch="yes" if result else "no", population=population)
        else:
            await self.resolve_next(execution, graph, node)

    # ------------------------------------------------------------------ stages

    async def _execute_stage(
        self, execution: Execution, graph: FlowGraph, node: StageNode, record: StageExecutionRecord
    ):
        now = self.clock()
        record.state = "executing"
        record.executed_at = now
        await self.repository.save_node_record(record)

        contact_ids = record.contact_ids if record.contact_ids is not None else execution.contact_ids
        contacts = await self.repository.get_contacts(contact_ids)
        self._log_flow(
            execution.execution_id,
            f"Stage started for {len(contact_ids)} contacts",
            node_id=node.id,
            channel=node.message_type,
        )
        await self._add_journal_entry(
            execution.execution_id, "Stage started", node=node, details={"contacts": len(contact_ids)}
        )

        # all dispatches exist before the first send; finalize_stage counts them
        dispatches = []
        for contact_id in contact_ids:
            contact = contacts.get(contact_id)
            dispatches.append(
                await self.repository.create_dispatch(
                    DispatchRecord(
                        execution_id=execution.execution_id,
                        record_id=record.record_id,
                        node_id=node.id,
                        contact_id=contact_id,
                        channel=node.message_type,
                        recipient=contact.address_for(node.message_type) if contact else None,
                    )
                )
            )

        for dispatch in dispatches:
            if dispatch.state != "pending":
                continue
            if not dispatch.recipient:
                dispatch.state = "failed"
                dispatch.error_message = f"Contact {dispatch.contact_id} has no {node.message_type} address"
                dispatch.processed_at = self.clock()
                await self.repository.save_dispatch(dispatch)
                continue
            try:
                await self._attempt_dispatch(dispatch, node, dispatch.attempts)
            except DispatchRetriesExhaustedError as e:
                await self._fail_exhausted(execution.execution_id, e, record.record_id)
                return

        await self.finalize_stage(record.record_id)

    async def _attempt_dispatch(self, dispatch: DispatchRecord, node: StageNode, attempt: int):
        """
        One guarded send for one contact.

        Throttled sends stay pending and are re-queued with the guard's delay.
        Provider errors are recorded on the dispatch; the walk still advances.
        """
        content = MessageContent(body=node.content or "", subject=node.subject, template_ref=node.template_ref)
        metadata = {
            "execution_id": dispatch.execution_id,
            "dispatch_id": dispatch.dispatch_id,
            "node_id": dispatch.node_id,
            "contact_id": dispatch.contact_id,
            "template_ref": node.template_ref,
        }

        async def send():
            return await self.providers.send(dispatch.channel, dispatch.recipient, content, metadata)

        try:
            result = await self.guard.guard(dispatch.channel, attempt, send)
        except ThrottledError as e:
            next_attempt = attempt + 1
            if next_attempt > self.max_deferrals:
                dispatch.state = "failed"
                dispatch.attempts = next_attempt
                dispatch.error_message = f"Deferred {next_attempt} times ({e.reason}), giving up"
                dispatch.processed_at = self.clock()
                await self.repository.save_dispatch(dispatch)
                raise DispatchRetriesExhaustedError(dispatch.dispatch_id, next_attempt) from e
            dispatch.attempts = next_attempt
            await self.repository.save_dispatch(dispatch)
            self.queue.enqueue_dispatch(dispatch.dispatch_id, next_attempt, e.retry_after)
            return
        except Exception as e:
            logger.error(f"[DISPATCH] Send to {dispatch.recipient} failed for {dispatch.dispatch_id}: {e}")
            dispatch.state = "failed"
            dispatch.error_message = str(e) or e.__class__.__name__
            dispatch.processed_at = self.clock()
            await self.repository.save_dispatch(dispatch)
            return

        dispatch.processed_at = self.clock()
        if result.error:
            dispatch.state = "failed"
            dispatch.error_message = result.error_message or "Provider reported an error"
        else:
            dispatch.state = "sent"
            dispatch.provider_message_id = result.message_id
        await self.repository.save_dispatch(dispatch)

    async def dispatch_deferred(self, dispatch_id: str, attempt: int) -> Optional[str]:
        """Consumer of re-queued sends. Returns the dispatch state after this attempt."""
        dispatch = await self.repository.get_dispatch(dispatch_id)
        if dispatch is None:
            logger.warning(f"[DISPATCH] Dispatch {dispatch_id} not found")
            return None
        if dispatch.state != "pending":
            logger.info(f"[DISPATCH] Dispatch {dispatch_id} already {dispatch.state}, skipping")
            return dispatch.state

        record = await self.repository.get_node_record_by_id(dispatch.record_id)
        execution = await self.repository.get_execution(dispatch.execution_id)
        if record is None or record.state != "executing" or execution is None or execution.is_terminal:
            logger.info(f"[DISPATCH] Stage of dispatch {dispatch_id} is no longer executing, skipping")
            return dispatch.state

        try:
            graph = await self.load_graph(execution)
            node = graph.resolve_node(dispatch.node_id)
            if not isinstance(node, StageNode):
                raise GraphError(f"Node {dispatch.node_id} is not a stage")
            await self._attempt_dispatch(dispatch, node, attempt)
            await self.finalize_stage(record.record_id)
        except GraphError as e:
            await self.fail_execution(execution.execution_id, str(e))
        except DispatchRetriesExhaustedError as e:
            await self._fail_exhausted(execution.execution_id, e, record.record_id)
        return dispatch.state

    async def finalize_stage(self, record_id: str) -> bool:
        """
        Close a stage record once none of its dispatches is pending, then move the walk on.
        Completed when at least one send succeeded, failed otherwise. Returns True if it closed.
        """
        dispatches = await self.repository.list_dispatches(record_id)
        if any(d.state == "pending" for d in dispatches):
            return False
        record = await self.repository.get_node_record_by_id(record_id)
        if record is None or record.state != "executing":
            return False

        sent = [d for d in dispatches if d.state == "sent"]
        errors = [d for d in dispatches if d.state == "failed"]
        record.executed = True
        record.executed_at = self.clock()
        record.provider_response = {"recipients": len(sent), "errors": len(errors), "total": len(dispatches)}
        if sent:
            record.state = "completed"
            record.provider_message_id = next(
                (d.provider_message_id for d in sent if d.provider_message_id is not None), None
            )
            if errors:
                record.error_message = f"{len(errors)} of {len(dispatches)} sends failed"
        else:
            record.state = "failed"
            record.error_message = errors[0].error_message if errors else "No contacts to dispatch"
        await self.repository.save_node_record(record)
        self._log_flow(
            record.execution_id,
            f"Stage {record.state}",
            node_id=record.node_id,
            **record.provider_response,
        )

        execution = await self.repository.get_execution(record.execution_id)
        if execution is None or execution.is_terminal or execution.next_node_id != record.node_id:
            return True
        graph = await self.load_graph(execution)
        node = graph.resolve_node(record.node_id)
        await self._add_journal_entry(
            execution.execution_id, f"Stage {record.state}", node=node, details=record.provider_response
        )
        await self.resolve_next(execution, graph, node)
        return True

    async def _fail_exhausted(
        self, execution_id: str, error: DispatchRetriesExhaustedError, record_id: Optional[str] = None
    ):
        if record_id is None:
            dispatch = await self.repository.get_dispatch(error.dispatch_id)
            record_id = dispatch.record_id if dispatch else None
        record = await self.repository.get_node_record_by_id(record_id) if record_id else None
        if record is not None and not record.is_terminal:
            record.state = "failed"
            record.executed_at = self.clock()
            record.error_message = str(error)
            await self.repository.save_node_record(record)
        await self.fail_execution(execution_id, str(error))

    # -------------------------------------------------------------- conditions

    async def _find_source_record(
        self, execution: Execution, graph: FlowGraph, node: ConditionNode
    ) -> Optional[StageExecutionRecord]:
        for edge in graph.incoming_edges(node.id):
            candidate = await self.repository.get_node_record(execution.execution_id, edge.source)
            if candidate and candidate.state == "completed" and candidate.provider_message_id is not None:
                return candidate
        return await self.repository.latest_record_with_message(execution.execution_id)

    async def _execute_condition(
        self, execution: Execution, graph: FlowGraph, node: ConditionNode, record: StageExecutionRecord
    ):
        source = await self._find_source_record(execution, graph, node)
        now = self.clock()

        if source is None:
            message = "No source message id available for condition"
            population = record.contact_ids if record.contact_ids is not None else list(execution.contact_ids)
            record.state = "failed"
            record.executed = True
            record.executed_at = now
            record.error_message = message
            await self.repository.save_node_record(record)
            await self.repository.save_condition_record(
                ConditionExecutionRecord(
                    execution_id=execution.execution_id,
                    record_id=record.record_id,
                    node_id=node.id,
                    state="failed",
                    check_param=node.check_param,
                    check_operator=node.check_operator,
                    check_value=str(node.check_value),
                    result=False,
                    branch_no=population,
                    error_message=message,
                    evaluated_at=now,
                )
            )
            self._log_flow(execution.execution_id, message, level="warning", node_id=node.id)
            await self._add_journal_entry(execution.execution_id, "Condition failed", node=node, details={"error": message})
            await self.resolve_next(execution, graph, node, branch="no", population=population)
            return

        record.state = "executing"
        record.executed_at = now
        record.source_record_id = source.record_id
        record.source_message_id = source.provider_message_id
        await self.repository.save_node_record(record)

        payload = {
            "execution_id": execution.execution_id,
            "record_id": record.record_id,
            "node_id": node.id,
            "source_record_id": source.record_id,
            "source_message_id": source.provider_message_id,
            "check_param": node.check_param,
            "check_operator": node.check_operator,
            "check_value": node.check_value,
            "evaluation_delay_hours": self._evaluation_delay(node),
        }
        self.queue.enqueue_condition_check(payload, 0)
        self._log_flow(execution.execution_id, "Condition verification queued", node_id=node.id)
        await self._add_journal_entry(
            execution.execution_id, "Condition verification queued", node=node, details={"source": source.node_id}
        )

    async def verify_condition(self, payload: dict) -> Optional[bool]:
        """
        Asynchronous verification of a condition node.
        Idempotent: does nothing once the node record has left `executing`.
        """
        record = await self.repository.get_node_record_by_id(payload["record_id"])
        if record is None:
            logger.warning(f"[CONDITION] Record {payload['record_id']} not found")
            return None
        if record.state != "executing":
            logger.info(f"[CONDITION] Record {record.record_id} already {record.state}, skipping")
            return None
        execution = await self.repository.get_execution(record.execution_id)
        if execution is None or execution.is_terminal:
            logger.info(f"[CONDITION] Execution {record.execution_id} is gone or terminal, skipping")
            return None

        try:
            graph = await self.load_graph(execution)
            node = graph.resolve_node(record.node_id)
            if not isinstance(node, ConditionNode):
                raise GraphError(f"Node {record.node_id} is not a condition")

            check_param = payload.get("check_param", node.check_param)
            operator = payload.get("check_operator", node.check_operator)
            expected = payload.get("check_value", node.check_value)

            source_record_id = payload.get("source_record_id") or record.source_record_id
            source = await self.repository.get_node_record_by_id(source_record_id) if source_record_id else None
            snapshot = await self.engagement.snapshot(source, check_param)

            # each contact is judged on its own metric; the yes branch is taken
            # when at least one contact satisfies the condition
            population = record.contact_ids if record.contact_ids is not None else execution.contact_ids
            branch_yes, branch_no = split_by_values(population, snapshot.per_contact, operator, expected)
            result = bool(branch_yes)
            now = self.clock()
            await self.repository.save_condition_record(
                ConditionExecutionRecord(
                    execution_id=execution.execution_id,
                    record_id=record.record_id,
                    node_id=node.id,
                    check_param=check_param,
                    check_operator=operator,
                    check_value=str(expected),
                    source_message_id=payload.get("source_message_id", record.source_message_id),
                    actual_value=snapshot.total,
                    result=result,
                    branch_yes=branch_yes,
                    branch_no=branch_no,
                    evaluated_at=now,
                )
            )
            record.state = "completed"
            record.executed = True
            record.executed_at = now
            record.provider_response = {
                "result": result,
                "actual_value": snapshot.total,
                "yes": len(branch_yes),
                "no": len(branch_no),
            }
            await self.repository.save_node_record(record)
            self._log_flow(
                execution.execution_id,
                f"Condition {check_param} {operator} {expected}: yes={len(branch_yes)} no={len(branch_no)} -> {result}",
                node_id=node.id,
            )
            await self._add_journal_entry(
                execution.execution_id, "Condition evaluated", node=node, details=record.provider_response
            )

            if execution.next_node_id == node.id:
                await self.resolve_next(
                    execution,
                    graph,
                    node,
                    branch="yes" if result else "no",
                    population=branch_yes if result else branch_no,
                )
            return result
        except GraphError as e:
            await self.fail_execution(execution.execution_id, str(e))
            return None

    def _evaluation_delay(self, node: ConditionNode) -> float:
        if node.evaluation_delay_hours is None:
            return self.default_evaluation_delay_hours
        return node.evaluation_delay_hours

    # ------------------------------------------------------------- branching

    async def resolve_next(
        self,
        execution: Execution,
        graph: FlowGraph,
        node: FlowNode,
        branch: Optional[str] = None,
        population: Optional[List[str]] = None,
    ) -> Execution:
        """
        Move the execution past `node`: first matching edge wins.
        No edge, or an end target, completes the execution. Raises NodeNotFoundError
        for an edge pointing at an unknown node.

        `population` restricts the contacts the next node works on; None means
        the whole cohort and an empty list means nobody, which ends the walk.
        """
        edge = graph.next_edge(node.id, branch if isinstance(node, ConditionNode) else None)
        if edge is None or graph.is_end(edge.target):
            await self._complete_execution(execution, node, next_node_id=edge.target if edge else None)
            return execution

        if population is not None and not population:
            self._log_flow(execution.execution_id, f"No contacts on branch {branch}, ending walk", node_id=node.id)
            await self._add_journal_entry(
                execution.execution_id, "No contacts left on branch", node=node, details={"branch": branch}
            )
            await self._complete_execution(execution, node)
            return execution

        target = graph.resolve_node(edge.target)
        now = self.clock()
        if isinstance(target, ConditionNode):
            scheduled_at = now + timedelta(hours=self._evaluation_delay(target))
        elif isinstance(target, StageNode):
            scheduled_at = now + timedelta(days=target.wait_days)
        else:
            scheduled_at = now

        if population is not None:
            await self._hand_over_population(execution, target, population, scheduled_at)

        execution.state = "in_progress"
        execution.current_node_id = node.id
        execution.next_node_id = target.id
        execution.next_node_scheduled_at = scheduled_at
        await self.repository.save_execution(execution)
        self._log_flow(
            execution.execution_id,
            f"Next node {target.id} at {scheduled_at.isoformat()}",
            node_id=node.id,
            branch=branch,
        )
        await self._add_journal_entry(
            execution.execution_id,
            f"Scheduled {target.id}",
            node=node,
            details={"branch": branch, "next_node": target.id, "scheduled_at": scheduled_at.isoformat()},
        )
        return execution

    async def _hand_over_population(
        self, execution: Execution, target: FlowNode, population: List[str], scheduled_at: datetime
    ):
        record = await self.repository.create_node_record(
            StageExecutionRecord(
                execution_id=execution.execution_id,
                node_id=target.id,
                node_type=target.kind,
                contact_ids=list(population),
                scheduled_at=scheduled_at,
            )
        )
        if record.state == "pending" and record.contact_ids is None:
            record.contact_ids = list(population)
            await self.repository.save_node_record(record)
