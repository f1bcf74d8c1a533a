import logging
import random
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Callable, List, Optional

from outreach_flow.errors import GraphError
from outreach_flow.models.execution import DispatchRecord, JournalEntry, StageExecutionRecord, utc_now
from outreach_flow.services.alerts import AlertSink
from outreach_flow.services.flow_executor import FlowExecutor
from outreach_flow.services.queue import TaskQueue

logger = logging.getLogger(__name__)

# "never processed" reads as this many minutes of inactivity
NEVER_ACTIVE_MINUTES = 999.0


@dataclass
class RecoveryReport:
    record_id: str
    execution_id: str
    node_id: str
    pending: int
    queue_depth: Optional[int]
    minutes_inactive: float
    stuck: bool
    recovered: bool = False

    def as_dict(self) -> dict:
        return asdict(self)


class StuckRecovery:
    """
    Finds stage records left `executing` by a dead worker and force-completes them.

    A record is stuck when it still has pending sends, the dispatch queue is
    nearly idle, and none of its sends has been processed within the
    inactivity window. Recovery fails the pending sends, completes the record
    and hands the execution back to the executor's own branch resolution.
    """

    def __init__(
        self,
        repository,
        executor: FlowExecutor,
        queue: TaskQueue,
        alerts: Optional[AlertSink] = None,
        inactivity_minutes: int = 30,
        queue_depth_threshold: int = 10,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.repository = repository
        self.executor = executor
        self.queue = queue
        self.alerts = alerts
        self.inactivity_minutes = inactivity_minutes
        self.queue_depth_threshold = queue_depth_threshold
        self.clock = clock

    def _minutes_inactive(self, dispatches: List[DispatchRecord]) -> float:
        processed = [d.processed_at for d in dispatches if d.processed_at is not None]
        if not processed:
            return NEVER_ACTIVE_MINUTES
        return (self.clock() - max(processed)).total_seconds() / 60

    async def recover(self, inactivity_minutes: Optional[int] = None, dry_run: bool = False) -> List[RecoveryReport]:
        window = self.inactivity_minutes if inactivity_minutes is None else inactivity_minutes
        logger.info(f"=== STUCK RECOVERY STARTED === window={window}min dry_run={dry_run}")

        records = await self.repository.find_node_records("executing", "stage")
        if not records:
            logger.info("[RECOVERY] No executing stages found")
            return []

        queue_depth = await self.queue.dispatch_queue_depth()
        reports = []
        for record in records:
            dispatches = await self.repository.list_dispatches(record.record_id)
            pending = [d for d in dispatches if d.state == "pending"]
            minutes_inactive = self._minutes_inactive(dispatches)
            stuck = (
                len(pending) > 0
                and queue_depth is not None
                and queue_depth < self.queue_depth_threshold
                and minutes_inactive >= window
            )
            report = RecoveryReport(
                record_id=record.record_id,
                execution_id=record.execution_id,
                node_id=record.node_id,
                pending=len(pending),
                queue_depth=queue_depth,
                minutes_inactive=round(minutes_inactive, 1),
                stuck=stuck,
            )
            reports.append(report)
            logger.info(f"[RECOVERY] {report.as_dict()}")

            if not stuck or dry_run:
                continue
            try:
                await self._recover_record(record, dispatches, pending, minutes_inactive)
                report.recovered = True
            except GraphError as e:
                await self.executor.fail_execution(record.execution_id, str(e))
                report.recovered = True
            except Exception as e:
                logger.error(f"[RECOVERY] Failed to recover record {record.record_id}: {e}", exc_info=True)

        recovered = sum(1 for report in reports if report.recovered)
        logger.info(f"=== STUCK RECOVERY COMPLETED === {recovered}/{len(reports)} stages recovered")
        return reports

    async def _recover_record(
        self,
        record: StageExecutionRecord,
        dispatches: List[DispatchRecord],
        pending: List[DispatchRecord],
        minutes_inactive: float,
    ):
        now = self.clock()
        for dispatch in pending:
            dispatch.state = "failed"
            dispatch.error_message = "Marked failed by stuck recovery"
            dispatch.processed_at = now
            await self.repository.save_dispatch(dispatch)

        sent = [d for d in dispatches if d.state == "sent"]
        errors = [d for d in dispatches if d.state == "failed"]
        message_id = next((d.provider_message_id for d in sent if d.provider_message_id is not None), None)
        synthetic = message_id is None
        if synthetic:
            message_id = random.randint(100000, 999999)

        record.state = "completed"
        record.executed = True
        record.executed_at = now
        record.provider_message_id = message_id
        record.synthetic = synthetic
        record.error_message = (
            f"Recovered after {minutes_inactive:.0f} min of inactivity, {len(pending)} pending sends marked failed"
        )
        record.provider_response = {
            "recipients": len(sent),
            "errors": len(errors),
            "total": len(dispatches),
            "recovered_at": now.isoformat(),
            "recovered_pending": len(pending),
            "synthetic_message_id": synthetic,
        }
        await self.repository.save_node_record(record)
        logger.warning(f"[RECOVERY] Stage {record.node_id} of execution {record.execution_id} force-completed")

        if self.alerts is not None:
            self.alerts.emit(
                "stuck_stage_recovered",
                execution_id=record.execution_id,
                record_id=record.record_id,
                node_id=record.node_id,
                pending=len(pending),
                minutes_inactive=round(minutes_inactive, 1),
            )
        await self.repository.add_journal_entry(
            JournalEntry(
                execution_id=record.execution_id,
                message="Stage recovered",
                node_id=record.node_id,
                node_type=record.node_type,
                details=record.provider_response,
            )
        )

        execution = await self.repository.get_execution(record.execution_id)
        if execution is None or execution.state != "in_progress" or execution.next_node_id != record.node_id:
            logger.info(f"[RECOVERY] Execution {record.execution_id} has moved on, not re-resolving")
            return
        graph = await self.executor.load_graph(execution)
        node = graph.resolve_node(record.node_id)
        await self.executor.resolve_next(execution, graph, node)
