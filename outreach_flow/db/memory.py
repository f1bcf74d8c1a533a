import asyncio
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from outreach_flow.models.execution import (
    ConditionExecutionRecord,
    Contact,
    DispatchRecord,
    Execution,
    JournalEntry,
    StageExecutionRecord,
    utc_now,
)
from outreach_flow.models.flow import FlowDefinition


class InMemoryRepository:
    """
    Dict-backed repository for tests and single-process runs.
    Stores and returns copies so callers never share mutable state with it.
    """

    def __init__(self):
        self.flows: Dict[str, FlowDefinition] = {}
        self.executions: Dict[str, Execution] = {}
        self.node_records: Dict[str, StageExecutionRecord] = {}
        self.condition_records: Dict[str, ConditionExecutionRecord] = {}
        self.dispatches: Dict[str, DispatchRecord] = {}
        self.contacts: Dict[str, Contact] = {}
        self.journal: List[JournalEntry] = []
        self._lock = asyncio.Lock()

    @staticmethod
    def _copy(model):
        return model.model_copy(deep=True) if model is not None else None

    async def get_flow(self, flow_id: str) -> Optional[FlowDefinition]:
        return self._copy(self.flows.get(flow_id))

    async def save_flow(self, flow: FlowDefinition) -> FlowDefinition:
        self.flows[flow.flow_id] = self._copy(flow)
        return flow

    async def get_execution(self, execution_id: str) -> Optional[Execution]:
        return self._copy(self.executions.get(execution_id))

    async def find_due_executions(self, now: datetime) -> List[Execution]:
        due = [
            execution
            for execution in self.executions.values()
            if execution.state == "in_progress"
            and execution.next_node_scheduled_at is not None
            and execution.next_node_scheduled_at <= now
        ]
        due.sort(key=lambda execution: execution.next_node_scheduled_at)
        return [self._copy(execution) for execution in due]

    async def save_execution(self, execution: Execution) -> Execution:
        execution.updated_at = utc_now()
        self.executions[execution.execution_id] = self._copy(execution)
        return execution

    def _find_record(self, execution_id: str, node_id: str) -> Optional[StageExecutionRecord]:
        for record in self.node_records.values():
            if record.execution_id == execution_id and record.node_id == node_id:
                return record
        return None

    async def get_node_record(self, execution_id: str, node_id: str) -> Optional[StageExecutionRecord]:
        return self._copy(self._find_record(execution_id, node_id))

    async def get_node_record_by_id(self, record_id: str) -> Optional[StageExecutionRecord]:
        return self._copy(self.node_records.get(record_id))

    async def create_node_record(self, record: StageExecutionRecord) -> StageExecutionRecord:
        async with self._lock:
            existing = self._find_record(record.execution_id, record.node_id)
            if existing is not None:
                return self._copy(existing)
            self.node_records[record.record_id] = self._copy(record)
            return record

    async def save_node_record(self, record: StageExecutionRecord) -> StageExecutionRecord:
        record.updated_at = utc_now()
        self.node_records[record.record_id] = self._copy(record)
        return record

    async def list_node_records(self, execution_id: str) -> List[StageExecutionRecord]:
        records = [r for r in self.node_records.values() if r.execution_id == execution_id]
        records.sort(key=lambda r: r.created_at)
        return [self._copy(r) for r in records]

    async def find_node_records(self, state: str, node_type: str = "stage") -> List[StageExecutionRecord]:
        return [
            self._copy(r) for r in self.node_records.values() if r.state == state and r.node_type == node_type
        ]

    async def latest_record_with_message(self, execution_id: str) -> Optional[StageExecutionRecord]:
        candidates = [
            r
            for r in self.node_records.values()
            if r.execution_id == execution_id and r.state == "completed" and r.provider_message_id is not None
        ]
        if not candidates:
            return None
        candidates.sort(key=lambda r: r.executed_at or r.updated_at)
        return self._copy(candidates[-1])

    async def save_condition_record(self, record: ConditionExecutionRecord) -> ConditionExecutionRecord:
        self.condition_records[record.record_id] = self._copy(record)
        return record

    async def get_condition_record(self, record_id: str) -> Optional[ConditionExecutionRecord]:
        return self._copy(self.condition_records.get(record_id))

    async def list_condition_records(self, execution_id: str) -> List[ConditionExecutionRecord]:
        return [self._copy(r) for r in self.condition_records.values() if r.execution_id == execution_id]

    async def create_dispatch(self, dispatch: DispatchRecord) -> DispatchRecord:
        async with self._lock:
            for existing in self.dispatches.values():
                if existing.record_id == dispatch.record_id and existing.contact_id == dispatch.contact_id:
                    return self._copy(existing)
            self.dispatches[dispatch.dispatch_id] = self._copy(dispatch)
            return dispatch

    async def get_dispatch(self, dispatch_id: str) -> Optional[DispatchRecord]:
        return self._copy(self.dispatches.get(dispatch_id))

    async def save_dispatch(self, dispatch: DispatchRecord) -> DispatchRecord:
        self.dispatches[dispatch.dispatch_id] = self._copy(dispatch)
        return dispatch

    async def list_dispatches(self, record_id: str) -> List[DispatchRecord]:
        dispatches = [d for d in self.dispatches.values() if d.record_id == record_id]
        dispatches.sort(key=lambda d: d.created_at)
        return [self._copy(d) for d in dispatches]

    async def increment_engagement(self, dispatch_id: str, field: str) -> Optional[DispatchRecord]:
        if field not in ("views", "clicks"):
            raise ValueError(f"Unknown engagement field {field!r}")
        dispatch = self.dispatches.get(dispatch_id)
        if dispatch is None:
            return None
        setattr(dispatch, field, getattr(dispatch, field) + 1)
        return self._copy(dispatch)

    async def get_contacts(self, contact_ids: Iterable[str]) -> Dict[str, Contact]:
        return {cid: self._copy(self.contacts[cid]) for cid in contact_ids if cid in self.contacts}

    async def save_contact(self, contact: Contact) -> Contact:
        self.contacts[contact.contact_id] = self._copy(contact)
        return contact

    async def add_journal_entry(self, entry: JournalEntry) -> None:
        self.journal.append(self._copy(entry))

    async def list_journal(self, execution_id: str) -> List[JournalEntry]:
        return [self._copy(e) for e in self.journal if e.execution_id == execution_id]
