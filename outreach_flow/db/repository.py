"""
Persistence used by the engine.

`Repository` is the contract; `BeanieRepository` is the MongoDB implementation.
Every method returns plain domain models, never Beanie documents.
"""
import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Protocol, Type, TypeVar

from beanie import Document
from pydantic import BaseModel
from pymongo.errors import DuplicateKeyError

from outreach_flow.db.documents import (
    ConditionRecordDocument,
    ContactDocument,
    DispatchDocument,
    ExecutionDocument,
    FlowDocument,
    JournalDocument,
    NodeRecordDocument,
)
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

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

ENGAGEMENT_FIELDS = ("views", "clicks")


class Repository(Protocol):
    async def get_flow(self, flow_id: str) -> Optional[FlowDefinition]: ...

    async def save_flow(self, flow: FlowDefinition) -> FlowDefinition: ...

    async def get_execution(self, execution_id: str) -> Optional[Execution]: ...

    async def find_due_executions(self, now: datetime) -> List[Execution]: ...

    async def save_execution(self, execution: Execution) -> Execution: ...

    async def get_node_record(self, execution_id: str, node_id: str) -> Optional[StageExecutionRecord]: ...

    async def get_node_record_by_id(self, record_id: str) -> Optional[StageExecutionRecord]: ...

    async def create_node_record(self, record: StageExecutionRecord) -> StageExecutionRecord: ...

    async def save_node_record(self, record: StageExecutionRecord) -> StageExecutionRecord: ...

    async def list_node_records(self, execution_id: str) -> List[StageExecutionRecord]: ...

    async def find_node_records(self, state: str, node_type: str = "stage") -> List[StageExecutionRecord]: ...

    async def latest_record_with_message(self, execution_id: str) -> Optional[StageExecutionRecord]: ...

    async def save_condition_record(self, record: ConditionExecutionRecord) -> ConditionExecutionRecord: ...

    async def get_condition_record(self, record_id: str) -> Optional[ConditionExecutionRecord]: ...

    async def list_condition_records(self, execution_id: str) -> List[ConditionExecutionRecord]: ...

    async def create_dispatch(self, dispatch: DispatchRecord) -> DispatchRecord: ...

    async def get_dispatch(self, dispatch_id: str) -> Optional[DispatchRecord]: ...

    async def save_dispatch(self, dispatch: DispatchRecord) -> DispatchRecord: ...

    async def list_dispatches(self, record_id: str) -> List[DispatchRecord]: ...

    async def increment_engagement(self, dispatch_id: str, field: str) -> Optional[DispatchRecord]: ...

    async def get_contacts(self, contact_ids: Iterable[str]) -> Dict[str, Contact]: ...

    async def save_contact(self, contact: Contact) -> Contact: ...

    async def add_journal_entry(self, entry: JournalEntry) -> None: ...

    async def list_journal(self, execution_id: str) -> List[JournalEntry]: ...


def _to_domain(model: Type[M], document: Optional[Document]) -> Optional[M]:
    if document is None:
        return None
    return model.model_validate(document.model_dump(exclude={"id", "revision_id"}))


class BeanieRepository:
    """MongoDB through Beanie. Call `init_db()` before using it."""

    async def _upsert(self, document_cls: Type[Document], query: dict, model: M) -> M:
        data = model.model_dump()
        existing = await document_cls.find_one(query)
        if existing is None:
            await document_cls(**data).insert()
        else:
            for key, value in data.items():
                setattr(existing, key, value)
            await existing.save()
        return model

    async def get_flow(self, flow_id: str) -> Optional[FlowDefinition]:
        return _to_domain(FlowDefinition, await FlowDocument.find_one({"flow_id": flow_id}))

    async def save_flow(self, flow: FlowDefinition) -> FlowDefinition:
        flow.updated_at = utc_now()
        return await self._upsert(FlowDocument, {"flow_id": flow.flow_id}, flow)

    async def get_execution(self, execution_id: str) -> Optional[Execution]:
        return _to_domain(Execution, await ExecutionDocument.find_one({"execution_id": execution_id}))

    async def find_due_executions(self, now: datetime) -> List[Execution]:
        documents = await ExecutionDocument.find(
            {"state": "in_progress", "next_node_scheduled_at": {"$lte": now}}
        ).sort("next_node_scheduled_at").to_list()
        return [_to_domain(Execution, document) for document in documents]

    async def save_execution(self, execution: Execution) -> Execution:
        execution.updated_at = utc_now()
        return await self._upsert(ExecutionDocument, {"execution_id": execution.execution_id}, execution)

    async def get_node_record(self, execution_id: str, node_id: str) -> Optional[StageExecutionRecord]:
        document = await NodeRecordDocument.find_one({"execution_id": execution_id, "node_id": node_id})
        return _to_domain(StageExecutionRecord, document)

    async def get_node_record_by_id(self, record_id: str) -> Optional[StageExecutionRecord]:
        return _to_domain(StageExecutionRecord, await NodeRecordDocument.find_one({"record_id": record_id}))

    async def create_node_record(self, record: StageExecutionRecord) -> StageExecutionRecord:
        try:
            await NodeRecordDocument(**record.model_dump()).insert()
            return record
        except DuplicateKeyError:
            logger.info(f"[REPO] Node record for {record.execution_id}/{record.node_id} already exists")
            return await self.get_node_record(record.execution_id, record.node_id)

    async def save_node_record(self, record: StageExecutionRecord) -> StageExecutionRecord:
        record.updated_at = utc_now()
        return await self._upsert(NodeRecordDocument, {"record_id": record.record_id}, record)

    async def list_node_records(self, execution_id: str) -> List[StageExecutionRecord]:
        documents = await NodeRecordDocument.find({"execution_id": execution_id}).sort("created_at").to_list()
        return [_to_domain(StageExecutionRecord, document) for document in documents]

    async def find_node_records(self, state: str, node_type: str = "stage") -> List[StageExecutionRecord]:
        documents = await NodeRecordDocument.find({"state": state, "node_type": node_type}).to_list()
        return [_to_domain(StageExecutionRecord, document) for document in documents]

    async def latest_record_with_message(self, execution_id: str) -> Optional[StageExecutionRecord]:
        documents = await NodeRecordDocument.find(
            {"execution_id": execution_id, "state": "completed", "provider_message_id": {"$ne": None}}
        ).sort("-executed_at").limit(1).to_list()
        return _to_domain(StageExecutionRecord, documents[0]) if documents else None

    async def save_condition_record(self, record: ConditionExecutionRecord) -> ConditionExecutionRecord:
        return await self._upsert(ConditionRecordDocument, {"record_id": record.record_id}, record)

    async def get_condition_record(self, record_id: str) -> Optional[ConditionExecutionRecord]:
        document = await ConditionRecordDocument.find_one({"record_id": record_id})
        return _to_domain(ConditionExecutionRecord, document)

    async def list_condition_records(self, execution_id: str) -> List[ConditionExecutionRecord]:
        documents = await ConditionRecordDocument.find({"execution_id": execution_id}).to_list()
        return [_to_domain(ConditionExecutionRecord, document) for document in documents]

    async def create_dispatch(self, dispatch: DispatchRecord) -> DispatchRecord:
        try:
            await DispatchDocument(**dispatch.model_dump()).insert()
            return dispatch
        except DuplicateKeyError:
            document = await DispatchDocument.find_one(
                {"record_id": dispatch.record_id, "contact_id": dispatch.contact_id}
            )
            return _to_domain(DispatchRecord, document)

    async def get_dispatch(self, dispatch_id: str) -> Optional[DispatchRecord]:
        return _to_domain(DispatchRecord, await DispatchDocument.find_one({"dispatch_id": dispatch_id}))

    async def save_dispatch(self, dispatch: DispatchRecord) -> DispatchRecord:
        return await self._upsert(DispatchDocument, {"dispatch_id": dispatch.dispatch_id}, dispatch)

    async def list_dispatches(self, record_id: str) -> List[DispatchRecord]:
        documents = await DispatchDocument.find({"record_id": record_id}).sort("created_at").to_list()
        return [_to_domain(DispatchRecord, document) for document in documents]

    async def increment_engagement(self, dispatch_id: str, field: str) -> Optional[DispatchRecord]:
        if field not in ENGAGEMENT_FIELDS:
            raise ValueError(f"Unknown engagement field {field!r}")
        query = DispatchDocument.find_one({"dispatch_id": dispatch_id})
        await query.update({"$inc": {field: 1}})
        return await self.get_dispatch(dispatch_id)

    async def get_contacts(self, contact_ids: Iterable[str]) -> Dict[str, Contact]:
        documents = await ContactDocument.find({"contact_id": {"$in": list(contact_ids)}}).to_list()
        return {document.contact_id: _to_domain(Contact, document) for document in documents}

    async def save_contact(self, contact: Contact) -> Contact:
        return await self._upsert(ContactDocument, {"contact_id": contact.contact_id}, contact)

    async def add_journal_entry(self, entry: JournalEntry) -> None:
        await JournalDocument(**entry.model_dump()).insert()

    async def list_journal(self, execution_id: str) -> List[JournalEntry]:
        documents = await JournalDocument.find({"execution_id": execution_id}).sort("timestamp").to_list()
        return [_to_domain(JournalEntry, document) for document in documents]
