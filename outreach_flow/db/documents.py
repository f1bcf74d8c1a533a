"""
Beanie documents. Each one persists a domain model from `outreach_flow.models`
and is looked up by its business id, never by the Mongo `_id`.
"""
from beanie import Document
from pymongo import ASCENDING, DESCENDING, IndexModel

from outreach_flow.models.execution import (
    ConditionExecutionRecord,
    Contact,
    DispatchRecord,
    Execution,
    JournalEntry,
    StageExecutionRecord,
)
from outreach_flow.models.flow import FlowDefinition


class FlowDocument(Document, FlowDefinition):
    class Settings:
        name = "flows"
        indexes = [IndexModel([("flow_id", ASCENDING)], unique=True)]


class ExecutionDocument(Document, Execution):
    class Settings:
        name = "executions"
        indexes = [
            IndexModel([("execution_id", ASCENDING)], unique=True),
            IndexModel([("state", ASCENDING), ("next_node_scheduled_at", ASCENDING)]),
        ]


class NodeRecordDocument(Document, StageExecutionRecord):
    class Settings:
        name = "stage_execution_records"
        indexes = [
            IndexModel([("record_id", ASCENDING)], unique=True),
            # one record per (execution, node)
            IndexModel([("execution_id", ASCENDING), ("node_id", ASCENDING)], unique=True),
            IndexModel([("state", ASCENDING), ("node_type", ASCENDING)]),
            IndexModel([("execution_id", ASCENDING), ("executed_at", DESCENDING)]),
        ]


class ConditionRecordDocument(Document, ConditionExecutionRecord):
    class Settings:
        name = "condition_execution_records"
        indexes = [
            IndexModel([("record_id", ASCENDING)], unique=True),
            IndexModel([("execution_id", ASCENDING)]),
        ]


class DispatchDocument(Document, DispatchRecord):
    class Settings:
        name = "dispatches"
        indexes = [
            IndexModel([("dispatch_id", ASCENDING)], unique=True),
            IndexModel([("record_id", ASCENDING), ("contact_id", ASCENDING)], unique=True),
        ]


class ContactDocument(Document, Contact):
    class Settings:
        name = "contacts"
        indexes = [IndexModel([("contact_id", ASCENDING)], unique=True)]


class JournalDocument(Document, JournalEntry):
    class Settings:
        name = "journal"
        indexes = [IndexModel([("execution_id", ASCENDING), ("timestamp", ASCENDING)])]


DOCUMENT_MODELS = [
    FlowDocument,
    ExecutionDocument,
    NodeRecordDocument,
    ConditionRecordDocument,
    DispatchDocument,
    ContactDocument,
    JournalDocument,
]
