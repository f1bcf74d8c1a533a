import logging

from fastapi import APIRouter, Depends, HTTPException

from outreach_flow.wiring import Engine, build_engine

logger = logging.getLogger(__name__)
router = APIRouter()

CHANNELS = ("email", "sms")


async def get_engine():
    async with build_engine() as engine:
        yield engine


@router.get("/monitoring/dispatch")
async def dispatch_status(engine: Engine = Depends(get_engine)):
    """Rate-limit counters and circuit state per channel."""
    return {"channels": {channel: await engine.guard.status(channel) for channel in CHANNELS}}


@router.get("/monitoring/executions/{execution_id}")
async def execution_detail(execution_id: str, engine: Engine = Depends(get_engine)):
    repository = engine.repository
    execution = await repository.get_execution(execution_id)
    if execution is None:
        raise HTTPException(status_code=404, detail="Execution not found")

    records = await repository.list_node_records(execution_id)
    return {
        "execution": execution.model_dump(mode="json"),
        "node_records": [record.model_dump(mode="json") for record in records],
        "condition_records": [
            record.model_dump(mode="json") for record in await repository.list_condition_records(execution_id)
        ],
        "journal": [entry.model_dump(mode="json") for entry in await repository.list_journal(execution_id)],
    }
