"""
Tests for stuck-stage detection and recovery.
"""
from datetime import timedelta

import pytest

from outreach_flow.models.execution import DispatchRecord, StageExecutionRecord


async def _stuck_stage(repository, contact_ids=("c1", "c2", "c3"), node_id="stage-1", **dispatch_fields):
    """An executing stage record whose sends were never processed."""
    record = await repository.create_node_record(
        StageExecutionRecord(execution_id="exec-1", node_id=node_id, state="executing")
    )
    for contact_id in contact_ids:
        await repository.create_dispatch(
            DispatchRecord(
                execution_id="exec-1",
                record_id=record.record_id,
                node_id=node_id,
                contact_id=contact_id,
                recipient=f"{contact_id}@example.com",
                **dispatch_fields,
            )
        )
    return record


class TestRecovery:
    @pytest.mark.asyncio
    async def test_abandoned_stage_converges(self, repository, recovery, alerts, clock, seed, graph_factory):
        await seed(graph_factory(), contact_ids=("c1", "c2", "c3"))
        record = await _stuck_stage(repository)

        reports = await recovery.recover()

        assert len(reports) == 1
        report = reports[0]
        assert report.stuck is True
        assert report.recovered is True
        assert report.pending == 3
        assert report.minutes_inactive == 999.0

        dispatches = await repository.list_dispatches(record.record_id)
        assert {d.state for d in dispatches} == {"failed"}

        recovered = await repository.get_node_record_by_id(record.record_id)
        assert recovered.state == "completed"
        assert recovered.synthetic is True
        assert 100000 <= recovered.provider_message_id <= 999999
        assert recovered.provider_response["recovered_pending"] == 3
        assert recovered.provider_response["synthetic_message_id"] is True

        execution = await repository.get_execution("exec-1")
        assert execution.state == "in_progress"
        assert execution.next_node_id == "conditional-1"
        assert execution.next_node_scheduled_at == clock() + timedelta(hours=24)

        assert alerts.names() == ["stuck_stage_recovered"]
        assert alerts.events[0][1]["pending"] == 3

    @pytest.mark.asyncio
    async def test_real_message_id_is_kept(self, repository, recovery, clock, seed, graph_factory):
        await seed(graph_factory(), contact_ids=("c1", "c2"))
        record = await _stuck_stage(repository, contact_ids=("c2",))
        await repository.create_dispatch(
            DispatchRecord(
                execution_id="exec-1",
                record_id=record.record_id,
                node_id="stage-1",
                contact_id="c1",
                state="sent",
                provider_message_id=4242,
                processed_at=clock() - timedelta(minutes=45),
            )
        )

        reports = await recovery.recover()

        assert reports[0].minutes_inactive == 45.0
        recovered = await repository.get_node_record_by_id(record.record_id)
        assert recovered.provider_message_id == 4242
        assert recovered.synthetic is False
        assert recovered.provider_response["recipients"] == 1
        assert recovered.provider_response["errors"] == 1

    @pytest.mark.asyncio
    async def test_recovered_stage_feeds_condition(self, repository, recovery, executor, queue, clock, seed, graph_factory):
        await seed(graph_factory())
        await _stuck_stage(repository, contact_ids=("c1",))
        await recovery.recover()

        clock.advance(hours=24)
        await executor.run_sweep()

        payload, _ = queue.condition_checks[0]
        assert 100000 <= payload["source_message_id"] <= 999999

    @pytest.mark.asyncio
    async def test_execution_that_moved_on_is_left_alone(self, repository, recovery, clock, seed, graph_factory):
        execution = await seed(graph_factory())
        record = await _stuck_stage(repository)
        execution.next_node_id = "conditional-1"
        execution.next_node_scheduled_at = clock() + timedelta(hours=5)
        await repository.save_execution(execution)

        reports = await recovery.recover()

        assert reports[0].recovered is True
        assert (await repository.get_node_record_by_id(record.record_id)).state == "completed"
        stored = await repository.get_execution("exec-1")
        assert stored.next_node_scheduled_at == clock() + timedelta(hours=5)


class TestDetection:
    @pytest.mark.asyncio
    async def test_busy_queue_is_not_stuck(self, repository, recovery, queue, seed, graph_factory):
        await seed(graph_factory())
        record = await _stuck_stage(repository)
        queue.depth = 10

        reports = await recovery.recover()

        assert reports[0].stuck is False
        assert (await repository.get_node_record_by_id(record.record_id)).state == "executing"

    @pytest.mark.asyncio
    async def test_unmeasurable_queue_is_not_stuck(self, repository, recovery, queue, seed, graph_factory):
        await seed(graph_factory())
        await _stuck_stage(repository)
        queue.depth = None

        reports = await recovery.recover()

        assert reports[0].stuck is False
        assert reports[0].queue_depth is None

    @pytest.mark.asyncio
    async def test_recent_activity_is_not_stuck(self, repository, recovery, clock, seed, graph_factory):
        await seed(graph_factory())
        record = await _stuck_stage(repository, contact_ids=("c2",))
        await repository.create_dispatch(
            DispatchRecord(
                execution_id="exec-1",
                record_id=record.record_id,
                node_id="stage-1",
                contact_id="c1",
                state="sent",
                provider_message_id=77,
                processed_at=clock() - timedelta(minutes=10),
            )
        )

        reports = await recovery.recover()
        assert reports[0].stuck is False

        reports = await recovery.recover(inactivity_minutes=5)
        assert reports[0].stuck is True
        assert reports[0].recovered is True

    @pytest.mark.asyncio
    async def test_nothing_pending_is_not_stuck(self, repository, recovery, seed, graph_factory):
        await seed(graph_factory())
        await _stuck_stage(repository, state="failed")

        reports = await recovery.recover()

        assert reports[0].pending == 0
        assert reports[0].stuck is False

    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(self, repository, recovery, alerts, seed, graph_factory):
        await seed(graph_factory())
        record = await _stuck_stage(repository)

        reports = await recovery.recover(dry_run=True)

        assert reports[0].stuck is True
        assert reports[0].recovered is False
        assert {d.state for d in await repository.list_dispatches(record.record_id)} == {"pending"}
        assert (await repository.get_node_record_by_id(record.record_id)).state == "executing"
        assert alerts.events == []

    @pytest.mark.asyncio
    async def test_no_executing_stages(self, recovery):
        assert await recovery.recover() == []
