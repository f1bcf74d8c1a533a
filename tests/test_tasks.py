"""
Tests for the Celery tasks and the beat schedule, run eagerly by calling the tasks directly.
"""
from contextlib import asynccontextmanager
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from celery.schedules import crontab

from outreach_flow import tasks
from outreach_flow.config import Settings
from outreach_flow.models.execution import Execution
from outreach_flow.scheduler import build_beat_schedule
from outreach_flow.services.flow_executor import SweepReport
from outreach_flow.services.stuck_recovery import RecoveryReport


@pytest.fixture
def engine():
    engine = MagicMock()
    engine.executor.run_sweep = AsyncMock(return_value=SweepReport(run_id="abc123", processed=2, skipped=1))
    engine.executor.verify_condition = AsyncMock(return_value=True)
    engine.executor.dispatch_deferred = AsyncMock(return_value="sent")
    engine.executor.start_execution = AsyncMock(
        return_value=Execution(execution_id="exec-1", flow_id="flow-1", state="in_progress", next_node_id="stage-1")
    )
    engine.recovery.recover = AsyncMock(return_value=[])
    return engine


@pytest.fixture
def patched_engine(engine):
    @asynccontextmanager
    async def fake_build_engine(settings=None):
        yield engine

    with patch("outreach_flow.tasks.init_db", new=AsyncMock()) as init_db, patch(
        "outreach_flow.tasks.build_engine", new=fake_build_engine
    ):
        yield init_db


class TestSweepTask:
    def test_returns_report(self, engine, patched_engine):
        result = tasks.run_scheduled_nodes_task()

        assert result == {"run_id": "abc123", "processed": 2, "failed": 0, "skipped": 1, "executions": 0}
        patched_engine.assert_awaited_once()
        engine.executor.run_sweep.assert_awaited_once()

    def test_failure_propagates(self, engine, patched_engine):
        engine.executor.run_sweep.side_effect = RuntimeError("mongo down")
        with pytest.raises(RuntimeError, match="mongo down"):
            tasks.run_scheduled_nodes_task()

    def test_never_retried_or_late_acked(self):
        assert tasks.run_scheduled_nodes_task.max_retries == 0
        assert tasks.run_scheduled_nodes_task.acks_late is False
        assert tasks.run_scheduled_nodes_task.time_limit == Settings().SWEEP_TIMEOUT_SECONDS


class TestWorkerTasks:
    def test_verify_condition(self, engine, patched_engine):
        payload = {"execution_id": "exec-1", "record_id": "rec-1", "node_id": "conditional-1"}

        assert tasks.verify_condition_task(payload) is True
        engine.executor.verify_condition.assert_awaited_once_with(payload)

    def test_verify_condition_error_is_raised_when_called_directly(self, engine, patched_engine):
        engine.executor.verify_condition.side_effect = ValueError("bad payload")
        with pytest.raises(ValueError, match="bad payload"):
            tasks.verify_condition_task({"record_id": "rec-1"})

    def test_dispatch_contact(self, engine, patched_engine):
        assert tasks.dispatch_contact_task("disp_1", 2) == "sent"
        engine.executor.dispatch_deferred.assert_awaited_once_with("disp_1", 2)

    def test_start_execution(self, engine, patched_engine):
        result = tasks.start_execution_task("exec-1")

        engine.executor.start_execution.assert_awaited_once_with("exec-1")
        assert result == {"execution_id": "exec-1", "state": "in_progress", "next_node_id": "stage-1"}

    def test_start_unknown_execution(self, engine, patched_engine):
        engine.executor.start_execution.return_value = None
        assert tasks.start_execution_task("missing") is None

    def test_dispatch_routes_to_dispatch_queue(self):
        from outreach_flow.celery_config import celery_app

        route = celery_app.conf.task_routes["outreach_flow.tasks.dispatch_contact_task"]
        assert route["queue"] == "dispatch"

    def test_recover_stuck_stages(self, engine, patched_engine):
        engine.recovery.recover.return_value = [
            RecoveryReport(
                record_id="rec-1",
                execution_id="exec-1",
                node_id="stage-1",
                pending=3,
                queue_depth=0,
                minutes_inactive=999.0,
                stuck=True,
                recovered=True,
            )
        ]

        result = tasks.recover_stuck_stages_task(45, True)

        engine.recovery.recover.assert_awaited_once_with(inactivity_minutes=45, dry_run=True)
        assert result[0]["record_id"] == "rec-1"
        assert result[0]["recovered"] is True


class TestAlertTask:
    def test_no_webhook_configured(self):
        with patch.object(tasks.settings, "ALERT_WEBHOOK_URL", ""), patch("outreach_flow.tasks.httpx.post") as post:
            assert tasks.send_alert_task("circuit_opened", {"channel": "email"}) is False
        post.assert_not_called()

    def test_posts_event(self):
        response = MagicMock(status_code=200)
        with patch.object(tasks.settings, "ALERT_WEBHOOK_URL", "https://hooks.example.com/alerts"), patch(
            "outreach_flow.tasks.httpx.post", return_value=response
        ) as post:
            assert tasks.send_alert_task("circuit_opened", {"channel": "email"}) is True

        post.assert_called_once_with(
            "https://hooks.example.com/alerts",
            json={"event": "circuit_opened", "service": tasks.settings.APP_NAME, "details": {"channel": "email"}},
            timeout=10.0,
        )
        response.raise_for_status.assert_called_once()

    def test_delivery_error_is_retried(self):
        with patch.object(tasks.settings, "ALERT_WEBHOOK_URL", "https://hooks.example.com/alerts"), patch(
            "outreach_flow.tasks.httpx.post", side_effect=httpx.ConnectError("refused")
        ):
            with pytest.raises(httpx.ConnectError):
                tasks.send_alert_task("stuck_stage_recovered", {"execution_id": "exec-1"})


class TestBeatSchedule:
    def test_schedule_follows_settings(self):
        schedule = build_beat_schedule(Settings(SWEEP_INTERVAL_SECONDS=30, RECOVERY_INTERVAL_MINUTES=15))

        sweep = schedule["run-scheduled-nodes"]
        assert sweep["task"] == "outreach_flow.tasks.run_scheduled_nodes_task"
        assert sweep["schedule"] == timedelta(seconds=30)
        assert sweep["options"]["expires"] == 30

        recovery = schedule["recover-stuck-stages"]
        assert recovery["task"] == "outreach_flow.tasks.recover_stuck_stages_task"
        assert isinstance(recovery["schedule"], crontab)

    def test_schedule_is_installed(self):
        from outreach_flow.celery_config import celery_app

        assert set(celery_app.conf.beat_schedule) == {"run-scheduled-nodes", "recover-stuck-stages"}
