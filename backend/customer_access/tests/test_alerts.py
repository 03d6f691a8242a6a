"""
Tests for rebuild alerting and the queue health check.
"""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from customer_access.config.rebuild_settings import RebuildSettings
from customer_access.jobs.rebuild_scheduler import RebuildScheduler
from customer_access.models.base import utcnow
from customer_access.models.rebuild_task import RebuildTask
from customer_access.monitoring.rebuild_alerts import (
    PAGERDUTY_EVENTS_URL,
    Alert,
    AlertSeverity,
    AlertType,
    RebuildAlertManager,
    alert_closure_staleness,
    alert_hierarchy_cycle,
    alert_rebuild_dead_lettered,
    alert_tenant_isolation_violation,
    check_rebuild_health,
)


@pytest.fixture(autouse=True)
def no_alert_channels(monkeypatch):
    monkeypatch.delenv("SLACK_ACCESS_WEBHOOK_URL", raising=False)
    monkeypatch.delenv("PAGERDUTY_ACCESS_KEY", raising=False)


@pytest.fixture
def http_client():
    """Patches httpx.AsyncClient; yields the client returned by the context manager."""
    client = MagicMock()
    client.post = AsyncMock(return_value=MagicMock(status_code=200))
    with patch("customer_access.monitoring.rebuild_alerts.httpx.AsyncClient") as client_cls:
        client_cls.return_value.__aenter__ = AsyncMock(return_value=client)
        client_cls.return_value.__aexit__ = AsyncMock(return_value=False)
        yield client


def _alert(severity=AlertSeverity.WARNING, tenant_id="tenant-1", alert_type=AlertType.HIERARCHY_CYCLE_DETECTED):
    return Alert(
        alert_type=alert_type,
        severity=severity,
        title="Test",
        message="test alert",
        metadata={"tenant_id": tenant_id},
    )


class TestCooldown:

    @pytest.mark.asyncio
    async def test_duplicate_suppressed(self):
        manager = RebuildAlertManager()

        assert await manager.send_alert(_alert())
        assert not await manager.send_alert(_alert())

    @pytest.mark.asyncio
    async def test_cooldown_is_per_tenant_and_type(self):
        manager = RebuildAlertManager()

        assert await manager.send_alert(_alert(tenant_id="tenant-1"))
        assert await manager.send_alert(_alert(tenant_id="tenant-2"))
        assert await manager.send_alert(
            _alert(tenant_id="tenant-1", alert_type=AlertType.REBUILD_DEAD_LETTERED)
        )

    @pytest.mark.asyncio
    async def test_zero_cooldown_sends_again(self):
        manager = RebuildAlertManager(cooldown_minutes=0)

        assert await manager.send_alert(_alert())
        assert await manager.send_alert(_alert())


class TestChannels:

    @pytest.mark.asyncio
    async def test_slack_receives_alert(self, http_client):
        manager = RebuildAlertManager(slack_webhook_url="https://hooks.slack.test/abc")

        await manager.send_alert(_alert())

        http_client.post.assert_awaited_once()
        url = http_client.post.call_args.args[0]
        payload = http_client.post.call_args.kwargs["json"]
        assert url == "https://hooks.slack.test/abc"
        assert payload["attachments"][0]["text"] == "test alert"

    @pytest.mark.asyncio
    async def test_pagerduty_only_for_critical(self, http_client):
        manager = RebuildAlertManager(pagerduty_key="pd-key")

        await manager.send_alert(_alert(severity=AlertSeverity.ERROR))
        http_client.post.assert_not_awaited()

        await manager.send_alert(_alert(severity=AlertSeverity.CRITICAL, tenant_id="tenant-9"))
        http_client.post.assert_awaited_once()
        assert http_client.post.call_args.args[0] == PAGERDUTY_EVENTS_URL
        assert http_client.post.call_args.kwargs["json"]["routing_key"] == "pd-key"

    @pytest.mark.asyncio
    async def test_http_errors_swallowed(self, http_client):
        http_client.post.side_effect = httpx.ConnectError("connection refused")
        manager = RebuildAlertManager(
            slack_webhook_url="https://hooks.slack.test/abc", pagerduty_key="pd-key"
        )

        assert await manager.send_alert(_alert(severity=AlertSeverity.CRITICAL))
        assert http_client.post.await_count == 2

    def test_env_configuration(self, monkeypatch):
        monkeypatch.setenv("SLACK_ACCESS_WEBHOOK_URL", "https://hooks.slack.test/env")
        monkeypatch.setenv("PAGERDUTY_ACCESS_KEY", "env-key")

        manager = RebuildAlertManager()

        assert manager.slack_webhook_url == "https://hooks.slack.test/env"
        assert manager.pagerduty_key == "env-key"


class TestAlertFactories:

    @pytest.mark.asyncio
    async def test_dead_letter_alert(self, alert_manager):
        await alert_rebuild_dead_lettered(
            "tenant-1", "A", "task-1", 4, "graph_read", "store down", manager=alert_manager
        )

        alert = alert_manager.send_alert.call_args.args[0]
        assert alert.alert_type == AlertType.REBUILD_DEAD_LETTERED
        assert alert.severity == AlertSeverity.ERROR
        assert alert.metadata["user_id"] == "A"

    @pytest.mark.asyncio
    async def test_isolation_alert_is_critical(self, alert_manager):
        await alert_tenant_isolation_violation(
            "tenant-1", "tenant-2", "closure_swap", "customer FOREIGN", manager=alert_manager
        )

        alert = alert_manager.send_alert.call_args.args[0]
        assert alert.severity == AlertSeverity.CRITICAL
        assert alert.metadata["offending_tenant_id"] == "tenant-2"

    @pytest.mark.asyncio
    async def test_cycle_alert_lists_members(self, alert_manager):
        await alert_hierarchy_cycle("tenant-1", "A", ["C", "B", "C"], manager=alert_manager)

        alert = alert_manager.send_alert.call_args.args[0]
        assert alert.metadata["cycle_user_ids"] == ["B", "C"]

    @pytest.mark.asyncio
    async def test_staleness_severity_escalates(self, alert_manager):
        await alert_closure_staleness(4000, 3600, 5, manager=alert_manager)
        assert alert_manager.send_alert.call_args.args[0].severity == AlertSeverity.WARNING

        await alert_closure_staleness(8000, 3600, 5, manager=alert_manager)
        assert alert_manager.send_alert.call_args.args[0].severity == AlertSeverity.ERROR


class TestHealthCheck:

    @pytest.mark.asyncio
    async def test_empty_queue_is_healthy(self, db_session, settings):
        status = await check_rebuild_health(db_session, settings)

        assert status.healthy
        assert status.pending_tasks == 0
        assert [c["name"] for c in status.checks] == [
            "closure_staleness", "stalled_tasks", "dead_letter_queue",
        ]

    @pytest.mark.asyncio
    async def test_dead_letter_makes_unhealthy(self, db_session, tenant_id, settings):
        RebuildScheduler(db_session, settings).enqueue(tenant_id, ["A"])
        task = db_session.query(RebuildTask).one()
        task.mark_running()
        task.mark_dead_letter("boom")
        db_session.commit()

        status = await check_rebuild_health(db_session, settings)

        assert not status.healthy
        assert status.dead_letter_tasks == 1
        assert not status.staleness_exceeded

    @pytest.mark.asyncio
    async def test_old_pending_task_exceeds_staleness(self, db_session, tenant_id):
        settings = RebuildSettings(debounce_seconds=0, staleness_alert_seconds=60)
        RebuildScheduler(db_session, settings).enqueue(tenant_id, ["A"])
        task = db_session.query(RebuildTask).one()
        task.enqueued_at = utcnow() - timedelta(minutes=10)
        db_session.commit()

        status = await check_rebuild_health(db_session, settings)

        assert status.staleness_exceeded
        assert status.oldest_pending_age_seconds >= 590
        assert status.to_dict()["pending_tasks"] == 1

    @pytest.mark.asyncio
    async def test_stalled_running_task_reported(self, db_session, tenant_id):
        settings = RebuildSettings(debounce_seconds=0, task_timeout_seconds=10, stall_factor=3)
        RebuildScheduler(db_session, settings).enqueue(tenant_id, ["A"])
        task = db_session.query(RebuildTask).one()
        task.mark_running()
        task.started_at = utcnow() - timedelta(minutes=5)
        db_session.commit()

        status = await check_rebuild_health(db_session, settings)

        assert status.running_tasks == 1
        assert status.stalled_tasks == 1
        assert not status.healthy
