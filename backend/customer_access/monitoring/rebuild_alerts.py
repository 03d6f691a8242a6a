"""
Closure rebuild monitoring and alerting.

Alerts are the operator failure channel for the rebuild pipeline: a
dead-lettered rebuild leaves the user's previous closure in place, and a
cycle or isolation violation points at bad hierarchy data. Each alert is
logged at its severity, posted to Slack when a webhook is configured,
and paged through PagerDuty when critical.

Also provides check_rebuild_health(), the queue health check used by
the worker and the operator CLI.
"""

import os
import logging
from datetime import datetime, timezone, timedelta
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any
from enum import Enum

import httpx

from customer_access.config.rebuild_settings import RebuildSettings, get_rebuild_settings
from customer_access.models.base import as_utc
from customer_access.models.rebuild_task import PENDING_STATUSES, RebuildTask, RebuildTaskStatus

logger = logging.getLogger(__name__)

PAGERDUTY_EVENTS_URL = "https://events.pagerduty.com/v2/enqueue"
HTTP_TIMEOUT_SECONDS = 10.0


class AlertSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AlertType(str, Enum):
    """Conditions the rebuild pipeline reports to operators."""
    REBUILD_DEAD_LETTERED = "rebuild_dead_lettered"
    TENANT_ISOLATION_VIOLATION = "tenant_isolation_violation"
    HIERARCHY_CYCLE_DETECTED = "hierarchy_cycle_detected"
    CLOSURE_STALENESS_HIGH = "closure_staleness_high"


# severity -> (log level, slack emoji, slack colour)
_SEVERITY_STYLE = {
    AlertSeverity.INFO: (logging.INFO, ":information_source:", "#36a64f"),
    AlertSeverity.WARNING: (logging.WARNING, ":warning:", "#ff9800"),
    AlertSeverity.ERROR: (logging.ERROR, ":x:", "#f44336"),
    AlertSeverity.CRITICAL: (logging.CRITICAL, ":rotating_light:", "#9c27b0"),
}


@dataclass
class Alert:
    alert_type: AlertType
    severity: AlertSeverity
    title: str
    message: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def dedup_key(self) -> str:
        """One alert per type and tenant within the cooldown window."""
        return f"{self.alert_type.value}:{self.metadata.get('tenant_id', 'global')}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alert_type": self.alert_type.value,
            "severity": self.severity.value,
            "title": self.title,
            "message": self.message,
            "metadata": self.metadata,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class RebuildHealthStatus:
    """Snapshot of the rebuild queue with one entry per health check."""
    healthy: bool
    status: str
    pending_tasks: int
    running_tasks: int
    stalled_tasks: int
    dead_letter_tasks: int
    oldest_pending_age_seconds: float
    checks: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def staleness_exceeded(self) -> bool:
        return any(
            check["name"] == "closure_staleness" and check["status"] != "ok"
            for check in self.checks
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "healthy": self.healthy,
            "status": self.status,
            "pending_tasks": self.pending_tasks,
            "running_tasks": self.running_tasks,
            "stalled_tasks": self.stalled_tasks,
            "dead_letter_tasks": self.dead_letter_tasks,
            "oldest_pending_age_seconds": self.oldest_pending_age_seconds,
            "checks": self.checks,
        }


class RebuildAlertManager:
    """
    Routes alerts to the log, Slack and PagerDuty.

    Repeats of the same alert type for the same tenant are suppressed for
    cooldown_minutes. Delivery failures are logged and never raised, so
    alerting cannot fail a rebuild cycle.
    """

    def __init__(
        self,
        slack_webhook_url: Optional[str] = None,
        pagerduty_key: Optional[str] = None,
        cooldown_minutes: int = 15,
    ):
        self.slack_webhook_url = slack_webhook_url or os.getenv("SLACK_ACCESS_WEBHOOK_URL")
        self.pagerduty_key = pagerduty_key or os.getenv("PAGERDUTY_ACCESS_KEY")
        self._cooldown = timedelta(minutes=cooldown_minutes)
        self._last_sent: Dict[str, datetime] = {}

    def _in_cooldown(self, alert: Alert) -> bool:
        now = datetime.now(timezone.utc)
        last_sent = self._last_sent.get(alert.dedup_key)
        if last_sent is not None and now - last_sent < self._cooldown:
            return True
        self._last_sent[alert.dedup_key] = now
        return False

    async def send_alert(self, alert: Alert) -> bool:
        """
        Returns:
            True if the alert went out, False if suppressed by cooldown
        """
        if self._in_cooldown(alert):
            logger.debug("Alert suppressed (cooldown)", extra={"dedup_key": alert.dedup_key})
            return False

        level = _SEVERITY_STYLE[alert.severity][0]
        logger.log(
            level,
            alert.message,
            extra={"alert_type": alert.alert_type.value, "severity": alert.severity.value, **alert.metadata},
        )

        if self.slack_webhook_url:
            await self._post("slack", self.slack_webhook_url, self._slack_payload(alert))
        if self.pagerduty_key and alert.severity == AlertSeverity.CRITICAL:
            await self._post("pagerduty", PAGERDUTY_EVENTS_URL, self._pagerduty_payload(alert))
        return True

    @staticmethod
    def _slack_payload(alert: Alert) -> Dict[str, Any]:
        _, emoji, colour = _SEVERITY_STYLE[alert.severity]
        return {
            "attachments": [
                {
                    "color": colour,
                    "title": f"{emoji} {alert.title}",
                    "text": alert.message,
                    "fields": [
                        {"title": key.replace("_", " ").title(), "value": str(value), "short": True}
                        for key, value in alert.metadata.items()
                    ],
                    "ts": int(alert.timestamp.timestamp()),
                }
            ]
        }

    def _pagerduty_payload(self, alert: Alert) -> Dict[str, Any]:
        return {
            "routing_key": self.pagerduty_key,
            "event_action": "trigger",
            "dedup_key": alert.dedup_key,
            "payload": {
                "summary": alert.title,
                "severity": "critical",
                "source": "customer-access-engine",
                "custom_details": {"message": alert.message, **alert.metadata},
            },
        }

    async def _post(self, channel: str, url: str, payload: Dict[str, Any]) -> None:
        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(url, json=payload, timeout=HTTP_TIMEOUT_SECONDS)
            if response.status_code >= 300:
                logger.error(
                    "Alert delivery rejected",
                    extra={"channel": channel, "status_code": response.status_code},
                )
        except httpx.HTTPError as e:
            logger.error("Alert delivery failed", extra={"channel": channel, "error": str(e)})


# Singleton alert manager
_alert_manager: Optional[RebuildAlertManager] = None


def get_alert_manager() -> RebuildAlertManager:
    """Get the singleton alert manager instance."""
    global _alert_manager
    if _alert_manager is None:
        _alert_manager = RebuildAlertManager()
    return _alert_manager


# Alert factory functions

async def alert_rebuild_dead_lettered(
    tenant_id: str,
    user_id: str,
    task_id: str,
    attempts: int,
    error_code: Optional[str],
    error_message: Optional[str],
    manager: Optional[RebuildAlertManager] = None,
) -> bool:
    """Alert when a closure rebuild exhausts its retries."""
    alert = Alert(
        alert_type=AlertType.REBUILD_DEAD_LETTERED,
        severity=AlertSeverity.ERROR,
        title="Closure Rebuild Dead-Lettered",
        message=(
            f"Closure rebuild for user {user_id} moved to dead letter queue after "
            f"{attempts} attempts: {error_message}"
        ),
        metadata={
            "tenant_id": tenant_id,
            "user_id": user_id,
            "task_id": task_id,
            "attempts": attempts,
            "error_code": error_code,
        }
    )
    return await (manager or get_alert_manager()).send_alert(alert)


async def alert_tenant_isolation_violation(
    tenant_id: str,
    offending_tenant_id: Optional[str],
    operation: str,
    detail: str,
    manager: Optional[RebuildAlertManager] = None,
) -> bool:
    """Alert for a cross-tenant reference. Always critical."""
    alert = Alert(
        alert_type=AlertType.TENANT_ISOLATION_VIOLATION,
        severity=AlertSeverity.CRITICAL,
        title="Tenant Isolation Violation",
        message=f"Operation {operation} in tenant {tenant_id} referenced tenant {offending_tenant_id}: {detail}",
        metadata={
            "tenant_id": tenant_id,
            "offending_tenant_id": offending_tenant_id,
            "operation": operation,
        }
    )
    return await (manager or get_alert_manager()).send_alert(alert)


async def alert_hierarchy_cycle(
    tenant_id: str,
    user_id: str,
    cycle_user_ids: List[str],
    manager: Optional[RebuildAlertManager] = None,
) -> bool:
    """Alert for a reporting cycle found during closure computation."""
    alert = Alert(
        alert_type=AlertType.HIERARCHY_CYCLE_DETECTED,
        severity=AlertSeverity.WARNING,
        title="Reporting Hierarchy Cycle Detected",
        message=(
            f"Closure traversal from user {user_id} found a reporting cycle "
            f"through {', '.join(sorted(set(cycle_user_ids)))}"
        ),
        metadata={
            "tenant_id": tenant_id,
            "user_id": user_id,
            "cycle_user_ids": sorted(set(cycle_user_ids)),
        }
    )
    return await (manager or get_alert_manager()).send_alert(alert)


async def alert_closure_staleness(
    oldest_pending_age_seconds: float,
    threshold_seconds: float,
    pending_tasks: int,
    manager: Optional[RebuildAlertManager] = None,
) -> bool:
    """Alert when pending rebuilds have waited longer than the threshold."""
    alert = Alert(
        alert_type=AlertType.CLOSURE_STALENESS_HIGH,
        severity=(
            AlertSeverity.WARNING
            if oldest_pending_age_seconds < threshold_seconds * 2
            else AlertSeverity.ERROR
        ),
        title="Closure Staleness High",
        message=(
            f"Oldest pending closure rebuild has waited {oldest_pending_age_seconds:.0f}s "
            f"(threshold: {threshold_seconds:.0f}s, {pending_tasks} pending)"
        ),
        metadata={
            "oldest_pending_age_seconds": round(oldest_pending_age_seconds, 1),
            "threshold_seconds": threshold_seconds,
            "pending_tasks": pending_tasks,
        }
    )
    return await (manager or get_alert_manager()).send_alert(alert)


# Health check functions

async def check_rebuild_health(
    db_session,
    settings: Optional[RebuildSettings] = None,
) -> RebuildHealthStatus:
    """
    Perform rebuild queue health check.

    Args:
        db_session: Database session
        settings: Rebuild settings (loaded from config when omitted)

    Returns:
        RebuildHealthStatus with overall health and individual checks
    """
    settings = settings or get_rebuild_settings()
    now = datetime.now(timezone.utc)
    checks = []
    issues = 0

    # Check 1: Pending backlog and its age
    pending_count = db_session.query(RebuildTask).filter(
        RebuildTask.status.in_(PENDING_STATUSES)
    ).count()

    oldest = db_session.query(RebuildTask).filter(
        RebuildTask.status.in_(PENDING_STATUSES)
    ).order_by(RebuildTask.enqueued_at.asc()).first()

    oldest_age = 0.0
    if oldest is not None:
        oldest_age = max((now - as_utc(oldest.enqueued_at)).total_seconds(), 0.0)

    stale = oldest_age > settings.staleness_alert_seconds
    checks.append({
        "name": "closure_staleness",
        "status": "warning" if stale else "ok",
        "message": f"{pending_count} pending, oldest waiting {oldest_age:.0f}s"
    })
    if stale:
        issues += 1

    # Check 2: Running tasks past the stall threshold
    running_count = db_session.query(RebuildTask).filter(
        RebuildTask.status == RebuildTaskStatus.RUNNING
    ).count()

    stall_cutoff = now - timedelta(
        seconds=settings.task_timeout_seconds * settings.stall_factor
    )
    stalled_count = db_session.query(RebuildTask).filter(
        RebuildTask.status == RebuildTaskStatus.RUNNING,
        RebuildTask.started_at < stall_cutoff,
    ).count()

    checks.append({
        "name": "stalled_tasks",
        "status": "warning" if stalled_count > 0 else "ok",
        "message": f"{running_count} running ({stalled_count} stalled)"
    })
    if stalled_count > 0:
        issues += 1

    # Check 3: Dead letter queue
    dead_letter_count = db_session.query(RebuildTask).filter(
        RebuildTask.status == RebuildTaskStatus.DEAD_LETTER
    ).count()

    checks.append({
        "name": "dead_letter_queue",
        "status": "warning" if dead_letter_count > 0 else "ok",
        "message": f"{dead_letter_count} dead-lettered rebuilds"
    })
    if dead_letter_count > 0:
        issues += 1

    return RebuildHealthStatus(
        healthy=issues == 0,
        status="healthy" if issues == 0 else f"{issues} issues detected",
        pending_tasks=pending_count,
        running_tasks=running_count,
        stalled_tasks=stalled_count,
        dead_letter_tasks=dead_letter_count,
        oldest_pending_age_seconds=oldest_age,
        checks=checks
    )
