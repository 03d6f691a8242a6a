"""Monitoring and alerting for the closure rebuild pipeline."""

from customer_access.monitoring.rebuild_alerts import (
    Alert,
    AlertSeverity,
    AlertType,
    RebuildAlertManager,
    RebuildHealthStatus,
    check_rebuild_health,
    get_alert_manager,
)
from customer_access.monitoring.rebuild_metrics import RebuildMetrics, get_rebuild_metrics

__all__ = [
    "Alert",
    "AlertSeverity",
    "AlertType",
    "RebuildAlertManager",
    "RebuildHealthStatus",
    "check_rebuild_health",
    "get_alert_manager",
    "RebuildMetrics",
    "get_rebuild_metrics",
]
