"""Alerting collaborator package."""

from services.alerting.alerts import Alert, AlertingSystem, Severity, Threshold

__all__ = ["Alert", "AlertingSystem", "Severity", "Threshold"]
