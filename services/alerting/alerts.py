"""SuaTalk Analysis - Alerting collaborator.

Receives HealthSample values from the health_check job, compares them
against warning/critical thresholds and emits alerts:
- logged at WARNING (warning) or ERROR (critical)
- optionally POSTed as JSON to ALERT_WEBHOOK_URL

The same alert type is suppressed for ALERT_COOLDOWN_SECONDS after it fires.
Webhook delivery errors are logged and never raised to the caller.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from enum import StrEnum
from typing import Any

import httpx

from analysis.config import ALERT_COOLDOWN_SECONDS, ALERT_WEBHOOK_URL
from analysis.models import utc_now
from analysis.schemas import HealthSample

logger = logging.getLogger(__name__)

WEBHOOK_TIMEOUT_SECONDS = 10.0


class Severity(StrEnum):
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(frozen=True)
class Threshold:
    warning: float
    critical: float


# metric name -> (sample attribute, thresholds)
SYSTEM_THRESHOLDS: dict[str, tuple[str, Threshold]] = {
    "CPU": ("cpu_percent", Threshold(warning=75.0, critical=90.0)),
    "MEMORY": ("memory_percent", Threshold(warning=85.0, critical=95.0)),
    "DISK": ("disk_percent", Threshold(warning=85.0, critical=95.0)),
}


@dataclass
class Alert:
    alert_type: str
    severity: Severity
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: utc_now().isoformat())

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["severity"] = self.severity.value
        return payload


class AlertingSystem:
    """Threshold-based alerting sink.

    Args:
        webhook_url: Optional JSON webhook receiving each alert.
        cooldown_seconds: Per-alert-type suppression window.
        thresholds: Override for SYSTEM_THRESHOLDS.
        transport: Optional httpx transport for the webhook client.
        clock: Monotonic clock used for cooldowns.
    """

    def __init__(
        self,
        webhook_url: str | None = ALERT_WEBHOOK_URL,
        *,
        cooldown_seconds: float = ALERT_COOLDOWN_SECONDS,
        thresholds: dict[str, tuple[str, Threshold]] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.webhook_url = webhook_url
        self.cooldown_seconds = cooldown_seconds
        self.thresholds = thresholds or SYSTEM_THRESHOLDS
        self._transport = transport
        self._clock = clock
        self._last_fired: dict[str, float] = {}

    def _evaluate(self, sample: HealthSample) -> list[Alert]:
        alerts = []
        for metric, (attr, threshold) in self.thresholds.items():
            value = getattr(sample, attr)
            if value >= threshold.critical:
                alerts.append(
                    Alert(
                        f"CRITICAL_{metric}_USAGE",
                        Severity.CRITICAL,
                        {
                            "usage": value,
                            "threshold": threshold.critical,
                            "load_average": sample.load_average,
                        },
                    )
                )
            elif value >= threshold.warning:
                alerts.append(
                    Alert(
                        f"HIGH_{metric}_USAGE",
                        Severity.WARNING,
                        {"usage": value, "threshold": threshold.warning},
                    )
                )
        return alerts

    def _in_cooldown(self, alert_type: str) -> bool:
        last = self._last_fired.get(alert_type)
        return last is not None and self._clock() - last < self.cooldown_seconds

    async def check_system_health(self, sample: HealthSample) -> list[Alert]:
        """Apply thresholds to a sample and emit any alerts not in cooldown.

        Returns:
            Alerts emitted for this sample.
        """
        fired = []
        for alert in self._evaluate(sample):
            if self._in_cooldown(alert.alert_type):
                logger.debug("Alert suppressed by cooldown: %s", alert.alert_type)
                continue
            self._last_fired[alert.alert_type] = self._clock()
            await self.trigger(alert)
            fired.append(alert)
        return fired

    async def trigger(self, alert: Alert) -> None:
        level = logging.ERROR if alert.severity is Severity.CRITICAL else logging.WARNING
        logger.log(level, "ALERT %s [%s]: %s", alert.alert_type, alert.severity, alert.data)
        if self.webhook_url:
            await self._send_webhook(alert)

    async def _send_webhook(self, alert: Alert) -> None:
        try:
            async with httpx.AsyncClient(
                timeout=WEBHOOK_TIMEOUT_SECONDS, transport=self._transport
            ) as client:
                response = await client.post(self.webhook_url, json=alert.to_dict())
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error("Failed to deliver alert %s to webhook: %s", alert.alert_type, e)
