"""Alert rules and the alert audit trail.

The rule functions are pure: they look at a reading (or a source transition)
plus the currently open alerts and return the alert changes to make.
``AlertBook`` applies those changes and keeps every alert ever raised.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

from pulsewatch.arbiter import Transition
from pulsewatch.classifier import Thresholds
from pulsewatch.config import (
    ALERT_DEDUP_WINDOW_SECONDS,
    ALERT_RESOLVE_AFTER_NORMAL,
    SYSTEM_DEVICE_ID,
)
from pulsewatch.errors import AlertNotFound
from pulsewatch.models import Alert, AlertType, Device, Quality, Reading, Severity

BPM_ALERT_TYPES = (AlertType.HIGH_BPM, AlertType.LOW_BPM)

_SEVERITY_ORDER = {Severity.WARNING: 0, Severity.CRITICAL: 1}


@dataclass
class AlertDecision:
    """Alert changes produced by evaluating one reading."""

    created: List[Alert] = field(default_factory=list)
    updated: List[Alert] = field(default_factory=list)
    normal_streak: int = 0

    @property
    def changes(self) -> List[Alert]:
        return self.created + self.updated


def new_alert(
    device_id: str,
    alert_type: AlertType,
    severity: Severity,
    message: str,
    now: datetime,
    bpm_value: Optional[int] = None,
) -> Alert:
    return Alert(
        id=str(uuid.uuid4()),
        device_id=device_id,
        type=alert_type,
        severity=severity,
        message=message,
        bpm_value=bpm_value,
        created_at=now,
    )


def bpm_message(alert_type: AlertType, bpm: int, severity: Severity, thresholds: Thresholds) -> str:
    critical = severity is Severity.CRITICAL
    if alert_type is AlertType.HIGH_BPM:
        limit = thresholds.critical_high if critical else thresholds.warning_high
        return f"BPM reading of {bpm} exceeds threshold of {limit}"
    limit = thresholds.critical_low if critical else thresholds.warning_low
    return f"BPM reading of {bpm} below threshold of {limit}"


def _more_extreme(alert_type: AlertType, current: Optional[int], bpm: int) -> int:
    if current is None:
        return bpm
    if alert_type is AlertType.HIGH_BPM:
        return max(current, bpm)
    return min(current, bpm)


def evaluate_reading(
    reading: Reading,
    open_alerts: Iterable[Alert],
    normal_streak: int,
    thresholds: Thresholds,
    dedup_window: float = ALERT_DEDUP_WINDOW_SECONDS,
    resolve_after: int = ALERT_RESOLVE_AFTER_NORMAL,
) -> AlertDecision:
    """Decide the alert changes caused by one accepted reading.

    Only the quality tier matters here; an anomalous reading inside the normal
    band never raises anything.
    """
    now = reading.timestamp
    bpm_alerts = [
        a for a in open_alerts
        if a.is_open and a.type in BPM_ALERT_TYPES and a.device_id == reading.device_id
    ]

    if reading.quality is Quality.GOOD:
        streak = normal_streak + 1
        decision = AlertDecision(normal_streak=streak)
        if streak >= resolve_after:
            decision.updated = [a.model_copy(update={"resolved_at": now}) for a in bpm_alerts]
        return decision

    decision = AlertDecision(normal_streak=0)
    alert_type = AlertType.HIGH_BPM if thresholds.is_above_normal(reading.bpm) else AlertType.LOW_BPM
    severity = Severity.CRITICAL if reading.quality is Quality.CRITICAL else Severity.WARNING
    cutoff = now - timedelta(seconds=dedup_window)

    duplicate = next(
        (
            a for a in sorted(bpm_alerts, key=lambda a: a.created_at, reverse=True)
            if a.type is alert_type and not a.acknowledged and a.created_at >= cutoff
        ),
        None,
    )

    if duplicate is None:
        decision.created.append(
            new_alert(
                reading.device_id,
                alert_type,
                severity,
                bpm_message(alert_type, reading.bpm, severity, thresholds),
                now,
                bpm_value=reading.bpm,
            )
        )
        return decision

    bpm_value = _more_extreme(alert_type, duplicate.bpm_value, reading.bpm)
    if _SEVERITY_ORDER[severity] < _SEVERITY_ORDER[duplicate.severity]:
        severity = duplicate.severity
    if bpm_value != duplicate.bpm_value or severity is not duplicate.severity:
        decision.updated.append(
            duplicate.model_copy(
                update={
                    "bpm_value": bpm_value,
                    "severity": severity,
                    "message": bpm_message(alert_type, bpm_value, severity, thresholds),
                }
            )
        )
    return decision


def failover_alert(transition: Transition, device_id: str) -> Alert:
    return new_alert(
        device_id,
        AlertType.SOURCE_FAILOVER,
        Severity.WARNING,
        transition.message,
        transition.at,
    )


def offline_alert(device: Device, now: datetime) -> Alert:
    return new_alert(
        device.device_id,
        AlertType.DEVICE_OFFLINE,
        Severity.CRITICAL,
        f"Device {device.name} ({device.device_id}) stopped sending heartbeats",
        now,
    )


def storage_alert(reason: str, now: datetime) -> Alert:
    return new_alert(
        SYSTEM_DEVICE_ID,
        AlertType.STORAGE_UNAVAILABLE,
        Severity.CRITICAL,
        f"Storage unavailable, readings kept in memory: {reason}",
        now,
    )


class AlertBook:
    """Every alert raised, keyed by id, in creation order. Alerts are never
    removed, only acknowledged or resolved."""

    def __init__(self):
        self._alerts: Dict[str, Alert] = {}
        self._normal_streaks: Dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._alerts)

    def __iter__(self):
        return iter(list(self._alerts.values()))

    def normal_streak(self, device_id: str) -> int:
        return self._normal_streaks.get(device_id, 0)

    def open_alerts(self) -> List[Alert]:
        return [a for a in self._alerts.values() if a.is_open]

    def find_open(self, alert_type: AlertType, device_id: str) -> Optional[Alert]:
        for alert in reversed(list(self._alerts.values())):
            if alert.is_open and alert.type is alert_type and alert.device_id == device_id:
                return alert
        return None

    def add(self, alert: Alert) -> Alert:
        self._alerts[alert.id] = alert
        return alert

    def apply(self, reading: Reading, decision: AlertDecision) -> List[Alert]:
        """Store the outcome of ``evaluate_reading``; returns changed alerts."""
        self._normal_streaks[reading.device_id] = decision.normal_streak
        for alert in decision.changes:
            self._alerts[alert.id] = alert
        return decision.changes

    def get(self, alert_id: str) -> Alert:
        try:
            return self._alerts[alert_id]
        except KeyError:
            raise AlertNotFound(alert_id) from None

    def acknowledge(self, alert_id: str) -> Tuple[Alert, bool]:
        """Acknowledge an alert. Returns the alert and whether it changed."""
        alert = self.get(alert_id)
        if alert.acknowledged:
            return alert, False
        alert = alert.model_copy(update={"acknowledged": True})
        self._alerts[alert_id] = alert
        return alert, True

    def resolve(self, alert_id: str, now: datetime) -> Optional[Alert]:
        alert = self.get(alert_id)
        if not alert.is_open:
            return None
        alert = alert.model_copy(update={"resolved_at": now})
        self._alerts[alert_id] = alert
        return alert

    def recent(self, limit: int) -> List[Alert]:
        """Newest first."""
        return list(reversed(self._alerts.values()))[:limit]
