"""Error kinds raised by the ingestion core."""

from typing import Optional


class PulseWatchError(Exception):
    """Base class for engine errors."""


class MalformedPayload(PulseWatchError):
    """A source delivered a payload that cannot become a reading."""

    def __init__(self, source: str, reason: str):
        self.source = source
        self.reason = reason
        super().__init__(f"Malformed {source} payload: {reason}")


class StorageUnavailable(PulseWatchError):
    """The persistence collaborator rejected a write."""

    def __init__(self, reason: str, pending: int = 0):
        self.reason = reason
        self.pending = pending
        super().__init__(f"Storage unavailable ({pending} records pending): {reason}")


class ObserverDeliveryFailure(PulseWatchError):
    """An event could not be handed to one observer."""

    def __init__(self, observer_id: str, reason: Optional[str] = None):
        self.observer_id = observer_id
        super().__init__(f"Delivery to observer {observer_id} failed: {reason or 'closed'}")


class AlertNotFound(PulseWatchError):
    """No alert exists with the requested id."""

    def __init__(self, alert_id: str):
        self.alert_id = alert_id
        super().__init__(f"Alert {alert_id} not found")
