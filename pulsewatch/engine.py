"""The monitoring engine: one writer for all shared state.

Readings from both sources, explicit heartbeats, acknowledgments and the
periodic monitor all go through ``MonitoringEngine``. Every step that mutates
the system status, the alert book, the device registry or the failover
counter runs under a single ``asyncio.Lock``, and a failover's counter bump,
alert and status snapshot are written without yielding in between.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional

from pulsewatch.aggregator import HealthScorer, ReadingWindow, compute_statistics
from pulsewatch.alerts import (
    AlertBook,
    evaluate_reading,
    failover_alert,
    offline_alert,
    storage_alert,
)
from pulsewatch.arbiter import SourceArbiter, Transition
from pulsewatch.broadcaster import Broadcaster
from pulsewatch.classifier import Classifier, Thresholds
from pulsewatch.config import (
    DEVICE_NAMES,
    MONITOR_INTERVAL_SECONDS,
    PRIMARY_DEVICE_ID,
    PRIMARY_TIMEOUT_SECONDS,
    SECONDARY_DEVICE_ID,
    SECONDARY_TIMEOUT_SECONDS,
    SYSTEM_DEVICE_ID,
)
from pulsewatch.errors import MalformedPayload, StorageUnavailable
from pulsewatch.models import (
    ActiveSource,
    Alert,
    AlertType,
    Device,
    DeviceState,
    Reading,
    Source,
    Statistics,
    SystemStatus,
)
from pulsewatch.normalizer import Sample, normalize
from pulsewatch.storage import DataStorage

logger = logging.getLogger(__name__)

DEFAULT_DEVICE_IDS = {
    Source.PRIMARY: PRIMARY_DEVICE_ID,
    Source.SECONDARY: SECONDARY_DEVICE_ID,
}

DEVICE_TIMEOUTS = {
    Source.PRIMARY: timedelta(seconds=PRIMARY_TIMEOUT_SECONDS),
    Source.SECONDARY: timedelta(seconds=SECONDARY_TIMEOUT_SECONDS),
}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class MonitoringEngine:
    """Ingests both feeds, arbitrates between them and publishes updates."""

    def __init__(
        self,
        storage: Optional[DataStorage] = None,
        broadcaster: Optional[Broadcaster] = None,
        thresholds: Optional[Thresholds] = None,
        arbiter: Optional[SourceArbiter] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        now = clock()
        self.clock = clock
        self.storage = storage if storage is not None else DataStorage()
        self.broadcaster = broadcaster or Broadcaster()
        self.thresholds = thresholds or Thresholds()
        self.classifier = Classifier(self.thresholds)
        self.arbiter = arbiter or SourceArbiter(now)
        self.alerts = AlertBook()
        self.window = ReadingWindow()
        self.scorer = HealthScorer()
        self.status = SystemStatus.initial(now)
        self.devices: Dict[str, Device] = {
            device_id: Device(
                device_id=device_id,
                name=DEVICE_NAMES.get(device_id, device_id),
                type=source,
                last_heartbeat=now,
            )
            for source, device_id in DEFAULT_DEVICE_IDS.items()
        }
        self.rejected = 0
        self._lock = asyncio.Lock()
        self._monitor_task: Optional[asyncio.Task] = None

    # --- lifecycle ---------------------------------------------------------

    async def start(self, monitor_interval: float = MONITOR_INTERVAL_SECONDS) -> None:
        """Start storage flushing and the heartbeat monitor."""
        await self.storage.start()
        if self._monitor_task is None:
            self._monitor_task = asyncio.create_task(self._run_monitor(monitor_interval))
        logger.info("Engine started, active source: %s", self.status.active_source.value)

    async def stop(self) -> None:
        if self._monitor_task:
            self._monitor_task.cancel()
            try:
                await self._monitor_task
            except asyncio.CancelledError:
                pass
            self._monitor_task = None
        await self.storage.stop()
        logger.info("Engine stopped")

    async def _run_monitor(self, interval: float) -> None:
        """Drive heartbeat checks forever, whatever happens upstream."""
        while True:
            await asyncio.sleep(self._next_delay(interval))
            try:
                await self.tick()
            except Exception:
                logger.exception("Monitor tick failed, continuing")

    def _next_delay(self, interval: float) -> float:
        # Wake up right after the next liveness deadline if it comes first.
        deadline = self.arbiter.next_deadline(self.clock())
        if deadline is None:
            return interval
        return max(0.0, min(interval, deadline + 0.01))

    # --- ingestion ---------------------------------------------------------

    async def ingest(self, source: Source, payload: Mapping[str, Any]) -> Optional[Reading]:
        """Process one raw payload from ``source``.

        Returns the accepted reading, or None when the payload only served as
        a heartbeat because ``source`` is not the active source.

        Raises:
            MalformedPayload: the payload was discarded; no state changed.
        """
        async with self._lock:
            now = self.clock()
            try:
                sample = normalize(source, payload, now)
                if source is Source.PRIMARY:
                    self._check_device(source, sample.device_id)
            except MalformedPayload as e:
                self.rejected += 1
                logger.warning("%s", e)
                raise
            return await self._accept(sample, now)

    async def heartbeat(
        self,
        source: Source,
        device_id: Optional[str] = None,
        battery_level: Optional[float] = None,
        firmware_version: Optional[str] = None,
    ) -> SystemStatus:
        """Record an explicit liveness ping.

        Raises:
            MalformedPayload: ``device_id`` belongs to the other source.
        """
        device_id = device_id or DEFAULT_DEVICE_IDS[source]
        async with self._lock:
            try:
                self._check_device(source, device_id)
            except MalformedPayload as e:
                self.rejected += 1
                logger.warning("%s", e)
                raise
            now = self.clock()
            changes = self._record_heartbeat(
                source,
                device_id,
                now,
                battery_level,
                firmware_version,
            )
            self._arbitrate(now)
            self._set_status(now)
            self._publish_alerts(changes)
            return self.status

    async def _accept(self, sample: Sample, now: datetime) -> Optional[Reading]:
        # Relayed samples carry the sensor's id; the heartbeat belongs to the relay.
        if sample.source is Source.PRIMARY:
            source_device = sample.device_id
        else:
            source_device = SECONDARY_DEVICE_ID
        changes = self._record_heartbeat(
            sample.source, source_device, now, sample.battery_level, sample.firmware_version
        )
        self._arbitrate(now)

        if self.arbiter.active.value != sample.source.value:
            self._set_status(now)
            self._publish_alerts(changes)
            logger.debug(
                "Standby %s reading ignored, active source is %s",
                sample.source.value,
                self.arbiter.active.value,
            )
            return None

        reading = self.classifier.classify(sample, self.window.latest())
        self.window.add(reading)

        decision = evaluate_reading(
            reading,
            self.alerts.open_alerts(),
            self.alerts.normal_streak(reading.device_id),
            self.thresholds,
        )
        changes.extend(self.alerts.apply(reading, decision))
        for alert in decision.created:
            logger.warning("Alert raised: %s", alert.message)

        self._set_status(now)
        self.broadcaster.publish(self.status, reading=reading)
        self._publish_alerts(changes)

        await self._persist(reading, now)
        return reading

    async def _persist(self, reading: Reading, now: datetime) -> None:
        try:
            await self.storage.ingest_reading(reading)
        except StorageUnavailable as e:
            logger.error("Could not persist reading %s: %s", reading.id, e)
            self._publish_alerts(self._storage_alerts(now))

    # --- state transitions -------------------------------------------------

    def _check_device(self, source: Source, device_id: str) -> None:
        device = self.devices.get(device_id)
        if device is not None and device.type is not source:
            raise MalformedPayload(
                source.value, f"device {device_id} is a {device.type.value} device"
            )

    def _record_heartbeat(
        self,
        source: Source,
        device_id: str,
        now: datetime,
        battery_level: Optional[float] = None,
        firmware_version: Optional[str] = None,
    ) -> List[Alert]:
        self.arbiter.record_heartbeat(source, now)

        device = self.devices.get(device_id)
        if device is None:
            device = Device(
                device_id=device_id,
                name=DEVICE_NAMES.get(device_id, device_id),
                type=source,
                last_heartbeat=now,
            )
            logger.info("Registered %s device %s", source.value, device_id)

        updates: Dict[str, Any] = {"last_heartbeat": now, "status": DeviceState.ONLINE}
        if battery_level is not None:
            updates["battery_level"] = battery_level
        if firmware_version is not None:
            updates["firmware_version"] = firmware_version
        was_offline = device.status is DeviceState.OFFLINE
        self.devices[device_id] = device.model_copy(update=updates)

        if not was_offline:
            return []
        logger.info("Device %s is back online", device_id)
        offline = self.alerts.find_open(AlertType.DEVICE_OFFLINE, device_id)
        if offline is None:
            return []
        return [self.alerts.resolve(offline.id, now)]

    def _arbitrate(self, now: datetime) -> Optional[Transition]:
        """Apply a pending source transition as one step: the counter, the
        failover alert and the new status snapshot."""
        transition = self.arbiter.evaluate(now)
        if transition is None:
            return None

        alert = self.alerts.add(failover_alert(transition, PRIMARY_DEVICE_ID))
        self._set_status(now, failover_count=self.status.failover_count + 1)
        logger.warning(
            "Failover #%d: %s -> %s",
            self.status.failover_count,
            transition.previous.value,
            transition.current.value,
        )
        self.broadcaster.publish(self.status, alert=alert)
        return transition

    def _mark_offline_devices(self, now: datetime) -> List[Alert]:
        changes = []
        for device_id, device in list(self.devices.items()):
            if device.status is DeviceState.OFFLINE:
                continue
            if now - device.last_heartbeat < DEVICE_TIMEOUTS[device.type]:
                continue
            self.devices[device_id] = device.model_copy(update={"status": DeviceState.OFFLINE})
            logger.warning("Device %s went offline", device_id)
            if self.alerts.find_open(AlertType.DEVICE_OFFLINE, device_id) is None:
                changes.append(self.alerts.add(offline_alert(device, now)))
        return changes

    def _storage_alerts(self, now: datetime) -> List[Alert]:
        open_alert = self.alerts.find_open(AlertType.STORAGE_UNAVAILABLE, SYSTEM_DEVICE_ID)
        if self.storage.available:
            if open_alert is None:
                return []
            logger.info("Storage available again")
            return [self.alerts.resolve(open_alert.id, now)]
        if open_alert is not None:
            return []
        return [self.alerts.add(storage_alert(self.storage.last_error or "unknown error", now))]

    def _set_status(self, now: datetime, failover_count: Optional[int] = None) -> None:
        active = self.arbiter.active
        self.status = SystemStatus(
            active_source=active,
            failover_count=self.status.failover_count if failover_count is None else failover_count,
            last_primary_heartbeat=self.arbiter.last_heartbeat[Source.PRIMARY],
            last_secondary_heartbeat=self.arbiter.last_heartbeat[Source.SECONDARY],
            system_health=HealthScorer.health(active, self.scorer.score),
            cache_health_score=round(self.scorer.score, 4),
            updated_at=now,
        )

    def _publish_alerts(self, alerts: List[Alert]) -> None:
        for alert in alerts:
            self.broadcaster.publish(self.status, alert=alert)

    async def tick(self) -> SystemStatus:
        """One run of the periodic monitor: timeouts, failover, health."""
        async with self._lock:
            now = self.clock()
            for timeout in self.arbiter.lapses(now):
                logger.warning(
                    "%s source timed out (last heartbeat %s)",
                    timeout.source.value,
                    timeout.last_heartbeat.isoformat() if timeout.last_heartbeat else "never",
                )
            self._arbitrate(now)
            changes = self._mark_offline_devices(now)

            active = self.arbiter.active
            last_heartbeat = None
            if active is not ActiveSource.CACHE:
                last_heartbeat = self.arbiter.last_heartbeat[Source(active.value)]
            self.scorer.observe(active, last_heartbeat, self.window.recent(), now)
            changes.extend(self._storage_alerts(now))

            previous_health = self.status.system_health
            self._set_status(now)
            if changes:
                self._publish_alerts(changes)
            elif self.status.system_health is not previous_health:
                logger.info("System health is now %s", self.status.system_health.value)
                self.broadcaster.publish(self.status)
            return self.status

    # --- queries and commands ----------------------------------------------

    async def acknowledge(self, alert_id: str) -> Alert:
        """Acknowledge an alert; acknowledging twice is a no-op.

        Raises:
            AlertNotFound: no alert has this id.
        """
        async with self._lock:
            alert, changed = self.alerts.acknowledge(alert_id)
            if changed:
                logger.info("Alert %s acknowledged", alert_id)
                self._set_status(self.clock())
                self.broadcaster.publish(self.status, alert=alert)
            return alert

    def recent_readings(self, limit: int) -> List[Reading]:
        return self.window.recent(limit)

    def recent_alerts(self, limit: int) -> List[Alert]:
        return self.alerts.recent(limit)

    def list_devices(self) -> List[Device]:
        return list(self.devices.values())

    def statistics(self) -> Statistics:
        return compute_statistics(self.window.recent())

    def history(self, device_id: str, start: datetime, end: datetime) -> List[Reading]:
        return self.storage.query_readings(device_id, start, end)
