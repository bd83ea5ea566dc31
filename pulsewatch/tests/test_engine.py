"""Tests for the monitoring engine: ingestion, failover, alerts and health."""

import asyncio
from datetime import timedelta

import pytest

from pulsewatch.config import PRIMARY_DEVICE_ID, SECONDARY_DEVICE_ID
from pulsewatch.engine import MonitoringEngine
from pulsewatch.errors import AlertNotFound, MalformedPayload, StorageUnavailable
from pulsewatch.models import (
    ActiveSource,
    AlertType,
    DeviceState,
    Quality,
    Source,
    SystemHealth,
)
from pulsewatch.storage import DataStorage


def drain(subscription):
    events = []
    while subscription.pending:
        events.append(subscription.get_nowait())
    return events


def relay_entry(bpm: int, entry_id: int = 1):
    return {"entry_id": entry_id, "field1": str(bpm)}


class BrokenStorage(DataStorage):
    """Storage whose writes always fail until repaired."""

    def __init__(self, data_dir: str):
        super().__init__(data_dir)
        self.broken = True

    async def ingest_reading(self, reading):
        if not self.broken:
            return await super().ingest_reading(reading)
        self.available = False
        self.last_error = "disk full"
        raise StorageUnavailable("disk full", pending=1)


@pytest.mark.asyncio
async def test_primary_reading_is_accepted(engine, clock):
    clock.at(2)
    reading = await engine.ingest(Source.PRIMARY, {"deviceId": PRIMARY_DEVICE_ID, "bpm": 72})

    assert reading.bpm == 72
    assert reading.quality is Quality.GOOD
    assert reading.source is Source.PRIMARY
    assert engine.recent_readings(10) == [reading]
    assert engine.status.last_primary_heartbeat == clock()
    assert engine.status.active_source is ActiveSource.PRIMARY


@pytest.mark.asyncio
async def test_failover_after_primary_timeout(engine, clock):
    """Primary silent since start; secondary reports at 30s and 55s."""
    subscription = engine.broadcaster.subscribe()

    clock.at(30)
    assert await engine.ingest(Source.SECONDARY, relay_entry(74, 1)) is None
    clock.at(55)
    assert await engine.ingest(Source.SECONDARY, relay_entry(75, 2)) is None
    clock.at(59)
    await engine.tick()
    assert engine.status.active_source is ActiveSource.PRIMARY

    clock.at(65)
    status = await engine.tick()

    assert status.active_source is ActiveSource.SECONDARY
    assert status.failover_count == 1
    failovers = [a for a in engine.recent_alerts(50) if a.type is AlertType.SOURCE_FAILOVER]
    assert len(failovers) == 1
    assert failovers[0].message == "System failover: Switched to secondary data source"
    assert failovers[0].device_id == PRIMARY_DEVICE_ID

    events = drain(subscription)
    failover_events = [e for e in events if e.alert and e.alert.type is AlertType.SOURCE_FAILOVER]
    assert len(failover_events) == 1
    assert failover_events[0].system_status.active_source is ActiveSource.SECONDARY
    assert failover_events[0].system_status.failover_count == 1

    clock.at(66)
    reading = await engine.ingest(Source.SECONDARY, relay_entry(76, 3))
    assert reading.source is Source.SECONDARY
    assert reading.device_id == PRIMARY_DEVICE_ID


@pytest.mark.asyncio
async def test_failover_event_precedes_reading_event(engine, clock):
    subscription = engine.broadcaster.subscribe()

    clock.at(65)
    reading = await engine.ingest(Source.SECONDARY, relay_entry(74))

    assert reading is not None
    events = drain(subscription)
    assert events[0].alert.type is AlertType.SOURCE_FAILOVER
    assert events[1].latest_reading.id == reading.id
    assert events[1].system_status.active_source is ActiveSource.SECONDARY


@pytest.mark.asyncio
async def test_every_transition_is_counted_once(engine, clock):
    subscription = engine.broadcaster.subscribe()

    clock.at(65)
    await engine.ingest(Source.SECONDARY, relay_entry(74, 1))    # -> secondary
    clock.at(70)
    await engine.ingest(Source.PRIMARY, {"bpm": 72})             # -> primary
    clock.at(135)
    await engine.ingest(Source.SECONDARY, relay_entry(75, 2))    # -> secondary
    clock.at(140)
    await engine.ingest(Source.PRIMARY, {"bpm": 73})             # -> primary
    clock.at(265)
    await engine.tick()                                          # -> cache

    assert engine.status.failover_count == 5
    assert engine.status.active_source is ActiveSource.CACHE
    failovers = [a for a in engine.recent_alerts(100) if a.type is AlertType.SOURCE_FAILOVER]
    assert len(failovers) == 5

    events = [
        e for e in drain(subscription)
        if e.alert and e.alert.type is AlertType.SOURCE_FAILOVER
    ]
    assert [e.system_status.failover_count for e in events] == [1, 2, 3, 4, 5]
    assert [e.system_status.active_source for e in events] == [
        ActiveSource.SECONDARY,
        ActiveSource.PRIMARY,
        ActiveSource.SECONDARY,
        ActiveSource.PRIMARY,
        ActiveSource.CACHE,
    ]
    sequences = [e.sequence for e in events]
    assert sequences == sorted(sequences)


@pytest.mark.asyncio
async def test_concurrent_ingestion_keeps_counter_consistent(engine, clock):
    clock.at(65)
    await asyncio.gather(*(engine.ingest(Source.SECONDARY, relay_entry(74, i)) for i in range(10)))

    assert engine.status.failover_count == 1
    failovers = [a for a in engine.recent_alerts(100) if a.type is AlertType.SOURCE_FAILOVER]
    assert len(failovers) == 1


@pytest.mark.asyncio
async def test_standby_source_only_counts_as_heartbeat(engine, clock):
    clock.at(5)
    result = await engine.ingest(Source.SECONDARY, relay_entry(150))

    assert result is None
    assert engine.recent_readings(10) == []
    assert engine.recent_alerts(10) == []
    assert engine.status.last_secondary_heartbeat == clock()
    assert engine.devices[SECONDARY_DEVICE_ID].last_heartbeat == clock()


@pytest.mark.asyncio
async def test_malformed_payload_changes_nothing(engine, clock):
    clock.at(10)
    with pytest.raises(MalformedPayload):
        await engine.ingest(Source.PRIMARY, {"bpm": "abc"})
    with pytest.raises(MalformedPayload):
        await engine.ingest(Source.SECONDARY, {"field1": "-5"})

    assert engine.rejected == 2
    assert engine.status.last_primary_heartbeat == clock.start
    assert engine.status.last_secondary_heartbeat == clock.start
    assert engine.recent_readings(10) == []


@pytest.mark.asyncio
async def test_high_bpm_alert_auto_resolves(engine, clock):
    alerts_seen = []
    for i, bpm in enumerate([72, 75, 130, 74, 73, 72]):
        clock.at(2 * i)
        await engine.ingest(Source.PRIMARY, {"bpm": bpm})
        alerts_seen.append(len(engine.alerts.open_alerts()))

    assert alerts_seen == [0, 0, 1, 1, 1, 0]
    (alert,) = [a for a in engine.recent_alerts(10) if a.type is AlertType.HIGH_BPM]
    assert alert.bpm_value == 130
    assert alert.resolved_at == clock()


@pytest.mark.asyncio
async def test_low_bpm_alert(engine, clock):
    clock.at(1)
    await engine.ingest(Source.PRIMARY, {"bpm": 45})

    (alert,) = engine.recent_alerts(10)
    assert alert.type is AlertType.LOW_BPM
    assert alert.bpm_value == 45
    assert alert.device_id == PRIMARY_DEVICE_ID


@pytest.mark.asyncio
async def test_acknowledge(engine, clock):
    clock.at(1)
    await engine.ingest(Source.PRIMARY, {"bpm": 45})
    (alert,) = engine.recent_alerts(10)
    subscription = engine.broadcaster.subscribe()

    first = await engine.acknowledge(alert.id)
    second = await engine.acknowledge(alert.id)

    assert first.acknowledged and second.acknowledged
    events = drain(subscription)
    assert len(events) == 1
    assert events[0].alert.acknowledged

    with pytest.raises(AlertNotFound):
        await engine.acknowledge("missing")


@pytest.mark.asyncio
async def test_cache_state_is_critical(engine, clock):
    clock.at(121)
    status = await engine.tick()
    assert status.active_source is ActiveSource.CACHE
    assert status.system_health is SystemHealth.CRITICAL


@pytest.mark.asyncio
async def test_health_degrades_while_primary_is_late(engine, clock):
    for seconds in range(5, 60, 5):
        clock.at(seconds)
        await engine.tick()
    assert engine.status.active_source is ActiveSource.PRIMARY
    assert engine.status.cache_health_score < 1.0

    scores = []
    for seconds in range(60, 120, 5):
        clock.at(seconds)
        await engine.heartbeat(Source.PRIMARY)
        scores.append((await engine.tick()).cache_health_score)
    assert scores == sorted(scores)


@pytest.mark.asyncio
async def test_device_goes_offline_and_recovers(engine, clock):
    clock.at(61)
    await engine.tick()

    assert engine.devices[PRIMARY_DEVICE_ID].status is DeviceState.OFFLINE
    offline = [a for a in engine.recent_alerts(10) if a.type is AlertType.DEVICE_OFFLINE]
    assert len(offline) == 1
    assert offline[0].is_open

    # A second check does not raise another alert
    clock.at(62)
    await engine.tick()
    assert len([a for a in engine.recent_alerts(10) if a.type is AlertType.DEVICE_OFFLINE]) == 1

    clock.at(63)
    await engine.ingest(Source.PRIMARY, {"bpm": 72})
    assert engine.devices[PRIMARY_DEVICE_ID].status is DeviceState.ONLINE
    assert engine.alerts.get(offline[0].id).resolved_at == clock()
    assert engine.status.active_source is ActiveSource.PRIMARY


@pytest.mark.asyncio
async def test_heartbeat_updates_device(engine, clock):
    clock.at(3)
    status = await engine.heartbeat(Source.PRIMARY, battery_level=80.0, firmware_version="2.0.1")

    device = engine.devices[PRIMARY_DEVICE_ID]
    assert device.battery_level == 80.0
    assert device.firmware_version == "2.0.1"
    assert status.last_primary_heartbeat == clock()


@pytest.mark.asyncio
async def test_new_device_is_registered(engine, clock):
    clock.at(3)
    await engine.ingest(Source.PRIMARY, {"deviceId": "ARDUINO_UNO_002", "bpm": 70})
    assert {d.device_id for d in engine.list_devices()} == {
        PRIMARY_DEVICE_ID,
        SECONDARY_DEVICE_ID,
        "ARDUINO_UNO_002",
    }


@pytest.mark.asyncio
async def test_storage_failure_raises_alert_and_recovers(tmp_path, clock):
    storage = BrokenStorage(str(tmp_path / "data"))
    engine = MonitoringEngine(storage=storage, clock=clock)

    clock.at(1)
    reading = await engine.ingest(Source.PRIMARY, {"bpm": 72})
    assert reading is not None

    clock.at(2)
    await engine.ingest(Source.PRIMARY, {"bpm": 73})
    storage_alerts = [a for a in engine.recent_alerts(10) if a.type is AlertType.STORAGE_UNAVAILABLE]
    assert len(storage_alerts) == 1
    assert storage_alerts[0].device_id == "system"

    storage.broken = False
    storage.available = True
    clock.at(3)
    await engine.tick()
    assert engine.alerts.get(storage_alerts[0].id).resolved_at == clock()


@pytest.mark.asyncio
async def test_statistics(engine, clock):
    for i, bpm in enumerate([70, 72, 74]):
        clock.at(20 * i)
        await engine.ingest(Source.PRIMARY, {"bpm": bpm})

    stats = engine.statistics()
    assert stats.count == 3
    assert stats.average_bpm == 72.0


@pytest.mark.asyncio
async def test_history_includes_buffered_readings(engine, clock):
    for i in range(3):
        clock.at(i)
        await engine.ingest(Source.PRIMARY, {"bpm": 70 + i})

    readings = engine.history(PRIMARY_DEVICE_ID, clock.start, clock.start + timedelta(minutes=1))
    assert [r.bpm for r in readings] == [70, 71, 72]


@pytest.mark.asyncio
async def test_monitor_survives_failing_ticks(engine, monkeypatch):
    calls = []

    async def flaky_tick():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("boom")
        return engine.status

    monkeypatch.setattr(engine, "tick", flaky_tick)
    await engine.start(monitor_interval=0.01)
    try:
        for _ in range(100):
            if len(calls) >= 3:
                break
            await asyncio.sleep(0.01)
    finally:
        await engine.stop()

    assert len(calls) >= 3


@pytest.mark.asyncio
async def test_leaving_cache_is_one_failover(engine, clock):
    clock.at(121)
    await engine.tick()
    assert engine.status.active_source is ActiveSource.CACHE
    assert engine.status.system_health is SystemHealth.CRITICAL
    assert engine.status.failover_count == 1
    subscription = engine.broadcaster.subscribe()

    clock.at(130)
    reading = await engine.ingest(Source.PRIMARY, {"bpm": 72})

    assert reading is not None
    assert engine.status.active_source is ActiveSource.PRIMARY
    assert engine.status.failover_count == 2
    assert engine.status.system_health is not SystemHealth.CRITICAL
    failovers = [a for a in engine.recent_alerts(50) if a.type is AlertType.SOURCE_FAILOVER]
    assert len(failovers) == 2
    assert failovers[0].message == "System failover: Switched to primary data source"

    events = drain(subscription)
    assert events[0].alert.type is AlertType.SOURCE_FAILOVER
    assert events[0].system_status.failover_count == 2
    assert events[1].latest_reading.id == reading.id


@pytest.mark.asyncio
async def test_primary_payload_for_relay_device_is_rejected(engine, clock):
    clock.at(121)
    await engine.tick()

    clock.at(125)
    with pytest.raises(MalformedPayload):
        await engine.ingest(Source.PRIMARY, {"deviceId": SECONDARY_DEVICE_ID, "bpm": 72})

    assert engine.rejected == 1
    assert engine.status.active_source is ActiveSource.CACHE
    assert engine.status.failover_count == 1
    assert engine.arbiter.last_heartbeat[Source.PRIMARY] == clock.start
    assert engine.recent_readings(10) == []
    assert engine.devices[SECONDARY_DEVICE_ID].status is DeviceState.OFFLINE


@pytest.mark.asyncio
async def test_heartbeat_for_other_source_device_is_rejected(engine, clock):
    clock.at(5)
    with pytest.raises(MalformedPayload):
        await engine.heartbeat(Source.SECONDARY, device_id=PRIMARY_DEVICE_ID)

    assert engine.rejected == 1
    assert engine.arbiter.last_heartbeat[Source.SECONDARY] == clock.start
