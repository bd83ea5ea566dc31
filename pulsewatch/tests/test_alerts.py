"""Tests for alert rules and the alert book."""

import uuid
from datetime import datetime, timedelta, timezone

import pytest

from pulsewatch.alerts import (
    AlertBook,
    evaluate_reading,
    failover_alert,
    offline_alert,
    storage_alert,
)
from pulsewatch.arbiter import Transition
from pulsewatch.classifier import Thresholds
from pulsewatch.errors import AlertNotFound
from pulsewatch.models import (
    ActiveSource,
    AlertType,
    Device,
    Reading,
    Severity,
    Source,
)

T0 = datetime(2024, 1, 15, 10, 0, 0, tzinfo=timezone.utc)
THRESHOLDS = Thresholds()


def make_reading(bpm: int, seconds: float = 0, device_id: str = "ARDUINO_UNO_001", is_anomaly: bool = False) -> Reading:
    return Reading(
        id=str(uuid.uuid4()),
        device_id=device_id,
        bpm=bpm,
        source=Source.PRIMARY,
        quality=THRESHOLDS.quality_of(bpm),
        processed_bpm=float(bpm),
        confidence=0.95,
        is_anomaly=is_anomaly,
        rate_of_change=0.0,
        timestamp=T0 + timedelta(seconds=seconds),
    )


def feed(book: AlertBook, reading: Reading):
    decision = evaluate_reading(
        reading, book.open_alerts(), book.normal_streak(reading.device_id), THRESHOLDS
    )
    return book.apply(reading, decision)


def test_low_bpm_raises_one_critical_alert():
    book = AlertBook()
    changes = feed(book, make_reading(45))

    assert len(changes) == 1
    alert = changes[0]
    assert alert.type is AlertType.LOW_BPM
    assert alert.severity is Severity.CRITICAL
    assert alert.bpm_value == 45
    assert alert.message == "BPM reading of 45 below threshold of 50"
    assert not alert.acknowledged
    assert alert.resolved_at is None


def test_warning_reading_raises_warning_alert():
    changes = feed(AlertBook(), make_reading(110))
    assert changes[0].type is AlertType.HIGH_BPM
    assert changes[0].severity is Severity.WARNING
    assert changes[0].message == "BPM reading of 110 exceeds threshold of 100"


def test_good_reading_raises_nothing():
    book = AlertBook()
    assert feed(book, make_reading(72)) == []
    assert len(book) == 0


def test_anomaly_in_normal_band_raises_nothing():
    book = AlertBook()
    assert feed(book, make_reading(90, is_anomaly=True)) == []


def test_duplicate_keeps_most_extreme_value():
    book = AlertBook()
    feed(book, make_reading(130))
    changes = feed(book, make_reading(145, seconds=10))

    assert len(book) == 1
    assert len(changes) == 1
    assert changes[0].bpm_value == 145

    # A milder duplicate changes nothing
    assert feed(book, make_reading(125, seconds=20)) == []
    assert list(book)[0].bpm_value == 145


def test_duplicate_escalates_severity():
    book = AlertBook()
    first = feed(book, make_reading(110))[0]
    assert first.severity is Severity.WARNING

    escalated = feed(book, make_reading(135, seconds=5))[0]
    assert escalated.id == first.id
    assert escalated.severity is Severity.CRITICAL
    assert escalated.message == "BPM reading of 135 exceeds threshold of 120"

    # Never de-escalates
    feed(book, make_reading(140, seconds=10))
    assert book.get(first.id).severity is Severity.CRITICAL


def test_new_alert_after_dedup_window():
    book = AlertBook()
    feed(book, make_reading(130))
    changes = feed(book, make_reading(131, seconds=301))
    assert len(book) == 2
    assert changes[0].bpm_value == 131


def test_acknowledged_alert_is_not_deduplicated():
    book = AlertBook()
    first = feed(book, make_reading(130))[0]
    book.acknowledge(first.id)

    changes = feed(book, make_reading(132, seconds=5))
    assert len(changes) == 1
    assert changes[0].id != first.id


def test_high_and_low_are_separate():
    book = AlertBook()
    feed(book, make_reading(130))
    feed(book, make_reading(45, seconds=5))
    assert sorted(a.type.value for a in book) == ["high_bpm", "low_bpm"]


def test_alerts_are_per_device():
    book = AlertBook()
    feed(book, make_reading(130))
    feed(book, make_reading(130, seconds=1, device_id="ARDUINO_UNO_002"))
    assert len(book) == 2


def test_auto_resolve_after_normal_readings():
    book = AlertBook()
    alert = feed(book, make_reading(130))[0]

    assert feed(book, make_reading(74, seconds=2)) == []
    assert feed(book, make_reading(73, seconds=4)) == []
    resolved = feed(book, make_reading(72, seconds=6))

    assert [a.id for a in resolved] == [alert.id]
    assert resolved[0].resolved_at == T0 + timedelta(seconds=6)
    assert book.open_alerts() == []


def test_abnormal_reading_resets_normal_streak():
    book = AlertBook()
    feed(book, make_reading(130))
    feed(book, make_reading(74, seconds=2))
    feed(book, make_reading(74, seconds=4))
    feed(book, make_reading(128, seconds=6))
    feed(book, make_reading(74, seconds=8))
    assert len(book.open_alerts()) == 1
    assert book.normal_streak("ARDUINO_UNO_001") == 1


def test_acknowledge_is_idempotent():
    book = AlertBook()
    alert = feed(book, make_reading(45))[0]

    acknowledged, changed = book.acknowledge(alert.id)
    assert changed
    assert acknowledged.acknowledged

    again, changed = book.acknowledge(alert.id)
    assert not changed
    assert again == acknowledged


def test_unknown_alert():
    with pytest.raises(AlertNotFound):
        AlertBook().acknowledge("missing")


def test_resolve_only_once():
    book = AlertBook()
    alert = storage_alert("disk full", T0)
    book.add(alert)
    assert book.resolve(alert.id, T0).resolved_at == T0
    assert book.resolve(alert.id, T0) is None


def test_recent_is_newest_first():
    book = AlertBook()
    first = feed(book, make_reading(130))[0]
    second = feed(book, make_reading(45, seconds=1))[0]
    assert [a.id for a in book.recent(10)] == [second.id, first.id]
    assert [a.id for a in book.recent(1)] == [second.id]


def test_failover_alert():
    transition = Transition(ActiveSource.PRIMARY, ActiveSource.SECONDARY, T0)
    alert = failover_alert(transition, "ARDUINO_UNO_001")
    assert alert.type is AlertType.SOURCE_FAILOVER
    assert alert.severity is Severity.WARNING
    assert alert.message == "System failover: Switched to secondary data source"
    assert alert.bpm_value is None


def test_offline_and_storage_alerts_are_critical():
    device = Device(device_id="THINGSPEAK_BACKUP", name="ThingSpeak relay", type=Source.SECONDARY, last_heartbeat=T0)
    offline = offline_alert(device, T0)
    assert offline.type is AlertType.DEVICE_OFFLINE
    assert offline.severity is Severity.CRITICAL
    assert offline.device_id == "THINGSPEAK_BACKUP"

    storage = storage_alert("disk full", T0)
    assert storage.device_id == "system"
    assert storage.severity is Severity.CRITICAL
    assert "disk full" in storage.message
