"""Quality tiers and anomaly flags for canonical samples."""

import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from pulsewatch.config import (
    ANOMALY_MIN_CONFIDENCE,
    ANOMALY_RATE_OF_CHANGE,
    ANOMALY_WINDOW_SECONDS,
    CRITICAL_HIGH_BPM,
    CRITICAL_LOW_BPM,
    PROCESSING_SMOOTHING,
    WARNING_HIGH_BPM,
    WARNING_LOW_BPM,
)
from pulsewatch.models import Quality, Reading
from pulsewatch.normalizer import Sample


@dataclass(frozen=True)
class Thresholds:
    """Quality and anomaly thresholds. Bounds are exclusive: a bpm equal to a
    bound belongs to the milder tier.

    ``anomaly_rate_of_change`` applies to the smoothed ``processedBpm``, so
    within the window a raw sample must move more than
    ``anomaly_rate_of_change / smoothing`` (about 28.6 bpm by default) away
    from the previous processed value to be flagged.
    """

    critical_low: int = CRITICAL_LOW_BPM
    critical_high: int = CRITICAL_HIGH_BPM
    warning_low: int = WARNING_LOW_BPM
    warning_high: int = WARNING_HIGH_BPM
    anomaly_rate_of_change: float = ANOMALY_RATE_OF_CHANGE
    anomaly_window_seconds: float = ANOMALY_WINDOW_SECONDS
    anomaly_min_confidence: float = ANOMALY_MIN_CONFIDENCE
    smoothing: float = PROCESSING_SMOOTHING

    def __post_init__(self) -> None:
        if not (self.critical_low <= self.warning_low <= self.warning_high <= self.critical_high):
            raise ValueError("Thresholds must satisfy critical_low <= warning_low <= warning_high <= critical_high")
        if not (0.0 < self.smoothing <= 1.0):
            raise ValueError("smoothing must be in (0, 1]")

    def quality_of(self, bpm: float) -> Quality:
        if bpm < self.critical_low or bpm > self.critical_high:
            return Quality.CRITICAL
        if bpm < self.warning_low or bpm > self.warning_high:
            return Quality.WARNING
        return Quality.GOOD

    def is_above_normal(self, bpm: float) -> bool:
        return bpm > self.warning_high


class Classifier:
    """Turns samples into readings using the previous accepted reading."""

    def __init__(self, thresholds: Optional[Thresholds] = None):
        self.thresholds = thresholds or Thresholds()

    def classify(self, sample: Sample, previous: Optional[Reading] = None) -> Reading:
        t = self.thresholds
        window = timedelta(seconds=t.anomaly_window_seconds)
        recent = previous is not None and sample.received_at - previous.timestamp <= window

        if recent:
            processed = t.smoothing * sample.bpm + (1 - t.smoothing) * previous.processed_bpm
        else:
            processed = float(sample.bpm)

        rate_of_change = processed - previous.processed_bpm if previous is not None else 0.0

        is_anomaly = sample.confidence < t.anomaly_min_confidence or (
            recent and abs(rate_of_change) > t.anomaly_rate_of_change
        )

        return Reading(
            id=str(uuid.uuid4()),
            device_id=sample.device_id,
            bpm=sample.bpm,
            source=sample.source,
            quality=t.quality_of(sample.bpm),
            processed_bpm=round(processed, 2),
            confidence=sample.confidence,
            is_anomaly=is_anomaly,
            rate_of_change=round(rate_of_change, 2),
            timestamp=sample.received_at,
        )
