"""Rolling statistics over recent readings and the composite health score."""

import math
from collections import deque
from datetime import datetime
from typing import Deque, Dict, List, Optional, Sequence

import polars as pl

from pulsewatch.config import (
    HEALTH_SAMPLE_WINDOW,
    HEALTH_SMOOTHING,
    HEALTH_WEIGHTS,
    PRIMARY_HEARTBEAT_INTERVAL_SECONDS,
    PRIMARY_TIMEOUT_SECONDS,
    READING_WINDOW_SIZE,
    SECONDARY_HEARTBEAT_INTERVAL_SECONDS,
    SECONDARY_TIMEOUT_SECONDS,
    TREND_GROUP_SIZE,
)
from pulsewatch.models import (
    ActiveSource,
    Quality,
    Reading,
    Source,
    Statistics,
    SystemHealth,
    Trend,
)


class ReadingWindow:
    """The most recent accepted readings, newest first."""

    def __init__(self, size: int = READING_WINDOW_SIZE):
        self._readings: Deque[Reading] = deque(maxlen=size)

    def __len__(self) -> int:
        return len(self._readings)

    def add(self, reading: Reading) -> None:
        self._readings.appendleft(reading)

    def latest(self) -> Optional[Reading]:
        return self._readings[0] if self._readings else None

    def recent(self, limit: Optional[int] = None) -> List[Reading]:
        readings = list(self._readings)
        return readings if limit is None else readings[:limit]


def _trend(recent: Optional[float], previous: Optional[float]) -> Trend:
    if recent is None or previous is None or math.isclose(recent, previous):
        return Trend.STABLE
    return Trend.INCREASING if recent > previous else Trend.DECREASING


def compute_statistics(readings: Sequence[Reading], group_size: int = TREND_GROUP_SIZE) -> Statistics:
    """Summarize newest-first readings, leaving anomalies out.

    The trend compares the mean of the newest ``group_size`` readings with the
    mean of the ``group_size`` readings before them.
    """
    if not readings:
        return Statistics(count=0)

    df = pl.DataFrame(
        {
            "bpm": [r.bpm for r in readings],
            "is_anomaly": [r.is_anomaly for r in readings],
        }
    ).filter(~pl.col("is_anomaly"))

    if df.is_empty():
        return Statistics(count=0)

    summary = df.select(
        pl.col("bpm").count().alias("count"),
        pl.col("bpm").mean().alias("average"),
        pl.col("bpm").min().alias("min"),
        pl.col("bpm").max().alias("max"),
    ).row(0, named=True)

    recent = df.head(group_size)["bpm"].mean()
    previous_df = df.slice(group_size, group_size)
    previous = previous_df["bpm"].mean() if previous_df.height > 0 else None

    return Statistics(
        count=summary["count"],
        average_bpm=round(summary["average"], 2),
        min_bpm=summary["min"],
        max_bpm=summary["max"],
        recent_average=round(recent, 2),
        trend=_trend(recent, previous),
    )


class HealthScorer:
    """Smoothed composite health score in [0, 1].

    Each observation blends three signals: how many recent checks found the
    active source reporting on schedule, the share of ``good`` readings, and
    how fresh the active source's last heartbeat is. The blend is smoothed
    with an exponential moving average, so the score moves gradually in both
    directions.
    """

    def __init__(
        self,
        sample_window: int = HEALTH_SAMPLE_WINDOW,
        smoothing: float = HEALTH_SMOOTHING,
        weights: Optional[Dict[str, float]] = None,
        initial: float = 1.0,
    ):
        self.weights = weights or HEALTH_WEIGHTS
        self.smoothing = smoothing
        self.score = initial
        self._samples: Deque[bool] = deque(maxlen=sample_window)
        self._intervals = {
            Source.PRIMARY: PRIMARY_HEARTBEAT_INTERVAL_SECONDS,
            Source.SECONDARY: SECONDARY_HEARTBEAT_INTERVAL_SECONDS,
        }
        self._timeouts = {
            Source.PRIMARY: PRIMARY_TIMEOUT_SECONDS,
            Source.SECONDARY: SECONDARY_TIMEOUT_SECONDS,
        }

    def observe(
        self,
        active: ActiveSource,
        last_heartbeat: Optional[datetime],
        readings: Sequence[Reading],
        now: datetime,
    ) -> float:
        if active is ActiveSource.CACHE or last_heartbeat is None:
            on_schedule, recency = False, 0.0
        else:
            source = Source(active.value)
            age = max(0.0, (now - last_heartbeat).total_seconds())
            on_schedule = age <= self._intervals[source]
            recency = max(0.0, 1.0 - age / self._timeouts[source])

        self._samples.append(on_schedule)
        schedule = sum(self._samples) / len(self._samples)
        if readings:
            quality = sum(r.quality is Quality.GOOD for r in readings) / len(readings)
        else:
            quality = 1.0

        raw = (
            self.weights["schedule"] * schedule
            + self.weights["quality"] * quality
            + self.weights["recency"] * recency
        )
        self.score = min(1.0, max(0.0, self.score + self.smoothing * (raw - self.score)))
        return round(self.score, 4)

    @staticmethod
    def health(active: ActiveSource, score: float) -> SystemHealth:
        if active is ActiveSource.CACHE:
            return SystemHealth.CRITICAL
        return SystemHealth.from_score(score)
