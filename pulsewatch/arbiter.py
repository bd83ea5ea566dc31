"""Source arbitration: which feed is authoritative right now.

The arbiter is a small state machine over ``primary``, ``secondary`` and the
degraded ``cache`` state. It only tracks heartbeats and decides; applying a
transition (counter, alert, status) is the engine's job, under its writer
lock.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Set

from pulsewatch.config import (
    PRIMARY_RESTORE_HEARTBEATS,
    PRIMARY_TIMEOUT_SECONDS,
    SECONDARY_TIMEOUT_SECONDS,
)
from pulsewatch.models import ActiveSource, Source


@dataclass(frozen=True)
class SourceTimeout:
    """A source whose liveness window lapsed."""

    source: Source
    last_heartbeat: Optional[datetime]
    detected_at: datetime


@dataclass(frozen=True)
class Transition:
    previous: ActiveSource
    current: ActiveSource
    at: datetime
    timeout: Optional[SourceTimeout] = None

    @property
    def message(self) -> str:
        if self.current is ActiveSource.CACHE:
            return "System failover: no live data source, serving cached data"
        return f"System failover: Switched to {self.current.value} data source"


class SourceArbiter:
    """Tracks source heartbeats and picks the active source."""

    def __init__(
        self,
        start: datetime,
        primary_timeout: float = PRIMARY_TIMEOUT_SECONDS,
        secondary_timeout: float = SECONDARY_TIMEOUT_SECONDS,
        restore_heartbeats: int = PRIMARY_RESTORE_HEARTBEATS,
    ):
        if restore_heartbeats < 1:
            raise ValueError("restore_heartbeats must be at least 1")
        self.active = ActiveSource.PRIMARY
        self.last_heartbeat: Dict[Source, Optional[datetime]] = {
            Source.PRIMARY: start,
            Source.SECONDARY: start,
        }
        self.restore_heartbeats = restore_heartbeats
        self._timeouts = {
            Source.PRIMARY: timedelta(seconds=primary_timeout),
            Source.SECONDARY: timedelta(seconds=secondary_timeout),
        }
        self._primary_streak = restore_heartbeats
        self._reported: Set[Source] = set()

    def is_live(self, source: Source, now: datetime) -> bool:
        last = self.last_heartbeat.get(source)
        return last is not None and now - last < self._timeouts[source]

    def record_heartbeat(self, source: Source, at: datetime) -> None:
        if source is Source.PRIMARY:
            if self.is_live(Source.PRIMARY, at):
                self._primary_streak += 1
            else:
                self._primary_streak = 1
        self.last_heartbeat[source] = at
        self._reported.discard(source)

    def lapses(self, now: datetime) -> List[SourceTimeout]:
        """Sources that stopped being live since they were last reported."""
        timeouts = []
        for source in (Source.PRIMARY, Source.SECONDARY):
            if source in self._reported or self.is_live(source, now):
                continue
            self._reported.add(source)
            timeouts.append(SourceTimeout(source, self.last_heartbeat[source], now))
        return timeouts

    def desired(self, now: datetime) -> ActiveSource:
        primary_live = self.is_live(Source.PRIMARY, now)
        secondary_live = self.is_live(Source.SECONDARY, now)

        if primary_live and (
            self.active is ActiveSource.PRIMARY
            or self._primary_streak >= self.restore_heartbeats
            or not secondary_live
        ):
            return ActiveSource.PRIMARY
        if secondary_live:
            return ActiveSource.SECONDARY
        return ActiveSource.CACHE

    def evaluate(self, now: datetime) -> Optional[Transition]:
        """Move to the desired source, returning the transition if any."""
        target = self.desired(now)
        if target is self.active:
            return None

        timeout = None
        if self.active is not ActiveSource.CACHE:
            lost = Source(self.active.value)
            if not self.is_live(lost, now):
                timeout = SourceTimeout(lost, self.last_heartbeat[lost], now)

        transition = Transition(previous=self.active, current=target, at=now, timeout=timeout)
        self.active = target
        return transition

    def next_deadline(self, now: datetime) -> Optional[float]:
        """Seconds until the earliest live source lapses, if any is live."""
        remaining = [
            (self.last_heartbeat[source] + self._timeouts[source] - now).total_seconds()
            for source in (Source.PRIMARY, Source.SECONDARY)
            if self.is_live(source, now)
        ]
        return min(remaining) if remaining else None
