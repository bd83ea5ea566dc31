"""Pydantic models for readings, alerts, devices and the system status."""

import math
from datetime import datetime
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from pulsewatch.config import (
    DEGRADED_SCORE,
    HEALTHY_SCORE,
    MAX_PHYSICAL_BPM,
    MIN_PHYSICAL_BPM,
)


class Source(str, Enum):
    PRIMARY = "primary"
    SECONDARY = "secondary"


class ActiveSource(str, Enum):
    PRIMARY = "primary"
    SECONDARY = "secondary"
    CACHE = "cache"


class Quality(str, Enum):
    GOOD = "good"
    WARNING = "warning"
    CRITICAL = "critical"


class DeviceState(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"


class AlertType(str, Enum):
    HIGH_BPM = "high_bpm"
    LOW_BPM = "low_bpm"
    SOURCE_FAILOVER = "source_failover"
    DEVICE_OFFLINE = "device_offline"
    STORAGE_UNAVAILABLE = "storage_unavailable"


class Severity(str, Enum):
    WARNING = "warning"
    CRITICAL = "critical"


class SystemHealth(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    CRITICAL = "critical"

    @classmethod
    def from_score(cls, score: float) -> "SystemHealth":
        """Map a composite health score onto a health level."""
        if score >= HEALTHY_SCORE:
            return cls.HEALTHY
        if score >= DEGRADED_SCORE:
            return cls.DEGRADED
        return cls.CRITICAL


class Trend(str, Enum):
    INCREASING = "increasing"
    DECREASING = "decreasing"
    STABLE = "stable"


class CamelModel(BaseModel):
    """Base model serialized with camelCase keys, as the dashboard expects."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# --- Vendor payloads -------------------------------------------------------


def _check_bpm(v: Any) -> Any:
    if isinstance(v, bool):
        raise ValueError("bpm must be a number, not a boolean")
    return v


def _check_physical_range(v: float) -> float:
    if not math.isfinite(v):
        raise ValueError("bpm must be a finite number")
    if not (MIN_PHYSICAL_BPM <= v <= MAX_PHYSICAL_BPM):
        raise ValueError(
            f"bpm must be between {MIN_PHYSICAL_BPM} and {MAX_PHYSICAL_BPM}"
        )
    return v


class PrimaryPayload(CamelModel):
    """Payload posted by the primary Arduino sensor."""

    device_id: Optional[str] = Field(None, description="Sensor identifier")
    bpm: float = Field(..., description="Heart rate in bpm")
    smoothed: bool = Field(False, description="Sensor already averaged the sample")
    battery_level: Optional[float] = Field(None, ge=0, le=100)
    firmware_version: Optional[str] = None

    @field_validator("bpm", mode="before")
    @classmethod
    def reject_boolean_bpm(cls, v: Any) -> Any:
        return _check_bpm(v)

    @field_validator("bpm")
    @classmethod
    def validate_bpm(cls, v: float) -> float:
        """Validate bpm is within the physical range."""
        return _check_physical_range(v)


class RelayPayload(BaseModel):
    """A ThingSpeak channel feed entry.

    ThingSpeak reports field values as strings; ``field1`` carries the bpm and
    ``field2`` the number of raw samples the relay averaged into it.
    """

    entry_id: Optional[int] = None
    created_at: Optional[str] = None
    field1: float = Field(..., description="Heart rate in bpm")
    field2: Optional[float] = Field(None, description="Samples averaged by the relay")

    @field_validator("field1", mode="before")
    @classmethod
    def reject_boolean_bpm(cls, v: Any) -> Any:
        return _check_bpm(v)

    @field_validator("field1")
    @classmethod
    def validate_bpm(cls, v: float) -> float:
        """Validate bpm is within the physical range."""
        return _check_physical_range(v)


# --- Domain ----------------------------------------------------------------


class Reading(CamelModel):
    """A classified heart rate reading. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    id: str
    device_id: str
    bpm: int
    source: Source
    quality: Quality
    processed_bpm: float
    confidence: float = Field(..., ge=0.0, le=1.0)
    is_anomaly: bool
    rate_of_change: float
    timestamp: datetime


class Device(CamelModel):
    device_id: str
    name: str
    type: Source
    status: DeviceState = DeviceState.ONLINE
    last_heartbeat: datetime
    battery_level: Optional[float] = None
    firmware_version: Optional[str] = None


class Alert(CamelModel):
    id: str
    device_id: str
    type: AlertType
    severity: Severity
    message: str
    bpm_value: Optional[int] = None
    acknowledged: bool = False
    created_at: datetime
    resolved_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.resolved_at is None


class SystemStatus(CamelModel):
    """The process-wide status snapshot, replaced whole on every change."""

    model_config = ConfigDict(frozen=True)

    active_source: ActiveSource
    failover_count: int = Field(..., ge=0)
    last_primary_heartbeat: Optional[datetime] = None
    last_secondary_heartbeat: Optional[datetime] = None
    system_health: SystemHealth
    cache_health_score: float = Field(..., ge=0.0, le=1.0)
    updated_at: datetime

    @classmethod
    def initial(cls, now: datetime) -> "SystemStatus":
        """The status every engine starts from.

        Both sources get a start-up heartbeat so neither is considered lapsed
        before it had a chance to report.
        """
        return cls(
            active_source=ActiveSource.PRIMARY,
            failover_count=0,
            last_primary_heartbeat=now,
            last_secondary_heartbeat=now,
            system_health=SystemHealth.HEALTHY,
            cache_health_score=1.0,
            updated_at=now,
        )


class Statistics(CamelModel):
    count: int
    average_bpm: Optional[float] = None
    min_bpm: Optional[int] = None
    max_bpm: Optional[int] = None
    recent_average: Optional[float] = None
    trend: Trend = Trend.STABLE


class UpdateEvent(CamelModel):
    """One entry of the live feed."""

    type: str = "update"
    sequence: int = 0
    latest_reading: Optional[Reading] = None
    system_status: Optional[SystemStatus] = None
    alert: Optional[Alert] = None


# --- API -------------------------------------------------------------------


class HeartbeatRequest(CamelModel):
    """Explicit liveness ping from a source."""

    source: Source
    device_id: Optional[str] = None
    battery_level: Optional[float] = Field(None, ge=0, le=100)
    firmware_version: Optional[str] = None


class IngestResponse(CamelModel):
    """Response model for payload ingestion."""

    status: str = Field(default="accepted", description="accepted, or standby when the source is not active")
    reading: Optional[Reading] = None


class StatusResponse(BaseModel):
    status: str = Field(default="accepted", description="Ingestion status")


class ReadingsResponse(BaseModel):
    readings: List[Reading]
    count: int


class AlertsResponse(BaseModel):
    alerts: List[Alert]
    count: int


class DevicesResponse(BaseModel):
    devices: List[Device]


class HistoryResponse(CamelModel):
    """Readings of one device within a time range, oldest first."""

    device_id: str
    start: datetime
    end: datetime
    readings: List[Reading]
    count: int
