"""Conversion of raw vendor payloads into canonical samples."""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping, Optional

from pydantic import ValidationError

from pulsewatch.config import (
    PRIMARY_CONFIDENCE,
    PRIMARY_DEVICE_ID,
    RELAYED_DEVICE_ID,
    SECONDARY_CONFIDENCE,
    SMOOTHING_CONFIDENCE_PENALTY,
)
from pulsewatch.errors import MalformedPayload
from pulsewatch.models import PrimaryPayload, RelayPayload, Source


@dataclass(frozen=True)
class Sample:
    """A validated sample that has not been classified yet."""

    device_id: str
    bpm: int
    source: Source
    confidence: float
    received_at: datetime
    battery_level: Optional[float] = None
    firmware_version: Optional[str] = None


def _describe(exc: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(p) for p in err['loc']) or 'payload'}: {err['msg']}"
        for err in exc.errors()
    )


def _confidence(base: float, smoothed: bool) -> float:
    if smoothed:
        return round(max(0.0, base - SMOOTHING_CONFIDENCE_PENALTY), 4)
    return base


def normalize(source: Source, payload: Mapping[str, Any], received_at: datetime) -> Sample:
    """Validate a raw payload from ``source`` and build a canonical sample.

    Raises:
        MalformedPayload: if required fields are missing, not numeric or
            outside the physical bpm range.
    """
    if not isinstance(payload, Mapping):
        raise MalformedPayload(source.value, "payload must be a JSON object")

    try:
        if source is Source.PRIMARY:
            primary = PrimaryPayload.model_validate(payload)
            return Sample(
                device_id=primary.device_id or PRIMARY_DEVICE_ID,
                bpm=int(round(primary.bpm)),
                source=source,
                confidence=_confidence(PRIMARY_CONFIDENCE, primary.smoothed),
                received_at=received_at,
                battery_level=primary.battery_level,
                firmware_version=primary.firmware_version,
            )

        relay = RelayPayload.model_validate(payload)
    except ValidationError as e:
        raise MalformedPayload(source.value, _describe(e)) from e

    smoothed = relay.field2 is not None and relay.field2 > 1
    return Sample(
        device_id=RELAYED_DEVICE_ID,
        bpm=int(round(relay.field1)),
        source=source,
        confidence=_confidence(SECONDARY_CONFIDENCE, smoothed),
        received_at=received_at,
    )
