"""FastAPI endpoints for the BPM monitoring engine."""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, HTTPException, Query, status
from fastapi.responses import StreamingResponse

from pulsewatch.broadcaster import event_stream
from pulsewatch.config import READING_WINDOW_SIZE, THINGSPEAK_CHANNEL_ID
from pulsewatch.engine import MonitoringEngine
from pulsewatch.errors import AlertNotFound, MalformedPayload
from pulsewatch.models import (
    Alert,
    AlertsResponse,
    DevicesResponse,
    HeartbeatRequest,
    HistoryResponse,
    IngestResponse,
    ReadingsResponse,
    Source,
    Statistics,
    SystemStatus,
)
from pulsewatch.relay import RelayPoller

router = APIRouter()
engine = MonitoringEngine()


def get_engine() -> MonitoringEngine:
    return engine


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Lifespan context manager for startup and shutdown."""
    # Startup
    await engine.start()
    poller: Optional[RelayPoller] = None
    if THINGSPEAK_CHANNEL_ID:
        poller = RelayPoller(engine, THINGSPEAK_CHANNEL_ID)
        await poller.start()
    yield
    # Shutdown
    if poller is not None:
        await poller.stop()
    await engine.stop()


def _parse_timestamp(value: str) -> datetime:
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


async def _ingest(engine: MonitoringEngine, source: Source, payload: Dict[str, Any]) -> IngestResponse:
    try:
        reading = await engine.ingest(source, payload)
    except MalformedPayload as e:
        raise HTTPException(
            status_code=422,
            detail=e.reason,
        )
    if reading is None:
        return IngestResponse(status="standby")
    return IngestResponse(status="accepted", reading=reading)


@router.post(
    "/api/ingest/primary",
    response_model=IngestResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Ingest a primary sensor sample",
)
async def ingest_primary(
    payload: Dict[str, Any] = Body(...),
    engine: MonitoringEngine = Depends(get_engine),
) -> IngestResponse:
    """
    Ingest a sample posted by the primary Arduino sensor.

    The sample always counts as a primary heartbeat; it becomes a reading only
    while primary is the active source.
    """
    return await _ingest(engine, Source.PRIMARY, payload)


@router.post(
    "/api/ingest/secondary",
    response_model=IngestResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Ingest a cloud relay entry",
)
async def ingest_secondary(
    payload: Dict[str, Any] = Body(...),
    engine: MonitoringEngine = Depends(get_engine),
) -> IngestResponse:
    """Ingest a ThingSpeak feed entry pushed by the relay."""
    return await _ingest(engine, Source.SECONDARY, payload)


@router.post(
    "/api/heartbeat",
    response_model=SystemStatus,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Record a liveness ping",
)
async def heartbeat(
    ping: HeartbeatRequest,
    engine: MonitoringEngine = Depends(get_engine),
) -> SystemStatus:
    try:
        return await engine.heartbeat(
            ping.source,
            device_id=ping.device_id,
            battery_level=ping.battery_level,
            firmware_version=ping.firmware_version,
        )
    except MalformedPayload as e:
        raise HTTPException(status_code=422, detail=e.reason)


@router.get("/api/bpm-data", response_model=ReadingsResponse, summary="Recent readings")
async def recent_readings(
    limit: int = Query(50, ge=1, le=READING_WINDOW_SIZE),
    engine: MonitoringEngine = Depends(get_engine),
) -> ReadingsResponse:
    """Most recent accepted readings, newest first."""
    readings = engine.recent_readings(limit)
    return ReadingsResponse(readings=readings, count=len(readings))


@router.get("/api/alerts", response_model=AlertsResponse, summary="Recent alerts")
async def recent_alerts(
    limit: int = Query(20, ge=1, le=500),
    engine: MonitoringEngine = Depends(get_engine),
) -> AlertsResponse:
    alerts = engine.recent_alerts(limit)
    return AlertsResponse(alerts=alerts, count=len(alerts))


@router.patch(
    "/api/alerts/{alert_id}/acknowledge",
    response_model=Alert,
    summary="Acknowledge an alert",
)
async def acknowledge_alert(
    alert_id: str,
    engine: MonitoringEngine = Depends(get_engine),
) -> Alert:
    """Acknowledge an alert. Acknowledging it again changes nothing."""
    try:
        return await engine.acknowledge(alert_id)
    except AlertNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.get("/api/devices", response_model=DevicesResponse, summary="Known devices")
async def list_devices(engine: MonitoringEngine = Depends(get_engine)) -> DevicesResponse:
    return DevicesResponse(devices=engine.list_devices())


@router.get("/api/system-status", response_model=SystemStatus, summary="Current system status")
async def system_status(engine: MonitoringEngine = Depends(get_engine)) -> SystemStatus:
    return engine.status


@router.get("/api/statistics", response_model=Statistics, summary="Rolling statistics")
async def statistics(engine: MonitoringEngine = Depends(get_engine)) -> Statistics:
    return engine.statistics()


@router.get(
    "/api/readings/history",
    response_model=HistoryResponse,
    summary="Historical readings",
    description="Readings of one device within a time range, for report generation",
)
async def reading_history(
    device_id: str,
    start: str,
    end: str,
    engine: MonitoringEngine = Depends(get_engine),
) -> HistoryResponse:
    # Validate timestamps
    try:
        start_dt = _parse_timestamp(start)
        end_dt = _parse_timestamp(end)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid timestamp format. Use ISO 8601 format (e.g., 2024-01-15T10:00:00Z)",
        )

    # Validate date range
    if start_dt >= end_dt:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Start timestamp must be before end timestamp",
        )

    readings = engine.history(device_id, start_dt, end_dt)
    return HistoryResponse(
        device_id=device_id,
        start=start_dt,
        end=end_dt,
        readings=readings,
        count=len(readings),
    )


@router.get("/api/stream", summary="Live update stream")
async def stream(engine: MonitoringEngine = Depends(get_engine)) -> StreamingResponse:
    """Server-Sent Events feed of update events from the moment of connection."""
    return StreamingResponse(
        event_stream(engine.broadcaster),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.get("/health", summary="Health check endpoint")
async def health_check(engine: MonitoringEngine = Depends(get_engine)) -> dict[str, str]:
    """Health check endpoint for monitoring."""
    return {
        "status": engine.status.system_health.value,
        "service": "bpm-monitor",
    }
