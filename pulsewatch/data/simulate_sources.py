"""Source simulator for exercising the BPM monitoring API.

Plays both feeds against a running server:
- the primary sensor posts a sample every PRIMARY_INTERVAL seconds
- the relay pushes a ThingSpeak-style entry every RELAY_INTERVAL seconds
- midway the primary goes silent for OUTAGE_SECONDS, forcing a failover to
  the relay and, when it comes back, a failover back to primary
- occasional out-of-range spikes and malformed payloads are mixed in
"""

import asyncio
import random
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

# Configuration
BASE_URL = "http://localhost:8000"
PRIMARY_URL = f"{BASE_URL}/api/ingest/primary"
RELAY_URL = f"{BASE_URL}/api/ingest/secondary"
DEVICE_ID = "ARDUINO_UNO_001"
DURATION_SECONDS = 240
PRIMARY_INTERVAL = 2.0
RELAY_INTERVAL = 15.0
OUTAGE_START = 60
OUTAGE_SECONDS = 90
SPIKE_PROBABILITY = 0.03
MALFORMED_PROBABILITY = 0.01

# Resting heart rate drift (bpm)
BASELINE_BPM = 74
DRIFT_BPM = 6


def generate_bpm_series(
    count: int,
    baseline: int = BASELINE_BPM,
    drift: int = DRIFT_BPM,
    spike_probability: float = SPIKE_PROBABILITY,
    rng: Optional[random.Random] = None,
) -> List[int]:
    """Random-walk heart rate with occasional high or low spikes."""
    rng = rng or random.Random()
    series = []
    bpm = float(baseline)
    for _ in range(count):
        bpm += rng.uniform(-1.5, 1.5)
        bpm = min(baseline + drift, max(baseline - drift, bpm))
        value = round(bpm)
        if rng.random() < spike_probability:
            value = rng.choice([rng.randint(125, 150), rng.randint(38, 48)])
        series.append(value)
    return series


def primary_payload(bpm: int, device_id: str = DEVICE_ID, battery_level: Optional[float] = None) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"deviceId": device_id, "bpm": bpm}
    if battery_level is not None:
        payload["batteryLevel"] = battery_level
    return payload


def relay_payload(entry_id: int, bpm: int, created_at: Optional[datetime] = None, averaged: int = 1) -> Dict[str, Any]:
    """A ThingSpeak feed entry; field values are strings, as ThingSpeak sends them."""
    created_at = created_at or datetime.now(timezone.utc)
    return {
        "entry_id": entry_id,
        "created_at": created_at.strftime("%Y-%m-%dT%H:%M:%SZ"),
        "field1": str(bpm),
        "field2": str(averaged),
    }


def in_outage(elapsed: float) -> bool:
    return OUTAGE_START <= elapsed < OUTAGE_START + OUTAGE_SECONDS


async def send(client: httpx.AsyncClient, url: str, payload: Dict[str, Any]) -> str:
    """Post one payload and return the ingestion status."""
    try:
        response = await client.post(url, json=payload)
    except httpx.HTTPError as e:
        print(f"\n[DEBUG] {type(e).__name__}: {str(e)[:200]}")
        return "error"
    if response.status_code == 202:
        return response.json().get("status", "accepted")
    if response.status_code == 422:
        return "rejected"
    print(f"\n[DEBUG] Status {response.status_code}: {response.text[:200]}")
    return "error"


async def run_primary(client: httpx.AsyncClient, start: float, counts: Dict[str, int]) -> None:
    series = generate_bpm_series(int(DURATION_SECONDS / PRIMARY_INTERVAL) + 1)
    battery = 100.0
    for bpm in series:
        elapsed = time.time() - start
        if elapsed >= DURATION_SECONDS:
            break
        if not in_outage(elapsed):
            battery = max(0.0, battery - 0.05)
            payload = primary_payload(bpm, battery_level=round(battery, 1))
            if random.random() < MALFORMED_PROBABILITY:
                payload = {"deviceId": DEVICE_ID, "bpm": "n/a"}
            result = await send(client, PRIMARY_URL, payload)
            counts[f"primary_{result}"] = counts.get(f"primary_{result}", 0) + 1
        await asyncio.sleep(PRIMARY_INTERVAL)


async def run_relay(client: httpx.AsyncClient, start: float, counts: Dict[str, int]) -> None:
    entry_id = 0
    for bpm in generate_bpm_series(int(DURATION_SECONDS / RELAY_INTERVAL) + 1):
        if time.time() - start >= DURATION_SECONDS:
            break
        entry_id += 1
        result = await send(client, RELAY_URL, relay_payload(entry_id, bpm, averaged=3))
        counts[f"relay_{result}"] = counts.get(f"relay_{result}", 0) + 1
        await asyncio.sleep(RELAY_INTERVAL)


async def simulate() -> None:
    """Main function to play both sources against the API."""
    timeout = httpx.Timeout(10.0, connect=2.0)
    async with httpx.AsyncClient(timeout=timeout) as client:
        # Check API is available
        try:
            health_response = await client.get(f"{BASE_URL}/health", timeout=2.0)
            health_response.raise_for_status()
        except httpx.HTTPError:
            print(f"ERROR: Cannot connect to API at {BASE_URL}")
            print("Make sure the server is running: uv run uvicorn pulsewatch.main:app --reload")
            return

        print(f"Simulating {DURATION_SECONDS}s of traffic, primary outage at "
              f"{OUTAGE_START}s for {OUTAGE_SECONDS}s")
        print("-" * 60)

        counts: Dict[str, int] = {}
        start = time.time()
        await asyncio.gather(run_primary(client, start, counts), run_relay(client, start, counts))

        status = (await client.get(f"{BASE_URL}/api/system-status")).json()
        print("\n" + "=" * 60)
        print("SIMULATION COMPLETE")
        print("=" * 60)
        for key in sorted(counts):
            print(f"  {key}: {counts[key]}")
        print(f"  active source: {status['activeSource']}")
        print(f"  failovers: {status['failoverCount']}")
        print(f"  system health: {status['systemHealth']} ({status['cacheHealthScore']:.2f})")
        print("=" * 60)


if __name__ == "__main__":
    print("BPM Source Simulator")
    print("=" * 60)
    asyncio.run(simulate())
