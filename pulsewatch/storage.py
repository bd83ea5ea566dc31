"""Data storage service for handling Parquet file operations."""

import asyncio
import logging
from collections import deque
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import polars as pl

from pulsewatch.config import (
    BATCH_SIZE,
    DATA_DIR,
    FLUSH_INTERVAL_SECONDS,
    MAX_BUFFERED_RECORDS,
    PARQUET_FILE_PREFIX,
)
from pulsewatch.errors import StorageUnavailable
from pulsewatch.models import Reading

logger = logging.getLogger(__name__)

READING_SCHEMA = {
    "id": pl.Utf8,
    "device_id": pl.Utf8,
    "bpm": pl.Int64,
    "source": pl.Utf8,
    "quality": pl.Utf8,
    "processed_bpm": pl.Float64,
    "confidence": pl.Float64,
    "is_anomaly": pl.Boolean,
    "rate_of_change": pl.Float64,
    "timestamp": pl.Utf8,
    "timestamp_ms": pl.Int64,
    "date": pl.Utf8,
}


def _epoch_ms(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


class DataStorage:
    """Handles storage and retrieval of accepted readings using Parquet files.

    Writes are buffered and flushed in batches. When a flush fails the records
    stay in the (bounded) buffer, so queries keep seeing them and the next
    flush retries.
    """

    def __init__(self, data_dir: str = DATA_DIR):
        """Initialize the data storage service."""
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.write_buffer: deque = deque(maxlen=MAX_BUFFERED_RECORDS)
        self.write_lock = asyncio.Lock()
        self.available = True
        self.last_error: Optional[str] = None
        self._flush_task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """Start background flush task."""
        if self._flush_task is None:
            self._flush_task = asyncio.create_task(self._periodic_flush())

    async def stop(self) -> None:
        """Stop background flush task and flush remaining data."""
        if self._flush_task:
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
            self._flush_task = None
        try:
            await self._flush_buffer()
        except StorageUnavailable as e:
            logger.error("Final flush failed, %d readings lost: %s", e.pending, e.reason)

    async def ingest_reading(self, reading: Reading) -> None:
        """Buffer an accepted reading, flushing when the batch is full.

        Raises:
            StorageUnavailable: if the batch could not be written.
        """
        record = self._to_record(reading)

        async with self.write_lock:
            self.write_buffer.append(record)

            if len(self.write_buffer) >= BATCH_SIZE:
                await self._flush_buffer_unlocked()

    async def flush(self) -> None:
        """Public method to force flush the buffer (useful for testing)."""
        await self._flush_buffer()

    async def _flush_buffer(self) -> None:
        """Flush buffered records to Parquet files (with lock)."""
        async with self.write_lock:
            await self._flush_buffer_unlocked()

    async def _flush_buffer_unlocked(self) -> None:
        """
        Flush buffered records to Parquet files (without lock - assumes lock is already held).

        Existing files are read, concatenated and written back rather than
        appended to, which keeps each date file a single valid Parquet file.
        """
        if not self.write_buffer:
            return

        records_by_date: Dict[str, List[Dict[str, Any]]] = {}
        while self.write_buffer:
            record = self.write_buffer.popleft()
            records_by_date.setdefault(record["date"], []).append(record)

        dates = sorted(records_by_date)
        for i, date_str in enumerate(dates):
            df = pl.DataFrame(records_by_date[date_str], schema=READING_SCHEMA)
            file_path = self._file_for(date_str)
            try:
                if file_path.exists():
                    existing_df = pl.read_parquet(file_path)
                    combined_df = pl.concat([existing_df, df])
                    combined_df.write_parquet(file_path)
                else:
                    df.write_parquet(file_path)
            except (OSError, pl.exceptions.PolarsError) as e:
                unwritten = [r for d in dates[i:] for r in records_by_date[d]]
                # Re-queue ahead of anything buffered meanwhile; the deque's
                # maxlen drops the oldest records if it overflows.
                self.write_buffer = deque(
                    unwritten + list(self.write_buffer), maxlen=MAX_BUFFERED_RECORDS
                )
                self.available = False
                self.last_error = str(e)
                raise StorageUnavailable(str(e), pending=len(self.write_buffer)) from e

        if not self.available:
            logger.info("Storage recovered, buffered readings written")
        self.available = True
        self.last_error = None

    async def _periodic_flush(self) -> None:
        """Periodically flush the write buffer."""
        while True:
            try:
                await asyncio.sleep(FLUSH_INTERVAL_SECONDS)
                await self._flush_buffer()
            except StorageUnavailable as e:
                logger.warning("Periodic flush failed: %s", e)

    def query_readings(self, device_id: str, start: datetime, end: datetime) -> List[Reading]:
        """
        Query readings of a device within [start, end], oldest first.

        Buffered records that have not been flushed yet are included.
        """
        start_ms, end_ms = _epoch_ms(start), _epoch_ms(end)

        frames = [
            pl.scan_parquet(str(file_path))
            for file_path in self._get_files_in_range(start, end)
        ]
        if self.write_buffer:
            frames.append(pl.DataFrame(list(self.write_buffer), schema=READING_SCHEMA).lazy())

        if not frames:
            return []

        # Filters are pushed down to the Parquet scan
        result = (
            pl.concat(frames)
            .filter(pl.col("device_id") == device_id)
            .filter((pl.col("timestamp_ms") >= start_ms) & (pl.col("timestamp_ms") <= end_ms))
            .sort("timestamp_ms")
            .collect()
        )

        return [self._from_record(row) for row in result.to_dicts()]

    def _file_for(self, date_str: str) -> Path:
        return self.data_dir / f"{PARQUET_FILE_PREFIX}_{date_str}.parquet"

    def _get_files_in_range(self, start_dt: datetime, end_dt: datetime) -> List[Path]:
        """Get all Parquet files that might contain data in the given date range."""
        files = []
        current_date = start_dt.astimezone(timezone.utc).date()
        end_date = end_dt.astimezone(timezone.utc).date()

        while current_date <= end_date:
            file_path = self._file_for(current_date.isoformat())
            if file_path.exists():
                files.append(file_path)
            current_date = current_date + timedelta(days=1)

        return files

    @staticmethod
    def _to_record(reading: Reading) -> Dict[str, Any]:
        ts = reading.timestamp.astimezone(timezone.utc)
        return {
            "id": reading.id,
            "device_id": reading.device_id,
            "bpm": reading.bpm,
            "source": reading.source.value,
            "quality": reading.quality.value,
            "processed_bpm": reading.processed_bpm,
            "confidence": reading.confidence,
            "is_anomaly": reading.is_anomaly,
            "rate_of_change": reading.rate_of_change,
            "timestamp": ts.isoformat(),
            "timestamp_ms": _epoch_ms(ts),
            "date": ts.strftime("%Y-%m-%d"),
        }

    @staticmethod
    def _from_record(row: Dict[str, Any]) -> Reading:
        return Reading(
            id=row["id"],
            device_id=row["device_id"],
            bpm=row["bpm"],
            source=row["source"],
            quality=row["quality"],
            processed_bpm=row["processed_bpm"],
            confidence=row["confidence"],
            is_anomaly=row["is_anomaly"],
            rate_of_change=row["rate_of_change"],
            timestamp=row["timestamp"],
        )
