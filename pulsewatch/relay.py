"""Pulls the latest entry of the ThingSpeak relay channel into the engine."""

import asyncio
import logging
from typing import Optional

import httpx

from pulsewatch.config import (
    THINGSPEAK_BASE_URL,
    THINGSPEAK_POLL_SECONDS,
    THINGSPEAK_READ_API_KEY,
)
from pulsewatch.engine import MonitoringEngine
from pulsewatch.errors import MalformedPayload
from pulsewatch.models import Reading, Source

logger = logging.getLogger(__name__)


class RelayPoller:
    """Polls ``/channels/{id}/feeds/last.json`` and submits new entries as
    secondary payloads. An entry already submitted is not sent again."""

    def __init__(
        self,
        engine: MonitoringEngine,
        channel_id: str,
        api_key: str = THINGSPEAK_READ_API_KEY,
        base_url: str = THINGSPEAK_BASE_URL,
        interval: float = THINGSPEAK_POLL_SECONDS,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.engine = engine
        self.channel_id = channel_id
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.interval = interval
        self.last_entry_id: Optional[int] = None
        self._client = client
        self._owns_client = client is None
        self._task: Optional[asyncio.Task] = None

    @property
    def url(self) -> str:
        return f"{self.base_url}/channels/{self.channel_id}/feeds/last.json"

    async def poll_once(self) -> Optional[Reading]:
        """Fetch the last channel entry and submit it if it is new.

        Raises:
            httpx.HTTPError: the relay could not be reached.
            MalformedPayload: the entry has no usable bpm.
        """
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(10.0, connect=2.0))

        params = {"api_key": self.api_key} if self.api_key else None
        response = await self._client.get(self.url, params=params)
        response.raise_for_status()
        try:
            entry = response.json()
        except ValueError:
            logger.warning(
                "Relay channel %s answered with a non-JSON body: %.80s",
                self.channel_id,
                response.text,
            )
            return None

        # ThingSpeak answers -1 for an empty channel
        if not isinstance(entry, dict):
            logger.debug("Relay channel %s has no entries", self.channel_id)
            return None

        entry_id = entry.get("entry_id")
        if entry_id is not None and entry_id == self.last_entry_id:
            return None
        self.last_entry_id = entry_id

        return await self.engine.ingest(Source.SECONDARY, entry)

    async def run(self) -> None:
        while True:
            try:
                await self.poll_once()
            except httpx.HTTPError as e:
                logger.warning("Relay poll failed: %s", e)
            except MalformedPayload as e:
                logger.info("Skipping relay entry %s: %s", self.last_entry_id, e.reason)
            except Exception:
                logger.exception("Relay poll crashed, continuing")
            await asyncio.sleep(self.interval)

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self.run())
            logger.info("Polling relay channel %s every %.0fs", self.channel_id, self.interval)

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
