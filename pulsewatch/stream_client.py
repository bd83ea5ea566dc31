"""Consumer side of the live stream: a reconnecting SSE client.

Reconnection is a plain retry loop around the transport, driven by an
explicit ``RetryPolicy``. Each connection is a fresh subscription; no
``Last-Event-ID`` is sent, so nothing is replayed.
"""

import asyncio
import inspect
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import httpx

from pulsewatch.config import STREAM_RETRY_MILLISECONDS

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Fixed delay between attempts. ``max_attempts`` bounds consecutive
    failed connects; ``None`` retries forever."""

    delay: float = STREAM_RETRY_MILLISECONDS / 1000
    max_attempts: Optional[int] = None

    def should_retry(self, attempt: int) -> bool:
        return self.max_attempts is None or attempt < self.max_attempts


class StreamClient:
    """Reads update events from ``url`` and hands each decoded event to
    ``handler`` (sync or async). Cancel the task running ``run`` to stop."""

    def __init__(
        self,
        url: str,
        handler: Callable[[Dict[str, Any]], Any],
        retry: RetryPolicy = RetryPolicy(),
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self.handler = handler
        self.retry = retry
        self.connections = 0
        self.last_event_id: Optional[str] = None
        self._client = client

    async def run(self) -> None:
        owns_client = self._client is None
        client = self._client or httpx.AsyncClient(timeout=httpx.Timeout(10.0, read=None))
        attempt = 0
        try:
            while True:
                attempt += 1
                connections = self.connections
                try:
                    await self._consume(client)
                    logger.info("Stream %s closed by server", self.url)
                except httpx.HTTPError as e:
                    logger.warning("Stream connection failed (attempt %d): %s", attempt, e)
                if self.connections > connections:
                    # Only consecutive failed connects count against the policy
                    attempt = 0
                elif not self.retry.should_retry(attempt):
                    logger.info("Giving up on stream %s after %d attempts", self.url, attempt)
                    return
                await asyncio.sleep(self.retry.delay)
        finally:
            if owns_client:
                await client.aclose()

    async def _consume(self, client: httpx.AsyncClient) -> None:
        headers = {"Accept": "text/event-stream", "Cache-Control": "no-cache"}
        async with client.stream("GET", self.url, headers=headers) as response:
            response.raise_for_status()
            self.connections += 1
            logger.info("Connected to stream %s", self.url)

            data: List[str] = []
            async for line in response.aiter_lines():
                if not line:
                    if data:
                        await self._dispatch("\n".join(data))
                        data = []
                    continue
                if line.startswith(":"):
                    continue
                name, _, value = line.partition(":")
                if value.startswith(" "):
                    value = value[1:]
                if name == "data":
                    data.append(value)
                elif name == "id":
                    self.last_event_id = value

    async def _dispatch(self, data: str) -> None:
        try:
            event = json.loads(data)
        except json.JSONDecodeError:
            logger.warning("Discarding undecodable stream event: %.80s", data)
            return
        result = self.handler(event)
        if inspect.isawaitable(result):
            await result
