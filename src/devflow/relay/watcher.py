"""Browser-side relay consumer.

Mirrors what the kanban board does with relay traffic: every notification
names *what* changed, and the watcher re-fetches the affected collections from
the HTTP API. The socket only shortens the time until a change shows up;
periodic polling keeps the view correct when the relay is unreachable.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Awaitable, Callable, Iterable, Optional

import httpx
import websockets
from loguru import logger

from ..config import relay_url
from ..constants import COLLECTIONS, WATCHER_POLL_INTERVAL, WATCHER_RECONNECT_DELAY
from ..logging_utils import preview

ALL_COLLECTIONS = frozenset(COLLECTIONS)

Refresh = Callable[[set[str]], Awaitable[Any]]


def affected_collections(message_type: Optional[str]) -> set[str]:
    """Map a notification type to the collections a client should re-fetch.

    Tasks are always refreshed: most mutations touch a task column or count.
    """
    kind = message_type or ""
    collections = {"tasks"}
    if "project" in kind:
        collections.add("projects")
    if "feature" in kind:
        collections.add("features")
    if "file" in kind:
        collections.add("files")
    return collections


class HttpBoardFetcher:
    """Re-fetch board collections from the DevFlow HTTP API."""

    def __init__(self, base_url: str, *, client: Optional[httpx.AsyncClient] = None) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=10.0)

    async def fetch(self, collection: str, **params: str) -> list[Any]:
        response = await self._client.get(f"{self.base_url}/api/{collection}", params=params or None)
        response.raise_for_status()
        data = response.json()
        return data if isinstance(data, list) else []

    async def refresh(self, collections: Iterable[str]) -> dict[str, int]:
        """Fetch each collection; failures are logged and reported as -1."""
        sizes: dict[str, int] = {}
        for name in sorted(collections):
            try:
                sizes[name] = len(await self.fetch(name))
            except httpx.HTTPError as exc:
                logger.warning("Failed to refresh {}: {}", name, exc)
                sizes[name] = -1
        return sizes

    async def aclose(self) -> None:
        await self._client.aclose()


class BoardWatcher:
    """Keep a board view fresh from relay notifications plus polling."""

    def __init__(
        self,
        refresh: Refresh,
        url: Optional[str] = None,
        *,
        poll_interval: float = WATCHER_POLL_INTERVAL,
        reconnect_delay: float = WATCHER_RECONNECT_DELAY,
        connector: Optional[Callable[[str], Any]] = None,
    ) -> None:
        self.url = url or relay_url()
        self.poll_interval = poll_interval
        self.reconnect_delay = reconnect_delay
        self.connected = False
        self._refresh = refresh
        self._connector = connector or websockets.connect
        self._stop = asyncio.Event()

    def stop(self) -> None:
        self._stop.set()

    async def run(self) -> None:
        """Run the socket and polling loops until `stop()` is called."""
        await self._safe_refresh(set(ALL_COLLECTIONS))
        tasks = [
            asyncio.create_task(self._socket_loop()),
            asyncio.create_task(self._poll_loop()),
        ]
        try:
            await self._stop.wait()
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

    async def handle_message(self, raw: Any) -> Optional[set[str]]:
        """Apply one relayed frame; returns the refreshed collections."""
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        try:
            data = json.loads(raw)
        except (TypeError, ValueError):
            logger.debug("Ignoring non-JSON relay frame: {}", preview(str(raw)))
            return None
        message_type = data.get("type") if isinstance(data, dict) else None
        collections = affected_collections(message_type if isinstance(message_type, str) else None)
        logger.debug("Relay update {} -> refresh {}", message_type, sorted(collections))
        await self._safe_refresh(collections)
        return collections

    # -- internals ---------------------------------------------------------

    async def _socket_loop(self) -> None:
        while not self._stop.is_set():
            try:
                async with self._connector(self.url) as ws:
                    self.connected = True
                    logger.info("Watching relay at {}", self.url)
                    async for raw in ws:
                        await self.handle_message(raw)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.debug("Relay socket unavailable: {}", exc)
            finally:
                self.connected = False
            logger.debug("Relay disconnected, reconnecting in {}s", self.reconnect_delay)
            await self._sleep(self.reconnect_delay)

    async def _poll_loop(self) -> None:
        while not self._stop.is_set():
            await self._sleep(self.poll_interval)
            if self._stop.is_set():
                return
            await self._safe_refresh(set(ALL_COLLECTIONS))

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _safe_refresh(self, collections: set[str]) -> None:
        try:
            await self._refresh(collections)
        except Exception as exc:
            logger.warning("Refresh of {} failed: {}", sorted(collections), exc)
