"""Agent-side relay client.

Tool-call handlers push notifications through this client. Delivery is best
effort: the relay may be absent or restarting, and a failed push must never
fail the tool call. The client keeps one socket open and reconnects in the
background with exponential backoff (1s, 2s, 4s, ... capped at 30s).
"""

from __future__ import annotations

import asyncio
import errno
import json
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Protocol

import websockets
from loguru import logger

from ..config import relay_url
from ..constants import INITIAL_RECONNECT_DELAY_MS, MAX_RECONNECT_DELAY_MS
from ..logging_utils import preview


class ClientState(str, Enum):
    """Connection state of an agent-side relay client."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class RelayConnection(Protocol):
    async def send(self, message: str) -> None: ...

    async def close(self) -> None: ...

    def __aiter__(self) -> Any: ...


Scheduler = Callable[[float, Callable[[], None]], TimerHandle]
Connector = Callable[[str], Awaitable[RelayConnection]]


def reconnect_delay_ms(attempts: int) -> int:
    """Backoff delay before reconnect attempt number `attempts` (0-based)."""
    return min(INITIAL_RECONNECT_DELAY_MS * (2 ** attempts), MAX_RECONNECT_DELAY_MS)


def _loop_scheduler(delay: float, callback: Callable[[], None]) -> TimerHandle:
    return asyncio.get_running_loop().call_later(delay, callback)


async def _websocket_connector(url: str) -> RelayConnection:
    return await websockets.connect(url)


def _is_connection_refused(exc: BaseException) -> bool:
    if isinstance(exc, ConnectionRefusedError):
        return True
    if isinstance(exc, OSError) and exc.errno == errno.ECONNREFUSED:
        return True
    # create_connection() folds per-address failures into one OSError.
    return isinstance(exc, OSError) and "Connect call failed" in str(exc)


class AgentRelayClient:
    """Long-lived, auto-reconnecting connection to the update relay.

    Invariants: at most one live connection, at most one in-flight attempt,
    and at most one pending reconnect timer.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        *,
        scheduler: Optional[Scheduler] = None,
        connector: Optional[Connector] = None,
        autoconnect: bool = True,
    ) -> None:
        self.url = url or relay_url()
        self.state = ClientState.DISCONNECTED
        self.attempts = 0
        self._scheduler: Scheduler = scheduler or _loop_scheduler
        self._connector: Connector = connector or _websocket_connector
        self._connection: Optional[RelayConnection] = None
        self._connecting = False
        self._timer: Optional[TimerHandle] = None
        self._task: Optional[asyncio.Task[None]] = None
        self._pending_sends: set[asyncio.Task[bool]] = set()
        self._auto_reconnect = True
        self._opened: Optional[asyncio.Event] = None
        if autoconnect:
            self.connect()

    @property
    def is_connected(self) -> bool:
        return self._connection is not None and self.state is ClientState.CONNECTED

    @property
    def has_pending_reconnect(self) -> bool:
        return self._timer is not None

    @property
    def pending_sends(self) -> int:
        return len(self._pending_sends)

    def connect(self) -> None:
        """Start a connection attempt unless one is in flight or open."""
        if self._connecting or self.is_connected:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop; relay connection to {} deferred", self.url)
            return
        self._auto_reconnect = True
        self._connecting = True
        self.state = ClientState.CONNECTING
        self._task = loop.create_task(self._run())

    async def wait_connected(self, timeout: float) -> bool:
        if self.is_connected:
            return True
        if self._opened is None:
            self._opened = asyncio.Event()
        try:
            await asyncio.wait_for(self._opened.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return self.is_connected

    async def broadcast_update(self, data: Any) -> bool:
        """Push one notification to the relay. Never raises.

        Returns:
            True if the message was handed to an open connection.
        """
        try:
            message = json.dumps(data)
        except (TypeError, ValueError) as exc:
            logger.error("Cannot serialize relay update: {}", exc)
            return False

        connection = self._connection
        if connection is None or not self.is_connected:
            # The UI polls as a fallback, so a missed push only adds latency.
            logger.debug("Not connected, skipping broadcast: {}", preview(message))
            return False

        try:
            logger.debug("Broadcasting: {}", preview(message))
            await connection.send(message)
        except Exception as exc:
            logger.error("Failed to send relay update: {}", exc)
            return False
        return True

    def broadcast_update_nowait(self, data: Any) -> None:
        """Fire-and-forget broadcast from synchronous code."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop, skipping broadcast")
            return
        # The loop only keeps weak references to tasks.
        task = loop.create_task(self.broadcast_update(data))
        self._pending_sends.add(task)
        task.add_done_callback(self._pending_sends.discard)

    async def disconnect(self) -> None:
        """Close the connection and stop reconnecting until `connect()`."""
        self._auto_reconnect = False
        self._cancel_timer()
        task = self._task
        if self._connecting and task is not None and not task.done():
            task.cancel()
        connection = self._connection
        self._connection = None
        self._connecting = False
        self.state = ClientState.DISCONNECTED
        if connection is not None:
            try:
                await connection.close()
            except Exception as exc:
                logger.debug("Error closing relay connection: {}", exc)

    # -- internals ---------------------------------------------------------

    async def _run(self) -> None:
        try:
            connection = await self._connector(self.url)
        except Exception as exc:
            self._handle_error(exc)
            return

        if not self._auto_reconnect:
            # disconnect() won the race against the handshake.
            await connection.close()
            return

        self._on_open(connection)
        try:
            async for _ in connection:
                # The relay only forwards other peers' updates; nothing to do.
                pass
        except Exception as exc:
            if self._connection is connection:
                self._handle_error(exc)
            return
        if self._connection is connection:
            self._handle_close()

    def _on_open(self, connection: RelayConnection) -> None:
        self._connection = connection
        self._connecting = False
        self.attempts = 0
        self.state = ClientState.CONNECTED
        if self._opened is not None:
            self._opened.set()
        logger.info("Connected to relay at {}", self.url)

    def _handle_close(self) -> None:
        if self.attempts == 0:
            logger.info("Disconnected from relay, will reconnect")
        self._reset_connection()
        self._schedule_reconnect()

    def _handle_error(self, exc: BaseException) -> None:
        if _is_connection_refused(exc):
            # Log refusals once per outage, not on every retry.
            if self.attempts == 0:
                logger.warning("Relay not available at {}, will retry in background", self.url)
        else:
            logger.error("Relay connection error: {}", exc)
        self._reset_connection()
        self._schedule_reconnect()

    def _reset_connection(self) -> None:
        self._connection = None
        self._connecting = False
        self.state = ClientState.DISCONNECTED
        if self._opened is not None:
            self._opened.clear()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _schedule_reconnect(self) -> None:
        if not self._auto_reconnect:
            return
        self._cancel_timer()
        delay = reconnect_delay_ms(self.attempts)
        self.attempts += 1
        logger.debug("Reconnecting to relay in {}ms (attempt {})", delay, self.attempts)
        self._timer = self._scheduler(delay / 1000, self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        self.connect()
