"""Update relay server.

A single-port WebSocket server that accepts any number of peers (browser tabs
and agent processes alike) and relays every inbound frame, unmodified, to all
*other* open peers. Only one relay may own a port per host: a second start on
the same port probes first, and declines instead of failing when another
process already owns it.

Usage::

    server = await start_relay_server()   # None when the port is taken
    ...
    if server is not None:
        await server.stop()
"""

from __future__ import annotations

import asyncio
import errno
import socket
from enum import Enum
from typing import Optional

import uvicorn
from fastapi import FastAPI, WebSocket
from loguru import logger

from ..config import resolve_ws_port
from ..constants import DEFAULT_HOST
from ..logging_utils import preview
from .probe import probe
from .registry import ConnectionRegistry

_ADDR_IN_USE = {errno.EADDRINUSE, getattr(errno, "WSAEADDRINUSE", errno.EADDRINUSE)}
_STARTUP_POLL_SECONDS = 0.01

# Relays running in this process, keyed by (host, port).
_running: dict[tuple[str, int], "RelayServer"] = {}


class ServerState(str, Enum):
    """Lifecycle of one relay server instance."""

    UNSTARTED = "unstarted"
    STARTING = "starting"
    RUNNING = "running"
    DECLINED = "declined"
    FAILED = "failed"
    STOPPED = "stopped"


def _is_addr_in_use(exc: BaseException) -> bool:
    return isinstance(exc, OSError) and exc.errno in _ADDR_IN_USE


def _bind_socket(host: str, port: int) -> socket.socket:
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock = socket.socket(family=family, type=socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    try:
        sock.bind((host, port))
        # Listen right away so a concurrent probe sees the port as owned.
        sock.listen()
    except OSError:
        sock.close()
        raise
    sock.set_inheritable(True)
    return sock


def create_relay_app(registry: ConnectionRegistry) -> FastAPI:
    """Build the FastAPI app whose root WebSocket endpoint relays frames."""
    app = FastAPI(title="DevFlow update relay")

    @app.websocket("/")
    async def relay_endpoint(websocket: WebSocket) -> None:
        await websocket.accept()
        registry.add(websocket)
        logger.info("Client connected (total: {})", len(registry))
        try:
            while True:
                event = await websocket.receive()
                if event["type"] == "websocket.disconnect":
                    break
                message = event.get("text")
                if message is None:
                    message = (event.get("bytes") or b"").decode("utf-8", errors="replace")
                logger.debug("Relaying message: {}", preview(message))
                await registry.relay(message, sender=websocket)
        except Exception as exc:
            logger.warning("Client error: {}", exc)
        finally:
            registry.discard(websocket)
            logger.info("Client disconnected (total: {})", len(registry))

    return app


class RelayServer:
    """One relay instance bound to one port.

    The instance owns its registry and its embedded uvicorn server, so several
    independent relays can coexist in one process (for example in tests).
    """

    def __init__(
        self,
        port: Optional[int] = None,
        host: str = DEFAULT_HOST,
        *,
        registry: Optional[ConnectionRegistry] = None,
    ) -> None:
        self.host = host
        self.port = port if port is not None else resolve_ws_port()
        self.registry = registry or ConnectionRegistry()
        self.state = ServerState.UNSTARTED
        self.app = create_relay_app(self.registry)
        self._server: Optional[uvicorn.Server] = None
        self._serve_task: Optional[asyncio.Task[None]] = None
        self._stopping = False

    @property
    def url(self) -> str:
        return f"ws://{self.host}:{self.port}"

    @property
    def connection_count(self) -> int:
        return len(self.registry)

    @property
    def is_running(self) -> bool:
        return self.state is ServerState.RUNNING

    async def __aenter__(self) -> "RelayServer":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    async def start(self) -> bool:
        """Start serving unless another listener already owns the port.

        Returns:
            True when this instance is running (including when it already was),
            False when the start was declined or failed. Never raises.
        """
        if self.state is ServerState.RUNNING:
            return True
        if self.state is not ServerState.UNSTARTED:
            logger.debug("Relay on port {} not restartable from state {}", self.port, self.state.value)
            return False

        if not 0 < self.port < 65536:
            logger.error("Failed to start relay: port {} out of range", self.port)
            self.state = ServerState.FAILED
            return False

        self.state = ServerState.STARTING
        if await probe(self.host, self.port):
            logger.info("Port {} already in use, skipping relay start", self.port)
            self.state = ServerState.DECLINED
            return False

        try:
            sock = _bind_socket(self.host, self.port)
        except (OSError, OverflowError) as exc:
            if _is_addr_in_use(exc):
                logger.info("Port {} already in use, skipping relay start", self.port)
                self.state = ServerState.DECLINED
            else:
                logger.error("Failed to start relay on port {}: {}", self.port, exc)
                self.state = ServerState.FAILED
            return False

        config = uvicorn.Config(
            self.app,
            lifespan="off",
            log_level="warning",
            access_log=False,
            timeout_graceful_shutdown=1,
        )
        self._server = uvicorn.Server(config)
        self._serve_task = asyncio.create_task(self._server.serve(sockets=[sock]))
        self._serve_task.add_done_callback(self._on_serve_done)

        while not self._server.started and not self._serve_task.done():
            await asyncio.sleep(_STARTUP_POLL_SECONDS)

        if not self._server.started:
            sock.close()
            if self.state is ServerState.STARTING:
                self.state = ServerState.FAILED
            return False

        self.state = ServerState.RUNNING
        _running[(self.host, self.port)] = self
        logger.info("Relay server started on port {}", self.port)
        return True

    async def stop(self) -> None:
        """Shut down the embedded server and forget every peer."""
        self._forget()
        task = self._serve_task
        if self._server is not None and task is not None and not task.done():
            self._stopping = True
            self._server.should_exit = True
            try:
                await task
            except BaseException as exc:
                logger.debug("Relay serve task ended with {!r}", exc)
            finally:
                self._stopping = False
        self.registry.clear()
        self._server = None
        self._serve_task = None
        if self.state is ServerState.RUNNING:
            self.state = ServerState.STOPPED
            logger.info("Relay server on port {} stopped", self.port)

    def _on_serve_done(self, task: asyncio.Task[None]) -> None:
        self._forget()
        if task.cancelled() or self._stopping:
            return
        exc = task.exception()
        if exc is None:
            if self.state is ServerState.RUNNING:
                self.state = ServerState.STOPPED
            return
        self.registry.clear()
        self._server = None
        if _is_addr_in_use(exc):
            logger.info("Port {} already in use, skipping", self.port)
            self.state = ServerState.DECLINED
        else:
            logger.error("Relay server error: {!r}", exc)
            self.state = ServerState.FAILED

    def _forget(self) -> None:
        if _running.get((self.host, self.port)) is self:
            del _running[(self.host, self.port)]


async def start_relay_server(
    port: Optional[int] = None,
    host: str = DEFAULT_HOST,
) -> Optional[RelayServer]:
    """Start a relay for the hosting process.

    Calling it again for a host and port this process already serves returns
    the running instance.

    Returns:
        The running server, or None when another process owns the port or the
        start failed. The hosting application keeps working without real-time
        updates in that case.
    """
    resolved = port if port is not None else resolve_ws_port()
    running = _running.get((host, resolved))
    if running is not None and running.is_running:
        return running
    server = RelayServer(resolved, host)
    if await server.start():
        return server
    return None
