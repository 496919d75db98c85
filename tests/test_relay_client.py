"""Tests for the agent-side relay client state machine."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Callable, Optional

import pytest
import websockets

from devflow.relay.client import AgentRelayClient, ClientState, reconnect_delay_ms
from devflow.relay.server import RelayServer


class FakeTimer:
    def __init__(self, delay: float, callback: Callable[[], None]) -> None:
        self.delay = delay
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeScheduler:
    """Collect scheduled reconnects instead of sleeping."""

    def __init__(self) -> None:
        self.timers: list[FakeTimer] = []

    def __call__(self, delay: float, callback: Callable[[], None]) -> FakeTimer:
        timer = FakeTimer(delay, callback)
        self.timers.append(timer)
        return timer

    @property
    def delays(self) -> list[float]:
        return [t.delay for t in self.timers]

    @property
    def pending(self) -> list[FakeTimer]:
        return [t for t in self.timers if not t.cancelled]

    def fire(self) -> None:
        timer = self.timers[-1]
        assert not timer.cancelled
        timer.cancelled = True
        timer.callback()


class FakeConnection:
    def __init__(self, *, fail_send: bool = False) -> None:
        self.sent: list[str] = []
        self.closed = False
        self.fail_send = fail_send
        self._events: asyncio.Queue[Any] = asyncio.Queue()

    async def send(self, message: str) -> None:
        if self.fail_send or self.closed:
            raise ConnectionError("connection lost")
        self.sent.append(message)

    async def close(self) -> None:
        self.closed = True
        self._events.put_nowait(None)

    def drop(self, exc: Optional[BaseException] = None) -> None:
        self._events.put_nowait(exc)

    def __aiter__(self) -> "FakeConnection":
        return self

    async def __anext__(self) -> Any:
        item = await self._events.get()
        if item is None:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            raise item
        return item


class FakeConnector:
    """Refuse the first `failures` attempts, then hand out connections."""

    def __init__(self, failures: int = 0, error: type[BaseException] = ConnectionRefusedError) -> None:
        self.failures = failures
        self.error = error
        self.calls = 0
        self.connections: list[FakeConnection] = []

    async def __call__(self, url: str) -> FakeConnection:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error("connection failed")
        connection = FakeConnection()
        self.connections.append(connection)
        return connection


async def _settle() -> None:
    for _ in range(10):
        await asyncio.sleep(0)


def _client(connector: Any, scheduler: FakeScheduler, **kwargs: Any) -> AgentRelayClient:
    return AgentRelayClient("ws://127.0.0.1:1", scheduler=scheduler, connector=connector, **kwargs)


def test_reconnect_delay_sequence() -> None:
    assert [reconnect_delay_ms(n) for n in range(8)] == [
        1000, 2000, 4000, 8000, 16000, 30000, 30000, 30000,
    ]


def test_backoff_doubles_and_caps_on_repeated_failures() -> None:
    async def _run() -> None:
        scheduler = FakeScheduler()
        connector = FakeConnector(failures=100)
        client = _client(connector, scheduler)
        await _settle()

        for _ in range(6):
            assert len(scheduler.pending) == 1
            scheduler.fire()
            await _settle()

        assert scheduler.delays == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0]
        assert client.attempts == 7
        assert client.state is ClientState.DISCONNECTED
        assert len(scheduler.pending) == 1
        await client.disconnect()

    asyncio.run(_run())


def test_backoff_resets_after_successful_open() -> None:
    async def _run() -> None:
        scheduler = FakeScheduler()
        connector = FakeConnector(failures=3)
        client = _client(connector, scheduler)
        await _settle()
        for _ in range(3):
            scheduler.fire()
            await _settle()

        assert client.is_connected
        assert client.attempts == 0
        assert scheduler.delays == [1.0, 2.0, 4.0]

        connector.connections[-1].drop()
        await _settle()

        assert client.state is ClientState.DISCONNECTED
        assert scheduler.delays[-1] == 1.0
        await client.disconnect()

    asyncio.run(_run())


def test_connect_while_connecting_or_connected_is_noop() -> None:
    async def _run() -> None:
        scheduler = FakeScheduler()
        gate = asyncio.Event()
        calls = 0

        async def _slow_connector(url: str) -> FakeConnection:
            nonlocal calls
            calls += 1
            await gate.wait()
            return FakeConnection()

        client = _client(_slow_connector, scheduler)
        await _settle()
        assert client.state is ClientState.CONNECTING

        client.connect()
        client.connect()
        await _settle()
        assert calls == 1

        gate.set()
        await _settle()
        assert client.is_connected

        client.connect()
        await _settle()
        assert calls == 1
        assert scheduler.timers == []
        await client.disconnect()

    asyncio.run(_run())


def test_connection_refused_logged_once_per_outage(log_messages: list[str]) -> None:
    async def _run() -> None:
        scheduler = FakeScheduler()
        client = _client(FakeConnector(failures=100), scheduler)
        await _settle()
        for _ in range(4):
            scheduler.fire()
            await _settle()
        await client.disconnect()

    asyncio.run(_run())
    assert sum("Relay not available" in m for m in log_messages) == 1


def test_other_errors_logged_every_time(log_messages: list[str]) -> None:
    async def _run() -> None:
        scheduler = FakeScheduler()
        client = _client(FakeConnector(failures=100, error=TimeoutError), scheduler)
        await _settle()
        scheduler.fire()
        await _settle()
        await client.disconnect()

    asyncio.run(_run())
    assert sum("Relay connection error" in m for m in log_messages) == 2


def test_error_after_open_schedules_single_reconnect() -> None:
    async def _run() -> None:
        scheduler = FakeScheduler()
        connector = FakeConnector()
        client = _client(connector, scheduler)
        await _settle()
        assert client.is_connected

        connector.connections[0].drop(ConnectionResetError("reset by peer"))
        await _settle()

        assert client.state is ClientState.DISCONNECTED
        assert len(scheduler.pending) == 1
        assert scheduler.delays == [1.0]
        await client.disconnect()

    asyncio.run(_run())


def test_broadcast_without_connection_returns_normally() -> None:
    async def _run() -> None:
        client = _client(FakeConnector(), FakeScheduler(), autoconnect=False)
        assert await client.broadcast_update({"type": "task_updated", "taskId": "t1"}) is False

    asyncio.run(_run())


def test_broadcast_send_failure_is_swallowed() -> None:
    async def _run() -> None:
        connection = FakeConnection(fail_send=True)

        async def _connector(url: str) -> FakeConnection:
            return connection

        client = _client(_connector, FakeScheduler())
        await _settle()
        assert client.is_connected
        assert await client.broadcast_update({"type": "task_updated"}) is False
        assert await client.broadcast_update({"bad": object()}) is False
        await client.disconnect()

    asyncio.run(_run())


def test_broadcast_sends_json_text() -> None:
    async def _run() -> None:
        connector = FakeConnector()
        client = _client(connector, FakeScheduler())
        await _settle()

        assert await client.broadcast_update({"type": "task_created", "task": {"id": "t1"}}) is True
        client.broadcast_update_nowait({"type": "task_updated", "taskId": "t1"})
        assert client.pending_sends == 1
        await _settle()
        assert client.pending_sends == 0

        sent = [json.loads(m) for m in connector.connections[0].sent]
        assert sent == [
            {"type": "task_created", "task": {"id": "t1"}},
            {"type": "task_updated", "taskId": "t1"},
        ]
        await client.disconnect()

    asyncio.run(_run())


def test_disconnect_cancels_pending_reconnect() -> None:
    async def _run() -> None:
        scheduler = FakeScheduler()
        client = _client(FakeConnector(failures=1), scheduler)
        await _settle()
        timer = scheduler.timers[-1]
        assert client.has_pending_reconnect

        await client.disconnect()

        assert timer.cancelled
        assert not client.has_pending_reconnect
        assert client.state is ClientState.DISCONNECTED

    asyncio.run(_run())


def test_disconnect_closes_connection_without_reconnecting() -> None:
    async def _run() -> None:
        scheduler = FakeScheduler()
        connector = FakeConnector()
        client = _client(connector, scheduler)
        await _settle()

        await client.disconnect()
        await _settle()

        assert connector.connections[0].closed
        assert scheduler.timers == []
        assert not client.is_connected

        client.connect()
        await _settle()
        assert client.is_connected
        assert connector.calls == 2
        await client.disconnect()

    asyncio.run(_run())


def test_autoconnect_without_loop_does_not_raise() -> None:
    client = AgentRelayClient("ws://127.0.0.1:1", scheduler=FakeScheduler(), connector=FakeConnector())
    assert client.state is ClientState.DISCONNECTED
    assert not client.is_connected


def test_delivers_through_real_relay(free_port: int) -> None:
    async def _run() -> None:
        async with RelayServer(free_port) as server:
            async with websockets.connect(server.url) as browser:
                client = AgentRelayClient(server.url)
                try:
                    assert await client.wait_connected(2) is True
                    loop = asyncio.get_running_loop()
                    deadline = loop.time() + 2
                    while server.connection_count < 2 and loop.time() < deadline:
                        await asyncio.sleep(0.01)

                    assert await client.broadcast_update({"type": "agent_checked_in", "taskId": "t1"})
                    received = json.loads(await asyncio.wait_for(browser.recv(), 2))
                    assert received == {"type": "agent_checked_in", "taskId": "t1"}
                finally:
                    await client.disconnect()

    asyncio.run(_run())


@pytest.mark.parametrize("attempts", [0, 1, 4, 5, 20])
def test_reconnect_delay_bounds(attempts: int) -> None:
    assert 1000 <= reconnect_delay_ms(attempts) <= 30000
