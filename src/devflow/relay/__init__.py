"""Real-time update relay: server, agent client, port guard, and watcher."""

from __future__ import annotations

from .client import AgentRelayClient, ClientState, reconnect_delay_ms
from .probe import probe
from .registry import ConnectionRegistry
from .server import RelayServer, ServerState, start_relay_server
from .watcher import BoardWatcher, HttpBoardFetcher, affected_collections

__all__ = [
    "AgentRelayClient",
    "BoardWatcher",
    "ClientState",
    "ConnectionRegistry",
    "HttpBoardFetcher",
    "RelayServer",
    "ServerState",
    "affected_collections",
    "probe",
    "reconnect_delay_ms",
    "start_relay_server",
]
