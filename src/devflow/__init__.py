"""Provide the public `devflow` package exports."""

from __future__ import annotations

from .notifications import Notifier, NotificationType
from .relay import AgentRelayClient, RelayServer, start_relay_server

__all__ = [
    "AgentRelayClient",
    "NotificationType",
    "Notifier",
    "RelayServer",
    "start_relay_server",
]
