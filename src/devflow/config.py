"""Resolve relay settings from the environment."""

from __future__ import annotations

import os
from typing import Mapping, Optional

from .constants import (
    DEFAULT_HOST,
    DEFAULT_LOG_LEVEL,
    DEFAULT_WS_PORT,
    LOG_LEVEL_ENV,
    WS_PORT_ENV,
)


def resolve_ws_port(env: Optional[Mapping[str, str]] = None) -> int:
    """Return the relay port, honouring the `DEVFLOW_WS_PORT` override.

    Args:
        env: Environment mapping to read (default: `os.environ`).

    Returns:
        The override when it parses as an integer in the open range (0, 65536),
        otherwise the default port.
    """
    env = os.environ if env is None else env
    raw = env.get(WS_PORT_ENV)
    if not raw:
        return DEFAULT_WS_PORT
    try:
        parsed = int(raw.strip())
    except ValueError:
        return DEFAULT_WS_PORT
    if 0 < parsed < 65536:
        return parsed
    return DEFAULT_WS_PORT


def relay_url(host: Optional[str] = None, port: Optional[int] = None) -> str:
    return f"ws://{host or DEFAULT_HOST}:{port if port is not None else resolve_ws_port()}"


def resolve_log_level(env: Optional[Mapping[str, str]] = None) -> str:
    env = os.environ if env is None else env
    level = (env.get(LOG_LEVEL_ENV) or "").strip().upper()
    return level or DEFAULT_LOG_LEVEL
