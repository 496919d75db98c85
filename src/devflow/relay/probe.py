"""Detect whether something is already listening on the relay port."""

from __future__ import annotations

import asyncio

from loguru import logger


async def probe(host: str, port: int) -> bool:
    """Return True when a TCP connection to `host:port` succeeds.

    The probe connection is closed right away. Any connection error means the
    port is free; there are no retries and no timeout beyond the transport's.
    """
    try:
        _, writer = await asyncio.open_connection(host, port)
    except (OSError, OverflowError, ValueError) as exc:
        logger.debug("Probe {}:{} found no listener: {}", host, port, exc)
        return False
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True
