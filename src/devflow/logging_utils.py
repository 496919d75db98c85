"""Configure loguru output for the relay processes."""

from __future__ import annotations

import sys

from loguru import logger

from .constants import LOG_PREVIEW_CHARS


def configure_logging(level: str = "INFO") -> None:
    """Configure loguru logger with the specified level."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{module}</cyan>:<cyan>{line}</cyan> | "
            "{message}"
        ),
    )


def preview(message: str, limit: int = LOG_PREVIEW_CHARS) -> str:
    """Truncate a relayed payload for log output."""
    if len(message) <= limit:
        return message
    return message[:limit] + "..."
