"""Shared constants for the DevFlow real-time relay."""

DEFAULT_HOST = "127.0.0.1"
DEFAULT_WS_PORT = 3001
WS_PORT_ENV = "DEVFLOW_WS_PORT"
LOG_LEVEL_ENV = "DEVFLOW_LOG_LEVEL"
DEFAULT_LOG_LEVEL = "INFO"

# Agent-side reconnect backoff (milliseconds)
INITIAL_RECONNECT_DELAY_MS = 1000
MAX_RECONNECT_DELAY_MS = 30000

# Browser-side consumer timings (seconds)
WATCHER_RECONNECT_DELAY = 3.0
WATCHER_POLL_INTERVAL = 5.0

LOG_PREVIEW_CHARS = 100

COLLECTIONS = ("projects", "features", "files", "tasks")
