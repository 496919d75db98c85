from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any, Optional

from loguru import logger

from .config import relay_url, resolve_log_level, resolve_ws_port
from .constants import DEFAULT_HOST, WATCHER_POLL_INTERVAL
from .logging_utils import configure_logging
from .relay.client import AgentRelayClient
from .relay.server import RelayServer, ServerState
from .relay.watcher import BoardWatcher, HttpBoardFetcher


def _parse_fields(pairs: list[str]) -> dict[str, Any]:
    """Turn `key=value` pairs into a payload; values are JSON when they parse."""
    fields: dict[str, Any] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise ValueError(f"Invalid field (expected key=value): {pair}")
        try:
            fields[key] = json.loads(value)
        except ValueError:
            fields[key] = value
    return fields


async def _serve_relay(host: str, port: int) -> int:
    server = RelayServer(port, host)
    if not await server.start():
        sys.stdout.write(f"Relay not started on port {port} (state: {server.state.value})\n")
        return 0 if server.state is ServerState.DECLINED else 1
    sys.stdout.write(f"Relay listening on {server.url}\n")
    try:
        await asyncio.Event().wait()
    finally:
        await server.stop()
    return 0


def _relay(args: argparse.Namespace) -> int:
    port = args.port if args.port is not None else resolve_ws_port()
    try:
        return asyncio.run(_serve_relay(args.host, port))
    except KeyboardInterrupt:
        return 0


async def _send_notification(url: str, message: dict[str, Any], timeout: float) -> bool:
    client = AgentRelayClient(url)
    try:
        if not await client.wait_connected(timeout):
            return False
        return await client.broadcast_update(message)
    finally:
        await client.disconnect()


def _notify(args: argparse.Namespace) -> int:
    try:
        fields = _parse_fields(args.field)
    except ValueError as exc:
        sys.stderr.write(str(exc) + "\n")
        return 1
    message = {"type": args.type, **fields}
    url = relay_url(args.host, args.port)
    if not asyncio.run(_send_notification(url, message, args.timeout)):
        sys.stderr.write(f"Relay not reachable at {url}\n")
        return 1
    sys.stdout.write(json.dumps(message) + "\n")
    return 0


async def _watch_board(url: str, api_url: Optional[str], poll_interval: float) -> None:
    fetcher = HttpBoardFetcher(api_url) if api_url else None

    async def _refresh(collections: set[str]) -> None:
        if fetcher is None:
            sys.stdout.write(json.dumps({"refresh": sorted(collections)}) + "\n")
            return
        sizes = await fetcher.refresh(collections)
        sys.stdout.write(json.dumps({"refresh": sizes}) + "\n")

    watcher = BoardWatcher(_refresh, url, poll_interval=poll_interval)
    try:
        await watcher.run()
    finally:
        if fetcher is not None:
            await fetcher.aclose()


def _watch(args: argparse.Namespace) -> int:
    url = relay_url(args.host, args.port)
    try:
        asyncio.run(_watch_board(url, args.api_url, args.poll_interval))
    except KeyboardInterrupt:
        pass
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='DevFlow real-time update relay')
    parser.add_argument('--log-level', default=None, help='Log level (default: $DEVFLOW_LOG_LEVEL or INFO)')
    subparsers = parser.add_subparsers(dest='command', required=True)

    relay = subparsers.add_parser('relay', help='Start the update relay server')
    relay.add_argument('--host', default=DEFAULT_HOST)
    relay.add_argument('--port', default=None, type=int, help='Port (default: $DEVFLOW_WS_PORT or 3001)')
    relay.set_defaults(func=_relay)

    notify = subparsers.add_parser('notify', help='Send one notification through the relay')
    notify.add_argument('type', help='Notification type, e.g. task_updated')
    notify.add_argument('--field', action='append', default=[], metavar='KEY=VALUE')
    notify.add_argument('--host', default=DEFAULT_HOST)
    notify.add_argument('--port', default=None, type=int)
    notify.add_argument('--timeout', default=3.0, type=float, help='Seconds to wait for the relay')
    notify.set_defaults(func=_notify)

    watch = subparsers.add_parser('watch', help='Follow relay updates and refresh board collections')
    watch.add_argument('--host', default=DEFAULT_HOST)
    watch.add_argument('--port', default=None, type=int)
    watch.add_argument('--api-url', default=None, help='DevFlow HTTP API base URL, e.g. http://localhost:3000')
    watch.add_argument('--poll-interval', default=WATCHER_POLL_INTERVAL, type=float)
    watch.set_defaults(func=_watch)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level or resolve_log_level())
    handler = getattr(args, 'func', None)
    if handler is None:
        parser.print_help()
        return 1
    logger.debug("Running command {}", args.command)
    return int(handler(args) or 0)


if __name__ == '__main__':
    sys.exit(main())
