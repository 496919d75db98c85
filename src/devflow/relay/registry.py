"""Connection registry owned by a single relay server instance."""

from __future__ import annotations

from typing import Any, Callable, Iterator, Optional

from loguru import logger
from starlette.websockets import WebSocketState


def is_open(peer: Any) -> bool:
    """Report whether a Starlette websocket can still be written to."""
    return (
        getattr(peer, "client_state", None) == WebSocketState.CONNECTED
        and getattr(peer, "application_state", None) == WebSocketState.CONNECTED
    )


class ConnectionRegistry:
    """Track the peers connected to one relay and fan messages out to them."""

    def __init__(self, is_open: Callable[[Any], bool] = is_open) -> None:
        self._peers: dict[int, Any] = {}  # id(peer) → peer
        self._is_open = is_open

    def __len__(self) -> int:
        return len(self._peers)

    def __contains__(self, peer: object) -> bool:
        return self._peers.get(id(peer)) is peer

    def __iter__(self) -> Iterator[Any]:
        return iter(list(self._peers.values()))

    def add(self, peer: Any) -> None:
        self._peers[id(peer)] = peer

    def discard(self, peer: Any) -> None:
        # Close and error paths may both remove the same peer.
        if self._peers.get(id(peer)) is peer:
            del self._peers[id(peer)]

    def clear(self) -> None:
        self._peers.clear()

    async def relay(self, message: str, *, sender: Optional[Any] = None) -> int:
        """Send `message` to every open peer except `sender`.

        Returns:
            The number of peers the message was written to.
        """
        delivered = 0
        for peer in list(self._peers.values()):
            if peer is sender or not self._is_open(peer):
                continue
            try:
                await peer.send_text(message)
            except Exception as exc:
                logger.debug("Dropping peer after failed send: {}", exc)
                self.discard(peer)
                continue
            delivered += 1
        return delivered
