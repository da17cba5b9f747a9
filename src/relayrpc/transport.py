"""Transport contracts consumed by the RPC engine.

The engine never assumes anything about how a transport moves messages: it
only installs an inbound hook and calls `init`, `close` and `send_message`.
"""

from __future__ import annotations

from typing import Awaitable, Callable, Protocol

from relayrpc.message import RpcMessage

MessageHandler = Callable[[RpcMessage], Awaitable[None]]


class RpcTransport(Protocol):
    """Interface for a message transport bound to one endpoint.

    Implement this for WebSocket relays, window messaging, in-process hubs,
    etc. The owner assigns `on_message`; the transport calls it for every
    inbound message, in arrival order.
    """

    client_id: str
    default_destination_id: str
    on_message: MessageHandler | None

    async def init(self) -> None:
        """Connect / start listening."""
        ...

    async def close(self) -> None:
        """Disconnect / stop listening."""
        ...

    async def send_message(self, message: RpcMessage) -> None:
        """Send a message. Raises on delivery failure."""
        ...


class ServerBroadcaster(Protocol):
    """Server-side sender that posts a message to every endpoint on a channel."""

    async def send_message(self, channel: str, message: RpcMessage) -> None:
        ...
