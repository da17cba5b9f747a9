"""In-process channel hub.

Every transport joined to a channel receives every message sent on it by the
others; endpoint filtering is left to RpcConnection, exactly as with the
networked relay. Messages are serialized to JSON on send, so only data that
could cross a process boundary crosses the hub.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import TYPE_CHECKING

from relayrpc.message import RpcMessage
from relayrpc.transport import MessageHandler

if TYPE_CHECKING:
    from relayrpc.provider import ClientRegistration

logger = logging.getLogger(__name__)


class LocalTransport:
    """Transport bound to one channel of a LocalChannelHub."""

    def __init__(self, hub: LocalChannelHub, registration: ClientRegistration) -> None:
        self.hub = hub
        self.client_id = registration.client_id
        self.default_destination_id = registration.default_destination_id
        self.channel = registration.base_channel
        self.on_message: MessageHandler | None = None
        self.sent_messages: list[RpcMessage] = []
        self._inbox: asyncio.Queue[str] = asyncio.Queue()
        self._read_loop_task: asyncio.Task[None] | None = None

    @property
    def joined(self) -> bool:
        return self._read_loop_task is not None

    async def init(self) -> None:
        if self._read_loop_task is None:
            self._read_loop_task = asyncio.create_task(self._read_loop())
            self.hub._join(self)

    async def close(self) -> None:
        self.hub._leave(self)
        if self._read_loop_task:
            self._read_loop_task.cancel()
            try:
                await self._read_loop_task
            except asyncio.CancelledError:
                pass
            self._read_loop_task = None

    async def send_message(self, message: RpcMessage) -> None:
        if not self.joined:
            raise ConnectionError(f"Transport {self.client_id} is not initialized")
        self.hub._publish(self.channel, message, sender=self)
        self.sent_messages.append(message)

    def _deliver(self, raw: str) -> None:
        self._inbox.put_nowait(raw)

    async def _read_loop(self) -> None:
        """Deliver inbox messages to the owner one at a time, in order."""
        while True:
            raw = await self._inbox.get()
            try:
                message = RpcMessage.from_json(json.loads(raw))
            except ValueError:
                logger.warning("%s: dropping malformed message", self.client_id)
                continue
            if self.on_message is None:
                continue
            try:
                await self.on_message(message)
            except Exception:
                logger.exception("%s: error handling message", self.client_id)


class LocalChannelHub:
    """In-process stand-in for a channel relay server.

    Acts both as a ClientFactory for RpcProvider and as the server-side
    broadcaster.
    """

    def __init__(self) -> None:
        self._channels: dict[str, list[LocalTransport]] = {}

    def get_client(self, registration: ClientRegistration) -> LocalTransport:
        return LocalTransport(self, registration)

    def get_server_broadcaster(self) -> LocalChannelHub:
        return self

    async def send_message(self, channel: str, message: RpcMessage) -> None:
        self._publish(channel, message, sender=None)

    def subscriber_count(self, channel: str) -> int:
        return len(self._channels.get(channel, ()))

    def _join(self, transport: LocalTransport) -> None:
        self._channels.setdefault(transport.channel, []).append(transport)

    def _leave(self, transport: LocalTransport) -> None:
        members = self._channels.get(transport.channel)
        if members and transport in members:
            members.remove(transport)
            if not members:
                del self._channels[transport.channel]

    def _publish(
        self,
        channel: str,
        message: RpcMessage,
        sender: LocalTransport | None,
    ) -> None:
        # Raises TypeError for payloads that are not JSON serializable
        raw = json.dumps(message.to_json())
        for transport in list(self._channels.get(channel, ())):
            if transport is not sender:
                transport._deliver(raw)
