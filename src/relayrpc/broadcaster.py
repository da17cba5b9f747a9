"""One-way fan-out of data to every listener on a channel.

ChannelBroadcaster opens its connection lazily on the first emit. Payloads
emitted while the connection is still being set up are buffered and sent in
arrival order once it is ready, so callers never wait on each other and never
reorder.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import deque
from typing import Any, Callable

from relayrpc.channels import RpcContext, get_rpc_path
from relayrpc.config import ConnectionConfig
from relayrpc.connection import RpcConnection
from relayrpc.error import RpcError
from relayrpc.message import RpcMessage
from relayrpc.transport import RpcTransport

logger = logging.getLogger(__name__)

BROADCASTER_CLIENT_ID = "broadcaster"
LISTENER_CLIENT_ID = "listener"
BROADCAST_FUNCTION = "emitToAll"


class ChannelBroadcaster:
    """Buffered, order-preserving emitter for one channel.

    Example:
        ```python
        broadcaster = ChannelBroadcaster(ctx, "job-events")
        await broadcaster.emit_to_all({"step": 1})
        await broadcaster.emit_to_all({"step": 2})
        await broadcaster.close(timeout=1.0)
        ```
    """

    def __init__(
        self,
        ctx: RpcContext,
        namespace: str,
        account_scope: bool = False,
        config: ConnectionConfig | None = None,
    ) -> None:
        self.ctx = ctx
        self.namespace = namespace
        self.account_scope = account_scope
        self._config = config

        self.connection: RpcConnection | None = None
        self.buffer: deque[Any] = deque()
        self.connecting = False
        self._inflight_count = 0

        # Set while nothing is buffered, in flight or connecting
        self._idle = asyncio.Event()
        self._idle.set()
        self._closed = asyncio.Event()
        self._close_tasks: set[asyncio.Task[None]] = set()

    @property
    def inflight_count(self) -> int:
        return self._inflight_count

    def _update_idle(self) -> None:
        if self._inflight_count == 0 and not self.buffer and not self.connecting:
            self._idle.set()
        else:
            self._idle.clear()

    async def _send(self, data: Any) -> None:
        connection = self.connection
        if connection is None:
            raise RuntimeError("Broadcaster is not connected")
        msg = RpcMessage(
            connection.client_id,
            connection.transport.default_destination_id,
            "request",
            BROADCAST_FUNCTION,
            data,
        )
        await connection.send_message(msg)

    async def _tracked_send(self, data: Any) -> None:
        self._inflight_count += 1
        self._update_idle()
        try:
            await self._send(data)
        finally:
            self._inflight_count -= 1
            self._update_idle()

    async def _drain(self) -> None:
        while self.buffer:
            await self._tracked_send(self.buffer.popleft())
        self.connecting = False
        self._update_idle()

    async def _connect(self) -> None:
        transport = self.ctx.get_rpc_provider().get_client(
            self.ctx.get_token,
            BROADCASTER_CLIENT_ID,
            LISTENER_CLIENT_ID,
            get_rpc_path(self.ctx, self.namespace, self.account_scope),
        )
        connection = RpcConnection(transport, self._config)
        self.connection = connection
        try:
            await connection.init()
        except Exception:
            # Let the next emit retry the whole setup
            self.connection = None
            await connection.close()
            raise

    async def emit_to_all(self, data: Any) -> None:
        """Send `data` to every listener on the channel.

        Raises:
            RpcError: TRANSPORT error wrapping the connect or send failure
        """
        try:
            if self.connection is None:
                self.connecting = True
                self.buffer.append(data)
                self._update_idle()
                await self._connect()
                await self._drain()
            elif self.connecting:
                # The emit that is connecting will drain this in order
                self.buffer.append(data)
                self._update_idle()
            elif self.buffer:
                # Leftovers of a failed drain go first
                self.connecting = True
                self.buffer.append(data)
                await self._drain()
            else:
                await self._tracked_send(data)
        except Exception as e:
            logger.warning("Error broadcasting on %s: %s", self.namespace, e)
            self.connecting = False
            self._update_idle()
            raise RpcError.transport(
                f"Error sending message {self.namespace}: {e}"
            ) from e

    async def close(self, timeout: float = 1.0) -> None:
        """Wait up to `timeout` seconds for pending sends, then close.

        Buffered payloads still unsent at the deadline are abandoned.
        """
        try:
            await asyncio.wait_for(self._idle.wait(), timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Closing broadcaster %s with %d buffered and %d in-flight messages",
                self.namespace, len(self.buffer), self._inflight_count,
            )
        try:
            if self.connection is not None:
                await self.connection.close()
        finally:
            self._closed.set()

    def close_async(self, delay: float = 0.0, timeout: float = 1.0) -> None:
        """Schedule `close` without waiting for it.

        The close starts `delay` seconds after the second turn of the event
        loop, which lets response processing already queued finish first.
        Use `await close()` or `wait_closed()` when the close must be complete.
        """
        loop = asyncio.get_running_loop()

        def start_close() -> None:
            task = loop.create_task(self.close(timeout))
            self._close_tasks.add(task)
            task.add_done_callback(self._close_tasks.discard)

        loop.call_soon(lambda: loop.call_later(delay, start_close))

    async def wait_closed(self) -> None:
        """Wait until a `close` (awaited or scheduled) has finished."""
        await self._closed.wait()


class ChannelListener:
    """Receives everything broadcast on a channel.

    Example:
        ```python
        listener = ChannelListener(ctx, "job-events")
        await listener.listen(lambda data: print("event", data))
        ...
        await listener.stop()
        ```
    """

    def __init__(
        self,
        ctx: RpcContext,
        namespace: str,
        account_scope: bool = False,
    ) -> None:
        self.ctx = ctx
        self.namespace = namespace
        self.account_scope = account_scope
        self.transport: RpcTransport | None = None
        self._callback: Callable[[Any], Any] | None = None

    async def listen(self, callback: Callable[[Any], Any]) -> None:
        """Start delivering broadcast data to `callback` (sync or async)."""
        if self.transport is None:
            self.transport = self.ctx.get_rpc_provider().get_client(
                self.ctx.get_token,
                LISTENER_CLIENT_ID,
                "host",
                get_rpc_path(self.ctx, self.namespace, self.account_scope),
            )
        self._callback = callback
        self.transport.on_message = self._on_message
        await self.transport.init()

    async def _on_message(self, msg: RpcMessage) -> None:
        if msg.direction != "request" or self._callback is None:
            return
        result = self._callback(msg.data)
        if inspect.isawaitable(result):
            await result

    async def stop(self) -> None:
        if self.transport is not None:
            await self.transport.close()
