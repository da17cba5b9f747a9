"""Abort / barge-in / hydrate coordination over a channel.

A long-running job creates an AbortHandler on its channel and registers
listeners; anyone holding an AbortRequestor on the same channel can then
interrupt it:

- abort: permanent cancellation. Once a handler has started aborting it
  refuses new abort listeners.
- barge-in: transient interrupt of the running step. The handler returns to
  idle once every barge-in listener has run.
- hydrate: on-demand state snapshot, answered with the first listener's data.
- ping: liveness check, answered with pong.

Handlers chain: a handler built with `parent_abort_handler` listens for its
parent's abort and barge-in, so cancelling a parent fans out to every
descendant.

Listener failures never crash the handler. Abort waits for every listener to
settle and then replies `error` with the first failure; barge-in and hydrate
are best effort and only log failures.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Literal

from relayrpc.channels import RpcContext, get_base_channel
from relayrpc.config import ConnectionConfig
from relayrpc.connection import RpcConnection
from relayrpc.error import ErrorCode, RpcError
from relayrpc.ids import generate_id
from relayrpc.message import WILDCARD

logger = logging.getLogger(__name__)

HANDLER_CLIENT_ID = "server"
REQUESTOR_CLIENT_ID = "client"
CONTROL_FUNCTION = "abortControl"

RequestType = Literal["ping", "abort", "barge-in", "hydrate"]
ResponseType = Literal["pong", "aborted", "timeout", "barged-in", "hydrated", "error"]


@dataclass
class AbortRequestMessage:
    """Control request: {"type": ..., "reason": ...}"""

    type: RequestType
    reason: str = ""

    def to_json(self) -> dict[str, Any]:
        return {"type": self.type, "reason": self.reason}

    @staticmethod
    def from_json(obj: Any) -> AbortRequestMessage:
        if not isinstance(obj, dict) or not isinstance(obj.get("type"), str):
            raise ValueError(f"Invalid control request: {obj!r}")
        reason = obj.get("reason")
        return AbortRequestMessage(obj["type"], reason if isinstance(reason, str) else "")


@dataclass
class AbortResponseMessage:
    """Control reply: {"type", "success", "message", "data"}"""

    type: ResponseType
    success: bool
    message: str = ""
    data: Any = None

    def to_json(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "success": self.success,
            "message": self.message,
            "data": self.data,
        }

    @staticmethod
    def from_json(obj: Any) -> AbortResponseMessage:
        if not isinstance(obj, dict) or not isinstance(obj.get("type"), str):
            raise ValueError(f"Invalid control response: {obj!r}")
        message = obj.get("message")
        return AbortResponseMessage(
            type=obj["type"],
            success=bool(obj.get("success", False)),
            message=message if isinstance(message, str) else "",
            data=obj.get("data"),
        )


Listener = Callable[[AbortRequestMessage], Awaitable[AbortResponseMessage | None]]


class ListenerKind(str, Enum):
    ABORT = "abort"
    BARGE_IN = "barge-in"
    HYDRATE = "hydrate"


@dataclass(eq=False)
class AbortHandle:
    """Registration returned by the `on_*_requested` methods."""

    id: str
    kind: ListenerKind
    func: Listener


class AbortedError(Exception):
    """Raised when registering an abort listener on an aborting handler."""


async def _invoke(func: Listener, message: AbortRequestMessage) -> Any:
    result = func(message)
    if inspect.isawaitable(result):
        result = await result
    return result


class AbortHandler:
    """Receiving side of the control protocol for one channel.

    Example:
        ```python
        handler = AbortHandler(ctx, "job-42")
        await handler.init()

        async def stop(message):
            job.cancel()
            return AbortResponseMessage("aborted", True, message.reason)

        handle = handler.on_abort_requested(stop)
        ...
        handler.stop_listening(handle)
        await handler.close()
        ```
    """

    def __init__(
        self,
        ctx: RpcContext,
        channel: str,
        parent_abort_handler: AbortHandler | None = None,
        config: ConnectionConfig | None = None,
    ) -> None:
        self.ctx = ctx
        self.channel = channel
        self.parent_abort_handler = parent_abort_handler

        self.aborting = False
        self.barging_in = False
        self.hydrating = False
        self.abort_reason = "Abort"

        # One registry for all three listener kinds, by handle id
        self._listeners: dict[str, AbortHandle] = {}
        self._background: set[asyncio.Task[Any]] = set()

        transport = ctx.get_rpc_provider().get_client(
            ctx.get_token,
            HANDLER_CLIENT_ID,
            WILDCARD,
            get_base_channel(ctx) + channel,
        )
        self.connection = RpcConnection(transport, config)
        self.connection.register_function(CONTROL_FUNCTION, self._handle_control)

        self._parent_abort_handle: AbortHandle | None = None
        self._parent_barge_in_handle: AbortHandle | None = None
        if parent_abort_handler is not None:
            self._parent_abort_handle = parent_abort_handler.on_abort_requested(
                self._on_parent_abort
            )
            self._parent_barge_in_handle = parent_abort_handler.on_barge_in_requested(
                self._on_parent_barge_in
            )

    async def init(self) -> None:
        await self.connection.init()

    async def close(self) -> None:
        """Detach from the parent handler and close the connection."""
        if self.parent_abort_handler is not None:
            self.parent_abort_handler.stop_listening(self._parent_abort_handle)
            self.parent_abort_handler.stop_listening(self._parent_barge_in_handle)
            self._parent_abort_handle = None
            self._parent_barge_in_handle = None
        await self.connection.close()

    # -------------------------------------------------------------------------
    # Listener registration
    # -------------------------------------------------------------------------

    def _register(self, kind: ListenerKind, func: Listener) -> AbortHandle:
        handle = AbortHandle(generate_id(), kind, func)
        self._listeners[handle.id] = handle
        return handle

    def on_abort_requested(self, func: Listener) -> AbortHandle:
        """Register an abort listener.

        Raises:
            AbortedError: If this handler is already aborting
        """
        if self.aborting:
            raise AbortedError(self.abort_reason)
        return self._register(ListenerKind.ABORT, func)

    def on_barge_in_requested(self, func: Listener) -> AbortHandle | None:
        """Register a barge-in listener.

        While a barge-in is in progress the listener is not registered but
        invoked right away, and None is returned.
        """
        if self.barging_in:
            task = asyncio.create_task(
                _invoke(func, AbortRequestMessage("barge-in", "bargin"))
            )
            self._background.add(task)
            task.add_done_callback(self._background_done)
            return None
        return self._register(ListenerKind.BARGE_IN, func)

    def on_hydration_requested(self, func: Listener) -> AbortHandle:
        return self._register(ListenerKind.HYDRATE, func)

    def stop_listening(self, handle: AbortHandle | None) -> None:
        """Remove a listener, whichever kind it was registered as."""
        if handle is not None:
            self._listeners.pop(handle.id, None)

    def listener_count(self, kind: ListenerKind | None = None) -> int:
        return sum(1 for h in self._listeners.values() if kind is None or h.kind is kind)

    def _background_done(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("Barge-in listener failed: %s", task.exception())

    # -------------------------------------------------------------------------
    # Local verbs
    # -------------------------------------------------------------------------

    async def _fan_out(self, kind: ListenerKind, message: AbortRequestMessage) -> list[Any]:
        listeners = [h for h in self._listeners.values() if h.kind is kind]
        return await asyncio.gather(
            *(_invoke(h.func, message) for h in listeners),
            return_exceptions=True,
        )

    async def abort(self, reason: str) -> None:
        """Abort: run every abort listener concurrently.

        Raises:
            Exception: The first listener failure, once all listeners settled
        """
        self.aborting = True
        if reason:
            self.abort_reason = reason
        results = await self._fan_out(
            ListenerKind.ABORT, AbortRequestMessage("abort", reason)
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result

    async def barge_in(self, reason: str) -> None:
        """Barge in: run every barge-in listener, ignoring failures."""
        self.barging_in = True
        try:
            results = await self._fan_out(
                ListenerKind.BARGE_IN, AbortRequestMessage("barge-in", reason)
            )
        finally:
            self.barging_in = False
        for result in results:
            if isinstance(result, BaseException):
                logger.warning("Barge-in listener failed on %s: %s", self.channel, result)

    async def hydrate(self) -> Any:
        """Run every hydration listener and return the first one's data."""
        self.hydrating = True
        try:
            results = await self._fan_out(
                ListenerKind.HYDRATE, AbortRequestMessage("hydrate", "hydrate")
            )
        finally:
            self.hydrating = False
        for result in results:
            if isinstance(result, BaseException):
                logger.warning("Hydration listener failed on %s: %s", self.channel, result)
                continue
            if isinstance(result, AbortResponseMessage):
                return result.data
            return result
        return None

    async def _on_parent_abort(self, message: AbortRequestMessage) -> AbortResponseMessage:
        await self.abort(message.reason)
        return AbortResponseMessage("aborted", True, message.reason)

    async def _on_parent_barge_in(
        self, message: AbortRequestMessage
    ) -> AbortResponseMessage:
        await self.barge_in(message.reason)
        return AbortResponseMessage("barged-in", True, message.reason)

    # -------------------------------------------------------------------------
    # Remote verbs
    # -------------------------------------------------------------------------

    async def _handle_control(self, request: Any) -> dict[str, Any]:
        message = AbortRequestMessage.from_json(request)
        logger.debug("Control request %s on %s", message.type, self.channel)

        match message.type:
            case "ping":
                response = AbortResponseMessage("pong", True)
            case "abort":
                try:
                    await self.abort(message.reason)
                    response = AbortResponseMessage("aborted", True, message.reason)
                except Exception as e:
                    logger.warning("Abort listener failed on %s: %s", self.channel, e)
                    response = AbortResponseMessage("error", False, str(e))
            case "barge-in":
                await self.barge_in(message.reason)
                response = AbortResponseMessage("barged-in", True, message.reason)
            case "hydrate":
                data = await self.hydrate()
                response = AbortResponseMessage("hydrated", True, message.reason, data)
            case _:
                response = AbortResponseMessage(
                    "error", False, f"Unknown control request type: {message.type}"
                )
        return response.to_json()


class AbortRequestor:
    """Sending side of the control protocol for one channel.

    The connection is opened on the first request. Each request waits for
    the handler's reply up to its own timeout and resolves to a `timeout`
    response when none arrives.
    """

    def __init__(
        self,
        ctx: RpcContext,
        channel: str,
        config: ConnectionConfig | None = None,
    ) -> None:
        self.ctx = ctx
        self.channel = channel
        self._config = config
        self.connection: RpcConnection | None = None
        # Shared by every request issued while the connection is set up
        self._init_task: asyncio.Task[RpcConnection] | None = None

    @property
    def has_init(self) -> bool:
        return self.connection is not None

    async def _connect(self) -> RpcConnection:
        transport = self.ctx.get_rpc_provider().get_client(
            self.ctx.get_token,
            REQUESTOR_CLIENT_ID,
            HANDLER_CLIENT_ID,
            get_base_channel(self.ctx) + self.channel,
        )
        connection = RpcConnection(transport, self._config)
        self.connection = connection
        try:
            await connection.init()
        except Exception:
            self.connection = None
            await connection.close()
            raise
        return connection

    async def _ensure_connection(self) -> RpcConnection:
        if self._init_task is None:
            self._init_task = asyncio.create_task(self._connect())
        init_task = self._init_task
        try:
            return await asyncio.shield(init_task)
        except Exception:
            # Let the next request retry the setup
            if self._init_task is init_task:
                self._init_task = None
            raise

    async def close(self) -> None:
        init_task, self._init_task = self._init_task, None
        if init_task is not None and not init_task.done():
            init_task.cancel()
            try:
                await init_task
            except asyncio.CancelledError:
                pass
        if self.connection is not None:
            connection, self.connection = self.connection, None
            await connection.close()

    async def _send_message(
        self, message: AbortRequestMessage, timeout: float
    ) -> AbortResponseMessage:
        connection = await self._ensure_connection()
        try:
            result = await connection.send_request_to_host(
                CONTROL_FUNCTION, [message.to_json()], timeout=timeout
            )
        except RpcError as e:
            if e.code is ErrorCode.TIMEOUT:
                return AbortResponseMessage("timeout", False, "Timeout")
            raise
        return AbortResponseMessage.from_json(result)

    async def send_abort_request(self, reason: str, timeout: float) -> AbortResponseMessage:
        return await self._send_message(AbortRequestMessage("abort", reason), timeout)

    async def send_ping_request(self, timeout: float) -> AbortResponseMessage:
        return await self._send_message(AbortRequestMessage("ping", "Ping"), timeout)

    async def send_barge_in_request(
        self, reason: str, timeout: float
    ) -> AbortResponseMessage:
        logger.debug("Sending barge-in request on %s", self.channel)
        return await self._send_message(AbortRequestMessage("barge-in", reason), timeout)

    async def send_hydrate_request(self, timeout: float) -> AbortResponseMessage:
        return await self._send_message(AbortRequestMessage("hydrate", "Hydrate"), timeout)
