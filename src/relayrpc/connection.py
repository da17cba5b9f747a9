"""Request/response correlation and dispatch over a transport.

An RpcConnection owns one transport, one table of pending outbound calls and
one callback registry. It follows a symmetric design where both peers use the
same class:

1. `send_request` sends a request under a fresh correlation id and waits for
   the response carrying the same id (or the timeout, whichever comes first)
2. Inbound requests are dispatched by function name to the callback registry,
   falling back to a default handler; the result goes back as a response
3. Inbound responses resolve the pending call with the matching id, at most
   once - duplicates and late deliveries are logged and dropped

Every outbound payload goes through `marshal_out` and every inbound payload
through `marshal_in`, so callables embedded in payloads stay callable on the
other side.
"""

from __future__ import annotations

import asyncio
import dataclasses
import functools
import inspect
import logging
from typing import Any, Callable

from relayrpc.config import ConnectionConfig
from relayrpc.error import RpcError, is_error_value
from relayrpc.ids import generate_id
from relayrpc.marshal import CallbackEntry, marshal_in, marshal_out
from relayrpc.message import WILDCARD, RpcMessage
from relayrpc.transport import RpcTransport

logger = logging.getLogger(__name__)

DefaultHandler = Callable[[RpcMessage], Any]


class PendingCall:
    """Entry in the pending-call table (a request waiting for its response)."""
    __slots__ = ('future', 'destination', 'function_name')

    def __init__(
        self,
        future: asyncio.Future[Any],
        destination: str,
        function_name: str,
    ) -> None:
        self.future = future
        self.destination = destination
        self.function_name = function_name


async def _unknown_function(msg: RpcMessage) -> Any:
    raise RpcError.unknown_function(msg.function_name)


class RpcConnection:
    """Correlated RPC over a single transport.

    Example:
        ```python
        connection = RpcConnection(transport)
        connection.register_function("add", lambda a, b: a + b)
        await connection.init()

        total = await connection.send_request("calculator", "add", [1, 2])
        ```
    """

    def __init__(
        self,
        transport: RpcTransport,
        config: ConnectionConfig | None = None,
        on_message: DefaultHandler | None = None,
    ) -> None:
        """Initialize the connection.

        Args:
            transport: The message transport; its inbound hook is taken over
            config: Optional timeout / marshaling configuration
            on_message: Handler for requests naming no registered function.
                Defaults to failing with an "Unknown function" error.
        """
        self.transport = transport
        self.config = config or ConnectionConfig()
        self.on_message = on_message or _unknown_function

        # Registered functions and marshaled callbacks, by name / path
        self.callbacks: dict[str, CallbackEntry] = {}

        # Outbound requests waiting for a response, by correlation id
        self._pending: dict[str, PendingCall] = {}

        # Background request handlers
        self._dispatch_tasks: set[asyncio.Task[None]] = set()

        self._closed = False
        transport.on_message = self.incoming_message

    @property
    def client_id(self) -> str:
        return self.transport.client_id

    @property
    def closed(self) -> bool:
        return self._closed

    async def init(self) -> None:
        """Initialize the underlying transport."""
        await self.transport.init()

    async def close(self) -> None:
        """Close the connection.

        Clears the callback registry, fails every outstanding call and closes
        the transport.
        """
        if self._closed:
            return
        self._closed = True

        self.callbacks.clear()
        for call in self._pending.values():
            if not call.future.done():
                call.future.set_exception(RpcError.transport("Connection closed"))
        self._pending.clear()

        for task in list(self._dispatch_tasks):
            task.cancel()

        # Break the reference cycle between connection and transport
        self.transport.on_message = None
        await self.transport.close()

    async def __aenter__(self) -> RpcConnection:
        await self.init()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()

    # -------------------------------------------------------------------------
    # Registry
    # -------------------------------------------------------------------------

    def register_function(self, name: str, func: Callable[..., Any]) -> None:
        """Expose `func` to peers under `name` (sync or async)."""
        self.callbacks[name] = CallbackEntry(self, func)

    def unregister_function(self, name: str) -> None:
        self.callbacks.pop(name, None)

    def get_stats(self) -> dict[str, int]:
        """Get statistics about the connection.

        Returns:
            Dict with 'pending', 'callbacks' and 'dispatching' counts
        """
        return {
            "pending": len(self._pending),
            "callbacks": len(self.callbacks),
            "dispatching": len(self._dispatch_tasks),
        }

    # -------------------------------------------------------------------------
    # Sending
    # -------------------------------------------------------------------------

    def _marshal(self, value: Any) -> Any:
        return marshal_out(value, self.callbacks, max_depth=self.config.max_depth)

    async def send_request(
        self,
        destination: str,
        function_name: str,
        data: Any,
        timeout: float | None = None,
    ) -> Any:
        """Call `function_name` on the endpoint `destination`.

        Args:
            destination: Endpoint id of the callee (or "*")
            function_name: Registered function name or callback path
            data: Argument list; a non-list value is sent as the only argument
            timeout: Seconds to wait for the response, defaults to the
                connection's configured timeout

        Returns:
            The callee's result, with callbacks converted to RemoteFunctions

        Raises:
            RpcError: The remote error, or a TIMEOUT error
        """
        if self._closed:
            raise RpcError.transport("Connection closed")

        args = list(data) if isinstance(data, (list, tuple)) else [data]
        request_id = generate_id()
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = PendingCall(future, destination, function_name)

        try:
            msg = RpcMessage(
                self.client_id,
                destination,
                "request",
                function_name,
                self._marshal(args),
                id=request_id,
            )
            await self.transport.send_message(msg)
            return await asyncio.wait_for(
                future, timeout if timeout is not None else self.config.timeout
            )
        except asyncio.TimeoutError:
            raise RpcError.timeout(
                f"Timeout waiting for response from {destination} for {function_name}"
            ) from None
        finally:
            self._pending.pop(request_id, None)

    async def send_request_to_host(
        self,
        function_name: str,
        data: Any,
        timeout: float | None = None,
    ) -> Any:
        """Call `function_name` on the transport's default destination."""
        return await self.send_request(
            self.transport.default_destination_id, function_name, data, timeout
        )

    async def send_message(self, msg: RpcMessage) -> None:
        """Send a message as-is, without correlation or marshaling."""
        if self._closed:
            raise RpcError.transport("Connection closed")
        await self.transport.send_message(msg)

    # -------------------------------------------------------------------------
    # Receiving
    # -------------------------------------------------------------------------

    async def incoming_message(self, msg: RpcMessage) -> None:
        """Handle a message delivered by the transport.

        Requests are dispatched in a background task so that the transport's
        receive loop never blocks: a handler that calls back into the peer
        needs this loop to deliver the nested response.
        """
        arrow = ">>" if msg.direction == "request" else "<<"
        logger.debug(
            "%s: incoming %s %s %s from %s",
            self.client_id, msg.direction, arrow, msg.function_name, msg.source,
        )

        if msg.destination not in (self.client_id, WILDCARD):
            logger.debug(
                "%s: ignoring %s for %s", self.client_id, msg.function_name, msg.destination
            )
            return

        data = marshal_in(msg.data, functools.partial(self.send_request, msg.source))
        msg = msg.with_data(data)

        if msg.direction == "request":
            task = asyncio.create_task(self._dispatch(msg))
            self._dispatch_tasks.add(task)
            task.add_done_callback(self._dispatch_tasks.discard)
        else:
            self._resolve(msg)

    def _resolve(self, msg: RpcMessage) -> None:
        call = self._pending.pop(msg.id, None)
        if call is None or call.future.done():
            logger.warning(
                "%s: no pending call for response %s (%s), dropping",
                self.client_id, msg.id, msg.function_name,
            )
            return

        if is_error_value(msg.data):
            call.future.set_exception(RpcError.from_wire(msg.data))
        else:
            call.future.set_result(msg.data)

    async def _dispatch(self, msg: RpcMessage) -> None:
        entry = self.callbacks.get(msg.function_name)
        try:
            if entry is not None:
                result = entry.func(*_as_args(msg.data))
            else:
                result = self.on_message(msg)
            if inspect.isawaitable(result):
                result = await result
            payload = self._marshal(result)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(
                "%s: request %s failed: %s", self.client_id, msg.function_name, e
            )
            payload = RpcError.from_exception(e).to_wire()
        else:
            logger.debug("%s: request %s done", self.client_id, msg.function_name)

        try:
            await self.transport.send_message(self._response_for(msg, payload))
        except Exception:
            logger.exception(
                "%s: failed to send response for %s", self.client_id, msg.function_name
            )

    def _response_for(self, msg: RpcMessage, payload: Any) -> RpcMessage:
        response = RpcMessage.response(msg, payload)
        # Answer wildcard requests as ourselves so the caller can address
        # callbacks in the result back to this endpoint
        if response.source == WILDCARD and msg.source != self.client_id:
            response = dataclasses.replace(response, source=self.client_id)
        return response


def _as_args(data: Any) -> list[Any]:
    if data is None:
        return []
    if isinstance(data, list):
        return data
    return [data]
