"""Window-messaging transport.

A PostMessageBridge wraps each RpcMessage in an envelope and posts it to a
target window; it listens on its own (host) window for envelopes coming
back. Envelopes look like::

    {"type": "botdojo-rpc", "payload": {...}, "timestamp": 1700000000000}

Payloads whose JSON form is longer than the compression threshold are sent
as `botdojo-rpc-compressed` with a string payload of `compressed:` followed
by the base64 of the UTF-8 JSON.

Windows are anything implementing MessageWindow. InMemoryWindow provides
browser-like delivery (asynchronous, cloned data, target origin check)
inside one event loop.
"""

from __future__ import annotations

import asyncio
import base64
import copy
import inspect
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Protocol

from relayrpc.config import BridgeConfig, ConnectionConfig
from relayrpc.connection import DefaultHandler, RpcConnection
from relayrpc.error import RpcError
from relayrpc.message import RpcMessage
from relayrpc.transport import MessageHandler

logger = logging.getLogger(__name__)

ENVELOPE_PREFIX = "botdojo-"
RPC_ENVELOPE = "botdojo-rpc"
READY_ENVELOPE = "botdojo-ready"
ERROR_ENVELOPE = "botdojo-error"
COMPRESSED_RPC_ENVELOPE = "botdojo-rpc-compressed"

COMPRESSION_MARKER = "compressed:"


@dataclass
class MessageEvent:
    """A delivered window message."""

    data: Any
    origin: str
    source: Any = None


MessageListener = Callable[[MessageEvent], None]


class MessageWindow(Protocol):
    """The part of a window the bridge needs."""

    def post_message(self, data: Any, target_origin: str, source: Any = None) -> None:
        ...

    def add_message_listener(self, listener: MessageListener) -> None:
        ...

    def remove_message_listener(self, listener: MessageListener) -> None:
        ...


class InMemoryWindow:
    """A window living in the current event loop.

    Posting clones the data and delivers it on a later loop iteration, like
    a browser does. Messages whose target origin is neither "*" nor this
    window's origin are dropped.
    """

    def __init__(self, origin: str, parent: InMemoryWindow | None = None) -> None:
        self.origin = origin
        self.parent = parent
        self._listeners: list[MessageListener] = []

    @property
    def top(self) -> InMemoryWindow:
        window = self
        while window.parent is not None:
            window = window.parent
        return window

    def post_message(self, data: Any, target_origin: str, source: Any = None) -> None:
        if target_origin not in ("*", self.origin):
            logger.debug(
                "Dropping message for origin %s posted to %s", target_origin, self.origin
            )
            return
        event = MessageEvent(
            data=copy.deepcopy(data),
            origin=getattr(source, "origin", "null"),
            source=source,
        )
        loop = asyncio.get_running_loop()
        for listener in list(self._listeners):
            loop.call_soon(listener, event)

    def add_message_listener(self, listener: MessageListener) -> None:
        self._listeners.append(listener)

    def remove_message_listener(self, listener: MessageListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def __repr__(self) -> str:
        return f"InMemoryWindow({self.origin!r})"


def is_in_iframe(window: Any) -> bool:
    """Return True if `window` is nested inside another window."""
    parent = getattr(window, "parent", None)
    return parent is not None and parent is not window


def compress_message(message: str) -> str:
    encoded = base64.b64encode(message.encode("utf-8")).decode("ascii")
    return COMPRESSION_MARKER + encoded


def decompress_message(compressed: str) -> str:
    """Undo `compress_message`; strings without the marker pass through.

    Raises:
        TypeError: If `compressed` is not a string
        ValueError: If the base64 or the UTF-8 inside it is invalid
    """
    if not isinstance(compressed, str):
        raise TypeError(f"Compressed payload must be a string, got {type(compressed).__name__}")
    if not compressed.startswith(COMPRESSION_MARKER):
        return compressed
    raw = base64.b64decode(compressed[len(COMPRESSION_MARKER):], validate=True)
    return raw.decode("utf-8")


def _timestamp() -> int:
    return int(time.time() * 1000)


class PostMessageBridge:
    """Moves RpcMessages between two windows.

    Example:
        ```python
        bridge = PostMessageBridge(
            BridgeConfig(client_id="canvas"),
            target_window=parent_window,
            host_window=canvas_window,
            on_message=handle,
        )
        bridge.start()
        bridge.send_message(RpcMessage.request("canvas", "agent", "ping", []))
        ```
    """

    def __init__(
        self,
        config: BridgeConfig,
        target_window: MessageWindow | None,
        host_window: MessageWindow,
        on_message: Callable[[RpcMessage], Any] | None = None,
        on_ready: Callable[[dict[str, Any]], Any] | None = None,
        on_error: Callable[[Any], Any] | None = None,
    ) -> None:
        self.config = config
        self.target_window = target_window
        self.host_window = host_window
        self.on_message = on_message
        self.on_ready = on_ready
        self.on_error = on_error
        self._running = False
        self._handler_tasks: set[asyncio.Task[Any]] = set()

    def _log(self, message: str, *args: Any) -> None:
        level = logging.INFO if self.config.debug else logging.DEBUG
        logger.log(level, "[%s] " + message, self.config.client_id, *args)

    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Start listening for envelopes on the host window."""
        if self._running:
            self._log("Bridge already active")
            return
        self.host_window.add_message_listener(self.handle_message_event)
        self._running = True
        self._log("Bridge started")

    def stop(self) -> None:
        if not self._running:
            return
        self.host_window.remove_message_listener(self.handle_message_event)
        self._running = False
        self._log("Bridge stopped")

    def update_config(self, **changes: Any) -> None:
        """Replace configuration fields, validating the result."""
        self.config = BridgeConfig.model_validate(
            {**self.config.model_dump(), **changes}
        )

    def update_target_window(self, target_window: MessageWindow | None) -> None:
        self.target_window = target_window
        self._log("Target window updated")

    # -------------------------------------------------------------------------
    # Sending
    # -------------------------------------------------------------------------

    def _post(self, envelope: dict[str, Any]) -> None:
        if self.target_window is None:
            raise ConnectionError("PostMessageBridge has no target window")
        self.target_window.post_message(
            envelope, self.config.target_origin, source=self.host_window
        )

    def send_message(self, message: RpcMessage) -> None:
        """Post `message`, compressing it when it is large.

        Raises:
            TypeError: If the message data is not JSON serializable
            ConnectionError: If there is no target window
        """
        payload = message.to_json()
        if not payload["source"] and self.config.default_source:
            payload["source"] = self.config.default_source
        if not payload["destination"] and self.config.default_destination:
            payload["destination"] = self.config.default_destination

        serialized = json.dumps(payload)
        if (
            self.config.enable_compression
            and len(serialized) > self.config.compression_threshold
        ):
            compressed = compress_message(serialized)
            envelope = {
                "type": COMPRESSED_RPC_ENVELOPE,
                "payload": compressed,
                "timestamp": _timestamp(),
                "compressed": True,
            }
            self._log(
                "Sending compressed %s (%d -> %d chars)",
                message.function_name, len(serialized), len(compressed),
            )
        else:
            envelope = {
                "type": RPC_ENVELOPE,
                "payload": payload,
                "timestamp": _timestamp(),
            }
            self._log(
                "Sending %s %s to %s",
                message.direction, message.function_name, message.destination,
            )
        self._post(envelope)

    def send_ready(
        self,
        channel_id: str | None = None,
        capabilities: list[str] | None = None,
    ) -> None:
        ready: dict[str, Any] = {
            "clientId": self.config.client_id,
            "capabilities": list(capabilities or []),
        }
        if channel_id is not None:
            ready["channelId"] = channel_id
        self._log("Sending ready %s", ready)
        self._post({"type": READY_ENVELOPE, "payload": ready, "timestamp": _timestamp()})

    def send_error(self, error: Any) -> None:
        if isinstance(error, BaseException):
            message = str(error) or type(error).__name__
            detail: Any = RpcError.from_exception(error).to_wire()
        else:
            message = str(error) if error is not None else "Unknown error"
            detail = error
        self._log("Sending error %s", message)
        self._post({
            "type": ERROR_ENVELOPE,
            "payload": {"message": message, "error": detail},
            "timestamp": _timestamp(),
        })

    # -------------------------------------------------------------------------
    # Receiving
    # -------------------------------------------------------------------------

    def is_origin_allowed(self, origin: str) -> bool:
        """Check `origin` against the configured chat domain allowlist.

        Entries match exactly, or by suffix when written as `*.domain`. With
        no allowlist every origin is allowed.
        """
        cors = self.config.cors
        if cors is None or cors.botdojo_chat_domain is None:
            return True
        for allowed in cors.botdojo_chat_domain:
            if allowed == origin:
                return True
            if allowed.startswith("*.") and origin.endswith(allowed[1:]):
                return True
        return False

    def _checks_origin(self) -> bool:
        cors = self.config.cors
        return (
            self.config.role != "chat"
            and cors is not None
            and cors.botdojo_chat_domain is not None
        )

    def handle_message_event(self, event: MessageEvent) -> None:
        """Listener installed on the host window."""
        envelope = event.data
        if not isinstance(envelope, dict):
            return
        envelope_type = envelope.get("type")
        if not isinstance(envelope_type, str) or not envelope_type.startswith(ENVELOPE_PREFIX):
            return

        if (
            self.config.filter_source_window
            and self.target_window is not None
            and event.source is not self.target_window
        ):
            return

        if self._checks_origin() and not self.is_origin_allowed(event.origin):
            self._log("Blocked message from untrusted origin %s", event.origin)
            if envelope_type in (RPC_ENVELOPE, COMPRESSED_RPC_ENVELOPE):
                self._reject(envelope, event.origin)
            return

        self._log("Received %s from %s", envelope_type, event.origin)
        payload = envelope.get("payload")
        match envelope_type:
            case "botdojo-rpc":
                self._handle_rpc(payload, event.origin)
            case "botdojo-rpc-compressed":
                try:
                    message = json.loads(decompress_message(payload))
                except (TypeError, ValueError) as e:
                    logger.warning(
                        "%s: failed to decompress message: %s", self.config.client_id, e
                    )
                    self._report_error(e)
                    return
                self._handle_rpc(message, event.origin)
            case "botdojo-ready":
                if self.on_ready is not None:
                    self.on_ready(payload)
            case "botdojo-error":
                self._report_error(payload)

    def _reject(self, envelope: dict[str, Any], origin: str) -> None:
        """Answer a blocked request so its caller fails fast."""
        try:
            payload = envelope.get("payload")
            if envelope.get("type") == COMPRESSED_RPC_ENVELOPE:
                payload = json.loads(decompress_message(payload))
            if not isinstance(payload, dict) or not payload.get("id"):
                return
            request = RpcMessage.from_json(payload)
            error = RpcError.permission_denied(
                f"CORS blocked: PostMessage from untrusted chat domain {origin}"
            )
            self.send_message(RpcMessage.response(request, error.to_wire()))
        except (TypeError, ValueError, ConnectionError) as e:
            self._log("Could not send CORS error response: %s", e)

    def _handle_rpc(self, payload: Any, origin: str | None) -> None:
        if not isinstance(payload, dict) or not payload.get("id") or not payload.get("functionName"):
            self._log("Invalid RPC payload %r", payload)
            return

        payload = dict(payload)
        if not payload.get("source") and self.config.default_source:
            payload["source"] = self.config.default_source
        if not payload.get("destination") and self.config.default_destination:
            payload["destination"] = self.config.default_destination
        if origin and not payload.get("origin"):
            payload["origin"] = origin

        if self.config.filter_source and payload.get("source") != self.config.filter_source:
            self._log("Filtered message from %s", payload.get("source"))
            return

        try:
            message = RpcMessage.from_json(payload)
        except ValueError as e:
            self._log("Invalid RPC message: %s", e)
            return

        if self.on_message is None:
            return
        try:
            result = self.on_message(message)
        except Exception as e:
            self._report_error(e)
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._handler_tasks.add(task)
            task.add_done_callback(self._handler_done)

    def _handler_done(self, task: asyncio.Task[Any]) -> None:
        self._handler_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            self._report_error(task.exception())

    def _report_error(self, error: Any) -> None:
        self._log("Error: %s", error)
        if self.on_error is not None:
            self.on_error(error)


def create_parent_bridge(
    parent_window: MessageWindow,
    host_window: MessageWindow,
    config: BridgeConfig,
    **handlers: Any,
) -> PostMessageBridge:
    """Bridge from a framed page to its parent.

    Source window filtering is turned off, since such a page hears from its
    parent and from sibling frames alike.
    """
    config = config.model_copy(update={"filter_source_window": False})
    return PostMessageBridge(config, parent_window, host_window, **handlers)


def create_iframe_bridge(
    content_window: MessageWindow | None,
    host_window: MessageWindow,
    config: BridgeConfig,
    **handlers: Any,
) -> PostMessageBridge:
    """Bridge from a page to one of its frames."""
    if content_window is None:
        raise ValueError("Iframe content window is not available")
    return PostMessageBridge(config, content_window, host_window, **handlers)


class PostMessageTransport:
    """RpcTransport over a PostMessageBridge.

    `init` starts the bridge, announces this endpoint with a ready envelope
    and gives the peer `handshake_delay` seconds to do the same.
    """

    def __init__(
        self,
        target_window: MessageWindow | None,
        host_window: MessageWindow,
        client_id: str,
        default_destination_id: str,
        config: BridgeConfig | None = None,
    ) -> None:
        self.client_id = client_id
        self.default_destination_id = default_destination_id
        self.on_message: MessageHandler | None = None
        self.config = config or BridgeConfig(client_id=client_id)
        self.bridge = PostMessageBridge(
            self.config,
            target_window,
            host_window,
            on_message=self._forward,
            on_ready=self._on_ready,
            on_error=self._on_error,
        )

    async def _forward(self, message: RpcMessage) -> None:
        if self.on_message is not None:
            await self.on_message(message)

    def _on_ready(self, ready: dict[str, Any]) -> None:
        logger.debug("%s: remote ready %s", self.client_id, ready)

    def _on_error(self, error: Any) -> None:
        logger.error("%s: %s", self.client_id, error)

    def update_target_window(self, target_window: MessageWindow | None) -> None:
        self.bridge.update_target_window(target_window)

    async def init(self) -> None:
        self.bridge.start()
        self.bridge.send_ready(None, ["rpc-client"])
        await asyncio.sleep(self.config.handshake_delay)

    async def close(self) -> None:
        self.bridge.stop()

    async def send_message(self, message: RpcMessage) -> None:
        self.bridge.send_message(message)


async def get_post_message_connection(
    target_window: MessageWindow,
    host_window: MessageWindow,
    sender_id: str,
    receiver_id: str,
    on_message: DefaultHandler | None = None,
    config: ConnectionConfig | None = None,
    bridge_config: BridgeConfig | None = None,
) -> RpcConnection:
    """Open an initialized RpcConnection to the endpoint in `target_window`."""
    transport = PostMessageTransport(
        target_window,
        host_window,
        sender_id,
        receiver_id,
        bridge_config or BridgeConfig(client_id=sender_id),
    )
    connection = RpcConnection(transport, config, on_message)
    await connection.init()
    return connection
