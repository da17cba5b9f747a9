"""Tests for the window-messaging bridge and transport.

Two InMemoryWindows stand in for a host page and an embedded frame:

    app   https://app.example.com      (top-level page)
    chat  https://chat.example.com     (frame inside app)
"""

import asyncio
import json
from typing import Any

import pytest
from pydantic import ValidationError

from relayrpc.config import BridgeConfig, CorsConfig
from relayrpc.error import ErrorCode, RpcError
from relayrpc.message import RpcMessage
from relayrpc.post_message import (
    COMPRESSED_RPC_ENVELOPE,
    RPC_ENVELOPE,
    InMemoryWindow,
    MessageEvent,
    PostMessageBridge,
    compress_message,
    create_iframe_bridge,
    create_parent_bridge,
    decompress_message,
    get_post_message_connection,
    is_in_iframe,
)

APP_ORIGIN = "https://app.example.com"
CHAT_ORIGIN = "https://chat.example.com"


@pytest.fixture
def app() -> InMemoryWindow:
    return InMemoryWindow(APP_ORIGIN)


@pytest.fixture
def chat(app: InMemoryWindow) -> InMemoryWindow:
    return InMemoryWindow(CHAT_ORIGIN, parent=app)


def bridge_config(client_id: str, **kwargs: Any) -> BridgeConfig:
    return BridgeConfig(client_id=client_id, handshake_delay=0, **kwargs)


async def open_pair(app, chat, host_config=None, chat_config=None):
    """Connections for "host" (in app, talking to chat) and "chat" (in chat)."""
    host = await get_post_message_connection(
        chat, app, "host", "chat", bridge_config=host_config or bridge_config("host")
    )
    peer = await get_post_message_connection(
        app, chat, "chat", "host", bridge_config=chat_config or bridge_config("chat")
    )
    return host, peer


def capture(window: InMemoryWindow) -> list[MessageEvent]:
    events: list[MessageEvent] = []
    window.add_message_listener(events.append)
    return events


class TestCompression:
    def test_marker_and_base64(self) -> None:
        assert compress_message("hi") == "compressed:aGk="

    def test_round_trip_unicode(self) -> None:
        text = '{"greeting": "héllo ✓"}'
        assert decompress_message(compress_message(text)) == text

    def test_plain_strings_pass_through(self) -> None:
        assert decompress_message('{"a": 1}') == '{"a": 1}'

    def test_invalid_base64(self) -> None:
        with pytest.raises(ValueError):
            decompress_message("compressed:!!!not base64!!!")

    @pytest.mark.parametrize("payload", [None, 5, {"id": "x"}, b"compressed:aGk="])
    def test_non_string_rejected(self, payload: Any) -> None:
        with pytest.raises(TypeError):
            decompress_message(payload)


class TestWindows:
    def test_iframe_detection(self, app, chat) -> None:
        assert is_in_iframe(chat)
        assert not is_in_iframe(app)
        assert chat.top is app

    @pytest.mark.asyncio
    async def test_delivery_is_async_and_cloned(self, app, chat) -> None:
        events = capture(app)
        data = {"nested": [1, 2]}

        app.post_message(data, "*", source=chat)
        assert events == []
        await asyncio.sleep(0)

        assert len(events) == 1
        assert events[0].origin == CHAT_ORIGIN
        assert events[0].source is chat
        assert events[0].data == data
        assert events[0].data is not data

    @pytest.mark.asyncio
    async def test_target_origin_mismatch_dropped(self, app, chat) -> None:
        events = capture(app)
        app.post_message({"x": 1}, "https://elsewhere.example.com", source=chat)
        app.post_message({"x": 2}, APP_ORIGIN, source=chat)
        await asyncio.sleep(0)
        assert [e.data for e in events] == [{"x": 2}]


class TestRpcOverWindows:
    @pytest.mark.asyncio
    async def test_request_response(self, app, chat) -> None:
        host, peer = await open_pair(app, chat)
        try:
            peer.register_function("greet", lambda name: f"hi {name}")
            assert await host.send_request_to_host("greet", ["bob"]) == "hi bob"
        finally:
            await host.close()
            await peer.close()

    @pytest.mark.asyncio
    async def test_callbacks_cross_windows(self, app, chat) -> None:
        host, peer = await open_pair(app, chat)
        seen: list[str] = []

        async def run(on_step: Any) -> str:
            await on_step("planning")
            await on_step("done")
            return "ok"

        try:
            peer.register_function("run", run)
            assert await host.send_request("chat", "run", [seen.append]) == "ok"
            assert seen == ["planning", "done"]
        finally:
            await host.close()
            await peer.close()

    @pytest.mark.asyncio
    async def test_large_payload_compressed_end_to_end(self, app, chat) -> None:
        host, peer = await open_pair(
            app,
            chat,
            host_config=bridge_config("host", compression_threshold=100),
            chat_config=bridge_config("chat", compression_threshold=100),
        )
        events = capture(chat)
        try:
            peer.register_function("length", lambda text: len(text))
            assert await host.send_request("chat", "length", ["x" * 500]) == 500
            assert events[0].data["type"] == COMPRESSED_RPC_ENVELOPE
        finally:
            await host.close()
            await peer.close()

    @pytest.mark.asyncio
    async def test_origin_stamped_on_messages(self, app, chat) -> None:
        host, peer = await open_pair(app, chat)
        origins: list[Any] = []
        try:
            peer.on_message = lambda msg: origins.append(msg.origin)
            await host.send_request("chat", "whoami", [])
            assert origins == [APP_ORIGIN]
        finally:
            await host.close()
            await peer.close()


class TestCors:
    async def _call(self, app, chat, cors: CorsConfig | None, role: str | None = None) -> Any:
        host, peer = await open_pair(
            app, chat, host_config=bridge_config("host", cors=cors, role=role)
        )
        host.register_function("secret", lambda: "granted")
        try:
            return await peer.send_request("host", "secret", [], timeout=1.0)
        finally:
            await host.close()
            await peer.close()

    @pytest.mark.asyncio
    async def test_unconfigured_trusts_all(self, app, chat) -> None:
        assert await self._call(app, chat, None) == "granted"
        assert await self._call(app, chat, CorsConfig()) == "granted"

    @pytest.mark.asyncio
    async def test_exact_origin(self, app, chat) -> None:
        cors = CorsConfig(botdojo_chat_domain=[CHAT_ORIGIN])
        assert await self._call(app, chat, cors) == "granted"

    @pytest.mark.asyncio
    async def test_wildcard_subdomain(self, app, chat) -> None:
        cors = CorsConfig(botdojo_chat_domain=["*.example.com"])
        assert await self._call(app, chat, cors) == "granted"

    @pytest.mark.asyncio
    async def test_rejected_request_gets_error_response(self, app, chat) -> None:
        cors = CorsConfig(botdojo_chat_domain=["https://trusted.example.org"])
        with pytest.raises(RpcError) as exc_info:
            await self._call(app, chat, cors)
        assert exc_info.value.code is ErrorCode.PERMISSION_DENIED
        assert exc_info.value.message == (
            f"CORS blocked: PostMessage from untrusted chat domain {CHAT_ORIGIN}"
        )

    @pytest.mark.asyncio
    async def test_empty_allowlist_blocks_all(self, app, chat) -> None:
        with pytest.raises(RpcError):
            await self._call(app, chat, CorsConfig(botdojo_chat_domain=[]))

    @pytest.mark.asyncio
    async def test_chat_role_skips_check(self, app, chat) -> None:
        cors = CorsConfig(botdojo_chat_domain=["https://trusted.example.org"])
        assert await self._call(app, chat, cors, role="chat") == "granted"

    def test_is_origin_allowed(self, app, chat) -> None:
        bridge = PostMessageBridge(
            bridge_config("host", cors={"botdojo_chat_domain": ["*.example.com", "https://a.io"]}),
            chat,
            app,
        )
        assert bridge.is_origin_allowed("https://chat.example.com")
        assert bridge.is_origin_allowed("https://a.io")
        assert not bridge.is_origin_allowed("https://a.io.evil.com")
        assert not bridge.is_origin_allowed("https://example.org")


class TestBridge:
    def make_bridge(self, app, chat, **kwargs: Any) -> tuple[PostMessageBridge, list, list, list]:
        messages: list[RpcMessage] = []
        ready: list[Any] = []
        errors: list[Any] = []
        handlers = {
            "on_message": messages.append,
            "on_ready": ready.append,
            "on_error": errors.append,
        }
        bridge = PostMessageBridge(bridge_config("host", **kwargs), chat, app, **handlers)
        bridge.start()
        return bridge, messages, ready, errors

    def rpc_event(self, payload: Any, source: Any, origin: str = CHAT_ORIGIN) -> MessageEvent:
        return MessageEvent({"type": RPC_ENVELOPE, "payload": payload}, origin, source)

    def test_start_stop(self, app, chat) -> None:
        bridge = PostMessageBridge(bridge_config("host"), chat, app)
        assert not bridge.is_running()
        bridge.start()
        bridge.start()
        assert bridge.is_running()
        bridge.stop()
        bridge.stop()
        assert not bridge.is_running()

    @pytest.mark.asyncio
    async def test_send_small_message_uncompressed(self, app, chat) -> None:
        bridge = PostMessageBridge(bridge_config("host", compression_threshold=100), chat, app)
        events = capture(chat)
        msg = RpcMessage.request("host", "chat", "f", ["short"])

        bridge.send_message(msg)
        await asyncio.sleep(0)

        envelope = events[0].data
        assert envelope["type"] == RPC_ENVELOPE
        assert envelope["payload"] == msg.to_json()
        assert isinstance(envelope["timestamp"], int)
        assert "compressed" not in envelope

    @pytest.mark.asyncio
    async def test_send_large_message_compressed(self, app, chat) -> None:
        bridge = PostMessageBridge(bridge_config("host", compression_threshold=100), chat, app)
        events = capture(chat)
        msg = RpcMessage.request("host", "chat", "f", ["y" * 200])

        bridge.send_message(msg)
        await asyncio.sleep(0)

        envelope = events[0].data
        assert envelope["type"] == COMPRESSED_RPC_ENVELOPE
        assert envelope["compressed"] is True
        assert envelope["payload"].startswith("compressed:")
        assert json.loads(decompress_message(envelope["payload"])) == msg.to_json()

    @pytest.mark.asyncio
    async def test_compression_disabled(self, app, chat) -> None:
        bridge = PostMessageBridge(
            bridge_config("host", compression_threshold=10, enable_compression=False),
            chat,
            app,
        )
        events = capture(chat)
        bridge.send_message(RpcMessage.request("host", "chat", "f", ["y" * 200]))
        await asyncio.sleep(0)
        assert events[0].data["type"] == RPC_ENVELOPE

    def test_compressed_event_delivered(self, app, chat) -> None:
        bridge, messages, _, _ = self.make_bridge(app, chat)
        msg = RpcMessage.request("chat", "host", "f", [1])
        payload = compress_message(json.dumps(msg.to_json()))

        bridge.handle_message_event(
            MessageEvent({"type": COMPRESSED_RPC_ENVELOPE, "payload": payload}, CHAT_ORIGIN, chat)
        )
        assert [m.id for m in messages] == [msg.id]

    def test_bad_compressed_payload_reported(self, app, chat) -> None:
        bridge, messages, _, errors = self.make_bridge(app, chat)
        bridge.handle_message_event(
            MessageEvent(
                {"type": COMPRESSED_RPC_ENVELOPE, "payload": "compressed:%%%"},
                CHAT_ORIGIN,
                chat,
            )
        )
        assert messages == []
        assert len(errors) == 1
        assert isinstance(errors[0], ValueError)

    def test_non_string_compressed_payload_reported(self, app, chat) -> None:
        bridge, messages, _, errors = self.make_bridge(app, chat)
        bridge.handle_message_event(
            MessageEvent(
                {"type": COMPRESSED_RPC_ENVELOPE, "payload": {"id": "x"}},
                CHAT_ORIGIN,
                chat,
            )
        )
        assert messages == []
        assert len(errors) == 1
        assert isinstance(errors[0], TypeError)

    def test_foreign_messages_ignored(self, app, chat) -> None:
        bridge, messages, ready, errors = self.make_bridge(app, chat)
        for data in ("text", None, {"type": "other-rpc"}, {"payload": {}}, {"type": 5}):
            bridge.handle_message_event(MessageEvent(data, CHAT_ORIGIN, chat))
        assert messages == ready == errors == []

    def test_source_window_filter(self, app, chat) -> None:
        stranger = InMemoryWindow("https://other.example.com", parent=app)
        bridge, messages, _, _ = self.make_bridge(app, chat)
        payload = RpcMessage.request("chat", "host", "f", []).to_json()

        bridge.handle_message_event(self.rpc_event(payload, stranger))
        assert messages == []
        bridge.handle_message_event(self.rpc_event(payload, chat))
        assert len(messages) == 1

    def test_parent_bridge_accepts_any_window(self, app, chat) -> None:
        stranger = InMemoryWindow("https://other.example.com", parent=app)
        messages: list[RpcMessage] = []
        bridge = create_parent_bridge(
            app, chat, bridge_config("chat"), on_message=messages.append
        )
        assert bridge.config.filter_source_window is False
        bridge.start()

        payload = RpcMessage.request("canvas", "chat", "f", []).to_json()
        bridge.handle_message_event(self.rpc_event(payload, stranger))
        assert len(messages) == 1

    def test_iframe_bridge_requires_window(self, app) -> None:
        with pytest.raises(ValueError, match="content window"):
            create_iframe_bridge(None, app, bridge_config("host"))

    def test_filter_source(self, app, chat) -> None:
        bridge, messages, _, _ = self.make_bridge(app, chat, filter_source="chat")
        bridge.handle_message_event(
            self.rpc_event(RpcMessage.request("intruder", "host", "f", []).to_json(), chat)
        )
        bridge.handle_message_event(
            self.rpc_event(RpcMessage.request("chat", "host", "f", []).to_json(), chat)
        )
        assert [m.source for m in messages] == ["chat"]

    def test_defaults_and_origin_stamped(self, app, chat) -> None:
        bridge, messages, _, _ = self.make_bridge(
            app, chat, default_source="canvas-1", default_destination="host"
        )
        bridge.handle_message_event(
            self.rpc_event(
                {"id": "m-1", "functionName": "f", "direction": "request", "data": []},
                chat,
            )
        )
        assert len(messages) == 1
        assert messages[0].source == "canvas-1"
        assert messages[0].destination == "host"
        assert messages[0].origin == CHAT_ORIGIN

    def test_existing_origin_kept(self, app, chat) -> None:
        bridge, messages, _, _ = self.make_bridge(app, chat)
        msg = RpcMessage.request("chat", "host", "f", [])
        msg.origin = "https://first-hop.example.com"
        bridge.handle_message_event(self.rpc_event(msg.to_json(), chat))
        assert messages[0].origin == "https://first-hop.example.com"

    def test_invalid_payloads_ignored(self, app, chat) -> None:
        bridge, messages, _, errors = self.make_bridge(app, chat)
        for payload in (None, {"functionName": "f"}, {"id": "1"}, "x"):
            bridge.handle_message_event(self.rpc_event(payload, chat))
        assert messages == errors == []

    @pytest.mark.asyncio
    async def test_ready_and_error_envelopes(self, app, chat) -> None:
        bridge, _, ready, errors = self.make_bridge(app, chat)
        other = PostMessageBridge(bridge_config("chat"), app, chat)

        other.send_ready("chan-1", ["rpc-client"])
        other.send_error(ValueError("bad input"))
        await asyncio.sleep(0.01)

        assert ready == [{"clientId": "chat", "capabilities": ["rpc-client"], "channelId": "chan-1"}]
        assert errors[0]["message"] == "bad input"
        assert errors[0]["error"]["code"] == "internal"

    @pytest.mark.asyncio
    async def test_async_handler_failure_reported(self, app, chat) -> None:
        errors: list[Any] = []

        async def on_message(msg: RpcMessage) -> None:
            raise RuntimeError("handler broke")

        bridge = PostMessageBridge(
            bridge_config("host"), chat, app, on_message=on_message, on_error=errors.append
        )
        bridge.start()
        bridge.handle_message_event(
            self.rpc_event(RpcMessage.request("chat", "host", "f", []).to_json(), chat)
        )
        await asyncio.sleep(0.01)
        assert [str(e) for e in errors] == ["handler broke"]

    def test_update_config(self, app, chat) -> None:
        bridge = PostMessageBridge(bridge_config("host"), chat, app)
        bridge.update_config(compression_threshold=10, role="parent")
        assert bridge.config.compression_threshold == 10
        assert bridge.config.role == "parent"
        with pytest.raises(ValidationError):
            bridge.update_config(compression_threshold=0)

    @pytest.mark.asyncio
    async def test_update_target_window(self, app, chat) -> None:
        other = InMemoryWindow("https://other.example.com", parent=app)
        bridge = PostMessageBridge(bridge_config("host"), chat, app)
        events = capture(other)

        bridge.update_target_window(other)
        bridge.send_ready()
        await asyncio.sleep(0)
        assert events[0].data["payload"]["clientId"] == "host"

    def test_no_target_window(self, app) -> None:
        bridge = PostMessageBridge(bridge_config("host"), None, app)
        with pytest.raises(ConnectionError):
            bridge.send_ready()
