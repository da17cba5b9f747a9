"""WebSocket channel transport.

A ChannelRelayServer accepts WebSocket connections on `{path}?channel=...`
and relays every text frame to every other socket joined to the same
channel. Each frame is one JSON-encoded RpcMessage. Endpoint filtering is
done by the receiving RpcConnection, not the relay.

The relay also accepts `POST {path}/broadcast` with
`{"channel": ..., "message": {...}}` so that processes without a socket can
publish to a channel (see RelayBroadcaster).
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import TYPE_CHECKING, Any

import aiohttp
from aiohttp import web

from relayrpc.config import RelayServerConfig, WebSocketTransportConfig
from relayrpc.message import RpcMessage
from relayrpc.transport import MessageHandler

if TYPE_CHECKING:
    from relayrpc.provider import ClientRegistration

logger = logging.getLogger(__name__)


class WebSocketClientTransport:
    """Client-side transport joined to one relay channel."""

    def __init__(
        self,
        config: WebSocketTransportConfig,
        registration: ClientRegistration,
    ) -> None:
        self.config = config
        self.client_id = registration.client_id
        self.default_destination_id = registration.default_destination_id
        self.channel = registration.base_channel
        self._get_token = registration.get_token
        self.on_message: MessageHandler | None = None
        self._session: aiohttp.ClientSession | None = None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._read_loop_task: asyncio.Task[None] | None = None

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    async def init(self) -> None:
        """Connect to the relay and start the read loop."""
        if self._ws is not None:
            return
        headers = {}
        if self._get_token is not None:
            headers["Authorization"] = f"Bearer {await self._get_token()}"

        self._session = aiohttp.ClientSession()
        try:
            self._ws = await asyncio.wait_for(
                self._session.ws_connect(
                    self.config.url,
                    params={"channel": self.channel, "clientId": self.client_id},
                    headers=headers,
                    heartbeat=self.config.heartbeat,
                ),
                self.config.connect_timeout,
            )
        except BaseException:
            await self._session.close()
            self._session = None
            raise
        self._read_loop_task = asyncio.create_task(self._read_loop())

    async def send_message(self, message: RpcMessage) -> None:
        if not self.connected:
            raise ConnectionError("WebSocket not connected")
        await self._ws.send_str(json.dumps(message.to_json()))

    async def _read_loop(self) -> None:
        """Deliver inbound frames to the owner, in order."""
        ws = self._ws
        if ws is None:
            return
        while True:
            msg = await ws.receive()

            if msg.type == aiohttp.WSMsgType.TEXT:
                data = msg.data
            elif msg.type == aiohttp.WSMsgType.BINARY:
                data = msg.data.decode("utf-8")
            elif msg.type in (
                aiohttp.WSMsgType.CLOSE,
                aiohttp.WSMsgType.CLOSING,
                aiohttp.WSMsgType.CLOSED,
            ):
                logger.debug("%s: WebSocket closed", self.client_id)
                break
            elif msg.type == aiohttp.WSMsgType.ERROR:
                logger.warning("%s: WebSocket error: %s", self.client_id, ws.exception())
                break
            else:
                continue

            try:
                message = RpcMessage.from_json(json.loads(data))
            except ValueError:
                logger.warning("%s: dropping malformed frame", self.client_id)
                continue
            if self.on_message is None:
                continue
            try:
                await self.on_message(message)
            except Exception:
                logger.exception("%s: error handling message", self.client_id)

    async def close(self) -> None:
        """Close the connection."""
        if self._read_loop_task:
            self._read_loop_task.cancel()
            try:
                await self._read_loop_task
            except asyncio.CancelledError:
                pass
            self._read_loop_task = None
        if self._ws:
            await self._ws.close()
            self._ws = None
        if self._session:
            await self._session.close()
            self._session = None


class RelayBroadcaster:
    """Publishes to a channel through the relay's HTTP broadcast endpoint."""

    def __init__(self, url: str) -> None:
        self.url = url
        self._session: aiohttp.ClientSession | None = None

    async def send_message(self, channel: str, message: RpcMessage) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        async with self._session.post(
            self.url,
            json={"channel": channel, "message": message.to_json()},
        ) as response:
            response.raise_for_status()

    async def close(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None


class WebSocketClientFactory:
    """ClientFactory building WebSocket transports for one relay."""

    def __init__(self, config: WebSocketTransportConfig) -> None:
        self.config = config

    def get_client(self, registration: ClientRegistration) -> WebSocketClientTransport:
        return WebSocketClientTransport(self.config, registration)

    def get_server_broadcaster(self) -> RelayBroadcaster:
        url = self.config.url
        if url.startswith("wss://"):
            url = "https://" + url[len("wss://"):]
        else:
            url = "http://" + url[len("ws://"):]
        return RelayBroadcaster(url.rstrip("/") + "/broadcast")


class ChannelRelayServer:
    """WebSocket relay fanning messages out per channel.

    Example:
        ```python
        server = ChannelRelayServer(RelayServerConfig(port=8080))
        await server.start()
        factory = WebSocketClientFactory(WebSocketTransportConfig(url=server.url))
        # ... relay is running ...
        await server.stop()
        ```
    """

    def __init__(self, config: RelayServerConfig | None = None) -> None:
        self.config = config or RelayServerConfig()
        self._channels: dict[str, set[web.WebSocketResponse]] = {}
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None
        self.port: int | None = None

    @property
    def url(self) -> str:
        if self.port is None:
            raise RuntimeError("Relay server is not running")
        return f"ws://{self.config.host}:{self.port}{self.config.path}"

    async def start(self) -> None:
        """Start the server."""
        self._app = web.Application()
        self._app.router.add_get(self.config.path, self._handle_ws)
        self._app.router.add_post(self.config.path + "/broadcast", self._handle_broadcast)

        self._runner = web.AppRunner(self._app)
        await self._runner.setup()

        self._site = web.TCPSite(self._runner, self.config.host, self.config.port)
        await self._site.start()
        self.port = self._runner.addresses[0][1]

        logger.info("Channel relay started on %s", self.url)

    async def stop(self) -> None:
        """Stop the server, closing every socket."""
        for sockets in list(self._channels.values()):
            for ws in list(sockets):
                await ws.close()
        self._channels.clear()

        if self._site:
            await self._site.stop()
            self._site = None
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
        self._app = None
        self.port = None

    def connection_count(self, channel: str) -> int:
        return len(self._channels.get(channel, ()))

    async def send_message(self, channel: str, message: RpcMessage) -> None:
        """Publish a message to every socket on `channel`."""
        await self._relay(channel, json.dumps(message.to_json()), sender=None)

    async def _relay(
        self,
        channel: str,
        data: str,
        sender: web.WebSocketResponse | None,
    ) -> int:
        delivered = 0
        for ws in list(self._channels.get(channel, ())):
            if ws is sender or ws.closed:
                continue
            try:
                await ws.send_str(data)
                delivered += 1
            except (ConnectionResetError, RuntimeError) as e:
                logger.debug("Relay to closed socket on %s failed: %s", channel, e)
        return delivered

    async def _handle_ws(self, request: web.Request) -> web.StreamResponse:
        """Handle one client socket for its lifetime."""
        channel = request.query.get("channel")
        if not channel:
            raise web.HTTPBadRequest(text="channel query parameter is required")

        ws = web.WebSocketResponse()
        await ws.prepare(request)
        sockets = self._channels.setdefault(channel, set())
        sockets.add(ws)
        logger.debug(
            "Client %s joined %s", request.query.get("clientId", "?"), channel
        )

        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    await self._relay(channel, msg.data, sender=ws)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    logger.debug("Socket error on %s: %s", channel, ws.exception())
                    break
        finally:
            sockets.discard(ws)
            if not sockets and self._channels.get(channel) is sockets:
                del self._channels[channel]

        return ws

    async def _handle_broadcast(self, request: web.Request) -> web.Response:
        try:
            body: Any = await request.json()
        except json.JSONDecodeError:
            raise web.HTTPBadRequest(text="body must be JSON") from None
        if not isinstance(body, dict) or not isinstance(body.get("channel"), str):
            raise web.HTTPBadRequest(text="channel is required")
        try:
            message = RpcMessage.from_json(body.get("message"))
        except ValueError as e:
            raise web.HTTPBadRequest(text=str(e)) from None

        delivered = await self._relay(
            body["channel"], json.dumps(message.to_json()), sender=None
        )
        return web.json_response({"delivered": delivered})
