"""Transport provisioning.

An RpcProvider wraps a ClientFactory (an in-process hub, a WebSocket relay
client, ...) and hands out transports and ready-made connections bound to
channels. Everything above the provider is transport-agnostic.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol

from pydantic import BaseModel, ConfigDict, Field, field_validator

from relayrpc.channels import TokenGetter, function_call_channel
from relayrpc.config import ConnectionConfig
from relayrpc.connection import DefaultHandler, RpcConnection
from relayrpc.transport import RpcTransport, ServerBroadcaster

if TYPE_CHECKING:
    from relayrpc.broadcaster import ChannelListener
    from relayrpc.channels import RpcContext


class ClientRegistration(BaseModel):
    """What a transport needs to know about the endpoint it serves.

    Attributes:
        client_id: Endpoint id of this side
        default_destination_id: Endpoint id used by `send_request_to_host`
        base_channel: Channel the transport joins
        get_token: Optional coroutine function returning an auth token
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    client_id: str = Field(..., description="Endpoint id of this side")
    default_destination_id: str = Field(..., description="Default peer endpoint id")
    base_channel: str = Field(..., description="Channel to join")
    get_token: Any | None = Field(default=None, description="Async token getter")

    @field_validator("client_id", "base_channel")
    @classmethod
    def validate_not_empty(cls, v: str) -> str:
        if not v:
            raise ValueError("value cannot be empty")
        return v


class ClientFactory(Protocol):
    """Builds transports for a concrete delivery mechanism."""

    def get_client(self, registration: ClientRegistration) -> RpcTransport:
        ...

    def get_server_broadcaster(self) -> ServerBroadcaster:
        ...


class RpcProvider:
    """Hands out transports, connections and channel helpers.

    Example:
        ```python
        hub = LocalChannelHub()
        provider = RpcProvider(hub)
        ctx = RpcContext("acct", "proj", provider)

        connection = await provider.get_connection_to_function_call(
            "job-42", "caller", "worker",
        )
        ```
    """

    def __init__(self, factory: ClientFactory) -> None:
        self.factory = factory
        self.ctx: RpcContext | None = None

    def set_ctx(self, ctx: RpcContext) -> None:
        self.ctx = ctx

    def get_client(
        self,
        get_token: TokenGetter | None,
        client_id: str,
        default_destination_id: str,
        base_channel: str,
    ) -> RpcTransport:
        return self.factory.get_client(
            ClientRegistration(
                client_id=client_id,
                default_destination_id=default_destination_id,
                base_channel=base_channel,
                get_token=get_token,
            )
        )

    async def get_connection_to_function_call(
        self,
        channel: str,
        sender_id: str,
        receiver_id: str,
        on_message: DefaultHandler | None = None,
        config: ConnectionConfig | None = None,
    ) -> RpcConnection:
        """Open an initialized connection on the direct channel `/rpc/uc/{channel}`."""

        async def get_token() -> str:
            return sender_id

        connection = RpcConnection(
            self.get_client(
                get_token, sender_id, receiver_id, function_call_channel(channel)
            ),
            config,
            on_message,
        )
        await connection.init()
        return connection

    def get_channel_listener(self, namespace: str) -> ChannelListener:
        from relayrpc.broadcaster import ChannelListener

        if self.ctx is None:
            raise RuntimeError("RpcProvider has no context, call set_ctx() first")
        return ChannelListener(self.ctx, namespace, False)

    def get_channel_broadcaster(self) -> ServerBroadcaster:
        return self.factory.get_server_broadcaster()
