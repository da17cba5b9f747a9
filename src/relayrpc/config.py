"""Pydantic configuration models for relayrpc.

These models validate user-facing configuration at construction time. They
are NOT used in hot paths (message dispatch, marshaling) - the wire unit
`RpcMessage` remains a plain dataclass.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_DEPTH = 18
DEFAULT_COMPRESSION_THRESHOLD = 50000


class ConnectionConfig(BaseModel):
    """Configuration for an RpcConnection.

    Attributes:
        timeout: Default time to wait for a response, in seconds
        max_depth: Nesting depth up to which outbound payloads are walked for
            callbacks. Deeper containers are sent as-is.
    """

    model_config = ConfigDict(frozen=True)

    timeout: float = Field(
        default=DEFAULT_TIMEOUT_SECONDS,
        gt=0,
        description="Request timeout in seconds",
    )
    max_depth: int = Field(
        default=DEFAULT_MAX_DEPTH,
        ge=0,
        description="Marshaling depth bound",
    )


class CorsConfig(BaseModel):
    """Origin allowlists for the window-messaging bridge.

    Attributes:
        botdojo_chat_domain: Origins allowed to post into parent and canvas
            bridges. Entries match exactly or, when written as `*.domain`,
            by subdomain suffix. None trusts every origin.
        allowed_tool_call_origins: Origins the chat side accepts tool calls
            from. Carried for routers built on top of the bridge.
    """

    botdojo_chat_domain: list[str] | None = None
    allowed_tool_call_origins: list[str] | None = None


class BridgeConfig(BaseModel):
    """Configuration for a PostMessageBridge."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    client_id: str = Field(..., description="Client ID for this bridge")
    target_origin: str = Field(default="*", description="Origin passed to post_message")
    role: Literal["parent", "canvas", "chat"] | None = None
    cors: CorsConfig | None = None
    filter_source: str | None = Field(
        default=None,
        description="Only accept RPC messages whose source is this client id",
    )
    filter_source_window: bool = Field(
        default=True,
        description="Only accept events whose source is the target window",
    )
    default_source: str | None = None
    default_destination: str | None = None
    debug: bool = False
    enable_compression: bool = True
    compression_threshold: int = Field(
        default=DEFAULT_COMPRESSION_THRESHOLD,
        gt=0,
        description="Serialized size in characters above which messages are compressed",
    )
    handshake_delay: float = Field(
        default=0.1,
        ge=0,
        description="Seconds PostMessageTransport.init waits after sending ready",
    )

    @field_validator("client_id")
    @classmethod
    def validate_client_id(cls, v: str) -> str:
        if not v:
            raise ValueError("client_id cannot be empty")
        return v


class WebSocketTransportConfig(BaseModel):
    """Configuration for the WebSocket channel transport.

    Attributes:
        url: Relay endpoint URL (ws:// or wss://)
        heartbeat: Ping interval in seconds, None disables pings
        connect_timeout: Seconds to wait for the WebSocket handshake
    """

    url: str = Field(..., description="Relay endpoint URL")
    heartbeat: float | None = Field(default=30.0, gt=0)
    connect_timeout: float = Field(default=10.0, gt=0)

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate URL format."""
        if not v:
            raise ValueError("URL cannot be empty")

        valid_schemes = ("ws://", "wss://")
        if not any(v.startswith(scheme) for scheme in valid_schemes):
            raise ValueError(
                f"URL must start with one of: {', '.join(valid_schemes)}"
            )
        return v


class RelayServerConfig(BaseModel):
    """Configuration for the WebSocket channel relay server.

    Attributes:
        host: Host to bind to
        port: Port to bind to, 0 picks a free port
        path: WebSocket endpoint path
    """

    host: str = Field(default="127.0.0.1", description="Host to bind to")
    port: int = Field(default=0, ge=0, le=65535, description="Port to bind to")
    path: str = Field(default="/rpc", description="WebSocket endpoint path")

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError("path must start with '/'")
        return v.rstrip("/") or "/"
