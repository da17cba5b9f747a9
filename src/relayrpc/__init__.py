"""relayrpc - transport-agnostic RPC over named channels

Request/response correlation with timeouts, callbacks that travel inside
payloads as remote functions, cooperative abort/barge-in/hydrate control and
buffered channel broadcasting, over WebSocket relays, window messaging or an
in-process hub.
"""

from relayrpc.abort import (
    AbortedError,
    AbortHandle,
    AbortHandler,
    AbortRequestMessage,
    AbortRequestor,
    AbortResponseMessage,
    ListenerKind,
)
from relayrpc.broadcaster import ChannelBroadcaster, ChannelListener
from relayrpc.channels import (
    RpcContext,
    detect_transport_from_url,
    extract_channel_id_from_socket_url,
    function_call_channel,
    get_base_channel,
    get_rpc_path,
)
from relayrpc.config import (
    BridgeConfig,
    ConnectionConfig,
    CorsConfig,
    RelayServerConfig,
    WebSocketTransportConfig,
)
from relayrpc.connection import RpcConnection
from relayrpc.error import ErrorCode, RpcError
from relayrpc.local import LocalChannelHub, LocalTransport
from relayrpc.marshal import FunctionRef, RemoteFunction, marshal_in, marshal_out
from relayrpc.message import RpcMessage
from relayrpc.post_message import (
    InMemoryWindow,
    MessageEvent,
    PostMessageBridge,
    PostMessageTransport,
    create_iframe_bridge,
    create_parent_bridge,
    get_post_message_connection,
    is_in_iframe,
)
from relayrpc.provider import ClientRegistration, RpcProvider
from relayrpc.transport import RpcTransport, ServerBroadcaster
from relayrpc.types import RpcTarget
from relayrpc.ws_transport import (
    ChannelRelayServer,
    RelayBroadcaster,
    WebSocketClientFactory,
    WebSocketClientTransport,
)

__version__ = "0.1.0"

__all__ = [
    # Core
    "RpcMessage",
    "RpcConnection",
    "RpcTarget",
    "RpcTransport",
    "ServerBroadcaster",
    # Errors
    "RpcError",
    "ErrorCode",
    # Configuration (Pydantic models)
    "ConnectionConfig",
    "BridgeConfig",
    "CorsConfig",
    "WebSocketTransportConfig",
    "RelayServerConfig",
    # Marshaling
    "FunctionRef",
    "RemoteFunction",
    "marshal_out",
    "marshal_in",
    # Abort coordination
    "AbortHandler",
    "AbortRequestor",
    "AbortHandle",
    "AbortRequestMessage",
    "AbortResponseMessage",
    "AbortedError",
    "ListenerKind",
    # Broadcasting
    "ChannelBroadcaster",
    "ChannelListener",
    # Channels and provisioning
    "RpcContext",
    "RpcProvider",
    "ClientRegistration",
    "get_base_channel",
    "get_rpc_path",
    "function_call_channel",
    "extract_channel_id_from_socket_url",
    "detect_transport_from_url",
    # Transports
    "LocalChannelHub",
    "LocalTransport",
    "WebSocketClientTransport",
    "WebSocketClientFactory",
    "ChannelRelayServer",
    "RelayBroadcaster",
    "PostMessageBridge",
    "PostMessageTransport",
    "InMemoryWindow",
    "MessageEvent",
    "create_parent_bridge",
    "create_iframe_bridge",
    "get_post_message_connection",
    "is_in_iframe",
]
