"""Channel naming and the per-tenant RPC context.

Channels are path-like rendezvous names, independent of the transport:

    /rpc/{account_id}/{project_id}/{namespace}   project scoped
    /rpc/{account_id}/{namespace}                account scoped
    /rpc/uc/{channel}                            direct function-call channel
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Awaitable, Callable, Literal
from urllib.parse import parse_qs, urlparse

if TYPE_CHECKING:
    from relayrpc.provider import RpcProvider

TokenGetter = Callable[[], Awaitable[str]]

_SOCKET_CHANNEL_RE = re.compile(r"/rpc/uc/([^/]+)_extui")


@dataclass
class RpcContext:
    """Account/project scope plus the provider that builds transports."""

    account_id: str
    project_id: str
    provider: RpcProvider
    get_token: TokenGetter | None = None

    def __post_init__(self) -> None:
        self.provider.set_ctx(self)

    def get_rpc_provider(self) -> RpcProvider:
        return self.provider


def get_base_channel(ctx: RpcContext) -> str:
    """Return the project channel prefix, with trailing slash."""
    return f"/rpc/{ctx.account_id}/{ctx.project_id}/"


def get_rpc_path(ctx: RpcContext, namespace: str, account_scope: bool = False) -> str:
    if account_scope:
        return f"/rpc/{ctx.account_id}/{namespace}"
    return f"/rpc/{ctx.account_id}/{ctx.project_id}/{namespace}"


def function_call_channel(channel: str) -> str:
    return f"/rpc/uc/{channel}"


def extract_channel_id_from_socket_url(socket_url: str) -> str | None:
    """Extract the channel id from a `.../rpc/uc/{channel_id}_extui` URL."""
    match = _SOCKET_CHANNEL_RE.search(socket_url)
    return match.group(1) if match else None


def detect_transport_from_url(
    url: str,
) -> tuple[Literal["rpc", "postmessage"], str | None]:
    """Read the `transport` and `agent_socket_url` query parameters of a page URL.

    Returns:
        (transport, socket_url); transport defaults to "rpc"
    """
    params = parse_qs(urlparse(url).query)
    transport = params.get("transport", ["rpc"])[0]
    socket_url = params.get("agent_socket_url", [None])[0]
    if transport != "postmessage":
        transport = "rpc"
    return transport, socket_url
