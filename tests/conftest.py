"""Pytest configuration for all tests.

Everything runs over real transports: the in-process LocalChannelHub, a real
aiohttp relay, or InMemoryWindow pairs. Nothing in the engine is mocked.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

import pytest
import pytest_asyncio

from relayrpc.channels import RpcContext
from relayrpc.config import ConnectionConfig
from relayrpc.connection import RpcConnection
from relayrpc.local import LocalChannelHub
from relayrpc.provider import ClientRegistration, RpcProvider

ConnectFn = Callable[..., Awaitable[RpcConnection]]


@pytest.fixture
def hub() -> LocalChannelHub:
    return LocalChannelHub()


@pytest.fixture
def provider(hub: LocalChannelHub) -> RpcProvider:
    return RpcProvider(hub)


@pytest.fixture
def ctx(provider: RpcProvider) -> RpcContext:
    return RpcContext("acct-1", "proj-1", provider)


@pytest_asyncio.fixture
async def connect(hub: LocalChannelHub):
    """Factory opening initialized connections on the hub; all closed on teardown."""
    opened: list[RpcConnection] = []

    async def _connect(
        client_id: str,
        peer_id: str,
        channel: str = "/rpc/test",
        config: ConnectionConfig | None = None,
        on_message: Callable[..., Any] | None = None,
    ) -> RpcConnection:
        transport = hub.get_client(
            ClientRegistration(
                client_id=client_id,
                default_destination_id=peer_id,
                base_channel=channel,
            )
        )
        connection = RpcConnection(transport, config, on_message)
        await connection.init()
        opened.append(connection)
        return connection

    yield _connect

    for connection in opened:
        await connection.close()


async def wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    """Poll `predicate` until it holds, failing the test after `timeout`."""

    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout)


@pytest.fixture
def until() -> Callable[..., Awaitable[None]]:
    return wait_until
