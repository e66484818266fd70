"""Pytest configuration and fixtures for greenlink tests."""

from __future__ import annotations

import asyncio
from typing import Callable

import pytest
import pytest_asyncio

from greenlink.greenhouse import NodeRegistry, create_default_registry
from greenlink.node import ChannelClient, GreenhouseServer

LOOPBACK = "127.0.0.1"


async def wait_for_condition(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    """Poll predicate until it holds, failing the test after timeout seconds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


@pytest.fixture
def registry() -> NodeRegistry:
    """Fresh default three-node greenhouse."""
    return create_default_registry()


@pytest_asyncio.fixture
async def greenhouse(registry: NodeRegistry):
    """Greenhouse server on a free loopback port."""
    server = GreenhouseServer(registry, host=LOOPBACK, port=0)
    await server.start()
    yield server
    await server.stop()


@pytest_asyncio.fixture
async def client(greenhouse: GreenhouseServer):
    """Control-panel client already connected to the greenhouse fixture."""
    channel = ChannelClient(
        LOOPBACK,
        greenhouse.bound_port,
        max_attempts=1,
        retry_delay=0,
        heartbeat_interval=0.01,
    )
    assert await channel.open()
    yield channel
    await channel.close()


@pytest_asyncio.fixture
async def stream_pair():
    """Two connected (reader, writer) pairs over loopback: (client_side, server_side)."""
    accepted: asyncio.Future = asyncio.get_running_loop().create_future()

    async def on_connect(reader, writer):
        accepted.set_result((reader, writer))

    server = await asyncio.start_server(on_connect, LOOPBACK, 0)
    port = server.sockets[0].getsockname()[1]
    client_side = await asyncio.open_connection(LOOPBACK, port)
    server_side = await accepted
    yield client_side, server_side
    for _, writer in (client_side, server_side):
        writer.close()
    server.close()
    await server.wait_closed()
