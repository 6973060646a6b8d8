"""Tools for running a local relay server for unit tests."""
from __future__ import annotations

from typing import AsyncGenerator
from typing import NamedTuple

import pytest_asyncio
from websockets.asyncio.server import Server
from websockets.asyncio.server import serve

from peerlink.relay.server import RelayServer
from testing.utils import open_port


class RelayServerInfo(NamedTuple):
    """NamedTuple returned by relay_server fixture."""

    relay_server: RelayServer
    websocket_server: Server
    host: str
    port: int
    address: str


@pytest_asyncio.fixture()
async def relay_server() -> AsyncGenerator[RelayServerInfo, None]:
    """Fixture that runs a relay server on localhost.

    Yields:
        Relay server info including the `ws://` address to connect to.
    """
    host = 'localhost'
    port = open_port()
    address = f'ws://{host}:{port}'

    server = RelayServer()
    async with serve(server.handler, host, port) as websocket_server:
        yield RelayServerInfo(
            relay_server=server,
            websocket_server=websocket_server,
            host=host,
            port=port,
            address=address,
        )
