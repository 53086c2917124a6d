"""Tools for running a local relay server for unit tests."""
from __future__ import annotations

import json
import logging
from typing import Any
from typing import AsyncGenerator
from typing import NamedTuple

import pytest_asyncio
from websockets.asyncio.server import Server
from websockets.asyncio.server import ServerConnection
from websockets.asyncio.server import serve
from websockets.exceptions import ConnectionClosed

from testing.utils import open_port

logger = logging.getLogger(__name__)


class RoomRelay:
    """Relay server forwarding signaling messages within a single room.

    A participant is registered when it sends its `connected` message.
    It is answered with the roster of the other participants, and the
    `connected` message is forwarded to them. Messages with a `to` key
    are forwarded to that participant only.

    Attributes:
        clients: Connection of each registered participant.
        received: Every decoded message received in arrival order.
    """

    def __init__(self) -> None:
        self.clients: dict[str, ServerConnection] = {}
        self.received: list[dict[str, Any]] = []

    async def close_client(self, identity: str) -> None:
        """Drop the connection of a participant."""
        await self.clients[identity].close()

    async def handler(self, websocket: ServerConnection) -> None:
        identity: str | None = None
        try:
            async for raw in websocket:
                data = json.loads(raw)
                self.received.append(data)
                if data['type'] == 'connected':
                    identity = data['from']
                    others = [i for i in self.clients if i != identity]
                    self.clients[identity] = websocket
                    await websocket.send(
                        json.dumps(
                            {'type': 'users', 'from': '', 'users': others},
                        ),
                    )
                    for other in others:
                        await self.clients[other].send(raw)
                elif 'to' in data and data['to'] in self.clients:
                    await self.clients[data['to']].send(raw)
                else:
                    logger.warning(f'Dropping undeliverable message: {raw}')
        except ConnectionClosed:
            pass
        finally:
            if (
                identity is not None
                and self.clients.get(identity) is websocket
            ):
                del self.clients[identity]


class RelayServerInfo(NamedTuple):
    """NamedTuple returned by relay_server fixture."""

    relay: RoomRelay
    websocket_server: Server
    host: str
    port: int
    address: str


@pytest_asyncio.fixture()
async def relay_server() -> AsyncGenerator[RelayServerInfo, None]:
    """Fixture that runs relay server locally.

    Yields:
        `RelayServerInfo <.RelayServerInfo>`
    """
    host = '127.0.0.1'
    port = open_port()
    address = f'ws://{host}:{port}'

    relay = RoomRelay()
    async with serve(relay.handler, host, port) as websocket_server:
        yield RelayServerInfo(
            relay=relay,
            websocket_server=websocket_server,
            host=host,
            port=port,
            address=address,
        )
