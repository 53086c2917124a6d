"""Websocket channel to the relay server."""
from __future__ import annotations

import asyncio
import logging
import ssl
import sys
from types import TracebackType

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    from typing import Self
else:  # pragma: <3.11 cover
    from typing_extensions import Self

import websockets.exceptions
from websockets.asyncio.client import ClientConnection
from websockets.asyncio.client import connect

from meshrtc.exceptions import ChannelClosedError

logger = logging.getLogger(__name__)


class WebSocketRelayChannel:
    """Text channel to a relay server over a websocket connection.

    The relay forwards signaling messages between participants of a room.
    The connection is never reopened once lost: `send()` and `recv()` raise
    [`ChannelClosedError`][meshrtc.exceptions.ChannelClosedError] instead.

    Tip:
        This class can be used as an async context manager!
        ```python
        from meshrtc.relay import WebSocketRelayChannel

        async with WebSocketRelayChannel('wss://example.com') as channel:
            await channel.send('...')
            message = await channel.recv()
        ```

    Args:
        address: Address of the relay server. Should start with `ws://` or
            `wss://`.
        extra_headers: Arbitrary HTTP headers to add to the handshake
            request.
        ssl_context: Custom SSL context to pass to
            [`websockets.connect()`][websockets.asyncio.client.connect]. A
            default TLS context is used when connecting to a `wss://` URI
            and `ssl_context` is not provided.
        timeout: Time to wait in seconds on the opening handshake.
        verify_certificate: Verify the relay server's SSL certificate. Only
            used if `ssl_context` is `None` and connecting to a `wss://`
            URI.

    Raises:
        ValueError: If address does not start with `ws://` or `wss://`.
    """

    def __init__(
        self,
        address: str,
        *,
        extra_headers: dict[str, str] | None = None,
        ssl_context: ssl.SSLContext | None = None,
        timeout: float = 10,
        verify_certificate: bool = True,
    ) -> None:
        if not (address.startswith('ws://') or address.startswith('wss://')):
            raise ValueError(
                'Relay server address must start with ws:// or wss://. '
                f'Got {address}.',
            )

        if (
            address.startswith('wss://')
            and ssl_context is None
            and not verify_certificate
        ):
            ssl_context = ssl.create_default_context()
            ssl_context.check_hostname = False
            ssl_context.verify_mode = ssl.CERT_NONE

        self._address = address
        self._extra_headers = extra_headers
        self._ssl_context = ssl_context
        self._timeout = timeout
        self._websocket: ClientConnection | None = None

    async def __aenter__(self) -> Self:
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        exc_traceback: TracebackType | None,
    ) -> None:
        await self.close()

    @property
    def address(self) -> str:
        """Address of the relay server."""
        return self._address

    @property
    def websocket(self) -> ClientConnection:
        """Websocket connection to the relay server.

        Raises:
            ChannelClosedError: If the connection was never opened.
        """
        if self._websocket is None:
            raise ChannelClosedError(
                'Websocket connection to the relay server is not open. '
                'Try calling connect() first.',
            )
        return self._websocket

    async def connect(self) -> None:
        """Open the connection to the relay server.

        Note:
            This method is a no-op if a connection was already opened.

        Raises:
            ChannelClosedError: If the server cannot be reached or refuses
                the handshake.
        """
        if self._websocket is not None:
            return
        try:
            self._websocket = await connect(
                self._address,
                additional_headers=self._extra_headers,
                open_timeout=self._timeout,
                ssl=self._ssl_context,
            )
        except (
            OSError,
            asyncio.TimeoutError,
            websockets.exceptions.WebSocketException,
        ) as e:
            raise ChannelClosedError(
                f'Failed to connect to relay server at {self._address}: {e}',
            ) from e
        logger.info(f'Established connection to relay server {self._address}')

    async def close(self) -> None:
        """Close the connection to the relay server."""
        if self._websocket is not None:
            await self._websocket.close()

    async def recv(self) -> str:
        """Receive the next message.

        Raises:
            ChannelClosedError: If the connection is closed.
        """
        try:
            message = await self.websocket.recv()
        except websockets.exceptions.ConnectionClosed as e:
            raise ChannelClosedError(
                f'Connection to relay server closed: {e}',
            ) from e
        if isinstance(message, bytes):
            return message.decode('utf-8', errors='replace')
        return message

    async def send(self, message: str) -> None:
        """Send a message.

        Raises:
            ChannelClosedError: If the connection is closed.
        """
        try:
            await self.websocket.send(message)
        except websockets.exceptions.ConnectionClosed as e:
            raise ChannelClosedError(
                f'Connection to relay server closed: {e}',
            ) from e
