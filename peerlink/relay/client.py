"""Websocket client that holds an address on a relay server."""
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
from websockets.protocol import State

from peerlink.exceptions import AddressTakenError
from peerlink.relay.exceptions import AddressInUseError
from peerlink.relay.exceptions import RelayNotConnectedError
from peerlink.relay.exceptions import RelayRegistrationError
from peerlink.relay.messages import decode_relay_message
from peerlink.relay.messages import encode_relay_message
from peerlink.relay.messages import RelayMessage
from peerlink.relay.messages import RelayMessageDecodeError
from peerlink.relay.messages import RelayRegistrationRequest
from peerlink.relay.messages import RelayResponse

logger = logging.getLogger(__name__)

# Failures worth waiting out before registering again
_TRANSIENT_ERRORS = (
    OSError,
    asyncio.TimeoutError,
    websockets.exceptions.ConnectionClosed,
    websockets.exceptions.InvalidHandshake,
)


class RelayClient:
    """Websocket client that holds an address on a relay server.

    The client registers an address when it connects and registers the
    same address again whenever it has to reconnect, so peers can keep
    using it across relay outages. Sending or receiving on a closed
    connection reconnects first.

    Tip:
        The client is an async context manager that connects on entry.
        ```python
        from peerlink.relay.client import RelayClient

        async with RelayClient('ws://localhost:8700') as client:
            print(client.address)
            await client.send(...)
            message = await client.recv()
        ```

    Args:
        relay_address: Relay server URI starting with `ws://` or `wss://`.
        address: Address to register. The relay assigns one if `None`, and
            the assigned address is reused on reconnect.
        ssl_context: SSL context for
            [`websockets.asyncio.client.connect()`][websockets.asyncio.client.connect].
            `wss://` URIs get a default context if omitted.
        timeout: Seconds to wait for the connection to open and for the
            registration reply.
        verify_certificate: Check the relay's certificate when building
            the default context for a `wss://` URI.

    Raises:
        ValueError: If `relay_address` is not a `ws://` or `wss://` URI.
    """

    def __init__(
        self,
        relay_address: str,
        *,
        address: str | None = None,
        ssl_context: ssl.SSLContext | None = None,
        timeout: float = 10,
        verify_certificate: bool = True,
    ) -> None:
        if not (
            relay_address.startswith('ws://')
            or relay_address.startswith('wss://')
        ):
            raise ValueError(
                'Relay server address must start with ws:// or wss://. '
                f'Got {relay_address}.',
            )

        self._relay_address = relay_address
        self._address = address
        self._timeout = timeout

        if relay_address.startswith('wss://') and ssl_context is None:
            ssl_context = ssl.create_default_context()
            if not verify_certificate:
                ssl_context.check_hostname = False
                ssl_context.verify_mode = ssl.CERT_NONE
        self._ssl_context = ssl_context

        self._initial_backoff_seconds = 1.0
        self._max_backoff_seconds = 60.0

        self._connect_lock = asyncio.Lock()
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
    def address(self) -> str | None:
        """Address registered on the relay.

        `None` before the first registration when the relay assigns it.
        """
        return self._address

    @property
    def relay_address(self) -> str:
        """URI of the relay server."""
        return self._relay_address

    @property
    def connected(self) -> bool:
        """The websocket to the relay is open."""
        return (
            self._websocket is not None
            and self._websocket.state is State.OPEN
        )

    @property
    def websocket(self) -> ClientConnection:
        """Open websocket to the relay.

        Raises:
            RelayNotConnectedError: If there is no open websocket. Call
                [`connect()`][peerlink.relay.client.RelayClient.connect]
                to open one.
        """
        if self._websocket is not None and self.connected:
            return self._websocket
        raise RelayNotConnectedError(
            f'No open connection to the relay at {self._relay_address}; '
            'call connect() first.',
        )

    async def _register(self) -> ClientConnection:
        """Open a websocket and register the address on it.

        Raises:
            OSError: If the relay cannot be reached.
            asyncio.TimeoutError: If the relay does not reply in time.
            websockets.exceptions.ConnectionClosed: If the relay closes the
                websocket during registration.
            AddressTakenError: If another client holds the address.
            RelayRegistrationError: If the relay rejects the registration
                for any other reason or replies with garbage.
        """
        websocket = await connect(
            self._relay_address,
            open_timeout=self._timeout,
            ssl=self._ssl_context,
        )

        try:
            request = RelayRegistrationRequest(address=self._address)
            await websocket.send(encode_relay_message(request))
            reply = await asyncio.wait_for(websocket.recv(), self._timeout)
            if not isinstance(reply, str):
                raise RelayRegistrationError(
                    'Relay replied to the registration with binary data.',
                )
            response = decode_relay_message(reply)
        except RelayMessageDecodeError as e:
            await websocket.close()
            raise RelayRegistrationError(
                'Relay replied to the registration with an invalid message.',
            ) from e
        except BaseException:
            await websocket.close()
            raise

        if not isinstance(response, RelayResponse):
            await websocket.close()
            raise RelayRegistrationError(
                'Expected a registration response from the relay but got '
                f'{type(response).__name__}.',
            )
        if not response.success:
            await websocket.close()
            if response.error_type == AddressInUseError.__name__:
                raise AddressTakenError(
                    f'Address {self._address} is already taken.',
                )
            raise RelayRegistrationError(
                f'Relay rejected the registration: {response.message}',
            )

        self._address = response.address
        logger.info(
            f'Registered address {self._address} on relay '
            f'{self._relay_address}',
        )
        return websocket

    async def connect(self, retry: bool = True) -> None:
        """Open the websocket and register the address.

        Does nothing if the websocket is already open. Transient failures
        are retried with a delay that starts at one second and doubles up
        to one minute. A taken address is never retried.

        Args:
            retry: Retry transient failures instead of raising them.

        Raises:
            AddressTakenError: If another client holds the address.
        """
        async with self._connect_lock:
            if self.connected:
                return

            backoff_seconds = self._initial_backoff_seconds
            while True:
                try:
                    self._websocket = await self._register()
                except _TRANSIENT_ERRORS as e:
                    if not retry:
                        raise
                    logger.warning(
                        f'Registration on relay {self._relay_address} '
                        f'failed with {e!r}, trying again in '
                        f'{backoff_seconds} seconds',
                    )
                    await asyncio.sleep(backoff_seconds)
                    backoff_seconds = min(
                        backoff_seconds * 2,
                        self._max_backoff_seconds,
                    )
                else:
                    return

    async def close(self) -> None:
        """Close the websocket to the relay."""
        if self._websocket is not None:
            await self._websocket.close()

    async def _open_websocket(self) -> ClientConnection:
        try:
            return self.websocket
        except RelayNotConnectedError:
            await self.connect()
            return self.websocket

    async def recv(self) -> RelayMessage:
        """Wait for the next message from the relay.

        Raises:
            RelayMessageDecodeError: If the relay sent binary data or an
                invalid message.
        """
        websocket = await self._open_websocket()
        data = await websocket.recv()
        if not isinstance(data, str):
            raise RelayMessageDecodeError('Relay sent binary data.')
        return decode_relay_message(data)

    async def send(self, message: RelayMessage) -> None:
        """Send a message to the relay."""
        data = encode_relay_message(message)
        websocket = await self._open_websocket()
        await websocket.send(data)
