"""Logical links to other addresses over a relay server."""
from __future__ import annotations

import asyncio
import enum
import logging
import ssl
from typing import Any
from typing import Awaitable
from typing import Callable

import websockets.exceptions

from peerlink.exceptions import AddressTakenError
from peerlink.relay.client import RelayClient
from peerlink.relay.exceptions import RelayNotConnectedError
from peerlink.relay.exceptions import RelayRegistrationError
from peerlink.relay.messages import encode_relay_message
from peerlink.relay.messages import LinkAccepted
from peerlink.relay.messages import LinkClosed
from peerlink.relay.messages import LinkRequest
from peerlink.relay.messages import RelayData
from peerlink.relay.messages import RelayMessage
from peerlink.relay.messages import RelayMessageDecodeError
from peerlink.relay.messages import RelayResponse
from peerlink.utils.tasks import cancel_and_wait
from peerlink.utils.tasks import SafeTaskExitError
from peerlink.utils.tasks import spawn_guarded_background_task

logger = logging.getLogger(__name__)

ConnectedHandler = Callable[[str], Awaitable[None]]
MessageHandler = Callable[[dict[str, Any], str], Awaitable[None]]
ClosedHandler = Callable[[str], Awaitable[None]]


class LinkState(enum.Enum):
    """State of a logical link with another address."""

    PENDING = 'pending'
    OPEN = 'open'


async def _ignore_address(address: str) -> None:
    pass


async def _ignore_message(message: dict[str, Any], address: str) -> None:
    pass


class RendezvousClient:
    """Rendezvous client ("signaling channel").

    Claims an address on a relay server and maps other addresses to
    logical links over which small JSON messages are exchanged. Events are
    surfaced through the handlers set with
    [`register_handlers()`][peerlink.rendezvous.RendezvousClient.register_handlers]
    and are dispatched one at a time in the order they were received.

    The client also keeps the blocklist: addresses that were intentionally
    disconnected and must not be linked again until unblocked. Inbound
    links from blocked addresses are torn down before any handler runs
    unless the link request is tagged as manual.

    Example:
        ```python
        from peerlink.rendezvous import RendezvousClient

        host = RendezvousClient('ws://localhost:8700')
        joiner = RendezvousClient('ws://localhost:8700')

        await host.listen('123456')
        await joiner.listen()
        await joiner.connect_to('123456')
        ```

    Args:
        relay_address: Address of the relay server. Should start with
            `ws://` or `wss://`.
        ssl_context: Custom SSL context for `wss://` relay servers.
        timeout: Time to wait in seconds on relay server connection.
        verify_certificate: Verify the relay server's SSL certificate.
    """

    def __init__(
        self,
        relay_address: str,
        *,
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
        self._ssl_context = ssl_context
        self._timeout = timeout
        self._verify_certificate = verify_certificate

        self._relay_client: RelayClient | None = None
        self._listener_task: asyncio.Task[None] | None = None
        self._links: dict[str, LinkState] = {}
        self._blocked: set[str] = set()

        self._on_connected: ConnectedHandler = _ignore_address
        self._on_message: MessageHandler = _ignore_message
        self._on_closed: ClosedHandler = _ignore_address

    @property
    def _log_prefix(self) -> str:
        address = 'unregistered' if self.address is None else self.address
        return f'{self.__class__.__name__}[{address}]'

    @property
    def address(self) -> str | None:
        """Address claimed on the relay server."""
        if self._relay_client is None:
            return None
        return self._relay_client.address

    @property
    def listening(self) -> bool:
        """An address is claimed and relay messages are being processed."""
        return (
            self._listener_task is not None
            and not self._listener_task.done()
        )

    @property
    def blocked(self) -> frozenset[str]:
        """Addresses currently blocked."""
        return frozenset(self._blocked)

    def register_handlers(
        self,
        *,
        on_connected: ConnectedHandler | None = None,
        on_message: MessageHandler | None = None,
        on_closed: ClosedHandler | None = None,
    ) -> None:
        """Set the coroutines invoked for link events.

        Args:
            on_connected: Called with the peer address when a link opens.
            on_message: Called with the message and peer address when data
                is received on an open link.
            on_closed: Called with the peer address when a link is closed
                or rejected by the peer or the relay.
        """
        if on_connected is not None:
            self._on_connected = on_connected
        if on_message is not None:
            self._on_message = on_message
        if on_closed is not None:
            self._on_closed = on_closed

    def is_blocked(self, address: str) -> bool:
        """Check if an address is blocked."""
        return address in self._blocked

    def block(self, address: str) -> None:
        """Reject future links with an address."""
        logger.info(f'{self._log_prefix}: blocking {address}')
        self._blocked.add(address)

    def unblock(self, address: str) -> None:
        """Allow links with a previously blocked address."""
        if address in self._blocked:
            logger.info(f'{self._log_prefix}: unblocking {address}')
        self._blocked.discard(address)

    def clear_all_blocks(self) -> None:
        """Unblock every address."""
        self._blocked.clear()

    def is_linked(self, address: str) -> bool:
        """Check if a link with an address is open."""
        return self._links.get(address) is LinkState.OPEN

    async def listen(self, address: str | None = None) -> str:
        """Claim an address on the relay server.

        Any previous registration is released first, dropping its links
        without raising close events.

        Args:
            address: Address to claim. If `None`, the relay assigns one.

        Returns:
            The claimed address.

        Raises:
            AddressTakenError: If the address is claimed by another client.
            RelayRegistrationError: If the relay rejected the registration.
            OSError: If the relay server cannot be reached.
        """
        await self._release()

        client = RelayClient(
            self._relay_address,
            address=address,
            ssl_context=self._ssl_context,
            timeout=self._timeout,
            verify_certificate=self._verify_certificate,
        )
        await client.connect(retry=False)
        self._relay_client = client
        self._listener_task = spawn_guarded_background_task(
            self._handle_relay_messages,
            client,
            name=f'rendezvous-listener-{client.address}',
        )
        assert client.address is not None
        logger.info(f'{self._log_prefix}: listening on relay server')
        return client.address

    async def connect_to(self, address: str, *, manual: bool = False) -> None:
        """Initiate a link with another address.

        The `on_connected` handler fires once the peer accepts.

        Args:
            address: Address of the peer.
            manual: The attempt was explicitly requested by a user. Clears
                any block on `address` and asks the peer to clear its block
                on this client.

        Raises:
            RelayNotConnectedError: If
                [`listen()`][peerlink.rendezvous.RendezvousClient.listen]
                has not been called or the relay connection is down. The
                request is never queued until the relay comes back.
        """
        if manual:
            self.unblock(address)
        if self.is_blocked(address):
            logger.warning(
                f'{self._log_prefix}: not linking with blocked address '
                f'{address}',
            )
            return
        if self._relay_client is None or self.address is None:
            raise RelayNotConnectedError(
                'Cannot connect to a peer before listening on the relay.',
            )
        if not self._relay_connected():
            # The listener task owns reconnecting to the relay
            raise RelayNotConnectedError(
                f'Cannot link with {address} while the relay connection '
                'is down.',
            )

        if self._links.get(address) is not LinkState.OPEN:
            self._links[address] = LinkState.PENDING
        logger.info(
            f'{self._log_prefix}: requesting link with {address} '
            f'(manual={manual})',
        )
        try:
            await self._relay_client.websocket.send(
                encode_relay_message(
                    LinkRequest(
                        source=self.address,
                        target=address,
                        manual=manual,
                    ),
                ),
            )
        except websockets.exceptions.ConnectionClosed as e:
            self._links.pop(address, None)
            raise RelayNotConnectedError(
                f'Relay connection closed while linking with {address}.',
            ) from e

    async def send(self, message: dict[str, Any], address: str) -> None:
        """Send a message over the link with an address.

        The message is silently dropped if no link with the address is open.

        Args:
            message: JSON object to send.
            address: Address of the peer.
        """
        if not self.is_linked(address) or not self._relay_connected():
            logger.debug(
                f'{self._log_prefix}: dropping message to {address} '
                'because no link is open',
            )
            return
        assert self._relay_client is not None and self.address is not None
        try:
            await self._relay_client.send(
                RelayData(source=self.address, target=address, data=message),
            )
        except (
            websockets.exceptions.ConnectionClosed,
            RelayNotConnectedError,
        ):
            logger.debug(
                f'{self._log_prefix}: dropping message to {address} '
                'because the relay connection closed',
            )

    async def close_link(self, address: str) -> None:
        """Close the link with an address.

        The `on_closed` handler is not invoked for locally closed links.
        No-op if there is no link with the address.
        """
        state = self._links.pop(address, None)
        if state is None:
            return
        logger.info(f'{self._log_prefix}: closing link with {address}')
        if self._relay_connected():
            assert self._relay_client is not None
            assert self.address is not None
            try:
                await self._relay_client.send(
                    LinkClosed(source=self.address, target=address),
                )
            except websockets.exceptions.ConnectionClosed:
                pass

    async def close(self) -> None:
        """Release the relay address and drop all links."""
        await self._release()
        logger.info(f'{self._log_prefix}: closed')

    def _relay_connected(self) -> bool:
        return self._relay_client is not None and self._relay_client.connected

    async def _release(self) -> None:
        await cancel_and_wait(self._listener_task)
        self._listener_task = None
        self._links.clear()
        if self._relay_client is not None:
            await self._relay_client.close()

    async def _drop_links(self) -> None:
        addresses = list(self._links)
        self._links.clear()
        for address in addresses:
            await self._on_closed(address)

    async def _handle_relay_messages(self, client: RelayClient) -> None:
        """Dispatch messages from the relay server until cancelled.

        If the relay connection drops, every link is reported closed and
        the next receive reconnects and reclaims the same address.
        """
        while True:
            try:
                message = await client.recv()
            except websockets.exceptions.ConnectionClosed:
                logger.warning(
                    f'{self._log_prefix}: connection to relay server lost',
                )
                await self._drop_links()
                continue
            except RelayMessageDecodeError as e:
                logger.error(
                    f'{self._log_prefix}: error deserializing message from '
                    f'relay server: {e} ...skipping message',
                )
                continue
            except (AddressTakenError, RelayRegistrationError) as e:
                logger.error(
                    f'{self._log_prefix}: failed to reclaim address on relay '
                    f'server: {e}',
                )
                await self._drop_links()
                raise SafeTaskExitError() from e

            try:
                await self._dispatch(message)
            except websockets.exceptions.ConnectionClosed:
                logger.warning(
                    f'{self._log_prefix}: relay connection closed while '
                    f'handling {type(message).__name__}',
                )

    async def _dispatch(self, message: RelayMessage) -> None:
        if isinstance(message, LinkRequest):
            await self._handle_link_request(message)
        elif isinstance(message, LinkAccepted):
            await self._handle_link_accepted(message)
        elif isinstance(message, LinkClosed):
            if self._links.pop(message.source, None) is not None:
                logger.info(
                    f'{self._log_prefix}: link with {message.source} '
                    f'closed (reason={message.reason})',
                )
                await self._on_closed(message.source)
        elif isinstance(message, RelayData):
            if not self.is_linked(message.source):
                logger.warning(
                    f'{self._log_prefix}: dropping data from unlinked '
                    f'address {message.source}',
                )
                return
            logger.debug(
                f'{self._log_prefix}: received data from {message.source}',
            )
            await self._on_message(message.data, message.source)
        elif isinstance(message, RelayResponse):
            logger.error(
                f'{self._log_prefix}: got unexpected response from relay '
                f'server: {message}',
            )
        else:
            logger.error(
                f'{self._log_prefix}: received unknown message type '
                f'{type(message).__name__} from relay server',
            )

    async def _handle_link_request(self, message: LinkRequest) -> None:
        peer = message.source
        if message.manual:
            self.unblock(peer)
        if self.is_blocked(peer):
            logger.warning(
                f'{self._log_prefix}: rejecting link from blocked address '
                f'{peer}',
            )
            await self._reject(peer, 'Address is blocked.')
            return

        assert self._relay_client is not None and self.address is not None
        self._links[peer] = LinkState.OPEN
        await self._relay_client.send(
            LinkAccepted(source=self.address, target=peer),
        )
        logger.info(f'{self._log_prefix}: accepted link from {peer}')
        await self._on_connected(peer)

    async def _handle_link_accepted(self, message: LinkAccepted) -> None:
        peer = message.source
        if self.is_blocked(peer) or peer not in self._links:
            logger.warning(
                f'{self._log_prefix}: closing unrequested link from {peer}',
            )
            self._links.pop(peer, None)
            await self._reject(peer, 'Link was not requested.')
            return

        self._links[peer] = LinkState.OPEN
        logger.info(f'{self._log_prefix}: link with {peer} open')
        await self._on_connected(peer)

    async def _reject(self, peer: str, reason: str) -> None:
        assert self._relay_client is not None and self.address is not None
        await self._relay_client.send(
            LinkClosed(source=self.address, target=peer, reason=reason),
        )
