"""Relay server that pairs up peers before they connect directly.

Every peer can reach the relay even when peers cannot reach each other.
A peer registers an address, links it with the address of another peer,
and trades the offer and answer for a direct channel over that link.
"""
from __future__ import annotations

import logging
import sys
import uuid

import websockets.exceptions
from websockets.asyncio.server import ServerConnection
from websockets.protocol import State

from peerlink.relay.exceptions import AddressInUseError
from peerlink.relay.exceptions import ForbiddenError
from peerlink.relay.exceptions import RelayServerError
from peerlink.relay.manager import Client
from peerlink.relay.manager import ClientManager
from peerlink.relay.messages import decode_relay_message
from peerlink.relay.messages import encode_relay_message
from peerlink.relay.messages import LinkAccepted
from peerlink.relay.messages import LinkClosed
from peerlink.relay.messages import LinkRequest
from peerlink.relay.messages import RelayData
from peerlink.relay.messages import RelayMessage
from peerlink.relay.messages import RelayMessageDecodeError
from peerlink.relay.messages import RelayMessageEncodeError
from peerlink.relay.messages import RelayRegistrationRequest
from peerlink.relay.messages import RelayResponse

logger = logging.getLogger(__name__)


class RelayServer:
    """Rendezvous relay server.

    Keeps a table from addresses to websockets and the set of linked
    address pairs. Link messages update the table and are then passed to
    their target. Data is only passed between linked addresses. Peers
    stop talking to the relay once their direct channel is open.

    Serve it with [`serve()`][peerlink.relay.run.serve] or pass
    [`handler()`][peerlink.relay.server.RelayServer.handler] to any
    websockets server.

    Args:
        max_message_bytes: Close connections that send a message larger
            than this. Sizes come from
            [`sys.getsizeof()`][sys.getsizeof] and count the object
            header as well as the payload.
    """

    def __init__(self, max_message_bytes: int | None = None) -> None:
        self._client_manager = ClientManager()
        self._max_message_bytes = max_message_bytes

    @property
    def client_manager(self) -> ClientManager:
        """Registered clients and their links."""
        return self._client_manager

    async def send(
        self,
        websocket: ServerConnection,
        message: RelayMessage,
    ) -> None:
        """Send a message to a client.

        Encoding errors and closed connections are logged and dropped.
        """
        try:
            data = encode_relay_message(message)
        except RelayMessageEncodeError as e:
            logger.error(f'Cannot encode {type(message).__name__}: {e}')
            return

        try:
            await websocket.send(data)
        except websockets.exceptions.ConnectionClosed:
            logger.error(
                f'Dropped {type(message).__name__} for '
                f'{websocket.remote_address}: connection is closed',
            )

    async def register(
        self,
        websocket: ServerConnection,
        request: RelayRegistrationRequest,
    ) -> None:
        """Bind an address to the websocket that asked for it.

        A random address is assigned if the request has none. An address
        held by a closed websocket is taken over. Registering a new address
        on the same websocket releases the old one.

        Raises:
            AddressInUseError: If an open websocket holds the address.
        """
        address = (
            str(uuid.uuid4()) if request.address is None else request.address
        )

        holder = self.client_manager.get_client_by_address(address)
        if holder is not None and holder.websocket is not websocket:
            if holder.websocket.state is State.OPEN:
                logger.warning(
                    f'Refused address {address} to '
                    f'{websocket.remote_address}: held by {holder}',
                )
                raise AddressInUseError(f'Address {address} is held.')
            logger.info(f'Taking over address {address} from closed {holder}')
            await self.unregister(holder, expected=False)

        previous = self.client_manager.get_client_by_websocket(websocket)
        if previous is not None and previous.address != address:
            await self._drop_links(previous)
            self.client_manager.remove_client(previous)

        client = Client(address=address, websocket=websocket)
        self.client_manager.add_client(client)
        logger.info(f'New registration: {client}')

        await self.send(
            websocket,
            RelayResponse(success=True, address=address),
        )

    async def _drop_links(self, client: Client) -> None:
        for address in self.client_manager.get_links(client.address):
            self.client_manager.remove_link(client.address, address)
            peer = self.client_manager.get_client_by_address(address)
            if peer is not None:
                await self.send(
                    peer.websocket,
                    LinkClosed(
                        source=client.address,
                        target=address,
                        reason=f'{client.address} left the relay.',
                    ),
                )

    async def unregister(self, client: Client, expected: bool) -> None:
        """Release the client's address and close its links.

        Args:
            client: Client to release.
            expected: The client closed its websocket normally.
        """
        logger.info(
            f'Releasing address {client.address} '
            f'({"closed" if expected else "lost"})',
        )
        await self._drop_links(client)
        self.client_manager.remove_client(client)
        await client.websocket.close(code=1000 if expected else 1001)

    async def forward(self, source: Client, message: RelayMessage) -> None:
        """Pass a link or data message from `source` to its target.

        A message for an unregistered address is answered with a
        [`LinkClosed`][peerlink.relay.messages.LinkClosed] sent in that
        address's name.

        Raises:
            ForbiddenError: If the message claims another source address.
        """
        assert isinstance(
            message,
            (LinkRequest, LinkAccepted, LinkClosed, RelayData),
        )
        if message.source != source.address:
            raise ForbiddenError(
                f'{source.address} sent a message as {message.source}.',
            )

        target = self.client_manager.get_client_by_address(message.target)
        if target is None:
            logger.warning(
                f'{type(message).__name__} from {source.address} has no '
                f'recipient: {message.target} is not registered',
            )
            self.client_manager.remove_link(source.address, message.target)
            if not isinstance(message, LinkClosed):
                await self.send(
                    source.websocket,
                    LinkClosed(
                        source=message.target,
                        target=source.address,
                        reason=f'{message.target} is not on the relay.',
                    ),
                )
            return

        if isinstance(message, LinkAccepted):
            self.client_manager.add_link(source.address, target.address)
        elif isinstance(message, LinkClosed):
            self.client_manager.remove_link(source.address, target.address)
        elif isinstance(message, RelayData) and (
            target.address not in self.client_manager.get_links(source.address)
        ):
            logger.warning(
                f'Dropped data from {source.address} to {target.address}: '
                'no link',
            )
            return

        logger.debug(
            f'{type(message).__name__}: {source.address} -> {target.address}',
        )
        await self.send(target.websocket, message)

    async def _dispatch(
        self,
        websocket: ServerConnection,
        message: RelayMessage,
    ) -> None:
        if isinstance(message, RelayRegistrationRequest):
            await self.register(websocket, message)
            return
        if not isinstance(
            message,
            (LinkRequest, LinkAccepted, LinkClosed, RelayData),
        ):
            raise ForbiddenError(
                f'{type(message).__name__} is sent by the relay only.',
            )

        client = self.client_manager.get_client_by_websocket(websocket)
        if client is None:
            logger.warning(
                f'{type(message).__name__} from '
                f'{websocket.remote_address} before registering',
            )
            raise ForbiddenError('Register an address first.')
        await self.forward(client, message)

    async def handler(self, websocket: ServerConnection) -> None:
        """Serve one client connection until it closes.

        Close codes used by the relay:

        - 4000: the client sent something that is not a relay message.
        - 4002: the client did something it is not allowed to do.
        - 4003: the client sent a message over the size limit.
        """
        while True:
            try:
                data = await websocket.recv()
            except websockets.exceptions.ConnectionClosed as e:
                client = self.client_manager.get_client_by_websocket(websocket)
                if client is not None:
                    await self.unregister(
                        client,
                        expected=isinstance(
                            e,
                            websockets.exceptions.ConnectionClosedOK,
                        ),
                    )
                return

            size = sys.getsizeof(data)
            if (
                self._max_message_bytes is not None
                and size > self._max_message_bytes
            ):
                await websocket.close(4003, reason='Message too large.')
                logger.warning(
                    f'Closed {websocket.remote_address} (4003): message of '
                    f'{size} bytes is over the {self._max_message_bytes} '
                    'byte limit',
                )
                await self._cleanup(websocket)
                return

            try:
                if isinstance(data, bytes):
                    raise RelayMessageDecodeError('Binary frames are unused.')
                message = decode_relay_message(data)
            except RelayMessageDecodeError as e:
                logger.error(
                    f'Closed {websocket.remote_address} (4000): '
                    f'undecodable message: {e}',
                )
                await websocket.close(4000, reason='Invalid message.')
                await self._cleanup(websocket)
                return

            try:
                await self._dispatch(websocket, message)
            except ForbiddenError as e:
                await websocket.close(
                    code=4002,
                    reason=f'{type(e).__name__}: {e}',
                )
                await self._cleanup(websocket)
                return
            except RelayServerError as e:
                await self.send(
                    websocket,
                    RelayResponse(
                        success=False,
                        message=f'{type(e).__name__}: {e}',
                        error=True,
                        error_type=type(e).__name__,
                    ),
                )

    async def _cleanup(self, websocket: ServerConnection) -> None:
        client = self.client_manager.get_client_by_websocket(websocket)
        if client is not None:
            await self._drop_links(client)
            self.client_manager.remove_client(client)
