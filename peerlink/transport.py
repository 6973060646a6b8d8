"""Direct peer-to-peer transports negotiated with offers and answers."""
from __future__ import annotations

import asyncio
import dataclasses
import functools
import logging
import warnings
from typing import Awaitable
from typing import Callable
from typing import Sequence
from typing import Union

from aiortc import RTCConfiguration
from aiortc import RTCDataChannel
from aiortc import RTCIceServer
from aiortc import RTCPeerConnection
from aiortc import RTCSessionDescription
from aiortc.contrib.signaling import object_from_string
from aiortc.contrib.signaling import object_to_string
from aiortc.exceptions import InvalidStateError
from cryptography.utils import CryptographyDeprecationWarning

from peerlink.exceptions import InvalidNegotiationStateError
from peerlink.exceptions import NoSuchSessionError
from peerlink.identity import IdentityProvider
from peerlink.messages import ControlMessage
from peerlink.messages import decode_control_message
from peerlink.messages import encode_control_message
from peerlink.messages import IdentityMessage
from peerlink.messages import MessageDecodeError
from peerlink.state import TransportState
from peerlink.utils.tasks import spawn_guarded_background_task

warnings.simplefilter('ignore', CryptographyDeprecationWarning)

logger = logging.getLogger(__name__)

DirectMessage = Union[ControlMessage, bytes]
StateChangeHandler = Callable[[str, TransportState], Awaitable[None]]
DirectMessageHandler = Callable[[str, DirectMessage], Awaitable[None]]


async def _ignore_state(address: str, state: TransportState) -> None:
    pass


async def _ignore_message(address: str, message: DirectMessage) -> None:
    pass


@dataclasses.dataclass(eq=False)
class _Transport:
    """One negotiation attempt with a peer.

    Never reused once it reaches a terminal state.
    """

    peer: str
    pc: RTCPeerConnection
    offerer: bool
    state: TransportState = TransportState.NEW
    channel: RTCDataChannel | None = None


class TransportNegotiator:
    """Connection manager for direct channels to many peers.

    Drives the offer/answer exchange of one
    [aiortc](https://aiortc.readthedocs.io/en/latest/){target=_blank}
    `RTCPeerConnection` per peer and reports state transitions and received
    messages through the handlers set with
    [`register_handlers()`][peerlink.transport.TransportNegotiator.register_handlers].

    Descriptions are returned only after candidate gathering completes, so
    a single offer and a single answer are all that needs to be relayed.
    As soon as a channel opens, the local identity is sent to the peer
    before the `OPEN` state is reported.

    Example:
        ```python
        from peerlink.transport import TransportNegotiator

        host = TransportNegotiator(host_identity)
        joiner = TransportNegotiator(joiner_identity)

        offer = await host.create_offer('joiner')
        answer = await joiner.create_answer('host', offer)
        await host.accept_answer('joiner', answer)
        ```

    Args:
        identity: Provider of the identity sent when a channel opens.
        ice_servers: STUN/TURN server URLs used for candidate gathering.
            An empty sequence gathers host candidates only.
        channel_label: Label of the data channel opened by the offerer.
    """

    def __init__(
        self,
        identity: IdentityProvider,
        *,
        ice_servers: Sequence[str] = (),
        channel_label: str = 'peerlink',
    ) -> None:
        self._identity = identity
        self._ice_servers = list(ice_servers)
        self._channel_label = channel_label

        self._transports: dict[str, _Transport] = {}
        self._pending: set[str] = set()

        self._on_state_change: StateChangeHandler = _ignore_state
        self._on_message: DirectMessageHandler = _ignore_message

    def _log_prefix(self, peer: str) -> str:
        return f'{self.__class__.__name__}[> {peer}]'

    @property
    def peers(self) -> list[str]:
        """Addresses of peers with a transport."""
        return list(self._transports)

    def register_handlers(
        self,
        *,
        on_state_change: StateChangeHandler | None = None,
        on_message: DirectMessageHandler | None = None,
    ) -> None:
        """Set the coroutines invoked for transport events.

        Args:
            on_state_change: Called with the peer address and new state on
                every state transition of the peer's current transport.
            on_message: Called with the peer address and the message for
                every message received on the direct channel. Control
                messages are decoded, payloads are passed as bytes.
        """
        if on_state_change is not None:
            self._on_state_change = on_state_change
        if on_message is not None:
            self._on_message = on_message

    def state(self, peer: str) -> TransportState | None:
        """Get the state of the transport with a peer if one exists."""
        transport = self._transports.get(peer)
        return None if transport is None else transport.state

    async def create_offer(self, peer: str) -> str:
        """Create a fresh transport for a peer and produce an offer.

        Any previous transport with the peer is discarded without raising
        state events.

        Args:
            peer: Address of the peer.

        Returns:
            Serialized offer including all gathered candidates.

        Raises:
            InvalidNegotiationStateError: If a negotiation call for the peer
                is still outstanding or the transport was superseded while
                the offer was being created.
        """
        self._begin(peer)
        try:
            transport = await self._new_transport(peer, offerer=True)
            channel = transport.pc.createDataChannel(
                self._channel_label,
                ordered=True,
            )
            self._attach_channel(transport, channel)
            await self._set_state(transport, TransportState.NEGOTIATING)

            try:
                await transport.pc.setLocalDescription(
                    await transport.pc.createOffer(),
                )
            except InvalidStateError as e:
                raise InvalidNegotiationStateError(
                    f'Transport with {peer} closed while creating an offer.',
                ) from e
            return await self._local_description(transport)
        finally:
            self._pending.discard(peer)

    async def create_answer(self, peer: str, remote_description: str) -> str:
        """Create a fresh transport for a peer and answer its offer.

        Args:
            peer: Address of the peer that sent the offer.
            remote_description: Serialized offer produced by
                [`create_offer()`][peerlink.transport.TransportNegotiator.create_offer].

        Returns:
            Serialized answer including all gathered candidates.

        Raises:
            InvalidNegotiationStateError: If the description is not an
                offer, a negotiation call for the peer is still outstanding,
                or the transport was superseded while answering.
        """
        offer = _parse_description(remote_description, 'offer')
        self._begin(peer)
        try:
            transport = await self._new_transport(peer, offerer=False)
            transport.pc.on(
                'datachannel',
                functools.partial(self._on_datachannel, transport),
            )
            await self._set_state(transport, TransportState.NEGOTIATING)

            try:
                await transport.pc.setRemoteDescription(offer)
                await transport.pc.setLocalDescription(
                    await transport.pc.createAnswer(),
                )
            except (InvalidStateError, ValueError) as e:
                await self._teardown(transport)
                raise InvalidNegotiationStateError(
                    f'Unable to answer offer from {peer}: {e}',
                ) from e
            return await self._local_description(transport)
        finally:
            self._pending.discard(peer)

    async def accept_answer(self, peer: str, remote_description: str) -> None:
        """Apply the peer's answer to the transport created by an offer.

        Args:
            peer: Address of the peer that sent the answer.
            remote_description: Serialized answer produced by
                [`create_answer()`][peerlink.transport.TransportNegotiator.create_answer].

        Raises:
            NoSuchSessionError: If there is no transport with the peer.
            InvalidNegotiationStateError: If the transport was not created
                by an offer, already has an answer applied, or the
                description is not an answer.
        """
        transport = self._transports.get(peer)
        if transport is None:
            raise NoSuchSessionError(f'No transport exists for {peer}.')
        if (
            not transport.offerer
            or transport.state.terminal
            or transport.pc.signalingState != 'have-local-offer'
        ):
            raise InvalidNegotiationStateError(
                f'Transport with {peer} is not waiting for an answer '
                f'(offerer={transport.offerer}, state={transport.state.name}, '
                f'signaling={transport.pc.signalingState}).',
            )

        answer = _parse_description(remote_description, 'answer')
        logger.info(f'{self._log_prefix(peer)}: applying answer')
        try:
            await transport.pc.setRemoteDescription(answer)
        except (InvalidStateError, ValueError) as e:
            await self._teardown(transport)
            raise InvalidNegotiationStateError(
                f'Unable to apply answer from {peer}: {e}',
            ) from e

    async def send(
        self,
        message: DirectMessage,
        peer: str | None = None,
    ) -> None:
        """Send a message on open direct channels.

        Messages to peers without an `OPEN` channel are dropped.

        Args:
            message: Payload bytes or control message.
            peer: Address of the peer or `None` to broadcast to every peer.
        """
        if peer is None:
            transports = list(self._transports.values())
        elif peer in self._transports:
            transports = [self._transports[peer]]
        else:
            transports = []

        data = (
            message
            if isinstance(message, bytes)
            else encode_control_message(message)
        )
        for transport in transports:
            channel = transport.channel
            if (
                transport.state is not TransportState.OPEN
                or channel is None
                or channel.readyState != 'open'
            ):
                logger.debug(
                    f'{self._log_prefix(transport.peer)}: dropping message '
                    f'because transport is {transport.state.name}',
                )
                continue
            channel.send(data)

    async def disconnect(self, peer: str) -> None:
        """Close the transport with a peer.

        Buffered messages are flushed before closing. A `CLOSED` event is
        reported if the channel was open, or `FAILED` if the negotiation
        was still in progress. No-op if there is no transport with the peer.
        """
        transport = self._transports.get(peer)
        if transport is None:
            return
        logger.info(f'{self._log_prefix(peer)}: disconnecting')
        await self._flush(transport)
        await self._teardown(transport)
        if self._transports.get(peer) is transport:
            del self._transports[peer]

    async def close(self) -> None:
        """Close every transport without reporting state changes."""
        for peer in list(self._transports):
            await self._discard(peer)

    def _begin(self, peer: str) -> None:
        if peer in self._pending:
            raise InvalidNegotiationStateError(
                f'A negotiation with {peer} is already in progress.',
            )
        self._pending.add(peer)

    async def _new_transport(self, peer: str, *, offerer: bool) -> _Transport:
        await self._discard(peer)

        configuration = RTCConfiguration(
            iceServers=[RTCIceServer(urls=url) for url in self._ice_servers],
        )
        transport = _Transport(
            peer=peer,
            pc=RTCPeerConnection(configuration=configuration),
            offerer=offerer,
        )
        transport.pc.on(
            'connectionstatechange',
            functools.partial(self._on_connection_state_change, transport),
        )
        self._transports[peer] = transport
        return transport

    async def _discard(self, peer: str) -> None:
        # Superseded transports are closed without reporting events
        transport = self._transports.pop(peer, None)
        if transport is None:
            return
        logger.debug(f'{self._log_prefix(peer)}: discarding stale transport')
        if not transport.state.terminal:
            transport.state = (
                TransportState.CLOSED
                if transport.state.connected
                else TransportState.FAILED
            )
        await transport.pc.close()

    async def _local_description(self, transport: _Transport) -> str:
        await _wait_for_gathering(transport.pc)
        if self._transports.get(transport.peer) is not transport:
            raise InvalidNegotiationStateError(
                f'Transport with {transport.peer} was superseded during '
                'negotiation.',
            )
        description = transport.pc.localDescription
        logger.info(
            f'{self._log_prefix(transport.peer)}: created {description.type}',
        )
        return object_to_string(description)

    def _attach_channel(
        self,
        transport: _Transport,
        channel: RTCDataChannel,
    ) -> None:
        transport.channel = channel
        channel.on(
            'open',
            functools.partial(self._on_channel_open, transport),
        )
        channel.on(
            'message',
            functools.partial(self._on_channel_message, transport),
        )
        channel.on(
            'close',
            functools.partial(self._teardown, transport),
        )
        # The underlying RTCDtlsTransport reports when the remote goes away.
        channel.transport.transport.on(
            'statechange',
            functools.partial(self._on_dtls_state_change, transport),
        )

    def _on_datachannel(
        self,
        transport: _Transport,
        channel: RTCDataChannel,
    ) -> None:
        # Only used on the answerer's side. Synchronous so the message
        # handler is attached before any frame queued behind the open.
        logger.info(
            f'{self._log_prefix(transport.peer)}: peer channel established',
        )
        self._attach_channel(transport, channel)
        if channel.readyState == 'open':
            spawn_guarded_background_task(
                self._on_channel_open,
                transport,
                name=f'channel-open-{transport.peer}',
            )

    async def _on_channel_open(self, transport: _Transport) -> None:
        if (
            transport.state is not TransportState.NEGOTIATING
            or transport.channel is None
            or transport.channel.readyState != 'open'
        ):
            return
        identity = self._identity.get_local_identity()
        transport.channel.send(
            encode_control_message(
                IdentityMessage(
                    stable_id=identity.stable_id,
                    display_name=identity.display_name,
                ),
            ),
        )
        await self._set_state(transport, TransportState.OPEN)

    async def _on_channel_message(
        self,
        transport: _Transport,
        data: bytes | str,
    ) -> None:
        if self._transports.get(transport.peer) is not transport:
            return
        message: DirectMessage
        if isinstance(data, str):
            try:
                message = decode_control_message(data)
            except MessageDecodeError as e:
                logger.error(
                    f'{self._log_prefix(transport.peer)}: error decoding '
                    f'control message: {e} ...skipping message',
                )
                return
        else:
            message = data
        await self._on_message(transport.peer, message)

    async def _on_connection_state_change(self, transport: _Transport) -> None:
        state = transport.pc.connectionState
        logger.debug(
            f'{self._log_prefix(transport.peer)}: connection state is {state}',
        )
        if state == 'connected' and transport.state is TransportState.DEGRADED:
            await self._set_state(transport, TransportState.OPEN)
        elif state == 'disconnected':
            await self._set_state(transport, TransportState.DEGRADED)
        elif state in ('closed', 'failed'):
            await self._teardown(transport)

    async def _on_dtls_state_change(self, transport: _Transport) -> None:
        if transport.channel is None:
            return
        dtls = transport.channel.transport.transport
        if dtls.state in ('closed', 'failed'):
            await self._teardown(transport)

    async def _teardown(self, transport: _Transport) -> None:
        if transport.state.terminal:
            return
        terminal = (
            TransportState.CLOSED
            if transport.state.connected
            else TransportState.FAILED
        )
        if transport.state.can_transition_to(terminal):
            await self._set_state(transport, terminal)
        else:
            transport.state = terminal
        await transport.pc.close()

    async def _flush(self, transport: _Transport) -> None:
        # Flush send buffers before close
        # https://github.com/aiortc/aiortc/issues/547
        channel = transport.channel
        if channel is None or channel.readyState != 'open':
            return
        sctp = channel.transport
        await sctp._data_channel_flush()
        await sctp._transmit()

    async def _set_state(
        self,
        transport: _Transport,
        state: TransportState,
    ) -> None:
        old = transport.state
        if old is state:
            return
        if not old.can_transition_to(state):
            logger.debug(
                f'{self._log_prefix(transport.peer)}: ignoring transition '
                f'{old.name} -> {state.name}',
            )
            return
        transport.state = state
        if self._transports.get(transport.peer) is not transport:
            return
        logger.info(
            f'{self._log_prefix(transport.peer)}: transport '
            f'{old.name} -> {state.name}',
        )
        await self._on_state_change(transport.peer, state)


def _parse_description(
    description: str,
    expected_type: str,
) -> RTCSessionDescription:
    try:
        obj = object_from_string(description)
    except (KeyError, TypeError, ValueError) as e:
        raise InvalidNegotiationStateError(
            f'Remote description is not a valid {expected_type}.',
        ) from e
    if not isinstance(obj, RTCSessionDescription) or obj.type != expected_type:
        raise InvalidNegotiationStateError(
            f'Expected remote description of type {expected_type}.',
        )
    return obj


async def _wait_for_gathering(pc: RTCPeerConnection) -> None:
    complete = asyncio.Event()

    def _check() -> None:
        if pc.iceGatheringState == 'complete':
            complete.set()

    pc.on('icegatheringstatechange', _check)
    try:
        _check()
        await complete.wait()
    finally:
        pc.remove_listener('icegatheringstatechange', _check)
