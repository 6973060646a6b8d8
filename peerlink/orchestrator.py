"""Session orchestration across the relay and direct transports."""
from __future__ import annotations

import asyncio
import logging
import time
from types import TracebackType
from typing import Any
from typing import Awaitable
from typing import Callable
from typing import Generator
from typing import Protocol
from typing import runtime_checkable

import websockets.exceptions

from peerlink.config import PeerLinkConfig
from peerlink.config import ReconnectConfig
from peerlink.directory import PeerDirectory
from peerlink.exceptions import AddressTakenError
from peerlink.exceptions import InvalidNegotiationStateError
from peerlink.exceptions import NoSuchSessionError
from peerlink.exceptions import ReconnectExhaustedError
from peerlink.identity import Identity
from peerlink.identity import IdentityProvider
from peerlink.messages import DisconnectIntent
from peerlink.messages import IdentityMessage
from peerlink.messages import MessageDecodeError
from peerlink.messages import NegotiationMessage
from peerlink.relay.exceptions import RelayClientError
from peerlink.rendezvous import RendezvousClient
from peerlink.session import PeerSession
from peerlink.session import SessionTable
from peerlink.state import Role
from peerlink.state import TransportState
from peerlink.transport import DirectMessage
from peerlink.transport import TransportNegotiator
from peerlink.utils.tasks import cancel_and_wait
from peerlink.utils.tasks import spawn_guarded_background_task

logger = logging.getLogger(__name__)

PayloadHandler = Callable[[bytes, str], Awaitable[None]]

# Failures to reach the relay that a scheduled retry treats as a failed attempt
_RELAY_ERRORS = (
    OSError,
    asyncio.TimeoutError,
    AddressTakenError,
    RelayClientError,
    websockets.exceptions.WebSocketException,
)


@runtime_checkable
class StatusSink(Protocol):
    """Observer of session state for UIs and monitoring."""

    def on_session_state_changed(
        self,
        address: str,
        state: TransportState,
    ) -> None:
        """Called after every transport state change of a session."""
        ...

    def on_session_failed(
        self,
        address: str,
        error: ReconnectExhaustedError,
    ) -> None:
        """Called once when automatic reconnection to a peer gives up."""
        ...


class SessionOrchestrator:
    """Session orchestrator.

    Binds a [`RendezvousClient`][peerlink.rendezvous.RendezvousClient] and a
    [`TransportNegotiator`][peerlink.transport.TransportNegotiator] together
    and owns the [`SessionTable`][peerlink.session.SessionTable].

    A hosting process claims an address and sends an offer to every peer
    that links with it. A joining process links with a host address and
    answers the host's offer. Once the direct channel opens, identities are
    exchanged over it and all payloads bypass the relay.

    When a joiner's session is lost without either side intending it, the
    join is retried after `base_delay * n` seconds for the `n`-th attempt
    until `max_attempts` is reached. Hosts never retry; they wait for the
    joiner to come back.

    Example:
        ```python
        from peerlink.orchestrator import SessionOrchestrator

        async with SessionOrchestrator.from_config(config, identity) as host:
            address = await host.start_hosting('123456')
            peer, payload = await host.recv()
        ```

    Note:
        The class can also be initialized with `await` which is a no-op
        kept for symmetry with `async with`.

    Args:
        rendezvous: Client used to claim relay addresses and link with peers.
        negotiator: Manager of the direct transports.
        directory: Optional directory updated when a peer's identity arrives.
        status_sink: Optional observer of session state changes.
        on_payload: Optional coroutine invoked with every payload received.
            If `None`, payloads are queued for
            [`recv()`][peerlink.orchestrator.SessionOrchestrator.recv].
        reconnect: Reconnection policy for joining sessions.
        negotiation_timeout: Seconds an attempt may take to open the
            direct channel before it counts as failed.
        host_address: Address to claim when hosting without an explicit
            address.
    """

    def __init__(
        self,
        rendezvous: RendezvousClient,
        negotiator: TransportNegotiator,
        *,
        directory: PeerDirectory | None = None,
        status_sink: StatusSink | None = None,
        on_payload: PayloadHandler | None = None,
        reconnect: ReconnectConfig | None = None,
        negotiation_timeout: float = 30,
        host_address: str | None = None,
    ) -> None:
        self._rendezvous = rendezvous
        self._negotiator = negotiator
        self._directory = directory
        self._status_sink = status_sink
        self._on_payload = on_payload
        self._reconnect = ReconnectConfig() if reconnect is None else reconnect
        self._negotiation_timeout = negotiation_timeout
        self._host_address = host_address

        self._sessions = SessionTable()
        self._role: Role | None = None
        self._superseding: set[str] = set()
        self._closing = False
        self._payloads: asyncio.Queue[tuple[str, bytes]] = asyncio.Queue()

        self._rendezvous.register_handlers(
            on_connected=self._on_relay_connected,
            on_message=self._on_relay_message,
            on_closed=self._on_relay_closed,
        )
        self._negotiator.register_handlers(
            on_state_change=self._on_transport_state,
            on_message=self._on_transport_message,
        )

    @classmethod
    def from_config(
        cls,
        config: PeerLinkConfig,
        identity: IdentityProvider,
        **kwargs: Any,
    ) -> SessionOrchestrator:
        """Create an orchestrator and its collaborators from a config.

        Args:
            config: Session configuration.
            identity: Provider of the local identity.
            kwargs: Extra keyword arguments passed to the constructor.
        """
        rendezvous = RendezvousClient(
            config.relay_address,
            verify_certificate=config.verify_certificate,
        )
        negotiator = TransportNegotiator(
            identity,
            ice_servers=config.ice_servers,
        )
        return cls(
            rendezvous,
            negotiator,
            reconnect=config.reconnect,
            negotiation_timeout=config.negotiation_timeout,
            host_address=config.host_address,
            **kwargs,
        )

    async def __aenter__(self) -> SessionOrchestrator:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        exc_traceback: TracebackType | None,
    ) -> None:
        await self.close()

    def __await__(self) -> Generator[Any, None, SessionOrchestrator]:
        return self.__aenter__().__await__()

    @property
    def _log_prefix(self) -> str:
        address = self._rendezvous.address
        address = 'unregistered' if address is None else address
        return f'{self.__class__.__name__}[{address}]'

    @property
    def address(self) -> str | None:
        """Address claimed on the relay server."""
        return self._rendezvous.address

    @property
    def host_address(self) -> str | None:
        """Address last used for hosting."""
        return self._host_address

    @property
    def role(self) -> Role | None:
        """Role of the local process or `None` before hosting or joining."""
        return self._role

    @property
    def sessions(self) -> SessionTable:
        """Sessions with known peers."""
        return self._sessions

    def get_session(self, address: str) -> PeerSession:
        """Get the session with a peer.

        Raises:
            NoSuchSessionError: If there is no session with the address.
        """
        return self._sessions.get(address)

    async def start_hosting(self, address: str | None = None) -> str:
        """Claim an address and accept joiners.

        Args:
            address: Address to claim. Defaults to the address used the last
                time this process hosted, or a relay-assigned address.

        Returns:
            The claimed address.

        Raises:
            AddressTakenError: If the address is claimed by another client.
        """
        await self._set_role(Role.RESPONDER)
        requested = self._host_address if address is None else address
        local = await self._rendezvous.listen(requested)
        self._host_address = local
        logger.info(f'{self._log_prefix}: hosting')
        return local

    async def start_joining(
        self,
        host_address: str,
        *,
        manual: bool = True,
    ) -> PeerSession:
        """Link with a host and answer its offer.

        Args:
            host_address: Address the host claimed.
            manual: The join was explicitly requested by a user. Clears any
                block on the host and restarts the reconnection budget.

        Returns:
            The session with the host.
        """
        await self._set_role(Role.INITIATOR)
        if not self._rendezvous.listening:
            await self._rendezvous.listen()

        session = self._sessions.get_or_create(host_address, Role.INITIATOR)
        if manual:
            session.blocked = False
            session.intentional = False
            session.reconnect_attempts = 0
            await cancel_and_wait(session.retry_task)
            session.retry_task = None
        await self._join(session, manual=manual)
        return session

    async def disconnect(self, address: str) -> None:
        """Intentionally end the session with a peer.

        The peer is blocked, told about the disconnect over the direct
        channel if it is still open, and the transport is closed. No-op if
        there is no session with the address.
        """
        session = self._sessions.find(address)
        if session is None or session.intentional:
            return

        logger.info(f'{self._log_prefix}: disconnecting from {address}')
        session.intentional = True
        session.blocked = True
        self._rendezvous.block(address)
        for task in session.tasks():
            await cancel_and_wait(task)

        # The notice must go out before the channel is closed
        if session.transport_state is TransportState.OPEN:
            await self._negotiator.send(DisconnectIntent(), address)
        await self._negotiator.disconnect(address)
        await self._rendezvous.close_link(address)
        self._sessions.remove(address)

    async def send_payload(
        self,
        data: bytes,
        address: str | None = None,
    ) -> None:
        """Send a payload over the direct channel.

        Payloads for peers without an open channel are dropped.

        Args:
            data: Payload bytes.
            address: Address of the peer or `None` to broadcast to all peers.
        """
        await self._negotiator.send(data, address)

    async def recv(self) -> tuple[str, bytes]:
        """Receive the next payload from any peer.

        Only used when no `on_payload` handler is configured.

        Returns:
            Tuple containing the address of the peer that sent the payload \
            and the payload itself.
        """
        return await self._payloads.get()

    async def close(self) -> None:
        """Close every session and release the relay address.

        Sessions are not blocked and no reconnection is attempted.
        """
        self._closing = True
        for session in self._sessions:
            for task in session.tasks():
                await cancel_and_wait(task)
        await self._negotiator.close()
        await self._rendezvous.close()
        for session in self._sessions:
            self._sessions.remove(session.peer_address)
        logger.info(f'{self._log_prefix}: closed')

    async def _set_role(self, role: Role) -> None:
        if self._role is role:
            return
        if self._role is not None:
            logger.info(
                f'{self._log_prefix}: switching role from {self._role.name} '
                f'to {role.name}',
            )
            for session in self._sessions:
                session.intentional = True
                for task in session.tasks():
                    await cancel_and_wait(task)
                await self._negotiator.disconnect(session.peer_address)
                self._sessions.remove(session.peer_address)
        self._rendezvous.clear_all_blocks()
        self._role = role

    def _is_blocked(self, session: PeerSession) -> bool:
        if self._rendezvous.is_blocked(session.peer_address):
            session.blocked = True
        return session.blocked

    def _notify(self, address: str, state: TransportState) -> None:
        if self._status_sink is not None:
            self._status_sink.on_session_state_changed(address, state)

    async def _join(self, session: PeerSession, *, manual: bool) -> None:
        address = session.peer_address
        if not manual and self._is_blocked(session):
            logger.info(
                f'{self._log_prefix}: not joining blocked host {address}',
            )
            return
        if session.transport_state.connected:
            logger.info(
                f'{self._log_prefix}: session with {address} already open',
            )
            return

        await self._begin_attempt(session)
        await self._rendezvous.connect_to(address, manual=manual)
        self._start_watchdog(session)

    async def _begin_attempt(self, session: PeerSession) -> None:
        """Discard the current attempt with a peer and reset it to `NEW`."""
        address = session.peer_address
        await cancel_and_wait(session.negotiation_task)
        await cancel_and_wait(session.watchdog_task)
        session.negotiation_task = None
        session.watchdog_task = None

        if session.transport_state not in (
            TransportState.NEW,
            TransportState.CLOSED,
            TransportState.FAILED,
        ):
            self._superseding.add(address)
            try:
                await self._negotiator.disconnect(address)
            finally:
                self._superseding.discard(address)
        if session.transport_state not in (
            TransportState.NEW,
            TransportState.CLOSED,
            TransportState.FAILED,
        ):
            # No transport was left to report the end of this attempt
            terminal = (
                TransportState.CLOSED
                if session.transport_state.connected
                else TransportState.FAILED
            )
            self._sessions.transition(address, terminal)
            self._notify(address, terminal)

        if self._sessions.reset_attempt(address):
            self._notify(address, TransportState.NEW)

    def _start_watchdog(self, session: PeerSession) -> None:
        session.watchdog_task = spawn_guarded_background_task(
            self._watchdog,
            session.peer_address,
            name=f'negotiation-watchdog-{session.peer_address}',
        )

    async def _watchdog(self, address: str) -> None:
        await asyncio.sleep(self._negotiation_timeout)
        session = self._sessions.find(address)
        if session is None or session.transport_state.connected:
            return
        session.watchdog_task = None
        logger.warning(
            f'{self._log_prefix}: session with {address} did not open '
            f'within {self._negotiation_timeout} seconds',
        )
        if session.transport_state is TransportState.NEGOTIATING:
            # Reports FAILED which is handled as a lost session
            await self._negotiator.disconnect(address)
        else:
            await self._handle_loss(session)

    async def _handle_loss(self, session: PeerSession) -> None:
        """Apply the reconnection policy to a session that was lost."""
        address = session.peer_address
        await cancel_and_wait(session.watchdog_task)
        session.watchdog_task = None

        if self._closing or session.intentional:
            return
        if self._is_blocked(session):
            logger.info(
                f'{self._log_prefix}: not reconnecting to blocked peer '
                f'{address}',
            )
            return
        if session.role is Role.RESPONDER:
            logger.info(
                f'{self._log_prefix}: lost session with {address}, waiting '
                'for peer to reconnect',
            )
            return
        if session.retry_pending:
            return

        if session.reconnect_attempts >= self._reconnect.max_attempts:
            error = ReconnectExhaustedError(
                address,
                session.reconnect_attempts,
            )
            logger.error(f'{self._log_prefix}: {error}')
            self._sessions.remove(address)
            await cancel_and_wait(session.negotiation_task)
            await self._negotiator.disconnect(address)
            await self._rendezvous.close_link(address)
            if self._status_sink is not None:
                self._status_sink.on_session_failed(address, error)
            return

        session.reconnect_attempts += 1
        delay = self._reconnect.base_delay * session.reconnect_attempts
        logger.info(
            f'{self._log_prefix}: scheduling reconnect attempt '
            f'{session.reconnect_attempts} to {address} in {delay} seconds',
        )
        session.retry_task = spawn_guarded_background_task(
            self._retry,
            address,
            delay,
            name=f'reconnect-{address}-{session.reconnect_attempts}',
        )

    async def _retry(self, address: str, delay: float) -> None:
        await asyncio.sleep(delay)
        session = self._sessions.find(address)
        if session is None or session.intentional:
            return
        session.retry_task = None

        logger.info(
            f'{self._log_prefix}: reconnect attempt '
            f'{session.reconnect_attempts} to {address}',
        )
        try:
            if not self._rendezvous.listening:
                await self._rendezvous.listen()
            await self._join(session, manual=False)
        except _RELAY_ERRORS as e:
            logger.warning(
                f'{self._log_prefix}: reconnect attempt to {address} '
                f'failed: {e!r}',
            )
            await self._handle_loss(session)

    async def _on_relay_connected(self, address: str) -> None:
        if self._role is not Role.RESPONDER:
            session = self._sessions.find(address)
            if session is None:
                logger.warning(
                    f'{self._log_prefix}: closing unexpected link from '
                    f'{address}',
                )
                await self._rendezvous.close_link(address)
            else:
                logger.info(
                    f'{self._log_prefix}: linked with host {address}, '
                    'waiting for offer',
                )
            return

        session = self._sessions.get_or_create(address, Role.RESPONDER)
        # The relay client only accepts links from unblocked addresses
        session.blocked = False
        session.intentional = False
        await self._begin_attempt(session)
        session.negotiation_task = spawn_guarded_background_task(
            self._send_offer,
            address,
            name=f'offer-{address}',
        )
        self._start_watchdog(session)

    async def _on_relay_message(
        self,
        data: dict[str, Any],
        address: str,
    ) -> None:
        try:
            message = NegotiationMessage.from_dict(data)
        except MessageDecodeError as e:
            logger.error(
                f'{self._log_prefix}: error decoding negotiation message '
                f'from {address}: {e} ...skipping message',
            )
            return

        session = self._sessions.find(address)
        if session is None or self._is_blocked(session):
            logger.warning(
                f'{self._log_prefix}: ignoring {message.kind} from {address} '
                'without an active session',
            )
            return
        if message.body == session.last_remote_description:
            logger.debug(
                f'{self._log_prefix}: ignoring duplicate {message.kind} '
                f'from {address}',
            )
            return

        if message.kind == 'offer':
            if session.role is not Role.INITIATOR:
                logger.warning(
                    f'{self._log_prefix}: ignoring offer from joiner '
                    f'{address}',
                )
                return
            logger.info(f'{self._log_prefix}: received offer from {address}')
            await self._begin_attempt(session)
            self._start_watchdog(session)
            session.last_remote_description = message.body
            session.negotiation_task = spawn_guarded_background_task(
                self._send_answer,
                address,
                message.body,
                name=f'answer-{address}',
            )
        else:
            if session.role is not Role.RESPONDER:
                logger.warning(
                    f'{self._log_prefix}: ignoring answer from host '
                    f'{address}',
                )
                return
            logger.info(f'{self._log_prefix}: received answer from {address}')
            session.last_remote_description = message.body
            try:
                await self._negotiator.accept_answer(address, message.body)
            except (InvalidNegotiationStateError, NoSuchSessionError) as e:
                logger.error(
                    f'{self._log_prefix}: rejected answer from {address}: {e}',
                )

    async def _on_relay_closed(self, address: str) -> None:
        session = self._sessions.find(address)
        if session is None or session.intentional or self._closing:
            return
        if session.transport_state.connected:
            logger.info(
                f'{self._log_prefix}: relay link with {address} closed, '
                'direct channel is unaffected',
            )
            return

        logger.info(
            f'{self._log_prefix}: relay link with {address} closed during '
            f'{session.transport_state.name} session',
        )
        await cancel_and_wait(session.negotiation_task)
        session.negotiation_task = None
        if session.transport_state is TransportState.NEGOTIATING:
            # Reports FAILED which is handled as a lost session
            await self._negotiator.disconnect(address)
        else:
            await self._handle_loss(session)

    async def _send_offer(self, address: str) -> None:
        try:
            description = await self._negotiator.create_offer(address)
        except InvalidNegotiationStateError as e:
            logger.warning(
                f'{self._log_prefix}: offer to {address} abandoned: {e}',
            )
            return
        logger.info(f'{self._log_prefix}: sending offer to {address}')
        await self._rendezvous.send(
            NegotiationMessage(kind='offer', body=description).to_dict(),
            address,
        )

    async def _send_answer(self, address: str, offer: str) -> None:
        try:
            description = await self._negotiator.create_answer(address, offer)
        except InvalidNegotiationStateError as e:
            logger.error(
                f'{self._log_prefix}: answer to {address} abandoned: {e}',
            )
            return
        logger.info(f'{self._log_prefix}: sending answer to {address}')
        await self._rendezvous.send(
            NegotiationMessage(kind='answer', body=description).to_dict(),
            address,
        )

    async def _on_transport_state(
        self,
        address: str,
        state: TransportState,
    ) -> None:
        session = self._sessions.find(address)
        if session is None:
            return
        try:
            changed = self._sessions.transition(address, state)
        except InvalidNegotiationStateError as e:
            logger.warning(f'{self._log_prefix}: {e}')
            return
        if not changed:
            return

        logger.info(
            f'{self._log_prefix}: session with {address} is {state.name}',
        )
        self._notify(address, state)

        if state is TransportState.OPEN:
            session.reconnect_attempts = 0
            await cancel_and_wait(session.retry_task)
            await cancel_and_wait(session.watchdog_task)
            session.retry_task = None
            session.watchdog_task = None
        elif state.terminal and address not in self._superseding:
            await self._handle_loss(session)

    async def _on_transport_message(
        self,
        address: str,
        message: DirectMessage,
    ) -> None:
        session = self._sessions.find(address)
        if session is None:
            return

        if isinstance(message, bytes):
            if self._on_payload is not None:
                await self._on_payload(message, address)
            else:
                await self._payloads.put((address, message))
        elif isinstance(message, IdentityMessage):
            session.remote_identity = Identity(
                stable_id=message.stable_id,
                display_name=message.display_name,
            )
            logger.info(
                f'{self._log_prefix}: peer {address} identified as '
                f'{message.display_name} ({message.stable_id})',
            )
            if self._directory is not None:
                self._directory.record_peer(
                    message.stable_id,
                    message.display_name,
                    time.time(),
                )
        elif isinstance(message, DisconnectIntent):
            logger.info(
                f'{self._log_prefix}: peer {address} is disconnecting '
                'intentionally',
            )
            session.blocked = True
            self._rendezvous.block(address)
            await cancel_and_wait(session.retry_task)
            session.retry_task = None
