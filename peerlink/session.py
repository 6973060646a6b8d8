"""Per-peer session records and the table that owns them."""
from __future__ import annotations

import asyncio
import dataclasses
import logging
from typing import Any
from typing import Iterator

from peerlink.exceptions import InvalidNegotiationStateError
from peerlink.exceptions import NoSuchSessionError
from peerlink.identity import Identity
from peerlink.state import Role
from peerlink.state import TransportState

logger = logging.getLogger(__name__)


@dataclasses.dataclass(eq=False)
class PeerSession:
    """Session with one remote participant.

    Attributes:
        peer_address: Relay address of the peer.
        role: Role of the local process in this session.
        transport_state: State of the current negotiation attempt.
        remote_identity: Identity the peer sent once its channel opened.
        blocked: The session was intentionally torn down. Suppresses
            automatic reconnection and inbound links from the peer.
        reconnect_attempts: Consecutive automatic retries since the last
            successful open.
        intentional: The local side is tearing the session down.
        last_remote_description: Body of the last offer or answer applied
            in the current attempt, used to ignore duplicate deliveries.
    """

    peer_address: str
    role: Role
    transport_state: TransportState = TransportState.NEW
    remote_identity: Identity | None = None
    blocked: bool = False
    reconnect_attempts: int = 0
    intentional: bool = False
    last_remote_description: str | None = dataclasses.field(
        default=None,
        repr=False,
    )
    negotiation_task: asyncio.Task[Any] | None = dataclasses.field(
        default=None,
        repr=False,
    )
    retry_task: asyncio.Task[Any] | None = dataclasses.field(
        default=None,
        repr=False,
    )
    watchdog_task: asyncio.Task[Any] | None = dataclasses.field(
        default=None,
        repr=False,
    )

    @property
    def retry_pending(self) -> bool:
        """An automatic retry is scheduled and has not started yet."""
        return self.retry_task is not None and not self.retry_task.done()

    def tasks(self) -> list[asyncio.Task[Any]]:
        """Background tasks owned by this session."""
        return [
            task
            for task in (
                self.negotiation_task,
                self.retry_task,
                self.watchdog_task,
            )
            if task is not None
        ]


class SessionTable:
    """Table of peer sessions keyed by peer address.

    Holds at most one session per address and only lets a session's
    transport state move along the edges of the state machine in
    [`TransportState`][peerlink.state.TransportState]. Starting a new
    attempt (resetting to `NEW`) is only possible from `NEW` or a terminal
    state.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, PeerSession] = {}

    def __contains__(self, address: object) -> bool:
        return address in self._sessions

    def __iter__(self) -> Iterator[PeerSession]:
        return iter(list(self._sessions.values()))

    def __len__(self) -> int:
        return len(self._sessions)

    def create(self, address: str, role: Role) -> PeerSession:
        """Create a session.

        Raises:
            ValueError: If a session with the address already exists.
        """
        if address in self._sessions:
            raise ValueError(f'A session with {address} already exists.')
        session = PeerSession(peer_address=address, role=role)
        self._sessions[address] = session
        logger.debug(f'Created {role.name} session with {address}')
        return session

    def get(self, address: str) -> PeerSession:
        """Get a session.

        Raises:
            NoSuchSessionError: If no session with the address exists.
        """
        try:
            return self._sessions[address]
        except KeyError:
            raise NoSuchSessionError(
                f'No session with {address} exists.',
            ) from None

    def find(self, address: str) -> PeerSession | None:
        """Get a session or `None` if no session with the address exists."""
        return self._sessions.get(address)

    def get_or_create(self, address: str, role: Role) -> PeerSession:
        """Get the session with an address, creating it if needed."""
        session = self._sessions.get(address)
        if session is None:
            session = self.create(address, role)
        return session

    def remove(self, address: str) -> PeerSession | None:
        """Remove a session if it exists."""
        session = self._sessions.pop(address, None)
        if session is not None:
            logger.debug(f'Removed session with {address}')
        return session

    def transition(self, address: str, state: TransportState) -> bool:
        """Move a session's transport to a new state.

        Returns:
            `True` if the state changed, `False` if already in `state`.

        Raises:
            NoSuchSessionError: If no session with the address exists.
            InvalidNegotiationStateError: If the transition is not an edge of
                the state machine.
        """
        session = self.get(address)
        if session.transport_state is state:
            return False
        if not session.transport_state.can_transition_to(state):
            raise InvalidNegotiationStateError(
                f'Session with {address} cannot move from '
                f'{session.transport_state.name} to {state.name}.',
            )
        session.transport_state = state
        return True

    def reset_attempt(self, address: str) -> bool:
        """Start a new negotiation attempt for a session.

        Returns:
            `True` if the state changed to `NEW`.

        Raises:
            NoSuchSessionError: If no session with the address exists.
            InvalidNegotiationStateError: If the current attempt is still
                negotiating or connected.
        """
        session = self.get(address)
        if session.transport_state is TransportState.NEW:
            session.last_remote_description = None
            return False
        if not session.transport_state.terminal:
            raise InvalidNegotiationStateError(
                f'Session with {address} is {session.transport_state.name} '
                'and must be closed before a new attempt.',
            )
        session.transport_state = TransportState.NEW
        session.last_remote_description = None
        return True
