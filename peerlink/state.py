"""Session roles and the per-peer transport state machine."""
from __future__ import annotations

import enum


class Role(enum.Enum):
    """Role of the local process in a peer session.

    The role is fixed for the lifetime of a session and decides who
    opens the relay link and who reconnects after a failure.
    """

    INITIATOR = 'initiator'
    """Joining side. Opens the relay link to the host, answers the host's
    offer, and is responsible for reconnecting."""
    RESPONDER = 'responder'
    """Hosting side. Accepts relay links, sends the offer, and waits
    passively for joiners to reconnect."""


class TransportState(enum.Enum):
    """State of the direct transport for one negotiation attempt."""

    NEW = 'new'
    """No local description created yet."""
    NEGOTIATING = 'negotiating'
    """Local description created or remote description applied."""
    OPEN = 'open'
    """Direct channel is readable and writable."""
    DEGRADED = 'degraded'
    """Link reported an interruption but has not been closed."""
    CLOSED = 'closed'
    """Channel closed. Terminal for this attempt."""
    FAILED = 'failed'
    """Negotiation failed. Terminal for this attempt."""

    @property
    def terminal(self) -> bool:
        """No further transitions are possible within this attempt."""
        return self in (TransportState.CLOSED, TransportState.FAILED)

    @property
    def connected(self) -> bool:
        """The direct channel has been established for this attempt."""
        return self in (TransportState.OPEN, TransportState.DEGRADED)

    def can_transition_to(self, other: TransportState) -> bool:
        """Check if `self -> other` is an edge of the state machine."""
        return other in _TRANSITIONS[self]


_TRANSITIONS: dict[TransportState, frozenset[TransportState]] = {
    TransportState.NEW: frozenset({TransportState.NEGOTIATING}),
    TransportState.NEGOTIATING: frozenset(
        {TransportState.OPEN, TransportState.FAILED},
    ),
    TransportState.OPEN: frozenset(
        {TransportState.DEGRADED, TransportState.CLOSED},
    ),
    TransportState.DEGRADED: frozenset(
        {TransportState.OPEN, TransportState.CLOSED},
    ),
    TransportState.CLOSED: frozenset(),
    TransportState.FAILED: frozenset(),
}
