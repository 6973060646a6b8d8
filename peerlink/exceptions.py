"""Exception types for session establishment errors."""
from __future__ import annotations


class PeerLinkError(Exception):
    """Base exception type for peer session errors."""

    pass


class AddressTakenError(PeerLinkError):
    """Relay address is already claimed by another client.

    Retryable by the caller with a different address.
    """

    pass


class InvalidNegotiationStateError(PeerLinkError):
    """Negotiation operation called out of order for the peer's role."""

    pass


class NoSuchSessionError(PeerLinkError):
    """Operation referenced an address with no active session."""

    pass


class ReconnectExhaustedError(PeerLinkError):
    """Automatic reconnection gave up after the maximum attempt count.

    Attributes:
        address: Address of the peer that could not be reached.
        attempts: Number of attempts made.
    """

    def __init__(self, address: str, attempts: int) -> None:
        super().__init__(
            f'Gave up reconnecting to {address} after {attempts} attempts.',
        )
        self.address = address
        self.attempts = attempts
