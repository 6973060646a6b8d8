"""Messages exchanged between peers.

Negotiation messages travel through the relay inside
[`RelayData`][peerlink.relay.messages.RelayData]. Control messages travel
over the direct channel as JSON text frames. Application payloads are sent
as binary frames and are never wrapped.
"""
from __future__ import annotations

import dataclasses
import json
from typing import Any
from typing import Literal
from typing import Union


class MessageError(Exception):
    """Base exception type for peer messages."""

    pass


class MessageDecodeError(MessageError):
    """Exception raised when a message cannot be decoded."""

    pass


@dataclasses.dataclass(frozen=True)
class NegotiationMessage:
    """Offer or answer carried by the relay.

    Attributes:
        kind: One of `#!python 'offer'` or `#!python 'answer'`.
        body: Serialized session description. Opaque to everything except
            the [`TransportNegotiator`][peerlink.transport.TransportNegotiator].
    """

    kind: Literal['offer', 'answer']
    body: str

    def to_dict(self) -> dict[str, Any]:
        """Convert to the JSON object sent through the relay."""
        return {'kind': self.kind, 'body': self.body}

    @classmethod
    def from_dict(cls, data: Any) -> NegotiationMessage:
        """Parse the JSON object received from the relay.

        Raises:
            MessageDecodeError: If `data` is not an offer or an answer.
        """
        if not isinstance(data, dict):
            raise MessageDecodeError(
                'Negotiation message must be a JSON object, got '
                f'{type(data).__name__}.',
            )
        kind = data.get('kind')
        body = data.get('body')
        if kind not in ('offer', 'answer'):
            raise MessageDecodeError(f'Unknown negotiation kind: {kind!r}.')
        if not isinstance(body, str):
            raise MessageDecodeError('Negotiation body must be a string.')
        return cls(kind=kind, body=body)


@dataclasses.dataclass(frozen=True)
class IdentityMessage:
    """Identity of the sender, sent once when the direct channel opens."""

    stable_id: str
    display_name: str
    kind: Literal['identity'] = 'identity'


@dataclasses.dataclass(frozen=True)
class DisconnectIntent:
    """Notice that the sender is intentionally tearing the session down."""

    kind: Literal['disconnect-intent'] = 'disconnect-intent'


ControlMessage = Union[IdentityMessage, DisconnectIntent]

_CONTROL_TYPES: dict[str, type[ControlMessage]] = {
    'identity': IdentityMessage,
    'disconnect-intent': DisconnectIntent,
}


def encode_control_message(message: ControlMessage) -> str:
    """Encode a control message as a JSON text frame."""
    return json.dumps(dataclasses.asdict(message))


def decode_control_message(message: str) -> ControlMessage:
    """Decode a JSON text frame into a control message.

    Raises:
        MessageDecodeError: If the frame is not a known control message.
    """
    try:
        data = json.loads(message)
    except json.JSONDecodeError as e:
        raise MessageDecodeError(f'Control frame is not JSON: {e}') from e

    if not isinstance(data, dict):
        raise MessageDecodeError('Control message is not a JSON object.')

    kind = data.get('kind')
    try:
        message_type = _CONTROL_TYPES[kind]
    except (KeyError, TypeError) as e:
        raise MessageDecodeError(f'Unknown control message: {kind!r}.') from e

    try:
        return message_type(**data)
    except TypeError as e:
        raise MessageDecodeError(
            f'Bad fields for {message_type.__name__}: {e}',
        ) from e
