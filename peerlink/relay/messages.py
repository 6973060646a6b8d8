"""JSON messages exchanged between relay clients and the relay server."""
from __future__ import annotations

import dataclasses
import enum
import json
import sys
from typing import Any


class RelayMessageType(enum.Enum):
    """Wire name of each message, stored under `message_type`."""

    relay_response = 'RelayResponse'
    """Reply to a registration or a failed request."""
    relay_registration = 'RelayRegistrationRequest'
    """Claim of an address."""
    link_request = 'LinkRequest'
    """Request to open a logical link with another address."""
    link_accepted = 'LinkAccepted'
    """Target of a link request accepted the link."""
    link_closed = 'LinkClosed'
    """Link was rejected or closed."""
    relay_data = 'RelayData'
    """Opaque data forwarded between linked addresses."""


@dataclasses.dataclass
class RelayMessage:
    """Common base of every relay message."""

    pass


@dataclasses.dataclass
class RelayRegistrationRequest(RelayMessage):
    """Claim an address on the relay server.

    Attributes:
        address: Address to claim. If `None`, the relay server assigns one.
    """

    address: str | None = None
    message_type: str = RelayMessageType.relay_registration.name


@dataclasses.dataclass
class RelayResponse(RelayMessage):
    """Relay reply to a registration or to a request that failed.

    Attributes:
        success: The request was carried out.
        address: Address registered to the client.
        message: Human readable detail, usually the error.
        error: `message` describes an error.
        error_type: Class name of the relay-side exception.
    """

    success: bool = True
    address: str | None = None
    message: str | None = None
    error: bool = False
    error_type: str | None = None
    message_type: str = RelayMessageType.relay_response.name


@dataclasses.dataclass
class LinkRequest(RelayMessage):
    """Request a logical link between two addresses.

    Attributes:
        source: Address of the requesting client.
        target: Address of the client to link with.
        manual: The request was made explicitly by a user, so any block the
            target holds against the source should be cleared.
    """

    source: str
    target: str
    manual: bool = False
    message_type: str = RelayMessageType.link_request.name


@dataclasses.dataclass
class LinkAccepted(RelayMessage):
    """Target of a link request accepted the link.

    Attributes:
        source: Address of the accepting client.
        target: Address of the client that requested the link.
    """

    source: str
    target: str
    message_type: str = RelayMessageType.link_accepted.name


@dataclasses.dataclass
class LinkClosed(RelayMessage):
    """A link was rejected or closed.

    Attributes:
        source: Address of the side that closed the link.
        target: Address of the side being notified.
        reason: Optional human readable reason.
    """

    source: str
    target: str
    reason: str | None = None
    message_type: str = RelayMessageType.link_closed.name


@dataclasses.dataclass
class RelayData(RelayMessage):
    """Opaque data forwarded between two linked addresses.

    Attributes:
        source: Address of sender.
        target: Address of receiver.
        data: JSON object that the relay does not inspect.
    """

    source: str
    target: str
    data: dict[str, Any]
    message_type: str = RelayMessageType.relay_data.name


class RelayMessageError(Exception):
    """A relay message could not be processed."""

    pass


class RelayMessageDecodeError(RelayMessageError):
    """Text received from the websocket is not a relay message."""

    pass


class RelayMessageEncodeError(RelayMessageError):
    """A relay message could not be serialized."""

    pass


def decode_relay_message(message: str) -> RelayMessage:
    """Parse the JSON text of a relay message.

    The `message_type` key selects the message class and the remaining
    keys become its fields.

    Raises:
        RelayMessageDecodeError: If the text is not valid JSON, names no
            known message type, has fields the type does not accept, or
            carries `RelayData` whose `data` is not a JSON object.
    """
    try:
        data = json.loads(message)
    except json.JSONDecodeError as e:
        raise RelayMessageDecodeError(f'Invalid JSON: {e}') from e

    if not isinstance(data, dict):
        raise RelayMessageDecodeError(
            f'Expected a JSON object but got {type(data).__name__}.',
        )

    if 'message_type' not in data:
        raise RelayMessageDecodeError('Missing the message_type key.')
    type_name = data.pop('message_type')

    try:
        cls = getattr(
            sys.modules[__name__],
            RelayMessageType[type_name].value,
        )
    except (AttributeError, KeyError, TypeError) as e:
        raise RelayMessageDecodeError(
            f'Got unknown message type {type_name!r}.',
        ) from e

    try:
        decoded = cls(**data)
    except TypeError as e:
        raise RelayMessageDecodeError(
            f'Fields do not match {cls.__name__}: {e}',
        ) from e

    if isinstance(decoded, RelayData) and not isinstance(decoded.data, dict):
        raise RelayMessageDecodeError(
            'RelayData.data must be a JSON object, got '
            f'{type(decoded.data).__name__}.',
        )
    return decoded


def encode_relay_message(message: RelayMessage) -> str:
    """Serialize a relay message to JSON text.

    Raises:
        RelayMessageEncodeError: If `message` is not a relay message or a
            field is not JSON serializable.
    """
    if not isinstance(message, RelayMessage):
        raise RelayMessageEncodeError(
            f'{type(message).__name__} is not an instance of '
            f'{RelayMessage.__name__}.',
        )

    try:
        return json.dumps(dataclasses.asdict(message))
    except TypeError as e:
        raise RelayMessageEncodeError(
            f'Cannot serialize {type(message).__name__}: {e}',
        ) from e
