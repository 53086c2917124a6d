"""Signaling messages exchanged with peers through the relay server.

Messages are JSON objects with a `type` key naming the message kind and a
`from` key with the identity of the sender. Directed messages also carry a
`to` key with the identity of the recipient.

```json
{"type": "connected", "from": "<id>", "broadcast": true}
{"type": "users", "from": "<id>", "users": ["<id>", "..."]}
{"type": "offer", "from": "<id>", "to": "<id>", "offer": {...}}
{"type": "answer", "from": "<id>", "to": "<id>", "answer": {...}}
{"type": "icecandidate", "from": "<id>", "to": "<id>", "candidate": {...}}
```

Session descriptions and candidates are opaque objects which are passed
through unmodified.
"""
from __future__ import annotations

import dataclasses
import enum
import json
from typing import Any
from typing import ClassVar


class MessageType(enum.Enum):
    """Types of signaling messages supported."""

    connected = 'connected'
    """Broadcast by a participant once its relay connection is open."""
    users = 'users'
    """Roster of the other participants currently in the room."""
    offer = 'offer'
    """Session description offer."""
    answer = 'answer'
    """Session description answer."""
    icecandidate = 'icecandidate'
    """Connectivity candidate discovered by the sender."""


@dataclasses.dataclass(frozen=True)
class SignalingMessage:
    """Base message.

    Attributes:
        source: Identity of the sender (wire key `from`).
    """

    message_type: ClassVar[MessageType]

    source: str


@dataclasses.dataclass(frozen=True)
class DirectedMessage(SignalingMessage):
    """Message addressed to a single participant.

    Attributes:
        target: Identity of the recipient (wire key `to`).
    """

    target: str


@dataclasses.dataclass(frozen=True)
class Connected(SignalingMessage):
    """Announce that the sender joined the room.

    Attributes:
        broadcast: Request the relay to forward to every participant.
    """

    message_type: ClassVar[MessageType] = MessageType.connected

    broadcast: bool = True


@dataclasses.dataclass(frozen=True)
class Users(SignalingMessage):
    """Roster of the other participants in the room.

    Attributes:
        users: Identities of every other current participant.
    """

    message_type: ClassVar[MessageType] = MessageType.users

    users: tuple[str, ...] = ()


@dataclasses.dataclass(frozen=True)
class Offer(DirectedMessage):
    """Session description offer."""

    message_type: ClassVar[MessageType] = MessageType.offer

    offer: dict[str, Any] = dataclasses.field(default_factory=dict)


@dataclasses.dataclass(frozen=True)
class Answer(DirectedMessage):
    """Session description answer."""

    message_type: ClassVar[MessageType] = MessageType.answer

    answer: dict[str, Any] = dataclasses.field(default_factory=dict)


@dataclasses.dataclass(frozen=True)
class IceCandidate(DirectedMessage):
    """Connectivity candidate."""

    message_type: ClassVar[MessageType] = MessageType.icecandidate

    candidate: dict[str, Any] = dataclasses.field(default_factory=dict)


class MessageError(Exception):
    """Base exception type for signaling messages."""

    pass


class MessageDecodeError(MessageError):
    """Exception raised when a message cannot be decoded."""

    pass


class MessageEncodeError(MessageError):
    """Exception raised when a message cannot be encoded."""

    pass


_MESSAGE_TYPES: dict[MessageType, type[SignalingMessage]] = {
    MessageType.connected: Connected,
    MessageType.users: Users,
    MessageType.offer: Offer,
    MessageType.answer: Answer,
    MessageType.icecandidate: IceCandidate,
}

# Python field name -> wire key for fields whose names differ.
_WIRE_KEYS = {'source': 'from', 'target': 'to'}

# Key of the opaque payload of each directed message type.
_PAYLOAD_KEYS = {
    MessageType.offer: 'offer',
    MessageType.answer: 'answer',
    MessageType.icecandidate: 'candidate',
}


def _require(data: dict[str, Any], key: str, kind: type[Any]) -> Any:
    try:
        value = data[key]
    except KeyError as e:
        raise MessageDecodeError(
            f'Message does not contain required key "{key}".',
        ) from e
    # bool is a subclass of int but never a valid identity or payload.
    if not isinstance(value, kind) or (
        kind is not bool and isinstance(value, bool)
    ):
        raise MessageDecodeError(
            f'Value for key "{key}" must be of type {kind.__name__}. '
            f'Got {type(value).__name__}.',
        )
    return value


def decode_message(message: str | bytes) -> SignalingMessage:
    """Decode a JSON string into the correct signaling message type.

    Args:
        message: JSON string to decode.

    Returns:
        Parsed message.

    Raises:
        MessageDecodeError: If the message is not valid JSON, does not
            contain a known `type`, or is missing a field required by
            its type.
    """
    try:
        data = json.loads(message)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise MessageDecodeError('Failed to load string as JSON.') from e

    if not isinstance(data, dict):
        raise MessageDecodeError(
            f'Message must be a JSON object. Got {type(data).__name__}.',
        )

    type_name = _require(data, 'type', str)
    try:
        message_type = MessageType(type_name)
    except ValueError as e:
        raise MessageDecodeError(
            f'The message is of an unknown message type: {type_name}.',
        ) from e

    source = _require(data, 'from', str)

    if message_type is MessageType.connected:
        return Connected(
            source=source,
            broadcast=_require(data, 'broadcast', bool),
        )
    elif message_type is MessageType.users:
        users = _require(data, 'users', list)
        if not all(isinstance(user, str) for user in users):
            raise MessageDecodeError('Every listed user must be a string.')
        return Users(source=source, users=tuple(users))

    target = _require(data, 'to', str)
    payload_key = _PAYLOAD_KEYS[message_type]
    payload = _require(data, payload_key, dict)
    message_cls = _MESSAGE_TYPES[message_type]
    return message_cls(  # type: ignore[call-arg]
        source=source,
        target=target,
        **{payload_key: payload},
    )


def encode_message(message: SignalingMessage) -> str:
    """Encode a message as a JSON string.

    Args:
        message: Message to JSON encode.

    Raises:
        MessageEncodeError: If the message is not a signaling message or
            its payload cannot be JSON encoded.
    """
    if type(message) not in _MESSAGE_TYPES.values():
        raise MessageEncodeError(
            'Message is not an instance of a concrete '
            f'{SignalingMessage.__name__} type. '
            f'Got {type(message).__name__}.',
        )

    data: dict[str, Any] = {'type': message.message_type.value}
    for field in dataclasses.fields(message):
        value = getattr(message, field.name)
        if isinstance(value, tuple):
            value = list(value)
        data[_WIRE_KEYS.get(field.name, field.name)] = value

    try:
        return json.dumps(data)
    except (TypeError, ValueError) as e:
        raise MessageEncodeError('Error encoding message.') from e
