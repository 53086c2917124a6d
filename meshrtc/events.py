"""Events produced by peer transports and peer controllers.

Transport events are read by a
[`PeerController`][meshrtc.peer.PeerController] from its
[`PeerTransport`][meshrtc.protocols.PeerTransport], and peer events are
read by the [`SessionOrchestrator`][meshrtc.session.SessionOrchestrator]
from each controller. Both streams are unordered with respect to the
offer/answer exchange and may yield any number of events.
"""
from __future__ import annotations

import dataclasses
from typing import Any
from typing import Union

from meshrtc.media import RemoteStream
from meshrtc.messages import SignalingMessage


@dataclasses.dataclass(frozen=True)
class CandidateDiscovered:
    """The transport discovered a new local connectivity candidate."""

    candidate: dict[str, Any]


@dataclasses.dataclass(frozen=True)
class TrackReceived:
    """The remote peer added a media track."""

    track: Any


@dataclasses.dataclass(frozen=True)
class StateChanged:
    """The underlying connection changed state.

    Attributes:
        state: One of `'new'`, `'connecting'`, `'connected'`, `'failed'`,
            or `'closed'`.
    """

    state: str


TransportEvent = Union[CandidateDiscovered, TrackReceived, StateChanged]


@dataclasses.dataclass(frozen=True)
class OutboundSignal:
    """The controller needs a message written to the relay server."""

    identity: str
    message: SignalingMessage


@dataclasses.dataclass(frozen=True)
class RemoteStreamReady:
    """Negotiated media is flowing from the remote peer."""

    identity: str
    stream: RemoteStream


@dataclasses.dataclass(frozen=True)
class PeerClosed:
    """The controller closed. No further events follow.

    Attributes:
        reason: Description of the failure if the controller closed
            because of an error.
    """

    identity: str
    media_ready: bool
    reason: str | None = None


PeerEvent = Union[OutboundSignal, RemoteStreamReady, PeerClosed]
