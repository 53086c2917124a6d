"""Interfaces of the collaborators used by a mesh session."""
from __future__ import annotations

from typing import Any
from typing import Callable
from typing import Protocol
from typing import runtime_checkable
from typing import TypeAlias

from meshrtc.events import TransportEvent
from meshrtc.media import MediaBundle
from meshrtc.media import MediaConstraints
from meshrtc.media import RemoteStream


@runtime_checkable
class PeerTransport(Protocol):
    """Underlying connection to one remote peer.

    Session descriptions and candidates are opaque dictionaries in the
    browser wire format. Implementations should raise
    [`NegotiationError`][meshrtc.exceptions.NegotiationError] when a
    description or candidate cannot be generated or applied.
    """

    def add_track(self, track: Any) -> None:
        """Send a local media track to the peer."""
        ...

    async def create_offer(self) -> dict[str, Any]:
        """Generate an offer session description."""
        ...

    async def create_answer(self) -> dict[str, Any]:
        """Generate an answer to the current remote offer."""
        ...

    async def set_local_description(
        self,
        description: dict[str, Any],
    ) -> dict[str, Any]:
        """Apply a locally generated session description.

        Returns:
            The description as applied, which can differ from the input
            (e.g., by listing the gathered candidates).
        """
        ...

    async def set_remote_description(
        self,
        description: dict[str, Any],
    ) -> None:
        """Apply a session description received from the peer."""
        ...

    async def add_ice_candidate(self, candidate: dict[str, Any]) -> None:
        """Apply a connectivity candidate received from the peer."""
        ...

    async def next_event(self) -> TransportEvent:
        """Wait for the next candidate, track, or state change event."""
        ...

    async def close(self) -> None:
        """Close the connection."""
        ...


TransportFactory: TypeAlias = Callable[[str], PeerTransport]
"""Callable returning a new transport for the given remote identity."""


@runtime_checkable
class RelayChannel(Protocol):
    """Ordered, full-duplex text channel to the relay server.

    `recv()` and `send()` raise
    [`ChannelClosedError`][meshrtc.exceptions.ChannelClosedError] once the
    connection is lost.
    """

    async def connect(self) -> None:
        """Open the connection."""
        ...

    async def send(self, message: str) -> None:
        """Write one message."""
        ...

    async def recv(self) -> str:
        """Read the next message."""
        ...

    async def close(self) -> None:
        """Close the connection."""
        ...


@runtime_checkable
class MediaSource(Protocol):
    """Local media capture."""

    async def acquire(self, constraints: MediaConstraints) -> MediaBundle:
        """Capture local media.

        Raises:
            MediaAcquisitionError: If no media could be captured.
        """
        ...


@runtime_checkable
class RemoteStreamRenderer(Protocol):
    """Consumer of the media streams received from peers."""

    async def on_remote_stream_ready(
        self,
        identity: str,
        stream: RemoteStream,
    ) -> None:
        """Called once when media from `identity` starts flowing."""
        ...

    async def on_remote_stream_ended(self, identity: str) -> None:
        """Called when a peer whose stream was ready is closed."""
        ...
