"""Exception types raised by the mesh session."""
from __future__ import annotations


class MeshError(Exception):
    """Base exception type for mesh session errors."""

    pass


class MediaAcquisitionError(MeshError):
    """Local media could not be captured."""

    pass


class NegotiationError(MeshError):
    """Error applying or generating a session description or candidate."""

    pass


class InvalidTransitionError(NegotiationError):
    """Peer controller was asked to make an illegal state transition."""

    pass


class ChannelClosedError(MeshError):
    """Connection to the relay server was lost or could not be opened."""

    pass
