"""Peer transport implemented with aiortc."""
from __future__ import annotations

import asyncio
import logging
from typing import Any
from typing import Sequence

from aiortc import RTCConfiguration
from aiortc import RTCIceServer
from aiortc import RTCPeerConnection
from aiortc import RTCSessionDescription
from aiortc.exceptions import InvalidAccessError
from aiortc.exceptions import InvalidStateError
from aiortc.mediastreams import MediaStreamTrack
from aiortc.sdp import candidate_from_sdp

from meshrtc.config import RoomConfig
from meshrtc.events import CandidateDiscovered
from meshrtc.events import StateChanged
from meshrtc.events import TrackReceived
from meshrtc.events import TransportEvent
from meshrtc.exceptions import NegotiationError
from meshrtc.protocols import TransportFactory

logger = logging.getLogger(__name__)

# Errors raised by aiortc when a description or candidate is malformed or
# not valid in the current signaling state. aiortc's SDP parsing asserts on
# some malformed lines.
_AIORTC_ERRORS = (
    InvalidAccessError,
    InvalidStateError,
    AssertionError,
    AttributeError,
    IndexError,
    KeyError,
    TypeError,
    ValueError,
)


def _session_description(
    description: dict[str, Any],
) -> RTCSessionDescription:
    sdp = description.get('sdp')
    type_ = description.get('type')
    if not isinstance(sdp, str) or not isinstance(type_, str):
        raise ValueError(
            'Session description must have string "sdp" and "type" values.',
        )
    return RTCSessionDescription(sdp=sdp, type=type_)


def candidates_from_sdp(sdp: str) -> list[dict[str, Any]]:
    """Extract the connectivity candidates listed in a session description.

    Returns:
        Candidates in browser form (`candidate`, `sdpMid`,
        `sdpMLineIndex`) in the order they appear.
    """
    candidates: list[dict[str, Any]] = []
    section: list[str] = []
    mid: str | None = None
    index = -1

    def _flush() -> None:
        for line in section:
            candidates.append(
                {'candidate': line, 'sdpMid': mid, 'sdpMLineIndex': index},
            )

    for line in sdp.splitlines():
        if line.startswith('m='):
            _flush()
            section = []
            mid = None
            index += 1
        elif index < 0:
            continue
        elif line.startswith('a=mid:'):
            mid = line[len('a=mid:') :]
        elif line.startswith('a=candidate:'):
            section.append(line[len('a=') :])
    _flush()
    return candidates


class AiortcTransport:
    """Peer transport backed by an aiortc `RTCPeerConnection`.

    aiortc gathers every local candidate while setting the local
    description and lists them in it. Those candidates are also published
    as [`CandidateDiscovered`][meshrtc.events.CandidateDiscovered] events
    so peers which expect trickled candidates receive them. Candidates
    which are already part of the remote description are not applied
    twice.

    Args:
        identity: Identity of the remote peer, used in log messages.
        ice_servers: STUN/TURN servers used to gather candidates.
    """

    def __init__(
        self,
        identity: str,
        *,
        ice_servers: Sequence[RTCIceServer] = (),
    ) -> None:
        self.identity = identity
        self._pc = RTCPeerConnection(
            configuration=RTCConfiguration(iceServers=list(ice_servers)),
        )
        self._events: asyncio.Queue[TransportEvent] = asyncio.Queue()
        self._known_candidates: set[str] = set()

        self._pc.on('track', self._on_track)
        self._pc.on('connectionstatechange', self._on_connection_state_change)

    @property
    def connection(self) -> RTCPeerConnection:
        """Underlying aiortc peer connection."""
        return self._pc

    def _on_track(self, track: MediaStreamTrack) -> None:
        self._events.put_nowait(TrackReceived(track))

    def _on_connection_state_change(self) -> None:
        self._events.put_nowait(StateChanged(self._pc.connectionState))

    def add_track(self, track: MediaStreamTrack) -> None:
        self._pc.addTrack(track)

    async def create_offer(self) -> dict[str, Any]:
        try:
            description = await self._pc.createOffer()
        except _AIORTC_ERRORS as e:
            raise NegotiationError(f'Failed to create offer: {e}') from e
        return {'type': description.type, 'sdp': description.sdp}

    async def create_answer(self) -> dict[str, Any]:
        try:
            description = await self._pc.createAnswer()
        except _AIORTC_ERRORS as e:
            raise NegotiationError(f'Failed to create answer: {e}') from e
        return {'type': description.type, 'sdp': description.sdp}

    async def set_local_description(
        self,
        description: dict[str, Any],
    ) -> dict[str, Any]:
        try:
            await self._pc.setLocalDescription(
                _session_description(description),
            )
        except _AIORTC_ERRORS as e:
            raise NegotiationError(
                f'Failed to set local description: {e}',
            ) from e

        local = self._pc.localDescription
        for candidate in candidates_from_sdp(local.sdp):
            self._events.put_nowait(CandidateDiscovered(candidate))
        return {'type': local.type, 'sdp': local.sdp}

    async def set_remote_description(
        self,
        description: dict[str, Any],
    ) -> None:
        try:
            await self._pc.setRemoteDescription(
                _session_description(description),
            )
        except _AIORTC_ERRORS as e:
            raise NegotiationError(
                f'Failed to set remote description: {e}',
            ) from e
        self._known_candidates.update(
            candidate['candidate']
            for candidate in candidates_from_sdp(description['sdp'])
        )

    async def add_ice_candidate(self, candidate: dict[str, Any]) -> None:
        line = candidate.get('candidate')
        if not line:
            # Empty candidate signals the end of candidates.
            return
        if not isinstance(line, str):
            raise NegotiationError(
                f'Candidate must be a string. Got {type(line).__name__}.',
            )
        if line in self._known_candidates:
            logger.debug(f'Skipping known candidate from {self.identity}')
            return
        try:
            obj = candidate_from_sdp(line.split(':', 1)[1])
            obj.sdpMid = candidate.get('sdpMid')
            obj.sdpMLineIndex = candidate.get('sdpMLineIndex')
            await self._pc.addIceCandidate(obj)
        except _AIORTC_ERRORS as e:
            raise NegotiationError(f'Failed to add candidate: {e}') from e
        self._known_candidates.add(line)

    async def next_event(self) -> TransportEvent:
        return await self._events.get()

    async def close(self) -> None:
        await self._pc.close()


def aiortc_transport_factory(config: RoomConfig) -> TransportFactory:
    """Create a factory of aiortc transports for a room.

    If the room has a credential, candidates are gathered through the TURN
    server of the room, authenticating with the local identity as the
    username and the credential as given.
    """
    ice_servers: list[RTCIceServer] = []
    if config.credential is not None:
        ice_servers.append(
            RTCIceServer(
                urls=config.turn_url,
                username=config.identity,
                credential=config.credential,
            ),
        )

    def _factory(identity: str) -> AiortcTransport:
        return AiortcTransport(identity, ice_servers=ice_servers)

    return _factory
