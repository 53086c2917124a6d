"""Scriptable peer transport."""
from __future__ import annotations

import asyncio
from typing import Any
from typing import Sequence

from meshrtc.events import CandidateDiscovered
from meshrtc.events import StateChanged
from meshrtc.events import TrackReceived
from meshrtc.events import TransportEvent
from meshrtc.exceptions import NegotiationError
from testing.media import FakeTrack

DEFAULT_CANDIDATES = (
    'candidate:1 1 udp 2130706431 10.0.0.1 50000 typ host',
)


class FakeTransport:
    """Peer transport which records calls instead of negotiating.

    Args:
        identity: Remote identity the transport was created for.
        auto_connect: Report the `connected` state once both session
            descriptions are set.
        candidates: Local candidates discovered when the local description
            is set.
        fail_on: Names of methods which raise `NegotiationError`.
        remote_tracks: Kinds of the tracks received when the remote
            description is set.
        blocked: Make `create_offer()` wait until `proceed` is set.
    """

    def __init__(
        self,
        identity: str,
        *,
        auto_connect: bool = True,
        candidates: Sequence[str] = DEFAULT_CANDIDATES,
        fail_on: Sequence[str] = (),
        remote_tracks: Sequence[str] = ('audio', 'video'),
        blocked: bool = False,
    ) -> None:
        self.identity = identity
        self.auto_connect = auto_connect
        self.candidates = tuple(candidates)
        self.fail_on = set(fail_on)
        self.remote_tracks = tuple(remote_tracks)

        self.calls: list[str] = []
        self.tracks: list[Any] = []
        self.local_description: dict[str, Any] | None = None
        self.remote_description: dict[str, Any] | None = None
        self.applied_candidates: list[dict[str, Any]] = []
        self.closed = False
        self.proceed = asyncio.Event()
        if not blocked:
            self.proceed.set()

        self._connected = False
        self._events: asyncio.Queue[TransportEvent] = asyncio.Queue()

    def _call(self, name: str) -> None:
        self.calls.append(name)
        if name in self.fail_on:
            raise NegotiationError(f'{name} failed')

    def push(self, event: TransportEvent) -> None:
        """Queue a transport event."""
        self._events.put_nowait(event)

    def _maybe_connect(self) -> None:
        if (
            self.auto_connect
            and not self._connected
            and self.local_description is not None
            and self.remote_description is not None
        ):
            self._connected = True
            self.push(StateChanged('connecting'))
            self.push(StateChanged('connected'))

    def add_track(self, track: Any) -> None:
        self.tracks.append(track)

    async def create_offer(self) -> dict[str, Any]:
        await self.proceed.wait()
        self._call('create_offer')
        return {'type': 'offer', 'sdp': f'offer-to-{self.identity}'}

    async def create_answer(self) -> dict[str, Any]:
        self._call('create_answer')
        if self.remote_description is None:
            raise NegotiationError('No remote offer to answer.')
        return {'type': 'answer', 'sdp': f'answer-to-{self.identity}'}

    async def set_local_description(
        self,
        description: dict[str, Any],
    ) -> dict[str, Any]:
        self._call('set_local_description')
        self.local_description = description
        for index, candidate in enumerate(self.candidates):
            self.push(
                CandidateDiscovered(
                    {
                        'candidate': candidate,
                        'sdpMid': str(index),
                        'sdpMLineIndex': index,
                    },
                ),
            )
        self._maybe_connect()
        return description

    async def set_remote_description(
        self,
        description: dict[str, Any],
    ) -> None:
        self._call('set_remote_description')
        self.remote_description = description
        for kind in self.remote_tracks:
            self.push(TrackReceived(FakeTrack(kind)))
        self._maybe_connect()

    async def add_ice_candidate(self, candidate: dict[str, Any]) -> None:
        self._call('add_ice_candidate')
        if self.remote_description is None:
            raise NegotiationError('Candidate applied without a remote offer.')
        self.applied_candidates.append(candidate)

    async def next_event(self) -> TransportEvent:
        return await self._events.get()

    async def close(self) -> None:
        self.calls.append('close')
        self.closed = True


class FakeTransportFactory:
    """Transport factory keeping every transport it creates.

    Keyword arguments are passed to each
    [`FakeTransport`][testing.transport.FakeTransport]. Per identity
    overrides can be set in `overrides`.
    """

    def __init__(self, **kwargs: Any) -> None:
        self.kwargs = kwargs
        self.overrides: dict[str, dict[str, Any]] = {}
        self.transports: dict[str, list[FakeTransport]] = {}

    def __call__(self, identity: str) -> FakeTransport:
        kwargs = {**self.kwargs, **self.overrides.get(identity, {})}
        transport = FakeTransport(identity, **kwargs)
        self.transports.setdefault(identity, []).append(transport)
        return transport

    def latest(self, identity: str) -> FakeTransport:
        """Most recent transport created for `identity`."""
        return self.transports[identity][-1]
