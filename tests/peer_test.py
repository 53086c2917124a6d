from __future__ import annotations

import asyncio
import logging
from typing import Any

import pytest

from meshrtc.events import OutboundSignal
from meshrtc.events import PeerClosed
from meshrtc.events import PeerEvent
from meshrtc.events import RemoteStreamReady
from meshrtc.events import StateChanged
from meshrtc.media import MediaBundle
from meshrtc.messages import Answer
from meshrtc.messages import IceCandidate
from meshrtc.messages import Offer
from meshrtc.peer import log_name
from meshrtc.peer import PeerController
from meshrtc.peer import PeerRole
from meshrtc.peer import PeerState
from testing.media import FakeTrack
from testing.transport import FakeTransport
from testing.utils import wait_for

OFFER = {'type': 'offer', 'sdp': 'remote-offer'}
ANSWER = {'type': 'answer', 'sdp': 'remote-answer'}


def _candidate(index: int) -> dict[str, Any]:
    return {
        'candidate': f'candidate:{index} 1 udp 1 10.0.0.2 {5000 + index} '
        'typ host',
        'sdpMid': '0',
        'sdpMLineIndex': 0,
    }


def _controller(
    role: PeerRole = PeerRole.OFFERER,
    media: MediaBundle | None = None,
    start: bool = True,
    **kwargs: Any,
) -> tuple[PeerController, FakeTransport]:
    transport = FakeTransport('remote', **kwargs)
    controller = PeerController(
        'local',
        'remote',
        transport,
        role=role,
        media=media,
    )
    if start:
        controller.start()
    return controller, transport


async def _next_event(controller: PeerController) -> PeerEvent:
    return await asyncio.wait_for(controller.next_event(), timeout=2)


async def _events_until(
    controller: PeerController,
    kind: type[Any],
) -> list[PeerEvent]:
    events = []
    while True:
        event = await _next_event(controller)
        events.append(event)
        if isinstance(event, kind):
            return events


def test_log_name() -> None:
    assert log_name('1700000000000') == '170000000000'
    assert log_name('abc') == 'abc'


def test_repr() -> None:
    controller, _ = _controller(start=False)
    assert repr(controller) == (
        "PeerController(identity='remote', role=offerer, state=new)"
    )


@pytest.mark.asyncio()
async def test_offerer_negotiation() -> None:
    media = MediaBundle([FakeTrack('audio'), FakeTrack('video')])
    controller, transport = _controller(media=media)
    assert controller.state is PeerState.NEW

    controller.create_offer()
    event = await _next_event(controller)
    assert isinstance(event, OutboundSignal)
    assert event.identity == 'remote'
    assert event.message == Offer(
        source='local',
        target='remote',
        offer=transport.local_description,
    )
    assert controller.state is PeerState.HAVE_LOCAL_OFFER
    assert transport.tracks == list(media)

    event = await _next_event(controller)
    assert isinstance(event, OutboundSignal)
    assert isinstance(event.message, IceCandidate)
    assert event.message.target == 'remote'
    assert event.message.candidate['candidate'] == transport.candidates[0]

    controller.handle_answer(ANSWER)
    event = await _next_event(controller)
    assert isinstance(event, RemoteStreamReady)
    assert event.identity == 'remote'
    assert event.stream is controller.remote_stream
    assert len(event.stream) == 2
    assert controller.state is PeerState.CONNECTED
    assert controller.has_remote_description
    assert transport.remote_description == ANSWER

    await controller.close()
    event = await _next_event(controller)
    assert event == PeerClosed('remote', media_ready=True, reason=None)
    assert transport.closed


@pytest.mark.asyncio()
async def test_answerer_negotiation() -> None:
    media = MediaBundle([FakeTrack('video')])
    controller, transport = _controller(role=PeerRole.ANSWERER, media=media)

    controller.handle_offer(OFFER)
    events = await _events_until(controller, RemoteStreamReady)
    assert len(events) == 3
    assert isinstance(events[0], OutboundSignal)
    assert events[0].message == Answer(
        source='local',
        target='remote',
        answer=transport.local_description,
    )
    assert isinstance(events[1], OutboundSignal)
    assert isinstance(events[1].message, IceCandidate)
    assert controller.state is PeerState.CONNECTED

    assert transport.calls == [
        'set_remote_description',
        'create_answer',
        'set_local_description',
    ]
    assert transport.remote_description == OFFER
    assert transport.tracks == list(media)

    await controller.close()


@pytest.mark.asyncio()
async def test_offer_received_by_offerer_switches_role() -> None:
    controller, _ = _controller(role=PeerRole.OFFERER)
    controller.handle_offer(OFFER)
    await _events_until(controller, RemoteStreamReady)
    assert controller.role is PeerRole.ANSWERER
    await controller.close()


@pytest.mark.asyncio()
async def test_candidates_queued_until_remote_description() -> None:
    controller, transport = _controller()
    candidates = [_candidate(i) for i in range(3)]

    controller.create_offer()
    for candidate in candidates:
        controller.add_ice_candidate(candidate)

    await wait_for(lambda: len(controller.pending_candidates) == 3)
    assert controller.pending_candidates == tuple(candidates)
    assert transport.applied_candidates == []

    controller.handle_answer(ANSWER)
    await _events_until(controller, RemoteStreamReady)
    assert transport.applied_candidates == candidates
    assert controller.pending_candidates == ()

    # Remote description set before any candidate is applied
    first = transport.calls.index('add_ice_candidate')
    assert transport.calls.index('set_remote_description') < first

    await controller.close()


@pytest.mark.asyncio()
async def test_candidates_applied_after_remote_description() -> None:
    controller, transport = _controller(role=PeerRole.ANSWERER)
    controller.handle_offer(OFFER)
    await _events_until(controller, RemoteStreamReady)

    controller.add_ice_candidate(_candidate(0))
    controller.add_ice_candidate(_candidate(1))
    await wait_for(lambda: len(transport.applied_candidates) == 2)
    assert transport.applied_candidates == [_candidate(0), _candidate(1)]
    assert controller.pending_candidates == ()

    await controller.close()


@pytest.mark.asyncio()
async def test_seeded_candidates_applied_after_offer() -> None:
    controller, transport = _controller(
        role=PeerRole.ANSWERER,
        start=False,
    )
    candidates = [_candidate(i) for i in range(3)]
    controller.queue_candidates(candidates)
    controller.start()
    controller.handle_offer(OFFER)

    await _events_until(controller, RemoteStreamReady)
    assert transport.applied_candidates == candidates

    await controller.close()


@pytest.mark.asyncio()
async def test_duplicate_answer_ignored(caplog) -> None:
    caplog.set_level(logging.WARNING)
    controller, transport = _controller()
    controller.create_offer()
    controller.handle_answer(ANSWER)
    await _events_until(controller, RemoteStreamReady)

    controller.handle_answer(ANSWER)
    await wait_for(
        lambda: any(
            'duplicate answer' in record.message for record in caplog.records
        ),
    )
    assert controller.state is PeerState.CONNECTED
    assert transport.calls.count('set_remote_description') == 1

    await controller.close()


@pytest.mark.asyncio()
async def test_remote_stream_ready_fires_once() -> None:
    controller, transport = _controller()
    controller.create_offer()
    controller.handle_answer(ANSWER)
    await _events_until(controller, RemoteStreamReady)

    transport.push(StateChanged('connected'))
    transport.push(StateChanged('connected'))
    await asyncio.sleep(0.05)
    await controller.close()

    events = await _events_until(controller, PeerClosed)
    assert not any(isinstance(e, RemoteStreamReady) for e in events)


@pytest.mark.asyncio()
async def test_remote_stream_ready_requires_both_descriptions() -> None:
    controller, transport = _controller(auto_connect=False)
    controller.create_offer()
    await _events_until(controller, OutboundSignal)

    transport.push(StateChanged('connected'))
    await asyncio.sleep(0.05)
    assert controller.state is PeerState.HAVE_LOCAL_OFFER

    controller.handle_answer(ANSWER)
    await _events_until(controller, RemoteStreamReady)
    assert controller.state is PeerState.CONNECTED

    await controller.close()


@pytest.mark.asyncio()
async def test_answer_without_offer_closes() -> None:
    controller, transport = _controller()
    controller.handle_answer(ANSWER)

    event = await _next_event(controller)
    assert isinstance(event, PeerClosed)
    assert not event.media_ready
    assert event.reason is not None
    assert 'Cannot accept an answer' in event.reason
    assert controller.state is PeerState.CLOSED
    assert transport.closed
    assert transport.remote_description is None


@pytest.mark.asyncio()
async def test_second_offer_closes() -> None:
    controller, _ = _controller()
    controller.create_offer()
    controller.create_offer()

    events = await _events_until(controller, PeerClosed)
    closed = events[-1]
    assert isinstance(closed, PeerClosed)
    assert closed.reason is not None
    assert 'Cannot create an offer' in closed.reason


@pytest.mark.asyncio()
async def test_set_remote_description_failure_discards_candidates() -> None:
    controller, transport = _controller(
        role=PeerRole.ANSWERER,
        fail_on=('set_remote_description',),
    )
    controller.add_ice_candidate(_candidate(0))
    controller.handle_offer(OFFER)

    events = await _events_until(controller, PeerClosed)
    closed = events[-1]
    assert isinstance(closed, PeerClosed)
    assert closed.reason == 'set_remote_description failed'
    assert controller.state is PeerState.CLOSED
    assert controller.pending_candidates == ()
    assert transport.applied_candidates == []
    assert 'create_answer' not in transport.calls


@pytest.mark.asyncio()
async def test_create_offer_failure_closes() -> None:
    controller, transport = _controller(fail_on=('create_offer',))
    controller.create_offer()

    event = await _next_event(controller)
    assert isinstance(event, PeerClosed)
    assert event.reason == 'create_offer failed'
    assert transport.local_description is None


@pytest.mark.asyncio()
async def test_transport_failure_closes() -> None:
    controller, transport = _controller()
    controller.create_offer()
    controller.handle_answer(ANSWER)
    await _events_until(controller, RemoteStreamReady)

    transport.push(StateChanged('failed'))
    event = await _next_event(controller)
    assert event == PeerClosed(
        'remote',
        media_ready=True,
        reason='transport failed',
    )
    assert controller.state is PeerState.CLOSED
    assert transport.closed


@pytest.mark.asyncio()
async def test_close_is_idempotent() -> None:
    controller, transport = _controller()
    controller.create_offer()
    await _events_until(controller, OutboundSignal)
    controller.add_ice_candidate(_candidate(0))
    await wait_for(lambda: len(controller.pending_candidates) == 1)

    await controller.close()
    await controller.close()
    assert controller.state is PeerState.CLOSED
    assert controller.pending_candidates == ()
    assert transport.calls.count('close') == 1

    # Commands are ignored once closed
    controller.handle_answer(ANSWER)
    controller.add_ice_candidate(_candidate(1))

    events = await _events_until(controller, PeerClosed)
    assert events[-1] == PeerClosed('remote', media_ready=False)
    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(controller.next_event(), timeout=0.05)
    assert transport.remote_description is None


@pytest.mark.asyncio()
async def test_attach_media_once_per_track() -> None:
    controller, transport = _controller(start=False)
    audio, video = FakeTrack('audio'), FakeTrack('video')

    controller.attach_media(MediaBundle([audio]))
    controller.attach_media(MediaBundle([audio, video]))
    assert transport.tracks == [audio, video]


class _BrokenTransport(FakeTransport):
    async def set_remote_description(
        self,
        description: dict[str, Any],
    ) -> None:
        self.calls.append('set_remote_description')
        raise AttributeError("'int' object has no attribute 'splitlines'")


@pytest.mark.asyncio()
async def test_unexpected_transport_error_closes() -> None:
    transport = _BrokenTransport('remote')
    controller = PeerController(
        'local',
        'remote',
        transport,
        role=PeerRole.ANSWERER,
    )
    controller.start()
    controller.handle_offer({'type': 'offer', 'sdp': 123})

    event = await _next_event(controller)
    assert isinstance(event, PeerClosed)
    assert event.reason is not None
    assert 'AttributeError' in event.reason
    assert controller.state is PeerState.CLOSED
    assert transport.closed

    # Later commands are ignored instead of queued
    controller.add_ice_candidate(_candidate(0))
    assert controller.pending_candidates == ()
