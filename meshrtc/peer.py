"""Negotiation state machine for the connection to one remote peer."""
from __future__ import annotations

import asyncio
import collections
import enum
import logging
from typing import Any
from typing import Awaitable
from typing import Callable
from typing import Iterable

from meshrtc.events import CandidateDiscovered
from meshrtc.events import OutboundSignal
from meshrtc.events import PeerClosed
from meshrtc.events import PeerEvent
from meshrtc.events import RemoteStreamReady
from meshrtc.events import StateChanged
from meshrtc.events import TrackReceived
from meshrtc.exceptions import InvalidTransitionError
from meshrtc.exceptions import NegotiationError
from meshrtc.media import MediaBundle
from meshrtc.media import RemoteStream
from meshrtc.messages import Answer
from meshrtc.messages import IceCandidate
from meshrtc.messages import Offer
from meshrtc.protocols import PeerTransport
from meshrtc.utils.tasks import cancel_task
from meshrtc.utils.tasks import spawn_background_task

logger = logging.getLogger(__name__)


class PeerRole(enum.Enum):
    """Side of the offer/answer exchange taken by the local participant."""

    OFFERER = 'offerer'
    ANSWERER = 'answerer'


class PeerState(enum.Enum):
    """Negotiation state of a peer controller."""

    NEW = 'new'
    HAVE_LOCAL_OFFER = 'have-local-offer'
    HAVE_REMOTE_OFFER = 'have-remote-offer'
    NEGOTIATING = 'negotiating'
    """Local and remote descriptions are both set."""
    CONNECTED = 'connected'
    """Media is flowing and has been exposed to the renderer."""
    CLOSED = 'closed'


_TRANSITIONS: dict[PeerState, frozenset[PeerState]] = {
    PeerState.NEW: frozenset(
        {PeerState.HAVE_LOCAL_OFFER, PeerState.HAVE_REMOTE_OFFER},
    ),
    PeerState.HAVE_LOCAL_OFFER: frozenset({PeerState.NEGOTIATING}),
    PeerState.HAVE_REMOTE_OFFER: frozenset({PeerState.NEGOTIATING}),
    PeerState.NEGOTIATING: frozenset({PeerState.CONNECTED}),
    PeerState.CONNECTED: frozenset(),
    PeerState.CLOSED: frozenset(),
}


def log_name(identity: str) -> str:
    """Return a shortened identity for log messages."""
    return identity[: min(12, len(identity))]


class PeerController:
    """Drives the connection to one remote peer through negotiation.

    Commands (`create_offer()`, `handle_offer()`, `handle_answer()`,
    `add_ice_candidate()`) return immediately and are executed one at a
    time, in the order they were issued, by a background task owned by
    the controller. A second task reads events from the transport. The
    outcome of both is reported through the event stream read with
    `next_event()`.

    Connectivity candidates received before a remote description is set
    are queued and applied in arrival order as soon as it is set.

    Example:
        ```python
        controller = PeerController('me', 'them', transport, media=bundle)
        controller.start()
        controller.create_offer()
        event = await controller.next_event()
        assert isinstance(event, OutboundSignal)
        ```

    Args:
        local_identity: Identity of the local participant.
        identity: Identity of the remote participant.
        transport: Underlying connection to the remote participant.
        role: Side of the negotiation taken by this controller.
        media: Local media attached to the connection before generating
            a local description.
    """

    def __init__(
        self,
        local_identity: str,
        identity: str,
        transport: PeerTransport,
        *,
        role: PeerRole = PeerRole.OFFERER,
        media: MediaBundle | None = None,
    ) -> None:
        self.local_identity = local_identity
        self.identity = identity
        self.role = role
        self.remote_stream = RemoteStream(identity)

        self._transport = transport
        self._state = PeerState.NEW
        self._attached: set[int] = set()
        self._media = media

        self._local_description_set = False
        self._remote_description_set = False
        self._transport_connected = False
        self._media_ready = False
        self._pending_candidates: collections.deque[
            dict[str, Any]
        ] = collections.deque()

        self._commands: asyncio.Queue[
            tuple[Callable[..., Awaitable[None]], tuple[Any, ...]]
        ] = asyncio.Queue()
        self._events: asyncio.Queue[PeerEvent] = asyncio.Queue()
        self._command_task: asyncio.Task[None] | None = None
        self._transport_task: asyncio.Task[None] | None = None

    def __repr__(self) -> str:
        return (
            f'{self.__class__.__name__}(identity={self.identity!r}, '
            f'role={self.role.value}, state={self._state.value})'
        )

    @property
    def _log_prefix(self) -> str:
        return (
            f'{self.__class__.__name__}[{log_name(self.local_identity)} > '
            f'{log_name(self.identity)}]'
        )

    @property
    def state(self) -> PeerState:
        """Current negotiation state."""
        return self._state

    @property
    def has_remote_description(self) -> bool:
        """A remote session description has been applied."""
        return self._remote_description_set

    @property
    def pending_candidates(self) -> tuple[dict[str, Any], ...]:
        """Candidates waiting for a remote description, oldest first."""
        return tuple(self._pending_candidates)

    def start(self) -> None:
        """Start processing commands and transport events."""
        if self._command_task is not None:
            return
        self._command_task = spawn_background_task(
            self._process_commands,
            name=f'peer-commands-{self.identity}',
        )
        self._transport_task = spawn_background_task(
            self._process_transport_events,
            name=f'peer-transport-events-{self.identity}',
        )

    async def next_event(self) -> PeerEvent:
        """Wait for the next event from the controller.

        A [`PeerClosed`][meshrtc.events.PeerClosed] event is always the
        last event.
        """
        return await self._events.get()

    def attach_media(self, media: MediaBundle) -> None:
        """Attach local tracks not already attached to the connection."""
        self._media = media
        for track in media:
            if id(track) not in self._attached:
                self._transport.add_track(track)
                self._attached.add(id(track))
        logger.debug(f'{self._log_prefix}: attached local media {media}')

    def queue_candidates(self, candidates: Iterable[dict[str, Any]]) -> None:
        """Seed the pending candidate queue.

        Used for candidates which arrived before this controller existed.
        """
        for candidate in candidates:
            self.add_ice_candidate(candidate)

    def create_offer(self) -> None:
        """Start negotiation as the offerer."""
        self._submit(self._create_offer)

    def handle_offer(self, description: dict[str, Any]) -> None:
        """Answer an offer received from the peer."""
        self._submit(self._handle_offer, description)

    def handle_answer(self, description: dict[str, Any]) -> None:
        """Apply the answer to the offer sent to the peer."""
        self._submit(self._handle_answer, description)

    def add_ice_candidate(self, candidate: dict[str, Any]) -> None:
        """Apply a candidate now or once a remote description is set."""
        self._submit(self._add_ice_candidate, candidate)

    def _submit(
        self,
        command: Callable[..., Awaitable[None]],
        *args: Any,
    ) -> None:
        if self._state is PeerState.CLOSED:
            logger.debug(
                f'{self._log_prefix}: ignoring {command.__name__} on closed '
                'controller',
            )
            return
        self._commands.put_nowait((command, args))

    def _transition(self, state: PeerState) -> None:
        if state not in _TRANSITIONS[self._state]:
            raise InvalidTransitionError(
                f'Cannot transition from {self._state.value} to '
                f'{state.value}.',
            )
        logger.debug(
            f'{self._log_prefix}: {self._state.value} -> {state.value}',
        )
        self._state = state

    def _emit(self, event: PeerEvent) -> None:
        if self._state is not PeerState.CLOSED:
            self._events.put_nowait(event)

    async def _process_commands(self) -> None:
        while self._state is not PeerState.CLOSED:
            command, args = await self._commands.get()
            if self._state is PeerState.CLOSED:
                break
            try:
                await command(*args)
            except NegotiationError as e:
                logger.error(
                    f'{self._log_prefix}: negotiation failed in '
                    f'{command.__name__}: {e}',
                )
                await self.close(reason=str(e))
            except Exception as e:
                logger.exception(
                    f'{self._log_prefix}: unexpected error in '
                    f'{command.__name__}: {e!r}',
                )
                await self.close(reason=repr(e))

    async def _process_transport_events(self) -> None:
        while self._state is not PeerState.CLOSED:
            event = await self._transport.next_event()
            if self._state is PeerState.CLOSED:
                break
            if isinstance(event, CandidateDiscovered):
                logger.debug(f'{self._log_prefix}: discovered local candidate')
                self._emit(
                    OutboundSignal(
                        self.identity,
                        IceCandidate(
                            source=self.local_identity,
                            target=self.identity,
                            candidate=event.candidate,
                        ),
                    ),
                )
            elif isinstance(event, TrackReceived):
                logger.debug(
                    f'{self._log_prefix}: received remote {event.track.kind} '
                    'track',
                )
                self.remote_stream.add_track(event.track)
            elif isinstance(event, StateChanged):
                logger.debug(
                    f'{self._log_prefix}: transport state is {event.state}',
                )
                if event.state == 'connected':
                    self._transport_connected = True
                    self._check_media_ready()
                elif event.state in ('failed', 'closed'):
                    await self.close(reason=f'transport {event.state}')

    def _attach_local_media(self) -> None:
        if self._media is not None:
            self.attach_media(self._media)

    async def _set_remote_description(
        self,
        description: dict[str, Any],
    ) -> None:
        await self._transport.set_remote_description(description)
        self._remote_description_set = True
        if len(self._pending_candidates) > 0:
            logger.debug(
                f'{self._log_prefix}: applying {len(self._pending_candidates)}'
                ' queued candidate(s)',
            )
        while self._pending_candidates:
            if self._state is PeerState.CLOSED:
                return
            candidate = self._pending_candidates.popleft()
            await self._transport.add_ice_candidate(candidate)

    async def _create_offer(self) -> None:
        if self._state is not PeerState.NEW:
            raise InvalidTransitionError(
                f'Cannot create an offer in state {self._state.value}.',
            )
        self._attach_local_media()
        description = await self._transport.set_local_description(
            await self._transport.create_offer(),
        )
        self._local_description_set = True
        self._transition(PeerState.HAVE_LOCAL_OFFER)
        logger.info(f'{self._log_prefix}: sending offer')
        self._emit(
            OutboundSignal(
                self.identity,
                Offer(
                    source=self.local_identity,
                    target=self.identity,
                    offer=description,
                ),
            ),
        )

    async def _handle_offer(self, description: dict[str, Any]) -> None:
        if self._state is not PeerState.NEW:
            raise InvalidTransitionError(
                f'Cannot accept an offer in state {self._state.value}.',
            )
        logger.info(f'{self._log_prefix}: received offer')
        self.role = PeerRole.ANSWERER
        self._attach_local_media()
        await self._set_remote_description(description)
        self._transition(PeerState.HAVE_REMOTE_OFFER)

        answer = await self._transport.set_local_description(
            await self._transport.create_answer(),
        )
        self._local_description_set = True
        self._transition(PeerState.NEGOTIATING)
        logger.info(f'{self._log_prefix}: sending answer')
        self._emit(
            OutboundSignal(
                self.identity,
                Answer(
                    source=self.local_identity,
                    target=self.identity,
                    answer=answer,
                ),
            ),
        )
        self._check_media_ready()

    async def _handle_answer(self, description: dict[str, Any]) -> None:
        if self._state in (PeerState.NEGOTIATING, PeerState.CONNECTED):
            logger.warning(
                f'{self._log_prefix}: ignoring duplicate answer in state '
                f'{self._state.value}',
            )
            return
        elif self._state is not PeerState.HAVE_LOCAL_OFFER:
            raise InvalidTransitionError(
                f'Cannot accept an answer in state {self._state.value}.',
            )
        logger.info(f'{self._log_prefix}: received answer')
        await self._set_remote_description(description)
        self._transition(PeerState.NEGOTIATING)
        self._check_media_ready()

    async def _add_ice_candidate(self, candidate: dict[str, Any]) -> None:
        if not self._remote_description_set:
            self._pending_candidates.append(candidate)
            logger.debug(
                f'{self._log_prefix}: queued remote candidate '
                f'({len(self._pending_candidates)} pending)',
            )
            return
        await self._transport.add_ice_candidate(candidate)
        logger.debug(f'{self._log_prefix}: applied remote candidate')

    def _check_media_ready(self) -> None:
        if (
            self._media_ready
            or not self._transport_connected
            or self._state is not PeerState.NEGOTIATING
        ):
            return
        self._transition(PeerState.CONNECTED)
        self._media_ready = True
        logger.info(
            f'{self._log_prefix}: connected, remote stream has '
            f'{len(self.remote_stream)} track(s)',
        )
        self._emit(RemoteStreamReady(self.identity, self.remote_stream))

    async def close(self, reason: str | None = None) -> None:
        """Close the controller and the underlying connection.

        Pending candidates are discarded and no event other than the final
        [`PeerClosed`][meshrtc.events.PeerClosed] is produced after this
        is called. Closing an already closed controller does nothing.

        Args:
            reason: Description of the failure which caused the close.
        """
        if self._state is PeerState.CLOSED:
            return
        logger.info(
            f'{self._log_prefix}: closing connection in state '
            f'{self._state.value}'
            + ('' if reason is None else f' ({reason})'),
        )
        self._state = PeerState.CLOSED
        self._pending_candidates.clear()
        await cancel_task(self._command_task)
        await cancel_task(self._transport_task)
        try:
            await self._transport.close()
        finally:
            self._events.put_nowait(
                PeerClosed(self.identity, self._media_ready, reason),
            )
