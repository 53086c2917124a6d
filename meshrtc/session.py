"""Session orchestration for one participant of a room."""
from __future__ import annotations

import asyncio
import dataclasses
import logging
from types import TracebackType
from typing import Any
from typing import Generator

from meshrtc.config import RoomConfig
from meshrtc.events import OutboundSignal
from meshrtc.events import PeerClosed
from meshrtc.events import RemoteStreamReady
from meshrtc.exceptions import ChannelClosedError
from meshrtc.exceptions import MediaAcquisitionError
from meshrtc.media import MediaConstraints
from meshrtc.messages import Answer
from meshrtc.messages import Connected
from meshrtc.messages import decode_message
from meshrtc.messages import DirectedMessage
from meshrtc.messages import encode_message
from meshrtc.messages import IceCandidate
from meshrtc.messages import MessageDecodeError
from meshrtc.messages import Offer
from meshrtc.messages import SignalingMessage
from meshrtc.messages import Users
from meshrtc.peer import log_name
from meshrtc.peer import PeerController
from meshrtc.peer import PeerRole
from meshrtc.protocols import MediaSource
from meshrtc.protocols import RelayChannel
from meshrtc.protocols import RemoteStreamRenderer
from meshrtc.protocols import TransportFactory
from meshrtc.registry import PeerRegistry
from meshrtc.relay import WebSocketRelayChannel
from meshrtc.room import Room
from meshrtc.transport import aiortc_transport_factory
from meshrtc.utils.tasks import cancel_task
from meshrtc.utils.tasks import spawn_background_task

logger = logging.getLogger(__name__)


class SessionOrchestrator:
    """Participant of a room with a peer connection to every other member.

    Acquires local media, joins the room through the relay server, and
    keeps one [`PeerController`][meshrtc.peer.PeerController] per remote
    participant. A participant joining the room receives the roster of
    current members from the relay and sends each of them an offer;
    existing members answer.

    Relay messages are decoded and dispatched one at a time and dispatching
    never waits on a negotiation, so peers negotiate concurrently. Failures
    of a single peer close that peer only. Losing the relay connection ends
    the session and is reported by `wait_closed()`.

    Example:
        ```python
        from meshrtc.config import RoomConfig
        from meshrtc.media import BlackholeRenderer
        from meshrtc.media import PlayerMediaSource
        from meshrtc.session import SessionOrchestrator

        config = RoomConfig(domain='meet.example.com', credential='...')
        source = PlayerMediaSource('/dev/video0', format='v4l2')

        async with SessionOrchestrator(
            config, source, BlackholeRenderer(),
        ) as session:
            await session.wait_closed()
        ```

    Note:
        The orchestrator can be joined with `await`, like
        `session = await SessionOrchestrator(...)`.

    Args:
        config: Room configuration.
        media_source: Source of the local media.
        renderer: Receives the remote streams once media flows.
        constraints: Constraints for acquiring local media.
        relay: Channel to the relay server. Defaults to a
            [`WebSocketRelayChannel`][meshrtc.relay.WebSocketRelayChannel]
            to `config.relay_address`.
        transport_factory: Creates the underlying connection for each
            peer. Defaults to aiortc peer connections using the TURN server
            of the room.
        close_timeout: Seconds to wait for peers to finish closing in
            `close()`.
    """

    def __init__(
        self,
        config: RoomConfig,
        media_source: MediaSource,
        renderer: RemoteStreamRenderer,
        *,
        constraints: MediaConstraints | None = None,
        relay: RelayChannel | None = None,
        transport_factory: TransportFactory | None = None,
        close_timeout: float = 5,
    ) -> None:
        self.room = Room(config, self._create_controller)
        self._media_source = media_source
        self._renderer = renderer
        self._constraints = (
            MediaConstraints() if constraints is None else constraints
        )
        self._relay = (
            WebSocketRelayChannel(config.relay_address)
            if relay is None
            else relay
        )
        self._transport_factory = (
            aiortc_transport_factory(config)
            if transport_factory is None
            else transport_factory
        )
        self._close_timeout = close_timeout

        self._relay_task: asyncio.Task[None] | None = None
        self._peer_tasks: dict[PeerController, asyncio.Task[None]] = {}
        self._close_tasks: set[asyncio.Task[None]] = set()
        self._closed: asyncio.Future[None] | None = None
        self._channel_error: ChannelClosedError | None = None

    @property
    def _log_prefix(self) -> str:
        return f'{self.__class__.__name__}[{log_name(self.identity)}]'

    @property
    def identity(self) -> str:
        """Identity of the local participant."""
        return self.room.identity

    @property
    def registry(self) -> PeerRegistry:
        """Registry of the peer controllers of the room."""
        return self.room.registry

    @property
    def channel_closed(self) -> bool:
        """The connection to the relay server was lost."""
        return self._channel_error is not None

    async def __aenter__(self) -> SessionOrchestrator:
        await self.join()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        exc_traceback: TracebackType | None,
    ) -> None:
        await self.close()

    def __await__(self) -> Generator[Any, None, SessionOrchestrator]:
        return self.__aenter__().__await__()

    async def join(self) -> None:
        """Join the room.

        Acquires local media, opens the relay connection, and announces the
        local participant. Returns once the relay connection is open, before
        any peer is connected. Calling this again does nothing.

        Raises:
            MediaAcquisitionError: If local media cannot be acquired.
            ChannelClosedError: If the relay server cannot be reached.
        """
        if self._relay_task is not None:
            return

        logger.info(
            f'{self._log_prefix}: joining room {self.room.config.domain}',
        )
        try:
            media = await self._media_source.acquire(self._constraints)
        except MediaAcquisitionError as e:
            logger.error(f'{self._log_prefix}: failed to acquire media: {e}')
            raise
        self.room.media = media
        for controller in self.registry.controllers():
            controller.attach_media(media)

        try:
            await self._relay.connect()
        except ChannelClosedError:
            media.stop()
            raise

        self._closed = asyncio.get_running_loop().create_future()
        # Retrieve the exception so an unobserved close is not reported as
        # an unhandled future exception.
        self._closed.add_done_callback(
            lambda f: f.cancelled() or f.exception(),
        )
        self._relay_task = spawn_background_task(
            self._handle_relay_messages,
            name=f'session-relay-messages-{self.identity}',
        )
        await self.send(Connected(source=self.identity))

    async def wait_closed(self) -> None:
        """Wait until the session ends.

        Returns when the session is closed with `close()`.

        Raises:
            ChannelClosedError: If the connection to the relay server was
                lost.
            RuntimeError: If the session was never joined.
        """
        if self._closed is None:
            raise RuntimeError(
                'The session has not joined a room yet. Call join() first.',
            )
        await asyncio.shield(self._closed)

    async def send(self, message: SignalingMessage) -> None:
        """Send a message to the relay server.

        The message is stamped with the local identity. Nothing is written
        once the relay connection is lost.
        """
        message = dataclasses.replace(message, source=self.identity)
        if self._channel_error is not None:
            logger.debug(
                f'{self._log_prefix}: relay connection closed, dropping '
                f'{message.message_type.value} message',
            )
            return
        data = encode_message(message)
        try:
            await self._relay.send(data)
        except ChannelClosedError as e:
            self._on_channel_closed(e)
            return
        logger.debug(
            f'{self._log_prefix}: sent {message.message_type.value} message',
        )

    def on_message(self, raw: str | bytes) -> None:
        """Handle a message received from the relay server.

        Malformed messages are logged and dropped.
        """
        try:
            message = decode_message(raw)
        except MessageDecodeError as e:
            logger.error(
                f'{self._log_prefix}: error deserializing message from '
                f'relay server: {e} ...skipping message',
            )
            return

        if message.source == self.identity:
            return
        if (
            isinstance(message, DirectedMessage)
            and message.target != self.identity
        ):
            logger.debug(
                f'{self._log_prefix}: ignoring message addressed to '
                f'{message.target}',
            )
            return

        logger.debug(
            f'{self._log_prefix}: received {message.message_type.value} '
            f'message from {message.source}',
        )
        if isinstance(message, Users):
            self._handle_users(message)
        elif isinstance(message, Connected):
            logger.info(
                f'{self._log_prefix}: {message.source} joined the room',
            )
        elif isinstance(message, Offer):
            self._handle_offer(message)
        elif isinstance(message, Answer):
            controller = self.registry.get(message.source)
            if controller is None:
                logger.warning(
                    f'{self._log_prefix}: received answer from '
                    f'{message.source} without a pending offer',
                )
            else:
                controller.handle_answer(message.answer)
        elif isinstance(message, IceCandidate):
            controller = self.registry.get(message.source)
            if controller is None:
                self.room.hold_candidate(message.source, message.candidate)
            else:
                controller.add_ice_candidate(message.candidate)
        else:
            raise AssertionError('Unreachable.')

    def _handle_users(self, message: Users) -> None:
        for identity in message.users:
            if identity == self.identity or identity in self.registry:
                continue
            controller = self.registry.get_or_create(
                identity,
                PeerRole.OFFERER,
            )
            controller.create_offer()

    def _handle_offer(self, message: Offer) -> None:
        existing = self.registry.remove(message.source)
        if existing is not None:
            logger.warning(
                f'{self._log_prefix}: replacing {existing} with a new '
                f'connection offered by {message.source}',
            )
            task = spawn_background_task(
                existing.close,
                reason='replaced by a new offer',
                name=f'close-replaced-peer-{message.source}',
            )
            self._close_tasks.add(task)
            task.add_done_callback(self._close_tasks.discard)
        controller = self.registry.get_or_create(
            message.source,
            PeerRole.ANSWERER,
        )
        controller.handle_offer(message.offer)

    def _create_controller(
        self,
        identity: str,
        role: PeerRole,
    ) -> PeerController:
        controller = PeerController(
            self.identity,
            identity,
            self._transport_factory(identity),
            role=role,
            media=self.room.media,
        )
        self.room.peer_opened(identity)
        controller.queue_candidates(self.room.take_candidates(identity))
        controller.start()
        self._peer_tasks[controller] = spawn_background_task(
            self._handle_peer_events,
            controller,
            name=f'session-peer-events-{identity}',
        )
        logger.info(
            f'{self._log_prefix}: created {role.value} connection to '
            f'{identity}',
        )
        return controller

    async def _handle_peer_events(self, controller: PeerController) -> None:
        while True:
            event = await controller.next_event()
            if isinstance(event, OutboundSignal):
                await self.send(event.message)
            elif isinstance(event, RemoteStreamReady):
                logger.info(
                    f'{self._log_prefix}: media from {event.identity} is '
                    'ready',
                )
                await self._renderer.on_remote_stream_ready(
                    event.identity,
                    event.stream,
                )
            elif isinstance(event, PeerClosed):
                removed = self.registry.remove(event.identity, controller)
                if removed is not None:
                    self.room.peer_closed(event.identity)
                if event.reason is not None:
                    logger.error(
                        f'{self._log_prefix}: connection to {event.identity} '
                        f'failed and was removed: {event.reason}',
                    )
                if event.media_ready:
                    await self._renderer.on_remote_stream_ended(
                        event.identity,
                    )
                break
        if self._peer_tasks.get(controller) is asyncio.current_task():
            del self._peer_tasks[controller]

    async def _handle_relay_messages(self) -> None:
        logger.info(
            f'{self._log_prefix}: listening for messages from relay server',
        )
        while True:
            try:
                raw = await self._relay.recv()
            except ChannelClosedError as e:
                self._on_channel_closed(e)
                return
            self.on_message(raw)

    def _on_channel_closed(self, error: ChannelClosedError) -> None:
        if self._channel_error is not None:
            return
        self._channel_error = error
        logger.error(
            f'{self._log_prefix}: lost connection to relay server: {error}',
        )
        if self._closed is not None and not self._closed.done():
            self._closed.set_exception(error)

    async def remove_peer(self, identity: str) -> None:
        """Close and remove the connection to a departed participant."""
        self.room.peer_closed(identity)
        controller = self.registry.remove(identity)
        if controller is not None:
            logger.info(f'{self._log_prefix}: {identity} left the room')
            await controller.close()

    async def close(self) -> None:
        """Leave the room.

        Closes every peer connection and the relay connection and stops the
        local media.
        """
        await cancel_task(self._relay_task)

        for controller in self.registry.controllers():
            await controller.close()
        tasks = [*self._peer_tasks.values(), *self._close_tasks]
        if len(tasks) > 0:
            await asyncio.wait(tasks, timeout=self._close_timeout)
        for task in tasks:
            await cancel_task(task)
        self._peer_tasks.clear()

        await self._relay.close()
        if self.room.media is not None:
            self.room.media.stop()
        if self._closed is not None and not self._closed.done():
            self._closed.set_result(None)
        logger.info(f'{self._log_prefix}: session closed')
