"""Local media capture and remote stream rendering."""
from __future__ import annotations

import asyncio
import dataclasses
import logging
import os
from typing import Any
from typing import Iterator
from typing import Sequence

from aiortc.contrib.media import MediaBlackhole
from aiortc.contrib.media import MediaPlayer
from aiortc.contrib.media import MediaRecorder
from av.error import FFmpegError

from meshrtc.exceptions import MediaAcquisitionError

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class MediaConstraints:
    """Constraints passed to a media source.

    Attributes:
        audio: Capture an audio track.
        video: Capture a video track.
        video_size: Requested frame size (e.g., `'640x480'`) for capture
            devices that support it.
    """

    audio: bool = True
    video: bool = True
    video_size: str | None = None


class MediaBundle:
    """Local tracks shared with every peer connection.

    Tracks are attached to peer connections, never transferred, so the
    bundle remains the owner and is responsible for stopping them.

    Args:
        tracks: Local media tracks.
        sources: Objects (e.g., media players) which must be kept alive for
            as long as the tracks are in use.
    """

    def __init__(
        self,
        tracks: Sequence[Any],
        sources: Sequence[Any] = (),
    ) -> None:
        self._tracks = tuple(tracks)
        self._sources = tuple(sources)

    def __iter__(self) -> Iterator[Any]:
        return iter(self._tracks)

    def __len__(self) -> int:
        return len(self._tracks)

    def __repr__(self) -> str:
        kinds = ', '.join(track.kind for track in self._tracks)
        return f'{self.__class__.__name__}({kinds})'

    @property
    def tracks(self) -> tuple[Any, ...]:
        """Local media tracks."""
        return self._tracks

    def stop(self) -> None:
        """Stop every track in the bundle."""
        for track in self._tracks:
            track.stop()


class RemoteStream:
    """Accumulator of the media tracks received from one peer."""

    def __init__(self, identity: str) -> None:
        self.identity = identity
        self._tracks: dict[str, Any] = {}

    def __len__(self) -> int:
        return len(self._tracks)

    def __repr__(self) -> str:
        return (
            f'{self.__class__.__name__}(identity={self.identity!r}, '
            f'tracks={len(self)})'
        )

    @property
    def tracks(self) -> tuple[Any, ...]:
        """Tracks in the order they were received."""
        return tuple(self._tracks.values())

    def add_track(self, track: Any) -> None:
        """Add a track to the stream if not already present."""
        self._tracks.setdefault(track.id, track)


class PlayerMediaSource:
    """Capture local media with aiortc media players.

    A player can read from a file, a stream URL, or a capture device
    (e.g., `source='/dev/video0', format='v4l2'`). Audio can be read from a
    separate device, for example when video comes from a screen grab.

    Args:
        source: File, URL, or device to read from.
        format: FFmpeg input format of `source`.
        options: FFmpeg input options of `source`.
        audio_source: Separate file, URL, or device to read audio from.
            If `None`, audio is taken from `source`.
        audio_format: FFmpeg input format of `audio_source`.
        audio_options: FFmpeg input options of `audio_source`.
    """

    def __init__(
        self,
        source: str,
        *,
        format: str | None = None,  # noqa: A002
        options: dict[str, str] | None = None,
        audio_source: str | None = None,
        audio_format: str | None = None,
        audio_options: dict[str, str] | None = None,
    ) -> None:
        self.source = source
        self.format = format
        self.options = dict(options or {})
        self.audio_source = audio_source
        self.audio_format = audio_format
        self.audio_options = dict(audio_options or {})

    async def _open(
        self,
        source: str,
        format: str | None,  # noqa: A002
        options: dict[str, str],
    ) -> MediaPlayer:
        try:
            return await asyncio.to_thread(
                MediaPlayer,
                source,
                format=format,
                options=options,
            )
        except (FFmpegError, OSError) as e:
            raise MediaAcquisitionError(
                f'Failed to open media source {source}: {e}',
            ) from e

    async def acquire(self, constraints: MediaConstraints) -> MediaBundle:
        """Open the configured players and collect their tracks.

        Raises:
            MediaAcquisitionError: If a source cannot be opened or no
                track satisfying the constraints is available.
        """
        options = dict(self.options)
        if constraints.video_size is not None:
            options['video_size'] = constraints.video_size

        players = [await self._open(self.source, self.format, options)]
        tracks: list[Any] = []
        if constraints.video and players[0].video is not None:
            tracks.append(players[0].video)
        if constraints.audio:
            if self.audio_source is not None:
                audio_player = await self._open(
                    self.audio_source,
                    self.audio_format,
                    self.audio_options,
                )
                players.append(audio_player)
                if audio_player.audio is not None:
                    tracks.append(audio_player.audio)
            elif players[0].audio is not None:
                tracks.append(players[0].audio)

        if len(tracks) == 0:
            raise MediaAcquisitionError(
                f'No media tracks satisfying {constraints} found in '
                f'{self.source}.',
            )

        bundle = MediaBundle(tracks, players)
        logger.info(f'Acquired local media {bundle} from {self.source}')
        return bundle


class BlackholeRenderer:
    """Renderer that consumes remote media and discards it."""

    def __init__(self) -> None:
        self._sinks: dict[str, MediaBlackhole] = {}

    async def on_remote_stream_ready(
        self,
        identity: str,
        stream: RemoteStream,
    ) -> None:
        sink = MediaBlackhole()
        for track in stream.tracks:
            sink.addTrack(track)
        self._sinks[identity] = sink
        await sink.start()
        logger.info(f'Consuming {len(stream)} track(s) from {identity}')

    async def on_remote_stream_ended(self, identity: str) -> None:
        sink = self._sinks.pop(identity, None)
        if sink is not None:
            await sink.stop()

    async def close(self) -> None:
        """Stop consuming every stream."""
        for identity in list(self._sinks):
            await self.on_remote_stream_ended(identity)


class RecordingRenderer:
    """Renderer that records each remote stream to a file.

    Args:
        directory: Directory to write recordings to. One file named
            `<identity><suffix>` is written per peer.
        suffix: File suffix which also selects the container format.
    """

    def __init__(self, directory: str, suffix: str = '.mp4') -> None:
        self.directory = directory
        self.suffix = suffix
        self._recorders: dict[str, MediaRecorder] = {}

    def path(self, identity: str) -> str:
        """Path of the recording of `identity`."""
        return os.path.join(self.directory, f'{identity}{self.suffix}')

    async def on_remote_stream_ready(
        self,
        identity: str,
        stream: RemoteStream,
    ) -> None:
        if len(stream) == 0:
            logger.warning(f'Stream from {identity} has no tracks to record')
            return
        os.makedirs(self.directory, exist_ok=True)
        recorder = MediaRecorder(self.path(identity))
        for track in stream.tracks:
            recorder.addTrack(track)
        self._recorders[identity] = recorder
        await recorder.start()
        logger.info(
            f'Recording stream from {identity} to {self.path(identity)}',
        )

    async def on_remote_stream_ended(self, identity: str) -> None:
        recorder = self._recorders.pop(identity, None)
        if recorder is not None:
            await recorder.stop()

    async def close(self) -> None:
        """Finish every recording."""
        for identity in list(self._recorders):
            await self.on_remote_stream_ended(identity)
