"""Room, media, and logging configuration.

Configurations are Pydantic models which can be read from and written to
TOML files.

Example:
    ```toml title="meshrtc.toml"
    record_dir = "/path/to/recordings"

    [room]
    domain = "meet.example.com"
    credential = "..."

    [media]
    source = "/dev/video0"
    format = "v4l2"
    video_size = "640x480"

    [logging]
    default_level = "INFO"
    ```

    ```python
    from meshrtc.config import MeshConfig

    config = MeshConfig.from_toml('meshrtc.toml')
    ```
"""
from __future__ import annotations

import logging
import pathlib
import sys
import time
from typing import Any
from typing import BinaryIO
from typing import TypeVar

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    import tomllib
    from typing import Self
else:  # pragma: <3.11 cover
    import tomli as tomllib
    from typing_extensions import Self

import tomli_w
from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field

from meshrtc.media import MediaConstraints
from meshrtc.media import PlayerMediaSource

BaseModelT = TypeVar('BaseModelT', bound=BaseModel)


def default_identity() -> str:
    """Generate an identity from the current time in milliseconds."""
    return str(time.time_ns() // 1_000_000)


def _strip_scheme(domain: str) -> str:
    for scheme in ('wss://', 'ws://'):
        if domain.startswith(scheme):
            return domain[len(scheme) :]
    return domain


class RoomConfig(BaseModel):
    """Room configuration.

    Attributes:
        domain: Domain (optionally with a port) of the room. The relay
            server is reached at `wss://<domain>` and the TURN server at
            `turn:<domain>`. A `ws://` or `wss://` prefix is used as is
            for the relay address.
        identity: Identity of the local participant. Must not be reused
            by a participant rejoining the same room.
        credential: Credential for the TURN server. Forwarded unmodified
            and excluded from the [`repr()`][repr] of this class.
    """

    model_config = ConfigDict(extra='forbid')

    domain: str
    identity: str = Field(default_factory=default_identity)
    credential: str | None = Field(default=None, repr=False)

    @property
    def relay_address(self) -> str:
        """Websocket address of the relay server."""
        if self.domain.startswith(('ws://', 'wss://')):
            return self.domain
        return f'wss://{self.domain}'

    @property
    def turn_url(self) -> str:
        """URL of the TURN server."""
        return f'turn:{_strip_scheme(self.domain)}'


class MediaConfig(BaseModel):
    """Local media configuration.

    Attributes:
        source: File, URL, or device to capture from. If `None`, media
            must be supplied by another media source.
        format: FFmpeg input format of `source` (e.g., `v4l2`).
        options: FFmpeg input options of `source`.
        audio_source: Separate file, URL, or device to capture audio from.
        audio_format: FFmpeg input format of `audio_source`.
        audio: Capture audio.
        video: Capture video.
        video_size: Requested capture frame size (e.g., `640x480`).
    """

    model_config = ConfigDict(extra='forbid')

    source: str | None = None
    format: str | None = None
    options: dict[str, str] = Field(default_factory=dict)
    audio_source: str | None = None
    audio_format: str | None = None
    audio: bool = True
    video: bool = True
    video_size: str | None = None

    def constraints(self) -> MediaConstraints:
        """Media constraints described by this config."""
        return MediaConstraints(
            audio=self.audio,
            video=self.video,
            video_size=self.video_size,
        )

    def media_source(self) -> PlayerMediaSource:
        """Media source described by this config.

        Raises:
            ValueError: If no `source` is configured.
        """
        if self.source is None:
            raise ValueError('A media source must be configured.')
        return PlayerMediaSource(
            self.source,
            format=self.format,
            options=self.options,
            audio_source=self.audio_source,
            audio_format=self.audio_format,
        )


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        log_dir: Directory to also write log files to.
        default_level: Default logging level for the root logger.
        websockets_level: Log level for the `websockets` logger.
        aiortc_level: Log level for the `aiortc` and `aioice` loggers.
            Both log every packet level event at `DEBUG` so it is
            suggested to set this to `WARNING` or higher.
    """

    model_config = ConfigDict(extra='forbid')

    log_dir: str | None = None
    default_level: int | str = logging.INFO
    websockets_level: int | str = logging.WARNING
    aiortc_level: int | str = logging.WARNING


class MeshConfig(BaseModel):
    """Configuration of the `meshrtc` command.

    Attributes:
        room: Room configuration.
        media: Local media configuration.
        logging: Logging configuration.
        record_dir: Record remote streams to this directory. If `None`,
            remote media is consumed and discarded.
    """

    model_config = ConfigDict(extra='forbid')

    room: RoomConfig
    media: MediaConfig = Field(default_factory=MediaConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    record_dir: str | None = None

    @classmethod
    def from_toml(cls, filepath: str | pathlib.Path) -> Self:
        """Parse a TOML config file.

        Note:
            Omitted values will be set to their defaults.
        """
        with open(filepath, 'rb') as f:
            return load(cls, f)

    def write_toml(self, filepath: str | pathlib.Path) -> None:
        """Write the config to a TOML file."""
        with open(filepath, 'wb') as f:
            dump(self, f)


def dump(
    model: BaseModel,
    fp: BinaryIO,
    *,
    exclude_none: bool = True,
) -> None:
    """Serialize a model as a TOML formatted stream to a file-like object.

    Args:
        model: Config model instance to write.
        fp: File-like bytes stream to write to.
        exclude_none: Skip writing none attributes.
    """
    tomli_w.dump(model.model_dump(exclude_none=exclude_none), fp)


def dumps(model: BaseModel, *, exclude_none: bool = True) -> str:
    """Serialize a model to a TOML formatted string."""
    return tomli_w.dumps(model.model_dump(exclude_none=exclude_none))


def load(model: type[BaseModelT], fp: BinaryIO) -> BaseModelT:
    """Parse TOML from a binary file to a model."""
    return loads(model, fp.read().decode())


def loads(model: type[BaseModelT], data: str) -> BaseModelT:
    """Parse a TOML string to a model.

    Args:
        model: Config model type to parse TOML using.
        data: TOML string to parse.

    Returns:
        Model initialized from TOML file.
    """
    parsed: dict[str, Any] = tomllib.loads(data)
    return model.model_validate(parsed, strict=True)
