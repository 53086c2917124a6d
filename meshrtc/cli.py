"""CLI for joining a room."""
from __future__ import annotations

import asyncio
import datetime
import logging
import logging.handlers
import os
import pprint
import signal
import sys

import click

from meshrtc.config import LoggingConfig
from meshrtc.config import MeshConfig
from meshrtc.config import RoomConfig
from meshrtc.exceptions import ChannelClosedError
from meshrtc.exceptions import MediaAcquisitionError
from meshrtc.media import BlackholeRenderer
from meshrtc.media import RecordingRenderer
from meshrtc.session import SessionOrchestrator

logger = logging.getLogger(__name__)


def configure_logging(config: LoggingConfig) -> None:
    """Configure the root logger according to the logging config."""
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if config.log_dir is not None:
        os.makedirs(config.log_dir, exist_ok=True)
        handlers.append(
            logging.handlers.TimedRotatingFileHandler(
                os.path.join(config.log_dir, 'meshrtc.log'),
                # Rotate logs Sunday at midnight
                when='W6',
                atTime=datetime.time(hour=0, minute=0, second=0),
            ),
        )

    logging.basicConfig(
        format=(
            '[%(asctime)s.%(msecs)03d] %(levelname)-5s (%(name)s) :: '
            '%(message)s'
        ),
        datefmt='%Y-%m-%d %H:%M:%S',
        level=config.default_level,
        handlers=handlers,
    )

    logging.getLogger('websockets').setLevel(config.websockets_level)
    logging.getLogger('aiortc').setLevel(config.aiortc_level)
    logging.getLogger('aioice').setLevel(config.aiortc_level)


async def run(config: MeshConfig) -> None:
    """Join the room and stay until interrupted or disconnected.

    Raises:
        MediaAcquisitionError: If local media cannot be acquired.
        ChannelClosedError: If the connection to the relay server is lost.
    """
    renderer: BlackholeRenderer | RecordingRenderer = (
        BlackholeRenderer()
        if config.record_dir is None
        else RecordingRenderer(config.record_dir)
    )
    session = SessionOrchestrator(
        config.room,
        config.media.media_source(),
        renderer,
        constraints=config.media.constraints(),
    )

    # Close the session when receiving SIGINT (ctrl-C) and SIGTERM.
    loop = asyncio.get_running_loop()
    stop = loop.create_future()
    loop.add_signal_handler(signal.SIGINT, stop.set_result, None)
    loop.add_signal_handler(signal.SIGTERM, stop.set_result, None)

    config_repr = pprint.pformat(config, indent=2)
    logger.info(f'Session configuration:\n{config_repr}')

    try:
        await session.join()
        logger.info(f'Joined room as {session.identity}')
        logger.info('Use ctrl-C to leave')
        closed = asyncio.ensure_future(session.wait_closed())
        await asyncio.wait(
            {closed, stop},
            return_when=asyncio.FIRST_COMPLETED,
        )
        if closed.done():
            closed.result()
        else:
            closed.cancel()
    finally:
        await session.close()
        await renderer.close()
        loop.remove_signal_handler(signal.SIGINT)
        loop.remove_signal_handler(signal.SIGTERM)

    logger.info('Left room')


@click.command()
@click.option('--config', '-c', 'config_path', help='Configuration file.')
@click.option('--domain', metavar='HOST', help='Domain of the room.')
@click.option('--identity', metavar='ID', help='Local participant identity.')
@click.option('--credential', metavar='SECRET', help='TURN credential.')
@click.option('--media-source', metavar='PATH', help='Media file or device.')
@click.option('--media-format', metavar='FORMAT', help='Media input format.')
@click.option('--audio-source', metavar='PATH', help='Separate audio device.')
@click.option('--no-audio', is_flag=True, help='Do not send audio.')
@click.option('--no-video', is_flag=True, help='Do not send video.')
@click.option('--record-dir', metavar='PATH', help='Record remote streams.')
@click.option('--log-dir', metavar='PATH', help='Logging directory.')
@click.option(
    '--log-level',
    type=click.Choice(
        ['CRITICAL', 'ERROR', 'WARNING', 'INFO', 'DEBUG'],
        case_sensitive=False,
    ),
    help='Minimum logging level.',
)
def cli(
    config_path: str | None,
    domain: str | None,
    identity: str | None,
    credential: str | None,
    media_source: str | None,
    media_format: str | None,
    audio_source: str | None,
    no_audio: bool,
    no_video: bool,
    record_dir: str | None,
    log_dir: str | None,
    log_level: str | None,
) -> None:
    """Join a room and connect to every other participant.

    Local media is read from a file or capture device and sent to every
    peer. Media received from peers is discarded unless a recording
    directory is given. The remaining CLI options override the options
    provided in the configuration file.
    """
    if config_path is not None:
        config = MeshConfig.from_toml(config_path)
    elif domain is not None:
        config = MeshConfig(room=RoomConfig(domain=domain))
    else:
        raise click.UsageError('One of --config or --domain is required.')

    # Override config with CLI options if given
    if domain is not None:
        config.room.domain = domain
    if identity is not None:
        config.room.identity = identity
    if credential is not None:
        config.room.credential = credential
    if media_source is not None:
        config.media.source = media_source
    if media_format is not None:
        config.media.format = media_format
    if audio_source is not None:
        config.media.audio_source = audio_source
    if no_audio:
        config.media.audio = False
    if no_video:
        config.media.video = False
    if record_dir is not None:
        config.record_dir = record_dir
    if log_dir is not None:
        config.logging.log_dir = log_dir
    if log_level is not None:
        config.logging.default_level = log_level.upper()

    if config.media.source is None:
        raise click.UsageError(
            'A media source is required. Use --media-source or set '
            'media.source in the configuration file.',
        )

    configure_logging(config.logging)

    try:
        asyncio.run(run(config))
    except MediaAcquisitionError as e:
        logger.error(f'Unable to capture local media: {e}')
        raise SystemExit(1) from e
    except ChannelClosedError as e:
        logger.error(f'Connection to the room was lost: {e}')
        raise SystemExit(1) from e
