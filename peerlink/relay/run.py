"""Command line entry point and serving loop of the relay server."""
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
from websockets.asyncio.server import serve as websockets_serve

from peerlink.relay.config import RelayConfig
from peerlink.relay.config import RelayTLSConfig
from peerlink.relay.server import RelayServer
from peerlink.utils.tasks import cancel_and_wait
from peerlink.utils.tasks import spawn_guarded_background_task

logger = logging.getLogger(__name__)


def log_clients_periodically(
    server: RelayServer,
    interval: float,
    limit: int | None = None,
    level: int = logging.INFO,
) -> asyncio.Task[None]:
    """Start a task that logs a summary of the connected clients.

    Args:
        server: Relay server to summarize.
        interval: Seconds between summaries.
        limit: List each client's address and connection time when fewer
            than this many are connected. Only the count is logged if
            `None`.
        level: Logging level of the summaries.

    Returns:
        The logging task. Cancel it to stop logging.
    """

    async def _log() -> None:
        while True:
            await asyncio.sleep(interval)
            clients = server.client_manager.get_clients()
            summary = f'Connected clients: {len(clients)}'
            if limit is not None and 0 < len(clients) < limit:
                listing = sorted(repr(client) for client in clients)
                summary = '\n  '.join([summary, *listing])
            logger.log(level, summary)

    return spawn_guarded_background_task(_log, name='relay-client-summary')


async def serve(config: RelayConfig) -> None:
    """Serve a [`RelayServer`][peerlink.relay.server.RelayServer].

    Runs until the process receives SIGINT or SIGTERM. Logging is not
    configured here; see
    [`configure_logging()`][peerlink.relay.run.configure_logging].

    Args:
        config: Relay configuration.
    """
    server = RelayServer(max_message_bytes=config.max_message_bytes)
    ssl_context = None if config.tls is None else config.tls.create_context()

    loop = asyncio.get_running_loop()
    stop = loop.create_future()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, stop.set_result, None)

    summary_task: asyncio.Task[None] | None = None
    if config.logging.client_summary_interval is not None:
        summary_task = log_clients_periodically(
            server,
            config.logging.client_summary_interval,
            config.logging.client_summary_limit,
            level=logging.getLevelName(config.logging.level),
        )

    logger.info(f'Relay configuration:\n{pprint.pformat(config, indent=2)}')

    async with websockets_serve(
        server.handler,
        config.host,
        config.port,
        logger=None,
        ssl=ssl_context,
    ):
        scheme = 'ws' if ssl_context is None else 'wss'
        logger.info(
            f'Relay server accepting {scheme}:// connections on port '
            f'{config.port} (ctrl-C to stop)',
        )
        await stop

    await cancel_and_wait(summary_task)
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.remove_signal_handler(signum)
    logger.info('Relay server stopped')


def configure_logging(
    level: int | str,
    log_dir: str | None = None,
    websockets_level: int | str = logging.WARNING,
) -> None:
    """Configure the root logger of the relay process.

    Args:
        level: Minimum logging level.
        log_dir: If set, logs are also written to `relay.log` in this
            directory, rotated every Sunday at midnight.
        websockets_level: Level of the `websockets` logger.
    """
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_dir is not None:
        os.makedirs(log_dir, exist_ok=True)
        handlers.append(
            logging.handlers.TimedRotatingFileHandler(
                os.path.join(log_dir, 'relay.log'),
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
        level=level,
        handlers=handlers,
    )
    logging.getLogger('websockets').setLevel(websockets_level)


@click.command()
@click.option('--config', '-c', 'config_path', help='TOML configuration.')
@click.option('--host', metavar='ADDR', help='Interface to bind to.')
@click.option('--port', type=int, metavar='PORT', help='Port to bind to.')
@click.option('--certfile', metavar='PATH', help='TLS certificate (PEM).')
@click.option('--keyfile', metavar='PATH', help='TLS private key.')
@click.option('--log-dir', metavar='PATH', help='Log file directory.')
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
    host: str | None,
    port: int | None,
    certfile: str | None,
    keyfile: str | None,
    log_dir: str | None,
    log_level: str | None,
) -> None:
    """Run a peerlink relay server.

    Peers use the relay to claim addresses and to exchange the offer and
    answer that open their direct channel. Options given on the command
    line override the configuration file, and
    [`RelayConfig()`][peerlink.relay.config.RelayConfig] defaults are used
    when no file is given.
    """
    config = (
        RelayConfig()
        if config_path is None
        else RelayConfig.from_toml(config_path)
    )

    if host is not None:
        config.host = host
    if port is not None:
        config.port = port
    if certfile is not None:
        config.tls = RelayTLSConfig(certfile=certfile, keyfile=keyfile)
    elif keyfile is not None:
        raise click.UsageError('--keyfile requires --certfile.')
    if log_dir is not None:
        config.logging.directory = log_dir
    if log_level is not None:
        config.logging.level = log_level.upper()

    configure_logging(
        config.logging.level,
        log_dir=config.logging.directory,
        websockets_level=config.logging.websockets_level,
    )

    asyncio.run(serve(config))
