"""`peerlink` command-line interface.

Commands log their results rather than printing so output format follows
the `--log-level` and formatter configured by the
[`cli`][peerlink.cli.cli] group.
"""
from __future__ import annotations

import asyncio
import contextlib
import datetime
import logging
import os
import sys
import threading
from typing import ClassVar

import click

import peerlink
from peerlink.config import CONFIG_FILE
from peerlink.config import PeerLinkConfig
from peerlink.directory import FilePeerDirectory
from peerlink.exceptions import AddressTakenError
from peerlink.exceptions import ReconnectExhaustedError
from peerlink.identity import FileIdentityProvider
from peerlink.orchestrator import SessionOrchestrator
from peerlink.state import TransportState
from peerlink.utils.environment import default_path

logger = logging.getLogger(__name__)


class _CLIFormatter(logging.Formatter):
    """Custom format for CLI printing.

    Source: https://stackoverflow.com/questions/1343227
    """

    grey = '\x1b[0;30m'
    red = '\x1b[0;31m'
    green = '\x1b[0;32m'
    yellow = '\x1b[0;33m'
    cyan = '\x1b[0;36m'
    bold_red = '\x1b[1;31m'
    reset = '\x1b[0m'

    FORMATS: ClassVar[dict[int, str]] = {
        logging.DEBUG: f'{cyan}DEBUG:{reset} %(message)s',
        logging.INFO: f'{green}INFO:{reset} %(message)s',
        logging.WARNING: f'{yellow}WARNING:{reset} %(message)s',
        logging.ERROR: f'{red}ERROR:{reset} %(message)s',
        logging.CRITICAL: f'{bold_red}CRITICAL:{reset} %(message)s',
    }

    def format(self, record: logging.LogRecord) -> str:  # pragma: no cover
        if hasattr(record, 'simple') and record.simple:
            return record.getMessage()
        else:
            formatter = logging.Formatter(self.FORMATS[record.levelno])
            return formatter.format(record)


class _LoggingStatusSink:
    """Status sink that logs session changes and remembers failures."""

    def __init__(self, stopped: asyncio.Event) -> None:
        self.stopped = stopped
        self.failed = False

    def on_session_state_changed(
        self,
        address: str,
        state: TransportState,
    ) -> None:
        logger.info(f'Session with {address} is {state.name}')

    def on_session_failed(
        self,
        address: str,
        error: ReconnectExhaustedError,
    ) -> None:
        logger.error(f'Session with {address} failed: {error}')
        self.failed = True
        self.stopped.set()


async def _log_payload(data: bytes, address: str) -> None:
    text = data.decode(errors='replace')
    logger.info(f'[{address}] {text}', extra={'simple': True})


def _read_stdin(
    loop: asyncio.AbstractEventLoop,
    lines: asyncio.Queue[str | None],
) -> None:
    # Runs in a daemon thread so a blocked read never delays shutdown
    with contextlib.suppress(RuntimeError):
        for line in sys.stdin:
            loop.call_soon_threadsafe(lines.put_nowait, line)
        loop.call_soon_threadsafe(lines.put_nowait, None)


async def _forward_stdin(
    orchestrator: SessionOrchestrator,
    stopped: asyncio.Event,
    address: str | None,
) -> None:
    loop = asyncio.get_running_loop()
    lines: asyncio.Queue[str | None] = asyncio.Queue()
    threading.Thread(
        target=_read_stdin,
        args=(loop, lines),
        daemon=True,
    ).start()

    stop_task = asyncio.ensure_future(stopped.wait())
    try:
        while True:
            line_task = asyncio.ensure_future(lines.get())
            done, _ = await asyncio.wait(
                {line_task, stop_task},
                return_when=asyncio.FIRST_COMPLETED,
            )
            if stop_task in done:
                line_task.cancel()
                return
            line = line_task.result()
            if line is None:
                return
            await orchestrator.send_payload(
                line.rstrip('\n').encode(),
                address,
            )
    finally:
        stop_task.cancel()


async def run_session(
    config: PeerLinkConfig,
    *,
    config_path: str | None = None,
    host_address: str | None = None,
    join_address: str | None = None,
) -> int:
    """Host or join a session until stdin closes or the session fails.

    Lines read from stdin are sent as payloads, to every joiner when
    hosting. Received payloads and session state changes are logged.

    Args:
        config: Session configuration.
        config_path: If hosting, the claimed address is saved to this config
            file so the next run reuses it.
        host_address: Address to host on. Ignored if `join_address` is set.
        join_address: Address of the host to join.

    Returns:
        Exit code.
    """
    stopped = asyncio.Event()
    sink = _LoggingStatusSink(stopped)
    orchestrator = SessionOrchestrator.from_config(
        config,
        FileIdentityProvider(),
        directory=FilePeerDirectory(),
        status_sink=sink,
        on_payload=_log_payload,
    )
    async with orchestrator:
        if join_address is None:
            try:
                address = await orchestrator.start_hosting(host_address)
            except AddressTakenError as e:
                logger.error(str(e))
                return 1
            logger.info(f'Hosting on address {address}')
            if config_path is not None and config.host_address != address:
                config.host_address = address
                config.write_toml(config_path)
            target = None
        else:
            await orchestrator.start_joining(join_address)
            logger.info(f'Joining host {join_address}')
            target = join_address

        await _forward_stdin(orchestrator, stopped, target)
        # Every peer is told the session ended so none of them retries
        for address in [s.peer_address for s in orchestrator.sessions]:
            await orchestrator.disconnect(address)

    return 1 if sink.failed else 0


def _load_config(config_path: str) -> PeerLinkConfig:
    if os.path.exists(config_path):
        return PeerLinkConfig.from_toml(config_path)
    return PeerLinkConfig()


@click.group()
@click.option(
    '--log-level',
    default='INFO',
    type=click.Choice(
        ['ERROR', 'WARNING', 'INFO', 'DEBUG'],
        case_sensitive=False,
    ),
    help='Minimum logging level.',
)
@click.option(
    '--config',
    '-c',
    'config_path',
    metavar='PATH',
    help='Configuration file. Defaults to config.toml in $PEERLINK_HOME.',
)
@click.pass_context
def cli(ctx: click.Context, log_level: str, config_path: str | None) -> None:
    """Host and join direct peer-to-peer sessions."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(_CLIFormatter())
    logging.basicConfig(level=log_level.upper(), handlers=[handler])
    logging.getLogger('websockets').setLevel(logging.WARNING)
    logging.getLogger('aioice').setLevel(logging.WARNING)
    ctx.ensure_object(dict)
    ctx.obj['CONFIG_PATH'] = (
        default_path(CONFIG_FILE) if config_path is None else config_path
    )


@cli.command(name='help')
def show_help() -> None:
    """Show available commands and options."""
    with click.Context(cli) as ctx:
        click.echo(cli.get_help(ctx))


@cli.command()
def version() -> None:
    """Show the peerlink version."""
    click.echo(f'peerlink v{peerlink.__version__}')


@cli.group()
def identity() -> None:
    """Show or change the local identity."""
    pass


@identity.command(name='show')
def identity_show() -> None:
    """Show the local identity."""
    local = FileIdentityProvider().get_local_identity()
    logger.info(f'Stable ID:     {local.stable_id}')
    logger.info(f'Display name:  {local.display_name}')


@identity.command(name='set-name')
@click.argument('name', metavar='NAME', required=True)
def identity_set_name(name: str) -> None:
    """Change the display name sent to peers."""
    if not name.strip():
        logger.error('Display name cannot be empty.')
        raise SystemExit(1)
    local = FileIdentityProvider().set_display_name(name.strip())
    logger.info(f'Display name set to {local.display_name}')


@cli.group()
def peers() -> None:
    """Manage the directory of known peers."""
    pass


@peers.command(name='list')
def peers_list() -> None:
    """List peers seen in previous sessions."""
    directory = FilePeerDirectory()
    records = directory.list_peers()
    if len(records) == 0:
        logger.info(f'No known peers in {directory.filepath}.')
        return

    entries = sorted(
        records.items(),
        key=lambda item: item[1].last_seen,
        reverse=True,
    )
    max_name_chars = max(
        [len('NAME')] + [len(r.display_name) for _, r in entries],
    )
    logger.info(
        f'{"NAME":<{max_name_chars}} {"LAST SEEN":<19} STABLE ID',
        extra={'simple': True},
    )
    toprule_len = 2 + max_name_chars + 19 + len(entries[0][0])
    logger.info('=' * toprule_len, extra={'simple': True})
    for stable_id, record in entries:
        seen = datetime.datetime.fromtimestamp(record.last_seen)
        logger.info(
            f'{record.display_name:<{max_name_chars}} '
            f'{seen:%Y-%m-%d %H:%M:%S} {stable_id}',
            extra={'simple': True},
        )


@peers.command(name='remove')
@click.argument('stable_id', metavar='STABLE_ID', required=True)
def peers_remove(stable_id: str) -> None:
    """Forget a known peer."""
    directory = FilePeerDirectory()
    if stable_id not in directory.list_peers():
        logger.error(f'No peer with stable ID {stable_id} is known.')
        raise SystemExit(1)
    directory.remove_peer(stable_id)
    logger.info(f'Removed peer {stable_id}')


@cli.command()
@click.argument('address', metavar='ADDRESS', required=False)
@click.pass_context
def host(ctx: click.Context, address: str | None) -> None:
    """Host a session that peers can join.

    Claims ADDRESS on the relay server, or the address used last time if
    omitted. Lines typed on stdin are sent to every joined peer.
    """
    config_path = ctx.obj['CONFIG_PATH']
    config = _load_config(config_path)
    raise SystemExit(
        asyncio.run(
            run_session(
                config,
                config_path=config_path,
                host_address=address,
            ),
        ),
    )


@cli.command()
@click.argument('host_address', metavar='HOST_ADDRESS', required=True)
@click.pass_context
def join(ctx: click.Context, host_address: str) -> None:
    """Join the session hosted at HOST_ADDRESS.

    Lines typed on stdin are sent to the host.
    """
    config = _load_config(ctx.obj['CONFIG_PATH'])
    raise SystemExit(
        asyncio.run(run_session(config, join_address=host_address)),
    )
