"""Relay server configuration."""
from __future__ import annotations

import logging
import pathlib
import ssl
import sys

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    from typing import Self
else:  # pragma: <3.11 cover
    from typing_extensions import Self

from pydantic import BaseModel
from pydantic import Field
from pydantic import field_validator

from peerlink.utils.config import read

DEFAULT_MAX_MESSAGE_BYTES = 1024 * 1024


class RelayTLSConfig(BaseModel):
    """Certificate used to serve `wss://` connections.

    Attributes:
        certfile: Certificate chain in PEM format.
        keyfile: Private key. Read from `certfile` if omitted.
    """

    certfile: str
    keyfile: str | None = None

    def create_context(self) -> ssl.SSLContext:
        """Create a server-side SSL context with the certificate loaded."""
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        context.load_cert_chain(self.certfile, keyfile=self.keyfile)
        return context


class RelayLogConfig(BaseModel):
    """Relay logging options.

    Attributes:
        directory: Directory for log files rotated weekly. Logs only go to
            stdout if unset.
        level: Level of the root logger.
        websockets_level: Level of the `websockets` logger, which logs
            every frame at `DEBUG`.
        client_summary_interval: Seconds between summaries of the connected
            clients. No summaries are logged if unset.
        client_summary_limit: Clients are only listed individually when
            fewer than this many are connected.
    """

    directory: str | None = None
    level: str = 'INFO'
    websockets_level: str = 'WARNING'
    client_summary_interval: float | None = 60
    client_summary_limit: int | None = 32

    @field_validator('level', 'websockets_level')
    @classmethod
    def _level_validator(cls, v: str) -> str:
        level = v.upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f'Unknown logging level: {v}.')
        return level


class RelayConfig(BaseModel):
    """Relay server configuration.

    Attributes:
        host: Interface to bind to. Binds to all interfaces if unset.
        port: Port to bind to.
        max_message_bytes: Clients sending larger messages are
            disconnected. Offers and answers carry every gathered
            candidate so the limit should allow a few kilobytes. No limit
            is enforced if unset.
        tls: Serve `wss://` with this certificate instead of `ws://`.
        logging: Logging options.
    """

    host: str | None = None
    port: int = 8700
    max_message_bytes: int | None = DEFAULT_MAX_MESSAGE_BYTES
    tls: RelayTLSConfig | None = None
    logging: RelayLogConfig = Field(default_factory=RelayLogConfig)

    @field_validator('max_message_bytes')
    @classmethod
    def _max_message_bytes_validator(cls, v: int | None) -> int | None:
        if v is not None and v <= 0:
            raise ValueError('Max message bytes must be > 0.')
        return v

    @classmethod
    def from_toml(cls, filepath: str | pathlib.Path) -> Self:
        """Parse a TOML config file.

        Omitted options keep their defaults.

        Example:
            ```toml title="relay.toml"
            port = 8700
            max_message_bytes = 1048576

            [tls]
            certfile = "/etc/peerlink/fullchain.pem"
            keyfile = "/etc/peerlink/privkey.pem"

            [logging]
            directory = "/var/log/peerlink-relay"
            level = "INFO"
            client_summary_interval = 300
            ```
        """
        return read(cls, str(filepath))
