"""Peer session configuration."""
from __future__ import annotations

import pathlib
import sys

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    from typing import Self
else:  # pragma: <3.11 cover
    from typing_extensions import Self

from pydantic import BaseModel
from pydantic import Field
from pydantic import field_validator

from peerlink.utils.config import read
from peerlink.utils.config import write

CONFIG_FILE = 'config.toml'
DEFAULT_ICE_SERVERS = ('stun:stun.l.google.com:19302',)


class ReconnectConfig(BaseModel):
    """Reconnection policy of joining sessions.

    The `n`-th retry after consecutive failures is delayed by
    `base_delay * n` seconds.

    Attributes:
        base_delay: Seconds added to the delay for each failed attempt.
        max_attempts: Number of automatic retries before giving up.
    """

    base_delay: float = 1.0
    max_attempts: int = 5

    @field_validator('base_delay')
    @classmethod
    def _base_delay_validator(cls, v: float) -> float:
        if v <= 0:
            raise ValueError('Base delay must be > 0.')
        return v

    @field_validator('max_attempts')
    @classmethod
    def _max_attempts_validator(cls, v: int) -> int:
        if v < 0:
            raise ValueError('Max attempts must be >= 0.')
        return v


class PeerLinkConfig(BaseModel):
    """Configuration of a peer session process.

    Attributes:
        relay_address: Address of the relay server. Must start with `ws://`
            or `wss://`.
        host_address: Address to claim when hosting if none is given
            explicitly. Updated after hosting so the same address is reused.
        ice_servers: STUN/TURN server URLs used for candidate gathering.
        negotiation_timeout: Seconds a join attempt may take to open the
            direct channel before it counts as failed.
        verify_certificate: Validate the relay server's SSL certificate.
        reconnect: Reconnection policy.
    """

    relay_address: str = 'ws://localhost:8700'
    host_address: str | None = None
    ice_servers: list[str] = Field(
        default_factory=lambda: list(DEFAULT_ICE_SERVERS),
    )
    negotiation_timeout: float = 30
    verify_certificate: bool = True
    reconnect: ReconnectConfig = Field(default_factory=ReconnectConfig)

    @field_validator('relay_address')
    @classmethod
    def _relay_address_validator(cls, v: str) -> str:
        if not (v.startswith('ws://') or v.startswith('wss://')):
            raise ValueError('Relay address must start with ws:// or wss://.')
        return v

    @field_validator('negotiation_timeout')
    @classmethod
    def _negotiation_timeout_validator(cls, v: float) -> float:
        if v <= 0:
            raise ValueError('Negotiation timeout must be > 0.')
        return v

    @classmethod
    def from_toml(cls, filepath: str | pathlib.Path) -> Self:
        """Parse a TOML config file.

        Example:
            ```toml title="config.toml"
            relay_address = "wss://relay.example.com"
            host_address = "123456"
            ice_servers = ["stun:stun.l.google.com:19302"]
            negotiation_timeout = 30

            [reconnect]
            base_delay = 1.0
            max_attempts = 5
            ```
        """
        return read(cls, str(filepath))

    def write_toml(self, filepath: str | pathlib.Path) -> None:
        """Write the configuration to a TOML file."""
        write(self, str(filepath))
