from __future__ import annotations

import pathlib
import ssl

import pydantic
import pytest

from peerlink.relay.config import DEFAULT_MAX_MESSAGE_BYTES
from peerlink.relay.config import RelayConfig
from peerlink.relay.config import RelayLogConfig
from peerlink.relay.config import RelayTLSConfig
from testing.ssl import SSLContextFixture


def test_default_config() -> None:
    config = RelayConfig()
    assert config.port == 8700
    assert config.max_message_bytes == DEFAULT_MAX_MESSAGE_BYTES
    assert config.tls is None
    assert config.logging.level == 'INFO'
    assert config.logging.directory is None


def test_log_levels_normalized() -> None:
    config = RelayLogConfig(level='debug', websockets_level='Error')
    assert config.level == 'DEBUG'
    assert config.websockets_level == 'ERROR'


def test_unknown_log_level() -> None:
    with pytest.raises(pydantic.ValidationError, match='Unknown logging'):
        RelayLogConfig(level='LOUD')


@pytest.mark.parametrize('size', (0, -1))
def test_invalid_max_message_bytes(size: int) -> None:
    with pytest.raises(pydantic.ValidationError, match='must be > 0'):
        RelayConfig(max_message_bytes=size)


def test_unlimited_message_size() -> None:
    assert RelayConfig(max_message_bytes=None).max_message_bytes is None


def test_tls_create_context(ssl_context: SSLContextFixture) -> None:
    tls = RelayTLSConfig(
        certfile=ssl_context.certfile,
        keyfile=ssl_context.keyfile,
    )
    context = tls.create_context()
    assert isinstance(context, ssl.SSLContext)
    assert context.protocol == ssl.PROTOCOL_TLS_SERVER


def test_from_toml_empty(tmp_path: pathlib.Path) -> None:
    filepath = tmp_path / 'relay.toml'
    filepath.write_text('')
    assert RelayConfig.from_toml(filepath) == RelayConfig()


def test_from_toml(tmp_path: pathlib.Path) -> None:
    filepath = tmp_path / 'relay.toml'
    filepath.write_text(
        """\
host = "localhost"
port = 1234
max_message_bytes = 65536

[tls]
certfile = "/certs/fullchain.pem"

[logging]
directory = "/var/log/relay"
level = "warning"
client_summary_interval = 3
client_summary_limit = 5
""",
    )

    config = RelayConfig.from_toml(filepath)
    assert config.host == 'localhost'
    assert config.port == 1234
    assert config.max_message_bytes == 65536
    assert config.tls == RelayTLSConfig(certfile='/certs/fullchain.pem')
    assert config.logging == RelayLogConfig(
        directory='/var/log/relay',
        level='WARNING',
        client_summary_interval=3,
        client_summary_limit=5,
    )
