from __future__ import annotations

import pathlib
from typing import Generator

import pytest

# Import fixtures from testing/ so they are known by pytest
# and can be used with
from testing.relay_server import relay_server
from testing.ssl import ssl_context


@pytest.fixture(autouse=True)
def peerlink_home(
    tmp_path: pathlib.Path,
    monkeypatch: pytest.MonkeyPatch,
) -> Generator[str, None, None]:
    """Point the peerlink home directory at a temporary directory."""
    home = tmp_path / 'peerlink-home'
    monkeypatch.setenv('PEERLINK_HOME', str(home))
    yield str(home)
