from __future__ import annotations

import pathlib
from typing import Optional

from pydantic import BaseModel

from peerlink.utils.config import dump
from peerlink.utils.config import dumps
from peerlink.utils.config import load
from peerlink.utils.config import loads
from peerlink.utils.config import read
from peerlink.utils.config import write


class _Backoff(BaseModel):
    base_delay: float
    max_attempts: int


class _Config(BaseModel):
    relay_address: str
    verify: bool
    ice_servers: list[str]
    backoff: _Backoff


TEST_CONFIG = _Config(
    relay_address='ws://localhost:8700',
    verify=False,
    ice_servers=['stun:a', 'stun:b'],
    backoff=_Backoff(base_delay=0.5, max_attempts=3),
)
TEST_CONFIG_REPR = """\
relay_address = "ws://localhost:8700"
verify = false
ice_servers = [
    "stun:a",
    "stun:b",
]

[backoff]
base_delay = 0.5
max_attempts = 3
"""


def test_dump(tmp_path: pathlib.Path) -> None:
    filepath = tmp_path / 'test.toml'

    with open(filepath, 'wb') as f:
        dump(TEST_CONFIG, f)

    with open(filepath) as f:
        assert f.read() == TEST_CONFIG_REPR


def test_dump_drops_none_values(tmp_path: pathlib.Path) -> None:
    filepath = tmp_path / 'test.toml'

    class _Optional(BaseModel):
        field1: Optional[str] = None  # noqa: UP007
        field2: str = 'abc'

    with open(filepath, 'wb') as fw:
        dump(_Optional(), fw)

    with open(filepath) as fr:
        data = fr.read()

    assert 'field1' not in data
    assert 'field2' in data


def test_dumps() -> None:
    assert dumps(TEST_CONFIG) == TEST_CONFIG_REPR


def test_load(tmp_path: pathlib.Path) -> None:
    filepath = tmp_path / 'test.toml'

    with open(filepath, 'w') as f:
        f.write(TEST_CONFIG_REPR)

    with open(filepath, 'rb') as f:
        assert load(_Config, f) == TEST_CONFIG


def test_loads() -> None:
    assert loads(_Config, TEST_CONFIG_REPR) == TEST_CONFIG


def test_write_creates_parents(tmp_path: pathlib.Path) -> None:
    filepath = tmp_path / 'a' / 'b' / 'test.toml'
    write(TEST_CONFIG, str(filepath))
    assert read(_Config, str(filepath)) == TEST_CONFIG
