from __future__ import annotations

import os
import pathlib
import uuid

from peerlink.identity import DEFAULT_DISPLAY_NAME
from peerlink.identity import FileIdentityProvider
from peerlink.identity import IDENTITY_FILE
from peerlink.identity import Identity
from peerlink.identity import IdentityProvider
from peerlink.identity import StaticIdentityProvider


def test_static_provider() -> None:
    identity = Identity(stable_id='abc', display_name='Alice')
    provider = StaticIdentityProvider(identity)
    assert isinstance(provider, IdentityProvider)
    assert provider.get_local_identity() == identity


def test_file_provider_default_path(peerlink_home: str) -> None:
    provider = FileIdentityProvider()
    assert provider.filepath == os.path.join(peerlink_home, IDENTITY_FILE)


def test_file_provider_generates_identity(tmp_path: pathlib.Path) -> None:
    filepath = tmp_path / 'identity.toml'
    provider = FileIdentityProvider(str(filepath))

    identity = provider.get_local_identity()
    assert filepath.exists()
    uuid.UUID(identity.stable_id)
    assert identity.display_name == DEFAULT_DISPLAY_NAME

    # Stable across providers and calls
    other = FileIdentityProvider(str(filepath))
    assert other.get_local_identity() == identity


def test_file_provider_set_display_name(tmp_path: pathlib.Path) -> None:
    filepath = str(tmp_path / 'identity.toml')
    provider = FileIdentityProvider(filepath)
    original = provider.get_local_identity()

    updated = provider.set_display_name('Bob')
    assert updated == Identity(original.stable_id, 'Bob')
    assert FileIdentityProvider(filepath).get_local_identity() == updated


def test_file_provider_reads_existing(tmp_path: pathlib.Path) -> None:
    filepath = tmp_path / 'identity.toml'
    filepath.write_text('stable_id = "abc"\n')

    identity = FileIdentityProvider(str(filepath)).get_local_identity()
    assert identity == Identity('abc', DEFAULT_DISPLAY_NAME)
