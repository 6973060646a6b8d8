"""Local identity of this process."""
from __future__ import annotations

import dataclasses
import logging
import os
import uuid
from typing import Protocol
from typing import runtime_checkable

from pydantic import BaseModel

from peerlink.utils.config import read
from peerlink.utils.config import write
from peerlink.utils.environment import default_path

logger = logging.getLogger(__name__)

IDENTITY_FILE = 'identity.toml'
DEFAULT_DISPLAY_NAME = 'Anonymous'


@dataclasses.dataclass(frozen=True)
class Identity:
    """Self-reported identity of a participant.

    Attributes:
        stable_id: Identifier that persists across sessions.
        display_name: Human readable name.
    """

    stable_id: str
    display_name: str


@runtime_checkable
class IdentityProvider(Protocol):
    """Supplies the local identity to peer sessions."""

    def get_local_identity(self) -> Identity:
        """Get the identity of this process."""
        ...


class StaticIdentityProvider:
    """Identity provider returning a fixed identity."""

    def __init__(self, identity: Identity) -> None:
        self._identity = identity

    def get_local_identity(self) -> Identity:
        """Get the identity of this process."""
        return self._identity


class _IdentityFile(BaseModel):
    stable_id: str
    display_name: str = DEFAULT_DISPLAY_NAME


class FileIdentityProvider:
    """Identity provider persisted to a TOML file.

    A random UUID is generated and written the first time the identity
    is requested if the file does not exist yet.

    Args:
        filepath: Path to the identity file. Defaults to `identity.toml`
            in the peerlink home directory.
    """

    def __init__(self, filepath: str | None = None) -> None:
        self.filepath = (
            default_path(IDENTITY_FILE) if filepath is None else filepath
        )

    def _load(self) -> _IdentityFile:
        if os.path.exists(self.filepath):
            return read(_IdentityFile, self.filepath)
        data = _IdentityFile(stable_id=str(uuid.uuid4()))
        write(data, self.filepath)
        logger.info(
            f'Generated new identity {data.stable_id} in {self.filepath}',
        )
        return data

    def get_local_identity(self) -> Identity:
        """Get the identity of this process."""
        data = self._load()
        return Identity(
            stable_id=data.stable_id,
            display_name=data.display_name,
        )

    def set_display_name(self, name: str) -> Identity:
        """Change the persisted display name.

        Returns:
            The updated identity.
        """
        data = self._load()
        data.display_name = name
        write(data, self.filepath)
        return Identity(stable_id=data.stable_id, display_name=name)
