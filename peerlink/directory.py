"""Directory of peers seen by this process."""
from __future__ import annotations

import dataclasses
import os
from typing import Protocol
from typing import runtime_checkable

from pydantic import BaseModel
from pydantic import Field

from peerlink.utils.config import read
from peerlink.utils.config import write
from peerlink.utils.environment import default_path

PEERS_FILE = 'peers.toml'


@dataclasses.dataclass(frozen=True)
class PeerRecord:
    """Last known details of a peer.

    Attributes:
        display_name: Name the peer last reported.
        last_seen: Unix timestamp of the last identity exchange.
    """

    display_name: str
    last_seen: float


@runtime_checkable
class PeerDirectory(Protocol):
    """Storage of peers keyed by stable identifier."""

    def record_peer(
        self,
        stable_id: str,
        display_name: str,
        last_seen: float,
    ) -> None:
        """Add or update a peer."""
        ...

    def list_peers(self) -> dict[str, PeerRecord]:
        """Get all known peers keyed by stable identifier."""
        ...

    def remove_peer(self, stable_id: str) -> None:
        """Forget a peer. No-op if the peer is unknown."""
        ...


class MemoryPeerDirectory:
    """Peer directory held in memory."""

    def __init__(self) -> None:
        self._peers: dict[str, PeerRecord] = {}

    def record_peer(
        self,
        stable_id: str,
        display_name: str,
        last_seen: float,
    ) -> None:
        """Add or update a peer."""
        self._peers[stable_id] = PeerRecord(display_name, last_seen)

    def list_peers(self) -> dict[str, PeerRecord]:
        """Get all known peers keyed by stable identifier."""
        return dict(self._peers)

    def remove_peer(self, stable_id: str) -> None:
        """Forget a peer. No-op if the peer is unknown."""
        self._peers.pop(stable_id, None)


class _PeerEntry(BaseModel):
    display_name: str
    last_seen: float


class _PeersFile(BaseModel):
    peers: dict[str, _PeerEntry] = Field(default_factory=dict)


class FilePeerDirectory:
    """Peer directory persisted to a TOML file.

    Args:
        filepath: Path to the directory file. Defaults to `peers.toml`
            in the peerlink home directory.
    """

    def __init__(self, filepath: str | None = None) -> None:
        self.filepath = (
            default_path(PEERS_FILE) if filepath is None else filepath
        )

    def _load(self) -> _PeersFile:
        if not os.path.exists(self.filepath):
            return _PeersFile()
        return read(_PeersFile, self.filepath)

    def record_peer(
        self,
        stable_id: str,
        display_name: str,
        last_seen: float,
    ) -> None:
        """Add or update a peer."""
        data = self._load()
        data.peers[stable_id] = _PeerEntry(
            display_name=display_name,
            last_seen=last_seen,
        )
        write(data, self.filepath)

    def list_peers(self) -> dict[str, PeerRecord]:
        """Get all known peers keyed by stable identifier."""
        return {
            stable_id: PeerRecord(entry.display_name, entry.last_seen)
            for stable_id, entry in self._load().peers.items()
        }

    def remove_peer(self, stable_id: str) -> None:
        """Forget a peer. No-op if the peer is unknown."""
        data = self._load()
        if data.peers.pop(stable_id, None) is not None:
            write(data, self.filepath)
