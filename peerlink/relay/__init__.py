"""Rendezvous relay server and the low-level client used to reach it."""
from __future__ import annotations

from peerlink.relay.client import RelayClient
from peerlink.relay.server import RelayServer
