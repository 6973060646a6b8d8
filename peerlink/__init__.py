"""Direct peer-to-peer sessions negotiated over a rendezvous relay.

Peers claim an address on a lightweight relay server, exchange a single
offer and answer through it, and then move all traffic onto a direct
[aiortc](https://aiortc.readthedocs.io/){target=_blank} data channel.

* [`RendezvousClient`][peerlink.rendezvous.RendezvousClient] manages the
  relay address, the logical links to other addresses and the blocklist.
* [`TransportNegotiator`][peerlink.transport.TransportNegotiator] owns one
  `RTCPeerConnection` per peer and reports its state transitions.
* [`SessionOrchestrator`][peerlink.orchestrator.SessionOrchestrator] ties
  the two together, exchanges identities and reconnects lost sessions.
"""
from __future__ import annotations

import logging

__version__ = '0.1.0'

# Configure default logging to not print anything
logging.getLogger('peerlink').addHandler(logging.NullHandler())
