"""Helper classes for managing clients connected to a relay server."""
from __future__ import annotations

import dataclasses
import datetime

from websockets.asyncio.server import ServerConnection


def _utc_current_time() -> datetime.datetime:
    # dataclasses.field's default_factory requires a zero argument callable
    return datetime.datetime.now(tz=datetime.timezone.utc)


@dataclasses.dataclass(frozen=True, eq=False)
class Client:
    """Representation of a registered client connection.

    Attributes:
        address: Address claimed by the client.
        websocket: WebSocket connection to the client.
        created: Time the client registered.
    """

    address: str
    websocket: ServerConnection
    created: datetime.datetime = dataclasses.field(
        default_factory=_utc_current_time,
    )

    def __repr__(self) -> str:
        created = self.created.strftime('%Y-%m-%d %H:%M:%S %Z')
        remote = str(self.websocket.remote_address)
        return (
            f'{self.__class__.__name__}(address={self.address}, '
            f'remote={remote}, created={created})'
        )


class ClientManager:
    """Manages registered clients and the links between them.

    Warning:
        This class is intended for internal use by the
        [`RelayServer`][peerlink.relay.server.RelayServer].
    """

    def __init__(self) -> None:
        self._clients_by_address: dict[str, Client] = {}
        self._clients_by_websocket: dict[ServerConnection, Client] = {}
        self._links: dict[str, set[str]] = {}

    def add_client(self, client: Client) -> None:
        """Add a newly registered client."""
        self._clients_by_address[client.address] = client
        self._clients_by_websocket[client.websocket] = client
        self._links.setdefault(client.address, set())

    def get_clients(self) -> list[Client]:
        """Get a list of all clients."""
        return list(self._clients_by_address.values())

    def get_client_by_address(self, address: str) -> Client | None:
        """Get a client by its registered address."""
        return self._clients_by_address.get(address, None)

    def get_client_by_websocket(
        self,
        websocket: ServerConnection,
    ) -> Client | None:
        """Get a client by the current websocket connection."""
        return self._clients_by_websocket.get(websocket, None)

    def remove_client(self, client: Client) -> set[str]:
        """Remove a client.

        Returns:
            Addresses the client was linked with. These links are removed.
        """
        self._clients_by_address.pop(client.address, None)
        self._clients_by_websocket.pop(client.websocket, None)
        linked = self._links.pop(client.address, set())
        for address in linked:
            self._links.get(address, set()).discard(client.address)
        return linked

    def add_link(self, first: str, second: str) -> None:
        """Record an open link between two addresses."""
        self._links.setdefault(first, set()).add(second)
        self._links.setdefault(second, set()).add(first)

    def remove_link(self, first: str, second: str) -> None:
        """Forget the link between two addresses if it exists."""
        self._links.get(first, set()).discard(second)
        self._links.get(second, set()).discard(first)

    def get_links(self, address: str) -> set[str]:
        """Get the addresses linked with `address`."""
        return set(self._links.get(address, set()))
