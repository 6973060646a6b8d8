from __future__ import annotations

from unittest import mock

from peerlink.relay.manager import Client
from peerlink.relay.manager import ClientManager


def _client(address: str) -> Client:
    return Client(address=address, websocket=mock.MagicMock())


def test_add_and_get_clients() -> None:
    manager = ClientManager()
    client = _client('a')
    manager.add_client(client)

    assert manager.get_clients() == [client]
    assert manager.get_client_by_address('a') is client
    assert manager.get_client_by_websocket(client.websocket) is client
    assert manager.get_client_by_address('b') is None


def test_links_are_symmetric() -> None:
    manager = ClientManager()
    manager.add_client(_client('a'))
    manager.add_client(_client('b'))

    manager.add_link('a', 'b')
    assert manager.get_links('a') == {'b'}
    assert manager.get_links('b') == {'a'}

    manager.remove_link('b', 'a')
    assert manager.get_links('a') == set()
    assert manager.get_links('b') == set()


def test_remove_client_drops_links() -> None:
    manager = ClientManager()
    a, b, c = _client('a'), _client('b'), _client('c')
    for client in (a, b, c):
        manager.add_client(client)
    manager.add_link('a', 'b')
    manager.add_link('a', 'c')

    assert manager.remove_client(a) == {'b', 'c'}
    assert manager.get_client_by_address('a') is None
    assert manager.get_client_by_websocket(a.websocket) is None
    assert manager.get_links('b') == set()
    assert manager.get_links('c') == set()


def test_remove_missing_link_is_noop() -> None:
    manager = ClientManager()
    manager.remove_link('x', 'y')
    assert manager.get_links('x') == set()


def test_client_repr() -> None:
    client = _client('123456')
    assert 'address=123456' in repr(client)
