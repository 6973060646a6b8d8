from __future__ import annotations

import asyncio
import logging
from unittest import mock
from unittest.mock import AsyncMock

import pytest
import websockets.exceptions
from websockets.asyncio.client import connect
from websockets.protocol import State

from peerlink.relay.exceptions import AddressInUseError
from peerlink.relay.exceptions import ForbiddenError
from peerlink.relay.manager import Client
from peerlink.relay.messages import decode_relay_message
from peerlink.relay.messages import encode_relay_message
from peerlink.relay.messages import LinkAccepted
from peerlink.relay.messages import LinkClosed
from peerlink.relay.messages import LinkRequest
from peerlink.relay.messages import RelayData
from peerlink.relay.messages import RelayMessage
from peerlink.relay.messages import RelayRegistrationRequest
from peerlink.relay.messages import RelayResponse
from peerlink.relay.server import RelayServer
from testing.relay_server import RelayServerInfo

_WAIT_FOR = 1


def get_mock_websocket(state: State = State.OPEN) -> mock.MagicMock:
    websocket = mock.MagicMock()
    websocket.send = AsyncMock()
    websocket.close = AsyncMock()
    websocket.state = state
    websocket.remote_address = ('127.0.0.1', 1234)
    return websocket


def sent_messages(websocket: mock.MagicMock) -> list[RelayMessage]:
    return [
        decode_relay_message(call.args[0])
        for call in websocket.send.await_args_list
    ]


async def register(server: RelayServer, address: str) -> Client:
    websocket = get_mock_websocket()
    await server.register(websocket, RelayRegistrationRequest(address))
    client = server.client_manager.get_client_by_address(address)
    assert client is not None
    websocket.send.reset_mock()
    return client


@pytest.mark.asyncio()
async def test_server_send() -> None:
    server = RelayServer()
    websocket = get_mock_websocket()
    await server.send(websocket, RelayResponse())
    websocket.send.assert_awaited_once()


@pytest.mark.asyncio()
async def test_server_send_encoding_error(caplog) -> None:
    caplog.set_level(logging.ERROR)
    server = RelayServer()
    await server.send(get_mock_websocket(), object())  # type: ignore[arg-type]
    assert len(caplog.records) == 1
    assert 'Cannot encode' in caplog.records[0].message


@pytest.mark.asyncio()
async def test_server_send_connection_closed(caplog) -> None:
    caplog.set_level(logging.ERROR)
    server = RelayServer()
    websocket = get_mock_websocket()
    websocket.send.side_effect = websockets.exceptions.ConnectionClosedOK(
        None,
        None,
    )
    await server.send(websocket, RelayResponse())
    assert len(caplog.records) == 1
    assert 'connection is closed' in caplog.records[0].message


@pytest.mark.asyncio()
async def test_register_assigns_address() -> None:
    server = RelayServer()
    websocket = get_mock_websocket()
    await server.register(websocket, RelayRegistrationRequest())

    (response,) = sent_messages(websocket)
    assert isinstance(response, RelayResponse)
    assert response.success
    assert response.address is not None
    client = server.client_manager.get_client_by_address(response.address)
    assert client is not None
    assert client.websocket is websocket


@pytest.mark.asyncio()
async def test_register_address_in_use() -> None:
    server = RelayServer()
    await register(server, '123456')

    with pytest.raises(AddressInUseError):
        await server.register(
            get_mock_websocket(),
            RelayRegistrationRequest('123456'),
        )


@pytest.mark.asyncio()
async def test_register_replaces_stale_connection() -> None:
    server = RelayServer()
    stale = await register(server, '123456')
    stale.websocket.state = State.CLOSED

    websocket = get_mock_websocket()
    await server.register(websocket, RelayRegistrationRequest('123456'))

    client = server.client_manager.get_client_by_address('123456')
    assert client is not None
    assert client.websocket is websocket
    manager = server.client_manager
    assert manager.get_client_by_websocket(stale.websocket) is None


@pytest.mark.asyncio()
async def test_reregister_same_websocket_new_address() -> None:
    server = RelayServer()
    client = await register(server, 'old')
    await server.register(client.websocket, RelayRegistrationRequest('new'))

    assert server.client_manager.get_client_by_address('old') is None
    new = server.client_manager.get_client_by_websocket(client.websocket)
    assert new is not None
    assert new.address == 'new'


@pytest.mark.asyncio()
async def test_forward_spoofed_source() -> None:
    server = RelayServer()
    a = await register(server, 'a')
    await register(server, 'b')

    with pytest.raises(ForbiddenError):
        await server.forward(a, LinkRequest(source='b', target='a'))


@pytest.mark.asyncio()
async def test_forward_unknown_target() -> None:
    server = RelayServer()
    a = await register(server, 'a')

    await server.forward(a, LinkRequest(source='a', target='missing'))

    (message,) = sent_messages(a.websocket)
    assert isinstance(message, LinkClosed)
    assert message.source == 'missing'
    assert message.target == 'a'


@pytest.mark.asyncio()
async def test_forward_link_close_to_unknown_target_is_dropped() -> None:
    server = RelayServer()
    a = await register(server, 'a')

    await server.forward(a, LinkClosed(source='a', target='missing'))
    a.websocket.send.assert_not_awaited()


@pytest.mark.asyncio()
async def test_forward_link_lifecycle() -> None:
    server = RelayServer()
    a = await register(server, 'a')
    b = await register(server, 'b')

    await server.forward(a, RelayData(source='a', target='b', data={}))
    b.websocket.send.assert_not_awaited()

    await server.forward(a, LinkRequest(source='a', target='b'))
    await server.forward(b, LinkAccepted(source='b', target='a'))
    assert server.client_manager.get_links('a') == {'b'}

    data = {'kind': 'offer', 'body': 'x'}
    await server.forward(a, RelayData(source='a', target='b', data=data))
    messages = sent_messages(b.websocket)
    assert isinstance(messages[0], LinkRequest)
    assert isinstance(messages[1], RelayData)
    assert messages[1].data == data

    await server.forward(b, LinkClosed(source='b', target='a'))
    assert server.client_manager.get_links('a') == set()


@pytest.mark.asyncio()
async def test_unregister_notifies_linked_clients() -> None:
    server = RelayServer()
    a = await register(server, 'a')
    b = await register(server, 'b')
    server.client_manager.add_link('a', 'b')

    await server.unregister(a, expected=True)

    (message,) = sent_messages(b.websocket)
    assert isinstance(message, LinkClosed)
    assert message.source == 'a'
    a.websocket.close.assert_awaited_once_with(code=1000)
    assert server.client_manager.get_client_by_address('a') is None


@pytest.mark.asyncio()
async def test_handler_registration(relay_server: RelayServerInfo) -> None:
    async with connect(relay_server.address) as websocket:
        request = RelayRegistrationRequest('123456')
        await websocket.send(encode_relay_message(request))
        message = decode_relay_message(
            await asyncio.wait_for(websocket.recv(), _WAIT_FOR),
        )
        assert isinstance(message, RelayResponse)
        assert message.address == '123456'

        async with connect(relay_server.address) as other:
            await other.send(encode_relay_message(request))
            message = decode_relay_message(
                await asyncio.wait_for(other.recv(), _WAIT_FOR),
            )
            assert isinstance(message, RelayResponse)
            assert not message.success
            assert message.error_type == 'AddressInUseError'


@pytest.mark.asyncio()
async def test_handler_bad_message(relay_server: RelayServerInfo) -> None:
    async with connect(relay_server.address) as websocket:
        await websocket.send('not a message')
        with pytest.raises(websockets.exceptions.ConnectionClosedError) as e:
            await asyncio.wait_for(websocket.recv(), _WAIT_FOR)
        assert e.value.rcvd is not None
        assert e.value.rcvd.code == 4000


@pytest.mark.asyncio()
async def test_handler_unregistered_client(
    relay_server: RelayServerInfo,
) -> None:
    async with connect(relay_server.address) as websocket:
        message = LinkRequest(source='a', target='b')
        await websocket.send(encode_relay_message(message))
        with pytest.raises(websockets.exceptions.ConnectionClosedError) as e:
            await asyncio.wait_for(websocket.recv(), _WAIT_FOR)
        assert e.value.rcvd is not None
        assert e.value.rcvd.code == 4002


@pytest.mark.asyncio()
async def test_handler_message_too_large(
    relay_server: RelayServerInfo,
) -> None:
    relay_server.relay_server._max_message_bytes = 100
    async with connect(relay_server.address) as websocket:
        await websocket.send('x' * 200)
        with pytest.raises(websockets.exceptions.ConnectionClosedError) as e:
            await asyncio.wait_for(websocket.recv(), _WAIT_FOR)
        assert e.value.rcvd is not None
        assert e.value.rcvd.code == 4003


@pytest.mark.asyncio()
async def test_handler_client_disconnect(
    relay_server: RelayServerInfo,
) -> None:
    request = encode_relay_message(RelayRegistrationRequest('a'))
    async with connect(relay_server.address) as websocket:
        await websocket.send(request)
        await asyncio.wait_for(websocket.recv(), _WAIT_FOR)
        manager = relay_server.relay_server.client_manager
        assert manager.get_client_by_address('a') is not None

    async def _unregistered() -> None:
        while manager.get_client_by_address('a') is not None:
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_unregistered(), _WAIT_FOR)
