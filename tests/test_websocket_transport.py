"""Tests for the WebSocket push transport against a live relay."""

import asyncio

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from peercall.errors import AuthenticationError, ConnectError, SendError
from peercall.signaling.message import MessageType, SessionDescription, SignalingMessage
from peercall.signaling.relay import MailboxRelay, create_relay_app
from peercall.transport.base import TransportState
from peercall.transport.websocket import WebSocketTransport


def _base_url(server: TestServer) -> str:
    return str(server.make_url("")).rstrip("/")


async def _wait(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        assert loop.time() < deadline, "condition not met within timeout"
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_send_and_receive_through_relay():
    relay = MailboxRelay()
    async with TestServer(create_relay_app(relay)) as server:
        a = WebSocketTransport(_base_url(server), heartbeat=None)
        b = WebSocketTransport(_base_url(server), heartbeat=None)
        await a.initialize("A")
        await b.initialize("B")
        await _wait(lambda: relay.online == ["A", "B"])
        assert a.state == TransportState.CONNECTED

        offer = SignalingMessage(
            MessageType.OFFER, "A", "B", SessionDescription("v=0", "offer")
        )
        await a.send(offer)
        raw = await asyncio.wait_for(anext(b.inbound()), 1.0)
        assert SignalingMessage.from_wire(raw) == offer

        await a.close()
        await b.close()
        assert a.state == TransportState.DISCONNECTED


@pytest.mark.asyncio
async def test_reconnects_after_server_side_close():
    relay = MailboxRelay()
    async with TestServer(create_relay_app(relay)) as server:
        a = WebSocketTransport(_base_url(server), reconnect_delay=0.05, heartbeat=None)
        b = WebSocketTransport(_base_url(server), reconnect_delay=0.05, heartbeat=None)
        states: list[TransportState] = []
        b.on_state(states.append)
        await a.initialize("A")
        await b.initialize("B")
        await _wait(lambda: relay.online == ["A", "B"])

        assert await relay.disconnect("B")
        await _wait(lambda: TransportState.DISCONNECTED in states)
        await _wait(lambda: b.connected and "B" in relay.online)

        await a.send(SignalingMessage(MessageType.END_CALL, "A", "B"))
        raw = await asyncio.wait_for(anext(b.inbound()), 1.0)
        assert raw["type"] == "end-call"

        await a.close()
        await b.close()


@pytest.mark.asyncio
async def test_send_when_not_connected_fails():
    transport = WebSocketTransport("http://127.0.0.1:1")
    with pytest.raises(SendError):
        await transport.send(SignalingMessage(MessageType.END_CALL, "A", "B"))
    await transport.close()


@pytest.mark.asyncio
async def test_unreachable_relay_raises_connect_error():
    transport = WebSocketTransport("http://127.0.0.1:1")
    with pytest.raises(ConnectError):
        await transport.initialize("A")
    assert transport.state == TransportState.DISCONNECTED
    await transport.close()


@pytest.mark.asyncio
async def test_forbidden_handshake_is_authentication_error():
    async def _forbidden(request: web.Request) -> web.Response:
        raise web.HTTPForbidden()

    app = web.Application()
    app.router.add_get("/ws", _forbidden)
    async with TestServer(app) as server:
        transport = WebSocketTransport(_base_url(server))
        with pytest.raises(AuthenticationError):
            await transport.initialize("A")
        assert transport.state == TransportState.FAILED
        await transport.close()
