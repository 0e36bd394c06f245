"""Tests for the call control webapp."""

from __future__ import annotations

import pytest
from aiohttp.test_utils import TestClient, TestServer

from peercall.call.session import CallPhase
from peercall.web import create_app


@pytest.mark.asyncio
async def test_get_renders_status(make_endpoint):
    a = await make_endpoint("A")
    async with TestClient(TestServer(create_app(a.controller, a.channel))) as client:
        resp = await client.get("/")
        assert resp.status == 200
        text = await resp.text()
        assert "Call Status" in text
        assert "A" in text
        assert "idle" in text
        assert 'action="/api/call"' in text


@pytest.mark.asyncio
async def test_state_endpoint(make_endpoint):
    a = await make_endpoint("A")
    async with TestClient(TestServer(create_app(a.controller, a.channel))) as client:
        resp = await client.get("/api/state")
        assert resp.status == 200
        state = await resp.json()
        assert state["phase"] == "idle"
        assert state["local_id"] == "A"
        assert state["transport"] == "connected"


@pytest.mark.asyncio
async def test_call_and_end_via_api(hub, make_endpoint):
    a = await make_endpoint("A")
    async with TestClient(TestServer(create_app(a.controller, a.channel))) as client:
        resp = await client.post("/api/call", json={"peer_id": "B"})
        assert resp.status == 200
        body = await resp.json()
        assert body["ok"] is True
        assert body["state"]["phase"] == "calling"
        assert body["state"]["peer_id"] == "B"

        resp = await client.post("/api/mute", data={"muted": "true"})
        body = await resp.json()
        assert body["ok"] is True
        assert body["state"]["muted"] is True

        resp = await client.post("/api/end")
        body = await resp.json()
        assert body["ok"] is True
        assert body["state"]["phase"] == "idle"
        assert body["state"]["end_reason"] == "hangup"
    assert a.phase == CallPhase.IDLE


@pytest.mark.asyncio
async def test_accept_via_form(hub, make_endpoint, settle):
    b = await make_endpoint("B")
    hub.inject(
        "B", {"type": "offer", "data": {"sdp": "v=0", "type": "offer"}, "from": "A", "to": "B"}
    )
    await settle(lambda: b.phase == CallPhase.RECEIVING_CALL)
    async with TestClient(TestServer(create_app(b.controller, b.channel))) as client:
        page = await (await client.get("/")).text()
        assert "Incoming call from" in page
        resp = await client.post("/api/accept")
        body = await resp.json()
        assert body["state"]["phase"] == "inCall"


@pytest.mark.asyncio
async def test_bad_input_returns_400(make_endpoint):
    a = await make_endpoint("A")
    async with TestClient(TestServer(create_app(a.controller, a.channel))) as client:
        resp = await client.post("/api/call", data={"peer_id": ""})
        assert resp.status == 400
        resp = await client.post("/api/call", json={"peer_id": "A"})
        assert resp.status == 400
        resp = await client.post("/api/mute", data={"muted": "maybe"})
        assert resp.status == 400
        resp = await client.post(
            "/api/call", data=b"[1]", headers={"Content-Type": "application/json"}
        )
        assert resp.status == 400


@pytest.mark.asyncio
async def test_actions_without_call_report_not_ok(make_endpoint):
    a = await make_endpoint("A")
    async with TestClient(TestServer(create_app(a.controller, a.channel))) as client:
        for path in ("/api/accept", "/api/reject", "/api/end", "/api/video", "/api/camera"):
            resp = await client.post(path)
            assert resp.status == 200
            assert (await resp.json())["ok"] is False
