"""Call control webapp (aiohttp)."""

from __future__ import annotations

from typing import Any

import aiohttp_jinja2
import jinja2
from aiohttp import web

from peercall.call.controller import CallController
from peercall.signaling.channel import SignalingChannel

_controller_key = web.AppKey("controller", CallController)
_channel_key = web.AppKey("channel", SignalingChannel)


async def _read_fields(request: web.Request) -> dict[str, Any]:
    if request.content_type == "application/json":
        try:
            data = await request.json()
        except ValueError:
            raise web.HTTPBadRequest(text="Invalid JSON body") from None
        if not isinstance(data, dict):
            raise web.HTTPBadRequest(text="JSON body must be an object")
        return data
    return dict(await request.post())


def _flag(fields: dict[str, Any], name: str) -> bool | None:
    value = fields.get(name)
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("1", "true", "on", "yes"):
        return True
    if text in ("0", "false", "off", "no"):
        return False
    raise web.HTTPBadRequest(text=f"{name} must be a boolean")


def _result(request: web.Request, ok: bool) -> web.Response:
    controller = request.app[_controller_key]
    return web.json_response({"ok": ok, "state": controller.snapshot.to_dict()})


async def _index_handler(request: web.Request) -> web.Response:
    controller = request.app[_controller_key]
    channel = request.app[_channel_key]
    context = {
        "snapshot": controller.snapshot,
        "transport_state": channel.transport_state,
    }
    return aiohttp_jinja2.render_template("status.html", request, context)


async def _state_handler(request: web.Request) -> web.Response:
    controller = request.app[_controller_key]
    channel = request.app[_channel_key]
    state = controller.snapshot.to_dict()
    state["transport"] = str(channel.transport_state)
    return web.json_response(state)


async def _call_handler(request: web.Request) -> web.Response:
    fields = await _read_fields(request)
    peer_id = str(fields.get("peer_id", "")).strip()
    try:
        ok = await request.app[_controller_key].call(peer_id)
    except ValueError as exc:
        raise web.HTTPBadRequest(text=str(exc)) from exc
    return _result(request, ok)


async def _accept_handler(request: web.Request) -> web.Response:
    return _result(request, await request.app[_controller_key].accept_call())


async def _reject_handler(request: web.Request) -> web.Response:
    return _result(request, await request.app[_controller_key].reject_call())


async def _end_handler(request: web.Request) -> web.Response:
    return _result(request, await request.app[_controller_key].end_call())


async def _mute_handler(request: web.Request) -> web.Response:
    fields = await _read_fields(request)
    muted = _flag(fields, "muted")
    return _result(request, await request.app[_controller_key].toggle_mute(muted))


async def _video_handler(request: web.Request) -> web.Response:
    fields = await _read_fields(request)
    enabled = _flag(fields, "enabled")
    return _result(request, await request.app[_controller_key].toggle_video(enabled))


async def _camera_handler(request: web.Request) -> web.Response:
    return _result(request, await request.app[_controller_key].switch_camera())


def create_app(controller: CallController, channel: SignalingChannel) -> web.Application:
    app = web.Application()
    aiohttp_jinja2.setup(
        app,
        loader=jinja2.PackageLoader("peercall"),
        autoescape=jinja2.select_autoescape(),
    )
    app[_controller_key] = controller
    app[_channel_key] = channel
    app.router.add_get("/", _index_handler)
    app.router.add_get("/api/state", _state_handler)
    app.router.add_post("/api/call", _call_handler)
    app.router.add_post("/api/accept", _accept_handler)
    app.router.add_post("/api/reject", _reject_handler)
    app.router.add_post("/api/end", _end_handler)
    app.router.add_post("/api/mute", _mute_handler)
    app.router.add_post("/api/video", _video_handler)
    app.router.add_post("/api/camera", _camera_handler)
    return app


async def start_webapp(app: web.Application, host: str, port: int) -> web.AppRunner:
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    return runner


async def stop_webapp(runner: web.AppRunner) -> None:
    await runner.cleanup()
