"""WebSocket mailbox relay: aiohttp server side of the push transport.

Each endpoint connects to ``/ws?userId=<id>``. A frame is routed to the
socket registered for its ``to`` id; frames for an offline recipient are
held in that recipient's mailbox and flushed when it connects.
"""

from __future__ import annotations

import json
import logging
from collections import defaultdict, deque

import aiohttp
from aiohttp import web

from peercall.errors import MessageFormatError
from peercall.signaling.message import parse_frame

logger = logging.getLogger(__name__)

MAILBOX_LIMIT = 200
MAX_MAILBOXES = 1000


class MailboxRelay:
    def __init__(
        self, *, mailbox_limit: int = MAILBOX_LIMIT, max_mailboxes: int = MAX_MAILBOXES
    ) -> None:
        self._sockets: dict[str, web.WebSocketResponse] = {}
        self._flushing: set[str] = set()
        self._max_mailboxes = max_mailboxes
        self._pending: defaultdict[str, deque[str]] = defaultdict(
            lambda: deque(maxlen=mailbox_limit)
        )

    @property
    def online(self) -> list[str]:
        return sorted(self._sockets)

    def pending(self, endpoint_id: str) -> int:
        return len(self._pending.get(endpoint_id, ()))

    async def disconnect(self, endpoint_id: str) -> bool:
        """Close an endpoint's socket; its mailbox is kept."""
        ws = self._sockets.get(endpoint_id)
        if ws is None:
            return False
        await ws.close()
        return True

    async def route(self, sender: str, raw: dict) -> None:
        """Deliver one frame to its recipient, or hold it in the mailbox."""
        if not raw.get("from"):
            raw["from"] = sender
        recipient = raw.get("to")
        if not isinstance(recipient, str) or not recipient:
            logger.warning("Dropping %s from %s: no recipient", raw.get("type"), sender)
            return
        frame = json.dumps(raw)
        ws = self._sockets.get(recipient)
        if ws is not None and not ws.closed and recipient not in self._flushing:
            try:
                await ws.send_str(frame)
                logger.debug("Relayed %s %s -> %s", raw.get("type"), sender, recipient)
                return
            except (ConnectionResetError, RuntimeError) as exc:
                logger.warning("Delivery to %s failed (%s); holding", recipient, exc)
        self._hold(recipient, frame)
        logger.debug("Held %s for offline %s", raw.get("type"), recipient)

    def _hold(self, recipient: str, frame: str) -> None:
        if recipient not in self._pending and len(self._pending) >= self._max_mailboxes:
            # Evict the mailbox that was opened first
            evicted = next(iter(self._pending))
            dropped = self._pending.pop(evicted)
            logger.warning(
                "Mailbox limit reached; dropped %d frames for %s", len(dropped), evicted
            )
        self._pending[recipient].append(frame)

    async def _flush(self, endpoint_id: str, ws: web.WebSocketResponse) -> None:
        # Frames routed while flushing queue behind the held ones
        self._flushing.add(endpoint_id)
        try:
            while True:
                mailbox = self._pending.get(endpoint_id)
                if not mailbox:
                    break
                frame = mailbox[0]
                try:
                    await ws.send_str(frame)
                except (ConnectionResetError, RuntimeError) as exc:
                    logger.warning("Flush to %s failed (%s); keeping mailbox", endpoint_id, exc)
                    return
                if mailbox and mailbox[0] is frame:
                    mailbox.popleft()
            self._pending.pop(endpoint_id, None)
            logger.debug("Mailbox for %s flushed", endpoint_id)
        finally:
            self._flushing.discard(endpoint_id)

    async def handle(self, request: web.Request) -> web.WebSocketResponse:
        endpoint_id = request.query.get("userId", "").strip()
        if not endpoint_id:
            raise web.HTTPBadRequest(text="userId is required")

        ws = web.WebSocketResponse(heartbeat=30.0)
        await ws.prepare(request)

        previous = self._sockets.get(endpoint_id)
        self._sockets[endpoint_id] = ws
        if previous is not None and not previous.closed:
            logger.info("Replacing existing connection for %s", endpoint_id)
            await previous.close()
        logger.info("Endpoint %s connected (%d online)", endpoint_id, len(self._sockets))
        await self._flush(endpoint_id, ws)

        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        raw = parse_frame(msg.data)
                    except MessageFormatError as exc:
                        logger.warning("Dropping frame from %s: %s", endpoint_id, exc)
                        continue
                    await self.route(endpoint_id, raw)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    logger.warning("WebSocket error from %s: %s", endpoint_id, ws.exception())
        finally:
            if self._sockets.get(endpoint_id) is ws:
                del self._sockets[endpoint_id]
            logger.info("Endpoint %s disconnected", endpoint_id)
        return ws


_relay_key = web.AppKey("relay", MailboxRelay)


async def _status_handler(request: web.Request) -> web.Response:
    relay = request.app[_relay_key]
    return web.json_response({"online": relay.online})


def create_relay_app(relay: MailboxRelay | None = None) -> web.Application:
    relay = relay or MailboxRelay()
    app = web.Application()
    app[_relay_key] = relay
    app.router.add_get("/ws", relay.handle)
    app.router.add_get("/status", _status_handler)
    return app


def get_relay(app: web.Application) -> MailboxRelay:
    return app[_relay_key]
