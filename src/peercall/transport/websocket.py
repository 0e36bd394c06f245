"""WebSocket push transport (aiohttp client).

Connects to ``{url}/ws?userId={endpoint_id}`` on a mailbox relay. Frames
pushed by the relay are queued for ``inbound()``; when the socket drops,
the transport goes ``disconnected`` and reconnects after a constant delay
without involving the caller.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator

import aiohttp

from peercall.errors import AuthenticationError, ConnectError, MessageFormatError, SendError
from peercall.signaling.message import SignalingMessage, encode_message, parse_frame
from peercall.transport.base import (
    RECONNECT_DELAY,
    MailboxTransport,
    RawMessage,
    TransportState,
)

logger = logging.getLogger(__name__)

_CLOSED = object()


class WebSocketTransport(MailboxTransport):
    def __init__(
        self,
        url: str,
        *,
        session: aiohttp.ClientSession | None = None,
        reconnect_delay: float = RECONNECT_DELAY,
        heartbeat: float | None = 30.0,
    ) -> None:
        super().__init__(reconnect_delay=reconnect_delay)
        self._url = url.rstrip("/")
        self._session = session
        self._owns_session = session is None
        self._heartbeat = heartbeat
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._reader: asyncio.Task[None] | None = None
        self._reconnect_handle: asyncio.TimerHandle | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._fatal: AuthenticationError | None = None
        self._closing = False

    async def initialize(self, endpoint_id: str) -> None:
        self.endpoint_id = endpoint_id
        self._closing = False
        await self._connect()

    async def _connect(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        self._set_state(TransportState.CONNECTING)
        try:
            ws = await self._session.ws_connect(
                f"{self._url}/ws",
                params={"userId": self.endpoint_id},
                heartbeat=self._heartbeat,
            )
        except aiohttp.WSServerHandshakeError as exc:
            if exc.status in (401, 403):
                self._set_state(TransportState.FAILED)
                raise AuthenticationError(
                    f"Relay refused {self.endpoint_id}: {exc.status}"
                ) from exc
            self._set_state(TransportState.DISCONNECTED)
            raise ConnectError(f"Relay handshake failed: {exc.status}") from exc
        except (aiohttp.ClientError, OSError) as exc:
            self._set_state(TransportState.DISCONNECTED)
            raise ConnectError(f"Cannot reach relay at {self._url}: {exc}") from exc

        self._ws = ws
        self._set_state(TransportState.CONNECTED)
        self._reader = asyncio.get_running_loop().create_task(self._read_loop(ws))
        logger.info("Connected to relay %s as %s", self._url, self.endpoint_id)

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        async for msg in ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                logger.debug("Frame for %s: %s", self.endpoint_id, msg.data)
                try:
                    raw = parse_frame(msg.data)
                except MessageFormatError as exc:
                    logger.warning("Dropping frame from relay: %s", exc)
                    continue
                self._queue.put_nowait(raw)
            elif msg.type == aiohttp.WSMsgType.ERROR:
                logger.warning("WebSocket error: %s", ws.exception())

        if self._ws is ws:
            self._ws = None
        if not self._closing:
            logger.warning("Relay connection closed; reconnecting in %.1fs", self.reconnect_delay)
            self._set_state(TransportState.DISCONNECTED)
            self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._closing or self._reconnect_handle is not None:
            return
        loop = asyncio.get_running_loop()
        self._reconnect_handle = loop.call_later(self.reconnect_delay, self._begin_reconnect)

    def _begin_reconnect(self) -> None:
        self._reconnect_handle = None
        self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect())

    async def _reconnect(self) -> None:
        try:
            await self._connect()
        except AuthenticationError as exc:
            logger.error("Giving up on relay: %s", exc)
            self._fatal = exc
            self._queue.put_nowait(_CLOSED)
        except ConnectError as exc:
            logger.warning("Reconnect failed: %s", exc)
            self._schedule_reconnect()

    async def send(self, message: SignalingMessage) -> None:
        ws = self._ws
        if ws is None or ws.closed:
            raise SendError(f"Cannot send {message.type}: relay not connected")
        try:
            await ws.send_str(encode_message(message))
        except (aiohttp.ClientError, ConnectionResetError, RuntimeError) as exc:
            raise SendError(f"Cannot send {message.type}: {exc}") from exc
        logger.debug("Sent %s to %s", message.type, message.to_id)

    async def inbound(self) -> AsyncIterator[RawMessage]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                if self._fatal is not None:
                    raise self._fatal
                return
            assert isinstance(item, dict)
            yield item

    async def close(self) -> None:
        self._closing = True
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None
        for task in (self._reconnect_task, self._reader):
            if task is not None and not task.done():
                task.cancel()
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
        self._queue.put_nowait(_CLOSED)
        self._set_state(TransportState.DISCONNECTED)
