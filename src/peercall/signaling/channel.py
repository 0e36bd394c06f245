"""Signaling channel: typed message bus over one mailbox transport.

Inbound wire objects are decoded and fanned out to one ``EventStream``
per message type. Order is preserved within a stream; nothing is
promised across streams. Outbound typed messages are serialized back
through the transport.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator, Callable
from typing import Generic, TypeVar

from peercall.errors import (
    AuthenticationError,
    ConnectError,
    MessageFormatError,
    TransportError,
    UnknownMessageType,
)
from peercall.signaling.message import (
    IceCandidate,
    MessageType,
    SessionDescription,
    SignalingMessage,
)
from peercall.transport.base import MailboxTransport, RawMessage, TransportState

logger = logging.getLogger(__name__)

T = TypeVar("T")

_END = object()


class Listener(Generic[T]):
    def __init__(self, stream: EventStream[T], callback: Callable[[T], None]) -> None:
        self._stream = stream
        self.callback = callback

    def cancel(self) -> None:
        self._stream._remove(self)


class EventStream(Generic[T]):
    """Broadcast stream with synchronous listeners and async subscribers."""

    def __init__(self, name: str) -> None:
        self.name = name
        self.closed = False
        self._listeners: list[Listener[T]] = []
        self._queues: set[asyncio.Queue[object]] = set()

    def listen(self, callback: Callable[[T], None]) -> Listener[T]:
        if self.closed:
            raise RuntimeError(f"Stream {self.name} is closed")
        listener = Listener(self, callback)
        self._listeners.append(listener)
        return listener

    def _remove(self, listener: Listener[T]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def subscribe(self) -> AsyncIterator[T]:
        """Iterate items emitted after iteration starts, until the stream closes."""
        queue: asyncio.Queue[object] = asyncio.Queue()
        if self.closed:
            return
        self._queues.add(queue)
        try:
            while True:
                item = await queue.get()
                if item is _END:
                    return
                yield item  # type: ignore[misc]
        finally:
            self._queues.discard(queue)

    def emit(self, item: T) -> None:
        if self.closed:
            return
        for listener in list(self._listeners):
            try:
                listener.callback(item)
            except Exception:
                logger.exception("Listener on %s stream failed", self.name)
        for queue in self._queues:
            queue.put_nowait(item)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._listeners.clear()
        for queue in self._queues:
            queue.put_nowait(_END)


class SignalingChannel:
    """Owns the single inbound subscription and the reconnect timer."""

    def __init__(
        self, transport: MailboxTransport, *, reconnect_delay: float | None = None
    ) -> None:
        self._transport = transport
        self._reconnect_delay = (
            transport.reconnect_delay if reconnect_delay is None else reconnect_delay
        )
        self._streams: dict[MessageType, EventStream[SignalingMessage]] = {
            t: EventStream(str(t)) for t in MessageType
        }
        self.state: EventStream[TransportState] = EventStream("state")
        self._remove_state_listener = transport.on_state(self.state.emit)
        self._pump: asyncio.Task[None] | None = None
        self._reconnect_handle: asyncio.TimerHandle | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._endpoint_id = ""
        self.fatal_error: AuthenticationError | None = None
        self.closed = False

    @property
    def local_id(self) -> str:
        return self._endpoint_id or self._transport.endpoint_id

    @property
    def transport_state(self) -> TransportState:
        return self._transport.state

    def stream(self, msg_type: MessageType) -> EventStream[SignalingMessage]:
        return self._streams[msg_type]

    @property
    def offers(self) -> EventStream[SignalingMessage]:
        return self._streams[MessageType.OFFER]

    @property
    def answers(self) -> EventStream[SignalingMessage]:
        return self._streams[MessageType.ANSWER]

    @property
    def candidates(self) -> EventStream[SignalingMessage]:
        return self._streams[MessageType.CANDIDATE]

    @property
    def call_requests(self) -> EventStream[SignalingMessage]:
        return self._streams[MessageType.CALL_REQUEST]

    @property
    def call_accepted(self) -> EventStream[SignalingMessage]:
        return self._streams[MessageType.CALL_ACCEPTED]

    @property
    def call_rejected(self) -> EventStream[SignalingMessage]:
        return self._streams[MessageType.CALL_REJECTED]

    @property
    def end_calls(self) -> EventStream[SignalingMessage]:
        return self._streams[MessageType.END_CALL]

    # -- lifecycle ----------------------------------------------------------

    async def start(self, endpoint_id: str) -> None:
        """Connect the transport and begin dispatching inbound messages.

        A first connection failure schedules a reconnect instead of
        raising; only ``AuthenticationError`` propagates.
        """
        if self.closed:
            raise RuntimeError("SignalingChannel is closed")
        self._endpoint_id = endpoint_id
        try:
            await self._transport.initialize(endpoint_id)
        except AuthenticationError as exc:
            self._fail(exc)
            raise
        except ConnectError as exc:
            logger.warning("Initial connect failed: %s", exc)
            self._schedule_reconnect()
            return
        self._start_pump()

    def _start_pump(self) -> None:
        loop = asyncio.get_running_loop()
        self._pump = loop.create_task(self._pump_inbound(), name="signaling-inbound")

    async def _pump_inbound(self) -> None:
        try:
            async for raw in self._transport.inbound():
                self._dispatch(raw)
        except AuthenticationError as exc:
            self._fail(exc)
        except TransportError as exc:
            logger.warning("Inbound stream lost: %s", exc)
            self._schedule_reconnect()

    def _dispatch(self, raw: RawMessage) -> None:
        try:
            message = SignalingMessage.from_wire(raw)
        except UnknownMessageType as exc:
            logger.warning("Dropping message: %s", exc)
            return
        except MessageFormatError as exc:
            logger.warning("Dropping malformed signaling message: %s", exc)
            return
        logger.debug("Inbound %s from %s", message.type, message.from_id)
        self._streams[message.type].emit(message)

    def _schedule_reconnect(self) -> None:
        if self.closed or self._reconnect_handle is not None:
            return
        logger.info("Reconnecting in %.1fs", self._reconnect_delay)
        loop = asyncio.get_running_loop()
        self._reconnect_handle = loop.call_later(self._reconnect_delay, self._begin_reconnect)

    def _begin_reconnect(self) -> None:
        self._reconnect_handle = None
        loop = asyncio.get_running_loop()
        self._reconnect_task = loop.create_task(self._reconnect())

    async def _reconnect(self) -> None:
        try:
            await self._transport.initialize(self._endpoint_id)
        except AuthenticationError as exc:
            self._fail(exc)
            return
        except ConnectError as exc:
            logger.warning("Reconnect failed: %s", exc)
            self._schedule_reconnect()
            return
        logger.info("Reconnected as %s", self._endpoint_id)
        self._start_pump()

    def _fail(self, exc: AuthenticationError) -> None:
        logger.error("Signaling transport failed permanently: %s", exc)
        self.fatal_error = exc
        if self._transport.state != TransportState.FAILED:
            self.state.emit(TransportState.FAILED)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None
        for task in (self._reconnect_task, self._pump):
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._remove_state_listener()
        await self._transport.close()
        for stream in self._streams.values():
            stream.close()
        self.state.close()

    # -- outbound -----------------------------------------------------------

    async def send(self, message: SignalingMessage) -> None:
        await self._transport.send(message)
        logger.debug("Outbound %s to %s", message.type, message.to_id)

    def _message(
        self,
        msg_type: MessageType,
        to_id: str,
        payload: SessionDescription | IceCandidate | None = None,
    ) -> SignalingMessage:
        return SignalingMessage(
            type=msg_type, from_id=self.local_id, to_id=to_id, payload=payload
        )

    async def send_offer(self, to_id: str, description: SessionDescription) -> None:
        await self.send(self._message(MessageType.OFFER, to_id, description))

    async def send_answer(self, to_id: str, description: SessionDescription) -> None:
        await self.send(self._message(MessageType.ANSWER, to_id, description))

    async def send_candidate(self, to_id: str, candidate: IceCandidate) -> None:
        await self.send(self._message(MessageType.CANDIDATE, to_id, candidate))

    async def send_call_request(self, to_id: str) -> None:
        await self.send(self._message(MessageType.CALL_REQUEST, to_id))

    async def send_call_accepted(self, to_id: str) -> None:
        await self.send(self._message(MessageType.CALL_ACCEPTED, to_id))

    async def send_call_rejected(self, to_id: str) -> None:
        await self.send(self._message(MessageType.CALL_REJECTED, to_id))

    async def send_end_call(self, to_id: str) -> None:
        await self.send(self._message(MessageType.END_CALL, to_id))
