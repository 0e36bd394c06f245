"""In-process mailbox transport.

A ``MemoryMailboxHub`` holds one queue per recipient; every
``MemoryTransport`` created from it reads its own queue. Used for
single-process runs and tests, with hooks to inject send failures and
connection loss.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator

from peercall.errors import AuthenticationError, ConnectError, SendError
from peercall.signaling.message import SignalingMessage
from peercall.transport.base import (
    RECONNECT_DELAY,
    MailboxTransport,
    RawMessage,
    TransportState,
)

logger = logging.getLogger(__name__)

_DISCONNECTED = object()
_CLOSED = object()


class MemoryMailboxHub:
    """Per-recipient mailboxes shared by in-process transports."""

    def __init__(self) -> None:
        self._mailboxes: dict[str, asyncio.Queue[object]] = {}
        self.delivered: list[SignalingMessage] = []

    def mailbox(self, endpoint_id: str) -> asyncio.Queue[object]:
        queue = self._mailboxes.get(endpoint_id)
        if queue is None:
            queue = asyncio.Queue()
            self._mailboxes[endpoint_id] = queue
        return queue

    def deliver(self, message: SignalingMessage) -> None:
        self.delivered.append(message)
        self.mailbox(message.to_id).put_nowait(message.to_wire())

    def inject(self, endpoint_id: str, raw: RawMessage) -> None:
        """Append an arbitrary wire object to a mailbox."""
        self.mailbox(endpoint_id).put_nowait(raw)

    def transport(self, *, reconnect_delay: float = RECONNECT_DELAY) -> MemoryTransport:
        return MemoryTransport(self, reconnect_delay=reconnect_delay)


class MemoryTransport(MailboxTransport):
    def __init__(
        self, hub: MemoryMailboxHub, *, reconnect_delay: float = RECONNECT_DELAY
    ) -> None:
        super().__init__(reconnect_delay=reconnect_delay)
        self._hub = hub
        self.fail_sends = False
        self.refuse_connect = False
        self.refuse_auth = False
        self.connect_attempts = 0

    async def initialize(self, endpoint_id: str) -> None:
        self.endpoint_id = endpoint_id
        self.connect_attempts += 1
        self._set_state(TransportState.CONNECTING)
        if self.refuse_auth:
            self._set_state(TransportState.FAILED)
            raise AuthenticationError(f"Mailbox {endpoint_id} refused credentials")
        if self.refuse_connect:
            self._set_state(TransportState.DISCONNECTED)
            raise ConnectError(f"Mailbox hub unreachable for {endpoint_id}")
        self._set_state(TransportState.CONNECTED)

    async def send(self, message: SignalingMessage) -> None:
        if not self.connected:
            raise SendError(f"Cannot send {message.type}: transport is {self.state}")
        if self.fail_sends:
            raise SendError(f"Cannot send {message.type}: injected failure")
        logger.debug("Delivering %s %s -> %s", message.type, message.from_id, message.to_id)
        self._hub.deliver(message)

    async def inbound(self) -> AsyncIterator[RawMessage]:
        if not self.connected:
            raise ConnectError(f"Mailbox {self.endpoint_id or '?'} is not connected")
        queue = self._hub.mailbox(self.endpoint_id)
        while True:
            item = await queue.get()
            if item is _CLOSED:
                return
            if item is _DISCONNECTED:
                raise ConnectError(f"Mailbox {self.endpoint_id} lost its connection")
            assert isinstance(item, dict)
            yield item

    def disconnect(self) -> None:
        """Simulate connection loss; the current inbound stream raises."""
        self._set_state(TransportState.DISCONNECTED)
        self._hub.mailbox(self.endpoint_id).put_nowait(_DISCONNECTED)

    async def close(self) -> None:
        if self.endpoint_id:
            self._hub.mailbox(self.endpoint_id).put_nowait(_CLOSED)
        self._set_state(TransportState.DISCONNECTED)
