"""Mailbox transport contract.

A mailbox transport delivers messages into a named recipient's inbox and
yields the local endpoint's inbox as an unbounded stream. Delivery is
at-least-once with no ordering guarantee across messages; whatever has
been yielded from ``inbound()`` is consumed and never yielded again.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable
from enum import StrEnum
from typing import Any

from peercall.signaling.message import SignalingMessage

logger = logging.getLogger(__name__)

# Constant reconnect backoff, no exponential growth
RECONNECT_DELAY = 2.0

RawMessage = dict[str, Any]
StateCallback = Callable[["TransportState"], None]


class TransportState(StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"  # permanent, e.g. authentication refused


class MailboxTransport(ABC):
    """Base class for mailbox transports.

    ``initialize`` raises ``ConnectError`` (or ``AuthenticationError``)
    when the first connection cannot be made, ``send`` raises
    ``SendError`` rather than dropping a message, and ``inbound`` yields
    raw wire objects (``{"type", "data", "from", "to"}``) addressed to
    the endpoint. ``inbound`` raises ``TransportError`` if the stream is
    lost in a way the transport does not recover from by itself.
    """

    def __init__(self, *, reconnect_delay: float = RECONNECT_DELAY) -> None:
        self.endpoint_id = ""
        self.state = TransportState.DISCONNECTED
        self.reconnect_delay = reconnect_delay
        self._state_callbacks: list[StateCallback] = []

    def on_state(self, callback: StateCallback) -> Callable[[], None]:
        """Register a state listener; returns a function that removes it."""
        self._state_callbacks.append(callback)

        def _remove() -> None:
            if callback in self._state_callbacks:
                self._state_callbacks.remove(callback)

        return _remove

    def _set_state(self, state: TransportState) -> None:
        if state == self.state:
            return
        logger.info(
            "%s %s: %s -> %s",
            type(self).__name__,
            self.endpoint_id or "?",
            self.state,
            state,
        )
        self.state = state
        for callback in list(self._state_callbacks):
            try:
                callback(state)
            except Exception:
                logger.exception("Transport state listener failed")

    @property
    def connected(self) -> bool:
        return self.state == TransportState.CONNECTED

    @abstractmethod
    async def initialize(self, endpoint_id: str) -> None: ...

    @abstractmethod
    async def send(self, message: SignalingMessage) -> None: ...

    @abstractmethod
    def inbound(self) -> AsyncIterator[RawMessage]: ...

    @abstractmethod
    async def close(self) -> None: ...
