"""Polled mailbox log on PostgreSQL (asyncpg).

Each recipient's inbox is the set of ``mailbox_messages`` rows addressed
to it. ``inbound()`` claims rows with ``DELETE ... RETURNING`` so a row
is handed out exactly once, even with several pollers on one inbox.
Claimed rows are buffered on the transport until yielded; a poll that is
cancelled mid-claim or a consumer that stops early leaves them for the
next ``inbound()`` call. Rows claimed by a process that then dies are lost.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import deque
from collections.abc import AsyncIterator
from typing import Any

import asyncpg

from peercall.errors import AuthenticationError, ConnectError, SendError
from peercall.signaling.message import SignalingMessage
from peercall.transport.base import (
    RECONNECT_DELAY,
    MailboxTransport,
    RawMessage,
    TransportState,
)

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.5
BATCH_SIZE = 50

_AUTH_ERRORS = (
    asyncpg.InvalidPasswordError,
    asyncpg.InvalidAuthorizationSpecificationError,
)
_CONNECTION_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)

_CLAIM_SQL = """
    DELETE FROM mailbox_messages
    WHERE id IN (
        SELECT id FROM mailbox_messages
        WHERE recipient = $1
        ORDER BY id
        LIMIT $2
        FOR UPDATE SKIP LOCKED
    )
    RETURNING id, type, data, sender, recipient
"""


def _row_to_raw(row: Any) -> RawMessage:
    data = row["data"]
    if isinstance(data, str):
        data = json.loads(data)
    return {
        "type": row["type"],
        "data": data,
        "from": row["sender"],
        "to": row["recipient"],
    }


class PostgresMailboxTransport(MailboxTransport):
    def __init__(
        self,
        pool: asyncpg.Pool,
        *,
        poll_interval: float = POLL_INTERVAL,
        batch_size: int = BATCH_SIZE,
        reconnect_delay: float = RECONNECT_DELAY,
    ) -> None:
        super().__init__(reconnect_delay=reconnect_delay)
        self._pool = pool
        self._poll_interval = poll_interval
        self._batch_size = batch_size
        self._closing = False
        self._buffer: deque[RawMessage] = deque()
        self._claiming: asyncio.Task[int] | None = None

    async def initialize(self, endpoint_id: str) -> None:
        self.endpoint_id = endpoint_id
        self._closing = False
        self._set_state(TransportState.CONNECTING)
        try:
            await self._pool.fetchval("SELECT 1")
        except _AUTH_ERRORS as exc:
            self._set_state(TransportState.FAILED)
            raise AuthenticationError(f"Mailbox database refused login: {exc}") from exc
        except _CONNECTION_ERRORS as exc:
            self._set_state(TransportState.DISCONNECTED)
            raise ConnectError(f"Mailbox database unreachable: {exc}") from exc
        self._set_state(TransportState.CONNECTED)

    async def send(self, message: SignalingMessage) -> None:
        wire = message.to_wire()
        data = json.dumps(wire["data"]) if wire["data"] is not None else None
        try:
            await self._pool.execute(
                "INSERT INTO mailbox_messages (recipient, type, data, sender)"
                " VALUES ($1, $2, $3::jsonb, $4)",
                message.to_id,
                wire["type"],
                data,
                message.from_id,
            )
        except _CONNECTION_ERRORS as exc:
            raise SendError(f"Cannot append {message.type} for {message.to_id}: {exc}") from exc
        logger.debug("Appended %s to mailbox %s", message.type, message.to_id)

    async def _claim(self) -> int:
        rows = await self._pool.fetch(_CLAIM_SQL, self.endpoint_id, self._batch_size)
        # RETURNING order is unspecified; restore append order
        self._buffer.extend(_row_to_raw(r) for r in sorted(rows, key=lambda r: r["id"]))
        return len(rows)

    async def _fill(self) -> int:
        # The claim runs to completion even if the poller is cancelled
        if self._claiming is None:
            self._claiming = asyncio.get_running_loop().create_task(self._claim())
        claiming = self._claiming
        try:
            return await asyncio.shield(claiming)
        finally:
            if claiming.done():
                self._claiming = None

    async def inbound(self) -> AsyncIterator[RawMessage]:
        while not self._closing:
            if self._buffer:
                yield self._buffer.popleft()
                continue
            try:
                claimed = await self._fill()
            except _AUTH_ERRORS as exc:
                self._set_state(TransportState.FAILED)
                raise AuthenticationError(f"Mailbox database refused login: {exc}") from exc
            except _CONNECTION_ERRORS as exc:
                logger.warning(
                    "Mailbox poll failed (%s); retrying in %.1fs", exc, self.reconnect_delay
                )
                self._set_state(TransportState.DISCONNECTED)
                await asyncio.sleep(self.reconnect_delay)
                continue
            self._set_state(TransportState.CONNECTED)
            if not claimed:
                await asyncio.sleep(self._poll_interval)

    async def close(self) -> None:
        self._closing = True
        claiming, self._claiming = self._claiming, None
        if claiming is not None:
            try:
                await claiming
            except _CONNECTION_ERRORS as exc:
                logger.warning("Pending mailbox claim failed on close: %s", exc)
        self._set_state(TransportState.DISCONNECTED)
