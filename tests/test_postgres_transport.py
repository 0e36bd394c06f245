"""Tests for the polled PostgreSQL mailbox transport (ephemeral database)."""

import asyncio

import asyncpg
import pytest

from peercall.database import purge_stale_messages, run_migrations
from peercall.signaling.message import (
    IceCandidate,
    MessageType,
    SessionDescription,
    SignalingMessage,
)
from peercall.transport.base import TransportState
from peercall.transport.postgres import PostgresMailboxTransport


async def _collect(transport: PostgresMailboxTransport, count: int) -> list[dict]:
    received = []
    async for raw in transport.inbound():
        received.append(raw)
        if len(received) == count:
            break
    return received


@pytest.mark.asyncio
async def test_send_then_claim_in_order(pool: asyncpg.Pool):
    sender = PostgresMailboxTransport(pool, poll_interval=0.01)
    receiver = PostgresMailboxTransport(pool, poll_interval=0.01)
    await sender.initialize("A")
    await receiver.initialize("B")
    assert receiver.state == TransportState.CONNECTED

    offer = SignalingMessage(MessageType.OFFER, "A", "B", SessionDescription("v=0", "offer"))
    candidate = SignalingMessage(MessageType.CANDIDATE, "A", "B", IceCandidate("c1", "0", 0))
    await sender.send(offer)
    await sender.send(candidate)
    await sender.send(SignalingMessage(MessageType.END_CALL, "A", "C"))

    received = await asyncio.wait_for(_collect(receiver, 2), 2.0)
    assert [SignalingMessage.from_wire(r) for r in received] == [offer, candidate]

    # Claimed rows are gone; the row for C is untouched
    rows = await pool.fetch("SELECT recipient FROM mailbox_messages")
    assert [r["recipient"] for r in rows] == ["C"]
    await sender.close()
    await receiver.close()


@pytest.mark.asyncio
async def test_call_control_data_is_null(pool: asyncpg.Pool):
    transport = PostgresMailboxTransport(pool)
    await transport.initialize("A")
    await transport.send(SignalingMessage(MessageType.CALL_REQUEST, "A", "B"))
    row = await pool.fetchrow("SELECT type, data, sender FROM mailbox_messages")
    assert row["type"] == "call-request"
    assert row["data"] is None
    assert row["sender"] == "A"


@pytest.mark.asyncio
async def test_inbound_stops_after_close(pool: asyncpg.Pool):
    transport = PostgresMailboxTransport(pool, poll_interval=0.01)
    await transport.initialize("B")

    async def _drain() -> None:
        async for _raw in transport.inbound():
            pass

    task = asyncio.create_task(_drain())
    await asyncio.sleep(0.05)
    await transport.close()
    await asyncio.wait_for(task, 1.0)
    assert transport.state == TransportState.DISCONNECTED


@pytest.mark.asyncio
async def test_purge_stale_messages(pool: asyncpg.Pool):
    await pool.execute(
        "INSERT INTO mailbox_messages (recipient, type, sender, created_at)"
        " VALUES ('B', 'offer', 'A', now() - interval '1 hour'),"
        " ('B', 'end-call', 'A', now())"
    )
    assert await purge_stale_messages(pool, "B", 60) == 1
    assert await pool.fetchval("SELECT count(*) FROM mailbox_messages") == 1


@pytest.mark.asyncio
async def test_migrations_are_recorded_once(pool: asyncpg.Pool):
    assert await run_migrations(pool) == []
    rows = await pool.fetch("SELECT filename FROM peercall_migrations")
    assert [r["filename"] for r in rows] == ["001_mailbox.sql"]


class _HeldClaimTransport(PostgresMailboxTransport):
    """Pauses after the server has committed a claim."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.claimed = asyncio.Event()
        self.release = asyncio.Event()

    async def _claim(self) -> int:
        count = await super()._claim()
        self.claimed.set()
        await self.release.wait()
        return count


@pytest.mark.asyncio
async def test_cancelled_poll_keeps_claimed_rows(pool: asyncpg.Pool):
    sender = PostgresMailboxTransport(pool)
    receiver = _HeldClaimTransport(pool, poll_interval=0.01)
    await sender.initialize("A")
    await receiver.initialize("B")
    first = SignalingMessage(MessageType.CALL_REQUEST, "A", "B")
    second = SignalingMessage(MessageType.END_CALL, "A", "B")
    await sender.send(first)
    await sender.send(second)

    poll = asyncio.create_task(_collect(receiver, 2))
    await asyncio.wait_for(receiver.claimed.wait(), 2.0)
    poll.cancel()
    with pytest.raises(asyncio.CancelledError):
        await poll
    assert await pool.fetchval("SELECT count(*) FROM mailbox_messages") == 0

    receiver.release.set()
    received = await asyncio.wait_for(_collect(receiver, 2), 2.0)
    assert [SignalingMessage.from_wire(r) for r in received] == [first, second]
    await receiver.close()


@pytest.mark.asyncio
async def test_rows_left_in_batch_survive_early_stop(pool: asyncpg.Pool):
    sender = PostgresMailboxTransport(pool)
    receiver = PostgresMailboxTransport(pool, poll_interval=0.01)
    await sender.initialize("A")
    await receiver.initialize("B")
    for msg_type in (MessageType.CALL_REQUEST, MessageType.CALL_ACCEPTED, MessageType.END_CALL):
        await sender.send(SignalingMessage(msg_type, "A", "B"))

    head = await asyncio.wait_for(_collect(receiver, 1), 2.0)
    rest = await asyncio.wait_for(_collect(receiver, 2), 2.0)
    assert [r["type"] for r in head + rest] == ["call-request", "call-accepted", "end-call"]
    await receiver.close()
