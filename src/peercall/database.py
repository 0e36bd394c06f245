"""Mailbox database helpers: schema migrations and stale-message purge."""

from __future__ import annotations

import logging
import re
from pathlib import Path

import asyncpg

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).resolve().parents[2] / "migrations"
_FILENAME_RE = re.compile(r"^(\d+)_.*\.sql$")


def discover_migrations(directory: Path = MIGRATIONS_DIR) -> list[tuple[int, Path]]:
    """Return (version, path) pairs sorted by version."""
    found = []
    for path in directory.glob("*.sql"):
        m = _FILENAME_RE.match(path.name)
        if m:
            found.append((int(m.group(1)), path))
    return sorted(found, key=lambda item: item[0])


def _is_blank(sql: str) -> bool:
    return all(
        not line.strip() or line.strip().startswith("--") for line in sql.splitlines()
    )


async def run_migrations(
    pool: asyncpg.Pool, directory: Path = MIGRATIONS_DIR
) -> list[str]:
    """Apply pending migrations in version order; return applied filenames."""
    async with pool.acquire() as conn:
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS peercall_migrations (
                version     INTEGER PRIMARY KEY,
                filename    TEXT NOT NULL,
                applied_at  TIMESTAMPTZ NOT NULL DEFAULT now()
            )
        """)
        rows = await conn.fetch("SELECT version FROM peercall_migrations")
    applied_versions = {r["version"] for r in rows}

    applied: list[str] = []
    for version, path in discover_migrations(directory):
        if version in applied_versions:
            continue
        sql = path.read_text().strip()
        if _is_blank(sql):
            continue
        async with pool.acquire() as conn, conn.transaction():
            await conn.execute(sql)
            await conn.execute(
                "INSERT INTO peercall_migrations (version, filename) VALUES ($1, $2)",
                version,
                path.name,
            )
        logger.info("Applied migration %s", path.name)
        applied.append(path.name)

    if not applied:
        logger.info("Mailbox schema up to date")
    return applied


async def purge_stale_messages(
    pool: asyncpg.Pool, endpoint_id: str, max_age: float
) -> int:
    """Drop inbox rows older than *max_age* seconds left over from a previous run.

    A stale offer would otherwise ring as soon as the endpoint starts.
    """
    result = await pool.execute(
        "DELETE FROM mailbox_messages"
        " WHERE recipient = $1 AND created_at < now() - make_interval(secs => $2)",
        endpoint_id,
        float(max_age),
    )
    # asyncpg returns the command tag, e.g. "DELETE 3"
    count = int(result.split()[-1])
    if count:
        logger.info("Purged %d stale message(s) for %s", count, endpoint_id)
    return count
