from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from orchestrator.db.session import is_postgres

# Fixed key for the scheduler leader lock (Postgres advisory locks take a 64-bit key).
LEADER_LOCK_KEY = 84728472

async def try_advisory_lock(session: AsyncSession, key: int = LEADER_LOCK_KEY) -> bool:
    """
    Attempts to acquire a Postgres session-level advisory lock.
    Returns True if acquired, False otherwise.

    Session-level locks are released automatically when the session ends.
    SQLite has a single writer anyway, so every caller counts as leader.
    """
    if not is_postgres(session):
        return True
    result = await session.execute(
        text("SELECT pg_try_advisory_lock(:key)"),
        {"key": key}
    )
    return result.scalar() is True

async def acquire_xact_lock(session: AsyncSession, key: str) -> None:
    """
    Blocks until the transaction-scoped advisory lock for `key` is held.
    Released at commit or rollback of the surrounding transaction.

    On SQLite the surrounding BEGIN IMMEDIATE transaction already holds the
    database write lock.
    """
    if not is_postgres(session):
        return
    await session.execute(
        text("SELECT pg_advisory_xact_lock(hashtext(:key))"),
        {"key": key}
    )
