from typing import Union

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncSession

# Fixed keys for Postgres advisory locks (64-bit key space).
LEADER_LOCK_KEY = 84728472
CLAIM_LOCK_KEY = 84728473


def supports_advisory_locks(bind: Union[AsyncSession, AsyncConnection]) -> bool:
    dialect = bind.get_bind().dialect if isinstance(bind, AsyncSession) else bind.dialect
    return dialect.name == "postgresql"


async def try_advisory_lock(conn: AsyncConnection, key: int = LEADER_LOCK_KEY) -> bool:
    """
    Attempts to acquire a Postgres session-level advisory lock.
    Returns True if acquired, False otherwise.

    Session-level locks live as long as the database connection, so hold `conn` open
    for as long as leadership is wanted.
    Backends without advisory locks run a single scheduler, which is always the leader.
    """
    if not supports_advisory_locks(conn):
        return True

    result = await conn.execute(
        text("SELECT pg_try_advisory_lock(:key)"),
        {"key": key}
    )
    return result.scalar() is True


async def acquire_claim_lock(session: AsyncSession, key: int = CLAIM_LOCK_KEY) -> None:
    """
    Serializes claims for the rest of the current transaction.

    The in-flight count read by a claim is not protected by row locks under READ COMMITTED,
    so two concurrent claims could both see a free slot. SQLite already serializes writers.
    """
    if not supports_advisory_locks(session):
        return

    await session.execute(text("SELECT pg_advisory_xact_lock(:key)"), {"key": key})
