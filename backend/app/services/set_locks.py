from __future__ import annotations

import asyncio
import weakref
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from app.services import leader_lock

# asyncio.Lock binds to the loop that first waits on it, so locks are kept per loop.
_LOCKS: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, dict[UUID, asyncio.Lock]]" = (
    weakref.WeakKeyDictionary()
)


def _lock_for(set_id: UUID) -> asyncio.Lock:
    loop = asyncio.get_running_loop()
    per_loop = _LOCKS.get(loop)
    if per_loop is None:
        per_loop = {}
        _LOCKS[loop] = per_loop
    lock = per_loop.get(set_id)
    if lock is None:
        lock = asyncio.Lock()
        per_loop[set_id] = lock
    return lock


@asynccontextmanager
async def serialized(set_id: UUID) -> AsyncIterator[None]:
    """Run the claim and replenishment steps for one set one request at a time in this process."""
    async with _lock_for(set_id):
        yield


async def lock_set_row(session: AsyncSession, set_id: UUID) -> None:
    """Take a transaction-scoped advisory lock so replicas also serialize on the set."""
    conn = await session.connection()
    if conn.dialect.name != "postgresql":
        return
    await session.execute(
        text("SELECT pg_advisory_xact_lock(:id)"), {"id": leader_lock.lock_id(f"discount_set:{set_id}")}
    )
