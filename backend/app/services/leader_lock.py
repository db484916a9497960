from __future__ import annotations

import asyncio
import hashlib
import logging
from collections.abc import Awaitable, Callable
from contextlib import suppress

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from app.db.session import engine

logger = logging.getLogger(__name__)

ELECTION_RETRY_SECONDS = 15


def is_postgres(bind: AsyncEngine | None = None) -> bool:
    return (bind or engine).dialect.name == "postgresql"


def lock_id(name: str) -> int:
    """Advisory lock key for a name, non-negative and inside BIGINT."""
    digest = hashlib.sha256(name.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big") >> 1


async def _pause(stop: asyncio.Event) -> None:
    with suppress(asyncio.TimeoutError):
        await asyncio.wait_for(stop.wait(), timeout=ELECTION_RETRY_SECONDS)


async def run_as_leader(*, name: str, stop: asyncio.Event, work: Callable[[asyncio.Event], Awaitable[None]]) -> None:
    """Run ``work`` on the one replica holding the session advisory lock for ``name``.

    Without Postgres there is a single process, so ``work`` runs directly.
    """
    if not is_postgres():
        await work(stop)
        return

    key = lock_id(name)
    while not stop.is_set():
        try:
            async with engine.connect() as conn:
                held = (await conn.execute(text("SELECT pg_try_advisory_lock(:id)"), {"id": key})).scalar()
                if held:
                    logger.info("leader_elected", extra={"lock_name": name})
                    try:
                        await work(stop)
                    finally:
                        await conn.execute(text("SELECT pg_advisory_unlock(:id)"), {"id": key})
                    return
        except Exception as exc:
            logger.warning("leader_election_failed", extra={"lock_name": name, "error": str(exc)})
        await _pause(stop)
