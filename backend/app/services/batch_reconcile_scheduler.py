from __future__ import annotations

import asyncio
import logging
from contextlib import suppress

from fastapi import FastAPI

from app.core.config import settings
from app.db.session import SessionLocal
from app.services import batches, leader_lock
from app.services.promotion_rules import client_for_merchant

logger = logging.getLogger(__name__)


async def _run_once() -> dict[str, int]:
    if not bool(getattr(settings, "batch_reconcile_enabled", True)):
        return {"checked": 0, "synced": 0, "failed": 0}
    async with SessionLocal() as session:
        return await batches.reconcile_pending_batches(
            session, client_for_merchant, limit=int(getattr(settings, "batch_reconcile_limit", 50) or 50)
        )


async def _loop(stop: asyncio.Event) -> None:
    interval = max(30, int(getattr(settings, "batch_reconcile_interval_seconds", 300) or 300))
    while not stop.is_set():
        try:
            summary = await _run_once()
            if summary.get("checked"):
                logger.info("batch_reconcile_completed", extra=summary)
        except asyncio.CancelledError:
            break
        except Exception as exc:
            logger.warning("batch_reconcile_scheduler_failed", extra={"error": str(exc)})

        with suppress(asyncio.TimeoutError):
            await asyncio.wait_for(stop.wait(), timeout=interval)


def start(app: FastAPI) -> None:
    if not bool(getattr(settings, "batch_reconcile_enabled", True)):
        return
    if getattr(app.state, "batch_reconcile_scheduler_task", None) is not None:
        return

    stop = asyncio.Event()
    task = asyncio.create_task(leader_lock.run_as_leader(name="batch_reconcile_scheduler", stop=stop, work=_loop))
    app.state.batch_reconcile_scheduler_stop = stop
    app.state.batch_reconcile_scheduler_task = task


async def stop(app: FastAPI) -> None:
    stop_event = getattr(app.state, "batch_reconcile_scheduler_stop", None)
    task = getattr(app.state, "batch_reconcile_scheduler_task", None)
    if stop_event:
        stop_event.set()
    if task:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
    for attr in ("batch_reconcile_scheduler_stop", "batch_reconcile_scheduler_task"):
        if getattr(app.state, attr, None) is not None:
            delattr(app.state, attr)
