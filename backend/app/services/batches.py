from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import metrics
from app.core.config import settings
from app.core.result import Err, ErrorKind, Ok, Result
from app.models.discounts import BatchKind, BatchSyncStatus, CodeBatch, DiscountSet
from app.services import code_generator
from app.services.code_store import CodeStore
from app.services.promotion_rules import ClientFactory, PromotionRuleClient, PromotionRuleError

logger = logging.getLogger(__name__)

_ERROR_MAX_LEN = 1000


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class BatchResult:
    batch: CodeBatch
    created: list[str] = field(default_factory=list)
    failures: list[str] = field(default_factory=list)


class _StoreOutage(Exception):
    def __init__(self, partial: "BatchResult") -> None:
        super().__init__("store unavailable")
        self.partial = partial


def _is_outage(exc: SQLAlchemyError) -> bool:
    if isinstance(exc, (OperationalError, InterfaceError)):
        return True
    return isinstance(exc, DBAPIError) and bool(getattr(exc, "connection_invalidated", False))


async def _insert_unique(store: CodeStore, discount_set: DiscountSet, batch_id: UUID, attempts: int) -> str | None:
    for _ in range(attempts):
        candidate = code_generator.generate(discount_set.prefix_code, discount_set.code_length)
        try:
            await store.insert_code(discount_set=discount_set, batch_id=batch_id, code=candidate)
        except IntegrityError:
            logger.info("code_collision", extra={"set_id": str(discount_set.id), "code": candidate})
            continue
        return candidate
    return None


async def _persist_codes(
    session: AsyncSession, discount_set: DiscountSet, batch: CodeBatch, count: int
) -> BatchResult:
    store = CodeStore(session)
    result = BatchResult(batch=batch)
    attempts = max(1, int(settings.code_insert_max_attempts or 1))
    for _ in range(max(0, int(count))):
        try:
            code = await _insert_unique(store, discount_set, batch.id, attempts)
        except SQLAlchemyError as exc:
            if _is_outage(exc):
                result.failures.append("store_unavailable")
                logger.warning(
                    "batch_persist_aborted",
                    extra={"set_id": str(discount_set.id), "batch_id": str(batch.id), "error": str(exc)},
                )
                raise _StoreOutage(result) from exc
            result.failures.append(exc.__class__.__name__)
            continue
        if code is None:
            result.failures.append("code_collision_limit")
            continue
        result.created.append(code)
    return result


async def sync_batch(
    session: AsyncSession, client: PromotionRuleClient, discount_set: DiscountSet, result: BatchResult
) -> Result[BatchResult]:
    """Phase two: push a persisted batch to the platform and record the outcome on the batch row."""
    batch = result.batch
    batch.sync_attempts = int(batch.sync_attempts or 0) + 1
    try:
        if not discount_set.promotion_rule_id:
            raise PromotionRuleError("discount set has no promotion rule", retryable=False)
        if result.created:
            await client.push_codes(discount_set.promotion_rule_id, result.created)
    except PromotionRuleError as exc:
        batch.sync_status = BatchSyncStatus.sync_failed
        batch.last_error = str(exc)[:_ERROR_MAX_LEN]
        await session.commit()
        logger.warning(
            "batch_sync_failed",
            extra={
                "merchant_id": discount_set.merchant_id,
                "set_id": str(discount_set.id),
                "batch_id": str(batch.id),
                "attempts": batch.sync_attempts,
                "error": str(exc),
            },
        )
        return Err(ErrorKind.platform_unavailable, "promotion rule sync failed", data=result)

    batch.sync_status = BatchSyncStatus.synced
    batch.synced_at = _now()
    batch.last_error = None
    await session.commit()
    logger.info(
        "batch_synced",
        extra={"set_id": str(discount_set.id), "batch_id": str(batch.id), "codes": len(result.created)},
    )
    return Ok(result)


async def _persist_failed(
    session: AsyncSession, discount_set: DiscountSet, batch: CodeBatch, exc: Exception
) -> Result[BatchResult]:
    # Rollback expires loaded instances, so read identifiers first.
    set_id, batch_id = str(discount_set.id), str(batch.id)
    await session.rollback()
    logger.warning("batch_persist_failed", extra={"set_id": set_id, "batch_id": batch_id, "error": str(exc)})
    return Err(ErrorKind.store_unavailable, "could not persist batch", data=BatchResult(batch=batch))


async def create_batch(
    session: AsyncSession,
    client: PromotionRuleClient,
    discount_set: DiscountSet,
    *,
    count: int,
    kind: BatchKind = BatchKind.initial,
) -> Result[BatchResult]:
    """Persist `count` new codes as a pending batch, then sync them to the platform.

    Codes that were persisted survive a failed sync; the batch stays `sync_failed`
    until `retry_batch_sync` or the reconcile loop pushes it again.
    """
    batch = CodeBatch(
        set_id=discount_set.id,
        kind=kind,
        requested_count=max(0, int(count)),
        sync_status=BatchSyncStatus.pending_sync,
    )
    outage = False
    session.add(batch)
    try:
        await session.flush()
        result = await _persist_codes(session, discount_set, batch, count)
    except _StoreOutage as exc:
        result, outage = exc.partial, True
    except SQLAlchemyError as exc:
        return await _persist_failed(session, discount_set, batch, exc)

    batch.created_count = len(result.created)
    try:
        await session.commit()
    except SQLAlchemyError as exc:
        return await _persist_failed(session, discount_set, batch, exc)

    metrics.record_codes_generated(len(result.created))
    logger.info(
        "batch_persisted",
        extra={
            "set_id": str(discount_set.id),
            "batch_id": str(batch.id),
            "kind": kind.value,
            "created_codes": len(result.created),
            "failures": len(result.failures),
        },
    )
    if outage:
        # Persisted codes stay pending; the reconcile pass pushes them later.
        return Err(ErrorKind.store_unavailable, "batch persisted partially", data=result)
    return await sync_batch(session, client, discount_set, result)


async def load_batch(session: AsyncSession, batch_id: UUID) -> tuple[CodeBatch, DiscountSet] | None:
    row = (
        await session.execute(
            select(CodeBatch, DiscountSet)
            .join(DiscountSet, DiscountSet.id == CodeBatch.set_id)
            .where(CodeBatch.id == batch_id)
        )
    ).first()
    if row is None:
        return None
    return row[0], row[1]


async def retry_batch_sync(
    session: AsyncSession,
    client: PromotionRuleClient,
    batch_id: UUID,
    *,
    merchant_id: str | None = None,
) -> Result[BatchResult]:
    """Re-push an unsynced batch; already-synced batches are left alone."""
    loaded = await load_batch(session, batch_id)
    if loaded is None:
        return Err(ErrorKind.set_not_found, "batch not found")
    batch, discount_set = loaded
    if merchant_id and discount_set.merchant_id != merchant_id:
        return Err(ErrorKind.set_not_found, "batch not found")
    codes = await CodeStore(session).codes_for_batch(batch.id)
    result = BatchResult(batch=batch, created=codes)
    if batch.sync_status == BatchSyncStatus.synced:
        return Ok(result)
    return await sync_batch(session, client, discount_set, result)


async def reconcile_pending_batches(
    session: AsyncSession, client_factory: ClientFactory, *, limit: int | None = None
) -> dict[str, int]:
    max_batches = max(1, int(limit if limit is not None else settings.batch_reconcile_limit))
    batch_ids = (
        (
            await session.execute(
                select(CodeBatch.id)
                .join(DiscountSet, DiscountSet.id == CodeBatch.set_id)
                .where(
                    CodeBatch.sync_status.in_((BatchSyncStatus.pending_sync, BatchSyncStatus.sync_failed)),
                    DiscountSet.deleted_at.is_(None),
                )
                .order_by(CodeBatch.created_at)
                .limit(max_batches)
            )
        )
        .scalars()
        .all()
    )

    summary = {"checked": 0, "synced": 0, "failed": 0}
    clients: dict[str, PromotionRuleClient] = {}
    for batch_id in batch_ids:
        loaded = await load_batch(session, batch_id)
        if loaded is None:
            continue
        summary["checked"] += 1
        merchant_id = loaded[1].merchant_id
        client = clients.get(merchant_id)
        if client is None:
            try:
                client = await client_factory(session, merchant_id)
            except PromotionRuleError as exc:
                summary["failed"] += 1
                logger.warning(
                    "batch_reconcile_skipped",
                    extra={"merchant_id": merchant_id, "batch_id": str(batch_id), "error": str(exc)},
                )
                continue
            clients[merchant_id] = client
        outcome = await retry_batch_sync(session, client, batch_id)
        summary["synced" if outcome.ok else "failed"] += 1
    return summary
