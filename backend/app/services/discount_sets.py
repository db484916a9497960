from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.result import Err, ErrorKind, Ok, Result
from app.models.discounts import BatchKind, DiscountSet
from app.schemas.discounts import DiscountSetCreate, DiscountSetUpdate, shape_error
from app.services import batches
from app.services.batches import BatchResult
from app.services.promotion_rules import PromotionRuleClient, PromotionRuleError, RuleSpec
from app.services.set_store import SetStore

logger = logging.getLogger(__name__)

# Fields whose change must be mirrored onto the platform price rule.
_RULE_FIELDS = {
    "title",
    "discount_type",
    "discount_value",
    "target_selection",
    "entitled_collection_ids",
    "entitled_product_ids",
    "minimum_requirement",
    "minimum_subtotal",
    "minimum_quantity",
    "allocation_limit",
    "customer_selection",
    "starts_at",
    "ends_at",
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SetCreation:
    set_id: UUID
    discount_set: DiscountSet
    batch: BatchResult | None = None


async def create_discount_set(
    session: AsyncSession, client: PromotionRuleClient, merchant_id: str, payload: DiscountSetCreate
) -> Result[SetCreation]:
    """Create the platform rule, persist the set, then generate and sync its initial batch."""
    discount_set = DiscountSet(merchant_id=merchant_id, **payload.model_dump())
    discount_set.prefix_code = (payload.prefix_code or "").strip()
    try:
        discount_set.promotion_rule_id = await client.create_rule(RuleSpec.from_discount_set(discount_set))
    except PromotionRuleError as exc:
        logger.warning("promotion_rule_create_failed", extra={"merchant_id": merchant_id, "error": str(exc)})
        return Err(ErrorKind.platform_unavailable, "could not create promotion rule")

    await SetStore(session).add(discount_set)
    await session.commit()
    set_id = discount_set.id
    logger.info(
        "discount_set_created",
        extra={"merchant_id": merchant_id, "set_id": str(set_id), "quantity": discount_set.quantity},
    )

    outcome = await batches.create_batch(
        session, client, discount_set, count=discount_set.quantity, kind=BatchKind.initial
    )
    batch = outcome.value if outcome.ok else outcome.data
    created = SetCreation(set_id=set_id, discount_set=discount_set, batch=batch)
    if not outcome.ok:
        return Err(outcome.kind, outcome.detail, data=created)
    return Ok(created)


async def update_discount_set(
    session: AsyncSession,
    client: PromotionRuleClient,
    merchant_id: str,
    set_id: UUID,
    payload: DiscountSetUpdate,
) -> Result[DiscountSet]:
    store = SetStore(session)
    discount_set = await store.get(set_id, merchant_id=merchant_id)
    if discount_set is None:
        return Err(ErrorKind.set_not_found, "Discount set not found")

    changes: dict[str, Any] = payload.model_dump(exclude_unset=True)
    merged = {column: getattr(discount_set, column) for column in _RULE_FIELDS}
    merged.update(changes)
    problem = shape_error(merged)
    if problem:
        return Err(ErrorKind.invalid_input, problem)
    for field_name, value in changes.items():
        setattr(discount_set, field_name, value)
    await session.commit()

    if not (_RULE_FIELDS & set(changes)) or not discount_set.promotion_rule_id:
        return Ok(discount_set)
    try:
        await client.update_rule(discount_set.promotion_rule_id, RuleSpec.from_discount_set(discount_set))
    except PromotionRuleError as exc:
        logger.warning(
            "promotion_rule_update_failed",
            extra={"merchant_id": merchant_id, "set_id": str(set_id), "error": str(exc)},
        )
        return Err(ErrorKind.platform_unavailable, "promotion rule update failed", data=discount_set)
    return Ok(discount_set)


async def _push_window(
    client: PromotionRuleClient, discount_set: DiscountSet, *, ends_at: datetime | None, event: str
) -> Result[DiscountSet]:
    if not discount_set.promotion_rule_id:
        return Ok(discount_set)
    try:
        await client.set_rule_window(discount_set.promotion_rule_id, starts_at=None, ends_at=ends_at)
    except PromotionRuleError as exc:
        logger.warning(
            f"{event}_rule_sync_failed",
            extra={"merchant_id": discount_set.merchant_id, "set_id": str(discount_set.id), "error": str(exc)},
        )
        return Err(ErrorKind.platform_unavailable, "promotion rule window update failed", data=discount_set)
    return Ok(discount_set)


async def deactivate(
    session: AsyncSession, client: PromotionRuleClient, merchant_id: str, set_id: UUID
) -> Result[DiscountSet]:
    """Stop reveals locally and end the platform rule now; the stored ends_at is kept for reactivation."""
    store = SetStore(session)
    discount_set = await store.get(set_id, merchant_id=merchant_id)
    if discount_set is None:
        return Err(ErrorKind.set_not_found, "Discount set not found")
    discount_set.is_active = False
    await session.commit()
    logger.info("discount_set_deactivated", extra={"merchant_id": merchant_id, "set_id": str(set_id)})
    return await _push_window(client, discount_set, ends_at=_now(), event="deactivate")


async def activate(
    session: AsyncSession,
    client: PromotionRuleClient,
    merchant_id: str,
    set_id: UUID,
    *,
    ends_at: datetime | None = None,
) -> Result[DiscountSet]:
    store = SetStore(session)
    discount_set = await store.get(set_id, merchant_id=merchant_id)
    if discount_set is None:
        return Err(ErrorKind.set_not_found, "Discount set not found")
    discount_set.is_active = True
    if ends_at is not None:
        discount_set.ends_at = ends_at
    await session.commit()
    logger.info("discount_set_activated", extra={"merchant_id": merchant_id, "set_id": str(set_id)})
    return await _push_window(client, discount_set, ends_at=discount_set.ends_at, event="activate")


async def delete(
    session: AsyncSession, client: PromotionRuleClient, merchant_id: str, set_id: UUID
) -> Result[DiscountSet]:
    store = SetStore(session)
    discount_set = await store.get(set_id, merchant_id=merchant_id)
    if discount_set is None:
        return Err(ErrorKind.set_not_found, "Discount set not found")
    await store.soft_delete(discount_set.id)
    await session.commit()
    logger.info("discount_set_deleted", extra={"merchant_id": merchant_id, "set_id": str(set_id)})
    # Codes stay for revenue history; only the platform rule is closed.
    return await _push_window(client, discount_set, ends_at=_now(), event="delete")
