from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core import metrics
from app.core.result import Err, ErrorKind, Ok, Result
from app.models.discounts import DiscountSet
from app.services import set_locks
from app.services.code_store import CodeStore, normalize_code
from app.services.promotion_rules import ClientFactory, PromotionRuleError
from app.services.replenishment import ReplenishmentController
from app.services.set_store import SetStore, parse_set_id

logger = logging.getLogger(__name__)

PRESENTATION_FIELDS = (
    "button_style_type",
    "standard_btn_bg_color",
    "standard_btn_border_color",
    "standard_btn_text",
    "standard_btn_text_color",
    "success_btn_bg_color",
    "success_btn_border_color",
    "success_btn_text",
    "success_btn_text_color",
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def is_live(discount_set: DiscountSet, *, now: datetime | None = None) -> bool:
    """Active, not deleted, and inside its validity window."""
    if not discount_set.is_active or discount_set.deleted_at is not None:
        return False
    now = now or _now()
    starts_at = _as_utc(discount_set.starts_at)
    ends_at = _as_utc(discount_set.ends_at)
    if starts_at and starts_at > now:
        return False
    if ends_at and ends_at <= now:
        return False
    return True


def presentation(discount_set: DiscountSet) -> dict[str, Any]:
    data = {name: getattr(discount_set, name) for name in PRESENTATION_FIELDS}
    data["button_style_type"] = data["button_style_type"] or "sticker"
    return data


@dataclass(frozen=True)
class RevealedCode:
    code: str
    set_id: str
    presentation: dict[str, Any] = field(default_factory=dict)


class ProxyGateway:
    """Storefront entry points for handing out and tracking codes.

    Each call opens its own session from the injected factory; the reveal flow does so
    inside the per-set critical section.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], client_factory: ClientFactory) -> None:
        self._session_factory = session_factory
        self._client_factory = client_factory

    async def reveal_for_set(self, merchant_id: str | None, set_id: Any) -> Result[RevealedCode]:
        merchant = (merchant_id or "").strip()
        if not merchant or not str(set_id or "").strip():
            return Err(ErrorKind.invalid_input, "shop and discountSetID are required")
        parsed = parse_set_id(set_id)
        if parsed is None:
            return Err(ErrorKind.invalid_input, "discountSetID is malformed")

        try:
            async with set_locks.serialized(parsed):
                async with self._session_factory() as session:
                    return await self._reveal_locked(session, merchant, parsed)
        except SQLAlchemyError as exc:
            logger.warning(
                "reveal_store_failed", extra={"merchant_id": merchant, "set_id": str(parsed), "error": str(exc)}
            )
            return Err(ErrorKind.store_unavailable, "store unavailable")

    async def _reveal_locked(self, session: AsyncSession, merchant: str, set_id: UUID) -> Result[RevealedCode]:
        await set_locks.lock_set_row(session, set_id)
        discount_set = await SetStore(session).get(set_id, merchant_id=merchant, refresh=True)
        if discount_set is None:
            return Err(ErrorKind.set_not_found, "Discount not found or inactive")
        if not is_live(discount_set):
            return Err(ErrorKind.inactive, "Discount not found or inactive")

        codes = CodeStore(session)
        controller = ReplenishmentController(session)
        revealed_count = await codes.count_revealed(discount_set.id)
        observed_epoch = int(discount_set.replenish_epoch or 0)
        # Pressure is judged on the pool as it stood before this claim.
        threshold_crossed = controller.needs_replenishment(discount_set, revealed_count)

        claimed = await codes.claim_next_unrevealed(discount_set.id)
        await session.commit()
        if claimed is not None:
            metrics.record_code_revealed()
            logger.info(
                "code_revealed",
                extra={"merchant_id": merchant, "set_id": str(discount_set.id), "code": claimed.code},
            )

        outcome: Result[RevealedCode]
        if claimed is None:
            metrics.record_pool_exhausted()
            logger.info("pool_exhausted", extra={"merchant_id": merchant, "set_id": str(discount_set.id)})
            outcome = Err(ErrorKind.exhausted, "No available discount codes found")
        else:
            outcome = Ok(
                RevealedCode(code=claimed.code, set_id=str(discount_set.id), presentation=presentation(discount_set))
            )

        # Built before replenishing: a failed batch rolls back and expires loaded rows.
        if threshold_crossed:
            await self._replenish(session, controller, discount_set, observed_epoch)
        return outcome

    async def _replenish(
        self,
        session: AsyncSession,
        controller: ReplenishmentController,
        discount_set: DiscountSet,
        observed_epoch: int,
    ) -> None:
        set_id = str(discount_set.id)
        try:
            controller.client = await self._client_factory(session, discount_set.merchant_id)
        except PromotionRuleError as exc:
            # Epoch is untouched, so the next reveal retries.
            logger.warning("replenishment_deferred", extra={"set_id": set_id, "error": str(exc)})
            return
        outcome = await controller.replenish(discount_set, observed_epoch=observed_epoch)
        if outcome is not None and not outcome.ok:
            logger.warning(
                "replenishment_batch_incomplete",
                extra={"set_id": set_id, "error": outcome.detail},
            )

    async def code_status(self, set_id: Any, code: str | None, *, merchant_id: str | None = None) -> Result[bool]:
        """True only when the set is live and the code belongs to it unused."""
        cleaned = normalize_code(code)
        if not str(set_id or "").strip() or not cleaned:
            return Err(ErrorKind.invalid_input, "chkDiscountSetID and code are required")
        parsed = parse_set_id(set_id)
        if parsed is None:
            return Ok(False)
        async with self._session_factory() as session:
            discount_set = await SetStore(session).get(parsed, merchant_id=(merchant_id or "").strip() or None)
            if discount_set is None or not is_live(discount_set):
                return Ok(False)
            row = await CodeStore(session).find_in_set(discount_set.id, cleaned)
            return Ok(row is not None and int(row.use_count or 0) == 0)

    async def update_revealed_status(self, merchant_id: str | None, code: str | None, status: Any) -> Result[str]:
        merchant = (merchant_id or "").strip()
        cleaned = normalize_code(code)
        if not merchant or not cleaned:
            return Err(ErrorKind.invalid_input, "shop and updateRevealedStatusCode are required")
        try:
            desired = int(str(status).strip())
        except (TypeError, ValueError):
            return Err(ErrorKind.invalid_input, "status must be 0 or 1")
        if desired != 1:
            return Err(ErrorKind.invalid_input, "revealed status cannot be cleared")

        async with self._session_factory() as session:
            codes = CodeStore(session)
            existing = await codes.get_by_code(merchant, cleaned)
            if existing is None:
                return Err(ErrorKind.code_not_found, "code not found")
            discount_set = await SetStore(session).get(existing.set_id, merchant_id=merchant)
            if discount_set is None:
                return Err(ErrorKind.set_not_found, "Discount not found or inactive")
            if not is_live(discount_set):
                return Err(ErrorKind.inactive, "Discount not found or inactive")
            row, changed = await codes.mark_revealed(merchant, cleaned)
            await session.commit()
        if row is None:
            return Err(ErrorKind.code_not_found, "code not found")
        if not changed:
            return Err(ErrorKind.already_revealed, "code already revealed", data=row.code)
        metrics.record_code_revealed()
        logger.info("code_marked_revealed", extra={"merchant_id": merchant, "code": row.code})
        return Ok(row.code)
