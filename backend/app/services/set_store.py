from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.discounts import DiscountSet


def _now() -> datetime:
    return datetime.now(timezone.utc)


def parse_set_id(value: Any) -> UUID | None:
    if isinstance(value, UUID):
        return value
    raw = str(value or "").strip()
    if not raw:
        return None
    try:
        return UUID(raw)
    except ValueError:
        return None


class SetStore:
    """Persistence boundary for discount-set aggregates.

    Counter columns (quantity, usage_count, revenue, replenish_epoch) are only ever
    changed with SQL-side increments so concurrent reveal, replenishment and
    redemption flows never lose updates.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, set_id: Any, *, merchant_id: str | None = None, refresh: bool = False) -> DiscountSet | None:
        parsed = parse_set_id(set_id)
        if parsed is None:
            return None
        query = select(DiscountSet).where(DiscountSet.id == parsed, DiscountSet.deleted_at.is_(None))
        if merchant_id:
            query = query.where(DiscountSet.merchant_id == merchant_id)
        if refresh:
            query = query.execution_options(populate_existing=True)
        return (await self.session.execute(query)).scalars().first()

    async def list_for_merchant(self, merchant_id: str) -> list[DiscountSet]:
        result = await self.session.execute(
            select(DiscountSet)
            .where(DiscountSet.merchant_id == merchant_id, DiscountSet.deleted_at.is_(None))
            .order_by(DiscountSet.created_at.desc())
        )
        return list(result.scalars().all())

    async def add(self, discount_set: DiscountSet) -> DiscountSet:
        self.session.add(discount_set)
        await self.session.flush()
        return discount_set

    async def update_fields(self, set_id: UUID, values: dict[str, Any]) -> bool:
        if not values:
            return True
        result = await self.session.execute(
            update(DiscountSet)
            .where(DiscountSet.id == set_id, DiscountSet.deleted_at.is_(None))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def soft_delete(self, set_id: UUID) -> bool:
        return await self.update_fields(set_id, {"deleted_at": _now(), "is_active": False})

    async def claim_replenishment(self, set_id: UUID, *, observed_epoch: int, amount: int) -> bool:
        """Grow the quantity ledger once per exhaustion event.

        Only the caller whose observed epoch still matches wins; every other
        concurrent caller sees rowcount 0.
        """
        result = await self.session.execute(
            update(DiscountSet)
            .where(
                DiscountSet.id == set_id,
                DiscountSet.replenish_epoch == observed_epoch,
                DiscountSet.is_active.is_(True),
                DiscountSet.deleted_at.is_(None),
            )
            .values(
                quantity=DiscountSet.quantity + int(amount),
                replenish_epoch=DiscountSet.replenish_epoch + 1,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def credit_redemption(self, set_id: UUID, *, revenue: Decimal) -> None:
        await self.session.execute(
            update(DiscountSet)
            .where(DiscountSet.id == set_id)
            .values(
                usage_count=DiscountSet.usage_count + 1,
                revenue=DiscountSet.revenue + revenue,
            )
            .execution_options(synchronize_session=False)
        )
