from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from uuid import UUID

from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.discounts import BatchSyncStatus, CodeBatch, DiscountCode, DiscountSet

_CLAIM_ATTEMPTS = 5


def _now() -> datetime:
    return datetime.now(timezone.utc)


def normalize_code(code: str | None) -> str:
    return (code or "").strip()


@dataclass(frozen=True)
class CodeCounts:
    total: int
    revealed: int
    used: int


class CodeStore:
    """Persistence boundary for individual discount codes."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def code_exists(self, merchant_id: str, code: str) -> bool:
        count = (
            await self.session.execute(
                select(func.count())
                .select_from(DiscountCode)
                .where(DiscountCode.merchant_id == merchant_id, DiscountCode.code == code)
            )
        ).scalar_one()
        return int(count) > 0

    async def insert_code(self, *, discount_set: DiscountSet, batch_id: UUID, code: str) -> DiscountCode:
        """Insert one unrevealed code inside a savepoint; IntegrityError propagates on conflict."""
        row = DiscountCode(
            merchant_id=discount_set.merchant_id,
            set_id=discount_set.id,
            batch_id=batch_id,
            code=code,
            revealed=False,
            use_count=0,
            usable_qty=1,
            revenue=Decimal("0.00"),
        )
        async with self.session.begin_nested():
            self.session.add(row)
            await self.session.flush()
        return row

    async def count_revealed(self, set_id: UUID) -> int:
        return int(
            (
                await self.session.execute(
                    select(func.count())
                    .select_from(DiscountCode)
                    .where(DiscountCode.set_id == set_id, DiscountCode.revealed.is_(True))
                )
            ).scalar_one()
        )

    async def counts(self, set_id: UUID) -> CodeCounts:
        row = (
            await self.session.execute(
                select(
                    func.count(DiscountCode.id),
                    func.coalesce(func.sum(case((DiscountCode.revealed.is_(True), 1), else_=0)), 0),
                    func.coalesce(func.sum(case((DiscountCode.use_count > 0, 1), else_=0)), 0),
                ).where(DiscountCode.set_id == set_id)
            )
        ).one()
        return CodeCounts(total=int(row[0] or 0), revealed=int(row[1] or 0), used=int(row[2] or 0))

    async def claim_next_unrevealed(self, set_id: UUID) -> DiscountCode | None:
        """Atomically flip one unrevealed, checkout-ready code to revealed and return it.

        The flip is a compare-and-swap on the revealed flag; a lost race retries with
        the next candidate instead of handing the same code to two visitors.
        """
        for _ in range(_CLAIM_ATTEMPTS):
            candidate = (
                await self.session.execute(
                    select(DiscountCode.id)
                    .join(CodeBatch, CodeBatch.id == DiscountCode.batch_id)
                    .where(
                        DiscountCode.set_id == set_id,
                        DiscountCode.revealed.is_(False),
                        DiscountCode.use_count == 0,
                        CodeBatch.sync_status == BatchSyncStatus.synced,
                    )
                    .order_by(DiscountCode.created_at, DiscountCode.id)
                    .limit(1)
                )
            ).scalar_one_or_none()
            if candidate is None:
                return None

            result = await self.session.execute(
                update(DiscountCode)
                .where(DiscountCode.id == candidate, DiscountCode.revealed.is_(False))
                .values(revealed=True, revealed_at=_now())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                return await self._load(candidate)
        return None

    async def mark_revealed(self, merchant_id: str, code: str) -> tuple[DiscountCode | None, bool]:
        """Flip a specific code to revealed; returns (code, changed). Re-reveals never move revealed_at."""
        row = await self.get_by_code(merchant_id, code)
        if row is None:
            return None, False
        result = await self.session.execute(
            update(DiscountCode)
            .where(DiscountCode.id == row.id, DiscountCode.revealed.is_(False))
            .values(revealed=True, revealed_at=_now())
            .execution_options(synchronize_session=False)
        )
        return await self._load(row.id), result.rowcount == 1

    async def get_by_code(self, merchant_id: str, code: str) -> DiscountCode | None:
        cleaned = normalize_code(code)
        if not cleaned:
            return None
        result = await self.session.execute(
            select(DiscountCode).where(DiscountCode.merchant_id == merchant_id, DiscountCode.code == cleaned)
        )
        return result.scalars().first()

    async def find_in_set(self, set_id: UUID, code: str) -> DiscountCode | None:
        cleaned = normalize_code(code)
        if not cleaned:
            return None
        result = await self.session.execute(
            select(DiscountCode).where(DiscountCode.set_id == set_id, DiscountCode.code == cleaned)
        )
        return result.scalars().first()

    async def record_use(self, code_id: UUID, *, revenue: Decimal) -> bool:
        """Count one redemption and add its revenue; refuses once usable_qty is spent."""
        result = await self.session.execute(
            update(DiscountCode)
            .where(DiscountCode.id == code_id, DiscountCode.use_count < DiscountCode.usable_qty)
            .values(
                use_count=DiscountCode.use_count + 1,
                revenue=DiscountCode.revenue + revenue,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def codes_for_batch(self, batch_id: UUID) -> list[str]:
        result = await self.session.execute(
            select(DiscountCode.code).where(DiscountCode.batch_id == batch_id).order_by(DiscountCode.created_at)
        )
        return list(result.scalars().all())

    async def list_for_set(self, set_id: UUID, *, limit: int = 100, offset: int = 0) -> list[DiscountCode]:
        result = await self.session.execute(
            select(DiscountCode)
            .where(DiscountCode.set_id == set_id)
            .order_by(DiscountCode.created_at, DiscountCode.id)
            .offset(max(0, int(offset)))
            .limit(max(1, min(1000, int(limit))))
        )
        return list(result.scalars().all())

    async def _load(self, code_id: UUID) -> DiscountCode | None:
        result = await self.session.execute(
            select(DiscountCode).where(DiscountCode.id == code_id).execution_options(populate_existing=True)
        )
        return result.scalars().first()
