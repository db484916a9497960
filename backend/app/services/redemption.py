from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import metrics
from app.core.result import Err, ErrorKind, Ok, Result
from app.models.attribution import AttributionSource, OrderAttribution
from app.services.code_store import CodeStore, normalize_code
from app.services.set_store import SetStore

logger = logging.getLogger(__name__)


def to_money(value: Any) -> Decimal | None:
    try:
        amount = Decimal(str(value if value not in (None, "") else "0"))
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite() or amount < 0:
        return None
    return amount.quantize(Decimal("0.01"))


@dataclass(frozen=True)
class OrderPayload:
    order_id: str
    merchant_id: str
    total_price: Any
    codes: tuple[str, ...] = ()
    currency: str | None = None
    order_number: str | None = None
    line_items_count: int = 0
    correlation_value: str | None = None
    created_at: datetime | None = None


@dataclass
class RedemptionSummary:
    order_id: str
    credited: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


def _unique_codes(codes: tuple[str, ...] | list[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for raw in codes or ():
        code = normalize_code(raw)
        if code and code not in seen:
            seen.add(code)
            out.append(code)
    return out


class RedemptionRecorder:
    """Credits an order's codes and their sets exactly once per (order_id, merchant_id)."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self.codes = CodeStore(session)
        self.sets = SetStore(session)

    async def record_order(
        self, order: OrderPayload, source: AttributionSource = AttributionSource.webhook
    ) -> Result[RedemptionSummary]:
        order_id = str(order.order_id or "").strip()
        merchant_id = str(order.merchant_id or "").strip()
        if not order_id or not merchant_id:
            return Err(ErrorKind.invalid_input, "order id and merchant id are required")
        total = to_money(order.total_price)
        if total is None:
            return Err(ErrorKind.invalid_input, "order total is not a valid amount")
        codes = _unique_codes(order.codes)

        ledger = OrderAttribution(
            order_id=order_id,
            merchant_id=merchant_id,
            order_number=(order.order_number or None),
            source=source,
            correlation_value=order.correlation_value,
            total_price=total,
            currency=(order.currency or "USD").strip().upper()[:3] or "USD",
            line_items_count=max(0, int(order.line_items_count or 0)),
            order_created_at=order.created_at,
        )
        self.session.add(ledger)
        try:
            await self.session.flush()
        except IntegrityError:
            await self.session.rollback()
            metrics.record_duplicate_order()
            logger.info(
                "redemption_duplicate",
                extra={"merchant_id": merchant_id, "order_id": order_id, "source": source.value},
            )
            return Err(ErrorKind.duplicate, "order already attributed")
        except SQLAlchemyError as exc:
            await self.session.rollback()
            logger.warning(
                "redemption_store_failed", extra={"merchant_id": merchant_id, "order_id": order_id, "error": str(exc)}
            )
            return Err(ErrorKind.store_unavailable, "store unavailable")

        summary = RedemptionSummary(order_id=order_id)
        for code in codes:
            await self._credit_code(summary, merchant_id, order_id, code, total)

        ledger.credited_codes = list(summary.credited)
        ledger.skipped_codes = list(summary.skipped)
        ledger.failed_codes = list(summary.failed)
        await self.session.commit()
        if summary.credited:
            metrics.record_redemption()
        if summary.failed:
            logger.error(
                "order_attribution_incomplete",
                extra={"merchant_id": merchant_id, "order_id": order_id, "failed_codes": list(summary.failed)},
            )
        logger.info(
            "order_attributed",
            extra={
                "merchant_id": merchant_id,
                "order_id": order_id,
                "source": source.value,
                "credited": len(summary.credited),
                "skipped": len(summary.skipped),
                "failed": len(summary.failed),
            },
        )
        return Ok(summary)

    async def _credit_code(
        self, summary: RedemptionSummary, merchant_id: str, order_id: str, code: str, total: Decimal
    ) -> None:
        row = await self.codes.get_by_code(merchant_id, code)
        if row is None:
            summary.skipped.append(code)
            logger.info(
                "redemption_code_unknown", extra={"merchant_id": merchant_id, "order_id": order_id, "code": code}
            )
            return
        try:
            async with self.session.begin_nested():
                if not await self.codes.record_use(row.id, revenue=total):
                    summary.skipped.append(code)
                    logger.info(
                        "redemption_code_spent",
                        extra={"merchant_id": merchant_id, "order_id": order_id, "code": code},
                    )
                    return
                await self.sets.credit_redemption(row.set_id, revenue=total)
        except SQLAlchemyError as exc:
            summary.failed.append(code)
            logger.warning(
                "redemption_code_failed",
                extra={"merchant_id": merchant_id, "order_id": order_id, "code": code, "error": str(exc)},
            )
            return
        summary.credited.append(code)
