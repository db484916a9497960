from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.result import Err, ErrorKind, Ok, Result
from app.models.attribution import AttributionSource
from app.services.promotion_rules import PromotionRuleClient, PromotionRuleError
from app.services.redemption import OrderPayload, RedemptionRecorder

logger = logging.getLogger(__name__)


@dataclass
class SyncSummary:
    orders_checked: int = 0
    attributed: int = 0
    skipped: int = 0


def _parse_dt(value: Any) -> datetime | None:
    raw = str(value or "").strip()
    if not raw:
        return None
    try:
        return datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None


def _order_id(gid: Any) -> str:
    raw = str(gid or "").strip()
    return raw.rsplit("/", 1)[-1] if raw.startswith("gid://") else raw


def _attribute(node: dict[str, Any], key: str) -> str | None:
    for attr in node.get("customAttributes") or []:
        if isinstance(attr, dict) and attr.get("key") == key:
            value = str(attr.get("value") or "").strip()
            return value or None
    return None


def order_from_node(node: dict[str, Any], merchant_id: str, *, attribute_key: str) -> OrderPayload | None:
    """Map one GraphQL order node onto an OrderPayload, or None when it is not ours to credit."""
    codes = tuple(str(code) for code in (node.get("discountCodes") or []) if str(code or "").strip())
    correlation = _attribute(node, attribute_key) if attribute_key else None
    if attribute_key and correlation is None:
        return None
    if not attribute_key and not codes:
        return None

    money = ((node.get("totalPriceSet") or {}).get("shopMoney")) or {}
    line_items = ((node.get("lineItems") or {}).get("edges")) or []
    return OrderPayload(
        order_id=_order_id(node.get("id")),
        merchant_id=merchant_id,
        total_price=money.get("amount") or "0",
        currency=money.get("currencyCode"),
        codes=codes,
        order_number=node.get("name"),
        line_items_count=len(line_items),
        correlation_value=correlation,
        created_at=_parse_dt(node.get("createdAt")),
    )


async def sync_recent_orders(
    session: AsyncSession,
    client: PromotionRuleClient,
    merchant_id: str,
    *,
    lookback_days: int | None = None,
    limit: int | None = None,
    attribute_key: str | None = None,
) -> Result[SyncSummary]:
    """Credit recent platform orders that the webhook path may have missed.

    Safe to run on overlapping windows: the attribution ledger drops repeats.
    """
    merchant = (merchant_id or "").strip()
    if not merchant:
        return Err(ErrorKind.invalid_input, "shop is required")
    days = max(1, int(lookback_days if lookback_days is not None else settings.order_sync_lookback_days))
    page_size = max(1, int(limit if limit is not None else settings.order_sync_page_size))
    key = settings.order_sync_attribute_key if attribute_key is None else attribute_key

    since = datetime.now(timezone.utc) - timedelta(days=days)
    try:
        nodes = await client.fetch_recent_orders(since=since, limit=page_size)
    except PromotionRuleError as exc:
        logger.warning("order_sync_fetch_failed", extra={"merchant_id": merchant, "error": str(exc)})
        return Err(ErrorKind.platform_unavailable, "could not fetch recent orders")

    summary = SyncSummary(orders_checked=len(nodes))
    recorder = RedemptionRecorder(session)
    for node in nodes:
        order = order_from_node(node, merchant, attribute_key=(key or "").strip())
        if order is None or not order.order_id:
            summary.skipped += 1
            continue
        outcome = await recorder.record_order(order, AttributionSource.sync)
        if outcome.ok:
            summary.attributed += 1
        else:
            summary.skipped += 1

    logger.info(
        "order_sync_completed",
        extra={
            "merchant_id": merchant,
            "orders_checked": summary.orders_checked,
            "attributed": summary.attributed,
            "skipped": summary.skipped,
        },
    )
    return Ok(summary)
