from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import metrics
from app.core.config import settings
from app.models.discounts import DiscountSet, DiscountValueType, MinimumRequirement, TargetSelection
from app.models.merchant import MerchantSession

logger = logging.getLogger(__name__)

# The platform rejects batch creation requests above this size.
_MAX_CODES_PER_PUSH = 100
_RETRYABLE_STATUS = {429, 500, 502, 503, 504}

_RECENT_ORDERS_QUERY = """
query RecentOrders($first: Int!, $query: String!) {
  orders(first: $first, sortKey: CREATED_AT, reverse: true, query: $query) {
    edges {
      node {
        id
        name
        createdAt
        discountCodes
        customAttributes { key value }
        totalPriceSet { shopMoney { amount currencyCode } }
        lineItems(first: 50) { edges { node { id } } }
      }
    }
  }
}
"""


class PromotionRuleError(Exception):
    def __init__(self, message: str, *, status_code: int | None = None, retryable: bool = True) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def _numeric_id(gid: Any) -> str:
    raw = str(gid or "").strip()
    return raw.rsplit("/", 1)[-1] if raw.startswith("gid://") else raw


@dataclass(frozen=True)
class RuleSpec:
    """The discount shape mirrored onto the platform's price rule."""

    title: str
    value_type: DiscountValueType
    value: Decimal
    target_selection: TargetSelection = TargetSelection.all
    entitled_collection_ids: list[str] = field(default_factory=list)
    entitled_product_ids: list[str] = field(default_factory=list)
    minimum_requirement: MinimumRequirement = MinimumRequirement.none
    minimum_subtotal: Decimal | None = None
    minimum_quantity: int | None = None
    allocation_limit: int | None = None
    customer_selection: str = "all"
    starts_at: datetime | None = None
    ends_at: datetime | None = None

    @classmethod
    def from_discount_set(cls, discount_set: DiscountSet) -> "RuleSpec":
        return cls(
            title=discount_set.title,
            value_type=discount_set.discount_type,
            value=Decimal(str(discount_set.discount_value)),
            target_selection=discount_set.target_selection,
            entitled_collection_ids=[str(x) for x in (discount_set.entitled_collection_ids or [])],
            entitled_product_ids=[str(x) for x in (discount_set.entitled_product_ids or [])],
            minimum_requirement=discount_set.minimum_requirement,
            minimum_subtotal=discount_set.minimum_subtotal,
            minimum_quantity=discount_set.minimum_quantity,
            allocation_limit=discount_set.allocation_limit,
            customer_selection=discount_set.customer_selection or "all",
            starts_at=discount_set.starts_at,
            ends_at=discount_set.ends_at,
        )

    def to_payload(self) -> dict[str, Any]:
        target = "all" if self.target_selection == TargetSelection.all else "entitled"
        rule: dict[str, Any] = {
            "title": self.title,
            "value_type": self.value_type.value,
            # Price rule values are expressed as negative amounts.
            "value": str(-abs(self.value)),
            "customer_selection": self.customer_selection,
            "target_type": "line_item",
            "target_selection": target,
            "allocation_method": "across",
            "starts_at": _iso(self.starts_at or datetime.now(timezone.utc)),
            "ends_at": _iso(self.ends_at),
        }
        if self.target_selection == TargetSelection.collections:
            rule["entitled_collection_ids"] = [_numeric_id(x) for x in self.entitled_collection_ids]
        elif self.target_selection == TargetSelection.products:
            rule["entitled_product_ids"] = [_numeric_id(x) for x in self.entitled_product_ids]
        if self.allocation_limit:
            rule["allocation_limit"] = int(self.allocation_limit)
        if self.minimum_requirement == MinimumRequirement.subtotal and self.minimum_subtotal is not None:
            rule["prerequisite_subtotal_range"] = {"greater_than_or_equal_to": str(self.minimum_subtotal)}
        elif self.minimum_requirement == MinimumRequirement.quantity and self.minimum_quantity:
            rule["prerequisite_quantity_range"] = {"greater_than_or_equal_to": int(self.minimum_quantity)}
        return {"price_rule": rule}


class PromotionRuleClient:
    """Admin API adapter for one merchant's price rules, discount codes and orders."""

    def __init__(
        self,
        merchant_id: str,
        access_token: str,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        api_version: str | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
        backoff_seconds: float | None = None,
    ) -> None:
        self.merchant_id = merchant_id
        self._access_token = access_token
        self._transport = transport
        version = api_version or settings.platform_api_version
        self._base_url = f"https://{merchant_id}/admin/api/{version}"
        self._timeout = float(timeout if timeout is not None else settings.platform_timeout_seconds)
        self._max_retries = max(0, int(max_retries if max_retries is not None else settings.platform_max_retries))
        self._backoff = max(
            0.0, float(backoff_seconds if backoff_seconds is not None else settings.platform_retry_backoff_seconds)
        )

    def _headers(self) -> dict[str, str]:
        return {
            "X-Shopify-Access-Token": self._access_token,
            "Accept": "application/json",
            "Content-Type": "application/json",
        }

    async def _request(self, method: str, path: str, *, json: Any = None) -> dict[str, Any]:
        last_error: PromotionRuleError | None = None
        for attempt in range(self._max_retries + 1):
            if attempt:
                await asyncio.sleep(self._backoff * (2 ** (attempt - 1)))
            try:
                async with httpx.AsyncClient(
                    base_url=self._base_url, timeout=self._timeout, transport=self._transport
                ) as client:
                    resp = await client.request(method, path, json=json, headers=self._headers())
            except httpx.TransportError as exc:
                last_error = PromotionRuleError(f"platform request failed: {exc.__class__.__name__}")
                logger.warning(
                    "platform_request_retry",
                    extra={"merchant_id": self.merchant_id, "path": path, "attempt": attempt + 1, "error": str(exc)},
                )
                continue

            if resp.status_code in _RETRYABLE_STATUS:
                last_error = PromotionRuleError(
                    f"platform responded {resp.status_code}", status_code=resp.status_code
                )
                logger.warning(
                    "platform_request_retry",
                    extra={
                        "merchant_id": self.merchant_id,
                        "path": path,
                        "attempt": attempt + 1,
                        "status_code": resp.status_code,
                    },
                )
                continue
            if resp.status_code >= 400:
                raise PromotionRuleError(
                    f"platform rejected request ({resp.status_code})",
                    status_code=resp.status_code,
                    retryable=False,
                )
            if not resp.content:
                return {}
            try:
                data = resp.json()
            except ValueError as exc:
                raise PromotionRuleError("platform returned invalid JSON", retryable=False) from exc
            return data if isinstance(data, dict) else {}

        metrics.record_platform_failure()
        raise last_error or PromotionRuleError("platform request failed")

    async def create_rule(self, spec: RuleSpec) -> str:
        data = await self._request("POST", "/price_rules.json", json=spec.to_payload())
        rule_id = (data.get("price_rule") or {}).get("id")
        if not rule_id:
            raise PromotionRuleError("platform did not return a price rule id", retryable=False)
        logger.info("promotion_rule_created", extra={"merchant_id": self.merchant_id, "rule_id": str(rule_id)})
        return str(rule_id)

    async def update_rule(self, rule_id: str, spec: RuleSpec) -> None:
        payload = spec.to_payload()
        payload["price_rule"]["id"] = rule_id
        await self._request("PUT", f"/price_rules/{rule_id}.json", json=payload)

    async def set_rule_window(self, rule_id: str, *, starts_at: datetime | None, ends_at: datetime | None) -> None:
        rule: dict[str, Any] = {"id": rule_id, "ends_at": _iso(ends_at)}
        if starts_at is not None:
            rule["starts_at"] = _iso(starts_at)
        await self._request("PUT", f"/price_rules/{rule_id}.json", json={"price_rule": rule})

    async def push_codes(self, rule_id: str, codes: Sequence[str]) -> int:
        """Register codes against the rule so checkout honors them; returns how many were sent."""
        sent = 0
        for start in range(0, len(codes), _MAX_CODES_PER_PUSH):
            chunk = list(codes[start : start + _MAX_CODES_PER_PUSH])
            await self._request(
                "POST",
                f"/price_rules/{rule_id}/batch.json",
                json={"discount_codes": [{"code": code} for code in chunk]},
            )
            sent += len(chunk)
        return sent

    async def fetch_recent_orders(self, *, since: datetime, limit: int) -> list[dict[str, Any]]:
        data = await self._request(
            "POST",
            "/graphql.json",
            json={
                "query": _RECENT_ORDERS_QUERY,
                "variables": {"first": max(1, int(limit)), "query": f"created_at:>={_iso(since)}"},
            },
        )
        if data.get("errors"):
            raise PromotionRuleError("platform GraphQL query failed", retryable=False)
        edges = ((data.get("data") or {}).get("orders") or {}).get("edges") or []
        return [edge.get("node") or {} for edge in edges if isinstance(edge, dict)]


ClientFactory = Callable[[AsyncSession, str], Awaitable[PromotionRuleClient]]


async def client_for_merchant(session: AsyncSession, merchant_id: str) -> PromotionRuleClient:
    token = (
        await session.execute(select(MerchantSession.access_token).where(MerchantSession.merchant_id == merchant_id))
    ).scalar_one_or_none()
    if not token:
        raise PromotionRuleError("merchant has no platform session", retryable=False)
    return PromotionRuleClient(merchant_id, token)
