import asyncio
import json
from datetime import datetime, timezone
from decimal import Decimal

import httpx
import pytest

from app.core import metrics
from app.models.discounts import DiscountValueType, MinimumRequirement, TargetSelection
from app.models.merchant import MerchantSession
from app.services.promotion_rules import PromotionRuleClient, PromotionRuleError, RuleSpec, client_for_merchant
from conftest import SHOP


def _client(handler, **kwargs) -> PromotionRuleClient:
    kwargs.setdefault("backoff_seconds", 0)
    return PromotionRuleClient(SHOP, "shpat_test", transport=httpx.MockTransport(handler), **kwargs)


def test_rule_payload_shape() -> None:
    spec = RuleSpec(
        title="Spring",
        value_type=DiscountValueType.percentage,
        value=Decimal("15"),
        target_selection=TargetSelection.collections,
        entitled_collection_ids=["gid://shopify/Collection/42", "43"],
        minimum_requirement=MinimumRequirement.subtotal,
        minimum_subtotal=Decimal("30.00"),
        allocation_limit=1,
        starts_at=datetime(2026, 3, 1, tzinfo=timezone.utc),
    )
    rule = spec.to_payload()["price_rule"]
    assert rule["value"] == "-15"
    assert rule["value_type"] == "percentage"
    assert rule["target_type"] == "line_item"
    assert rule["target_selection"] == "entitled"
    assert rule["allocation_method"] == "across"
    assert rule["entitled_collection_ids"] == ["42", "43"]
    assert rule["prerequisite_subtotal_range"] == {"greater_than_or_equal_to": "30.00"}
    assert rule["allocation_limit"] == 1
    assert rule["starts_at"] == "2026-03-01T00:00:00+00:00"
    assert rule["ends_at"] is None


def test_rule_payload_defaults_start_to_now() -> None:
    spec = RuleSpec(title="Always", value_type=DiscountValueType.fixed_amount, value=Decimal("5"))
    rule = spec.to_payload()["price_rule"]
    assert rule["target_selection"] == "all"
    assert rule["starts_at"]
    assert "prerequisite_subtotal_range" not in rule
    assert "entitled_product_ids" not in rule


def test_create_rule_sends_token_and_returns_id() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, json={"price_rule": {"id": 987654}})

    spec = RuleSpec(title="T", value_type=DiscountValueType.percentage, value=Decimal("10"))
    rule_id = asyncio.run(_client(handler, api_version="2024-10").create_rule(spec))
    assert rule_id == "987654"
    [request] = seen
    assert request.method == "POST"
    assert str(request.url) == f"https://{SHOP}/admin/api/2024-10/price_rules.json"
    assert request.headers["X-Shopify-Access-Token"] == "shpat_test"
    assert json.loads(request.content)["price_rule"]["title"] == "T"


def test_retries_transient_failures_then_succeeds() -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        if calls["count"] == 1:
            raise httpx.ConnectError("boom", request=request)
        if calls["count"] == 2:
            return httpx.Response(503)
        return httpx.Response(201, json={"price_rule": {"id": 1}})

    spec = RuleSpec(title="T", value_type=DiscountValueType.percentage, value=Decimal("10"))
    assert asyncio.run(_client(handler, max_retries=3).create_rule(spec)) == "1"
    assert calls["count"] == 3


def test_exhausted_retries_raise_and_count_failure() -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(429)

    with pytest.raises(PromotionRuleError) as excinfo:
        asyncio.run(_client(handler, max_retries=2).push_codes("1", ["A"]))
    assert excinfo.value.status_code == 429
    assert excinfo.value.retryable is True
    assert calls["count"] == 3
    assert metrics.snapshot()["platform_failures"] == 1


def test_client_errors_are_not_retried() -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(422, json={"errors": {"code": ["must be unique"]}})

    with pytest.raises(PromotionRuleError) as excinfo:
        asyncio.run(_client(handler, max_retries=3).push_codes("1", ["A"]))
    assert excinfo.value.retryable is False
    assert calls["count"] == 1


def test_push_codes_is_chunked() -> None:
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path.endswith("/price_rules/55/batch.json")
        bodies.append(json.loads(request.content))
        return httpx.Response(201, json={"discount_code_creation": {"id": 1}})

    codes = [f"C{i:03d}" for i in range(250)]
    sent = asyncio.run(_client(handler).push_codes("55", codes))
    assert sent == 250
    assert [len(body["discount_codes"]) for body in bodies] == [100, 100, 50]
    assert bodies[0]["discount_codes"][0] == {"code": "C000"}


def test_set_rule_window() -> None:
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "PUT"
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={"price_rule": {"id": 7}})

    ends_at = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)
    asyncio.run(_client(handler).set_rule_window("7", starts_at=None, ends_at=ends_at))
    assert bodies == [{"price_rule": {"id": "7", "ends_at": "2026-05-01T12:00:00+00:00"}}]


def test_fetch_recent_orders() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        assert body["variables"]["first"] == 10
        assert body["variables"]["query"].startswith("created_at:>=")
        return httpx.Response(
            200, json={"data": {"orders": {"edges": [{"node": {"id": "gid://shopify/Order/1"}}]}}}
        )

    since = datetime(2026, 10, 1, tzinfo=timezone.utc)
    nodes = asyncio.run(_client(handler).fetch_recent_orders(since=since, limit=10))
    assert nodes == [{"id": "gid://shopify/Order/1"}]


def test_fetch_recent_orders_graphql_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"errors": [{"message": "Throttled"}]})

    with pytest.raises(PromotionRuleError):
        asyncio.run(_client(handler).fetch_recent_orders(since=datetime.now(timezone.utc), limit=5))


def test_client_for_merchant(session_factory) -> None:
    async def _run():
        async with session_factory() as session:
            with pytest.raises(PromotionRuleError):
                await client_for_merchant(session, SHOP)
            session.add(MerchantSession(merchant_id=SHOP, access_token="shpat_live"))
            await session.commit()
            return await client_for_merchant(session, SHOP)

    client = asyncio.run(_run())
    assert client.merchant_id == SHOP
