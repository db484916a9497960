import asyncio
import base64
import hashlib
import hmac
import json

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select

from app.core.config import settings
from app.db.session import get_session
from app.main import app
from app.models.discounts import DiscountCode
from app.services.set_store import SetStore
from conftest import SHOP

SECRET = "whsec-test"


@pytest.fixture
def client(session_factory) -> TestClient:
    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    test_client = TestClient(app)
    yield test_client
    test_client.close()
    app.dependency_overrides.clear()


def _sign(body: bytes, secret: str = SECRET) -> str:
    return base64.b64encode(hmac.new(secret.encode(), body, hashlib.sha256).digest()).decode()


def _post(client: TestClient, payload: dict, *, secret: str | None = SECRET, topic: str = "orders/create"):
    body = json.dumps(payload).encode()
    headers = {
        "Content-Type": "application/json",
        "X-Shopify-Shop-Domain": SHOP,
        "X-Shopify-Topic": topic,
    }
    if secret:
        headers["X-Shopify-Hmac-Sha256"] = _sign(body, secret)
    return client.post("/api/v1/webhooks/orders/create", content=body, headers=headers)


def _order(order_id: int, codes: list[str]) -> dict:
    return {
        "id": order_id,
        "name": f"#{order_id}",
        "total_price": "50.00",
        "currency": "USD",
        "discount_codes": [{"code": code, "amount": "5.00", "type": "percentage"} for code in codes],
        "line_items": [{"id": 1}],
        "note_attributes": [{"name": "reveal_session", "value": "abc"}],
    }


@pytest.fixture
def signed(monkeypatch):
    monkeypatch.setattr(settings, "platform_webhook_secret", SECRET)


def test_webhook_credits_and_deduplicates(client: TestClient, signed, create_set, session_factory) -> None:
    set_id = create_set(quantity=1)

    async def _code() -> str:
        async with session_factory() as session:
            return (await session.execute(select(DiscountCode.code))).scalar_one()

    code = asyncio.run(_code())
    first = _post(client, _order(900, [code]))
    assert first.status_code == 200
    assert first.json() == {"received": True, "status": "credited", "credited": [code], "skipped": []}

    second = _post(client, _order(900, [code]))
    assert second.status_code == 200
    assert second.json()["status"] == "duplicate"

    async def _usage() -> int:
        async with session_factory() as session:
            return (await SetStore(session).get(set_id, refresh=True)).usage_count

    assert asyncio.run(_usage()) == 1


def test_webhook_rejects_bad_signature(client: TestClient, signed) -> None:
    res = _post(client, _order(901, []), secret="wrong-secret")
    assert res.status_code == 401


def test_webhook_without_secret_configured_accepts_unsigned(client: TestClient, monkeypatch) -> None:
    monkeypatch.setattr(settings, "platform_webhook_secret", None)
    res = _post(client, _order(902, ["UNKNOWN"]), secret=None)
    assert res.status_code == 200
    assert res.json()["skipped"] == ["UNKNOWN"]


def test_webhook_ignores_other_topics(client: TestClient, signed) -> None:
    res = _post(client, _order(903, []), topic="orders/paid")
    assert res.status_code == 200
    assert res.json()["status"] == "ignored"


def test_webhook_rejects_malformed_body(client: TestClient, signed) -> None:
    res = _post(client, {"total_price": "1"})
    assert res.status_code == 400


def test_webhook_requires_shop(client: TestClient, signed) -> None:
    body = json.dumps(_order(904, [])).encode()
    res = client.post(
        "/api/v1/webhooks/orders/create",
        content=body,
        headers={"X-Shopify-Hmac-Sha256": _sign(body), "X-Shopify-Topic": "orders/create"},
    )
    assert res.status_code == 400
