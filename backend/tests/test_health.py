import asyncio

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from app.core import metrics
from app.db.base import Base
from app.db.session import get_session
from app.main import app


@pytest.fixture
def client() -> TestClient:
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    SessionLocal = async_sessionmaker(engine, expire_on_commit=False)

    async def init_models() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init_models())

    async def override_get_session():
        async with SessionLocal() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    test_client = TestClient(app)
    yield test_client
    test_client.close()
    app.dependency_overrides.clear()


def test_healthcheck(client: TestClient) -> None:
    response = client.get("/api/v1/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_readiness(client: TestClient) -> None:
    response = client.get("/api/v1/health/ready")
    assert response.status_code == 200
    assert response.json() == {"status": "ready"}


def test_request_id_header(client: TestClient) -> None:
    response = client.get("/api/v1/health")
    assert response.headers.get("X-Request-ID")


def test_request_id_is_echoed_when_well_formed(client: TestClient) -> None:
    response = client.get("/api/v1/health", headers={"X-Request-ID": "widget-req-123"})
    assert response.headers.get("X-Request-ID") == "widget-req-123"


def test_metrics_snapshot(client: TestClient) -> None:
    metrics.record_code_revealed()
    metrics.record_codes_generated(5)
    response = client.get("/api/v1/metrics")
    assert response.status_code == 200
    body = response.json()
    assert body["codes_revealed"] == 1
    assert body["codes_generated"] == 5


def test_unknown_route_uses_error_envelope(client: TestClient) -> None:
    response = client.get("/api/v1/does-not-exist")
    assert response.status_code == 404
    assert response.json()["detail"] == "Not Found"
