import asyncio
import itertools
import os
from collections.abc import Callable, Generator, Sequence
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

import pytest
from sqlalchemy.ext import asyncio as sa_asyncio

# Keep pytest output high-signal by disabling outbound Sentry capture in tests.
os.environ["SENTRY_DSN"] = ""
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["BATCH_RECONCILE_ENABLED"] = "false"
os.environ["PLATFORM_RETRY_BACKOFF_SECONDS"] = "0"

from app.core import metrics  # noqa: E402
from app.models import Base  # noqa: E402
from app.schemas.discounts import DiscountSetCreate  # noqa: E402
from app.services import discount_sets as discount_set_service  # noqa: E402
from app.services.promotion_rules import PromotionRuleError, RuleSpec  # noqa: E402


_TRACKED_ENGINES: list[sa_asyncio.AsyncEngine] = []
_ORIGINAL_CREATE_ASYNC_ENGINE = sa_asyncio.create_async_engine

SHOP = "quiz-shop.myshopify.com"


def _tracked_create_async_engine(*args, **kwargs):  # type: ignore[no-untyped-def]
    engine = _ORIGINAL_CREATE_ASYNC_ENGINE(*args, **kwargs)
    _TRACKED_ENGINES.append(engine)
    return engine


sa_asyncio.create_async_engine = _tracked_create_async_engine  # type: ignore[assignment]


class FakePromotionClient:
    """In-memory stand-in for the platform client; records every call."""

    def __init__(self, merchant_id: str = SHOP) -> None:
        self.merchant_id = merchant_id
        self.rules: dict[str, RuleSpec] = {}
        self.pushes: list[tuple[str, list[str]]] = []
        self.windows: list[tuple[str, datetime | None, datetime | None]] = []
        self.orders: list[dict[str, Any]] = []
        self.fail_create = False
        self.fail_push = False
        self.fail_update = False
        self.fail_fetch = False
        self._ids = itertools.count(1001)

    @property
    def pushed_codes(self) -> list[str]:
        return [code for _, codes in self.pushes for code in codes]

    async def create_rule(self, spec: RuleSpec) -> str:
        if self.fail_create:
            raise PromotionRuleError("platform responded 503", status_code=503)
        rule_id = str(next(self._ids))
        self.rules[rule_id] = spec
        return rule_id

    async def update_rule(self, rule_id: str, spec: RuleSpec) -> None:
        if self.fail_update:
            raise PromotionRuleError("platform responded 503", status_code=503)
        self.rules[rule_id] = spec

    async def set_rule_window(self, rule_id: str, *, starts_at: datetime | None, ends_at: datetime | None) -> None:
        self.windows.append((rule_id, starts_at, ends_at))

    async def push_codes(self, rule_id: str, codes: Sequence[str]) -> int:
        if self.fail_push:
            raise PromotionRuleError("platform responded 503", status_code=503)
        self.pushes.append((rule_id, list(codes)))
        return len(codes)

    async def fetch_recent_orders(self, *, since: datetime, limit: int) -> list[dict[str, Any]]:
        if self.fail_fetch:
            raise PromotionRuleError("platform responded 502", status_code=502)
        return list(self.orders)[:limit]

    async def factory(self, session, merchant_id: str) -> "FakePromotionClient":  # type: ignore[no-untyped-def]
        return self


@pytest.fixture(scope="module")
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def _dispose_tracked_async_engines() -> Generator[None, None, None]:
    start_index = len(_TRACKED_ENGINES)
    yield
    pending = _TRACKED_ENGINES[start_index:]
    if not pending:
        return

    async def _dispose_all() -> None:
        for engine in pending:
            try:
                await engine.dispose()
            except Exception:
                continue

    try:
        asyncio.run(_dispose_all())
    except RuntimeError:
        loop = asyncio.new_event_loop()
        try:
            loop.run_until_complete(_dispose_all())
        finally:
            loop.close()

    del _TRACKED_ENGINES[start_index:]


@pytest.fixture(autouse=True)
def _reset_metrics() -> Generator[None, None, None]:
    # Counters are process-global and would leak across tests.
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def session_factory() -> sa_asyncio.async_sessionmaker:
    engine = sa_asyncio.create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    SessionLocal = sa_asyncio.async_sessionmaker(engine, expire_on_commit=False, autoflush=False)

    async def init_models() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init_models())
    return SessionLocal


@pytest.fixture
def fake_platform() -> FakePromotionClient:
    return FakePromotionClient()


@pytest.fixture
def create_set(
    session_factory: sa_asyncio.async_sessionmaker, fake_platform: FakePromotionClient
) -> Callable[..., UUID]:
    """Create a discount set (rule, initial batch and sync) through the service layer."""

    def _create(*, merchant_id: str = SHOP, **overrides: Any) -> UUID:
        fields: dict[str, Any] = {
            "title": "Quiz reward",
            "prefix_code": "QUIZ-",
            "code_length": 6,
            "quantity": 2,
            "discount_value": Decimal("10"),
        }
        fields.update(overrides)

        async def _run() -> UUID:
            async with session_factory() as session:
                outcome = await discount_set_service.create_discount_set(
                    session, fake_platform, merchant_id, DiscountSetCreate(**fields)
                )
                created = outcome.value if outcome.ok else outcome.data
                return created.set_id

        return asyncio.run(_run())

    return _create
