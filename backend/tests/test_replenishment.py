import asyncio

import pytest
from sqlalchemy import select

from app.core import metrics
from app.core.result import ErrorKind
from app.models.discounts import BatchKind, BatchSyncStatus, CodeBatch, DiscountSet
from app.services.gateway import ProxyGateway
from app.services.promotion_rules import PromotionRuleError
from app.services.replenishment import ReplenishmentController
from app.services.set_store import SetStore
from conftest import SHOP


def _load_set(session_factory, set_id) -> DiscountSet:
    async def _load() -> DiscountSet:
        async with session_factory() as session:
            return await SetStore(session).get(set_id, refresh=True)

    return asyncio.run(_load())


def _batches(session_factory, set_id) -> list[CodeBatch]:
    async def _load() -> list[CodeBatch]:
        async with session_factory() as session:
            result = await session.execute(select(CodeBatch).where(CodeBatch.set_id == set_id))
            # created_at has second resolution on sqlite, so order initial first explicitly.
            return sorted(result.scalars().all(), key=lambda batch: batch.kind != BatchKind.initial)

    return asyncio.run(_load())


def test_revealed_ratio_and_threshold() -> None:
    controller = ReplenishmentController(session=None, threshold=0.8, batch_size=100)  # type: ignore[arg-type]
    discount_set = DiscountSet(quantity=5, is_active=True, deleted_at=None)
    assert controller.revealed_ratio(discount_set, 4) == pytest.approx(0.8)
    assert controller.needs_replenishment(discount_set, 3) is False
    assert controller.needs_replenishment(discount_set, 4) is True

    discount_set.is_active = False
    assert controller.needs_replenishment(discount_set, 5) is False
    assert controller.revealed_ratio(DiscountSet(quantity=0), 3) == 0.0


def test_claim_replenishment_wins_once_per_epoch(session_factory, create_set) -> None:
    set_id = create_set(quantity=5)

    async def _claim_twice() -> tuple[bool, bool, bool]:
        async with session_factory() as session:
            store = SetStore(session)
            first = await store.claim_replenishment(set_id, observed_epoch=0, amount=100)
            second = await store.claim_replenishment(set_id, observed_epoch=0, amount=100)
            third = await store.claim_replenishment(set_id, observed_epoch=1, amount=100)
            await session.commit()
            return first, second, third

    assert asyncio.run(_claim_twice()) == (True, False, True)
    discount_set = _load_set(session_factory, set_id)
    assert discount_set.quantity == 205
    assert discount_set.replenish_epoch == 2


def test_replenish_requires_client(session_factory, create_set) -> None:
    set_id = create_set(quantity=1)
    discount_set = _load_set(session_factory, set_id)

    async def _run() -> None:
        async with session_factory() as session:
            await ReplenishmentController(session).replenish(discount_set, observed_epoch=0)

    with pytest.raises(ValueError):
        asyncio.run(_run())


def test_fifth_reveal_of_five_triggers_one_supplemental_batch(session_factory, fake_platform, create_set) -> None:
    set_id = create_set(quantity=5)
    gateway = ProxyGateway(session_factory, fake_platform.factory)

    async def _reveal(times: int) -> list:
        return [await gateway.reveal_for_set(SHOP, str(set_id)) for _ in range(times)]

    first_four = asyncio.run(_reveal(4))
    assert all(outcome.ok for outcome in first_four)
    assert _load_set(session_factory, set_id).quantity == 5
    assert len(_batches(session_factory, set_id)) == 1

    [fifth] = asyncio.run(_reveal(1))
    assert fifth.ok
    discount_set = _load_set(session_factory, set_id)
    assert discount_set.quantity == 105
    assert discount_set.replenish_epoch == 1

    initial, supplemental = _batches(session_factory, set_id)
    assert initial.kind == BatchKind.initial
    assert supplemental.kind == BatchKind.supplemental
    assert supplemental.created_count == 100
    assert supplemental.sync_status == BatchSyncStatus.synced
    assert metrics.snapshot()["replenishments"] == 1


def test_concurrent_reveals_replenish_exactly_once(session_factory, fake_platform, create_set) -> None:
    set_id = create_set(quantity=5)
    gateway = ProxyGateway(session_factory, fake_platform.factory)

    async def _burst() -> list:
        return await asyncio.gather(*(gateway.reveal_for_set(SHOP, str(set_id)) for _ in range(50)))

    outcomes = asyncio.run(_burst())
    assert all(outcome.ok for outcome in outcomes)
    codes = [outcome.value.code for outcome in outcomes]
    assert len(set(codes)) == 50

    discount_set = _load_set(session_factory, set_id)
    assert discount_set.quantity == 105
    kinds = [batch.kind for batch in _batches(session_factory, set_id)]
    assert kinds.count(BatchKind.supplemental) == 1
    assert metrics.snapshot()["replenishments"] == 1


def test_inactive_set_is_never_replenished(session_factory, fake_platform, create_set) -> None:
    set_id = create_set(quantity=1)

    async def _deactivate() -> None:
        async with session_factory() as session:
            await SetStore(session).update_fields(set_id, {"is_active": False})
            await session.commit()

    asyncio.run(_deactivate())
    gateway = ProxyGateway(session_factory, fake_platform.factory)
    outcome = asyncio.run(gateway.reveal_for_set(SHOP, str(set_id)))
    assert not outcome.ok
    assert outcome.kind == ErrorKind.inactive
    assert _load_set(session_factory, set_id).quantity == 1
    assert len(_batches(session_factory, set_id)) == 1


def test_client_failure_defers_replenishment(session_factory, fake_platform, create_set) -> None:
    set_id = create_set(quantity=1)

    async def _no_client(session, merchant_id):
        raise PromotionRuleError("merchant has no platform session", retryable=False)

    gateway = ProxyGateway(session_factory, _no_client)
    first = asyncio.run(gateway.reveal_for_set(SHOP, str(set_id)))
    second = asyncio.run(gateway.reveal_for_set(SHOP, str(set_id)))
    assert first.ok
    assert not second.ok
    assert second.kind == ErrorKind.exhausted

    discount_set = _load_set(session_factory, set_id)
    assert discount_set.quantity == 1
    assert discount_set.replenish_epoch == 0

    # The next reveal with a working client picks the deferred replenishment up.
    recovered = ProxyGateway(session_factory, fake_platform.factory)
    third = asyncio.run(recovered.reveal_for_set(SHOP, str(set_id)))
    assert third.kind == ErrorKind.exhausted
    assert _load_set(session_factory, set_id).quantity == 101
    fourth = asyncio.run(recovered.reveal_for_set(SHOP, str(set_id)))
    assert fourth.ok


def test_failed_supplemental_sync_keeps_quantity_growth(session_factory, fake_platform, create_set) -> None:
    set_id = create_set(quantity=1)
    fake_platform.fail_push = True
    gateway = ProxyGateway(session_factory, fake_platform.factory)

    asyncio.run(gateway.reveal_for_set(SHOP, str(set_id)))
    outcome = asyncio.run(gateway.reveal_for_set(SHOP, str(set_id)))
    assert outcome.kind == ErrorKind.exhausted
    assert _load_set(session_factory, set_id).quantity == 101
    supplemental = _batches(session_factory, set_id)[-1]
    assert supplemental.kind == BatchKind.supplemental
    assert supplemental.sync_status == BatchSyncStatus.sync_failed
    assert supplemental.created_count == 100
