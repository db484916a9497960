import asyncio
import json
import logging
import uuid

from app.core.logging_config import JsonFormatter, request_id_ctx_var
from app.services import batch_reconcile_scheduler, leader_lock, set_locks


def test_lock_id_is_stable_and_in_bigint_range() -> None:
    first = leader_lock.lock_id("discount_set:abc")
    assert first == leader_lock.lock_id("discount_set:abc")
    assert first != leader_lock.lock_id("discount_set:abd")
    assert 0 <= first < 2**63


def test_sqlite_backend_is_not_postgres() -> None:
    assert leader_lock.is_postgres() is False


def test_serialized_runs_one_holder_at_a_time() -> None:
    set_id = uuid.uuid4()
    other_id = uuid.uuid4()
    active = {"same": 0, "peak": 0}
    order: list[str] = []

    async def _hold(tag: str, target: uuid.UUID) -> None:
        async with set_locks.serialized(target):
            if target == set_id:
                active["same"] += 1
                active["peak"] = max(active["peak"], active["same"])
            order.append(f"{tag}:in")
            await asyncio.sleep(0.01)
            order.append(f"{tag}:out")
            if target == set_id:
                active["same"] -= 1

    async def _run() -> None:
        await asyncio.gather(_hold("a", set_id), _hold("b", set_id), _hold("c", other_id))

    asyncio.run(_run())
    assert active["peak"] == 1
    # A different set is not blocked by the first one.
    assert order.index("c:in") < order.index("a:out")


def test_serialized_works_across_event_loops() -> None:
    set_id = uuid.uuid4()

    async def _enter() -> bool:
        async with set_locks.serialized(set_id):
            return True

    assert asyncio.run(_enter()) is True
    assert asyncio.run(_enter()) is True


def test_json_formatter_promotes_engine_fields() -> None:
    record = logging.LogRecord("app.test", logging.INFO, __file__, 1, "code_revealed", None, None)
    record.set_id = "set-1"
    record.code = "VIP-AAAA"
    record.attempts = 2
    token = request_id_ctx_var.set("req-1")
    try:
        record.request_id = request_id_ctx_var.get()
        payload = json.loads(JsonFormatter().format(record))
    finally:
        request_id_ctx_var.reset(token)
    assert payload["message"] == "code_revealed"
    assert payload["set_id"] == "set-1"
    assert payload["code"] == "VIP-AAAA"
    assert payload["attempts"] == 2
    assert payload["request_id"] == "req-1"
    assert list(payload).index("set_id") < list(payload).index("attempts")


def test_reconcile_scheduler_is_noop_when_disabled(monkeypatch) -> None:
    monkeypatch.setattr(batch_reconcile_scheduler.settings, "batch_reconcile_enabled", False)
    assert asyncio.run(batch_reconcile_scheduler._run_once()) == {"checked": 0, "synced": 0, "failed": 0}


def test_run_as_leader_runs_work_directly_without_postgres() -> None:
    seen: list[bool] = []

    async def _work(stop: asyncio.Event) -> None:
        seen.append(stop.is_set())

    asyncio.run(leader_lock.run_as_leader(name="batch_reconcile_scheduler", stop=asyncio.Event(), work=_work))
    assert seen == [False]
