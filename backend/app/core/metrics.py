from collections import Counter
from threading import Lock
from typing import Dict, Counter as CounterType

_metrics: CounterType[str] = Counter()
_lock = Lock()


def _inc(key: str, amount: int = 1) -> None:
    with _lock:
        _metrics[key] += amount


def record_codes_generated(count: int) -> None:
    _inc("codes_generated", count)


def record_code_revealed() -> None:
    _inc("codes_revealed")


def record_pool_exhausted() -> None:
    _inc("pool_exhausted")


def record_replenishment() -> None:
    _inc("replenishments")


def record_redemption() -> None:
    _inc("redemptions")


def record_duplicate_order() -> None:
    _inc("duplicate_orders")


def record_platform_failure() -> None:
    _inc("platform_failures")


def snapshot() -> Dict[str, int]:
    with _lock:
        return dict(_metrics)


def reset() -> None:
    with _lock:
        _metrics.clear()
