from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Generic, TypeVar, Union

T = TypeVar("T")


class ErrorKind(str, enum.Enum):
    invalid_input = "invalid_input"
    set_not_found = "set_not_found"
    code_not_found = "code_not_found"
    inactive = "inactive"
    exhausted = "exhausted"
    already_revealed = "already_revealed"
    already_used = "already_used"
    duplicate = "duplicate"
    platform_unavailable = "platform_unavailable"
    store_unavailable = "store_unavailable"


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    kind: ErrorKind
    detail: str
    data: Any = None

    @property
    def ok(self) -> bool:
        return False


Result = Union[Ok[T], Err]
