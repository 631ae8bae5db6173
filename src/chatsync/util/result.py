from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, TypeVar

T = TypeVar("T")
E = TypeVar("E", bound=Enum)


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err(Generic[E]):
    """
    Typed failure for an expected, recoverable outcome.

    `detail` carries per-error context such as the ids involved.
    """

    error: E
    detail: Any = None

    @property
    def ok(self) -> bool:
        return False

    @property
    def is_integrity_violation(self) -> bool:
        return bool(getattr(self.error, "is_integrity_violation", False))


Result = Ok[T] | Err[E]
