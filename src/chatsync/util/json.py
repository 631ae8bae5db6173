from __future__ import annotations

import dataclasses
import json
from enum import Enum
from typing import Any


def _default(obj: Any) -> Any:
    if isinstance(obj, Enum):
        return obj.value
    # `dataclasses.is_dataclass()` is true for both instances and dataclass *types*.
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return dataclasses.asdict(obj)
    if isinstance(obj, (set, frozenset)):
        return sorted(obj)
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def dumps(obj: Any, *, indent: int | None = None) -> str:
    """JSON serialize, flattening dataclasses and enums used in outbound frames."""

    return json.dumps(obj, default=_default, indent=indent, sort_keys=True)


def loads(data: str | bytes) -> Any:
    if isinstance(data, (bytes, bytearray, memoryview)):
        data = bytes(data).decode("utf-8")
    return json.loads(data)
