from __future__ import annotations

import os
import time
import uuid
from datetime import datetime
from enum import StrEnum
from typing import Any


class ErrorCode(StrEnum):
    ITEM_NOT_FOUND = "ITEM_NOT_FOUND"
    INVALID_ARGUMENT = "INVALID_ARGUMENT"
    MUTATION_FAILED = "MUTATION_FAILED"
    DB_BUSY = "DB_BUSY"
    DB_SCHEMA_MISMATCH = "DB_SCHEMA_MISMATCH"


def now() -> float:
    return time.time()


def new_id(*, length: int = 10) -> str:
    return uuid.uuid4().hex[:length]


def to_epoch(value: Any) -> float:
    """Coerce a backend timestamp (epoch number, ISO-8601 string or datetime) to epoch seconds."""
    if isinstance(value, bool):
        raise ValueError("timestamp must not be a bool")
    if isinstance(value, int | float):
        return float(value)
    if isinstance(value, datetime):
        return value.timestamp()
    if isinstance(value, str) and value.strip():
        raw = value.strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        return datetime.fromisoformat(raw).timestamp()
    raise ValueError(f"unsupported timestamp: {value!r}")


def env_int(name: str, *, default: int, min_value: int | None = None) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as e:
            raise ValueError(f"{name} must be an int") from e
    if min_value is not None and value < min_value:
        raise ValueError(f"{name} must be >= {min_value}")
    return value


def env_str(name: str, *, default: str) -> str:
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    return value
