"""
Stable fingerprints for idempotency keys and cache rows.

Two calls that describe the same operation must produce the same key no
matter how their fields were ordered or typed (UUID vs str, model vs dict).
"""

import hashlib
import json
from datetime import date, datetime
from enum import Enum
from typing import Any, Mapping
from uuid import UUID

from pydantic import BaseModel


def _canonical_default(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", exclude_none=True)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=str)
    raise TypeError(f"Cannot fingerprint value of type {type(value).__name__}")


def canonical_dumps(value: Any) -> str:
    """Sorted keys, no whitespace, ASCII only."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=_canonical_default, ensure_ascii=True)


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def canonical_hash(value: Any) -> str:
    return sha256_hex(canonical_dumps(value))


def operation_key(operation: str, fields: Mapping[str, Any]) -> str:
    """Key for one logical operation; None-valued fields do not change it."""
    present = {name: value for name, value in fields.items() if value is not None}
    return canonical_hash({"operation": operation, "fields": present})
