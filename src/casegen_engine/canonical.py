from __future__ import annotations

import hashlib
from datetime import date, datetime, time
from enum import Enum
from typing import Any

import rfc8785
from pydantic import BaseModel

_JSON_SCALARS = (bool, int, float, str, type(None))


def _to_json_primitives(value: Any) -> Any:
    """Reduce pydantic models, enums and dates to the primitive shapes rfc8785 accepts.

    Raises:
        TypeError: If a value has no JSON representation.
    """
    if isinstance(value, Enum):
        return _to_json_primitives(value.value)
    if isinstance(value, _JSON_SCALARS):
        return value
    if isinstance(value, BaseModel):
        return _to_json_primitives(value.model_dump(mode="json"))
    if isinstance(value, dict):
        return {str(key): _to_json_primitives(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        items = [_to_json_primitives(item) for item in value]
        if isinstance(value, (set, frozenset)):
            items.sort(key=lambda item: rfc8785.dumps(item))
        return items
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    raise TypeError(f"Cannot serialize type {type(value).__name__} to canonical JSON")


def to_canonical_json(value: Any) -> str:
    """Serialize *value* to RFC 8785 canonical JSON text.

    Two payloads that differ only in key order or container type produce the
    same string, which makes the output usable as a hashing input.
    """
    return rfc8785.dumps(_to_json_primitives(value)).decode("utf-8")


def content_hash(value: Any) -> str:
    """Return the SHA-256 hex digest of the canonical JSON form of *value*."""
    return hashlib.sha256(to_canonical_json(value).encode("utf-8")).hexdigest()


def sha256_text(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()
