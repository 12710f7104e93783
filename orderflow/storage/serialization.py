"""
JSON codec for the document column of the SQLite tables.

Entities convert themselves with ``to_dict``/``from_dict``. The fallback
below only covers values left inside free-form documents such as outbox
payloads.
"""

import json
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from orderflow.storage.errors import SerializationError


def _encode_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, set | frozenset):
        return sorted(value)
    msg = f"{type(value).__name__} is not storable"
    raise TypeError(msg)


def serialize(data: Any) -> str:
    try:
        return json.dumps(data, default=_encode_value, ensure_ascii=False)
    except (TypeError, ValueError) as e:
        msg = f"Cannot store {type(data).__name__} as JSON: {e}"
        raise SerializationError(msg) from e


def deserialize(raw: str | bytes) -> Any:
    try:
        return json.loads(raw)
    except ValueError as e:
        msg = f"Stored document is not valid JSON: {e}"
        raise SerializationError(msg) from e
