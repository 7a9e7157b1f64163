"""JSON serialization of handler argument lists."""
from __future__ import annotations

import json
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Sequence

from pydantic import BaseModel

from core.exceptions import SerializationError


def _default(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


class ArgumentSerializer:
    """
    Serializes the ordered argument list of a call into the envelope payload.

    Arguments arrive at the handler as plain JSON types; handlers that take
    models should accept dicts and validate them.
    """

    def serialize(self, args: Sequence[Any]) -> str:
        try:
            return json.dumps(list(args), default=_default)
        except (TypeError, ValueError) as e:
            raise SerializationError(f"Failed to serialize arguments: {e}") from e

    def deserialize(self, payload: str) -> list[Any]:
        try:
            args = json.loads(payload) if payload else []
        except ValueError as e:
            raise SerializationError(f"Failed to deserialize arguments: {e}") from e
        if not isinstance(args, list):
            raise SerializationError(f"Argument payload must be a JSON list, got {type(args).__name__}")
        return args
