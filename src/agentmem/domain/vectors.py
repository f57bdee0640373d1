"""
Embedding vector helpers.

pgvector accepts vectors as text literals ("[0.1,0.2,...]") and, without a
registered codec, asyncpg hands them back in the same form. Components are
clamped to a fixed number of decimals before formatting so that the value
written matches what the store's float4 vector type reads back.
"""

from __future__ import annotations

import math
import numbers
from typing import Any, Iterable, Optional, Sequence

from ..exceptions import DimensionMismatchError, ValidationError

# Decimal places kept when writing embedding components
VECTOR_PRECISION = 6


def validate_dimension(embedding: Sequence[float], expected: int) -> None:
    """Raise DimensionMismatchError unless ``embedding`` has ``expected`` components.

    A missing or non-sequence embedding is a ValidationError.
    """
    if embedding is None or isinstance(embedding, (str, bytes)) or not hasattr(embedding, "__len__"):
        raise ValidationError(
            f"Embedding must be a sequence of numbers, got {type(embedding).__name__}",
            field="embedding",
        )
    if len(embedding) != expected:
        raise DimensionMismatchError(expected=expected, actual=len(embedding))


def validate_number(value: Any, field_name: str) -> float:
    """Return ``value`` as a float; bools, non-numbers and NaN are rejected."""
    if isinstance(value, bool) or not isinstance(value, numbers.Real) or math.isnan(value):
        raise ValidationError(f"{field_name} must be a number, got {value!r}", field=field_name)
    return float(value)


def clean_vector(embedding: Iterable[Any]) -> list[float]:
    """Clamp precision and coerce non-finite components to zero."""
    cleaned = []
    for value in embedding:
        try:
            number = float(value)
        except (TypeError, ValueError):
            raise ValidationError(
                f"Embedding components must be numbers, got {value!r}",
                field="embedding",
            )
        if not math.isfinite(number):
            number = 0.0
        cleaned.append(round(number, VECTOR_PRECISION))
    return cleaned


def format_vector(embedding: Iterable[Any]) -> str:
    """Format an embedding as a pgvector text literal."""
    return "[" + ",".join(repr(v) for v in clean_vector(embedding)) + "]"


def parse_vector(value: Any) -> Optional[list[float]]:
    """Parse a vector column value (text literal, list or array) into floats."""
    if value is None:
        return None
    if isinstance(value, str):
        body = value.strip().lstrip("[").rstrip("]").strip()
        if not body:
            return []
        return [float(part) for part in body.split(",")]
    return [float(v) for v in value]
