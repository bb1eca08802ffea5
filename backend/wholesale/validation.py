from __future__ import annotations

from enum import Enum
from typing import Any, Type, TypeVar

from .money import Money


E = TypeVar("E", bound=Enum)

# Maximum single amount: $9,999,999.99 (999,999,999 cents)
# Keeps amounts inside a 32-bit integer column
MAX_AMOUNT_CENTS = 999_999_999


class ValidationError(ValueError):
    """400-level input problem."""


def require_json(payload: Any) -> dict:
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")
    return payload


def parse_int(value: Any, field: str, *, required: bool = True) -> int | None:
    """
    Strict integer parsing for request fields.

    Accepts ints and plain digit strings. Rejects bools, floats, decimals and
    scientific notation instead of silently truncating them.
    """
    if value is None:
        if required:
            raise ValidationError(f"{field} is required")
        return None

    # Already an int (but not bool which is a subclass of int)
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{field} must be an integer")
        # Reject scientific notation (e.g., "1e15", "1E10")
        if "e" in stripped.lower():
            raise ValidationError(f"{field} must be a plain integer (scientific notation not allowed)")
        if "." in stripped:
            raise ValidationError(f"{field} must be an integer (no decimals)")
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be an integer")
    if isinstance(value, float):
        raise ValidationError(f"{field} must be an integer, not a decimal")
    raise ValidationError(f"{field} must be an integer")


def parse_cents(value: Any, field: str, *, allow_negative: bool = False, allow_zero: bool = False) -> Money:
    cents = parse_int(value, field)
    if abs(cents) > MAX_AMOUNT_CENTS:
        raise ValidationError(f"{field} exceeds maximum allowed amount")
    if cents == 0 and not allow_zero:
        raise ValidationError(f"{field} must not be zero")
    if cents < 0 and not allow_negative:
        raise ValidationError(f"{field} must be positive")
    return Money(cents)


def parse_bool(value: Any, field: str) -> bool:
    if isinstance(value, bool):
        return value
    raise ValidationError(f"{field} must be true or false")


def parse_enum(enum_cls: Type[E], value: Any, field: str) -> E:
    text = str(value or "").strip().lower()
    for member in enum_cls:
        if member.value.lower() == text:
            return member
    valid = ", ".join(m.value.lower() for m in enum_cls)
    raise ValidationError(f"{field} must be one of: {valid}")


def parse_text(value: Any, field: str, *, required: bool = False, max_length: int = 255) -> str | None:
    text = str(value).strip() if value is not None else ""
    if not text:
        if required:
            raise ValidationError(f"{field} is required")
        return None
    if len(text) > max_length:
        raise ValidationError(f"{field} must be at most {max_length} characters")
    return text


def parse_order_lines(value: Any) -> list[dict]:
    """Validate the shape of [{product_id, quantity}] and normalize the ints."""
    if not isinstance(value, list):
        raise ValidationError("items must be a list")
    lines = []
    for index, raw in enumerate(value):
        if not isinstance(raw, dict):
            raise ValidationError(f"items[{index}] must be an object")
        lines.append({
            "product_id": parse_int(raw.get("product_id"), f"items[{index}].product_id"),
            "quantity": parse_int(raw.get("quantity"), f"items[{index}].quantity"),
        })
    return lines
