"""Helpers for reading values out of converted registry payloads."""

from __future__ import annotations

import datetime as dt
from typing import TYPE_CHECKING
from typing import Any

if TYPE_CHECKING:
    from collections.abc import Iterator


def as_list(value: Any) -> list:
    """The registry returns a bare object when a list has one element."""
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def bubble_value(value: Any) -> Any:
    """Unwrap ``{"value": x}`` id wrappers; plain values pass through."""
    if isinstance(value, dict):
        return value.get("value")
    return value


def bubble_id(value: Any) -> int | None:
    return parse_int(bubble_value(value))


def dig(obj: Any, *path: str) -> Any:
    current = obj
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def clean_text(value: object | None) -> str | None:
    if value is None or isinstance(value, dict):
        return None
    text = str(value).strip()
    return text if text else None


def parse_int(value: object | None) -> int | None:
    if value is None or isinstance(value, (dict, list)):
        return None
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if not text:
        return None
    try:
        return int(text)
    except ValueError:
        try:
            return int(float(text))
        except (ValueError, OverflowError):
            return None


def parse_float(value: object | None) -> float | None:
    if value is None or isinstance(value, (dict, list)):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip().replace(",", ".")
    if not text:
        return None
    try:
        return float(text)
    except ValueError:
        return None


def parse_bool(value: object | None) -> bool | None:
    if value is None or isinstance(value, (dict, list)):
        return None
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in {"true", "1"}:
        return True
    if text in {"false", "0"}:
        return False
    return None


def parse_registry_date(value: object | None) -> dt.date | None:
    """Dates arrive either as ``{"date": "2001-02-03"}``, ``{year, month, day}`` or ISO text."""
    if value is None:
        return None
    if isinstance(value, dt.date):
        return value
    if isinstance(value, dict):
        if "date" in value:
            return parse_registry_date(value["date"])
        year = parse_int(value.get("year"))
        month = parse_int(value.get("month"))
        day = parse_int(value.get("day"))
        if year is None or month is None or day is None:
            return None
        try:
            return dt.date(year, month, day)
        except ValueError:
            return None
    text = str(value).strip()
    if not text:
        return None
    try:
        return dt.date.fromisoformat(text[:10])
    except ValueError:
        return None


def chunked(items: list, chunk_size: int) -> Iterator[list]:
    if chunk_size < 1:
        raise ValueError("chunk_size must be >= 1")
    for start in range(0, len(items), chunk_size):
        yield items[start : start + chunk_size]
