"""
Field normalization and content fingerprinting for extracted listings.

Normalization runs before every diff so that formatting noise (whitespace,
currency symbols, ``1.0`` vs ``1``) never shows up as a change.
"""

from __future__ import annotations

import hashlib
import json
import math
import re
from collections.abc import Iterable, Mapping
from typing import Any

_MONEY_REGEX = re.compile(r"(-?\d+(?:\.\d+)?)\s*([KMB])?(?![A-Z])")
_MULTIPLIERS = {"K": 1_000, "M": 1_000_000, "B": 1_000_000_000}
_AGE_REGEX = re.compile(r"(\d+)\s*(year|month|day)", flags=re.IGNORECASE)
_WHITESPACE_REGEX = re.compile(r"\s+")


def parse_money(text: str) -> int | float | None:
    """
    Parse '$1.2M', '450K', 'USD 12,500' style strings into a number.

    Returns None when the text holds no number.
    """

    match = _MONEY_REGEX.search(text.upper().replace(",", ""))
    if match is None:
        return None
    value = float(match.group(1))
    suffix = match.group(2)
    if suffix:
        value *= _MULTIPLIERS[suffix]
    return _compact_number(value)


def parse_age_months(text: str) -> int | None:
    match = _AGE_REGEX.search(text)
    if match is None:
        return None
    value = int(match.group(1))
    unit = match.group(2).lower()
    if unit.startswith("year"):
        return value * 12
    if unit.startswith("month"):
        return value
    return round(value / 30)


def _compact_number(value: float) -> int | float:
    if math.isfinite(value) and value == int(value):
        return int(value)
    return round(value, 6)


def _clean_text(value: str) -> str:
    return _WHITESPACE_REGEX.sub(" ", value).strip()


class FieldNormalizer:
    """
    Canonicalize an extracted field map.

    * keys are stripped and lower-cased
    * strings are whitespace-collapsed; empty strings become absent
    * null values are dropped so "missing" and "null" compare equal
    * configured numeric fields are coerced from money/number strings
    * integral floats collapse to ints
    * keys colliding after normalization keep the value of the last raw key in sorted order
    """

    def __init__(self, *, numeric_fields: Iterable[str] = ()) -> None:
        self._numeric_fields = frozenset(name.strip().lower() for name in numeric_fields)

    @property
    def numeric_fields(self) -> frozenset[str]:
        return self._numeric_fields

    def normalize(self, fields: Mapping[str, Any]) -> dict[str, Any]:
        normalized: dict[str, Any] = {}
        # Keys that collide after normalization resolve by raw-key order, not insertion order.
        for raw_key, raw_value in sorted(fields.items(), key=lambda item: str(item[0])):
            key = str(raw_key).strip().lower()
            if not key:
                continue
            value = self._normalize_value(raw_value)
            if key in self._numeric_fields:
                value = self._coerce_numeric(value)
            if value is None:
                continue
            normalized[key] = value
        return normalized

    def _normalize_value(self, value: Any) -> Any:
        if value is None:
            return None
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            cleaned = _clean_text(value)
            return cleaned or None
        if isinstance(value, float):
            if not math.isfinite(value):
                return None
            return _compact_number(value)
        if isinstance(value, int):
            return value
        if isinstance(value, Mapping):
            nested = self.normalize(value)
            return nested or None
        if isinstance(value, (list, tuple, set, frozenset)):
            items = [self._normalize_value(item) for item in value]
            kept = [item for item in items if item is not None]
            if isinstance(value, (set, frozenset)):
                kept = sorted(kept, key=str)
            return kept or None
        return _clean_text(str(value)) or None

    @staticmethod
    def _coerce_numeric(value: Any) -> Any:
        if isinstance(value, str):
            parsed = parse_money(value)
            return value if parsed is None else parsed
        return value


def canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def compute_fingerprint(fields: Mapping[str, Any]) -> str:
    """
    Stable SHA-256 over the canonical JSON of a normalized field map.
    """

    return hashlib.sha256(canonical_json(dict(fields)).encode("utf-8")).hexdigest()


def stringify_value(value: Any) -> str | None:
    """
    Render a field value for the change log's text columns.
    """

    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return value
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return str(_compact_number(value))
    return canonical_json(value)


def as_number(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    return None
