"""Heuristic content and category detection over arbitrary record shapes.

Both resolutions are ordered lists of named strategies. Each strategy returns
``(value, found)`` and the first one that finds something wins, so precedence
is exactly the list order.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable

from be.models import RecordCategory
from config.field_vocabulary import (
    BOTTOM_DISCOVERY_VALUES,
    BOTTOM_LABELS,
    CONTENT_FIELDS,
    MIN_CONTENT_LENGTH,
    RATING_FIELDS,
    TOP_DISCOVERY_VALUES,
    TOP_LABELS,
)

logger = logging.getLogger(__name__)

_LEADING_NUMBER = re.compile(r"^[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")


@dataclass(frozen=True)
class Strategy:
    """A named extraction step."""
    name: str
    apply: Callable[..., tuple[Any, bool]]


@dataclass
class ExtractedFields:
    """Result of field extraction for one raw record."""
    content: str
    category: RecordCategory | None
    content_strategy: str
    category_strategy: str | None = None


def _first_truthy(record: dict, fields: list[str]) -> Any:
    for field in fields:
        value = record.get(field)
        if value:
            return value
    return None


# Content strategies ----------------------------------------------------------

def content_from_bare_string(record: Any, current: str) -> tuple[str, bool]:
    if isinstance(record, str):
        return record, bool(record)
    return "", False


def content_from_known_fields(record: Any, current: str) -> tuple[str, bool]:
    if not isinstance(record, dict):
        return "", False
    value = _first_truthy(record, CONTENT_FIELDS)
    if value is None:
        return "", False
    if isinstance(value, str):
        text = value
    elif isinstance(value, (dict, list)):
        text = json.dumps(value, ensure_ascii=False, default=str)
    else:
        text = str(value)
    # Short known content is kept only as a candidate for the next strategy
    return text, len(text) >= MIN_CONTENT_LENGTH


def content_from_longest_string(record: Any, current: str) -> tuple[str, bool]:
    if not isinstance(record, dict):
        return current, bool(current)
    candidates = [
        value for value in record.values()
        if isinstance(value, str) and len(value) > MIN_CONTENT_LENGTH
    ]
    if candidates:
        # max() keeps the first of equally long values, i.e. field order
        return max(candidates, key=len), True
    return current, bool(current)


def content_from_serialization(record: Any, current: str) -> tuple[str, bool]:
    return json.dumps(record, ensure_ascii=False, separators=(",", ":"), default=str), True


CONTENT_STRATEGIES: list[Strategy] = [
    Strategy("bare_string", content_from_bare_string),
    Strategy("known_field", content_from_known_fields),
    Strategy("longest_string", content_from_longest_string),
    Strategy("serialized", content_from_serialization),
]


def extract_content(record: Any) -> tuple[str, str]:
    """Resolve the text content of a raw record.

    Returns:
        Tuple of (content, strategy_name). Content is never empty.
    """
    current = ""
    for strategy in CONTENT_STRATEGIES:
        value, found = strategy.apply(record, current)
        if found:
            return value, strategy.name
        current = value or current
    # Unreachable: serialization always finds
    return current, CONTENT_STRATEGIES[-1].name


# Category strategies ---------------------------------------------------------

def _leading_float(raw: str) -> float | None:
    match = _LEADING_NUMBER.match(raw)
    if not match:
        return None
    try:
        return float(match.group(0))
    except ValueError:
        return None


def category_from_label(rating_raw: str, record: Any) -> tuple[RecordCategory | None, bool]:
    if "top" in rating_raw and "10" in rating_raw:
        return RecordCategory.TOP_10, True
    if "bottom" in rating_raw and "10" in rating_raw:
        return RecordCategory.BOTTOM_10, True
    if rating_raw in TOP_LABELS:
        return RecordCategory.TOP_10, True
    if rating_raw in BOTTOM_LABELS:
        return RecordCategory.BOTTOM_10, True
    return None, False


def category_from_number(rating_raw: str, record: Any) -> tuple[RecordCategory | None, bool]:
    """Map numeric ratings on two coexisting scales.

    Integral values are 1-5 ordinal ratings; fractional values within [0, 1]
    are normalized scores. A numeric value ends the search even when it falls
    in the neutral band.
    """
    number = _leading_float(rating_raw)
    if number is None:
        return None, False

    if number.is_integer() or number > 1.0:
        if number >= 4:
            return RecordCategory.TOP_10, True
        if number <= 2:
            return RecordCategory.BOTTOM_10, True
        return None, True

    if 0.8 < number <= 1.0:
        return RecordCategory.TOP_10, True
    if 0.0 <= number < 0.2:
        return RecordCategory.BOTTOM_10, True
    return None, True


def category_from_discovered_field(rating_raw: str, record: Any) -> tuple[RecordCategory | None, bool]:
    if not isinstance(record, dict):
        return None, False
    key = next(
        (k for k in record if "rating" in str(k).lower() or "score" in str(k).lower()),
        None,
    )
    if key is None:
        return None, False

    value = str(record[key]).lower()
    if "top" in value or value in TOP_DISCOVERY_VALUES:
        return RecordCategory.TOP_10, True
    if "bottom" in value or value in BOTTOM_DISCOVERY_VALUES:
        return RecordCategory.BOTTOM_10, True
    return None, False


CATEGORY_STRATEGIES: list[Strategy] = [
    Strategy("label", category_from_label),
    Strategy("number", category_from_number),
    Strategy("discovered_field", category_from_discovered_field),
]


def rating_value(record: Any) -> str:
    """Normalized raw rating: first known rating field, lower-cased and trimmed."""
    if not isinstance(record, dict):
        return ""
    value = _first_truthy(record, RATING_FIELDS)
    return "" if value is None else str(value).lower().strip()


def extract_category(record: Any) -> tuple[RecordCategory | None, str | None]:
    """Resolve the quality category of a raw record.

    Returns:
        Tuple of (category or None, name of the deciding strategy or None)
    """
    rating_raw = rating_value(record)
    for strategy in CATEGORY_STRATEGIES:
        category, found = strategy.apply(rating_raw, record)
        if found:
            return category, strategy.name
    return None, None


def extract_fields(record: Any) -> ExtractedFields:
    """Extract content and category from one raw record (dict or bare string)."""
    content, content_strategy = extract_content(record)
    category, category_strategy = extract_category(record)
    return ExtractedFields(
        content=content,
        category=category,
        content_strategy=content_strategy,
        category_strategy=category_strategy,
    )
