"""Parsers for LLM verdicts: alignment scores and re-rank responses."""
from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import dataclass

logger = logging.getLogger(__name__)

# "ALIGNMENT_SCORE: 85", "Alignment Score 8/10", "Score: 4/5"
_SCORE_PATTERN = re.compile(
    r"(?:ALIGNMENT(?:[\s_]*SCORE)?|SCORE)\s*[:=]?\s*(\d+)(?:\s*/\s*(\d+))?",
    re.IGNORECASE,
)

_FENCE_PATTERN = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


def extract_alignment_score(text: str | None) -> int | None:
    """Extract a 0-100 alignment score from an LLM verdict.

    Denominators are normalized: /5 -> x20, /10 -> x10, /100 or none -> as is,
    anything else -> round(value / denominator * 100).

    Returns:
        The score, or None when absent or outside [0, 100] after normalizing.
    """
    if not text:
        return None

    match = _SCORE_PATTERN.search(text)
    if not match:
        return None

    value = int(match.group(1))
    denominator = int(match.group(2)) if match.group(2) else 100

    if denominator == 0:
        return None
    if denominator == 5:
        score = value * 20
    elif denominator == 10:
        score = value * 10
    elif denominator == 100:
        score = value
    else:
        score = math.floor(value / denominator * 100 + 0.5)

    if 0 <= score <= 100:
        return score
    return None


@dataclass
class RerankVerdict:
    """LLM relevance judgement for one candidate."""
    record_id: int
    score: int
    reason: str


def _json_block(text: str) -> str:
    fenced = _FENCE_PATTERN.search(text)
    if fenced:
        text = fenced.group(1)
    start, end = text.find("["), text.rfind("]")
    if start == -1 or end <= start:
        raise ValueError("No JSON array found in re-rank response")
    return text[start:end + 1]


def parse_rerank_response(text: str) -> list[RerankVerdict]:
    """Parse the gateway's re-rank answer.

    Expects a JSON array of objects with ``id``, ``score`` and ``reason``,
    optionally wrapped in a markdown code fence or surrounded by prose.
    Malformed entries are skipped; a response without any usable entry is an
    error.

    Raises:
        ValueError: If no verdict can be parsed
    """
    try:
        payload = json.loads(_json_block(text))
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in re-rank response: {e}") from e

    verdicts: list[RerankVerdict] = []
    for item in payload:
        if not isinstance(item, dict):
            continue
        try:
            record_id = int(item["id"])
            score = int(round(float(item["score"])))
        except (KeyError, TypeError, ValueError):
            logger.debug(f"Skipping malformed re-rank entry: {item!r}")
            continue
        if not 0 <= score <= 100:
            continue
        verdicts.append(
            RerankVerdict(record_id=record_id, score=score, reason=str(item.get("reason") or ""))
        )

    if not verdicts:
        raise ValueError("Re-rank response contained no usable verdicts")
    return verdicts
