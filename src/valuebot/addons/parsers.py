from __future__ import annotations

import json
import re
from typing import Any, Callable

from ..errors import JsonBlockParseError, NoJsonContentError
from ..models import FLAG_KEYS, SCORE_KEYS
from ..utils import to_finite_float

_FENCE_RE = re.compile(r"```(?:json)?\s*\n?([\s\S]*?)\n?```", re.IGNORECASE)

LabelRule = tuple[Callable[[str], bool], float]


def _contains(fragment: str) -> Callable[[str], bool]:
    return lambda label: fragment in label


# Evaluated top to bottom; the first matching rule wins. "very strong" must
# stay ahead of "strong" because the latter is a substring of the former.
QUALITY_LABEL_RULES: list[LabelRule] = [
    (_contains("world"), 9.5),
    (_contains("excellent"), 8.5),
    (_contains("very strong"), 7.5),
    (_contains("strong"), 6.5),
    (_contains("good"), 5.5),
    (_contains("average"), 4.5),
    (_contains("weak"), 3.5),
    (_contains("poor"), 2.5),
]
QUALITY_LABEL_FALLBACK = 1.5

TIMING_LABEL_RULES: list[LabelRule] = [
    (_contains("buy"), 8.0),
    (_contains("hold"), 6.0),
    (_contains("wait"), 4.0),
]
TIMING_LABEL_FALLBACK = 2.0

RISK_LABEL_RULES: list[LabelRule] = [
    (lambda label: label == "low", 8.0),
    (lambda label: label == "medium", 5.5),
]
RISK_LABEL_FALLBACK = 3.0

QUALITY_BUCKETS = [
    (9, "World Class"),
    (8, "Excellent"),
    (7, "Very Strong"),
    (6, "Strong"),
    (5, "Good"),
    (4, "Average"),
    (3, "Weak"),
    (2, "Poor"),
]


def _sanitize_json_text(raw_text: str | None) -> str:
    if not raw_text:
        return ""
    candidate = raw_text.strip()
    fence = _FENCE_RE.search(candidate)
    if fence:
        candidate = fence.group(1).strip()
    first = candidate.find("{")
    last = candidate.rfind("}")
    if first != -1 and last != -1 and last > first:
        candidate = candidate[first : last + 1]
    return candidate


def extract_json_block(raw_text: str | None) -> Any:
    """Pull the JSON object out of a model reply that mixes prose and JSON.

    Prefers a fenced ```json block when present, then narrows to the span
    between the first ``{`` and the last ``}``. Raises NoJsonContentError when
    there is nothing to parse and JsonBlockParseError on invalid JSON.
    """
    candidate = _sanitize_json_text(raw_text)
    if not candidate:
        raise NoJsonContentError()
    if "{" not in candidate or "}" not in candidate:
        raise NoJsonContentError("No JSON object found in response")
    try:
        return json.loads(candidate)
    except json.JSONDecodeError as exc:
        raise JsonBlockParseError(exc) from exc


def map_risk_label(score: Any) -> str | None:
    value = _score(score)
    if value is None:
        return None
    if value >= 7:
        return "Low"
    if value >= 4:
        return "Medium"
    return "High"


def map_quality_label(score: Any) -> str | None:
    value = _score(score)
    if value is None:
        return None
    for threshold, label in QUALITY_BUCKETS:
        if value >= threshold:
            return label
    return "Horrific"


def map_timing_label(score: Any) -> str | None:
    value = _score(score)
    if value is None:
        return None
    if value >= 7:
        return "Buy"
    if value >= 5:
        return "Hold"
    if value >= 3:
        return "Wait"
    return "Avoid"


def label_to_number(label: Any, rules: list[LabelRule], fallback: float) -> float | None:
    if not label or not isinstance(label, str):
        return None
    normalized = label.strip().lower()
    if not normalized:
        return None
    for matches, value in rules:
        if matches(normalized):
            return value
    return fallback


def derive_numeric_scores_from_meta(meta: dict[str, Any] | None) -> dict[str, float]:
    if not meta:
        return {}
    numeric: dict[str, float] = {}
    risk = label_to_number(meta.get("risk_label"), RISK_LABEL_RULES, RISK_LABEL_FALLBACK)
    if risk is not None:
        numeric["risk"] = risk
    quality = label_to_number(
        meta.get("quality_label"), QUALITY_LABEL_RULES, QUALITY_LABEL_FALLBACK
    )
    if quality is not None:
        numeric["quality"] = quality
    timing = label_to_number(meta.get("timing_label"), TIMING_LABEL_RULES, TIMING_LABEL_FALLBACK)
    if timing is not None:
        numeric["timing"] = timing
    composite = meta.get("composite_score")
    if isinstance(composite, (int, float)) and not isinstance(composite, bool):
        numeric["composite"] = composite
    return numeric


def build_meta_from_scores(
    base_meta: dict[str, Any] | None = None, scores: dict[str, Any] | None = None
) -> dict[str, Any]:
    meta = dict(base_meta or {})
    scores = scores or {}
    risk = map_risk_label(scores.get("risk"))
    if risk:
        meta["risk_label"] = risk
    quality = map_quality_label(scores.get("quality"))
    if quality:
        meta["quality_label"] = quality
    timing = map_timing_label(scores.get("timing"))
    if timing:
        meta["timing_label"] = timing
    composite = _score(scores.get("composite"))
    if composite is not None:
        meta["composite_score"] = scores["composite"]
    return meta


def merge_flags(
    existing: dict[str, Any] | None = None, incoming: dict[str, Any] | None = None
) -> dict[str, Any]:
    existing = existing or {}
    incoming = incoming or {}
    merged = dict(existing)
    for key in FLAG_KEYS:
        if key in incoming:
            merged[key] = bool(incoming[key])

    current = existing.get("other_flags")
    other_flags = list(current) if isinstance(current, list) else []
    new_flags = incoming.get("other_flags")
    if isinstance(new_flags, list):
        for flag in new_flags:
            if flag and flag not in other_flags:
                other_flags.append(flag)
    if other_flags:
        merged["other_flags"] = other_flags
    else:
        merged.pop("other_flags", None)
    return merged


def normalize_scores(
    old_scores: dict[str, Any] | None, new_scores: dict[str, Any] | None
) -> dict[str, Any]:
    merged = dict(old_scores or {})
    if not isinstance(new_scores, dict):
        return merged
    for key in SCORE_KEYS:
        numeric = to_finite_float(new_scores.get(key))
        if numeric is not None:
            merged[key] = numeric
    return merged


def _score(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return to_finite_float(value)
