from __future__ import annotations

import re
from typing import Any

# Never surfaced to users, whatever their component scores.
SENSITIVE_DIMENSIONS = {"religion", "political", "ethnicity", "family_plans"}

_BANNED_TERMS = {
    "religion",
    "religious",
    "faith",
    "political",
    "politics",
    "ethnicity",
    "kids",
    "family plans",
    "blocked",
}

_DIMENSION_COPY = {
    "interest": "You share a good number of interests.",
    "language": "You speak a common language.",
    "location": "You are close to each other.",
    "age": "You are at similar stages of life.",
    "relationship_intent": "You are looking for similar things right now.",
    "lifestyle": "Your day-to-day habits line up well.",
    "education": "You have comparable educational backgrounds.",
}

_FALLBACK = "Your profiles show meaningful compatibility potential."


def _safe_num(v: Any, default: float = 0.5) -> float:
    try:
        return float(v)
    except (TypeError, ValueError):
        return default


def _clean_text(line: str) -> str:
    txt = " ".join(str(line or "").split())
    txt = re.sub(r"\b[A-Z]{2,}_[A-Z0-9_]+\b", "", txt)
    lowered = txt.lower()
    for term in _BANNED_TERMS:
        if term in lowered:
            return _FALLBACK
    return txt.strip()


def build_match_explanation(components: dict[str, Any] | None, limit: int = 3) -> dict[str, Any]:
    """Short "why you matched" copy from the strongest non-sensitive components."""
    ranked = sorted(
        (
            (name, _safe_num(value))
            for name, value in (components or {}).items()
            if name not in SENSITIVE_DIMENSIONS and name in _DIMENSION_COPY
        ),
        key=lambda x: (-x[1], x[0]),
    )
    bullets = [_clean_text(_DIMENSION_COPY[name]) for name, value in ranked if value >= 0.6][:limit]
    if not bullets:
        bullets = [_FALLBACK]
    return {"bullets": bullets}
