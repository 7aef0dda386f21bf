from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from ..config import SCORE_DIMENSIONS, ConfigHolder, PipelineConfig, ScorerSettings
from ..domain import PREFERENCE_ATTRIBUTES, Preferences, UserProfile
from .geo import haversine_km

UNKNOWN = 0.5

# Preference fields compared by intersection instead of membership.
_SET_DIMENSIONS = ("languages", "interests")


@dataclass(frozen=True)
class PairContext:
    """Facts about a pair that need I/O, gathered by the caller before scoring."""

    a_active: bool = True
    b_active: bool = True
    blocked: bool = False
    a_has_active_attempt: bool = False
    b_has_active_attempt: bool = False
    last_terminal_at: datetime | None = None
    now: datetime | None = None


@dataclass
class ScoreResult:
    total: float
    components: dict[str, float] = field(default_factory=dict)
    eligible: bool = True
    reasons: list[dict[str, Any]] = field(default_factory=list)


def _value(v: Any) -> str | None:
    if v is None:
        return None
    return getattr(v, "value", v)


def _clamp(x: float) -> float:
    return max(0.0, min(1.0, x))


def matrix_lookup(settings: ScorerSettings, name: str, x: Any, y: Any) -> float:
    """Symmetric compatibility lookup; identical values default to 1."""
    x, y = _value(x), _value(y)
    if x is None or y is None:
        return UNKNOWN
    matrix = settings.compatibility_matrices.get(name) or {}
    for row, col in ((x, y), (y, x)):
        row_map = matrix.get(row)
        cell = row_map.get(col) if isinstance(row_map, dict) else None
        if cell is not None:
            return _clamp(float(cell))
    if x == y:
        return 1.0
    return _clamp(float(matrix.get("__default__", UNKNOWN)))


def ordinal_closeness(order: tuple[str, ...], x: Any, y: Any) -> float:
    x, y = _value(x), _value(y)
    if x is None or y is None or x not in order or y not in order:
        return UNKNOWN
    if len(order) < 2:
        return 1.0
    return 1.0 - abs(order.index(x) - order.index(y)) / (len(order) - 1)


class Scorer:
    """Pure pair scorer. Hard filters decide eligibility; components rank."""

    def __init__(self, config: ConfigHolder) -> None:
        self._config = config

    def score(
        self,
        a: UserProfile,
        b: UserProfile,
        prefs_a: Preferences,
        prefs_b: Preferences,
        context: PairContext | None = None,
        config: PipelineConfig | None = None,
    ) -> ScoreResult:
        cfg = config or self._config.current
        context = context or PairContext()
        reasons = self.eligibility(a, b, prefs_a, prefs_b, context, cfg)
        if reasons:
            return ScoreResult(total=0.0, components={}, eligible=False, reasons=reasons)

        settings = cfg.scorer
        components = self.components(a, b, prefs_a, prefs_b, settings)
        total = sum(settings.weights.get(name, 0.0) * components[name] for name in SCORE_DIMENSIONS)
        premium_count = int(a.is_premium) + int(b.is_premium)
        bonus = min(settings.premium_bonus_cap, settings.premium_bonus_per_user * premium_count)
        return ScoreResult(total=round(total + bonus, 6), components=components, eligible=True, reasons=[])

    def eligibility(
        self,
        a: UserProfile,
        b: UserProfile,
        prefs_a: Preferences,
        prefs_b: Preferences,
        context: PairContext,
        cfg: PipelineConfig,
    ) -> list[dict[str, Any]]:
        reasons: list[dict[str, Any]] = []
        if a.user_id == b.user_id:
            return [{"code": "self_pair", "user_id": a.user_id}]
        if not context.a_active:
            reasons.append({"code": "inactive", "user_id": a.user_id})
        if not context.b_active:
            reasons.append({"code": "inactive", "user_id": b.user_id})
        if context.blocked:
            reasons.append({"code": "blocked"})
        if context.a_has_active_attempt:
            reasons.append({"code": "pending_match", "user_id": a.user_id})
        if context.b_has_active_attempt:
            reasons.append({"code": "pending_match", "user_id": b.user_id})

        cooldown = cfg.match.cooldown_per_pair_seconds
        if cooldown and context.last_terminal_at is not None and context.now is not None:
            if (context.now - context.last_terminal_at).total_seconds() < cooldown:
                reasons.append({"code": "cooldown"})

        for owner, prefs, other in ((a, prefs_a, b), (b, prefs_b, a)):
            if prefs.has_age_range and (other.age is None or not (prefs.min_age <= other.age <= prefs.max_age)):
                reasons.append({"code": "age_out_of_range", "user_id": owner.user_id})
            if prefs.genders and other.gender not in prefs.genders:
                reasons.append({"code": "gender_mismatch", "user_id": owner.user_id})
            if prefs.max_distance_km is not None and owner.has_location and other.has_location:
                distance = haversine_km(owner.latitude, owner.longitude, other.latitude, other.longitude)
                if distance > prefs.max_distance_km:
                    reasons.append({"code": "distance_exceeded", "user_id": owner.user_id})
            for dim in sorted(cfg.scorer.strict_preference_dimensions):
                if not self._strict_ok(dim, prefs, other):
                    reasons.append({"code": "preference_mismatch", "dimension": dim, "user_id": owner.user_id})
        return reasons

    @staticmethod
    def _strict_ok(dim: str, prefs: Preferences, other: UserProfile) -> bool:
        wanted = prefs.preferred(dim) if hasattr(prefs, dim) else frozenset()
        if not wanted:
            return True
        if dim in _SET_DIMENSIONS:
            have = getattr(other, dim)
            return not have or bool(wanted & have)
        attr = PREFERENCE_ATTRIBUTES.get(dim)
        if attr is None:
            return True
        value = _value(getattr(other, attr))
        return value is None or value in wanted

    def components(
        self,
        a: UserProfile,
        b: UserProfile,
        prefs_a: Preferences,
        prefs_b: Preferences,
        settings: ScorerSettings,
    ) -> dict[str, float]:
        religion = matrix_lookup(settings, "religion", a.religion, b.religion)
        if a.religion in settings.no_preference_values or b.religion in settings.no_preference_values:
            religion = 1.0
        lifestyle = [
            ordinal_closeness(settings.habit_order, getattr(a, habit), getattr(b, habit))
            for habit in ("exercise", "smoking", "drinking")
        ]
        out = {
            "age": self._age(a, b, prefs_a, prefs_b, settings),
            "location": self._location(a, b, prefs_a, prefs_b),
            "interest": self._interest(a, b, prefs_a, prefs_b, settings),
            "language": self._language(a, b),
            "relationship_intent": matrix_lookup(settings, "relationship_intent", a.relationship_intent, b.relationship_intent),
            "family_plans": matrix_lookup(settings, "family_plans", a.family_plans, b.family_plans),
            "religion": religion,
            "education": ordinal_closeness(settings.education_order, a.education_level, b.education_level),
            "political": matrix_lookup(settings, "political", a.political_view, b.political_view),
            "lifestyle": sum(lifestyle) / len(lifestyle),
            "ethnicity": (self._ethnicity_side(settings, prefs_a, b) + self._ethnicity_side(settings, prefs_b, a)) / 2,
            "gender_compatibility": self._gender(a, b, prefs_a, prefs_b),
        }
        return {k: round(_clamp(v), 6) for k, v in out.items()}

    @staticmethod
    def _age(a: UserProfile, b: UserProfile, prefs_a: Preferences, prefs_b: Preferences, settings: ScorerSettings) -> float:
        if a.age is None or b.age is None:
            return UNKNOWN
        spans = [p.max_age - p.min_age for p in (prefs_a, prefs_b) if p.has_age_range]
        span = max(spans) if spans else settings.default_age_span
        span = max(span, 1)
        x = abs(a.age - b.age) / span
        k, mid = settings.age_sigmoid_steepness, settings.age_sigmoid_midpoint

        def sigmoid(v: float) -> float:
            return 1.0 / (1.0 + math.exp(k * (v - mid)))

        return sigmoid(x) / sigmoid(0.0)

    @staticmethod
    def _location(a: UserProfile, b: UserProfile, prefs_a: Preferences, prefs_b: Preferences) -> float:
        if not (a.has_location and b.has_location):
            return UNKNOWN
        limits = [p.max_distance_km for p in (prefs_a, prefs_b) if p.max_distance_km is not None]
        if not limits:
            return 1.0
        limit = min(limits)
        distance = haversine_km(a.latitude, a.longitude, b.latitude, b.longitude)
        if limit <= 0:
            return 1.0 if distance <= 0 else 0.0
        return 1.0 - distance / limit

    @staticmethod
    def _interest(a: UserProfile, b: UserProfile, prefs_a: Preferences, prefs_b: Preferences, settings: ScorerSettings) -> float:
        minimum = max(1, settings.interest_min_count)
        if len(a.interests) < minimum or len(b.interests) < minimum:
            return UNKNOWN

        def directed(wanted: frozenset[str], have: frozenset[str]) -> float:
            union = wanted | have
            return len(wanted & have) / len(union) if union else 0.0

        return (directed(prefs_a.interests or a.interests, b.interests) + directed(prefs_b.interests or b.interests, a.interests)) / 2

    @staticmethod
    def _language(a: UserProfile, b: UserProfile) -> float:
        if not a.languages or not b.languages:
            return UNKNOWN
        return 1.0 if a.languages & b.languages else 0.0

    @staticmethod
    def _ethnicity_side(settings: ScorerSettings, prefs: Preferences, other: UserProfile) -> float:
        if not prefs.ethnicities:
            return 1.0
        if other.ethnicity is None:
            return UNKNOWN
        return max(matrix_lookup(settings, "ethnicity", wanted, other.ethnicity) for wanted in sorted(prefs.ethnicities))

    @staticmethod
    def _gender(a: UserProfile, b: UserProfile, prefs_a: Preferences, prefs_b: Preferences) -> float:
        a_ok = not prefs_a.genders or b.gender in prefs_a.genders
        b_ok = not prefs_b.genders or a.gender in prefs_b.genders
        return 1.0 if a_ok and b_ok else 0.0
