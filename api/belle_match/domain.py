from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable


class Gender(str, Enum):
    MAN = "MAN"
    WOMAN = "WOMAN"
    NONBINARY = "NONBINARY"


class RelationshipIntent(str, Enum):
    CASUAL = "CASUAL"
    FRIENDS = "FRIENDS"
    SERIOUS = "SERIOUS"
    NETWORKING = "NETWORKING"


class EntryStatus(str, Enum):
    WAITING = "WAITING"
    LOCKED = "LOCKED"
    LEFT = "LEFT"


class MatchState(str, Enum):
    PROPOSED = "PROPOSED"
    PARTIALLY_ACCEPTED = "PARTIALLY_ACCEPTED"
    MUTUALLY_ACCEPTED = "MUTUALLY_ACCEPTED"
    MATERIALIZED = "MATERIALIZED"
    DECLINED = "DECLINED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {MatchState.MATERIALIZED, MatchState.DECLINED, MatchState.EXPIRED, MatchState.CANCELLED, MatchState.FAILED}
)
EXPIRABLE_STATES = frozenset({MatchState.PROPOSED, MatchState.PARTIALLY_ACCEPTED})


class RejoinPolicy(str, Enum):
    REMOVE_ON_TERMINAL = "REMOVE_ON_TERMINAL"
    REQUEUE_ON_DECLINE = "REQUEUE_ON_DECLINE"


_GENDER_LABELS = {
    "men": Gender.MAN,
    "man": Gender.MAN,
    "male": Gender.MAN,
    "women": Gender.WOMAN,
    "woman": Gender.WOMAN,
    "female": Gender.WOMAN,
    "nonbinary": Gender.NONBINARY,
    "non-binary": Gender.NONBINARY,
    "non_binary": Gender.NONBINARY,
    "nb": Gender.NONBINARY,
}
_OPEN_GENDER_LABELS = {"everyone", "any", "all"}


def coerce_int(value: Any) -> int | None:
    try:
        return None if value is None else int(value)
    except (TypeError, ValueError):
        return None


def coerce_float(value: Any) -> float | None:
    try:
        return None if value is None else float(value)
    except (TypeError, ValueError):
        return None


def normalize_token(value: Any) -> str | None:
    if value is None:
        return None
    v = "_".join(str(value).strip().upper().replace("-", " ").split())
    return v or None


def normalize_tokens(values: Any) -> frozenset[str]:
    if values is None or isinstance(values, (str, bytes)):
        values = [values] if isinstance(values, str) else []
    if not isinstance(values, Iterable):
        return frozenset()
    out = set()
    for item in values:
        token = normalize_token(item)
        if token:
            out.add(token)
    return frozenset(out)


def normalize_gender(value: Any) -> Gender | None:
    if value is None:
        return None
    if isinstance(value, Gender):
        return value
    raw = str(value).strip().lower()
    if not raw:
        return None
    if raw in _GENDER_LABELS:
        return _GENDER_LABELS[raw]
    try:
        return Gender(raw.upper())
    except ValueError:
        return None


def normalize_genders(values: Any) -> frozenset[Gender]:
    if values is None:
        return frozenset()
    if isinstance(values, (str, Gender)):
        values = [values]
    out = set()
    for item in values:
        g = normalize_gender(item)
        if g is not None:
            out.add(g)
    return frozenset(out)


def genders_from_label(label: Any) -> frozenset[Gender]:
    """Map a free-text gender preference ("Men", "Everyone", ...) to a set.

    Open labels such as "everyone" mean no constraint and yield an empty set.
    """
    if label is None:
        return frozenset()
    if isinstance(label, (list, tuple, set, frozenset)):
        return normalize_genders(label)
    raw = str(label).strip().lower()
    if not raw or raw in _OPEN_GENDER_LABELS:
        return frozenset()
    g = normalize_gender(raw)
    return frozenset({g}) if g else frozenset()


def normalize_intent(value: Any) -> RelationshipIntent | None:
    token = normalize_token(value)
    if token is None:
        return None
    try:
        return RelationshipIntent(token)
    except ValueError:
        return None


@dataclass(frozen=True)
class UserProfile:
    user_id: str
    age: int | None = None
    gender: Gender | None = None
    latitude: float | None = None
    longitude: float | None = None
    languages: frozenset[str] = frozenset()
    interests: frozenset[str] = frozenset()
    religion: str | None = None
    education_level: str | None = None
    political_view: str | None = None
    family_plans: str | None = None
    ethnicity: str | None = None
    exercise: str | None = None
    smoking: str | None = None
    drinking: str | None = None
    relationship_intent: RelationshipIntent | None = None
    is_premium: bool = False

    @property
    def has_location(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, frozenset):
                value = sorted(value)
            elif isinstance(value, Enum):
                value = value.value
            out[f.name] = value
        return out

    @classmethod
    def from_dict(cls, user_id: str, data: dict[str, Any]) -> "UserProfile":
        return cls(
            user_id=str(user_id),
            age=coerce_int(data.get("age")),
            gender=normalize_gender(data.get("gender")),
            latitude=coerce_float(data.get("latitude")),
            longitude=coerce_float(data.get("longitude")),
            languages=normalize_tokens(data.get("languages")),
            interests=normalize_tokens(data.get("interests")),
            religion=normalize_token(data.get("religion")),
            education_level=normalize_token(data.get("educationLevel", data.get("education_level"))),
            political_view=normalize_token(data.get("politicalViews", data.get("political_view"))),
            family_plans=normalize_token(data.get("familyPlans", data.get("family_plans"))),
            ethnicity=normalize_token(data.get("ethnicity")),
            exercise=normalize_token(data.get("exercise")),
            smoking=normalize_token(data.get("smoking")),
            drinking=normalize_token(data.get("drinking")),
            relationship_intent=normalize_intent(data.get("intent", data.get("relationship_intent"))),
            is_premium=bool(data.get("isPremium", data.get("is_premium", False))),
        )


# Field name -> profile attribute, for the discrete preferred-set dimensions.
PREFERENCE_ATTRIBUTES: dict[str, str] = {
    "religions": "religion",
    "education_levels": "education_level",
    "political_views": "political_view",
    "family_plans": "family_plans",
    "relationship_intents": "relationship_intent",
    "exercise_habits": "exercise",
    "smoking_habits": "smoking",
    "drinking_habits": "drinking",
    "ethnicities": "ethnicity",
}

SET_FIELDS = ("interests", "languages", *PREFERENCE_ATTRIBUTES.keys())


@dataclass(frozen=True)
class Preferences:
    """Preference vector. Empty sets and ``None`` bounds mean no constraint.

    The same shape serves as stored base preferences, as a join-time filter and
    as the merged effective preferences.
    """

    genders: frozenset[Gender] = frozenset()
    min_age: int | None = None
    max_age: int | None = None
    max_distance_km: float | None = None
    max_radius_km: float | None = None
    interests: frozenset[str] = frozenset()
    languages: frozenset[str] = frozenset()
    religions: frozenset[str] = frozenset()
    education_levels: frozenset[str] = frozenset()
    political_views: frozenset[str] = frozenset()
    family_plans: frozenset[str] = frozenset()
    relationship_intents: frozenset[str] = frozenset()
    exercise_habits: frozenset[str] = frozenset()
    smoking_habits: frozenset[str] = frozenset()
    drinking_habits: frozenset[str] = frozenset()
    ethnicities: frozenset[str] = frozenset()

    @property
    def has_age_range(self) -> bool:
        return self.min_age is not None and self.max_age is not None

    def preferred(self, name: str) -> frozenset:
        return getattr(self, name)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "genders": sorted(g.value for g in self.genders),
            "min_age": self.min_age,
            "max_age": self.max_age,
            "max_distance_km": self.max_distance_km,
        }
        for name in SET_FIELDS:
            out[name] = sorted(getattr(self, name))
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "Preferences":
        data = data or {}
        kwargs: dict[str, Any] = {name: normalize_tokens(data.get(name)) for name in SET_FIELDS}
        kwargs["relationship_intents"] = frozenset(
            i.value for i in (normalize_intent(v) for v in kwargs["relationship_intents"]) if i
        )
        min_age, max_age = coerce_int(data.get("min_age")), coerce_int(data.get("max_age"))
        if min_age is not None and not 0 <= min_age <= 150:
            min_age = None
        if max_age is not None and not 0 <= max_age <= 150:
            max_age = None
        if min_age is not None and max_age is not None and min_age > max_age:
            min_age = max_age = None
        max_distance_km = coerce_float(data.get("max_distance_km"))
        if max_distance_km is not None and max_distance_km < 0:
            max_distance_km = None
        return cls(
            genders=normalize_genders(data.get("genders")),
            min_age=min_age,
            max_age=max_age,
            max_distance_km=max_distance_km,
            **kwargs,
        )


EffectivePreferences = Preferences


@dataclass
class QueueEntry:
    user_id: str
    joined_at: datetime
    effective_prefs: Preferences
    profile: UserProfile
    status: EntryStatus = EntryStatus.WAITING
    unsuccessful_rounds: int = 0
    requeued_at: datetime | None = None
    left_at: datetime | None = None
    left_reason: str | None = None

    def copy(self) -> "QueueEntry":
        return replace(self)


@dataclass
class MatchAttempt:
    id: str
    user1_id: str
    user2_id: str
    score: float
    components: dict[str, float]
    state: MatchState
    created_at: datetime
    expires_at: datetime
    accepted_by: set[str] = field(default_factory=set)
    declined_by: set[str] = field(default_factory=set)
    chat_room_id: str | None = None
    reasons: list[dict[str, Any]] = field(default_factory=list)
    terminal_at: datetime | None = None
    terminal_reason: str | None = None
    materialization_attempts: int = 0
    notified: set[str] = field(default_factory=set)

    @property
    def participants(self) -> tuple[str, str]:
        return (self.user1_id, self.user2_id)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def other(self, user_id: str) -> str:
        return self.user2_id if user_id == self.user1_id else self.user1_id

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user1_id": self.user1_id,
            "user2_id": self.user2_id,
            "score": self.score,
            "components": dict(self.components),
            "state": self.state.value,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
            "accepted_by": sorted(self.accepted_by),
            "declined_by": sorted(self.declined_by),
            "chat_room_id": self.chat_room_id,
            "reasons": list(self.reasons),
            "terminal_at": self.terminal_at,
            "terminal_reason": self.terminal_reason,
            "materialization_attempts": self.materialization_attempts,
        }


@dataclass
class QueueStatus:
    status: str
    position: int | None = None
    total_in_queue: int | None = None
    estimated_wait_seconds: float | None = None
    joined_at: datetime | None = None

    NOT_IN_QUEUE = "NOT_IN_QUEUE"


def canonical_pair(user_a: str, user_b: str) -> tuple[str, str]:
    return tuple(sorted((user_a, user_b)))


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
