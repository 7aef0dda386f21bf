import copy
import json
import logging
import os
import threading
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .domain import RejoinPolicy

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL", "postgresql+psycopg2://postgres:postgres@db:5432/belle_match")
ADMIN_TOKEN = os.getenv("ADMIN_TOKEN", "")
PERSIST_MATCH_STATE = os.getenv("PERSIST_MATCH_STATE", "false").lower() == "true"
RUN_BACKGROUND_TASKS = os.getenv("RUN_BACKGROUND_TASKS", "true").lower() == "true"

USER_SERVICE_URL = os.getenv("USER_SERVICE_URL", "http://user-service:3001")
MODERATION_SERVICE_URL = os.getenv("MODERATION_SERVICE_URL", "http://moderation-service:3007")
COMMUNICATION_SERVICE_URL = os.getenv("COMMUNICATION_SERVICE_URL", "http://communication-service:3004")
NOTIFICATION_SERVICE_URL = os.getenv("NOTIFICATION_SERVICE_URL", "http://notification-service:3006")
USER_CACHE_TTL_SECONDS = float(os.getenv("USER_CACHE_TTL_SECONDS", "30"))

RL_QUEUE_JOIN_LIMIT = int(os.getenv("RL_QUEUE_JOIN_LIMIT", "30"))
RL_MATCH_ACCEPT_LIMIT = int(os.getenv("RL_MATCH_ACCEPT_LIMIT", "100"))
RL_MATCH_DECLINE_LIMIT = int(os.getenv("RL_MATCH_DECLINE_LIMIT", "100"))
RL_WINDOW_SECONDS = int(os.getenv("RL_WINDOW_SECONDS", "60"))

SCORE_DIMENSIONS = (
    "age",
    "location",
    "interest",
    "language",
    "relationship_intent",
    "family_plans",
    "religion",
    "education",
    "political",
    "lifestyle",
    "ethnicity",
    "gender_compatibility",
)

DEFAULT_PIPELINE_CONFIG: dict[str, Any] = {
    "matcher": {
        "tick_interval_seconds": float(os.getenv("MATCHING_INTERVAL_SECONDS", "5")),
        "snapshot_size": int(os.getenv("MATCH_BATCH_SIZE", "50")),
        "candidate_cap": int(os.getenv("MATCH_CANDIDATE_CAP", "25")),
        "min_score_threshold": float(os.getenv("MIN_SCORE", "0.45")),
        "min_score_floor": 0.2,
        "starvation_relaxation": [
            {"after_rounds": 3, "min_score": 0.40},
            {"after_rounds": 6, "min_score": 0.35},
            {"after_rounds": 10, "min_score": 0.30},
        ],
        "max_in_flight_proposals": 100,
        "immediate_on_join": False,
        "shard_count": int(os.getenv("MATCHER_SHARD_COUNT", "1")),
        "shard_index": int(os.getenv("MATCHER_SHARD_INDEX", "0")),
    },
    "scorer": {
        "weights": {
            "age": 0.12,
            "location": 0.12,
            "interest": 0.14,
            "language": 0.06,
            "relationship_intent": 0.14,
            "family_plans": 0.10,
            "religion": 0.08,
            "education": 0.06,
            "political": 0.06,
            "lifestyle": 0.06,
            "ethnicity": 0.02,
            "gender_compatibility": 0.04,
        },
        "compatibility_matrices": {
            "relationship_intent": {
                "SERIOUS": {"CASUAL": 0.2, "FRIENDS": 0.3, "NETWORKING": 0.1},
                "CASUAL": {"FRIENDS": 0.6, "NETWORKING": 0.3},
                "FRIENDS": {"NETWORKING": 0.7},
            },
            "family_plans": {
                "WANTS_KIDS": {"DOES_NOT_WANT_KIDS": 0.0, "OPEN_TO_KIDS": 0.7, "HAS_KIDS": 0.8},
                "DOES_NOT_WANT_KIDS": {"OPEN_TO_KIDS": 0.4, "HAS_KIDS": 0.3},
                "OPEN_TO_KIDS": {"HAS_KIDS": 0.8},
                "__default__": 0.5,
            },
            "religion": {
                "AGNOSTIC": {"ATHEIST": 0.8, "SPIRITUAL": 0.7},
                "ATHEIST": {"SPIRITUAL": 0.5},
                "__default__": 0.3,
            },
            "political": {
                "LIBERAL": {"MODERATE": 0.6, "CONSERVATIVE": 0.2, "APOLITICAL": 0.6},
                "MODERATE": {"CONSERVATIVE": 0.6, "APOLITICAL": 0.8},
                "CONSERVATIVE": {"APOLITICAL": 0.6},
                "__default__": 0.5,
            },
            "ethnicity": {"__default__": 0.0},
        },
        "premium_bonus_per_user": 0.02,
        "premium_bonus_cap": 0.03,
        "age_sigmoid_steepness": 6.0,
        "age_sigmoid_midpoint": 0.5,
        "default_age_span": 15,
        "interest_min_count": 1,
        "education_order": ["HIGH_SCHOOL", "SOME_COLLEGE", "BACHELORS", "MASTERS", "DOCTORATE"],
        "habit_order": ["NEVER", "RARELY", "SOCIALLY", "REGULARLY"],
        "no_preference_values": ["NO_PREFERENCE", "PREFER_NOT_TO_SAY"],
        "strict_preference_dimensions": [
            "religions",
            "education_levels",
            "political_views",
            "family_plans",
            "relationship_intents",
            "exercise_habits",
            "smoking_habits",
            "drinking_habits",
            "languages",
        ],
    },
    "pool": {
        "geo_cell_size_km": 25.0,
        "age_bucket_size": 5,
        "rejoin_policy": os.getenv("POOL_REJOIN_POLICY", RejoinPolicy.REMOVE_ON_TERMINAL.value),
        "entry_ttl_seconds": int(os.getenv("QUEUE_ENTRY_TTL_SECONDS", "600")),
        "tombstone_ttl_seconds": 300,
    },
    "match": {
        "proposal_ttl_seconds": int(os.getenv("MATCH_PROPOSAL_TTL_SECONDS", "86400")),
        "cooldown_per_pair_seconds": None,
        "repeat_materialization_max_attempts": 5,
        "materialization_backoff_base_seconds": 0.5,
        "materialization_backoff_max_seconds": 30.0,
        "dependency_timeout_seconds": 5.0,
        "notify_max_attempts": 3,
        "audit_retention_seconds": 7 * 24 * 3600,
        "expiry_sweep_interval_seconds": 5.0,
    },
}


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    out = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(out.get(key), dict) and key != "weights":
            out[key] = _deep_merge(out[key], value)
        else:
            out[key] = value
    return out


if os.getenv("MATCH_PIPELINE_CONFIG_JSON"):
    try:
        DEFAULT_PIPELINE_CONFIG = _deep_merge(DEFAULT_PIPELINE_CONFIG, json.loads(os.getenv("MATCH_PIPELINE_CONFIG_JSON", "{}")))
    except json.JSONDecodeError:
        logger.warning("[CONFIG] MATCH_PIPELINE_CONFIG_JSON is not valid JSON, ignoring it")


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class RelaxationStep(_Frozen):
    after_rounds: int = Field(ge=1)
    min_score: float = Field(ge=0.0)


class MatcherSettings(_Frozen):
    tick_interval_seconds: float = Field(default=5.0, gt=0)
    snapshot_size: int = Field(default=50, ge=1)
    candidate_cap: int = Field(default=25, ge=1)
    min_score_threshold: float = Field(default=0.45, ge=0.0)
    min_score_floor: float = Field(default=0.2, ge=0.0)
    starvation_relaxation: tuple[RelaxationStep, ...] = ()
    max_in_flight_proposals: int = Field(default=100, ge=1)
    immediate_on_join: bool = False
    shard_count: int = Field(default=1, ge=1)
    shard_index: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def _check(self) -> "MatcherSettings":
        if self.shard_index >= self.shard_count:
            raise ValueError("shard_index must be smaller than shard_count")
        rounds = [s.after_rounds for s in self.starvation_relaxation]
        if rounds != sorted(rounds):
            raise ValueError("starvation_relaxation steps must be ordered by after_rounds")
        return self


class ScorerSettings(_Frozen):
    weights: dict[str, float]
    compatibility_matrices: dict[str, dict[str, Any]] = Field(default_factory=dict)
    premium_bonus_per_user: float = Field(default=0.02, ge=0.0)
    premium_bonus_cap: float = Field(default=0.03, ge=0.0, le=0.25)
    age_sigmoid_steepness: float = Field(default=6.0, gt=0)
    age_sigmoid_midpoint: float = Field(default=0.5, gt=0)
    default_age_span: int = Field(default=15, ge=1)
    interest_min_count: int = Field(default=1, ge=0)
    education_order: tuple[str, ...] = ()
    habit_order: tuple[str, ...] = ()
    no_preference_values: frozenset[str] = frozenset()
    strict_preference_dimensions: frozenset[str] = frozenset()

    @field_validator("weights")
    @classmethod
    def _weights_sum_to_one(cls, value: dict[str, float]) -> dict[str, float]:
        unknown = set(value) - set(SCORE_DIMENSIONS)
        if unknown:
            raise ValueError(f"unknown score dimensions: {sorted(unknown)}")
        if any(w < 0 for w in value.values()):
            raise ValueError("weights must be non-negative")
        if abs(sum(value.values()) - 1.0) > 1e-6:
            raise ValueError("weights must sum to 1")
        return value


class PoolSettings(_Frozen):
    geo_cell_size_km: float = Field(default=25.0, gt=0)
    age_bucket_size: int = Field(default=5, ge=1)
    rejoin_policy: RejoinPolicy = RejoinPolicy.REMOVE_ON_TERMINAL
    entry_ttl_seconds: int = Field(default=600, ge=0)
    tombstone_ttl_seconds: int = Field(default=300, ge=0)


class MatchSettings(_Frozen):
    proposal_ttl_seconds: int = Field(default=86400, ge=1)
    cooldown_per_pair_seconds: int | None = Field(default=None, ge=0)
    repeat_materialization_max_attempts: int = Field(default=5, ge=1)
    materialization_backoff_base_seconds: float = Field(default=0.5, ge=0)
    materialization_backoff_max_seconds: float = Field(default=30.0, ge=0)
    dependency_timeout_seconds: float = Field(default=5.0, gt=0)
    notify_max_attempts: int = Field(default=3, ge=1)
    audit_retention_seconds: int = Field(default=7 * 24 * 3600, ge=0)
    expiry_sweep_interval_seconds: float = Field(default=5.0, gt=0)


class PipelineConfig(_Frozen):
    matcher: MatcherSettings
    scorer: ScorerSettings
    pool: PoolSettings
    match: MatchSettings


def load_pipeline_config(overrides: dict[str, Any] | None = None) -> PipelineConfig:
    """Validate defaults merged with ``overrides``. Raises pydantic.ValidationError."""
    return PipelineConfig.model_validate(_deep_merge(DEFAULT_PIPELINE_CONFIG, overrides or {}))


class ConfigHolder:
    """Process-wide configuration, replaced only by whole-object swaps.

    Readers take ``current`` once and keep using that object, so they never
    observe a half-applied reload.
    """

    def __init__(self, config: PipelineConfig | None = None) -> None:
        self._config = config or load_pipeline_config()
        self._lock = threading.Lock()
        self.version = 1

    @property
    def current(self) -> PipelineConfig:
        return self._config

    def swap(self, config: PipelineConfig) -> PipelineConfig:
        with self._lock:
            previous = self._config
            self._config = config
            self.version += 1
        return previous

    def reload(self, overrides: dict[str, Any] | None = None) -> PipelineConfig:
        config = load_pipeline_config(overrides)
        self.swap(config)
        return config
