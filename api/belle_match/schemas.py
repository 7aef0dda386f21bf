from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .domain import MatchAttempt, QueueStatus
from .services.explanations import build_match_explanation


class AgeRange(BaseModel):
    min: Any = None
    max: Any = None


class JoinQueueRequest(BaseModel):
    """Per-request filter. Every field is optional and overrides stored preferences when set.

    Values are loosely typed on purpose: malformed entries are dropped during
    normalization instead of failing the request.
    """

    model_config = ConfigDict(extra="ignore")

    ageRange: AgeRange | None = None
    preferredMinAge: Any = None
    preferredMaxAge: Any = None
    preferredGenders: list[Any] | None = None
    genderPreference: Any = None
    maxDistanceKm: Any = None
    maxRadius: Any = None
    preferredInterests: list[Any] | None = None
    preferredLanguages: list[Any] | None = None
    preferredReligions: list[Any] | None = None
    preferredEducationLevels: list[Any] | None = None
    preferredPoliticalViews: list[Any] | None = None
    preferredFamilyPlans: list[Any] | None = None
    preferredIntents: list[Any] | None = None
    preferredExerciseHabits: list[Any] | None = None
    preferredSmokingHabits: list[Any] | None = None
    preferredDrinkingHabits: list[Any] | None = None
    preferredEthnicities: list[Any] | None = None


class QueueStatusView(BaseModel):
    status: str
    position: int | None = None
    totalInQueue: int | None = None
    estimatedWaitSeconds: float | None = None
    joinedAt: datetime | None = None

    @classmethod
    def from_status(cls, status: QueueStatus) -> "QueueStatusView":
        return cls(
            status=status.status,
            position=status.position,
            totalInQueue=status.total_in_queue,
            estimatedWaitSeconds=status.estimated_wait_seconds,
            joinedAt=status.joined_at,
        )


class MatchAttemptView(BaseModel):
    id: str
    otherUserId: str
    score: float
    components: dict[str, float] = Field(default_factory=dict)
    state: str
    createdAt: datetime
    expiresAt: datetime
    chatRoomId: str | None = None
    explanation: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def for_user(cls, attempt: MatchAttempt, user_id: str) -> "MatchAttemptView":
        return cls(
            id=attempt.id,
            otherUserId=attempt.other(user_id),
            score=attempt.score,
            components=attempt.components,
            state=attempt.state.value,
            createdAt=attempt.created_at,
            expiresAt=attempt.expires_at,
            chatRoomId=attempt.chat_room_id,
            explanation=build_match_explanation(attempt.components),
        )


class AdminMatchAttemptView(BaseModel):
    id: str
    user1Id: str
    user2Id: str
    score: float
    components: dict[str, float] = Field(default_factory=dict)
    state: str
    createdAt: datetime
    expiresAt: datetime
    acceptedBy: list[str] = Field(default_factory=list)
    declinedBy: list[str] = Field(default_factory=list)
    chatRoomId: str | None = None
    reasons: list[dict[str, Any]] = Field(default_factory=list)
    terminalAt: datetime | None = None
    terminalReason: str | None = None
    materializationAttempts: int = 0

    @classmethod
    def from_attempt(cls, attempt: MatchAttempt) -> "AdminMatchAttemptView":
        return cls(
            id=attempt.id,
            user1Id=attempt.user1_id,
            user2Id=attempt.user2_id,
            score=attempt.score,
            components=attempt.components,
            state=attempt.state.value,
            createdAt=attempt.created_at,
            expiresAt=attempt.expires_at,
            acceptedBy=sorted(attempt.accepted_by),
            declinedBy=sorted(attempt.declined_by),
            chatRoomId=attempt.chat_room_id,
            reasons=attempt.reasons,
            terminalAt=attempt.terminal_at,
            terminalReason=attempt.terminal_reason,
            materializationAttempts=attempt.materialization_attempts,
        )


class CancelMatchRequest(BaseModel):
    reason: str = "cancelled_by_admin"


class ConfigReloadRequest(BaseModel):
    overrides: dict[str, Any] = Field(default_factory=dict)
