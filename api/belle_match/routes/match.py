from typing import Any

from fastapi import APIRouter, Depends

from ..config import RL_MATCH_ACCEPT_LIMIT, RL_MATCH_DECLINE_LIMIT, RL_WINDOW_SECONDS
from ..deps import current_user_id
from ..schemas import MatchAttemptView
from ..services.rate_limit import rate_limit_dependency

router = APIRouter()

RL_MATCH_ACCEPT = rate_limit_dependency("match_accept", RL_MATCH_ACCEPT_LIMIT, RL_WINDOW_SECONDS)
RL_MATCH_DECLINE = rate_limit_dependency("match_decline", RL_MATCH_DECLINE_LIMIT, RL_WINDOW_SECONDS)


@router.get("/matches/pending")
def get_pending_matches(user_id: str = Depends(current_user_id)) -> dict[str, Any]:
    from .. import main as m

    attempts = m.pipeline.pending_matches(user_id)
    return {"matches": [MatchAttemptView.for_user(a, user_id).model_dump(mode="json") for a in attempts]}


@router.post("/matches/{match_id}/accept", dependencies=[RL_MATCH_ACCEPT])
async def accept_match(match_id: str, user_id: str = Depends(current_user_id)) -> dict[str, Any]:
    from .. import main as m

    attempt = await m.pipeline.accept_match(user_id, match_id)
    return MatchAttemptView.for_user(attempt, user_id).model_dump(mode="json")


@router.post("/matches/{match_id}/decline", dependencies=[RL_MATCH_DECLINE])
async def decline_match(match_id: str, user_id: str = Depends(current_user_id)) -> dict[str, Any]:
    from .. import main as m

    attempt = await m.pipeline.decline_match(user_id, match_id)
    return MatchAttemptView.for_user(attempt, user_id).model_dump(mode="json")
