from typing import Any

from fastapi import APIRouter, Depends

from ..config import RL_QUEUE_JOIN_LIMIT, RL_WINDOW_SECONDS
from ..deps import current_user_id
from ..schemas import JoinQueueRequest, QueueStatusView
from ..services.rate_limit import rate_limit_dependency

router = APIRouter()

RL_QUEUE_JOIN = rate_limit_dependency("queue_join", RL_QUEUE_JOIN_LIMIT, RL_WINDOW_SECONDS)


@router.post("/queue/join", dependencies=[RL_QUEUE_JOIN])
async def join_queue(payload: JoinQueueRequest | None = None, user_id: str = Depends(current_user_id)) -> dict[str, Any]:
    from .. import main as m

    filters = payload.model_dump(exclude_none=True) if payload else None
    status = await m.pipeline.join_queue(user_id, filters)
    return QueueStatusView.from_status(status).model_dump(mode="json")


@router.post("/queue/leave")
async def leave_queue(user_id: str = Depends(current_user_id)) -> dict[str, Any]:
    from .. import main as m

    status = await m.pipeline.leave_queue(user_id)
    return QueueStatusView.from_status(status).model_dump(mode="json")


@router.get("/queue/status")
def queue_status(user_id: str = Depends(current_user_id)) -> dict[str, Any]:
    from .. import main as m

    return QueueStatusView.from_status(m.pipeline.queue_status(user_id)).model_dump(mode="json")
