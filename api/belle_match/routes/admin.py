from typing import Any

from fastapi import APIRouter, Depends
from pydantic import ValidationError

from ..deps import require_admin
from ..errors import InvalidInput
from ..schemas import AdminMatchAttemptView, CancelMatchRequest, ConfigReloadRequest

router = APIRouter(prefix="/admin", dependencies=[Depends(require_admin)])


@router.post("/matches/{match_id}/cancel")
async def cancel_match(match_id: str, payload: CancelMatchRequest | None = None) -> dict[str, Any]:
    from .. import main as m

    reason = payload.reason if payload else "cancelled_by_admin"
    attempt = await m.pipeline.cancel_match(match_id, reason=reason)
    return AdminMatchAttemptView.from_attempt(attempt).model_dump(mode="json")


@router.get("/matches/{match_id}")
def get_match_audit(match_id: str) -> dict[str, Any]:
    from .. import main as m

    return AdminMatchAttemptView.from_attempt(m.pipeline.get_attempt(match_id)).model_dump(mode="json")


@router.post("/matcher/tick")
async def run_matcher_tick() -> dict[str, Any]:
    from .. import main as m

    report = await m.pipeline.run_tick()
    return report.to_dict()


@router.post("/config/reload")
def reload_config(payload: ConfigReloadRequest | None = None) -> dict[str, Any]:
    from .. import main as m

    try:
        m.pipeline.reload_config(payload.overrides if payload else {})
    except ValidationError as exc:
        raise InvalidInput(f"Invalid pipeline configuration: {exc.error_count()} error(s)", errors=exc.errors()) from exc
    return {"status": "ok", "version": m.pipeline.config.version}


@router.get("/pipeline/stats")
def pipeline_stats() -> dict[str, Any]:
    from .. import main as m

    return m.pipeline.stats()
