import logging
import os
import time
from pathlib import Path
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from .config import (
    ADMIN_TOKEN,
    COMMUNICATION_SERVICE_URL,
    MODERATION_SERVICE_URL,
    NOTIFICATION_SERVICE_URL,
    PERSIST_MATCH_STATE,
    RUN_BACKGROUND_TASKS,
    USER_CACHE_TTL_SECONDS,
    USER_SERVICE_URL,
    ConfigHolder,
)
from .database import SessionLocal
from .deps import validate_admin_token as _validate_admin_token_impl
from .errors import MatchPipelineError
from .repo import SqlMatchStateRepository
from .routes import include_modular_routers
from .services.collaborators import (
    CachedUserProvider,
    HttpConversations,
    HttpNotifier,
    HttpSafetyProvider,
    HttpUserProvider,
)
from .services.notifications import OutboxNotifier
from .services.pipeline import MatchPipeline

logger = logging.getLogger(__name__)

app = FastAPI(title="Belle Match Pipeline")
include_modular_routers(app)


@app.exception_handler(MatchPipelineError)
async def match_pipeline_error_handler(request: Request, exc: MatchPipelineError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.exception("[PIPELINE] %s %s failed trace_id=%s", request.method, request.url.path, exc.trace_id, exc_info=exc)
    else:
        logger.info("[PIPELINE] %s %s -> %s %s trace_id=%s", request.method, request.url.path, exc.status_code, exc.kind, exc.trace_id)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


def build_pipeline() -> MatchPipeline:
    config = ConfigHolder()
    timeout = config.current.match.dependency_timeout_seconds
    users = CachedUserProvider(HttpUserProvider(USER_SERVICE_URL, timeout_seconds=timeout), ttl_seconds=USER_CACHE_TTL_SECONDS)
    safety = HttpSafetyProvider(MODERATION_SERVICE_URL, timeout_seconds=timeout)
    conversations = HttpConversations(COMMUNICATION_SERVICE_URL, timeout_seconds=timeout)
    repository = SqlMatchStateRepository() if PERSIST_MATCH_STATE else None
    if repository is not None:
        notifier = OutboxNotifier(repository)
    else:
        notifier = HttpNotifier(NOTIFICATION_SERVICE_URL, timeout_seconds=timeout)
    return MatchPipeline(
        config=config,
        users=users,
        safety=safety,
        notifier=notifier,
        conversations=conversations,
        repository=repository,
    )


pipeline = build_pipeline()


def run_migrations() -> None:
    env_dir = os.getenv("MIGRATIONS_DIR", "").strip()
    docker_dir = Path("/app/migrations")
    local_dir = Path(__file__).resolve().parents[1] / "migrations"

    if env_dir:
        migrations_dir = Path(env_dir)
    elif docker_dir.exists():
        migrations_dir = docker_dir
    else:
        migrations_dir = local_dir

    if not migrations_dir.is_dir():
        raise FileNotFoundError(
            "Migrations directory not found. Checked: "
            f"MIGRATIONS_DIR={env_dir or '<unset>'}, {docker_dir}, {local_dir}"
        )

    files = sorted(f.name for f in migrations_dir.iterdir() if f.is_file() and f.suffix == ".sql")
    with SessionLocal() as db:
        for fname in files:
            db.execute(text((migrations_dir / fname).read_text(encoding="utf-8")))
        db.commit()


def wait_for_db(max_attempts: int = 20, delay_seconds: float = 1.5) -> None:
    last_err: Exception | None = None
    for _ in range(max_attempts):
        try:
            with SessionLocal() as db:
                db.execute(text("SELECT 1"))
            return
        except OperationalError as exc:
            last_err = exc
            time.sleep(delay_seconds)
    if last_err:
        raise last_err


@app.on_event("startup")
async def on_startup() -> None:
    if PERSIST_MATCH_STATE:
        wait_for_db()
        run_migrations()
        await pipeline.restore()
    if RUN_BACKGROUND_TASKS:
        pipeline.start()


@app.on_event("shutdown")
async def on_shutdown() -> None:
    await pipeline.stop()


def _validate_admin_token(token: str | None) -> None:
    _validate_admin_token_impl(token, ADMIN_TOKEN)


@app.get("/health")
def health() -> dict[str, Any]:
    return {"status": "ok", "config_version": pipeline.config.version}
