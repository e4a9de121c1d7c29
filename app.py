# app.py
"""
Playalong main entry (FastAPI)

- App Factory pattern for testing & packaging
- Lifespan startup: ensure score dir + prune idle practice sessions
- Lifespan shutdown: drop in-memory scores and sessions
- Dev CORS: allow localhost any port (supports credentials)
- Prod CORS: MUST specify explicit origins (no wildcard with credentials)
"""

from __future__ import annotations

import logging
import math
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from core.config import get_settings
from core.practice_session import score_store, session_manager
from routers.health import router as health_router
from routers.practice import router as practice_router
from routers.score import router as score_router

logger = logging.getLogger("playalong")

SESSION_MAX_IDLE_S = 6 * 3600


def _is_dev(app_env: str) -> bool:
    v = (app_env or "").strip().lower()
    return v in {"dev", "development", "local"}


def _parse_origins(raw: Optional[str]) -> list[str]:
    """
    Parse comma-separated origins string into list.
    Example: "https://a.com,https://b.com"
    """
    if not raw:
        return []
    parts = [p.strip() for p in raw.split(",")]
    return [p for p in parts if p]


def _json_safe_float(v: float):
    return v if math.isfinite(v) else str(v)


@asynccontextmanager
async def lifespan(_: FastAPI):
    s = get_settings()

    # 1) Ensure score directory exists
    try:
        s.score_dir.mkdir(parents=True, exist_ok=True)
    except Exception as e:
        logger.critical("Failed to create score dir: %s", e)
        raise

    # 2) Prune idle practice sessions
    try:
        removed = session_manager.prune(max_age_seconds=SESSION_MAX_IDLE_S)
        if removed:
            logger.info("Session prune: removed=%s", removed)
    except Exception as e:
        logger.warning("Session prune warning: %s", e)

    yield

    logger.info("Service shutting down...")
    session_manager.clear()
    score_store.clear()


def create_app() -> FastAPI:
    # logging once (avoid duplicated handlers in reload/test)
    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        )

    s = get_settings()
    app = FastAPI(
        title="Playalong",
        version="0.1.0",
        description="Score timeline, live note accuracy and metronome API for piano practice",
        lifespan=lifespan,
    )

    # expose settings for debugging
    app.state.settings = s

    # ---- CORS ----
    # Dev: allow localhost any port, supports credentials
    # Prod: must specify explicit origins (CORS_ALLOW_ORIGINS)
    if _is_dev(s.app_env):
        allow_origins: list[str] = []
        allow_origin_regex = r"http://(?:localhost|127\.0\.0\.1)(?::\d+)?"
        allow_credentials = True
    else:
        allow_origins = _parse_origins(s.cors_allow_origins)
        allow_origin_regex = None
        # no explicit origins -> credentials disabled
        allow_credentials = bool(allow_origins)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allow_origins,
        allow_origin_regex=allow_origin_regex,
        allow_credentials=allow_credentials,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ---- Errors ----
    # 422 bodies echo the rejected input; inf/nan have no strict JSON form
    @app.exception_handler(RequestValidationError)
    async def _validation_error(_: Request, exc: RequestValidationError):
        detail = jsonable_encoder(exc.errors(), custom_encoder={float: _json_safe_float})
        return JSONResponse(status_code=422, content={"detail": detail})

    # ---- Routers ----
    app.include_router(health_router)
    app.include_router(score_router)
    app.include_router(practice_router)

    @app.get("/", include_in_schema=False)
    def root():
        return JSONResponse(
            {
                "service": "Playalong",
                "status": "ok",
                "docs_url": "/docs",
            }
        )

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn

    s = get_settings()
    uvicorn.run("app:app", host=s.host, port=s.port, reload=_is_dev(s.app_env))
