from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import os
import re
from typing import AsyncIterator, Optional
from urllib.parse import urlparse

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.routes.health import router as health_router
from app.routes.v1 import router as v1_router
from app.services.skincare_actions import ActionError
from app.store.action_state_store import CompletedActionStore, InMemoryActionStateBackend, build_action_state_store
from app.store.database import DatabaseError, PersistentDatabase


logger = logging.getLogger("skincare-sanctuary.main")


def _parse_cors_origins(raw: Optional[str]) -> list[str]:
    if not raw:
        return ["*"]
    parts = [p.strip() for p in raw.split(",")]
    return [p for p in parts if p]


def _build_allow_origin_regex(origins: list[str]) -> Optional[str]:
    # Vercel preview deployments of a listed project, e.g.
    # https://<project>-git-<branch>-<team>.vercel.app
    patterns: list[str] = []
    for origin in origins:
        parsed = urlparse(origin)
        host = parsed.hostname or ""
        if not parsed.scheme or not host.endswith(".vercel.app"):
            continue
        base = host[: -len(".vercel.app")]
        if base:
            patterns.append(rf"{re.escape(parsed.scheme)}://{re.escape(base)}(-.*)?\.vercel\.app")

    if not patterns:
        return None
    return rf"^(?:{'|'.join(patterns)})$"


def _setup_logging() -> None:
    level = (os.getenv("LOG_LEVEL") or "INFO").upper()
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    database = PersistentDatabase()
    await database.initialize()
    app.state.database = database
    app.state.action_state = await build_action_state_store()
    try:
        yield
    finally:
        await app.state.action_state.close()
        await app.state.database.close()


async def _action_error_handler(request: Request, exc: ActionError) -> JSONResponse:
    logger.info("action_failed path=%s status=%s err=%s", request.url.path, exc.status_code, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message, "details": exc.details})


async def _database_error_handler(request: Request, exc: DatabaseError) -> JSONResponse:
    logger.error("database_error path=%s err=%s details=%s", request.url.path, exc.message, exc.details)
    return JSONResponse(status_code=500, content={"error": "Database error", "details": exc.message})


def create_app() -> FastAPI:
    _setup_logging()
    app = FastAPI(title="Skincare Sanctuary", version="0.1.0", lifespan=_lifespan)

    # Memory-backed defaults until the lifespan picks the configured backends.
    app.state.database = PersistentDatabase()
    app.state.action_state = CompletedActionStore(InMemoryActionStateBackend())

    origins = _parse_cors_origins(os.getenv("CORS_ORIGINS"))
    allow_all = "*" in origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if allow_all else origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
        allow_origin_regex=None if allow_all else _build_allow_origin_regex(origins),
        max_age=86400,
    )

    app.add_exception_handler(ActionError, _action_error_handler)
    app.add_exception_handler(DatabaseError, _database_error_handler)

    app.include_router(health_router)
    app.include_router(v1_router, prefix="/v1")

    return app


app = create_app()
