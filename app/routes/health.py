from __future__ import annotations

import os

from fastapi import APIRouter, Request

router = APIRouter()


def _get_commit_sha() -> str | None:
    for key in (
        # Railway
        "RAILWAY_GIT_COMMIT_SHA",
        # Common CI providers
        "GITHUB_SHA",
        # Vercel
        "VERCEL_GIT_COMMIT_SHA",
        # Generic fallbacks
        "COMMIT_SHA",
        "GIT_SHA",
    ):
        value = os.getenv(key)
        if value:
            return value
    return None


@router.get("/healthz")
def healthz(request: Request):
    return {
        "ok": True,
        "service": "skincare-sanctuary",
        "commit_sha": _get_commit_sha(),
        "environment": os.getenv("ENVIRONMENT"),
        "database_backend": request.app.state.database.backend_kind,
        "action_state_backend": request.app.state.action_state.backend_kind,
    }
