from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Optional, TypeVar

import httpx
from fastapi import APIRouter, Header, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ValidationError

from app.chat.component_detector import detect_streaming_state
from app.chat.response_parser import (
    AppointmentAction,
    CabinetAction,
    CheckinAction,
    GoalSuggestion,
    RoutineAction,
    RoutineUpdate,
    WeeklyRoutine,
    clean_message_content,
    format_markdown,
    parse_checkin_actions,
    parse_structured_response,
    parse_weekly_routines,
)
from app.services import skincare_actions as actions
from app.services.llm import stream_chat_completion
from app.services.user_context import fetch_user_data, generate_system_prompt
from app.settings import env_float, env_str
from app.store.action_state_store import CompletedActionStore, normalize_action_key
from app.store.database import Database


router = APIRouter()

logger = logging.getLogger("skincare-sanctuary.v1")

ModelT = TypeVar("ModelT", bound=BaseModel)


def _require_user_id(x_user_id: Optional[str]) -> str:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=400, detail="Missing X-User-ID")
    return x_user_id.strip()


def _database(request: Request) -> Database:
    return request.app.state.database


def _action_state(request: Request) -> CompletedActionStore:
    return request.app.state.action_state


def _validate(model: type[ModelT], payload: Any) -> ModelT:
    try:
        return model.model_validate(payload if isinstance(payload, dict) else {})
    except ValidationError as exc:
        fields = [".".join(str(p) for p in e["loc"]) for e in exc.errors()]
        raise HTTPException(status_code=400, detail={"error": "Invalid payload", "details": fields})


def _content(body: dict[str, Any]) -> str:
    content = body.get("content")
    if not isinstance(content, str):
        raise HTTPException(status_code=400, detail="Missing `content`")
    return content


def _action_key(body: dict[str, Any]) -> Optional[str]:
    # Checked before the action is written so a bad key never leaves a
    # half-applied request behind.
    key = body.get("action_key")
    if key is None or (isinstance(key, str) and not key.strip()):
        return None
    if not isinstance(key, str):
        raise HTTPException(status_code=400, detail="`action_key` must be a string")
    try:
        return normalize_action_key(key)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


async def _mark_completed(request: Request, user_id: str, key: Optional[str]) -> None:
    if key:
        await _action_state(request).add(user_id, key)


def _chat_messages(raw: Any) -> list[dict[str, Any]]:
    if not isinstance(raw, list):
        raise HTTPException(status_code=400, detail="Invalid messages format")
    messages: list[dict[str, Any]] = []
    for m in raw:
        if not isinstance(m, dict) or m.get("role") not in {"user", "assistant"}:
            raise HTTPException(status_code=400, detail="Invalid messages format")
        content = m.get("content")
        messages.append({"role": m["role"], "content": content if content is not None else ""})
    return messages


@router.post("/chat")
async def chat(
    request: Request,
    body: dict[str, Any],
    x_user_id: Optional[str] = Header(default=None, alias="X-User-ID"),
):
    messages = _chat_messages(body.get("messages"))
    user_id = _require_user_id(x_user_id)

    api_key = env_str("OPENAI_API_KEY")
    if not api_key:
        raise HTTPException(status_code=503, detail="LLM API key not configured")

    user_data = await fetch_user_data(_database(request), user_id)
    logger.info(
        "chat_context user_id=%s routines=%s inventory=%s messages=%s",
        user_id,
        len(user_data.get("routines") or []),
        len(user_data.get("inventory") or []),
        len(messages),
    )
    system_prompt = generate_system_prompt(user_data, body.get("context"))

    max_tokens = int(env_float("LLM_MAX_TOKENS", 8000))
    stream = stream_chat_completion(
        base_url=env_str("LLM_BASE_URL", "https://api.openai.com/v1"),
        api_key=api_key,
        model=env_str("LLM_MODEL", "gpt-4o"),
        system_prompt=system_prompt,
        messages=messages,
        timeout_s=env_float("LLM_TIMEOUT_S", 60.0),
        temperature=env_float("LLM_TEMPERATURE", 0.7),
        max_tokens=max_tokens,
    )

    # Pull the first chunk eagerly so upstream failures become a 502 instead
    # of a truncated 200.
    try:
        first = await stream.__anext__()
    except StopAsyncIteration:
        first = ""
    except httpx.HTTPError as exc:
        logger.warning("chat_upstream_failed user_id=%s err=%s", user_id, exc)
        raise HTTPException(status_code=502, detail={"upstream": "llm", "error": str(exc)})

    async def _relay() -> AsyncIterator[str]:
        if first:
            yield first
        try:
            async for chunk in stream:
                yield chunk
        except httpx.HTTPError as exc:
            logger.warning("chat_stream_interrupted user_id=%s err=%s", user_id, exc)

    return StreamingResponse(_relay(), media_type="text/plain; charset=utf-8")


@router.post("/chat/parse")
async def chat_parse(body: dict[str, Any]):
    content = _content(body)
    cleaned = clean_message_content(content)
    return {
        "parsed": parse_structured_response(content).model_dump(mode="json"),
        "checkin_actions": [a.model_dump(mode="json") for a in parse_checkin_actions(content)],
        "weekly_routines": [w.model_dump(mode="json", by_alias=True) for w in parse_weekly_routines(content)],
        "cleaned": cleaned,
        "html": format_markdown(cleaned),
    }


@router.post("/chat/detect")
async def chat_detect(body: dict[str, Any]):
    return detect_streaming_state(_content(body))


@router.post("/cabinet-action")
async def cabinet_action(
    request: Request,
    body: dict[str, Any],
    x_user_id: Optional[str] = Header(default=None, alias="X-User-ID"),
):
    user_id = _require_user_id(x_user_id)
    action_key = _action_key(body)
    req = _validate(actions.CabinetRouteRequest, body)
    product_id = await actions.apply_cabinet_route_action(_database(request), user_id, req)
    await _mark_completed(request, user_id, action_key)
    return {"success": True, "product_id": product_id}


@router.post("/actions/cabinet")
async def cabinet_card_action(
    request: Request,
    body: dict[str, Any],
    x_user_id: Optional[str] = Header(default=None, alias="X-User-ID"),
):
    user_id = _require_user_id(x_user_id)
    action_key = _action_key(body)
    action = _validate(CabinetAction, body)
    message = await actions.handle_cabinet_action(_database(request), user_id, action)
    await _mark_completed(request, user_id, action_key)
    return {"success": True, "message": message}


@router.post("/actions/routine-update")
async def routine_update_action(
    request: Request,
    body: dict[str, Any],
    x_user_id: Optional[str] = Header(default=None, alias="X-User-ID"),
):
    user_id = _require_user_id(x_user_id)
    action_key = _action_key(body)
    routine = _validate(RoutineUpdate, body)
    routine_id = await actions.accept_routine_update(_database(request), user_id, routine)
    await _mark_completed(request, user_id, action_key)
    return {"success": True, "routine_id": routine_id}


@router.post("/actions/routine-complete")
async def routine_complete_action(
    request: Request,
    body: dict[str, Any],
    x_user_id: Optional[str] = Header(default=None, alias="X-User-ID"),
):
    user_id = _require_user_id(x_user_id)
    action_key = _action_key(body)
    action = _validate(RoutineAction, body)
    message = await actions.complete_routine(_database(request), user_id, action)
    await _mark_completed(request, user_id, action_key)
    return {"success": True, "message": message}


@router.post("/actions/appointment")
async def appointment_action(
    request: Request,
    body: dict[str, Any],
    x_user_id: Optional[str] = Header(default=None, alias="X-User-ID"),
):
    user_id = _require_user_id(x_user_id)
    action_key = _action_key(body)
    action = _validate(AppointmentAction, body)
    appointment = await actions.add_appointment(_database(request), user_id, action)
    await _mark_completed(request, user_id, action_key)
    return {"success": True, "appointment": appointment}


@router.post("/actions/checkin")
async def checkin_action(
    request: Request,
    body: dict[str, Any],
    x_user_id: Optional[str] = Header(default=None, alias="X-User-ID"),
):
    user_id = _require_user_id(x_user_id)
    action_key = _action_key(body)
    action = _validate(CheckinAction, body)
    photos = await actions.record_checkin(_database(request), user_id, action)
    await _mark_completed(request, user_id, action_key)
    message = "Perfect! I've added your photos to today's check-in." if photos else "Today's check-in is saved."
    return {"success": True, "photos": photos, "message": message}


@router.post("/actions/goal")
async def goal_action(
    request: Request,
    body: dict[str, Any],
    x_user_id: Optional[str] = Header(default=None, alias="X-User-ID"),
):
    user_id = _require_user_id(x_user_id)
    action_key = _action_key(body)
    goal = _validate(GoalSuggestion, body)
    created = await actions.create_goal(_database(request), user_id, goal)
    await _mark_completed(request, user_id, action_key)
    return {"success": True, "goal": created}


@router.get("/actions/completed")
async def completed_actions(
    request: Request,
    x_user_id: Optional[str] = Header(default=None, alias="X-User-ID"),
):
    user_id = _require_user_id(x_user_id)
    return {"completed_actions": await _action_state(request).all(user_id)}


@router.post("/actions/completed")
async def add_completed_action(
    request: Request,
    body: dict[str, Any],
    x_user_id: Optional[str] = Header(default=None, alias="X-User-ID"),
):
    user_id = _require_user_id(x_user_id)
    key = body.get("key")
    if not isinstance(key, str) or not key.strip():
        raise HTTPException(status_code=400, detail="Missing `key`")
    store = _action_state(request)
    try:
        added = await store.add(user_id, key)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {"added": added, "completed_actions": await store.all(user_id)}


@router.post("/routines/approve")
async def approve_routine(
    request: Request,
    body: dict[str, Any],
    x_user_id: Optional[str] = Header(default=None, alias="X-User-ID"),
):
    user_id = _require_user_id(x_user_id)
    action_key = _action_key(body)
    suggestion_id = body.get("suggestionId") or body.get("suggestion_id")
    if not isinstance(suggestion_id, str) or not suggestion_id.strip():
        raise HTTPException(status_code=400, detail="Missing `suggestionId`")
    routine = _validate(WeeklyRoutine, body.get("routineData") or body.get("routine_data"))
    logger.info("approve_routine user_id=%s suggestion_id=%s", user_id, suggestion_id)
    routine_ids = await actions.approve_weekly_routine(_database(request), user_id, suggestion_id.strip(), routine)
    await _mark_completed(request, user_id, action_key)
    return {"success": True, "routine_ids": routine_ids}


@router.post("/routines/deny")
async def deny_routine(
    request: Request,
    body: dict[str, Any],
    x_user_id: Optional[str] = Header(default=None, alias="X-User-ID"),
):
    user_id = _require_user_id(x_user_id)
    action_key = _action_key(body)
    suggestion_id = body.get("suggestionId") or body.get("suggestion_id")
    if not isinstance(suggestion_id, str) or not suggestion_id.strip():
        raise HTTPException(status_code=400, detail="Missing `suggestionId`")
    await actions.deny_weekly_routine(_database(request), user_id, suggestion_id.strip())
    await _mark_completed(request, user_id, action_key)
    return {"success": True}


@router.put("/routines/{routine_id}/steps")
async def replace_routine_steps(
    routine_id: str,
    request: Request,
    body: dict[str, Any],
    x_user_id: Optional[str] = Header(default=None, alias="X-User-ID"),
):
    user_id = _require_user_id(x_user_id)
    action_key = _action_key(body)
    raw_steps = body.get("steps") or []
    if not isinstance(raw_steps, list):
        raise HTTPException(status_code=400, detail="`steps` must be a list")
    steps = [_validate(actions.RoutineStepInput, s) for s in raw_steps]
    count = await actions.replace_routine_steps(_database(request), user_id, routine_id, steps)
    await _mark_completed(request, user_id, action_key)
    return {"success": True, "steps": count}
