from __future__ import annotations

from datetime import date, timedelta
import json
from typing import Any, Optional

from app.services.skincare_actions import list_inventory
from app.store.database import Database, Row, select_one


DAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]


def week_start(today: Optional[date] = None) -> date:
    """Most recent Sunday."""
    d = today or date.today()
    return d - timedelta(days=(d.weekday() + 1) % 7)


async def _routines_with_steps(db: Database, user_id: str) -> list[Row]:
    routines = await db.select(
        "routines",
        filters={"user_id": user_id, "is_active": True},
        order="updated_at",
        descending=True,
    )
    for routine in routines:
        steps = await db.select("routine_steps", filters={"routine_id": routine["id"]}, order="step_order")
        for step in steps:
            product = await select_one(db, "products", filters={"id": step.get("product_id")})
            step["products"] = (
                {k: product.get(k) for k in ("name", "brand", "category")} if product else None
            )
        routine["routine_steps"] = steps
    return routines


def group_routines_by_day(routines: list[Row]) -> dict[str, list[Row]]:
    by_day: dict[str, list[Row]] = {}
    for routine in routines:
        dow = routine.get("day_of_week")
        if not isinstance(dow, int) or not 0 <= dow <= 6:
            continue
        by_day.setdefault(DAY_NAMES[dow], []).append(routine)
    return by_day


async def fetch_user_data(db: Database, user_id: str, *, today: Optional[date] = None) -> dict[str, Any]:
    routines = await _routines_with_steps(db, user_id)
    checkins = await db.select("daily_checkins", filters={"user_id": user_id}, order="date", descending=True)
    since = week_start(today).isoformat()

    return {
        "profile": await select_one(db, "profiles", filters={"id": user_id}),
        "inventory": await list_inventory(db, user_id),
        "routines": routines,
        "routines_by_day": group_routines_by_day(routines),
        "weekly_checkins": [c for c in checkins if str(c.get("date") or "") >= since],
        "recent_checkins": checkins[:7],
        "recent_photos": await db.select(
            "progress_photos", filters={"user_id": user_id}, order="created_at", descending=True, limit=3
        ),
        "goals": await db.select(
            "goals", filters={"user_id": user_id, "status": "active"}, order="created_at", descending=True
        ),
        "pending_suggestions": await db.select(
            "routine_suggestions",
            filters={"user_id": user_id, "status": "pending_approval"},
            order="created_at",
            descending=True,
        ),
    }


_TAG_CONTRACT = """\
When you recommend or change something, emit ONE tag per item, JSON on a single line:
[PRODUCT]{"name","brand","category","description","key_ingredients":[],"benefits":[],"reason"}[/PRODUCT]
[ROUTINE]{"type":"morning|evening","changes":[]}[/ROUTINE]
[TREATMENT]{"type","reason","frequency"}[/TREATMENT]
[GOAL]{"title","description","target_date"}[/GOAL]
[ROUTINE_ACTION]{"type":"morning|evening","routine_name","action":"complete"}[/ROUTINE_ACTION]
[CABINET_ACTION]{"action":"add|remove","product_name","product_brand","category","reason"}[/CABINET_ACTION]
[APPOINTMENT_ACTION]{"action":"add","treatment_type","date","time","provider","location","notes"}[/APPOINTMENT_ACTION]
[CHECKIN_ACTION]{"notes","photo_urls":[],"lighting"}[/CHECKIN_ACTION]
[WEEKLY_ROUTINE]{"title","description","reasoning","weeklySchedule":{"monday":{"morning":{"steps":[]},"evening":{"steps":[]}}}}[/WEEKLY_ROUTINE]
Write prose before the tags. Never nest tags."""


def _section(title: str, value: Any) -> str:
    return f"{title}:\n{json.dumps(value, ensure_ascii=False, default=str)}"


def generate_system_prompt(user_data: dict[str, Any], context: Any = None) -> str:
    parts = [
        "You are a friendly skincare advisor. Give practical, safe advice grounded in the user's data.",
        _TAG_CONTRACT,
        _section("PROFILE", user_data.get("profile")),
        _section("CABINET", [
            {
                "name": (i.get("products") or {}).get("name"),
                "brand": (i.get("products") or {}).get("brand"),
                "amount_remaining": i.get("amount_remaining"),
            }
            for i in user_data.get("inventory") or []
        ]),
        _section("ROUTINES_BY_DAY", {
            day: [
                {
                    "name": r.get("name"),
                    "type": r.get("type"),
                    "steps": [s.get("instructions") for s in r.get("routine_steps") or []],
                }
                for r in routines
            ]
            for day, routines in (user_data.get("routines_by_day") or {}).items()
        }),
        _section("RECENT_CHECKINS", user_data.get("recent_checkins") or []),
        _section("ACTIVE_GOALS", [g.get("title") for g in user_data.get("goals") or []]),
    ]
    if user_data.get("pending_suggestions"):
        parts.append("The user has a weekly routine suggestion awaiting approval; do not propose another.")
    if context:
        parts.append(_section("PAGE_CONTEXT", context))
    return "\n\n".join(parts)
