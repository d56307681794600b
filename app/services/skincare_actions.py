from __future__ import annotations

from datetime import date, datetime, timezone
import logging
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict

from app.chat.response_parser import (
    AppointmentAction,
    CabinetAction,
    CheckinAction,
    GoalSuggestion,
    ProductRecommendation,
    RoutineAction,
    RoutineUpdate,
    WeeklyRoutine,
)
from app.store.database import Database, Row, select_one


logger = logging.getLogger("skincare-sanctuary.actions")


DEFAULT_CATEGORY = "skincare"
DEFAULT_AMOUNT_REMAINING = 100.0

# Order the weekly schedule is materialized in. Stored day_of_week uses
# Sunday=0 .. Saturday=6.
WEEK_DAYS: list[tuple[str, int]] = [
    ("saturday", 6),
    ("sunday", 0),
    ("monday", 1),
    ("tuesday", 2),
    ("wednesday", 3),
    ("thursday", 4),
    ("friday", 5),
]


class ActionError(Exception):
    def __init__(self, status_code: int, message: str, *, details: Any = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.details = details


class CabinetRouteRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    action: str
    product_name: str
    product_brand: str = ""
    reason: str = ""
    category: Optional[str] = None


class RoutineStepInput(BaseModel):
    model_config = ConfigDict(extra="ignore")

    product_id: str
    instructions: Optional[str] = None
    amount: Optional[str] = None


def _today(today: Optional[date]) -> str:
    return (today or date.today()).isoformat()


def _title(word: str) -> str:
    return word[:1].upper() + word[1:]


async def _find_product(db: Database, name: str, brand: str) -> Optional[Row]:
    return await select_one(db, "products", filters={"name": name, "brand": brand})


async def apply_cabinet_route_action(db: Database, user_id: str, req: CabinetRouteRequest) -> str:
    """Add or update a product in the user's cabinet. Returns the product id."""
    if req.action not in {"add", "update"}:
        raise ActionError(400, "Invalid action")

    category = req.category or DEFAULT_CATEGORY
    description = f"AI-recommended product: {req.reason}"

    existing = await _find_product(db, req.product_name, req.product_brand)
    product_id = existing.get("id") if existing else None

    if not product_id and req.action == "update":
        similar = await select_one(db, "products", filters={"brand": req.product_brand, "category": category})
        if similar:
            product_id = similar["id"]
            await db.update(
                "products",
                {"name": req.product_name, "description": description},
                filters={"id": product_id},
            )
            logger.info("cabinet_product_renamed product_id=%s", product_id)

    if not product_id:
        created = await db.insert(
            "products",
            [
                {
                    "name": req.product_name,
                    "brand": req.product_brand,
                    "category": category,
                    "description": description,
                    "subcategory": "ai-recommended",
                }
            ],
        )
        if not created:
            raise ActionError(500, "Failed to create product")
        product_id = created[0]["id"]
        logger.info("cabinet_product_created product_id=%s", product_id)

    await db.upsert(
        "user_inventory",
        [
            {
                "user_id": user_id,
                "product_id": product_id,
                "notes": f"AI recommendation: {req.reason}",
                "amount_remaining": DEFAULT_AMOUNT_REMAINING,
            }
        ],
        on_conflict=["user_id", "product_id"],
    )
    logger.info("cabinet_action_applied user_id=%s action=%s product_id=%s", user_id, req.action, product_id)
    return str(product_id)


def _product_notes(product: ProductRecommendation) -> str:
    return "\n".join(
        [
            f"Recommended Product: {product.name} by {product.brand}",
            f"Category: {product.category}",
            f"Description: {product.description}",
            f"Key Ingredients: {', '.join(product.key_ingredients)}",
            f"Benefits: {', '.join(product.benefits)}",
        ]
    )


async def add_product_to_inventory(
    db: Database,
    user_id: str,
    product: ProductRecommendation,
    *,
    amount_remaining: float = DEFAULT_AMOUNT_REMAINING,
    today: Optional[date] = None,
) -> Literal["added", "updated"]:
    existing = await _find_product(db, product.name, product.brand)
    product_id = existing.get("id") if existing else None

    if not product_id and product.category:
        similar = await select_one(db, "products", filters={"category": product.category})
        if similar:
            product_id = similar["id"]

    if not product_id:
        created = await db.insert(
            "products",
            [
                {
                    "name": product.name,
                    "brand": product.brand,
                    "category": product.category or DEFAULT_CATEGORY,
                    "description": product.description,
                    "key_ingredients": ", ".join(product.key_ingredients),
                    "benefits": ", ".join(product.benefits),
                }
            ],
        )
        if not created:
            raise ActionError(500, "Failed to create new product")
        product_id = created[0]["id"]

    notes = _product_notes(product)
    inventory = await select_one(db, "user_inventory", filters={"user_id": user_id, "product_id": product_id})
    if inventory:
        await db.update(
            "user_inventory",
            {"notes": notes, "amount_remaining": amount_remaining},
            filters={"id": inventory["id"]},
        )
        return "updated"

    await db.insert(
        "user_inventory",
        [
            {
                "user_id": user_id,
                "product_id": product_id,
                "amount_remaining": amount_remaining,
                "purchase_date": _today(today),
                "notes": notes,
            }
        ],
    )
    return "added"


async def list_inventory(db: Database, user_id: str) -> list[Row]:
    """Inventory rows for the user with the product embedded under `products`."""
    items = await db.select("user_inventory", filters={"user_id": user_id})
    for item in items:
        product = await select_one(db, "products", filters={"id": item.get("product_id")})
        item["products"] = product
    return items


async def handle_cabinet_action(
    db: Database,
    user_id: str,
    action: CabinetAction,
    *,
    today: Optional[date] = None,
) -> str:
    if action.action == "remove":
        name = action.product_name.lower()
        brand = action.product_brand.lower()
        for item in await list_inventory(db, user_id):
            product = item.get("products") or {}
            if str(product.get("name") or "").lower() == name and str(product.get("brand") or "").lower() == brand:
                await db.delete("user_inventory", filters={"id": item["id"]})
                return f"Removed {action.product_name} by {action.product_brand} from your cabinet."
        raise ActionError(404, "Product not found in cabinet")

    recommendation = ProductRecommendation(
        name=action.product_name,
        brand=action.product_brand,
        category=action.category or DEFAULT_CATEGORY,
        description=f"AI-recommended product: {action.reason}",
        reason=action.reason,
    )
    amount = action.amount_remaining or DEFAULT_AMOUNT_REMAINING
    outcome = await add_product_to_inventory(db, user_id, recommendation, amount_remaining=amount, today=today)
    verb = "Updated" if outcome == "updated" else "Added"
    return f"{verb} {action.product_name} by {action.product_brand} in your collection."


async def accept_routine_update(db: Database, user_id: str, routine: RoutineUpdate) -> str:
    existing = await db.select("routines", filters={"user_id": user_id, "type": routine.type, "is_active": True})
    if existing:
        routine_id, routine_name = existing[0]["id"], existing[0].get("name") or ""
    else:
        created = await db.insert(
            "routines",
            [{"user_id": user_id, "name": f"{_title(routine.type)} Routine", "type": routine.type, "is_active": True}],
        )
        if not created:
            raise ActionError(500, "Failed to create routine")
        routine_id, routine_name = created[0]["id"], created[0]["name"]

    # Free-text changes have no product; steps point at any catalog product.
    placeholder = await db.select("products", limit=1)
    if not placeholder:
        raise ActionError(409, "Unable to find products in database")
    placeholder_id = placeholder[0]["id"]

    last = await db.select("routine_steps", filters={"routine_id": routine_id}, order="step_order", descending=True, limit=1)
    next_order = int(last[0]["step_order"]) + 1 if last else 1

    if routine.changes:
        await db.insert(
            "routine_steps",
            [
                {
                    "routine_id": routine_id,
                    "step_order": next_order + i,
                    "instructions": change,
                    "product_id": placeholder_id,
                    "amount": "As needed",
                }
                for i, change in enumerate(routine.changes)
            ],
        )

    updated_name = routine_name if "(Updated)" in routine_name else f"{routine_name} (Updated)"
    await db.update("routines", {"name": updated_name}, filters={"id": routine_id})
    logger.info("routine_update_accepted user_id=%s routine_id=%s steps=%s", user_id, routine_id, len(routine.changes))
    return str(routine_id)


async def complete_routine(
    db: Database,
    user_id: str,
    action: RoutineAction,
    *,
    today: Optional[date] = None,
) -> str:
    routines = await db.select("routines", filters={"user_id": user_id, "type": action.type, "is_active": True})
    if not routines:
        raise ActionError(404, f"No active {action.type} routine found")
    routine = routines[0]
    name = str(routine.get("name") or "")
    is_evening = "evening" in str(routine.get("type") or "").lower() or "evening" in name.lower()

    await db.insert(
        "daily_checkins",
        [
            {
                "user_id": user_id,
                "date": _today(today),
                "morning_routine_completed": None if is_evening else True,
                "evening_routine_completed": True if is_evening else None,
                "notes": f"Completed {name} routine",
            }
        ],
    )
    return f"{name} routine marked as complete for today!"


async def add_appointment(db: Database, user_id: str, action: AppointmentAction) -> Row:
    created = await db.insert(
        "appointments",
        [
            {
                "user_id": user_id,
                "treatment_type": action.treatment_type,
                "date": action.date,
                "time": action.time,
                "provider": action.provider,
                "location": action.location,
                "notes": action.notes or "",
                "status": "scheduled",
            }
        ],
    )
    if not created:
        raise ActionError(500, "Failed to add appointment")
    return created[0]


async def record_checkin(
    db: Database,
    user_id: str,
    action: CheckinAction,
    *,
    today: Optional[date] = None,
) -> int:
    """Upsert today's check-in and attach photos. Returns the photo count."""
    day = _today(today)
    await db.upsert(
        "daily_checkins",
        [
            {
                "user_id": user_id,
                "date": day,
                "morning_routine_completed": False,
                "evening_routine_completed": False,
                "skin_condition_rating": None,
                "mood_rating": None,
                "sleep_hours": None,
                "water_intake": None,
                "stress_level": None,
                "notes": action.notes,
            }
        ],
        on_conflict=["user_id", "date"],
    )
    if action.photo_urls:
        await db.insert(
            "progress_photos",
            [
                {
                    "user_id": user_id,
                    "photo_url": url,
                    "photo_type": "daily",
                    "notes": action.notes,
                    "lighting_conditions": action.lighting or "natural",
                    "skin_condition_rating": None,
                }
                for url in action.photo_urls
            ],
        )
    return len(action.photo_urls)


async def create_goal(db: Database, user_id: str, goal: GoalSuggestion) -> Row:
    created = await db.insert(
        "goals",
        [
            {
                "user_id": user_id,
                "title": goal.title,
                "description": goal.description,
                "target_date": goal.target_date,
                "status": "active",
            }
        ],
    )
    if not created:
        raise ActionError(500, "Failed to create goal")
    return created[0]


async def _find_or_create_product(db: Database, name: str, brand: str, category: str) -> str:
    existing = await _find_product(db, name, brand)
    if existing:
        return str(existing["id"])
    created = await db.insert(
        "products",
        [{"name": name, "brand": brand, "category": category, "description": f"{brand} {name}"}],
    )
    if not created:
        raise ActionError(500, f"Failed to create product: {name}")
    return str(created[0]["id"])


async def approve_weekly_routine(
    db: Database,
    user_id: str,
    suggestion_id: str,
    routine: WeeklyRoutine,
    *,
    approved_at: Optional[str] = None,
) -> list[str]:
    """Replace the user's active routines with the approved weekly schedule."""
    await db.upsert(
        "routine_suggestions",
        [
            {
                "id": suggestion_id,
                "user_id": user_id,
                "title": routine.title,
                "description": routine.description,
                "weekly_schedule": routine.model_dump(mode="json", by_alias=True).get("weeklySchedule"),
                "status": "approved",
                "approved_at": approved_at or datetime.now(timezone.utc).isoformat(),
                "suggestion_type": "weekly",
            }
        ],
        on_conflict=["id"],
    )

    await db.update("routines", {"is_active": False}, filters={"user_id": user_id})

    created_ids: list[str] = []
    for day_name, day_of_week in WEEK_DAYS:
        day = routine.weekly_schedule.get(day_name)
        if day is None:
            continue
        for period in ("morning", "evening"):
            steps = getattr(day, period).steps
            if not steps:
                continue
            created = await db.insert(
                "routines",
                [
                    {
                        "user_id": user_id,
                        "name": f"{_title(period)} Routine - {_title(day_name)}",
                        "type": period,
                        "day_of_week": day_of_week,
                        "is_active": True,
                    }
                ],
            )
            if not created:
                raise ActionError(500, "Failed to create routines")
            routine_id = created[0]["id"]
            created_ids.append(str(routine_id))

            rows: list[Row] = []
            for i, step in enumerate(steps):
                product_id = await _find_or_create_product(db, step.product_name, step.product_brand, step.category)
                rows.append(
                    {
                        "routine_id": routine_id,
                        "product_id": product_id,
                        "step_order": i + 1,
                        "instructions": step.instructions or "",
                        "amount": "As needed",
                    }
                )
            await db.insert("routine_steps", rows)

    logger.info("weekly_routine_approved user_id=%s suggestion_id=%s routines=%s", user_id, suggestion_id, len(created_ids))
    return created_ids


async def deny_weekly_routine(db: Database, user_id: str, suggestion_id: str) -> None:
    await db.upsert(
        "routine_suggestions",
        [{"id": suggestion_id, "user_id": user_id, "status": "denied"}],
        on_conflict=["id"],
    )
    logger.info("weekly_routine_denied user_id=%s suggestion_id=%s", user_id, suggestion_id)


async def replace_routine_steps(db: Database, user_id: str, routine_id: str, steps: list[RoutineStepInput]) -> int:
    owned = await select_one(db, "routines", filters={"id": routine_id, "user_id": user_id})
    if not owned:
        raise ActionError(404, "Routine not found")

    await db.delete("routine_steps", filters={"routine_id": routine_id})
    if steps:
        await db.insert(
            "routine_steps",
            [
                {
                    "routine_id": routine_id,
                    "product_id": step.product_id,
                    "step_order": i + 1,
                    "instructions": step.instructions or None,
                    "amount": step.amount or None,
                }
                for i, step in enumerate(steps)
            ],
        )
    return len(steps)
