from __future__ import annotations

import json
import logging
import re
from typing import Any, Literal, Optional, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from app.chat.tags import TagKind, list_kinds


logger = logging.getLogger("skincare-sanctuary.response-parser")


RoutinePeriod = Literal["morning", "evening"]


def _as_list(value: Any) -> Any:
    if isinstance(value, str):
        return [value] if value.strip() else []
    return value


class TagRecord(BaseModel):
    """Base for records carried in tags.

    Models often send `null` for fields they have nothing to say about and
    bare numbers for text fields; both are accepted. A null mandatory field
    still fails as missing.
    """

    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    @model_validator(mode="before")
    @classmethod
    def _drop_nulls(cls, data: Any) -> Any:
        if isinstance(data, dict):
            return {k: v for k, v in data.items() if v is not None}
        return data


class ProductRecommendation(TagRecord):
    name: str
    brand: str = ""
    category: str = ""
    description: str = ""
    key_ingredients: list[str] = Field(default_factory=list)
    benefits: list[str] = Field(default_factory=list)
    reason: str = ""

    @field_validator("key_ingredients", "benefits", mode="before")
    @classmethod
    def _coerce_lists(cls, value: Any) -> Any:
        return _as_list(value)


class RoutineUpdate(TagRecord):
    type: RoutinePeriod
    changes: list[str] = Field(default_factory=list)

    @field_validator("changes", mode="before")
    @classmethod
    def _coerce_lists(cls, value: Any) -> Any:
        return _as_list(value)


class TreatmentSuggestion(TagRecord):
    type: str
    reason: str = ""
    frequency: str = ""


class GoalSuggestion(TagRecord):
    title: str
    description: str = ""
    target_date: str = ""


class RoutineAction(TagRecord):
    type: RoutinePeriod
    routine_name: str = ""
    action: Literal["complete"] = "complete"


class CabinetAction(TagRecord):
    action: Literal["add", "remove", "update"]
    product_name: str
    product_brand: str = ""
    category: Optional[str] = None
    amount_remaining: Optional[float] = None
    reason: str = ""


class AppointmentAction(TagRecord):
    action: Literal["add"] = "add"
    treatment_type: str
    date: str
    time: str = ""
    provider: str = ""
    location: str = ""
    notes: Optional[str] = None


class CheckinAction(TagRecord):
    notes: Optional[str] = None
    lighting: Optional[str] = None
    photo_urls: list[str] = Field(default_factory=list)

    @field_validator("photo_urls", mode="before")
    @classmethod
    def _coerce_lists(cls, value: Any) -> Any:
        return _as_list(value)


class WeeklyRoutineStep(TagRecord):
    product_name: str
    product_brand: str = ""
    instructions: str = ""
    category: str = "skincare"


class WeeklyRoutinePeriod(TagRecord):
    steps: list[WeeklyRoutineStep] = Field(default_factory=list)


class WeeklyRoutineDay(TagRecord):
    morning: WeeklyRoutinePeriod = Field(default_factory=WeeklyRoutinePeriod)
    evening: WeeklyRoutinePeriod = Field(default_factory=WeeklyRoutinePeriod)


class WeeklyRoutine(TagRecord):
    model_config = ConfigDict(populate_by_name=True)

    title: str
    description: str = ""
    reasoning: str = ""
    weekly_schedule: dict[str, WeeklyRoutineDay] = Field(default_factory=dict, alias="weeklySchedule")


class ParsedResponse(BaseModel):
    products: list[ProductRecommendation] = Field(default_factory=list)
    routines: list[RoutineUpdate] = Field(default_factory=list)
    treatments: list[TreatmentSuggestion] = Field(default_factory=list)
    goals: list[GoalSuggestion] = Field(default_factory=list)
    routine_actions: list[RoutineAction] = Field(default_factory=list)
    cabinet_actions: list[CabinetAction] = Field(default_factory=list)
    appointment_actions: list[AppointmentAction] = Field(default_factory=list)


# Kinds aggregated into ParsedResponse, with their record model and field.
_RESPONSE_FIELDS: dict[TagKind, tuple[type[BaseModel], str]] = {
    TagKind.PRODUCT: (ProductRecommendation, "products"),
    TagKind.ROUTINE: (RoutineUpdate, "routines"),
    TagKind.TREATMENT: (TreatmentSuggestion, "treatments"),
    TagKind.GOAL: (GoalSuggestion, "goals"),
    TagKind.ROUTINE_ACTION: (RoutineAction, "routine_actions"),
    TagKind.CABINET_ACTION: (CabinetAction, "cabinet_actions"),
    TagKind.APPOINTMENT_ACTION: (AppointmentAction, "appointment_actions"),
}

RecordT = TypeVar("RecordT", bound=BaseModel)


def iter_spans(kind: TagKind, text: str) -> list[str]:
    """Inner text of every complete span of `kind`, left to right."""
    if not text:
        return []
    return [m.group(1) for m in kind.span_re.finditer(text)]


def _decode_span(kind: TagKind, raw: str, model: type[RecordT]) -> Optional[RecordT]:
    try:
        obj = json.loads(raw)
    except ValueError as exc:
        logger.warning("tag_payload_decode_failed kind=%s err=%s", kind.value, exc)
        return None
    if not isinstance(obj, dict):
        logger.warning("tag_payload_not_object kind=%s type=%s", kind.value, type(obj).__name__)
        return None
    try:
        return model.model_validate(obj)
    except ValidationError as exc:
        logger.warning(
            "tag_payload_invalid kind=%s errors=%s",
            kind.value,
            [".".join(str(p) for p in e["loc"]) for e in exc.errors()],
        )
        return None


def parse_kind(kind: TagKind, text: str, model: type[RecordT]) -> list[RecordT]:
    records: list[RecordT] = []
    for raw in iter_spans(kind, text):
        record = _decode_span(kind, raw, model)
        if record is not None:
            records.append(record)
    return records


def parse_structured_response(text: str) -> ParsedResponse:
    result = ParsedResponse()
    for kind in list_kinds():
        entry = _RESPONSE_FIELDS.get(kind)
        if entry is None:
            continue
        model, field = entry
        getattr(result, field).extend(parse_kind(kind, text, model))
    return result


def parse_checkin_actions(text: str) -> list[CheckinAction]:
    return parse_kind(TagKind.CHECKIN_ACTION, text, CheckinAction)


def parse_weekly_routines(text: str) -> list[WeeklyRoutine]:
    return parse_kind(TagKind.WEEKLY_ROUTINE, text, WeeklyRoutine)


def encode_tagged(kind: TagKind, record: Union[BaseModel, dict[str, Any]]) -> str:
    if isinstance(record, BaseModel):
        payload = record.model_dump(mode="json", by_alias=True)
    else:
        payload = record
    body = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
    return f"{kind.opening}{body}{kind.closing}"


def clean_message_content(text: str) -> str:
    if not text:
        return ""
    cleaned = text
    for kind in list_kinds():
        if kind is TagKind.PRODUCT:
            # Prose inside [PRODUCT] is kept; a JSON payload is dropped.
            cleaned = kind.span_re.sub(
                lambda m: "" if m.group(1).startswith("{") else m.group(1),
                cleaned,
            )
        else:
            cleaned = kind.span_re.sub("", cleaned)
    return cleaned.strip()


_BOLD_RE = re.compile(r"\*\*(.*?)\*\*")
_ITALIC_RE = re.compile(r"\*(.*?)\*")


def format_markdown(text: str) -> str:
    """Render `**bold**`, `*italic*` and newlines as HTML.

    The text is not escaped. It is model output, so callers must sanitize
    the result before inserting it into a page.
    """
    # Bold must run first: the italic pattern would otherwise eat the
    # inner asterisks of "**x**".
    out = _BOLD_RE.sub(r"<strong>\1</strong>", text or "")
    out = _ITALIC_RE.sub(r"<em>\1</em>", out)
    return out.replace("\n", "<br>")
