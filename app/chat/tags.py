from __future__ import annotations

from enum import Enum
import re


class TagKind(str, Enum):
    """Bracket-tag vocabularies the assistant is prompted to emit.

    Declaration order is significant: it is the scan order of every
    detector and parser, and the tie-break order of `current_kind`.
    """

    PRODUCT = "PRODUCT"
    ROUTINE = "ROUTINE"
    TREATMENT = "TREATMENT"
    GOAL = "GOAL"
    ROUTINE_ACTION = "ROUTINE_ACTION"
    CABINET_ACTION = "CABINET_ACTION"
    APPOINTMENT_ACTION = "APPOINTMENT_ACTION"
    CHECKIN_ACTION = "CHECKIN_ACTION"
    WEEKLY_ROUTINE = "WEEKLY_ROUTINE"

    @property
    def key(self) -> str:
        return self.value.lower()

    @property
    def opening(self) -> str:
        return f"[{self.value}]"

    @property
    def closing(self) -> str:
        return f"[/{self.value}]"

    @property
    def span_re(self) -> re.Pattern[str]:
        return _SPAN_RES[self]


# Weekly schedules are emitted as pretty-printed JSON; every other payload is
# a single line.
_MULTILINE_KINDS = {TagKind.WEEKLY_ROUTINE}


def _build_span_re(kind: TagKind) -> re.Pattern[str]:
    flags = re.DOTALL if kind in _MULTILINE_KINDS else 0
    return re.compile(rf"{re.escape(kind.opening)}(.*?){re.escape(kind.closing)}", flags)


_SPAN_RES: dict[TagKind, re.Pattern[str]] = {kind: _build_span_re(kind) for kind in TagKind}


def list_kinds() -> list[TagKind]:
    return list(TagKind)


def kind_from_key(value: str | None) -> TagKind | None:
    if not value:
        return None
    try:
        return TagKind(value.strip().upper())
    except ValueError:
        return None
