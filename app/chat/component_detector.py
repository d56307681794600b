"""
Classification of partial assistant text while it is still streaming.

Every call re-scans the cumulative text; nothing is kept between chunks.
"""

from __future__ import annotations

from typing import Optional, Union

from app.chat.tags import TagKind, kind_from_key, list_kinds


_LOADING_MESSAGES: dict[str, str] = {
    "product": "Preparing product recommendations...",
    "routine": "Building your routine...",
    "treatment": "Analyzing treatment options...",
    "goal": "Setting up your goals...",
    "routine_action": "Preparing routine actions...",
    "cabinet_action": "Managing your cabinet...",
    "appointment_action": "Scheduling appointments...",
    "checkin_action": "Preparing check-in actions...",
    "weekly_routine": "Creating your weekly routine...",
}

DEFAULT_LOADING_MESSAGE = "Preparing component..."


def has_any_tag(text: str) -> bool:
    if not text:
        return False
    return any(kind.span_re.search(text) for kind in list_kinds())


def has_incomplete_tag(text: str) -> bool:
    # Literal open/close counts per kind. Kinds never nest and their markers
    # are disjoint, so a per-kind balance check is enough.
    if not text:
        return False
    for kind in list_kinds():
        opened = text.count(kind.opening)
        if opened and opened > text.count(kind.closing):
            return True
    return False


def is_streaming(text: str) -> bool:
    return has_incomplete_tag(text) or has_any_tag(text)


def current_kind(text: str) -> Optional[TagKind]:
    """First kind in registry order whose opening marker appears anywhere.

    This is not the kind that appears earliest in the text; see
    `text_before_first_tag` for an offset-based scan.
    """
    if not text:
        return None
    for kind in list_kinds():
        if kind.opening in text:
            return kind
    return None


def text_before_first_tag(text: str) -> str:
    if not text:
        return ""
    first = len(text)
    for kind in list_kinds():
        idx = text.find(kind.opening)
        if idx != -1:
            first = min(first, idx)
    return text[:first].strip()


def loading_message(kind: Union[TagKind, str, None]) -> str:
    if isinstance(kind, TagKind):
        resolved: Optional[TagKind] = kind
    else:
        resolved = kind_from_key(kind)
    if resolved is None:
        return DEFAULT_LOADING_MESSAGE
    return _LOADING_MESSAGES.get(resolved.key, DEFAULT_LOADING_MESSAGE)


def detect_streaming_state(text: str) -> dict[str, object]:
    kind = current_kind(text)
    return {
        "has_tags": has_any_tag(text),
        "incomplete": has_incomplete_tag(text),
        "streaming": is_streaming(text),
        "component_type": kind.key if kind else None,
        "text_before": text_before_first_tag(text),
        "loading_message": loading_message(kind),
    }
