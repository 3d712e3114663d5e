"""
Event selection helpers shared by the flows that pick an event from a list.

Candidates are kept in the scene data as plain dicts (see EventSummary.to_choice)
so a session never holds live ORM objects.
"""

from html import escape
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from services.scene_engine import InboundInput, InputKind, Option
from utils.datetime_helpers import format_event_datetime
from utils.decimal_precision import MonetaryDecimal

EVENT_OPTION_PREFIX = "event:"
MAX_LISTED_CANDIDATES = 10


def event_option_value(event_id: int) -> str:
    return f"{EVENT_OPTION_PREFIX}{event_id}"


def describe_choice(choice: Dict[str, Any], as_html: bool = True) -> str:
    starts_at = datetime.fromisoformat(choice["starts_at"])
    stake = MonetaryDecimal.format_amount(Decimal(choice["stake_amount"]))
    name = escape(choice["name"]) if as_html else choice["name"]
    return f"{name} · {format_event_datetime(starts_at)} · {stake}"


def event_options(candidates: List[Dict[str, Any]]) -> List[Option]:
    return [
        Option(label=describe_choice(choice, as_html=False), value=event_option_value(choice["event_id"]))
        for choice in candidates[:MAX_LISTED_CANDIDATES]
    ]


def numbered_list(candidates: List[Dict[str, Any]]) -> str:
    return "\n".join(
        f"{index}. {describe_choice(choice)}"
        for index, choice in enumerate(candidates[:MAX_LISTED_CANDIDATES], start=1)
    )


def resolve_choice(inbound: InboundInput, candidates: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Narrow candidates down using a button press, a list number or a name.

    Returns every candidate that still matches; the caller decides what zero
    or several matches mean.
    """
    raw = (inbound.text or "").strip()
    if not raw:
        return []

    if inbound.kind == InputKind.SELECTION or raw.startswith(EVENT_OPTION_PREFIX):
        event_id = _parse_event_id(raw)
        return [choice for choice in candidates if choice["event_id"] == event_id]

    if raw.isdigit():
        index = int(raw)
        listed = candidates[:MAX_LISTED_CANDIDATES]
        if 1 <= index <= len(listed):
            return [listed[index - 1]]
        return []

    lowered = raw.lower()
    exact = [choice for choice in candidates if choice["name"].lower() == lowered]
    if exact:
        return exact
    return [choice for choice in candidates if lowered in choice["name"].lower()]


def _parse_event_id(raw: str) -> Optional[int]:
    value = raw[len(EVENT_OPTION_PREFIX):] if raw.startswith(EVENT_OPTION_PREFIX) else raw
    try:
        return int(value)
    except ValueError:
        return None
