"""
Rendering of conversation prompts and orchestrator results for Telegram.

Orchestrator messages are plain text and are escaped here; scene prompts are
already HTML.
"""

import logging
from html import escape
from typing import List, Optional

from telegram import Message
from telegram.constants import ParseMode

from config import Config
from services.event_orchestrator import EventOperationResponse, OperationResult
from services.scene_engine import EventSummary, Prompt
from utils.datetime_helpers import format_event_datetime
from utils.decimal_precision import MonetaryDecimal
from utils.keyboards import prompt_markup, remove_keyboard

logger = logging.getLogger(__name__)

RESULT_ICONS = {
    OperationResult.SUCCESS: "✅",
    OperationResult.REJECTED: "🚫",
    OperationResult.GEOFENCE_ABSENT: "📍",
    OperationResult.LEDGER_FAILED: "❌",
    OperationResult.PENDING: "⏳",
    OperationResult.DUPLICATE_IN_PROGRESS: "⏳",
    OperationResult.RECONCILIATION_REQUIRED: "⚠️",
    OperationResult.ERROR: "⚠️",
}


def explorer_link(tx_hash: str) -> str:
    url = f"{Config.BLOCK_EXPLORER_URL}/tx/{tx_hash}"
    return f'<a href="{escape(url, quote=True)}">{escape(tx_hash[:10])}…</a>'


def render_operation_response(response: EventOperationResponse) -> str:
    lines = [f"{RESULT_ICONS.get(response.result, 'ℹ️')} {escape(response.message)}"]

    if response.result == OperationResult.SUCCESS and response.event_id is not None and not response.blob_url:
        lines.append(f"Event ID: <code>{response.event_id}</code>")
    if response.distance_km is not None and response.result == OperationResult.SUCCESS:
        lines.append(f"Checked in {response.distance_km * 1000:.0f} m from the venue.")
    if response.tx_hash:
        lines.append(f"Transaction: {explorer_link(response.tx_hash)}")
    if response.blob_url:
        lines.append(f'<a href="{escape(response.blob_url, quote=True)}">View memory poster</a>')
    if response.result == OperationResult.GEOFENCE_ABSENT:
        lines.append("Move closer and run /confirm_attendance again.")
    return "\n".join(lines)


def render_event_line(event: EventSummary) -> str:
    flags = []
    if event.finalized:
        flags.append("finalized")
    if event.has_anchor:
        flags.append("geofenced")
    suffix = f" ({', '.join(flags)})" if flags else ""
    return (
        f"• <b>{escape(event.name)}</b> · {format_event_datetime(event.starts_at)} · "
        f"{MonetaryDecimal.format_amount(event.stake_amount)}{suffix}"
    )


def render_event_list(title: str, events: List[EventSummary], empty_text: str) -> str:
    if not events:
        return f"{title}\n\n{empty_text}"
    return f"{title}\n\n" + "\n".join(render_event_line(event) for event in events)


async def send_prompts(message: Message, prompts: List[Prompt], finished: bool = False) -> Optional[Message]:
    """Send scene prompts; the last one of a finished flow clears any location keyboard"""
    sent = None
    for index, prompt in enumerate(prompts):
        markup = prompt_markup(prompt)
        if markup is None and finished and index == len(prompts) - 1:
            markup = remove_keyboard()
        sent = await message.reply_text(prompt.text, parse_mode=ParseMode.HTML, reply_markup=markup)
    return sent


async def send_operation_response(message: Message, response: EventOperationResponse) -> Message:
    return await message.reply_text(
        render_operation_response(response),
        parse_mode=ParseMode.HTML,
        reply_markup=remove_keyboard(),
    )
