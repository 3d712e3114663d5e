"""Keyboard builders for conversation prompts and event actions"""

from typing import List

from telegram import (
    InlineKeyboardButton,
    InlineKeyboardMarkup,
    KeyboardButton,
    ReplyKeyboardMarkup,
    ReplyKeyboardRemove,
)

from services.scene_engine import EventSummary, Option, Prompt
from utils.datetime_helpers import format_event_datetime


class CallbackData:
    """Callback data prefixes (Telegram limits callback data to 64 bytes)"""
    SCENE_OPTION = "scene:"
    FINALIZE_EVENT = "finalize:"
    SHOW_MEMORIES = "memories:"


def options_keyboard(options: List[Option]) -> InlineKeyboardMarkup:
    """One button per row so long event labels stay readable"""
    return InlineKeyboardMarkup(
        [[InlineKeyboardButton(option.label[:64], callback_data=f"{CallbackData.SCENE_OPTION}{option.value}")]
         for option in options]
    )


def location_request_keyboard() -> ReplyKeyboardMarkup:
    return ReplyKeyboardMarkup(
        [[KeyboardButton("📍 Share location", request_location=True)]],
        resize_keyboard=True,
        one_time_keyboard=True,
    )


def remove_keyboard() -> ReplyKeyboardRemove:
    return ReplyKeyboardRemove()


def prompt_markup(prompt: Prompt):
    """Reply markup for a scene prompt, or None"""
    if prompt.options:
        return options_keyboard(prompt.options)
    if prompt.request_location:
        return location_request_keyboard()
    return None


def event_action_keyboard(events: List[EventSummary], prefix: str) -> InlineKeyboardMarkup:
    keyboard = []
    for event in events:
        label = f"{event.name} · {format_event_datetime(event.starts_at)}"
        keyboard.append([InlineKeyboardButton(label[:64], callback_data=f"{prefix}{event.event_id}")])
    return InlineKeyboardMarkup(keyboard)
