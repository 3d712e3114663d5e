"""
Create Event Scene Definition

Declarative flow for creating a staked meetup.

Flow: Name → Date/Time → Stake Amount → Location → CreateEventIntent
"""

from html import escape
from datetime import datetime
from decimal import Decimal
from enum import Enum

from services.event_intents import CreateEventIntent
from services.geofence import Coordinates, parse_coordinate_pair
from services.scene_engine import (
    FlowType,
    InboundInput,
    InputKind,
    Prompt,
    SceneContext,
    SceneDefinition,
    SceneState,
    SceneStep,
    StepOutcome,
)
from utils.datetime_helpers import format_event_datetime, parse_event_datetime
from utils.decimal_precision import MonetaryDecimal
from config import Config

MAX_EVENT_NAME_LENGTH = 100
MAX_LOCATION_TEXT_LENGTH = 255


class CreateEventStep(Enum):
    NAME = "name"
    STARTS_AT = "starts_at"
    STAKE = "stake"
    LOCATION = "location"


# Step 1: Event name
def _name_prompt(state: SceneState) -> Prompt:
    return Prompt("📝 <b>New event</b>\n\nWhat is the event called?")


async def _accept_name(state: SceneState, inbound: InboundInput, context: SceneContext) -> StepOutcome:
    name = (inbound.text or "").strip()
    if not name:
        return StepOutcome.retry("❌ The event name cannot be empty. What is the event called?")
    if len(name) > MAX_EVENT_NAME_LENGTH:
        return StepOutcome.retry(
            f"❌ Please keep the name under {MAX_EVENT_NAME_LENGTH} characters. What is the event called?"
        )
    return StepOutcome.advance(CreateEventStep.STARTS_AT, name=name)


# Step 2: Date and time
def _starts_at_prompt(state: SceneState) -> Prompt:
    return Prompt(
        f"📅 When does <b>{escape(state.data['name'])}</b> start? (UTC)\n\n"
        "Use <code>YYYY-MM-DD HH:MM</code>, for example <code>2026-12-31 18:30</code>."
    )


async def _accept_starts_at(state: SceneState, inbound: InboundInput, context: SceneContext) -> StepOutcome:
    starts_at = parse_event_datetime(inbound.text or "")
    if starts_at is None:
        return StepOutcome.retry(
            "❌ I couldn't read that date. Use <code>YYYY-MM-DD HH:MM</code>, for example "
            "<code>2026-12-31 18:30</code>."
        )
    if starts_at <= context.clock():
        return StepOutcome.retry("❌ The event must start in the future. When does it start?")
    return StepOutcome.advance(CreateEventStep.STAKE, starts_at=starts_at.isoformat())


# Step 3: Stake
def _stake_prompt(state: SceneState) -> Prompt:
    return Prompt(
        f"💰 How much does each participant stake, in {Config.CURRENCY_SYMBOL}?\n\n"
        "Participants who attend share the stakes of those who don't."
    )


async def _accept_stake(state: SceneState, inbound: InboundInput, context: SceneContext) -> StepOutcome:
    amount = MonetaryDecimal.parse_stake_amount(inbound.text or "")
    if amount is None:
        return StepOutcome.retry(
            f"❌ Please enter a positive amount, for example <code>0.01</code> {Config.CURRENCY_SYMBOL}."
        )
    return StepOutcome.advance(CreateEventStep.LOCATION, stake_amount=str(amount))


# Step 4: Location
def _location_prompt(state: SceneState) -> Prompt:
    return Prompt(
        "📍 Where is it? Share a location pin, send <code>lat, lng</code>, or describe the place.\n\n"
        "With a pin or coordinates, attendance is checked against this spot.",
        request_location=True,
    )


async def _accept_location(state: SceneState, inbound: InboundInput, context: SceneContext) -> StepOutcome:
    latitude = longitude = None
    location_text = None

    if inbound.kind == InputKind.LOCATION:
        coordinates = Coordinates(inbound.latitude, inbound.longitude)
        if not coordinates.is_valid():
            return StepOutcome.retry("❌ That location doesn't look right. Please share it again.")
        latitude, longitude = coordinates.latitude, coordinates.longitude
    else:
        raw = (inbound.text or "").strip()
        pair = parse_coordinate_pair(raw)
        if pair:
            latitude, longitude = pair
        elif not raw:
            return StepOutcome.retry("❌ Please share a location or describe where the event is.")
        elif len(raw) > MAX_LOCATION_TEXT_LENGTH:
            return StepOutcome.retry(
                f"❌ Please keep the description under {MAX_LOCATION_TEXT_LENGTH} characters."
            )
        else:
            location_text = raw

    starts_at = datetime.fromisoformat(state.data["starts_at"])
    intent = CreateEventIntent(
        telegram_id=state.user_id,
        name=state.data["name"],
        starts_at=starts_at,
        stake_amount=Decimal(state.data["stake_amount"]),
        idempotency_token=state.idempotency_token,
        latitude=latitude,
        longitude=longitude,
        location_text=location_text,
    )
    return StepOutcome.complete(
        intent,
        f"⏳ Creating <b>{escape(intent.name)}</b> for {format_event_datetime(starts_at)}...",
    )


create_event_scene = SceneDefinition(
    flow=FlowType.CREATE_EVENT,
    command="create_event",
    name="Create Event",
    description="Create a staked meetup",
    step_type=CreateEventStep,
    initial_step=CreateEventStep.NAME,
    steps=[
        SceneStep(CreateEventStep.NAME, _name_prompt, _accept_name),
        SceneStep(CreateEventStep.STARTS_AT, _starts_at_prompt, _accept_starts_at),
        SceneStep(CreateEventStep.STAKE, _stake_prompt, _accept_stake),
        SceneStep(
            CreateEventStep.LOCATION,
            _location_prompt,
            _accept_location,
            accepts=(InputKind.TEXT, InputKind.LOCATION),
            wrong_input_message="📍 Please share a location pin or type where the event is.",
        ),
    ],
)
