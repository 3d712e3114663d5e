"""
Confirm Attendance Scene Definition

Declarative flow for checking in at an event the user has staked into.

Flow: Select event → Share location → ConfirmAttendanceIntent
"""

from html import escape
from enum import Enum
from typing import Optional

from services.event_intents import ConfirmAttendanceIntent
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
from scenes.selection import event_options, numbered_list, resolve_choice


class ConfirmAttendanceStep(Enum):
    SELECT_EVENT = "select_event"
    AWAIT_LOCATION = "await_location"


# Step 1: Select event
async def _load_attendable(state: SceneState, context: SceneContext) -> Optional[StepOutcome]:
    events = await context.directory.list_attendable_events(state.user_id)
    if not events:
        return StepOutcome.fail("You have no events waiting for a check-in. Join one with /join_event.")
    state.data["candidates"] = [summary.to_choice() for summary in events]
    return None


def _select_prompt(state: SceneState) -> Prompt:
    candidates = state.data["candidates"]
    return Prompt(
        f"📍 Which event are you at?\n\n{numbered_list(candidates)}",
        options=event_options(candidates),
    )


async def _accept_selection(state: SceneState, inbound: InboundInput, context: SceneContext) -> StepOutcome:
    matches = resolve_choice(inbound, state.data["candidates"])
    if len(matches) != 1:
        return StepOutcome.retry("❌ Please pick one of the listed events.")
    return StepOutcome.advance(ConfirmAttendanceStep.AWAIT_LOCATION, selected=matches[0])


# Step 2: Location
def _location_prompt(state: SceneState) -> Prompt:
    return Prompt(
        f"📡 Share your current location to check in at <b>{escape(state.data['selected']['name'])}</b>.",
        request_location=True,
    )


async def _accept_location(state: SceneState, inbound: InboundInput, context: SceneContext) -> StepOutcome:
    selected = state.data["selected"]
    intent = ConfirmAttendanceIntent(
        telegram_id=state.user_id,
        event_id=selected["event_id"],
        latitude=inbound.latitude,
        longitude=inbound.longitude,
        idempotency_token=state.idempotency_token,
    )
    return StepOutcome.complete(intent, "⏳ Checking your location...")


confirm_attendance_scene = SceneDefinition(
    flow=FlowType.CONFIRM_ATTENDANCE,
    command="confirm_attendance",
    name="Confirm Attendance",
    description="Check in at an event you joined",
    step_type=ConfirmAttendanceStep,
    initial_step=ConfirmAttendanceStep.SELECT_EVENT,
    steps=[
        SceneStep(
            ConfirmAttendanceStep.SELECT_EVENT,
            _select_prompt,
            _accept_selection,
            accepts=(InputKind.TEXT, InputKind.SELECTION),
            enter=_load_attendable,
        ),
        SceneStep(
            ConfirmAttendanceStep.AWAIT_LOCATION,
            _location_prompt,
            _accept_location,
            accepts=(InputKind.LOCATION,),
            wrong_input_message="📡 Please share your live location using the 📎 menu, not text.",
        ),
    ],
)
