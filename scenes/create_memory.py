"""
Create Memory Scene Definition

Declarative flow for turning a photo into an event memory poster.

Flow: Select event → Send photo → CreateMemoryIntent
"""

from html import escape
from enum import Enum
from typing import Optional

from services.event_intents import CreateMemoryIntent
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


class CreateMemoryStep(Enum):
    SELECT_EVENT = "select_event"
    AWAIT_PHOTO = "await_photo"


async def _load_events(state: SceneState, context: SceneContext) -> Optional[StepOutcome]:
    events = await context.directory.list_memory_events()
    if not events:
        return StepOutcome.fail("There are no events to make a memory for yet.")
    state.data["candidates"] = [summary.to_choice() for summary in events]
    return None


def _select_prompt(state: SceneState) -> Prompt:
    candidates = state.data["candidates"]
    return Prompt(
        f"🖼 Which event is this memory for?\n\n{numbered_list(candidates)}",
        options=event_options(candidates),
    )


async def _accept_selection(state: SceneState, inbound: InboundInput, context: SceneContext) -> StepOutcome:
    matches = resolve_choice(inbound, state.data["candidates"])
    if len(matches) != 1:
        return StepOutcome.retry("❌ Please pick one of the listed events.")
    return StepOutcome.advance(CreateMemoryStep.AWAIT_PHOTO, selected=matches[0])


def _photo_prompt(state: SceneState) -> Prompt:
    return Prompt(f"📸 Send a photo from <b>{escape(state.data['selected']['name'])}</b>.")


async def _accept_photo(state: SceneState, inbound: InboundInput, context: SceneContext) -> StepOutcome:
    selected = state.data["selected"]
    intent = CreateMemoryIntent(
        telegram_id=state.user_id,
        event_id=selected["event_id"],
        photo_file_id=inbound.file_id,
        idempotency_token=state.idempotency_token,
    )
    return StepOutcome.complete(intent, "⏳ Creating your memory poster...")


create_memory_scene = SceneDefinition(
    flow=FlowType.CREATE_MEMORY,
    command="create_memory",
    name="Create Memory",
    description="Store an event photo as a memory poster",
    step_type=CreateMemoryStep,
    initial_step=CreateMemoryStep.SELECT_EVENT,
    steps=[
        SceneStep(
            CreateMemoryStep.SELECT_EVENT,
            _select_prompt,
            _accept_selection,
            accepts=(InputKind.TEXT, InputKind.SELECTION),
            enter=_load_events,
        ),
        SceneStep(
            CreateMemoryStep.AWAIT_PHOTO,
            _photo_prompt,
            _accept_photo,
            accepts=(InputKind.PHOTO,),
            wrong_input_message="📸 Please send a photo.",
        ),
    ],
)
