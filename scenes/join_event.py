"""
Join Event Scene Definition

Declarative flow for staking into an open event found by name.

Flow: Search by name → (Disambiguate) → Confirm stake → JoinEventIntent
"""

from html import escape
from enum import Enum

from services.event_intents import JoinEventIntent
from services.scene_engine import (
    FlowType,
    InboundInput,
    InputKind,
    Option,
    Prompt,
    SceneContext,
    SceneDefinition,
    SceneState,
    SceneStep,
    StepOutcome,
)
from scenes.selection import describe_choice, event_options, numbered_list, resolve_choice

CONFIRM_VALUE = "confirm"
CANCEL_VALUE = "cancel"

_AFFIRMATIVE = {"confirm", "yes", "y", "ok", "join"}
_NEGATIVE = {"cancel", "no", "n", "stop"}


class JoinEventStep(Enum):
    QUERY = "query"
    DISAMBIGUATE = "disambiguate"
    CONFIRM = "confirm"


# Step 1: Search
def _query_prompt(state: SceneState) -> Prompt:
    return Prompt("🔎 Which event do you want to join? Send its name.")


async def _accept_query(state: SceneState, inbound: InboundInput, context: SceneContext) -> StepOutcome:
    query = (inbound.text or "").strip()
    if not query:
        return StepOutcome.retry("❌ Please send the name of the event.")

    matches = await context.directory.search_open_events(query)
    if not matches:
        return StepOutcome.fail(f"❌ No open event matches \"{escape(query)}\". Use /events to see what's on.")

    candidates = [summary.to_choice() for summary in matches]
    if len(candidates) == 1:
        return StepOutcome.advance(JoinEventStep.CONFIRM, selected=candidates[0])
    return StepOutcome.advance(JoinEventStep.DISAMBIGUATE, candidates=candidates)


# Step 2: Disambiguate
def _disambiguate_prompt(state: SceneState) -> Prompt:
    candidates = state.data["candidates"]
    return Prompt(
        f"Several events match. Which one?\n\n{numbered_list(candidates)}\n\nTap a button or send its number.",
        options=event_options(candidates),
    )


async def _accept_disambiguation(state: SceneState, inbound: InboundInput, context: SceneContext) -> StepOutcome:
    matches = resolve_choice(inbound, state.data["candidates"])
    if len(matches) != 1:
        return StepOutcome.retry("❌ Please pick one of the listed events.")
    return StepOutcome.advance(JoinEventStep.CONFIRM, selected=matches[0])


# Step 3: Confirm
def _confirm_prompt(state: SceneState) -> Prompt:
    return Prompt(
        f"🤝 Join <b>{describe_choice(state.data['selected'])}</b>?\n\n"
        "Your stake is locked until the organiser finalizes the event.",
        options=[Option("✅ Confirm", CONFIRM_VALUE), Option("❌ Cancel", CANCEL_VALUE)],
    )


async def _accept_confirmation(state: SceneState, inbound: InboundInput, context: SceneContext) -> StepOutcome:
    answer = (inbound.text or "").strip().lower()
    if answer in _AFFIRMATIVE:
        selected = state.data["selected"]
        intent = JoinEventIntent(
            telegram_id=state.user_id,
            event_id=selected["event_id"],
            idempotency_token=state.idempotency_token,
        )
        return StepOutcome.complete(intent, f"⏳ Staking into <b>{escape(selected['name'])}</b>...")
    if answer in _NEGATIVE:
        return StepOutcome.cancel("Cancelled. Nothing was staked.")
    return StepOutcome.retry("Please confirm or cancel.")


join_event_scene = SceneDefinition(
    flow=FlowType.JOIN_EVENT,
    command="join_event",
    name="Join Event",
    description="Stake into an open event",
    step_type=JoinEventStep,
    initial_step=JoinEventStep.QUERY,
    steps=[
        SceneStep(JoinEventStep.QUERY, _query_prompt, _accept_query),
        SceneStep(
            JoinEventStep.DISAMBIGUATE,
            _disambiguate_prompt,
            _accept_disambiguation,
            accepts=(InputKind.TEXT, InputKind.SELECTION),
        ),
        SceneStep(
            JoinEventStep.CONFIRM,
            _confirm_prompt,
            _accept_confirmation,
            accepts=(InputKind.TEXT, InputKind.SELECTION),
        ),
    ],
)
