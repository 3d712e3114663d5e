"""
Telegram Scene Engine - Conversation State Machine

Collects a structured intent from a sequence of free-form inputs, one user at
a time, across as many inbound turns as the flow needs.

Key Features:
- Declarative scene definitions (see scenes/)
- Exactly one active session per user; a new flow replaces the old one
- Steps are typed per flow (flow + step enum), so a session can never sit in
  a step that belongs to a different flow
- Per-user turn lock; different users advance concurrently
- Any uncaught error clears the user's session

Architecture:
    SceneDefinition -> SceneState (SceneStateManager) -> SceneEngine -> EventIntent
"""

import asyncio
import logging
import weakref
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Tuple, Type

from config import Config
from services.event_intents import EventIntent, new_idempotency_token
from utils.datetime_helpers import get_naive_utc_now

logger = logging.getLogger(__name__)

COMMAND_MARKER = "/"

GENERIC_ERROR_TEXT = "⚠️ Something went wrong, so this conversation was reset. Please start again."

# ===== SCENE ENGINE ENUMS AND TYPES =====


class FlowType(Enum):
    """Conversation flows, each bound to its start command"""
    CREATE_EVENT = "create_event"
    JOIN_EVENT = "join_event"
    CONFIRM_ATTENDANCE = "confirm_attendance"
    CREATE_MEMORY = "create_memory"


class SceneStatus(Enum):
    """Scene execution status"""
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class InputKind(Enum):
    """Types of inbound user input the engine understands"""
    TEXT = "text"
    LOCATION = "location"
    PHOTO = "photo"
    SELECTION = "selection"


class SceneIntegrityError(Exception):
    """A session reached a step its flow does not define"""
    pass


@dataclass(frozen=True)
class InboundInput:
    """One inbound user turn, already stripped of transport details"""
    kind: InputKind
    text: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    file_id: Optional[str] = None

    @classmethod
    def from_text(cls, text: str) -> "InboundInput":
        return cls(InputKind.TEXT, text=text)

    @classmethod
    def from_location(cls, latitude: float, longitude: float) -> "InboundInput":
        return cls(InputKind.LOCATION, latitude=latitude, longitude=longitude)

    @classmethod
    def from_photo(cls, file_id: str) -> "InboundInput":
        return cls(InputKind.PHOTO, file_id=file_id)

    @classmethod
    def from_selection(cls, value: str) -> "InboundInput":
        return cls(InputKind.SELECTION, text=value)


@dataclass(frozen=True)
class Option:
    label: str
    value: str


@dataclass
class Prompt:
    """Something to render back to the user"""
    text: str
    options: List[Option] = field(default_factory=list)
    request_location: bool = False


@dataclass(frozen=True)
class EventSummary:
    """Read-only view of an event, as the conversation needs it"""
    event_id: int
    name: str
    starts_at: datetime
    stake_amount: Decimal
    has_anchor: bool = False
    finalized: bool = False

    def to_choice(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "name": self.name,
            "starts_at": self.starts_at.isoformat(),
            "stake_amount": str(self.stake_amount),
            "has_anchor": self.has_anchor,
        }


class EventDirectory(Protocol):
    """Queries the conversation may run; implemented by the orchestrator"""

    async def search_open_events(self, query: str) -> List[EventSummary]: ...

    async def list_attendable_events(self, telegram_id: int) -> List[EventSummary]: ...

    async def list_memory_events(self) -> List[EventSummary]: ...


@dataclass
class SceneContext:
    """Collaborators a step may consult while validating input"""
    directory: EventDirectory
    clock: Callable[[], datetime] = get_naive_utc_now


@dataclass
class SceneState:
    """Current state of a scene instance"""
    flow: FlowType
    user_id: int
    step: Enum
    status: SceneStatus
    idempotency_token: str
    data: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=get_naive_utc_now)
    updated_at: datetime = field(default_factory=get_naive_utc_now)
    timeout_at: Optional[datetime] = None


class StepAction(Enum):
    ADVANCE = "advance"
    RETRY = "retry"
    FAIL = "fail"
    CANCEL = "cancel"
    COMPLETE = "complete"


@dataclass
class StepOutcome:
    """Result of feeding one input (or entering a step)"""
    action: StepAction
    next_step: Optional[Enum] = None
    data: Dict[str, Any] = field(default_factory=dict)
    message: Optional[str] = None
    intent: Optional[EventIntent] = None

    @classmethod
    def advance(cls, next_step: Enum, **data: Any) -> "StepOutcome":
        return cls(StepAction.ADVANCE, next_step=next_step, data=data)

    @classmethod
    def retry(cls, message: str) -> "StepOutcome":
        return cls(StepAction.RETRY, message=message)

    @classmethod
    def fail(cls, message: str) -> "StepOutcome":
        return cls(StepAction.FAIL, message=message)

    @classmethod
    def cancel(cls, message: str) -> "StepOutcome":
        return cls(StepAction.CANCEL, message=message)

    @classmethod
    def complete(cls, intent: EventIntent, message: Optional[str] = None) -> "StepOutcome":
        return cls(StepAction.COMPLETE, intent=intent, message=message)


StepAccept = Callable[[SceneState, InboundInput, SceneContext], Awaitable[StepOutcome]]
StepEnter = Callable[[SceneState, SceneContext], Awaitable[Optional[StepOutcome]]]


@dataclass
class SceneStep:
    """Definition of a single step in a scene"""
    step_id: Enum
    prompt: Callable[[SceneState], Prompt]
    accept: StepAccept
    accepts: Tuple[InputKind, ...] = (InputKind.TEXT,)
    wrong_input_message: str = "Please answer the question above."
    enter: Optional[StepEnter] = None


@dataclass
class SceneDefinition:
    """Complete definition of a scene flow"""
    flow: FlowType
    command: str
    name: str
    description: str
    step_type: Type[Enum]
    steps: List[SceneStep]
    initial_step: Enum

    def get_step(self, step_id: Enum) -> Optional[SceneStep]:
        if not isinstance(step_id, self.step_type):
            return None
        for step in self.steps:
            if step.step_id == step_id:
                return step
        return None


@dataclass
class SceneResponse:
    """What the engine did with one turn"""
    handled: bool
    prompts: List[Prompt] = field(default_factory=list)
    intent: Optional[EventIntent] = None
    flow: Optional[FlowType] = None
    finished: bool = False


# ===== SCENE STATE MANAGER =====

class SceneStateManager:
    """Session store: one active scene per user identity"""

    def __init__(self, timeout_minutes: Optional[int] = None):
        self._active_scenes: Dict[int, SceneState] = {}
        self.timeout_minutes = timeout_minutes if timeout_minutes and timeout_minutes > 0 else None

    async def create_scene_instance(
        self,
        flow: FlowType,
        user_id: int,
        initial_step: Enum,
    ) -> SceneState:
        """Create a new scene instance for a user, replacing any existing one"""
        await self.delete_scene(user_id, SceneStatus.CANCELLED, "Replaced by a new flow")

        now = get_naive_utc_now()
        scene_state = SceneState(
            flow=flow,
            user_id=user_id,
            step=initial_step,
            status=SceneStatus.ACTIVE,
            idempotency_token=new_idempotency_token(),
            created_at=now,
            updated_at=now,
            timeout_at=now + timedelta(minutes=self.timeout_minutes) if self.timeout_minutes else None,
        )
        self._active_scenes[user_id] = scene_state

        logger.info(f"Created scene instance: {flow.value} for user {user_id}")
        return scene_state

    async def get_active_scene(self, user_id: int) -> Optional[SceneState]:
        """Get the active scene for a user"""
        scene = self._active_scenes.get(user_id)
        if scene and scene.timeout_at and get_naive_utc_now() > scene.timeout_at:
            logger.warning(f"Scene {scene.flow.value} timed out for user {user_id}")
            await self.delete_scene(user_id, SceneStatus.FAILED, "Scene timed out")
            return None
        return scene

    async def update_scene_step(self, user_id: int, new_step: Enum, data: Optional[Dict[str, Any]] = None) -> bool:
        """Move an active scene to another step of the same flow"""
        scene = self._active_scenes.get(user_id)
        if not scene:
            return False

        scene.step = new_step
        scene.updated_at = get_naive_utc_now()
        if data:
            scene.data.update(data)

        logger.info(f"Updated scene {scene.flow.value} to step {new_step.value} for user {user_id}")
        return True

    async def delete_scene(self, user_id: int, status: SceneStatus, reason: Optional[str] = None) -> bool:
        """Drop the user's active scene"""
        scene = self._active_scenes.pop(user_id, None)
        if not scene:
            return False

        scene.status = status
        logger.info(
            f"Scene {scene.flow.value} ended with status {status.value} for user {user_id}"
            + (f" ({reason})" if reason else "")
        )
        return True

    def has_active_scene(self, user_id: int) -> bool:
        return user_id in self._active_scenes


# ===== SCENE ENGINE CORE =====

class SceneEngine:
    """Core Scene Engine - drives every conversation flow"""

    def __init__(
        self,
        directory: EventDirectory,
        scenes: Optional[List[SceneDefinition]] = None,
        session_timeout_minutes: Optional[int] = None,
        clock: Callable[[], datetime] = get_naive_utc_now,
    ):
        if session_timeout_minutes is None:
            session_timeout_minutes = Config.SESSION_TIMEOUT_MINUTES
        self.state_manager = SceneStateManager(session_timeout_minutes)
        self.context = SceneContext(directory=directory, clock=clock)
        self.scene_registry: Dict[FlowType, SceneDefinition] = {}
        # Locks live only while a turn holds or awaits them
        self._user_locks: "weakref.WeakValueDictionary[int, asyncio.Lock]" = weakref.WeakValueDictionary()

        if scenes is None:
            scenes = self._load_scene_definitions()
        for scene in scenes:
            self.register_scene(scene)

    @staticmethod
    def _load_scene_definitions() -> List[SceneDefinition]:
        from scenes import ALL_SCENES
        return list(ALL_SCENES)

    def register_scene(self, scene: SceneDefinition) -> None:
        self.scene_registry[scene.flow] = scene
        logger.info(f"Registered scene: {scene.flow.value} (/{scene.command})")

    def user_turn(self, user_id: int) -> asyncio.Lock:
        """Lock serialising one user's turns; hold it for the whole turn"""
        lock = self._user_locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._user_locks[user_id] = lock
        return lock

    @staticmethod
    def is_command(text: Optional[str]) -> bool:
        return bool(text) and text.lstrip().startswith(COMMAND_MARKER)

    def flow_for_command(self, command: str) -> Optional[FlowType]:
        name = command.lstrip(COMMAND_MARKER).split('@', 1)[0].split(maxsplit=1)[0].lower() if command.strip() else ""
        for scene in self.scene_registry.values():
            if scene.command == name:
                return scene.flow
        return None

    async def start_flow(self, user_id: int, flow: FlowType) -> SceneResponse:
        """Start (or restart) a flow, replacing any active session"""
        scene = self.scene_registry.get(flow)
        if not scene:
            logger.error(f"Scene not found: {flow}")
            return SceneResponse(handled=False)

        try:
            state = await self.state_manager.create_scene_instance(flow, user_id, scene.initial_step)
            prompts, finished = await self._enter_step(state, scene)
            return SceneResponse(handled=True, prompts=prompts, flow=flow, finished=finished)
        except Exception as e:
            logger.error(f"Failed to start scene {flow.value} for user {user_id}: {e}", exc_info=True)
            await self.state_manager.delete_scene(user_id, SceneStatus.FAILED, f"Start error: {e}")
            return SceneResponse(handled=True, prompts=[Prompt(GENERIC_ERROR_TEXT)], flow=flow, finished=True)

    async def handle_input(self, user_id: int, inbound: InboundInput) -> SceneResponse:
        """Feed one non-command input to the user's active session"""
        if inbound.kind == InputKind.TEXT and self.is_command(inbound.text):
            return SceneResponse(handled=False)

        state = await self.state_manager.get_active_scene(user_id)
        if not state:
            return SceneResponse(handled=False)

        try:
            scene = self.scene_registry.get(state.flow)
            step = scene.get_step(state.step) if scene else None
            if step is None:
                raise SceneIntegrityError(f"{state.flow.value} has no step {state.step!r}")

            if inbound.kind not in step.accepts:
                outcome = StepOutcome.retry(step.wrong_input_message)
            else:
                outcome = await step.accept(state, inbound, self.context)

            return await self._apply_outcome(state, scene, step, outcome)

        except Exception as e:
            logger.error(f"Error processing {state.flow.value} input for user {user_id}: {e}", exc_info=True)
            await self.state_manager.delete_scene(user_id, SceneStatus.FAILED, f"Step processing error: {e}")
            return SceneResponse(
                handled=True, prompts=[Prompt(GENERIC_ERROR_TEXT)], flow=state.flow, finished=True
            )

    async def cancel(self, user_id: int) -> bool:
        """Cancel the active scene for a user"""
        return await self.state_manager.delete_scene(user_id, SceneStatus.CANCELLED, "User cancelled")

    async def get_scene_status(self, user_id: int) -> Optional[Dict[str, Any]]:
        """Get the status of the active scene for a user"""
        scene_state = await self.state_manager.get_active_scene(user_id)
        if not scene_state:
            return None

        return {
            "flow": scene_state.flow.value,
            "current_step": scene_state.step.value,
            "status": scene_state.status.value,
            "data": dict(scene_state.data),
            "created_at": scene_state.created_at.isoformat(),
            "updated_at": scene_state.updated_at.isoformat(),
        }

    async def _apply_outcome(
        self,
        state: SceneState,
        scene: SceneDefinition,
        step: SceneStep,
        outcome: StepOutcome,
    ) -> SceneResponse:
        user_id = state.user_id

        if outcome.action == StepAction.RETRY:
            current = step.prompt(state)
            return SceneResponse(
                handled=True,
                prompts=[Prompt(outcome.message or current.text, current.options, current.request_location)],
                flow=state.flow,
            )

        if outcome.action == StepAction.ADVANCE:
            await self._move_to(state, scene, outcome)
            prompts, finished = await self._enter_step(state, scene)
            return SceneResponse(handled=True, prompts=prompts, flow=state.flow, finished=finished)

        if outcome.action == StepAction.COMPLETE:
            # The session never outlives its intent, whatever the orchestrator later does
            await self.state_manager.delete_scene(user_id, SceneStatus.COMPLETED)
            prompts = [Prompt(outcome.message)] if outcome.message else []
            return SceneResponse(
                handled=True, prompts=prompts, intent=outcome.intent, flow=state.flow, finished=True
            )

        status = SceneStatus.CANCELLED if outcome.action == StepAction.CANCEL else SceneStatus.FAILED
        await self.state_manager.delete_scene(user_id, status, outcome.message)
        prompts = [Prompt(outcome.message)] if outcome.message else []
        return SceneResponse(handled=True, prompts=prompts, flow=state.flow, finished=True)

    async def _move_to(self, state: SceneState, scene: SceneDefinition, outcome: StepOutcome) -> None:
        if scene.get_step(outcome.next_step) is None:
            raise SceneIntegrityError(f"{scene.flow.value} cannot move to {outcome.next_step!r}")
        await self.state_manager.update_scene_step(state.user_id, outcome.next_step, outcome.data)

    async def _enter_step(self, state: SceneState, scene: SceneDefinition) -> Tuple[List[Prompt], bool]:
        """Run enter hooks (which may skip or end the flow) and render the step"""
        while True:
            step = scene.get_step(state.step)
            if step is None:
                raise SceneIntegrityError(f"{scene.flow.value} has no step {state.step!r}")

            outcome = await step.enter(state, self.context) if step.enter else None
            if outcome is None:
                return [step.prompt(state)], False

            if outcome.action == StepAction.ADVANCE:
                await self._move_to(state, scene, outcome)
                continue
            if outcome.action == StepAction.RETRY:
                state.data.update(outcome.data)
                return [step.prompt(state)], False

            response = await self._apply_outcome(state, scene, step, outcome)
            return response.prompts, True
