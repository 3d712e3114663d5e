"""Access to the long-lived services stored on the Telegram application"""

from telegram.ext import Application, ContextTypes

from services.event_orchestrator import EventOrchestrator
from services.scene_engine import SceneEngine

ORCHESTRATOR_KEY = "event_orchestrator"
SCENE_ENGINE_KEY = "scene_engine"


def install_services(application: Application, orchestrator: EventOrchestrator, scene_engine: SceneEngine) -> None:
    application.bot_data[ORCHESTRATOR_KEY] = orchestrator
    application.bot_data[SCENE_ENGINE_KEY] = scene_engine


def get_orchestrator(context: ContextTypes.DEFAULT_TYPE) -> EventOrchestrator:
    return context.bot_data[ORCHESTRATOR_KEY]


def get_scene_engine(context: ContextTypes.DEFAULT_TYPE) -> SceneEngine:
    return context.bot_data[SCENE_ENGINE_KEY]
