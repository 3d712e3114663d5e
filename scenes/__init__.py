"""
Scene Definitions - Declarative Telegram Flows

Each scene file defines:
- Its typed step enum
- Prompts and input validation per step
- The intent produced when the flow completes
"""

from .create_event import create_event_scene
from .join_event import join_event_scene
from .confirm_attendance import confirm_attendance_scene
from .create_memory import create_memory_scene

ALL_SCENES = [
    create_event_scene,
    join_event_scene,
    confirm_attendance_scene,
    create_memory_scene,
]

__all__ = [
    'ALL_SCENES',
    'create_event_scene',
    'join_event_scene',
    'confirm_attendance_scene',
    'create_memory_scene',
]
