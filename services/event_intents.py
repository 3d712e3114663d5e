"""
Completed conversation intents handed from the scene engine to the orchestrator.

Each flow produces exactly one intent type. The idempotency token is generated
when the flow starts and travels with the intent to the ledger so a retried
submission is recognised as the same operation.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional, Union


def new_idempotency_token() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class CreateEventIntent:
    telegram_id: int
    name: str
    starts_at: datetime
    stake_amount: Decimal
    idempotency_token: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    location_text: Optional[str] = None


@dataclass(frozen=True)
class JoinEventIntent:
    telegram_id: int
    event_id: int
    idempotency_token: str


@dataclass(frozen=True)
class ConfirmAttendanceIntent:
    telegram_id: int
    event_id: int
    latitude: float
    longitude: float
    idempotency_token: str


@dataclass(frozen=True)
class CreateMemoryIntent:
    telegram_id: int
    event_id: int
    photo_file_id: str
    idempotency_token: str


EventIntent = Union[CreateEventIntent, JoinEventIntent, ConfirmAttendanceIntent, CreateMemoryIntent]
