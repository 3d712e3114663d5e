"""
Event Record Store

Mirror of ledger state in the relational database. Every method runs in its own
short transaction so no database connection is held across a ledger call.

Writes are idempotent where the reconciliation sweep may replay them, and the
unique constraints (claims, events, participants) are the final guard against
concurrent duplicates.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from models import (
    Event,
    LedgerOperation,
    LedgerOperationStatus,
    LedgerOperationType,
    Memory,
    Participant,
    User,
)
from utils.datetime_helpers import get_naive_utc_now

logger = logging.getLogger(__name__)


@dataclass
class ClaimResult:
    """Outcome of trying to claim an operation key"""
    claimed: bool
    operation: Optional[LedgerOperation] = None


class EventRecordStore:
    """Record-store collaborator used by the orchestrator and the reconciliation sweep"""

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        if session_factory is None:
            from database import AsyncSessionLocal
            session_factory = AsyncSessionLocal
        self.session_factory = session_factory

    # ===== USERS =====

    async def get_user(self, telegram_id: int) -> Optional[User]:
        async with self.session_factory() as session:
            result = await session.execute(select(User).where(User.telegram_id == telegram_id))
            return result.scalar_one_or_none()

    async def get_user_by_address(self, wallet_address: str) -> Optional[User]:
        async with self.session_factory() as session:
            result = await session.execute(select(User).where(User.wallet_address == wallet_address))
            return result.scalar_one_or_none()

    async def insert_user(
        self,
        telegram_id: int,
        wallet_address: str,
        signer_ref: str,
        display_name: Optional[str] = None,
    ) -> User:
        """Insert a user; a concurrent registration for the same id returns the winner's row"""
        now = get_naive_utc_now()
        user = User(
            telegram_id=telegram_id,
            display_name=display_name,
            wallet_address=wallet_address,
            signer_ref=signer_ref,
            created_at=now,
            last_active=now,
        )
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    session.add(user)
            return user
        except IntegrityError:
            existing = await self.get_user(telegram_id)
            if existing is None:
                raise
            logger.warning(f"⚠️ USER_EXISTS: Concurrent registration for {telegram_id}, keeping existing wallet")
            return existing

    async def touch_user(self, telegram_id: int, display_name: Optional[str] = None) -> None:
        values: Dict[str, Any] = {"last_active": get_naive_utc_now()}
        if display_name:
            values["display_name"] = display_name
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(update(User).where(User.telegram_id == telegram_id).values(**values))

    # ===== EVENTS =====

    async def get_event(self, event_id: int) -> Optional[Event]:
        async with self.session_factory() as session:
            return await session.get(Event, event_id)

    async def insert_event(
        self,
        event_id: int,
        name: str,
        starts_at: datetime,
        stake_amount: Decimal,
        creator_address: str,
        creator_telegram_id: Optional[int] = None,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        location_text: Optional[str] = None,
        create_tx_hash: Optional[str] = None,
    ) -> Event:
        """Mirror a ledger-created event; replaying the same id returns the stored row"""
        existing = await self.get_event(event_id)
        if existing is not None:
            return existing

        event = Event(
            id=event_id,
            name=name,
            starts_at=starts_at,
            stake_amount=stake_amount,
            creator_address=creator_address,
            creator_telegram_id=creator_telegram_id,
            latitude=latitude,
            longitude=longitude,
            location_text=location_text,
            finalized=False,
            create_tx_hash=create_tx_hash,
            created_at=get_naive_utc_now(),
        )
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    session.add(event)
            return event
        except IntegrityError:
            existing = await self.get_event(event_id)
            if existing is None:
                raise
            return existing

    async def set_event_finalized(self, event_id: int, tx_hash: Optional[str] = None) -> bool:
        """Flip finalized once; returns False when it was already finalized"""
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(Event)
                    .where(and_(Event.id == event_id, Event.finalized.is_(False)))
                    .values(finalized=True, finalize_tx_hash=tx_hash, finalized_at=get_naive_utc_now())
                )
                return result.rowcount == 1

    async def search_open_events(self, query: str, limit: int = 20) -> List[Event]:
        """Open events whose name contains query, exact (case-insensitive) matches first"""
        needle = query.strip().lower()
        if not needle:
            return []
        async with self.session_factory() as session:
            result = await session.execute(
                select(Event)
                .where(and_(Event.finalized.is_(False), func.lower(Event.name).contains(needle, autoescape=True)))
                .order_by(Event.starts_at, Event.id)
                .limit(limit)
            )
            events = list(result.scalars().all())

        exact = [event for event in events if event.name.lower() == needle]
        return exact or events

    async def list_events(
        self,
        creator_address: Optional[str] = None,
        finalized: Optional[bool] = None,
        starts_after: Optional[datetime] = None,
        newest_first: bool = False,
        limit: int = 50,
    ) -> List[Event]:
        """Filtered, date-ordered event listing"""
        conditions = []
        if creator_address is not None:
            conditions.append(Event.creator_address == creator_address)
        if finalized is not None:
            conditions.append(Event.finalized.is_(finalized))
        if starts_after is not None:
            conditions.append(Event.starts_at >= starts_after)

        ordering = (Event.starts_at.desc(), Event.id.desc()) if newest_first else (Event.starts_at, Event.id)
        stmt = select(Event)
        if conditions:
            stmt = stmt.where(and_(*conditions))
        async with self.session_factory() as session:
            result = await session.execute(stmt.order_by(*ordering).limit(limit))
            return list(result.scalars().all())

    # ===== PARTICIPANTS =====

    async def get_participant(self, event_id: int, user_address: str) -> Optional[Participant]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Participant).where(
                    and_(Participant.event_id == event_id, Participant.user_address == user_address)
                )
            )
            return result.scalar_one_or_none()

    async def insert_participant(
        self,
        event_id: int,
        user_address: str,
        telegram_id: Optional[int] = None,
        stake_tx_hash: Optional[str] = None,
    ) -> Participant:
        """Record a confirmed stake; the (event, address) constraint rejects duplicates"""
        existing = await self.get_participant(event_id, user_address)
        if existing is not None:
            return existing

        participant = Participant(
            event_id=event_id,
            user_address=user_address,
            telegram_id=telegram_id,
            has_staked=True,
            attended=False,
            stake_tx_hash=stake_tx_hash,
            joined_at=get_naive_utc_now(),
        )
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    session.add(participant)
            return participant
        except IntegrityError:
            existing = await self.get_participant(event_id, user_address)
            if existing is None:
                raise
            logger.warning(f"⚠️ PARTICIPANT_EXISTS: {user_address} already recorded for event {event_id}")
            return existing

    async def set_attended(
        self,
        event_id: int,
        user_address: str,
        tx_hash: Optional[str] = None,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
    ) -> bool:
        """Flip attended once; returns False when it was already set"""
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(Participant)
                    .where(
                        and_(
                            Participant.event_id == event_id,
                            Participant.user_address == user_address,
                            Participant.attended.is_(False),
                        )
                    )
                    .values(
                        attended=True,
                        attendance_tx_hash=tx_hash,
                        checkin_latitude=latitude,
                        checkin_longitude=longitude,
                        checked_in_at=get_naive_utc_now(),
                    )
                )
                return result.rowcount == 1

    async def count_participants(self, event_id: int) -> int:
        async with self.session_factory() as session:
            result = await session.execute(
                select(func.count(Participant.id)).where(Participant.event_id == event_id)
            )
            return int(result.scalar_one())

    async def list_participants(self, event_id: int) -> List[Participant]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Participant).where(Participant.event_id == event_id).order_by(Participant.joined_at)
            )
            return list(result.scalars().all())

    async def list_joined_events(self, user_address: str, attended: Optional[bool] = None) -> List[Event]:
        """Events the address has staked into, optionally filtered on attendance"""
        conditions = [Participant.user_address == user_address]
        if attended is not None:
            conditions.append(Participant.attended.is_(attended))
        async with self.session_factory() as session:
            result = await session.execute(
                select(Event)
                .join(Participant, Participant.event_id == Event.id)
                .where(and_(*conditions))
                .order_by(Event.starts_at, Event.id)
            )
            return list(result.scalars().all())

    async def list_attendable_events(self, user_address: str) -> List[Event]:
        """Joined, open, not yet attended"""
        events = await self.list_joined_events(user_address, attended=False)
        return [event for event in events if not event.finalized]

    # ===== MEMORIES =====

    async def insert_memory(
        self,
        event_id: int,
        blob_id: str,
        manifest_blob_id: Optional[str] = None,
        created_by: Optional[int] = None,
    ) -> Memory:
        memory = Memory(
            event_id=event_id,
            blob_id=blob_id,
            manifest_blob_id=manifest_blob_id,
            created_by=created_by,
            created_at=get_naive_utc_now(),
        )
        async with self.session_factory() as session:
            async with session.begin():
                session.add(memory)
        return memory

    async def list_memories(self, event_id: int) -> List[Memory]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Memory).where(Memory.event_id == event_id).order_by(Memory.created_at, Memory.id)
            )
            return list(result.scalars().all())

    # ===== LEDGER OPERATION CLAIMS =====

    async def claim_operation(
        self,
        operation_key: str,
        operation_type: LedgerOperationType,
        idempotency_token: str,
        telegram_id: Optional[int] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> ClaimResult:
        """
        Take the claim for an operation key before the ledger call.

        The unique index on operation_key provides distributed locking: the
        loser of a race gets claimed=False plus the winner's row.
        """
        now = get_naive_utc_now()
        operation = LedgerOperation(
            operation_key=operation_key,
            operation_type=operation_type.value,
            telegram_id=telegram_id,
            idempotency_token=idempotency_token,
            payload=payload,
            status=LedgerOperationStatus.PROCESSING.value,
            created_at=now,
            updated_at=now,
        )
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    session.add(operation)
            return ClaimResult(claimed=True, operation=operation)
        except IntegrityError:
            existing = await self.get_operation(operation_key)
            logger.warning(f"🚫 IDEMPOTENCY_BLOCK: Operation {operation_key} already claimed")
            return ClaimResult(claimed=False, operation=existing)

    async def get_operation(self, operation_key: str) -> Optional[LedgerOperation]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(LedgerOperation).where(LedgerOperation.operation_key == operation_key)
            )
            return result.scalar_one_or_none()

    async def attach_tx_hash(self, operation_key: str, tx_hash: str) -> None:
        await self._update_operation(operation_key, tx_hash=tx_hash)

    async def complete_operation(
        self,
        operation_key: str,
        entity_id: Optional[str] = None,
        tx_hash: Optional[str] = None,
    ) -> None:
        values: Dict[str, Any] = {"status": LedgerOperationStatus.COMPLETED.value, "error_message": None}
        if entity_id is not None:
            values["entity_id"] = entity_id
        if tx_hash is not None:
            values["tx_hash"] = tx_hash
        await self._update_operation(operation_key, **values)

    async def mark_reconciliation_required(
        self,
        operation_key: str,
        error_message: str,
        tx_hash: Optional[str] = None,
    ) -> None:
        values: Dict[str, Any] = {
            "status": LedgerOperationStatus.RECONCILIATION_REQUIRED.value,
            "error_message": error_message[:2000],
        }
        if tx_hash is not None:
            values["tx_hash"] = tx_hash
        await self._update_operation(operation_key, **values)

    async def mark_manual_review(self, operation_key: str, error_message: str, tx_hash: Optional[str] = None) -> None:
        """Park a confirmed claim the sweep cannot settle; it leaves the unsettled queue"""
        values: Dict[str, Any] = {
            "status": LedgerOperationStatus.MANUAL_REVIEW.value,
            "error_message": error_message[:2000],
        }
        if tx_hash is not None:
            values["tx_hash"] = tx_hash
        await self._update_operation(operation_key, **values)

    async def release_operation(self, operation_key: str) -> None:
        """Drop an unfinished claim so the operation may be retried"""
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(
                    delete(LedgerOperation).where(
                        and_(
                            LedgerOperation.operation_key == operation_key,
                            LedgerOperation.status.in_([
                                LedgerOperationStatus.PROCESSING.value,
                                LedgerOperationStatus.RECONCILIATION_REQUIRED.value,
                            ]),
                        )
                    )
                )

    async def list_unsettled_operations(self, limit: int = 200) -> List[LedgerOperation]:
        """Claims that are still processing or need reconciliation, oldest first"""
        async with self.session_factory() as session:
            result = await session.execute(
                select(LedgerOperation)
                .where(
                    or_(
                        LedgerOperation.status == LedgerOperationStatus.PROCESSING.value,
                        LedgerOperation.status == LedgerOperationStatus.RECONCILIATION_REQUIRED.value,
                    )
                )
                .order_by(LedgerOperation.updated_at, LedgerOperation.id)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def _update_operation(self, operation_key: str, **values: Any) -> None:
        values["updated_at"] = get_naive_utc_now()
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(LedgerOperation).where(LedgerOperation.operation_key == operation_key).values(**values)
                )
