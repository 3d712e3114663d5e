"""
Event Lifecycle Orchestrator
Single, idempotent entry point for every event mutation. Each ledger-backed
operation follows the same two-phase path:

    validate (record store snapshot) -> claim operation key -> submit to ledger
    -> await confirmation (bounded) -> persist mirror -> complete claim

Nothing is written to the mirror before the ledger confirms. A mirror write
that fails after confirmation is never swallowed: the claim is flagged for
reconciliation and the caller is told that funds moved on-chain.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from config import Config
from models import Event, LedgerOperationStatus, LedgerOperationType, Memory, User
from services.event_intents import (
    ConfirmAttendanceIntent,
    CreateEventIntent,
    CreateMemoryIntent,
    EventIntent,
    JoinEventIntent,
    new_idempotency_token,
)
from services.geofence import Coordinates, PresenceDecision, verify_presence
from services.ledger_gateway import LedgerClient, LedgerError, TransactionReceipt
from services.poster_service import MemoryPosterService, PosterServiceError
from services.record_store import EventRecordStore
from services.scene_engine import EventSummary
from services.walrus_service import BlobStoreError, WalrusClient
from services.wallet_service import CustodyError, WalletCustody
from utils.datetime_helpers import get_naive_utc_now, to_epoch_seconds
from utils.decimal_precision import MonetaryDecimal

logger = logging.getLogger(__name__)

MAX_EVENT_NAME_LENGTH = 100
MAX_LISTED_EVENTS = 20


class UnmirrorableReceiptError(Exception):
    """A confirmed receipt lacks data the record store needs; replaying it cannot help"""
    pass


class OperationResult(Enum):
    """Result types for orchestrated operations"""
    SUCCESS = "success"
    REJECTED = "rejected"                              # Precondition failed, ledger never called
    GEOFENCE_ABSENT = "geofence_absent"                # Outside the fence, retry from the venue
    LEDGER_FAILED = "ledger_failed"                    # Submission failed or reverted, nothing moved
    PENDING = "pending"                                # Submitted, confirmation still outstanding
    DUPLICATE_IN_PROGRESS = "duplicate_in_progress"    # Same operation already in flight
    RECONCILIATION_REQUIRED = "reconciliation_required"  # On-chain done, mirror write failed
    ERROR = "error"                                    # Unexpected failure before any ledger effect


class RejectionReason(Enum):
    USER_NOT_REGISTERED = "user_not_registered"
    EVENT_NOT_FOUND = "event_not_found"
    EVENT_FINALIZED = "event_finalized"
    ALREADY_JOINED = "already_joined"
    NOT_A_PARTICIPANT = "not_a_participant"
    ALREADY_ATTENDED = "already_attended"
    NOT_CREATOR = "not_creator"
    NO_PARTICIPANTS = "no_participants"
    EVENT_NOT_FINALIZED = "event_not_finalized"
    INVALID_INPUT = "invalid_input"


@dataclass
class EventOperationResponse:
    """Response model for orchestrated operations"""
    result: OperationResult
    message: str
    reason: Optional[RejectionReason] = None
    event_id: Optional[int] = None
    tx_hash: Optional[str] = None
    distance_km: Optional[float] = None
    funds_moved: bool = False
    blob_url: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.result == OperationResult.SUCCESS

    @classmethod
    def rejected(cls, reason: RejectionReason, message: str, event_id: Optional[int] = None) -> "EventOperationResponse":
        return cls(result=OperationResult.REJECTED, message=message, reason=reason, event_id=event_id)


@dataclass
class WalletRegistration:
    user: User
    created: bool


@dataclass
class LedgerOperationPlan:
    """Everything the two-phase pipeline needs for one ledger write"""
    operation_key: str
    operation_type: LedgerOperationType
    telegram_id: int
    idempotency_token: str
    payload: Dict[str, Any]
    submit: Callable[[], Awaitable[str]]
    success_message: str
    event_id: Optional[int] = None
    completed_duplicate_reason: Optional[RejectionReason] = None


def summarize_event(event: Event) -> EventSummary:
    return EventSummary(
        event_id=event.id,
        name=event.name,
        starts_at=event.starts_at,
        stake_amount=event.stake_amount,
        has_anchor=event.has_anchor,
        finalized=event.finalized,
    )


class EventOrchestrator:
    """
    Unified service for event mutations with database-backed idempotency.
    Also serves as the conversation's EventDirectory.
    """

    def __init__(
        self,
        record_store: EventRecordStore,
        ledger: LedgerClient,
        custody: WalletCustody,
        blob_store: Optional[WalrusClient] = None,
        poster_service: Optional[MemoryPosterService] = None,
        confirmation_timeout: Optional[float] = None,
        geofence_radius_km: Optional[float] = None,
        earth_radius_km: Optional[float] = None,
        clock: Callable[[], datetime] = get_naive_utc_now,
    ):
        self.records = record_store
        self.ledger = ledger
        self.custody = custody
        self.blob_store = blob_store or WalrusClient()
        self.poster_service = poster_service or MemoryPosterService()
        self.confirmation_timeout = (
            confirmation_timeout if confirmation_timeout is not None else Config.LEDGER_CONFIRMATION_TIMEOUT_SECONDS
        )
        self.geofence_radius_km = geofence_radius_km if geofence_radius_km is not None else Config.GEOFENCE_RADIUS_KM
        self.earth_radius_km = earth_radius_km if earth_radius_km is not None else Config.EARTH_RADIUS_KM
        self.clock = clock

    # ===== WALLETS =====

    async def register_user(self, telegram_id: int, display_name: Optional[str] = None) -> WalletRegistration:
        """Return the user's wallet, creating it through custody on first use"""
        existing = await self.records.get_user(telegram_id)
        if existing is not None:
            await self.records.touch_user(telegram_id, display_name)
            return WalletRegistration(user=existing, created=False)

        signer = await self.custody.create_wallet(telegram_id)
        user = await self.records.insert_user(
            telegram_id=telegram_id,
            wallet_address=signer.address,
            signer_ref=signer.key_ref,
            display_name=display_name,
        )
        created = user.wallet_address == signer.address
        if created:
            logger.info(f"✅ USER_REGISTERED: {telegram_id} -> {user.wallet_address}")
        return WalletRegistration(user=user, created=created)

    async def get_user(self, telegram_id: int) -> Optional[User]:
        return await self.records.get_user(telegram_id)

    async def get_wallet_balance(self, telegram_id: int) -> Optional[Tuple[User, Decimal]]:
        """(user, balance) or None for an unregistered user; LedgerError propagates"""
        user = await self.records.get_user(telegram_id)
        if user is None:
            return None
        balance = await self.ledger.get_balance(user.wallet_address)
        return user, balance

    # ===== LEDGER-BACKED OPERATIONS =====

    async def create_event(
        self,
        telegram_id: int,
        name: str,
        starts_at: datetime,
        stake_amount: Decimal,
        idempotency_token: Optional[str] = None,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        location_text: Optional[str] = None,
    ) -> EventOperationResponse:
        token = idempotency_token or new_idempotency_token()
        logger.info(f"🔄 EVENT_ORCHESTRATOR: create_event '{name}' for user {telegram_id}")
        try:
            user = await self.records.get_user(telegram_id)
            if user is None:
                return self._not_registered()

            problem = self._validate_new_event(name, starts_at, stake_amount, latitude, longitude)
            if problem:
                logger.warning(f"🚫 EVENT_ORCHESTRATOR: create_event rejected for {telegram_id}: {problem}")
                return EventOperationResponse.rejected(RejectionReason.INVALID_INPUT, problem)

            name = name.strip()
            stake = MonetaryDecimal.to_decimal(stake_amount)
            signer = self.custody.signer_for(user)
            plan = LedgerOperationPlan(
                operation_key=f"create_event:{token}",
                operation_type=LedgerOperationType.CREATE_EVENT,
                telegram_id=telegram_id,
                idempotency_token=token,
                payload={
                    "name": name,
                    "starts_at": starts_at.isoformat(),
                    "stake_amount": str(stake),
                    "creator_address": user.wallet_address,
                    "creator_telegram_id": telegram_id,
                    "latitude": latitude,
                    "longitude": longitude,
                    "location_text": None if latitude is not None else location_text,
                },
                submit=lambda: self.ledger.submit_create_event(
                    name, to_epoch_seconds(starts_at), stake, signer, token
                ),
                success_message=f"Event '{name}' created",
            )
            return await self._run_ledger_operation(plan)

        except Exception as e:
            return self._unexpected("create_event", e)

    async def join_event(
        self,
        telegram_id: int,
        event_id: int,
        idempotency_token: Optional[str] = None,
    ) -> EventOperationResponse:
        token = idempotency_token or new_idempotency_token()
        logger.info(f"🔄 EVENT_ORCHESTRATOR: join_event {event_id} for user {telegram_id}")
        try:
            user = await self.records.get_user(telegram_id)
            if user is None:
                return self._not_registered()

            event = await self.records.get_event(event_id)
            if event is None:
                return EventOperationResponse.rejected(RejectionReason.EVENT_NOT_FOUND, "Event not found.")
            if event.finalized:
                return EventOperationResponse.rejected(
                    RejectionReason.EVENT_FINALIZED, f"'{event.name}' is finalized and closed to new participants.",
                    event_id,
                )
            if await self.records.get_participant(event_id, user.wallet_address) is not None:
                logger.warning(f"🚫 EVENT_ORCHESTRATOR: {telegram_id} already joined event {event_id}")
                return EventOperationResponse.rejected(
                    RejectionReason.ALREADY_JOINED, f"You have already joined '{event.name}'.", event_id
                )

            signer = self.custody.signer_for(user)
            stake = event.stake_amount
            plan = LedgerOperationPlan(
                operation_key=f"join_event:{event_id}:{user.wallet_address}",
                operation_type=LedgerOperationType.JOIN_EVENT,
                telegram_id=telegram_id,
                idempotency_token=token,
                payload={
                    "event_id": event_id,
                    "user_address": user.wallet_address,
                    "telegram_id": telegram_id,
                },
                submit=lambda: self.ledger.submit_join_event(event_id, stake, signer, token),
                success_message=f"Joined '{event.name}' with a stake of {MonetaryDecimal.format_amount(stake)}",
                event_id=event_id,
                completed_duplicate_reason=RejectionReason.ALREADY_JOINED,
            )
            return await self._run_ledger_operation(plan)

        except Exception as e:
            return self._unexpected("join_event", e)

    async def finalize_event(
        self,
        telegram_id: int,
        event_id: int,
        idempotency_token: Optional[str] = None,
    ) -> EventOperationResponse:
        token = idempotency_token or new_idempotency_token()
        logger.info(f"🔄 EVENT_ORCHESTRATOR: finalize_event {event_id} by user {telegram_id}")
        try:
            user = await self.records.get_user(telegram_id)
            if user is None:
                return self._not_registered()

            event = await self.records.get_event(event_id)
            if event is None:
                return EventOperationResponse.rejected(RejectionReason.EVENT_NOT_FOUND, "Event not found.")
            if event.creator_address.lower() != user.wallet_address.lower():
                logger.warning(f"🚫 EVENT_ORCHESTRATOR: {telegram_id} is not the creator of event {event_id}")
                return EventOperationResponse.rejected(
                    RejectionReason.NOT_CREATOR, "Only the event creator can finalize it.", event_id
                )
            if event.finalized:
                return EventOperationResponse.rejected(
                    RejectionReason.EVENT_FINALIZED, f"'{event.name}' is already finalized.", event_id
                )

            plan = LedgerOperationPlan(
                operation_key=f"finalize_event:{event_id}",
                operation_type=LedgerOperationType.FINALIZE_EVENT,
                telegram_id=telegram_id,
                idempotency_token=token,
                payload={"event_id": event_id},
                submit=lambda: self.ledger.submit_finalize_event(event_id, self.custody.operator_signer(), token),
                success_message=f"'{event.name}' finalized",
                event_id=event_id,
                completed_duplicate_reason=RejectionReason.EVENT_FINALIZED,
            )
            return await self._run_ledger_operation(plan)

        except Exception as e:
            return self._unexpected("finalize_event", e)

    async def mark_attendance(
        self,
        telegram_id: int,
        event_id: int,
        latitude: float,
        longitude: float,
        idempotency_token: Optional[str] = None,
    ) -> EventOperationResponse:
        token = idempotency_token or new_idempotency_token()
        logger.info(f"🔄 EVENT_ORCHESTRATOR: mark_attendance {event_id} for user {telegram_id}")
        try:
            user = await self.records.get_user(telegram_id)
            if user is None:
                return self._not_registered()

            event = await self.records.get_event(event_id)
            if event is None:
                return EventOperationResponse.rejected(RejectionReason.EVENT_NOT_FOUND, "Event not found.")
            if event.finalized:
                return EventOperationResponse.rejected(
                    RejectionReason.EVENT_FINALIZED, f"'{event.name}' is finalized; attendance is closed.", event_id
                )

            participant = await self.records.get_participant(event_id, user.wallet_address)
            if participant is None:
                return EventOperationResponse.rejected(
                    RejectionReason.NOT_A_PARTICIPANT, f"You haven't joined '{event.name}'.", event_id
                )
            if participant.attended:
                return EventOperationResponse.rejected(
                    RejectionReason.ALREADY_ATTENDED, f"Your attendance at '{event.name}' is already recorded.",
                    event_id,
                )

            user_location = Coordinates(latitude, longitude)
            if not user_location.is_valid():
                return EventOperationResponse.rejected(
                    RejectionReason.INVALID_INPUT, "That location is not a valid coordinate pair.", event_id
                )

            anchor = Coordinates(event.latitude, event.longitude) if event.has_anchor else None
            fence = verify_presence(user_location, anchor, self.geofence_radius_km, self.earth_radius_km)
            if fence.decision == PresenceDecision.ABSENT:
                logger.info(
                    f"📍 GEOFENCE_ABSENT: user {telegram_id} is {fence.distance_km:.3f} km from event {event_id}"
                )
                return EventOperationResponse(
                    result=OperationResult.GEOFENCE_ABSENT,
                    message=(
                        f"You are {fence.distance_km * 1000:.0f} m from '{event.name}'. "
                        f"Check in within {self.geofence_radius_km * 1000:.0f} m of the venue."
                    ),
                    event_id=event_id,
                    distance_km=fence.distance_km,
                )

            user_address = user.wallet_address
            plan = LedgerOperationPlan(
                operation_key=f"mark_attendance:{event_id}:{user_address}",
                operation_type=LedgerOperationType.MARK_ATTENDANCE,
                telegram_id=telegram_id,
                idempotency_token=token,
                payload={
                    "event_id": event_id,
                    "user_address": user_address,
                    "latitude": latitude,
                    "longitude": longitude,
                },
                submit=lambda: self.ledger.submit_mark_attendance(
                    event_id, user_address, self.custody.operator_signer(), token
                ),
                success_message=f"Attendance at '{event.name}' recorded",
                event_id=event_id,
                completed_duplicate_reason=RejectionReason.ALREADY_ATTENDED,
            )
            response = await self._run_ledger_operation(plan)
            response.distance_km = fence.distance_km
            return response

        except Exception as e:
            return self._unexpected("mark_attendance", e)

    # ===== MEMORIES =====

    async def create_memory(self, telegram_id: int, event_id: int, photo: bytes) -> EventOperationResponse:
        """Render a poster from the photo, store it and its manifest, record the memory"""
        logger.info(f"🔄 EVENT_ORCHESTRATOR: create_memory for event {event_id} by user {telegram_id}")
        try:
            user = await self.records.get_user(telegram_id)
            if user is None:
                return self._not_registered()

            event = await self.records.get_event(event_id)
            if event is None:
                return EventOperationResponse.rejected(RejectionReason.EVENT_NOT_FOUND, "Event not found.")
            if not event.finalized:
                return EventOperationResponse.rejected(
                    RejectionReason.EVENT_NOT_FINALIZED,
                    f"'{event.name}' must be finalized before memories can be created.",
                    event_id,
                )
            participants = await self.records.list_participants(event_id)
            if not participants:
                return EventOperationResponse.rejected(
                    RejectionReason.NO_PARTICIPANTS, f"'{event.name}' had no participants.", event_id
                )
            if not photo:
                return EventOperationResponse.rejected(RejectionReason.INVALID_INPUT, "The photo was empty.", event_id)

            poster = await self.poster_service.generate_poster(photo, event.name, event.starts_at)
            content_type = "image/png" if self.poster_service.enabled else "image/jpeg"
            blob_id = await self.blob_store.upload_blob(poster, content_type=content_type)

            manifest = {
                "event_id": event.id,
                "event_name": event.name,
                "starts_at": event.starts_at.isoformat(),
                "chain": Config.CHAIN_NAME,
                "poster_blob_id": blob_id,
                "participants": len(participants),
                "attended": sum(1 for participant in participants if participant.attended),
                "created_by": user.wallet_address,
                "created_at": get_naive_utc_now().isoformat(),
            }
            manifest_blob_id = await self.blob_store.store_json(manifest)
            await self.records.insert_memory(event_id, blob_id, manifest_blob_id, created_by=telegram_id)

            url = self.blob_store.blob_url(blob_id)
            logger.info(f"✅ MEMORY_CREATED: event {event_id} blob {blob_id}")
            return EventOperationResponse(
                result=OperationResult.SUCCESS,
                message=f"Memory for '{event.name}' stored",
                event_id=event_id,
                blob_url=url,
            )

        except (PosterServiceError, BlobStoreError) as e:
            logger.error(f"❌ MEMORY_FAILED: event {event_id}: {e}")
            return EventOperationResponse(
                result=OperationResult.ERROR,
                message="The memory could not be stored right now. Please try again later.",
                event_id=event_id,
            )
        except Exception as e:
            return self._unexpected("create_memory", e)

    # ===== INTENT DISPATCH =====

    async def execute_intent(self, intent: EventIntent, photo: Optional[bytes] = None) -> EventOperationResponse:
        """Run the operation a completed conversation asked for"""
        if isinstance(intent, CreateEventIntent):
            return await self.create_event(
                intent.telegram_id,
                intent.name,
                intent.starts_at,
                intent.stake_amount,
                idempotency_token=intent.idempotency_token,
                latitude=intent.latitude,
                longitude=intent.longitude,
                location_text=intent.location_text,
            )
        if isinstance(intent, JoinEventIntent):
            return await self.join_event(intent.telegram_id, intent.event_id, intent.idempotency_token)
        if isinstance(intent, ConfirmAttendanceIntent):
            return await self.mark_attendance(
                intent.telegram_id,
                intent.event_id,
                intent.latitude,
                intent.longitude,
                idempotency_token=intent.idempotency_token,
            )
        if isinstance(intent, CreateMemoryIntent):
            if photo is None:
                return EventOperationResponse.rejected(RejectionReason.INVALID_INPUT, "No photo received.")
            return await self.create_memory(intent.telegram_id, intent.event_id, photo)
        raise TypeError(f"Unsupported intent: {type(intent).__name__}")

    # ===== DIRECTORY QUERIES =====

    async def search_open_events(self, query: str) -> List[EventSummary]:
        events = await self.records.search_open_events(query, limit=MAX_LISTED_EVENTS)
        return [summarize_event(event) for event in events]

    async def list_attendable_events(self, telegram_id: int) -> List[EventSummary]:
        user = await self.records.get_user(telegram_id)
        if user is None:
            return []
        events = await self.records.list_attendable_events(user.wallet_address)
        return [summarize_event(event) for event in events]

    async def list_memory_events(self) -> List[EventSummary]:
        events = await self.records.list_events(newest_first=True, limit=MAX_LISTED_EVENTS)
        return [summarize_event(event) for event in events]

    async def list_upcoming_events(self) -> List[EventSummary]:
        events = await self.records.list_events(finalized=False, limit=MAX_LISTED_EVENTS)
        return [summarize_event(event) for event in events]

    async def list_created_events(self, telegram_id: int, finalized: Optional[bool] = None) -> List[EventSummary]:
        user = await self.records.get_user(telegram_id)
        if user is None:
            return []
        events = await self.records.list_events(creator_address=user.wallet_address, finalized=finalized)
        return [summarize_event(event) for event in events]

    async def list_joined_events(self, telegram_id: int) -> List[EventSummary]:
        user = await self.records.get_user(telegram_id)
        if user is None:
            return []
        events = await self.records.list_joined_events(user.wallet_address)
        return [summarize_event(event) for event in events]

    async def list_finalized_events(self) -> List[EventSummary]:
        events = await self.records.list_events(finalized=True, newest_first=True, limit=MAX_LISTED_EVENTS)
        return [summarize_event(event) for event in events]

    async def list_event_memories(self, event_id: int) -> List[Tuple[Memory, str]]:
        memories = await self.records.list_memories(event_id)
        return [(memory, self.blob_store.blob_url(memory.blob_id)) for memory in memories]

    # ===== TWO-PHASE PIPELINE =====

    async def persist_confirmed_operation(
        self,
        operation_type: str,
        payload: Dict[str, Any],
        receipt: TransactionReceipt,
    ) -> Optional[str]:
        """
        Mirror a confirmed ledger operation. Idempotent: the reconciliation
        sweep replays it for claims whose first write failed.
        """
        if operation_type == LedgerOperationType.CREATE_EVENT.value:
            if receipt.event_id is None:
                raise UnmirrorableReceiptError(f"Confirmed createEvent {receipt.tx_hash} carries no event id")
            await self.records.insert_event(
                event_id=receipt.event_id,
                name=payload["name"],
                starts_at=datetime.fromisoformat(payload["starts_at"]),
                stake_amount=Decimal(payload["stake_amount"]),
                creator_address=payload["creator_address"],
                creator_telegram_id=payload.get("creator_telegram_id"),
                latitude=payload.get("latitude"),
                longitude=payload.get("longitude"),
                location_text=payload.get("location_text"),
                create_tx_hash=receipt.tx_hash,
            )
            return str(receipt.event_id)

        if operation_type == LedgerOperationType.JOIN_EVENT.value:
            participant = await self.records.insert_participant(
                event_id=payload["event_id"],
                user_address=payload["user_address"],
                telegram_id=payload.get("telegram_id"),
                stake_tx_hash=receipt.tx_hash,
            )
            return str(participant.id)

        if operation_type == LedgerOperationType.FINALIZE_EVENT.value:
            await self.records.set_event_finalized(payload["event_id"], receipt.tx_hash)
            return str(payload["event_id"])

        if operation_type == LedgerOperationType.MARK_ATTENDANCE.value:
            await self.records.set_attended(
                payload["event_id"],
                payload["user_address"],
                tx_hash=receipt.tx_hash,
                latitude=payload.get("latitude"),
                longitude=payload.get("longitude"),
            )
            return str(payload["event_id"])

        raise ValueError(f"Unknown ledger operation type: {operation_type}")

    async def _run_ledger_operation(self, plan: LedgerOperationPlan) -> EventOperationResponse:
        claim = await self.records.claim_operation(
            plan.operation_key,
            plan.operation_type,
            plan.idempotency_token,
            telegram_id=plan.telegram_id,
            payload=plan.payload,
        )
        if not claim.claimed:
            return self._duplicate_response(plan, claim.operation)

        # Phase 1: submit. Failures here leave nothing on-chain.
        try:
            tx_hash = await plan.submit()
        except (LedgerError, CustodyError) as e:
            logger.error(f"❌ LEDGER_SUBMIT_FAILED: {plan.operation_key}: {e}")
            await self.records.release_operation(plan.operation_key)
            return EventOperationResponse(
                result=OperationResult.LEDGER_FAILED,
                message="The ledger rejected the transaction. Nothing was charged; you can try again.",
                event_id=plan.event_id,
            )

        # From here on the transaction may land, so no path may report a clean failure.
        # Every later claim update carries tx_hash as well.
        hash_recorded = await self._attach_tx_hash(plan, tx_hash)

        # Phase 2: confirm, bounded
        try:
            receipt = await asyncio.wait_for(self.ledger.wait_for_receipt(tx_hash), timeout=self.confirmation_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"⏳ LEDGER_PENDING: {plan.operation_key} tx {tx_hash} unconfirmed after {self.confirmation_timeout}s")
            return await self._pending_after_submit(plan, tx_hash, hash_recorded)
        except Exception as e:
            logger.warning(f"⏳ LEDGER_PENDING: {plan.operation_key} tx {tx_hash} confirmation query failed: {e}")
            return await self._pending_after_submit(plan, tx_hash, hash_recorded)

        if not receipt.success:
            logger.error(f"❌ LEDGER_REVERTED: {plan.operation_key} tx {tx_hash}: {receipt.error}")
            await self.records.release_operation(plan.operation_key)
            return EventOperationResponse(
                result=OperationResult.LEDGER_FAILED,
                message="The transaction failed on-chain. Nothing was charged; you can try again.",
                event_id=plan.event_id,
                tx_hash=tx_hash,
            )

        # Phase 3: mirror
        try:
            entity_id = await self.persist_confirmed_operation(plan.operation_type.value, plan.payload, receipt)
        except Exception as e:
            await self.flag_unmirrored_operation(plan.operation_key, tx_hash, e)
            return EventOperationResponse(
                result=OperationResult.RECONCILIATION_REQUIRED,
                message=(
                    "Your transaction is confirmed on-chain, but our records may be stale for a while. "
                    "No need to retry."
                ),
                event_id=receipt.event_id if receipt.event_id is not None else plan.event_id,
                tx_hash=tx_hash,
                funds_moved=True,
            )

        try:
            await self.records.complete_operation(plan.operation_key, entity_id, tx_hash=tx_hash)
        except Exception as e:
            # Mirror is written; the sweep replays the idempotent persist and completes the claim
            logger.error(f"❌ CLAIM_COMPLETE_FAILED: {plan.operation_key}: {e}")

        event_id = receipt.event_id if plan.operation_type == LedgerOperationType.CREATE_EVENT else plan.event_id
        logger.info(f"✅ EVENT_ORCHESTRATOR: {plan.operation_key} confirmed in tx {tx_hash}")
        return EventOperationResponse(
            result=OperationResult.SUCCESS,
            message=plan.success_message,
            event_id=event_id,
            tx_hash=tx_hash,
            funds_moved=True,
        )

    async def flag_unmirrored_operation(self, operation_key: str, tx_hash: str, error: Exception) -> None:
        """
        Record that a confirmed transaction is missing from the record store.

        Receipts that can never be mirrored go to manual review so the sweep
        stops replaying them; anything else is left for the sweep.
        """
        if isinstance(error, UnmirrorableReceiptError):
            logger.critical(f"🚨 MANUAL_REVIEW_REQUIRED: {operation_key} confirmed in tx {tx_hash}: {error}")
            mark = self.records.mark_manual_review
        else:
            logger.critical(
                f"🚨 RECONCILIATION_REQUIRED: {operation_key} confirmed in tx {tx_hash} "
                f"but the record store write failed: {error}",
                exc_info=error,
            )
            mark = self.records.mark_reconciliation_required

        try:
            await mark(operation_key, str(error), tx_hash=tx_hash)
        except Exception as mark_error:
            logger.critical(f"🚨 RECONCILIATION_REQUIRED: could not flag claim {operation_key}: {mark_error}")

    async def _attach_tx_hash(self, plan: LedgerOperationPlan, tx_hash: str) -> bool:
        try:
            await self.records.attach_tx_hash(plan.operation_key, tx_hash)
            return True
        except Exception as e:
            logger.error(f"❌ CLAIM_UPDATE_FAILED: {plan.operation_key} tx {tx_hash}: {e}")
            return False

    async def _pending_after_submit(
        self,
        plan: LedgerOperationPlan,
        tx_hash: str,
        hash_recorded: bool,
    ) -> EventOperationResponse:
        if not hash_recorded and not await self._attach_tx_hash(plan, tx_hash):
            # The sweep recovers the hash from the gateway by idempotency token
            logger.critical(
                f"🚨 CLAIM_WITHOUT_TX_HASH: {plan.operation_key} token {plan.idempotency_token} "
                f"submitted as tx {tx_hash}"
            )
        return self._pending_response(plan, tx_hash)

    def _duplicate_response(self, plan: LedgerOperationPlan, existing) -> EventOperationResponse:
        if existing is not None and existing.status == LedgerOperationStatus.COMPLETED.value:
            if plan.completed_duplicate_reason is None:
                # Replay of a finished create: hand back what it produced
                event_id = int(existing.entity_id) if existing.entity_id else None
                return EventOperationResponse(
                    result=OperationResult.SUCCESS,
                    message=plan.success_message,
                    event_id=event_id,
                    tx_hash=existing.tx_hash,
                    funds_moved=True,
                )
            return EventOperationResponse.rejected(
                plan.completed_duplicate_reason, "This was already done.", plan.event_id
            )

        return EventOperationResponse(
            result=OperationResult.DUPLICATE_IN_PROGRESS,
            message="This request is already being processed. Please wait for it to confirm.",
            event_id=plan.event_id,
            tx_hash=existing.tx_hash if existing is not None else None,
        )

    @staticmethod
    def _pending_response(plan: LedgerOperationPlan, tx_hash: str) -> EventOperationResponse:
        return EventOperationResponse(
            result=OperationResult.PENDING,
            message=(
                "Your transaction was submitted but is not confirmed yet. "
                "It will be recorded automatically once it lands."
            ),
            event_id=plan.event_id,
            tx_hash=tx_hash,
        )

    def _validate_new_event(
        self,
        name: str,
        starts_at: datetime,
        stake_amount: Decimal,
        latitude: Optional[float],
        longitude: Optional[float],
    ) -> Optional[str]:
        if not name or not name.strip():
            return "The event needs a name."
        if len(name.strip()) > MAX_EVENT_NAME_LENGTH:
            return f"Event names are limited to {MAX_EVENT_NAME_LENGTH} characters."
        if starts_at <= self.clock():
            return "The event must start in the future."
        try:
            stake = MonetaryDecimal.to_decimal(stake_amount)
        except ArithmeticError:
            return "The stake amount is not a number."
        if not stake.is_finite() or stake <= 0:
            return "The stake amount must be positive."
        if (latitude is None) != (longitude is None):
            return "A location needs both latitude and longitude."
        if latitude is not None and not Coordinates(latitude, longitude).is_valid():
            return "That location is not a valid coordinate pair."
        return None

    @staticmethod
    def _not_registered() -> EventOperationResponse:
        return EventOperationResponse.rejected(
            RejectionReason.USER_NOT_REGISTERED, "You don't have a wallet yet. Send /start to create one."
        )

    @staticmethod
    def _unexpected(operation: str, error: Exception) -> EventOperationResponse:
        logger.error(f"❌ EVENT_ORCHESTRATOR_ERROR: {operation}: {error}", exc_info=True)
        return EventOperationResponse(
            result=OperationResult.ERROR,
            message="Something went wrong before anything was sent to the ledger. Please try again.",
        )
