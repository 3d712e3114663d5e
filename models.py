"""
Staked Meetup Bot - Database Schema
===================================

Record-store mirror of ledger state:
- Users with custody-managed wallets
- Events (ids issued by the ledger) and their participants
- Memory posters stored in the blob store
- Ledger operation claims guarding every ledger write
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from sqlalchemy import (
    BigInteger, Integer, String, Numeric, DateTime, Boolean, Text, Float,
    ForeignKey, UniqueConstraint, Index, CheckConstraint, JSON, func
)
from sqlalchemy.orm import DeclarativeBase, relationship, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class LedgerOperationType(Enum):
    """Ledger operations issued by the orchestrator"""
    CREATE_EVENT = "create_event"
    JOIN_EVENT = "join_event"
    FINALIZE_EVENT = "finalize_event"
    MARK_ATTENDANCE = "mark_attendance"


class LedgerOperationStatus(Enum):
    """Claim lifecycle for a ledger operation"""
    PROCESSING = "processing"                           # Claimed, ledger call in flight or unconfirmed
    COMPLETED = "completed"                             # Confirmed and mirrored
    RECONCILIATION_REQUIRED = "reconciliation_required"  # Confirmed on-chain, mirror write failed
    MANUAL_REVIEW = "manual_review"                     # Confirmed on-chain, receipt cannot be mirrored


# ============================================================================
# CORE ENTITIES
# ============================================================================

class User(Base):
    """Telegram user with a custody-managed wallet"""
    __tablename__ = 'users'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    telegram_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    display_name: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    # Wallet (signing credential lives with the custody service)
    wallet_address: Mapped[str] = mapped_column(String(64), nullable=False)
    signer_ref: Mapped[str] = mapped_column(String(255), nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    last_active: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)

    __table_args__ = (
        Index('ix_users_telegram_id', 'telegram_id', unique=True),
        Index('ix_users_wallet_address', 'wallet_address', unique=True),
    )


class Event(Base):
    """Meetup mirrored from the ledger - id is issued by the contract"""
    __tablename__ = 'events'

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    starts_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    stake_amount: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
    creator_address: Mapped[str] = mapped_column(String(64), nullable=False)
    creator_telegram_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    # Geographic anchor - absent means attendance is not geofenced
    latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    location_text: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    finalized: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    create_tx_hash: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    finalize_tx_hash: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    finalized_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)

    participants: Mapped[list["Participant"]] = relationship("Participant", back_populates="event")
    memories: Mapped[list["Memory"]] = relationship("Memory", back_populates="event")

    @property
    def has_anchor(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    __table_args__ = (
        CheckConstraint('stake_amount > 0', name='ck_event_stake_positive'),
        CheckConstraint(
            '(latitude IS NULL AND longitude IS NULL) OR (latitude IS NOT NULL AND longitude IS NOT NULL)',
            name='ck_event_anchor_complete'
        ),
        Index('ix_events_starts_at', 'starts_at'),
        Index('ix_events_creator', 'creator_address'),
        Index('ix_events_finalized_starts_at', 'finalized', 'starts_at'),
    )


class Participant(Base):
    """Stake-confirmed participant of an event"""
    __tablename__ = 'participants'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('events.id'), nullable=False)
    user_address: Mapped[str] = mapped_column(String(64), nullable=False)
    telegram_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    has_staked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    attended: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    stake_tx_hash: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    attendance_tx_hash: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    checkin_latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    checkin_longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    checked_in_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)
    joined_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)

    event: Mapped["Event"] = relationship("Event", back_populates="participants")

    __table_args__ = (
        UniqueConstraint('event_id', 'user_address', name='uq_participant_event_user'),
        Index('ix_participants_user_address', 'user_address'),
        Index('ix_participants_telegram_id', 'telegram_id'),
    )


class Memory(Base):
    """Memory poster for a finalized event"""
    __tablename__ = 'memories'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('events.id'), nullable=False, index=True)
    blob_id: Mapped[str] = mapped_column(String(128), nullable=False)
    manifest_blob_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    created_by: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)

    event: Mapped["Event"] = relationship("Event", back_populates="memories")


class LedgerOperation(Base):
    """Idempotency claim for a ledger write, kept until the mirror is consistent"""
    __tablename__ = 'ledger_operations'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    operation_key: Mapped[str] = mapped_column(String(255), nullable=False)
    operation_type: Mapped[str] = mapped_column(String(50), nullable=False)
    telegram_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    idempotency_token: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    status: Mapped[str] = mapped_column(String(30), default=LedgerOperationStatus.PROCESSING.value, nullable=False)
    tx_hash: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    entity_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), server_default=func.now(), nullable=False)

    __table_args__ = (
        Index('ix_ledger_operations_key', 'operation_key', unique=True),
        Index('ix_ledger_operations_status', 'status', 'updated_at'),
        CheckConstraint(
            f"status IN ('{LedgerOperationStatus.PROCESSING.value}', "
            f"'{LedgerOperationStatus.COMPLETED.value}', "
            f"'{LedgerOperationStatus.RECONCILIATION_REQUIRED.value}', "
            f"'{LedgerOperationStatus.MANUAL_REVIEW.value}')",
            name='ck_ledger_operation_status_valid'
        ),
    )
