"""
Shared fixtures for the Meetup Stakes Bot test suite

Key Components:
1. Environment defaults applied before config is imported
2. Per-test SQLite record store (aiosqlite, temporary file)
3. In-memory fakes for the ledger, custody, blob store and poster service
4. A fixed clock so date validation is deterministic
"""

import os

# Config reads the environment at import time
os.environ.setdefault("BOT_TOKEN", "123456:TEST-TOKEN")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("LEDGER_GATEWAY_URL", "https://ledger-gateway.test")
os.environ.setdefault("CUSTODY_GATEWAY_URL", "https://custody.test")
os.environ.setdefault("OPERATOR_WALLET_ADDRESS", "0xoperator")
os.environ.setdefault("OPERATOR_SIGNER_REF", "operator-key-ref")
os.environ.setdefault("LEDGER_POLL_INTERVAL_SECONDS", "0.01")
os.environ.setdefault("CURRENCY_SYMBOL", "ETH")

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import pytest
import pytest_asyncio

from database import build_async_engine, build_session_factory, create_tables
from services.event_orchestrator import EventOrchestrator
from services.ledger_gateway import LedgerClient, LedgerError, TransactionReceipt
from services.poster_service import PosterServiceError
from services.record_store import EventRecordStore
from services.wallet_service import CustodyError, Signer, WalletCustody
from services.walrus_service import BlobStoreError

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

FIXED_NOW = datetime(2026, 1, 1, 12, 0)
FUTURE_START = datetime(2026, 3, 1, 9, 0)

CREATOR_ID = 1001
PARTICIPANT_ID = 2002
OTHER_ID = 3003


def fixed_clock() -> datetime:
    return FIXED_NOW


class FakeLedger(LedgerClient):
    """
    In-memory contract: assigns event ids, mines instantly unless told to
    hold confirmations, and dedupes submissions by idempotency token.
    """

    def __init__(self):
        self.calls: List[Tuple[str, Dict[str, Any]]] = []
        self.mined: Dict[str, TransactionReceipt] = {}
        self.held: Dict[str, TransactionReceipt] = {}
        self.balances: Dict[str, Decimal] = {}
        self.next_event_id = 1
        self.submit_error: Optional[Exception] = None
        self.revert = False
        self.hold_confirmation = False
        self._by_token: Dict[str, str] = {}
        self._tx_counter = 0

    def calls_for(self, method: str) -> List[Dict[str, Any]]:
        return [kwargs for name, kwargs in self.calls if name == method]

    def confirm_held(self) -> None:
        self.mined.update(self.held)
        self.held.clear()

    def _submit(self, method: str, token: str, event_id: Optional[int] = None, **kwargs: Any) -> str:
        self.calls.append((method, dict(kwargs, event_id=event_id, idempotency_token=token)))
        if self.submit_error is not None:
            raise self.submit_error
        if token in self._by_token:
            return self._by_token[token]

        self._tx_counter += 1
        tx_hash = f"0x{self._tx_counter:064x}"
        receipt = TransactionReceipt(
            tx_hash=tx_hash,
            success=not self.revert,
            event_id=event_id,
            block_number=1000 + self._tx_counter,
            error="execution reverted" if self.revert else None,
        )
        (self.held if self.hold_confirmation else self.mined)[tx_hash] = receipt
        self._by_token[token] = tx_hash
        return tx_hash

    async def submit_create_event(self, name, when_epoch, stake_amount, signer, idempotency_token):
        event_id = None
        if self.submit_error is None and idempotency_token not in self._by_token:
            event_id = self.next_event_id
            self.next_event_id += 1
        return self._submit(
            "create_event", idempotency_token, event_id=event_id,
            name=name, when_epoch=when_epoch, stake_amount=stake_amount, signer=signer,
        )

    async def submit_join_event(self, event_id, stake_amount, signer, idempotency_token):
        return self._submit(
            "join_event", idempotency_token, event_id=event_id, stake_amount=stake_amount, signer=signer
        )

    async def submit_finalize_event(self, event_id, signer, idempotency_token):
        return self._submit("finalize_event", idempotency_token, event_id=event_id, signer=signer)

    async def submit_mark_attendance(self, event_id, user_address, signer, idempotency_token):
        return self._submit(
            "mark_attendance", idempotency_token, event_id=event_id, user_address=user_address, signer=signer
        )

    async def get_receipt(self, tx_hash):
        return self.mined.get(tx_hash)

    async def get_balance(self, address):
        if address not in self.balances:
            raise LedgerError(f"Unknown account {address}")
        return self.balances[address]

    async def find_by_idempotency_token(self, idempotency_token):
        return self._by_token.get(idempotency_token)


class FakeCustody:
    """Deterministic wallets: the address encodes the telegram id"""

    signer_for = staticmethod(WalletCustody.signer_for)

    def __init__(self):
        self.created: List[int] = []
        self.fail = False
        self.operator_configured = True

    async def create_wallet(self, telegram_id: int) -> Signer:
        if self.fail:
            raise CustodyError("custody gateway unavailable")
        self.created.append(telegram_id)
        return Signer(address=f"0x{telegram_id:040x}", key_ref=f"custody-key-{telegram_id}")

    def operator_signer(self) -> Signer:
        if not self.operator_configured:
            raise CustodyError("Operator signer is not configured")
        return Signer(address="0xoperator", key_ref="operator-key-ref")


class FakeBlobStore:
    def __init__(self):
        self.blobs: Dict[str, bytes] = {}
        self.json_blobs: Dict[str, Dict[str, Any]] = {}
        self.fail = False

    async def upload_blob(self, content: bytes, epochs: Optional[int] = None,
                          content_type: str = "application/octet-stream") -> str:
        if self.fail:
            raise BlobStoreError("publisher unavailable")
        blob_id = f"blob-{len(self.blobs) + len(self.json_blobs) + 1}"
        self.blobs[blob_id] = content
        return blob_id

    async def store_json(self, data: Dict[str, Any], epochs: Optional[int] = None) -> str:
        if self.fail:
            raise BlobStoreError("publisher unavailable")
        blob_id = f"blob-{len(self.blobs) + len(self.json_blobs) + 1}"
        self.json_blobs[blob_id] = data
        return blob_id

    def blob_url(self, blob_id: str) -> str:
        return f"https://aggregator.test/v1/blobs/{blob_id}"


class FakePosterService:
    enabled = True

    def __init__(self):
        self.requests: List[Tuple[str, datetime]] = []
        self.fail = False

    async def generate_poster(self, photo: bytes, event_name: str, starts_at: datetime) -> bytes:
        if self.fail:
            raise PosterServiceError("renderer unavailable")
        self.requests.append((event_name, starts_at))
        return b"poster:" + photo


@pytest_asyncio.fixture
async def record_store(tmp_path):
    """Fresh SQLite database per test"""
    engine = build_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'meetups.db'}")
    assert await create_tables(engine)
    yield EventRecordStore(build_session_factory(engine))
    await engine.dispose()


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def custody():
    return FakeCustody()


@pytest.fixture
def blob_store():
    return FakeBlobStore()


@pytest.fixture
def poster_service():
    return FakePosterService()


@pytest.fixture
def make_orchestrator(record_store, ledger, custody, blob_store, poster_service):
    def _make(confirmation_timeout: float = 2.0) -> EventOrchestrator:
        return EventOrchestrator(
            record_store=record_store,
            ledger=ledger,
            custody=custody,
            blob_store=blob_store,
            poster_service=poster_service,
            confirmation_timeout=confirmation_timeout,
            geofence_radius_km=0.2,
            earth_radius_km=6371.0,
            clock=fixed_clock,
        )
    return _make


@pytest.fixture
def orchestrator(make_orchestrator):
    return make_orchestrator()


@pytest_asyncio.fixture
async def registered_users(orchestrator):
    """Creator, participant and a bystander, each with a wallet"""
    users = {}
    for telegram_id, name in ((CREATOR_ID, "Alice"), (PARTICIPANT_ID, "Bob"), (OTHER_ID, "Carol")):
        registration = await orchestrator.register_user(telegram_id, name)
        users[telegram_id] = registration.user
    return users


@pytest_asyncio.fixture
async def open_event(orchestrator, registered_users):
    """A confirmed event anchored at (1.0, 1.0), created by CREATOR_ID"""
    response = await orchestrator.create_event(
        CREATOR_ID, "Beach Cleanup", FUTURE_START, Decimal("0.01"), latitude=1.0, longitude=1.0
    )
    assert response.success, response.message
    return response.event_id
