"""
Record store tests against SQLite
Idempotent mirror writes, operation claims and the listing queries
"""

from datetime import datetime
from decimal import Decimal

import pytest

from models import LedgerOperationStatus, LedgerOperationType


async def add_event(record_store, event_id, name="Beach Cleanup", creator="0xcreator", **kwargs):
    return await record_store.insert_event(
        event_id=event_id,
        name=name,
        starts_at=kwargs.pop("starts_at", datetime(2026, 3, 1, 9, 0)),
        stake_amount=Decimal("0.01"),
        creator_address=creator,
        **kwargs,
    )


class TestUsers:

    @pytest.mark.asyncio
    async def test_insert_and_lookup(self, record_store):
        await record_store.insert_user(telegram_id=1, wallet_address="0xabc", signer_ref="key-1", display_name="A")

        by_id = await record_store.get_user(1)
        by_address = await record_store.get_user_by_address("0xabc")

        assert by_id.wallet_address == "0xabc"
        assert by_address.telegram_id == 1

    @pytest.mark.asyncio
    async def test_second_insert_returns_first_wallet(self, record_store):
        await record_store.insert_user(telegram_id=1, wallet_address="0xabc", signer_ref="key-1")

        again = await record_store.insert_user(telegram_id=1, wallet_address="0xdef", signer_ref="key-2")

        assert again.wallet_address == "0xabc"


class TestEvents:

    @pytest.mark.asyncio
    async def test_insert_is_idempotent(self, record_store):
        await add_event(record_store, 1, create_tx_hash="0x1")
        replay = await add_event(record_store, 1, name="Other name", create_tx_hash="0x2")

        assert replay.name == "Beach Cleanup"
        assert replay.create_tx_hash == "0x1"

    @pytest.mark.asyncio
    async def test_finalize_flips_once(self, record_store):
        await add_event(record_store, 1)

        assert await record_store.set_event_finalized(1, "0xf") is True
        assert await record_store.set_event_finalized(1, "0xg") is False
        event = await record_store.get_event(1)
        assert event.finalized
        assert event.finalize_tx_hash == "0xf"

    @pytest.mark.asyncio
    async def test_search_prefers_exact_match(self, record_store):
        await add_event(record_store, 1, name="Beach")
        await add_event(record_store, 2, name="Beach Volleyball")

        assert [event.id for event in await record_store.search_open_events("beach")] == [1]
        assert [event.id for event in await record_store.search_open_events("BEACH V")] == [2]
        assert await record_store.search_open_events("   ") == []

    @pytest.mark.asyncio
    async def test_search_treats_wildcards_literally(self, record_store):
        await add_event(record_store, 1, name="Beach Cleanup")

        assert await record_store.search_open_events("%") == []

    @pytest.mark.asyncio
    async def test_list_events_filters_and_orders(self, record_store):
        await add_event(record_store, 1, starts_at=datetime(2026, 5, 1))
        await add_event(record_store, 2, starts_at=datetime(2026, 4, 1), creator="0xother")
        await add_event(record_store, 3, starts_at=datetime(2026, 6, 1))
        await record_store.set_event_finalized(3)

        assert [e.id for e in await record_store.list_events()] == [2, 1, 3]
        assert [e.id for e in await record_store.list_events(newest_first=True)] == [3, 1, 2]
        assert [e.id for e in await record_store.list_events(creator_address="0xcreator")] == [1, 3]
        assert [e.id for e in await record_store.list_events(finalized=False)] == [2, 1]
        assert [e.id for e in await record_store.list_events(starts_after=datetime(2026, 4, 15))] == [1, 3]


class TestParticipants:

    @pytest.mark.asyncio
    async def test_insert_is_idempotent(self, record_store):
        await add_event(record_store, 1)

        first = await record_store.insert_participant(1, "0xp", telegram_id=2, stake_tx_hash="0x1")
        second = await record_store.insert_participant(1, "0xp", telegram_id=2, stake_tx_hash="0x2")

        assert second.id == first.id
        assert await record_store.count_participants(1) == 1

    @pytest.mark.asyncio
    async def test_attendance_flips_once(self, record_store):
        await add_event(record_store, 1)
        await record_store.insert_participant(1, "0xp")

        assert await record_store.set_attended(1, "0xp", tx_hash="0xa", latitude=1.0, longitude=2.0) is True
        assert await record_store.set_attended(1, "0xp", tx_hash="0xb") is False
        participant = await record_store.get_participant(1, "0xp")
        assert participant.attendance_tx_hash == "0xa"
        assert participant.checkin_longitude == 2.0

    @pytest.mark.asyncio
    async def test_joined_and_attendable(self, record_store):
        await add_event(record_store, 1)
        await add_event(record_store, 2, name="Book Club")
        await add_event(record_store, 3, name="Night Hike")
        for event_id in (1, 2, 3):
            await record_store.insert_participant(event_id, "0xp")
        await record_store.set_attended(1, "0xp")
        await record_store.set_event_finalized(3)

        assert {e.id for e in await record_store.list_joined_events("0xp")} == {1, 2, 3}
        assert [e.id for e in await record_store.list_attendable_events("0xp")] == [2]
        assert await record_store.list_joined_events("0xnobody") == []


class TestMemories:

    @pytest.mark.asyncio
    async def test_memories_per_event(self, record_store):
        await add_event(record_store, 1)
        await add_event(record_store, 2)
        await record_store.insert_memory(1, "blob-a", "manifest-a", created_by=9)
        await record_store.insert_memory(1, "blob-b")

        memories = await record_store.list_memories(1)

        assert [memory.blob_id for memory in memories] == ["blob-a", "blob-b"]
        assert memories[0].manifest_blob_id == "manifest-a"
        assert await record_store.list_memories(2) == []


class TestOperationClaims:

    @pytest.mark.asyncio
    async def test_only_one_claim_wins(self, record_store):
        first = await record_store.claim_operation("join_event:1:0xp", LedgerOperationType.JOIN_EVENT, "tok-1")
        second = await record_store.claim_operation("join_event:1:0xp", LedgerOperationType.JOIN_EVENT, "tok-2")

        assert first.claimed
        assert not second.claimed
        assert second.operation.idempotency_token == "tok-1"

    @pytest.mark.asyncio
    async def test_claim_lifecycle(self, record_store):
        key = "finalize_event:1"
        await record_store.claim_operation(key, LedgerOperationType.FINALIZE_EVENT, "tok", payload={"event_id": 1})
        await record_store.attach_tx_hash(key, "0xf")

        unsettled = await record_store.list_unsettled_operations()
        assert [operation.operation_key for operation in unsettled] == [key]
        assert unsettled[0].payload == {"event_id": 1}

        await record_store.complete_operation(key, "1")
        operation = await record_store.get_operation(key)
        assert operation.status == LedgerOperationStatus.COMPLETED.value
        assert operation.entity_id == "1"
        assert operation.tx_hash == "0xf"
        assert await record_store.list_unsettled_operations() == []

    @pytest.mark.asyncio
    async def test_completed_claim_is_never_released(self, record_store):
        key = "finalize_event:1"
        await record_store.claim_operation(key, LedgerOperationType.FINALIZE_EVENT, "tok")
        await record_store.complete_operation(key)

        await record_store.release_operation(key)

        assert await record_store.get_operation(key) is not None

    @pytest.mark.asyncio
    async def test_released_claim_can_be_taken_again(self, record_store):
        key = "join_event:1:0xp"
        await record_store.claim_operation(key, LedgerOperationType.JOIN_EVENT, "tok-1")
        await record_store.release_operation(key)

        retry = await record_store.claim_operation(key, LedgerOperationType.JOIN_EVENT, "tok-2")

        assert retry.claimed

    @pytest.mark.asyncio
    async def test_reconciliation_flag_is_unsettled(self, record_store):
        key = "join_event:1:0xp"
        await record_store.claim_operation(key, LedgerOperationType.JOIN_EVENT, "tok")
        await record_store.mark_reconciliation_required(key, "x" * 5000)

        operation = await record_store.get_operation(key)
        assert operation.status == LedgerOperationStatus.RECONCILIATION_REQUIRED.value
        assert len(operation.error_message) == 2000
        assert [op.operation_key for op in await record_store.list_unsettled_operations()] == [key]

    @pytest.mark.asyncio
    async def test_final_updates_carry_transaction_hash(self, record_store):
        key = "join_event:1:0xp"
        await record_store.claim_operation(key, LedgerOperationType.JOIN_EVENT, "tok")

        await record_store.mark_reconciliation_required(key, "db down", tx_hash="0xa")
        assert (await record_store.get_operation(key)).tx_hash == "0xa"

        await record_store.complete_operation(key, "7", tx_hash="0xa")
        operation = await record_store.get_operation(key)
        assert operation.tx_hash == "0xa"
        assert operation.entity_id == "7"

    @pytest.mark.asyncio
    async def test_manual_review_leaves_the_queue_and_is_never_released(self, record_store):
        key = "create_event:tok"
        await record_store.claim_operation(key, LedgerOperationType.CREATE_EVENT, "tok")
        await record_store.mark_manual_review(key, "receipt has no event id", tx_hash="0xc")

        await record_store.release_operation(key)

        operation = await record_store.get_operation(key)
        assert operation.status == LedgerOperationStatus.MANUAL_REVIEW.value
        assert operation.tx_hash == "0xc"
        assert await record_store.list_unsettled_operations() == []
