"""
End-to-end meetup lifecycle through the scene engine and the real orchestrator

Key Components:
1. Creator builds an anchored event through the create flow
2. Participant finds it by name and stakes
3. Participant checks in from inside the geofence
4. Creator finalizes, participant stores a memory poster
"""

from decimal import Decimal

import pytest

from conftest import CREATOR_ID, PARTICIPANT_ID, fixed_clock
from services.event_orchestrator import OperationResult
from services.ledger_gateway import LedgerError
from services.scene_engine import FlowType, InboundInput, SceneEngine


@pytest.fixture
def engine(orchestrator):
    return SceneEngine(orchestrator, session_timeout_minutes=0, clock=fixed_clock)


async def run_flow(engine, user_id, flow, inputs):
    """Start a flow and feed inputs; returns the last response"""
    response = await engine.start_flow(user_id, flow)
    for inbound in inputs:
        assert not response.finished, [prompt.text for prompt in response.prompts]
        response = await engine.handle_input(user_id, inbound)
    return response


class TestMeetupLifecycle:

    @pytest.mark.asyncio
    async def test_full_lifecycle(self, engine, orchestrator, ledger, record_store, blob_store, registered_users):
        # Create
        created = await run_flow(engine, CREATOR_ID, FlowType.CREATE_EVENT, [
            InboundInput.from_text("Beach Cleanup"),
            InboundInput.from_text("2026-03-01 09:00"),
            InboundInput.from_text("0.01"),
            InboundInput.from_location(1.0, 1.0),
        ])
        assert created.finished and created.intent is not None
        create_result = await orchestrator.execute_intent(created.intent)
        assert create_result.result == OperationResult.SUCCESS
        event_id = create_result.event_id

        # Join
        joined = await run_flow(engine, PARTICIPANT_ID, FlowType.JOIN_EVENT, [
            InboundInput.from_text("beach"),
            InboundInput.from_selection("confirm"),
        ])
        assert joined.intent.event_id == event_id
        join_result = await orchestrator.execute_intent(joined.intent)
        assert join_result.result == OperationResult.SUCCESS

        # Attend
        attended = await run_flow(engine, PARTICIPANT_ID, FlowType.CONFIRM_ATTENDANCE, [
            InboundInput.from_selection(f"event:{event_id}"),
            InboundInput.from_location(1.0015, 1.0),
        ])
        attend_result = await orchestrator.execute_intent(attended.intent)
        assert attend_result.result == OperationResult.SUCCESS
        assert attend_result.distance_km < 0.2

        # Finalize
        finalize_result = await orchestrator.finalize_event(CREATOR_ID, event_id)
        assert finalize_result.result == OperationResult.SUCCESS

        # Memory
        memory = await run_flow(engine, PARTICIPANT_ID, FlowType.CREATE_MEMORY, [
            InboundInput.from_text("1"),
            InboundInput.from_photo("photo-file-1"),
        ])
        assert memory.intent.photo_file_id == "photo-file-1"
        memory_result = await orchestrator.execute_intent(memory.intent, photo=b"jpeg")
        assert memory_result.result == OperationResult.SUCCESS

        assert [name for name, _ in ledger.calls] == [
            "create_event", "join_event", "mark_attendance", "finalize_event",
        ]
        event = await record_store.get_event(event_id)
        assert event.finalized
        assert event.stake_amount == Decimal("0.01")
        participant = await record_store.get_participant(event_id, registered_users[PARTICIPANT_ID].wallet_address)
        assert participant.attended
        assert len(await record_store.list_memories(event_id)) == 1

        for user_id in (CREATOR_ID, PARTICIPANT_ID):
            assert not engine.state_manager.has_active_scene(user_id)

    @pytest.mark.asyncio
    async def test_flow_token_reaches_the_ledger(self, engine, orchestrator, ledger, registered_users):
        created = await run_flow(engine, CREATOR_ID, FlowType.CREATE_EVENT, [
            InboundInput.from_text("Book Club"),
            InboundInput.from_text("2026-02-01 19:00"),
            InboundInput.from_text("0.5"),
            InboundInput.from_text("Central Library"),
        ])

        await orchestrator.execute_intent(created.intent)
        replay = await orchestrator.execute_intent(created.intent)

        assert replay.result == OperationResult.SUCCESS
        assert len(ledger.calls_for("create_event")) == 1
        assert ledger.calls_for("create_event")[0]["idempotency_token"] == created.intent.idempotency_token


class TestFailureLeavesNoSession:

    @pytest.mark.asyncio
    async def test_ledger_failure_after_completed_flow(self, engine, orchestrator, ledger, open_event):
        joined = await run_flow(engine, PARTICIPANT_ID, FlowType.JOIN_EVENT, [
            InboundInput.from_text("Beach Cleanup"),
            InboundInput.from_text("yes"),
        ])
        assert not engine.state_manager.has_active_scene(PARTICIPANT_ID)

        ledger.submit_error = LedgerError("gas estimation failed")
        result = await orchestrator.execute_intent(joined.intent)

        assert result.result == OperationResult.LEDGER_FAILED
        assert not engine.state_manager.has_active_scene(PARTICIPANT_ID)

        # A fresh flow gets a fresh token and succeeds
        ledger.submit_error = None
        retry = await run_flow(engine, PARTICIPANT_ID, FlowType.JOIN_EVENT, [
            InboundInput.from_text("Beach Cleanup"),
            InboundInput.from_text("yes"),
        ])
        assert retry.intent.idempotency_token != joined.intent.idempotency_token
        assert (await orchestrator.execute_intent(retry.intent)).result == OperationResult.SUCCESS

    @pytest.mark.asyncio
    async def test_check_in_outside_fence_can_be_repeated(self, engine, orchestrator, ledger, open_event):
        await orchestrator.join_event(PARTICIPANT_ID, open_event)

        far = await run_flow(engine, PARTICIPANT_ID, FlowType.CONFIRM_ATTENDANCE, [
            InboundInput.from_text("1"),
            InboundInput.from_location(1.01, 1.0),
        ])
        far_result = await orchestrator.execute_intent(far.intent)
        assert far_result.result == OperationResult.GEOFENCE_ABSENT
        assert ledger.calls_for("mark_attendance") == []

        near = await run_flow(engine, PARTICIPANT_ID, FlowType.CONFIRM_ATTENDANCE, [
            InboundInput.from_text("1"),
            InboundInput.from_location(1.0005, 1.0005),
        ])
        assert (await orchestrator.execute_intent(near.intent)).result == OperationResult.SUCCESS

    @pytest.mark.asyncio
    async def test_nothing_to_attend_ends_immediately(self, engine, registered_users):
        response = await engine.start_flow(PARTICIPANT_ID, FlowType.CONFIRM_ATTENDANCE)

        assert response.finished
        assert response.intent is None
        assert not engine.state_manager.has_active_scene(PARTICIPANT_ID)
