"""
Telegram handler tests
Rendering, the conversation router and command handlers with mocked updates
"""

from datetime import datetime
from decimal import Decimal
from unittest.mock import AsyncMock, Mock

import pytest
from telegram import InlineKeyboardMarkup, Message, ReplyKeyboardMarkup
from telegram.constants import ParseMode
from telegram.error import NetworkError

from config import Config
from conftest import fixed_clock
from handlers import commands
from handlers.conversation_router import EXPIRED_BUTTON_TEXT, NO_ACTIVE_FLOW_TEXT, ConversationRouter
from handlers.rendering import render_event_line, render_operation_response, send_prompts
from services.event_intents import CreateMemoryIntent
from services.event_orchestrator import (
    EventOperationResponse,
    OperationResult,
    RejectionReason,
    WalletRegistration,
)
from services.scene_engine import EventSummary, FlowType, InboundInput, Option, Prompt, SceneEngine
from services.wallet_service import CustodyError
from utils.bot_context import ORCHESTRATOR_KEY, SCENE_ENGINE_KEY

USER_ID = 4242


def make_message():
    message = Mock(spec=Message)
    message.reply_text = AsyncMock()
    message.text = None
    return message


def make_update(message, user_id=USER_ID):
    update = Mock()
    update.effective_user.id = user_id
    update.effective_user.full_name = "Dana Tester"
    update.effective_message = message
    return update


def make_context(orchestrator, engine):
    context = Mock()
    context.bot_data = {ORCHESTRATOR_KEY: orchestrator, SCENE_ENGINE_KEY: engine}
    context.bot.get_file = AsyncMock()
    return context


def summary(event_id=7, name="Beach Cleanup", finalized=False, has_anchor=True):
    return EventSummary(
        event_id=event_id,
        name=name,
        starts_at=datetime(2026, 3, 1, 9, 0),
        stake_amount=Decimal("0.01"),
        has_anchor=has_anchor,
        finalized=finalized,
    )


@pytest.fixture
def directory():
    directory = Mock()
    directory.search_open_events = AsyncMock(return_value=[summary()])
    directory.list_attendable_events = AsyncMock(return_value=[summary()])
    directory.list_memory_events = AsyncMock(return_value=[summary(finalized=True)])
    return directory


@pytest.fixture
def engine(directory):
    return SceneEngine(directory, session_timeout_minutes=0, clock=fixed_clock)


@pytest.fixture
def orchestrator():
    orchestrator = Mock()
    orchestrator.execute_intent = AsyncMock(return_value=EventOperationResponse(
        result=OperationResult.SUCCESS, message="Joined 'Beach Cleanup'", event_id=7, tx_hash="0x" + "ab" * 32,
    ))
    return orchestrator


class TestRendering:

    def test_success_shows_event_and_transaction(self):
        text = render_operation_response(EventOperationResponse(
            result=OperationResult.SUCCESS, message="Event 'Beach Cleanup' created", event_id=1, tx_hash="0xdeadbeef00",
        ))

        assert text.startswith("✅ Event &#x27;Beach Cleanup&#x27; created")
        assert "Event ID: <code>1</code>" in text
        assert f'href="{Config.BLOCK_EXPLORER_URL}/tx/0xdeadbeef00"' in text

    def test_message_is_escaped(self):
        text = render_operation_response(EventOperationResponse.rejected(
            RejectionReason.ALREADY_JOINED, "You have already joined '<b>Party</b>'."
        ))

        assert text.startswith("🚫")
        assert "<b>Party</b>" not in text
        assert "&lt;b&gt;Party&lt;/b&gt;" in text

    def test_geofence_absent_suggests_retry(self):
        text = render_operation_response(EventOperationResponse(
            result=OperationResult.GEOFENCE_ABSENT, message="You are 1100 m away.", event_id=1, distance_km=1.1,
        ))

        assert text.startswith("📍")
        assert "/confirm_attendance" in text
        assert "Checked in" not in text

    def test_memory_links_poster_instead_of_event_id(self):
        text = render_operation_response(EventOperationResponse(
            result=OperationResult.SUCCESS, message="Memory stored", event_id=1,
            blob_url="https://aggregator.test/v1/blobs/abc",
        ))

        assert "Event ID" not in text
        assert 'href="https://aggregator.test/v1/blobs/abc"' in text

    def test_pending_and_reconciliation_icons(self):
        pending = render_operation_response(EventOperationResponse(OperationResult.PENDING, "Submitted"))
        stale = render_operation_response(EventOperationResponse(OperationResult.RECONCILIATION_REQUIRED, "Later"))

        assert pending.startswith("⏳")
        assert stale.startswith("⚠️")

    def test_event_line_flags(self):
        line = render_event_line(summary(finalized=True))

        assert "<b>Beach Cleanup</b>" in line
        assert "2026-03-01 09:00 UTC" in line
        assert "(finalized, geofenced)" in line

    @pytest.mark.asyncio
    async def test_prompt_markup(self):
        message = make_message()

        await send_prompts(message, [
            Prompt("Pick one", options=[Option("Beach Cleanup", "event:7")]),
            Prompt("Share location", request_location=True),
        ])

        first, second = message.reply_text.await_args_list
        assert isinstance(first.kwargs["reply_markup"], InlineKeyboardMarkup)
        assert first.kwargs["reply_markup"].inline_keyboard[0][0].callback_data == "scene:event:7"
        assert isinstance(second.kwargs["reply_markup"], ReplyKeyboardMarkup)
        assert first.kwargs["parse_mode"] == ParseMode.HTML


class TestConversationRouter:

    @pytest.mark.asyncio
    async def test_text_without_flow_gets_hint(self, orchestrator, engine):
        message = make_message()
        context = make_context(orchestrator, engine)

        taken = await ConversationRouter.dispatch(
            make_update(message), context, InboundInput.from_text("hello"), message
        )

        assert taken is False
        message.reply_text.assert_awaited_once_with(NO_ACTIVE_FLOW_TEXT)

    @pytest.mark.asyncio
    async def test_stale_button_is_explained(self, orchestrator, engine):
        message = make_message()

        await ConversationRouter.dispatch(
            make_update(message), make_context(orchestrator, engine), InboundInput.from_selection("confirm"), message
        )

        message.reply_text.assert_awaited_once_with(EXPIRED_BUTTON_TEXT)

    @pytest.mark.asyncio
    async def test_command_text_is_left_alone(self, orchestrator, engine):
        message = make_message()
        await engine.start_flow(USER_ID, FlowType.CREATE_EVENT)

        taken = await ConversationRouter.dispatch(
            make_update(message), make_context(orchestrator, engine), InboundInput.from_text("/events"), message
        )

        assert taken is False
        message.reply_text.assert_not_awaited()
        assert engine.state_manager.has_active_scene(USER_ID)

    @pytest.mark.asyncio
    async def test_step_prompt_is_sent(self, orchestrator, engine):
        message = make_message()
        await engine.start_flow(USER_ID, FlowType.CREATE_EVENT)

        taken = await ConversationRouter.dispatch(
            make_update(message), make_context(orchestrator, engine), InboundInput.from_text("Beach Cleanup"), message
        )

        assert taken is True
        text = message.reply_text.await_args.args[0]
        assert "When does <b>Beach Cleanup</b> start?" in text
        orchestrator.execute_intent.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_completed_flow_runs_intent(self, orchestrator, engine):
        message = make_message()
        context = make_context(orchestrator, engine)
        await engine.start_flow(USER_ID, FlowType.JOIN_EVENT)
        await engine.handle_input(USER_ID, InboundInput.from_text("beach"))

        await ConversationRouter.dispatch(make_update(message), context, InboundInput.from_selection("confirm"), message)

        intent, photo = orchestrator.execute_intent.await_args.args
        assert intent.event_id == 7
        assert intent.telegram_id == USER_ID
        assert photo is None
        assert message.reply_text.await_count == 2
        assert message.reply_text.await_args.args[0].startswith("✅ Joined")
        assert not engine.state_manager.has_active_scene(USER_ID)

    @pytest.mark.asyncio
    async def test_memory_intent_downloads_photo(self, orchestrator, engine):
        message = make_message()
        context = make_context(orchestrator, engine)
        telegram_file = Mock()
        telegram_file.download_as_bytearray = AsyncMock(return_value=bytearray(b"jpeg"))
        context.bot.get_file = AsyncMock(return_value=telegram_file)
        intent = CreateMemoryIntent(USER_ID, 7, "photo-file-1", "tok")

        await ConversationRouter.execute(context, message, intent)

        context.bot.get_file.assert_awaited_once_with("photo-file-1")
        orchestrator.execute_intent.assert_awaited_once_with(intent, b"jpeg")

    @pytest.mark.asyncio
    async def test_photo_download_failure_skips_orchestrator(self, orchestrator, engine):
        message = make_message()
        context = make_context(orchestrator, engine)
        context.bot.get_file = AsyncMock(side_effect=NetworkError("timed out"))

        await ConversationRouter.execute(context, message, CreateMemoryIntent(USER_ID, 7, "photo-file-1", "tok"))

        orchestrator.execute_intent.assert_not_awaited()
        assert "couldn't download" in message.reply_text.await_args.args[0]

    @pytest.mark.asyncio
    async def test_button_press_routes_selection(self, orchestrator, engine):
        message = make_message()
        await engine.start_flow(USER_ID, FlowType.CONFIRM_ATTENDANCE)
        update = make_update(message)
        update.callback_query.data = "scene:event:7"
        update.callback_query.answer = AsyncMock()
        update.callback_query.message = message

        await ConversationRouter.route_option(update, make_context(orchestrator, engine))

        update.callback_query.answer.assert_awaited_once()
        assert message.reply_text.await_args.kwargs["reply_markup"] is not None
        status = await engine.get_scene_status(USER_ID)
        assert status["current_step"] == "await_location"


class TestCommands:

    @pytest.mark.asyncio
    async def test_start_registers_and_greets(self, engine):
        message = make_message()
        user = Mock(wallet_address="0xwallet")
        orchestrator = Mock()
        orchestrator.register_user = AsyncMock(return_value=WalletRegistration(user=user, created=True))

        await commands.start_command(make_update(message), make_context(orchestrator, engine))

        orchestrator.register_user.assert_awaited_once_with(USER_ID, "Dana Tester")
        text = message.reply_text.await_args.args[0]
        assert text.startswith("👋 Welcome to")
        assert "<code>0xwallet</code>" in text

    @pytest.mark.asyncio
    async def test_start_reports_custody_failure(self, engine):
        message = make_message()
        orchestrator = Mock()
        orchestrator.register_user = AsyncMock(side_effect=CustodyError("down"))

        await commands.start_command(make_update(message), make_context(orchestrator, engine))

        assert "couldn't create your wallet" in message.reply_text.await_args.args[0]

    @pytest.mark.asyncio
    async def test_flow_command_requires_wallet(self, engine):
        message = make_message()
        message.text = "/create_event"
        orchestrator = Mock()
        orchestrator.get_user = AsyncMock(return_value=None)

        await commands.flow_command(make_update(message), make_context(orchestrator, engine))

        message.reply_text.assert_awaited_once_with(commands.NOT_REGISTERED_TEXT)
        assert not engine.state_manager.has_active_scene(USER_ID)

    @pytest.mark.asyncio
    async def test_flow_command_replaces_active_flow(self, engine):
        message = make_message()
        message.text = "/join_event@MeetupStakesBot"
        orchestrator = Mock()
        orchestrator.get_user = AsyncMock(return_value=Mock())
        await engine.start_flow(USER_ID, FlowType.CREATE_EVENT)

        await commands.flow_command(make_update(message), make_context(orchestrator, engine))

        status = await engine.get_scene_status(USER_ID)
        assert status["flow"] == "join_event"
        assert "Which event do you want to join?" in message.reply_text.await_args.args[0]

    @pytest.mark.asyncio
    async def test_cancel_command(self, orchestrator, engine):
        message = make_message()
        await engine.start_flow(USER_ID, FlowType.CREATE_EVENT)

        await commands.cancel_command(make_update(message), make_context(orchestrator, engine))
        await commands.cancel_command(make_update(message), make_context(orchestrator, engine))

        first, second = message.reply_text.await_args_list
        assert first.args[0] == "✖️ Cancelled."
        assert second.args[0] == "Nothing to cancel."

    @pytest.mark.asyncio
    async def test_finalize_callback(self, engine):
        message = make_message()
        orchestrator = Mock()
        orchestrator.finalize_event = AsyncMock(return_value=EventOperationResponse.rejected(
            RejectionReason.NOT_CREATOR, "Only the event creator can finalize it.", 7
        ))
        update = make_update(message)
        update.callback_query.data = "finalize:7"
        update.callback_query.answer = AsyncMock()
        update.callback_query.edit_message_reply_markup = AsyncMock()
        update.callback_query.message = message

        await commands.finalize_event_callback(update, make_context(orchestrator, engine))

        update.callback_query.edit_message_reply_markup.assert_awaited_once_with(reply_markup=None)
        orchestrator.finalize_event.assert_awaited_once_with(USER_ID, 7)
        assert "Only the event creator" in message.reply_text.await_args.args[0]

    @pytest.mark.asyncio
    async def test_malformed_finalize_callback_is_ignored(self, engine):
        message = make_message()
        orchestrator = Mock()
        orchestrator.finalize_event = AsyncMock()
        update = make_update(message)
        update.callback_query.data = "finalize:abc"
        update.callback_query.answer = AsyncMock()
        update.callback_query.message = message

        await commands.finalize_event_callback(update, make_context(orchestrator, engine))

        orchestrator.finalize_event.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_balance_unregistered(self, engine):
        message = make_message()
        orchestrator = Mock()
        orchestrator.get_wallet_balance = AsyncMock(return_value=None)

        await commands.balance_command(make_update(message), make_context(orchestrator, engine))

        message.reply_text.assert_awaited_once_with(commands.NOT_REGISTERED_TEXT)

    @pytest.mark.asyncio
    async def test_events_listing(self, engine):
        message = make_message()
        orchestrator = Mock()
        orchestrator.list_upcoming_events = AsyncMock(return_value=[summary(), summary(8, "Book Club")])

        await commands.events_command(make_update(message), make_context(orchestrator, engine))

        text = message.reply_text.await_args.args[0]
        assert "<b>Beach Cleanup</b>" in text
        assert "<b>Book Club</b>" in text
