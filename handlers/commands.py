"""
Command handlers: wallet, listings, flow starters and event actions.

Flow commands replace any active conversation; every other command leaves
the user's conversation untouched.
"""

import logging
from html import escape

from telegram import Message, Update
from telegram.constants import ParseMode
from telegram.ext import Application, CallbackQueryHandler, CommandHandler, ContextTypes, MessageHandler, filters

from config import Config
from handlers.rendering import render_event_list, send_operation_response, send_prompts
from services.ledger_gateway import LedgerError
from services.wallet_service import CustodyError
from utils.bot_context import get_orchestrator, get_scene_engine
from utils.decimal_precision import MonetaryDecimal
from utils.keyboards import CallbackData, event_action_keyboard, remove_keyboard

logger = logging.getLogger(__name__)

FLOW_COMMANDS = ("create_event", "join_event", "confirm_attendance", "create_memory")

HELP_TEXT = (
    "<b>How it works</b>\n"
    "1. /create_event sets a time, a place and a stake.\n"
    "2. Friends /join_event and lock the stake.\n"
    "3. At the venue, /confirm_attendance checks your location.\n"
    "4. The organiser runs /finalize_event; attendees share the pool.\n"
    "5. /create_memory turns a photo into a poster stored on Walrus.\n\n"
    "/events · /my_events · /wallet · /balance · /memories · /cancel"
)

NOT_REGISTERED_TEXT = "You don't have a wallet yet. Send /start to create one."


async def start_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Register the user (creating a wallet on first use) and show help"""
    user = update.effective_user
    message = update.effective_message
    if not user or not message:
        return

    try:
        registration = await get_orchestrator(context).register_user(user.id, user.full_name)
    except CustodyError as e:
        logger.error(f"❌ WALLET_CREATION_FAILED: user {user.id}: {e}")
        await message.reply_text("⚠️ I couldn't create your wallet right now. Please try /start again later.")
        return

    greeting = "Welcome" if registration.created else "Welcome back"
    await message.reply_text(
        f"👋 {greeting} to <b>{escape(Config.PLATFORM_NAME)}</b>!\n\n"
        f"Your wallet on {escape(Config.CHAIN_NAME)}:\n<code>{registration.user.wallet_address}</code>\n\n"
        f"{HELP_TEXT}",
        parse_mode=ParseMode.HTML,
    )


async def help_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if update.effective_message:
        await update.effective_message.reply_text(HELP_TEXT, parse_mode=ParseMode.HTML)


async def wallet_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    message = update.effective_message
    user = await get_orchestrator(context).get_user(update.effective_user.id)
    if user is None:
        await message.reply_text(NOT_REGISTERED_TEXT)
        return
    explorer = f"{Config.BLOCK_EXPLORER_URL}/address/{user.wallet_address}"
    await message.reply_text(
        f"👛 Your wallet on {escape(Config.CHAIN_NAME)}:\n<code>{user.wallet_address}</code>\n"
        f'<a href="{escape(explorer, quote=True)}">View on explorer</a>',
        parse_mode=ParseMode.HTML,
    )


async def balance_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    message = update.effective_message
    try:
        result = await get_orchestrator(context).get_wallet_balance(update.effective_user.id)
    except LedgerError as e:
        logger.error(f"❌ BALANCE_LOOKUP_FAILED: user {update.effective_user.id}: {e}")
        await message.reply_text("⚠️ Balance is unavailable right now. Please try again later.")
        return

    if result is None:
        await message.reply_text(NOT_REGISTERED_TEXT)
        return
    user, balance = result
    await message.reply_text(
        f"💰 Balance: <b>{MonetaryDecimal.format_amount(balance)}</b>\n<code>{user.wallet_address}</code>",
        parse_mode=ParseMode.HTML,
    )


async def events_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    events = await get_orchestrator(context).list_upcoming_events()
    await update.effective_message.reply_text(
        render_event_list("📅 <b>Open events</b>", events, "Nothing scheduled yet. Start one with /create_event."),
        parse_mode=ParseMode.HTML,
    )


async def my_events_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    orchestrator = get_orchestrator(context)
    telegram_id = update.effective_user.id
    created = await orchestrator.list_created_events(telegram_id)
    joined = await orchestrator.list_joined_events(telegram_id)
    text = (
        render_event_list("🗂 <b>Created by you</b>", created, "None yet.")
        + "\n\n"
        + render_event_list("🤝 <b>Joined</b>", joined, "None yet.")
    )
    await update.effective_message.reply_text(text, parse_mode=ParseMode.HTML)


async def flow_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Start a conversation flow, replacing whatever the user was doing"""
    user = update.effective_user
    message = update.effective_message
    if not user or not message or not message.text:
        return

    engine = get_scene_engine(context)
    flow = engine.flow_for_command(message.text)
    if flow is None:
        return

    if await get_orchestrator(context).get_user(user.id) is None:
        await message.reply_text(NOT_REGISTERED_TEXT)
        return

    async with engine.user_turn(user.id):
        response = await engine.start_flow(user.id, flow)
        await send_prompts(message, response.prompts, finished=response.finished)


async def cancel_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    user = update.effective_user
    engine = get_scene_engine(context)
    async with engine.user_turn(user.id):
        cancelled = await engine.cancel(user.id)
    text = "✖️ Cancelled." if cancelled else "Nothing to cancel."
    await update.effective_message.reply_text(text, reply_markup=remove_keyboard())


async def finalize_event_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    events = await get_orchestrator(context).list_created_events(update.effective_user.id, finalized=False)
    message = update.effective_message
    if not events:
        await message.reply_text("You have no open events to finalize.")
        return
    await message.reply_text(
        "🏁 Which event do you want to finalize? This cannot be undone.",
        reply_markup=event_action_keyboard(events, CallbackData.FINALIZE_EVENT),
    )


async def finalize_event_callback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    query = update.callback_query
    await query.answer()
    event_id = _callback_event_id(query.data, CallbackData.FINALIZE_EVENT)
    if event_id is None or not isinstance(query.message, Message):
        return

    # Remove the buttons so the same choice can't be tapped twice
    await query.edit_message_reply_markup(reply_markup=None)
    await query.message.reply_text("⏳ Finalizing on-chain...")

    user_id = update.effective_user.id
    async with get_scene_engine(context).user_turn(user_id):
        response = await get_orchestrator(context).finalize_event(user_id, event_id)
    await send_operation_response(query.message, response)


async def memories_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    events = await get_orchestrator(context).list_finalized_events()
    message = update.effective_message
    if not events:
        await message.reply_text("No finalized events yet.")
        return
    await message.reply_text(
        "📚 Pick an event to see its memories:",
        reply_markup=event_action_keyboard(events, CallbackData.SHOW_MEMORIES),
    )


async def memories_callback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    query = update.callback_query
    await query.answer()
    event_id = _callback_event_id(query.data, CallbackData.SHOW_MEMORIES)
    if event_id is None or not isinstance(query.message, Message):
        return

    memories = await get_orchestrator(context).list_event_memories(event_id)
    if not memories:
        await query.message.reply_text("No memories for this event yet. Add one with /create_memory.")
        return
    lines = [
        f'{index}. <a href="{escape(url, quote=True)}">Poster</a> · {memory.created_at:%Y-%m-%d}'
        for index, (memory, url) in enumerate(memories, start=1)
    ]
    await query.message.reply_text("🖼 <b>Memories</b>\n\n" + "\n".join(lines), parse_mode=ParseMode.HTML)


async def unknown_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if update.effective_message:
        await update.effective_message.reply_text("Unknown command. See /help.")


def _callback_event_id(data: str, prefix: str):
    try:
        return int((data or "")[len(prefix):])
    except ValueError:
        logger.warning(f"Malformed callback data: {data!r}")
        return None


def register_command_handlers(application: Application) -> None:
    """Register before the conversation router"""
    application.add_handler(CommandHandler("start", start_command))
    application.add_handler(CommandHandler("help", help_command))
    application.add_handler(CommandHandler("wallet", wallet_command))
    application.add_handler(CommandHandler("balance", balance_command))
    application.add_handler(CommandHandler("events", events_command))
    application.add_handler(CommandHandler("my_events", my_events_command))
    application.add_handler(CommandHandler(list(FLOW_COMMANDS), flow_command))
    application.add_handler(CommandHandler("cancel", cancel_command))
    application.add_handler(CommandHandler("finalize_event", finalize_event_command))
    application.add_handler(CommandHandler("memories", memories_command))
    application.add_handler(
        CallbackQueryHandler(finalize_event_callback, pattern=f"^{CallbackData.FINALIZE_EVENT}")
    )
    application.add_handler(CallbackQueryHandler(memories_callback, pattern=f"^{CallbackData.SHOW_MEMORIES}"))
    application.add_handler(MessageHandler(filters.COMMAND, unknown_command))
    logger.info("✅ Command handlers registered")
