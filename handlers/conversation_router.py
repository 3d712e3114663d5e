"""
Conversation Router - feeds text, locations, photos and button presses into
the scene engine and hands completed intents to the orchestrator.

Every update for a user runs under that user's turn lock, so one user's
inputs are applied in arrival order while other users proceed concurrently.
"""

import logging
from typing import Optional

from telegram import Bot, Message, Update
from telegram.error import TelegramError
from telegram.ext import Application, CallbackQueryHandler, ContextTypes, MessageHandler, filters

from handlers.rendering import send_operation_response, send_prompts
from services.event_intents import CreateMemoryIntent, EventIntent
from services.scene_engine import InboundInput, InputKind
from utils.bot_context import get_orchestrator, get_scene_engine
from utils.keyboards import CallbackData

logger = logging.getLogger(__name__)

NO_ACTIVE_FLOW_TEXT = "I'm not waiting for anything right now. See /help for what I can do."
EXPIRED_BUTTON_TEXT = "That button belongs to a conversation that has ended."


async def download_photo(bot: Bot, file_id: str) -> bytes:
    telegram_file = await bot.get_file(file_id)
    return bytes(await telegram_file.download_as_bytearray())


class ConversationRouter:
    """Central router for every non-command input"""

    @staticmethod
    async def route_text(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        message = update.effective_message
        if not update.effective_user or not message or message.text is None:
            return
        await ConversationRouter.dispatch(update, context, InboundInput.from_text(message.text), message)

    @staticmethod
    async def route_location(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        message = update.effective_message
        if not update.effective_user or not message or not message.location:
            return
        inbound = InboundInput.from_location(message.location.latitude, message.location.longitude)
        await ConversationRouter.dispatch(update, context, inbound, message)

    @staticmethod
    async def route_photo(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        message = update.effective_message
        if not update.effective_user or not message or not message.photo:
            return
        # Largest size comes last
        inbound = InboundInput.from_photo(message.photo[-1].file_id)
        await ConversationRouter.dispatch(update, context, inbound, message)

    @staticmethod
    async def route_option(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        query = update.callback_query
        if not query or not update.effective_user:
            return
        await query.answer()
        if not isinstance(query.message, Message):
            return
        value = (query.data or "")[len(CallbackData.SCENE_OPTION):]
        await ConversationRouter.dispatch(update, context, InboundInput.from_selection(value), query.message)

    @staticmethod
    async def dispatch(
        update: Update,
        context: ContextTypes.DEFAULT_TYPE,
        inbound: InboundInput,
        message: Message,
    ) -> bool:
        """Apply one input to the user's session; returns whether a session took it"""
        user_id = update.effective_user.id
        engine = get_scene_engine(context)

        async with engine.user_turn(user_id):
            response = await engine.handle_input(user_id, inbound)
            if not response.handled:
                if inbound.kind == InputKind.SELECTION:
                    await message.reply_text(EXPIRED_BUTTON_TEXT)
                elif not engine.is_command(inbound.text):
                    await message.reply_text(NO_ACTIVE_FLOW_TEXT)
                return False

            await send_prompts(message, response.prompts, finished=response.finished)
            if response.intent is not None:
                await ConversationRouter.execute(context, message, response.intent)
            return True

    @staticmethod
    async def execute(context: ContextTypes.DEFAULT_TYPE, message: Message, intent: EventIntent) -> None:
        """Run a completed intent; the session is already gone whatever happens here"""
        orchestrator = get_orchestrator(context)
        photo: Optional[bytes] = None

        if isinstance(intent, CreateMemoryIntent):
            try:
                photo = await download_photo(context.bot, intent.photo_file_id)
            except TelegramError as e:
                logger.error(f"❌ PHOTO_DOWNLOAD_FAILED: user {intent.telegram_id}: {e}")
                await message.reply_text("⚠️ I couldn't download that photo. Please run /create_memory again.")
                return

        response = await orchestrator.execute_intent(intent, photo)
        logger.info(
            f"🎯 INTENT_RESULT: {type(intent).__name__} for user {intent.telegram_id} -> {response.result.value}"
        )
        await send_operation_response(message, response)


def register_conversation_handlers(application: Application) -> None:
    """Register after command handlers so commands always win"""
    application.add_handler(
        CallbackQueryHandler(ConversationRouter.route_option, pattern=f"^{CallbackData.SCENE_OPTION}")
    )
    application.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, ConversationRouter.route_text))
    application.add_handler(MessageHandler(filters.LOCATION, ConversationRouter.route_location))
    application.add_handler(MessageHandler(filters.PHOTO, ConversationRouter.route_photo))
    logger.info("✅ Conversation router handlers registered")
