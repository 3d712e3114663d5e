"""
Bot Commands Setup - Telegram Bot Menu Configuration
Creates the bot menu that users see in the Telegram interface
"""

import logging
from telegram import BotCommand, BotCommandScopeDefault
from telegram.ext import Application

logger = logging.getLogger(__name__)


class BotCommandsManager:
    """Manages Telegram bot commands and menu setup"""

    COMMANDS = [
        BotCommand("start", "🚀 Create your wallet and get started"),
        BotCommand("help", "❓ How staked meetups work"),
        BotCommand("wallet", "👛 Show your wallet address"),
        BotCommand("balance", "💰 Show your wallet balance"),
        BotCommand("events", "📅 Upcoming events"),
        BotCommand("my_events", "🗂 Events you created or joined"),
        BotCommand("create_event", "📝 Create a staked event"),
        BotCommand("join_event", "🤝 Stake into an event"),
        BotCommand("confirm_attendance", "📍 Check in at an event"),
        BotCommand("finalize_event", "🏁 Close an event you created"),
        BotCommand("create_memory", "🖼 Turn a photo into a memory poster"),
        BotCommand("memories", "📚 Browse event memories"),
        BotCommand("cancel", "✖️ Cancel the current conversation"),
    ]

    @classmethod
    async def setup_bot_commands(cls, application: Application) -> bool:
        """
        Set up the bot commands menu that appears in Telegram

        Args:
            application: The Telegram bot application

        Returns:
            bool: True if commands were set successfully
        """
        try:
            logger.info("🤖 Setting up Telegram bot commands menu...")
            await application.bot.set_my_commands(cls.COMMANDS, scope=BotCommandScopeDefault())
            logger.info(f"✅ Bot commands menu set ({len(cls.COMMANDS)} commands)")
            return True
        except Exception as e:
            logger.error(f"❌ Failed to set up bot commands: {e}")
            return False
