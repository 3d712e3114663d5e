#!/usr/bin/env python3
"""
Deterministic Startup - Staked Meetup Telegram Bot

Startup sequence:
- Validate configuration (exits non-zero when a required setting is missing)
- Database connection check and table creation
- Telegram application, services and handlers
- Bot command menu and the reconciliation scheduler
- Polling until SIGINT/SIGTERM
"""

import asyncio
import logging
import signal
import sys
from typing import Optional

from telegram import Update
from telegram.ext import Application, ContextTypes

from config import Config

# Setup logging
logging.basicConfig(
    level=Config.LOG_LEVEL,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
# httpx logs every Telegram long-poll request at INFO
logging.getLogger("httpx").setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


async def handle_error(update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Last-resort handler for exceptions raised inside update handlers"""
    logger.error(f"❌ UNHANDLED_UPDATE_ERROR: {context.error}", exc_info=context.error)
    if isinstance(update, Update) and update.effective_message:
        try:
            await update.effective_message.reply_text("⚠️ Something went wrong. Please try again.")
        except Exception as e:
            logger.warning(f"Could not notify user about error: {e}")


class StartupManager:
    """Startup manager with a deterministic sequence and explicit dependencies"""

    def __init__(self):
        self.application: Optional[Application] = None
        self.scheduler = None
        self.orchestrator = None
        self.scene_engine = None
        self.startup_complete = False
        self.startup_errors = []

    async def initialize_database(self) -> bool:
        try:
            logger.info("🗄️ Initializing database...")
            from database import create_tables, test_connection

            if not await test_connection():
                raise Exception("Database connection test failed")
            if not await create_tables():
                raise Exception("Table creation failed")

            logger.info("✅ Database initialization complete")
            return True
        except Exception as e:
            logger.error(f"❌ Database initialization failed: {e}")
            self.startup_errors.append(f"Database: {e}")
            return False

    async def create_application(self) -> bool:
        try:
            logger.info("🤖 Creating Telegram application...")

            # Different users' updates run concurrently; each user's turns are serialised by the scene engine
            self.application = (
                Application.builder()
                .token(Config.BOT_TOKEN)
                .concurrent_updates(True)
                .build()
            )

            logger.info("✅ Telegram application created")
            return True
        except Exception as e:
            logger.error(f"❌ Application creation failed: {e}")
            self.startup_errors.append(f"Application: {e}")
            return False

    async def initialize_services(self) -> bool:
        try:
            logger.info("⚙️ Initializing core services...")
            from services.event_orchestrator import EventOrchestrator
            from services.ledger_gateway import ContractGatewayClient
            from services.poster_service import MemoryPosterService
            from services.record_store import EventRecordStore
            from services.scene_engine import SceneEngine
            from services.wallet_service import WalletCustody
            from services.walrus_service import WalrusClient
            from utils.bot_context import install_services

            self.orchestrator = EventOrchestrator(
                record_store=EventRecordStore(),
                ledger=ContractGatewayClient(),
                custody=WalletCustody(),
                blob_store=WalrusClient(),
                poster_service=MemoryPosterService(),
            )
            self.scene_engine = SceneEngine(self.orchestrator)
            install_services(self.application, self.orchestrator, self.scene_engine)

            logger.info(f"✅ Services initialized: {len(self.scene_engine.scene_registry)} conversation flows")
            return True
        except Exception as e:
            logger.error(f"❌ Service initialization failed: {e}")
            self.startup_errors.append(f"Services: {e}")
            return False

    async def register_handlers(self) -> bool:
        try:
            logger.info("📋 Registering handlers...")
            from handlers.commands import register_command_handlers
            from handlers.conversation_router import register_conversation_handlers

            # Commands first so they are never read as conversation input
            register_command_handlers(self.application)
            register_conversation_handlers(self.application)
            self.application.add_error_handler(handle_error)

            logger.info("✅ Handler registration complete")
            return True
        except Exception as e:
            logger.error(f"❌ Handler registration failed: {e}")
            self.startup_errors.append(f"Handlers: {e}")
            return False

    async def start_application(self) -> bool:
        try:
            logger.info("📡 Starting in polling mode...")
            await self.application.initialize()

            from utils.bot_commands import BotCommandsManager
            if not await BotCommandsManager.setup_bot_commands(self.application):
                self.startup_errors.append("Bot commands menu not set")

            await self.application.start()
            await self.application.updater.start_polling(allowed_updates=Update.ALL_TYPES)
            logger.info("✅ Application started in polling mode")
            return True
        except Exception as e:
            logger.error(f"❌ Application start failed: {e}")
            self.startup_errors.append(f"Application start: {e}")
            return False

    async def start_scheduler(self) -> bool:
        try:
            from jobs.reconciliation_sweep import ReconciliationSweep
            from jobs.scheduler import MeetupScheduler

            self.scheduler = MeetupScheduler(ReconciliationSweep(self.orchestrator))
            self.scheduler.start()
            return True
        except Exception as e:
            logger.error(f"❌ Scheduler start failed: {e}")
            self.startup_errors.append(f"Scheduler: {e}")
            return False

    async def startup_sequence(self) -> bool:
        logger.info(f"🚀 Starting {Config.PLATFORM_NAME} bot...")
        Config.log_environment_config()

        startup_steps = [
            ("Database", self.initialize_database, True),
            ("Application", self.create_application, True),
            ("Services", self.initialize_services, True),
            ("Handlers", self.register_handlers, True),
            ("Start", self.start_application, True),
            ("Scheduler", self.start_scheduler, False),
        ]

        for step_name, step_func, critical in startup_steps:
            logger.info(f"▶️ Executing step: {step_name}")
            if await step_func():
                continue
            logger.error(f"❌ Step '{step_name}' failed")
            if critical:
                logger.error("🚨 Critical step failed - cannot continue startup")
                return False
            logger.warning(f"⚠️ Non-critical step '{step_name}' failed - continuing startup")

        if self.startup_errors:
            logger.warning(f"⚠️ Startup completed with {len(self.startup_errors)} warnings:")
            for error in self.startup_errors:
                logger.warning(f"  - {error}")
        else:
            logger.info("✅ Startup sequence completed successfully")

        self.startup_complete = True
        return True

    async def shutdown(self):
        logger.info("🛑 Shutting down...")
        if self.scheduler:
            self.scheduler.stop()
        if self.application:
            if self.application.updater and self.application.updater.running:
                await self.application.updater.stop()
            if self.application.running:
                await self.application.stop()
            await self.application.shutdown()


async def main():
    try:
        Config.validate_startup_configuration()
    except ValueError as e:
        logger.error(f"❌ Configuration error: {e}")
        sys.exit(1)

    manager = StartupManager()
    try:
        if not await manager.startup_sequence():
            logger.error("❌ Startup failed - exiting")
            await manager.shutdown()
            sys.exit(1)

        logger.info("🎉 Bot startup complete!")

        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)
        await stop_event.wait()
    finally:
        if manager.startup_complete:
            await manager.shutdown()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("👋 Bot stopped by user")
