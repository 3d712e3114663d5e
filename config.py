"""Configuration management for the Staked Meetup Bot"""

import os
import logging
from decimal import Decimal
from typing import List

logger = logging.getLogger(__name__)


class Config:
    """Application configuration"""

    # Environment detection
    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"
    CURRENT_ENVIRONMENT = "production" if IS_PRODUCTION else "development"

    # Bot Token Configuration
    # Priority: TELEGRAM_BOT_TOKEN > BOT_TOKEN (legacy name used by the first deployments)
    TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN")
    GENERIC_BOT_TOKEN = os.getenv("BOT_TOKEN", os.getenv("token"))
    BOT_TOKEN = TELEGRAM_BOT_TOKEN or GENERIC_BOT_TOKEN
    PLATFORM_NAME = os.getenv("PLATFORM_NAME", "Meetup Stakes")

    # Record store
    DATABASE_URL = os.getenv("DATABASE_URL")
    DATABASE_POOL_SIZE = int(os.getenv("DATABASE_POOL_SIZE", "5"))
    DATABASE_MAX_OVERFLOW = int(os.getenv("DATABASE_MAX_OVERFLOW", "10"))

    # Ledger (contract gateway)
    LEDGER_GATEWAY_URL = os.getenv("LEDGER_GATEWAY_URL", "").rstrip("/")
    LEDGER_GATEWAY_API_KEY = os.getenv("LEDGER_GATEWAY_API_KEY")
    LEDGER_CONFIRMATION_TIMEOUT_SECONDS = float(os.getenv("LEDGER_CONFIRMATION_TIMEOUT_SECONDS", "120"))
    LEDGER_POLL_INTERVAL_SECONDS = float(os.getenv("LEDGER_POLL_INTERVAL_SECONDS", "2"))
    RPC_URL = os.getenv("RPC_URL", "https://sepolia.base.org")
    CHAIN_NAME = os.getenv("CHAIN_NAME", "Base Sepolia")
    BLOCK_EXPLORER_URL = os.getenv("BLOCK_EXPLORER_URL", "https://sepolia.basescan.org").rstrip("/")
    CURRENCY_SYMBOL = os.getenv("CURRENCY_SYMBOL", "ETH")

    # Wallet custody
    CUSTODY_GATEWAY_URL = os.getenv("CUSTODY_GATEWAY_URL", "").rstrip("/")
    CUSTODY_GATEWAY_API_KEY = os.getenv("CUSTODY_GATEWAY_API_KEY")
    OPERATOR_WALLET_ADDRESS = os.getenv("OPERATOR_WALLET_ADDRESS")
    OPERATOR_SIGNER_REF = os.getenv("OPERATOR_SIGNER_REF")

    # Geofence
    GEOFENCE_RADIUS_KM = float(os.getenv("GEOFENCE_RADIUS_KM", "0.2"))
    EARTH_RADIUS_KM = float(os.getenv("EARTH_RADIUS_KM", "6371"))

    # Memory posters (blob store + image generation)
    WALRUS_PUBLISHER_URL = os.getenv(
        "WALRUS_PUBLISHER_URL", "https://publisher.testnet.walrus.atalma.io"
    ).rstrip("/")
    WALRUS_AGGREGATOR_URL = os.getenv(
        "WALRUS_AGGREGATOR_URL", "https://aggregator.testnet.walrus.atalma.io"
    ).rstrip("/")
    WALRUS_STORAGE_EPOCHS = int(os.getenv("WALRUS_STORAGE_EPOCHS", "5"))
    POSTER_SERVICE_URL = os.getenv("POSTER_SERVICE_URL", "").rstrip("/")
    POSTER_SERVICE_API_KEY = os.getenv("POSTER_SERVICE_API_KEY")

    # Outbound HTTP
    HTTP_TIMEOUT_SECONDS = int(os.getenv("HTTP_TIMEOUT_SECONDS", "30"))

    # Conversations (0 disables session expiry)
    SESSION_TIMEOUT_MINUTES = int(os.getenv("SESSION_TIMEOUT_MINUTES", "0"))

    # Reconciliation sweep
    RECONCILIATION_ENABLED = os.getenv("RECONCILIATION_ENABLED", "true").lower() == "true"
    RECONCILIATION_INTERVAL_SECONDS = int(os.getenv("RECONCILIATION_INTERVAL_SECONDS", "300"))
    STALE_CLAIM_MINUTES = int(os.getenv("STALE_CLAIM_MINUTES", "10"))
    RECONCILIATION_BATCH_SIZE = int(os.getenv("RECONCILIATION_BATCH_SIZE", "200"))

    # Logging
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    @staticmethod
    def geofence_radius_decimal() -> Decimal:
        """Geofence radius as a Decimal for display"""
        return Decimal(str(Config.GEOFENCE_RADIUS_KM))

    @staticmethod
    def log_environment_config():
        """Log current environment configuration for debugging"""
        logger.info("🔧 Bot Environment Configuration:")
        logger.info(f"   Environment: {Config.CURRENT_ENVIRONMENT.upper()}")
        logger.info(f"   Chain: {Config.CHAIN_NAME} ({Config.CURRENCY_SYMBOL})")
        logger.info(f"   Ledger gateway: {Config.LEDGER_GATEWAY_URL or 'NOT CONFIGURED'}")
        logger.info(f"   Custody gateway: {Config.CUSTODY_GATEWAY_URL or 'NOT CONFIGURED'}")
        logger.info(f"   Geofence radius: {Config.GEOFENCE_RADIUS_KM} km")
        logger.info(f"   Confirmation timeout: {Config.LEDGER_CONFIRMATION_TIMEOUT_SECONDS}s")
        logger.info(f"   Poster service: {'configured' if Config.POSTER_SERVICE_URL else 'pass-through'}")
        if Config.SESSION_TIMEOUT_MINUTES > 0:
            logger.info(f"   Session timeout: {Config.SESSION_TIMEOUT_MINUTES} min")
        else:
            logger.info("   Session timeout: disabled")

    @staticmethod
    def missing_startup_settings() -> List[str]:
        """Names of settings the process cannot start without"""
        required = {
            "TELEGRAM_BOT_TOKEN": Config.BOT_TOKEN,
            "DATABASE_URL": Config.DATABASE_URL,
            "LEDGER_GATEWAY_URL": Config.LEDGER_GATEWAY_URL,
            "CUSTODY_GATEWAY_URL": Config.CUSTODY_GATEWAY_URL,
            "OPERATOR_WALLET_ADDRESS": Config.OPERATOR_WALLET_ADDRESS,
            "OPERATOR_SIGNER_REF": Config.OPERATOR_SIGNER_REF,
        }
        return [name for name, value in required.items() if not value]

    @staticmethod
    def validate_startup_configuration():
        """Validate credentials needed to reach the ledger and record store"""
        missing = Config.missing_startup_settings()
        if missing:
            error_msg = f"""
❌ Startup configuration error for {Config.CURRENT_ENVIRONMENT} environment!

Missing environment variables:
{chr(10).join(f'  • {name}' for name in missing)}
"""
            logger.critical(error_msg)
            raise ValueError(f"Missing required configuration: {', '.join(missing)}")

        if Config.GEOFENCE_RADIUS_KM <= 0:
            raise ValueError("GEOFENCE_RADIUS_KM must be positive")

        return True
