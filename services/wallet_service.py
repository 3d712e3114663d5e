"""
Wallet Custody Service

Creates ledger wallets for Telegram users and hands out signer references.
Private keys stay with the custody gateway; the bot only stores an address and
an opaque key reference.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import aiohttp

from config import Config
from models import User
from utils.data_sanitizer import mask_api_key_safe, sanitize_for_log

logger = logging.getLogger(__name__)


class CustodyError(Exception):
    """Custom exception for custody gateway errors"""
    pass


@dataclass(frozen=True)
class Signer:
    """Address plus the custody reference that signs for it"""
    address: str
    key_ref: str

    def to_payload(self) -> Dict[str, str]:
        return {"address": self.address, "key_ref": self.key_ref}

    def __repr__(self) -> str:
        return f"Signer(address={self.address!r}, key_ref=[REDACTED])"


class WalletCustody:
    """Client for the custody gateway"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self.base_url = (base_url or Config.CUSTODY_GATEWAY_URL or "").rstrip("/")
        self.api_key = api_key if api_key is not None else Config.CUSTODY_GATEWAY_API_KEY
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds or Config.HTTP_TIMEOUT_SECONDS)

        if not self.base_url:
            logger.warning("CUSTODY_GATEWAY_URL not configured - wallet creation will fail")
        else:
            logger.info(f"Custody gateway initialized with key: {mask_api_key_safe(self.api_key)}")

    def _get_headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "User-Agent": "Meetup-Stakes-Bot/1.0"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def create_wallet(self, telegram_id: int) -> Signer:
        """Create a fresh wallet for a user"""
        payload: Dict[str, Any] = {"owner": str(telegram_id), "chain": Config.CHAIN_NAME}
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(
                    f"{self.base_url}/v1/wallets",
                    json=payload,
                    headers=self._get_headers(),
                ) as response:
                    if response.status in (200, 201):
                        data = await response.json()
                        address = data.get("address")
                        key_ref = data.get("key_ref")
                        if not address or not key_ref:
                            raise CustodyError("Custody response missing address or key_ref")
                        logger.info(f"🔑 WALLET_CREATED: {address} for user {telegram_id}")
                        return Signer(address=address, key_ref=key_ref)

                    error_text = await response.text()
                    logger.error(f"Custody gateway error: {response.status} - {sanitize_for_log(error_text)[:300]}")
                    raise CustodyError(f"Wallet creation failed (HTTP {response.status})")
        except aiohttp.ClientError as e:
            logger.error(f"Network error connecting to custody gateway: {e}")
            raise CustodyError(f"Network error: {e}") from e
        except asyncio.TimeoutError as e:
            raise CustodyError("Custody gateway timed out") from e

    @staticmethod
    def signer_for(user: User) -> Signer:
        return Signer(address=user.wallet_address, key_ref=user.signer_ref)

    @staticmethod
    def operator_signer() -> Signer:
        if not Config.OPERATOR_WALLET_ADDRESS or not Config.OPERATOR_SIGNER_REF:
            raise CustodyError("Operator signer is not configured")
        return Signer(address=Config.OPERATOR_WALLET_ADDRESS, key_ref=Config.OPERATOR_SIGNER_REF)
