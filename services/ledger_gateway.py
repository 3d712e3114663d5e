"""
Ledger Gateway Service

Submit-then-confirm access to the staking contract. The contract is reached
through an HTTP contract gateway that signs with custody-held keys, so this
module never touches private keys: callers pass a Signer reference.

Every submission carries the intent's idempotency token as the
Idempotency-Key header; the gateway returns the original transaction for a
repeated key instead of broadcasting a second one.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

import aiohttp

from config import Config
from services.wallet_service import Signer
from utils.data_sanitizer import mask_api_key_safe, sanitize_for_log
from utils.decimal_precision import MonetaryDecimal

logger = logging.getLogger(__name__)

TX_STATUS_PENDING = "pending"
TX_STATUS_CONFIRMED = "confirmed"
TX_STATUS_FAILED = "failed"


class LedgerError(Exception):
    """Submission or confirmation failure; nothing was recorded on-chain"""
    pass


@dataclass(frozen=True)
class TransactionReceipt:
    """Final state of a mined transaction"""
    tx_hash: str
    success: bool
    event_id: Optional[int] = None
    block_number: Optional[int] = None
    error: Optional[str] = None


class LedgerClient(ABC):
    """Ledger collaborator used by the orchestrator and the reconciliation sweep"""

    @abstractmethod
    async def submit_create_event(
        self,
        name: str,
        when_epoch: int,
        stake_amount: Decimal,
        signer: Signer,
        idempotency_token: str,
    ) -> str:
        """Submit createEvent; returns the transaction hash"""

    @abstractmethod
    async def submit_join_event(
        self,
        event_id: int,
        stake_amount: Decimal,
        signer: Signer,
        idempotency_token: str,
    ) -> str:
        """Submit joinEvent signed by the participant; transfers the stake"""

    @abstractmethod
    async def submit_finalize_event(self, event_id: int, signer: Signer, idempotency_token: str) -> str:
        """Submit finalizeEvent signed by the operator"""

    @abstractmethod
    async def submit_mark_attendance(
        self,
        event_id: int,
        user_address: str,
        signer: Signer,
        idempotency_token: str,
    ) -> str:
        """Submit markAttendance signed by the operator"""

    @abstractmethod
    async def get_receipt(self, tx_hash: str) -> Optional[TransactionReceipt]:
        """Receipt for a mined transaction, or None while it is pending"""

    @abstractmethod
    async def get_balance(self, address: str) -> Decimal:
        """Native balance of an address"""

    @abstractmethod
    async def find_by_idempotency_token(self, idempotency_token: str) -> Optional[str]:
        """Transaction hash the gateway broadcast for a token, or None if it never saw it"""

    async def wait_for_receipt(self, tx_hash: str, poll_interval: Optional[float] = None) -> TransactionReceipt:
        """
        Poll until the transaction is mined.

        Unbounded on its own; the orchestrator wraps it in asyncio.wait_for.
        """
        interval = poll_interval if poll_interval is not None else Config.LEDGER_POLL_INTERVAL_SECONDS
        while True:
            receipt = await self.get_receipt(tx_hash)
            if receipt is not None:
                return receipt
            await asyncio.sleep(interval)


class ContractGatewayClient(LedgerClient):
    """LedgerClient over the contract gateway HTTP API"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self.base_url = (base_url or Config.LEDGER_GATEWAY_URL or "").rstrip("/")
        self.api_key = api_key if api_key is not None else Config.LEDGER_GATEWAY_API_KEY
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds or Config.HTTP_TIMEOUT_SECONDS)

        if not self.base_url:
            logger.warning("LEDGER_GATEWAY_URL not configured - ledger calls will fail")
        else:
            logger.info(
                f"Contract gateway initialized at {self.base_url} ({Config.CHAIN_NAME}) "
                f"with key: {mask_api_key_safe(self.api_key)}"
            )

    def _get_headers(self, idempotency_token: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": "Meetup-Stakes-Bot/1.0",
        }
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        if idempotency_token:
            headers["Idempotency-Key"] = idempotency_token
        return headers

    async def _submit(self, path: str, payload: Dict[str, Any], idempotency_token: str) -> str:
        url = f"{self.base_url}{path}"
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(
                    url,
                    json=payload,
                    headers=self._get_headers(idempotency_token),
                ) as response:
                    if response.status in (200, 201, 202):
                        data = await response.json()
                        tx_hash = data.get("tx_hash")
                        if not tx_hash:
                            raise LedgerError(f"Gateway response for {path} has no tx_hash")
                        logger.info(f"⛓️ LEDGER_SUBMITTED: {path} -> {tx_hash}")
                        return tx_hash

                    error_text = await response.text()
                    logger.error(f"❌ LEDGER_REJECTED: {path} HTTP {response.status}: {sanitize_for_log(error_text)[:300]}")
                    raise LedgerError(f"Ledger gateway rejected {path} (HTTP {response.status})")
        except aiohttp.ClientError as e:
            logger.error(f"Network error connecting to ledger gateway: {e}")
            raise LedgerError(f"Network error: {e}") from e
        except asyncio.TimeoutError as e:
            logger.error(f"Ledger gateway timed out on {path}")
            raise LedgerError(f"Ledger gateway timed out on {path}") from e

    async def _get_json(self, path: str) -> Optional[Dict[str, Any]]:
        url = f"{self.base_url}{path}"
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.get(url, headers=self._get_headers()) as response:
                    if response.status == 200:
                        return await response.json()
                    if response.status == 404:
                        return None
                    error_text = await response.text()
                    logger.error(f"❌ LEDGER_QUERY_FAILED: {path} HTTP {response.status}: {sanitize_for_log(error_text)[:300]}")
                    raise LedgerError(f"Ledger gateway query {path} failed (HTTP {response.status})")
        except aiohttp.ClientError as e:
            logger.error(f"Network error connecting to ledger gateway: {e}")
            raise LedgerError(f"Network error: {e}") from e
        except asyncio.TimeoutError as e:
            raise LedgerError(f"Ledger gateway timed out on {path}") from e

    async def submit_create_event(
        self,
        name: str,
        when_epoch: int,
        stake_amount: Decimal,
        signer: Signer,
        idempotency_token: str,
    ) -> str:
        payload = {
            "name": name,
            "when": when_epoch,
            "stake_amount": str(stake_amount),
            "signer": signer.to_payload(),
        }
        return await self._submit("/v1/events", payload, idempotency_token)

    async def submit_join_event(
        self,
        event_id: int,
        stake_amount: Decimal,
        signer: Signer,
        idempotency_token: str,
    ) -> str:
        payload = {"value": str(stake_amount), "signer": signer.to_payload()}
        return await self._submit(f"/v1/events/{event_id}/join", payload, idempotency_token)

    async def submit_finalize_event(self, event_id: int, signer: Signer, idempotency_token: str) -> str:
        payload = {"signer": signer.to_payload()}
        return await self._submit(f"/v1/events/{event_id}/finalize", payload, idempotency_token)

    async def submit_mark_attendance(
        self,
        event_id: int,
        user_address: str,
        signer: Signer,
        idempotency_token: str,
    ) -> str:
        payload = {"user_address": user_address, "signer": signer.to_payload()}
        return await self._submit(f"/v1/events/{event_id}/attendance", payload, idempotency_token)

    async def get_receipt(self, tx_hash: str) -> Optional[TransactionReceipt]:
        data = await self._get_json(f"/v1/transactions/{tx_hash}")
        if data is None:
            return None

        status = str(data.get("status", TX_STATUS_PENDING)).lower()
        if status == TX_STATUS_PENDING:
            return None

        event_id = data.get("event_id")
        receipt = TransactionReceipt(
            tx_hash=tx_hash,
            success=status == TX_STATUS_CONFIRMED,
            event_id=int(event_id) if event_id is not None else None,
            block_number=data.get("block_number"),
            error=data.get("error"),
        )
        if not receipt.success:
            logger.warning(f"⚠️ LEDGER_TX_FAILED: {tx_hash} status={status} error={receipt.error}")
        return receipt

    async def get_balance(self, address: str) -> Decimal:
        data = await self._get_json(f"/v1/accounts/{address}/balance")
        if data is None:
            raise LedgerError(f"Unknown account {address}")
        return MonetaryDecimal.to_decimal(data.get("balance", "0"))

    async def find_by_idempotency_token(self, idempotency_token: str) -> Optional[str]:
        data = await self._get_json(f"/v1/transactions/by-idempotency-key/{idempotency_token}")
        if data is None:
            return None
        return data.get("tx_hash") or None
