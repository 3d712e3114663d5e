"""
Ledger Reconciliation Sweep
Settles ledger operation claims the orchestrator could not finish: confirmed
transactions whose mirror write failed, submissions whose confirmation
outlived the caller's timeout, and claims whose transaction hash was never
recorded. A claim without a hash is released only once the gateway confirms
it never broadcast the claim's idempotency token.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from config import Config
from models import LedgerOperation, LedgerOperationStatus
from services.event_orchestrator import EventOrchestrator, UnmirrorableReceiptError
from utils.datetime_helpers import get_naive_utc_now

logger = logging.getLogger(__name__)


class ReconciliationResult:
    """Result object for one sweep"""

    def __init__(self):
        self.operations_checked = 0
        self.settled = 0
        self.released = 0
        self.still_pending = 0
        self.skipped_in_flight = 0
        self.manual_review = 0
        self.failures = 0
        self.execution_time_ms = 0
        self.settled_keys: List[str] = []
        self.errors: List[str] = []

    def add_settled(self, operation_key: str):
        self.settled += 1
        self.settled_keys.append(operation_key)

    def add_error(self, error: str):
        """Add error to results"""
        self.failures += 1
        self.errors.append(error)
        logger.error(f"RECONCILIATION_ERROR: {error}")

    def get_summary(self) -> Dict[str, Any]:
        return {
            "operations_checked": self.operations_checked,
            "settled": self.settled,
            "released": self.released,
            "still_pending": self.still_pending,
            "skipped_in_flight": self.skipped_in_flight,
            "manual_review": self.manual_review,
            "failures": self.failures,
            "execution_time_ms": self.execution_time_ms,
        }


class ReconciliationSweep:
    """Compares unsettled claims with the ledger and repairs the record store"""

    def __init__(
        self,
        orchestrator: EventOrchestrator,
        stale_claim_minutes: Optional[int] = None,
        batch_size: Optional[int] = None,
        clock: Callable[[], datetime] = get_naive_utc_now,
    ):
        self.orchestrator = orchestrator
        self.records = orchestrator.records
        self.ledger = orchestrator.ledger
        self.stale_after = timedelta(
            minutes=stale_claim_minutes if stale_claim_minutes is not None else Config.STALE_CLAIM_MINUTES
        )
        # Claims younger than this may still belong to a running orchestrator call
        self.in_flight_window = timedelta(seconds=orchestrator.confirmation_timeout)
        self.batch_size = batch_size or Config.RECONCILIATION_BATCH_SIZE
        self.clock = clock

    async def run(self) -> ReconciliationResult:
        """Main entry point - settle every unsettled claim the ledger has an answer for"""
        start_time = self.clock()
        result = ReconciliationResult()

        try:
            operations = await self.records.list_unsettled_operations(limit=self.batch_size)
        except Exception as e:
            result.add_error(f"Could not load unsettled claims: {e}")
            return result

        if operations:
            logger.info(f"🔍 RECONCILIATION_START: {len(operations)} unsettled ledger operations")

        for operation in operations:
            result.operations_checked += 1
            try:
                await self._reconcile(operation, result)
            except Exception as e:
                result.add_error(f"{operation.operation_key}: {e}")

        result.execution_time_ms = int((self.clock() - start_time).total_seconds() * 1000)
        if operations:
            logger.info(f"✅ RECONCILIATION_COMPLETE: {result.get_summary()}")
        return result

    async def _reconcile(self, operation: LedgerOperation, result: ReconciliationResult) -> None:
        age = self.clock() - operation.updated_at
        needs_reconciliation = operation.status == LedgerOperationStatus.RECONCILIATION_REQUIRED.value

        tx_hash = operation.tx_hash
        if not tx_hash:
            if not needs_reconciliation and age < self.stale_after:
                result.skipped_in_flight += 1
                return

            # The hash write may have failed after a broadcast; only the gateway knows
            tx_hash = await self.ledger.find_by_idempotency_token(operation.idempotency_token)
            if tx_hash is None:
                if needs_reconciliation:
                    result.add_error(
                        f"{operation.operation_key} needs reconciliation but the gateway has no "
                        f"transaction for its idempotency token"
                    )
                    return
                await self.records.release_operation(operation.operation_key)
                result.released += 1
                logger.warning(f"🧹 STALE_CLAIM_RELEASED: {operation.operation_key} never broadcast (age {age})")
                return

            await self.records.attach_tx_hash(operation.operation_key, tx_hash)
            logger.warning(f"🔗 TX_HASH_RECOVERED: {operation.operation_key} -> {tx_hash}")
        elif not needs_reconciliation and age < self.in_flight_window:
            result.skipped_in_flight += 1
            return

        receipt = await self.ledger.get_receipt(tx_hash)
        if receipt is None:
            result.still_pending += 1
            return

        if not receipt.success:
            await self.records.release_operation(operation.operation_key)
            result.released += 1
            logger.warning(f"🧹 REVERTED_CLAIM_RELEASED: {operation.operation_key} tx {tx_hash}")
            return

        try:
            entity_id = await self.orchestrator.persist_confirmed_operation(
                operation.operation_type, operation.payload or {}, receipt
            )
        except UnmirrorableReceiptError as e:
            await self.orchestrator.flag_unmirrored_operation(operation.operation_key, tx_hash, e)
            result.manual_review += 1
            return

        await self.records.complete_operation(operation.operation_key, entity_id, tx_hash=tx_hash)
        result.add_settled(operation.operation_key)
        logger.info(f"✅ RECONCILED: {operation.operation_key} from tx {tx_hash}")
