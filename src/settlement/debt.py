"""Platform debt: the checkout-time reader and the confirmation-time applier.

Organizers who take cash at the door owe the platform its fee on those
orders. Part of that debt is recovered from later card payments. The reader
only informs the charge being built; the applier only runs once a charge is
confirmed, after the webhook dedup gate.
"""

import asyncio
from typing import Optional

from src.database import Database
from src.logging_utils import get_logger
from src.models import DebtRecord, SettlementResult

logger = get_logger(__name__)


class DebtLedgerReader:
    """Reads outstanding debt, failing open to zero."""

    def __init__(self, db: Database, timeout_seconds: float = 2.0):
        self.db = db
        self.timeout_seconds = timeout_seconds

    async def get_debt(self, owner_id: str) -> DebtRecord:
        """Return the owner's debt, or a zero-debt record.

        A missing record, a failed read and a timed-out read all produce zero
        debt: a ledger problem must never block a payment, and must never
        make the platform collect more than it is owed.
        """
        try:
            record = await asyncio.wait_for(
                self.db.get_debt_record(owner_id), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError:
            logger.warning(f"Debt read for {owner_id} timed out, treating as no debt")
            return DebtRecord.zero(owner_id)
        except Exception as e:
            logger.warning(f"Debt read for {owner_id} failed, treating as no debt: {e}")
            return DebtRecord.zero(owner_id)

        if record is None:
            return DebtRecord.zero(owner_id)
        return record


class SettlementApplier:
    """Applies collected debt settlements to the ledger."""

    def __init__(self, db: Database):
        self.db = db

    async def apply(
        self, owner_id: str, settlement_cents: int, order_id: Optional[str] = None
    ) -> SettlementResult:
        """Decrease the owner's debt by the amount a confirmed charge collected.

        Callers must have passed the webhook ledger's dedup gate for the
        notification that confirmed the charge. The decrement is floored at
        zero by the storage layer.

        Args:
            owner_id: Organizer or vendor identity.
            settlement_cents: Settlement actually collected, not the amount requested.
            order_id: Order the settlement came from, for the debt history.

        Returns:
            How much was applied and what remains.
        """
        if settlement_cents < 0:
            raise ValueError(f"settlement must not be negative, got {settlement_cents}")
        if settlement_cents == 0:
            record = await self.db.get_debt_record(owner_id)
            remaining = record.remaining_debt_cents if record else 0
            return SettlementResult(owner_id=owner_id, applied_cents=0, remaining_cents=remaining)

        outcome = await self.db.decrement_debt(owner_id, settlement_cents, order_id)
        if outcome is None:
            logger.warning(f"No debt record for {owner_id}; settlement of {settlement_cents} cents ignored")
            return SettlementResult(owner_id=owner_id, applied_cents=0, remaining_cents=0)

        applied, remaining = outcome
        if applied < settlement_cents:
            logger.warning(
                f"Settlement for {owner_id} floored at zero: "
                f"collected {settlement_cents} cents, applied {applied}"
            )
        logger.info(
            f"Debt settlement for {owner_id}: ${applied / 100:.2f} applied, "
            f"${remaining / 100:.2f} remaining"
        )
        return SettlementResult(owner_id=owner_id, applied_cents=applied, remaining_cents=remaining)
