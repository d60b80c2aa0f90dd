"""Webhook handling for provider payment notifications.

Implements deduplication, order status reconciliation and debt settlement.
"""

from typing import Any, Callable, Dict, Optional

from src.database import Database
from src.logging_utils import get_logger
from src.models import PaymentConfirmation, PaymentProvider, ProviderNotification
from src.settlement.debt import SettlementApplier
from src.settlement.fees import collected_settlement_cents
from src.settlement.paypal import extract_paypal_confirmation
from src.settlement.provider import extract_confirmation
from src.settlement.webhook_ledger import WebhookEventLedger

logger = get_logger(__name__)

PAID = "PAID"
FAILED = "FAILED"
REFUNDED = "REFUNDED"

# Order status each handled event type leads to, per provider
EVENT_OUTCOMES: Dict[PaymentProvider, Dict[str, str]] = {
    PaymentProvider.STRIPE: {
        "payment_intent.succeeded": PAID,
        "payment_intent.payment_failed": FAILED,
        "charge.refunded": REFUNDED,
    },
    PaymentProvider.PAYPAL: {
        "PAYMENT.CAPTURE.COMPLETED": PAID,
        "PAYMENT.SALE.COMPLETED": PAID,
        "PAYMENT.CAPTURE.DENIED": FAILED,
        "PAYMENT.CAPTURE.REFUNDED": REFUNDED,
    },
}

CONFIRMATION_EXTRACTORS: Dict[
    PaymentProvider, Callable[[ProviderNotification], Optional[PaymentConfirmation]]
] = {
    PaymentProvider.STRIPE: extract_confirmation,
    PaymentProvider.PAYPAL: extract_paypal_confirmation,
}


class WebhookProcessor:
    """Applies each provider notification's business effects exactly once."""

    def __init__(self, db: Database, ledger: WebhookEventLedger, applier: SettlementApplier):
        self.db = db
        self.ledger = ledger
        self.applier = applier

    async def process(self, notification: ProviderNotification) -> Dict[str, Any]:
        """Process a signature-verified notification.

        Implements:
        1. Early exit for notifications already in the ledger
        2. The ledger's conditional insert as the dedup gate
        3. Order status update for the related order, if the order's
           current status allows it
        4. Debt settlement for the amount actually collected

        A side effect that raises releases the gate and re-raises, so the
        provider's redelivery gets another chance. The debt decrement runs
        last, after every step that could fail.

        Args:
            notification: Verified provider notification.

        Returns:
            Dict with status and details.
        """
        event_id = notification.event_id
        provider = notification.provider

        if await self.ledger.is_recorded(event_id, provider):
            return {"received": True, "duplicate": True, "event_id": event_id}

        confirmation = CONFIRMATION_EXTRACTORS[provider](notification)
        order_id = confirmation.order_id if confirmation else None

        result = await self.ledger.record_if_new(
            event_id=event_id,
            event_type=notification.event_type,
            provider=provider,
            related_order_id=order_id,
        )
        if not result.created:
            # Lost the race to a concurrent delivery of the same event
            return {"received": True, "duplicate": True, "event_id": event_id}

        logger.info(f"Processing {provider.value} event {event_id} ({notification.event_type})")

        try:
            outcome = EVENT_OUTCOMES[provider].get(notification.event_type)
            details = await self._dispatch(outcome, confirmation)
        except Exception:
            logger.error(f"Failed to process event {event_id}", exc_info=True)
            await self.ledger.release(event_id, provider)
            raise

        return {"received": True, "duplicate": False, "event_id": event_id, **details}

    async def _dispatch(
        self, outcome: Optional[str], confirmation: Optional[PaymentConfirmation]
    ) -> Dict[str, Any]:
        if confirmation is None or outcome is None:
            return {"action": "ignored"}

        if outcome == PAID:
            return await self._handle_succeeded(confirmation)

        action = "order_failed" if outcome == FAILED else "order_refunded"
        if not await self._update_order(confirmation, outcome):
            return await self._skipped(confirmation)
        return {"action": action, "order_id": confirmation.order_id}

    async def _handle_succeeded(self, confirmation: PaymentConfirmation) -> Dict[str, Any]:
        if not await self._update_order(confirmation, PAID):
            # Refunded, or paid by a different charge: nothing to settle
            return await self._skipped(confirmation)

        details: Dict[str, Any] = {"action": "order_paid", "order_id": confirmation.order_id}

        collected = collected_settlement_cents(
            confirmation.settlement_requested_cents,
            confirmation.gross_amount_cents,
            confirmation.captured_amount_cents,
        )
        if collected > 0 and confirmation.owner_id:
            if confirmation.order_id:
                await self.db.set_order_settlement(confirmation.order_id, collected)
            settlement = await self.applier.apply(
                confirmation.owner_id, collected, order_id=confirmation.order_id
            )
            details["settlement_applied_cents"] = settlement.applied_cents
            details["remaining_debt_cents"] = settlement.remaining_cents

        return details

    async def _update_order(self, confirmation: PaymentConfirmation, status: str) -> bool:
        """Move the related order to ``status``.

        Returns:
            False only when the order exists and its current status does not
            allow the transition. Missing orders are logged and treated as
            updated so that settlement still follows the payment.
        """
        if not confirmation.order_id:
            logger.warning(f"No orderId in metadata of {confirmation.payment_intent_id}")
            return True

        updated = await self.db.update_order_status(
            confirmation.order_id, status, payment_intent_id=confirmation.payment_intent_id
        )
        if updated:
            return True

        order = await self.db.get_order(confirmation.order_id)
        if order is None:
            logger.warning(f"Order {confirmation.order_id} not found for {confirmation.payment_intent_id}")
            return True

        logger.warning(
            f"Order {confirmation.order_id} is {order.status}; ignoring transition to {status} "
            f"from {confirmation.payment_intent_id}"
        )
        return False

    async def _skipped(self, confirmation: PaymentConfirmation) -> Dict[str, Any]:
        order = await self.db.get_order(confirmation.order_id)
        return {
            "action": "transition_skipped",
            "order_id": confirmation.order_id,
            "order_status": order.status if order else None,
        }
