"""Stripe adapter: charge creation and webhook decoding.

The engine talks to the provider only through this module. The client is
constructed by the process entry point and passed in, never at import time.
"""

import asyncio
import json
from typing import Any, Optional

import stripe

from src.errors import ProviderRejected, UpstreamUnavailable
from src.logging_utils import get_logger
from src.models import (
    ChargeContext,
    ChargePattern,
    ChargeRequest,
    PaymentConfirmation,
    PaymentProvider,
    ProviderCharge,
    ProviderNotification,
)

logger = get_logger(__name__)

# Metadata written by the engine and read back on confirmation
META_CHARGE_CONTEXT = "chargeContext"
META_CHARGE_PATTERN = "chargePattern"
META_OWNER_ID = "ownerId"
META_SETTLEMENT = "settlementAmount"
META_NOMINAL_FEE = "nominalFeeAmount"
META_ORDER_ID = "orderId"


def build_intent_params(
    request: ChargeRequest, payment_method_types: Optional[list[str]] = None
) -> tuple[dict[str, Any], dict[str, Any]]:
    """Translate a charge request into PaymentIntent params and request options.

    DIRECT charges are created on the connected account and the platform
    takes an application fee there. DESTINATION charges land on the platform
    and transfer the remainder. NONE keeps everything on the platform.

    Returns:
        ``(params, options)`` for ``stripe.PaymentIntent.create``.
    """
    metadata = {
        **request.correlation_metadata,
        META_CHARGE_CONTEXT: request.charge_context.value,
        META_CHARGE_PATTERN: request.charge_pattern.value,
        META_OWNER_ID: request.owner_id or "",
        META_SETTLEMENT: str(request.settlement_cents),
        META_NOMINAL_FEE: str(request.nominal_fee_cents),
    }

    params: dict[str, Any] = {
        "amount": request.gross_amount_cents,
        "currency": request.currency.value.lower(),
        "metadata": metadata,
    }
    if payment_method_types:
        params["payment_method_types"] = payment_method_types
    else:
        params["automatic_payment_methods"] = {"enabled": True}

    options: dict[str, Any] = {"idempotency_key": request.idempotency_key}

    if request.charge_pattern is ChargePattern.DIRECT:
        params["application_fee_amount"] = request.total_platform_fee_cents
        options["stripe_account"] = request.connected_account_id
    elif request.charge_pattern is ChargePattern.DESTINATION:
        params["application_fee_amount"] = request.total_platform_fee_cents
        params["transfer_data"] = {"destination": request.connected_account_id}

    return params, options


class StripePaymentProvider:
    """Creates PaymentIntents and verifies Stripe webhook deliveries."""

    provider = PaymentProvider.STRIPE

    def __init__(
        self,
        api_key: str,
        webhook_secret: str = "",
        payment_method_types: Optional[list[str]] = None,
        allow_unsigned_webhooks: bool = False,
    ):
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.payment_method_types = payment_method_types
        self.allow_unsigned_webhooks = allow_unsigned_webhooks

    async def create_charge(self, request: ChargeRequest) -> ProviderCharge:
        """Create the PaymentIntent for a charge request.

        Raises:
            ProviderRejected: Stripe refused the request.
            UpstreamUnavailable: Stripe could not be reached.
        """
        params, options = build_intent_params(request, self.payment_method_types)

        try:
            intent = await asyncio.to_thread(
                stripe.PaymentIntent.create, api_key=self.api_key, **options, **params
            )
        except (stripe.APIConnectionError, stripe.RateLimitError) as e:
            logger.error(f"Stripe unreachable: {e}")
            raise UpstreamUnavailable(f"Payment provider unavailable: {e}", upstream="stripe") from e
        except stripe.StripeError as e:
            reason = e.user_message or str(e)
            logger.error(f"Stripe rejected charge {request.idempotency_key}: {reason}")
            raise ProviderRejected(reason, provider_code=e.code) from e

        logger.info(
            f"Created PaymentIntent {intent.id} ({request.charge_pattern.value}, "
            f"fee {request.total_platform_fee_cents} cents)"
        )
        return ProviderCharge(charge_id=intent.id, client_secret=intent.client_secret)

    def parse_notification(self, payload: bytes, signature: Optional[str]) -> ProviderNotification:
        """Verify and decode a webhook delivery.

        Unsigned payloads are only accepted when explicitly allowed, which
        the entry point does for development without a webhook secret.

        Raises:
            ValueError: Missing or invalid signature, or malformed payload.
        """
        if self.webhook_secret:
            if not signature:
                raise ValueError("Missing Stripe-Signature header")
            try:
                stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
            except stripe.SignatureVerificationError as e:
                raise ValueError(f"Webhook signature verification failed: {e}") from e
        elif not self.allow_unsigned_webhooks:
            raise ValueError("Webhook verification required")
        else:
            logger.warning("Processing webhook without signature verification (development only)")

        event = json.loads(payload)
        if not isinstance(event, dict) or "id" not in event or "type" not in event:
            raise ValueError("Invalid webhook payload")

        return ProviderNotification(
            event_id=event["id"],
            event_type=event["type"],
            provider=self.provider,
            payload=event,
        )


def _as_int(value: Any) -> int:
    try:
        return max(int(value), 0)
    except (TypeError, ValueError):
        return 0


def extract_confirmation(notification: ProviderNotification) -> Optional[PaymentConfirmation]:
    """Pull the confirmed-charge facts out of a Stripe event payload.

    Handles PaymentIntent objects and Charge objects (refunds). Returns None
    when the payload carries no payment object.
    """
    obj = notification.payload.get("data", {}).get("object") or {}
    object_type = obj.get("object")
    metadata = obj.get("metadata") or {}

    if object_type == "payment_intent":
        payment_intent_id = obj.get("id")
        gross = _as_int(obj.get("amount"))
        captured = _as_int(obj.get("amount_received"))
    elif object_type == "charge":
        payment_intent_id = obj.get("payment_intent") or obj.get("id")
        gross = _as_int(obj.get("amount"))
        captured = _as_int(obj.get("amount_captured"))
    else:
        return None

    if not payment_intent_id:
        return None

    context = metadata.get(META_CHARGE_CONTEXT)
    return PaymentConfirmation(
        payment_intent_id=payment_intent_id,
        order_id=metadata.get(META_ORDER_ID) or None,
        charge_context=ChargeContext(context) if context in ChargeContext.__members__ else None,
        owner_id=metadata.get(META_OWNER_ID) or None,
        gross_amount_cents=gross,
        captured_amount_cents=captured,
        settlement_requested_cents=_as_int(metadata.get(META_SETTLEMENT)),
    )
