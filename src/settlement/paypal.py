"""PayPal adapter: orders with platform fees and webhook verification.

Talks to the PayPal REST API over httpx. A split order names the organizer's
merchant as payee and takes the platform's share through ``platform_fees``.
The buyer approves the order on PayPal, the storefront captures it, and the
resulting capture webhook drives settlement the same way a Stripe
``payment_intent.succeeded`` does.
"""

import asyncio
import json
import time
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Mapping, Optional

import httpx

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
from src.settlement.provider import META_CHARGE_CONTEXT, META_ORDER_ID, META_OWNER_ID, META_SETTLEMENT

logger = get_logger(__name__)

SANDBOX_BASE_URL = "https://api-m.sandbox.paypal.com"

RETRYABLE_STATUS = {429, 500, 502, 503, 504}

# Webhook verification request field -> delivery header
VERIFICATION_HEADERS = {
    "transmission_id": "paypal-transmission-id",
    "transmission_time": "paypal-transmission-time",
    "cert_url": "paypal-cert-url",
    "auth_algo": "paypal-auth-algo",
    "transmission_sig": "paypal-transmission-sig",
}


def cents_to_value(cents: int) -> str:
    """Format cents as PayPal's decimal string, e.g. ``10050`` -> ``"100.50"``."""
    return f"{cents // 100}.{cents % 100:02d}"


def value_to_cents(value: Any) -> int:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return 0
    if not amount.is_finite():
        return 0
    return max(int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)), 0)


def build_custom_id(request: ChargeRequest) -> str:
    """Correlation metadata carried on the order and echoed on its captures.

    PayPal caps ``custom_id`` at 127 characters, so only the fields
    confirmation needs are included.
    """
    custom = {
        META_ORDER_ID: request.correlation_metadata.get(META_ORDER_ID),
        META_OWNER_ID: request.owner_id,
        META_CHARGE_CONTEXT: request.charge_context.value,
        META_SETTLEMENT: str(request.settlement_cents),
    }
    return json.dumps({k: v for k, v in custom.items() if v}, separators=(",", ":"))


def build_order_body(request: ChargeRequest, platform_merchant_id: Optional[str] = None) -> dict[str, Any]:
    """Translate a charge request into a PayPal create-order body.

    Args:
        request: The built charge request.
        platform_merchant_id: Merchant that receives platform fees. When
            omitted PayPal pays them to the calling partner account.

    Returns:
        JSON body for ``POST /v2/checkout/orders``.
    """
    purchase_unit: dict[str, Any] = {
        "reference_id": request.correlation_metadata.get(META_ORDER_ID) or request.idempotency_key,
        "amount": {
            "currency_code": request.currency.value,
            "value": cents_to_value(request.gross_amount_cents),
        },
        "custom_id": build_custom_id(request),
    }

    if request.charge_pattern is not ChargePattern.NONE:
        purchase_unit["payee"] = {"merchant_id": request.connected_account_id}
        if request.total_platform_fee_cents:
            fee: dict[str, Any] = {
                "amount": {
                    "currency_code": request.currency.value,
                    "value": cents_to_value(request.total_platform_fee_cents),
                }
            }
            if platform_merchant_id:
                fee["payee"] = {"merchant_id": platform_merchant_id}
            purchase_unit["payment_instruction"] = {
                "disbursement_mode": "INSTANT",
                "platform_fees": [fee],
            }

    return {"intent": "CAPTURE", "purchase_units": [purchase_unit]}


class PayPalPaymentProvider:
    """Creates and captures PayPal orders and verifies PayPal webhook deliveries."""

    provider = PaymentProvider.PAYPAL

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        base_url: str = SANDBOX_BASE_URL,
        platform_merchant_id: Optional[str] = None,
        webhook_id: str = "",
        allow_unsigned_webhooks: bool = False,
        timeout: float = 30.0,
        max_retries: int = 3,
        retry_backoff_seconds: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the PayPal client.

        Args:
            client_id: REST app client ID.
            client_secret: REST app secret.
            base_url: API host, sandbox or live.
            platform_merchant_id: Merchant that receives platform fees.
            webhook_id: ID of the webhook subscription, used for verification.
            allow_unsigned_webhooks: Accept deliveries without verification
                when no webhook ID is configured (development only).
            timeout: Per-request timeout in seconds.
            max_retries: Retries for timeouts, 429 and 5xx responses.
            retry_backoff_seconds: First retry delay; doubles on each retry.
            transport: Optional httpx transport, e.g. for tests.
        """
        self.client_id = client_id
        self.client_secret = client_secret
        self.platform_merchant_id = platform_merchant_id or None
        self.webhook_id = webhook_id
        self.allow_unsigned_webhooks = allow_unsigned_webhooks
        self.max_retries = max_retries
        self.retry_backoff_seconds = retry_backoff_seconds
        self._http = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)
        self._access_token: Optional[str] = None
        self._token_expires_at = 0.0

    async def close(self):
        """Close the HTTP client."""
        await self._http.aclose()

    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        attempt = 0
        while True:
            try:
                response = await self._http.request(method, url, **kwargs)
            except httpx.TransportError as e:
                if attempt >= self.max_retries:
                    logger.error(f"PayPal unreachable: {e}")
                    raise UpstreamUnavailable(f"Payment provider unavailable: {e}", upstream="paypal") from e
                logger.warning(f"PayPal request {method} {url} failed ({e}), retrying")
            else:
                if response.status_code not in RETRYABLE_STATUS or attempt >= self.max_retries:
                    return response
                logger.warning(f"PayPal returned {response.status_code} for {method} {url}, retrying")

            await asyncio.sleep(self.retry_backoff_seconds * 2**attempt)
            attempt += 1

    @staticmethod
    def _check(response: httpx.Response, action: str) -> dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            body = None
        if not isinstance(body, dict):
            body = {}

        if response.status_code in RETRYABLE_STATUS:
            raise UpstreamUnavailable(
                f"Payment provider unavailable ({response.status_code}) during {action}", upstream="paypal"
            )
        if response.is_error:
            name = body.get("name") or body.get("error")
            message = body.get("message") or body.get("error_description") or f"PayPal refused to {action}"
            logger.error(f"PayPal refused to {action}: {name} {message}")
            raise ProviderRejected(message, provider_code=name)
        return body

    async def _auth_headers(self) -> dict[str, str]:
        if self._access_token is None or time.monotonic() >= self._token_expires_at:
            response = await self._send(
                "POST",
                "/v1/oauth2/token",
                data={"grant_type": "client_credentials"},
                auth=(self.client_id, self.client_secret),
            )
            body = self._check(response, "issue an access token")
            self._access_token = body["access_token"]
            # Refresh a minute early
            self._token_expires_at = time.monotonic() + max(int(body.get("expires_in", 0)) - 60, 0)
        return {"Authorization": f"Bearer {self._access_token}"}

    async def create_charge(self, request: ChargeRequest) -> ProviderCharge:
        """Create the PayPal order for a charge request.

        The idempotency key is sent as ``PayPal-Request-Id``, so a retried
        checkout returns the order created the first time.

        Raises:
            ProviderRejected: PayPal refused the order.
            UpstreamUnavailable: PayPal could not be reached.
        """
        body = build_order_body(request, self.platform_merchant_id)
        headers = {**await self._auth_headers(), "PayPal-Request-Id": request.idempotency_key}

        response = await self._send("POST", "/v2/checkout/orders", json=body, headers=headers)
        order = self._check(response, f"create order {request.idempotency_key}")

        approval_url = next(
            (link["href"] for link in order.get("links", []) if link.get("rel") in ("approve", "payer-action")),
            None,
        )
        logger.info(
            f"Created PayPal order {order['id']} ({request.charge_pattern.value}, "
            f"fee {request.total_platform_fee_cents} cents)"
        )
        return ProviderCharge(charge_id=order["id"], approval_url=approval_url)

    async def capture_order(self, order_id: str) -> dict[str, Any]:
        """Capture an order the buyer approved.

        Settlement does not happen here; it follows the capture webhook.

        Returns:
            Dict with the order ID, its status and the capture ID.
        """
        headers = {**await self._auth_headers(), "PayPal-Request-Id": f"capture-{order_id}"}
        response = await self._send(
            "POST", f"/v2/checkout/orders/{order_id}/capture", json={}, headers=headers
        )
        order = self._check(response, f"capture order {order_id}")

        captures = [
            capture
            for unit in order.get("purchase_units", [])
            for capture in (unit.get("payments") or {}).get("captures", [])
        ]
        logger.info(f"Captured PayPal order {order_id}: {order.get('status')}")
        return {
            "order_id": order.get("id", order_id),
            "status": order.get("status"),
            "capture_id": captures[0].get("id") if captures else None,
        }

    async def parse_notification(self, payload: bytes, headers: Mapping[str, str]) -> ProviderNotification:
        """Verify and decode a webhook delivery.

        Verification goes through PayPal's verify-webhook-signature API with
        the delivery's transmission headers.

        Raises:
            ValueError: Missing headers, failed verification or malformed payload.
            UpstreamUnavailable: The verification API could not be reached.
        """
        event = json.loads(payload)
        if not isinstance(event, dict) or "id" not in event or "event_type" not in event:
            raise ValueError("Invalid webhook payload")

        if self.webhook_id:
            await self._verify(event, headers)
        elif not self.allow_unsigned_webhooks:
            raise ValueError("Webhook verification required")
        else:
            logger.warning("Processing PayPal webhook without signature verification (development only)")

        return ProviderNotification(
            event_id=event["id"],
            event_type=event["event_type"],
            provider=self.provider,
            payload=event,
        )

    async def _verify(self, event: dict[str, Any], headers: Mapping[str, str]) -> None:
        missing = [header for header in VERIFICATION_HEADERS.values() if not headers.get(header)]
        if missing:
            raise ValueError(f"Missing PayPal headers: {', '.join(missing)}")

        body = {field: headers[header] for field, header in VERIFICATION_HEADERS.items()}
        body["webhook_id"] = self.webhook_id
        body["webhook_event"] = event

        response = await self._send(
            "POST",
            "/v1/notifications/verify-webhook-signature",
            json=body,
            headers=await self._auth_headers(),
        )
        result = self._check(response, "verify a webhook signature")
        if result.get("verification_status") != "SUCCESS":
            raise ValueError("Webhook signature verification failed")


def _custom_metadata(custom_id: Any) -> dict[str, Any]:
    if not custom_id:
        return {}
    try:
        metadata = json.loads(custom_id)
    except ValueError:
        logger.warning(f"Ignoring non-JSON custom_id {custom_id!r}")
        return {}
    return metadata if isinstance(metadata, dict) else {}


def _as_cents(value: Any) -> int:
    try:
        return max(int(value), 0)
    except (TypeError, ValueError):
        return 0


def extract_paypal_confirmation(notification: ProviderNotification) -> Optional[PaymentConfirmation]:
    """Pull the confirmed-charge facts out of a PayPal capture or refund event.

    The charge is identified by the PayPal order ID when the resource links
    to one, otherwise by the resource's own ID.
    """
    resource = notification.payload.get("resource") or {}
    resource_id = resource.get("id")
    if not resource_id:
        return None

    metadata = _custom_metadata(resource.get("custom_id"))
    related_ids = (resource.get("supplementary_data") or {}).get("related_ids") or {}
    amount_field = resource.get("amount") or {}
    # Captures report "value", legacy sales report "total"
    amount = value_to_cents(amount_field.get("value") or amount_field.get("total"))

    context = metadata.get(META_CHARGE_CONTEXT)
    return PaymentConfirmation(
        payment_intent_id=related_ids.get("order_id") or resource_id,
        order_id=metadata.get(META_ORDER_ID) or None,
        charge_context=ChargeContext(context) if context in ChargeContext.__members__ else None,
        owner_id=metadata.get(META_OWNER_ID) or None,
        # Orders are captured in full, so the captured amount is the gross
        gross_amount_cents=amount,
        captured_amount_cents=amount,
        settlement_requested_cents=_as_cents(metadata.get(META_SETTLEMENT)),
    )
