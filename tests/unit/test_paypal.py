"""Unit tests for the PayPal adapter."""

import base64
import json

import httpx
import pytest

from src.errors import ProviderRejected, UpstreamUnavailable
from src.models import ChargeContext, ChargePattern, ChargeRequest, PaymentProvider, ProviderNotification
from src.settlement.paypal import (
    PayPalPaymentProvider,
    build_order_body,
    cents_to_value,
    extract_paypal_confirmation,
    value_to_cents,
)
from tests.factories import PAYPAL_MERCHANT, PAYPAL_PLATFORM_MERCHANT, FakePayPalAPI, paypal_capture_event

TRANSMISSION_HEADERS = {
    "paypal-transmission-id": "69cd13f0-d67a-11e5-baa3-778b53f4ae55",
    "paypal-transmission-time": "2026-10-18T19:11:05Z",
    "paypal-cert-url": "https://api.sandbox.paypal.com/v1/notifications/certs/CERT-360caa42",
    "paypal-auth-algo": "SHA256withRSA",
    "paypal-transmission-sig": "lmI95Jx3Y9nhR5SJWlHVIWpg4AgFk7n9bCHSRxbrd8A9zrhdu2rMyFrmz+Zjh3s3",
}


def paypal_request(pattern: ChargePattern = ChargePattern.DIRECT, **overrides) -> ChargeRequest:
    fields = {
        "gross_amount_cents": 10_050,
        "charge_context": ChargeContext.TICKET_SPLIT,
        "charge_pattern": pattern,
        "connected_account_id": PAYPAL_MERCHANT if pattern is not ChargePattern.NONE else None,
        "nominal_fee_cents": 1_000,
        "settlement_cents": 500,
        "idempotency_key": "b" * 32,
        "owner_id": "org_123",
        "provider": PaymentProvider.PAYPAL,
        "correlation_metadata": {"orderId": "ord_1", "eventId": "evt_1"},
    }
    fields.update(overrides)
    return ChargeRequest(**fields)


def verified_provider(api: FakePayPalAPI) -> PayPalPaymentProvider:
    return PayPalPaymentProvider(
        client_id="paypal-client-id",
        client_secret="paypal-client-secret",
        webhook_id="WH-1JE4802677712013X",
        retry_backoff_seconds=0,
        transport=httpx.MockTransport(api),
    )


@pytest.mark.unit
class TestAmounts:
    """Test conversion between cents and PayPal decimal strings."""

    @pytest.mark.parametrize("cents,value", [(10_050, "100.50"), (5, "0.05"), (0, "0.00"), (179, "1.79")])
    def test_cents_to_value(self, cents, value):
        assert cents_to_value(cents) == value

    @pytest.mark.parametrize("value,cents", [("100.50", 10_050), ("0.05", 5), ("12", 1_200), (None, 0), ("NaN", 0)])
    def test_value_to_cents(self, value, cents):
        assert value_to_cents(value) == cents


@pytest.mark.unit
class TestOrderBody:
    """Test translation of charge requests into PayPal orders."""

    def test_split_order_pays_merchant_and_platform_fee(self):
        body = build_order_body(paypal_request(), PAYPAL_PLATFORM_MERCHANT)
        unit = body["purchase_units"][0]

        assert body["intent"] == "CAPTURE"
        assert unit["reference_id"] == "ord_1"
        assert unit["amount"] == {"currency_code": "USD", "value": "100.50"}
        assert unit["payee"] == {"merchant_id": PAYPAL_MERCHANT}
        assert unit["payment_instruction"] == {
            "disbursement_mode": "INSTANT",
            "platform_fees": [
                {
                    "amount": {"currency_code": "USD", "value": "15.00"},
                    "payee": {"merchant_id": PAYPAL_PLATFORM_MERCHANT},
                }
            ],
        }
        assert json.loads(unit["custom_id"]) == {
            "orderId": "ord_1",
            "ownerId": "org_123",
            "chargeContext": "TICKET_SPLIT",
            "settlementAmount": "500",
        }
        assert len(unit["custom_id"]) <= 127

    def test_platform_only_order(self):
        request = paypal_request(
            ChargePattern.NONE,
            charge_context=ChargeContext.PLATFORM_ONLY,
            nominal_fee_cents=0,
            settlement_cents=0,
            owner_id=None,
        )

        unit = build_order_body(request)["purchase_units"][0]

        assert "payee" not in unit
        assert "payment_instruction" not in unit

    def test_fee_without_platform_merchant(self):
        unit = build_order_body(paypal_request())["purchase_units"][0]

        assert "payee" not in unit["payment_instruction"]["platform_fees"][0]


@pytest.mark.unit
class TestCreateOrder:
    """Test order creation, authentication and error mapping."""

    @pytest.mark.asyncio
    async def test_creates_order(self, paypal_provider, paypal_api):
        charge = await paypal_provider.create_charge(paypal_request())

        assert charge.charge_id == "5O190127TN0000001"
        assert charge.client_secret is None
        assert charge.approval_url.endswith("token=5O190127TN0000001")

        token_request, order_request = paypal_api.requests
        expected = base64.b64encode(b"paypal-client-id:paypal-client-secret").decode()
        assert token_request.headers["Authorization"] == f"Basic {expected}"
        assert order_request.headers["Authorization"] == "Bearer A21AAFtoken"
        assert order_request.headers["PayPal-Request-Id"] == "b" * 32

    @pytest.mark.asyncio
    async def test_retry_reuses_order_and_token(self, paypal_provider, paypal_api):
        first = await paypal_provider.create_charge(paypal_request())
        retry = await paypal_provider.create_charge(paypal_request())

        assert first.charge_id == retry.charge_id
        assert paypal_api.paths().count("/v1/oauth2/token") == 1

    @pytest.mark.asyncio
    async def test_retries_server_errors(self, paypal_provider, paypal_api):
        paypal_api.failures = [503, 500]

        charge = await paypal_provider.create_charge(paypal_request())

        assert charge.charge_id == "5O190127TN0000001"
        assert paypal_api.paths()[:3] == ["/v1/oauth2/token"] * 3

    @pytest.mark.asyncio
    async def test_persistent_server_errors_are_upstream_unavailable(self, paypal_provider, paypal_api):
        paypal_api.failures = [503] * 4

        with pytest.raises(UpstreamUnavailable) as exc_info:
            await paypal_provider.create_charge(paypal_request())

        assert exc_info.value.upstream == "paypal"
        assert len(paypal_api.requests) == 4

    @pytest.mark.asyncio
    async def test_connection_error_is_upstream_unavailable(self):
        def unreachable(request):
            raise httpx.ConnectError("Connection refused", request=request)

        provider = PayPalPaymentProvider(
            client_id="id",
            client_secret="secret",
            max_retries=1,
            retry_backoff_seconds=0,
            transport=httpx.MockTransport(unreachable),
        )

        with pytest.raises(UpstreamUnavailable):
            await provider.create_charge(paypal_request())
        await provider.close()

    @pytest.mark.asyncio
    async def test_unprocessable_order_is_provider_rejection(self):
        def reject(request):
            if request.url.path == "/v1/oauth2/token":
                return httpx.Response(200, json={"access_token": "token", "expires_in": 3600})
            return httpx.Response(
                422,
                json={"name": "UNPROCESSABLE_ENTITY", "message": "The payee account is restricted."},
            )

        provider = PayPalPaymentProvider(
            client_id="id", client_secret="secret", transport=httpx.MockTransport(reject)
        )

        with pytest.raises(ProviderRejected) as exc_info:
            await provider.create_charge(paypal_request())
        await provider.close()

        assert exc_info.value.provider_code == "UNPROCESSABLE_ENTITY"
        assert exc_info.value.message == "The payee account is restricted."


@pytest.mark.unit
class TestCaptureOrder:
    @pytest.mark.asyncio
    async def test_capture(self, paypal_provider, paypal_api):
        result = await paypal_provider.capture_order("5O190127TN0000001")

        assert result == {
            "order_id": "5O190127TN0000001",
            "status": "COMPLETED",
            "capture_id": "3C679366HH908993F",
        }
        assert paypal_api.requests[-1].headers["PayPal-Request-Id"] == "capture-5O190127TN0000001"


@pytest.mark.unit
class TestWebhookVerification:
    """Test PayPal webhook verification through the verification API."""

    @pytest.mark.asyncio
    async def test_verified_delivery(self):
        api = FakePayPalAPI()
        provider = verified_provider(api)
        event = paypal_capture_event("WH-58D329510W468432D-8HN650336L201105X", "5O190127TN0000001", "100.50")

        notification = await provider.parse_notification(json.dumps(event).encode(), TRANSMISSION_HEADERS)
        await provider.close()

        assert notification.event_id == "WH-58D329510W468432D-8HN650336L201105X"
        assert notification.event_type == "PAYMENT.CAPTURE.COMPLETED"
        assert notification.provider is PaymentProvider.PAYPAL

        verification = json.loads(api.requests[-1].content)
        assert verification["webhook_id"] == "WH-1JE4802677712013X"
        assert verification["transmission_sig"] == TRANSMISSION_HEADERS["paypal-transmission-sig"]
        assert verification["webhook_event"] == event

    @pytest.mark.asyncio
    async def test_failed_verification(self):
        api = FakePayPalAPI()
        api.verification_status = "FAILURE"
        provider = verified_provider(api)
        payload = json.dumps(paypal_capture_event("WH-1", "5O190127TN0000001", "100.50")).encode()

        with pytest.raises(ValueError):
            await provider.parse_notification(payload, TRANSMISSION_HEADERS)
        await provider.close()

    @pytest.mark.asyncio
    async def test_missing_transmission_headers(self):
        api = FakePayPalAPI()
        provider = verified_provider(api)
        payload = json.dumps(paypal_capture_event("WH-1", "5O190127TN0000001", "100.50")).encode()

        with pytest.raises(ValueError, match="paypal-transmission-sig"):
            await provider.parse_notification(
                payload, {k: v for k, v in TRANSMISSION_HEADERS.items() if k != "paypal-transmission-sig"}
            )
        await provider.close()

        assert api.requests == []

    @pytest.mark.asyncio
    async def test_unverified_rejected_unless_allowed(self, paypal_provider):
        payload = json.dumps(paypal_capture_event("WH-1", "5O190127TN0000001", "100.50")).encode()
        strict = PayPalPaymentProvider(client_id="id", client_secret="secret")

        with pytest.raises(ValueError):
            await strict.parse_notification(payload, {})
        await strict.close()

        notification = await paypal_provider.parse_notification(payload, {})
        assert notification.event_id == "WH-1"

    @pytest.mark.asyncio
    async def test_malformed_payload(self, paypal_provider):
        with pytest.raises(ValueError):
            await paypal_provider.parse_notification(b'{"event_type": "PAYMENT.CAPTURE.COMPLETED"}', {})


@pytest.mark.unit
class TestExtractPayPalConfirmation:
    """Test reading charge facts back out of PayPal notifications."""

    def test_capture_completed(self):
        custom = {"orderId": "ord_1", "ownerId": "org_123", "chargeContext": "TICKET_SPLIT", "settlementAmount": "500"}
        event = paypal_capture_event("WH-1", "5O190127TN0000001", "100.50", custom)
        notification = ProviderNotification(
            event_id="WH-1", event_type=event["event_type"], provider=PaymentProvider.PAYPAL, payload=event
        )

        confirmation = extract_paypal_confirmation(notification)

        assert confirmation.payment_intent_id == "5O190127TN0000001"
        assert confirmation.order_id == "ord_1"
        assert confirmation.owner_id == "org_123"
        assert confirmation.charge_context is ChargeContext.TICKET_SPLIT
        assert confirmation.gross_amount_cents == 10_050
        assert confirmation.captured_amount_cents == 10_050
        assert confirmation.settlement_requested_cents == 500

    def test_non_json_custom_id(self):
        event = paypal_capture_event("WH-2", "5O190127TN0000001", "10.00")
        event["resource"]["custom_id"] = "ord_1"
        notification = ProviderNotification(
            event_id="WH-2", event_type=event["event_type"], provider=PaymentProvider.PAYPAL, payload=event
        )

        confirmation = extract_paypal_confirmation(notification)

        assert confirmation.order_id is None
        assert confirmation.settlement_requested_cents == 0

    def test_event_without_resource(self):
        notification = ProviderNotification(
            event_id="WH-3",
            event_type="CHECKOUT.ORDER.APPROVED",
            provider=PaymentProvider.PAYPAL,
            payload={"id": "WH-3", "event_type": "CHECKOUT.ORDER.APPROVED"},
        )

        assert extract_paypal_confirmation(notification) is None
