import os
from datetime import timedelta

import httpx
import pytest

# Set dummy environment variables for testing
# This must run before src.config is imported by any test
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "")
os.environ.setdefault("LOG_FORMAT", "text")

from src.database import Database  # noqa: E402
from src.models import ChargeRequest, PaymentConfig, PaymentProvider, ProviderCharge  # noqa: E402
from src.settlement.debt import DebtLedgerReader, SettlementApplier  # noqa: E402
from src.settlement.intents import PaymentIntentBuilder  # noqa: E402
from src.settlement.paypal import PayPalPaymentProvider  # noqa: E402
from src.settlement.provider import StripePaymentProvider  # noqa: E402
from src.settlement.server import SettlementServices  # noqa: E402
from src.settlement.webhook_ledger import WebhookEventLedger  # noqa: E402
from src.settlement.webhooks import WebhookProcessor  # noqa: E402
from tests.factories import PAYPAL_MERCHANT, PAYPAL_PLATFORM_MERCHANT, FakePayPalAPI  # noqa: E402

LIVE_ACCOUNT = "acct_1Nv0FGQ9RKHgCVdK"
ORGANIZER = "org_123"


class FakeStripeProvider(StripePaymentProvider):
    """Stripe stand-in that behaves like the real API with respect to idempotency keys."""

    def __init__(self):
        super().__init__(api_key="sk_test_dummy", allow_unsigned_webhooks=True)
        self.requests: list[ChargeRequest] = []
        self.intents: dict[str, ProviderCharge] = {}

    async def create_charge(self, request: ChargeRequest) -> ProviderCharge:
        self.requests.append(request)
        if request.idempotency_key not in self.intents:
            intent_id = f"pi_{len(self.intents) + 1:04d}"
            self.intents[request.idempotency_key] = ProviderCharge(
                charge_id=intent_id, client_secret=f"{intent_id}_secret"
            )
        return self.intents[request.idempotency_key]


@pytest.fixture
async def test_db(tmp_path):
    """Create a temporary test database."""
    db = Database(str(tmp_path / "test.db"))
    await db.initialize()
    return db


@pytest.fixture
async def seeded_db(test_db):
    """Database with one ticketed event whose organizer has a live account."""
    await test_db.upsert_payment_config(
        PaymentConfig(
            entity_id="evt_1",
            connected_account_id=LIVE_ACCOUNT,
            owner_id=ORGANIZER,
            paypal_merchant_id=PAYPAL_MERCHANT,
            payment_model="CREDIT_CARD",
        )
    )
    return test_db


@pytest.fixture
def ledger(test_db):
    return WebhookEventLedger(test_db, retention=timedelta(days=7))


@pytest.fixture
def builder(test_db):
    return PaymentIntentBuilder(db=test_db, debt_reader=DebtLedgerReader(test_db))


@pytest.fixture
def processor(test_db, ledger):
    return WebhookProcessor(test_db, ledger, SettlementApplier(test_db))


@pytest.fixture
def fake_provider():
    return FakeStripeProvider()


@pytest.fixture
def paypal_api():
    return FakePayPalAPI()


@pytest.fixture
async def paypal_provider(paypal_api):
    """PayPal adapter talking to the in-memory PayPal API."""
    provider = PayPalPaymentProvider(
        client_id="paypal-client-id",
        client_secret="paypal-client-secret",
        platform_merchant_id=PAYPAL_PLATFORM_MERCHANT,
        allow_unsigned_webhooks=True,
        retry_backoff_seconds=0,
        transport=httpx.MockTransport(paypal_api),
    )
    yield provider
    await provider.close()


@pytest.fixture
def services(seeded_db, ledger, builder, processor, fake_provider, paypal_provider):
    return SettlementServices(
        db=seeded_db,
        builder=builder,
        providers={PaymentProvider.STRIPE: fake_provider, PaymentProvider.PAYPAL: paypal_provider},
        ledger=ledger,
        processor=processor,
    )
