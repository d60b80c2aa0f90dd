"""Settlement service.

FastAPI application exposing:
- Checkout (Stripe payment intents and PayPal orders with split payments)
- PayPal order capture
- Stripe and PayPal webhook reconciliation
- Webhook ledger statistics and eviction
- Platform debt lookup
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, Optional, Union

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from src.config import config, validate_config_for_service
from src.database import Database
from src.errors import ConfigurationError, ErrorKind, RejectionReason, SettlementError, UpstreamUnavailable
from src.logging_utils import CorrelationIdContext, get_logger, setup_logging
from src.models import CheckoutContext, CheckoutResponse, PaymentProvider
from src.settlement.debt import SettlementApplier
from src.settlement.intents import PaymentIntentBuilder, build_default_builder
from src.settlement.paypal import PayPalPaymentProvider
from src.settlement.provider import StripePaymentProvider
from src.settlement.webhook_ledger import WebhookEventLedger
from src.settlement.webhooks import WebhookProcessor

logger = get_logger(__name__)

STATUS_BY_KIND = {
    ErrorKind.CONFIGURATION: 400,
    ErrorKind.PROVIDER_REJECTED: 402,
    ErrorKind.UPSTREAM_UNAVAILABLE: 503,
}

PaymentAdapter = Union[StripePaymentProvider, PayPalPaymentProvider]


@dataclass
class SettlementServices:
    """Everything the endpoints need, built once by the process entry point."""

    db: Database
    builder: PaymentIntentBuilder
    providers: Dict[PaymentProvider, PaymentAdapter]
    ledger: WebhookEventLedger
    processor: WebhookProcessor

    def adapter(self, provider: PaymentProvider) -> PaymentAdapter:
        """The configured adapter for ``provider``.

        Raises:
            ConfigurationError: The provider is not configured.
        """
        adapter = self.providers.get(provider)
        if adapter is None:
            raise ConfigurationError(
                RejectionReason.UNSUPPORTED_PROVIDER, f"Payment provider {provider.value} is not configured"
            )
        return adapter

    @classmethod
    def from_config(cls) -> "SettlementServices":
        db = Database(config.database_path)
        ledger = WebhookEventLedger(db, retention=timedelta(days=config.webhook_retention_days))
        providers: Dict[PaymentProvider, PaymentAdapter] = {
            PaymentProvider.STRIPE: StripePaymentProvider(
                api_key=config.stripe_secret_key,
                webhook_secret=config.stripe_webhook_secret,
                payment_method_types=config.payment_method_types,
                allow_unsigned_webhooks=config.environment != "production",
            )
        }
        if config.paypal_enabled:
            providers[PaymentProvider.PAYPAL] = PayPalPaymentProvider(
                client_id=config.paypal_client_id,
                client_secret=config.paypal_client_secret,
                base_url=config.paypal_base_url,
                platform_merchant_id=config.paypal_merchant_id,
                webhook_id=config.paypal_webhook_id,
                allow_unsigned_webhooks=config.environment != "production",
                timeout=config.paypal_timeout_seconds,
                max_retries=config.paypal_max_retries,
            )
        return cls(
            db=db,
            builder=build_default_builder(db),
            providers=providers,
            ledger=ledger,
            processor=WebhookProcessor(db, ledger, SettlementApplier(db)),
        )


def register_exception_handlers(app: FastAPI) -> None:
    """Map engine error kinds to HTTP responses."""

    @app.exception_handler(SettlementError)
    async def settlement_error(request: Request, exc: SettlementError):
        status_code = STATUS_BY_KIND[exc.kind]
        if exc.kind is ErrorKind.CONFIGURATION:
            logger.warning(f"Rejected {request.url.path}: {exc.message}")
        else:
            logger.error(f"{exc.kind.value} on {request.url.path}: {exc.message}")
        return JSONResponse(status_code=status_code, content=exc.to_dict())


def create_app(services: Optional[SettlementServices] = None) -> FastAPI:
    """Create the FastAPI app.

    Args:
        services: Pre-built services. When omitted they are built from the
            global config on startup.
    """
    app = FastAPI(
        title="Settlement",
        description="Split-payment settlement engine",
    )
    app.state.services = services
    register_exception_handlers(app)

    def get_services() -> SettlementServices:
        if app.state.services is None:
            raise HTTPException(status_code=503, detail="Service not initialized")
        return app.state.services

    @app.on_event("startup")
    async def startup():
        """Build services if needed and initialize the database."""
        logger.info("Initializing settlement service...")
        if app.state.services is None:
            validate_config_for_service("api")
            app.state.services = SettlementServices.from_config()
        await app.state.services.db.initialize()
        logger.info("Settlement service initialized")

    @app.on_event("shutdown")
    async def shutdown():
        """Close provider HTTP clients."""
        if app.state.services is None:
            return
        paypal = app.state.services.providers.get(PaymentProvider.PAYPAL)
        if paypal is not None:
            await paypal.close()

    @app.get("/health")
    async def health_check() -> dict:
        """Health check endpoint."""
        return {"status": "ok", "service": "settlement"}

    @app.post("/checkout", response_model=CheckoutResponse)
    async def checkout(
        checkout_context: CheckoutContext,
        x_request_id: str = Header(None, alias="X-Request-Id"),
    ):
        """Create a payment intent (Stripe) or order (PayPal) for a checkout attempt.

        Retries of the same attempt (same attempt_id or order_id and amount)
        reuse the idempotency key, so the provider returns the same charge
        instead of charging twice.
        """
        services = get_services()
        with CorrelationIdContext(x_request_id):
            adapter = services.adapter(checkout_context.provider)
            built = await services.builder.build(checkout_context)
            charge_request = built.charge_request

            if checkout_context.order_id:
                await _ensure_order(services.db, checkout_context)

            charge = await adapter.create_charge(charge_request)

            return CheckoutResponse(
                client_secret=charge.client_secret,
                payment_intent_id=charge.charge_id,
                provider=charge_request.provider,
                approval_url=charge.approval_url,
                charge_context=charge_request.charge_context,
                charge_pattern=charge_request.charge_pattern,
                split_requested=built.split_requested,
                split_honored=built.split_honored,
                application_fee_cents=(
                    charge_request.total_platform_fee_cents if built.split_honored else 0
                ),
                settlement_cents=charge_request.settlement_cents,
                connected_party_receives_cents=charge_request.connected_party_cents,
            )

    @app.post("/webhooks/stripe")
    async def receive_stripe_webhook(
        request: Request,
        stripe_signature: str = Header(None, alias="Stripe-Signature"),
        x_request_id: str = Header(None, alias="X-Request-Id"),
    ):
        """Receive a Stripe notification and reconcile it exactly once.

        Duplicates are acknowledged with 200 so Stripe stops redelivering;
        processing failures return 500 so it tries again.
        """
        services = get_services()
        with CorrelationIdContext(x_request_id):
            raw_payload = await request.body()

            try:
                notification = services.adapter(PaymentProvider.STRIPE).parse_notification(
                    raw_payload, stripe_signature
                )
            except ValueError as e:
                logger.error(f"Rejected Stripe webhook: {e}")
                raise HTTPException(status_code=400, detail=str(e))

            try:
                return await services.processor.process(notification)
            except SettlementError:
                raise
            except Exception as e:
                logger.error(f"Webhook processing error: {e}", exc_info=True)
                raise HTTPException(status_code=500, detail="Webhook processing failed")

    @app.post("/webhooks/paypal")
    async def receive_paypal_webhook(
        request: Request,
        x_request_id: str = Header(None, alias="X-Request-Id"),
    ):
        """Receive a PayPal notification and reconcile it exactly once.

        The delivery is verified against PayPal's verification API using its
        transmission headers before anything is recorded.
        """
        services = get_services()
        with CorrelationIdContext(x_request_id):
            raw_payload = await request.body()
            adapter = services.adapter(PaymentProvider.PAYPAL)

            try:
                notification = await adapter.parse_notification(raw_payload, request.headers)
            except ValueError as e:
                logger.error(f"Rejected PayPal webhook: {e}")
                raise HTTPException(status_code=400, detail=str(e))

            try:
                return await services.processor.process(notification)
            except SettlementError:
                raise
            except Exception as e:
                logger.error(f"Webhook processing error: {e}", exc_info=True)
                raise HTTPException(status_code=500, detail="Webhook processing failed")

    @app.post("/checkout/paypal/{paypal_order_id}/capture")
    async def capture_paypal_order(
        paypal_order_id: str,
        x_request_id: str = Header(None, alias="X-Request-Id"),
    ):
        """Capture a PayPal order after the buyer approved it.

        The order and debt are updated when the capture webhook arrives.
        """
        services = get_services()
        with CorrelationIdContext(x_request_id):
            adapter = services.adapter(PaymentProvider.PAYPAL)
            return await adapter.capture_order(paypal_order_id)

    @app.get("/webhooks/stats")
    async def webhook_stats(provider: Optional[PaymentProvider] = None):
        services = get_services()
        stats = await services.ledger.stats(provider=provider)
        return stats.model_dump()

    @app.post("/maintenance/webhook-events/evict")
    async def evict_webhook_events():
        """Remove expired webhook ledger records. Called by a scheduled job."""
        services = get_services()
        removed = await services.ledger.evict_expired()
        return {"removed": removed}

    @app.get("/debt/{owner_id}")
    async def get_debt(owner_id: str, limit: int = 50):
        services = get_services()
        debt = await services.builder.debt_reader.get_debt(owner_id)
        history = await services.db.get_debt_history(owner_id, limit=limit)
        return {
            **debt.model_dump(),
            "history": [entry.model_dump(mode="json") for entry in history],
        }

    return app


async def _ensure_order(db: Database, checkout_context: CheckoutContext) -> None:
    """Make sure the pending order exists before money moves for it."""
    try:
        if await db.get_order(checkout_context.order_id) is None:
            await db.create_order(
                checkout_context.order_id,
                checkout_context.charge_context,
                metadata=checkout_context.metadata,
            )
    except Exception as e:
        logger.error(f"Order store unavailable for {checkout_context.order_id}: {e}")
        raise UpstreamUnavailable("Failed to record the pending order") from e


app = create_app()


if __name__ == "__main__":
    import uvicorn

    setup_logging(config.log_level, config.log_format)
    logger.info(f"Starting settlement service on {config.host}:{config.port}")
    uvicorn.run(
        app,
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower(),
    )
