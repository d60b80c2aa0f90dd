"""Payment intent builder.

Turns a checkout request into an immutable ``ChargeRequest``: validates the
amount and currency, resolves the connected account, reads the owner's debt,
computes the fee distribution and derives the idempotency key. Every
rejection happens here, before the provider is called.
"""

from typing import Optional

from src.config import config
from src.database import Database
from src.errors import ConfigurationError, RejectionReason, UpstreamUnavailable
from src.logging_utils import get_logger
from src.models import (
    BuiltCharge,
    ChargeContext,
    ChargeDistribution,
    ChargePattern,
    ChargeRequest,
    CheckoutContext,
    Currency,
    DebtRecord,
    PaymentProvider,
)
from src.settlement.accounts import (
    AccountCapability,
    PayPalAccountCapability,
    StripeAccountCapability,
)
from src.settlement.debt import DebtLedgerReader
from src.settlement.fees import commission_fee_cents, compute_distribution, platform_fee_cents
from src.settlement.idempotency import derive_idempotency_key

logger = get_logger(__name__)

_SCOPE_PREFIX = {
    ChargeContext.TICKET_SPLIT: "ticket",
    ChargeContext.PRODUCT_ORDER_SPLIT: "product-order",
    ChargeContext.PLATFORM_ONLY: "platform",
}


class PaymentIntentBuilder:
    """Builds provider-agnostic charge requests."""

    def __init__(
        self,
        db: Database,
        debt_reader: DebtLedgerReader,
        account_capabilities: Optional[dict[PaymentProvider, AccountCapability]] = None,
        min_charge_cents: int = 50,
        max_charge_cents: int = 10_000_000,
        currency: Currency = Currency.USD,
    ):
        self.db = db
        self.debt_reader = debt_reader
        self.account_capabilities = account_capabilities or {
            PaymentProvider.STRIPE: StripeAccountCapability(),
            PaymentProvider.PAYPAL: PayPalAccountCapability(),
        }
        self.currency = currency
        self.min_charge_cents = min_charge_cents
        self.max_charge_cents = max_charge_cents

    async def build(self, checkout: CheckoutContext) -> BuiltCharge:
        """Build the charge request for one checkout attempt.

        Args:
            checkout: The storefront's checkout request.

        Returns:
            The charge request plus whether a requested split was honored.

        Raises:
            ConfigurationError: The request can never succeed as given.
            UpstreamUnavailable: The event payment configuration could not be read.
        """
        capability = self._capability_for(checkout.provider)
        gross = self._validate_amount(checkout.amount_cents)
        self._validate_currency(checkout.currency)
        nonce = checkout.attempt_id or checkout.order_id
        if not nonce:
            raise ConfigurationError(
                RejectionReason.MISSING_IDEMPOTENCY_SCOPE,
                "An attempt_id or order_id is required to make the charge idempotent",
            )

        context = checkout.charge_context
        account_id = checkout.connected_account_id
        owner_id = checkout.owner_id

        if context is ChargeContext.TICKET_SPLIT and checkout.event_id and not account_id:
            account_id, owner_id = await self._resolve_event_account(
                checkout.event_id, owner_id, checkout.provider
            )

        split_requested = context.is_split
        if split_requested and not account_id:
            raise ConfigurationError(
                RejectionReason.MISSING_CONNECTED_ACCOUNT,
                f"No connected account available for {context.value} charge",
            )

        split_honored = split_requested and capability.is_usable(account_id)
        if split_requested and not split_honored:
            logger.warning(
                f"Connected account {account_id!r} is not usable; "
                "charging platform-only, payout will be manual"
            )

        pattern = self._select_pattern(context, checkout.use_direct_charge, split_honored, checkout.provider)
        nominal_fee = self._nominal_fee(checkout, gross)

        if split_honored and owner_id:
            debt = await self.debt_reader.get_debt(owner_id)
            distribution = compute_distribution(gross, nominal_fee, debt)
        elif split_requested:
            distribution = compute_distribution(gross, nominal_fee, DebtRecord.zero(owner_id or ""))
        else:
            distribution = ChargeDistribution(nominal_fee_cents=0, settlement_cents=0)

        if distribution.settlement_cents:
            logger.info(
                f"Debt settlement for {owner_id}: taking ${distribution.settlement_cents / 100:.2f} "
                f"on top of the ${distribution.nominal_fee_cents / 100:.2f} fee"
            )

        scope_id = f"{_SCOPE_PREFIX[context]}:{checkout.order_id or owner_id or checkout.event_id or '-'}"
        charge_request = ChargeRequest(
            gross_amount_cents=gross,
            currency=self.currency,
            charge_context=context,
            charge_pattern=pattern,
            connected_account_id=account_id,
            nominal_fee_cents=distribution.nominal_fee_cents,
            settlement_cents=distribution.settlement_cents,
            idempotency_key=derive_idempotency_key(scope_id, gross, nonce),
            owner_id=owner_id,
            provider=checkout.provider,
            correlation_metadata=self._correlation_metadata(checkout),
        )
        return BuiltCharge(
            charge_request=charge_request,
            split_requested=split_requested,
            split_honored=split_honored,
        )

    def _validate_amount(self, amount) -> int:
        if isinstance(amount, bool) or not isinstance(amount, (int, float)):
            raise ConfigurationError(RejectionReason.INVALID_AMOUNT, "Valid positive amount is required")
        if isinstance(amount, float):
            if not amount.is_integer():
                raise ConfigurationError(
                    RejectionReason.INVALID_AMOUNT, f"Amount must be whole cents, got {amount}"
                )
            amount = int(amount)
        if amount <= 0:
            raise ConfigurationError(RejectionReason.INVALID_AMOUNT, "Valid positive amount is required")
        if amount < self.min_charge_cents:
            raise ConfigurationError(
                RejectionReason.AMOUNT_BELOW_MINIMUM,
                f"Amount must be at least {self.min_charge_cents} cents",
            )
        if amount > self.max_charge_cents:
            raise ConfigurationError(
                RejectionReason.AMOUNT_ABOVE_MAXIMUM,
                f"Amount exceeds the {self.max_charge_cents} cent maximum",
            )
        return amount

    def _capability_for(self, provider: PaymentProvider) -> AccountCapability:
        capability = self.account_capabilities.get(provider)
        if capability is None:
            raise ConfigurationError(
                RejectionReason.UNSUPPORTED_PROVIDER, f"Payment provider {provider.value} is not supported"
            )
        return capability

    def _validate_currency(self, currency: str) -> None:
        if (currency or "").upper() != self.currency.value:
            raise ConfigurationError(
                RejectionReason.UNSUPPORTED_CURRENCY, f"Only {self.currency.value} currency is supported"
            )

    async def _resolve_event_account(
        self, event_id: str, owner_id: Optional[str], provider: PaymentProvider = PaymentProvider.STRIPE
    ) -> tuple[Optional[str], Optional[str]]:
        try:
            payment_config = await self.db.get_payment_config(event_id)
        except Exception as e:
            logger.error(f"Failed to fetch payment config for event {event_id}: {e}")
            raise UpstreamUnavailable("Failed to retrieve payment configuration") from e

        account_id = None
        if payment_config is not None:
            if provider is PaymentProvider.PAYPAL:
                account_id = payment_config.paypal_merchant_id
            else:
                account_id = payment_config.connected_account_id

        if not account_id:
            raise ConfigurationError(
                RejectionReason.MISSING_CONNECTED_ACCOUNT,
                f"Event does not have a connected {provider.value} account configured",
            )
        if payment_config.payment_model != "CREDIT_CARD":
            raise ConfigurationError(
                RejectionReason.PAYMENT_MODEL_MISMATCH,
                "Event is not configured for credit card payments",
            )
        return account_id, owner_id or payment_config.owner_id

    @staticmethod
    def _select_pattern(
        context: ChargeContext,
        use_direct: bool,
        split_honored: bool,
        provider: PaymentProvider = PaymentProvider.STRIPE,
    ) -> ChargePattern:
        if not split_honored:
            return ChargePattern.NONE
        # PayPal orders always name the merchant as payee and take the fee from there
        if provider is PaymentProvider.PAYPAL:
            return ChargePattern.DIRECT
        if context is ChargeContext.TICKET_SPLIT and use_direct:
            return ChargePattern.DIRECT
        return ChargePattern.DESTINATION

    @staticmethod
    def _nominal_fee(checkout: CheckoutContext, gross: int) -> int:
        if checkout.charge_context is ChargeContext.PLATFORM_ONLY:
            return 0
        if checkout.charge_context is ChargeContext.PRODUCT_ORDER_SPLIT:
            return commission_fee_cents(gross, checkout.commission_percent)

        if checkout.platform_fee_cents is None:
            return platform_fee_cents(gross)
        if isinstance(checkout.platform_fee_cents, bool) or checkout.platform_fee_cents < 0:
            raise ConfigurationError(
                RejectionReason.INVALID_AMOUNT, "Platform fee must be a non-negative number of cents"
            )
        return checkout.platform_fee_cents

    @staticmethod
    def _correlation_metadata(checkout: CheckoutContext) -> dict[str, str]:
        metadata = dict(checkout.metadata)
        for key, value in (
            ("orderId", checkout.order_id),
            ("orderNumber", checkout.order_number),
            ("eventId", checkout.event_id),
        ):
            if value:
                metadata[key] = value
        return metadata


def build_default_builder(db: Database) -> PaymentIntentBuilder:
    """Builder wired from the global settings."""
    return PaymentIntentBuilder(
        db=db,
        debt_reader=DebtLedgerReader(db, timeout_seconds=config.debt_read_timeout_seconds),
        min_charge_cents=config.min_charge_cents,
        max_charge_cents=config.max_charge_cents,
        currency=Currency(config.supported_currency.upper()),
    )
