"""Shared data models for the settlement engine.

All Pydantic models used across the service for type safety and validation.
Money is always an integer number of cents in the single supported currency.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, computed_field, model_validator


def validate_cents(value: Any) -> int:
    """Reject anything that is not a non-negative whole number of cents."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"amount must be an integer number of cents, got {value!r}")
    if value < 0:
        raise ValueError(f"amount must not be negative, got {value}")
    return value


MoneyAmount = Annotated[int, BeforeValidator(validate_cents)]


class Currency(str, Enum):
    USD = "USD"


class ChargeContext(str, Enum):
    """What the customer is paying for; decides whether a transfer exists."""

    TICKET_SPLIT = "TICKET_SPLIT"
    PRODUCT_ORDER_SPLIT = "PRODUCT_ORDER_SPLIT"
    PLATFORM_ONLY = "PLATFORM_ONLY"

    @property
    def is_split(self) -> bool:
        return self is not ChargeContext.PLATFORM_ONLY


class ChargePattern(str, Enum):
    """Which account first receives the gross amount."""

    DIRECT = "DIRECT"
    DESTINATION = "DESTINATION"
    NONE = "NONE"


class PaymentProvider(str, Enum):
    STRIPE = "stripe"
    PAYPAL = "paypal"


class DebtRecord(BaseModel):
    """Outstanding platform debt for an organizer or vendor."""

    model_config = ConfigDict(frozen=True)

    owner_id: str
    remaining_debt_cents: MoneyAmount = 0

    @computed_field
    @property
    def has_debt(self) -> bool:
        return self.remaining_debt_cents > 0

    @classmethod
    def zero(cls, owner_id: str) -> "DebtRecord":
        return cls(owner_id=owner_id, remaining_debt_cents=0)


class ChargeDistribution(BaseModel):
    """Platform take for one charge, nominal fee plus debt settlement."""

    model_config = ConfigDict(frozen=True)

    nominal_fee_cents: MoneyAmount
    settlement_cents: MoneyAmount

    @computed_field
    @property
    def total_platform_fee_cents(self) -> int:
        return self.nominal_fee_cents + self.settlement_cents


class ChargeRequest(BaseModel):
    """Provider-agnostic description of a charge to create.

    Built once per checkout attempt and never mutated. The total platform
    fee is always derived from its two parts.
    """

    model_config = ConfigDict(frozen=True)

    gross_amount_cents: MoneyAmount
    currency: Currency = Currency.USD
    charge_context: ChargeContext
    charge_pattern: ChargePattern
    connected_account_id: Optional[str] = None
    nominal_fee_cents: MoneyAmount = 0
    settlement_cents: MoneyAmount = 0
    idempotency_key: str
    owner_id: Optional[str] = None
    provider: PaymentProvider = PaymentProvider.STRIPE
    correlation_metadata: dict[str, str] = Field(default_factory=dict)

    @computed_field
    @property
    def total_platform_fee_cents(self) -> int:
        return self.nominal_fee_cents + self.settlement_cents

    @property
    def platform_receives_cents(self) -> int:
        if self.charge_pattern is ChargePattern.NONE:
            return self.gross_amount_cents
        return self.total_platform_fee_cents

    @property
    def connected_party_cents(self) -> int:
        return self.gross_amount_cents - self.platform_receives_cents

    @model_validator(mode="after")
    def _check_split(self) -> "ChargeRequest":
        if self.total_platform_fee_cents > self.gross_amount_cents:
            raise ValueError("total platform fee exceeds gross amount")
        if self.charge_pattern is not ChargePattern.NONE and not self.connected_account_id:
            raise ValueError(f"{self.charge_pattern.value} charge requires a connected account")
        if self.charge_pattern is not ChargePattern.NONE and not self.charge_context.is_split:
            raise ValueError("platform-only charges cannot transfer funds")
        return self


class CheckoutContext(BaseModel):
    """Checkout request as received from the storefront."""

    charge_context: ChargeContext
    # Loosely typed on purpose so that bad amounts become a configuration rejection
    amount_cents: Union[int, float]
    currency: str = "USD"
    connected_account_id: Optional[str] = None
    owner_id: Optional[str] = Field(default=None, description="Organizer or vendor identity")
    event_id: Optional[str] = None
    platform_fee_cents: Optional[int] = Field(default=None, description="Ticket platform fee override")
    commission_percent: Optional[Decimal] = Field(default=None, description="Marketplace commission")
    use_direct_charge: bool = False
    order_id: Optional[str] = None
    order_number: Optional[str] = None
    attempt_id: Optional[str] = Field(
        default=None, description="Client token created once per checkout attempt"
    )
    provider: PaymentProvider = PaymentProvider.STRIPE
    metadata: dict[str, str] = Field(default_factory=dict)


class BuiltCharge(BaseModel):
    """Result of the intent builder: the request plus whether a split was honored."""

    model_config = ConfigDict(frozen=True)

    charge_request: ChargeRequest
    split_requested: bool
    split_honored: bool


class ProviderCharge(BaseModel):
    """Handle returned by the provider after creating a charge."""

    charge_id: str
    client_secret: Optional[str] = None
    approval_url: Optional[str] = Field(default=None, description="Where the buyer approves a PayPal order")


class CheckoutResponse(BaseModel):
    client_secret: Optional[str]
    payment_intent_id: str
    provider: PaymentProvider = PaymentProvider.STRIPE
    approval_url: Optional[str] = None
    charge_context: ChargeContext
    charge_pattern: ChargePattern
    split_requested: bool
    split_honored: bool
    application_fee_cents: int
    settlement_cents: int
    connected_party_receives_cents: int


class WebhookEventRecord(BaseModel):
    """One processed provider notification."""

    event_id: str
    provider: PaymentProvider
    event_type: str
    processed_at: datetime
    expires_at: datetime
    related_order_id: Optional[str] = None


class RecordResult(BaseModel):
    created: bool
    record: Optional[WebhookEventRecord] = None


class WebhookStats(BaseModel):
    total_events: int
    last_24_hours: int
    last_7_days: int
    event_type_counts: dict[str, int] = Field(default_factory=dict)
    provider_counts: dict[str, int] = Field(default_factory=dict)


class ProviderNotification(BaseModel):
    """A signature-verified webhook delivery."""

    event_id: str
    event_type: str
    provider: PaymentProvider
    payload: dict[str, Any] = Field(default_factory=dict)


class PaymentConfirmation(BaseModel):
    """Facts about a confirmed charge extracted from a notification payload."""

    payment_intent_id: str
    order_id: Optional[str] = None
    charge_context: Optional[ChargeContext] = None
    owner_id: Optional[str] = None
    gross_amount_cents: MoneyAmount = 0
    captured_amount_cents: MoneyAmount = 0
    settlement_requested_cents: MoneyAmount = 0


class SettlementResult(BaseModel):
    owner_id: str
    applied_cents: int
    remaining_cents: int


class DebtLedgerEntry(BaseModel):
    """Append-only history row for an owner's platform debt."""

    owner_id: str
    transaction_type: Literal["CASH_ORDER_DEBT", "DIGITAL_SETTLEMENT"]
    amount_cents: int
    balance_after_cents: int
    order_id: Optional[str] = None
    description: str = ""
    created_at: datetime


class OrderRecord(BaseModel):
    order_id: str
    kind: ChargeContext
    status: Literal["PENDING", "PAID", "FAILED", "REFUNDED"] = "PENDING"
    payment_intent_id: Optional[str] = None
    debt_settlement_cents: int = 0
    updated_at: datetime


class PaymentConfig(BaseModel):
    """Payment setup of an event: where its money goes and how it is paid."""

    entity_id: str
    connected_account_id: Optional[str] = None
    owner_id: Optional[str] = None
    paypal_merchant_id: Optional[str] = None
    payment_model: Literal["CREDIT_CARD", "PREPAY", "CASH"] = "CREDIT_CARD"
