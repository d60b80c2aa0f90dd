"""Error kinds raised by the settlement engine.

Every rejection carries an ``ErrorKind`` so the HTTP layer can map it to a
status code without string matching. A duplicate webhook delivery is not an
error and has no exception here.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    CONFIGURATION = "configuration"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"
    PROVIDER_REJECTED = "provider_rejected"


class RejectionReason(str, Enum):
    """Why a charge construction was refused before reaching the provider."""

    INVALID_AMOUNT = "invalid_amount"
    AMOUNT_BELOW_MINIMUM = "amount_below_minimum"
    AMOUNT_ABOVE_MAXIMUM = "amount_above_maximum"
    UNSUPPORTED_CURRENCY = "unsupported_currency"
    FEE_EXCEEDS_GROSS = "fee_exceeds_gross"
    MISSING_CONNECTED_ACCOUNT = "missing_connected_account"
    MISSING_IDEMPOTENCY_SCOPE = "missing_idempotency_scope"
    PAYMENT_MODEL_MISMATCH = "payment_model_mismatch"
    UNSUPPORTED_PROVIDER = "unsupported_provider"


class SettlementError(Exception):
    """Base class for settlement engine failures."""

    kind: ErrorKind

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.message, "kind": self.kind.value}


class ConfigurationError(SettlementError):
    """Charge construction rejected locally; never retried, no provider call made."""

    kind = ErrorKind.CONFIGURATION

    def __init__(self, reason: RejectionReason, message: str):
        super().__init__(message)
        self.reason = reason

    def to_dict(self) -> dict:
        return {**super().to_dict(), "reason": self.reason.value}


class UpstreamUnavailable(SettlementError):
    """The order store or another collaborator could not be reached."""

    kind = ErrorKind.UPSTREAM_UNAVAILABLE

    def __init__(self, message: str, upstream: str = "order_store"):
        super().__init__(message)
        self.upstream = upstream


class ProviderRejected(SettlementError):
    """The payment provider declined to create or confirm the charge."""

    kind = ErrorKind.PROVIDER_REJECTED

    def __init__(self, message: str, provider_code: Optional[str] = None):
        super().__init__(message)
        self.provider_code = provider_code

    def to_dict(self) -> dict:
        data = super().to_dict()
        if self.provider_code:
            data["provider_code"] = self.provider_code
        return data
