"""Platform fee arithmetic and the charge distribution calculator.

All amounts are integer cents. Percentages are applied with Decimal and
rounded half-up to a whole cent, so no float ever touches a money value.
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from src.config import config
from src.errors import ConfigurationError, RejectionReason
from src.models import ChargeDistribution, DebtRecord

_HUNDRED = Decimal(100)


def _percent_of(amount_cents: int, percent: Decimal) -> int:
    share = Decimal(amount_cents) * Decimal(percent) / _HUNDRED
    return int(share.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def platform_fee_cents(
    subtotal_cents: int,
    percent: Optional[Decimal] = None,
    fixed_cents: Optional[int] = None,
) -> int:
    """Ticket platform fee: a percentage of the subtotal plus a fixed amount.

    With the default settings a $100.00 subtotal costs 370 + 179 = 549 cents.
    """
    percent = config.platform_fee_percent if percent is None else percent
    fixed_cents = config.platform_fee_fixed_cents if fixed_cents is None else fixed_cents
    return _percent_of(subtotal_cents, percent) + fixed_cents


def commission_fee_cents(amount_cents: int, commission_percent: Optional[Decimal] = None) -> int:
    """Marketplace commission on a product order."""
    if commission_percent is None:
        commission_percent = config.default_commission_percent
    if commission_percent < 0 or commission_percent > _HUNDRED:
        raise ConfigurationError(
            RejectionReason.FEE_EXCEEDS_GROSS,
            f"Commission must be between 0 and 100 percent, got {commission_percent}",
        )
    return _percent_of(amount_cents, commission_percent)


def compute_distribution(
    gross_amount_cents: int, nominal_fee_cents: int, debt: DebtRecord
) -> ChargeDistribution:
    """Split a charge between the platform and the connected party.

    The settlement skim is capped at the nominal fee, so the platform never
    takes more than twice its ordinary fee from one order however large the
    owner's debt is.

    Args:
        gross_amount_cents: What the customer pays.
        nominal_fee_cents: The platform's ordinary fee for this charge.
        debt: The connected party's outstanding platform debt.

    Returns:
        The nominal fee, the settlement skim and their total.

    Raises:
        ConfigurationError: If the fee, alone or with the settlement, exceeds
            the gross amount.
    """
    if nominal_fee_cents > gross_amount_cents:
        raise ConfigurationError(
            RejectionReason.FEE_EXCEEDS_GROSS,
            f"Platform fee ({nominal_fee_cents}) exceeds the order amount ({gross_amount_cents})",
        )

    if not debt.has_debt or nominal_fee_cents <= 0:
        settlement_cents = 0
    else:
        settlement_cents = min(debt.remaining_debt_cents, nominal_fee_cents)

    distribution = ChargeDistribution(
        nominal_fee_cents=max(nominal_fee_cents, 0),
        settlement_cents=settlement_cents,
    )

    if distribution.total_platform_fee_cents > gross_amount_cents:
        raise ConfigurationError(
            RejectionReason.FEE_EXCEEDS_GROSS,
            f"Platform fee with debt settlement ({distribution.total_platform_fee_cents}) "
            f"exceeds the order amount ({gross_amount_cents})",
        )
    return distribution


def collected_settlement_cents(
    requested_cents: int, gross_amount_cents: int, captured_amount_cents: int
) -> int:
    """Settlement actually collected by a confirmed charge.

    A partial capture collects a proportional share, rounded down.
    """
    if requested_cents <= 0 or captured_amount_cents <= 0 or gross_amount_cents <= 0:
        return 0
    if captured_amount_cents >= gross_amount_cents:
        return requested_cents
    return requested_cents * captured_amount_cents // gross_amount_cents
