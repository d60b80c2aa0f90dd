"""Unit tests for fee arithmetic and the charge distribution."""

from decimal import Decimal

import pytest

from src.errors import ConfigurationError, RejectionReason
from src.models import DebtRecord
from src.settlement.fees import (
    collected_settlement_cents,
    commission_fee_cents,
    compute_distribution,
    platform_fee_cents,
)


def debt(cents: int) -> DebtRecord:
    return DebtRecord(owner_id="org_123", remaining_debt_cents=cents)


@pytest.mark.unit
class TestDistribution:
    """Test how a charge is split between platform and connected party."""

    def test_small_debt_settled_in_full(self):
        """$5 of debt on a $100 order with a $10 fee is taken entirely."""
        distribution = compute_distribution(10_000, 1_000, debt(500))

        assert distribution.nominal_fee_cents == 1_000
        assert distribution.settlement_cents == 500
        assert distribution.total_platform_fee_cents == 1_500
        assert 10_000 - distribution.total_platform_fee_cents == 8_500

    def test_large_debt_capped_at_nominal_fee(self):
        """$50 of debt on the same order only takes another $10."""
        distribution = compute_distribution(10_000, 1_000, debt(5_000))

        assert distribution.settlement_cents == 1_000
        assert distribution.total_platform_fee_cents == 2_000

    def test_no_debt_means_no_settlement(self):
        distribution = compute_distribution(10_000, 1_000, DebtRecord.zero("org_123"))

        assert distribution.settlement_cents == 0
        assert distribution.total_platform_fee_cents == 1_000

    def test_zero_fee_never_collects_debt(self):
        distribution = compute_distribution(10_000, 0, debt(5_000))

        assert distribution.settlement_cents == 0
        assert distribution.total_platform_fee_cents == 0

    def test_settlement_never_exceeds_debt_or_fee(self):
        """Settlement is bounded by both the debt and the nominal fee."""
        for fee in (0, 1, 99, 250, 1_000):
            for owed in (0, 1, 100, 250, 10_000):
                distribution = compute_distribution(5_000, fee, debt(owed))
                assert distribution.settlement_cents <= owed
                assert distribution.settlement_cents <= fee
                assert distribution.total_platform_fee_cents <= 2 * fee

    def test_fee_exceeding_gross_rejected(self):
        with pytest.raises(ConfigurationError) as exc_info:
            compute_distribution(1_000, 1_001, DebtRecord.zero("org_123"))

        assert exc_info.value.reason is RejectionReason.FEE_EXCEEDS_GROSS

    def test_fee_plus_settlement_exceeding_gross_rejected(self):
        """A fee over half the order cannot be doubled by settlement."""
        with pytest.raises(ConfigurationError) as exc_info:
            compute_distribution(1_000, 800, debt(800))

        assert exc_info.value.reason is RejectionReason.FEE_EXCEEDS_GROSS

    def test_fee_equal_to_gross_allowed_without_debt(self):
        distribution = compute_distribution(1_000, 1_000, DebtRecord.zero("org_123"))
        assert distribution.total_platform_fee_cents == 1_000


@pytest.mark.unit
class TestFees:
    """Test the platform fee and commission formulas."""

    def test_platform_fee_default_rates(self):
        assert platform_fee_cents(10_000) == 549

    def test_platform_fee_rounds_half_up(self):
        # 3.7% of 50 cents is 1.85 -> 2
        assert platform_fee_cents(50, percent=Decimal("3.7"), fixed_cents=0) == 2
        # 3.7% of 150 cents is 5.55 -> 6
        assert platform_fee_cents(150, percent=Decimal("3.7"), fixed_cents=0) == 6

    def test_platform_fee_custom_rates(self):
        assert platform_fee_cents(2_000, percent=Decimal("10"), fixed_cents=30) == 230

    def test_commission_default(self):
        assert commission_fee_cents(10_000) == 1_500

    def test_commission_custom_percent(self):
        assert commission_fee_cents(3_333, Decimal("10")) == 333

    def test_commission_out_of_range_rejected(self):
        with pytest.raises(ConfigurationError):
            commission_fee_cents(10_000, Decimal("101"))
        with pytest.raises(ConfigurationError):
            commission_fee_cents(10_000, Decimal("-1"))


@pytest.mark.unit
class TestCollectedSettlement:
    """Test the settlement amount recognised on confirmation."""

    def test_full_capture_collects_everything_requested(self):
        assert collected_settlement_cents(500, 10_000, 10_000) == 500

    def test_partial_capture_prorated_down(self):
        assert collected_settlement_cents(500, 10_000, 5_000) == 250
        assert collected_settlement_cents(333, 1_000, 500) == 166

    def test_nothing_captured_collects_nothing(self):
        assert collected_settlement_cents(500, 10_000, 0) == 0

    def test_nothing_requested_collects_nothing(self):
        assert collected_settlement_cents(0, 10_000, 10_000) == 0
