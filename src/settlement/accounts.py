"""Capability checks for connected payment accounts.

A split charge is only attempted when the connected account can actually
receive funds. Test and placeholder identifiers fail the check, and the
charge then falls back to platform-only collection with a manual payout.
"""

from typing import Optional


class AccountCapability:
    """Decides whether a connected-account identifier can receive transfers."""

    def is_usable(self, account_id: Optional[str]) -> bool:
        raise NotImplementedError


class StripeAccountCapability(AccountCapability):
    """Heuristic for Stripe Connect accounts.

    Live account IDs start with ``acct_`` and are at least 20 characters;
    seeded fixtures such as ``acct_test_vendor`` are rejected.
    """

    prefix = "acct_"
    min_length = 20
    placeholder_markers = ("_test_", "placeholder", "fake")

    def is_usable(self, account_id: Optional[str]) -> bool:
        if not account_id:
            return False
        if not account_id.startswith(self.prefix):
            return False
        if any(marker in account_id for marker in self.placeholder_markers):
            return False
        return len(account_id) >= self.min_length


class PayPalAccountCapability(AccountCapability):
    """PayPal merchant IDs are 13 uppercase letters and digits."""

    length = 13

    def is_usable(self, account_id: Optional[str]) -> bool:
        if not account_id or len(account_id) != self.length:
            return False
        return account_id.isalnum() and account_id.isascii() and account_id == account_id.upper()
