"""Idempotency keys for provider charge creation.

The key must be identical for automatic retries of one checkout attempt and
different for a genuinely new attempt, so the nonce names the attempt (a
client attempt token or the pending order ID) and never the current time.
"""

import hashlib

KEY_LENGTH = 32


def derive_idempotency_key(scope_id: str, amount_cents: int, nonce: str) -> str:
    """Derive a fixed-length idempotency key.

    Args:
        scope_id: What is being charged for, e.g. ``ticket:evt_123``.
        amount_cents: Gross amount of the charge.
        nonce: Identifier of this checkout attempt.

    Returns:
        A 32 character hex token.
    """
    if not scope_id or not nonce:
        raise ValueError("scope_id and nonce are required to derive an idempotency key")

    data = f"{scope_id}|{amount_cents}|{nonce}"
    return hashlib.sha256(data.encode()).hexdigest()[:KEY_LENGTH]
