"""Payment reconciliation.

This module applies the gateway's authoritative payment status to local
transactions and fee balances, exactly once in effect no matter how many
triggers (webhook, client poll, manual retry) confirm the same order.
"""

from .engine import (
    ReconciliationEngine,
    ReconcileResult,
    normalize_payment_method,
    latest_attempt,
    poll_until_settled,
)

__all__ = [
    "ReconciliationEngine",
    "ReconcileResult",
    "normalize_payment_method",
    "latest_attempt",
    "poll_until_settled",
]
