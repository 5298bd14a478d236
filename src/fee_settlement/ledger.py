"""Fee balance derivation.

The paid amount of a fee is never incremented. It is recomputed from the
full set of successful transactions every time, so duplicate or
re-entrant confirmations cannot double count.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterable, List, Dict, Any

from .database.models import Fee, FeeStatus


@dataclass(frozen=True)
class Balance:
    """Derived balance fields of a fee."""
    total_amount: int
    paid_amount: int
    due_amount: int
    status: FeeStatus


def derive_status(paid_amount: int, total_amount: int) -> FeeStatus:
    if paid_amount == 0:
        return FeeStatus.PENDING
    if paid_amount >= total_amount:
        return FeeStatus.PAID
    return FeeStatus.PARTIAL


def compute_balance(total_amount: int, success_amounts: Iterable[int]) -> Balance:
    """Derive a fee balance from the amounts of its successful transactions.

    Args:
        total_amount: Sum of the fee's components.
        success_amounts: Amounts of every transaction in ``success`` status
            that references the fee.

    Returns:
        Balance with ``paid = min(sum, total)``, ``due = total - paid`` and
        the status that follows from them.
    """
    paid = min(sum(success_amounts), total_amount)
    return Balance(
        total_amount=total_amount,
        paid_amount=paid,
        due_amount=total_amount - paid,
        status=derive_status(paid, total_amount),
    )


def total_of(components: List[Dict[str, Any]]) -> int:
    """Sum fee components, rejecting non-positive amounts."""
    total = 0
    for component in components:
        amount = int(component["amount"])
        if amount <= 0:
            raise ValueError(f"Fee component '{component.get('name')}' must have a positive amount")
        total += amount
    return total


class FeeLedger(ABC):
    """Storage interface for fee aggregates."""

    @abstractmethod
    async def get_fee(self, fee_id: str) -> Fee:
        """Return the fee or raise NotFoundError."""
        raise NotImplementedError

    @abstractmethod
    async def find_fee(self, student_id: str, academic_year: str) -> Fee:
        """Return the student's fee for a period or raise NotFoundError."""
        raise NotImplementedError

    @abstractmethod
    async def create_fee(
        self,
        student_id: str,
        academic_year: str,
        components: List[Dict[str, Any]],
    ) -> Fee:
        raise NotImplementedError

    @abstractmethod
    async def recompute(self, fee_id: str) -> Fee:
        """
        Re-derive paid/due/status from the successful transactions of the
        fee and persist the result. Safe to call any number of times.
        """
        raise NotImplementedError
