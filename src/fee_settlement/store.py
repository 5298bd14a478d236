"""Storage interface for payment transactions."""

import enum
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, Dict, Any, List, Tuple

from .database.models import Student, Transaction, TransactionStatus, ReconcileTrigger


class SideEffectFlag(str, enum.Enum):
    """One-shot flags stored on a transaction."""
    RECEIPT_GENERATED = "receipt_generated"
    NOTIFICATION_SENT = "notification_sent"


class TransactionStore(ABC):
    """
    Persistent record of payment attempts keyed by order id.

    Implementations must make ``transition_if_pending`` and ``claim_flag``
    atomic at the storage layer; concurrent reconcile runs rely on them
    instead of any call-site locking.
    """

    @abstractmethod
    async def create(
        self,
        order_id: str,
        student_id: str,
        fee_id: str,
        amount: int,
        currency: str = "INR",
    ) -> Transaction:
        """Create a pending transaction. Raises ConflictError on a duplicate order id."""
        raise NotImplementedError

    @abstractmethod
    async def find_by_order_id(self, order_id: str) -> Transaction:
        """Return the transaction or raise NotFoundError."""
        raise NotImplementedError

    @abstractmethod
    async def all_success_for_fee(self, fee_id: str) -> List[Transaction]:
        raise NotImplementedError

    @abstractmethod
    async def transition_if_pending(
        self,
        order_id: str,
        new_status: TransactionStatus,
        fields: Optional[Dict[str, Any]] = None,
        trigger: ReconcileTrigger = ReconcileTrigger.MANUAL,
    ) -> Tuple[Transaction, bool]:
        """
        Apply ``new_status`` only if the stored status is still pending.

        Returns:
            Tuple of (transaction as now stored, whether this call applied
            the transition). A terminal record is returned unchanged.
        """
        raise NotImplementedError

    @abstractmethod
    async def set_session_token(
        self,
        order_id: str,
        session_token: str,
        gateway_reference: Optional[str] = None,
    ) -> None:
        """Record the checkout session and the gateway's own id for the order."""
        raise NotImplementedError

    @abstractmethod
    async def claim_flag(self, order_id: str, flag: SideEffectFlag) -> bool:
        """Set ``flag`` if it is currently false. True means this caller set it."""
        raise NotImplementedError

    @abstractmethod
    async def release_flag(self, order_id: str, flag: SideEffectFlag) -> None:
        """Undo a claim whose side effect did not complete."""
        raise NotImplementedError

    @abstractmethod
    async def set_receipt_path(self, order_id: str, path: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def list_pending(self, older_than: datetime, limit: int = 100) -> List[Transaction]:
        raise NotImplementedError


class StudentStore(ABC):
    """Read access to students."""

    @abstractmethod
    async def get(self, student_id: str) -> Student:
        """Raises NotFoundError for an unknown student."""
        raise NotImplementedError
