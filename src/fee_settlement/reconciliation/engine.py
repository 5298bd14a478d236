"""Reconciliation of local transactions against the payment gateway."""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Dict, Any, List, Union

from ..database.models import Fee, Transaction, TransactionStatus, ReconcileTrigger
from ..errors import FeeSettlementError, GatewayError
from ..gateways.base import GatewayAdapter, PaymentAttempt, ATTEMPT_SUCCESS, ATTEMPT_FAILED
from ..ledger import FeeLedger
from ..side_effects import SideEffectDispatcher
from ..store import StudentStore, TransactionStore

logger = logging.getLogger(__name__)

MAX_METHOD_LABEL_LENGTH = 50

METHOD_LABELS = {
    "upi": "UPI",
    "netbanking": "Net Banking",
    "net_banking": "Net Banking",
    "wallet": "Wallet",
    "app": "Wallet",
}


@dataclass
class ReconcileResult:
    """Outcome of one reconcile call.

    ``status`` is ``success``, ``failed`` or ``pending``. Pending is a
    normal outcome meaning the gateway has not settled the order yet.
    """
    status: str
    transaction: Transaction
    message: str

    @property
    def settled(self) -> bool:
        return self.status != TransactionStatus.PENDING.value


def normalize_payment_method(descriptor: Optional[Union[Dict[str, Any], str]]) -> str:
    """Turn a gateway payment-method descriptor into a display label.

    Args:
        descriptor: Structured descriptor such as
            ``{"card": {"card_network": "visa", "card_type": "credit_card"}}``
            or ``{"upi": {"upi_id": "..."}}``.

    Returns:
        ``{network}_{type}`` or ``card`` for cards, ``UPI``, ``Net Banking``
        or ``Wallet`` for those channels, a bounded text for anything else
        and ``Online`` when the descriptor is absent.
    """
    if not descriptor:
        return "Online"
    if isinstance(descriptor, str):
        return descriptor[:MAX_METHOD_LABEL_LENGTH]

    if "card" in descriptor:
        card = descriptor.get("card") or {}
        network = card.get("card_network") if isinstance(card, dict) else None
        card_type = card.get("card_type") if isinstance(card, dict) else None
        if network and card_type:
            return f"{network}_{card_type}"[:MAX_METHOD_LABEL_LENGTH]
        return "card"

    for key, label in METHOD_LABELS.items():
        if key in descriptor:
            return label

    return ",".join(str(key) for key in descriptor)[:MAX_METHOD_LABEL_LENGTH]


def latest_attempt(attempts: List[PaymentAttempt]) -> Optional[PaymentAttempt]:
    """Pick the most recent attempt. Later list position wins on equal timestamps."""
    if not attempts:
        return None
    indexed = list(enumerate(attempts))
    _, attempt = max(
        indexed,
        key=lambda item: (item[1].attempted_at or datetime.min, item[0]),
    )
    return attempt


class ReconciliationEngine:
    """
    Applies the gateway's view of an order to the local records.

    Every trigger calls ``reconcile``. Overlapping calls need no locking
    here: the store's conditional transition and flag claims, plus the
    ledger's recompute-from-scratch rule, make repeats converge.
    """

    def __init__(
        self,
        gateway: GatewayAdapter,
        transactions: TransactionStore,
        ledger: FeeLedger,
        students: StudentStore,
        dispatcher: Optional[SideEffectDispatcher] = None,
    ):
        """Initialize the engine.

        Args:
            gateway: Adapter used for the authoritative status lookup.
            transactions: Transaction store.
            ledger: Fee ledger recomputed after a success.
            students: Student lookup for the side effects.
            dispatcher: Post-payment side effects. None disables them.
        """
        self.gateway = gateway
        self.transactions = transactions
        self.ledger = ledger
        self.students = students
        self.dispatcher = dispatcher

    async def reconcile(
        self,
        order_id: str,
        trigger: ReconcileTrigger = ReconcileTrigger.MANUAL,
    ) -> ReconcileResult:
        """Reconcile one order with the gateway.

        Raises:
            NotFoundError: If the order does not exist.
            GatewayError: If the status lookup failed. Nothing was changed.
            PersistenceError: If storage failed. A later call repairs it.
        """
        trigger = ReconcileTrigger(trigger)
        transaction = await self.transactions.find_by_order_id(order_id)

        if transaction.status == TransactionStatus.SUCCESS.value:
            logger.debug(f"Order {order_id} already settled; refreshing balance ({trigger.value})")
            return await self._settle(transaction, "Payment already verified")

        attempts = await self.gateway.fetch_status(order_id, reference=transaction.gateway_reference)
        attempt = latest_attempt(attempts)
        gateway_status = attempt.status.upper() if attempt else None

        if gateway_status == ATTEMPT_SUCCESS:
            fields = {
                "payment_id": attempt.payment_id,
                "payment_method": normalize_payment_method(attempt.payment_method),
            }
            transaction, applied = await self.transactions.transition_if_pending(
                order_id, TransactionStatus.SUCCESS, fields, trigger
            )
            if transaction.status != TransactionStatus.SUCCESS.value:
                logger.warning(
                    f"Gateway reports SUCCESS for {order_id} but it is stored as "
                    f"{transaction.status}; manual follow-up required"
                )
                return ReconcileResult(
                    status=transaction.status,
                    transaction=transaction,
                    message=f"Payment already marked {transaction.status}",
                )
            message = "Payment verified" if applied else "Payment already verified"
            return await self._settle(transaction, message)

        if gateway_status == ATTEMPT_FAILED:
            transaction, _ = await self.transactions.transition_if_pending(
                order_id, TransactionStatus.FAILED, trigger=trigger
            )
            if transaction.status == TransactionStatus.SUCCESS.value:
                # A later success already won; never move backwards
                return await self._settle(transaction, "Payment already verified")
            return ReconcileResult(
                status=transaction.status,
                transaction=transaction,
                message="Payment failed",
            )

        if transaction.status != TransactionStatus.PENDING.value:
            return ReconcileResult(
                status=transaction.status,
                transaction=transaction,
                message=f"Payment already marked {transaction.status}",
            )
        return ReconcileResult(
            status=TransactionStatus.PENDING.value,
            transaction=transaction,
            message="Payment is still being processed",
        )

    async def _settle(self, transaction: Transaction, message: str) -> ReconcileResult:
        fee = await self.ledger.recompute(transaction.fee_id)
        await self._dispatch(transaction, fee)
        return ReconcileResult(
            status=TransactionStatus.SUCCESS.value,
            transaction=transaction,
            message=message,
        )

    async def _dispatch(self, transaction: Transaction, fee: Fee) -> None:
        if self.dispatcher is None:
            return
        try:
            student = await self.students.get(transaction.student_id)
            await self.dispatcher.dispatch(transaction, student, fee)
        except Exception:
            logger.exception(f"Side effects for {transaction.order_id} failed")

    async def sweep(self, older_than: datetime, limit: int = 100) -> Dict[str, int]:
        """Re-reconcile pending orders created before ``older_than``.

        Errors are logged per order and do not stop the sweep.

        Returns:
            Count of orders per outcome, with ``error`` for failed lookups.
        """
        counts: Dict[str, int] = {}
        pending = await self.transactions.list_pending(older_than, limit=limit)
        logger.info(f"Sweeping {len(pending)} pending orders older than {older_than}")
        for transaction in pending:
            try:
                result = await self.reconcile(transaction.order_id, ReconcileTrigger.SWEEP)
                outcome = result.status
            except FeeSettlementError as e:
                logger.error(f"Sweep could not reconcile {transaction.order_id}: {e}")
                outcome = "error"
            counts[outcome] = counts.get(outcome, 0) + 1
        return counts


async def poll_until_settled(
    engine: ReconciliationEngine,
    order_id: str,
    attempts: int = 3,
    delay: float = 3.0,
    trigger: ReconcileTrigger = ReconcileTrigger.POLL,
) -> ReconcileResult:
    """Reconcile repeatedly until the order settles or attempts run out.

    Pending results and gateway errors are retried after ``delay`` seconds.

    Returns:
        The first settled result, otherwise the last pending one.

    Raises:
        GatewayError: If every attempt failed at the gateway.
    """
    if attempts < 1:
        raise ValueError("attempts must be at least 1")

    last_result: Optional[ReconcileResult] = None
    last_error: Optional[GatewayError] = None
    for attempt in range(1, attempts + 1):
        try:
            result = await engine.reconcile(order_id, trigger)
        except GatewayError as e:
            logger.warning(f"Verification attempt {attempt}/{attempts} for {order_id} failed: {e}")
            last_error = e
        else:
            if result.settled:
                return result
            last_result = result
        if attempt < attempts:
            await asyncio.sleep(delay)

    if last_result is not None:
        return last_result
    raise last_error
