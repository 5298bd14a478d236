"""Payment service layer: order opening, verification and fee/receipt queries."""

import os
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Dict, Any, Tuple

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .database.models import Fee, Student, Transaction, TransactionStatus, ReconcileTrigger
from .database.repository import SqlTransactionStore, SqlFeeLedger, StudentRepository
from .errors import GatewayError, NotFoundError, ValidationError
from .gateways import get_gateway
from .gateways.base import GatewayAdapter, CustomerDetails, generate_order_id
from .reconciliation.engine import ReconciliationEngine, ReconcileResult
from .side_effects import (
    ArtifactRenderer,
    Notifier,
    SideEffectDispatcher,
    PdfReceiptRenderer,
    get_notifier,
)

logger = logging.getLogger(__name__)

DEFAULT_CUSTOMER_PHONE = "9999999999"


def current_period(now: Optional[datetime] = None) -> str:
    """Academic year label for ``now``, e.g. ``2025-2026``."""
    year = (now or datetime.utcnow()).year
    return f"{year}-{year + 1}"


class PaymentService:
    """Service class for the student-facing payment operations."""

    def __init__(
        self,
        gateway: GatewayAdapter,
        transactions: SqlTransactionStore,
        ledger: SqlFeeLedger,
        students: StudentRepository,
        engine: ReconciliationEngine,
        dispatcher: SideEffectDispatcher,
        currency: Optional[str] = None,
    ):
        self.gateway = gateway
        self.transactions = transactions
        self.ledger = ledger
        self.students = students
        self.engine = engine
        self.dispatcher = dispatcher
        self.currency = (currency or os.getenv("FEE_CURRENCY", "INR")).upper()

    async def open_order(self, student_id: str, amount: int) -> Transaction:
        """Open a checkout order against the student's current fee.

        Args:
            student_id: Authenticated student.
            amount: Amount in minor units, at most the fee's due amount.

        Returns:
            The pending transaction, carrying the gateway session token.

        Raises:
            ValidationError: If the amount is not positive or exceeds the due amount.
            NotFoundError: If the student or the current fee does not exist.
            GatewayError: If the gateway rejected the order. The transaction
                is marked failed.
        """
        if amount is None or amount <= 0:
            raise ValidationError("Valid amount is required")

        student = await self.students.get(student_id)
        fee = await self.ledger.find_fee(student_id, current_period())
        if amount > fee.due_amount:
            raise ValidationError(f"Amount cannot exceed due amount of {fee.due_amount}")

        order_id = generate_order_id()
        await self.transactions.create(
            order_id=order_id,
            student_id=student_id,
            fee_id=fee.id,
            amount=amount,
            currency=self.currency,
        )

        customer = CustomerDetails(
            customer_id=student.id,
            name=student.name,
            email=student.email,
            phone=student.phone or DEFAULT_CUSTOMER_PHONE,
        )
        try:
            session = await self.gateway.open_order(
                amount, customer, order_id=order_id, currency=self.currency
            )
        except GatewayError:
            await self.transactions.transition_if_pending(
                order_id, TransactionStatus.FAILED, trigger=ReconcileTrigger.ORDER
            )
            logger.error(f"Gateway rejected order {order_id}; transaction marked failed")
            raise

        await self.transactions.set_session_token(
            order_id, session.session_token, session.gateway_reference
        )
        logger.info(f"Opened order {order_id} for student {student_id} amount {amount}")
        return await self.transactions.find_by_order_id(order_id)

    async def _owned_transaction(self, student_id: str, order_id: str) -> Transaction:
        transaction = await self.transactions.find_by_order_id(order_id)
        # Foreign orders are indistinguishable from unknown ones
        if transaction.student_id != student_id:
            raise NotFoundError("Transaction", order_id)
        return transaction

    async def verify_payment(
        self,
        student_id: str,
        order_id: str,
        trigger: ReconcileTrigger = ReconcileTrigger.MANUAL,
    ) -> ReconcileResult:
        """Reconcile one of the student's own orders."""
        await self._owned_transaction(student_id, order_id)
        return await self.engine.reconcile(order_id, trigger)

    async def fee_details(self, student_id: str) -> Dict[str, Any]:
        """Current fee, balance and last successful transaction of a student."""
        student = await self.students.get(student_id)
        try:
            fee = await self.ledger.find_fee(student_id, current_period())
        except NotFoundError:
            return {
                "hasFee": False,
                "message": "No fee record found for current academic year",
                "student": student.to_dict(),
            }

        last = await self.transactions.latest_success_for_student(student_id)
        return {
            "hasFee": True,
            "fee": fee.to_dict(),
            "student": student.to_dict(),
            "lastTransaction": {
                "orderId": last.order_id,
                "amount": last.amount,
                "createdAt": last.created_at.isoformat() if last.created_at else None,
            } if last else None,
        }

    async def _successful_context(
        self, student_id: str, order_id: str
    ) -> Tuple[Transaction, Student, Fee]:
        transaction = await self._owned_transaction(student_id, order_id)
        if transaction.status != TransactionStatus.SUCCESS.value:
            raise NotFoundError("Successful transaction", order_id)
        student = await self.students.get(student_id)
        fee = await self.ledger.get_fee(transaction.fee_id)
        return transaction, student, fee

    async def _receipt_path(self, transaction: Transaction, student: Student, fee: Fee) -> str:
        path = await self.dispatcher.ensure_artifact(transaction, student, fee)
        if not path or not os.path.exists(path):
            path = await self.dispatcher.render_artifact(transaction, student, fee)
        return path

    async def fetch_artifact(self, student_id: str, order_id: str) -> str:
        """Return the receipt path of a successful order, rendering it if missing."""
        transaction, student, fee = await self._successful_context(student_id, order_id)
        return await self._receipt_path(transaction, student, fee)

    async def receipt_details(self, student_id: str, order_id: str) -> Dict[str, Any]:
        """Receipt view of a successful order.

        Generates the receipt if needed and sends the payment notification
        if it has not gone out yet. A failed notification is logged only.
        """
        transaction, student, fee = await self._successful_context(student_id, order_id)
        path = await self._receipt_path(transaction, student, fee)

        try:
            await self.dispatcher.ensure_notification(transaction, student, path)
        except Exception:
            logger.exception(f"Payment notification failed for {order_id}")

        return {
            "receipt": {
                "orderId": transaction.order_id,
                "amount": transaction.amount,
                "paymentId": transaction.payment_id,
                "paymentMethod": transaction.payment_method,
                "createdAt": transaction.created_at.isoformat() if transaction.created_at else None,
                "receiptPath": f"/receipt/download/{transaction.order_id}",
            },
            "student": student.to_dict(),
            "fee": {
                "components": fee.components,
                "totalAmount": fee.total_amount,
                "paidAmount": fee.paid_amount,
            },
        }


@dataclass
class ServiceContainer:
    """The wired object graph shared by the API and the CLI."""
    gateway: GatewayAdapter
    transactions: SqlTransactionStore
    ledger: SqlFeeLedger
    students: StudentRepository
    dispatcher: SideEffectDispatcher
    engine: ReconciliationEngine
    payments: PaymentService

    async def aclose(self) -> None:
        await self.gateway.aclose()


def build_services(
    session_factory: async_sessionmaker[AsyncSession],
    gateway: Optional[GatewayAdapter] = None,
    renderer: Optional[ArtifactRenderer] = None,
    notifier: Optional[Notifier] = None,
) -> ServiceContainer:
    """Wire stores, gateway, dispatcher and engine around one session factory.

    Collaborators not given are built from the environment.
    """
    gateway = gateway or get_gateway()
    transactions = SqlTransactionStore(session_factory)
    ledger = SqlFeeLedger(session_factory)
    students = StudentRepository(session_factory)
    dispatcher = SideEffectDispatcher(
        transactions,
        renderer or PdfReceiptRenderer(),
        notifier or get_notifier(),
    )
    engine = ReconciliationEngine(gateway, transactions, ledger, students, dispatcher)
    payments = PaymentService(gateway, transactions, ledger, students, engine, dispatcher)
    return ServiceContainer(
        gateway=gateway,
        transactions=transactions,
        ledger=ledger,
        students=students,
        dispatcher=dispatcher,
        engine=engine,
        payments=payments,
    )
