"""SQLAlchemy implementations of the transaction store and fee ledger.

Every public method runs in its own short database transaction, opened
from the injected session factory. Records are returned detached.
"""

import logging
from datetime import datetime
from typing import Optional, Dict, Any, List, Tuple

from sqlalchemy import select, update, func, and_, true
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..errors import ConflictError, NotFoundError
from ..ledger import FeeLedger, compute_balance, total_of
from ..store import TransactionStore, StudentStore, SideEffectFlag
from .models import (
    Fee,
    Student,
    Transaction,
    TransactionHistory,
    TransactionStatus,
    ReconcileTrigger,
    FeeStatus,
)
from .session import session_scope

logger = logging.getLogger(__name__)

# Fields a transition may write besides status
TRANSITION_FIELDS = frozenset(["payment_id", "payment_method"])


def _success_for_fee_query(fee_id: str):
    return (
        select(Transaction)
        .where(
            and_(
                Transaction.fee_id == fee_id,
                Transaction.status == TransactionStatus.SUCCESS.value,
            )
        )
        .order_by(Transaction.created_at, Transaction.id)
    )


async def _load_success_for_fee(session: AsyncSession, fee_id: str) -> List[Transaction]:
    result = await session.execute(_success_for_fee_query(fee_id))
    return list(result.scalars().all())


class SqlTransactionStore(TransactionStore):
    """Transaction store backed by a relational database."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        """Initialize the store.

        Args:
            session_factory: Factory used to open one session per operation.
        """
        self._session_factory = session_factory

    async def create(
        self,
        order_id: str,
        student_id: str,
        fee_id: str,
        amount: int,
        currency: str = "INR",
    ) -> Transaction:
        """Create a new pending transaction.

        Raises:
            ConflictError: If the order id already exists.
        """
        async with session_scope(self._session_factory) as session:
            existing = await session.execute(
                select(Transaction.id).where(Transaction.order_id == order_id)
            )
            if existing.scalar_one_or_none() is not None:
                raise ConflictError(f"Order {order_id} already exists")

            transaction = Transaction(
                order_id=order_id,
                student_id=student_id,
                fee_id=fee_id,
                amount=amount,
                currency=currency.upper(),
                status=TransactionStatus.PENDING.value,
            )
            session.add(transaction)
            try:
                await session.flush()
            except IntegrityError as e:
                raise ConflictError(f"Order {order_id} already exists") from e

        logger.info(f"Created pending transaction {order_id} for fee {fee_id} amount {amount}")
        return transaction

    async def find_by_order_id(self, order_id: str) -> Transaction:
        async with session_scope(self._session_factory) as session:
            transaction = await self._get(session, order_id)
        if transaction is None:
            raise NotFoundError("Transaction", order_id)
        return transaction

    async def all_success_for_fee(self, fee_id: str) -> List[Transaction]:
        """Successful transactions of a fee, oldest first.

        SqlFeeLedger.recompute reads the same set through
        ``_load_success_for_fee`` on its own session, so the read happens
        under the fee row lock it already holds.
        """
        async with session_scope(self._session_factory) as session:
            return await _load_success_for_fee(session, fee_id)

    async def transition_if_pending(
        self,
        order_id: str,
        new_status: TransactionStatus,
        fields: Optional[Dict[str, Any]] = None,
        trigger: ReconcileTrigger = ReconcileTrigger.MANUAL,
    ) -> Tuple[Transaction, bool]:
        """Move a pending transaction to a terminal status.

        The guard is a single conditional UPDATE, so two overlapping calls
        cannot both apply the transition.

        Args:
            order_id: Order to transition.
            new_status: Target terminal status.
            fields: Optional payment_id / payment_method to record.
            trigger: Call site applying the transition, kept in history.

        Returns:
            Tuple of (stored transaction, applied).
        """
        new_status = TransactionStatus(new_status)
        trigger = ReconcileTrigger(trigger)
        if not new_status.is_terminal:
            raise ValueError("Transactions can only transition to a terminal status")

        values: Dict[str, Any] = {}
        for key, value in (fields or {}).items():
            if key not in TRANSITION_FIELDS:
                raise ValueError(f"Field '{key}' cannot be set by a transition")
            values[key] = value
        values["status"] = new_status.value
        values["updated_at"] = datetime.utcnow()

        async with session_scope(self._session_factory) as session:
            result = await session.execute(
                update(Transaction)
                .where(
                    and_(
                        Transaction.order_id == order_id,
                        Transaction.status == TransactionStatus.PENDING.value,
                    )
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            applied = result.rowcount == 1

            transaction = await self._get(session, order_id)
            if transaction is None:
                raise NotFoundError("Transaction", order_id)

            if applied:
                session.add(TransactionHistory(
                    transaction_id=transaction.id,
                    previous_status=TransactionStatus.PENDING.value,
                    new_status=new_status.value,
                    trigger=trigger.value,
                    payment_id=values.get("payment_id"),
                ))

        if applied:
            logger.info(f"Transaction {order_id} moved pending -> {new_status.value} via {trigger.value}")
        else:
            logger.debug(
                f"Transition of {order_id} to {new_status.value} absorbed; "
                f"stored status is {transaction.status}"
            )
        return transaction, applied

    async def set_session_token(
        self,
        order_id: str,
        session_token: str,
        gateway_reference: Optional[str] = None,
    ) -> None:
        async with session_scope(self._session_factory) as session:
            await session.execute(
                update(Transaction)
                .where(Transaction.order_id == order_id)
                .values(
                    payment_session_id=session_token,
                    gateway_reference=gateway_reference,
                    updated_at=datetime.utcnow(),
                )
            )

    async def claim_flag(self, order_id: str, flag: SideEffectFlag) -> bool:
        flag = SideEffectFlag(flag)
        column = getattr(Transaction, flag.value)
        async with session_scope(self._session_factory) as session:
            result = await session.execute(
                update(Transaction)
                .where(
                    and_(
                        Transaction.order_id == order_id,
                        column == False,  # noqa: E712
                    )
                )
                .values({column: True, Transaction.updated_at: datetime.utcnow()})
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    async def release_flag(self, order_id: str, flag: SideEffectFlag) -> None:
        flag = SideEffectFlag(flag)
        column = getattr(Transaction, flag.value)
        async with session_scope(self._session_factory) as session:
            await session.execute(
                update(Transaction)
                .where(Transaction.order_id == order_id)
                .values({column: False, Transaction.updated_at: datetime.utcnow()})
                .execution_options(synchronize_session=False)
            )
        logger.warning(f"Released {flag.value} claim on {order_id}")

    async def set_receipt_path(self, order_id: str, path: str) -> None:
        async with session_scope(self._session_factory) as session:
            await session.execute(
                update(Transaction)
                .where(Transaction.order_id == order_id)
                .values(receipt_path=path, updated_at=datetime.utcnow())
                .execution_options(synchronize_session=False)
            )

    async def list_pending(self, older_than: datetime, limit: int = 100) -> List[Transaction]:
        """List pending transactions created before ``older_than``, oldest first."""
        async with session_scope(self._session_factory) as session:
            result = await session.execute(
                select(Transaction)
                .where(
                    and_(
                        Transaction.status == TransactionStatus.PENDING.value,
                        Transaction.created_at <= older_than,
                    )
                )
                .order_by(Transaction.created_at)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def latest_success_for_student(self, student_id: str) -> Optional[Transaction]:
        async with session_scope(self._session_factory) as session:
            result = await session.execute(
                select(Transaction)
                .where(
                    and_(
                        Transaction.student_id == student_id,
                        Transaction.status == TransactionStatus.SUCCESS.value,
                    )
                )
                .order_by(Transaction.created_at.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def list_transactions(
        self,
        status: Optional[str] = None,
        student_id: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[Transaction], int, Dict[str, Any]]:
        """List transactions with filters.

        Returns:
            Tuple of (page of transactions, total matching, summary) where
            summary holds the sum of successful amounts and per-status counts.
        """
        conditions = []
        if status:
            conditions.append(Transaction.status == status)
        if student_id:
            conditions.append(Transaction.student_id == student_id)
        if start_date:
            conditions.append(Transaction.created_at >= start_date)
        if end_date:
            conditions.append(Transaction.created_at <= end_date)
        where = and_(*conditions) if conditions else true()

        async with session_scope(self._session_factory) as session:
            result = await session.execute(
                select(Transaction)
                .where(where)
                .order_by(Transaction.created_at.desc())
                .limit(limit)
                .offset(offset)
            )
            transactions = list(result.scalars().all())

            total = (await session.execute(
                select(func.count(Transaction.id)).where(where)
            )).scalar_one()

            total_amount = (await session.execute(
                select(func.coalesce(func.sum(Transaction.amount), 0))
                .where(and_(where, Transaction.status == TransactionStatus.SUCCESS.value))
            )).scalar_one()

            counts = await session.execute(
                select(Transaction.status, func.count(Transaction.id))
                .where(where)
                .group_by(Transaction.status)
            )
            status_counts = {row[0]: row[1] for row in counts.all()}

        summary = {"totalAmount": int(total_amount), "statusCounts": status_counts}
        return transactions, int(total), summary

    async def history(self, order_id: str) -> List[TransactionHistory]:
        async with session_scope(self._session_factory) as session:
            result = await session.execute(
                select(TransactionHistory)
                .join(Transaction, Transaction.id == TransactionHistory.transaction_id)
                .where(Transaction.order_id == order_id)
                .order_by(TransactionHistory.created_at)
            )
            return list(result.scalars().all())

    async def _get(self, session: AsyncSession, order_id: str) -> Optional[Transaction]:
        result = await session.execute(
            select(Transaction)
            .where(Transaction.order_id == order_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()


class SqlFeeLedger(FeeLedger):
    """Fee ledger backed by a relational database."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get_fee(self, fee_id: str) -> Fee:
        async with session_scope(self._session_factory) as session:
            fee = await session.get(Fee, fee_id)
        if fee is None:
            raise NotFoundError("Fee", fee_id)
        return fee

    async def find_fee(self, student_id: str, academic_year: str) -> Fee:
        async with session_scope(self._session_factory) as session:
            result = await session.execute(
                select(Fee).where(
                    and_(Fee.student_id == student_id, Fee.academic_year == academic_year)
                )
            )
            fee = result.scalar_one_or_none()
        if fee is None:
            raise NotFoundError("Fee", f"{student_id}/{academic_year}")
        return fee

    async def create_fee(
        self,
        student_id: str,
        academic_year: str,
        components: List[Dict[str, Any]],
    ) -> Fee:
        """Create a fee with a zero balance paid.

        Raises:
            ValueError: If a component amount is not positive.
            ConflictError: If the student already has a fee for the period.
        """
        total = total_of(components)
        async with session_scope(self._session_factory) as session:
            fee = Fee(
                student_id=student_id,
                academic_year=academic_year,
                total_amount=total,
                paid_amount=0,
                due_amount=total,
                status=FeeStatus.PENDING.value,
            )
            fee.components = [{"name": c["name"], "amount": int(c["amount"])} for c in components]
            session.add(fee)
            try:
                await session.flush()
            except IntegrityError as e:
                raise ConflictError(
                    f"Fee for student {student_id} and year {academic_year} already exists"
                ) from e

        logger.info(f"Created fee {fee.id} for student {student_id} ({academic_year}) total {total}")
        return fee

    async def recompute(self, fee_id: str) -> Fee:
        """Recompute a fee's balance from its successful transactions.

        The touching UPDATE takes the fee row's write lock first, so
        overlapping recomputes serialize and the last one sees every
        committed success.
        """
        async with session_scope(self._session_factory) as session:
            touched = await session.execute(
                update(Fee)
                .where(Fee.id == fee_id)
                .values(updated_at=datetime.utcnow())
                .execution_options(synchronize_session=False)
            )
            if touched.rowcount == 0:
                raise NotFoundError("Fee", fee_id)

            fee = (await session.execute(
                select(Fee).where(Fee.id == fee_id).execution_options(populate_existing=True)
            )).scalar_one()
            successes = await _load_success_for_fee(session, fee_id)

            balance = compute_balance(fee.total_amount, [t.amount for t in successes])
            fee.paid_amount = balance.paid_amount
            fee.due_amount = balance.due_amount
            fee.status = balance.status.value

        logger.info(
            f"Recomputed fee {fee_id}: paid={balance.paid_amount} "
            f"due={balance.due_amount} status={balance.status.value}"
        )
        return fee


class StudentRepository(StudentStore):
    """Read access to students, plus creation for the administrative collaborator."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get(self, student_id: str) -> Student:
        async with session_scope(self._session_factory) as session:
            student = await session.get(Student, student_id)
        if student is None:
            raise NotFoundError("Student", student_id)
        return student

    async def create(
        self,
        roll_number: str,
        name: str,
        email: str,
        phone: Optional[str] = None,
        class_name: Optional[str] = None,
        section: Optional[str] = None,
    ) -> Student:
        async with session_scope(self._session_factory) as session:
            student = Student(
                roll_number=roll_number,
                name=name,
                email=email,
                phone=phone,
                class_name=class_name,
                section=section,
            )
            session.add(student)
            try:
                await session.flush()
            except IntegrityError as e:
                raise ConflictError(f"Student {roll_number} already exists") from e
        return student
