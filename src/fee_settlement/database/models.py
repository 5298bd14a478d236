"""SQLAlchemy models for fee and transaction persistence."""

import uuid
import json
import enum
from datetime import datetime
from typing import Optional, Dict, Any, List

from sqlalchemy import (
    Boolean,
    String,
    Integer,
    DateTime,
    ForeignKey,
    Text,
    Index,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, relationship, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class TransactionStatus(str, enum.Enum):
    """Lifecycle of a single payment attempt."""
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not TransactionStatus.PENDING


class FeeStatus(str, enum.Enum):
    """Balance state of a fee, derived from paid vs total."""
    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"


class ReconcileTrigger(str, enum.Enum):
    """Call sites that may apply a transaction transition."""
    WEBHOOK = "webhook"
    POLL = "poll"
    MANUAL = "manual"
    SWEEP = "sweep"
    ORDER = "order"


class Student(Base):
    """Student record, owned by the administrative collaborator."""
    __tablename__ = "students"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    roll_number: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    class_name: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    section: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "rollNumber": self.roll_number,
            "class": self.class_name,
            "section": self.section,
            "email": self.email,
        }


class Fee(Base):
    """Per-student, per-academic-year balance aggregate.

    ``paid_amount``, ``due_amount`` and ``status`` are derived fields. They
    are only ever written by the ledger recompute, never incremented.
    """
    __tablename__ = "fees"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    student_id: Mapped[str] = mapped_column(String(36), ForeignKey("students.id"), nullable=False)
    academic_year: Mapped[str] = mapped_column(String(20), nullable=False)

    # Ordered list of {"name": str, "amount": int}
    components_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")

    total_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    paid_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    due_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=FeeStatus.PENDING.value)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    transactions: Mapped[List["Transaction"]] = relationship("Transaction", back_populates="fee")

    __table_args__ = (
        UniqueConstraint("student_id", "academic_year", name="uq_fees_student_year"),
        Index("ix_fees_student_id", "student_id"),
    )

    @property
    def components(self) -> List[Dict[str, Any]]:
        """Get fee components as a list of dictionaries."""
        return json.loads(self.components_json) if self.components_json else []

    @components.setter
    def components(self, value: List[Dict[str, Any]]) -> None:
        self.components_json = json.dumps(value or [])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "academicYear": self.academic_year,
            "components": self.components,
            "totalAmount": self.total_amount,
            "paidAmount": self.paid_amount,
            "dueAmount": self.due_amount,
            "status": self.status,
        }


class Transaction(Base):
    """One payment attempt, keyed by a globally unique order id."""
    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    order_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, index=True)
    student_id: Mapped[str] = mapped_column(String(36), ForeignKey("students.id"), nullable=False)
    fee_id: Mapped[str] = mapped_column(String(36), ForeignKey("fees.id"), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="INR")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=TransactionStatus.PENDING.value)

    payment_session_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    gateway_reference: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    payment_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    payment_method: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # One-shot side effect flags, flipped with conditional updates only
    receipt_generated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    receipt_path: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    notification_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    fee: Mapped["Fee"] = relationship("Fee", back_populates="transactions")
    history: Mapped[List["TransactionHistory"]] = relationship(
        "TransactionHistory",
        back_populates="transaction",
        order_by="TransactionHistory.created_at",
    )

    __table_args__ = (
        Index("ix_transactions_status", "status"),
        Index("ix_transactions_fee_id_status", "fee_id", "status"),
        Index("ix_transactions_student_id", "student_id"),
        Index("ix_transactions_created_at", "created_at"),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert transaction to its public representation."""
        return {
            "orderId": self.order_id,
            "studentId": self.student_id,
            "feeId": self.fee_id,
            "amount": self.amount,
            "currency": self.currency,
            "status": self.status,
            "paymentId": self.payment_id,
            "paymentMethod": self.payment_method,
            "receiptGenerated": self.receipt_generated,
            "notificationSent": self.notification_sent,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }


class TransactionHistory(Base):
    """Audit row written once per applied status transition."""
    __tablename__ = "transaction_history"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    transaction_id: Mapped[str] = mapped_column(String(36), ForeignKey("transactions.id"), nullable=False, index=True)
    previous_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    new_status: Mapped[str] = mapped_column(String(20), nullable=False)
    trigger: Mapped[str] = mapped_column(String(20), nullable=False)
    payment_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    transaction: Mapped["Transaction"] = relationship("Transaction", back_populates="history")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "transaction_id": self.transaction_id,
            "previous_status": self.previous_status,
            "new_status": self.new_status,
            "trigger": self.trigger,
            "payment_id": self.payment_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
