"""Shared test fixtures and configuration."""

import os
import pytest
from typing import List

# Set up test environment variables before importing modules
os.environ.setdefault("API_KEY", "test_api_key_12345")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("PAYMENT_PROVIDER", "simulator")
os.environ.setdefault("CASHFREE_CLIENT_ID", "cf_test_client")
os.environ.setdefault("CASHFREE_CLIENT_SECRET", "cf_test_secret")
os.environ.setdefault("STRIPE_API_KEY", "sk_test_dummy_key_for_testing")

from fee_settlement.database import (
    Base,
    SqlFeeLedger,
    SqlTransactionStore,
    StudentRepository,
    create_async_engine,
    get_async_session_factory,
)
from fee_settlement.gateways import SimulatorGateway
from fee_settlement.reconciliation import ReconciliationEngine
from fee_settlement.services import PaymentService, current_period
from fee_settlement.side_effects import Notifier, SideEffectDispatcher, PdfReceiptRenderer


class RecordingNotifier(Notifier):
    """Notifier that keeps sent messages in memory."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: List[dict] = []

    async def send(self, to, subject, html, attachment_path=None):
        if self.fail:
            raise RuntimeError("mail server unavailable")
        self.sent.append({
            "to": to,
            "subject": subject,
            "html": html,
            "attachment_path": attachment_path,
        })


@pytest.fixture
async def db_engine(tmp_path):
    """Create a file-backed SQLite database for testing.

    Each session gets its own connection, so concurrent tests exercise
    real database locking.
    """
    engine = create_async_engine(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'fees.db'}",
        echo=False
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return get_async_session_factory(db_engine)


@pytest.fixture
def store(session_factory):
    return SqlTransactionStore(session_factory)


@pytest.fixture
def ledger(session_factory):
    return SqlFeeLedger(session_factory)


@pytest.fixture
def students(session_factory):
    return StudentRepository(session_factory)


@pytest.fixture
def gateway():
    return SimulatorGateway()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def dispatcher(store, notifier, tmp_path):
    return SideEffectDispatcher(store, PdfReceiptRenderer(str(tmp_path / "receipts")), notifier)


@pytest.fixture
def engine(gateway, store, ledger, students, dispatcher):
    return ReconciliationEngine(gateway, store, ledger, students, dispatcher)


@pytest.fixture
def payment_service(gateway, store, ledger, students, engine, dispatcher):
    return PaymentService(gateway, store, ledger, students, engine, dispatcher, currency="INR")


@pytest.fixture
async def student(students):
    return await students.create(
        roll_number="2024001",
        name="Asha Verma",
        email="asha@example.com",
        phone="9876543210",
        class_name="10",
        section="A",
    )


@pytest.fixture
async def fee(ledger, student):
    """Fee of 80000 paise for the current academic year."""
    return await ledger.create_fee(
        student.id,
        current_period(),
        [
            {"name": "Tuition", "amount": 60000},
            {"name": "Library", "amount": 20000},
        ],
    )
