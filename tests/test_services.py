"""Tests for the payment service layer."""

import os
import pytest
from datetime import datetime

from fee_settlement.database import TransactionStatus
from fee_settlement.errors import GatewayError, NotFoundError, ValidationError
from fee_settlement.gateways import SimulatorConfig, SimulatorGateway
from fee_settlement.services import ServiceContainer, build_services, current_period

from conftest import RecordingNotifier


class TestCurrentPeriod:

    def test_academic_year_label(self):
        assert current_period(datetime(2025, 6, 1)) == "2025-2026"
        assert current_period(datetime(2026, 1, 15)) == "2026-2027"


class TestOpenOrder:
    """Tests for PaymentService.open_order."""

    async def test_creates_pending_order(self, payment_service, gateway, fee, student):
        transaction = await payment_service.open_order(student.id, 20000)

        assert transaction.status == TransactionStatus.PENDING.value
        assert transaction.amount == 20000
        assert transaction.fee_id == fee.id
        assert len(transaction.order_id) == 20
        assert transaction.payment_session_id == gateway.get_order(transaction.order_id).session_token

    @pytest.mark.parametrize("amount", [0, -500])
    async def test_rejects_non_positive_amount(self, payment_service, fee, student, amount):
        with pytest.raises(ValidationError):
            await payment_service.open_order(student.id, amount)

    async def test_rejects_amount_above_due(self, payment_service, fee, student):
        with pytest.raises(ValidationError, match="due amount"):
            await payment_service.open_order(student.id, 80001)

    async def test_accepts_exact_due(self, payment_service, fee, student):
        transaction = await payment_service.open_order(student.id, 80000)
        assert transaction.amount == 80000

    async def test_unknown_student(self, payment_service):
        with pytest.raises(NotFoundError):
            await payment_service.open_order("ghost", 1000)

    async def test_no_fee_for_current_period(self, payment_service, student):
        with pytest.raises(NotFoundError) as exc_info:
            await payment_service.open_order(student.id, 1000)
        assert exc_info.value.kind == "Fee"

    async def test_gateway_rejection_marks_order_failed(self, payment_service, gateway, store, fee, student):
        gateway.config = SimulatorConfig(fail_open_order=True)

        with pytest.raises(GatewayError):
            await payment_service.open_order(student.id, 20000)

        transactions, total, _ = await store.list_transactions(student_id=student.id)
        assert total == 1
        assert transactions[0].status == "failed"
        history = await store.history(transactions[0].order_id)
        assert history[0].trigger == "order"


class TestVerifyPayment:

    async def test_verify_own_order(self, payment_service, gateway, fee, student):
        transaction = await payment_service.open_order(student.id, 20000)
        gateway.record_attempt(transaction.order_id, "SUCCESS")

        result = await payment_service.verify_payment(student.id, transaction.order_id)
        assert result.status == "success"

    async def test_lookup_uses_stored_gateway_reference(self, payment_service, gateway, fee, student):
        transaction = await payment_service.open_order(student.id, 20000)
        assert transaction.gateway_reference == f"sim_order_{transaction.order_id}"

        await payment_service.verify_payment(student.id, transaction.order_id)
        assert gateway.last_reference == transaction.gateway_reference

    async def test_foreign_order_is_not_found(self, payment_service, students, fee, student):
        transaction = await payment_service.open_order(student.id, 20000)
        intruder = await students.create(roll_number="2024099", name="Other", email="o@example.com")

        with pytest.raises(NotFoundError):
            await payment_service.verify_payment(intruder.id, transaction.order_id)


class TestFeeDetails:

    async def test_without_fee(self, payment_service, student):
        details = await payment_service.fee_details(student.id)
        assert details["hasFee"] is False
        assert details["student"]["rollNumber"] == "2024001"

    async def test_with_fee_and_last_transaction(self, payment_service, engine, gateway, fee, student):
        details = await payment_service.fee_details(student.id)
        assert details["hasFee"] is True
        assert details["fee"]["totalAmount"] == 80000
        assert details["lastTransaction"] is None

        transaction = await payment_service.open_order(student.id, 30000)
        gateway.record_attempt(transaction.order_id, "SUCCESS")
        await engine.reconcile(transaction.order_id)

        details = await payment_service.fee_details(student.id)
        assert details["fee"]["paidAmount"] == 30000
        assert details["fee"]["dueAmount"] == 50000
        assert details["fee"]["status"] == "partial"
        assert details["lastTransaction"]["orderId"] == transaction.order_id


class TestReceipts:

    @pytest.fixture
    async def paid_order(self, payment_service, engine, gateway, fee, student):
        transaction = await payment_service.open_order(student.id, 20000)
        gateway.record_attempt(transaction.order_id, "SUCCESS", payment_method={"upi": {}})
        await engine.reconcile(transaction.order_id)
        return transaction.order_id

    async def test_receipt_details(self, payment_service, paid_order, student, notifier):
        details = await payment_service.receipt_details(student.id, paid_order)

        assert details["receipt"]["orderId"] == paid_order
        assert details["receipt"]["paymentMethod"] == "UPI"
        assert details["receipt"]["receiptPath"] == f"/receipt/download/{paid_order}"
        assert details["fee"]["paidAmount"] == 20000
        # Already notified during reconcile
        assert len(notifier.sent) == 1

    async def test_fetch_artifact_regenerates_missing_file(self, payment_service, paid_order, student):
        path = await payment_service.fetch_artifact(student.id, paid_order)
        os.remove(path)

        regenerated = await payment_service.fetch_artifact(student.id, paid_order)
        assert regenerated == path
        assert os.path.exists(regenerated)

    async def test_pending_order_has_no_receipt(self, payment_service, fee, student):
        transaction = await payment_service.open_order(student.id, 20000)
        with pytest.raises(NotFoundError):
            await payment_service.fetch_artifact(student.id, transaction.order_id)

    async def test_receipt_details_sends_pending_notification(
        self, payment_service, engine, gateway, notifier, fee, student
    ):
        notifier.fail = True
        transaction = await payment_service.open_order(student.id, 20000)
        gateway.record_attempt(transaction.order_id, "SUCCESS")
        await engine.reconcile(transaction.order_id)
        assert notifier.sent == []

        notifier.fail = False
        await payment_service.receipt_details(student.id, transaction.order_id)
        assert len(notifier.sent) == 1


class TestBuildServices:

    def test_wires_collaborators(self, session_factory):
        gateway = SimulatorGateway()
        services = build_services(session_factory, gateway=gateway, notifier=RecordingNotifier())

        assert isinstance(services, ServiceContainer)
        assert services.engine.gateway is gateway
        assert services.payments.engine is services.engine
        assert services.dispatcher.store is services.transactions
