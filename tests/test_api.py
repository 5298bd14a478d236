"""Tests for API endpoints."""

import os
import json
import pytest
from unittest.mock import AsyncMock, MagicMock
from fastapi.testclient import TestClient

# Set environment variables before importing app
os.environ.setdefault("API_KEY", "test_api_key_12345")

from fee_settlement.api import app, get_services
from fee_settlement.auth import limiter
from fee_settlement.database import ReconcileTrigger
from fee_settlement.errors import (
    ConflictError,
    GatewayError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from fee_settlement.gateways import SimulatorGateway
from fee_settlement.reconciliation import ReconcileResult


@pytest.fixture
def services():
    """Service container with mocked collaborators."""
    container = MagicMock()
    container.gateway = SimulatorGateway()
    container.payments = MagicMock()
    container.engine = MagicMock()
    container.engine.reconcile = AsyncMock()
    container.transactions = MagicMock()
    return container


@pytest.fixture
def client(services):
    """Create test client."""
    limiter.reset()
    app.dependency_overrides[get_services] = lambda: services
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    """Return authenticated student headers."""
    return {
        "Authorization": "Bearer test_api_key_12345",
        "X-Student-Id": "student_1",
    }


@pytest.fixture
def admin_headers():
    return {
        "Authorization": "Bearer test_api_key_12345",
        "X-Admin-Id": "admin_1",
    }


def paid_transaction():
    return MagicMock(order_id="order_1", amount=20000, payment_id="pay_1", payment_method="UPI")


class TestAuthentication:

    def test_missing_api_key(self, client):
        response = client.get("/fees/details", headers={"X-Student-Id": "student_1"})
        assert response.status_code in (401, 403)

    def test_wrong_api_key(self, client):
        response = client.get(
            "/fees/details",
            headers={"Authorization": "Bearer wrong", "X-Student-Id": "student_1"},
        )
        assert response.status_code == 401

    def test_missing_student_id(self, client):
        response = client.get("/fees/details", headers={"Authorization": "Bearer test_api_key_12345"})
        assert response.status_code == 401

    def test_admin_route_requires_admin(self, client, auth_headers):
        response = client.get("/admin/transactions", headers=auth_headers)
        assert response.status_code == 401


class TestCreateOrderEndpoint:

    def test_create_order(self, client, services, auth_headers):
        services.payments.open_order = AsyncMock(return_value=MagicMock(
            payment_session_id="session_abc",
            order_id="order_1",
            amount=20000,
        ))

        response = client.post("/payment/create-order", json={"amount": 20000}, headers=auth_headers)

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "paymentSessionId": "session_abc",
            "orderId": "order_1",
            "amount": 20000,
        }
        services.payments.open_order.assert_awaited_once_with("student_1", 20000)

    def test_amount_out_of_bounds(self, client, services, auth_headers):
        services.payments.open_order = AsyncMock(
            side_effect=ValidationError("Amount cannot exceed due amount of 40000")
        )

        response = client.post("/payment/create-order", json={"amount": 50000}, headers=auth_headers)

        assert response.status_code == 400
        assert response.json() == {
            "success": False,
            "message": "Amount cannot exceed due amount of 40000",
        }

    def test_gateway_failure(self, client, services, auth_headers):
        services.payments.open_order = AsyncMock(side_effect=GatewayError("upstream 500 with secrets"))

        response = client.post("/payment/create-order", json={"amount": 20000}, headers=auth_headers)

        assert response.status_code == 502
        assert response.json()["message"] == "Payment gateway error"

    def test_missing_amount(self, client, auth_headers):
        response = client.post("/payment/create-order", json={}, headers=auth_headers)
        assert response.status_code == 422


class TestVerifyEndpoint:

    def test_success(self, client, services, auth_headers):
        services.payments.verify_payment = AsyncMock(return_value=ReconcileResult(
            status="success", transaction=paid_transaction(), message="Payment verified"
        ))

        response = client.post("/payment/verify", json={"orderId": "order_1"}, headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["status"] == "success"
        assert data["transaction"] == {
            "orderId": "order_1",
            "amount": 20000,
            "paymentId": "pay_1",
            "paymentMethod": "UPI",
        }

    def test_pending_is_not_an_error(self, client, services, auth_headers):
        services.payments.verify_payment = AsyncMock(return_value=ReconcileResult(
            status="pending", transaction=MagicMock(), message="Payment is still being processed"
        ))

        response = client.post("/payment/verify", json={"orderId": "order_1"}, headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data == {
            "success": False,
            "status": "pending",
            "message": "Payment is still being processed",
        }

    def test_failed_payment(self, client, services, auth_headers):
        services.payments.verify_payment = AsyncMock(return_value=ReconcileResult(
            status="failed", transaction=MagicMock(), message="Payment failed"
        ))

        response = client.post("/payment/verify", json={"orderId": "order_1"}, headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["status"] == "failed"

    @pytest.mark.parametrize("error,status_code", [
        (NotFoundError("Transaction", "order_1"), 404),
        (GatewayError("timeout"), 502),
        (PersistenceError("db down"), 503),
        (ConflictError("duplicate"), 409),
    ])
    def test_error_mapping(self, client, services, auth_headers, error, status_code):
        services.payments.verify_payment = AsyncMock(side_effect=error)

        response = client.post("/payment/verify", json={"orderId": "order_1"}, headers=auth_headers)

        assert response.status_code == status_code
        assert response.json()["success"] is False


class TestWebhookEndpoint:
    """The webhook always acknowledges delivery."""

    def test_reconciles_order(self, client, services):
        services.engine.reconcile.return_value = ReconcileResult(
            status="success", transaction=MagicMock(), message="Payment verified"
        )
        body = json.dumps({"type": "PAYMENT_SUCCESS", "order_id": "order_1", "status": "SUCCESS"})

        response = client.post("/webhook/simulator", content=body)

        assert response.status_code == 200
        assert response.json() == {"success": True, "message": "Webhook received"}
        services.engine.reconcile.assert_awaited_once_with("order_1", ReconcileTrigger.WEBHOOK)

    def test_reconcile_error_still_acknowledged(self, client, services):
        services.engine.reconcile.side_effect = GatewayError("gateway down")

        response = client.post("/webhook/simulator", content=json.dumps({"order_id": "order_1"}))

        assert response.status_code == 200
        assert response.json()["success"] is False

    def test_unexpected_error_still_acknowledged(self, client, services):
        services.engine.reconcile.side_effect = RuntimeError("boom")

        response = client.post("/webhook/simulator", content=json.dumps({"order_id": "order_1"}))

        assert response.status_code == 200

    def test_invalid_payload_acknowledged(self, client, services):
        response = client.post("/webhook/simulator", content=b"not json")

        assert response.status_code == 200
        assert response.json()["success"] is False
        services.engine.reconcile.assert_not_awaited()

    def test_event_without_order_ignored(self, client, services):
        response = client.post("/webhook/simulator", content=json.dumps({"type": "PING"}))

        assert response.status_code == 200
        assert response.json()["success"] is True
        services.engine.reconcile.assert_not_awaited()

    def test_unknown_provider(self, client, services):
        response = client.post("/webhook/paypal", content=json.dumps({"order_id": "order_1"}))

        assert response.status_code == 200
        assert response.json() == {"success": False, "message": "Unknown provider"}
        services.engine.reconcile.assert_not_awaited()


class TestReceiptEndpoints:

    def test_receipt_details(self, client, services, auth_headers):
        services.payments.receipt_details = AsyncMock(return_value={
            "receipt": {"orderId": "order_1", "receiptPath": "/receipt/download/order_1"},
            "student": {"name": "Asha Verma"},
            "fee": {"totalAmount": 80000},
        })

        response = client.get("/receipt/order_1", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert response.json()["receipt"]["orderId"] == "order_1"
        services.payments.receipt_details.assert_awaited_once_with("student_1", "order_1")

    def test_download(self, client, services, auth_headers, tmp_path):
        receipt = tmp_path / "receipt_order_1.pdf"
        receipt.write_bytes(b"%PDF-1.4 receipt")
        services.payments.fetch_artifact = AsyncMock(return_value=str(receipt))

        response = client.get("/receipt/download/order_1", headers=auth_headers)

        assert response.status_code == 200
        assert response.content == b"%PDF-1.4 receipt"
        assert response.headers["content-type"].startswith("application/pdf")
        assert "receipt_order_1.pdf" in response.headers["content-disposition"]

    def test_download_not_found(self, client, services, auth_headers):
        services.payments.fetch_artifact = AsyncMock(
            side_effect=NotFoundError("Successful transaction", "order_1")
        )

        response = client.get("/receipt/download/order_1", headers=auth_headers)
        assert response.status_code == 404


class TestFeeAndAdminEndpoints:

    def test_fee_details(self, client, services, auth_headers):
        services.payments.fee_details = AsyncMock(return_value={
            "hasFee": True,
            "fee": {"totalAmount": 80000, "paidAmount": 20000},
            "student": {"name": "Asha Verma"},
            "lastTransaction": None,
        })

        response = client.get("/fees/details", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["fee"]["paidAmount"] == 20000

    def test_admin_transactions(self, client, services, admin_headers):
        row = MagicMock()
        row.to_dict.return_value = {"orderId": "order_1", "status": "success"}
        summary = {"totalAmount": 20000, "statusCounts": {"success": 1, "pending": 2}}
        services.transactions.list_transactions = AsyncMock(return_value=([row], 3, summary))

        response = client.get(
            "/admin/transactions",
            params={"status": "success", "studentId": "student_1", "page": 2, "limit": 2},
            headers=admin_headers,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["transactions"] == [{"orderId": "order_1", "status": "success"}]
        assert data["pagination"] == {"page": 2, "limit": 2, "total": 3, "pages": 2}
        assert data["summary"] == summary
        kwargs = services.transactions.list_transactions.call_args.kwargs
        assert kwargs["status"] == "success"
        assert kwargs["student_id"] == "student_1"
        assert kwargs["offset"] == 2

    def test_admin_limit_bounds(self, client, admin_headers):
        response = client.get("/admin/transactions", params={"limit": 0}, headers=admin_headers)
        assert response.status_code == 422


class TestHealth:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert response.json()["gateway"]["provider"] == "simulator"
