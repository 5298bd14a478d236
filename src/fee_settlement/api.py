"""HTTP API for fee payments."""

import logging
import math
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel, Field
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from . import __version__
from .auth import get_current_admin, get_current_student, limiter
from .database import DatabaseManager, ReconcileTrigger
from .errors import (
    ConflictError,
    FeeSettlementError,
    GatewayError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from .services import PaymentService, ServiceContainer, build_services

logger = logging.getLogger(__name__)

ERROR_STATUS_CODES = {
    NotFoundError: 404,
    ValidationError: 400,
    ConflictError: 409,
    GatewayError: 502,
    PersistenceError: 503,
}


class CreateOrderBody(BaseModel):
    amount: int = Field(..., description="Amount in minor currency units")


class VerifyPaymentBody(BaseModel):
    orderId: str = Field(..., min_length=1)


@asynccontextmanager
async def lifespan(app: FastAPI):
    db = DatabaseManager()
    await db.initialize()
    app.state.services = build_services(db.session_factory)
    logger.info(f"Using payment provider {app.state.services.gateway.name}")
    try:
        yield
    finally:
        await app.state.services.aclose()
        await db.shutdown()


def get_services(request: Request) -> ServiceContainer:
    return request.app.state.services


def get_payment_service(services: ServiceContainer = Depends(get_services)) -> PaymentService:
    return services.payments


async def handle_settlement_error(request: Request, exc: FeeSettlementError) -> JSONResponse:
    status_code = 500
    for error_type, code in ERROR_STATUS_CODES.items():
        if isinstance(exc, error_type):
            status_code = code
            break
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {type(exc).__name__}: {exc}")
    message = "Payment gateway error" if isinstance(exc, GatewayError) else str(exc)
    return JSONResponse(status_code=status_code, content={"success": False, "message": message})


def create_app() -> FastAPI:
    app = FastAPI(title="Fee Settlement API", version=__version__, lifespan=lifespan)
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(FeeSettlementError, handle_settlement_error)

    @app.post("/payment/create-order")
    @limiter.limit("10/minute")
    async def create_order(
        request: Request,
        body: CreateOrderBody,
        student_id: str = Depends(get_current_student),
        payments: PaymentService = Depends(get_payment_service),
    ):
        transaction = await payments.open_order(student_id, body.amount)
        return {
            "success": True,
            "paymentSessionId": transaction.payment_session_id,
            "orderId": transaction.order_id,
            "amount": transaction.amount,
        }

    @app.post("/payment/verify")
    @limiter.limit("30/minute")
    async def verify_payment(
        request: Request,
        body: VerifyPaymentBody,
        student_id: str = Depends(get_current_student),
        payments: PaymentService = Depends(get_payment_service),
    ):
        result = await payments.verify_payment(student_id, body.orderId)
        response = {
            "success": result.status == "success",
            "status": result.status,
            "message": result.message,
        }
        if result.status == "success":
            transaction = result.transaction
            response["transaction"] = {
                "orderId": transaction.order_id,
                "amount": transaction.amount,
                "paymentId": transaction.payment_id,
                "paymentMethod": transaction.payment_method,
            }
        return response

    @app.post("/webhook/{provider}")
    async def payment_webhook(
        provider: str,
        request: Request,
        services: ServiceContainer = Depends(get_services),
    ):
        """
        Gateway push notification. Always acknowledged with 200 so the
        gateway does not redeliver; failures are logged and left to the
        sweep command.
        """
        try:
            gateway = services.gateway
            if provider.lower() != gateway.name:
                logger.warning(f"Webhook for unconfigured provider '{provider}' ignored")
                return {"success": False, "message": "Unknown provider"}

            body = await request.body()
            headers = {k.lower(): v for k, v in request.headers.items()}
            event = gateway.parse_webhook(headers, body)
            if not event.order_id:
                logger.info(f"Webhook {event.event_type} without order id ignored")
                return {"success": True, "message": "Webhook received"}

            result = await services.engine.reconcile(event.order_id, ReconcileTrigger.WEBHOOK)
            logger.info(f"Webhook {event.event_type} reconciled {event.order_id}: {result.status}")
            return {"success": True, "message": "Webhook received"}
        except Exception:
            logger.exception(f"Webhook processing failed for provider '{provider}'")
            return {"success": False, "message": "Webhook processing error"}

    @app.get("/receipt/download/{order_id}")
    async def download_receipt(
        order_id: str,
        student_id: str = Depends(get_current_student),
        payments: PaymentService = Depends(get_payment_service),
    ):
        path = await payments.fetch_artifact(student_id, order_id)
        return FileResponse(path, media_type="application/pdf", filename=f"receipt_{order_id}.pdf")

    @app.get("/receipt/{order_id}")
    async def get_receipt(
        order_id: str,
        student_id: str = Depends(get_current_student),
        payments: PaymentService = Depends(get_payment_service),
    ):
        details = await payments.receipt_details(student_id, order_id)
        return {"success": True, **details}

    @app.get("/fees/details")
    async def fee_details(
        student_id: str = Depends(get_current_student),
        payments: PaymentService = Depends(get_payment_service),
    ):
        details = await payments.fee_details(student_id)
        return {"success": True, **details}

    @app.get("/admin/transactions")
    async def list_transactions(
        status: Optional[str] = None,
        student_id: Optional[str] = Query(None, alias="studentId"),
        start_date: Optional[datetime] = Query(None, alias="startDate"),
        end_date: Optional[datetime] = Query(None, alias="endDate"),
        page: int = Query(1, ge=1),
        limit: int = Query(50, ge=1, le=200),
        admin_id: str = Depends(get_current_admin),
        services: ServiceContainer = Depends(get_services),
    ):
        transactions, total, summary = await services.transactions.list_transactions(
            status=status,
            student_id=student_id,
            start_date=start_date,
            end_date=end_date,
            limit=limit,
            offset=(page - 1) * limit,
        )
        return {
            "success": True,
            "transactions": [t.to_dict() for t in transactions],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": math.ceil(total / limit),
            },
            "summary": summary,
        }

    @app.get("/health")
    async def health(services: ServiceContainer = Depends(get_services)):
        return {"status": "ok", "gateway": services.gateway.health_check()}

    return app


app = create_app()
