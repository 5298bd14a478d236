"""Cashfree Payment Gateway adapter over its REST API."""

import os
import hmac
import json
import base64
import hashlib
import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List

import httpx

from ..errors import GatewayError
from .base import (
    GatewayAdapter,
    CustomerDetails,
    OrderSession,
    PaymentAttempt,
    WebhookEvent,
    generate_order_id,
)

logger = logging.getLogger(__name__)

API_VERSION = "2023-08-01"
SANDBOX_URL = "https://sandbox.cashfree.com/pg"
PRODUCTION_URL = "https://api.cashfree.com/pg"
DEFAULT_PHONE = "9999999999"


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse a Cashfree ISO timestamp into naive UTC."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        logger.warning(f"Unparseable Cashfree timestamp: {value}")
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


class CashfreeGateway(GatewayAdapter):
    """
    Cashfree PG adapter. Amounts are stored in paise locally and sent to
    Cashfree in rupees.
    """

    name = "cashfree"

    def __init__(
        self,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        environment: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        timeout: Optional[float] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize the Cashfree adapter.

        Args:
            client_id: Falls back to CASHFREE_CLIENT_ID.
            client_secret: Falls back to CASHFREE_CLIENT_SECRET.
            environment: "production" or anything else for sandbox. Falls back to CASHFREE_ENV.
            webhook_secret: Key for webhook signatures. Falls back to CASHFREE_WEBHOOK_SECRET.
            timeout: Request timeout in seconds. Falls back to GATEWAY_TIMEOUT_SECONDS.
            http_client: Optional preconfigured client.

        Raises:
            ValueError: If credentials are missing.
        """
        self._client_id = client_id or os.getenv("CASHFREE_CLIENT_ID")
        self._client_secret = client_secret or os.getenv("CASHFREE_CLIENT_SECRET")
        if not self._client_id or not self._client_secret:
            raise ValueError(
                "CASHFREE_CLIENT_ID and CASHFREE_CLIENT_SECRET must be provided "
                "either as arguments or environment variables"
            )
        environment = environment or os.getenv("CASHFREE_ENV", "sandbox")
        self.base_url = PRODUCTION_URL if environment == "production" else SANDBOX_URL
        self._webhook_secret = webhook_secret or os.getenv("CASHFREE_WEBHOOK_SECRET")
        timeout = timeout or float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "10"))
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    def _headers(self) -> Dict[str, str]:
        return {
            "x-client-id": self._client_id,
            "x-client-secret": self._client_secret,
            "x-api-version": API_VERSION,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        url = f"{self.base_url}{path}"
        try:
            response = await self._client.request(method, url, headers=self._headers(), **kwargs)
        except httpx.TimeoutException as e:
            logger.error(f"Cashfree request timed out: {method} {path}")
            raise GatewayError("Payment gateway timed out", provider=self.name) from e
        except httpx.HTTPError as e:
            logger.error(f"Failed to connect to Cashfree: {type(e).__name__}")
            raise GatewayError("Failed to connect to payment gateway", provider=self.name) from e

        if response.status_code >= 400:
            try:
                message = response.json().get("message", "Unknown error")
            except ValueError:
                message = "Unknown error"
            logger.error(f"Cashfree API error {response.status_code} on {method} {path}: {message}")
            raise GatewayError(
                f"Payment gateway error: {message}",
                provider=self.name,
                status_code=response.status_code,
            )
        return response.json()

    async def open_order(
        self,
        amount: int,
        customer: CustomerDetails,
        order_id: Optional[str] = None,
        currency: str = "INR",
    ) -> OrderSession:
        order_id = order_id or generate_order_id()
        request = {
            "order_id": order_id,
            "order_amount": amount / 100,
            "order_currency": currency,
            "customer_details": {
                "customer_id": customer.customer_id,
                "customer_phone": customer.phone or DEFAULT_PHONE,
                "customer_name": customer.name,
                "customer_email": customer.email,
            },
        }
        data = await self._request("POST", "/orders", json=request)
        session_token = data.get("payment_session_id")
        if not session_token:
            raise GatewayError("Payment gateway returned no session id", provider=self.name)
        logger.info(f"Opened Cashfree order {order_id}")
        return OrderSession(
            session_token=session_token,
            order_id=data.get("order_id", order_id),
            raw_provider_response={"order_status": data.get("order_status")},
        )

    async def fetch_status(self, order_id: str, reference: Optional[str] = None) -> List[PaymentAttempt]:
        data = await self._request("GET", f"/orders/{order_id}/payments")
        if not isinstance(data, list):
            raise GatewayError("Unexpected payments response from gateway", provider=self.name)

        attempts = []
        for payment in data:
            payment_id = payment.get("cf_payment_id")
            attempts.append(PaymentAttempt(
                status=str(payment.get("payment_status", "")).upper(),
                payment_id=str(payment_id) if payment_id is not None else None,
                payment_method=payment.get("payment_method"),
                attempted_at=_parse_timestamp(
                    payment.get("payment_completion_time") or payment.get("payment_time")
                ),
            ))
        logger.debug(f"Fetched {len(attempts)} payment attempts for {order_id}")
        return attempts

    def verify_signature(self, headers: Dict[str, str], body: bytes) -> bool:
        signature = headers.get("x-webhook-signature", "")
        timestamp = headers.get("x-webhook-timestamp", "")
        digest = hmac.new(
            self._webhook_secret.encode(),
            timestamp.encode() + body,
            hashlib.sha256,
        ).digest()
        expected = base64.b64encode(digest).decode()
        return hmac.compare_digest(expected, signature)

    def parse_webhook(self, headers: Dict[str, str], body: bytes) -> WebhookEvent:
        if self._webhook_secret and not self.verify_signature(headers, body):
            raise ValueError("Invalid webhook signature")
        try:
            event = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ValueError("Invalid webhook payload") from e
        if not isinstance(event, dict):
            raise ValueError("Invalid webhook payload")

        data = event.get("data") or {}
        order = data.get("order") or {}
        payment = data.get("payment") or {}
        return WebhookEvent(
            provider=self.name,
            event_type=event.get("type", "unknown"),
            order_id=order.get("order_id") or data.get("order_id"),
            status=payment.get("payment_status"),
            payload=event,
        )

    async def aclose(self) -> None:
        await self._client.aclose()
