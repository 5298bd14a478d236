"""Simulator gateway for exercising payment flows without real provider calls."""

import json
import uuid
import asyncio
import logging
from datetime import datetime
from typing import Dict, Any, Optional, List, Union
from dataclasses import dataclass, field

from ..errors import GatewayError
from .base import (
    GatewayAdapter,
    CustomerDetails,
    OrderSession,
    PaymentAttempt,
    WebhookEvent,
    generate_order_id,
    ATTEMPT_SUCCESS,
)

logger = logging.getLogger(__name__)


@dataclass
class SimulatedOrder:
    """In-memory representation of a simulated order."""
    order_id: str
    amount: int
    currency: str
    customer_id: str
    session_token: str
    created_at: datetime = field(default_factory=datetime.utcnow)
    attempts: List[PaymentAttempt] = field(default_factory=list)


@dataclass
class SimulatorConfig:
    """Configuration for simulator behavior."""
    delay_ms: int = 0  # Simulated response delay in ms
    fail_open_order: bool = False
    fetch_failures: int = 0  # Number of upcoming fetch_status calls that raise


class SimulatorGateway(GatewayAdapter):
    """
    Simulator gateway with in-memory order storage.

    Tests and local development drive it with ``record_attempt`` to decide
    what the "provider" reports for an order.
    """

    name = "simulator"

    def __init__(self, config: Optional[SimulatorConfig] = None):
        self.config = config or SimulatorConfig()
        self._orders: Dict[str, SimulatedOrder] = {}
        self.fetch_calls = 0
        self.last_reference: Optional[str] = None
        logger.info("SimulatorGateway initialized")

    async def _apply_delay(self) -> None:
        if self.config.delay_ms > 0:
            await asyncio.sleep(self.config.delay_ms / 1000.0)

    async def open_order(
        self,
        amount: int,
        customer: CustomerDetails,
        order_id: Optional[str] = None,
        currency: str = "INR",
    ) -> OrderSession:
        await self._apply_delay()
        if self.config.fail_open_order:
            raise GatewayError("Simulated order creation failure", provider=self.name)
        order_id = order_id or generate_order_id()
        order = SimulatedOrder(
            order_id=order_id,
            amount=amount,
            currency=currency,
            customer_id=customer.customer_id,
            session_token=f"session_{uuid.uuid4().hex[:24]}",
        )
        self._orders[order_id] = order
        return OrderSession(
            session_token=order.session_token,
            order_id=order_id,
            gateway_reference=f"sim_order_{order_id}",
            raw_provider_response={"simulator": True},
        )

    async def fetch_status(self, order_id: str, reference: Optional[str] = None) -> List[PaymentAttempt]:
        self.fetch_calls += 1
        self.last_reference = reference
        await self._apply_delay()
        if self.config.fetch_failures > 0:
            self.config.fetch_failures -= 1
            raise GatewayError("Simulated gateway outage", provider=self.name)
        order = self._orders.get(order_id)
        if order is None:
            return []
        return list(order.attempts)

    def record_attempt(
        self,
        order_id: str,
        status: str = ATTEMPT_SUCCESS,
        payment_method: Optional[Union[Dict[str, Any], str]] = None,
        payment_id: Optional[str] = None,
    ) -> PaymentAttempt:
        """Make the simulated provider report a payment attempt for an order."""
        order = self._orders.get(order_id)
        if order is None:
            # Orders opened elsewhere can still be driven by tests
            order = SimulatedOrder(
                order_id=order_id,
                amount=0,
                currency="INR",
                customer_id="unknown",
                session_token=f"session_{uuid.uuid4().hex[:24]}",
            )
            self._orders[order_id] = order
        attempt = PaymentAttempt(
            status=status,
            payment_id=payment_id or f"sim_pay_{uuid.uuid4().hex[:16]}",
            payment_method=payment_method,
            attempted_at=datetime.utcnow(),
        )
        order.attempts.append(attempt)
        return attempt

    def parse_webhook(self, headers: Dict[str, str], body: bytes) -> WebhookEvent:
        try:
            payload = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ValueError("Invalid webhook payload") from e
        if not isinstance(payload, dict):
            raise ValueError("Invalid webhook payload")
        status = payload.get("status")
        return WebhookEvent(
            provider=self.name,
            event_type=payload.get("type", "unknown"),
            order_id=payload.get("order_id"),
            status=status.upper() if isinstance(status, str) else None,
            payload=payload,
        )

    def get_order(self, order_id: str) -> Optional[SimulatedOrder]:
        return self._orders.get(order_id)

    def health_check(self) -> Dict[str, Any]:
        return {
            "ok": True,
            "provider": self.name,
            "order_count": len(self._orders),
        }
