import hashlib
import secrets
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, Dict, Any, List, Union

from pydantic import BaseModel

# Gateway-side attempt status tags
ATTEMPT_SUCCESS = "SUCCESS"
ATTEMPT_FAILED = "FAILED"
ATTEMPT_PENDING = "PENDING"


def generate_order_id() -> str:
    """Return a 20 character hex order id derived from 16 random bytes."""
    return hashlib.sha256(secrets.token_hex(16).encode()).hexdigest()[:20]


# Canonical models
class CustomerDetails(BaseModel):
    customer_id: str
    name: str
    email: str
    phone: Optional[str] = None


class OrderSession(BaseModel):
    session_token: str
    order_id: str
    # Provider-side id of the order, when it differs from order_id
    gateway_reference: Optional[str] = None
    raw_provider_response: Optional[Dict[str, Any]] = None


class PaymentAttempt(BaseModel):
    status: str  # SUCCESS|FAILED|anything else is treated as still pending
    payment_id: Optional[str] = None
    # e.g. {"card": {"card_network": "visa", "card_type": "credit_card"}} or {"upi": {...}}
    payment_method: Optional[Union[Dict[str, Any], str]] = None
    attempted_at: Optional[datetime] = None  # naive UTC


class WebhookEvent(BaseModel):
    provider: str
    event_type: str
    order_id: Optional[str] = None
    status: Optional[str] = None
    payload: Dict[str, Any] = {}


class GatewayAdapter(ABC):
    """
    Minimal payment gateway interface. ``fetch_status`` is read-only and
    safe to retry; ``open_order`` creates a new order on every call.
    """

    name: str = "base"

    @abstractmethod
    async def open_order(
        self,
        amount: int,
        customer: CustomerDetails,
        order_id: Optional[str] = None,
        currency: str = "INR",
    ) -> OrderSession:
        """
        Open a checkout order for ``amount`` minor units. Raises GatewayError.
        """
        raise NotImplementedError

    @abstractmethod
    async def fetch_status(
        self,
        order_id: str,
        reference: Optional[str] = None,
    ) -> List[PaymentAttempt]:
        """
        Return the authoritative payment attempts for an order. Raises GatewayError.

        ``reference`` is the ``gateway_reference`` stored when the order was
        opened. Adapters that can look orders up by ``order_id`` ignore it.
        """
        raise NotImplementedError

    @abstractmethod
    def parse_webhook(self, headers: Dict[str, str], body: bytes) -> WebhookEvent:
        """
        Validate and canonicalize a webhook payload. Raises ValueError.
        """
        raise NotImplementedError

    async def aclose(self) -> None:
        return None

    def health_check(self) -> Dict[str, Any]:
        return {"ok": True, "provider": self.name}
