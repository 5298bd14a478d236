"""Payment gateway adapters."""

import os
from typing import Optional

from .base import (
    GatewayAdapter,
    CustomerDetails,
    OrderSession,
    PaymentAttempt,
    WebhookEvent,
    generate_order_id,
    ATTEMPT_SUCCESS,
    ATTEMPT_FAILED,
    ATTEMPT_PENDING,
)
from .cashfree import CashfreeGateway
from .stripe_gateway import StripeGateway
from .simulator import SimulatorGateway, SimulatorConfig, SimulatedOrder


def get_gateway(provider: Optional[str] = None) -> GatewayAdapter:
    """Factory function to get the configured gateway adapter.

    Args:
        provider: Gateway name. Falls back to PAYMENT_PROVIDER, then "cashfree".

    Raises:
        ValueError: If the provider is not supported.
    """
    provider = (provider or os.getenv("PAYMENT_PROVIDER", "cashfree")).lower()
    gateways = {
        "cashfree": CashfreeGateway,
        "stripe": StripeGateway,
        "simulator": SimulatorGateway,
    }
    gateway_class = gateways.get(provider)
    if not gateway_class:
        raise ValueError(f"Unsupported payment provider: {provider}")
    return gateway_class()


__all__ = [
    "GatewayAdapter",
    "CustomerDetails",
    "OrderSession",
    "PaymentAttempt",
    "WebhookEvent",
    "generate_order_id",
    "ATTEMPT_SUCCESS",
    "ATTEMPT_FAILED",
    "ATTEMPT_PENDING",
    "CashfreeGateway",
    "StripeGateway",
    "SimulatorGateway",
    "SimulatorConfig",
    "SimulatedOrder",
    "get_gateway",
]
