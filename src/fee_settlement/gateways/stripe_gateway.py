import os
import json
import asyncio
import logging
from datetime import datetime
from typing import Optional, Dict, Any, List

import stripe

from ..errors import GatewayError
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

logger = logging.getLogger(__name__)


class StripeGateway(GatewayAdapter):
    """
    Stripe adapter using PaymentIntents. Each order is one PaymentIntent
    tagged with ``metadata.order_id``; the client secret is the session
    token handed to Stripe.js.
    """

    name = "stripe"

    WEBHOOK_EVENTS = {
        "payment_intent.succeeded": ATTEMPT_SUCCESS,
        "payment_intent.payment_failed": ATTEMPT_FAILED,
    }

    def __init__(self, api_key: Optional[str] = None, webhook_secret: Optional[str] = None):
        self._api_key = api_key or os.getenv("STRIPE_API_KEY")
        if not self._api_key:
            raise ValueError(
                "STRIPE_API_KEY must be provided either as argument or environment variable"
            )
        self._webhook_secret = webhook_secret or os.getenv("STRIPE_WEBHOOK_SECRET")

    def _configure_stripe(self) -> None:
        stripe.api_key = self._api_key

    def _map_intent_status(self, intent: Any) -> str:
        if intent.status == "succeeded":
            return ATTEMPT_SUCCESS
        if intent.status == "canceled":
            return ATTEMPT_FAILED
        if intent.status == "requires_payment_method" and getattr(intent, "last_payment_error", None):
            return ATTEMPT_FAILED
        return ATTEMPT_PENDING

    def _payment_method_descriptor(self, intent: Any) -> Optional[Dict[str, Any]]:
        charge = getattr(intent, "latest_charge", None)
        details = getattr(charge, "payment_method_details", None) if charge else None
        if not details:
            return None
        method_type = getattr(details, "type", None)
        if method_type == "card":
            card = getattr(details, "card", None)
            return {
                "card": {
                    "card_network": getattr(card, "brand", None),
                    "card_type": getattr(card, "funding", None),
                }
            }
        return {method_type: {}} if method_type else None

    async def open_order(
        self,
        amount: int,
        customer: CustomerDetails,
        order_id: Optional[str] = None,
        currency: str = "INR",
    ) -> OrderSession:
        self._configure_stripe()
        order_id = order_id or generate_order_id()
        try:
            intent = await asyncio.to_thread(
                stripe.PaymentIntent.create,
                amount=amount,
                currency=currency.lower(),
                receipt_email=customer.email,
                metadata={"order_id": order_id, "customer_id": customer.customer_id},
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe API error opening order {order_id}: {type(e).__name__}")
            raise GatewayError(f"Payment gateway error: {e}", provider=self.name) from e
        return OrderSession(
            session_token=intent.client_secret,
            order_id=order_id,
            gateway_reference=intent.id,
            raw_provider_response={"id": intent.id, "status": intent.status},
        )

    def _to_attempt(self, intent: Any) -> PaymentAttempt:
        return PaymentAttempt(
            status=self._map_intent_status(intent),
            payment_id=intent.id,
            payment_method=self._payment_method_descriptor(intent),
            attempted_at=datetime.utcfromtimestamp(intent.created),
        )

    async def fetch_status(self, order_id: str, reference: Optional[str] = None) -> List[PaymentAttempt]:
        """Read the PaymentIntent behind an order.

        With the stored PaymentIntent id this is a direct retrieve. Search
        is only a fallback for orders opened without one, since Stripe's
        search index lags behind recent writes.
        """
        self._configure_stripe()
        try:
            if reference:
                intent = await asyncio.to_thread(
                    stripe.PaymentIntent.retrieve,
                    reference,
                    expand=["latest_charge"],
                )
                intents = [intent]
            else:
                result = await asyncio.to_thread(
                    stripe.PaymentIntent.search,
                    query=f"metadata['order_id']:'{order_id}'",
                    expand=["data.latest_charge"],
                )
                intents = list(result.data)
        except stripe.StripeError as e:
            logger.error(f"Failed to fetch PaymentIntents for {order_id}: {type(e).__name__}")
            raise GatewayError(f"Payment gateway error: {e}", provider=self.name) from e

        return [self._to_attempt(intent) for intent in intents]

    def parse_webhook(self, headers: Dict[str, str], body: bytes) -> WebhookEvent:
        if self._webhook_secret:
            sig_header = headers.get("stripe-signature", "")
            try:
                event = stripe.Webhook.construct_event(
                    payload=body, sig_header=sig_header, secret=self._webhook_secret
                )
            except (ValueError, stripe.SignatureVerificationError) as e:
                raise ValueError("Invalid webhook signature") from e
            payload = event.to_dict()
        else:
            # best effort parse (not recommended for production)
            try:
                payload = json.loads(body)
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                raise ValueError("Invalid webhook payload") from e

        event_type = payload.get("type", "unknown")
        intent = (payload.get("data") or {}).get("object") or {}
        return WebhookEvent(
            provider=self.name,
            event_type=event_type,
            order_id=(intent.get("metadata") or {}).get("order_id"),
            status=self.WEBHOOK_EVENTS.get(event_type),
            payload=payload,
        )
