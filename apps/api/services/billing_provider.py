"""Stripe billing provider: subscription snapshots, checkout and webhook verification."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import stripe

from config import require_stripe_secret_key, settings
from services.errors import SignatureVerificationFailed

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """Authoritative subscription state as reported by the provider."""

    customer_id: str
    subscription_id: str
    price_id: Optional[str]
    status: str
    current_period_start: Optional[datetime]
    current_period_end: Optional[datetime]
    cancel_at_period_end: bool = False


def _from_timestamp(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def object_id(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return value.get("id")


def snapshot_from_subscription(subscription: Dict[str, Any]) -> SubscriptionSnapshot:
    """Build a snapshot from a Stripe subscription object or plain dict.

    Newer API versions report the period on the subscription item rather than
    the subscription, so both places are checked.
    """
    items = (subscription.get("items") or {}).get("data") or []
    first_item = items[0] if items else {}
    price = first_item.get("price") or {}
    period_start = first_item.get("current_period_start") or subscription.get("current_period_start")
    period_end = first_item.get("current_period_end") or subscription.get("current_period_end")
    return SubscriptionSnapshot(
        customer_id=object_id(subscription.get("customer")) or "",
        subscription_id=subscription["id"],
        price_id=object_id(price),
        status=str(subscription.get("status") or "unknown"),
        current_period_start=_from_timestamp(period_start),
        current_period_end=_from_timestamp(period_end),
        cancel_at_period_end=bool(subscription.get("cancel_at_period_end", False)),
    )


class StripeBillingProvider:
    """Thin async wrapper around the blocking Stripe SDK."""

    def __init__(self, api_key: Optional[str] = None, webhook_secret: Optional[str] = None):
        self.api_key = api_key
        self.webhook_secret = webhook_secret

    def _client(self):
        stripe.api_key = self.api_key or require_stripe_secret_key()
        return stripe

    def _fetch_latest_subscription(self, customer_id: str) -> Optional[SubscriptionSnapshot]:
        client = self._client()
        subscriptions = client.Subscription.list(customer=customer_id, limit=1, status="all")
        data = subscriptions.get("data") or []
        if not data:
            return None
        return snapshot_from_subscription(data[0])

    async def fetch_latest_subscription(self, customer_id: str) -> Optional[SubscriptionSnapshot]:
        """Return the customer's most recent subscription, or None if they have none."""
        return await asyncio.to_thread(self._fetch_latest_subscription, customer_id)

    def _create_customer(self, user_id: str, email: Optional[str]) -> str:
        client = self._client()
        customer = client.Customer.create(email=email, metadata={"user_id": user_id})
        logger.info("Created Stripe customer %s for user %s", customer["id"], user_id)
        return customer["id"]

    async def create_customer(self, user_id: str, email: Optional[str] = None) -> str:
        return await asyncio.to_thread(self._create_customer, user_id, email)

    def _create_checkout_session(self, user_id: str, customer_id: str, price_id: str, mode: str) -> Dict[str, Any]:
        client = self._client()
        session = client.checkout.Session.create(
            customer=customer_id,
            line_items=[{"price": price_id, "quantity": 1}],
            mode=mode,
            success_url=settings.STRIPE_SUCCESS_URL,
            cancel_url=settings.STRIPE_CANCEL_URL,
            metadata={"user_id": user_id, "price_id": price_id},
        )
        logger.info("Created %s checkout session %s for user %s", mode, session["id"], user_id)
        return {"id": session["id"], "url": session["url"]}

    async def create_checkout_session(self, user_id: str, customer_id: str, price_id: str, mode: str) -> Dict[str, Any]:
        return await asyncio.to_thread(self._create_checkout_session, user_id, customer_id, price_id, mode)

    def construct_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Verify the webhook signature and return the event as a plain dict."""
        secret = (self.webhook_secret or settings.STRIPE_WEBHOOK_SECRET or "").strip()
        if not secret:
            raise SignatureVerificationFailed("Webhook secret is not configured")
        if not signature:
            raise SignatureVerificationFailed("No signature found")
        try:
            stripe.Webhook.construct_event(payload, signature, secret)
        except stripe.SignatureVerificationError as exc:
            raise SignatureVerificationFailed(f"Webhook signature verification failed: {exc}") from exc
        except ValueError as exc:
            raise SignatureVerificationFailed("Invalid webhook payload") from exc
        return json.loads(payload)


def get_billing_provider() -> StripeBillingProvider:
    """FastAPI dependency returning the configured billing provider."""
    return StripeBillingProvider()
