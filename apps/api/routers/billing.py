"""Billing router: provider webhook, checkout sessions and subscription state."""

from __future__ import annotations

import logging
from typing import Literal, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.future import select

from config import settings
from database import get_db, get_session_maker
from models.subscription_state import SubscriptionState
from routers.auth_scope import AuthContext, ensure_user_scope, get_auth_context
from routers.rate_limit import rate_limit
from services.billing_customers import get_customer_id, get_or_create_customer
from services.billing_provider import StripeBillingProvider, get_billing_provider
from services.billing_reconciler import process_billing_event_in_background
from services.errors import SignatureVerificationFailed
from services.event_queue import enqueue_billing_event
from services.pricing import resolve_price_or_default, token_package_size

router = APIRouter()
logger = logging.getLogger(__name__)


class CheckoutRequest(BaseModel):
    user_id: Optional[str] = None
    price_id: str = Field(min_length=1, max_length=128)
    mode: Literal["subscription", "payment"] = "subscription"


@router.post("/webhook")
async def billing_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    provider: StripeBillingProvider = Depends(get_billing_provider),
    session_maker: async_sessionmaker = Depends(get_session_maker),
):
    """Verify the signature, acknowledge, and process the event out of band."""
    payload = await request.body()
    try:
        event = provider.construct_event(payload, request.headers.get("stripe-signature"))
    except SignatureVerificationFailed as exc:
        logger.error("Rejected billing webhook: %s", exc)
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    queued = False
    if settings.BILLING_EVENTS_USE_QUEUE:
        try:
            enqueue_billing_event(event)
            queued = True
        except Exception as exc:
            logger.warning("Billing queue unavailable (%s); processing event %s in-process", exc, event.get("id"))
    if not queued:
        background_tasks.add_task(process_billing_event_in_background, event, session_maker, provider)

    logger.info("Accepted billing event %s (%s)", event.get("id"), event.get("type"))
    return {"received": True}


@router.post("/checkout")
async def create_checkout_session(
    request: CheckoutRequest,
    _rate_limit: None = Depends(rate_limit("billing_checkout", limit=20, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    provider: StripeBillingProvider = Depends(get_billing_provider),
):
    scoped_user_id = ensure_user_scope(auth.user_id, request.user_id)

    if not settings.BILLING_ENABLED:
        raise HTTPException(status_code=503, detail="Billing is disabled. Enable BILLING_ENABLED to use checkout.")
    if not settings.STRIPE_SECRET_KEY:
        raise HTTPException(status_code=503, detail="Stripe is not configured.")

    if request.mode == "subscription" and request.price_id not in settings.STRIPE_PRICE_TIERS:
        raise HTTPException(status_code=422, detail=f"Unknown subscription price: {request.price_id}")
    if request.mode == "payment" and token_package_size(request.price_id) is None:
        raise HTTPException(status_code=422, detail=f"Unknown token package price: {request.price_id}")

    customer_id = await get_or_create_customer(db, provider, scoped_user_id, auth.email)
    session = await provider.create_checkout_session(scoped_user_id, customer_id, request.price_id, request.mode)
    return {
        "checkout_url": session["url"],
        "session_id": session["id"],
        "user_id": scoped_user_id,
        "mode": request.mode,
    }


@router.get("/subscription")
async def subscription_status(
    user_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, user_id)
    customer_id = await get_customer_id(db, scoped_user_id)
    state = None
    if customer_id:
        result = await db.execute(select(SubscriptionState).where(SubscriptionState.customer_id == customer_id))
        state = result.scalar_one_or_none()

    if state is None:
        return {"user_id": scoped_user_id, "customer_id": customer_id, "status": "not_started", "tier": "free"}

    return {
        "user_id": scoped_user_id,
        "customer_id": customer_id,
        "subscription_id": state.subscription_id,
        "price_id": state.price_id,
        "tier": resolve_price_or_default(state.price_id).tier if state.price_id else "free",
        "status": state.status,
        "current_period_start": state.current_period_start.isoformat() if state.current_period_start else None,
        "current_period_end": state.current_period_end.isoformat() if state.current_period_end else None,
        "cancel_at_period_end": bool(state.cancel_at_period_end),
    }
