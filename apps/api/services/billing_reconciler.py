"""Apply billing provider events to subscription state and token accounts.

Every handler is safe to replay and to receive out of order. Subscription
events never trust the payload: they re-fetch the authoritative snapshot from
the provider and converge the account towards it.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.future import select

from database import async_session_maker
from models.subscription_state import SubscriptionState
from models.token_account import TokenAccount
from models.token_purchase import TokenPurchase
from services.allocation import AllocationManager
from services.billing_customers import lookup_user_id
from services.billing_provider import StripeBillingProvider, SubscriptionSnapshot, object_id
from services.errors import IdentityMappingMissing
from services.ledger import TokenLedger
from services.pricing import (
    DEFAULT_TIER,
    ENTITLED_SUBSCRIPTION_STATUSES,
    resolve_price_or_default,
    tier_allocation,
    token_package_size,
)
from services.proration import ProrationEngine
from services.store import as_utc, run_store_operation, utcnow
from services.transaction_log import record_transaction

logger = logging.getLogger(__name__)

RESYNC_EVENT_TYPES = frozenset({
    "customer.subscription.created",
    "customer.subscription.updated",
})
RENEWAL_BILLING_REASONS = frozenset({"subscription_cycle"})


@dataclass(frozen=True)
class ReconcileResult:
    event_type: str
    outcome: str
    user_id: Optional[str] = None
    detail: Optional[str] = None


def _upsert_statement(db: AsyncSession, values: Dict[str, Any]):
    dialect = db.get_bind().dialect.name
    insert = pg_insert if dialect == "postgresql" else sqlite_insert
    statement = insert(SubscriptionState).values(**values)
    replaced = {key: statement.excluded[key] for key in values if key != "customer_id"}
    return statement.on_conflict_do_update(index_elements=["customer_id"], set_=replaced)


class BillingReconciler:
    """Stateless event handler; every event gets its own database session."""

    def __init__(self, session_maker: async_sessionmaker, provider: StripeBillingProvider):
        self.session_maker = session_maker
        self.provider = provider

    async def handle_event(self, event: Dict[str, Any], *, now: Optional[datetime] = None) -> ReconcileResult:
        event_type = str(event.get("type") or "")
        payload = (event.get("data") or {}).get("object") or {}
        now = now or utcnow()

        if event_type in RESYNC_EVENT_TYPES:
            return await self._with_user(event_type, payload, lambda db, cid, uid: self._sync(db, event_type, cid, uid, now))
        if event_type == "customer.subscription.deleted":
            return await self._with_user(
                event_type, payload, lambda db, cid, uid: self._subscription_deleted(db, event_type, cid, uid, payload, now)
            )
        if event_type == "checkout.session.completed":
            if payload.get("mode") == "subscription":
                return await self._with_user(event_type, payload, lambda db, cid, uid: self._sync(db, event_type, cid, uid, now))
            if payload.get("mode") == "payment":
                return await self._with_user(event_type, payload, lambda db, cid, uid: self._one_time_purchase(db, event_type, cid, uid, payload))
            return ReconcileResult(event_type=event_type, outcome="ignored", detail=f"mode {payload.get('mode')}")
        if event_type == "invoice.payment_succeeded":
            if payload.get("billing_reason") not in RENEWAL_BILLING_REASONS:
                return ReconcileResult(event_type=event_type, outcome="ignored", detail=str(payload.get("billing_reason")))
            return await self._with_user(event_type, payload, lambda db, cid, uid: self._sync(db, event_type, cid, uid, now))
        if event_type == "invoice.payment_failed":
            logger.warning(
                "Payment failed for customer %s (invoice %s); no token change",
                object_id(payload.get("customer")),
                payload.get("id"),
            )
            return ReconcileResult(event_type=event_type, outcome="logged")

        logger.info("Ignoring billing event %s (%s)", event.get("id"), event_type)
        return ReconcileResult(event_type=event_type, outcome="ignored")

    async def _with_user(self, event_type: str, payload: Dict[str, Any], handler) -> ReconcileResult:
        customer_id = object_id(payload.get("customer"))
        async with self.session_maker() as db:
            user_id = await run_store_operation(db, "lookup_user_id", lookup_user_id(db, customer_id))
            if user_id is None:
                missing = IdentityMappingMissing(customer_id)
                logger.warning("Dropping %s: %s", event_type, missing)
                return ReconcileResult(event_type=event_type, outcome="dropped", detail=str(missing))
            return await handler(db, customer_id, user_id)

    async def _load_state(self, db: AsyncSession, customer_id: str) -> Optional[SubscriptionState]:
        result = await db.execute(
            select(SubscriptionState)
            .where(SubscriptionState.customer_id == customer_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _write_state(self, db: AsyncSession, values: Dict[str, Any]) -> None:
        await db.execute(_upsert_statement(db, values))
        await db.commit()

    async def _sync(
        self,
        db: AsyncSession,
        event_type: str,
        customer_id: str,
        user_id: str,
        now: datetime,
    ) -> ReconcileResult:
        """Converge the account towards the provider snapshot, then store the snapshot.

        The stored state is written last: renewal detection compares against
        it, so a failed account update must leave it untouched for the retry.
        """
        snapshot = await self.provider.fetch_latest_subscription(customer_id)
        previous = await run_store_operation(db, "load_subscription_state", self._load_state(db, customer_id))

        if snapshot is None:
            result = await self._revert_to_free(db, event_type, user_id, None, "No active subscription - reverted to free tier", now)
            state_values = {
                "customer_id": customer_id,
                "subscription_id": None,
                "price_id": None,
                "status": "not_started",
                "current_period_start": None,
                "current_period_end": None,
                "cancel_at_period_end": False,
                "updated_at": now,
            }
        elif snapshot.status not in ENTITLED_SUBSCRIPTION_STATUSES:
            result = await self._revert_to_free(
                db,
                event_type,
                user_id,
                snapshot.subscription_id,
                f"Subscription {snapshot.status} - reverted to free tier",
                now,
            )
            state_values = self._state_values(customer_id, snapshot, now)
        else:
            result = await self._converge_entitled(db, event_type, user_id, snapshot, previous, now)
            state_values = self._state_values(customer_id, snapshot, now)

        await run_store_operation(db, "upsert_subscription_state", self._write_state(db, state_values))
        return result

    async def _converge_entitled(
        self,
        db: AsyncSession,
        event_type: str,
        user_id: str,
        snapshot: SubscriptionSnapshot,
        previous: Optional[SubscriptionState],
        now: datetime,
    ) -> ReconcileResult:
        target = resolve_price_or_default(snapshot.price_id)
        account = await TokenLedger(db).get_account(user_id)

        if account.tier != target.tier:
            proration = await ProrationEngine(db).apply_tier_change(
                user_id,
                from_tier=account.tier,
                target=target,
                period_start=snapshot.current_period_start,
                period_end=snapshot.current_period_end,
                subscription_id=snapshot.subscription_id,
                now=now,
            )
            outcome = "prorated" if proration.applied else "unchanged"
            return ReconcileResult(event_type=event_type, outcome=outcome, user_id=user_id)

        period_start = as_utc(snapshot.current_period_start)
        previous_period_start = as_utc(previous.current_period_start) if previous else None
        renewed_period = (
            previous is not None
            and previous.subscription_id == snapshot.subscription_id
            and previous_period_start is not None
            and period_start is not None
            and period_start > previous_period_start
        )
        if renewed_period:
            applied = await AllocationManager(db).reset_for_tier(
                user_id,
                target.tier,
                target.allowance,
                snapshot.subscription_id,
                f"Renewal refill to {target.allowance} tokens ({target.tier} tier)",
                reset_before=period_start,
                transaction_type="monthly_reset",
                logged_tokens=target.allowance,
                now=now,
            )
            if applied:
                return ReconcileResult(event_type=event_type, outcome="renewed", user_id=user_id)

        logger.info("Subscription for user %s synced with no token change (%s tier)", user_id, target.tier)
        return ReconcileResult(event_type=event_type, outcome="synced", user_id=user_id)

    @staticmethod
    def _state_values(customer_id: str, snapshot: SubscriptionSnapshot, now: datetime) -> Dict[str, Any]:
        return {
            "customer_id": customer_id,
            "subscription_id": snapshot.subscription_id,
            "price_id": snapshot.price_id,
            "status": snapshot.status,
            "current_period_start": snapshot.current_period_start,
            "current_period_end": snapshot.current_period_end,
            "cancel_at_period_end": snapshot.cancel_at_period_end,
            "updated_at": now,
        }

    async def _revert_to_free(
        self,
        db: AsyncSession,
        event_type: str,
        user_id: str,
        subscription_id: Optional[str],
        description: str,
        now: datetime,
    ) -> ReconcileResult:
        account = await TokenLedger(db).get_account(user_id)
        if account.tier == DEFAULT_TIER:
            return ReconcileResult(event_type=event_type, outcome="unchanged", user_id=user_id)
        free = tier_allocation(DEFAULT_TIER)
        await AllocationManager(db).reset_for_tier(user_id, free.tier, free.allowance, subscription_id, description, now=now)
        return ReconcileResult(event_type=event_type, outcome="revoked", user_id=user_id)

    async def _claim_cancellation(self, db: AsyncSession, customer_id: str, subscription_id: Optional[str], now: datetime) -> bool:
        result = await db.execute(
            update(SubscriptionState)
            .where(SubscriptionState.customer_id == customer_id, SubscriptionState.status != "canceled")
            .values(status="canceled", cancel_at_period_end=False, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            await db.commit()
            return True
        await db.rollback()

        if await self._load_state(db, customer_id) is not None:
            return False
        db.add(SubscriptionState(customer_id=customer_id, subscription_id=subscription_id, status="canceled", updated_at=now))
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            return False
        return True

    async def _subscription_deleted(
        self,
        db: AsyncSession,
        event_type: str,
        customer_id: str,
        user_id: str,
        payload: Dict[str, Any],
        now: datetime,
    ) -> ReconcileResult:
        subscription_id = payload.get("id")
        state = await run_store_operation(db, "load_subscription_state", self._load_state(db, customer_id))
        if (
            state is not None
            and state.subscription_id
            and subscription_id
            and state.subscription_id != subscription_id
            and state.status in ENTITLED_SUBSCRIPTION_STATUSES
        ):
            # A newer subscription replaced the deleted one.
            logger.info("Deletion of superseded subscription %s for user %s; resyncing", subscription_id, user_id)
            return await self._sync(db, event_type, customer_id, user_id, now)

        claimed = await run_store_operation(
            db, "cancel_subscription_state", self._claim_cancellation(db, customer_id, subscription_id, now)
        )
        if not claimed:
            account = await TokenLedger(db).get_account(user_id)
            if account.tier == DEFAULT_TIER:
                logger.info("Subscription %s for user %s already canceled", subscription_id, user_id)
                return ReconcileResult(event_type=event_type, outcome="duplicate", user_id=user_id)

        free = tier_allocation(DEFAULT_TIER)
        await AllocationManager(db).reset_for_tier(
            user_id,
            free.tier,
            free.allowance,
            subscription_id,
            "Subscription deleted - reverted to free tier",
            now=now,
        )
        return ReconcileResult(event_type=event_type, outcome="revoked", user_id=user_id)

    async def _apply_purchase(self, db: AsyncSession, purchase: TokenPurchase) -> bool:
        db.add(purchase)
        try:
            await db.flush()
        except IntegrityError:
            await db.rollback()
            return False
        result = await db.execute(
            update(TokenAccount)
            .where(TokenAccount.user_id == purchase.user_id)
            .values(balance=TokenAccount.balance + purchase.tokens_purchased, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await db.rollback()
            return False
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            return False
        return True

    async def _one_time_purchase(
        self,
        db: AsyncSession,
        event_type: str,
        customer_id: str,
        user_id: str,
        payload: Dict[str, Any],
    ) -> ReconcileResult:
        if payload.get("payment_status") != "paid":
            logger.info("Checkout session %s not paid (%s)", payload.get("id"), payload.get("payment_status"))
            return ReconcileResult(event_type=event_type, outcome="ignored", user_id=user_id)

        price_id = (payload.get("metadata") or {}).get("price_id")
        tokens = token_package_size(price_id)
        if tokens is None:
            logger.warning("Checkout session %s has unknown token package price %s", payload.get("id"), price_id)
            return ReconcileResult(event_type=event_type, outcome="ignored", user_id=user_id, detail=price_id)

        await TokenLedger(db).get_account(user_id)
        payment_intent_id = object_id(payload.get("payment_intent"))
        purchase = TokenPurchase(
            checkout_session_id=payload["id"],
            payment_intent_id=payment_intent_id,
            customer_id=customer_id,
            user_id=user_id,
            price_id=price_id,
            tokens_purchased=tokens,
            amount_total=payload.get("amount_total"),
            currency=payload.get("currency"),
        )
        applied = await run_store_operation(db, "apply_token_purchase", self._apply_purchase(db, purchase))
        if not applied:
            logger.info("Checkout session %s already credited", payload["id"])
            return ReconcileResult(event_type=event_type, outcome="duplicate", user_id=user_id)

        await record_transaction(
            db,
            user_id,
            tokens_added=tokens,
            transaction_type="one_time_purchase",
            external_payment_id=payment_intent_id or payload["id"],
            description=f"Purchased {tokens} tokens",
        )
        logger.info("Credited %s purchased tokens to user %s", tokens, user_id)
        return ReconcileResult(event_type=event_type, outcome="purchased", user_id=user_id)


async def process_billing_event(event: Dict[str, Any], session_maker: async_sessionmaker, provider: StripeBillingProvider) -> ReconcileResult:
    result = await BillingReconciler(session_maker, provider).handle_event(event)
    logger.info("Processed billing event %s (%s): %s", event.get("id"), result.event_type, result.outcome)
    return result


async def process_billing_event_in_background(
    event: Dict[str, Any],
    session_maker: async_sessionmaker,
    provider: StripeBillingProvider,
) -> None:
    """In-process fallback used when the RQ queue is disabled or unreachable."""
    try:
        await process_billing_event(event, session_maker, provider)
    except Exception:
        logger.exception("Billing event %s failed in background processing", event.get("id"))


def process_billing_event_job(event: Dict[str, Any]) -> Dict[str, Any]:
    """RQ job entry point; failures raise so the queue's retry policy applies."""
    result = asyncio.run(process_billing_event(event, async_session_maker, StripeBillingProvider()))
    return {"event_type": result.event_type, "outcome": result.outcome, "user_id": result.user_id}
