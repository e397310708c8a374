"""Monthly allowance resets and tier-driven reallocation."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.future import select

from config import settings
from models.billing_customer import BillingCustomer
from models.subscription_state import SubscriptionState
from models.token_account import TokenAccount
from services.ledger import TokenLedger
from services.pricing import (
    DEFAULT_TIER,
    ENTITLED_SUBSCRIPTION_STATUSES,
    TIER_ALLOWANCES,
    ensure_transaction_type,
    resolve_price_or_default,
    tier_allocation,
)
from services.store import as_utc, run_store_operation, utcnow
from services.transaction_log import record_transaction

logger = logging.getLogger(__name__)


@dataclass
class ResetSummary:
    total: int = 0
    succeeded: int = 0
    skipped: int = 0
    failed: int = 0
    failures: List[Dict[str, Any]] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "succeeded": self.succeeded,
            "skipped": self.skipped,
            "failed": self.failed,
            "failures": list(self.failures),
        }


class AllocationManager:
    """Resets balances to tier allowances; every reset is one conditional UPDATE."""

    def __init__(
        self,
        db: AsyncSession,
        *,
        period_days: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self.db = db
        self.ledger = TokenLedger(db, timeout_seconds=timeout_seconds)
        self.period_days = int(period_days or settings.BILLING_PERIOD_DAYS)
        self.timeout_seconds = timeout_seconds

    async def _apply_reset(self, statement) -> bool:
        result = await self.db.execute(statement.execution_options(synchronize_session=False))
        if result.rowcount != 1:
            await self.db.rollback()
            return False
        await self.db.commit()
        return True

    async def _subscription_state(self, user_id: str) -> Optional[SubscriptionState]:
        result = await self.db.execute(
            select(SubscriptionState)
            .join(BillingCustomer, BillingCustomer.customer_id == SubscriptionState.customer_id)
            .where(BillingCustomer.user_id == user_id)
        )
        return result.scalars().first()

    async def reset_if_due(self, user_id: str, *, now: Optional[datetime] = None) -> bool:
        """Reset the balance when a full billing period has elapsed.

        The target tier comes from the stored subscription: an entitled
        subscription keeps its mapped tier, anything else resets to free.
        While an entitled subscription's paid period is still running the
        provider renewal owns the refill, so nothing happens here.

        The UPDATE only matches while ``last_reset_date`` is still stale, so a
        second call in the same period (or a concurrent duplicate) is a no-op.
        """
        now = now or utcnow()
        account = await self.ledger.get_account(user_id)
        cutoff = now - timedelta(days=self.period_days)
        if as_utc(account.last_reset_date) > cutoff:
            return False

        state = await run_store_operation(
            self.db, "load_subscription_state", self._subscription_state(user_id), self.timeout_seconds
        )
        if state is not None and state.status in ENTITLED_SUBSCRIPTION_STATUSES:
            period_end = as_utc(state.current_period_end)
            if period_end is not None and now < period_end:
                logger.info("Monthly reset for user %s deferred to renewal at %s", user_id, period_end.isoformat())
                return False
            target = resolve_price_or_default(state.price_id)
        else:
            target = tier_allocation(DEFAULT_TIER)

        statement = (
            update(TokenAccount)
            .where(
                TokenAccount.user_id == user_id,
                TokenAccount.tier == account.tier,
                TokenAccount.last_reset_date <= cutoff,
            )
            .values(
                balance=target.allowance,
                monthly_allowance=target.allowance,
                tier=target.tier,
                last_reset_date=now,
                updated_at=now,
            )
        )
        applied = await run_store_operation(self.db, "reset_if_due", self._apply_reset(statement), self.timeout_seconds)
        if not applied:
            logger.info("Monthly reset for user %s already applied", user_id)
            return False

        await record_transaction(
            self.db,
            user_id,
            tokens_added=target.allowance,
            transaction_type="monthly_reset",
            external_subscription_id=state.subscription_id if state is not None else None,
            description=f"Monthly reset to {target.allowance} tokens ({target.tier} tier)",
        )
        if target.tier != account.tier:
            logger.info("Monthly reset moved user %s from %s to %s tier", user_id, account.tier, target.tier)
        logger.info("Monthly reset for user %s: %s tokens (%s tier)", user_id, target.allowance, target.tier)
        return True

    async def reset_for_tier(
        self,
        user_id: str,
        tier: str,
        allowance: int,
        subscription_id: Optional[str] = None,
        description: Optional[str] = None,
        *,
        reset_before: Optional[datetime] = None,
        transaction_type: str = "subscription_grant",
        logged_tokens: int = 0,
        now: Optional[datetime] = None,
    ) -> bool:
        """Set tier and allowance to provider-confirmed values regardless of elapsed time.

        ``reset_before`` guards period-based refills: the update only applies
        while the last reset predates it, which makes renewals replay-safe.
        """
        if tier not in TIER_ALLOWANCES:
            raise ValueError(f"Unknown tier: {tier}")
        ensure_transaction_type(transaction_type)
        allowance = max(int(allowance), 0)
        now = now or utcnow()

        await self.ledger.get_account(user_id)
        conditions = [TokenAccount.user_id == user_id]
        if reset_before is not None:
            conditions.append(TokenAccount.last_reset_date < reset_before)
        statement = (
            update(TokenAccount)
            .where(*conditions)
            .values(
                balance=allowance,
                monthly_allowance=allowance,
                tier=tier,
                last_reset_date=now,
                updated_at=now,
            )
        )
        applied = await run_store_operation(self.db, "reset_for_tier", self._apply_reset(statement), self.timeout_seconds)
        if not applied:
            logger.info("Tier reset for user %s skipped; already reset this period", user_id)
            return False

        await record_transaction(
            self.db,
            user_id,
            tokens_added=logged_tokens,
            transaction_type=transaction_type,
            external_subscription_id=subscription_id,
            description=description or f"{tier} tier allocation: {allowance} tokens",
        )
        logger.info("Reset user %s to %s tier with %s tokens", user_id, tier, allowance)
        return True


async def _reset_one(session_maker: async_sessionmaker, user_id: str, now: datetime) -> bool:
    async with session_maker() as db:
        return await AllocationManager(db).reset_if_due(user_id, now=now)


async def reset_all_due(
    session_maker: async_sessionmaker,
    *,
    batch_size: Optional[int] = None,
    now: Optional[datetime] = None,
) -> ResetSummary:
    """Reset every account whose period has elapsed, a bounded batch at a time.

    A failing account is recorded in the summary and does not stop the sweep.
    """
    now = now or utcnow()
    size = max(int(batch_size or settings.MONTHLY_RESET_BATCH_SIZE), 1)
    cutoff = now - timedelta(days=int(settings.BILLING_PERIOD_DAYS))

    async with session_maker() as db:
        result = await db.execute(
            select(TokenAccount.user_id)
            .where(TokenAccount.last_reset_date <= cutoff)
            .order_by(TokenAccount.last_reset_date.asc())
        )
        user_ids = list(result.scalars().all())

    summary = ResetSummary(total=len(user_ids))
    if not user_ids:
        return summary

    batch_count = (len(user_ids) + size - 1) // size
    for index in range(0, len(user_ids), size):
        batch = user_ids[index:index + size]
        logger.info("Processing monthly reset batch %s/%s", index // size + 1, batch_count)
        outcomes = await asyncio.gather(
            *(_reset_one(session_maker, user_id, now) for user_id in batch),
            return_exceptions=True,
        )
        for user_id, outcome in zip(batch, outcomes):
            if isinstance(outcome, BaseException):
                summary.failed += 1
                summary.failures.append({"user_id": user_id, "error": str(outcome)})
                logger.warning("Monthly reset failed for user %s: %s", user_id, outcome)
            elif outcome:
                summary.succeeded += 1
            else:
                summary.skipped += 1

    logger.info(
        "Monthly reset completed: %s successful, %s skipped, %s failed",
        summary.succeeded,
        summary.skipped,
        summary.failed,
    )
    return summary
