"""Prorated token grants for mid-period subscription tier changes."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from fractions import Fraction
from typing import Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from models.token_account import TokenAccount
from services.ledger import TokenLedger
from services.pricing import TierAllocation
from services.store import as_utc, run_store_operation, utcnow
from services.transaction_log import record_transaction

logger = logging.getLogger(__name__)

ONE_DAY = timedelta(days=1)


@dataclass(frozen=True)
class ProrationQuote:
    grant: int
    total_period_days: int
    remaining_days: int
    full_allowance_fallback: bool = False


@dataclass(frozen=True)
class ProrationOutcome:
    applied: bool
    from_tier: str
    to_tier: str
    grant: int
    balance: Optional[int] = None


def compute_prorated_grant(
    new_allowance: int,
    period_start: Optional[datetime],
    period_end: Optional[datetime],
    now: datetime,
) -> ProrationQuote:
    """Tokens owed for the remainder of the period at the new tier's daily rate.

    Day counts are rounded up, the grant is rounded up once, and a zero-length
    or missing period falls back to the full allowance.
    """
    allowance = max(int(new_allowance), 0)
    start, end, current = as_utc(period_start), as_utc(period_end), as_utc(now)
    if start is None or end is None:
        return ProrationQuote(grant=allowance, total_period_days=0, remaining_days=0, full_allowance_fallback=True)

    total_days = math.ceil((end - start) / ONE_DAY)
    if total_days <= 0:
        return ProrationQuote(grant=allowance, total_period_days=0, remaining_days=0, full_allowance_fallback=True)

    remaining_days = min(max(math.ceil((end - current) / ONE_DAY), 0), total_days)
    grant = math.ceil(Fraction(allowance, total_days) * remaining_days)
    return ProrationQuote(grant=grant, total_period_days=total_days, remaining_days=remaining_days)


class ProrationEngine:
    def __init__(self, db: AsyncSession, *, timeout_seconds: Optional[float] = None):
        self.db = db
        self.ledger = TokenLedger(db, timeout_seconds=timeout_seconds)
        self.timeout_seconds = timeout_seconds

    async def _apply(self, user_id: str, from_tier: str, target: TierAllocation, grant: int) -> bool:
        result = await self.db.execute(
            update(TokenAccount)
            .where(TokenAccount.user_id == user_id, TokenAccount.tier == from_tier)
            .values(
                balance=TokenAccount.balance + grant,
                monthly_allowance=target.allowance,
                tier=target.tier,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.rollback()
            return False
        await self.db.commit()
        return True

    async def apply_tier_change(
        self,
        user_id: str,
        *,
        from_tier: str,
        target: TierAllocation,
        period_start: Optional[datetime],
        period_end: Optional[datetime],
        subscription_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ProrationOutcome:
        """Move the account from ``from_tier`` to ``target`` and add the prorated grant.

        Unused balance is kept. The update is conditional on the account still
        being on ``from_tier``, so a replayed change applies at most once.
        """
        quote = compute_prorated_grant(target.allowance, period_start, period_end, now or utcnow())
        if from_tier == target.tier:
            return ProrationOutcome(applied=False, from_tier=from_tier, to_tier=target.tier, grant=0)

        await self.ledger.get_account(user_id)
        applied = await run_store_operation(
            self.db,
            "apply_tier_change",
            self._apply(user_id, from_tier, target, quote.grant),
            self.timeout_seconds,
        )
        if not applied:
            logger.info("User %s is no longer on %s tier; proration skipped", user_id, from_tier)
            return ProrationOutcome(applied=False, from_tier=from_tier, to_tier=target.tier, grant=0)

        if quote.full_allowance_fallback:
            description = f"Tier change {from_tier} -> {target.tier}: full allowance {quote.grant} tokens (no billing period)"
        else:
            description = (
                f"Prorated {from_tier} -> {target.tier}: {quote.grant} tokens "
                f"for {quote.remaining_days}/{quote.total_period_days} days"
            )
        await record_transaction(
            self.db,
            user_id,
            tokens_added=quote.grant,
            transaction_type="subscription_grant",
            external_subscription_id=subscription_id,
            description=description,
        )

        account = await self.ledger.get_account(user_id)
        logger.info(
            "Prorated allocation for user %s: +%s tokens (%s -> %s), balance %s",
            user_id,
            quote.grant,
            from_tier,
            target.tier,
            account.balance,
        )
        return ProrationOutcome(
            applied=True,
            from_tier=from_tier,
            to_tier=target.tier,
            grant=quote.grant,
            balance=int(account.balance),
        )
