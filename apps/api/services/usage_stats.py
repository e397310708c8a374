"""Usage statistics derived from the append-only usage log (read-only)."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.token_transaction import TokenTransaction
from models.token_usage import TokenUsage
from services.ledger import TokenLedger
from services.pricing import ACTION_COSTS
from services.store import as_utc, run_store_operation, utcnow


@dataclass(frozen=True)
class UsageStats:
    total_used: int
    usage_by_action: Dict[str, int] = field(default_factory=dict)
    daily_average: float = 0.0
    used_this_period: int = 0
    days_until_reset: int = 0
    projected_period_usage: int = 0
    monthly_allowance: int = 0
    will_exceed_allowance: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return {
            "total_used": self.total_used,
            "usage_by_action": dict(self.usage_by_action),
            "daily_average": self.daily_average,
            "used_this_period": self.used_this_period,
            "days_until_reset": self.days_until_reset,
            "projected_period_usage": self.projected_period_usage,
            "monthly_allowance": self.monthly_allowance,
            "will_exceed_allowance": self.will_exceed_allowance,
        }


def compute_usage_stats(
    records: Iterable[Any],
    *,
    monthly_allowance: int,
    last_reset_date: Optional[datetime],
    now: datetime,
    window_days: int,
    period_days: int,
) -> UsageStats:
    """Aggregate usage records over the trailing window.

    The projection extends the window's daily average over the days left in
    the current period and adds what has already been spent in it.
    """
    window_days = max(int(window_days), 1)
    now = as_utc(now)
    window_start = now - timedelta(days=window_days)
    period_start = as_utc(last_reset_date) or window_start

    usage_by_action = {action: 0 for action in ACTION_COSTS}
    total_used = 0
    used_this_period = 0
    for record in records:
        created_at = as_utc(record.created_at) or now
        if created_at < window_start:
            continue
        total_used += int(record.tokens_used)
        usage_by_action[record.action_type] = usage_by_action.get(record.action_type, 0) + int(record.tokens_used)
        if created_at >= period_start:
            used_this_period += int(record.tokens_used)

    daily_average = round(total_used / window_days, 2)
    next_reset = period_start + timedelta(days=int(period_days))
    days_until_reset = max((next_reset - now).days, 0)
    projected = used_this_period + round(daily_average * days_until_reset)
    return UsageStats(
        total_used=total_used,
        usage_by_action=usage_by_action,
        daily_average=daily_average,
        used_this_period=used_this_period,
        days_until_reset=days_until_reset,
        projected_period_usage=projected,
        monthly_allowance=int(monthly_allowance),
        will_exceed_allowance=projected > int(monthly_allowance),
    )


async def _load_usage_since(db: AsyncSession, user_id: str, since: datetime) -> List[TokenUsage]:
    result = await db.execute(
        select(TokenUsage)
        .where(TokenUsage.user_id == user_id, TokenUsage.created_at >= since)
        .order_by(TokenUsage.created_at.asc())
    )
    return list(result.scalars().all())


async def get_usage_stats(db: AsyncSession, user_id: str, now: Optional[datetime] = None) -> UsageStats:
    now = now or utcnow()
    window_days = int(settings.USAGE_WINDOW_DAYS)
    account = await TokenLedger(db).get_account(user_id)
    records = await run_store_operation(
        db, "load_usage", _load_usage_since(db, user_id, now - timedelta(days=window_days))
    )
    return compute_usage_stats(
        records,
        monthly_allowance=account.monthly_allowance,
        last_reset_date=account.last_reset_date,
        now=now,
        window_days=window_days,
        period_days=settings.BILLING_PERIOD_DAYS,
    )


async def _load_recent_activity(db: AsyncSession, user_id: str, limit: int) -> Dict[str, List[Dict[str, Any]]]:
    usage_rows = await db.execute(
        select(TokenUsage)
        .where(TokenUsage.user_id == user_id)
        .order_by(TokenUsage.created_at.desc())
        .limit(limit)
    )
    transaction_rows = await db.execute(
        select(TokenTransaction)
        .where(TokenTransaction.user_id == user_id)
        .order_by(TokenTransaction.created_at.desc())
        .limit(limit)
    )
    return {
        "usage": [
            {
                "id": row.id,
                "tokens_used": row.tokens_used,
                "action_type": row.action_type,
                "script_id": row.script_id,
                "mentor_id": row.mentor_id,
                "scene_id": row.scene_id,
                "created_at": row.created_at.isoformat() if row.created_at else None,
            }
            for row in usage_rows.scalars().all()
        ],
        "transactions": [
            {
                "id": row.id,
                "tokens_added": row.tokens_added,
                "transaction_type": row.transaction_type,
                "external_payment_id": row.external_payment_id,
                "external_subscription_id": row.external_subscription_id,
                "description": row.description,
                "created_at": row.created_at.isoformat() if row.created_at else None,
            }
            for row in transaction_rows.scalars().all()
        ],
    }


async def get_recent_activity(db: AsyncSession, user_id: str, limit: int = 30) -> Dict[str, List[Dict[str, Any]]]:
    """Most recent usage records and transactions, newest first."""
    return await run_store_operation(db, "recent_activity", _load_recent_activity(db, user_id, max(int(limit), 1)))
