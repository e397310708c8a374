"""Fixed token cost and tier allowance tables, and price id resolution."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from config import settings
from services.errors import InvalidActionType, InvalidTransactionType, UnknownPriceMapping

logger = logging.getLogger(__name__)


ACTION_COSTS: Dict[str, int] = {
    "single_feedback": 5,
    "blended_feedback": 15,
    "chunked_feedback": 25,
    "rewrite_suggestions": 10,
    "writer_agent": 8,
}

TIER_ALLOWANCES: Dict[str, int] = {
    "free": 50,
    "creator": 500,
    "pro": 1500,
}

TRANSACTION_TYPES = (
    "subscription_grant",
    "monthly_reset",
    "one_time_purchase",
    "bonus_grant",
    "admin_adjustment",
)

DEFAULT_TIER = "free"

# Subscription statuses that keep a paid tier.
ENTITLED_SUBSCRIPTION_STATUSES = frozenset({"active", "trialing", "past_due"})


@dataclass(frozen=True)
class TierAllocation:
    tier: str
    allowance: int


def get_action_cost(action_type: str) -> int:
    """Return the fixed token cost for a billable action."""
    try:
        return ACTION_COSTS[action_type]
    except KeyError:
        raise InvalidActionType(action_type) from None


def ensure_transaction_type(transaction_type: str) -> str:
    if transaction_type not in TRANSACTION_TYPES:
        raise InvalidTransactionType(transaction_type)
    return transaction_type


def tier_allocation(tier: str) -> TierAllocation:
    return TierAllocation(tier=tier, allowance=TIER_ALLOWANCES[tier])


def resolve_price(price_id: Optional[str]) -> TierAllocation:
    """Map a provider price id to a tier, raising when it is not configured."""
    tier = settings.STRIPE_PRICE_TIERS.get(price_id or "")
    if tier not in TIER_ALLOWANCES:
        raise UnknownPriceMapping(price_id)
    return tier_allocation(tier)


def resolve_price_or_default(price_id: Optional[str]) -> TierAllocation:
    """Like ``resolve_price`` but degrades unknown prices to the free tier."""
    try:
        return resolve_price(price_id)
    except UnknownPriceMapping as exc:
        logger.warning("%s - defaulting to %s tier", exc, DEFAULT_TIER)
        return tier_allocation(DEFAULT_TIER)


def token_package_size(price_id: Optional[str]) -> Optional[int]:
    """Tokens granted by a one-time package price, or None when unknown."""
    tokens = settings.TOKEN_PACKAGE_PRICES.get(price_id or "")
    if tokens is None or int(tokens) <= 0:
        return None
    return int(tokens)
