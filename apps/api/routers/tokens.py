"""Token balance, feature gating and usage router."""

from __future__ import annotations

import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from routers.auth_scope import AuthContext, ensure_user_scope, get_auth_context
from routers.rate_limit import rate_limit
from services.allocation import AllocationManager
from services.errors import StoreUnavailable
from services.ledger import TokenLedger, UsageCorrelation
from services.pricing import ACTION_COSTS, TIER_ALLOWANCES, get_action_cost
from services.usage_stats import get_recent_activity, get_usage_stats

router = APIRouter()
logger = logging.getLogger(__name__)

ActionType = Literal[
    "single_feedback",
    "blended_feedback",
    "chunked_feedback",
    "rewrite_suggestions",
    "writer_agent",
]


class ValidateRequest(BaseModel):
    user_id: Optional[str] = None
    action_type: ActionType


class ConsumeRequest(BaseModel):
    user_id: Optional[str] = None
    action_type: ActionType
    script_id: Optional[str] = Field(default=None, max_length=128)
    mentor_id: Optional[str] = Field(default=None, max_length=128)
    scene_id: Optional[str] = Field(default=None, max_length=128)


def store_error_to_http(exc: StoreUnavailable) -> HTTPException:
    detail = {"error": "store_unavailable", "operation": exc.operation, "outcome_unknown": exc.outcome_unknown}
    return HTTPException(status_code=503, detail=detail)


@router.get("/balance")
async def token_balance(
    user_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, user_id)
    try:
        account = await TokenLedger(db).get_account(scoped_user_id)
    except StoreUnavailable as exc:
        raise store_error_to_http(exc) from exc
    return {
        "user_id": scoped_user_id,
        "balance": account.balance,
        "monthly_allowance": account.monthly_allowance,
        "tier": account.tier,
        "last_reset_date": account.last_reset_date.isoformat() if account.last_reset_date else None,
        "action_costs": ACTION_COSTS,
        "tier_allowances": TIER_ALLOWANCES,
    }


@router.post("/validate")
async def validate_tokens(
    request: ValidateRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Advisory pre-flight check; /consume re-checks atomically."""
    scoped_user_id = ensure_user_scope(auth.user_id, request.user_id)
    try:
        check = await TokenLedger(db).validate_balance(scoped_user_id, get_action_cost(request.action_type))
    except StoreUnavailable as exc:
        raise store_error_to_http(exc) from exc
    return {
        "sufficient": check.sufficient,
        "current_balance": check.current_balance,
        "required": check.required,
        "shortfall": check.shortfall,
        "tier": check.tier,
    }


@router.post("/consume")
async def consume_tokens(
    request: ConsumeRequest,
    _rate_limit: None = Depends(rate_limit("tokens_consume", limit=120, window_seconds=60)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, request.user_id)
    correlation = UsageCorrelation(
        script_id=request.script_id,
        mentor_id=request.mentor_id,
        scene_id=request.scene_id,
    )
    try:
        if settings.LAZY_MONTHLY_RESET:
            await AllocationManager(db).reset_if_due(scoped_user_id)
        outcome = await TokenLedger(db).check_and_debit(scoped_user_id, request.action_type, correlation)
    except StoreUnavailable as exc:
        raise store_error_to_http(exc) from exc

    if not outcome.allowed:
        raise HTTPException(
            status_code=402,
            detail={
                "allowed": False,
                "remaining_balance": outcome.remaining_balance,
                "cost": outcome.cost,
                "shortfall": outcome.shortfall,
                "action_type": outcome.action_type,
            },
        )
    return {
        "allowed": True,
        "remaining_balance": outcome.remaining_balance,
        "cost": outcome.cost,
        "action_type": outcome.action_type,
    }


@router.get("/usage")
async def usage_stats(
    user_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, user_id)
    try:
        stats = await get_usage_stats(db, scoped_user_id)
    except StoreUnavailable as exc:
        raise store_error_to_http(exc) from exc
    return {"user_id": scoped_user_id, **stats.as_dict()}


@router.get("/history")
async def token_history(
    user_id: Optional[str] = Query(default=None),
    limit: int = Query(default=30, ge=1, le=200),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, user_id)
    try:
        activity = await get_recent_activity(db, scoped_user_id, limit=limit)
    except StoreUnavailable as exc:
        raise store_error_to_http(exc) from exc
    return {"user_id": scoped_user_id, **activity}
