"""Administrative token operations, guarded by a shared API key."""

from __future__ import annotations

import logging
import secrets
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import settings
from database import get_db, get_session_maker
from routers.tokens import store_error_to_http
from services.allocation import reset_all_due
from services.errors import StoreUnavailable
from services.ledger import TokenLedger

router = APIRouter()
logger = logging.getLogger(__name__)


class AdminCreditRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=128)
    amount: int = Field(ge=1, le=1_000_000)
    transaction_type: Literal["bonus_grant", "admin_adjustment"] = "bonus_grant"
    description: Optional[str] = Field(default=None, max_length=500)


class ResetRunRequest(BaseModel):
    batch_size: Optional[int] = Field(default=None, ge=1, le=500)


async def require_admin_key(x_admin_key: Optional[str] = Header(default=None)) -> None:
    expected = (settings.ADMIN_API_KEY or "").strip()
    if not expected:
        raise HTTPException(status_code=503, detail="Admin API is disabled. Configure ADMIN_API_KEY.")
    if not x_admin_key or not secrets.compare_digest(x_admin_key, expected):
        raise HTTPException(status_code=403, detail="Invalid admin key.")


@router.post("/tokens/credit")
async def admin_credit(
    request: AdminCreditRequest,
    _admin: None = Depends(require_admin_key),
    db: AsyncSession = Depends(get_db),
):
    ledger = TokenLedger(db)
    try:
        credited = await ledger.credit(
            request.user_id,
            request.amount,
            request.transaction_type,
            description=request.description or f"{request.transaction_type}: {request.amount} tokens",
        )
        account = await ledger.get_account(request.user_id)
    except StoreUnavailable as exc:
        raise store_error_to_http(exc) from exc

    logger.info("Admin %s of %s tokens for user %s", request.transaction_type, request.amount, request.user_id)
    return {
        "ok": credited,
        "user_id": request.user_id,
        "tokens_added": request.amount,
        "balance": account.balance,
    }


@router.post("/resets/run")
async def run_monthly_resets(
    request: Optional[ResetRunRequest] = None,
    _admin: None = Depends(require_admin_key),
    session_maker: async_sessionmaker = Depends(get_session_maker),
):
    batch_size = request.batch_size if request else None
    try:
        summary = await reset_all_due(session_maker, batch_size=batch_size)
    except StoreUnavailable as exc:
        raise store_error_to_http(exc) from exc
    return summary.as_dict()
