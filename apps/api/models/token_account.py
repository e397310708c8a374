"""TokenAccount model: one consumable token balance per user."""

from datetime import datetime, timezone

from sqlalchemy import CheckConstraint, Column, DateTime, Integer, String
from sqlalchemy.sql import func

from database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenAccount(Base):
    """Per-user balance, allowance and tier.

    Every writer mutates this row through a single conditional UPDATE; nothing
    reads the balance, adjusts it in Python and writes it back.
    """

    __tablename__ = "token_accounts"
    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_token_accounts_balance_non_negative"),
        CheckConstraint("monthly_allowance >= 0", name="ck_token_accounts_allowance_non_negative"),
        CheckConstraint("tier IN ('free', 'creator', 'pro')", name="ck_token_accounts_tier"),
    )

    user_id = Column(String, primary_key=True)
    balance = Column(Integer, nullable=False, default=0)
    monthly_allowance = Column(Integer, nullable=False, default=0)
    tier = Column(String, nullable=False, default="free")
    last_reset_date = Column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
