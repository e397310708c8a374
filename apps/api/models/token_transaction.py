"""TokenTransaction model: append-only credit and audit entries."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Integer, String
from sqlalchemy.sql import func

from database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenTransaction(Base):
    """Immutable credit/audit entry. ``tokens_added`` is 0 for audit-only rows."""

    __tablename__ = "token_transactions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, nullable=False, index=True)
    tokens_added = Column(Integer, nullable=False, default=0)
    transaction_type = Column(String, nullable=False)
    external_payment_id = Column(String, nullable=True, index=True)
    external_subscription_id = Column(String, nullable=True)
    description = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), index=True)
