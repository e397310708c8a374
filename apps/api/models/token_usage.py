"""TokenUsage model: append-only record of each successful debit."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import CheckConstraint, Column, DateTime, Index, Integer, String
from sqlalchemy.sql import func

from database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenUsage(Base):
    """Immutable usage entry written in the same transaction as its debit."""

    __tablename__ = "token_usage"
    __table_args__ = (
        CheckConstraint("tokens_used > 0", name="ck_token_usage_tokens_positive"),
        Index("ix_token_usage_user_created", "user_id", "created_at"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, nullable=False, index=True)
    tokens_used = Column(Integer, nullable=False)
    action_type = Column(String, nullable=False)
    script_id = Column(String, nullable=True)
    mentor_id = Column(String, nullable=True)
    scene_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), index=True)
