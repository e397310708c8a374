"""SubscriptionState model: last known provider subscription per customer."""

from sqlalchemy import Boolean, Column, DateTime, String
from sqlalchemy.sql import func

from database import Base


class SubscriptionState(Base):
    """Full-row snapshot keyed by the provider customer id (last write wins)."""

    __tablename__ = "subscription_states"

    customer_id = Column(String, primary_key=True)
    subscription_id = Column(String, nullable=True, index=True)
    price_id = Column(String, nullable=True)
    status = Column(String, nullable=False, default="not_started")
    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
