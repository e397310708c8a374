"""TokenPurchase model for one-time token package checkouts."""

import uuid

from sqlalchemy import Column, DateTime, Integer, String
from sqlalchemy.sql import func

from database import Base


class TokenPurchase(Base):
    """Paid checkout session; the unique session id makes the credit replay-safe."""

    __tablename__ = "token_purchases"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    checkout_session_id = Column(String, unique=True, nullable=False, index=True)
    payment_intent_id = Column(String, nullable=True)
    customer_id = Column(String, nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)
    price_id = Column(String, nullable=True)
    tokens_purchased = Column(Integer, nullable=False)
    amount_total = Column(Integer, nullable=True)
    currency = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
