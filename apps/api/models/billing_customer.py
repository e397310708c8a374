"""BillingCustomer model mapping users to billing provider customers."""

from sqlalchemy import Column, DateTime, String
from sqlalchemy.sql import func

from database import Base


class BillingCustomer(Base):
    __tablename__ = "billing_customers"

    user_id = Column(String, primary_key=True)
    customer_id = Column(String, unique=True, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
