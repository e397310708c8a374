"""User <-> billing customer identity mapping."""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.billing_customer import BillingCustomer

logger = logging.getLogger(__name__)


async def lookup_user_id(db: AsyncSession, customer_id: Optional[str]) -> Optional[str]:
    if not customer_id:
        return None
    result = await db.execute(select(BillingCustomer.user_id).where(BillingCustomer.customer_id == customer_id))
    return result.scalar_one_or_none()


async def get_customer_id(db: AsyncSession, user_id: str) -> Optional[str]:
    result = await db.execute(select(BillingCustomer.customer_id).where(BillingCustomer.user_id == user_id))
    return result.scalar_one_or_none()


async def link_customer(db: AsyncSession, user_id: str, customer_id: str) -> str:
    """Persist the mapping, returning whichever customer id won a concurrent race."""
    db.add(BillingCustomer(user_id=user_id, customer_id=customer_id))
    try:
        await db.commit()
        logger.info("Linked billing customer %s to user %s", customer_id, user_id)
        return customer_id
    except IntegrityError:
        await db.rollback()
        existing = await get_customer_id(db, user_id)
        if existing is None:
            raise
        return existing


async def get_or_create_customer(db: AsyncSession, provider, user_id: str, email: Optional[str] = None) -> str:
    existing = await get_customer_id(db, user_id)
    if existing:
        return existing
    customer_id = await provider.create_customer(user_id, email)
    return await link_customer(db, user_id, customer_id)
