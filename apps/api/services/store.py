"""Helpers shared by every service that touches the token tables."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Optional, TypeVar

from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from services.errors import StoreTimeout, StoreUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on round-trip)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


async def rollback_quietly(db: AsyncSession) -> None:
    try:
        await db.rollback()
    except SQLAlchemyError as exc:
        logger.warning("Rollback after store failure also failed: %s", exc)


async def run_store_operation(
    db: AsyncSession,
    operation: str,
    work: Awaitable[T],
    timeout_seconds: Optional[float] = None,
) -> T:
    """Await ``work`` under a time bound, mapping driver failures to StoreUnavailable."""
    timeout = settings.STORE_TIMEOUT_SECONDS if timeout_seconds is None else timeout_seconds
    try:
        return await asyncio.wait_for(work, timeout=timeout)
    except asyncio.TimeoutError as exc:
        await rollback_quietly(db)
        logger.error("Store operation %s timed out after %ss", operation, timeout)
        raise StoreTimeout(operation, timeout) from exc
    except DBAPIError as exc:
        await rollback_quietly(db)
        logger.error("Store operation %s failed: %s", operation, exc)
        raise StoreUnavailable(operation) from exc
