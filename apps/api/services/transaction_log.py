"""Best-effort transaction audit rows with queued backfill."""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from database import async_session_maker
from models.token_transaction import TokenTransaction
from services.event_queue import enqueue_transaction_backfill
from services.store import rollback_quietly

logger = logging.getLogger(__name__)


def build_transaction_payload(
    user_id: str,
    *,
    tokens_added: int,
    transaction_type: str,
    external_payment_id: Optional[str] = None,
    external_subscription_id: Optional[str] = None,
    description: Optional[str] = None,
) -> Dict[str, Any]:
    return {
        "id": str(uuid.uuid4()),
        "user_id": user_id,
        "tokens_added": int(tokens_added),
        "transaction_type": transaction_type,
        "external_payment_id": external_payment_id,
        "external_subscription_id": external_subscription_id,
        "description": description,
    }


def _schedule_backfill(payload: Dict[str, Any]) -> bool:
    try:
        enqueue_transaction_backfill(payload)
        return True
    except Exception as exc:
        logger.error(
            "Transaction backfill for %s could not be queued (%s); payload=%s",
            payload["id"],
            exc,
            payload,
        )
        return False


async def record_transaction(db: AsyncSession, user_id: str, **fields: Any) -> bool:
    """Write one transaction row after its balance change has committed.

    A failed write never undoes the balance change; the row is queued for
    backfill instead. Returns True when the row was written inline.
    """
    payload = build_transaction_payload(user_id, **fields)
    try:
        db.add(TokenTransaction(**payload))
        await db.commit()
        return True
    except SQLAlchemyError as exc:
        await rollback_quietly(db)
        logger.warning(
            "Could not write %s transaction for user %s, scheduling backfill: %s",
            payload["transaction_type"],
            user_id,
            exc,
        )
        _schedule_backfill(payload)
        return False


async def backfill_transaction_async(payload: Dict[str, Any]) -> bool:
    """Insert a queued transaction row; a duplicate id means it already landed."""
    async with async_session_maker() as db:
        db.add(TokenTransaction(**payload))
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            logger.info("Transaction %s already present, backfill skipped", payload["id"])
            return False
    logger.info("Backfilled %s transaction %s for user %s", payload["transaction_type"], payload["id"], payload["user_id"])
    return True


def backfill_transaction_job(payload: Dict[str, Any]) -> None:
    """RQ worker entrypoint for transaction backfill jobs."""
    asyncio.run(backfill_transaction_async(payload))
