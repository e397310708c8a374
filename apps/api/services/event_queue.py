"""Durable billing job queue helpers (Redis/RQ)."""

from __future__ import annotations

from typing import Any, Dict

from redis import Redis
from rq import Queue, Retry
from rq.job import Job

from config import settings


BILLING_QUEUE_NAME = "billing_events"


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def get_billing_queue() -> Queue:
    """Return the configured billing queue."""
    return Queue(
        name=BILLING_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=300,
    )


def enqueue_billing_event(event: Dict[str, Any]) -> Job:
    """Enqueue a verified provider event; handlers are idempotent so retries are safe."""
    queue = get_billing_queue()
    event_id = str(event.get("id") or "unknown")
    return queue.enqueue(
        "services.billing_reconciler.process_billing_event_job",
        event,
        job_id=f"billing_event:{event_id}",
        retry=Retry(max=5, interval=[10, 30, 120, 600, 1800]),
        job_timeout=300,
        result_ttl=86400,
        failure_ttl=7 * 86400,
    )


def enqueue_transaction_backfill(payload: Dict[str, Any]) -> Job:
    """Enqueue a missing transaction row for later insertion."""
    queue = get_billing_queue()
    return queue.enqueue(
        "services.transaction_log.backfill_transaction_job",
        payload,
        job_id=f"transaction_backfill:{payload['id']}",
        retry=Retry(max=10, interval=[30, 120, 600, 1800, 3600]),
        job_timeout=120,
        result_ttl=86400,
        failure_ttl=30 * 86400,
    )
