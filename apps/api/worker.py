"""RQ worker process entrypoint for billing events and transaction backfill."""

import logging

from rq import Worker

from config import settings
import models  # noqa: F401
from services.event_queue import BILLING_QUEUE_NAME, get_redis_connection


def main():
    logging.basicConfig(level=getattr(logging, str(settings.LOG_LEVEL).upper(), logging.INFO))
    redis_conn = get_redis_connection()
    worker = Worker([BILLING_QUEUE_NAME], connection=redis_conn)
    worker.work(with_scheduler=True)


if __name__ == "__main__":
    main()
