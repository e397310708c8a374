"""Run one monthly reset sweep; intended for cron."""

import asyncio
import json
import logging
import os
import sys

# Add parent dir to path to find the api modules
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import settings
from database import async_session_maker, engine
import models  # noqa: F401
from services.allocation import reset_all_due


async def run_monthly_reset_async() -> int:
    print("🔄 Running monthly token reset sweep...")
    try:
        summary = await reset_all_due(async_session_maker)
    finally:
        await engine.dispose()
    print(json.dumps(summary.as_dict(), indent=2))
    return 1 if summary.failed else 0


if __name__ == "__main__":
    logging.basicConfig(level=getattr(logging, str(settings.LOG_LEVEL).upper(), logging.INFO))
    sys.exit(asyncio.run(run_monthly_reset_async()))
