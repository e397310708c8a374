"""
Script Mentor Token Ledger - FastAPI Backend
Token balances, feature gating and billing reconciliation.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import settings, validate_security_settings
from database import Base, async_session_maker, engine
import models  # noqa: F401
from routers import admin, billing, health, tokens
from services.allocation import reset_all_due

logging.basicConfig(
    level=getattr(logging, str(settings.LOG_LEVEL).upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


async def _periodic_monthly_reset() -> None:
    interval_minutes = max(int(settings.MONTHLY_RESET_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            summary = await reset_all_due(async_session_maker)
            if summary.total:
                print(
                    f"🔄 Monthly reset tick: succeeded={summary.succeeded} "
                    f"skipped={summary.skipped} failed={summary.failed}"
                )
        except Exception as exc:
            print(f"⚠️ Monthly reset tick failed: {exc}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Script Mentor Token Ledger API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    reset_task = None
    if int(settings.MONTHLY_RESET_INTERVAL_MINUTES) > 0:
        reset_task = asyncio.create_task(_periodic_monthly_reset())
        print(
            "📅 Monthly reset loop enabled "
            f"(every {int(settings.MONTHLY_RESET_INTERVAL_MINUTES)} min)."
        )
    yield
    # Shutdown
    if reset_task is not None:
        reset_task.cancel()
        try:
            await reset_task
        except asyncio.CancelledError:
            pass
    print("👋 Shutting down API...")


app = FastAPI(
    title="Script Mentor Token Ledger API",
    description="Token balances, feature gating and subscription billing reconciliation",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(tokens.router, prefix="/tokens", tags=["Tokens"])
app.include_router(billing.router, prefix="/billing", tags=["Billing"])
app.include_router(admin.router, prefix="/admin", tags=["Admin"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Script Mentor Token Ledger API",
        "version": "0.1.0",
        "status": "running"
    }
