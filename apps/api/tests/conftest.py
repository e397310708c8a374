from datetime import timedelta

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base, get_db, get_session_maker
from main import app
from models.billing_customer import BillingCustomer
from models.subscription_state import SubscriptionState
from models.token_account import TokenAccount
from routers import rate_limit
from services.billing_provider import StripeBillingProvider, get_billing_provider
from services.store import utcnow


TEST_WEBHOOK_SECRET = "whsec_test_ledger_secret"


class FakeBillingProvider(StripeBillingProvider):
    """Stripe provider with canned subscription snapshots and no network calls."""

    def __init__(self):
        super().__init__(api_key="sk_test_unused", webhook_secret=TEST_WEBHOOK_SECRET)
        self.snapshots = {}
        self.fetch_calls = []
        self.checkout_sessions = []

    async def fetch_latest_subscription(self, customer_id):
        self.fetch_calls.append(customer_id)
        return self.snapshots.get(customer_id)

    async def create_customer(self, user_id, email=None):
        return f"cus_{user_id}"

    async def create_checkout_session(self, user_id, customer_id, price_id, mode):
        session = {
            "id": f"cs_test_{len(self.checkout_sessions) + 1}",
            "url": f"https://checkout.stripe.test/{len(self.checkout_sessions) + 1}",
        }
        self.checkout_sessions.append({"user_id": user_id, "customer_id": customer_id, "price_id": price_id, "mode": mode})
        return session


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "token_ledger.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield maker
    await engine.dispose()


@pytest.fixture
def billing_provider():
    return FakeBillingProvider()


@pytest.fixture
def seed_account(session_maker):
    """Insert an account (and optionally a customer mapping) directly."""

    async def _seed(user_id, *, balance=50, tier="free", allowance=None, reset_days_ago=1, customer_id=None):
        allowances = {"free": 50, "creator": 500, "pro": 1500}
        async with session_maker() as db:
            db.add(
                TokenAccount(
                    user_id=user_id,
                    balance=balance,
                    monthly_allowance=allowances[tier] if allowance is None else allowance,
                    tier=tier,
                    last_reset_date=utcnow() - timedelta(days=reset_days_ago),
                )
            )
            if customer_id:
                db.add(BillingCustomer(user_id=user_id, customer_id=customer_id))
            await db.commit()

    return _seed


@pytest.fixture
def load_account(session_maker):
    async def _load(user_id):
        async with session_maker() as db:
            return await db.get(TokenAccount, user_id)

    return _load


@pytest_asyncio.fixture
async def api_client(session_maker, billing_provider):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_maker] = lambda: session_maker
    app.dependency_overrides[get_billing_provider] = lambda: billing_provider
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.pop(get_db, None)
    app.dependency_overrides.pop(get_session_maker, None)
    app.dependency_overrides.pop(get_billing_provider, None)


@pytest.fixture
def seed_subscription(session_maker):
    """Store a provider subscription snapshot for an already-linked customer."""

    async def _seed(customer_id, *, price_id, status="active", subscription_id="sub_seeded", period_start=None, period_end=None):
        async with session_maker() as db:
            db.add(
                SubscriptionState(
                    customer_id=customer_id,
                    subscription_id=subscription_id,
                    price_id=price_id,
                    status=status,
                    current_period_start=period_start,
                    current_period_end=period_end,
                )
            )
            await db.commit()

    return _seed
