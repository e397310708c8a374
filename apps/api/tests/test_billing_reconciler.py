import itertools
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from config import settings
from models.subscription_state import SubscriptionState
from models.token_purchase import TokenPurchase
from models.token_transaction import TokenTransaction
from services.billing_provider import SubscriptionSnapshot
from services.allocation import AllocationManager
from services.billing_reconciler import BillingReconciler
from services.errors import StoreUnavailable
from services.ledger import TokenLedger
from services.store import as_utc, utcnow


CREATOR_PRICE = "price_1RalzkEOpk1Bj1eeIqTOsYNq"
PRO_PRICE = "price_1Ram1AEOpk1Bj1ee2sRTCp8b"
NOW = utcnow().replace(microsecond=0)

_event_ids = itertools.count(1)


def _event(event_type, obj):
    return {"id": f"evt_test_{next(_event_ids)}", "type": event_type, "data": {"object": obj}}


def _snapshot(customer_id, *, price_id=PRO_PRICE, status="active", subscription_id="sub_1", started_days_ago=15, period_days=30):
    start = NOW - timedelta(days=started_days_ago)
    return SubscriptionSnapshot(
        customer_id=customer_id,
        subscription_id=subscription_id,
        price_id=price_id,
        status=status,
        current_period_start=start,
        current_period_end=start + timedelta(days=period_days),
    )


async def _state(session_maker, customer_id):
    async with session_maker() as db:
        return await db.get(SubscriptionState, customer_id)


async def _count_transactions(session_maker, user_id, transaction_type):
    async with session_maker() as db:
        result = await db.execute(
            select(func.count())
            .select_from(TokenTransaction)
            .where(TokenTransaction.user_id == user_id, TokenTransaction.transaction_type == transaction_type)
        )
        return result.scalar_one()


async def _seed_state(
    session_maker,
    customer_id,
    *,
    subscription_id="sub_1",
    status="active",
    price_id=PRO_PRICE,
    started_days_ago=5,
    period_days=30,
):
    start = NOW - timedelta(days=started_days_ago)
    async with session_maker() as db:
        db.add(
            SubscriptionState(
                customer_id=customer_id,
                subscription_id=subscription_id,
                price_id=price_id,
                status=status,
                current_period_start=start,
                current_period_end=start + timedelta(days=period_days),
            )
        )
        await db.commit()


@pytest.mark.asyncio
async def test_subscription_deleted_reverts_to_free(session_maker, billing_provider, seed_account, load_account):
    await seed_account("pro-writer", balance=300, tier="pro", customer_id="cus_pro")
    await _seed_state(session_maker, "cus_pro")
    reconciler = BillingReconciler(session_maker, billing_provider)
    deleted = _event("customer.subscription.deleted", {"id": "sub_1", "customer": "cus_pro", "status": "canceled"})

    result = await reconciler.handle_event(deleted, now=NOW)

    assert result.outcome == "revoked"
    account = await load_account("pro-writer")
    assert (account.tier, account.balance, account.monthly_allowance) == ("free", 50, 50)
    assert (await _state(session_maker, "cus_pro")).status == "canceled"

    async with session_maker() as db:
        await TokenLedger(db).debit("pro-writer", 5, "single_feedback")
    replay = await reconciler.handle_event(deleted, now=NOW)

    assert replay.outcome == "duplicate"
    assert (await load_account("pro-writer")).balance == 45
    assert billing_provider.fetch_calls == []


@pytest.mark.asyncio
async def test_replayed_subscription_update_grants_once(session_maker, billing_provider, seed_account, load_account):
    await seed_account("upgrader", balance=200, tier="creator", customer_id="cus_up")
    billing_provider.snapshots["cus_up"] = _snapshot("cus_up", price_id=PRO_PRICE)
    reconciler = BillingReconciler(session_maker, billing_provider)
    updated = _event("customer.subscription.updated", {"id": "sub_1", "customer": "cus_up"})

    first = await reconciler.handle_event(updated, now=NOW)
    first_state = await _state(session_maker, "cus_up")
    outcomes = [(await reconciler.handle_event(updated, now=NOW)).outcome for _ in range(4)]

    assert first.outcome == "prorated"
    assert outcomes == ["synced"] * 4
    account = await load_account("upgrader")
    assert (account.tier, account.balance) == ("pro", 950)
    assert await _count_transactions(session_maker, "upgrader", "subscription_grant") == 1

    state = await _state(session_maker, "cus_up")
    assert (state.subscription_id, state.price_id, state.status) == ("sub_1", PRO_PRICE, "active")
    assert as_utc(state.current_period_start) == as_utc(first_state.current_period_start)
    assert as_utc(state.current_period_end) == NOW + timedelta(days=15)


@pytest.mark.asyncio
async def test_event_payload_is_not_trusted(session_maker, billing_provider, seed_account, load_account):
    await seed_account("payload-writer", balance=20, tier="free", customer_id="cus_payload")
    billing_provider.snapshots["cus_payload"] = _snapshot("cus_payload", price_id=CREATOR_PRICE)
    stale_payload = {
        "id": "sub_1",
        "customer": "cus_payload",
        "items": {"data": [{"price": {"id": PRO_PRICE}}]},
    }

    await BillingReconciler(session_maker, billing_provider).handle_event(
        _event("customer.subscription.created", stale_payload), now=NOW
    )

    assert (await load_account("payload-writer")).tier == "creator"
    assert billing_provider.fetch_calls == ["cus_payload"]


@pytest.mark.asyncio
async def test_missing_identity_mapping_drops_event(session_maker, billing_provider):
    billing_provider.snapshots["cus_orphan"] = _snapshot("cus_orphan")

    result = await BillingReconciler(session_maker, billing_provider).handle_event(
        _event("customer.subscription.updated", {"id": "sub_1", "customer": "cus_orphan"}), now=NOW
    )

    assert result.outcome == "dropped"
    assert "cus_orphan" in result.detail
    assert billing_provider.fetch_calls == []
    assert await _state(session_maker, "cus_orphan") is None


@pytest.mark.asyncio
async def test_unknown_price_degrades_to_free(session_maker, billing_provider, seed_account, load_account):
    await seed_account("mystery-price", balance=120, tier="creator", customer_id="cus_mystery")
    billing_provider.snapshots["cus_mystery"] = _snapshot("cus_mystery", price_id="price_not_configured")

    result = await BillingReconciler(session_maker, billing_provider).handle_event(
        _event("customer.subscription.updated", {"id": "sub_1", "customer": "cus_mystery"}), now=NOW
    )

    assert result.outcome == "prorated"
    account = await load_account("mystery-price")
    assert account.tier == "free"
    assert account.monthly_allowance == 50
    assert account.balance == 120 + 25


@pytest.mark.asyncio
async def test_update_without_tier_change_keeps_balance(session_maker, billing_provider, seed_account, load_account):
    await seed_account("steady-pro", balance=10, tier="pro", customer_id="cus_steady")
    billing_provider.snapshots["cus_steady"] = _snapshot("cus_steady", price_id=PRO_PRICE)

    result = await BillingReconciler(session_maker, billing_provider).handle_event(
        _event("customer.subscription.updated", {"id": "sub_1", "customer": "cus_steady"}), now=NOW
    )

    assert result.outcome == "synced"
    assert (await load_account("steady-pro")).balance == 10


@pytest.mark.asyncio
async def test_renewal_invoice_refills_once_per_period(session_maker, billing_provider, seed_account, load_account):
    await seed_account("renewing-pro", balance=10, tier="pro", reset_days_ago=40, customer_id="cus_renew")
    reconciler = BillingReconciler(session_maker, billing_provider)
    billing_provider.snapshots["cus_renew"] = _snapshot("cus_renew", started_days_ago=31)
    await reconciler.handle_event(_event("customer.subscription.updated", {"id": "sub_1", "customer": "cus_renew"}), now=NOW)

    billing_provider.snapshots["cus_renew"] = _snapshot("cus_renew", started_days_ago=1)
    invoice = _event(
        "invoice.payment_succeeded",
        {"id": "in_1", "customer": "cus_renew", "subscription": "sub_1", "billing_reason": "subscription_cycle"},
    )
    renewed = await reconciler.handle_event(invoice, now=NOW)

    assert renewed.outcome == "renewed"
    assert (await load_account("renewing-pro")).balance == 1500

    async with session_maker() as db:
        await TokenLedger(db).debit("renewing-pro", 25, "chunked_feedback")
    replay = await reconciler.handle_event(invoice, now=NOW)

    assert replay.outcome == "synced"
    assert (await load_account("renewing-pro")).balance == 1475
    assert await _count_transactions(session_maker, "renewing-pro", "monthly_reset") == 1


def _renewal_invoice(customer_id, invoice_id="in_cycle"):
    return _event(
        "invoice.payment_succeeded",
        {"id": invoice_id, "customer": customer_id, "subscription": "sub_1", "billing_reason": "subscription_cycle"},
    )


@pytest.mark.asyncio
async def test_failed_renewal_refill_is_retried(session_maker, billing_provider, seed_account, load_account, monkeypatch):
    await seed_account("retry-pro", balance=10, tier="pro", reset_days_ago=40, customer_id="cus_retry")
    await _seed_state(session_maker, "cus_retry", started_days_ago=35)
    billing_provider.snapshots["cus_retry"] = _snapshot("cus_retry", started_days_ago=5)
    original = AllocationManager.reset_for_tier
    failures = []

    async def _fail_once(self, *args, **kwargs):
        if not failures:
            failures.append(args[0])
            raise StoreUnavailable("reset_for_tier")
        return await original(self, *args, **kwargs)

    monkeypatch.setattr(AllocationManager, "reset_for_tier", _fail_once)
    reconciler = BillingReconciler(session_maker, billing_provider)
    invoice = _renewal_invoice("cus_retry")

    with pytest.raises(StoreUnavailable):
        await reconciler.handle_event(invoice, now=NOW)

    assert failures == ["retry-pro"]
    assert (await load_account("retry-pro")).balance == 10
    assert as_utc((await _state(session_maker, "cus_retry")).current_period_start) == NOW - timedelta(days=35)

    retried = await reconciler.handle_event(invoice, now=NOW)
    replayed = await reconciler.handle_event(invoice, now=NOW)

    assert (retried.outcome, replayed.outcome) == ("renewed", "synced")
    assert (await load_account("retry-pro")).balance == 1500
    assert await _count_transactions(session_maker, "retry-pro", "monthly_reset") == 1
    assert as_utc((await _state(session_maker, "cus_retry")).current_period_start) == NOW - timedelta(days=5)


@pytest.mark.asyncio
async def test_long_billing_periods_refill_once_each(session_maker, billing_provider, seed_account, load_account):
    await seed_account("long-period-pro", balance=10, tier="pro", reset_days_ago=70, customer_id="cus_long")
    await _seed_state(session_maker, "cus_long", started_days_ago=93, period_days=31)
    reconciler = BillingReconciler(session_maker, billing_provider)
    first_period_start = NOW - timedelta(days=62)

    billing_provider.snapshots["cus_long"] = _snapshot("cus_long", started_days_ago=62, period_days=31)
    first = await reconciler.handle_event(_renewal_invoice("cus_long", "in_p1"), now=first_period_start + timedelta(hours=1))
    async with session_maker() as db:
        early = await AllocationManager(db).reset_if_due("long-period-pro", now=first_period_start + timedelta(days=30, hours=2))

    billing_provider.snapshots["cus_long"] = _snapshot("cus_long", started_days_ago=31, period_days=31)
    second = await reconciler.handle_event(_renewal_invoice("cus_long", "in_p2"), now=first_period_start + timedelta(days=31, hours=1))
    async with session_maker() as db:
        late = await AllocationManager(db).reset_if_due("long-period-pro", now=first_period_start + timedelta(days=61, hours=2))

    assert (first.outcome, second.outcome) == ("renewed", "renewed")
    assert (early, late) == (False, False)
    assert await _count_transactions(session_maker, "long-period-pro", "monthly_reset") == 2
    account = await load_account("long-period-pro")
    assert (account.tier, account.balance) == ("pro", 1500)


@pytest.mark.asyncio
async def test_non_cycle_invoice_is_ignored(session_maker, billing_provider, seed_account):
    await seed_account("manual-invoice", customer_id="cus_manual")

    result = await BillingReconciler(session_maker, billing_provider).handle_event(
        _event("invoice.payment_succeeded", {"id": "in_2", "customer": "cus_manual", "billing_reason": "manual"}),
        now=NOW,
    )

    assert result.outcome == "ignored"
    assert billing_provider.fetch_calls == []


@pytest.mark.asyncio
async def test_lapsed_subscription_is_revoked(session_maker, billing_provider, seed_account, load_account):
    await seed_account("unpaid-pro", balance=900, tier="pro", customer_id="cus_unpaid")
    billing_provider.snapshots["cus_unpaid"] = _snapshot("cus_unpaid", status="unpaid")

    result = await BillingReconciler(session_maker, billing_provider).handle_event(
        _event("customer.subscription.updated", {"id": "sub_1", "customer": "cus_unpaid"}), now=NOW
    )

    assert result.outcome == "revoked"
    account = await load_account("unpaid-pro")
    assert (account.tier, account.balance) == ("free", 50)
    assert (await _state(session_maker, "cus_unpaid")).status == "unpaid"


@pytest.mark.asyncio
async def test_past_due_keeps_tier(session_maker, billing_provider, seed_account, load_account):
    await seed_account("late-pro", balance=900, tier="pro", customer_id="cus_late")
    billing_provider.snapshots["cus_late"] = _snapshot("cus_late", status="past_due")

    result = await BillingReconciler(session_maker, billing_provider).handle_event(
        _event("customer.subscription.updated", {"id": "sub_1", "customer": "cus_late"}), now=NOW
    )

    assert result.outcome == "synced"
    assert (await load_account("late-pro")).tier == "pro"


@pytest.mark.asyncio
async def test_customer_without_subscription_is_not_started(session_maker, billing_provider, seed_account, load_account):
    await seed_account("no-sub", balance=333, tier="creator", customer_id="cus_nosub")

    result = await BillingReconciler(session_maker, billing_provider).handle_event(
        _event("checkout.session.completed", {"id": "cs_1", "customer": "cus_nosub", "mode": "subscription"}),
        now=NOW,
    )

    assert result.outcome == "revoked"
    state = await _state(session_maker, "cus_nosub")
    assert state.status == "not_started"
    assert state.subscription_id is None
    assert (await load_account("no-sub")).tier == "free"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "order",
    list(itertools.permutations(["customer.subscription.created", "customer.subscription.updated", "customer.subscription.deleted"])),
)
async def test_any_delivery_order_converges(session_maker, billing_provider, seed_account, load_account, order):
    suffix = "-".join(name.rsplit(".", 1)[-1] for name in order)
    user_id, customer_id = f"ordered-{suffix}", f"cus_{suffix}"
    await seed_account(user_id, balance=300, tier="pro", customer_id=customer_id)
    await _seed_state(session_maker, customer_id)
    billing_provider.snapshots[customer_id] = _snapshot(customer_id, status="canceled")
    reconciler = BillingReconciler(session_maker, billing_provider)

    for event_type in order:
        await reconciler.handle_event(_event(event_type, {"id": "sub_1", "customer": customer_id}), now=NOW)

    account = await load_account(user_id)
    assert (account.tier, account.balance) == ("free", 50)
    assert (await _state(session_maker, customer_id)).status == "canceled"


@pytest.mark.asyncio
async def test_deletion_of_superseded_subscription_resyncs(session_maker, billing_provider, seed_account, load_account):
    await seed_account("resubscriber", balance=1400, tier="pro", customer_id="cus_resub")
    await _seed_state(session_maker, "cus_resub", subscription_id="sub_new")
    billing_provider.snapshots["cus_resub"] = _snapshot("cus_resub", subscription_id="sub_new")

    result = await BillingReconciler(session_maker, billing_provider).handle_event(
        _event("customer.subscription.deleted", {"id": "sub_old", "customer": "cus_resub"}), now=NOW
    )

    assert result.outcome == "synced"
    account = await load_account("resubscriber")
    assert (account.tier, account.balance) == ("pro", 1400)


@pytest.mark.asyncio
async def test_one_time_purchase_credits_once(session_maker, billing_provider, seed_account, load_account, monkeypatch):
    monkeypatch.setattr(settings, "TOKEN_PACKAGE_PRICES", {"price_pack_100": 100})
    await seed_account("pack-buyer", balance=50, customer_id="cus_pack")
    session = {
        "id": "cs_pack_1",
        "customer": "cus_pack",
        "mode": "payment",
        "payment_status": "paid",
        "payment_intent": "pi_pack_1",
        "amount_total": 999,
        "currency": "usd",
        "metadata": {"price_id": "price_pack_100", "user_id": "pack-buyer"},
    }
    reconciler = BillingReconciler(session_maker, billing_provider)

    first = await reconciler.handle_event(_event("checkout.session.completed", session), now=NOW)
    second = await reconciler.handle_event(_event("checkout.session.completed", session), now=NOW)

    assert (first.outcome, second.outcome) == ("purchased", "duplicate")
    assert (await load_account("pack-buyer")).balance == 150
    assert await _count_transactions(session_maker, "pack-buyer", "one_time_purchase") == 1
    async with session_maker() as db:
        purchase = (await db.execute(select(TokenPurchase).where(TokenPurchase.checkout_session_id == "cs_pack_1"))).scalar_one()
    assert purchase.tokens_purchased == 100
    assert purchase.payment_intent_id == "pi_pack_1"


@pytest.mark.asyncio
async def test_unpaid_or_unknown_package_is_ignored(session_maker, billing_provider, seed_account, load_account, monkeypatch):
    monkeypatch.setattr(settings, "TOKEN_PACKAGE_PRICES", {"price_pack_100": 100})
    await seed_account("window-shopper", balance=50, customer_id="cus_shop")
    reconciler = BillingReconciler(session_maker, billing_provider)
    base = {"customer": "cus_shop", "mode": "payment", "metadata": {"price_id": "price_pack_100"}}

    unpaid = await reconciler.handle_event(
        _event("checkout.session.completed", {**base, "id": "cs_unpaid", "payment_status": "unpaid"}), now=NOW
    )
    unknown = await reconciler.handle_event(
        _event(
            "checkout.session.completed",
            {**base, "id": "cs_unknown", "payment_status": "paid", "metadata": {"price_id": "price_other"}},
        ),
        now=NOW,
    )

    assert (unpaid.outcome, unknown.outcome) == ("ignored", "ignored")
    assert (await load_account("window-shopper")).balance == 50


@pytest.mark.asyncio
async def test_payment_failure_and_unknown_events_do_not_mutate(session_maker, billing_provider, seed_account, load_account):
    await seed_account("quiet-writer", balance=31, tier="creator", customer_id="cus_quiet")
    reconciler = BillingReconciler(session_maker, billing_provider)

    failed = await reconciler.handle_event(_event("invoice.payment_failed", {"id": "in_9", "customer": "cus_quiet"}), now=NOW)
    other = await reconciler.handle_event(_event("customer.updated", {"id": "cus_quiet"}), now=NOW)

    assert failed.outcome == "logged"
    assert other.outcome == "ignored"
    account = await load_account("quiet-writer")
    assert (account.tier, account.balance) == ("creator", 31)
    assert billing_provider.fetch_calls == []


@pytest.mark.asyncio
async def test_expanded_customer_object_is_resolved(session_maker, billing_provider, seed_account, load_account):
    await seed_account("expanded-writer", balance=20, customer_id="cus_expanded")
    billing_provider.snapshots["cus_expanded"] = _snapshot("cus_expanded", price_id=CREATOR_PRICE)

    result = await BillingReconciler(session_maker, billing_provider).handle_event(
        _event("customer.subscription.updated", {"id": "sub_1", "customer": {"id": "cus_expanded", "object": "customer"}}),
        now=NOW,
    )

    assert (result.outcome, result.user_id) == ("prorated", "expanded-writer")
    assert billing_provider.fetch_calls == ["cus_expanded"]
    assert (await load_account("expanded-writer")).tier == "creator"
