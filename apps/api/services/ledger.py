"""Token ledger: balance reads, atomic debits and credits.

The only authorization to spend tokens is the conditional UPDATE inside
``debit``. ``validate_balance`` is advisory (UI pre-flight) and its result
must never be used as permission to mutate.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.token_account import TokenAccount
from models.token_usage import TokenUsage
from services.errors import InvalidActionType
from services.pricing import ACTION_COSTS, DEFAULT_TIER, TIER_ALLOWANCES, ensure_transaction_type, get_action_cost
from services.store import run_store_operation, utcnow
from services.transaction_log import record_transaction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UsageCorrelation:
    script_id: Optional[str] = None
    mentor_id: Optional[str] = None
    scene_id: Optional[str] = None


@dataclass(frozen=True)
class BalanceCheck:
    sufficient: bool
    current_balance: int
    required: int
    shortfall: int
    tier: str


@dataclass(frozen=True)
class DebitOutcome:
    allowed: bool
    remaining_balance: int
    cost: int
    action_type: str
    shortfall: int = 0


class TokenLedger:
    """Stateless ledger service bound to one database session."""

    def __init__(self, db: AsyncSession, *, timeout_seconds: Optional[float] = None):
        self.db = db
        self.timeout_seconds = timeout_seconds

    async def _run(self, operation: str, work):
        return await run_store_operation(self.db, operation, work, self.timeout_seconds)

    async def _load_account(self, user_id: str) -> Optional[TokenAccount]:
        result = await self.db.execute(
            select(TokenAccount)
            .where(TokenAccount.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _get_or_create_account(self, user_id: str) -> TokenAccount:
        account = await self._load_account(user_id)
        if account:
            return account

        allowance = TIER_ALLOWANCES[DEFAULT_TIER]
        self.db.add(
            TokenAccount(
                user_id=user_id,
                balance=allowance,
                monthly_allowance=allowance,
                tier=DEFAULT_TIER,
                last_reset_date=utcnow(),
            )
        )
        try:
            await self.db.commit()
            logger.info("Initialized token account for user %s (%s tier, %s tokens)", user_id, DEFAULT_TIER, allowance)
        except IntegrityError:
            # Another request created it first.
            await self.db.rollback()
        account = await self._load_account(user_id)
        if account is None:
            raise RuntimeError(f"Token account for user {user_id} vanished after initialization")
        return account

    async def get_account(self, user_id: str) -> TokenAccount:
        """Return the user's account, creating a free-tier one on first use."""
        return await self._run("get_account", self._get_or_create_account(user_id))

    async def validate_balance(self, user_id: str, cost: int) -> BalanceCheck:
        """Advisory balance check; never mutates state."""
        account = await self.get_account(user_id)
        required = max(int(cost), 0)
        shortfall = max(required - int(account.balance), 0)
        return BalanceCheck(
            sufficient=shortfall == 0,
            current_balance=int(account.balance),
            required=required,
            shortfall=shortfall,
            tier=account.tier,
        )

    async def _apply_debit(
        self,
        user_id: str,
        cost: int,
        action_type: str,
        correlation: UsageCorrelation,
    ) -> bool:
        result = await self.db.execute(
            update(TokenAccount)
            .where(TokenAccount.user_id == user_id, TokenAccount.balance >= cost)
            .values(balance=TokenAccount.balance - cost, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.rollback()
            return False

        self.db.add(
            TokenUsage(
                user_id=user_id,
                tokens_used=cost,
                action_type=action_type,
                script_id=correlation.script_id,
                mentor_id=correlation.mentor_id,
                scene_id=correlation.scene_id,
            )
        )
        await self.db.commit()
        return True

    async def debit(
        self,
        user_id: str,
        cost: int,
        action_type: str,
        correlation: Optional[UsageCorrelation] = None,
    ) -> bool:
        """Subtract ``cost`` if and only if the balance covers it.

        Returns False when the balance is insufficient. The balance check and
        the subtraction are one statement, so concurrent debits can never drive
        the balance negative. The usage record commits with the debit.
        """
        if action_type not in ACTION_COSTS:
            raise InvalidActionType(action_type)
        cost = int(cost)
        if cost <= 0:
            raise ValueError("Debit cost must be greater than 0")

        await self.get_account(user_id)
        return await self._run(
            "debit",
            self._apply_debit(user_id, cost, action_type, correlation or UsageCorrelation()),
        )

    async def check_and_debit(
        self,
        user_id: str,
        action_type: str,
        correlation: Optional[UsageCorrelation] = None,
    ) -> DebitOutcome:
        """Feature gate: debit the fixed cost of ``action_type`` and report the result."""
        cost = get_action_cost(action_type)
        debited = await self.debit(user_id, cost, action_type, correlation)
        account = await self._run("reload_account", self._load_account(user_id))
        balance = int(account.balance) if account else 0

        if debited:
            logger.info("Debited %s tokens from user %s for %s (balance %s)", cost, user_id, action_type, balance)
            return DebitOutcome(allowed=True, remaining_balance=balance, cost=cost, action_type=action_type)

        logger.info("Insufficient tokens for user %s: %s requires %s, balance %s", user_id, action_type, cost, balance)
        return DebitOutcome(
            allowed=False,
            remaining_balance=balance,
            cost=cost,
            action_type=action_type,
            shortfall=max(cost - balance, 0),
        )

    async def _apply_credit(self, user_id: str, amount: int) -> bool:
        if amount == 0:
            return True
        result = await self.db.execute(
            update(TokenAccount)
            .where(TokenAccount.user_id == user_id)
            .values(balance=TokenAccount.balance + amount, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.rollback()
            return False
        await self.db.commit()
        return True

    async def credit(
        self,
        user_id: str,
        amount: int,
        transaction_type: str,
        *,
        external_payment_id: Optional[str] = None,
        external_subscription_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> bool:
        """Add ``amount`` tokens and log a transaction.

        The balance update commits first and is the source of truth; the
        transaction row is best-effort and backfilled if it cannot be written.
        """
        ensure_transaction_type(transaction_type)
        amount = int(amount)
        if amount < 0:
            raise ValueError("Credit amount must not be negative")

        await self.get_account(user_id)
        applied = await self._run("credit", self._apply_credit(user_id, amount))
        if not applied:
            return False

        await record_transaction(
            self.db,
            user_id,
            tokens_added=amount,
            transaction_type=transaction_type,
            external_payment_id=external_payment_id,
            external_subscription_id=external_subscription_id,
            description=description,
        )
        logger.info("Credited %s tokens to user %s via %s", amount, user_id, transaction_type)
        return True
