"""Error types for the token ledger and billing reconciliation.

Expected outcomes (insufficient balance, already reset, duplicate event) are
returned as typed results, not raised. The exceptions here cover
infrastructure failures and data gaps that callers must handle explicitly.
"""

from __future__ import annotations

from typing import Optional


class TokenLedgerError(Exception):
    """Base error for all ledger and billing exceptions."""


class StoreUnavailable(TokenLedgerError):
    """The persistent store could not complete an operation. Safe to retry."""

    outcome_unknown = False

    def __init__(self, operation: str, message: Optional[str] = None) -> None:
        self.operation = operation
        super().__init__(message or f"Store unavailable during {operation}")


class StoreTimeout(StoreUnavailable):
    """A store operation exceeded its time bound.

    The write may or may not have committed; re-read the balance before
    retrying a debit or credit.
    """

    outcome_unknown = True

    def __init__(self, operation: str, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(operation, f"Store operation {operation} timed out after {timeout_seconds}s; outcome unknown")


class UnknownPriceMapping(TokenLedgerError):
    """A provider price id has no configured tier."""

    def __init__(self, price_id: Optional[str]) -> None:
        self.price_id = price_id
        super().__init__(f"No tier configured for price id '{price_id}'")


class SignatureVerificationFailed(TokenLedgerError):
    """A webhook payload failed signature verification and must not be processed."""


class IdentityMappingMissing(TokenLedgerError):
    """A provider customer id has no linked user; retrying cannot fix it."""

    def __init__(self, customer_id: Optional[str]) -> None:
        self.customer_id = customer_id
        super().__init__(f"No user mapping found for customer '{customer_id}'")


class InvalidActionType(ValueError):
    def __init__(self, action_type: str) -> None:
        super().__init__(f"Invalid action type: {action_type}")


class InvalidTransactionType(ValueError):
    def __init__(self, transaction_type: str) -> None:
        super().__init__(f"Invalid transaction type: {transaction_type}")
