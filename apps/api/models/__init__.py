"""Models package."""

from .token_account import TokenAccount
from .token_usage import TokenUsage
from .token_transaction import TokenTransaction
from .subscription_state import SubscriptionState
from .billing_customer import BillingCustomer
from .token_purchase import TokenPurchase
