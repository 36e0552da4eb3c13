"""SQLAlchemy models package - imports all models so they register with Base.metadata"""
from ledger.models.user import User
from ledger.models.subscription import Subscription
from ledger.models.author_subscription import AuthorSubscription
from ledger.models.transaction import Transaction
from ledger.models.author_revenue import AuthorRevenue
from ledger.models.author_payout_account import AuthorPayoutAccount
from ledger.models.payout import Payout
from ledger.models.fraud_flag import FraudFlag
from ledger.models.stripe_event import StripeEvent

# Export all for convenience
__all__ = [
    "User", "Subscription", "AuthorSubscription", "Transaction", "AuthorRevenue",
    "AuthorPayoutAccount", "Payout", "FraudFlag", "StripeEvent"
]
