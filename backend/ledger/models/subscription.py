"""Reader premium subscription model"""
import enum
from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from ledger.db.helpers import ConflictPolicy, NaturalKey
from ledger.models.base import Base


class SubscriptionStatus(str, enum.Enum):
    INCOMPLETE = "incomplete"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


# Statuses that grant access
ENTITLED_STATUSES = (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value)


class BillingInterval(str, enum.Enum):
    MONTHLY = "monthly"
    ANNUAL = "annual"


class Subscription(Base):
    """Reader premium subscription, mirrored from the payment gateway.

    Rows are never deleted; a subscription ends by transitioning to ``canceled``,
    which is final: late updates for the same reference leave it canceled.
    """
    __tablename__ = "subscriptions"
    __natural_key__ = NaturalKey(
        ("external_subscription_ref",),
        ConflictPolicy.UPDATE,
        preserve=("id", "created_at", "user_id"),
        terminal={"status": SubscriptionStatus.CANCELED.value},
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    status = Column(String(20), nullable=False, default=SubscriptionStatus.INCOMPLETE.value)
    billing_interval = Column(String(20), nullable=False, default=BillingInterval.MONTHLY.value)
    external_subscription_ref = Column(String(255), unique=True, nullable=False, index=True)
    external_customer_ref = Column(String(255), nullable=True)
    amount_cents = Column(Integer, nullable=False)
    currency = Column(String(10), nullable=False, default="usd")
    current_period_start = Column(DateTime(timezone=True), nullable=False)
    current_period_end = Column(DateTime(timezone=True), nullable=False)
    cancel_at_period_end = Column(Boolean, default=False, nullable=False)
    canceled_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationship
    user = relationship("User", back_populates="subscriptions")
