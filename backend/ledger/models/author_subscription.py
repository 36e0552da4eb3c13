"""Author support subscription model"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey, UniqueConstraint
from datetime import datetime, timezone
from ledger.db.helpers import ConflictPolicy, NaturalKey
from ledger.models.base import Base


class AuthorSubscription(Base):
    """A reader's paid subscription to one author at a named tier.

    One row per (subscriber, author). A resubscription after cancellation
    reuses the row and takes over the new gateway subscription reference.
    Under one reference ``canceled`` is final. Status uses the reader enum
    minus ``trialing``.
    """
    __tablename__ = "author_subscriptions"
    __natural_key__ = NaturalKey(
        ("subscriber_id", "author_id"),
        ConflictPolicy.UPDATE,
        preserve=("id", "created_at"),
        terminal={"status": "canceled"},
        reopen_on=("external_subscription_ref",),
    )

    id = Column(Integer, primary_key=True, index=True)
    subscriber_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    author_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    tier_name = Column(String(50), nullable=False)
    status = Column(String(20), nullable=False, default="incomplete")
    external_subscription_ref = Column(String(255), unique=True, nullable=False, index=True)
    amount_cents = Column(Integer, nullable=False)
    currency = Column(String(10), nullable=False, default="usd")
    current_period_start = Column(DateTime(timezone=True), nullable=False)
    current_period_end = Column(DateTime(timezone=True), nullable=False)
    cancel_at_period_end = Column(Boolean, default=False, nullable=False)
    canceled_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    __table_args__ = (
        UniqueConstraint("subscriber_id", "author_id", name="uq_author_subscriptions_subscriber_author"),
    )
