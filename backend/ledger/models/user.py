"""User model"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from ledger.models.base import Base


class User(Base):
    """Platform accounts (readers, authors and admins share this table)"""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    is_admin = Column(Boolean, default=False, nullable=False)
    # Cache of the entitlement projection; Subscription rows are the source of truth
    is_premium = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationships
    subscriptions = relationship("Subscription", back_populates="user")
    payout_account = relationship(
        "AuthorPayoutAccount", back_populates="author", uselist=False,
        foreign_keys="AuthorPayoutAccount.author_id",
    )
