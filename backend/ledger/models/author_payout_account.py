"""AuthorPayoutAccount model"""
from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Boolean, Text
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from ledger.db.helpers import ConflictPolicy, NaturalKey
from ledger.models.base import Base


class AuthorPayoutAccount(Base):
    """Connected gateway account an author is paid out to.

    Balances are not stored here; they are derived from AuthorRevenue and
    Payout rows. ``payout_version`` is bumped on every payout reservation.
    """
    __tablename__ = "author_payout_accounts"
    __natural_key__ = NaturalKey(
        ("external_account_ref",),
        ConflictPolicy.UPDATE,
        preserve=("id", "created_at", "author_id", "payout_hold", "hold_reason",
                  "hold_set_by", "hold_set_at", "payout_version"),
    )

    id = Column(Integer, primary_key=True, index=True)
    author_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False, index=True)
    external_account_ref = Column(String(255), unique=True, nullable=False, index=True)
    onboarding_complete = Column(Boolean, default=False, nullable=False)
    payouts_enabled = Column(Boolean, default=False, nullable=False)
    payout_hold = Column(Boolean, default=False, nullable=False)
    hold_reason = Column(Text, nullable=True)
    hold_set_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    hold_set_at = Column(DateTime(timezone=True), nullable=True)
    payout_version = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationship
    author = relationship("User", back_populates="payout_account", foreign_keys=[author_id])
