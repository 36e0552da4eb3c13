"""Payout model"""
import enum
from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Text, Index, inspect
from sqlalchemy.orm import validates
from datetime import datetime, timezone
from ledger.core.errors import InvalidTransition
from ledger.models.base import Base


class PayoutStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class Payout(Base):
    """Money sent to an author's connected account"""
    __tablename__ = "payouts"

    id = Column(Integer, primary_key=True, index=True)
    author_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    amount_cents = Column(Integer, nullable=False)
    currency = Column(String(10), nullable=False, default="usd")
    status = Column(String(20), nullable=False, default=PayoutStatus.PENDING.value)
    external_payout_ref = Column(String(255), unique=True, nullable=True, index=True)
    failure_reason = Column(Text, nullable=True)
    period_start = Column(DateTime(timezone=True), nullable=True)
    period_end = Column(DateTime(timezone=True), nullable=True)
    processed_by = Column(Integer, ForeignKey("users.id"), nullable=True)  # None for automated payouts
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    __table_args__ = (
        Index('ix_payouts_author_status', 'author_id', 'status'),
    )

    @validates("status")
    def _validate_status(self, key, value):
        current = self.status
        if current is None or current == value or not inspect(self).persistent:
            return value
        if current != PayoutStatus.PENDING.value:
            raise InvalidTransition(f"Payout {self.id} is already {current}")
        return value
