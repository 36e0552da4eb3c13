"""AuthorRevenue model"""
from sqlalchemy import Column, Integer, String, ForeignKey, Index, DateTime, Text
from datetime import datetime, timezone
from ledger.db.helpers import ConflictPolicy, NaturalKey
from ledger.models.base import Base


class AuthorRevenue(Base):
    """Append-only author earnings ledger.

    ``source_ref`` identifies what produced the row (an invoice reference, or
    ``refund:<transaction id>`` for a reversal) and makes replays no-ops.
    """
    __tablename__ = "author_revenue"
    __natural_key__ = NaturalKey(("source_ref",), ConflictPolicy.IGNORE)

    id = Column(Integer, primary_key=True, index=True)
    author_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    subscriber_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    source_ref = Column(String(255), unique=True, nullable=False)
    gross_amount_cents = Column(Integer, nullable=False)
    platform_fee_cents = Column(Integer, nullable=False)
    net_amount_cents = Column(Integer, nullable=False)
    currency = Column(String(10), nullable=False, default="usd")
    description = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False, index=True)

    __table_args__ = (
        Index('ix_author_revenue_author_created', 'author_id', 'created_at'),
    )
