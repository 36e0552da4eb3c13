"""FraudFlag model"""
import enum
from sqlalchemy import Column, Integer, String, ForeignKey, JSON, Index, DateTime, Text, text
from datetime import datetime, timezone
from ledger.db.helpers import ConflictPolicy, NaturalKey
from ledger.models.base import Base


class FraudFlagType(str, enum.Enum):
    RAPID_CANCEL = "rapid_cancel"
    HIGH_VOLUME_SUBS = "high_volume_subs"
    EXCESSIVE_REFUNDS = "excessive_refunds"
    SUSPICIOUS_PATTERN = "suspicious_pattern"


class FraudFlagStatus(str, enum.Enum):
    OPEN = "open"
    REVIEWED = "reviewed"
    DISMISSED = "dismissed"


class FraudFlag(Base):
    """Heuristic finding awaiting human review. Flags never trigger actions."""
    __tablename__ = "fraud_flags"
    # At most one open flag per (user, flag_type)
    __natural_key__ = NaturalKey(
        ("user_id", "flag_type"),
        ConflictPolicy.IGNORE,
        where={"status": FraudFlagStatus.OPEN.value},
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    flag_type = Column(String(50), nullable=False)
    details = Column(JSON, default=dict, nullable=False)
    status = Column(String(20), nullable=False, default=FraudFlagStatus.OPEN.value, index=True)
    review_notes = Column(Text, nullable=True)
    reviewed_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    reviewed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False, index=True)

    __table_args__ = (
        Index(
            'uq_fraud_flags_open_user_type', 'user_id', 'flag_type',
            unique=True,
            postgresql_where=text("status = 'open'"),
            sqlite_where=text("status = 'open'"),
        ),
    )
