"""Transaction model"""
import enum
from sqlalchemy import Column, Integer, String, ForeignKey, Index, DateTime, Text, inspect
from sqlalchemy.orm import validates
from datetime import datetime, timezone
from ledger.core.errors import InvalidTransition, InvariantViolation
from ledger.db.helpers import ConflictPolicy, NaturalKey
from ledger.models.base import Base


class TransactionType(str, enum.Enum):
    SUBSCRIPTION_PAYMENT = "subscription_payment"
    AUTHOR_SUBSCRIPTION_PAYMENT = "author_subscription_payment"
    TIP = "tip"
    PREMIUM = "premium"
    REFUND = "refund"


class TransactionStatus(str, enum.Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"


# Allowed status moves; failed and refunded are terminal
_TRANSITIONS = {
    TransactionStatus.PENDING.value: {TransactionStatus.SUCCEEDED.value, TransactionStatus.FAILED.value},
    TransactionStatus.SUCCEEDED.value: {TransactionStatus.REFUNDED.value},
}

_AMOUNT_COLUMNS = ("amount_cents", "platform_fee_cents", "author_earning_cents")


class Transaction(Base):
    """Immutable record of money movement.

    Refund rows reference the refunded transaction and carry negated amounts,
    so ``amount_cents == platform_fee_cents + author_earning_cents`` holds for
    every row.
    """
    __tablename__ = "transactions"
    # The checkout path may record an invoice before its payment reference is known
    __natural_key__ = NaturalKey(("external_invoice_ref",), ConflictPolicy.IGNORE, fill=("external_payment_ref",))
    __refund_key__ = NaturalKey(("refunded_transaction_id",), ConflictPolicy.IGNORE)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    author_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    type = Column(String(50), nullable=False)
    status = Column(String(20), nullable=False, default=TransactionStatus.PENDING.value)
    amount_cents = Column(Integer, nullable=False)
    platform_fee_cents = Column(Integer, nullable=False, default=0)
    author_earning_cents = Column(Integer, nullable=False, default=0)
    currency = Column(String(10), nullable=False, default="usd")
    subscription_ref = Column(String(255), nullable=True, index=True)
    external_payment_ref = Column(String(255), nullable=True, index=True)
    external_invoice_ref = Column(String(255), unique=True, nullable=True)
    refunded_transaction_id = Column(Integer, ForeignKey("transactions.id"), unique=True, nullable=True)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False, index=True)

    __table_args__ = (
        Index('ix_transactions_user_created', 'user_id', 'created_at'),
    )

    @validates("status")
    def _validate_status(self, key, value):
        current = self.status
        if current is None or current == value or not inspect(self).persistent:
            return value
        if value not in _TRANSITIONS.get(current, set()):
            raise InvalidTransition(f"Transaction {self.id} cannot move from {current} to {value}")
        return value

    @validates(*_AMOUNT_COLUMNS)
    def _validate_amounts(self, key, value):
        current = getattr(self, key)
        if inspect(self).persistent and current is not None and current != value:
            raise InvariantViolation(f"Transaction {self.id} {key} is immutable")
        return value
