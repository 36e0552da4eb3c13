"""Refund and payout-hold actions taken by administrators"""
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from ledger.core.config import PlatformConfig
from ledger.core.errors import GatewayCommandFailed, NotFound, RefundNotAllowed
from ledger.core.logging import payout_logger, refund_logger
from ledger.core.metrics import refunds_counter
from ledger.core.otel import ledger_span, tag
from ledger.db.helpers import upsert
from ledger.models.author_payout_account import AuthorPayoutAccount
from ledger.models.transaction import Transaction, TransactionStatus, TransactionType
from ledger.services.gateway import PaymentGateway
from ledger.services.ledger_writer import LedgerWriter, check_split


class RefundHoldActuator:
    def __init__(
        self,
        db: Session,
        config: PlatformConfig,
        gateway: PaymentGateway,
        writer: Optional[LedgerWriter] = None,
    ):
        self.db = db
        self.config = config
        self.gateway = gateway
        self.writer = writer or LedgerWriter(db, config, gateway)

    def refund(self, transaction_id: int, admin_id: Optional[int] = None, reason: Optional[str] = None) -> Transaction:
        """Refund a succeeded transaction through the gateway and record it.

        Inserts a ``refund`` Transaction carrying the negated split, flips the
        original to ``refunded`` and, for author payments, reverses the
        author's revenue. Returns the refund row.

        Raises:
            NotFound: no such transaction
            RefundNotAllowed: not refundable (reason in message)
            GatewayCommandFailed: gateway refused; nothing is written
        """
        with ledger_span("ledger.refund", transaction_id=transaction_id, admin_id=admin_id) as span:
            row = self._refund(transaction_id, admin_id, reason)
            tag(span, refund_transaction_id=row.id, refund_ref=row.external_payment_ref)
            return row

    def _refund(self, transaction_id: int, admin_id: Optional[int], reason: Optional[str]) -> Transaction:
        original = self.db.query(Transaction).filter(Transaction.id == transaction_id).first()
        if original is None:
            raise NotFound("Transaction not found")
        self._check_refundable(original)

        try:
            result = self.gateway.issue_refund(
                original.external_payment_ref, idempotency_key=f"refund-{original.id}"
            )
        except GatewayCommandFailed as e:
            refunds_counter.labels(outcome="gateway_failed").inc()
            refund_logger.error(f"Refund of transaction {original.id} failed at gateway: {e.reason}")
            raise

        refund_row, applied = upsert(self.db, Transaction, {
            "user_id": original.user_id,
            "author_id": original.author_id,
            "type": TransactionType.REFUND.value,
            "status": TransactionStatus.SUCCEEDED.value,
            "amount_cents": -original.amount_cents,
            "platform_fee_cents": -original.platform_fee_cents,
            "author_earning_cents": -original.author_earning_cents,
            "currency": original.currency,
            "subscription_ref": original.subscription_ref,
            "external_payment_ref": result.ref,
            "refunded_transaction_id": original.id,
            "description": reason or f"Refund for transaction {original.id}",
        }, key=Transaction.__refund_key__)
        if not applied:
            self.db.rollback()
            raise RefundNotAllowed("Transaction has already been refunded")
        check_split(refund_row.amount_cents, refund_row.platform_fee_cents, refund_row.author_earning_cents,
                    f"refund of transaction {original.id}")

        original.status = TransactionStatus.REFUNDED.value
        self.writer.reverse_author_revenue(original, refund_row)
        self.db.commit()
        self.db.refresh(refund_row)

        refunds_counter.labels(outcome="refunded").inc()
        refund_logger.info(
            f"Transaction {original.id} refunded ({original.amount_cents} {original.currency}) "
            f"as {result.ref} by admin {admin_id}"
        )
        return refund_row

    def _check_refundable(self, tx: Transaction) -> None:
        if tx.type == TransactionType.REFUND.value:
            raise RefundNotAllowed("Refund transactions cannot be refunded")
        already = self.db.query(Transaction.id).filter(Transaction.refunded_transaction_id == tx.id).first()
        if already or tx.status == TransactionStatus.REFUNDED.value:
            refunds_counter.labels(outcome="duplicate").inc()
            raise RefundNotAllowed("Transaction has already been refunded")
        if tx.status != TransactionStatus.SUCCEEDED.value:
            raise RefundNotAllowed(f"Only succeeded transactions can be refunded (status: {tx.status})")
        if not tx.external_payment_ref:
            raise RefundNotAllowed("Transaction has no gateway payment reference")

    def set_hold(self, author_id: int, hold: bool, reason: Optional[str] = None,
                 admin_id: Optional[int] = None) -> AuthorPayoutAccount:
        """Place or lift a payout hold. Paid payouts are unaffected."""
        account = self.db.query(AuthorPayoutAccount).filter(AuthorPayoutAccount.author_id == author_id).first()
        if account is None:
            raise NotFound("Author payout account not found")

        if hold:
            account.payout_hold = True
            account.hold_reason = reason
            account.hold_set_by = admin_id
            account.hold_set_at = datetime.now(timezone.utc)
        else:
            account.payout_hold = False
            account.hold_reason = None
            account.hold_set_by = None
            account.hold_set_at = None
        self.db.commit()
        self.db.refresh(account)
        payout_logger.info(f"Payout hold for author {author_id} set to {hold} by admin {admin_id}: {reason or '-'}")
        return account
