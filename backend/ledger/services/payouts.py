"""Payout manager: balances, eligibility and payout issuance.

Balances are always derived from history:

    eligible  = sum(AuthorRevenue.net_amount_cents) - sum(paid payouts)
    available = eligible - sum(pending payouts)

A payout is reserved (pending row inserted) under a Redis lock, a row lock on
the payout account and a ``payout_version`` check, then issued to the gateway
with an idempotency key derived from the payout id.
"""
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ledger.core.config import PlatformConfig, settings
from ledger.core.errors import (
    BalanceRaceDetected,
    GatewayCommandFailed,
    InvalidTransition,
    MissingMetadata,
    NotFound,
    PayoutNotAllowed,
)
from ledger.core.logging import payout_logger
from ledger.core.metrics import payouts_counter, payout_races_counter
from ledger.core.otel import ledger_span, tag
from ledger.db.helpers import as_utc
from ledger.db.redis import acquire_lock, release_lock, payout_lock_key
from ledger.models.author_payout_account import AuthorPayoutAccount
from ledger.models.author_revenue import AuthorRevenue
from ledger.models.payout import Payout, PayoutStatus
from ledger.services.gateway import PaymentGateway


def _dollars(cents: int) -> str:
    return f"${cents / 100:.2f}"


class PayoutManager:
    def __init__(self, db: Session, config: PlatformConfig, gateway: PaymentGateway):
        self.db = db
        self.config = config
        self.gateway = gateway

    # ------------------------------------------------------------------
    # Balances
    # ------------------------------------------------------------------

    def total_earned(self, author_id: int) -> int:
        return self.db.query(func.coalesce(func.sum(AuthorRevenue.net_amount_cents), 0)).filter(
            AuthorRevenue.author_id == author_id
        ).scalar()

    def _payout_total(self, author_id: int, status: str) -> int:
        return self.db.query(func.coalesce(func.sum(Payout.amount_cents), 0)).filter(
            Payout.author_id == author_id,
            Payout.status == status,
        ).scalar()

    def total_paid(self, author_id: int) -> int:
        return self._payout_total(author_id, PayoutStatus.PAID.value)

    def total_pending(self, author_id: int) -> int:
        return self._payout_total(author_id, PayoutStatus.PENDING.value)

    def eligible_balance(self, author_id: int) -> int:
        """Lifetime net earnings minus paid payouts"""
        return self.total_earned(author_id) - self.total_paid(author_id)

    def available_balance(self, author_id: int) -> int:
        """Eligible balance minus payouts still in flight"""
        return self.eligible_balance(author_id) - self.total_pending(author_id)

    def get_account(self, author_id: int) -> Optional[AuthorPayoutAccount]:
        return self.db.query(AuthorPayoutAccount).filter(AuthorPayoutAccount.author_id == author_id).first()

    def _blocker(self, account: Optional[AuthorPayoutAccount], balance: int, require_onboarding: bool = False) -> Optional[str]:
        """Reason a payout cannot go ahead, or None"""
        if account is None:
            return "Payout account is not set up"
        if account.payout_hold:
            reason = f": {account.hold_reason}" if account.hold_reason else ""
            return f"Payouts are on hold{reason}"
        if not account.payouts_enabled:
            return "Payouts are not enabled for this account"
        if require_onboarding and not account.onboarding_complete:
            return "Onboarding is not complete for this account"
        if balance < self.config.min_payout_cents:
            return (
                f"Available balance ({_dollars(balance)}) is below the "
                f"{_dollars(self.config.min_payout_cents)} minimum payout threshold"
            )
        return None

    def can_payout(self, author_id: int) -> bool:
        """Minimum balance met, payouts enabled and no hold"""
        return self._blocker(self.get_account(author_id), self.eligible_balance(author_id)) is None

    # ------------------------------------------------------------------
    # Issuing
    # ------------------------------------------------------------------

    def request_payout(
        self,
        author_id: int,
        amount_cents: Optional[int] = None,
        processed_by: Optional[int] = None,
    ) -> Payout:
        """Reserve and issue a payout.

        Args:
            author_id: Author being paid
            amount_cents: Amount to pay; defaults to the whole available balance
            processed_by: Admin user id for manual payouts, None when the author
                requested it

        Raises:
            BalanceRaceDetected: another payout for this author is in flight
            PayoutNotAllowed: eligibility check failed (reason in message)
            GatewayCommandFailed: the transfer was rejected or could not be sent
        """
        with ledger_span("ledger.payout.request", author_id=author_id, processed_by=processed_by) as span:
            lock_key = payout_lock_key(author_id)
            if not acquire_lock(lock_key, timeout=settings.PAYOUT_LOCK_TIMEOUT):
                payout_races_counter.inc()
                payout_logger.warning(f"Payout request for author {author_id} rejected: lock held")
                raise BalanceRaceDetected(author_id)
            try:
                payout, account_ref = self._reserve(author_id, amount_cents, processed_by)
            finally:
                release_lock(lock_key)
            tag(span, payout_id=payout.id, amount_cents=payout.amount_cents)
            payout = self._issue(payout, account_ref)
            tag(span, payout_ref=payout.external_payout_ref)
            return payout

    def _reserve(self, author_id: int, amount_cents: Optional[int], processed_by: Optional[int]):
        account = self.db.query(AuthorPayoutAccount).filter(
            AuthorPayoutAccount.author_id == author_id
        ).with_for_update().first()
        version = account.payout_version if account else None

        available = self.available_balance(author_id)
        amount = amount_cents if amount_cents is not None else available
        blocker = self._blocker(account, amount, require_onboarding=processed_by is not None)
        if blocker is None and amount > available:
            blocker = f"Insufficient balance. Available: {_dollars(available)}"
        if blocker:
            self.db.rollback()
            payout_logger.info(f"Payout for author {author_id} not allowed: {blocker}")
            raise PayoutNotAllowed(blocker)

        bumped = self.db.query(AuthorPayoutAccount).filter(
            AuthorPayoutAccount.id == account.id,
            AuthorPayoutAccount.payout_version == version,
        ).update({"payout_version": version + 1}, synchronize_session=False)
        if bumped != 1:
            self.db.rollback()
            payout_races_counter.inc()
            payout_logger.warning(f"Payout for author {author_id} lost a concurrent reservation")
            raise BalanceRaceDetected(author_id)

        last_paid = self.db.query(func.max(Payout.period_end)).filter(
            Payout.author_id == author_id,
            Payout.status == PayoutStatus.PAID.value,
        ).scalar()
        payout = Payout(
            author_id=author_id,
            amount_cents=amount,
            currency=self.config.payout_currency,
            status=PayoutStatus.PENDING.value,
            period_start=last_paid,
            period_end=datetime.now(timezone.utc),
            processed_by=processed_by,
        )
        self.db.add(payout)
        self.db.commit()
        self.db.refresh(payout)
        payouts_counter.labels(status=PayoutStatus.PENDING.value).inc()
        payout_logger.info(f"Reserved payout {payout.id} of {amount} cents for author {author_id}")
        return payout, account.external_account_ref

    def _issue(self, payout: Payout, account_ref: str) -> Payout:
        try:
            result = self.gateway.issue_payout(
                account_ref,
                payout.amount_cents,
                idempotency_key=f"payout-{payout.id}",
                currency=payout.currency,
                metadata={"payout_id": str(payout.id), "author_id": str(payout.author_id)},
            )
        except GatewayCommandFailed as e:
            if e.transient:
                # Stays pending; the sweep retries with the same idempotency key
                payout_logger.warning(f"Payout {payout.id} not confirmed by gateway, left pending: {e.reason}")
            else:
                self._mark_failed(payout, e.reason)
            raise

        payout.external_payout_ref = result.ref
        self.db.commit()
        self.db.refresh(payout)
        payout_logger.info(f"Payout {payout.id} issued as {result.ref}")
        return payout

    def _mark_failed(self, payout: Payout, reason: str) -> None:
        payout.status = PayoutStatus.FAILED.value
        payout.failure_reason = reason
        self.db.commit()
        payouts_counter.labels(status=PayoutStatus.FAILED.value).inc()
        payout_logger.error(f"Payout {payout.id} failed: {reason}")

    def apply_gateway_status(
        self,
        status: str,
        payout_id: Optional[int] = None,
        external_ref: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Payout:
        """Move a pending payout to paid/failed from a gateway event (caller commits)"""
        payout = None
        if payout_id is not None:
            payout = self.db.query(Payout).filter(Payout.id == payout_id).first()
        if payout is None and external_ref:
            payout = self.db.query(Payout).filter(Payout.external_payout_ref == external_ref).first()
        if payout is None:
            raise MissingMetadata(f"No payout matches id={payout_id} ref={external_ref}")

        if payout.status == status:
            return payout
        try:
            payout.status = status
        except InvalidTransition as e:
            payout_logger.warning(f"Ignoring {status} for payout {payout.id}: {e.reason}")
            return payout

        if payout.external_payout_ref is None and external_ref:
            payout.external_payout_ref = external_ref
        if status == PayoutStatus.FAILED.value:
            payout.failure_reason = reason
        payouts_counter.labels(status=status).inc()
        payout_logger.info(f"Payout {payout.id} is now {status}")
        return payout

    def sweep_stale(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Resolve pending payouts that never got a gateway reference.

        Each is re-issued with its original idempotency key. Payouts that still
        cannot be confirmed after ``PAYOUT_STALE_AFTER_SECONDS`` are failed.
        """
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(seconds=settings.PAYOUT_STALE_AFTER_SECONDS)
        stuck = self.db.query(Payout).filter(
            Payout.status == PayoutStatus.PENDING.value,
            Payout.external_payout_ref.is_(None),
        ).all()

        counts = {"issued": 0, "failed": 0, "pending": 0}
        for payout in stuck:
            account = self.get_account(payout.author_id)
            if account is None:
                self._mark_failed(payout, "Payout account no longer exists")
                counts["failed"] += 1
                continue
            try:
                self._issue(payout, account.external_account_ref)
                counts["issued"] += 1
            except GatewayCommandFailed as e:
                if not e.transient:
                    counts["failed"] += 1
                elif as_utc(payout.created_at) <= cutoff:
                    self._mark_failed(payout, f"Gateway unreachable, reconcile manually: {e.reason}")
                    counts["failed"] += 1
                else:
                    counts["pending"] += 1
        if stuck:
            payout_logger.info(f"Stale payout sweep: {counts}")
        return counts

    # ------------------------------------------------------------------
    # Dashboards
    # ------------------------------------------------------------------

    def payout_history(self, author_id: int, limit: int = 20, offset: int = 0) -> List[Payout]:
        return self.db.query(Payout).filter(Payout.author_id == author_id).order_by(
            Payout.created_at.desc(), Payout.id.desc()
        ).offset(offset).limit(limit).all()

    def revenue_history(self, author_id: int, limit: int = 20, offset: int = 0) -> List[AuthorRevenue]:
        return self.db.query(AuthorRevenue).filter(AuthorRevenue.author_id == author_id).order_by(
            AuthorRevenue.created_at.desc(), AuthorRevenue.id.desc()
        ).offset(offset).limit(limit).all()

    def earnings_summary(self, author_id: int) -> Dict:
        earned = self.total_earned(author_id)
        paid = self.total_paid(author_id)
        pending = self.total_pending(author_id)
        account = self.get_account(author_id)
        revenue_count = self.db.query(func.count(AuthorRevenue.id)).filter(
            AuthorRevenue.author_id == author_id
        ).scalar()
        return {
            "author_id": author_id,
            "total_earned_cents": earned,
            "total_paid_cents": paid,
            "pending_cents": pending,
            "balance_cents": earned - paid,
            "available_cents": earned - paid - pending,
            "revenue_count": revenue_count,
            "min_payout_cents": self.config.min_payout_cents,
            # eligible ignores in-flight payouts; can_payout is what a new request would accept
            "eligible": self._blocker(account, earned - paid) is None,
            "can_payout": self._blocker(account, earned - paid - pending) is None,
            "payout_hold": bool(account and account.payout_hold),
            "payouts_enabled": bool(account and account.payouts_enabled),
            "onboarding_complete": bool(account and account.onboarding_complete),
        }

    def create_login_link(self, author_id: int) -> str:
        account = self.get_account(author_id)
        if account is None:
            raise NotFound("Payout account not found")
        if not account.onboarding_complete:
            raise PayoutNotAllowed("Onboarding is not complete for this account")
        return self.gateway.create_login_link(account.external_account_ref)
