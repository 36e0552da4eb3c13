"""Ledger writer: applies routed gateway events to subscription and money rows.

Every write goes through a natural-key upsert (``ledger.db.helpers.upsert``),
so a handler can run any number of times for the same event and leave the
same rows behind. The caller owns the database transaction.
"""
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, Dict, Optional, Tuple

from sqlalchemy.orm import Session

from ledger.core.config import PlatformConfig
from ledger.core.errors import InvariantViolation, MissingMetadata
from ledger.core.logging import webhook_logger
from ledger.db.helpers import upsert
from ledger.models.author_payout_account import AuthorPayoutAccount
from ledger.models.author_revenue import AuthorRevenue
from ledger.models.author_subscription import AuthorSubscription
from ledger.models.payout import PayoutStatus
from ledger.models.subscription import Subscription, SubscriptionStatus
from ledger.models.transaction import Transaction, TransactionStatus, TransactionType
from ledger.services.entitlements import EntitlementProjector
from ledger.services.event_router import DISCRIMINATOR_KEY, Discriminator, Route
from ledger.services.event_schema import (
    CheckoutSession,
    ConnectedAccount,
    Invoice,
    PayoutObject,
    SubscriptionSnapshot,
    parse_object,
)
from ledger.services.event_verifier import VerifiedEvent
from ledger.services.gateway import PaymentGateway
from ledger.services.payouts import PayoutManager

# Single status vocabulary for reader and author subscriptions.
# Anything the gateway reports outside this table maps to incomplete.
GATEWAY_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE.value,
    "trialing": SubscriptionStatus.TRIALING.value,
    "past_due": SubscriptionStatus.PAST_DUE.value,
    "canceled": SubscriptionStatus.CANCELED.value,
    "incomplete": SubscriptionStatus.INCOMPLETE.value,
}

AUTHOR_STATUSES = frozenset(
    s.value for s in SubscriptionStatus if s != SubscriptionStatus.TRIALING
)


def map_status(gateway_status: Optional[str], author: bool = False) -> str:
    """Map a gateway subscription status to the internal enum"""
    status = GATEWAY_STATUS_MAP.get(gateway_status or "", SubscriptionStatus.INCOMPLETE.value)
    if author and status not in AUTHOR_STATUSES:
        return SubscriptionStatus.INCOMPLETE.value
    return status


def check_split(amount_cents: int, fee_cents: int, earning_cents: int, what: str = "split") -> None:
    """Refuse any split whose parts do not add back up to the amount"""
    if amount_cents != fee_cents + earning_cents:
        raise InvariantViolation(
            f"{what} does not reconcile: {amount_cents} != {fee_cents} + {earning_cents}"
        )


def split_fee(amount_cents: int, fee_percent) -> Tuple[int, int]:
    """Split an amount into (platform fee, author net).

    The fee is rounded half away from zero; the net is the remainder, so the
    two always sum to the amount.

    >>> split_fee(333, 15)
    (50, 283)
    """
    fee = int(
        (Decimal(amount_cents) * Decimal(str(fee_percent)) / Decimal(100)).quantize(
            Decimal("1"), rounding=ROUND_HALF_UP
        )
    )
    net = amount_cents - fee
    check_split(amount_cents, fee, net, "fee split")
    return fee, net


class LedgerWriter:
    """Owns Subscription, AuthorSubscription, Transaction and AuthorRevenue writes"""

    def __init__(
        self,
        db: Session,
        config: PlatformConfig,
        gateway: PaymentGateway,
        projector: Optional[EntitlementProjector] = None,
    ):
        self.db = db
        self.config = config
        self.gateway = gateway
        self.projector = projector or EntitlementProjector(db, config)
        self._handlers: Dict[Route, Callable[[VerifiedEvent], None]] = {
            Route.READER_CHECKOUT_COMPLETED: self._reader_checkout_completed,
            Route.READER_SUBSCRIPTION_UPDATED: self._reader_subscription_updated,
            Route.READER_SUBSCRIPTION_CANCELED: self._reader_subscription_canceled,
            Route.AUTHOR_CHECKOUT_COMPLETED: self._author_checkout_completed,
            Route.AUTHOR_SUBSCRIPTION_UPDATED: self._author_subscription_updated,
            Route.AUTHOR_SUBSCRIPTION_CANCELED: self._author_subscription_canceled,
            Route.INVOICE_PAID: self._invoice_paid,
            Route.PAYMENT_FAILED: self._payment_failed,
            Route.CONNECTED_ACCOUNT_UPDATED: self._connected_account_updated,
            Route.PAYOUT_PAID: self._payout_paid,
            Route.PAYOUT_FAILED: self._payout_failed,
        }

    def apply(self, route: Route, event: VerifiedEvent) -> None:
        """Run the handler for a routed event; rows are flushed, not committed"""
        webhook_logger.info(f"Applying {event.type} {event.id} as {route.value}")
        self._handlers[route](event)
        self.db.flush()

    # ------------------------------------------------------------------
    # Reader premium
    # ------------------------------------------------------------------

    def _reader_price(self, interval: str) -> int:
        if interval == "annual":
            return self.config.reader_premium_annual_cents
        return self.config.reader_premium_monthly_cents

    def _reader_user_id(self, snapshot: SubscriptionSnapshot, metadata: Dict[str, str]) -> int:
        raw = metadata.get("user_id")
        if raw:
            try:
                return int(raw)
            except ValueError:
                raise MissingMetadata(f"Subscription {snapshot.id} has malformed user_id '{raw}'")
        existing = self.db.query(Subscription.user_id).filter(
            Subscription.external_subscription_ref == snapshot.id
        ).first()
        if existing:
            return existing[0]
        raise MissingMetadata(f"Subscription {snapshot.id} has no user_id and no local record")

    def _upsert_reader_subscription(
        self, snapshot: SubscriptionSnapshot, user_id: int, status: Optional[str] = None
    ) -> Subscription:
        now = datetime.now(timezone.utc)
        start, end = snapshot.period_bounds(now)
        status = status or map_status(snapshot.status)
        canceled_at = snapshot.canceled_at_datetime
        if status == SubscriptionStatus.CANCELED.value and canceled_at is None:
            canceled_at = now
        amount = snapshot.unit_amount_cents
        if amount is None:
            amount = self._reader_price(snapshot.billing_interval)

        row, applied = upsert(self.db, Subscription, {
            "user_id": user_id,
            "status": status,
            "billing_interval": snapshot.billing_interval,
            "external_subscription_ref": snapshot.id,
            "external_customer_ref": snapshot.customer,
            "amount_cents": amount,
            "currency": snapshot.currency_code,
            "current_period_start": start,
            "current_period_end": end,
            "cancel_at_period_end": snapshot.cancel_at_period_end,
            "canceled_at": canceled_at,
        })
        if not applied:
            webhook_logger.info(f"Reader subscription {snapshot.id} is already canceled, ignoring {status}")
            return row
        webhook_logger.info(f"Reader subscription {snapshot.id} for user {user_id} is {status}")
        return row

    def _reader_checkout_completed(self, event: VerifiedEvent) -> None:
        session, snapshot = self._checkout_objects(event)
        metadata = {**snapshot.metadata, **(session.metadata if session else {})}
        user_id = self._reader_user_id(snapshot, metadata)

        self._upsert_reader_subscription(snapshot, user_id)
        if session:
            self._record_checkout_payment(session, snapshot, user_id)
        self.projector.recompute_premium(user_id)

    def _reader_subscription_updated(self, event: VerifiedEvent) -> None:
        snapshot = parse_object(SubscriptionSnapshot, event.data_object)
        user_id = self._reader_user_id(snapshot, snapshot.metadata)
        self._upsert_reader_subscription(snapshot, user_id)
        # active -> past_due must revoke immediately, so always recompute
        self.projector.recompute_premium(user_id)

    def _reader_subscription_canceled(self, event: VerifiedEvent) -> None:
        snapshot = parse_object(SubscriptionSnapshot, event.data_object)
        user_id = self._reader_user_id(snapshot, snapshot.metadata)
        self._upsert_reader_subscription(snapshot, user_id, status=SubscriptionStatus.CANCELED.value)
        # The user may still hold another active subscription
        self.projector.recompute_premium(user_id)

    # ------------------------------------------------------------------
    # Author subscriptions
    # ------------------------------------------------------------------

    def _author_identity(self, snapshot: SubscriptionSnapshot, metadata: Dict[str, str]) -> Tuple[int, int, str]:
        """(subscriber_id, author_id, tier_name) from metadata, else from the local row"""
        try:
            subscriber_id = int(metadata["subscriber_id"])
            author_id = int(metadata["author_id"])
            tier_name = metadata["tier_name"]
        except (KeyError, ValueError):
            existing = self.db.query(AuthorSubscription).filter(
                AuthorSubscription.external_subscription_ref == snapshot.id
            ).first()
            if existing is None:
                raise MissingMetadata(
                    f"Author subscription {snapshot.id} needs subscriber_id, author_id and tier_name metadata"
                )
            return existing.subscriber_id, existing.author_id, existing.tier_name

        if tier_name not in self.config.tier_prices:
            raise MissingMetadata(f"Author subscription {snapshot.id} has unknown tier '{tier_name}'")
        return subscriber_id, author_id, tier_name

    def _upsert_author_subscription(
        self,
        snapshot: SubscriptionSnapshot,
        subscriber_id: int,
        author_id: int,
        tier_name: str,
        status: Optional[str] = None,
    ) -> AuthorSubscription:
        now = datetime.now(timezone.utc)
        start, end = snapshot.period_bounds(now)
        status = status or map_status(snapshot.status, author=True)
        canceled_at = snapshot.canceled_at_datetime
        if status == SubscriptionStatus.CANCELED.value and canceled_at is None:
            canceled_at = now
        amount = snapshot.unit_amount_cents
        if amount is None:
            amount = self.config.tier_prices[tier_name]

        row, applied = upsert(self.db, AuthorSubscription, {
            "subscriber_id": subscriber_id,
            "author_id": author_id,
            "tier_name": tier_name,
            "status": status,
            "external_subscription_ref": snapshot.id,
            "amount_cents": amount,
            "currency": snapshot.currency_code,
            "current_period_start": start,
            "current_period_end": end,
            "cancel_at_period_end": snapshot.cancel_at_period_end,
            "canceled_at": canceled_at,
        })
        if not applied:
            webhook_logger.info(f"Author subscription {snapshot.id} is already canceled, ignoring {status}")
            return row
        webhook_logger.info(
            f"Author subscription {snapshot.id}: subscriber {subscriber_id} -> author {author_id} "
            f"({tier_name}) is {status}"
        )
        return row

    def _author_checkout_completed(self, event: VerifiedEvent) -> None:
        session, snapshot = self._checkout_objects(event)
        metadata = {**snapshot.metadata, **(session.metadata if session else {})}
        subscriber_id, author_id, tier_name = self._author_identity(snapshot, metadata)

        self._upsert_author_subscription(snapshot, subscriber_id, author_id, tier_name)
        if session:
            self._record_checkout_payment(session, snapshot, subscriber_id, author_id=author_id, tier_name=tier_name)
        self.projector.invalidate(subscriber_id)

    def _author_subscription_updated(self, event: VerifiedEvent) -> None:
        snapshot = parse_object(SubscriptionSnapshot, event.data_object)
        subscriber_id, author_id, tier_name = self._author_identity(snapshot, snapshot.metadata)
        self._upsert_author_subscription(snapshot, subscriber_id, author_id, tier_name)
        self.projector.invalidate(subscriber_id)

    def _author_subscription_canceled(self, event: VerifiedEvent) -> None:
        snapshot = parse_object(SubscriptionSnapshot, event.data_object)
        subscriber_id, author_id, tier_name = self._author_identity(snapshot, snapshot.metadata)
        self._upsert_author_subscription(
            snapshot, subscriber_id, author_id, tier_name, status=SubscriptionStatus.CANCELED.value
        )
        self.projector.invalidate(subscriber_id)

    # ------------------------------------------------------------------
    # Money rows
    # ------------------------------------------------------------------

    def _checkout_objects(self, event: VerifiedEvent) -> Tuple[Optional[CheckoutSession], SubscriptionSnapshot]:
        """Checkout sessions carry only a subscription reference; subscription.created carries the object"""
        data = event.data_object
        if data.get("object") == "subscription":
            return None, parse_object(SubscriptionSnapshot, data)

        session = parse_object(CheckoutSession, data)
        if not session.subscription:
            raise MissingMetadata(f"Checkout session {session.id} has no subscription")
        return session, self.gateway.retrieve_subscription(session.subscription)

    def _record_checkout_payment(
        self,
        session: CheckoutSession,
        snapshot: SubscriptionSnapshot,
        user_id: int,
        author_id: Optional[int] = None,
        tier_name: Optional[str] = None,
    ) -> Optional[Transaction]:
        if session.payment_status not in (None, "paid"):
            webhook_logger.info(f"Checkout {session.id} payment_status={session.payment_status}, no money recorded")
            return None
        amount = session.amount_total if session.amount_total is not None else snapshot.unit_amount_cents
        if not amount:
            return None
        # Keyed by the first invoice so the matching invoice.paid is a no-op
        invoice_ref = session.invoice or snapshot.latest_invoice or session.id
        return self.record_payment(
            user_id=user_id,
            author_id=author_id,
            amount_cents=amount,
            currency=session.currency or snapshot.currency_code,
            invoice_ref=invoice_ref,
            payment_ref=session.payment_intent,
            subscription_ref=snapshot.id,
            description=self._describe(author_id, tier_name, snapshot.billing_interval),
        )

    @staticmethod
    def _describe(author_id: Optional[int], tier_name: Optional[str], interval: str) -> str:
        if author_id is not None:
            return f"Author subscription - {tier_name or 'tier'} (author {author_id})"
        return f"Reader Premium - {'Annual' if interval == 'annual' else 'Monthly'}"

    def record_payment(
        self,
        user_id: int,
        amount_cents: int,
        currency: str,
        invoice_ref: str,
        author_id: Optional[int] = None,
        payment_ref: Optional[str] = None,
        subscription_ref: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Transaction:
        """Insert the Transaction (and AuthorRevenue for author payments) for one invoice.

        Reader premium payments are platform revenue in full. Author payments
        are split by ``split_fee``.
        """
        if author_id is not None:
            fee, earning = split_fee(amount_cents, self.config.fee_percent)
            tx_type = TransactionType.AUTHOR_SUBSCRIPTION_PAYMENT.value
        else:
            fee, earning = amount_cents, 0
            tx_type = TransactionType.SUBSCRIPTION_PAYMENT.value
        check_split(amount_cents, fee, earning, f"invoice {invoice_ref}")

        tx, applied = upsert(self.db, Transaction, {
            "user_id": user_id,
            "author_id": author_id,
            "type": tx_type,
            "status": TransactionStatus.SUCCEEDED.value,
            "amount_cents": amount_cents,
            "platform_fee_cents": fee,
            "author_earning_cents": earning,
            "currency": currency,
            "subscription_ref": subscription_ref,
            "external_payment_ref": payment_ref,
            "external_invoice_ref": invoice_ref,
            "description": description,
        })

        if author_id is not None:
            upsert(self.db, AuthorRevenue, {
                "author_id": author_id,
                "subscriber_id": user_id,
                "source_ref": invoice_ref,
                "gross_amount_cents": amount_cents,
                "platform_fee_cents": fee,
                "net_amount_cents": earning,
                "currency": currency,
                "description": description,
            })

        if applied:
            webhook_logger.info(
                f"Recorded {tx_type} {invoice_ref}: {amount_cents} = fee {fee} + earning {earning}"
            )
        return tx

    def reverse_author_revenue(self, original: Transaction, refund: Transaction) -> Optional[AuthorRevenue]:
        """Append a negative revenue row for a refunded author payment"""
        if original.type != TransactionType.AUTHOR_SUBSCRIPTION_PAYMENT.value or original.author_id is None:
            return None
        check_split(refund.amount_cents, refund.platform_fee_cents, refund.author_earning_cents, f"refund {refund.id}")
        row, applied = upsert(self.db, AuthorRevenue, {
            "author_id": original.author_id,
            "subscriber_id": original.user_id,
            "source_ref": f"refund:{original.id}",
            "gross_amount_cents": refund.amount_cents,
            "platform_fee_cents": refund.platform_fee_cents,
            "net_amount_cents": refund.author_earning_cents,
            "currency": original.currency,
            "description": f"Refund of transaction {original.id}",
        })
        if applied:
            webhook_logger.info(
                f"Reversed {-refund.author_earning_cents} cents of author {original.author_id} revenue "
                f"for transaction {original.id}"
            )
        return row

    def _invoice_paid(self, event: VerifiedEvent) -> None:
        invoice = parse_object(Invoice, event.data_object)
        sub_ref = invoice.subscription_ref
        if not sub_ref:
            raise MissingMetadata(f"Invoice {invoice.id} is not tied to a subscription")
        if invoice.amount_paid <= 0:
            webhook_logger.info(f"Invoice {invoice.id} paid 0, nothing realized")
            return

        author_sub = self.db.query(AuthorSubscription).filter(
            AuthorSubscription.external_subscription_ref == sub_ref
        ).first()
        reader_sub = None if author_sub else self.db.query(Subscription).filter(
            Subscription.external_subscription_ref == sub_ref
        ).first()

        if author_sub:
            subscriber_id, author_id, tier_name = author_sub.subscriber_id, author_sub.author_id, author_sub.tier_name
            interval = "monthly"
        elif reader_sub:
            subscriber_id, author_id, tier_name = reader_sub.user_id, None, None
            interval = reader_sub.billing_interval
        else:
            # No local row yet (out-of-order delivery): route on metadata
            metadata = invoice.subscription_metadata
            snapshot = None
            if DISCRIMINATOR_KEY not in metadata:
                snapshot = self.gateway.retrieve_subscription(sub_ref)
                metadata = snapshot.metadata
            snapshot = snapshot or SubscriptionSnapshot(id=sub_ref, metadata=metadata)
            kind = metadata.get(DISCRIMINATOR_KEY)
            if kind == Discriminator.AUTHOR_SUBSCRIPTION.value:
                subscriber_id, author_id, tier_name = self._author_identity(snapshot, metadata)
            elif kind == Discriminator.READER_PREMIUM.value:
                subscriber_id, author_id, tier_name = self._reader_user_id(snapshot, metadata), None, None
            else:
                raise MissingMetadata(f"Invoice {invoice.id} subscription {sub_ref} has no usable discriminator")
            interval = snapshot.billing_interval

        self.record_payment(
            user_id=subscriber_id,
            author_id=author_id,
            amount_cents=invoice.amount_paid,
            currency=invoice.currency_code,
            invoice_ref=invoice.id,
            payment_ref=invoice.payment_ref,
            subscription_ref=sub_ref,
            description=self._describe(author_id, tier_name, interval),
        )

    def _payment_failed(self, event: VerifiedEvent) -> None:
        invoice = parse_object(Invoice, event.data_object)
        sub_ref = invoice.subscription_ref
        if not sub_ref:
            raise MissingMetadata(f"Invoice {invoice.id} is not tied to a subscription")

        values = {"status": SubscriptionStatus.PAST_DUE.value, "updated_at": datetime.now(timezone.utc)}
        reader = self.db.query(Subscription).filter(Subscription.external_subscription_ref == sub_ref).first()
        if reader:
            if reader.status != SubscriptionStatus.CANCELED.value:
                self.db.query(Subscription).filter(
                    Subscription.id == reader.id,
                    Subscription.status != SubscriptionStatus.CANCELED.value,
                ).update(values, synchronize_session=False)
            self.projector.recompute_premium(reader.user_id)
            webhook_logger.warning(f"Payment failed for reader subscription {sub_ref}")
            return

        author = self.db.query(AuthorSubscription).filter(
            AuthorSubscription.external_subscription_ref == sub_ref
        ).first()
        if author:
            self.db.query(AuthorSubscription).filter(
                AuthorSubscription.id == author.id,
                AuthorSubscription.status != SubscriptionStatus.CANCELED.value,
            ).update(values, synchronize_session=False)
            self.projector.invalidate(author.subscriber_id)
            webhook_logger.warning(f"Payment failed for author subscription {sub_ref}")
            return

        raise MissingMetadata(f"Payment failed for unknown subscription {sub_ref}")

    # ------------------------------------------------------------------
    # Connected accounts and payouts
    # ------------------------------------------------------------------

    def _connected_account_updated(self, event: VerifiedEvent) -> None:
        account = parse_object(ConnectedAccount, event.data_object)
        existing = self.db.query(AuthorPayoutAccount).filter(
            AuthorPayoutAccount.external_account_ref == account.id
        ).first()
        author_id = existing.author_id if existing else account.meta_int("author_id")
        if author_id is None:
            raise MissingMetadata(f"Connected account {account.id} has no author_id metadata")

        upsert(self.db, AuthorPayoutAccount, {
            "author_id": author_id,
            "external_account_ref": account.id,
            "onboarding_complete": account.details_submitted,
            "payouts_enabled": account.payouts_enabled,
        })
        webhook_logger.info(
            f"Payout account {account.id} (author {author_id}): onboarding_complete={account.details_submitted} "
            f"payouts_enabled={account.payouts_enabled}"
        )

    def _payout_paid(self, event: VerifiedEvent) -> None:
        self._apply_payout_event(event, PayoutStatus.PAID.value)

    def _payout_failed(self, event: VerifiedEvent) -> None:
        self._apply_payout_event(event, PayoutStatus.FAILED.value)

    def _apply_payout_event(self, event: VerifiedEvent, status: str) -> None:
        obj = parse_object(PayoutObject, event.data_object)
        reason = None
        if status == PayoutStatus.FAILED.value:
            reason = obj.failure_message or obj.failure_code or f"Gateway reported {event.type}"
        PayoutManager(self.db, self.config, self.gateway).apply_gateway_status(
            payout_id=obj.meta_int("payout_id"),
            external_ref=obj.id,
            status=status,
            reason=reason,
        )
