"""Ledger writer tests: fee split, subscription state and money rows"""
import pytest
from unittest.mock import MagicMock

from conftest import deliver, invoice_object, make_event, subscription_object

from ledger.core.errors import InvariantViolation
from ledger.models.author_revenue import AuthorRevenue
from ledger.models.author_subscription import AuthorSubscription
from ledger.models.subscription import Subscription
from ledger.models.transaction import Transaction, TransactionType
from ledger.models.user import User
from ledger.services.entitlements import EntitlementProjector
from ledger.services.ledger_writer import check_split, map_status, split_fee
from ledger.services.refunds import RefundHoldActuator


def author_meta(subscriber, author, tier="supporter"):
    return {"type": "author_subscription", "subscriber_id": str(subscriber.id),
            "author_id": str(author.id), "tier_name": tier}


def reader_meta(user):
    return {"type": "reader_premium", "user_id": str(user.id)}


@pytest.mark.critical
class TestFeeSplit:
    """Test platform fee rounding"""

    def test_fee_rounds_half_up(self):
        """333 at 15% is 49.95, rounded to 50 with the remainder to the author"""
        assert split_fee(333, 15) == (50, 283)

    def test_split_always_reconciles(self):
        for amount in (1, 99, 300, 333, 500, 600, 1200, 2999):
            fee, net = split_fee(amount, 15)
            assert fee + net == amount

    def test_exact_half_rounds_up(self):
        """10 at 15% is 1.5 -> 2"""
        assert split_fee(10, 15) == (2, 8)

    def test_check_split_refuses_mismatch(self):
        with pytest.raises(InvariantViolation):
            check_split(500, 75, 424)


@pytest.mark.high
class TestStatusMapping:
    """Test gateway status vocabulary mapping"""

    def test_known_statuses_pass_through(self):
        assert map_status("active") == "active"
        assert map_status("past_due") == "past_due"
        assert map_status("trialing") == "trialing"

    def test_unknown_status_maps_to_incomplete(self):
        assert map_status("unpaid") == "incomplete"
        assert map_status("incomplete_expired") == "incomplete"
        assert map_status(None) == "incomplete"

    def test_author_subscriptions_have_no_trial(self):
        assert map_status("trialing", author=True) == "incomplete"


@pytest.mark.critical
class TestReaderPremium:
    """Test reader premium subscription events"""

    def test_subscription_created_grants_premium(self, db_session, gateway, config, reader):
        event = make_event("customer.subscription.created", subscription_object("sub_A", reader_meta(reader)))
        assert deliver(db_session, gateway, config, event) == {"status": "success"}

        sub = db_session.query(Subscription).filter(Subscription.external_subscription_ref == "sub_A").one()
        assert sub.user_id == reader.id
        assert sub.status == "active"
        assert sub.billing_interval == "monthly"
        db_session.refresh(reader)
        assert reader.is_premium is True

    def test_annual_interval_recorded(self, db_session, gateway, config, reader):
        obj = subscription_object("sub_year", reader_meta(reader), amount=3000, interval="year")
        deliver(db_session, gateway, config, make_event("customer.subscription.created", obj))
        sub = db_session.query(Subscription).one()
        assert sub.billing_interval == "annual"
        assert sub.amount_cents == 3000

    def test_past_due_revokes_premium(self, db_session, gateway, config, reader):
        deliver(db_session, gateway, config,
                make_event("customer.subscription.created", subscription_object("sub_A", reader_meta(reader))))
        deliver(db_session, gateway, config,
                make_event("customer.subscription.updated",
                           subscription_object("sub_A", reader_meta(reader), status="past_due")))

        db_session.refresh(reader)
        assert reader.is_premium is False
        assert EntitlementProjector(db_session, config).is_premium(reader.id) is False

    def test_unrecognized_status_stored_as_incomplete(self, db_session, gateway, config, reader):
        deliver(db_session, gateway, config,
                make_event("customer.subscription.updated",
                           subscription_object("sub_A", reader_meta(reader), status="unpaid")))
        assert db_session.query(Subscription).one().status == "incomplete"

    def test_cancel_one_of_two_keeps_premium(self, db_session, gateway, config, reader):
        """Canceling A while B is active keeps premium; canceling B revokes it"""
        for ref in ("sub_A", "sub_B"):
            deliver(db_session, gateway, config,
                    make_event("customer.subscription.created", subscription_object(ref, reader_meta(reader))))

        deliver(db_session, gateway, config,
                make_event("customer.subscription.deleted",
                           subscription_object("sub_A", reader_meta(reader), status="canceled")))
        db_session.refresh(reader)
        assert reader.is_premium is True

        deliver(db_session, gateway, config,
                make_event("customer.subscription.deleted",
                           subscription_object("sub_B", reader_meta(reader), status="canceled")))
        db_session.refresh(reader)
        assert reader.is_premium is False

        canceled = db_session.query(Subscription).filter(Subscription.status == "canceled").all()
        assert len(canceled) == 2
        assert all(s.canceled_at is not None for s in canceled)

    def test_update_without_user_id_uses_local_row(self, db_session, gateway, config, reader):
        deliver(db_session, gateway, config,
                make_event("customer.subscription.created", subscription_object("sub_A", reader_meta(reader))))
        obj = subscription_object("sub_A", {"type": "reader_premium"}, status="past_due")
        assert deliver(db_session, gateway, config, make_event("customer.subscription.updated", obj)) == {
            "status": "success"
        }
        assert db_session.query(Subscription).one().status == "past_due"

    def test_checkout_session_records_platform_revenue(self, db_session, gateway, config, reader, mock_stripe):
        mock_stripe.Subscription.retrieve = MagicMock(
            return_value=subscription_object("sub_A", reader_meta(reader), latest_invoice="in_first")
        )
        session = {
            "id": "cs_test123", "object": "checkout.session", "mode": "subscription",
            "subscription": "sub_A", "customer": "cus_test123", "invoice": "in_first",
            "payment_intent": "pi_first", "payment_status": "paid", "amount_total": 300,
            "currency": "usd", "metadata": reader_meta(reader),
        }
        deliver(db_session, gateway, config, make_event("checkout.session.completed", session))

        mock_stripe.Subscription.retrieve.assert_called_once_with("sub_A", expand=["items.data.price"])
        tx = db_session.query(Transaction).one()
        assert tx.type == TransactionType.SUBSCRIPTION_PAYMENT.value
        assert (tx.amount_cents, tx.platform_fee_cents, tx.author_earning_cents) == (300, 300, 0)
        assert tx.author_id is None
        assert db_session.query(AuthorRevenue).count() == 0

        # The first invoice arrives separately and must not double count
        deliver(db_session, gateway, config,
                make_event("invoice.paid", invoice_object("in_first", "sub_A", 300, payment_ref="pi_first")))
        assert db_session.query(Transaction).count() == 1

    def test_late_update_after_cancel_keeps_canceled(self, db_session, gateway, config, reader):
        """An active update delivered after the deletion must not revive the subscription"""
        created = subscription_object("sub_A", reader_meta(reader))
        deliver(db_session, gateway, config, make_event("customer.subscription.created", created))
        deliver(db_session, gateway, config,
                make_event("customer.subscription.deleted",
                           subscription_object("sub_A", reader_meta(reader), status="canceled")))

        result = deliver(db_session, gateway, config, make_event("customer.subscription.updated", created))

        assert result == {"status": "success"}
        db_session.expire_all()
        sub = db_session.query(Subscription).one()
        assert sub.status == "canceled"
        assert sub.canceled_at is not None
        assert db_session.get(User, reader.id).is_premium is False

    def test_checkout_without_payment_intent_is_refundable(self, db_session, gateway, config, reader, mock_stripe):
        """Subscription checkouts carry no payment intent; the invoice fills it in"""
        mock_stripe.Subscription.retrieve = MagicMock(
            return_value=subscription_object("sub_A", reader_meta(reader), latest_invoice="in_first")
        )
        session = {
            "id": "cs_test123", "object": "checkout.session", "mode": "subscription",
            "subscription": "sub_A", "customer": "cus_test123", "invoice": "in_first",
            "payment_intent": None, "payment_status": "paid", "amount_total": 300,
            "currency": "usd", "metadata": reader_meta(reader),
        }
        deliver(db_session, gateway, config, make_event("checkout.session.completed", session))
        assert db_session.query(Transaction).one().external_payment_ref is None

        deliver(db_session, gateway, config,
                make_event("invoice.paid", invoice_object("in_first", "sub_A", 300, payment_ref="pi_first")))

        db_session.expire_all()
        tx = db_session.query(Transaction).one()
        assert tx.external_payment_ref == "pi_first"
        assert tx.amount_cents == 300

        refund = RefundHoldActuator(db_session, config, gateway).refund(tx.id, reason="duplicate charge")
        assert refund.amount_cents == -300
        mock_stripe.Refund.create.assert_called_once()
        assert mock_stripe.Refund.create.call_args.kwargs["payment_intent"] == "pi_first"

    def test_known_payment_ref_is_not_replaced(self, db_session, gateway, config, reader):
        deliver(db_session, gateway, config,
                make_event("customer.subscription.created", subscription_object("sub_A", reader_meta(reader))))
        deliver(db_session, gateway, config,
                make_event("invoice.paid", invoice_object("in_1", "sub_A", 300, payment_ref="pi_original")))
        deliver(db_session, gateway, config,
                make_event("invoice.paid", invoice_object("in_1", "sub_A", 300, payment_ref="pi_other")))

        db_session.expire_all()
        assert db_session.query(Transaction).one().external_payment_ref == "pi_original"


@pytest.mark.critical
class TestAuthorSubscriptions:
    """Test author subscription events and revenue"""

    def _checkout(self, db_session, gateway, config, mock_stripe, reader, author, event_id="evt_checkout"):
        mock_stripe.Subscription.retrieve = MagicMock(
            return_value=subscription_object("sub_auth", author_meta(reader, author), amount=333)
        )
        session = {
            "id": "cs_author", "object": "checkout.session", "mode": "subscription",
            "subscription": "sub_auth", "invoice": "in_auth_1", "payment_intent": "pi_auth_1",
            "payment_status": "paid", "amount_total": 333, "currency": "usd",
            "metadata": author_meta(reader, author),
        }
        return deliver(db_session, gateway, config, make_event("checkout.session.completed", session, event_id))

    def test_checkout_splits_revenue(self, db_session, gateway, config, mock_stripe, reader, author):
        self._checkout(db_session, gateway, config, mock_stripe, reader, author)

        sub = db_session.query(AuthorSubscription).one()
        assert (sub.subscriber_id, sub.author_id, sub.tier_name, sub.status) == (
            reader.id, author.id, "supporter", "active"
        )
        revenue = db_session.query(AuthorRevenue).one()
        assert (revenue.gross_amount_cents, revenue.platform_fee_cents, revenue.net_amount_cents) == (333, 50, 283)
        tx = db_session.query(Transaction).one()
        assert tx.type == TransactionType.AUTHOR_SUBSCRIPTION_PAYMENT.value
        assert (tx.amount_cents, tx.platform_fee_cents, tx.author_earning_cents) == (333, 50, 283)
        assert EntitlementProjector(db_session, config).author_tier_for(reader.id, author.id) == "supporter"

    def test_replayed_checkout_is_idempotent(self, db_session, gateway, config, mock_stripe, reader, author):
        """Same event twice: the second delivery is acknowledged as a duplicate"""
        assert self._checkout(db_session, gateway, config, mock_stripe, reader, author)["status"] == "success"
        assert self._checkout(db_session, gateway, config, mock_stripe, reader, author)["status"] == "already_processed"
        assert db_session.query(AuthorSubscription).count() == 1
        assert db_session.query(AuthorRevenue).count() == 1
        assert db_session.query(Transaction).count() == 1

    def test_redelivered_checkout_with_new_event_id(self, db_session, gateway, config, mock_stripe, reader, author):
        """A different event carrying the same checkout writes no new rows"""
        self._checkout(db_session, gateway, config, mock_stripe, reader, author, event_id="evt_1")
        self._checkout(db_session, gateway, config, mock_stripe, reader, author, event_id="evt_2")
        assert db_session.query(AuthorSubscription).count() == 1
        assert db_session.query(AuthorRevenue).count() == 1
        assert db_session.query(Transaction).count() == 1

    def test_renewal_invoice(self, db_session, gateway, config, mock_stripe, reader, author):
        """invoice.paid for 500 on a supporter subscription yields a 75/425 split"""
        self._checkout(db_session, gateway, config, mock_stripe, reader, author)
        deliver(db_session, gateway, config,
                make_event("invoice.paid", invoice_object("in_auth_2", "sub_auth", 500, payment_ref="pi_auth_2")))

        revenue = db_session.query(AuthorRevenue).filter(AuthorRevenue.source_ref == "in_auth_2").one()
        assert (revenue.gross_amount_cents, revenue.platform_fee_cents, revenue.net_amount_cents) == (500, 75, 425)
        tx = db_session.query(Transaction).filter(Transaction.external_invoice_ref == "in_auth_2").one()
        assert (tx.amount_cents, tx.platform_fee_cents, tx.author_earning_cents) == (500, 75, 425)
        assert tx.author_id == author.id

    def test_invoice_before_subscription_uses_metadata(self, db_session, gateway, config, reader, author):
        invoice = invoice_object("in_early", "sub_new", 600, metadata=author_meta(reader, author, "enthusiast"))
        deliver(db_session, gateway, config, make_event("invoice.paid", invoice))

        tx = db_session.query(Transaction).one()
        assert tx.author_id == author.id
        assert (tx.platform_fee_cents, tx.author_earning_cents) == (90, 510)

    def test_invoice_without_metadata_retrieves_subscription(self, db_session, gateway, config, mock_stripe, reader, author):
        mock_stripe.Subscription.retrieve = MagicMock(
            return_value=subscription_object("sub_new", author_meta(reader, author))
        )
        deliver(db_session, gateway, config, make_event("invoice.paid", invoice_object("in_x", "sub_new", 300)))
        mock_stripe.Subscription.retrieve.assert_called_once()
        assert db_session.query(AuthorRevenue).one().net_amount_cents == 255

    def test_zero_amount_invoice_writes_nothing(self, db_session, gateway, config, reader):
        deliver(db_session, gateway, config,
                make_event("customer.subscription.created", subscription_object("sub_A", reader_meta(reader))))
        deliver(db_session, gateway, config, make_event("invoice.paid", invoice_object("in_zero", "sub_A", 0)))
        assert db_session.query(Transaction).count() == 0

    def test_resubscribe_takes_over_row(self, db_session, gateway, config, reader, author):
        meta = author_meta(reader, author)
        deliver(db_session, gateway, config,
                make_event("customer.subscription.created", subscription_object("sub_old", meta)))
        deliver(db_session, gateway, config,
                make_event("customer.subscription.deleted", subscription_object("sub_old", meta, status="canceled")))
        assert EntitlementProjector(db_session, config).author_tier_for(reader.id, author.id) is None

        deliver(db_session, gateway, config,
                make_event("customer.subscription.created",
                           subscription_object("sub_new", author_meta(reader, author, "patron"), amount=1200)))
        sub = db_session.query(AuthorSubscription).one()
        assert sub.external_subscription_ref == "sub_new"
        assert sub.status == "active"
        assert sub.tier_name == "patron"
        assert sub.canceled_at is None

    def test_late_update_after_cancel_keeps_canceled(self, db_session, gateway, config, reader, author):
        meta = author_meta(reader, author)
        created = subscription_object("sub_auth", meta)
        deliver(db_session, gateway, config, make_event("customer.subscription.created", created))
        deliver(db_session, gateway, config,
                make_event("customer.subscription.deleted", subscription_object("sub_auth", meta, status="canceled")))

        deliver(db_session, gateway, config, make_event("customer.subscription.updated", created))

        db_session.expire_all()
        sub = db_session.query(AuthorSubscription).one()
        assert sub.status == "canceled"
        assert sub.external_subscription_ref == "sub_auth"
        assert EntitlementProjector(db_session, config).author_tier_for(reader.id, author.id) is None

    def test_unknown_tier_is_skipped(self, db_session, gateway, config, reader, author):
        obj = subscription_object("sub_auth", author_meta(reader, author, "platinum"))
        result = deliver(db_session, gateway, config, make_event("customer.subscription.created", obj))
        assert result["status"] == "ignored"
        assert db_session.query(AuthorSubscription).count() == 0


@pytest.mark.high
class TestPaymentFailed:
    """Test invoice.payment_failed handling"""

    def test_marks_reader_past_due(self, db_session, gateway, config, reader):
        deliver(db_session, gateway, config,
                make_event("customer.subscription.created", subscription_object("sub_A", reader_meta(reader))))
        deliver(db_session, gateway, config,
                make_event("invoice.payment_failed", invoice_object("in_fail", "sub_A", 0)))

        db_session.expire_all()
        assert db_session.query(Subscription).one().status == "past_due"
        assert db_session.get(User, reader.id).is_premium is False

    def test_canceled_subscription_stays_canceled(self, db_session, gateway, config, reader):
        deliver(db_session, gateway, config,
                make_event("customer.subscription.deleted",
                           subscription_object("sub_A", reader_meta(reader), status="canceled")))
        deliver(db_session, gateway, config,
                make_event("invoice.payment_failed", invoice_object("in_fail", "sub_A", 0)))
        db_session.expire_all()
        assert db_session.query(Subscription).one().status == "canceled"

    def test_unknown_subscription_is_acknowledged(self, db_session, gateway, config):
        result = deliver(db_session, gateway, config,
                         make_event("invoice.payment_failed", invoice_object("in_fail", "sub_missing", 0)))
        assert result["status"] == "ignored"
