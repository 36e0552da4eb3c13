"""Natural-key upserts and model invariants"""
from datetime import datetime, timedelta, timezone

import pytest

from ledger.core.errors import InvalidTransition, InvariantViolation
from ledger.db.helpers import as_utc, upsert
from ledger.models.author_subscription import AuthorSubscription
from ledger.models.fraud_flag import FraudFlag
from ledger.models.payout import Payout
from ledger.models.stripe_event import StripeEvent
from ledger.models.subscription import Subscription
from ledger.models.transaction import Transaction

NOW = datetime.now(timezone.utc)


def reader_sub_values(user, status="active", **overrides):
    values = {
        "user_id": user.id,
        "status": status,
        "billing_interval": "monthly",
        "external_subscription_ref": "sub_1",
        "amount_cents": 300,
        "current_period_start": NOW,
        "current_period_end": NOW + timedelta(days=30),
    }
    values.update(overrides)
    return values


@pytest.mark.critical
class TestUpsert:
    """Test natural-key conflict policies"""

    def test_update_policy_overwrites_state(self, db_session, reader):
        row, applied = upsert(db_session, Subscription, reader_sub_values(reader))
        assert applied is True
        first_id = row.id

        row, applied = upsert(db_session, Subscription, reader_sub_values(reader, status="past_due"))
        db_session.commit()
        assert applied is True
        assert row.id == first_id
        assert row.status == "past_due"
        assert db_session.query(Subscription).count() == 1

    def test_update_preserves_owner(self, db_session, reader, author):
        upsert(db_session, Subscription, reader_sub_values(reader))
        row, _ = upsert(db_session, Subscription, reader_sub_values(author))
        assert row.user_id == reader.id

    def test_terminal_row_is_not_updated(self, db_session, reader):
        upsert(db_session, Subscription, reader_sub_values(reader, status="canceled"))
        row, applied = upsert(db_session, Subscription, reader_sub_values(reader, status="active"))
        assert applied is False
        assert row.status == "canceled"

    def test_new_reference_reopens_terminal_row(self, db_session, reader, author):
        values = {
            "subscriber_id": reader.id, "author_id": author.id, "tier_name": "supporter",
            "status": "canceled", "external_subscription_ref": "sub_old", "amount_cents": 300,
            "current_period_start": NOW, "current_period_end": NOW + timedelta(days=30),
        }
        upsert(db_session, AuthorSubscription, values)
        _, applied = upsert(db_session, AuthorSubscription, {**values, "status": "active"})
        assert applied is False

        row, applied = upsert(db_session, AuthorSubscription,
                              {**values, "status": "active", "external_subscription_ref": "sub_new"})
        assert applied is True
        assert (row.status, row.external_subscription_ref) == ("active", "sub_new")

    def test_fill_column_only_replaces_null(self, db_session, reader):
        values = {"user_id": reader.id, "type": "subscription_payment", "status": "succeeded",
                  "amount_cents": 300, "platform_fee_cents": 300, "author_earning_cents": 0,
                  "external_invoice_ref": "in_1", "external_payment_ref": None}
        upsert(db_session, Transaction, values)

        row, applied = upsert(db_session, Transaction, {**values, "external_payment_ref": "pi_1"})
        assert applied is True
        assert row.external_payment_ref == "pi_1"

        row, applied = upsert(db_session, Transaction, {**values, "external_payment_ref": "pi_2"})
        assert applied is False
        assert row.external_payment_ref == "pi_1"
        assert db_session.query(Transaction).count() == 1

    def test_ignore_policy_keeps_first(self, db_session):
        event = {"stripe_event_id": "evt_1", "event_type": "invoice.paid", "payload": {"v": 1}}
        row, applied = upsert(db_session, StripeEvent, event)
        assert applied is True
        row, applied = upsert(db_session, StripeEvent, {**event, "payload": {"v": 2}})
        assert applied is False
        assert row.payload == {"v": 1}
        assert db_session.query(StripeEvent).count() == 1

    def test_partial_key_only_covers_open_flags(self, db_session, reader):
        values = {"user_id": reader.id, "flag_type": "velocity", "details": {}, "status": "open"}
        _, applied = upsert(db_session, FraudFlag, values)
        assert applied is True
        _, applied = upsert(db_session, FraudFlag, values)
        assert applied is False

        db_session.query(FraudFlag).update({"status": "dismissed"})
        _, applied = upsert(db_session, FraudFlag, values)
        assert applied is True
        assert db_session.query(FraudFlag).count() == 2

    def test_missing_key_column(self, db_session, reader):
        with pytest.raises(ValueError, match="external_subscription_ref"):
            upsert(db_session, Subscription, reader_sub_values(reader, external_subscription_ref=None))

    def test_as_utc(self):
        naive = datetime(2026, 1, 1, 12, 0)
        assert as_utc(naive).tzinfo == timezone.utc
        assert as_utc(None) is None
        assert as_utc(NOW) is NOW


@pytest.mark.critical
class TestTransactionInvariants:
    """Test transaction immutability and status transitions"""

    def _tx(self, db_session, user, status="succeeded"):
        tx = Transaction(user_id=user.id, type="tip", status=status, amount_cents=500,
                         platform_fee_cents=75, author_earning_cents=425, external_invoice_ref="in_tip")
        db_session.add(tx)
        db_session.commit()
        return tx

    def test_amounts_are_immutable(self, db_session, reader):
        tx = self._tx(db_session, reader)
        with pytest.raises(InvariantViolation):
            tx.amount_cents = 400

    def test_allowed_transitions(self, db_session, reader):
        tx = self._tx(db_session, reader, status="pending")
        tx.status = "succeeded"
        tx.status = "refunded"
        db_session.commit()
        assert tx.status == "refunded"

    def test_refunded_is_terminal(self, db_session, reader):
        tx = self._tx(db_session, reader, status="refunded")
        with pytest.raises(InvalidTransition):
            tx.status = "succeeded"

    def test_paid_payout_is_terminal(self, db_session, author):
        payout = Payout(author_id=author.id, amount_cents=2500, status="paid")
        db_session.add(payout)
        db_session.commit()
        with pytest.raises(InvalidTransition):
            payout.status = "failed"
