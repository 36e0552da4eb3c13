"""Admin financial reporting over the ledger"""
from collections import defaultdict
from datetime import datetime, timezone
from typing import Dict, Optional

from sqlalchemy.orm import Session

from ledger.db.helpers import as_utc
from ledger.models.author_subscription import AuthorSubscription
from ledger.models.subscription import Subscription, SubscriptionStatus
from ledger.models.transaction import Transaction, TransactionStatus, TransactionType
from ledger.models.user import User

REPORT_PERIODS = ("this_month", "last_3_months", "this_year", "all_time")
TOP_AUTHORS_LIMIT = 10


def period_start(period: str, now: Optional[datetime] = None) -> Optional[datetime]:
    """First instant of a report period, None for all_time"""
    now = now or datetime.now(timezone.utc)
    if period == "this_month":
        return datetime(now.year, now.month, 1, tzinfo=timezone.utc)
    if period == "last_3_months":
        month = now.month - 3
        year = now.year
        if month < 1:
            month += 12
            year -= 1
        return datetime(year, month, 1, tzinfo=timezone.utc)
    if period == "this_year":
        return datetime(now.year, 1, 1, tzinfo=timezone.utc)
    if period == "all_time":
        return None
    raise ValueError(f"Unknown period '{period}'. Use one of: {', '.join(REPORT_PERIODS)}")


def financial_report(db: Session, period: str = "this_month", now: Optional[datetime] = None) -> Dict:
    """Revenue, fees, refunds, MRR and subscription counts for a period.

    Gross revenue counts every charged payment in the period, including ones
    refunded later; refunds are reported separately as positive amounts.
    """
    start = period_start(period, now)

    query = db.query(Transaction)
    if start is not None:
        query = query.filter(Transaction.created_at >= start)
    transactions = query.all()

    charged_statuses = (TransactionStatus.SUCCEEDED.value, TransactionStatus.REFUNDED.value)
    gross = platform_fees = author_earnings = refunds = 0
    monthly = defaultdict(lambda: {"gross": 0, "platform_fees": 0, "author_earnings": 0, "refunds": 0})
    author_totals: Dict[int, int] = defaultdict(int)

    for tx in transactions:
        month = as_utc(tx.created_at).strftime("%Y-%m")
        if tx.type == TransactionType.REFUND.value:
            refunds += abs(tx.amount_cents)
            monthly[month]["refunds"] += abs(tx.amount_cents)
            if tx.author_id is not None:
                author_totals[tx.author_id] += tx.author_earning_cents
        elif tx.status in charged_statuses:
            gross += tx.amount_cents
            platform_fees += tx.platform_fee_cents
            author_earnings += tx.author_earning_cents
            monthly[month]["gross"] += tx.amount_cents
            monthly[month]["platform_fees"] += tx.platform_fee_cents
            monthly[month]["author_earnings"] += tx.author_earning_cents
            if tx.author_id is not None:
                author_totals[tx.author_id] += tx.author_earning_cents

    monthly_breakdown = [
        {"month": month, **values}
        for month, values in sorted(monthly.items(), key=lambda kv: kv[0], reverse=True)
    ]

    # Subscriptions
    readers = db.query(Subscription).all()
    authors = db.query(AuthorSubscription).all()
    active = SubscriptionStatus.ACTIVE.value
    active_readers = [s for s in readers if s.status == active]
    active_authors = [s for s in authors if s.status == active]

    def _in_period(value):
        return value is not None and (start is None or as_utc(value) >= start)

    all_subs = list(readers) + list(authors)
    new_in_period = sum(1 for s in all_subs if _in_period(s.created_at))
    canceled_in_period = sum(1 for s in all_subs if _in_period(s.canceled_at))

    monthly_mrr = sum(s.amount_cents for s in active_readers if s.billing_interval == "monthly")
    monthly_mrr += sum(s.amount_cents for s in active_authors)
    annual_total = sum(s.amount_cents for s in active_readers if s.billing_interval == "annual")
    mrr = monthly_mrr + int(round(annual_total / 12))

    # Top authors
    top = sorted(author_totals.items(), key=lambda kv: kv[1], reverse=True)[:TOP_AUTHORS_LIMIT]
    emails = {}
    if top:
        emails = dict(db.query(User.id, User.email).filter(User.id.in_([a for a, _ in top])).all())
    top_authors = [
        {"author_id": author_id, "email": emails.get(author_id, "Unknown"), "earnings_cents": earnings}
        for author_id, earnings in top
    ]

    return {
        "period": period,
        "period_start": start.isoformat() if start else None,
        "summary": {
            "gross_revenue_cents": gross,
            "platform_fees_cents": platform_fees,
            "author_earnings_cents": author_earnings,
            "refunds_cents": refunds,
            "mrr_cents": mrr,
        },
        "monthly_breakdown": monthly_breakdown,
        "subscriptions": {
            "total_active": len(active_readers) + len(active_authors),
            "new_in_period": new_in_period,
            "canceled_in_period": canceled_in_period,
            "by_kind": {
                "reader_premium": len(active_readers),
                "author_subscription": len(active_authors),
            },
        },
        "top_authors": top_authors,
    }
