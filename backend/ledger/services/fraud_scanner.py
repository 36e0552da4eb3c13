"""Fraud heuristics over subscription and transaction history.

The scanner only ever writes FraudFlag rows. Flags stay ``open`` until an
administrator reviews or dismisses them; nothing is blocked automatically.
"""
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from ledger.core.config import PlatformConfig
from ledger.core.errors import InvalidTransition, NotFound
from ledger.core.logging import fraud_logger
from ledger.core.metrics import fraud_flags_counter, fraud_scan_runs_counter, open_fraud_flags_gauge
from ledger.db.helpers import as_utc, upsert
from ledger.models.author_subscription import AuthorSubscription
from ledger.models.fraud_flag import FraudFlag, FraudFlagStatus, FraudFlagType
from ledger.models.subscription import Subscription
from ledger.models.transaction import Transaction, TransactionStatus, TransactionType

Findings = Dict[int, Dict]

REVIEW_STATUSES = (FraudFlagStatus.REVIEWED.value, FraudFlagStatus.DISMISSED.value)


class FraudScanner:
    def __init__(self, db: Session, config: PlatformConfig):
        self.db = db
        self.config = config

    def _subscriptions(self):
        """(user_id, ref, created_at, canceled_at) across reader and author subscriptions"""
        reader = self.db.query(
            Subscription.user_id, Subscription.external_subscription_ref,
            Subscription.created_at, Subscription.canceled_at,
        ).all()
        author = self.db.query(
            AuthorSubscription.subscriber_id, AuthorSubscription.external_subscription_ref,
            AuthorSubscription.created_at, AuthorSubscription.canceled_at,
        ).all()
        return [(u, ref, as_utc(c), as_utc(x)) for u, ref, c, x in list(reader) + list(author)]

    def rapid_cancel(self, now: datetime) -> Findings:
        """Users who cancelled soon after subscribing, repeatedly"""
        window = timedelta(days=self.config.rapid_cancel_days)
        refs = defaultdict(list)
        for user_id, ref, created_at, canceled_at in self._subscriptions():
            if canceled_at is not None and canceled_at - created_at <= window:
                refs[user_id].append(ref)
        return {
            user_id: {
                "cancel_count": len(found),
                "within_days": self.config.rapid_cancel_days,
                "subscription_refs": sorted(found),
            }
            for user_id, found in refs.items()
            if len(found) >= self.config.rapid_cancel_min_count
        }

    def high_volume_subs(self, now: datetime) -> Findings:
        """Users who created too many subscriptions inside the rolling window"""
        since = now - timedelta(hours=self.config.high_volume_window_hours)
        created = defaultdict(list)
        for user_id, _, created_at, _ in self._subscriptions():
            if created_at >= since:
                created[user_id].append(created_at)
        return {
            user_id: {
                "subscription_count": len(stamps),
                "window_hours": self.config.high_volume_window_hours,
                "first_sub": min(stamps).isoformat(),
                "last_sub": max(stamps).isoformat(),
            }
            for user_id, stamps in created.items()
            if len(stamps) > self.config.high_volume_max_subs
        }

    def excessive_refunds(self, now: datetime) -> Findings:
        """Users whose refunded share of payments is at or above the threshold"""
        rows = self.db.query(Transaction.user_id, Transaction.status).filter(
            Transaction.type != TransactionType.REFUND.value,
            Transaction.status.in_((TransactionStatus.SUCCEEDED.value, TransactionStatus.REFUNDED.value)),
        ).all()
        stats = defaultdict(lambda: {"total": 0, "refunded": 0})
        for user_id, status in rows:
            stats[user_id]["total"] += 1
            if status == TransactionStatus.REFUNDED.value:
                stats[user_id]["refunded"] += 1

        findings = {}
        for user_id, s in stats.items():
            if s["total"] < self.config.refund_min_transactions:
                continue
            ratio = s["refunded"] / s["total"]
            if ratio >= self.config.refund_ratio_threshold:
                findings[user_id] = {
                    "total_transactions": s["total"],
                    "refund_count": s["refunded"],
                    "refund_rate": round(ratio, 4),
                }
        return findings

    def velocity(self, now: datetime) -> Findings:
        """Users with a burst of payments inside the velocity window"""
        since = now - timedelta(minutes=self.config.velocity_window_minutes)
        rows = self.db.query(Transaction.user_id, Transaction.created_at).filter(
            Transaction.type != TransactionType.REFUND.value,
        ).all()
        counts = defaultdict(int)
        for user_id, created_at in rows:
            if as_utc(created_at) >= since:
                counts[user_id] += 1
        return {
            user_id: {
                "transactions_in_window": count,
                "window_minutes": self.config.velocity_window_minutes,
            }
            for user_id, count in counts.items()
            if count > self.config.velocity_max_transactions
        }

    def suspicious_pattern(self, base: Dict[str, Findings], now: datetime) -> Findings:
        """Two or more base heuristics on one user, or a payment velocity burst"""
        reasons = defaultdict(list)
        for flag_type, findings in base.items():
            for user_id in findings:
                reasons[user_id].append(flag_type)

        findings = {}
        for user_id, types in reasons.items():
            if len(types) >= 2:
                findings[user_id] = {"matched_heuristics": sorted(types)}
        for user_id, details in self.velocity(now).items():
            findings.setdefault(user_id, {}).update({"velocity": details})
        return findings

    def run(self, now: Optional[datetime] = None) -> Dict:
        """Evaluate every heuristic and open flags that are not already open"""
        now = now or datetime.now(timezone.utc)
        try:
            base = {
                FraudFlagType.RAPID_CANCEL.value: self.rapid_cancel(now),
                FraudFlagType.HIGH_VOLUME_SUBS.value: self.high_volume_subs(now),
                FraudFlagType.EXCESSIVE_REFUNDS.value: self.excessive_refunds(now),
            }
            all_findings = dict(base)
            all_findings[FraudFlagType.SUSPICIOUS_PATTERN.value] = self.suspicious_pattern(base, now)

            new_flags: Dict[str, List[int]] = defaultdict(list)
            for flag_type, findings in all_findings.items():
                for user_id, details in findings.items():
                    _, created = upsert(self.db, FraudFlag, {
                        "user_id": user_id,
                        "flag_type": flag_type,
                        "details": details,
                        "status": FraudFlagStatus.OPEN.value,
                    })
                    if created:
                        new_flags[flag_type].append(user_id)
                        fraud_flags_counter.labels(flag_type=flag_type).inc()
            self.db.commit()
        except Exception:
            self.db.rollback()
            fraud_scan_runs_counter.labels(status="error").inc()
            raise

        open_count = self.db.query(FraudFlag).filter(FraudFlag.status == FraudFlagStatus.OPEN.value).count()
        open_fraud_flags_gauge.set(open_count)
        fraud_scan_runs_counter.labels(status="success").inc()

        total_new = sum(len(users) for users in new_flags.values())
        if total_new:
            fraud_logger.warning(f"Fraud scan opened {total_new} flag(s): {dict(new_flags)}")
        else:
            fraud_logger.info("Fraud scan found nothing new")
        return {"new_flags": total_new, "flagged": dict(new_flags), "open_flags": open_count}

    def list_flags(self, status: Optional[str] = None, limit: int = 100, offset: int = 0) -> List[FraudFlag]:
        query = self.db.query(FraudFlag)
        if status:
            query = query.filter(FraudFlag.status == status)
        return query.order_by(FraudFlag.created_at.desc(), FraudFlag.id.desc()).offset(offset).limit(limit).all()

    def review_flag(self, flag_id: int, status: str, reviewer_id: int, notes: Optional[str] = None) -> FraudFlag:
        """Close an open flag as reviewed or dismissed"""
        flag = self.db.query(FraudFlag).filter(FraudFlag.id == flag_id).first()
        if flag is None:
            raise NotFound("Fraud flag not found")
        if status not in REVIEW_STATUSES:
            raise InvalidTransition(f"Flags can only be marked {' or '.join(REVIEW_STATUSES)}")
        if flag.status != FraudFlagStatus.OPEN.value:
            raise InvalidTransition(f"Flag {flag_id} is already {flag.status}")

        flag.status = status
        flag.review_notes = notes
        flag.reviewed_by = reviewer_id
        flag.reviewed_at = datetime.now(timezone.utc)
        self.db.commit()
        self.db.refresh(flag)
        fraud_logger.info(f"Fraud flag {flag_id} ({flag.flag_type}, user {flag.user_id}) {status} by {reviewer_id}")
        return flag
