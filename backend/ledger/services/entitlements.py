"""Entitlement projection.

Premium access and author tiers are derived from subscription rows only.
``User.is_premium`` and the Redis entry are caches of this projection and
can be dropped and rebuilt at any time.
"""
import logging
from typing import Dict, Optional

import redis
from sqlalchemy import exists
from sqlalchemy.orm import Session

from ledger.core.config import PlatformConfig
from ledger.db.redis import get_cached_entitlements, set_cached_entitlements, invalidate_entitlements_cache
from ledger.models.author_subscription import AuthorSubscription
from ledger.models.subscription import Subscription, ENTITLED_STATUSES, SubscriptionStatus
from ledger.models.user import User

logger = logging.getLogger(__name__)


class EntitlementProjector:
    def __init__(self, db: Session, config: PlatformConfig):
        self.db = db
        self.config = config

    def is_premium(self, user_id: int) -> bool:
        return self.db.query(
            exists().where(
                Subscription.user_id == user_id,
                Subscription.status.in_(ENTITLED_STATUSES),
            )
        ).scalar()

    def author_tiers(self, subscriber_id: int) -> Dict[int, str]:
        """Highest active tier per author for a subscriber"""
        rows = self.db.query(AuthorSubscription.author_id, AuthorSubscription.tier_name).filter(
            AuthorSubscription.subscriber_id == subscriber_id,
            AuthorSubscription.status == SubscriptionStatus.ACTIVE.value,
        ).all()
        tiers: Dict[int, str] = {}
        for author_id, tier_name in rows:
            current = tiers.get(author_id)
            if current is None or self.config.tier_rank(tier_name) > self.config.tier_rank(current):
                tiers[author_id] = tier_name
        return tiers

    def author_tier_for(self, subscriber_id: int, author_id: int) -> Optional[str]:
        """Highest active tier the subscriber holds for this author, None if none"""
        return self.author_tiers(subscriber_id).get(author_id)

    def satisfies_tier(self, subscriber_id: int, author_id: int, min_tier: str) -> bool:
        """Whether the subscriber's tier meets a content gate's minimum tier"""
        required = self.config.tier_rank(min_tier)
        if required < 0:
            raise ValueError(f"Unknown tier '{min_tier}'")
        tier = self.author_tier_for(subscriber_id, author_id)
        return tier is not None and self.config.tier_rank(tier) >= required

    def entitlements_for(self, user_id: int) -> Dict:
        """Full projection for a user, served from Redis when cached"""
        try:
            cached = get_cached_entitlements(user_id)
        except redis.RedisError as e:
            logger.warning(f"Entitlement cache read failed for user {user_id}: {e}")
            cached = None
        if cached is not None:
            return cached

        projection = {
            "user_id": user_id,
            "is_premium": self.is_premium(user_id),
            # JSON object keys are strings
            "author_tiers": {str(k): v for k, v in self.author_tiers(user_id).items()},
        }
        try:
            set_cached_entitlements(user_id, projection)
        except redis.RedisError as e:
            logger.warning(f"Entitlement cache write failed for user {user_id}: {e}")
        return projection

    def recompute_premium(self, user_id: int) -> bool:
        """Refresh the premium cache for one user after a subscription write"""
        premium = self.is_premium(user_id)
        self.db.query(User).filter(User.id == user_id).update(
            {"is_premium": premium}, synchronize_session=False
        )
        invalidate_entitlements_cache(user_id)
        logger.debug(f"User {user_id} premium={premium}")
        return premium

    def invalidate(self, user_id: int) -> None:
        invalidate_entitlements_cache(user_id)

    def rebuild_all(self) -> Dict[str, int]:
        """Recompute every user's premium cache from subscription rows"""
        entitled = {
            user_id for (user_id,) in self.db.query(Subscription.user_id).filter(
                Subscription.status.in_(ENTITLED_STATUSES)
            ).distinct()
        }
        changed = 0
        users = self.db.query(User).all()
        for user in users:
            premium = user.id in entitled
            if user.is_premium != premium:
                user.is_premium = premium
                changed += 1
            invalidate_entitlements_cache(user.id)
        self.db.commit()
        logger.info(f"Entitlement rebuild: {len(users)} users checked, {changed} corrected")
        return {"users_checked": len(users), "users_corrected": changed}
