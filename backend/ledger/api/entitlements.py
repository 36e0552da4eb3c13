"""Entitlement lookups for content gating"""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ledger.core.config import PlatformConfig, get_platform_config
from ledger.core.security import require_auth
from ledger.db.session import get_db
from ledger.services.entitlements import EntitlementProjector

router = APIRouter(prefix="/api/entitlements", tags=["entitlements"])


@router.get("")
def get_entitlements(
    user_id: int = Depends(require_auth),
    db: Session = Depends(get_db),
    config: PlatformConfig = Depends(get_platform_config),
):
    """Premium flag and per-author tiers for the current user"""
    return EntitlementProjector(db, config).entitlements_for(user_id)


@router.get("/premium")
def get_premium(
    user_id: int = Depends(require_auth),
    db: Session = Depends(get_db),
    config: PlatformConfig = Depends(get_platform_config),
):
    return {"is_premium": EntitlementProjector(db, config).is_premium(user_id)}


@router.get("/authors/{author_id}")
def get_author_tier(
    author_id: int,
    min_tier: Optional[str] = Query(None),
    user_id: int = Depends(require_auth),
    db: Session = Depends(get_db),
    config: PlatformConfig = Depends(get_platform_config),
):
    """Tier held for one author, and whether it meets ``min_tier`` when given"""
    projector = EntitlementProjector(db, config)
    result = {"author_id": author_id, "tier": projector.author_tier_for(user_id, author_id)}
    if min_tier is not None:
        try:
            result["satisfies"] = projector.satisfies_tier(user_id, author_id, min_tier)
        except ValueError as e:
            raise HTTPException(400, str(e))
    return result
