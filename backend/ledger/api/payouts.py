"""Author earnings and payout API routes"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ledger.core.config import PlatformConfig, get_platform_config
from ledger.core.errors import LedgerError, http_status
from ledger.core.security import require_auth, require_csrf
from ledger.db.session import get_db
from ledger.schemas.payouts import PayoutOut, RevenueOut
from ledger.services.gateway import PaymentGateway, get_gateway
from ledger.services.payouts import PayoutManager

router = APIRouter(prefix="/api/payouts", tags=["payouts"])
logger = logging.getLogger(__name__)


def get_payout_manager(
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    config: PlatformConfig = Depends(get_platform_config),
) -> PayoutManager:
    return PayoutManager(db, config, gateway)


@router.get("/balance")
def get_balance(user_id: int = Depends(require_auth), manager: PayoutManager = Depends(get_payout_manager)):
    """Earnings, paid and pending totals for the current author"""
    return manager.earnings_summary(user_id)


@router.get("/history")
def get_history(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user_id: int = Depends(require_auth),
    manager: PayoutManager = Depends(get_payout_manager),
):
    """Payout and revenue history for the current author"""
    payouts = manager.payout_history(user_id, limit=limit, offset=offset)
    revenue = manager.revenue_history(user_id, limit=limit, offset=offset)
    return {
        "payouts": [PayoutOut.model_validate(p).model_dump(mode="json") for p in payouts],
        "revenue": [RevenueOut.model_validate(r).model_dump(mode="json") for r in revenue],
    }


@router.post("/request")
def request_payout(user_id: int = Depends(require_csrf), manager: PayoutManager = Depends(get_payout_manager)):
    """Pay out the author's full available balance"""
    try:
        payout = manager.request_payout(user_id)
    except LedgerError as e:
        logger.warning(f"Payout request by author {user_id} refused: {e.reason}")
        raise HTTPException(http_status(e), e.reason)
    return {"payout": PayoutOut.model_validate(payout).model_dump(mode="json")}


@router.post("/login-link")
def create_login_link(user_id: int = Depends(require_csrf), manager: PayoutManager = Depends(get_payout_manager)):
    """Single-use link to the author's gateway dashboard"""
    try:
        url = manager.create_login_link(user_id)
    except LedgerError as e:
        raise HTTPException(http_status(e), e.reason)
    return {"url": url}
