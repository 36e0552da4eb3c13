"""Admin API routes: refunds, payout holds, fraud review and reporting"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ledger.core.config import PlatformConfig, get_platform_config
from ledger.core.errors import LedgerError, http_status
from ledger.core.security import require_admin, require_admin_get
from ledger.db.session import get_db
from ledger.models.user import User
from ledger.schemas.admin import FraudReviewRequest, PayoutHoldRequest, ProcessPayoutRequest, RefundRequest
from ledger.schemas.payouts import FraudFlagOut, PayoutAccountOut, PayoutOut, TransactionOut
from ledger.services.entitlements import EntitlementProjector
from ledger.services.fraud_scanner import FraudScanner
from ledger.services.gateway import PaymentGateway, get_gateway
from ledger.services.payouts import PayoutManager
from ledger.services.refunds import RefundHoldActuator
from ledger.services.reporting import financial_report

router = APIRouter(prefix="/api/admin", tags=["admin"])
logger = logging.getLogger(__name__)


@router.post("/refund")
def refund_transaction(
    request_data: RefundRequest,
    admin_user: User = Depends(require_admin),
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    config: PlatformConfig = Depends(get_platform_config),
):
    """Refund a succeeded transaction (admin only)"""
    try:
        refund = RefundHoldActuator(db, config, gateway).refund(
            request_data.transaction_id, admin_id=admin_user.id, reason=request_data.reason
        )
    except LedgerError as e:
        raise HTTPException(http_status(e), e.reason)
    return {"refund": TransactionOut.model_validate(refund).model_dump(mode="json")}


@router.post("/payout-hold")
def set_payout_hold(
    request_data: PayoutHoldRequest,
    admin_user: User = Depends(require_admin),
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    config: PlatformConfig = Depends(get_platform_config),
):
    """Place or lift a payout hold on an author (admin only)"""
    try:
        account = RefundHoldActuator(db, config, gateway).set_hold(
            request_data.author_id, request_data.hold, reason=request_data.reason, admin_id=admin_user.id
        )
    except LedgerError as e:
        raise HTTPException(http_status(e), e.reason)
    return {"account": PayoutAccountOut.model_validate(account).model_dump(mode="json")}


@router.post("/process-payout")
def process_payout(
    request_data: ProcessPayoutRequest,
    admin_user: User = Depends(require_admin),
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    config: PlatformConfig = Depends(get_platform_config),
):
    """Pay an author manually (admin only)"""
    try:
        payout = PayoutManager(db, config, gateway).request_payout(
            request_data.author_id, amount_cents=request_data.amount_cents, processed_by=admin_user.id
        )
    except LedgerError as e:
        logger.warning(f"Manual payout for author {request_data.author_id} by admin {admin_user.id} failed: {e.reason}")
        raise HTTPException(http_status(e), e.reason)
    return {"payout": PayoutOut.model_validate(payout).model_dump(mode="json")}


@router.post("/fraud-scan")
def run_fraud_scan(
    admin_user: User = Depends(require_admin),
    db: Session = Depends(get_db),
    config: PlatformConfig = Depends(get_platform_config),
):
    """Run every fraud heuristic now (admin only)"""
    return FraudScanner(db, config).run()


@router.get("/fraud-flags")
def list_fraud_flags(
    status: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    admin_user: User = Depends(require_admin_get),
    db: Session = Depends(get_db),
    config: PlatformConfig = Depends(get_platform_config),
):
    """List fraud flags, newest first (admin only)"""
    flags = FraudScanner(db, config).list_flags(status=status, limit=limit, offset=offset)
    return {"flags": [FraudFlagOut.model_validate(f).model_dump(mode="json") for f in flags]}


@router.patch("/fraud-review")
def review_fraud_flag(
    request_data: FraudReviewRequest,
    admin_user: User = Depends(require_admin),
    db: Session = Depends(get_db),
    config: PlatformConfig = Depends(get_platform_config),
):
    """Mark an open fraud flag reviewed or dismissed (admin only)"""
    try:
        flag = FraudScanner(db, config).review_flag(
            request_data.flag_id, request_data.status, admin_user.id, notes=request_data.notes
        )
    except LedgerError as e:
        raise HTTPException(http_status(e), e.reason)
    return {"flag": FraudFlagOut.model_validate(flag).model_dump(mode="json")}


@router.get("/financial-report")
def get_financial_report(
    period: str = Query("this_month"),
    admin_user: User = Depends(require_admin_get),
    db: Session = Depends(get_db),
):
    """Revenue, fees, refunds and subscription counts for a period (admin only)"""
    try:
        return financial_report(db, period)
    except ValueError as e:
        raise HTTPException(400, str(e))


@router.post("/entitlements/rebuild")
def rebuild_entitlements(
    admin_user: User = Depends(require_admin),
    db: Session = Depends(get_db),
    config: PlatformConfig = Depends(get_platform_config),
):
    """Recompute every user's premium flag from subscription rows (admin only)"""
    return EntitlementProjector(db, config).rebuild_all()
