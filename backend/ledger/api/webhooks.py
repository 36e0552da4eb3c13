"""Payment gateway webhook endpoint"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from ledger.core.config import PlatformConfig, get_platform_config
from ledger.core.errors import GatewayCommandFailed, SignatureInvalid
from ledger.db.session import get_db
from ledger.services.gateway import PaymentGateway, get_gateway
from ledger.services.webhook_service import process_gateway_webhook

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])
logger = logging.getLogger(__name__)


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    config: PlatformConfig = Depends(get_platform_config),
):
    """Handle Stripe webhook events

    The body must stay raw bytes until the signature has been checked.
    200 acknowledges the delivery (including ignored and duplicate events);
    500 asks the gateway to redeliver.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    try:
        return process_gateway_webhook(payload, sig_header, db, gateway, config)
    except SignatureInvalid as e:
        logger.warning(f"Rejected webhook: {e.reason}")
        raise HTTPException(400, "Invalid signature")
    except GatewayCommandFailed as e:
        return JSONResponse(status_code=500, content={"status": "retry", "error": e.reason})
    except Exception as e:
        logger.error(f"Unexpected error processing webhook: {e}", exc_info=True)
        return JSONResponse(status_code=500, content={"status": "error", "message": "Webhook processing failed"})
