"""Webhook pipeline: verify -> log -> route -> write -> mark processed"""
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from ledger.core.config import PlatformConfig, get_platform_config, settings
from ledger.core.errors import (
    DuplicateEvent,
    GatewayCommandFailed,
    InvariantViolation,
    MissingMetadata,
    UnknownEventType,
)
from ledger.core.logging import webhook_logger
from ledger.core.metrics import webhook_events_counter
from ledger.core.otel import ledger_span, tag
from ledger.db.helpers import upsert
from ledger.models.stripe_event import StripeEvent
from ledger.services.event_router import route_event
from ledger.services.event_verifier import VerifiedEvent, verify_event
from ledger.services.gateway import PaymentGateway
from ledger.services.ledger_writer import LedgerWriter


def log_stripe_event(event: VerifiedEvent, db: Session) -> StripeEvent:
    """Record an event in the log (once per event id) and return its row"""
    row, _ = upsert(db, StripeEvent, {
        "stripe_event_id": event.id,
        "event_type": event.type,
        "payload": event.payload,
        "processed": False,
    })
    db.commit()
    return row


def mark_stripe_event_processed(event_id: str, db: Session, error_message: Optional[str] = None):
    """Mark an event handled; commits along with any rows its handler wrote"""
    stripe_event = db.query(StripeEvent).filter(StripeEvent.stripe_event_id == event_id).first()
    if stripe_event:
        stripe_event.processed = True
        stripe_event.processed_at = datetime.now(timezone.utc)
        stripe_event.error_message = error_message
    db.commit()


def record_stripe_event_error(event_id: str, db: Session, error_message: str):
    """Keep the failure on the log row but leave it unprocessed for redelivery"""
    stripe_event = db.query(StripeEvent).filter(StripeEvent.stripe_event_id == event_id).first()
    if stripe_event:
        stripe_event.error_message = error_message
        db.commit()


def process_gateway_webhook(
    payload: bytes,
    sig_header: Optional[str],
    db: Session,
    gateway: PaymentGateway,
    config: Optional[PlatformConfig] = None,
) -> Dict[str, Any]:
    """Process one gateway webhook delivery.

    Non-retriable outcomes (unknown type, missing metadata, duplicate,
    invariant violation, permanent gateway rejection) roll back the handler
    and return a status dict so the endpoint acknowledges with 200.

    Raises:
        SignatureInvalid: authentication failed; nothing was written
        GatewayCommandFailed: transient gateway failure after retries
        Exception: any unexpected handler error (the endpoint answers 500)
    """
    config = config or get_platform_config()
    try:
        event = verify_event(payload, sig_header, settings.STRIPE_WEBHOOK_SECRET, settings.STRIPE_WEBHOOK_TOLERANCE)
    except MissingMetadata as e:
        webhook_logger.warning(f"Ignoring signed but malformed webhook: {e.reason}")
        webhook_events_counter.labels(event_type="unknown", outcome="malformed").inc()
        return {"status": "ignored", "reason": e.reason}

    with ledger_span("ledger.webhook", event_id=event.id, event_type=event.type) as span:
        result = _apply_event(event, db, gateway, config)
        tag(span, outcome=result["status"])
    return result


def _apply_event(event: VerifiedEvent, db: Session, gateway: PaymentGateway, config: PlatformConfig) -> Dict[str, Any]:
    """Log, route and write one verified event; returns the acknowledgement body"""
    try:
        stripe_event = log_stripe_event(event, db)
        if stripe_event.processed:
            raise DuplicateEvent(event.id)

        route = route_event(event)
        LedgerWriter(db, config, gateway).apply(route, event)
        mark_stripe_event_processed(event.id, db)
    except DuplicateEvent as e:
        webhook_logger.info(e.reason)
        webhook_events_counter.labels(event_type=event.type, outcome="duplicate").inc()
        return {"status": "already_processed"}
    except UnknownEventType as e:
        db.rollback()
        webhook_logger.debug(e.reason)
        mark_stripe_event_processed(event.id, db)
        webhook_events_counter.labels(event_type=event.type, outcome="ignored").inc()
        return {"status": "ignored", "reason": e.reason}
    except MissingMetadata as e:
        db.rollback()
        webhook_logger.warning(f"Event {event.id} ({event.type}) skipped: {e.reason}")
        mark_stripe_event_processed(event.id, db, error_message=e.reason)
        webhook_events_counter.labels(event_type=event.type, outcome="missing_metadata").inc()
        return {"status": "ignored", "reason": e.reason}
    except (InvariantViolation, GatewayCommandFailed) as e:
        db.rollback()
        if e.retriable:
            webhook_logger.error(f"Event {event.id} ({event.type}) will be redelivered: {e.reason}")
            record_stripe_event_error(event.id, db, e.reason)
            webhook_events_counter.labels(event_type=event.type, outcome="retry").inc()
            raise
        webhook_logger.error(f"Event {event.id} ({event.type}) needs manual reconciliation: {e.reason}")
        mark_stripe_event_processed(event.id, db, error_message=e.reason)
        webhook_events_counter.labels(event_type=event.type, outcome="error_logged").inc()
        return {"status": "error_logged", "error": e.reason}
    except Exception as e:
        db.rollback()
        webhook_logger.error(f"Error processing webhook {event.id}: {e}", exc_info=True)
        record_stripe_event_error(event.id, db, str(e))
        webhook_events_counter.labels(event_type=event.type, outcome="error").inc()
        raise

    webhook_events_counter.labels(event_type=event.type, outcome="processed").inc()
    webhook_logger.info(f"Successfully processed webhook event {event.id} of type {event.type}")
    return {"status": "success"}
