"""Inbound webhook authentication"""
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import stripe

from ledger.core.errors import MissingMetadata, SignatureInvalid

logger = logging.getLogger(__name__)


@dataclass
class VerifiedEvent:
    id: str
    type: str
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def data_object(self) -> Dict[str, Any]:
        return self.payload["data"]["object"]

    @property
    def metadata(self) -> Dict[str, Any]:
        return self.data_object.get("metadata") or {}


def verify_event(payload: bytes, signature: Optional[str], secret: str, tolerance: int = 300) -> VerifiedEvent:
    """Authenticate a raw webhook body and decode it.

    The signature (``t=<ts>,v1=<hmac-sha256>``) is checked over the exact bytes
    received, in constant time, before anything is parsed.

    Raises:
        SignatureInvalid: missing header, bad signature, stale timestamp or
            unconfigured secret
        MissingMetadata: authenticated body is not an event envelope
    """
    if not secret:
        raise SignatureInvalid("Webhook secret is not configured")
    if not signature:
        raise SignatureInvalid("Missing signature header")

    try:
        body = payload.decode("utf-8")
    except UnicodeDecodeError:
        raise SignatureInvalid("Payload is not valid UTF-8")

    try:
        stripe.WebhookSignature.verify_header(body, signature, secret, tolerance)
    except stripe.SignatureVerificationError as e:
        raise SignatureInvalid(f"Invalid signature: {e}")

    try:
        event = json.loads(body)
    except ValueError:
        raise MissingMetadata("Signed payload is not valid JSON")

    if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
        raise MissingMetadata("Signed payload is missing event id or type")
    data = event.get("data")
    if not isinstance(data, dict) or not isinstance(data.get("object"), dict):
        raise MissingMetadata(f"Event {event['id']} has no data.object")

    return VerifiedEvent(id=event["id"], type=event["type"], payload=event)
