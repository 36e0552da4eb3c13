"""Payment gateway adapter.

The only module that issues commands to Stripe. Every call goes through
``PaymentGateway._call`` which retries transient failures with exponential
backoff and converts SDK errors into ``GatewayCommandFailed``.
"""
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import stripe

from ledger.core.config import settings
from ledger.core.errors import GatewayCommandFailed
from ledger.core.metrics import gateway_retries_counter
from ledger.services.event_schema import SubscriptionSnapshot, parse_object

logger = logging.getLogger(__name__)


@dataclass
class RefundResult:
    ref: str
    status: str
    amount_cents: Optional[int] = None


@dataclass
class PayoutResult:
    ref: str
    amount_cents: int
    currency: str


def _to_dict(obj: Any) -> Any:
    """Convert a Stripe object into plain data (dicts pass through)"""
    if isinstance(obj, dict):
        return {k: _to_dict(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_to_dict(v) for v in obj]
    if hasattr(obj, "to_dict"):
        return _to_dict(obj.to_dict())
    return obj


class PaymentGateway:
    """Outbound commands: subscription lookup, refunds, payouts, dashboard links"""

    def __init__(
        self,
        api_key: Optional[str] = None,
        max_retries: Optional[int] = None,
        backoff_base: Optional[float] = None,
        timeout: Optional[float] = None,
    ):
        self.max_retries = settings.GATEWAY_MAX_RETRIES if max_retries is None else max_retries
        self.backoff_base = settings.GATEWAY_BACKOFF_BASE_SECONDS if backoff_base is None else backoff_base
        self.timeout = settings.GATEWAY_TIMEOUT_SECONDS if timeout is None else timeout

        stripe.api_key = api_key or settings.STRIPE_SECRET_KEY
        # Retries are handled here so they can be counted and classified
        stripe.max_network_retries = 0
        stripe.default_http_client = stripe.RequestsClient(timeout=self.timeout)

    def _call(self, command: str, fn: Callable, *args, **kwargs):
        transient_errors = (
            stripe.APIConnectionError,
            stripe.RateLimitError,
            stripe.APIError,
        )
        attempt = 0
        while True:
            try:
                return fn(*args, **kwargs)
            except transient_errors as e:
                if attempt >= self.max_retries:
                    logger.error(f"Gateway {command} failed after {attempt + 1} attempts: {e}")
                    raise GatewayCommandFailed(command, str(e), transient=True, code=getattr(e, "code", None))
                delay = self.backoff_base * (2 ** attempt)
                gateway_retries_counter.labels(command=command).inc()
                logger.warning(
                    f"Gateway {command} transient error (attempt {attempt + 1}/{self.max_retries + 1}), "
                    f"retrying in {delay:.1f}s: {e}"
                )
                time.sleep(delay)
                attempt += 1
            except stripe.StripeError as e:
                reason = getattr(e, "user_message", None) or str(e)
                logger.error(f"Gateway {command} rejected: {reason}")
                raise GatewayCommandFailed(command, reason, transient=False, code=getattr(e, "code", None))

    def retrieve_subscription(self, ref: str) -> SubscriptionSnapshot:
        subscription = self._call(
            "retrieve_subscription", stripe.Subscription.retrieve, ref, expand=["items.data.price"]
        )
        return parse_object(SubscriptionSnapshot, _to_dict(subscription))

    def issue_refund(self, payment_ref: str, idempotency_key: str, reason: str = "requested_by_customer") -> RefundResult:
        """Refund a payment intent (``pi_``) or a bare charge (``ch_``)"""
        params: Dict[str, Any] = {"reason": reason, "idempotency_key": idempotency_key}
        if payment_ref.startswith("ch_"):
            params["charge"] = payment_ref
        else:
            params["payment_intent"] = payment_ref
        refund = self._call("issue_refund", stripe.Refund.create, **params)
        data = _to_dict(refund)
        return RefundResult(ref=data["id"], status=data.get("status") or "pending", amount_cents=data.get("amount"))

    def issue_payout(
        self,
        account_ref: str,
        amount_cents: int,
        idempotency_key: str,
        currency: str = "usd",
        metadata: Optional[Dict[str, str]] = None,
    ) -> PayoutResult:
        """Transfer funds to a connected account"""
        transfer = self._call(
            "issue_payout",
            stripe.Transfer.create,
            amount=amount_cents,
            currency=currency,
            destination=account_ref,
            metadata=metadata or {},
            idempotency_key=idempotency_key,
        )
        data = _to_dict(transfer)
        return PayoutResult(ref=data["id"], amount_cents=data.get("amount", amount_cents), currency=currency)

    def create_login_link(self, account_ref: str) -> str:
        link = self._call("create_login_link", stripe.Account.create_login_link, account_ref)
        return _to_dict(link)["url"]


_gateway: Optional[PaymentGateway] = None


def get_gateway() -> PaymentGateway:
    """Process-wide gateway (FastAPI dependency)"""
    global _gateway
    if _gateway is None:
        _gateway = PaymentGateway()
    return _gateway
