"""Event routing: (event type, metadata discriminator) -> handler route"""
import enum
import logging
from typing import Dict, Union

from ledger.core.errors import MissingMetadata, UnknownEventType
from ledger.services.event_verifier import VerifiedEvent

logger = logging.getLogger(__name__)

# Metadata key set by the checkout flows
DISCRIMINATOR_KEY = "type"


class Discriminator(str, enum.Enum):
    READER_PREMIUM = "reader_premium"
    AUTHOR_SUBSCRIPTION = "author_subscription"


class Route(str, enum.Enum):
    READER_CHECKOUT_COMPLETED = "ReaderCheckoutCompleted"
    READER_SUBSCRIPTION_UPDATED = "ReaderSubscriptionUpdated"
    READER_SUBSCRIPTION_CANCELED = "ReaderSubscriptionCanceled"
    AUTHOR_CHECKOUT_COMPLETED = "AuthorCheckoutCompleted"
    AUTHOR_SUBSCRIPTION_UPDATED = "AuthorSubscriptionUpdated"
    AUTHOR_SUBSCRIPTION_CANCELED = "AuthorSubscriptionCanceled"
    INVOICE_PAID = "InvoicePaid"
    PAYMENT_FAILED = "PaymentFailed"
    CONNECTED_ACCOUNT_UPDATED = "ConnectedAccountUpdated"
    PAYOUT_PAID = "PayoutPaid"
    PAYOUT_FAILED = "PayoutFailed"


_CHECKOUT = {
    Discriminator.READER_PREMIUM: Route.READER_CHECKOUT_COMPLETED,
    Discriminator.AUTHOR_SUBSCRIPTION: Route.AUTHOR_CHECKOUT_COMPLETED,
}

EVENT_ROUTES: Dict[str, Union[Route, Dict[Discriminator, Route]]] = {
    "checkout.session.completed": _CHECKOUT,
    "customer.subscription.created": _CHECKOUT,
    "customer.subscription.updated": {
        Discriminator.READER_PREMIUM: Route.READER_SUBSCRIPTION_UPDATED,
        Discriminator.AUTHOR_SUBSCRIPTION: Route.AUTHOR_SUBSCRIPTION_UPDATED,
    },
    "customer.subscription.deleted": {
        Discriminator.READER_PREMIUM: Route.READER_SUBSCRIPTION_CANCELED,
        Discriminator.AUTHOR_SUBSCRIPTION: Route.AUTHOR_SUBSCRIPTION_CANCELED,
    },
    # Invoices resolve their subscription kind inside the handler
    "invoice.paid": Route.INVOICE_PAID,
    "invoice.payment_succeeded": Route.INVOICE_PAID,
    "invoice.payment_failed": Route.PAYMENT_FAILED,
    "account.updated": Route.CONNECTED_ACCOUNT_UPDATED,
    "transfer.created": Route.PAYOUT_PAID,
    "payout.paid": Route.PAYOUT_PAID,
    "payout.failed": Route.PAYOUT_FAILED,
    "transfer.reversed": Route.PAYOUT_FAILED,
}


def route_event(event: VerifiedEvent) -> Route:
    """Pick the handler route for a verified event.

    Raises:
        UnknownEventType: no route for the event type
        MissingMetadata: subscription event without a usable discriminator
    """
    routes = EVENT_ROUTES.get(event.type)
    if routes is None:
        raise UnknownEventType(event.type)
    if isinstance(routes, Route):
        return routes

    raw = event.metadata.get(DISCRIMINATOR_KEY)
    if not raw:
        raise MissingMetadata(f"{event.type} {event.id} has no metadata.{DISCRIMINATOR_KEY}")
    try:
        discriminator = Discriminator(raw)
    except ValueError:
        raise MissingMetadata(f"{event.type} {event.id} has unrecognized metadata.{DISCRIMINATOR_KEY} '{raw}'")
    return routes[discriminator]
