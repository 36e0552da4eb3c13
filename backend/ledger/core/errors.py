"""Error taxonomy for the revenue ledger.

Every error carries a human-readable ``reason``. Routes translate these into
HTTP statuses; the webhook endpoint uses ``retriable`` to decide between
acknowledging an event and asking the gateway to redeliver it.
"""
from typing import Optional


class LedgerError(Exception):
    """Base class for ledger errors"""
    retriable = False

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class SignatureInvalid(LedgerError):
    """Inbound payload could not be authenticated"""


class UnknownEventType(LedgerError):
    """Event type has no handler; acknowledged and ignored"""

    def __init__(self, event_type: str):
        super().__init__(f"No handler for event type '{event_type}'")
        self.event_type = event_type


class MissingMetadata(LedgerError):
    """Event is missing data needed to route or apply it"""


class DuplicateEvent(LedgerError):
    """Event was already processed"""

    def __init__(self, event_id: str):
        super().__init__(f"Event {event_id} already processed")
        self.event_id = event_id


class GatewayCommandFailed(LedgerError):
    """An outbound payment gateway command failed.

    ``transient`` is True when retries were exhausted on a recoverable error
    (network, rate limit, gateway 5xx); False for permanent rejections.
    """

    def __init__(self, command: str, reason: str, transient: bool = False, code: Optional[str] = None):
        super().__init__(f"{command} failed: {reason}")
        self.command = command
        self.transient = transient
        self.code = code

    @property
    def retriable(self):
        return self.transient


class BalanceRaceDetected(LedgerError):
    """Another payout for the same author is in flight"""

    def __init__(self, author_id: int):
        super().__init__("Another payout request is being processed. Please try again.")
        self.author_id = author_id


class InvariantViolation(LedgerError):
    """A money split does not reconcile; the row is refused"""


class NotFound(LedgerError):
    """Referenced ledger row does not exist"""


class PayoutNotAllowed(LedgerError):
    """Author is not eligible for a payout"""


class RefundNotAllowed(LedgerError):
    """Transaction cannot be refunded"""


class InvalidTransition(LedgerError):
    """Requested status change is not permitted"""


def http_status(error: LedgerError) -> int:
    """Status code for a human-triggered command rejected with ``error``"""
    if isinstance(error, NotFound):
        return 404
    if isinstance(error, BalanceRaceDetected):
        return 409
    if isinstance(error, GatewayCommandFailed):
        return 502
    return 400
