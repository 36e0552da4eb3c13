"""Versioned schema for gateway event payloads.

The gateway's objects carry fields that move between API versions (period
bounds migrated from the subscription onto its items, invoices moved their
subscription reference under ``parent.subscription_details``). Each model
here reads every location it knows about and falls back to a documented
default, so handlers never touch raw dicts.

Fallbacks:
    period start  -> now
    period end    -> now + 30 days
    currency      -> "usd"
    unit amount   -> None (handlers use the configured tier/premium price)
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from ledger.core.errors import MissingMetadata

EVENT_SCHEMA_VERSION = 1

DEFAULT_CURRENCY = "usd"
DEFAULT_PERIOD_DAYS = 30

T = TypeVar("T", bound="GatewayObject")


def _from_timestamp(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _collapse_expanded(value: Any) -> Any:
    """Expanded references arrive as objects; keep only their id"""
    if isinstance(value, dict):
        return value.get("id")
    return value


class GatewayObject(BaseModel):
    model_config = ConfigDict(extra="ignore")

    metadata: Dict[str, str] = {}

    @field_validator("metadata", mode="before")
    @classmethod
    def stringify_metadata(cls, value):
        if not value:
            return {}
        return {str(k): str(v) for k, v in dict(value).items() if v is not None}

    def meta_int(self, key: str) -> Optional[int]:
        """Integer metadata value, or None when absent or malformed"""
        raw = self.metadata.get(key)
        if raw is None or raw == "":
            return None
        try:
            return int(raw)
        except ValueError:
            return None


class Recurring(BaseModel):
    model_config = ConfigDict(extra="ignore")
    interval: Optional[str] = None


class Price(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: Optional[str] = None
    unit_amount: Optional[int] = None
    currency: Optional[str] = None
    recurring: Optional[Recurring] = None


class SubscriptionItem(BaseModel):
    model_config = ConfigDict(extra="ignore")
    price: Optional[Price] = None
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None


class ItemList(BaseModel):
    model_config = ConfigDict(extra="ignore")
    data: List[SubscriptionItem] = []


class SubscriptionSnapshot(GatewayObject):
    """A gateway subscription, from an event or from ``retrieve_subscription``"""
    id: str
    customer: Optional[str] = None
    status: Optional[str] = None
    items: ItemList = ItemList()
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[int] = None
    latest_invoice: Optional[str] = None
    currency: Optional[str] = None

    @field_validator("customer", "latest_invoice", mode="before")
    @classmethod
    def collapse_refs(cls, value):
        return _collapse_expanded(value)

    @field_validator("cancel_at_period_end", mode="before")
    @classmethod
    def none_is_false(cls, value):
        return bool(value)

    @property
    def first_item(self) -> Optional[SubscriptionItem]:
        return self.items.data[0] if self.items.data else None

    @property
    def unit_amount_cents(self) -> Optional[int]:
        item = self.first_item
        if item and item.price:
            return item.price.unit_amount
        return None

    @property
    def billing_interval(self) -> str:
        item = self.first_item
        if item and item.price and item.price.recurring and item.price.recurring.interval == "year":
            return "annual"
        return "monthly"

    @property
    def currency_code(self) -> str:
        item = self.first_item
        if item and item.price and item.price.currency:
            return item.price.currency
        return self.currency or DEFAULT_CURRENCY

    def period_bounds(self, now: Optional[datetime] = None):
        """(start, end) of the current period, read from the subscription or its first item"""
        now = now or datetime.now(timezone.utc)
        item = self.first_item
        start = self.current_period_start or (item.current_period_start if item else None)
        end = self.current_period_end or (item.current_period_end if item else None)
        return (
            _from_timestamp(start) or now,
            _from_timestamp(end) or now + timedelta(days=DEFAULT_PERIOD_DAYS),
        )

    @property
    def canceled_at_datetime(self) -> Optional[datetime]:
        return _from_timestamp(self.canceled_at)


class CheckoutSession(GatewayObject):
    id: str
    mode: Optional[str] = None
    subscription: Optional[str] = None
    customer: Optional[str] = None
    invoice: Optional[str] = None
    payment_intent: Optional[str] = None
    payment_status: Optional[str] = None
    amount_total: Optional[int] = None
    currency: Optional[str] = None

    @field_validator("subscription", "customer", "invoice", "payment_intent", mode="before")
    @classmethod
    def collapse_refs(cls, value):
        return _collapse_expanded(value)


class SubscriptionDetails(BaseModel):
    model_config = ConfigDict(extra="ignore")
    subscription: Optional[str] = None
    metadata: Dict[str, str] = {}

    @field_validator("subscription", mode="before")
    @classmethod
    def collapse_refs(cls, value):
        return _collapse_expanded(value)

    @field_validator("metadata", mode="before")
    @classmethod
    def stringify_metadata(cls, value):
        if not value:
            return {}
        return {str(k): str(v) for k, v in dict(value).items() if v is not None}


class InvoiceParent(BaseModel):
    model_config = ConfigDict(extra="ignore")
    subscription_details: Optional[SubscriptionDetails] = None


class Invoice(GatewayObject):
    id: str
    customer: Optional[str] = None
    subscription: Optional[str] = None
    subscription_details: Optional[SubscriptionDetails] = None
    parent: Optional[InvoiceParent] = None
    amount_paid: int = 0
    currency: Optional[str] = None
    payment_intent: Optional[str] = None
    charge: Optional[str] = None
    billing_reason: Optional[str] = None

    @field_validator("customer", "subscription", "payment_intent", "charge", mode="before")
    @classmethod
    def collapse_refs(cls, value):
        return _collapse_expanded(value)

    @field_validator("amount_paid", mode="before")
    @classmethod
    def none_is_zero(cls, value):
        return value or 0

    def _details(self) -> Optional[SubscriptionDetails]:
        if self.parent and self.parent.subscription_details:
            return self.parent.subscription_details
        return self.subscription_details

    @property
    def subscription_ref(self) -> Optional[str]:
        if self.subscription:
            return self.subscription
        details = self._details()
        return details.subscription if details else None

    @property
    def subscription_metadata(self) -> Dict[str, str]:
        details = self._details()
        return details.metadata if details else {}

    @property
    def payment_ref(self) -> Optional[str]:
        return self.payment_intent or self.charge

    @property
    def currency_code(self) -> str:
        return self.currency or DEFAULT_CURRENCY


class ConnectedAccount(GatewayObject):
    id: str
    details_submitted: bool = False
    payouts_enabled: bool = False
    charges_enabled: bool = False

    @field_validator("details_submitted", "payouts_enabled", "charges_enabled", mode="before")
    @classmethod
    def none_is_false(cls, value):
        return bool(value)


class PayoutObject(GatewayObject):
    """A transfer to a connected account, or the payout that settles it"""
    id: str
    object: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    destination: Optional[str] = None
    failure_code: Optional[str] = None
    failure_message: Optional[str] = None

    @field_validator("destination", mode="before")
    @classmethod
    def collapse_refs(cls, value):
        return _collapse_expanded(value)


def parse_object(model: Type[T], data: Any) -> T:
    """Validate a gateway object, mapping shape errors to MissingMetadata"""
    if not isinstance(data, dict):
        raise MissingMetadata(f"Expected {model.__name__} object, got {type(data).__name__}")
    try:
        return model.model_validate(data)
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
        raise MissingMetadata(f"Unexpected {model.__name__} shape (schema v{EVENT_SCHEMA_VERSION}): {fields}")
