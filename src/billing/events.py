"""
Processor Webhook Events

Each event type the service acts on is parsed into its own frozen dataclass
before any handler sees it. Required fields are checked here, so handlers never
inspect a loosely typed payload and a missing field becomes ``MalformedEvent``
instead of a silently skipped credit grant.

Signature verification uses Stripe's own scheme (``t=<ts>,v1=<hmac>``).
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Type
import structlog
import stripe

from core.errors import MalformedEvent, WebhookSignatureInvalid

logger = structlog.get_logger()


def verify_signature(payload: bytes, signature: Optional[str], secret: Optional[str], tolerance: int = 300) -> None:
    """Check the ``Stripe-Signature`` header against the shared secret."""
    if not secret:
        raise WebhookSignatureInvalid("Webhook secret is not configured")
    if not signature:
        raise WebhookSignatureInvalid("Missing signature header")

    try:
        body = payload.decode("utf-8") if isinstance(payload, bytes) else payload
    except UnicodeDecodeError as e:
        logger.warning("webhook_signature_invalid", reason="body is not utf-8")
        raise WebhookSignatureInvalid("Webhook body is not valid UTF-8") from e
    try:
        stripe.WebhookSignature.verify_header(body, signature, secret, tolerance)
    except stripe.SignatureVerificationError as e:
        logger.warning("webhook_signature_invalid", reason=e.user_message or "verification failed")
        raise WebhookSignatureInvalid("Invalid webhook signature") from e


def _meta(metadata: Dict[str, Any], *names: str) -> Optional[str]:
    """First non-empty metadata value among ``names`` (older sessions used camelCase keys)."""
    for name in names:
        value = metadata.get(name)
        if value not in (None, ""):
            return str(value)
    return None


def _id(value: Any) -> Optional[str]:
    """Expandable fields arrive either as an id string or as the expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value


def _require(obj: Dict[str, Any], key: str, event_type: str) -> Any:
    value = obj.get(key)
    if value in (None, ""):
        raise MalformedEvent(f"{event_type} is missing '{key}'", event_type=event_type, field=key)
    return value


@dataclass(frozen=True)
class ProcessorEvent:
    """Fields every event carries."""
    event_id: str
    created: int

    type = "unknown"


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """The subscription object embedded in ``customer.subscription.*`` events."""
    subscription_id: str
    status: str
    customer_id: Optional[str]
    price_id: Optional[str]
    period_start: Optional[int]
    period_end: Optional[int]
    cancel_at_period_end: bool = False
    account_id: Optional[str] = None
    plan: Optional[str] = None

    @classmethod
    def from_object(cls, obj: Dict[str, Any], event_type: str) -> "SubscriptionSnapshot":
        items = (obj.get("items") or {}).get("data") or []
        item = items[0] if items else {}
        metadata = obj.get("metadata") or {}
        return cls(
            subscription_id=_require(obj, "id", event_type),
            status=_require(obj, "status", event_type),
            customer_id=_id(obj.get("customer")),
            price_id=(item.get("price") or {}).get("id"),
            period_start=obj.get("current_period_start") or item.get("current_period_start"),
            period_end=obj.get("current_period_end") or item.get("current_period_end"),
            cancel_at_period_end=bool(obj.get("cancel_at_period_end")),
            account_id=_meta(metadata, "account_id", "userId"),
            plan=_meta(metadata, "plan", "planId"),
        )


@dataclass(frozen=True)
class CheckoutCompleted(ProcessorEvent):
    session_id: str
    mode: str
    payment_status: Optional[str]
    account_id: Optional[str]
    customer_id: Optional[str]
    subscription_id: Optional[str]
    pack: Optional[str]
    credits: Optional[int]

    type = "checkout.session.completed"


@dataclass(frozen=True)
class SubscriptionCreated(ProcessorEvent):
    subscription: SubscriptionSnapshot

    type = "customer.subscription.created"


@dataclass(frozen=True)
class SubscriptionUpdated(ProcessorEvent):
    subscription: SubscriptionSnapshot
    previous_attributes: Dict[str, Any] = field(default_factory=dict)

    type = "customer.subscription.updated"


@dataclass(frozen=True)
class SubscriptionDeleted(ProcessorEvent):
    subscription: SubscriptionSnapshot

    type = "customer.subscription.deleted"


@dataclass(frozen=True)
class InvoicePaymentSucceeded(ProcessorEvent):
    invoice_id: str
    subscription_id: Optional[str]
    customer_id: Optional[str]
    billing_reason: Optional[str]
    price_id: Optional[str]
    period_start: Optional[int]
    period_end: Optional[int]

    type = "invoice.payment_succeeded"


@dataclass(frozen=True)
class InvoicePaymentFailed(ProcessorEvent):
    invoice_id: str
    subscription_id: Optional[str]
    customer_id: Optional[str]
    attempt_count: int = 0

    type = "invoice.payment_failed"


@dataclass(frozen=True)
class UnhandledEvent(ProcessorEvent):
    """Any event type the service does not act on."""
    event_type: str = ""

    @property
    def type(self) -> str:
        return self.event_type


def _invoice_subscription(invoice: Dict[str, Any]) -> Optional[str]:
    subscription = _id(invoice.get("subscription"))
    if subscription:
        return subscription
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return _id(details.get("subscription"))


def _invoice_line(invoice: Dict[str, Any]) -> Dict[str, Any]:
    lines = (invoice.get("lines") or {}).get("data") or []
    return lines[0] if lines else {}


def _line_price(line: Dict[str, Any]) -> Optional[str]:
    price = line.get("price")
    if price:
        return _id(price)
    # Newer API versions nest the price under pricing.price_details
    details = (line.get("pricing") or {}).get("price_details") or {}
    return _id(details.get("price"))


def _parse_checkout(event_id: str, created: int, obj: Dict[str, Any]) -> CheckoutCompleted:
    metadata = obj.get("metadata") or {}
    credits = _meta(metadata, "credits")
    try:
        credits = int(credits) if credits is not None else None
    except ValueError:
        raise MalformedEvent("checkout.session.completed has non-integer credits", field="credits")
    return CheckoutCompleted(
        event_id=event_id,
        created=created,
        session_id=_require(obj, "id", CheckoutCompleted.type),
        mode=_require(obj, "mode", CheckoutCompleted.type),
        payment_status=obj.get("payment_status"),
        account_id=_meta(metadata, "account_id", "userId") or obj.get("client_reference_id"),
        customer_id=_id(obj.get("customer")),
        subscription_id=_id(obj.get("subscription")),
        pack=_meta(metadata, "pack", "packId"),
        credits=credits,
    )


def _parse_invoice_succeeded(event_id: str, created: int, obj: Dict[str, Any]) -> InvoicePaymentSucceeded:
    line = _invoice_line(obj)
    period = line.get("period") or {}
    return InvoicePaymentSucceeded(
        event_id=event_id,
        created=created,
        invoice_id=_require(obj, "id", InvoicePaymentSucceeded.type),
        subscription_id=_invoice_subscription(obj),
        customer_id=_id(obj.get("customer")),
        billing_reason=obj.get("billing_reason"),
        price_id=_line_price(line),
        period_start=period.get("start"),
        period_end=period.get("end"),
    )


def _parse_invoice_failed(event_id: str, created: int, obj: Dict[str, Any]) -> InvoicePaymentFailed:
    return InvoicePaymentFailed(
        event_id=event_id,
        created=created,
        invoice_id=_require(obj, "id", InvoicePaymentFailed.type),
        subscription_id=_invoice_subscription(obj),
        customer_id=_id(obj.get("customer")),
        attempt_count=int(obj.get("attempt_count") or 0),
    )


def _subscription_parser(cls: Type[ProcessorEvent]):
    def parse(event_id: str, created: int, obj: Dict[str, Any], previous: Dict[str, Any]) -> ProcessorEvent:
        snapshot = SubscriptionSnapshot.from_object(obj, cls.type)
        if cls is SubscriptionUpdated:
            return SubscriptionUpdated(event_id, created, snapshot, dict(previous))
        return cls(event_id, created, snapshot)
    return parse


_PARSERS = {
    CheckoutCompleted.type: lambda eid, ts, obj, prev: _parse_checkout(eid, ts, obj),
    SubscriptionCreated.type: _subscription_parser(SubscriptionCreated),
    SubscriptionUpdated.type: _subscription_parser(SubscriptionUpdated),
    SubscriptionDeleted.type: _subscription_parser(SubscriptionDeleted),
    InvoicePaymentSucceeded.type: lambda eid, ts, obj, prev: _parse_invoice_succeeded(eid, ts, obj),
    InvoicePaymentFailed.type: lambda eid, ts, obj, prev: _parse_invoice_failed(eid, ts, obj),
}

HANDLED_EVENT_TYPES = frozenset(_PARSERS)


def parse_event(payload: Any) -> ProcessorEvent:
    """
    Parse a raw webhook body (bytes, str or already-decoded dict) into an event variant.

    Raises:
        MalformedEvent: body is not JSON or lacks a field the event type needs
    """
    if isinstance(payload, (bytes, str)):
        try:
            payload = json.loads(payload)
        except ValueError as e:
            raise MalformedEvent("Webhook body is not valid JSON") from e
    if not isinstance(payload, dict):
        raise MalformedEvent("Webhook body must be a JSON object")

    event_id = _require(payload, "id", "event")
    event_type = _require(payload, "type", "event")
    created = int(payload.get("created") or 0)

    parser = _PARSERS.get(event_type)
    if parser is None:
        return UnhandledEvent(event_id=event_id, created=created, event_type=event_type)

    data = payload.get("data") or {}
    obj = data.get("object")
    if not isinstance(obj, dict):
        raise MalformedEvent(f"{event_type} has no data.object", event_id=event_id)
    return parser(event_id, created, obj, data.get("previous_attributes") or {})
