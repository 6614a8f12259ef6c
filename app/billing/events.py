"""Provider event normalization.

Stripe event dicts are turned into typed, immutable events before any ledger
code sees them. Field lookups that moved between Stripe API versions are
resolved here:

    invoice.subscription        | invoice.parent.subscription_details.subscription
    invoice.payment_intent      | invoice.payment.payment_intent
    invoice.lines.data[0].period (line-item billing period)

Amounts arrive in cents and leave as Decimal currency units; epoch timestamps
leave as UTC datetimes. Attribution comes from the ``account_id`` metadata key
written at checkout.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, ClassVar, Union

from app.billing.errors import MalformedEventError

METADATA_ACCOUNT_ID = "account_id"
METADATA_TIER = "tier"

CANCEL_FLAGS = ("cancel_at", "cancel_at_period_end", "canceled_at")


@dataclass(frozen=True)
class CheckoutSubscriptionCompleted:
    event_type: ClassVar[str] = "checkout.session.completed"

    event_id: str
    session_id: str
    subscription_id: str
    account_id: int | None
    customer_id: str | None
    tier: str | None


@dataclass(frozen=True)
class CheckoutPaymentCompleted:
    event_type: ClassVar[str] = "checkout.session.completed"

    event_id: str
    session_id: str
    account_id: int | None
    amount: Decimal
    payment_intent_id: str | None


@dataclass(frozen=True)
class InvoicePaid:
    event_type: ClassVar[str] = "invoice.payment_succeeded"

    event_id: str
    invoice_id: str
    subscription_id: str
    amount_paid: Decimal
    paid_at: datetime
    payment_intent_id: str | None = None
    customer_id: str | None = None
    parent_account_id: int | None = None
    parent_tier: str | None = None
    line_period_start: datetime | None = None
    line_period_end: datetime | None = None


@dataclass(frozen=True)
class InvoicePaymentFailed:
    event_type: ClassVar[str] = "invoice.payment_failed"

    event_id: str
    invoice_id: str
    subscription_id: str
    parent_account_id: int | None = None


@dataclass(frozen=True)
class SubscriptionChanged:
    event_type: ClassVar[str] = "customer.subscription.updated"

    event_id: str
    subscription_id: str
    account_id: int | None
    status: str
    cancel_flagged: bool
    amount: Decimal | None = None


@dataclass(frozen=True)
class SubscriptionDeleted:
    event_type: ClassVar[str] = "customer.subscription.deleted"

    event_id: str
    subscription_id: str
    account_id: int | None


@dataclass(frozen=True)
class IgnoredEvent:
    event_id: str
    event_type: str
    reason: str


BillingEvent = Union[
    CheckoutSubscriptionCompleted,
    CheckoutPaymentCompleted,
    InvoicePaid,
    InvoicePaymentFailed,
    SubscriptionChanged,
    SubscriptionDeleted,
    IgnoredEvent,
]


# ── Field helpers ─────────────────────────────────────────────────────────────

def _dig(obj: Any, *path: str | int) -> Any:
    for key in path:
        if obj is None:
            return None
        if isinstance(key, int):
            if not isinstance(obj, list) or len(obj) <= key:
                return None
            obj = obj[key]
        elif isinstance(obj, dict):
            obj = obj.get(key)
        else:
            return None
    return obj


def _ref_id(value: Any) -> str | None:
    """Stripe references are an id string or, when expanded, an object with an id."""
    if isinstance(value, str):
        return value or None
    if isinstance(value, dict):
        return value.get("id") or None
    return None


def cents_to_amount(cents: Any) -> Decimal | None:
    if cents is None:
        return None
    return Decimal(int(cents)) / Decimal(100)


def epoch_to_datetime(value: Any) -> datetime | None:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def parse_account_id(metadata: Any) -> int | None:
    """``account_id`` metadata → int, or None when absent or not a number."""
    raw = _dig(metadata, METADATA_ACCOUNT_ID)
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


def subscription_item_amount(subscription: dict) -> Decimal | None:
    return cents_to_amount(_dig(subscription, "items", "data", 0, "price", "unit_amount"))


# ── Per-type parsers ─────────────────────────────────────────────────────────

def _parse_checkout(event_id: str, obj: dict) -> BillingEvent:
    session_id = obj.get("id")
    if not session_id:
        raise MalformedEventError("checkout.session.completed", "session id missing")
    metadata = obj.get("metadata") or {}
    mode = obj.get("mode")

    if mode == "subscription":
        subscription_id = _ref_id(obj.get("subscription"))
        if not subscription_id:
            raise MalformedEventError("checkout.session.completed", "subscription id missing")
        return CheckoutSubscriptionCompleted(
            event_id=event_id,
            session_id=session_id,
            subscription_id=subscription_id,
            account_id=parse_account_id(metadata),
            customer_id=_ref_id(obj.get("customer")),
            tier=metadata.get(METADATA_TIER) or None,
        )

    if mode == "payment":
        amount = cents_to_amount(obj.get("amount_total"))
        if amount is None:
            raise MalformedEventError("checkout.session.completed", "amount_total missing")
        if amount <= 0:
            return IgnoredEvent(event_id, "checkout.session.completed", "zero_amount")
        return CheckoutPaymentCompleted(
            event_id=event_id,
            session_id=session_id,
            account_id=parse_account_id(metadata),
            amount=amount,
            payment_intent_id=_ref_id(obj.get("payment_intent")),
        )

    return IgnoredEvent(event_id, "checkout.session.completed", f"mode:{mode}")


def _invoice_subscription_id(obj: dict) -> str | None:
    return _ref_id(obj.get("subscription")) or _ref_id(
        _dig(obj, "parent", "subscription_details", "subscription")
    )


def _parse_invoice_paid(event_id: str, obj: dict, created: datetime | None) -> BillingEvent:
    subscription_id = _invoice_subscription_id(obj)
    if not subscription_id:
        # One-off invoices are covered by their checkout event.
        return IgnoredEvent(event_id, "invoice.payment_succeeded", "no_subscription")
    invoice_id = obj.get("id")
    if not invoice_id:
        raise MalformedEventError("invoice.payment_succeeded", "invoice id missing")
    amount = cents_to_amount(obj.get("amount_paid")) or Decimal("0")
    if amount <= 0:
        return IgnoredEvent(event_id, "invoice.payment_succeeded", "zero_amount")

    parent_metadata = _dig(obj, "parent", "subscription_details", "metadata") or {}
    paid_at = (
        epoch_to_datetime(_dig(obj, "status_transitions", "paid_at"))
        or created
        or datetime.now(timezone.utc)
    )
    return InvoicePaid(
        event_id=event_id,
        invoice_id=invoice_id,
        subscription_id=subscription_id,
        amount_paid=amount,
        paid_at=paid_at,
        payment_intent_id=_ref_id(_dig(obj, "payment", "payment_intent")) or _ref_id(obj.get("payment_intent")),
        customer_id=_ref_id(obj.get("customer")),
        parent_account_id=parse_account_id(parent_metadata),
        parent_tier=parent_metadata.get(METADATA_TIER) or None,
        line_period_start=epoch_to_datetime(_dig(obj, "lines", "data", 0, "period", "start")),
        line_period_end=epoch_to_datetime(_dig(obj, "lines", "data", 0, "period", "end")),
    )


def _parse_invoice_failed(event_id: str, obj: dict) -> BillingEvent:
    subscription_id = _invoice_subscription_id(obj)
    if not subscription_id:
        return IgnoredEvent(event_id, "invoice.payment_failed", "no_subscription")
    return InvoicePaymentFailed(
        event_id=event_id,
        invoice_id=obj.get("id") or "",
        subscription_id=subscription_id,
        parent_account_id=parse_account_id(_dig(obj, "parent", "subscription_details", "metadata")),
    )


def _parse_subscription(event_id: str, event_type: str, obj: dict) -> BillingEvent:
    subscription_id = obj.get("id")
    if not subscription_id:
        raise MalformedEventError(event_type, "subscription id missing")
    account_id = parse_account_id(obj.get("metadata"))
    if event_type == "customer.subscription.deleted":
        return SubscriptionDeleted(event_id=event_id, subscription_id=subscription_id, account_id=account_id)
    status = obj.get("status")
    if not status:
        raise MalformedEventError(event_type, "status missing")
    return SubscriptionChanged(
        event_id=event_id,
        subscription_id=subscription_id,
        account_id=account_id,
        status=status,
        cancel_flagged=any(obj.get(flag) for flag in CANCEL_FLAGS),
        amount=subscription_item_amount(obj),
    )


def parse_event(event: dict) -> BillingEvent:
    """Map a verified provider event onto one of the BillingEvent variants.

    Raises MalformedEventError when an in-scope event lacks a field its
    handler cannot do without.
    """
    event_id = event.get("id") or ""
    event_type = event.get("type") or ""
    obj = _dig(event, "data", "object")
    if not isinstance(obj, dict):
        raise MalformedEventError(event_type or "unknown", "data.object missing")

    if event_type == "checkout.session.completed":
        return _parse_checkout(event_id, obj)
    if event_type == "invoice.payment_succeeded":
        return _parse_invoice_paid(event_id, obj, epoch_to_datetime(event.get("created")))
    if event_type == "invoice.payment_failed":
        return _parse_invoice_failed(event_id, obj)
    if event_type in ("customer.subscription.updated", "customer.subscription.deleted"):
        return _parse_subscription(event_id, event_type, obj)
    return IgnoredEvent(event_id, event_type, "unhandled_type")
