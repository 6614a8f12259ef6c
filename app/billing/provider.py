"""Payment provider port and its Stripe adapter.

The ledger code talks to ``PaymentProvider`` only; tests substitute a fake.
Stripe calls pass the API key per request instead of setting the module-level
``stripe.api_key``.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Protocol

import stripe
import structlog

from app.billing.errors import PayloadError, ProviderError, SignatureError
from app.billing.events import (
    METADATA_ACCOUNT_ID,
    METADATA_TIER,
    epoch_to_datetime,
    parse_account_id,
    subscription_item_amount,
)

logger = structlog.get_logger()


@dataclass(frozen=True)
class ProviderSubscription:
    """The fields of a provider subscription the ledger needs."""

    id: str
    status: str | None = None
    account_id: int | None = None
    tier: str | None = None
    amount: Decimal | None = None
    customer_id: str | None = None
    period_start: datetime | None = None
    period_end: datetime | None = None

    @classmethod
    def from_payload(cls, data: dict) -> "ProviderSubscription":
        metadata = data.get("metadata") or {}
        item = ((data.get("items") or {}).get("data") or [{}])[0] or {}
        # Newer API versions carry the period on the item, older ones on the subscription.
        start = item.get("current_period_start") or data.get("current_period_start")
        end = item.get("current_period_end") or data.get("current_period_end")
        customer = data.get("customer")
        return cls(
            id=data["id"],
            status=data.get("status"),
            account_id=parse_account_id(metadata),
            tier=metadata.get(METADATA_TIER) or None,
            amount=subscription_item_amount(data),
            customer_id=customer.get("id") if isinstance(customer, dict) else customer,
            period_start=epoch_to_datetime(start),
            period_end=epoch_to_datetime(end),
        )


class PaymentProvider(Protocol):
    def verify_event(self, payload: bytes, signature: str | None) -> dict: ...

    def retrieve_subscription(self, subscription_id: str) -> ProviderSubscription: ...

    def retrieve_invoice_line_period(self, invoice_id: str) -> tuple[datetime, datetime] | None: ...

    def create_checkout_session(
        self,
        *,
        account_id: int,
        amount_cents: int,
        recurring: bool,
        tier: str,
        success_url: str,
        cancel_url: str,
    ) -> str: ...

    def create_portal_session(self, *, customer_id: str, return_url: str) -> str: ...


def _to_dict(obj: Any) -> dict:
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return dict(obj)


class StripeProvider:
    """PaymentProvider backed by the Stripe API."""

    def __init__(
        self,
        secret_key: str,
        webhook_secret: str,
        tolerance_seconds: int = 300,
        currency: str = "usd",
    ) -> None:
        self._secret_key = secret_key
        self._webhook_secret = webhook_secret
        self._tolerance = tolerance_seconds
        self._currency = currency

    def verify_event(self, payload: bytes, signature: str | None) -> dict:
        """Check the ``stripe-signature`` header and decode the event body."""
        if not signature:
            raise SignatureError("Missing stripe-signature header")
        if not self._webhook_secret:
            raise SignatureError("Webhook secret not configured")
        try:
            text = payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise PayloadError("Body is not valid UTF-8") from exc
        try:
            stripe.WebhookSignature.verify_header(text, signature, self._webhook_secret, self._tolerance)
        except stripe.SignatureVerificationError as exc:
            raise SignatureError(str(exc)) from exc
        try:
            event = json.loads(text)
        except ValueError as exc:
            raise PayloadError(f"Invalid JSON: {exc}") from exc
        if not isinstance(event, dict) or not event.get("type"):
            raise PayloadError("Not a Stripe event")
        return event

    def retrieve_subscription(self, subscription_id: str) -> ProviderSubscription:
        try:
            subscription = stripe.Subscription.retrieve(subscription_id, api_key=self._secret_key)
        except stripe.StripeError as exc:
            raise ProviderError(exc.user_message or str(exc)) from exc
        return ProviderSubscription.from_payload(_to_dict(subscription))

    def retrieve_invoice_line_period(self, invoice_id: str) -> tuple[datetime, datetime] | None:
        try:
            lines = stripe.Invoice.list_lines(invoice_id, api_key=self._secret_key, limit=1)
        except stripe.StripeError as exc:
            raise ProviderError(exc.user_message or str(exc)) from exc
        data = _to_dict(lines).get("data") or []
        if not data:
            return None
        period = data[0].get("period") or {}
        start = epoch_to_datetime(period.get("start"))
        end = epoch_to_datetime(period.get("end"))
        if start is None or end is None:
            return None
        return start, end

    def create_checkout_session(
        self,
        *,
        account_id: int,
        amount_cents: int,
        recurring: bool,
        tier: str,
        success_url: str,
        cancel_url: str,
    ) -> str:
        metadata = {METADATA_ACCOUNT_ID: str(account_id), METADATA_TIER: tier}
        price_data: dict[str, Any] = {
            "currency": self._currency,
            "product_data": {
                "name": "Monthly HandFull Contribution" if recurring else "HandFull Contribution",
                "description": f"{tier} tier - Thanks for keeping the app running!",
            },
            "unit_amount": amount_cents,
        }
        params: dict[str, Any] = {
            "line_items": [{"price_data": price_data, "quantity": 1}],
            "mode": "subscription" if recurring else "payment",
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
        }
        if recurring:
            price_data["recurring"] = {"interval": "month"}
            # Invoice events are attributed through the subscription's metadata.
            params["subscription_data"] = {"metadata": metadata}

        try:
            session = stripe.checkout.Session.create(api_key=self._secret_key, **params)
        except stripe.StripeError as exc:
            logger.error("billing.checkout_session_failed", account_id=account_id, error=str(exc))
            raise ProviderError(exc.user_message or str(exc)) from exc
        return session.url

    def create_portal_session(self, *, customer_id: str, return_url: str) -> str:
        try:
            portal = stripe.billing_portal.Session.create(
                api_key=self._secret_key,
                customer=customer_id,
                return_url=return_url,
            )
        except stripe.StripeError as exc:
            logger.error("billing.portal_session_failed", error=str(exc))
            raise ProviderError(exc.user_message or str(exc)) from exc
        return portal.url
