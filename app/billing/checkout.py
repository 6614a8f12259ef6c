"""Checkout intents and customer-portal sessions.

Thin wrappers over the provider. The checkout metadata written here
(``account_id``, ``tier``) is what later webhook events are attributed by.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum

import structlog

from app.billing.accounts import get_billing_account
from app.billing.errors import CheckoutError
from app.billing.provider import PaymentProvider
from app.core.db import SessionLocal
from config.settings import get_settings

logger = structlog.get_logger()

DEFAULT_TIER = "custom"


class Frequency(str, Enum):
    ONE_TIME = "one_time"
    MONTHLY = "monthly"


def _return_base(origin: str | None) -> str:
    return (origin or get_settings().public_url).rstrip("/")


def create_checkout_intent(
    provider: PaymentProvider,
    *,
    account_id: int,
    amount: Decimal | int | float | str,
    frequency: Frequency,
    tier: str | None = None,
    origin: str | None = None,
) -> str:
    """Start a provider checkout for a contribution and return its URL.

    Raises CheckoutError for amounts below the configured minimum and
    ProviderError when the provider rejects the session.
    """
    settings = get_settings()
    try:
        amount_d = Decimal(str(amount))
    except InvalidOperation as exc:
        raise CheckoutError("Amount must be a number") from exc
    if not amount_d.is_finite() or amount_d < settings.checkout_min_amount:
        raise CheckoutError(f"Amount must be at least ${settings.checkout_min_amount}")

    amount_cents = int((amount_d * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    base = _return_base(origin)
    url = provider.create_checkout_session(
        account_id=account_id,
        amount_cents=amount_cents,
        recurring=frequency == Frequency.MONTHLY,
        tier=tier or DEFAULT_TIER,
        success_url=f"{base}/dashboard?contribution=success",
        cancel_url=f"{base}/dashboard?contribution=canceled",
    )
    logger.info(
        "billing.checkout.created",
        account_id=account_id,
        amount_cents=amount_cents,
        frequency=frequency.value,
        tier=tier or DEFAULT_TIER,
    )
    return url


def create_portal_session(provider: PaymentProvider, *, account_id: int, origin: str | None = None) -> str:
    """Open the provider's self-service portal for the account's customer."""
    db = SessionLocal()
    try:
        account = get_billing_account(db, account_id)
        customer_id = account.provider_customer_id if account else None
    finally:
        db.close()
    if not customer_id:
        raise CheckoutError("No subscription found")
    return provider.create_portal_session(customer_id=customer_id, return_url=f"{_return_base(origin)}/dashboard")
