"""Billing error taxonomy.

Routers translate these into HTTP responses; the processor uses them to decide
between acknowledging an event and asking the provider to retry.
"""

from __future__ import annotations


class BillingError(Exception):
    """Base class for all billing errors."""


class SignatureError(BillingError):
    """Webhook signature missing or not valid for the configured secret."""


class PayloadError(BillingError):
    """Webhook body is not a decodable provider event."""


class MalformedEventError(BillingError):
    """Event decoded fine but lacks fields its handler needs."""

    def __init__(self, event_type: str, reason: str) -> None:
        super().__init__(f"{event_type}: {reason}")
        self.event_type = event_type
        self.reason = reason


class ProviderError(BillingError):
    """Payment provider API call failed. The message is the provider's own."""


class CheckoutError(BillingError):
    """Checkout request rejected before reaching the provider."""
