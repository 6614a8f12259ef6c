"""Shared dependencies for the Gateway routers.

Avoids circular imports by centralizing singleton initialization. Routers
resolve these through ``Depends`` so tests can swap them with
``app.dependency_overrides``.
"""
import structlog

from app.billing.costs import CostEstimator, cost_estimator
from app.billing.metering import usage_meter
from app.billing.processor import WebhookEventProcessor
from app.billing.provider import PaymentProvider, StripeProvider
from config.settings import get_settings

logger = structlog.get_logger()
settings = get_settings()

# Initialize Singletons
payment_provider = StripeProvider(
    secret_key=settings.stripe_secret_key,
    webhook_secret=settings.stripe_webhook_secret,
    tolerance_seconds=settings.stripe_webhook_tolerance_seconds,
    currency=settings.checkout_currency,
)
webhook_processor = WebhookEventProcessor(provider=payment_provider, meter=usage_meter)

if not settings.stripe_webhook_secret:
    logger.warning("gateway.stripe.webhook_secret_missing")


def get_payment_provider() -> PaymentProvider:
    return payment_provider


def get_webhook_processor() -> WebhookEventProcessor:
    return webhook_processor


def get_cost_estimator() -> CostEstimator:
    return cost_estimator
