"""HandFull Billing – Pytest Configuration.

Shared fixtures for all tests.
"""

import os

# Force testing mode to allow SQLite fallback in app/core/db.py
os.environ["ENVIRONMENT"] = "testing"
if "DATABASE_URL" in os.environ:
    del os.environ["DATABASE_URL"]
os.environ["STRIPE_SECRET_KEY"] = "sk_test_handfull_dummy"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret_1234567890abcdef"

from datetime import datetime

import pytest
import structlog
from httpx import ASGITransport, AsyncClient

from app.billing.errors import ProviderError
from app.billing.metering import UsageMeter, metering_dispatcher
from app.billing.processor import WebhookEventProcessor
from app.billing.provider import ProviderSubscription, StripeProvider
from app.core.db import Base, engine, run_migrations
from app.gateway.dependencies import get_payment_provider, get_webhook_processor
from app.gateway.main import app

# Uncached loggers so structlog.testing.capture_logs sees every event.
structlog.configure(cache_logger_on_first_use=False)

WEBHOOK_SECRET = os.environ["STRIPE_WEBHOOK_SECRET"]


class FakeProvider(StripeProvider):
    """Stripe provider with real signature checks and canned API responses."""

    def __init__(self) -> None:
        super().__init__(secret_key="sk_test_handfull_dummy", webhook_secret=WEBHOOK_SECRET)
        self.subscriptions: dict[str, ProviderSubscription] = {}
        self.line_periods: dict[str, tuple[datetime, datetime]] = {}
        self.checkout_calls: list[dict] = []
        self.portal_calls: list[dict] = []
        self.error: str | None = None

    def add_subscription(self, subscription_id: str, **fields) -> ProviderSubscription:
        sub = ProviderSubscription(id=subscription_id, **fields)
        self.subscriptions[subscription_id] = sub
        return sub

    def retrieve_subscription(self, subscription_id: str) -> ProviderSubscription:
        if self.error:
            raise ProviderError(self.error)
        if subscription_id not in self.subscriptions:
            raise ProviderError(f"No such subscription: '{subscription_id}'")
        return self.subscriptions[subscription_id]

    def retrieve_invoice_line_period(self, invoice_id: str):
        return self.line_periods.get(invoice_id)

    def create_checkout_session(self, **kwargs) -> str:
        if self.error:
            raise ProviderError(self.error)
        self.checkout_calls.append(kwargs)
        return "https://checkout.stripe.test/c/pay_cs_test_123"

    def create_portal_session(self, **kwargs) -> str:
        if self.error:
            raise ProviderError(self.error)
        self.portal_calls.append(kwargs)
        return "https://billing.stripe.test/p/session/test_456"


@pytest.fixture(autouse=True)
def fresh_database():
    """Each test starts from empty billing tables."""
    run_migrations()
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture(autouse=True)
def empty_metering_queue():
    """Discard metering work queued by previous tests."""
    queue = metering_dispatcher._queue
    while not queue.empty():
        queue.get_nowait()
        queue.task_done()
    yield


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def meter() -> UsageMeter:
    return UsageMeter()


@pytest.fixture
def processor(provider: FakeProvider, meter: UsageMeter) -> WebhookEventProcessor:
    return WebhookEventProcessor(provider=provider, meter=meter)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def client(provider: FakeProvider, processor: WebhookEventProcessor):
    """Async test client for the FastAPI gateway, wired to the fake provider."""
    app.dependency_overrides[get_payment_provider] = lambda: provider
    app.dependency_overrides[get_webhook_processor] = lambda: processor
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
