from datetime import datetime, timezone

from sqlalchemy import BigInteger, Column, DateTime, ForeignKey, Integer, Numeric, String, UniqueConstraint

from app.core.db import Base


# ─── Billing Models ──────────────────────────────────────────────────────────

class BillingAccount(Base):
    """Per-account usage counters, contribution total and inline subscription state.

    One row per account, created alongside the account. Subscription columns are
    all NULL while the account has no subscription.
    """

    __tablename__ = "billing_accounts"

    id = Column(Integer, primary_key=True, index=True)  # account id
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))

    # Lifetime usage
    lifetime_request_count = Column(Integer, nullable=False, default=0)
    lifetime_stored_bytes = Column(BigInteger, nullable=False, default=0)

    # Current billing period usage (reset on each confirmed recurring payment)
    period_request_count = Column(Integer, nullable=False, default=0)
    period_stored_bytes = Column(BigInteger, nullable=False, default=0)

    # Rolling 30-day window for the "actual usage" forecast
    monthly_request_count = Column(Integer, nullable=False, default=0)
    monthly_reset_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))

    total_contributions = Column(Numeric(12, 2), nullable=False, default=0)

    # Subscription state: ACTIVE | CANCELED | PAST_DUE | UNPAID
    subscription_status = Column(String, nullable=True)
    provider_subscription_id = Column(String, nullable=True, index=True)
    provider_customer_id = Column(String, nullable=True)
    subscription_amount = Column(Numeric(12, 2), nullable=True)
    subscription_tier = Column(String, nullable=True)
    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    last_payment_amount = Column(Numeric(12, 2), nullable=True)
    last_payment_at = Column(DateTime(timezone=True), nullable=True)

    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )


class Contribution(Base):
    """Completed payment, append-only. net_amount = gross_amount - fee_amount."""

    __tablename__ = "contributions"

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(Integer, ForeignKey("billing_accounts.id"), nullable=False, index=True)
    gross_amount = Column(Numeric(12, 2), nullable=False)
    net_amount = Column(Numeric(12, 2), nullable=False)
    fee_amount = Column(Numeric(12, 2), nullable=False)
    kind = Column(String, nullable=False)  # ONE_TIME | MONTHLY
    provider_payment_id = Column(String, nullable=True, unique=True)
    provider_session_id = Column(String, nullable=True, unique=True)
    status = Column(String, nullable=False, default="COMPLETED")
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), index=True)


class ProcessedWebhookEvent(Base):
    """Provider event ids already applied, written in the event's own transaction."""

    __tablename__ = "processed_webhook_events"

    id = Column(Integer, primary_key=True, index=True)
    provider_event_id = Column(String, nullable=False)
    event_type = Column(String, nullable=False, index=True)
    outcome = Column(String, nullable=False)
    processed_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        UniqueConstraint("provider_event_id", name="uq_processed_webhook_event_id"),
    )
