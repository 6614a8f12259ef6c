"""Webhook Event Processor.

Verifies, normalizes and applies payment-provider events to the ledgers:

    checkout.session.completed (subscription) → Subscription ACTIVE
    checkout.session.completed (payment)      → ONE_TIME contribution
    invoice.payment_succeeded                 → MONTHLY contribution + billing period + period reset
    invoice.payment_failed                    → Subscription PAST_DUE
    customer.subscription.updated             → CANCELED / cleared / mapped status
    customer.subscription.deleted             → Subscription cleared

Each event runs in its own transaction with the account row locked. Provider
lookups happen before the transaction opens so no lock is held across a
network call. Re-delivered and re-ordered events converge to the same state.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.billing.accounts import lock_or_open_billing_account
from app.billing.contributions import KIND_MONTHLY, KIND_ONE_TIME, ContributionLedger
from app.billing.errors import MalformedEventError, PayloadError, ProviderError, SignatureError
from app.billing.events import (
    BillingEvent,
    CheckoutPaymentCompleted,
    CheckoutSubscriptionCompleted,
    IgnoredEvent,
    InvoicePaid,
    InvoicePaymentFailed,
    SubscriptionChanged,
    SubscriptionDeleted,
    parse_event,
)
from app.billing.metering import UsageMeter, usage_meter
from app.billing.provider import PaymentProvider, ProviderSubscription
from app.billing.subscriptions import PeriodOutcome, SubscriptionLedger
from app.core.db import SessionLocal
from app.core.instrumentation import WEBHOOK_EVENTS
from app.core.models import BillingAccount, ProcessedWebhookEvent

logger = structlog.get_logger()

PROCESSED = "processed"
DUPLICATE = "duplicate"
IGNORED = "ignored"
SKIPPED_MALFORMED = "skipped_malformed"
SKIPPED_UNATTRIBUTED = "skipped_unattributed"


@dataclass(frozen=True)
class _InvoiceContext:
    """Provider-side facts about a paid invoice, gathered outside the transaction."""

    account_id: int | None
    subscription: ProviderSubscription
    period_start: datetime | None
    period_end: datetime | None


class WebhookEventProcessor:

    def __init__(
        self,
        provider: PaymentProvider,
        meter: UsageMeter = usage_meter,
        session_factory: Callable[[], Session] = SessionLocal,
    ) -> None:
        self._provider = provider
        self._meter = meter
        self._session_factory = session_factory
        self._subscriptions = SubscriptionLedger()
        self._contributions = ContributionLedger()

    def handle(self, payload: bytes, signature: str | None) -> str:
        """Verify and process one webhook delivery. Returns the outcome.

        Raises SignatureError / PayloadError (reject, 400) before any side
        effect; any other exception means the event was not applied (500).
        """
        try:
            event = self._provider.verify_event(payload, signature)
        except SignatureError as exc:
            logger.warning("billing.webhook.signature_invalid", error=str(exc))
            WEBHOOK_EVENTS.labels(event_type="unknown", outcome="rejected").inc()
            raise
        except PayloadError as exc:
            logger.warning("billing.webhook.invalid_payload", error=str(exc))
            WEBHOOK_EVENTS.labels(event_type="unknown", outcome="rejected").inc()
            raise
        return self.process(event)

    def process(self, event: dict) -> str:
        """Apply an already verified event."""
        event_id = event.get("id") or ""
        event_type = event.get("type") or "unknown"
        log = logger.bind(event_id=event_id, event_type=event_type)
        log.info("billing.webhook.received")

        try:
            outcome = self._process(event_id, event_type, event)
        except MalformedEventError as exc:
            log.warning("billing.webhook.malformed", reason=exc.reason)
            outcome = SKIPPED_MALFORMED
        except Exception as exc:
            log.error("billing.webhook.handler_failed", error=str(exc))
            WEBHOOK_EVENTS.labels(event_type=event_type, outcome="failed").inc()
            raise

        WEBHOOK_EVENTS.labels(event_type=event_type, outcome=outcome).inc()
        log.info("billing.webhook.completed", outcome=outcome)
        return outcome

    def _process(self, event_id: str, event_type: str, event: dict) -> str:
        parsed = parse_event(event)
        if isinstance(parsed, IgnoredEvent):
            logger.debug("billing.webhook.event_ignored", event_id=event_id, event_type=event_type, reason=parsed.reason)
            return IGNORED

        invoice_context = self._resolve_invoice(parsed) if isinstance(parsed, InvoicePaid) else None
        checkout_subscription = (
            self._provider.retrieve_subscription(parsed.subscription_id)
            if isinstance(parsed, CheckoutSubscriptionCompleted) and parsed.account_id is not None
            else None
        )

        db = self._session_factory()
        try:
            if event_id and self._already_processed(db, event_id):
                return DUPLICATE

            if isinstance(parsed, CheckoutSubscriptionCompleted):
                outcome = self._checkout_subscription(db, parsed, checkout_subscription)
            elif isinstance(parsed, CheckoutPaymentCompleted):
                outcome = self._checkout_payment(db, parsed)
            elif isinstance(parsed, InvoicePaid):
                outcome = self._invoice_paid(db, parsed, invoice_context)
            elif isinstance(parsed, InvoicePaymentFailed):
                outcome = self._invoice_failed(db, parsed)
            elif isinstance(parsed, SubscriptionChanged):
                outcome = self._subscription_changed(db, parsed)
            else:
                outcome = self._subscription_deleted(db, parsed)

            if event_id:
                db.add(ProcessedWebhookEvent(provider_event_id=event_id, event_type=event_type, outcome=outcome))
            db.commit()
            return outcome
        except IntegrityError:
            # A concurrent delivery committed the same event or payment first.
            db.rollback()
            logger.info("billing.webhook.concurrent_duplicate", event_id=event_id, event_type=event_type)
            return DUPLICATE
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    @staticmethod
    def _already_processed(db: Session, event_id: str) -> bool:
        seen = (
            db.query(ProcessedWebhookEvent.id)
            .filter(ProcessedWebhookEvent.provider_event_id == event_id)
            .first()
        )
        if seen:
            logger.info("billing.webhook.duplicate_event", event_id=event_id)
        return seen is not None

    @staticmethod
    def _lock(db: Session, account_id: int | None, event: BillingEvent) -> BillingAccount | None:
        if account_id is None:
            logger.warning("billing.webhook.unattributed", event_id=event.event_id, event_type=event.event_type)
            return None
        return lock_or_open_billing_account(db, account_id)

    # ── Checkout ──────────────────────────────────────────────────────────────

    def _checkout_subscription(
        self,
        db: Session,
        event: CheckoutSubscriptionCompleted,
        subscription: ProviderSubscription | None,
    ) -> str:
        account = self._lock(db, event.account_id, event)
        if account is None:
            return SKIPPED_UNATTRIBUTED
        activated = self._subscriptions.activate(
            account,
            subscription_id=event.subscription_id,
            amount=subscription.amount if subscription else None,
            tier=event.tier,
            customer_id=event.customer_id,
        )
        return PROCESSED if activated else IGNORED

    def _checkout_payment(self, db: Session, event: CheckoutPaymentCompleted) -> str:
        account = self._lock(db, event.account_id, event)
        if account is None:
            return SKIPPED_UNATTRIBUTED
        contribution = self._contributions.create(
            db,
            account_id=account.id,
            gross_amount=event.amount,
            kind=KIND_ONE_TIME,
            provider_payment_id=event.payment_intent_id,
            provider_session_id=event.session_id,
        )
        return PROCESSED if contribution else DUPLICATE

    # ── Invoices ──────────────────────────────────────────────────────────────

    def _resolve_invoice(self, event: InvoicePaid) -> _InvoiceContext:
        """Attribution and billing period: subscription item → invoice line → line lookup."""
        subscription = self._provider.retrieve_subscription(event.subscription_id)
        account_id = subscription.account_id if subscription.account_id is not None else event.parent_account_id

        start, end = subscription.period_start, subscription.period_end
        if start is None or end is None:
            start, end = event.line_period_start, event.line_period_end
        if start is None or end is None:
            try:
                period = self._provider.retrieve_invoice_line_period(event.invoice_id)
            except ProviderError as exc:
                logger.warning("billing.period.lookup_failed", invoice_id=event.invoice_id, error=str(exc))
                period = None
            start, end = period if period else (None, None)
        return _InvoiceContext(account_id=account_id, subscription=subscription, period_start=start, period_end=end)

    def _invoice_paid(self, db: Session, event: InvoicePaid, context: _InvoiceContext) -> str:
        account = self._lock(db, context.account_id, event)
        if account is None:
            return SKIPPED_UNATTRIBUTED

        holds = self._subscriptions.ensure_for_payment(
            account,
            subscription_id=event.subscription_id,
            amount=context.subscription.amount,
            tier=context.subscription.tier or event.parent_tier,
            customer_id=event.customer_id or context.subscription.customer_id,
        )
        contribution = self._contributions.create(
            db,
            account_id=account.id,
            gross_amount=event.amount_paid,
            kind=KIND_MONTHLY,
            provider_payment_id=event.payment_intent_id,
            provider_session_id=event.invoice_id,
        )
        if contribution is None:
            return DUPLICATE
        if not holds:
            return PROCESSED

        period = self._subscriptions.apply_payment(
            account,
            net_amount=contribution.net_amount,
            paid_at=event.paid_at,
            period_start=context.period_start,
            period_end=context.period_end,
        )
        if period == PeriodOutcome.APPLIED:
            self._meter.reset_period(account.id, db)
            logger.info(
                "billing.period.applied",
                account_id=account.id,
                period_start=context.period_start.isoformat(),
                period_end=context.period_end.isoformat(),
            )
        elif period == PeriodOutcome.MISSING:
            logger.warning("billing.period.missing", account_id=account.id, invoice_id=event.invoice_id)
        return PROCESSED

    def _invoice_failed(self, db: Session, event: InvoicePaymentFailed) -> str:
        account_id = event.parent_account_id
        if account_id is None:
            account_id = (
                db.query(BillingAccount.id)
                .filter(BillingAccount.provider_subscription_id == event.subscription_id)
                .scalar()
            )
        account = self._lock(db, account_id, event)
        if account is None:
            return SKIPPED_UNATTRIBUTED
        return PROCESSED if self._subscriptions.mark_past_due(account, event.subscription_id) else IGNORED

    # ── Subscriptions ─────────────────────────────────────────────────────────

    def _subscription_changed(self, db: Session, event: SubscriptionChanged) -> str:
        account = self._lock(db, event.account_id, event)
        if account is None:
            return SKIPPED_UNATTRIBUTED
        # A cancellation flag wins over the reported status.
        if event.cancel_flagged:
            changed = self._subscriptions.mark_canceled(account, event.subscription_id)
        elif event.status == "canceled":
            changed = self._subscriptions.clear(account, event.subscription_id)
        else:
            changed = self._subscriptions.apply_provider_status(
                account, event.subscription_id, event.status, event.amount
            )
        return PROCESSED if changed else IGNORED

    def _subscription_deleted(self, db: Session, event: SubscriptionDeleted) -> str:
        account = self._lock(db, event.account_id, event)
        if account is None:
            return SKIPPED_UNATTRIBUTED
        return PROCESSED if self._subscriptions.clear(account, event.subscription_id) else IGNORED
