"""Subscription Ledger: per-account subscription state machine.

    ABSENT → ACTIVE → {CANCELED, PAST_DUE, UNPAID} → ABSENT

All methods mutate a BillingAccount that the caller has locked inside its own
transaction (see accounts.lock_billing_account); nothing here commits.
Applying the same transition twice leaves the row unchanged.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum

import structlog

from app.billing.accounts import as_utc
from app.core.models import BillingAccount

logger = structlog.get_logger()


class SubscriptionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    CANCELED = "CANCELED"
    PAST_DUE = "PAST_DUE"
    UNPAID = "UNPAID"


_PROVIDER_STATUS_MAP = {
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.UNPAID,
}


def map_provider_status(provider_status: str) -> SubscriptionStatus:
    """Provider status → local status. Anything not delinquent counts as ACTIVE."""
    return _PROVIDER_STATUS_MAP.get(provider_status, SubscriptionStatus.ACTIVE)


class PeriodOutcome(str, Enum):
    APPLIED = "applied"
    STALE = "stale"
    MISSING = "missing"


@dataclass(frozen=True)
class SubscriptionState:
    provider_subscription_id: str
    status: SubscriptionStatus
    monthly_amount: Decimal | None = None
    tier_name: str | None = None
    provider_customer_id: str | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    last_payment_amount: Decimal | None = None
    last_payment_at: datetime | None = None

    @property
    def active(self) -> bool:
        return self.status == SubscriptionStatus.ACTIVE


def subscription_state(account: BillingAccount) -> SubscriptionState | None:
    """Read the inline subscription columns as a value, or None when absent."""
    if not account.provider_subscription_id or not account.subscription_status:
        return None
    return SubscriptionState(
        provider_subscription_id=account.provider_subscription_id,
        status=SubscriptionStatus(account.subscription_status),
        monthly_amount=account.subscription_amount,
        tier_name=account.subscription_tier,
        provider_customer_id=account.provider_customer_id,
        current_period_start=as_utc(account.current_period_start),
        current_period_end=as_utc(account.current_period_end),
        last_payment_amount=account.last_payment_amount,
        last_payment_at=as_utc(account.last_payment_at),
    )


class SubscriptionLedger:

    def activate(
        self,
        account: BillingAccount,
        *,
        subscription_id: str,
        amount: Decimal | None,
        tier: str | None,
        customer_id: str | None,
    ) -> bool:
        """Checkout completed in subscription mode → ACTIVE.

        Refuses (returns False) when the account already holds a different
        ACTIVE subscription, so a replayed checkout for an older subscription
        cannot replace the current one.
        """
        held = account.provider_subscription_id
        if (
            held
            and held != subscription_id
            and account.subscription_status == SubscriptionStatus.ACTIVE.value
        ):
            logger.warning(
                "billing.subscription.checkout_conflict",
                account_id=account.id,
                held_subscription_id=held,
                subscription_id=subscription_id,
            )
            return False

        if held != subscription_id:
            self._switch_to(account, subscription_id)
            account.subscription_status = SubscriptionStatus.ACTIVE.value
        elif account.subscription_status != SubscriptionStatus.ACTIVE.value:
            # Late checkout for a subscription already past activation keeps its status.
            logger.info(
                "billing.subscription.checkout_replayed",
                account_id=account.id,
                subscription_id=subscription_id,
                status=account.subscription_status,
            )
        account.provider_subscription_id = subscription_id
        if amount is not None:
            account.subscription_amount = amount
        if tier:
            account.subscription_tier = tier
        if customer_id:
            account.provider_customer_id = customer_id
        logger.info(
            "billing.subscription.activated",
            account_id=account.id,
            subscription_id=subscription_id,
            amount=str(amount) if amount is not None else None,
            tier=tier,
        )
        return True

    def ensure_for_payment(
        self,
        account: BillingAccount,
        *,
        subscription_id: str,
        amount: Decimal | None,
        tier: str | None,
        customer_id: str | None,
    ) -> bool:
        """Create the subscription lazily when a payment arrives before its checkout event.

        A held subscription that is no longer ACTIVE (canceled at period end,
        delinquent) is replaced, as a resubscribe would. Returns True when the
        account now holds this subscription.
        """
        if account.provider_subscription_id == subscription_id:
            return True
        if not self._holds_active(account):
            logger.info(
                "billing.subscription.created_from_invoice",
                account_id=account.id,
                subscription_id=subscription_id,
                replaced_subscription_id=account.provider_subscription_id,
            )
            return self.activate(account, subscription_id=subscription_id, amount=amount, tier=tier, customer_id=customer_id)
        logger.warning(
            "billing.subscription.payment_for_other_subscription",
            account_id=account.id,
            held_subscription_id=account.provider_subscription_id,
            subscription_id=subscription_id,
        )
        return False

    def apply_payment(
        self,
        account: BillingAccount,
        *,
        net_amount: Decimal,
        paid_at: datetime,
        period_start: datetime | None,
        period_end: datetime | None,
    ) -> PeriodOutcome:
        """Record a recurring payment against the subscription's billing period.

        The period (and last payment) only moves forward: a payment whose
        period starts at or before the stored one is STALE. Without period
        data the last payment is still recorded and the outcome is MISSING.
        The caller resets period usage only on APPLIED.
        """
        if period_start is None or period_end is None:
            account.last_payment_amount = net_amount
            account.last_payment_at = paid_at
            return PeriodOutcome.MISSING

        stored_start = as_utc(account.current_period_start)
        if stored_start is not None and as_utc(period_start) <= stored_start:
            logger.info(
                "billing.period.stale_ignored",
                account_id=account.id,
                period_start=period_start.isoformat(),
                stored_period_start=stored_start.isoformat(),
            )
            return PeriodOutcome.STALE

        account.current_period_start = period_start
        account.current_period_end = period_end
        account.last_payment_amount = net_amount
        account.last_payment_at = paid_at
        return PeriodOutcome.APPLIED

    def mark_canceled(self, account: BillingAccount, subscription_id: str) -> bool:
        """Scheduled or completed cancellation flagged → CANCELED; period fields kept."""
        if not self._claim(account, subscription_id):
            return False
        account.subscription_status = SubscriptionStatus.CANCELED.value
        logger.info("billing.subscription.cancel_flagged", account_id=account.id, subscription_id=subscription_id)
        return True

    def apply_provider_status(
        self,
        account: BillingAccount,
        subscription_id: str,
        provider_status: str,
        amount: Decimal | None,
    ) -> bool:
        if not self._claim(account, subscription_id):
            return False
        status = map_provider_status(provider_status)
        account.subscription_status = status.value
        if amount is not None:
            account.subscription_amount = amount
        logger.info(
            "billing.subscription.status_updated",
            account_id=account.id,
            subscription_id=subscription_id,
            provider_status=provider_status,
            status=status.value,
        )
        return True

    def mark_past_due(self, account: BillingAccount, subscription_id: str) -> bool:
        """Failed invoice payment on an ACTIVE subscription → PAST_DUE."""
        if not self._holds(account, subscription_id):
            return False
        if account.subscription_status != SubscriptionStatus.ACTIVE.value:
            return False
        account.subscription_status = SubscriptionStatus.PAST_DUE.value
        logger.info("billing.subscription.past_due", account_id=account.id, subscription_id=subscription_id)
        return True

    def clear(self, account: BillingAccount, subscription_id: str) -> bool:
        """Final deletion → back to ABSENT. The provider customer id is kept for the portal."""
        if not self._holds(account, subscription_id):
            return False
        account.provider_subscription_id = None
        account.subscription_status = None
        account.subscription_amount = None
        account.subscription_tier = None
        account.current_period_start = None
        account.current_period_end = None
        account.last_payment_amount = None
        account.last_payment_at = None
        logger.info("billing.subscription.cleared", account_id=account.id, subscription_id=subscription_id)
        return True

    def _claim(self, account: BillingAccount, subscription_id: str) -> bool:
        """Hold subscription_id, adopting it when the account holds nothing ACTIVE.

        Status updates can arrive before the checkout that creates the
        subscription locally; the later checkout keeps the status set here.
        """
        if account.provider_subscription_id == subscription_id:
            return True
        if self._holds_active(account):
            return self._holds(account, subscription_id)
        logger.info(
            "billing.subscription.adopted_from_update",
            account_id=account.id,
            subscription_id=subscription_id,
            replaced_subscription_id=account.provider_subscription_id,
        )
        self._switch_to(account, subscription_id)
        return True

    @staticmethod
    def _switch_to(account: BillingAccount, subscription_id: str) -> None:
        # The previous subscription's period and payment no longer apply.
        account.provider_subscription_id = subscription_id
        account.current_period_start = None
        account.current_period_end = None
        account.last_payment_amount = None
        account.last_payment_at = None

    @staticmethod
    def _holds_active(account: BillingAccount) -> bool:
        return (
            account.provider_subscription_id is not None
            and account.subscription_status == SubscriptionStatus.ACTIVE.value
        )

    @staticmethod
    def _holds(account: BillingAccount, subscription_id: str) -> bool:
        if account.provider_subscription_id == subscription_id:
            return True
        logger.warning(
            "billing.subscription.not_found",
            account_id=account.id,
            subscription_id=subscription_id,
            held_subscription_id=account.provider_subscription_id,
        )
        return False
