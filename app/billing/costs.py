"""Cost Estimator: what an account's usage costs to host, and who covers it.

Read-only over the billing account row. Money is computed in Decimal and
exposed as floats on the response model, in the camelCase shape the usage
widget reads.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone
from decimal import Decimal
from typing import Literal, Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from app.billing.accounts import as_utc, get_billing_account
from app.billing.subscriptions import SubscriptionStatus, subscription_state
from app.core.db import SessionLocal
from app.core.models import BillingAccount
from config.settings import Settings, get_settings

logger = structlog.get_logger()

BYTES_PER_GB = Decimal(1024 ** 3)
DAY_SECONDS = 86400
DAYS_PER_MONTH = 30

# Forecast profile for accounts younger than a month
ESTIMATED_DAILY_VISITS = 20
ESTIMATED_DAILY_WORKOUTS = 5
ESTIMATED_DAILY_MEALS = 5
ESTIMATED_IMAGE_MB = Decimal("1.5")


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class MonthlyForecast(_CamelModel):
    compute: float = 0
    storage: float = 0
    database: float = 0
    total: float = 0


class SubscriptionSummary(_CamelModel):
    active: bool = False
    status: Optional[SubscriptionStatus] = None
    amount: Optional[float] = None
    tier: Optional[str] = None
    covers_usage: bool = False
    surplus: float = 0


class BillingPeriodSummary(_CamelModel):
    active: bool = False
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    last_payment: Optional[float] = None
    period_usage_cost: float = 0
    period_balance: float = 0


class CostEstimate(_CamelModel):
    compute_cost: float = 0
    storage_cost: float = 0
    database_cost: float = 0
    total_cost: float = 0

    total_contributions: float = 0
    outstanding_balance: float = 0

    monthly_forecast: MonthlyForecast = Field(default_factory=MonthlyForecast)
    is_estimated_forecast: bool = True

    subscription: SubscriptionSummary = Field(default_factory=SubscriptionSummary)
    billing_period: BillingPeriodSummary = Field(default_factory=BillingPeriodSummary)

    total_requests: int = 0
    last_month_requests: int = 0
    stored_gb: float = 0
    active_days: int = 0

    status: Literal["sustainable", "moderate", "heavy"] = "sustainable"
    balance_status: Literal["paid", "owing", "ahead"] = "paid"

    @classmethod
    def empty(cls) -> "CostEstimate":
        """All-zero estimate for an account without a billing record."""
        return cls()


def _days_since(start: datetime, now: datetime) -> int:
    elapsed = (now - start).total_seconds()
    return max(1, math.ceil(elapsed / DAY_SECONDS))


def _dec(value) -> Decimal:
    return Decimal(str(value)) if value is not None else Decimal("0")


class CostEstimator:

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()

    def estimate(self, account: BillingAccount | None, now: datetime | None = None) -> CostEstimate:
        if account is None:
            return CostEstimate.empty()
        s = self._settings
        now = now or datetime.now(timezone.utc)

        active_days = _days_since(as_utc(account.created_at), now)
        months_active = max(1, math.ceil(active_days / DAYS_PER_MONTH))
        stored_gb = Decimal(account.lifetime_stored_bytes or 0) / BYTES_PER_GB

        # Lifetime
        compute_cost = (account.lifetime_request_count or 0) * s.cost_per_request
        storage_cost = stored_gb * s.cost_per_gb_month * months_active
        database_cost = active_days * s.cost_per_active_day
        total_cost = compute_cost + storage_cost + database_cost

        total_contributions = _dec(account.total_contributions)
        outstanding = max(Decimal("0"), total_cost - total_contributions)

        # Monthly forecast
        is_estimated = active_days < DAYS_PER_MONTH
        if is_estimated:
            monthly_requests = (ESTIMATED_DAILY_VISITS + ESTIMATED_DAILY_WORKOUTS) * DAYS_PER_MONTH
            monthly_gb = ESTIMATED_DAILY_MEALS * ESTIMATED_IMAGE_MB * DAYS_PER_MONTH / Decimal(1024)
            forecast_compute = monthly_requests * s.cost_per_request
            forecast_storage = monthly_gb * s.cost_per_gb_month
        else:
            forecast_compute = (account.monthly_request_count or 0) * s.cost_per_request
            forecast_storage = stored_gb * s.cost_per_gb_month
        forecast_database = s.monthly_db_base_cost
        forecast_total = forecast_compute + forecast_storage + forecast_database

        if total_cost > s.usage_heavy_threshold:
            status = "heavy"
        elif total_cost > s.usage_moderate_threshold:
            status = "moderate"
        else:
            status = "sustainable"

        if total_contributions > total_cost:
            balance_status = "ahead"
        elif outstanding > Decimal("0.01"):
            balance_status = "owing"
        else:
            balance_status = "paid"

        # Subscription coverage
        state = subscription_state(account)
        sub_active = state is not None and state.active
        sub_amount = state.monthly_amount if state else None
        surplus = (_dec(sub_amount) - forecast_total) if sub_amount else -forecast_total

        # Billing period reconciliation
        period_start = as_utc(account.current_period_start)
        last_payment = account.last_payment_amount
        period_gb = Decimal(account.period_stored_bytes or 0) / BYTES_PER_GB
        period_days = _days_since(period_start, now) if period_start else 0
        period_usage_cost = (
            (account.period_request_count or 0) * s.cost_per_request
            + period_gb * s.cost_per_gb_month
            + Decimal(period_days) / DAYS_PER_MONTH * s.monthly_db_base_cost
        )
        period_balance = (_dec(last_payment) - period_usage_cost) if last_payment else Decimal("0")

        return CostEstimate(
            compute_cost=compute_cost,
            storage_cost=storage_cost,
            database_cost=database_cost,
            total_cost=total_cost,
            total_contributions=total_contributions,
            outstanding_balance=outstanding,
            monthly_forecast=MonthlyForecast(
                compute=forecast_compute,
                storage=forecast_storage,
                database=forecast_database,
                total=forecast_total,
            ),
            is_estimated_forecast=is_estimated,
            subscription=SubscriptionSummary(
                active=sub_active,
                status=state.status if state else None,
                amount=sub_amount,
                tier=state.tier_name if state else None,
                covers_usage=sub_active and surplus >= 0,
                surplus=surplus,
            ),
            billing_period=BillingPeriodSummary(
                active=bool(period_start and last_payment),
                start=period_start,
                end=as_utc(account.current_period_end),
                last_payment=last_payment,
                period_usage_cost=period_usage_cost,
                period_balance=period_balance,
            ),
            total_requests=account.lifetime_request_count or 0,
            last_month_requests=account.monthly_request_count or 0,
            stored_gb=stored_gb,
            active_days=active_days,
            status=status,
            balance_status=balance_status,
        )


cost_estimator = CostEstimator()


def get_cost_estimate(
    account_id: int,
    estimator: CostEstimator | None = None,
    now: datetime | None = None,
) -> CostEstimate:
    db = SessionLocal()
    try:
        account = get_billing_account(db, account_id)
        if account is None:
            logger.info("billing.usage.account_missing", account_id=account_id)
        return (estimator or cost_estimator).estimate(account, now=now)
    finally:
        db.close()
