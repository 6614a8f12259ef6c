"""Tests for usage metering: request counters, storage bytes and period resets."""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from prometheus_client import REGISTRY

from app.billing.accounts import open_billing_account
from app.billing.metering import MeteringDispatcher, UsageMeter
from app.core.db import SessionLocal
from app.core.models import BillingAccount


def _load(account_id: int) -> BillingAccount:
    db = SessionLocal()
    try:
        return db.query(BillingAccount).filter(BillingAccount.id == account_id).one()
    finally:
        db.close()


def test_record_request_increments_all_counters(meter: UsageMeter) -> None:
    open_billing_account(1)
    assert meter.record_request(1) is True
    assert meter.record_request(1) is True

    account = _load(1)
    assert account.lifetime_request_count == 2
    assert account.period_request_count == 2
    assert account.monthly_request_count == 2


def test_monthly_window_rolls_over_after_30_days(meter: UsageMeter) -> None:
    start = datetime(2026, 1, 1, tzinfo=timezone.utc)
    open_billing_account(1, created_at=start)
    meter.record_request(1, now=start + timedelta(days=1))
    meter.record_request(1, now=start + timedelta(days=2))

    rollover = start + timedelta(days=30, hours=1)
    meter.record_request(1, now=rollover)

    account = _load(1)
    assert account.monthly_request_count == 1
    assert account.monthly_reset_at.replace(tzinfo=timezone.utc) == rollover
    assert account.lifetime_request_count == 3
    assert account.period_request_count == 3


def test_monthly_window_kept_before_30_days(meter: UsageMeter) -> None:
    start = datetime(2026, 1, 1, tzinfo=timezone.utc)
    open_billing_account(1, created_at=start)
    meter.record_request(1, now=start + timedelta(days=29, hours=23))

    account = _load(1)
    assert account.monthly_request_count == 1
    assert account.monthly_reset_at.replace(tzinfo=timezone.utc) == start


def test_storage_upload_adds_to_lifetime_and_period(meter: UsageMeter) -> None:
    open_billing_account(1)
    meter.record_storage_delta(1, 1_500_000)

    account = _load(1)
    assert account.lifetime_stored_bytes == 1_500_000
    assert account.period_stored_bytes == 1_500_000


def test_storage_deletion_only_reduces_lifetime(meter: UsageMeter) -> None:
    open_billing_account(1)
    meter.record_storage_delta(1, 1_000)
    meter.record_storage_delta(1, -400)

    account = _load(1)
    assert account.lifetime_stored_bytes == 600
    assert account.period_stored_bytes == 1_000


def test_storage_never_negative(meter: UsageMeter) -> None:
    open_billing_account(1)
    meter.record_storage_delta(1, 100)
    meter.record_storage_delta(1, -5_000)

    assert _load(1).lifetime_stored_bytes == 0


def test_reset_period_zeroes_only_period_counters(meter: UsageMeter) -> None:
    open_billing_account(1)
    meter.record_request(1)
    meter.record_storage_delta(1, 2_048)

    meter.reset_period(1)

    account = _load(1)
    assert account.period_request_count == 0
    assert account.period_stored_bytes == 0
    assert account.lifetime_request_count == 1
    assert account.lifetime_stored_bytes == 2_048
    assert account.monthly_request_count == 1


def test_unknown_account_is_reported_not_raised(meter: UsageMeter) -> None:
    assert meter.record_request(999) is False
    assert meter.record_storage_delta(999, 10) is False


def test_database_failure_is_swallowed() -> None:
    session = MagicMock()
    session.execute.side_effect = RuntimeError("connection reset")
    meter = UsageMeter(session_factory=lambda: session)

    assert meter.record_request(1) is False
    session.rollback.assert_called_once()
    session.close.assert_called_once()


@pytest.mark.anyio
async def test_dispatcher_applies_queued_updates(meter: UsageMeter) -> None:
    open_billing_account(1)
    dispatcher = MeteringDispatcher(meter, maxsize=10)
    assert dispatcher.submit_request(1)
    assert dispatcher.submit_storage_delta(1, 512)
    assert dispatcher.pending == 2

    await dispatcher.drain()

    account = _load(1)
    assert dispatcher.pending == 0
    assert account.lifetime_request_count == 1
    assert account.lifetime_stored_bytes == 512


@pytest.mark.anyio
async def test_dispatcher_drops_when_full(meter: UsageMeter) -> None:
    dispatcher = MeteringDispatcher(meter, maxsize=1)
    before = REGISTRY.get_sample_value("handfull_metering_dropped_total", {"kind": "request"}) or 0

    assert dispatcher.submit_request(1) is True
    assert dispatcher.submit_request(1) is False

    assert REGISTRY.get_sample_value("handfull_metering_dropped_total", {"kind": "request"}) == before + 1
    assert dispatcher.pending == 1


@pytest.mark.anyio
async def test_dispatcher_workers_start_and_stop(meter: UsageMeter) -> None:
    open_billing_account(1)
    dispatcher = MeteringDispatcher(meter, maxsize=10)
    dispatcher.start()
    dispatcher.submit_request(1)
    await dispatcher.stop()

    assert _load(1).lifetime_request_count == 1
