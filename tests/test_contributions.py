"""Tests for the contribution ledger and contribution history endpoint."""

from decimal import Decimal

import pytest
from httpx import AsyncClient

from app.billing.accounts import open_billing_account
from app.billing.contributions import KIND_MONTHLY, KIND_ONE_TIME, ContributionLedger
from app.core.auth import create_access_token
from app.core.db import SessionLocal
from app.core.models import BillingAccount, Contribution


def _create(ledger: ContributionLedger, **kwargs):
    db = SessionLocal()
    try:
        contribution = ledger.create(db, **kwargs)
        db.commit()
        return contribution
    finally:
        db.close()


def _total(account_id: int) -> Decimal:
    db = SessionLocal()
    try:
        return Decimal(str(db.get(BillingAccount, account_id).total_contributions))
    finally:
        db.close()


def test_create_records_fee_split_and_total() -> None:
    open_billing_account(1)
    ledger = ContributionLedger()
    _create(ledger, account_id=1, gross_amount=Decimal("10.00"), kind=KIND_ONE_TIME,
            provider_payment_id="pi_1", provider_session_id="cs_1")

    db = SessionLocal()
    try:
        row = db.query(Contribution).one()
        assert row.gross_amount == Decimal("10.00")
        assert row.fee_amount == Decimal("0.59")
        assert row.net_amount == Decimal("9.41")
        assert row.status == "COMPLETED"
        assert ledger.audit(row) is True
    finally:
        db.close()
    assert _total(1) == Decimal("9.41")


def test_duplicate_payment_id_is_rejected() -> None:
    open_billing_account(1)
    ledger = ContributionLedger()
    first = _create(ledger, account_id=1, gross_amount=Decimal("10"), kind=KIND_MONTHLY,
                    provider_payment_id="pi_1", provider_session_id="in_1")
    second = _create(ledger, account_id=1, gross_amount=Decimal("10"), kind=KIND_MONTHLY,
                     provider_payment_id="pi_1", provider_session_id="in_2")

    assert first is not None
    assert second is None
    assert _total(1) == Decimal("9.41")


def test_duplicate_session_id_is_rejected() -> None:
    open_billing_account(1)
    ledger = ContributionLedger()
    _create(ledger, account_id=1, gross_amount=Decimal("5"), kind=KIND_ONE_TIME, provider_session_id="cs_1")
    again = _create(ledger, account_id=1, gross_amount=Decimal("5"), kind=KIND_ONE_TIME,
                    provider_payment_id="pi_9", provider_session_id="cs_1")
    assert again is None


def test_contribution_needs_a_provider_key() -> None:
    db = SessionLocal()
    try:
        with pytest.raises(ValueError):
            ContributionLedger().create(db, account_id=1, gross_amount=Decimal("5"), kind=KIND_ONE_TIME)
    finally:
        db.close()


def test_audit_flags_tampered_row() -> None:
    row = Contribution(gross_amount=Decimal("10.00"), fee_amount=Decimal("0.50"), net_amount=Decimal("9.50"))
    assert ContributionLedger().audit(row) is False


def test_audit_totals_reports_drift() -> None:
    open_billing_account(1)
    open_billing_account(2)
    ledger = ContributionLedger()
    _create(ledger, account_id=1, gross_amount=Decimal("10"), kind=KIND_ONE_TIME, provider_session_id="cs_1")

    db = SessionLocal()
    try:
        assert ledger.audit_totals(db) == []
        db.query(BillingAccount).filter(BillingAccount.id == 2).update({"total_contributions": Decimal("3.00")})
        db.commit()
        mismatches = ledger.audit_totals(db)
    finally:
        db.close()

    assert len(mismatches) == 1
    assert mismatches[0].account_id == 2
    assert mismatches[0].recorded_total == Decimal("3.00")
    assert mismatches[0].ledger_total == Decimal("0.00")


@pytest.mark.anyio
async def test_contribution_history(client: AsyncClient) -> None:
    open_billing_account(5)
    open_billing_account(6)
    ledger = ContributionLedger()
    _create(ledger, account_id=5, gross_amount=Decimal("10"), kind=KIND_ONE_TIME, provider_session_id="cs_a")
    _create(ledger, account_id=5, gross_amount=Decimal("5"), kind=KIND_MONTHLY, provider_session_id="in_b")
    _create(ledger, account_id=6, gross_amount=Decimal("20"), kind=KIND_ONE_TIME, provider_session_id="cs_c")

    token = create_access_token(account_id=5)
    resp = await client.get("/billing/contributions", headers={"Authorization": f"Bearer {token}"})

    assert resp.status_code == 200
    rows = resp.json()
    assert len(rows) == 2
    assert {Decimal(str(r["net_amount"])) for r in rows} == {Decimal("9.41"), Decimal("4.56")}
    assert "provider_payment_id" not in rows[0]
