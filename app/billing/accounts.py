"""Billing account rows: creation alongside the account, lookup and locking."""

from __future__ import annotations

from datetime import datetime, timezone

import structlog
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from app.core.db import SessionLocal
from app.core.models import BillingAccount

logger = structlog.get_logger()


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite hands back naive values)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def open_billing_account(account_id: int, created_at: datetime | None = None) -> BillingAccount:
    """Create the billing record for a new account. Idempotent."""
    db = SessionLocal()
    try:
        existing = db.query(BillingAccount).filter(BillingAccount.id == account_id).first()
        if existing:
            return existing
        now = created_at or datetime.now(timezone.utc)
        account = BillingAccount(id=account_id, created_at=now, monthly_reset_at=now)
        db.add(account)
        db.commit()
        db.refresh(account)
        logger.info("billing.account.opened", account_id=account_id)
        return account
    finally:
        db.close()


def get_billing_account(db: Session, account_id: int) -> BillingAccount | None:
    return db.query(BillingAccount).filter(BillingAccount.id == account_id).first()


def lock_billing_account(db: Session, account_id: int) -> BillingAccount | None:
    """Fetch the account row under a row lock held until the transaction ends.

    Every ledger mutation for an account goes through this so concurrent
    webhook deliveries for the same account serialize.
    """
    return (
        db.query(BillingAccount)
        .filter(BillingAccount.id == account_id)
        .with_for_update()
        .populate_existing()
        .first()
    )


def lock_or_open_billing_account(db: Session, account_id: int) -> BillingAccount:
    """Lock the account row, creating it first when the account has none yet.

    A payment attributed to an account must land even if the row was never
    opened, so the row is inserted with ON CONFLICT DO NOTHING (safe against a
    concurrent insert) and then locked like any other.
    """
    insert = pg_insert if db.get_bind().dialect.name == "postgresql" else sqlite_insert
    now = datetime.now(timezone.utc)
    stmt = (
        insert(BillingAccount)
        .values(id=account_id, created_at=now, monthly_reset_at=now)
        .on_conflict_do_nothing(index_elements=["id"])
    )
    result = db.execute(stmt)
    if result.rowcount:
        logger.info("billing.account.opened_on_payment", account_id=account_id)
    return lock_billing_account(db, account_id)
