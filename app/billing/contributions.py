"""Contribution Ledger: append-only record of completed payments.

A contribution is written at most once per provider payment id and once per
checkout session id. The account's total_contributions moves in the same
transaction, by the NET amount.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

import structlog
from sqlalchemy import func, or_, update
from sqlalchemy.orm import Session

from app.billing.fees import calculate_fees
from app.core.models import BillingAccount, Contribution

logger = structlog.get_logger()

KIND_ONE_TIME = "ONE_TIME"
KIND_MONTHLY = "MONTHLY"


@dataclass(frozen=True)
class AuditMismatch:
    account_id: int
    recorded_total: Decimal
    ledger_total: Decimal


class ContributionLedger:

    def create(
        self,
        db: Session,
        *,
        account_id: int,
        gross_amount: Decimal,
        kind: str,
        provider_payment_id: str | None = None,
        provider_session_id: str | None = None,
    ) -> Contribution | None:
        """Record a completed payment and add its net to the account total.

        Returns None when a contribution with the same payment or session id
        already exists. The caller owns the transaction and must hold the
        account lock; the unique constraints catch anything that slips past.
        """
        if provider_payment_id is None and provider_session_id is None:
            raise ValueError("contribution needs a provider payment id or session id")

        keys = []
        if provider_payment_id is not None:
            keys.append(Contribution.provider_payment_id == provider_payment_id)
        if provider_session_id is not None:
            keys.append(Contribution.provider_session_id == provider_session_id)
        existing = db.query(Contribution.id).filter(or_(*keys)).first()
        if existing:
            logger.info(
                "billing.contribution.duplicate",
                account_id=account_id,
                provider_payment_id=provider_payment_id,
                provider_session_id=provider_session_id,
            )
            return None

        fees = calculate_fees(gross_amount)
        contribution = Contribution(
            account_id=account_id,
            gross_amount=fees.gross,
            net_amount=fees.net,
            fee_amount=fees.fee,
            kind=kind,
            provider_payment_id=provider_payment_id,
            provider_session_id=provider_session_id,
            status="COMPLETED",
        )
        db.add(contribution)
        db.execute(
            update(BillingAccount)
            .where(BillingAccount.id == account_id)
            .values(total_contributions=BillingAccount.total_contributions + fees.net)
            .execution_options(synchronize_session=False)
        )
        db.flush()
        logger.info(
            "billing.contribution.recorded",
            account_id=account_id,
            kind=kind,
            gross=str(fees.gross),
            net=str(fees.net),
            fee=str(fees.fee),
        )
        return contribution

    def list_for_account(self, db: Session, account_id: int, limit: int = 50) -> list[Contribution]:
        return (
            db.query(Contribution)
            .filter(Contribution.account_id == account_id)
            .order_by(Contribution.created_at.desc(), Contribution.id.desc())
            .limit(limit)
            .all()
        )

    def audit(self, contribution: Contribution) -> bool:
        """Recompute the fee split from the gross amount; True when the stored row agrees."""
        expected = calculate_fees(contribution.gross_amount)
        return (
            Decimal(str(contribution.fee_amount)) == expected.fee
            and Decimal(str(contribution.net_amount)) == expected.net
        )

    def audit_totals(self, db: Session) -> list[AuditMismatch]:
        """Accounts whose stored total differs from the sum of their contributions' net."""
        sums = (
            db.query(
                Contribution.account_id.label("account_id"),
                func.coalesce(func.sum(Contribution.net_amount), 0).label("ledger_total"),
            )
            .group_by(Contribution.account_id)
            .subquery()
        )
        rows = (
            db.query(BillingAccount.id, BillingAccount.total_contributions, sums.c.ledger_total)
            .outerjoin(sums, sums.c.account_id == BillingAccount.id)
            .order_by(BillingAccount.id)
            .all()
        )
        mismatches = []
        for account_id, recorded, ledger in rows:
            recorded_d = Decimal(str(recorded or 0)).quantize(Decimal("0.01"))
            ledger_d = Decimal(str(ledger or 0)).quantize(Decimal("0.01"))
            if recorded_d != ledger_d:
                mismatches.append(AuditMismatch(account_id, recorded_d, ledger_d))
        return mismatches
