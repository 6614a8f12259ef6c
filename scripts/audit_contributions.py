"""Recompute every contribution's fee split and every account's contribution total.

Usage:
    DATABASE_URL=postgresql+psycopg://... python scripts/audit_contributions.py

Exits non-zero when any row disagrees with the fee formula or any account
total differs from the sum of its contributions' net amounts.
"""

import os
import sys

sys.path.append(os.getcwd())

import structlog

from app.billing.contributions import ContributionLedger
from app.core.db import SessionLocal
from app.core.instrumentation import setup_logging
from app.core.models import Contribution

logger = structlog.get_logger()


def run() -> int:
    setup_logging()
    ledger = ContributionLedger()
    db = SessionLocal()
    bad_rows = 0
    try:
        checked = 0
        for contribution in db.query(Contribution).order_by(Contribution.id).yield_per(500):
            checked += 1
            if not ledger.audit(contribution):
                bad_rows += 1
                logger.warning(
                    "billing.audit.fee_mismatch",
                    contribution_id=contribution.id,
                    account_id=contribution.account_id,
                    gross=str(contribution.gross_amount),
                    fee=str(contribution.fee_amount),
                    net=str(contribution.net_amount),
                )

        mismatches = ledger.audit_totals(db)
        for m in mismatches:
            logger.warning(
                "billing.audit.total_mismatch",
                account_id=m.account_id,
                recorded_total=str(m.recorded_total),
                ledger_total=str(m.ledger_total),
            )
    finally:
        db.close()

    logger.info(
        "billing.audit.finished",
        contributions_checked=checked,
        fee_mismatches=bad_rows,
        total_mismatches=len(mismatches),
    )
    return 1 if bad_rows or mismatches else 0


if __name__ == "__main__":
    sys.exit(run())
