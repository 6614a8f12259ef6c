"""Billing ledger: billing_accounts, contributions, processed_webhook_events.

Revision ID: 202610190001
Revises:
Create Date: 2026-10-19

Changes:
  billing_accounts          usage counters, contribution total, inline subscription state
  contributions             append-only payments, unique per payment id and session id
  processed_webhook_events  applied provider event ids
"""
from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


revision: str = '202610190001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _table_exists(conn, table: str) -> bool:
    try:
        insp = inspect(conn)
        return table in insp.get_table_names()
    except Exception:
        return False


def upgrade() -> None:
    conn = op.get_bind()

    if not _table_exists(conn, "billing_accounts"):
        op.create_table(
            "billing_accounts",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("lifetime_request_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("lifetime_stored_bytes", sa.BigInteger(), nullable=False, server_default=sa.text("0")),
            sa.Column("period_request_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("period_stored_bytes", sa.BigInteger(), nullable=False, server_default=sa.text("0")),
            sa.Column("monthly_request_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("monthly_reset_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("total_contributions", sa.Numeric(12, 2), nullable=False, server_default=sa.text("0")),
            sa.Column("subscription_status", sa.String(), nullable=True),
            sa.Column("provider_subscription_id", sa.String(), nullable=True),
            sa.Column("provider_customer_id", sa.String(), nullable=True),
            sa.Column("subscription_amount", sa.Numeric(12, 2), nullable=True),
            sa.Column("subscription_tier", sa.String(), nullable=True),
            sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=True),
            sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
            sa.Column("last_payment_amount", sa.Numeric(12, 2), nullable=True),
            sa.Column("last_payment_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        )
        op.create_index("ix_billing_accounts_id", "billing_accounts", ["id"])
        op.create_index(
            "ix_billing_accounts_provider_subscription_id", "billing_accounts", ["provider_subscription_id"]
        )

    if not _table_exists(conn, "contributions"):
        op.create_table(
            "contributions",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("account_id", sa.Integer(), sa.ForeignKey("billing_accounts.id"), nullable=False),
            sa.Column("gross_amount", sa.Numeric(12, 2), nullable=False),
            sa.Column("net_amount", sa.Numeric(12, 2), nullable=False),
            sa.Column("fee_amount", sa.Numeric(12, 2), nullable=False),
            sa.Column("kind", sa.String(), nullable=False),
            sa.Column("provider_payment_id", sa.String(), nullable=True, unique=True),
            sa.Column("provider_session_id", sa.String(), nullable=True, unique=True),
            sa.Column("status", sa.String(), nullable=False, server_default="COMPLETED"),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        )
        op.create_index("ix_contributions_id", "contributions", ["id"])
        op.create_index("ix_contributions_account_id", "contributions", ["account_id"])
        op.create_index("ix_contributions_created_at", "contributions", ["created_at"])

    if not _table_exists(conn, "processed_webhook_events"):
        op.create_table(
            "processed_webhook_events",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("provider_event_id", sa.String(), nullable=False),
            sa.Column("event_type", sa.String(), nullable=False),
            sa.Column("outcome", sa.String(), nullable=False),
            sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
            sa.UniqueConstraint("provider_event_id", name="uq_processed_webhook_event_id"),
        )
        op.create_index("ix_processed_webhook_events_id", "processed_webhook_events", ["id"])
        op.create_index("ix_processed_webhook_events_event_type", "processed_webhook_events", ["event_type"])


def downgrade() -> None:
    op.drop_table("processed_webhook_events")
    op.drop_table("contributions")
    op.drop_table("billing_accounts")
