"""credits ledger

Revision ID: 0001_credits_ledger
Revises:
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa


revision = "0001_credits_ledger"
down_revision = None
branch_labels = None
depends_on = None


def _inspector():
    from sqlalchemy import inspect as sa_inspect
    return sa_inspect(op.get_bind())


def upgrade() -> None:
    inspector = _inspector()
    existing_tables = set(inspector.get_table_names())

    def existing_indexes(table: str) -> set[str]:
        if table not in existing_tables:
            return set()
        return {idx["name"] for idx in inspector.get_indexes(table)}

    if "profiles" not in existing_tables:
        op.create_table(
            "profiles",
            sa.Column("id", sa.String(), primary_key=True),
            sa.Column("email", sa.String(), nullable=True),
            sa.Column("role", sa.String(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)")),
        )
    idxs = existing_indexes("profiles")
    if "ix_profiles_email" not in idxs:
        op.create_index("ix_profiles_email", "profiles", ["email"])

    if "credits_account" not in existing_tables:
        op.create_table(
            "credits_account",
            sa.Column("user_id", sa.String(), primary_key=True),
            sa.Column("balance", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)")),
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)")),
            sa.CheckConstraint("balance >= 0", name="ck_credits_account_balance_non_negative"),
        )

    if "credits_ledger" not in existing_tables:
        op.create_table(
            "credits_ledger",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("user_id", sa.String(), nullable=False),
            sa.Column("delta", sa.Integer(), nullable=False),
            sa.Column("source", sa.String(), nullable=False),
            sa.Column("ref_type", sa.String(), nullable=False),
            sa.Column("ref_id", sa.String(), nullable=False),
            sa.Column("idempotency_key", sa.String(), nullable=False),
            sa.Column("balance_after", sa.Integer(), nullable=False),
            sa.Column("metadata", sa.JSON(), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)")),
        )
    idxs = existing_indexes("credits_ledger")
    if "ix_credits_ledger_idempotency_key" not in idxs:
        op.create_index("ix_credits_ledger_idempotency_key", "credits_ledger", ["idempotency_key"], unique=True)
    if "ix_credits_ledger_user_id" not in idxs:
        op.create_index("ix_credits_ledger_user_id", "credits_ledger", ["user_id"])
    if "ix_credits_ledger_source" not in idxs:
        op.create_index("ix_credits_ledger_source", "credits_ledger", ["source"])
    if "ix_credits_ledger_created_at" not in idxs:
        op.create_index("ix_credits_ledger_created_at", "credits_ledger", ["created_at"])

    if "subscriptions" not in existing_tables:
        op.create_table(
            "subscriptions",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("user_id", sa.String(), nullable=True),
            sa.Column("status", sa.String(), nullable=True),
            sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=True),
            sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
            sa.Column("trial_end", sa.DateTime(timezone=True), nullable=True),
            sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("stripe_customer_id", sa.String(), nullable=True),
            sa.Column("stripe_subscription_id", sa.String(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)")),
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)")),
        )
    idxs = existing_indexes("subscriptions")
    if "ix_subscriptions_user_id" not in idxs:
        op.create_index("ix_subscriptions_user_id", "subscriptions", ["user_id"], unique=True)
    if "ix_subscriptions_status" not in idxs:
        op.create_index("ix_subscriptions_status", "subscriptions", ["status"])

    if "stripe_events" not in existing_tables:
        op.create_table(
            "stripe_events",
            sa.Column("event_id", sa.String(), primary_key=True),
            sa.Column("type", sa.String(), nullable=False),
            sa.Column("received_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)")),
            sa.Column("processed_ok", sa.Boolean(), nullable=True),
            sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("error", sa.Text(), nullable=True),
        )


def downgrade() -> None:
    op.drop_table("stripe_events")
    op.drop_table("subscriptions")
    op.drop_table("credits_ledger")
    op.drop_table("credits_account")
    op.drop_table("profiles")
