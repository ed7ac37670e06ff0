"""Reconciliation sessions, items, audit log and duplicate exclusions."""

from alembic import op
import sqlalchemy as sa

revision = "0001_reconciliation_schema"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    transaction_status_enum = sa.Enum(
        "unreconciled",
        "cleared",
        "reconciled",
        name="transaction_status_enum",
    )
    session_status_enum = sa.Enum(
        "in_progress",
        "completed",
        "cancelled",
        name="reconciliation_session_status_enum",
    )
    item_type_enum = sa.Enum(
        "matched",
        "unmatched_bank",
        "unmatched_app",
        "adjustment",
        name="reconciliation_item_type_enum",
    )
    match_method_enum = sa.Enum("exact", "fuzzy", "manual", name="match_method_enum")
    audit_action_enum = sa.Enum(
        "reconciliation_started",
        "transaction_matched",
        "transaction_unmatched",
        "adjustment_added",
        "bank_statement_imported",
        "reconciliation_completed",
        "reconciliation_cancelled",
        "manual_transaction_added",
        "transaction_deleted",
        "matches_approved",
        "reconciliation_updated",
        name="audit_action_enum",
    )

    op.create_table(
        "accounts",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("last_reconciled_date", sa.Date(), nullable=True),
        sa.Column("last_reconciled_balance", sa.Numeric(18, 2), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_accounts_user_id", "accounts", ["user_id"])

    op.create_table(
        "transactions",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("account_id", sa.Uuid(), nullable=False),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("txn_date", sa.Date(), nullable=False),
        sa.Column("description", sa.String(length=500), nullable=False),
        sa.Column("status", transaction_status_enum, nullable=False),
        sa.Column("external_id", sa.String(length=255), nullable=True),
        sa.Column("is_reviewed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_transactions_user_id", "transactions", ["user_id"])
    op.create_index("ix_transactions_account_date", "transactions", ["account_id", "txn_date"])

    op.create_table(
        "reconciliations",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("account_id", sa.Uuid(), nullable=False),
        sa.Column("statement_end_date", sa.Date(), nullable=False),
        sa.Column("statement_end_balance", sa.Numeric(18, 2), nullable=False),
        sa.Column("calculated_balance", sa.Numeric(18, 2), nullable=True),
        sa.Column("status", session_status_enum, nullable=False),
        sa.Column("match_percentage", sa.Numeric(5, 2), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_reconciliations_user_id", "reconciliations", ["user_id"])
    op.create_index("ix_reconciliations_account_id", "reconciliations", ["account_id"])

    op.create_table(
        "reconciliation_items",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("reconciliation_id", sa.Uuid(), nullable=False),
        sa.Column("transaction_id", sa.Uuid(), nullable=True),
        sa.Column("item_type", item_type_enum, nullable=False),
        sa.Column("match_method", match_method_enum, nullable=True),
        sa.Column("match_confidence", sa.Numeric(5, 4), nullable=True),
        sa.Column("bank_reference", sa.String(length=255), nullable=True),
        sa.Column("bank_reference_data", sa.Text(), nullable=True),
        sa.Column("adjustment_amount", sa.Numeric(18, 2), nullable=True),
        sa.Column("adjustment_description", sa.String(length=500), nullable=True),
        sa.Column("is_approved", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["reconciliation_id"], ["reconciliations.id"], ondelete="CASCADE"
        ),
        sa.ForeignKeyConstraint(["transaction_id"], ["transactions.id"], ondelete="SET NULL"),
    )
    op.create_index(
        "ix_reconciliation_items_reconciliation_id",
        "reconciliation_items",
        ["reconciliation_id"],
    )
    op.create_index(
        "ix_reconciliation_items_transaction_id", "reconciliation_items", ["transaction_id"]
    )

    op.create_table(
        "reconciliation_audit_logs",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("reconciliation_id", sa.Uuid(), nullable=False),
        sa.Column("action", audit_action_enum, nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("sequence", sa.BigInteger(), nullable=False),
        sa.Column("details", sa.Text(), nullable=True),
        sa.Column("old_values", sa.Text(), nullable=True),
        sa.Column("new_values", sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(
            ["reconciliation_id"], ["reconciliations.id"], ondelete="CASCADE"
        ),
    )
    op.create_index(
        "ix_reconciliation_audit_logs_reconciliation_id",
        "reconciliation_audit_logs",
        ["reconciliation_id"],
    )
    op.create_index(
        "ix_reconciliation_audit_logs_user_id", "reconciliation_audit_logs", ["user_id"]
    )
    op.create_index(
        "ix_reconciliation_audit_logs_sequence", "reconciliation_audit_logs", ["sequence"]
    )

    op.create_table(
        "duplicate_exclusions",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("transaction_ids", sa.Text(), nullable=False),
        sa.Column("notes", sa.String(length=500), nullable=True),
        sa.Column("original_confidence", sa.Numeric(5, 4), nullable=True),
        sa.Column("excluded_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "user_id", "transaction_ids", name="uq_duplicate_exclusions_user_ids"
        ),
    )
    op.create_index("ix_duplicate_exclusions_user_id", "duplicate_exclusions", ["user_id"])


def downgrade() -> None:
    op.drop_table("duplicate_exclusions")
    op.drop_table("reconciliation_audit_logs")
    op.drop_table("reconciliation_items")
    op.drop_table("reconciliations")
    op.drop_table("transactions")
    op.drop_table("accounts")

    if op.get_bind().dialect.name != "postgresql":
        return
    op.execute("DROP TYPE IF EXISTS audit_action_enum")
    op.execute("DROP TYPE IF EXISTS match_method_enum")
    op.execute("DROP TYPE IF EXISTS reconciliation_item_type_enum")
    op.execute("DROP TYPE IF EXISTS reconciliation_session_status_enum")
    op.execute("DROP TYPE IF EXISTS transaction_status_enum")
