"""Initial transaction pipeline schema."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "payouts",
        sa.Column("payout_id", sa.String(), nullable=False),
        sa.Column("external_id", sa.Text(), nullable=False),
        sa.Column("amount", sa.Float(), nullable=False),
        sa.Column("currency", sa.String(), nullable=False),
        sa.Column("wallet", sa.String(), nullable=False),
        sa.Column("bank", sa.String(), nullable=True),
        sa.Column("status_code", sa.Integer(), nullable=False),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("payout_id"),
    )
    op.create_index("ix_payouts_external_id", "payouts", ["external_id"], unique=True)
    op.create_index("ix_payouts_wallet", "payouts", ["wallet"])

    op.create_table(
        "advertisements",
        sa.Column("advertisement_id", sa.String(), nullable=False),
        sa.Column("payout_id", sa.String(), nullable=False),
        sa.Column("amount", sa.Float(), nullable=False),
        sa.Column("currency", sa.String(), nullable=False),
        sa.Column("price", sa.Float(), nullable=False),
        sa.Column("quantity", sa.Float(), nullable=False),
        sa.Column("payment_method", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("advertisement_id"),
        sa.ForeignKeyConstraint(["payout_id"], ["payouts.payout_id"], ondelete="RESTRICT"),
    )
    op.create_index(
        "ix_advertisements_payout_id",
        "advertisements",
        ["payout_id"],
        unique=True,
    )

    op.create_table(
        "transactions",
        sa.Column("transaction_id", sa.String(), nullable=False),
        sa.Column("payout_id", sa.String(), nullable=True),
        sa.Column("advertisement_id", sa.String(), nullable=False),
        sa.Column("order_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("chat_step", sa.Integer(), server_default="0", nullable=False),
        sa.Column("payment_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("check_received_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failure_reason", sa.String(), nullable=True),
        sa.Column("receipt_path", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("transaction_id"),
        sa.ForeignKeyConstraint(["payout_id"], ["payouts.payout_id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(
            ["advertisement_id"],
            ["advertisements.advertisement_id"],
        ),
    )
    op.create_index("ix_transactions_payout_id", "transactions", ["payout_id"], unique=True)
    op.create_index("ix_transactions_advertisement_id", "transactions", ["advertisement_id"])
    op.create_index("ix_transactions_order_id", "transactions", ["order_id"])
    op.create_index("ix_transactions_status", "transactions", ["status"])
    op.create_index(
        "uq_transactions_active_order",
        "transactions",
        ["order_id"],
        unique=True,
        sqlite_where=sa.text(
            "order_id IS NOT NULL AND status NOT IN ('completed', 'failed', 'cancelled')",
        ),
    )

    op.create_table(
        "chat_messages",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("transaction_id", sa.String(), nullable=False),
        sa.Column("external_id", sa.String(), nullable=True),
        sa.Column("sender", sa.String(), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("is_processed", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(
            ["transaction_id"],
            ["transactions.transaction_id"],
            ondelete="CASCADE",
        ),
        sa.UniqueConstraint(
            "transaction_id",
            "external_id",
            name="uq_chat_messages_transaction_external",
        ),
    )
    op.create_index("ix_chat_messages_transaction_id", "chat_messages", ["transaction_id"])
    op.create_index("ix_chat_messages_sender", "chat_messages", ["sender"])

    op.create_table(
        "chat_templates",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("keywords_json", sa.Text(), nullable=False),
        sa.Column("priority", sa.Integer(), server_default="0", nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_chat_templates_name", "chat_templates", ["name"])
    op.create_index("ix_chat_templates_is_active", "chat_templates", ["is_active"])

    op.create_table(
        "template_usages",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("template_id", sa.Integer(), nullable=False),
        sa.Column("transaction_id", sa.String(), nullable=True),
        sa.Column("used_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["template_id"], ["chat_templates.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_template_usages_template_id", "template_usages", ["template_id"])

    op.create_table(
        "blacklisted_wallets",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("wallet", sa.String(), nullable=False),
        sa.Column("payout_id", sa.String(), nullable=True),
        sa.Column("reason", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_blacklisted_wallets_wallet", "blacklisted_wallets", ["wallet"])

    op.create_table(
        "processed_documents",
        sa.Column("external_id", sa.String(), nullable=False),
        sa.Column("transaction_id", sa.String(), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("external_id"),
    )

    op.create_table(
        "settings",
        sa.Column("key", sa.String(), nullable=False),
        sa.Column("value", sa.String(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("key"),
    )


def downgrade() -> None:
    op.drop_table("settings")
    op.drop_table("processed_documents")
    op.drop_table("blacklisted_wallets")
    op.drop_table("template_usages")
    op.drop_table("chat_templates")
    op.drop_table("chat_messages")
    op.drop_table("transactions")
    op.drop_table("advertisements")
    op.drop_table("payouts")
