"""SQLModel ORM tables for pipeline storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Index,
    Text,
    UniqueConstraint,
    text,
)
from sqlmodel import Field, SQLModel

TERMINAL_STATUS_SQL = "('completed', 'failed', 'cancelled')"


class PayoutRow(SQLModel, table=True):
    __tablename__ = "payouts"  # type: ignore[bad-override]

    payout_id: str = Field(primary_key=True)
    external_id: str = Field(sa_column=Column(Text, nullable=False, unique=True, index=True))
    amount: float
    currency: str
    wallet: str = Field(index=True)
    bank: str | None = None
    status_code: int
    claimed_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AdvertisementRow(SQLModel, table=True):
    __tablename__ = "advertisements"  # type: ignore[bad-override]

    advertisement_id: str = Field(primary_key=True)
    payout_id: str = Field(
        sa_column=Column(
            ForeignKey("payouts.payout_id", ondelete="RESTRICT"),
            nullable=False,
            unique=True,
            index=True,
        ),
    )
    amount: float
    currency: str
    price: float
    quantity: float
    payment_method: str
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TransactionRow(SQLModel, table=True):
    __tablename__ = "transactions"  # type: ignore[bad-override]
    __table_args__ = (
        Index(
            "uq_transactions_active_order",
            "order_id",
            unique=True,
            sqlite_where=text(
                f"order_id IS NOT NULL AND status NOT IN {TERMINAL_STATUS_SQL}",
            ),
        ),
    )

    transaction_id: str = Field(primary_key=True)
    payout_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("payouts.payout_id", ondelete="SET NULL"),
            nullable=True,
            unique=True,
            index=True,
        ),
    )
    advertisement_id: str = Field(foreign_key="advertisements.advertisement_id", index=True)
    order_id: str | None = Field(default=None, index=True)
    status: str = Field(index=True)
    chat_step: int = 0
    payment_sent_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    check_received_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    failure_reason: str | None = None
    receipt_path: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ChatMessageRow(SQLModel, table=True):
    __tablename__ = "chat_messages"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint(
            "transaction_id",
            "external_id",
            name="uq_chat_messages_transaction_external",
        ),
    )

    id: int | None = Field(default=None, primary_key=True)
    transaction_id: str = Field(
        sa_column=Column(
            ForeignKey("transactions.transaction_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    external_id: str | None = None
    sender: str = Field(index=True)
    body: str = Field(sa_column=Column(Text, nullable=False))
    is_processed: bool = False
    sent_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ChatTemplateRow(SQLModel, table=True):
    __tablename__ = "chat_templates"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    name: str = Field(index=True)
    message: str = Field(sa_column=Column(Text, nullable=False))
    keywords_json: str = Field(sa_column=Column(Text, nullable=False))
    priority: int = 0
    is_active: bool = Field(default=True, index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TemplateUsageRow(SQLModel, table=True):
    __tablename__ = "template_usages"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    template_id: int = Field(
        sa_column=Column(
            ForeignKey("chat_templates.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    transaction_id: str | None = None
    used_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class BlacklistedWalletRow(SQLModel, table=True):
    __tablename__ = "blacklisted_wallets"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    wallet: str = Field(index=True)
    payout_id: str | None = None
    reason: str
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ProcessedDocumentRow(SQLModel, table=True):
    __tablename__ = "processed_documents"  # type: ignore[bad-override]

    external_id: str = Field(primary_key=True)
    transaction_id: str | None = None
    processed_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class SettingRow(SQLModel, table=True):
    __tablename__ = "settings"  # type: ignore[bad-override]

    key: str = Field(primary_key=True)
    value: str
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
