"""Persistence facade for payouts, transactions, chat and pipeline settings."""

from __future__ import annotations

import json
from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta
from pathlib import Path
from uuid import uuid4

from sqlalchemy import and_, or_
from sqlalchemy import select as sa_select
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from p2p_relay.matching.chat_templates import ChatTemplate, normalize_message
from p2p_relay.matching.receipts import PaymentExpectation
from p2p_relay.pipeline.models import (
    TERMINAL_STATUSES,
    AdvertisementView,
    ChatMessageView,
    DuplicateRecordError,
    InvalidTransitionError,
    MessageSender,
    Payout,
    PayoutView,
    TransactionDetails,
    TransactionStatus,
    TransactionView,
)
from p2p_relay.storage.alembic_runner import current_revision, upgrade_head
from p2p_relay.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from p2p_relay.storage.sqlmodel_models import (
    AdvertisementRow,
    BlacklistedWalletRow,
    ChatMessageRow,
    ChatTemplateRow,
    PayoutRow,
    ProcessedDocumentRow,
    SettingRow,
    TemplateUsageRow,
    TransactionRow,
)

_TERMINAL_VALUES = tuple(status.value for status in TERMINAL_STATUSES)


class PipelineRepository:
    """Pipeline persistence facade backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def schema_revision(self) -> str | None:
        return current_revision(self.engine)

    # -- payouts ---------------------------------------------------------------

    def has_payout(self, external_id: str) -> bool:
        with Session(self.engine) as session:
            row = session.exec(
                select(PayoutRow.payout_id).where(PayoutRow.external_id == external_id),
            ).first()
            return row is not None

    def record_payout(self, payout: Payout) -> PayoutView:
        """Store a claimed payout; raises ``DuplicateRecordError`` for a known external id."""

        now = utc_now()
        row = PayoutRow(
            payout_id=str(uuid4()),
            external_id=payout.external_id,
            amount=payout.amount,
            currency=payout.currency,
            wallet=payout.wallet,
            bank=payout.bank,
            status_code=payout.status_code,
            claimed_at=to_db_datetime(now),
            created_at=to_db_datetime(now),
            updated_at=to_db_datetime(now),
        )
        with Session(self.engine) as session:
            session.add(row)
            try:
                session.commit()
            except IntegrityError as error:
                session.rollback()
                raise DuplicateRecordError(
                    f"Payout {payout.external_id} is already recorded",
                ) from error
            session.refresh(row)
            return _to_payout_view(row)

    def get_payout(self, payout_id: str) -> PayoutView | None:
        with Session(self.engine) as session:
            row = session.get(PayoutRow, payout_id)
            return _to_payout_view(row) if row is not None else None

    def list_unlinked_payouts(
        self,
        *,
        limit: int = 50,
        after: PayoutView | None = None,
        advertisable_only: bool = False,
    ) -> list[PayoutView]:
        """Payouts without an advertisement, oldest first.

        ``after`` continues a previous page. ``advertisable_only`` drops payouts
        that can never be advertised: non-positive amounts and blacklisted wallets.
        """

        with Session(self.engine) as session:
            query = select(PayoutRow).where(
                col(PayoutRow.payout_id).not_in(sa_select(AdvertisementRow.payout_id)),
            )
            if advertisable_only:
                query = query.where(col(PayoutRow.amount) > 0).where(
                    col(PayoutRow.wallet).not_in(sa_select(BlacklistedWalletRow.wallet)),
                )
            if after is not None:
                after_created = to_db_datetime(after.created_at)
                query = query.where(
                    or_(
                        col(PayoutRow.created_at) > after_created,
                        and_(
                            col(PayoutRow.created_at) == after_created,
                            col(PayoutRow.payout_id) > after.payout_id,
                        ),
                    ),
                )
            rows = session.exec(
                query.order_by(col(PayoutRow.created_at).asc(), col(PayoutRow.payout_id).asc())
                .limit(limit),
            ).all()
            return [_to_payout_view(row) for row in rows]

    # -- advertisements and transactions ---------------------------------------

    def create_advertisement_with_transaction(  # noqa: PLR0913
        self,
        *,
        payout_id: str,
        advertisement_id: str,
        amount: float,
        currency: str,
        price: float,
        quantity: float,
        payment_method: str,
    ) -> TransactionView:
        """Store the posted advertisement and its pending transaction in one commit."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = TransactionRow(
                transaction_id=str(uuid4()),
                payout_id=payout_id,
                advertisement_id=advertisement_id,
                status=TransactionStatus.PENDING.value,
                chat_step=0,
                created_at=now,
                updated_at=now,
            )
            try:
                session.add(
                    AdvertisementRow(
                        advertisement_id=advertisement_id,
                        payout_id=payout_id,
                        amount=amount,
                        currency=currency,
                        price=price,
                        quantity=quantity,
                        payment_method=payment_method,
                        created_at=now,
                    ),
                )
                # advertisement row must exist before the transaction references it
                session.flush()
                session.add(row)
                session.commit()
            except IntegrityError as error:
                session.rollback()
                raise DuplicateRecordError(
                    f"Payout {payout_id} already has an advertisement",
                ) from error
            session.refresh(row)
            return _to_transaction_view(row)

    def get_transaction(self, transaction_id: str) -> TransactionView | None:
        with Session(self.engine) as session:
            row = session.get(TransactionRow, transaction_id)
            return _to_transaction_view(row) if row is not None else None

    def get_transaction_details(self, transaction_id: str) -> TransactionDetails | None:
        with Session(self.engine) as session:
            row = session.get(TransactionRow, transaction_id)
            if row is None:
                return None
            payout = session.get(PayoutRow, row.payout_id) if row.payout_id else None
            advertisement = session.get(AdvertisementRow, row.advertisement_id)
            messages = session.exec(
                select(ChatMessageRow)
                .where(ChatMessageRow.transaction_id == transaction_id)
                .order_by(col(ChatMessageRow.id).asc()),
            ).all()
            return TransactionDetails(
                transaction=_to_transaction_view(row),
                payout=_to_payout_view(payout) if payout is not None else None,
                advertisement=(
                    _to_advertisement_view(advertisement) if advertisement is not None else None
                ),
                messages=[_to_message_view(message) for message in messages],
            )

    def list_transactions(
        self,
        *,
        statuses: Iterable[TransactionStatus] | None = None,
        limit: int = 50,
    ) -> list[TransactionView]:
        with Session(self.engine) as session:
            query = select(TransactionRow)
            if statuses is not None:
                query = query.where(
                    col(TransactionRow.status).in_([status.value for status in statuses]),
                )
            rows = session.exec(
                query.order_by(col(TransactionRow.created_at).asc()).limit(limit),
            ).all()
            return [_to_transaction_view(row) for row in rows]

    def find_active_by_order(self, order_id: str) -> TransactionView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(TransactionRow).where(
                    TransactionRow.order_id == order_id,
                    col(TransactionRow.status).not_in(_TERMINAL_VALUES),
                ),
            ).first()
            return _to_transaction_view(row) if row is not None else None

    def link_order(self, transaction_id: str, order_id: str) -> TransactionView | None:
        """Attach a marketplace order and start the chat.

        Returns ``None`` when another active transaction already holds the order.
        """

        holder = self.find_active_by_order(order_id)
        if holder is not None and holder.transaction_id != transaction_id:
            return None
        with Session(self.engine) as session:
            row = self._load_for_update(session, transaction_id)
            _check_transition(row, TransactionStatus.CHAT_STARTED)
            row.order_id = order_id
            row.status = TransactionStatus.CHAT_STARTED.value
            row.updated_at = to_db_datetime(utc_now())
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return None
            session.refresh(row)
            return _to_transaction_view(row)

    def update_transaction(  # noqa: PLR0913
        self,
        transaction_id: str,
        *,
        status: TransactionStatus | None = None,
        chat_step: int | None = None,
        payment_sent_at: datetime | None = None,
        check_received_at: datetime | None = None,
        completed_at: datetime | None = None,
        failure_reason: str | None = None,
        receipt_path: str | None = None,
    ) -> TransactionView:
        """Apply the given fields; ``None`` means unchanged."""

        with Session(self.engine) as session:
            row = self._load_for_update(session, transaction_id)
            if status is not None and status.value != row.status:
                _check_transition(row, status)
                row.status = status.value
            if chat_step is not None:
                row.chat_step = chat_step
            if payment_sent_at is not None:
                row.payment_sent_at = to_db_datetime(payment_sent_at)
            if check_received_at is not None:
                row.check_received_at = to_db_datetime(check_received_at)
            if completed_at is not None:
                row.completed_at = to_db_datetime(completed_at)
            if failure_reason is not None:
                row.failure_reason = failure_reason
            if receipt_path is not None:
                row.receipt_path = receipt_path
            row.updated_at = to_db_datetime(utc_now())
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_transaction_view(row)

    def list_payment_candidates(self) -> list[PaymentExpectation]:
        """Transactions waiting for fiat, paired with the payout they settle."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(TransactionRow, PayoutRow)
                .join(PayoutRow, col(TransactionRow.payout_id) == col(PayoutRow.payout_id))
                .where(
                    TransactionRow.status == TransactionStatus.WAITING_PAYMENT.value,
                    col(TransactionRow.payment_sent_at).is_not(None),
                )
                .order_by(col(TransactionRow.payment_sent_at).asc()),
            ).all()
            return [
                PaymentExpectation(
                    transaction_id=transaction.transaction_id,
                    expected_amount=payout.amount,
                    bank_name=payout.bank,
                    wallet=payout.wallet,
                    payment_sent_at=to_utc_aware_datetime(transaction.payment_sent_at),
                )
                for transaction, payout in rows
                if transaction.payment_sent_at is not None
            ]

    def list_releasable(self, *, hold_seconds: float, now: datetime) -> list[TransactionView]:
        """``check_received`` transactions whose hold delay has passed."""

        cutoff = to_db_datetime(now - timedelta(seconds=hold_seconds))
        with Session(self.engine) as session:
            rows = session.exec(
                select(TransactionRow)
                .where(
                    TransactionRow.status == TransactionStatus.CHECK_RECEIVED.value,
                    col(TransactionRow.order_id).is_not(None),
                    col(TransactionRow.check_received_at).is_not(None),
                    col(TransactionRow.check_received_at) <= cutoff,
                )
                .order_by(col(TransactionRow.check_received_at).asc()),
            ).all()
            return [_to_transaction_view(row) for row in rows]

    def _load_for_update(self, session: Session, transaction_id: str) -> TransactionRow:
        row = session.get(TransactionRow, transaction_id)
        if row is None:
            raise KeyError(f"Transaction not found: {transaction_id}")
        return row

    # -- chat ------------------------------------------------------------------

    def record_inbound_message(
        self,
        *,
        transaction_id: str,
        external_id: str,
        body: str,
        sent_at: datetime | None,
    ) -> ChatMessageView | None:
        """Store a counterparty message; returns ``None`` if its id was already seen."""

        with Session(self.engine) as session:
            existing = session.exec(
                select(ChatMessageRow.id).where(
                    ChatMessageRow.transaction_id == transaction_id,
                    ChatMessageRow.external_id == external_id,
                ),
            ).first()
            if existing is not None:
                return None
            row = ChatMessageRow(
                transaction_id=transaction_id,
                external_id=external_id,
                sender=MessageSender.COUNTERPARTY.value,
                body=body,
                is_processed=False,
                sent_at=to_db_datetime(sent_at) if sent_at is not None else None,
                created_at=to_db_datetime(utc_now()),
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return None
            session.refresh(row)
            return _to_message_view(row)

    def record_outbound_message(
        self,
        *,
        transaction_id: str,
        body: str,
        sender: MessageSender = MessageSender.US,
    ) -> ChatMessageView:
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = ChatMessageRow(
                transaction_id=transaction_id,
                sender=sender.value,
                body=body,
                is_processed=True,
                sent_at=now,
                created_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_message_view(row)

    def list_unprocessed_messages(self, transaction_id: str) -> list[ChatMessageView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(ChatMessageRow)
                .where(
                    ChatMessageRow.transaction_id == transaction_id,
                    ChatMessageRow.sender == MessageSender.COUNTERPARTY.value,
                    col(ChatMessageRow.is_processed).is_(False),
                )
                .order_by(col(ChatMessageRow.id).asc()),
            ).all()
            return [_to_message_view(row) for row in rows]

    def mark_message_processed(self, message_id: int) -> None:
        with Session(self.engine) as session:
            row = session.get(ChatMessageRow, message_id)
            if row is None:
                return
            row.is_processed = True
            session.add(row)
            session.commit()

    def list_messages(self, transaction_id: str) -> list[ChatMessageView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(ChatMessageRow)
                .where(ChatMessageRow.transaction_id == transaction_id)
                .order_by(col(ChatMessageRow.id).asc()),
            ).all()
            return [_to_message_view(row) for row in rows]

    # -- templates -------------------------------------------------------------

    def add_template(
        self,
        *,
        name: str,
        message: str,
        keywords: Sequence[str],
        priority: int = 0,
    ) -> ChatTemplate:
        cleaned: list[str] = []
        seen: set[str] = set()
        for keyword in keywords:
            stripped = keyword.strip()
            needle = normalize_message(stripped)
            if needle and needle not in seen:
                seen.add(needle)
                cleaned.append(stripped)
        if not cleaned:
            raise ValueError("Template needs at least one keyword")
        with Session(self.engine) as session:
            row = ChatTemplateRow(
                name=name,
                message=message,
                keywords_json=json.dumps(cleaned, ensure_ascii=False),
                priority=priority,
                is_active=True,
                created_at=to_db_datetime(utc_now()),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_chat_template(row)

    def list_templates(self, *, active_only: bool = True) -> list[ChatTemplate]:
        with Session(self.engine) as session:
            query = select(ChatTemplateRow)
            if active_only:
                query = query.where(col(ChatTemplateRow.is_active).is_(True))
            rows = session.exec(query.order_by(col(ChatTemplateRow.id).asc())).all()
            return [_to_chat_template(row) for row in rows]

    def record_template_usage(self, *, template_id: int, transaction_id: str | None) -> None:
        with Session(self.engine) as session:
            session.add(
                TemplateUsageRow(
                    template_id=template_id,
                    transaction_id=transaction_id,
                    used_at=to_db_datetime(utc_now()),
                ),
            )
            session.commit()

    def count_template_usages(self, template_id: int) -> int:
        with Session(self.engine) as session:
            rows = session.exec(
                select(TemplateUsageRow.id).where(TemplateUsageRow.template_id == template_id),
            ).all()
            return len(rows)

    # -- blacklist -------------------------------------------------------------

    def add_to_blacklist(self, wallet: str, *, reason: str, payout_id: str | None = None) -> None:
        with Session(self.engine) as session:
            session.add(
                BlacklistedWalletRow(
                    wallet=wallet,
                    payout_id=payout_id,
                    reason=reason,
                    created_at=to_db_datetime(utc_now()),
                ),
            )
            session.commit()

    def is_blacklisted(self, wallet: str) -> bool:
        with Session(self.engine) as session:
            row = session.exec(
                select(BlacklistedWalletRow.id).where(BlacklistedWalletRow.wallet == wallet),
            ).first()
            return row is not None

    # -- processed mailbox documents --------------------------------------------

    def is_document_processed(self, external_id: str) -> bool:
        with Session(self.engine) as session:
            return session.get(ProcessedDocumentRow, external_id) is not None

    def mark_document_processed(
        self,
        external_id: str,
        *,
        transaction_id: str | None = None,
    ) -> None:
        with Session(self.engine) as session:
            if session.get(ProcessedDocumentRow, external_id) is not None:
                return
            session.add(
                ProcessedDocumentRow(
                    external_id=external_id,
                    transaction_id=transaction_id,
                    processed_at=to_db_datetime(utc_now()),
                ),
            )
            session.commit()

    # -- settings --------------------------------------------------------------

    def get_setting(self, key: str, default: str | None = None) -> str | None:
        with Session(self.engine) as session:
            row = session.get(SettingRow, key)
            return row.value if row is not None else default

    def set_setting(self, key: str, value: str) -> None:
        with Session(self.engine) as session:
            row = session.get(SettingRow, key)
            now = to_db_datetime(utc_now())
            if row is None:
                row = SettingRow(key=key, value=value, updated_at=now)
            else:
                row.value = value
                row.updated_at = now
            session.add(row)
            session.commit()


def _check_transition(row: TransactionRow, target: TransactionStatus) -> None:
    current = TransactionStatus(row.status)
    if not current.can_transition_to(target):
        raise InvalidTransitionError(row.transaction_id, current, target)


def _optional_aware(value: datetime | None) -> datetime | None:
    return to_utc_aware_datetime(value) if value is not None else None


def _to_payout_view(row: PayoutRow) -> PayoutView:
    return PayoutView(
        payout_id=row.payout_id,
        external_id=row.external_id,
        amount=row.amount,
        currency=row.currency,
        wallet=row.wallet,
        bank=row.bank,
        status_code=row.status_code,
        claimed_at=to_utc_aware_datetime(row.claimed_at),
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_advertisement_view(row: AdvertisementRow) -> AdvertisementView:
    return AdvertisementView(
        advertisement_id=row.advertisement_id,
        payout_id=row.payout_id,
        amount=row.amount,
        currency=row.currency,
        price=row.price,
        quantity=row.quantity,
        payment_method=row.payment_method,
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_transaction_view(row: TransactionRow) -> TransactionView:
    return TransactionView(
        transaction_id=row.transaction_id,
        payout_id=row.payout_id,
        advertisement_id=row.advertisement_id,
        order_id=row.order_id,
        status=TransactionStatus(row.status),
        chat_step=row.chat_step,
        payment_sent_at=_optional_aware(row.payment_sent_at),
        check_received_at=_optional_aware(row.check_received_at),
        completed_at=_optional_aware(row.completed_at),
        failure_reason=row.failure_reason,
        receipt_path=row.receipt_path,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_message_view(row: ChatMessageRow) -> ChatMessageView:
    return ChatMessageView(
        message_id=int(row.id or 0),
        transaction_id=row.transaction_id,
        external_id=row.external_id,
        sender=MessageSender(row.sender),
        body=row.body,
        is_processed=row.is_processed,
        sent_at=_optional_aware(row.sent_at),
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_chat_template(row: ChatTemplateRow) -> ChatTemplate:
    return ChatTemplate(
        template_id=row.id,
        name=row.name,
        message=row.message,
        keywords=tuple(json.loads(row.keywords_json)),
        priority=row.priority,
    )
