"""Pipeline stages registered as scheduler tasks."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from p2p_relay.config import PipelineSettings
from p2p_relay.gateway.base import AdvertisementSpec, GatewayBundle, GatewayError
from p2p_relay.matching.receipts import match_receipt
from p2p_relay.pipeline.chat import ChatResponder, ChatScript
from p2p_relay.pipeline.confirmation import ConfirmationGate
from p2p_relay.pipeline.models import (
    EXCHANGE_RATE_SETTING,
    DuplicateRecordError,
    PayoutView,
    StageFailedError,
    StageResult,
    TransactionStatus,
    TransactionView,
)
from p2p_relay.pipeline.repository import PipelineRepository
from p2p_relay.scheduler.engine import SchedulerEngine
from p2p_relay.scheduler.models import TaskContext
from p2p_relay.storage.common import utc_now

logger = logging.getLogger(__name__)

BOOTSTRAP_TASK = "bootstrap"
PAYOUT_ACCEPTOR_TASK = "payout_acceptor"
AD_CREATOR_TASK = "ad_creator"
CHAT_LISTENER_TASK = "chat_listener"
RECEIPT_LISTENER_TASK = "receipt_listener"
RELEASER_TASK = "releaser"
RATE_REFRESH_TASK = "rate_refresh"

UNLINKED_PAGE_SIZE = 50

_CHAT_ACTIVE_STATUSES = (
    TransactionStatus.CHAT_STARTED,
    TransactionStatus.WAITING_PAYMENT,
    TransactionStatus.PAYMENT_RECEIVED,
    TransactionStatus.CHECK_RECEIVED,
)


class PipelineCoordinator:
    """Owns the pipeline stages and wires them into a :class:`SchedulerEngine`.

    Every stage is idempotent: it diffs what the gateways report against the
    transaction table and only acts on items not yet handled. A permanent
    gateway error on one item is recorded and the remaining items still run;
    the stage then raises :class:`StageFailedError` so the engine reports it.
    Transient errors are logged and the item is retried on the next tick.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: PipelineRepository,
        gateways: GatewayBundle,
        settings: PipelineSettings,
        confirmation: ConfirmationGate | None = None,
        script: ChatScript | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.gateways = gateways
        self.settings = settings
        self.confirmation = confirmation or ConfirmationGate(repository)
        self.responder = ChatResponder(
            repository=repository,
            marketplace=gateways.marketplace,
            script=script or ChatScript.default(),
            max_wrong_answers=settings.max_wrong_answers,
            payment_method=settings.payment_method,
            receipt_email=settings.receipt_email,
        )
        self._clock = clock

    def register(self, engine: SchedulerEngine) -> None:
        s = self.settings
        engine.register_one_time(BOOTSTRAP_TASK, self.bootstrap)
        engine.register_interval(
            PAYOUT_ACCEPTOR_TASK,
            self.accept_payouts,
            s.acceptor_interval_seconds,
            run_on_start=s.acceptor_run_on_start,
        )
        engine.register_interval(
            AD_CREATOR_TASK,
            self.create_advertisements,
            s.ad_creator_interval_seconds,
        )
        engine.register_interval(CHAT_LISTENER_TASK, self.process_chats, s.chat_interval_seconds)
        if self.gateways.receipts_enabled:
            engine.register_interval(
                RECEIPT_LISTENER_TASK,
                self.process_receipts,
                s.receipt_interval_seconds,
            )
        else:
            logger.info("Mailbox not configured, receipt listener disabled")
        engine.register_interval(RELEASER_TASK, self.release_completed, s.releaser_interval_seconds)
        engine.register_cron(RATE_REFRESH_TASK, self.refresh_exchange_rate, s.rate_refresh_cron)

    def task_ids(self) -> list[str]:
        ids = [PAYOUT_ACCEPTOR_TASK, AD_CREATOR_TASK, CHAT_LISTENER_TASK]
        if self.gateways.receipts_enabled:
            ids.append(RECEIPT_LISTENER_TASK)
        ids.extend([RELEASER_TASK, RATE_REFRESH_TASK])
        return ids

    # -- one-time and housekeeping ---------------------------------------------

    def bootstrap(self, ctx: TaskContext) -> dict[str, Any]:
        """Seed the working balance, read it back and note the confirmation mode."""

        payouts = self.gateways.payouts
        if self.settings.working_balance > 0:
            payouts.set_balance(self.settings.working_balance)
            logger.info("Working balance set to %.2f", self.settings.working_balance)
        balance = payouts.read_balance()
        mode = self.confirmation.mode()
        ctx.shared[BOOTSTRAP_TASK] = {
            "balance": balance,
            "mode": mode.value,
            "started_at": self._clock().isoformat(),
        }
        logger.info("Running in %s mode, payout balance %.2f", mode.value, balance)
        return dict(ctx.shared[BOOTSTRAP_TASK])

    def refresh_exchange_rate(self, ctx: TaskContext) -> float:
        rate = self._stored_exchange_rate()
        ctx.shared[RATE_REFRESH_TASK] = {
            "exchange_rate": rate,
            "refreshed_at": self._clock().isoformat(),
        }
        logger.debug("Exchange rate refreshed: %s", rate)
        return rate

    def _stored_exchange_rate(self) -> float:
        raw = self.repository.get_setting(EXCHANGE_RATE_SETTING)
        if raw is None:
            return self.settings.default_exchange_rate
        try:
            return float(raw)
        except ValueError:
            logger.warning("Stored exchange rate %r is not a number, using default", raw)
            return self.settings.default_exchange_rate

    def exchange_rate(self, ctx: TaskContext) -> float:
        cached = ctx.shared.get(RATE_REFRESH_TASK) or {}
        rate = cached.get("exchange_rate")
        if isinstance(rate, int | float) and rate > 0:
            return float(rate)
        return self._stored_exchange_rate()

    # -- stages ----------------------------------------------------------------

    def accept_payouts(self, ctx: TaskContext) -> dict[str, object]:
        """Claim new payouts in a claimable status and record them."""

        result = StageResult()
        try:
            payouts = self.gateways.payouts.fetch_claimable_payouts()
        except GatewayError as error:
            self._item_failed(result, "fetch claimable payouts", error)
            return self._finish_stage(ctx, PAYOUT_ACCEPTOR_TASK, result)

        claimable = set(self.settings.claimable_status_codes)
        for payout in payouts:
            if ctx.cancelled:
                break
            if payout.status_code not in claimable or self.repository.has_payout(
                payout.external_id,
            ):
                result.skipped += 1
                continue
            if not self.confirmation.confirm(
                f"Accept payout {payout.external_id} for {payout.amount} {payout.currency}?",
            ):
                result.skipped += 1
                continue
            try:
                self.gateways.payouts.claim_payout(payout.external_id)
            except GatewayError as error:
                self._item_failed(result, f"claim payout {payout.external_id}", error)
                continue
            try:
                self.repository.record_payout(payout)
            except DuplicateRecordError:
                result.skipped += 1
                continue
            result.processed += 1
            logger.info(
                "Accepted payout %s: %s %s to %s",
                payout.external_id,
                payout.amount,
                payout.currency,
                payout.wallet,
            )
        return self._finish_stage(ctx, PAYOUT_ACCEPTOR_TASK, result)

    def create_advertisements(self, ctx: TaskContext) -> dict[str, object]:
        """Post one advertisement per recorded payout that has none yet."""

        result = StageResult()
        rate = self.exchange_rate(ctx)
        for payout in self._advertisable_payouts(ctx):
            if self.repository.is_blacklisted(payout.wallet):
                logger.info("Skipping payout %s: wallet is blacklisted", payout.external_id)
                result.skipped += 1
                continue
            if rate <= 0:
                logger.warning("No exchange rate configured, cannot price advertisements")
                result.skipped += 1
                continue
            if not self.confirmation.confirm(
                f"Create advertisement for payout {payout.external_id} "
                f"({payout.amount} {payout.currency})?",
            ):
                result.skipped += 1
                continue
            self._create_advertisement(result, payout, rate)
        return self._finish_stage(ctx, AD_CREATOR_TASK, result)

    def _create_advertisement(self, result: StageResult, payout: PayoutView, rate: float) -> None:
        spec = AdvertisementSpec(
            payout_external_id=payout.external_id,
            fiat_amount=payout.amount,
            currency=payout.currency,
            price=rate,
            quantity=round(payout.amount / rate, 2),
            payment_method=self.settings.payment_method,
        )
        try:
            advertisement_id = self.gateways.marketplace.create_advertisement(spec)
        except GatewayError as error:
            self._item_failed(result, f"create advertisement for {payout.external_id}", error)
            return
        try:
            transaction = self.repository.create_advertisement_with_transaction(
                payout_id=payout.payout_id,
                advertisement_id=advertisement_id,
                amount=payout.amount,
                currency=payout.currency,
                price=spec.price,
                quantity=spec.quantity,
                payment_method=spec.payment_method,
            )
        except DuplicateRecordError:
            result.skipped += 1
            return
        result.processed += 1
        logger.info(
            "Advertisement %s posted for payout %s (transaction %s)",
            advertisement_id,
            payout.external_id,
            transaction.transaction_id,
        )

    def _advertisable_payouts(self, ctx: TaskContext) -> Iterator[PayoutView]:
        # pages by position so declined or failing payouts never hide newer ones
        after: PayoutView | None = None
        while not ctx.cancelled:
            page = self.repository.list_unlinked_payouts(
                limit=UNLINKED_PAGE_SIZE,
                after=after,
                advertisable_only=True,
            )
            for payout in page:
                if ctx.cancelled:
                    return
                yield payout
            if len(page) < UNLINKED_PAGE_SIZE:
                return
            after = page[-1]

    def process_chats(self, ctx: TaskContext) -> dict[str, object]:
        """Link new orders, sync counterparty messages and answer them."""

        result = StageResult()
        self._link_orders(ctx, result)
        for transaction in self.repository.list_transactions(
            statuses=_CHAT_ACTIVE_STATUSES,
            limit=500,
        ):
            if ctx.cancelled:
                break
            if transaction.order_id is None:
                continue
            try:
                self._sync_chat(transaction, result)
            except GatewayError as error:
                self._item_failed(result, f"chat {transaction.transaction_id}", error)
        return self._finish_stage(ctx, CHAT_LISTENER_TASK, result)

    def _link_orders(self, ctx: TaskContext, result: StageResult) -> None:
        pending = [
            item
            for item in self.repository.list_transactions(
                statuses=(TransactionStatus.PENDING,),
                limit=500,
            )
            if item.order_id is None
        ]
        if not pending:
            return
        try:
            orders = self.gateways.marketplace.list_open_orders()
        except GatewayError as error:
            self._item_failed(result, "list open orders", error)
            return

        orders_by_ad = {order.advertisement_id: order for order in orders}
        for transaction in pending:
            if ctx.cancelled:
                return
            order = orders_by_ad.get(transaction.advertisement_id)
            if order is None:
                continue
            linked = self.repository.link_order(transaction.transaction_id, order.order_id)
            if linked is None:
                logger.info("Order %s already linked to another transaction", order.order_id)
                result.skipped += 1
                continue
            logger.info("Order %s linked to transaction %s", order.order_id, linked.transaction_id)
            try:
                self.responder.open_chat(linked)
            except GatewayError as error:
                self._item_failed(result, f"open chat for {order.order_id}", error)
                continue
            result.processed += 1

    def _sync_chat(self, transaction: TransactionView, result: StageResult) -> None:
        assert transaction.order_id is not None
        for message in self.gateways.marketplace.list_inbound_messages(transaction.order_id):
            if not message.from_counterparty:
                continue
            self.repository.record_inbound_message(
                transaction_id=transaction.transaction_id,
                external_id=message.message_id,
                body=message.text,
                sent_at=message.sent_at,
            )

        payout = (
            self.repository.get_payout(transaction.payout_id) if transaction.payout_id else None
        )
        for message in self.repository.list_unprocessed_messages(transaction.transaction_id):
            current = self.repository.get_transaction(transaction.transaction_id)
            if current is None:
                return
            action = self.responder.handle(current, payout, message)
            self.repository.mark_message_processed(message.message_id)
            result.processed += 1
            logger.debug(
                "Message %s on transaction %s: %s",
                message.external_id,
                transaction.transaction_id,
                action.value,
            )

    def process_receipts(self, ctx: TaskContext) -> dict[str, object]:
        """Match mailbox receipts to transactions waiting for payment and approve payouts."""

        result = StageResult()
        mailbox = self.gateways.mailbox
        extractor = self.gateways.extractor
        if mailbox is None or extractor is None:
            return self._finish_stage(ctx, RECEIPT_LISTENER_TASK, result)

        self._retry_approvals(ctx, result)

        since = self._clock() - timedelta(minutes=self.settings.receipt_lookback_minutes)
        try:
            documents = mailbox.list_documents(since)
        except GatewayError as error:
            self._item_failed(result, "list mailbox documents", error)
            return self._finish_stage(ctx, RECEIPT_LISTENER_TASK, result)

        candidates = self.repository.list_payment_candidates()
        for document in documents:
            if ctx.cancelled:
                break
            if self.repository.is_document_processed(document.document_id):
                result.skipped += 1
                continue
            try:
                receipt = extractor.extract(document)
            except GatewayError as error:
                self._item_failed(result, f"extract {document.document_id}", error)
                continue
            if receipt is None:
                logger.info("Document %s carries no receipt", document.document_id)
                self.repository.mark_document_processed(document.document_id)
                result.skipped += 1
                continue

            match = match_receipt(receipt, candidates, self.settings.amount_tolerance)
            if match is None:
                logger.info(
                    "No transaction matches receipt %s (%.2f)",
                    document.document_id,
                    receipt.amount,
                )
                result.skipped += 1
                continue
            candidates.remove(match)

            receipt_path = self._store_receipt(
                match.transaction_id,
                document.filename,
                document.content,
            )
            transaction = self.repository.update_transaction(
                match.transaction_id,
                status=TransactionStatus.PAYMENT_RECEIVED,
                receipt_path=str(receipt_path),
            )
            self.repository.mark_document_processed(
                document.document_id,
                transaction_id=match.transaction_id,
            )
            logger.info(
                "Receipt %s matched transaction %s",
                document.document_id,
                match.transaction_id,
            )
            self._approve(result, transaction, document.content)
        return self._finish_stage(ctx, RECEIPT_LISTENER_TASK, result)

    def _retry_approvals(self, ctx: TaskContext, result: StageResult) -> None:
        for transaction in self.repository.list_transactions(
            statuses=(TransactionStatus.PAYMENT_RECEIVED,),
            limit=500,
        ):
            if ctx.cancelled:
                return
            if not transaction.receipt_path:
                continue
            path = Path(transaction.receipt_path)
            if not path.exists():
                logger.warning(
                    "Receipt file %s for transaction %s is missing",
                    path,
                    transaction.transaction_id,
                )
                continue
            self._approve(result, transaction, path.read_bytes())

    def _approve(self, result: StageResult, transaction: TransactionView, receipt: bytes) -> None:
        payout = (
            self.repository.get_payout(transaction.payout_id) if transaction.payout_id else None
        )
        if payout is None:
            logger.warning("Transaction %s has no payout to approve", transaction.transaction_id)
            result.skipped += 1
            return
        if not self.confirmation.confirm(
            f"Approve payout {payout.external_id} for transaction {transaction.transaction_id}?",
        ):
            result.skipped += 1
            return
        try:
            self.gateways.payouts.approve_payout(payout.external_id, receipt)
        except GatewayError as error:
            self._item_failed(result, f"approve payout {payout.external_id}", error)
            return

        updated = self.repository.update_transaction(
            transaction.transaction_id,
            status=TransactionStatus.CHECK_RECEIVED,
            check_received_at=self._clock(),
        )
        result.processed += 1
        logger.info("Payout %s approved", payout.external_id)
        if updated.order_id is None:
            return
        try:
            self.responder.send_final_message(updated)
        except GatewayError as error:
            logger.warning(
                "Final message for transaction %s not sent: %s",
                updated.transaction_id,
                error,
            )

    def _store_receipt(self, transaction_id: str, filename: str, content: bytes) -> Path:
        suffix = Path(filename).suffix or ".pdf"
        target = self.settings.receipts_dir / f"{transaction_id}{suffix}"
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content)
        return target

    def release_completed(self, ctx: TaskContext) -> dict[str, object]:
        """Release escrow for verified transactions once the hold delay has passed."""

        result = StageResult()
        releasable = self.repository.list_releasable(
            hold_seconds=self.settings.release_hold_seconds,
            now=self._clock(),
        )
        for transaction in releasable:
            if ctx.cancelled:
                break
            assert transaction.order_id is not None
            if not self.confirmation.confirm(
                f"Release escrow for transaction {transaction.transaction_id}?",
            ):
                result.skipped += 1
                continue
            try:
                self.gateways.marketplace.release_escrow(transaction.order_id)
            except GatewayError as error:
                self._item_failed(result, f"release {transaction.order_id}", error)
                continue
            self.repository.update_transaction(
                transaction.transaction_id,
                status=TransactionStatus.COMPLETED,
                completed_at=self._clock(),
            )
            result.processed += 1
            logger.info(
                "Escrow released for order %s (transaction %s)",
                transaction.order_id,
                transaction.transaction_id,
            )
        return self._finish_stage(ctx, RELEASER_TASK, result)

    # -- helpers ---------------------------------------------------------------

    def _item_failed(self, result: StageResult, label: str, error: GatewayError) -> None:
        if error.transient:
            logger.warning("%s deferred: %s", label, error)
            result.skipped += 1
            return
        logger.error("%s failed: %s", label, error)
        result.failed += 1
        result.errors.append(f"{label}: {error}")

    def _finish_stage(
        self,
        ctx: TaskContext,
        stage: str,
        result: StageResult,
    ) -> dict[str, object]:
        ctx.shared[stage] = {
            "processed": result.processed,
            "skipped": result.skipped,
            "failed": result.failed,
            "finished_at": self._clock().isoformat(),
        }
        if result.failed:
            raise StageFailedError(stage, result)
        return result.as_dict()
