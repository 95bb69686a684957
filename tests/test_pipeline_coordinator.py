from __future__ import annotations

from dataclasses import replace
from datetime import UTC, datetime, timedelta

import allure
import pytest

from fakes import FakeExtractor, FakeMailbox, FakeMarketplace, FakePayoutGateway, make_context
from p2p_relay.config import PipelineSettings
from p2p_relay.gateway.base import (
    GatewayBundle,
    GatewayError,
    GatewayUnavailableError,
    InboundDocument,
    Order,
)
from p2p_relay.matching.receipts import ReceiptCandidate
from p2p_relay.pipeline.confirmation import ConfirmationGate
from p2p_relay.pipeline.coordinator import (
    AD_CREATOR_TASK,
    BOOTSTRAP_TASK,
    PAYOUT_ACCEPTOR_TASK,
    RATE_REFRESH_TASK,
    RECEIPT_LISTENER_TASK,
    UNLINKED_PAGE_SIZE,
    PipelineCoordinator,
)
from p2p_relay.pipeline.models import (
    EXCHANGE_RATE_SETTING,
    MODE_SETTING,
    Payout,
    StageFailedError,
    TransactionStatus,
)
from p2p_relay.pipeline.repository import PipelineRepository
from p2p_relay.scheduler.engine import SchedulerEngine
from p2p_relay.scheduler.models import TaskKind

pytestmark = [
    allure.epic("Transaction Pipeline"),
    allure.feature("Pipeline Stages"),
]

WALLET = "+79001234567"


def _payout(external_id: str = "P-1", **overrides) -> Payout:
    values = {
        "external_id": external_id,
        "amount": 1500.0,
        "currency": "RUB",
        "wallet": WALLET,
        "status_code": 4,
        "bank": "Т-Банк",
    }
    values.update(overrides)
    return Payout(**values)


def _advance_to_waiting_payment(
    coordinator: PipelineCoordinator,
    payout_gateway: FakePayoutGateway,
    marketplace: FakeMarketplace,
) -> str:
    payout_gateway.payouts = [_payout()]
    coordinator.accept_payouts(make_context())
    coordinator.create_advertisements(make_context())
    marketplace.orders = [Order(order_id="order-1", advertisement_id="ad-1", status="open")]
    marketplace.say("order-1", "m-1", "да")
    marketplace.say("order-1", "m-2", "да")
    marketplace.say("order-1", "m-3", "подтверждаю")
    coordinator.process_chats(make_context())
    (transaction,) = coordinator.repository.list_transactions()
    assert transaction.status is TransactionStatus.WAITING_PAYMENT
    return transaction.transaction_id


def _receipt_document(document_id: str = "doc-1") -> InboundDocument:
    return InboundDocument(
        document_id=document_id,
        received_at=datetime.now(tz=UTC),
        filename="check.PDF",
        content=b"%PDF-1.7 receipt",
        sender="noreply@tbank.example",
    )


def _receipt(amount: float = 1503.0) -> ReceiptCandidate:
    return ReceiptCandidate(
        amount=amount,
        bank_name="Т-Банк",
        timestamp=datetime.now(tz=UTC) + timedelta(minutes=1),
        phone="+7 900 123-45-67",
    )


class TestPayoutAcceptor:
    def test_accepts_claimable_payouts_once(self, coordinator, payout_gateway, repository):
        payout_gateway.payouts = [_payout("P-1"), _payout("P-2", status_code=3)]
        ctx = make_context()

        first = coordinator.accept_payouts(ctx)
        second = coordinator.accept_payouts(ctx)

        assert first == {"processed": 1, "skipped": 1, "failed": 0, "errors": []}
        assert second["processed"] == 0
        assert second["skipped"] == 2
        assert payout_gateway.claimed == ["P-1"]
        assert repository.has_payout("P-1")
        assert not repository.has_payout("P-2")
        assert ctx.shared[PAYOUT_ACCEPTOR_TASK]["skipped"] == 2

    def test_permanent_claim_error_fails_stage_after_other_items(
        self,
        coordinator,
        payout_gateway,
        repository,
    ):
        payout_gateway.payouts = [_payout("P-1"), _payout("P-2")]
        payout_gateway.claim_errors["P-1"] = GatewayError("payout locked", status_code=409)
        ctx = make_context()

        with pytest.raises(StageFailedError) as caught:
            coordinator.accept_payouts(ctx)

        assert caught.value.stage == PAYOUT_ACCEPTOR_TASK
        assert caught.value.result.failed == 1
        assert "payout locked" in str(caught.value)
        assert payout_gateway.claimed == ["P-2"]
        assert not repository.has_payout("P-1")
        assert ctx.shared[PAYOUT_ACCEPTOR_TASK]["processed"] == 1

    def test_transient_errors_are_deferred(self, coordinator, payout_gateway, repository):
        payout_gateway.fetch_error = GatewayUnavailableError("timeout")

        result = coordinator.accept_payouts(make_context())

        assert result["failed"] == 0
        assert result["skipped"] == 1

        payout_gateway.fetch_error = None
        payout_gateway.payouts = [_payout("P-1")]
        payout_gateway.claim_errors["P-1"] = GatewayUnavailableError("timeout")
        coordinator.accept_payouts(make_context())
        assert not repository.has_payout("P-1")

        del payout_gateway.claim_errors["P-1"]
        coordinator.accept_payouts(make_context())
        assert repository.has_payout("P-1")

    def test_cancelled_context_stops_early(self, coordinator, payout_gateway, repository):
        payout_gateway.payouts = [_payout("P-1")]
        ctx = make_context()
        ctx.cancel_event.set()

        coordinator.accept_payouts(ctx)

        assert payout_gateway.claimed == []


class TestConfirmationMode:
    def test_manual_mode_without_prompt_declines_everything(
        self,
        repository,
        bundle,
        payout_gateway,
        pipeline_settings,
    ):
        repository.set_setting(MODE_SETTING, "manual")
        coordinator = PipelineCoordinator(
            repository=repository,
            gateways=bundle,
            settings=pipeline_settings,
        )
        payout_gateway.payouts = [_payout("P-1")]

        result = coordinator.accept_payouts(make_context())

        assert result["skipped"] == 1
        assert payout_gateway.claimed == []

    def test_manual_mode_asks_operator(self, repository, bundle, payout_gateway, pipeline_settings):
        repository.set_setting(MODE_SETTING, "manual")
        questions: list[str] = []

        def _prompt(action: str) -> bool:
            questions.append(action)
            return "P-2" in action

        coordinator = PipelineCoordinator(
            repository=repository,
            gateways=bundle,
            settings=pipeline_settings,
            confirmation=ConfirmationGate(repository, _prompt),
        )
        payout_gateway.payouts = [_payout("P-1"), _payout("P-2")]

        coordinator.accept_payouts(make_context())

        assert payout_gateway.claimed == ["P-2"]
        assert questions == [
            "Accept payout P-1 for 1500.0 RUB?",
            "Accept payout P-2 for 1500.0 RUB?",
        ]

    def test_interrupted_prompt_counts_as_decline(self, repository):
        repository.set_setting(MODE_SETTING, "manual")

        def _prompt(action: str) -> bool:
            raise EOFError

        assert ConfirmationGate(repository, _prompt).confirm("Release escrow?") is False

    def test_unknown_mode_is_treated_as_manual(self, repository):
        repository.set_setting(MODE_SETTING, "yolo")

        gate = ConfirmationGate(repository)

        assert gate.mode().value == "manual"
        assert gate.confirm("Approve payout?") is False


class TestAdvertisementCreator:
    def test_prices_one_advertisement_per_payout(self, coordinator, repository, marketplace):
        stored = repository.record_payout(_payout("P-1"))

        result = coordinator.create_advertisements(make_context())
        again = coordinator.create_advertisements(make_context())

        assert result["processed"] == 1
        assert again["processed"] == 0
        (spec,) = marketplace.advertisements
        assert spec.payout_external_id == "P-1"
        assert spec.price == 95.0
        assert spec.quantity == 15.79
        assert spec.payment_method == "SBP"
        (transaction,) = repository.list_transactions()
        assert transaction.payout_id == stored.payout_id
        assert transaction.advertisement_id == "ad-1"
        assert transaction.status is TransactionStatus.PENDING

    def test_never_offers_blacklisted_or_empty_payouts(self, coordinator, repository, marketplace):
        repository.record_payout(_payout("P-1", wallet="+79990000000"))
        repository.record_payout(_payout("P-2", amount=0.0))
        repository.record_payout(_payout("P-3"))
        repository.add_to_blacklist("+79990000000", reason="scam")

        result = coordinator.create_advertisements(make_context())

        assert result["processed"] == 1
        assert result["skipped"] == 0
        assert [spec.payout_external_id for spec in marketplace.advertisements] == ["P-3"]

    def test_old_unadvertisable_payouts_do_not_starve_new_ones(
        self,
        coordinator,
        repository,
        marketplace,
    ):
        for index in range(UNLINKED_PAGE_SIZE + 5):
            repository.record_payout(_payout(f"P-empty-{index}", amount=0.0))
        repository.record_payout(_payout("P-new"))

        result = coordinator.create_advertisements(make_context())

        assert result["processed"] == 1
        assert [spec.payout_external_id for spec in marketplace.advertisements] == ["P-new"]

    def test_declined_payouts_do_not_starve_new_ones(
        self,
        repository,
        bundle,
        marketplace,
        pipeline_settings,
    ):
        repository.set_setting(MODE_SETTING, "manual")
        asked: list[str] = []

        def _prompt(action: str) -> bool:
            asked.append(action)
            return "P-new" in action

        coordinator = PipelineCoordinator(
            repository=repository,
            gateways=bundle,
            settings=pipeline_settings,
            confirmation=ConfirmationGate(repository, _prompt),
        )
        declined = 2 * UNLINKED_PAGE_SIZE + 3
        for index in range(declined):
            repository.record_payout(_payout(f"P-old-{index}"))
        repository.record_payout(_payout("P-new"))

        result = coordinator.create_advertisements(make_context())

        assert result["processed"] == 1
        assert result["skipped"] == declined
        assert len(asked) == declined + 1
        assert [spec.payout_external_id for spec in marketplace.advertisements] == ["P-new"]

    def test_needs_a_positive_exchange_rate(
        self,
        repository,
        bundle,
        marketplace,
        pipeline_settings,
    ):
        coordinator = PipelineCoordinator(
            repository=repository,
            gateways=bundle,
            settings=replace(pipeline_settings, default_exchange_rate=0.0),
        )
        repository.record_payout(_payout("P-1"))

        assert coordinator.create_advertisements(make_context())["skipped"] == 1
        assert marketplace.advertisements == []

        repository.set_setting(EXCHANGE_RATE_SETTING, "100")
        ctx = make_context()
        assert coordinator.refresh_exchange_rate(ctx) == 100.0
        coordinator.create_advertisements(ctx)

        assert marketplace.advertisements[0].quantity == 15.0

    def test_cached_rate_wins_over_stored_setting(self, coordinator, repository, marketplace):
        repository.record_payout(_payout("P-1"))
        repository.set_setting(EXCHANGE_RATE_SETTING, "100")
        ctx = make_context(shared={RATE_REFRESH_TASK: {"exchange_rate": 75.0}})

        coordinator.create_advertisements(ctx)

        assert marketplace.advertisements[0].price == 75.0

    def test_marketplace_rejection_fails_stage(self, coordinator, repository, marketplace):
        repository.record_payout(_payout("P-1"))
        marketplace.create_error = GatewayError("invalid price", status_code=400)

        with pytest.raises(StageFailedError):
            coordinator.create_advertisements(make_context())
        assert repository.list_transactions() == []
        assert [item.external_id for item in repository.list_unlinked_payouts()] == ["P-1"]


class TestChatListener:
    def test_links_order_and_walks_the_questionnaire(
        self,
        coordinator,
        payout_gateway,
        marketplace,
        repository,
    ):
        tx_id = _advance_to_waiting_payment(coordinator, payout_gateway, marketplace)

        transaction = repository.get_transaction(tx_id)
        assert transaction.order_id == "order-1"
        assert transaction.payment_sent_at is not None
        assert len(marketplace.texts_to("order-1")) == 4

        marketplace.say("order-1", "m-3", "подтверждаю")
        coordinator.process_chats(make_context())
        assert len(marketplace.texts_to("order-1")) == 4

    def test_order_without_matching_advertisement_is_left_alone(
        self,
        coordinator,
        repository,
        marketplace,
    ):
        repository.record_payout(_payout("P-1"))
        coordinator.create_advertisements(make_context())
        marketplace.orders = [
            Order(order_id="order-9", advertisement_id="ad-unknown", status="open"),
        ]

        result = coordinator.process_chats(make_context())

        assert result["processed"] == 0
        assert repository.list_transactions()[0].status is TransactionStatus.PENDING
        assert marketplace.sent == []


class TestReceiptListener:
    def test_matched_receipt_approves_payout_and_releases_escrow(
        self,
        coordinator,
        payout_gateway,
        marketplace,
        mailbox,
        extractor,
        repository,
        pipeline_settings,
    ):
        tx_id = _advance_to_waiting_payment(coordinator, payout_gateway, marketplace)
        mailbox.documents = [_receipt_document()]
        extractor.receipts["doc-1"] = _receipt()

        result = coordinator.process_receipts(make_context())

        assert result["processed"] == 1
        assert payout_gateway.approved == [("P-1", b"%PDF-1.7 receipt")]
        transaction = repository.get_transaction(tx_id)
        assert transaction.status is TransactionStatus.CHECK_RECEIVED
        assert transaction.check_received_at is not None
        stored = pipeline_settings.receipts_dir / f"{tx_id}.PDF"
        assert transaction.receipt_path == str(stored)
        assert stored.read_bytes() == b"%PDF-1.7 receipt"
        assert repository.is_document_processed("doc-1")
        assert marketplace.texts_to("order-1")[-1] == coordinator.responder.script.final_message

        assert coordinator.process_receipts(make_context())["skipped"] == 1

        released = coordinator.release_completed(make_context())

        assert released["processed"] == 1
        assert marketplace.released == ["order-1"]
        completed = repository.get_transaction(tx_id)
        assert completed.status is TransactionStatus.COMPLETED
        assert completed.completed_at is not None

    def test_unmatched_receipt_is_retried_and_empty_document_is_marked(
        self,
        coordinator,
        payout_gateway,
        marketplace,
        mailbox,
        extractor,
        repository,
    ):
        _advance_to_waiting_payment(coordinator, payout_gateway, marketplace)
        mailbox.documents = [_receipt_document("doc-1"), _receipt_document("doc-2")]
        extractor.receipts["doc-1"] = _receipt(amount=3000.0)

        result = coordinator.process_receipts(make_context())

        assert result == {"processed": 0, "skipped": 2, "failed": 0, "errors": []}
        assert not repository.is_document_processed("doc-1")
        assert repository.is_document_processed("doc-2")
        assert payout_gateway.approved == []

    def test_failed_approval_is_retried_from_stored_receipt(
        self,
        coordinator,
        payout_gateway,
        marketplace,
        mailbox,
        extractor,
        repository,
    ):
        tx_id = _advance_to_waiting_payment(coordinator, payout_gateway, marketplace)
        mailbox.documents = [_receipt_document()]
        extractor.receipts["doc-1"] = _receipt()
        payout_gateway.approve_errors["P-1"] = GatewayError("receipt rejected", status_code=422)

        with pytest.raises(StageFailedError):
            coordinator.process_receipts(make_context())
        assert repository.get_transaction(tx_id).status is TransactionStatus.PAYMENT_RECEIVED

        del payout_gateway.approve_errors["P-1"]
        result = coordinator.process_receipts(make_context())

        assert result["processed"] == 1
        assert payout_gateway.approved == [("P-1", b"%PDF-1.7 receipt")]
        assert repository.get_transaction(tx_id).status is TransactionStatus.CHECK_RECEIVED

    def test_lookback_window_bounds_mailbox_query(self, coordinator, mailbox, pipeline_settings):
        coordinator.process_receipts(make_context())

        (since,) = mailbox.requested_since
        lookback = timedelta(minutes=pipeline_settings.receipt_lookback_minutes)
        expected = datetime.now(tz=UTC) - lookback
        assert abs((since - expected).total_seconds()) < 5


class TestReleaser:
    def test_release_waits_for_hold_and_reports_failures(
        self,
        repository,
        bundle,
        payout_gateway,
        marketplace,
        mailbox,
        extractor,
        pipeline_settings,
    ):
        now = [datetime.now(tz=UTC)]
        coordinator = PipelineCoordinator(
            repository=repository,
            gateways=bundle,
            settings=replace(pipeline_settings, release_hold_seconds=3600.0),
            clock=lambda: now[0],
        )
        tx_id = _advance_to_waiting_payment(coordinator, payout_gateway, marketplace)
        mailbox.documents = [_receipt_document()]
        extractor.receipts["doc-1"] = _receipt()
        coordinator.process_receipts(make_context())

        assert coordinator.release_completed(make_context())["processed"] == 0

        now[0] += timedelta(hours=2)
        marketplace.release_error = GatewayError("order disputed", status_code=409)

        with pytest.raises(StageFailedError):
            coordinator.release_completed(make_context())
        assert repository.get_transaction(tx_id).status is TransactionStatus.CHECK_RECEIVED


class TestRegistration:
    def test_registers_every_stage_with_its_trigger(self, coordinator):
        engine = SchedulerEngine(name="relay")

        coordinator.register(engine)

        kinds = {view.task_id: view.kind for view in engine.tasks()}
        assert kinds[BOOTSTRAP_TASK] is TaskKind.ONE_TIME
        assert kinds[PAYOUT_ACCEPTOR_TASK] is TaskKind.INTERVAL
        assert kinds[AD_CREATOR_TASK] is TaskKind.INTERVAL
        assert kinds[RECEIPT_LISTENER_TASK] is TaskKind.INTERVAL
        assert kinds[RATE_REFRESH_TASK] is TaskKind.CRON
        assert set(coordinator.task_ids()) == set(kinds) - {BOOTSTRAP_TASK}

    def test_receipt_listener_needs_mailbox_and_extractor(self, repository, pipeline_settings):
        coordinator = PipelineCoordinator(
            repository=repository,
            gateways=GatewayBundle(
                payouts=FakePayoutGateway(),
                marketplace=FakeMarketplace(),
                mailbox=FakeMailbox(),
            ),
            settings=pipeline_settings,
        )
        engine = SchedulerEngine(name="relay")

        coordinator.register(engine)

        assert RECEIPT_LISTENER_TASK not in {view.task_id for view in engine.tasks()}
        assert RECEIPT_LISTENER_TASK not in coordinator.task_ids()

    def test_bootstrap_seeds_balance_and_records_mode(self, repository, pipeline_settings):
        payouts = FakePayoutGateway(balance=10.0)
        coordinator = PipelineCoordinator(
            repository=repository,
            gateways=GatewayBundle(
                payouts=payouts,
                marketplace=FakeMarketplace(),
                mailbox=FakeMailbox(),
                extractor=FakeExtractor(),
            ),
            settings=replace(pipeline_settings, working_balance=5000.0),
        )
        ctx = make_context()

        summary = coordinator.bootstrap(ctx)

        assert payouts.balance_writes == [5000.0]
        assert summary["balance"] == 5000.0
        assert summary["mode"] == "auto"
        assert ctx.shared[BOOTSTRAP_TASK] == summary


def test_default_settings_are_usable(repository, bundle) -> None:
    coordinator = PipelineCoordinator(
        repository=repository,
        gateways=bundle,
        settings=PipelineSettings(),
    )

    assert coordinator.refresh_exchange_rate(make_context()) == 0.0
