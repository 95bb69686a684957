"""Controllers for pipeline CLI commands."""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from p2p_relay.config import Settings
from p2p_relay.gateway.loader import load_gateway_bundle
from p2p_relay.gateway.rate_limiter import RateLimiter
from p2p_relay.matching.chat_templates import match_template
from p2p_relay.pipeline.confirmation import ConfirmationGate, Prompt
from p2p_relay.pipeline.coordinator import PipelineCoordinator
from p2p_relay.pipeline.models import (
    EXCHANGE_RATE_SETTING,
    MODE_SETTING,
    ConfirmationMode,
    TransactionStatus,
)
from p2p_relay.pipeline.repository import PipelineRepository
from p2p_relay.scheduler.engine import SchedulerEngine
from p2p_relay.scheduler.models import TaskFailed
from p2p_relay.scheduler.snapshot import SnapshotStore

logger = logging.getLogger(__name__)

ENGINE_NAME = "p2p-relay"


@dataclass(slots=True)
class RunCommand:
    """CLI input for the long-running pipeline."""

    db_path: Path | None
    gateways: str
    once: bool = False
    state_path: Path | None = None
    once_timeout_seconds: float = 120.0


@dataclass(slots=True)
class ListTransactionsCommand:
    db_path: Path | None
    status: TransactionStatus | None
    limit: int


@dataclass(slots=True)
class InspectTransactionCommand:
    db_path: Path | None
    transaction_id: str


@dataclass(slots=True)
class ModeCommand:
    db_path: Path | None
    mode: ConfirmationMode | None


@dataclass(slots=True)
class SetRateCommand:
    db_path: Path | None
    rate: float


@dataclass(slots=True)
class TemplateAddCommand:
    db_path: Path | None
    name: str
    message: str
    keywords: tuple[str, ...]
    priority: int


@dataclass(slots=True)
class TemplateListCommand:
    db_path: Path | None


@dataclass(slots=True)
class TemplateMatchCommand:
    db_path: Path | None
    message: str


@dataclass(slots=True)
class BlacklistAddCommand:
    db_path: Path | None
    wallet: str
    reason: str


@dataclass(slots=True)
class StateCommand:
    state_path: Path | None


class PipelineCliController:
    """Coordinates pipeline run, inspection and settings CLI operations."""

    def run(self, command: RunCommand, *, prompt: Prompt | None = None) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        if command.state_path is not None:
            settings.scheduler.state_path = command.state_path
        settings.validate()

        limiter = RateLimiter(
            max_requests=settings.rate_limit.max_requests,
            window_seconds=settings.rate_limit.window_seconds,
        )
        bundle = load_gateway_bundle(command.gateways, settings=settings, limiter=limiter)

        failures: list[str] = []
        with _repository(settings) as repository:
            engine = SchedulerEngine(
                name=ENGINE_NAME,
                state_path=settings.scheduler.state_path,
                max_concurrent_tasks=settings.scheduler.max_concurrent_tasks,
                checkpoint_interval_seconds=settings.scheduler.checkpoint_interval_seconds,
                shutdown_grace_seconds=settings.scheduler.shutdown_grace_seconds,
                tick_seconds=settings.scheduler.tick_seconds,
                default_timeout_seconds=settings.scheduler.task_timeout_seconds,
            )
            coordinator = PipelineCoordinator(
                repository=repository,
                gateways=bundle,
                settings=settings.pipeline,
                confirmation=ConfirmationGate(repository, prompt),
            )
            coordinator.register(engine)

            def _record_failure(event: TaskFailed) -> None:
                failures.append(f"{event.task_id}: {event.error}")

            engine.on_task_error(_record_failure)
            engine.initialize()
            engine.start()
            try:
                if command.once:
                    for task_id in coordinator.task_ids():
                        engine.trigger(task_id)
                        if not engine.wait_until_idle(timeout=command.once_timeout_seconds):
                            logger.warning("Task %s did not settle in time", task_id)
                else:
                    stop = threading.Event()
                    with _stop_on_signals(stop):
                        while not stop.wait(timeout=1.0):
                            pass
            finally:
                engine.stop()

            lines = [f"Scheduler {ENGINE_NAME} stopped."]
            for view in engine.tasks():
                lines.append(
                    f"  {view.task_id}: kind={view.kind.value} runs={view.run_count} "
                    f"last_run_at={_fmt(view.last_run_at)} next_run_at={_fmt(view.next_run_at)}"
                    + (f" last_error={view.last_error}" if view.last_error else ""),
                )
        if failures:
            lines.append(f"Task failures: {len(failures)}")
            lines.extend(f"  {item}" for item in failures[-10:])
        return lines

    def list_transactions(self, command: ListTransactionsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            transactions = repository.list_transactions(
                statuses=(command.status,) if command.status is not None else None,
                limit=command.limit,
            )
        if not transactions:
            return ["No transactions found."]
        return [
            f"{item.transaction_id} status={item.status.value} order={item.order_id or '-'} "
            f"step={item.chat_step} created_at={_fmt(item.created_at)}"
            for item in transactions
        ]

    def inspect_transaction(self, command: InspectTransactionCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            details = repository.get_transaction_details(command.transaction_id)
        if details is None:
            return [f"Transaction not found: {command.transaction_id}"]

        tx = details.transaction
        lines = [
            f"Transaction: {tx.transaction_id}",
            f"Status: {tx.status.value}",
            f"Order: {tx.order_id or '-'}",
            f"Advertisement: {tx.advertisement_id}",
            f"Chat step: {tx.chat_step}",
            f"Payment sent at: {_fmt(tx.payment_sent_at)}",
            f"Check received at: {_fmt(tx.check_received_at)}",
            f"Completed at: {_fmt(tx.completed_at)}",
        ]
        if tx.failure_reason:
            lines.append(f"Failure reason: {tx.failure_reason}")
        if tx.receipt_path:
            lines.append(f"Receipt: {tx.receipt_path}")
        if details.payout is not None:
            payout = details.payout
            lines.append(
                f"Payout: {payout.external_id} {payout.amount} {payout.currency} "
                f"wallet={payout.wallet} bank={payout.bank or '-'}",
            )
        if details.messages:
            lines.append("Chat:")
            lines.extend(
                f"  [{message.sender.value}] {message.body}" for message in details.messages
            )
        return lines

    def mode(self, command: ModeCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            if command.mode is not None:
                repository.set_setting(MODE_SETTING, command.mode.value)
            current = ConfirmationGate(repository).mode()
        return [f"Mode: {current.value}"]

    def set_rate(self, command: SetRateCommand) -> list[str]:
        if command.rate <= 0:
            raise ValueError("Exchange rate must be > 0.")
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            repository.set_setting(EXCHANGE_RATE_SETTING, str(command.rate))
        return [f"Exchange rate set: {command.rate}"]

    def add_template(self, command: TemplateAddCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            template = repository.add_template(
                name=command.name,
                message=command.message,
                keywords=command.keywords,
                priority=command.priority,
            )
        return [
            f"Template added: id={template.template_id} name={template.name} "
            f"priority={template.priority} keywords={', '.join(template.keywords)}",
        ]

    def list_templates(self, command: TemplateListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            templates = repository.list_templates()
            usages = {
                template.template_id: repository.count_template_usages(template.template_id)
                for template in templates
                if template.template_id is not None
            }
        if not templates:
            return ["No templates found."]
        return [
            f"{template.template_id} {template.name} priority={template.priority} "
            f"used={usages.get(template.template_id, 0)} keywords={', '.join(template.keywords)}"
            for template in templates
        ]

    def match_template(self, command: TemplateMatchCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            templates = repository.list_templates()
        matched = match_template(command.message, templates)
        if matched is None:
            return ["No template matched."]
        return [
            f"Matched: {matched.template.name} (score={matched.score}, "
            f"priority={matched.template.priority})",
            f"Keywords: {', '.join(matched.matched_keywords)}",
            f"Reply: {matched.template.message}",
        ]

    def add_to_blacklist(self, command: BlacklistAddCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            repository.add_to_blacklist(command.wallet, reason=command.reason)
        return [f"Wallet blacklisted: {command.wallet}"]

    def state(self, command: StateCommand) -> list[str]:
        state_path = command.state_path or Settings.from_env().scheduler.state_path
        if state_path is None:
            return ["Scheduler state persistence is disabled."]
        snapshot = SnapshotStore(state_path).load()
        if snapshot is None:
            return [f"No scheduler snapshot at {state_path}"]
        lines = [
            f"Snapshot: {state_path}",
            f"Name: {snapshot.name}",
            f"Saved at: {_fmt(snapshot.saved_at)}",
            "Tasks:",
        ]
        lines.extend(
            f"  {item.task_id}: kind={item.kind.value} enabled={item.enabled} "
            f"last_run_at={_fmt(item.last_run_at)} next_run_at={_fmt(item.next_run_at)}"
            for item in snapshot.tasks
        )
        keys = ", ".join(sorted(snapshot.context)) or "-"
        lines.append(f"Context keys: {keys}")
        return lines


def _fmt(value: datetime | None) -> str:
    return value.isoformat() if value is not None else "-"


@contextmanager
def _repository(settings: Settings) -> Iterator[PipelineRepository]:
    repository = PipelineRepository(db_path=settings.db_path)
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@contextmanager
def _stop_on_signals(stop: threading.Event) -> Iterator[None]:
    def _handler(signum: int, _: object | None) -> None:
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        logger.info("Received %s, stopping", name)
        stop.set()

    try:
        original_sigint = signal.signal(signal.SIGINT, _handler)
        original_sigterm = signal.signal(signal.SIGTERM, _handler)
    except ValueError:
        # Signal handlers can only be installed in main thread.
        yield
        return
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, original_sigint)
        signal.signal(signal.SIGTERM, original_sigterm)
