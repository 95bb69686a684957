"""Domain models for the payout-to-escrow transaction pipeline."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum

MODE_SETTING = "mode"
EXCHANGE_RATE_SETTING = "exchange_rate"


class TransactionStatus(str, Enum):
    """Transaction lifecycle; ``failed`` and ``cancelled`` are absorbing."""

    PENDING = "pending"
    CHAT_STARTED = "chat_started"
    WAITING_PAYMENT = "waiting_payment"
    PAYMENT_RECEIVED = "payment_received"
    CHECK_RECEIVED = "check_received"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL

    def can_transition_to(self, target: TransactionStatus) -> bool:
        if self.is_terminal or target is self:
            return False
        if target in (TransactionStatus.FAILED, TransactionStatus.CANCELLED):
            return True
        return _FORWARD.index(target) > _FORWARD.index(self)


_FORWARD = (
    TransactionStatus.PENDING,
    TransactionStatus.CHAT_STARTED,
    TransactionStatus.WAITING_PAYMENT,
    TransactionStatus.PAYMENT_RECEIVED,
    TransactionStatus.CHECK_RECEIVED,
    TransactionStatus.COMPLETED,
)
_TERMINAL = frozenset(
    {TransactionStatus.COMPLETED, TransactionStatus.FAILED, TransactionStatus.CANCELLED},
)
TERMINAL_STATUSES = _TERMINAL


class ConfirmationMode(str, Enum):
    AUTO = "auto"
    MANUAL = "manual"


class MessageSender(str, Enum):
    COUNTERPARTY = "counterparty"
    US = "us"
    SYSTEM = "system"


class InvalidTransitionError(ValueError):
    """Requested status change breaks the lifecycle ordering."""

    def __init__(
        self,
        transaction_id: str,
        current: TransactionStatus,
        target: TransactionStatus,
    ) -> None:
        super().__init__(
            f"Transaction {transaction_id}: cannot move from {current.value} to {target.value}",
        )
        self.transaction_id = transaction_id
        self.current = current
        self.target = target


class DuplicateRecordError(ValueError):
    """A row with the same natural key already exists."""


@dataclass(slots=True)
class Payout:
    """Fiat withdrawal request as reported by the payout platform."""

    external_id: str
    amount: float
    currency: str
    wallet: str
    status_code: int
    bank: str | None = None


@dataclass(slots=True)
class PayoutView:
    payout_id: str
    external_id: str
    amount: float
    currency: str
    wallet: str
    bank: str | None
    status_code: int
    claimed_at: datetime
    created_at: datetime


@dataclass(slots=True)
class AdvertisementView:
    advertisement_id: str
    payout_id: str
    amount: float
    currency: str
    price: float
    quantity: float
    payment_method: str
    created_at: datetime


@dataclass(slots=True)
class TransactionView:
    """Readable transaction view for CLI and pipeline stages."""

    transaction_id: str
    payout_id: str | None
    advertisement_id: str
    order_id: str | None
    status: TransactionStatus
    chat_step: int
    payment_sent_at: datetime | None
    check_received_at: datetime | None
    completed_at: datetime | None
    failure_reason: str | None
    receipt_path: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class ChatMessageView:
    message_id: int
    transaction_id: str
    external_id: str | None
    sender: MessageSender
    body: str
    is_processed: bool
    sent_at: datetime | None
    created_at: datetime


@dataclass(slots=True)
class TransactionDetails:
    """Transaction with its payout, advertisement and chat history."""

    transaction: TransactionView
    payout: PayoutView | None
    advertisement: AdvertisementView | None
    messages: list[ChatMessageView] = field(default_factory=list)


@dataclass(slots=True)
class StageResult:
    """Counters reported by one run of a pipeline stage."""

    processed: int = 0
    skipped: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, object]:
        return asdict(self)


class StageFailedError(RuntimeError):
    """One or more items of a stage hit a permanent gateway error."""

    def __init__(self, stage: str, result: StageResult) -> None:
        summary = "; ".join(result.errors[:3])
        super().__init__(f"Stage {stage} failed for {result.failed} item(s): {summary}")
        self.stage = stage
        self.result = result
