"""Gateway protocols for the payout platform, the marketplace and the mailbox."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from p2p_relay.matching.receipts import ReceiptCandidate
from p2p_relay.pipeline.models import Payout


class GatewayError(RuntimeError):
    """Platform rejected a call.

    ``transient`` errors are expected to clear on their own and are retried on
    the next tick; the rest count as a failed item.
    """

    transient = False

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class GatewayUnavailableError(GatewayError):
    """Network failure or timeout before a response arrived."""

    transient = True


class SessionExpiredError(GatewayError):
    transient = True


class RateLimitedError(GatewayError):
    transient = True

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = 429,
        retry_after_seconds: float | None = None,
    ) -> None:
        super().__init__(message, status_code=status_code)
        self.retry_after_seconds = retry_after_seconds


@dataclass(slots=True, frozen=True)
class AdvertisementSpec:
    """What to post on the marketplace for one payout."""

    payout_external_id: str
    fiat_amount: float
    currency: str
    price: float
    quantity: float
    payment_method: str
    remark: str = ""


@dataclass(slots=True, frozen=True)
class Order:
    order_id: str
    advertisement_id: str
    status: str
    amount: float | None = None
    counterparty: str | None = None


@dataclass(slots=True, frozen=True)
class InboundMessage:
    message_id: str
    order_id: str
    text: str
    from_counterparty: bool
    sent_at: datetime | None = None


@dataclass(slots=True, frozen=True)
class InboundDocument:
    """Mail attachment that may carry a bank receipt."""

    document_id: str
    received_at: datetime
    filename: str
    content: bytes
    sender: str | None = None


class PayoutGateway(Protocol):
    def fetch_claimable_payouts(self) -> list[Payout]: ...

    def claim_payout(self, external_id: str) -> None: ...

    def approve_payout(self, external_id: str, receipt: bytes) -> None: ...

    def read_balance(self) -> float: ...

    def set_balance(self, amount: float) -> None: ...


class MarketplaceGateway(Protocol):
    def create_advertisement(self, spec: AdvertisementSpec) -> str: ...

    def list_open_orders(self) -> list[Order]: ...

    def list_inbound_messages(self, order_id: str) -> list[InboundMessage]: ...

    def send_message(self, order_id: str, text: str) -> None: ...

    def release_escrow(self, order_id: str) -> None: ...


class Mailbox(Protocol):
    def list_documents(self, since: datetime) -> list[InboundDocument]: ...


class ReceiptExtractor(Protocol):
    def extract(self, document: InboundDocument) -> ReceiptCandidate | None: ...


@dataclass(slots=True)
class GatewayBundle:
    """Gateways handed to the pipeline; the mailbox pair is optional."""

    payouts: PayoutGateway
    marketplace: MarketplaceGateway
    mailbox: Mailbox | None = None
    extractor: ReceiptExtractor | None = None

    @property
    def receipts_enabled(self) -> bool:
        return self.mailbox is not None and self.extractor is not None
