"""Match extracted bank receipt fields against transactions awaiting payment."""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime

DEFAULT_AMOUNT_TOLERANCE = 10.0

_NON_DIGITS = re.compile(r"\D")


@dataclass(slots=True, frozen=True)
class ReceiptCandidate:
    """Fields read off a receipt document."""

    amount: float
    bank_name: str | None
    timestamp: datetime
    card_last4: str | None = None
    phone: str | None = None


@dataclass(slots=True, frozen=True)
class PaymentExpectation:
    """A transaction waiting for the counterparty's fiat payment."""

    transaction_id: str
    expected_amount: float
    bank_name: str | None
    wallet: str
    payment_sent_at: datetime


def match_receipt(
    receipt: ReceiptCandidate,
    candidates: Iterable[PaymentExpectation],
    amount_tolerance: float = DEFAULT_AMOUNT_TOLERANCE,
) -> PaymentExpectation | None:
    """Return the first candidate the receipt pays for, or ``None``.

    A candidate is rejected when the receipt predates the payment details,
    when the amount differs by more than ``amount_tolerance``, or when both
    sides name a bank without a shared word. It is accepted only if the card's
    last four digits equal the wallet's, or the phone and wallet digit strings
    contain one another.
    """

    receipt_at = _as_utc(receipt.timestamp)
    for candidate in candidates:
        if receipt_at < _as_utc(candidate.payment_sent_at):
            continue
        if abs(receipt.amount - candidate.expected_amount) > amount_tolerance:
            continue
        if not banks_compatible(receipt.bank_name, candidate.bank_name):
            continue
        if wallet_matches(candidate.wallet, card_last4=receipt.card_last4, phone=receipt.phone):
            return candidate
    return None


def banks_compatible(receipt_bank: str | None, expected_bank: str | None) -> bool:
    if not receipt_bank or not expected_bank:
        return True
    receipt_words = set(receipt_bank.lower().split())
    return any(word in receipt_words for word in expected_bank.lower().split())


def wallet_matches(wallet: str, *, card_last4: str | None, phone: str | None) -> bool:
    wallet_digits = digits_only(wallet)
    if not wallet_digits:
        return False

    if card_last4:
        card_digits = digits_only(card_last4)[-4:]
        if len(card_digits) == 4 and wallet_digits[-4:] == card_digits:
            return True

    if phone:
        phone_digits = digits_only(phone)
        if phone_digits and (phone_digits in wallet_digits or wallet_digits in phone_digits):
            return True
    return False


def digits_only(value: str) -> str:
    return _NON_DIGITS.sub("", value)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)
