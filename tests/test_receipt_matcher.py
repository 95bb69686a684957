from __future__ import annotations

from datetime import UTC, datetime, timedelta

import allure
import pytest

from p2p_relay.matching.receipts import (
    PaymentExpectation,
    ReceiptCandidate,
    banks_compatible,
    match_receipt,
    wallet_matches,
)

pytestmark = [
    allure.epic("Matching"),
    allure.feature("Receipt Matching"),
]

_SENT_AT = datetime(2026, 10, 19, 10, 0, tzinfo=UTC)


def _expectation(
    transaction_id: str = "tx-1",
    *,
    amount: float = 1500.0,
    bank: str | None = "Т-Банк",
    wallet: str = "2200 7001 2345 6789",
) -> PaymentExpectation:
    return PaymentExpectation(
        transaction_id=transaction_id,
        expected_amount=amount,
        bank_name=bank,
        wallet=wallet,
        payment_sent_at=_SENT_AT,
    )


def _receipt(
    amount: float = 1500.0,
    *,
    bank: str | None = "Т-Банк",
    at: datetime | None = None,
    card_last4: str | None = "6789",
    phone: str | None = None,
) -> ReceiptCandidate:
    return ReceiptCandidate(
        amount=amount,
        bank_name=bank,
        timestamp=at or _SENT_AT + timedelta(minutes=5),
        card_last4=card_last4,
        phone=phone,
    )


@pytest.mark.parametrize(
    ("amount", "matches"),
    [(1500.0, True), (1505.0, True), (1510.0, True), (1520.0, False), (1489.0, False)],
)
def test_amount_must_be_within_tolerance(amount: float, matches: bool) -> None:
    matched = match_receipt(_receipt(amount), [_expectation()], amount_tolerance=10.0)

    assert (matched is not None) is matches


def test_receipt_before_payment_details_is_rejected() -> None:
    early = _receipt(at=_SENT_AT - timedelta(seconds=1))

    assert match_receipt(early, [_expectation()]) is None


def test_naive_receipt_timestamp_is_treated_as_utc() -> None:
    naive = _receipt(at=datetime(2026, 10, 19, 10, 1))

    assert match_receipt(naive, [_expectation()]) is not None


def test_phone_digits_match_either_way() -> None:
    expectation = _expectation(wallet="+7 (900) 123-45-67", bank=None)

    assert match_receipt(_receipt(card_last4=None, phone="9001234567"), [expectation]) is not None
    assert (
        match_receipt(_receipt(card_last4=None, phone="+7 900 123 45 67 ext"), [expectation])
        is not None
    )
    assert match_receipt(_receipt(card_last4=None, phone="9000000000"), [expectation]) is None


def test_receipt_without_wallet_evidence_never_matches() -> None:
    assert match_receipt(_receipt(card_last4=None, phone=None), [_expectation()]) is None


def test_bank_names_need_a_shared_word_when_both_present() -> None:
    assert match_receipt(_receipt(bank="Сбербанк"), [_expectation(bank="Т-Банк")]) is None
    assert match_receipt(_receipt(bank="АО Т-Банк"), [_expectation(bank="т-банк")]) is not None
    assert match_receipt(_receipt(bank=None), [_expectation(bank="Т-Банк")]) is not None


def test_first_matching_candidate_wins() -> None:
    first = _expectation("tx-first", amount=1490.0)
    second = _expectation("tx-second", amount=1500.0)

    matched = match_receipt(_receipt(1500.0), [first, second])

    assert matched is not None
    assert matched.transaction_id == "tx-first"


@pytest.mark.parametrize(
    ("wallet", "card_last4", "phone", "expected"),
    [
        ("2200700123456789", "6789", None, True),
        ("2200700123456789", "**** 6789", None, True),
        ("2200700123456789", "789", None, False),
        ("", "6789", None, False),
        ("no digits", None, "123", False),
        ("79001234567", None, "", False),
    ],
)
def test_wallet_matches(
    wallet: str,
    card_last4: str | None,
    phone: str | None,
    expected: bool,
) -> None:
    assert wallet_matches(wallet, card_last4=card_last4, phone=phone) is expected


def test_banks_compatible_ignores_missing_side() -> None:
    assert banks_compatible(None, "Сбербанк")
    assert banks_compatible("Сбербанк", "")
    assert not banks_compatible("Альфа Банк", "Сбербанк")
