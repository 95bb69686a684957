from __future__ import annotations

import allure

from p2p_relay.matching.chat_templates import ChatTemplate, match_template, normalize_message

pytestmark = [
    allure.epic("Matching"),
    allure.feature("Chat Templates"),
]

_PAYMENT_TIME = ChatTemplate(
    template_id=1,
    name="payment_time",
    message="Оплата поступит в течение 15 минут после подтверждения.",
    keywords=("когда", "оплата"),
    priority=5,
)
_GENERIC_WHEN = ChatTemplate(
    template_id=2,
    name="generic_when",
    message="Скоро ответим.",
    keywords=("когда",),
    priority=10,
)
_DETAILS = ChatTemplate(
    template_id=3,
    name="details",
    message="Реквизиты пришлём после ответов на вопросы.",
    keywords=("реквизиты", "оплата"),
    priority=5,
)


def test_more_matched_keywords_beats_higher_priority() -> None:
    matched = match_template("Когда  оплата?", [_GENERIC_WHEN, _PAYMENT_TIME])

    assert matched is not None
    assert matched.template.name == "payment_time"
    assert matched.score == 2
    assert matched.matched_keywords == ("когда", "оплата")


def test_priority_breaks_score_ties() -> None:
    low = ChatTemplate(template_id=4, name="low", message="a", keywords=("когда",), priority=1)

    matched = match_template("когда?", [low, _GENERIC_WHEN])

    assert matched is not None
    assert matched.template.name == "generic_when"


def test_input_order_breaks_full_ties() -> None:
    matched = match_template("где реквизиты, когда оплата", [_PAYMENT_TIME, _DETAILS])

    assert matched is not None
    assert matched.template.name == "payment_time"

    swapped = match_template("где реквизиты, когда оплата", [_DETAILS, _PAYMENT_TIME])
    assert swapped is not None
    assert swapped.template.name == "details"


def test_keywords_match_as_substrings_case_insensitively() -> None:
    matched = match_template("ОПЛАТАаа прошла?", [_DETAILS])

    assert matched is not None
    assert matched.matched_keywords == ("оплата",)


def test_no_match_and_blank_message_return_none() -> None:
    assert match_template("спасибо", [_PAYMENT_TIME, _DETAILS]) is None
    assert match_template("   ", [_PAYMENT_TIME]) is None
    assert match_template("когда", []) is None


def test_blank_keywords_never_match() -> None:
    blank = ChatTemplate(template_id=5, name="blank", message="x", keywords=("  ",))

    assert match_template("anything at all", [blank]) is None


def test_normalize_message_collapses_whitespace() -> None:
    assert normalize_message("  Когда\n\tОПЛАТА  ") == "когда оплата"


def test_repeated_keywords_count_once() -> None:
    padded = ChatTemplate(
        template_id=6,
        name="padded",
        message="x",
        keywords=("когда", "Когда", " когда "),
        priority=20,
    )

    matched = match_template("когда оплата", [padded, _PAYMENT_TIME])

    assert matched is not None
    assert matched.template.name == "payment_time"

    alone = match_template("когда", [padded])
    assert alone is not None
    assert alone.score == 1
    assert alone.matched_keywords == ("когда",)
