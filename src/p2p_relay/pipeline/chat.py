"""Scripted counterparty questionnaire with template fallback."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum

from p2p_relay.gateway.base import MarketplaceGateway
from p2p_relay.matching.chat_templates import match_template, normalize_message
from p2p_relay.pipeline.models import (
    ChatMessageView,
    MessageSender,
    PayoutView,
    TransactionStatus,
    TransactionView,
)
from p2p_relay.pipeline.repository import PipelineRepository
from p2p_relay.storage.common import utc_now

logger = logging.getLogger(__name__)

PAYMENT_DETAILS_STEP = 999
WRONG_ANSWER_MARKER = "wrong_answer_step_"

_WORD = re.compile(r"\w+")


class AnswerVerdict(str, Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    UNRECOGNISED = "unrecognised"


class ChatAction(str, Enum):
    """What the responder did with one inbound message."""

    ASKED_NEXT = "asked_next"
    SENT_PAYMENT_DETAILS = "sent_payment_details"
    TEMPLATE_REPLY = "template_reply"
    WARNED = "warned"
    FAILED_WRONG_ANSWERS = "failed_wrong_answers"
    REJECTED = "rejected"
    IGNORED = "ignored"


@dataclass(slots=True, frozen=True)
class ChatStep:
    question: str
    expected_answers: tuple[str, ...]


@dataclass(slots=True, frozen=True)
class ChatScript:
    """Questions asked in order before payment details are shared."""

    steps: tuple[ChatStep, ...]
    negative_answers: tuple[str, ...]
    payment_details: str
    warning_prefix: str
    wrong_answers_message: str
    rejection_message: str
    final_message: str

    def question(self, step: int) -> str:
        return self.steps[step - 1].question

    def classify(self, answer: str, step: int) -> AnswerVerdict:
        """Classify an answer to 1-based ``step``.

        Single-word phrases must match a whole word of the answer; multi-word
        phrases match as substrings of the normalised answer. Negative phrases
        win over positive ones.
        """

        normalized = normalize_message(answer)
        words = set(_WORD.findall(normalized))
        if any(_phrase_present(phrase, normalized, words) for phrase in self.negative_answers):
            return AnswerVerdict.REJECTED
        expected = self.steps[step - 1].expected_answers
        if any(_phrase_present(phrase, normalized, words) for phrase in expected):
            return AnswerVerdict.ACCEPTED
        return AnswerVerdict.UNRECOGNISED

    def render_payment_details(
        self,
        *,
        payout: PayoutView,
        payment_method: str,
        receipt_email: str,
    ) -> str:
        wallet_label = "Телефон" if payment_method.upper() == "SBP" else "Карта"
        return self.payment_details.format(
            bank=payout.bank or payment_method,
            wallet_label=wallet_label,
            wallet=payout.wallet,
            amount=_format_amount(payout.amount),
            currency=payout.currency,
            receipt_email=receipt_email,
        )

    @classmethod
    def default(cls) -> ChatScript:
        positive = ("да", "yes", "ок", "ok", "норм", "хорошо", "конечно", "разумеется")
        return cls(
            steps=(
                ChatStep(
                    question="Здравствуйте!\nОплата будет с Т банка?\n(просто напишите да/нет)",
                    expected_answers=positive,
                ),
                ChatStep(
                    question=(
                        "Чек в формате PDF с официальной почты банка сможете отправить?\n"
                        "(просто напишите да/нет)"
                    ),
                    expected_answers=(*positive, "смогу", "могу"),
                ),
                ChatStep(
                    question=(
                        "При СБП, если оплата будет на неверный банк, деньги потеряны.\n"
                        "(просто напишите подтверждаю/не подтверждаю)"
                    ),
                    expected_answers=(
                        "подтверждаю",
                        "да",
                        "yes",
                        "ок",
                        "ok",
                        "понял",
                        "понятно",
                        "ясно",
                    ),
                ),
            ),
            negative_answers=("нет", "no", "не подтверждаю", "отказываюсь"),
            payment_details=(
                "Реквизиты для оплаты:\n"
                "Банк: {bank}\n"
                "{wallet_label}: {wallet}\n"
                "Сумма: {amount} {currency}\n"
                "Email для чека: {receipt_email}\n\n"
                "После оплаты отправьте чек в формате PDF на указанный email."
            ),
            warning_prefix=(
                "Пожалуйста, отвечайте строго как указано в инструкции! "
                "Это поможет быстрее провести сделку."
            ),
            wrong_answers_message=(
                "К сожалению, мы не можем продолжить сделку из-за некорректных ответов. "
                "Сделка отменена."
            ),
            rejection_message="К сожалению, мы не можем продолжить эту сделку. Удачи!",
            final_message="Спасибо за сделку! Будем рады видеть вас снова.",
        )


class ChatResponder:
    """Drives one transaction's chat forward, one inbound message at a time."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: PipelineRepository,
        marketplace: MarketplaceGateway,
        script: ChatScript,
        max_wrong_answers: int = 3,
        payment_method: str = "SBP",
        receipt_email: str = "",
    ) -> None:
        self.repository = repository
        self.marketplace = marketplace
        self.script = script
        self.max_wrong_answers = max_wrong_answers
        self.payment_method = payment_method
        self.receipt_email = receipt_email

    def open_chat(self, transaction: TransactionView) -> TransactionView:
        """Ask the first question of a freshly linked order."""

        if transaction.order_id is None or transaction.chat_step != 0:
            return transaction
        self._send(transaction, self.script.question(1))
        return self.repository.update_transaction(transaction.transaction_id, chat_step=1)

    def handle(
        self,
        transaction: TransactionView,
        payout: PayoutView | None,
        message: ChatMessageView,
    ) -> ChatAction:
        if transaction.status.is_terminal or message.sender is not MessageSender.COUNTERPARTY:
            return ChatAction.IGNORED

        step = transaction.chat_step
        if transaction.status is not TransactionStatus.CHAT_STARTED or not (
            0 < step <= len(self.script.steps)
        ):
            if step == 0 and transaction.status is TransactionStatus.CHAT_STARTED:
                self.open_chat(transaction)
                return ChatAction.ASKED_NEXT
            return self._reply_from_templates(transaction, message) or ChatAction.IGNORED

        verdict = self.script.classify(message.body, step)
        if verdict is AnswerVerdict.ACCEPTED:
            return self._advance(transaction, payout, step)
        if verdict is AnswerVerdict.REJECTED:
            self._reject(transaction, payout, message)
            return ChatAction.REJECTED

        template_action = self._reply_from_templates(transaction, message)
        if template_action is not None:
            return template_action
        return self._wrong_answer(transaction, step, message)

    def send_final_message(self, transaction: TransactionView) -> None:
        self._send(transaction, self.script.final_message)

    def _advance(
        self,
        transaction: TransactionView,
        payout: PayoutView | None,
        step: int,
    ) -> ChatAction:
        if step < len(self.script.steps):
            self._send(transaction, self.script.question(step + 1))
            self.repository.update_transaction(transaction.transaction_id, chat_step=step + 1)
            return ChatAction.ASKED_NEXT

        if payout is None:
            raise ValueError(f"Transaction {transaction.transaction_id} has no payout")
        details = self.script.render_payment_details(
            payout=payout,
            payment_method=self.payment_method,
            receipt_email=self.receipt_email,
        )
        self._send(transaction, details)
        self.repository.update_transaction(
            transaction.transaction_id,
            status=TransactionStatus.WAITING_PAYMENT,
            chat_step=PAYMENT_DETAILS_STEP,
            payment_sent_at=utc_now(),
        )
        logger.info("Payment details sent for transaction %s", transaction.transaction_id)
        return ChatAction.SENT_PAYMENT_DETAILS

    def _reject(
        self,
        transaction: TransactionView,
        payout: PayoutView | None,
        message: ChatMessageView,
    ) -> None:
        reason = f"Negative answer at step {transaction.chat_step}: {message.body}"
        if payout is not None:
            self.repository.add_to_blacklist(
                payout.wallet,
                reason=reason,
                payout_id=payout.payout_id,
            )
        self._send(transaction, self.script.rejection_message)
        self.repository.update_transaction(
            transaction.transaction_id,
            status=TransactionStatus.FAILED,
            failure_reason=reason,
        )
        logger.warning("Transaction %s rejected by counterparty", transaction.transaction_id)

    def _wrong_answer(
        self,
        transaction: TransactionView,
        step: int,
        message: ChatMessageView,
    ) -> ChatAction:
        previous = self._wrong_answer_count(transaction.transaction_id, step)
        if previous + 1 >= self.max_wrong_answers:
            self._send(transaction, self.script.wrong_answers_message)
            self.repository.update_transaction(
                transaction.transaction_id,
                status=TransactionStatus.FAILED,
                failure_reason=f"Too many wrong answers at step {step}: {message.body}",
            )
            logger.warning(
                "Transaction %s failed after %d wrong answers",
                transaction.transaction_id,
                previous + 1,
            )
            return ChatAction.FAILED_WRONG_ANSWERS

        self._send(transaction, f"{self.script.warning_prefix}\n\n{self.script.question(step)}")
        self.repository.record_outbound_message(
            transaction_id=transaction.transaction_id,
            body=f"{WRONG_ANSWER_MARKER}{step}_attempt_{previous + 1}",
            sender=MessageSender.SYSTEM,
        )
        return ChatAction.WARNED

    def _wrong_answer_count(self, transaction_id: str, step: int) -> int:
        prefix = f"{WRONG_ANSWER_MARKER}{step}_"
        return sum(
            1
            for item in self.repository.list_messages(transaction_id)
            if item.sender is MessageSender.SYSTEM and item.body.startswith(prefix)
        )

    def _reply_from_templates(
        self,
        transaction: TransactionView,
        message: ChatMessageView,
    ) -> ChatAction | None:
        matched = match_template(message.body, self.repository.list_templates())
        if matched is None:
            return None
        self._send(transaction, matched.template.message)
        if matched.template.template_id is not None:
            self.repository.record_template_usage(
                template_id=matched.template.template_id,
                transaction_id=transaction.transaction_id,
            )
        logger.info(
            "Template %s answered transaction %s (keywords: %s)",
            matched.template.name,
            transaction.transaction_id,
            ", ".join(matched.matched_keywords),
        )
        return ChatAction.TEMPLATE_REPLY

    def _send(self, transaction: TransactionView, text: str) -> None:
        if transaction.order_id is None:
            raise ValueError(f"Transaction {transaction.transaction_id} has no order")
        self.marketplace.send_message(transaction.order_id, text)
        self.repository.record_outbound_message(
            transaction_id=transaction.transaction_id,
            body=text,
        )


def _phrase_present(phrase: str, normalized: str, words: set[str]) -> bool:
    needle = normalize_message(phrase)
    if not needle:
        return False
    if " " in needle:
        return needle in normalized
    return needle in words


def _format_amount(amount: float) -> str:
    if float(amount).is_integer():
        return str(int(amount))
    return f"{amount:.2f}"
