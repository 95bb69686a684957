"""Pure matchers used by the chat and receipt pipeline stages."""

from p2p_relay.matching.chat_templates import ChatTemplate, TemplateMatch, match_template
from p2p_relay.matching.receipts import PaymentExpectation, ReceiptCandidate, match_receipt

__all__ = [
    "ChatTemplate",
    "PaymentExpectation",
    "ReceiptCandidate",
    "TemplateMatch",
    "match_receipt",
    "match_template",
]
