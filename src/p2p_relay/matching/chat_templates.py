"""Keyword-scored selection of canned chat replies."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass


@dataclass(slots=True, frozen=True)
class ChatTemplate:
    """Canned reply offered when enough of its keywords appear in a message."""

    template_id: int | None
    name: str
    message: str
    keywords: tuple[str, ...]
    priority: int = 0


@dataclass(slots=True, frozen=True)
class TemplateMatch:
    template: ChatTemplate
    score: int
    matched_keywords: tuple[str, ...]


def normalize_message(text: str) -> str:
    """Lower-case and collapse whitespace runs to single spaces."""

    return " ".join(text.lower().split())


def match_template(message: str, templates: Iterable[ChatTemplate]) -> TemplateMatch | None:
    """Return the best-scoring template for ``message``, or ``None``.

    Score is the number of distinct template keywords found as substrings of
    the normalised message. Templates scoring zero are discarded; ties on score
    are broken by higher priority, then by input order.
    """

    normalized = normalize_message(message)
    if not normalized:
        return None

    scored: list[TemplateMatch] = []
    for template in templates:
        seen: set[str] = set()
        matched: list[str] = []
        for keyword in template.keywords:
            needle = normalize_message(keyword)
            if not needle or needle in seen:
                continue
            seen.add(needle)
            if needle in normalized:
                matched.append(keyword)
        if matched:
            scored.append(
                TemplateMatch(
                    template=template,
                    score=len(matched),
                    matched_keywords=tuple(matched),
                ),
            )

    if not scored:
        return None
    # sorted() is stable, so equal (score, priority) keeps input order
    scored = sorted(scored, key=lambda item: (item.score, item.template.priority), reverse=True)
    return scored[0]
