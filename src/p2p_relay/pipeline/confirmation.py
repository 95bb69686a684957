"""Operator confirmation for mutating pipeline actions in manual mode."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

from p2p_relay.pipeline.models import MODE_SETTING, ConfirmationMode
from p2p_relay.pipeline.repository import PipelineRepository

logger = logging.getLogger(__name__)

Prompt = Callable[[str], bool]


class ConfirmationGate:
    """Asks the operator before each mutating action while mode is ``manual``.

    Prompts from concurrent stages are serialised. Without a prompt callable,
    manual mode declines everything, which leaves state unchanged so the
    candidate is offered again on the next tick.
    """

    def __init__(self, repository: PipelineRepository, prompt: Prompt | None = None) -> None:
        self._repository = repository
        self._prompt = prompt
        self._lock = threading.Lock()

    def mode(self) -> ConfirmationMode:
        raw = self._repository.get_setting(MODE_SETTING, ConfirmationMode.AUTO.value)
        try:
            return ConfirmationMode(raw)
        except ValueError:
            logger.warning("Unknown confirmation mode %r, treating as manual", raw)
            return ConfirmationMode.MANUAL

    def confirm(self, action: str) -> bool:
        if self.mode() is ConfirmationMode.AUTO:
            return True
        if self._prompt is None:
            logger.info("Manual mode without operator prompt, declined: %s", action)
            return False
        with self._lock:
            try:
                approved = bool(self._prompt(action))
            except (EOFError, KeyboardInterrupt):
                approved = False
        logger.info("Operator %s: %s", "approved" if approved else "declined", action)
        return approved
