"""Rolling-window admission control shared by all platform calls."""

from __future__ import annotations

import logging
import threading
import time
from collections import Counter, deque
from dataclasses import dataclass, field

from p2p_relay.gateway.base import RateLimitedError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RateLimiterStats:
    max_requests: int
    window_seconds: float
    in_window: int
    queued: int
    by_identifier: dict[str, int] = field(default_factory=dict)


class RateLimiter:
    """FIFO ticketed limiter allowing ``max_requests`` per rolling ``window_seconds``.

    Callers are admitted strictly in arrival order; a caller whose ticket is
    not at the head of the queue waits even when the window has headroom.
    """

    def __init__(self, *, max_requests: int = 240, window_seconds: float = 60.0) -> None:
        if max_requests <= 0:
            raise ValueError("max_requests must be a positive integer")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._cond = threading.Condition()
        self._admitted: deque[tuple[float, str]] = deque()
        self._next_ticket = 0
        self._serving = 0
        self._abandoned: set[int] = set()

    def acquire(self, identifier: str = "default", timeout: float | None = None) -> None:
        """Block until this call may proceed.

        Raises ``RateLimitedError`` if ``timeout`` elapses first.
        """

        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            ticket = self._next_ticket
            self._next_ticket += 1
            while True:
                now = time.monotonic()
                self._evict(now)
                at_head = ticket == self._serving
                if at_head and len(self._admitted) < self.max_requests:
                    self._admitted.append((now, identifier))
                    self._advance()
                    return

                wait_for: float | None = None
                if at_head:
                    oldest_at, _ = self._admitted[0]
                    wait_for = max(0.0, oldest_at + self.window_seconds - now)
                    logger.debug(
                        "Rate limit reached (%d/%.0fs), %s waits %.2fs",
                        self.max_requests,
                        self.window_seconds,
                        identifier,
                        wait_for,
                    )
                if deadline is not None:
                    remaining = deadline - now
                    if remaining <= 0:
                        self._abandon(ticket)
                        raise RateLimitedError(
                            f"Timed out waiting for rate limiter slot ({identifier})",
                            status_code=None,
                            retry_after_seconds=wait_for,
                        )
                    wait_for = remaining if wait_for is None else min(wait_for, remaining)
                self._cond.wait(timeout=wait_for)

    def stats(self) -> RateLimiterStats:
        with self._cond:
            self._evict(time.monotonic())
            counts = Counter(identifier for _, identifier in self._admitted)
            return RateLimiterStats(
                max_requests=self.max_requests,
                window_seconds=self.window_seconds,
                in_window=len(self._admitted),
                queued=self._next_ticket - self._serving - len(self._abandoned),
                by_identifier=dict(counts),
            )

    def _evict(self, now: float) -> None:
        horizon = now - self.window_seconds
        while self._admitted and self._admitted[0][0] <= horizon:
            self._admitted.popleft()

    def _advance(self) -> None:
        self._serving += 1
        while self._serving in self._abandoned:
            self._abandoned.discard(self._serving)
            self._serving += 1
        self._cond.notify_all()

    def _abandon(self, ticket: int) -> None:
        if ticket == self._serving:
            self._advance()
        else:
            self._abandoned.add(ticket)
            self._cond.notify_all()
