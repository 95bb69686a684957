"""Runtime configuration for the scheduler and transaction pipeline."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(slots=True)
class SchedulerSettings:
    """Scheduling engine settings."""

    state_path: Path | None = Path(".p2p_relay_state.json")
    max_concurrent_tasks: int = 5
    checkpoint_interval_seconds: float = 30.0
    shutdown_grace_seconds: float = 5.0
    tick_seconds: float = 0.05
    task_timeout_seconds: float = 60.0


@dataclass(slots=True)
class PipelineSettings:
    """Transaction pipeline settings."""

    acceptor_interval_seconds: float = 300.0
    acceptor_run_on_start: bool = True
    ad_creator_interval_seconds: float = 10.0
    chat_interval_seconds: float = 5.0
    receipt_interval_seconds: float = 10.0
    releaser_interval_seconds: float = 10.0
    claimable_status_codes: tuple[int, ...] = (4,)
    release_hold_seconds: float = 120.0
    receipt_lookback_minutes: int = 30
    amount_tolerance: float = 10.0
    max_wrong_answers: int = 3
    payment_method: str = "SBP"
    receipt_email: str = ""
    receipts_dir: Path = Path("data/receipts")
    working_balance: float = 0.0
    default_exchange_rate: float = 0.0
    rate_refresh_cron: str = "*/5 * * * *"


@dataclass(slots=True)
class RateLimitSettings:
    """Admission control for outbound platform calls."""

    max_requests: int = 240
    window_seconds: float = 60.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".p2p_relay.db")
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    pipeline: PipelineSettings = field(default_factory=PipelineSettings)
    rate_limit: RateLimitSettings = field(default_factory=RateLimitSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        state_path_raw = os.getenv("P2P_RELAY_STATE_PATH", ".p2p_relay_state.json").strip()
        return cls(
            db_path=db_path or Path(os.getenv("P2P_RELAY_DB_PATH", ".p2p_relay.db")),
            scheduler=SchedulerSettings(
                state_path=Path(state_path_raw) if state_path_raw else None,
                max_concurrent_tasks=int(os.getenv("P2P_RELAY_MAX_CONCURRENT_TASKS", "5")),
                checkpoint_interval_seconds=float(
                    os.getenv("P2P_RELAY_CHECKPOINT_INTERVAL_SECONDS", "30"),
                ),
                shutdown_grace_seconds=float(
                    os.getenv("P2P_RELAY_SHUTDOWN_GRACE_SECONDS", "5"),
                ),
                tick_seconds=float(os.getenv("P2P_RELAY_TICK_SECONDS", "0.05")),
                task_timeout_seconds=float(
                    os.getenv("P2P_RELAY_TASK_TIMEOUT_SECONDS", "60"),
                ),
            ),
            pipeline=PipelineSettings(
                acceptor_interval_seconds=float(
                    os.getenv("P2P_RELAY_ACCEPTOR_INTERVAL_SECONDS", "300"),
                ),
                acceptor_run_on_start=_env_bool(
                    "P2P_RELAY_ACCEPTOR_RUN_ON_START",
                    default=True,
                ),
                ad_creator_interval_seconds=float(
                    os.getenv("P2P_RELAY_AD_CREATOR_INTERVAL_SECONDS", "10"),
                ),
                chat_interval_seconds=float(os.getenv("P2P_RELAY_CHAT_INTERVAL_SECONDS", "5")),
                receipt_interval_seconds=float(
                    os.getenv("P2P_RELAY_RECEIPT_INTERVAL_SECONDS", "10"),
                ),
                releaser_interval_seconds=float(
                    os.getenv("P2P_RELAY_RELEASER_INTERVAL_SECONDS", "10"),
                ),
                claimable_status_codes=_parse_int_tuple(
                    "P2P_RELAY_CLAIMABLE_STATUS_CODES",
                    default=(4,),
                ),
                release_hold_seconds=float(os.getenv("P2P_RELAY_RELEASE_HOLD_SECONDS", "120")),
                receipt_lookback_minutes=int(
                    os.getenv("P2P_RELAY_RECEIPT_LOOKBACK_MINUTES", "30"),
                ),
                amount_tolerance=float(os.getenv("P2P_RELAY_AMOUNT_TOLERANCE", "10")),
                max_wrong_answers=int(os.getenv("P2P_RELAY_MAX_WRONG_ANSWERS", "3")),
                payment_method=os.getenv("P2P_RELAY_PAYMENT_METHOD", "SBP"),
                receipt_email=os.getenv("P2P_RELAY_RECEIPT_EMAIL", ""),
                receipts_dir=Path(os.getenv("P2P_RELAY_RECEIPTS_DIR", "data/receipts")),
                working_balance=float(os.getenv("P2P_RELAY_WORKING_BALANCE", "0")),
                default_exchange_rate=float(os.getenv("P2P_RELAY_DEFAULT_EXCHANGE_RATE", "0")),
                rate_refresh_cron=os.getenv("P2P_RELAY_RATE_REFRESH_CRON", "*/5 * * * *"),
            ),
            rate_limit=RateLimitSettings(
                max_requests=int(os.getenv("P2P_RELAY_RATE_LIMIT_MAX_REQUESTS", "240")),
                window_seconds=float(os.getenv("P2P_RELAY_RATE_LIMIT_WINDOW_SECONDS", "60")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error if a setting is out of range."""

        if self.scheduler.max_concurrent_tasks <= 0:
            raise ValueError("P2P_RELAY_MAX_CONCURRENT_TASKS must be a positive integer.")
        if self.scheduler.checkpoint_interval_seconds <= 0:
            raise ValueError("P2P_RELAY_CHECKPOINT_INTERVAL_SECONDS must be > 0.")
        if self.scheduler.shutdown_grace_seconds < 0:
            raise ValueError("P2P_RELAY_SHUTDOWN_GRACE_SECONDS must be >= 0.")
        if self.scheduler.tick_seconds <= 0:
            raise ValueError("P2P_RELAY_TICK_SECONDS must be > 0.")
        if self.scheduler.task_timeout_seconds <= 0:
            raise ValueError("P2P_RELAY_TASK_TIMEOUT_SECONDS must be > 0.")

        intervals = {
            "P2P_RELAY_ACCEPTOR_INTERVAL_SECONDS": self.pipeline.acceptor_interval_seconds,
            "P2P_RELAY_AD_CREATOR_INTERVAL_SECONDS": self.pipeline.ad_creator_interval_seconds,
            "P2P_RELAY_CHAT_INTERVAL_SECONDS": self.pipeline.chat_interval_seconds,
            "P2P_RELAY_RECEIPT_INTERVAL_SECONDS": self.pipeline.receipt_interval_seconds,
            "P2P_RELAY_RELEASER_INTERVAL_SECONDS": self.pipeline.releaser_interval_seconds,
        }
        for name, value in intervals.items():
            if value <= 0:
                raise ValueError(f"{name} must be > 0.")
        if not self.pipeline.claimable_status_codes:
            raise ValueError("P2P_RELAY_CLAIMABLE_STATUS_CODES must list at least one code.")
        if self.pipeline.release_hold_seconds < 0:
            raise ValueError("P2P_RELAY_RELEASE_HOLD_SECONDS must be >= 0.")
        if self.pipeline.receipt_lookback_minutes <= 0:
            raise ValueError("P2P_RELAY_RECEIPT_LOOKBACK_MINUTES must be > 0.")
        if self.pipeline.amount_tolerance < 0:
            raise ValueError("P2P_RELAY_AMOUNT_TOLERANCE must be >= 0.")
        if self.pipeline.max_wrong_answers <= 0:
            raise ValueError("P2P_RELAY_MAX_WRONG_ANSWERS must be a positive integer.")
        if self.rate_limit.max_requests <= 0:
            raise ValueError("P2P_RELAY_RATE_LIMIT_MAX_REQUESTS must be a positive integer.")
        if self.rate_limit.window_seconds <= 0:
            raise ValueError("P2P_RELAY_RATE_LIMIT_WINDOW_SECONDS must be > 0.")


def _parse_int_tuple(name: str, default: tuple[int, ...]) -> tuple[int, ...]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default

    values: list[int] = []
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        try:
            values.append(int(token))
        except ValueError as error:
            raise ValueError(f"Invalid {name} entry: {token!r}. Expected integers.") from error
    return tuple(values)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
