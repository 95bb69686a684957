from __future__ import annotations

from pathlib import Path

import allure
import pytest

from p2p_relay.config import (
    PipelineSettings,
    RateLimitSettings,
    SchedulerSettings,
    Settings,
)

pytestmark = [
    allure.epic("Runtime"),
    allure.feature("Configuration"),
]


def test_from_env_reads_scheduler_and_pipeline_overrides(monkeypatch) -> None:
    monkeypatch.setenv("P2P_RELAY_MAX_CONCURRENT_TASKS", "2")
    monkeypatch.setenv("P2P_RELAY_CHECKPOINT_INTERVAL_SECONDS", "7.5")
    monkeypatch.setenv("P2P_RELAY_TASK_TIMEOUT_SECONDS", "120")
    monkeypatch.setenv("P2P_RELAY_ACCEPTOR_RUN_ON_START", "off")
    monkeypatch.setenv("P2P_RELAY_CLAIMABLE_STATUS_CODES", "4, 5,,6")
    monkeypatch.setenv("P2P_RELAY_PAYMENT_METHOD", "CARD")
    monkeypatch.setenv("P2P_RELAY_RATE_LIMIT_MAX_REQUESTS", "10")

    settings = Settings.from_env()

    assert settings.scheduler.max_concurrent_tasks == 2
    assert settings.scheduler.checkpoint_interval_seconds == 7.5
    assert settings.scheduler.task_timeout_seconds == 120.0
    assert settings.pipeline.acceptor_run_on_start is False
    assert settings.pipeline.claimable_status_codes == (4, 5, 6)
    assert settings.pipeline.payment_method == "CARD"
    assert settings.rate_limit.max_requests == 10


def test_from_env_prefers_explicit_db_path(tmp_path: Path) -> None:
    settings = Settings.from_env(db_path=tmp_path / "explicit.db")

    assert settings.db_path == tmp_path / "explicit.db"


def test_empty_state_path_disables_persistence(monkeypatch) -> None:
    monkeypatch.setenv("P2P_RELAY_STATE_PATH", "  ")

    assert Settings.from_env().scheduler.state_path is None


def test_invalid_boolean_is_rejected(monkeypatch) -> None:
    monkeypatch.setenv("P2P_RELAY_ACCEPTOR_RUN_ON_START", "maybe")

    with pytest.raises(ValueError, match="P2P_RELAY_ACCEPTOR_RUN_ON_START"):
        Settings.from_env()


def test_invalid_status_code_list_is_rejected(monkeypatch) -> None:
    monkeypatch.setenv("P2P_RELAY_CLAIMABLE_STATUS_CODES", "4,new")

    with pytest.raises(ValueError, match="Expected integers"):
        Settings.from_env()


def test_defaults_pass_validation() -> None:
    Settings().validate()


@pytest.mark.parametrize(
    ("settings", "message"),
    [
        (Settings(scheduler=SchedulerSettings(max_concurrent_tasks=0)), "MAX_CONCURRENT_TASKS"),
        (Settings(scheduler=SchedulerSettings(tick_seconds=0)), "TICK_SECONDS"),
        (
            Settings(scheduler=SchedulerSettings(task_timeout_seconds=0)),
            "TASK_TIMEOUT_SECONDS",
        ),
        (Settings(pipeline=PipelineSettings(chat_interval_seconds=0)), "CHAT_INTERVAL_SECONDS"),
        (Settings(pipeline=PipelineSettings(claimable_status_codes=())), "CLAIMABLE_STATUS_CODES"),
        (Settings(pipeline=PipelineSettings(max_wrong_answers=0)), "MAX_WRONG_ANSWERS"),
        (Settings(pipeline=PipelineSettings(amount_tolerance=-1)), "AMOUNT_TOLERANCE"),
        (Settings(rate_limit=RateLimitSettings(window_seconds=0)), "WINDOW_SECONDS"),
    ],
)
def test_validate_rejects_out_of_range_values(settings: Settings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        settings.validate()
