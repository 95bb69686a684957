"""Shared test fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

import fakes
from p2p_relay.config import PipelineSettings
from p2p_relay.gateway.base import GatewayBundle
from p2p_relay.pipeline.coordinator import PipelineCoordinator
from p2p_relay.pipeline.repository import PipelineRepository
from p2p_relay.scheduler.models import TaskContext


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path: Path, monkeypatch) -> None:
    """Keep CLI defaults (db, snapshot, receipts) inside the test's tmp dir."""

    monkeypatch.setenv("P2P_RELAY_DB_PATH", str(tmp_path / "relay.db"))
    monkeypatch.setenv("P2P_RELAY_STATE_PATH", str(tmp_path / "state.json"))
    monkeypatch.setenv("P2P_RELAY_RECEIPTS_DIR", str(tmp_path / "receipts"))
    monkeypatch.setattr(fakes, "CURRENT_BUNDLE", None)


@pytest.fixture()
def repository(tmp_path: Path):
    repo = PipelineRepository(db_path=tmp_path / "pipeline.db")
    repo.init_schema()
    yield repo
    repo.close()


@pytest.fixture()
def payout_gateway() -> fakes.FakePayoutGateway:
    return fakes.FakePayoutGateway()


@pytest.fixture()
def marketplace() -> fakes.FakeMarketplace:
    return fakes.FakeMarketplace()


@pytest.fixture()
def mailbox() -> fakes.FakeMailbox:
    return fakes.FakeMailbox()


@pytest.fixture()
def extractor() -> fakes.FakeExtractor:
    return fakes.FakeExtractor()


@pytest.fixture()
def bundle(payout_gateway, marketplace, mailbox, extractor) -> GatewayBundle:
    return GatewayBundle(
        payouts=payout_gateway,
        marketplace=marketplace,
        mailbox=mailbox,
        extractor=extractor,
    )


@pytest.fixture()
def pipeline_settings(tmp_path: Path) -> PipelineSettings:
    return PipelineSettings(
        release_hold_seconds=0.0,
        receipts_dir=tmp_path / "receipts",
        default_exchange_rate=95.0,
        receipt_email="receipts@example.com",
    )


@pytest.fixture()
def coordinator(repository, bundle, pipeline_settings) -> PipelineCoordinator:
    return PipelineCoordinator(
        repository=repository,
        gateways=bundle,
        settings=pipeline_settings,
    )


@pytest.fixture()
def task_context() -> TaskContext:
    return fakes.make_context()

