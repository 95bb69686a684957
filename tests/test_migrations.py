from pathlib import Path

import allure
from sqlalchemy import inspect

from p2p_relay.pipeline.repository import PipelineRepository

pytestmark = [
    allure.epic("Storage"),
    allure.feature("Schema Migrations"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = PipelineRepository(tmp_path / "migrations.db")
    assert repository.schema_revision() is None

    repository.init_schema()

    assert repository.schema_revision() == "20261019_0001"

    tables = set(inspect(repository.engine).get_table_names())
    assert {
        "payouts",
        "advertisements",
        "transactions",
        "chat_messages",
        "chat_templates",
        "template_usages",
        "blacklisted_wallets",
        "processed_documents",
        "settings",
    } <= tables
    repository.close()


def test_init_schema_is_idempotent(tmp_path: Path) -> None:
    db_path = tmp_path / "twice.db"
    first = PipelineRepository(db_path)
    first.init_schema()
    first.set_setting("mode", "manual")
    first.close()

    second = PipelineRepository(db_path)
    second.init_schema()

    assert second.get_setting("mode") == "manual"
    second.close()
