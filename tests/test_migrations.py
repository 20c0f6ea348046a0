"""
Tests for the initial Alembic revision.

The revision is run against a throwaway SQLite file and compared with the
ORM metadata the application creates tables from.
"""
import importlib.util
from pathlib import Path
from types import ModuleType
from typing import Any, Iterator

import pytest
from alembic.migration import MigrationContext
from alembic.operations import Operations
from sqlalchemy import create_engine, inspect
from sqlalchemy.engine import Engine

from commerce_core.database.models import Base

ROOT = Path(__file__).resolve().parents[1]
VERSIONS = ROOT / "commerce_core" / "database" / "migrations" / "versions"


def _load_revision(name: str) -> ModuleType:
    spec = importlib.util.spec_from_file_location(f"revision_{name}", VERSIONS / f"{name}.py")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def _run(engine: Engine, step: Any) -> None:
    with engine.begin() as conn:
        context = MigrationContext.configure(conn)
        with Operations.context(context):
            step()


@pytest.fixture
def engine(tmp_path: Path) -> Iterator[Engine]:
    sync_engine = create_engine(f"sqlite:///{tmp_path / 'migrations.db'}")
    yield sync_engine
    sync_engine.dispose()


class TestInitialRevision:
    """Test suite for 001_initial_schema."""

    @pytest.mark.unit
    def test_revision_identifiers(self) -> None:
        revision = _load_revision("001_initial_schema")

        assert revision.revision == "001"
        assert revision.down_revision is None

    @pytest.mark.integration
    def test_upgrade_matches_models(self, engine: Engine) -> None:
        """Test every model table and column is created by the migration."""
        revision = _load_revision("001_initial_schema")

        _run(engine, revision.upgrade)

        inspector = inspect(engine)
        assert set(inspector.get_table_names()) == set(Base.metadata.tables)
        for name, table in Base.metadata.tables.items():
            migrated = {column["name"] for column in inspector.get_columns(name)}
            assert migrated == set(table.columns.keys()), name

    @pytest.mark.integration
    def test_unique_keys_survive_migration(self, engine: Engine) -> None:
        revision = _load_revision("001_initial_schema")

        _run(engine, revision.upgrade)

        inspector = inspect(engine)
        unique_columns = {
            tuple(constraint["column_names"])
            for constraint in inspector.get_unique_constraints("orders")
        } | {
            tuple(index["column_names"])
            for index in inspector.get_indexes("orders")
            if index["unique"]
        }
        assert ("order_number",) in unique_columns

    @pytest.mark.integration
    def test_downgrade_drops_everything(self, engine: Engine) -> None:
        revision = _load_revision("001_initial_schema")
        _run(engine, revision.upgrade)

        _run(engine, revision.downgrade)

        assert inspect(engine).get_table_names() == []
