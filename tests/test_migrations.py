"""Tests for the migration system."""

from pathlib import Path

import pytest
from sqlalchemy import inspect, select

from chorus.config import Config
from chorus.database import create_tables, get_engine, schema_version
from chorus.migrations import get_current_version, get_migrations, get_pending_migrations, migrate


@pytest.fixture
def test_config(tmp_path: Path) -> Config:
    """Create a test configuration with temp database."""
    return Config(data_dir=tmp_path)


@pytest.fixture
def engine(test_config: Config):
    """Create a test database engine (no tables yet)."""
    engine = get_engine(test_config)
    yield engine
    engine.dispose()


class TestDiscovery:
    def test_migrations_ordered_and_numbered(self) -> None:
        migrations = get_migrations()
        versions = [version for version, _ in migrations]
        assert versions == sorted(versions)
        assert versions[0] == 1
        for _, module in migrations:
            assert hasattr(module, "upgrade")
            assert hasattr(module, "DESCRIPTION")


class TestMigrate:
    """Tests for applying migrations."""

    def test_fresh_database_is_version_zero(self, engine) -> None:
        assert get_current_version(engine) == 0
        assert len(get_pending_migrations(engine)) == len(get_migrations())

    def test_migrate_creates_tables(self, engine) -> None:
        version = migrate(engine)

        assert version == get_migrations()[-1][0]
        tables = set(inspect(engine).get_table_names())
        assert {"auth_events", "personalities", "personality_aliases", "_schema_version"} <= tables
        assert get_pending_migrations(engine) == []

    def test_migrate_is_idempotent(self, engine) -> None:
        first = migrate(engine)
        second = migrate(engine)
        assert first == second
        with engine.connect() as conn:
            rows = conn.execute(select(schema_version.c.version)).fetchall()
        assert len(rows) == len(get_migrations())

    def test_target_version_zero_applies_nothing(self, engine) -> None:
        assert migrate(engine, target_version=0) == 0
        assert "auth_events" not in inspect(engine).get_table_names()

    def test_adopts_existing_schema(self, engine) -> None:
        """Databases created directly from metadata are recorded, not re-created."""
        create_tables(engine)
        assert get_current_version(engine) == 0

        version = migrate(engine)

        assert version == 1
        with engine.connect() as conn:
            description = conn.execute(
                select(schema_version.c.description).where(schema_version.c.version == 1)
            ).scalar()
        assert description == "Auth event stream, personalities and aliases"
