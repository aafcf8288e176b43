"""Forward-only migration runner for the Chorus schema."""

from __future__ import annotations

import importlib
from pathlib import Path
from types import ModuleType

from sqlalchemy import func, inspect, select
from sqlalchemy.engine import Engine

from chorus.database import schema_version
from chorus.logging import get_logger
from chorus.models import utcnow

log = get_logger("migrations")

_MIGRATION_GLOB = "[0-9][0-9][0-9]_*.py"


def get_migrations() -> list[tuple[int, ModuleType]]:
    """Import every ``NNN_*.py`` module beside this one, ordered by VERSION."""
    found: list[tuple[int, ModuleType]] = []
    for path in sorted(Path(__file__).parent.glob(_MIGRATION_GLOB)):
        module = importlib.import_module(f"chorus.migrations.{path.stem}")
        version = getattr(module, "VERSION", None)
        if version is None:
            log.warning("migration_missing_version", file=path.stem)
            continue
        found.append((version, module))
    return sorted(found, key=lambda item: item[0])


def get_current_version(engine: Engine) -> int:
    """Highest applied version, or 0 on a fresh database."""
    if "_schema_version" not in inspect(engine).get_table_names():
        return 0
    with engine.connect() as conn:
        return conn.execute(select(func.max(schema_version.c.version))).scalar() or 0


def get_pending_migrations(engine: Engine) -> list[tuple[int, ModuleType]]:
    current = get_current_version(engine)
    return [(v, m) for v, m in get_migrations() if v > current]


def _record(engine: Engine, version: int, description: str) -> None:
    schema_version.create(engine, checkfirst=True)
    with engine.begin() as conn:
        conn.execute(
            schema_version.insert().values(
                version=version, applied_at=utcnow(), description=description
            )
        )


def migrate(engine: Engine, target_version: int | None = None) -> int:
    """Apply pending migrations up to ``target_version`` (all when None).

    A migration whose ``check`` reports it as already present is recorded
    without running ``upgrade``, so databases created by ``create_tables``
    adopt version tracking cleanly.

    Returns:
        The schema version after migrating.
    """
    applied = 0
    for version, module in get_pending_migrations(engine):
        if target_version is not None and version > target_version:
            break

        description = getattr(module, "DESCRIPTION", "No description")
        check = getattr(module, "check", None)

        if check is not None and check(engine):
            log.info("migration_already_present", version=version)
        else:
            log.info("applying_migration", version=version, description=description)
            try:
                module.upgrade(engine)
            except Exception as e:
                log.error("migration_failed", version=version, error=str(e))
                raise

        _record(engine, version, description)
        applied += 1

    current = get_current_version(engine)
    log.info("migrations_complete", applied=applied, version=current)
    return current
