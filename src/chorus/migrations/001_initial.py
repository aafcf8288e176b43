"""Initial schema - authorization event store and personality directory."""

from sqlalchemy import inspect

from chorus.database import create_tables

VERSION = 1
DESCRIPTION = "Auth event stream, personalities and aliases"


def upgrade(engine):
    """Create all tables defined in the schema."""
    create_tables(engine)


def check(engine) -> bool:
    """Return True if the core tables exist."""
    table_names = set(inspect(engine).get_table_names())
    return {"auth_events", "personalities", "personality_aliases"}.issubset(table_names)
