"""Database schema and connection management for Chorus.

Uses SQLAlchemy Core (not ORM) for explicit SQL control. Authorization state
is stored as an append-only event stream per identity; aggregates are rebuilt
by replaying it.
"""

from datetime import datetime
from pathlib import Path

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    create_engine,
    text,
)
from sqlalchemy.engine import Engine

from chorus.config import Config
from chorus.models import generate_id

# Shared metadata for all tables
metadata = MetaData()


# =============================================================================
# Authorization
# =============================================================================

auth_events = Table(
    "auth_events",
    metadata,
    Column("id", String, primary_key=True),  # ULID, same as event_id
    Column("identity", String, nullable=False),  # Discord user id
    Column("sequence", Integer, nullable=False),  # 1-based position in the stream
    Column("event_type", String, nullable=False),
    Column("payload", JSON, nullable=False),
    Column("occurred_at", DateTime, nullable=False),
    Column("recorded_at", DateTime, nullable=False, default=datetime.utcnow),
    Index("ix_auth_events_identity_sequence", "identity", "sequence", unique=True),
)


# =============================================================================
# Personalities
# =============================================================================

personalities = Table(
    "personalities",
    metadata,
    Column("id", String, primary_key=True),  # Canonical full name
    Column("name", String, nullable=False),
    Column("display_name", String, nullable=True),
    Column("nsfw_capable", Boolean, nullable=False, default=True),
    Column("created_at", DateTime, nullable=False, default=datetime.utcnow),
    Index("ix_personalities_name", "name"),
)

personality_aliases = Table(
    "personality_aliases",
    metadata,
    Column("alias", String, nullable=False),  # Lowercased
    Column("personality_id", String, ForeignKey("personalities.id"), nullable=False),
    Column("owner_id", String, nullable=True),  # NULL for global aliases
    Column("created_at", DateTime, nullable=False, default=datetime.utcnow),
    Index("ix_personality_aliases_alias_owner", "alias", "owner_id", unique=True),
)


# =============================================================================
# Schema Version (for migrations)
# =============================================================================

schema_version = Table(
    "_schema_version",
    metadata,
    Column("version", Integer, primary_key=True),
    Column("applied_at", DateTime, nullable=False),
    Column("description", String, nullable=True),
)


# =============================================================================
# Helper Functions
# =============================================================================

__all__ = [
    "auth_events",
    "create_tables",
    "generate_id",
    "get_engine",
    "metadata",
    "personalities",
    "personality_aliases",
    "schema_version",
]


def get_engine(config: Config) -> Engine:
    """Create SQLAlchemy engine from config.

    Args:
        config: Application configuration.

    Returns:
        SQLAlchemy Engine instance.
    """
    db_path: Path = config.database_path

    # Ensure data directory exists
    db_path.parent.mkdir(parents=True, exist_ok=True)

    engine = create_engine(
        f"sqlite:///{db_path}",
        echo=config.log_level == "DEBUG",
    )

    # Enable WAL mode for better concurrency
    with engine.connect() as conn:
        conn.execute(text("PRAGMA journal_mode=WAL"))
        conn.execute(text("PRAGMA foreign_keys=ON"))
        conn.commit()

    return engine


def create_tables(engine: Engine) -> None:
    """Create all tables in the database.

    Args:
        engine: SQLAlchemy Engine instance.
    """
    metadata.create_all(engine)
