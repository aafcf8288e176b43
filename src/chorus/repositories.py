"""Persistence collaborators: authentication event store and personality directory.

Each collaborator is an ABC with two implementations: an in-memory one for
tests and development, and a SQLAlchemy Core one backed by the tables in
``chorus.database``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from sqlalchemy import delete, func, or_, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from chorus.auth import AuthAggregate, AuthEvent, parse_event, serialize_event
from chorus.database import auth_events, personalities, personality_aliases
from chorus.errors import InvalidStateError, NotFoundError
from chorus.logging import get_logger
from chorus.models import Personality, utcnow

log = get_logger("repositories")


def normalize_alias(alias: str) -> str:
    return " ".join(alias.lower().split())


# =============================================================================
# Authentication
# =============================================================================


class AuthenticationRepository(ABC):
    """Stores ``AuthAggregate`` event streams keyed by identity."""

    @abstractmethod
    async def save(self, aggregate: AuthAggregate) -> None:
        """Append the aggregate's uncommitted events and mark them committed.

        Raises:
            InvalidStateError: If the stored stream moved on since the
                aggregate was loaded.
        """
        ...

    @abstractmethod
    async def find_by_identity(self, identity: str) -> AuthAggregate | None:
        """Rebuild the aggregate for ``identity``, or ``None`` if it has no record."""
        ...

    @abstractmethod
    async def delete(self, identity: str) -> bool:
        """Remove the identity's stream. Returns ``True`` if it existed."""
        ...


def _first_sequence(aggregate: AuthAggregate, pending: list[AuthEvent]) -> int:
    return aggregate.version - len(pending) + 1


class InMemoryAuthenticationRepository(AuthenticationRepository):
    """Dict-based event store for development and testing."""

    def __init__(self) -> None:
        self._streams: dict[str, list[AuthEvent]] = {}

    async def save(self, aggregate: AuthAggregate) -> None:
        pending = aggregate.uncommitted_events()
        if not pending:
            return
        stream = self._streams.setdefault(aggregate.identity, [])
        if len(stream) + 1 != _first_sequence(aggregate, pending):
            raise InvalidStateError(f"Concurrent modification of {aggregate.identity}")
        stream.extend(pending)
        aggregate.mark_events_committed()

    async def find_by_identity(self, identity: str) -> AuthAggregate | None:
        stream = self._streams.get(identity)
        if not stream:
            return None
        return AuthAggregate.from_history(identity, stream)

    async def delete(self, identity: str) -> bool:
        return self._streams.pop(identity, None) is not None


class SqlAuthenticationRepository(AuthenticationRepository):
    """Event store on the ``auth_events`` table."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    async def save(self, aggregate: AuthAggregate) -> None:
        pending = aggregate.uncommitted_events()
        if not pending:
            return

        sequence = _first_sequence(aggregate, pending)
        rows = [
            {
                "id": event.event_id,
                "identity": aggregate.identity,
                "sequence": sequence + offset,
                "event_type": event.type,
                "payload": serialize_event(event),
                "occurred_at": event.occurred_at,
                "recorded_at": utcnow(),
            }
            for offset, event in enumerate(pending)
        ]

        try:
            with self.engine.begin() as conn:
                conn.execute(auth_events.insert(), rows)
        except IntegrityError as e:
            raise InvalidStateError(
                f"Concurrent modification of {aggregate.identity}"
            ) from e

        aggregate.mark_events_committed()
        log.debug(
            "auth_events_saved",
            identity=aggregate.identity,
            count=len(rows),
            version=aggregate.version,
        )

    async def find_by_identity(self, identity: str) -> AuthAggregate | None:
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(auth_events.c.payload)
                .where(auth_events.c.identity == identity)
                .order_by(auth_events.c.sequence)
            ).fetchall()

        if not rows:
            return None
        return AuthAggregate.from_history(identity, [parse_event(row.payload) for row in rows])

    async def delete(self, identity: str) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(delete(auth_events).where(auth_events.c.identity == identity))
        return result.rowcount > 0

    async def count_events(self, identity: str) -> int:
        with self.engine.connect() as conn:
            return conn.execute(
                select(func.count()).select_from(auth_events).where(
                    auth_events.c.identity == identity
                )
            ).scalar() or 0


# =============================================================================
# Personalities
# =============================================================================


class PersonalityDirectory(ABC):
    """Looks up personalities by canonical name or alias."""

    @abstractmethod
    async def get_by_name(self, name: str) -> Personality | None:
        """Find by canonical id or name (case-insensitive)."""
        ...

    @abstractmethod
    async def get_by_alias(self, identity: str | None, alias: str) -> Personality | None:
        """Find by alias. Aliases owned by ``identity`` win over global ones."""
        ...

    @abstractmethod
    async def register(self, personality: Personality) -> Personality:
        """Add or replace a personality, including its global aliases."""
        ...

    @abstractmethod
    async def add_alias(
        self, personality_id: str, alias: str, owner_id: str | None = None
    ) -> None:
        """Attach an alias to an existing personality.

        Raises:
            NotFoundError: If the personality does not exist.
        """
        ...

    @abstractmethod
    async def list_personalities(self) -> list[Personality]:
        ...


class InMemoryPersonalityDirectory(PersonalityDirectory):
    """Dict-based directory for development and testing."""

    def __init__(self, personalities: list[Personality] | None = None) -> None:
        self._personalities: dict[str, Personality] = {}
        self._aliases: dict[tuple[str, str | None], str] = {}
        for personality in personalities or []:
            self._store(personality)

    def _store(self, personality: Personality) -> None:
        key = personality.id.lower()
        # Global aliases are replaced wholesale; user aliases survive re-registration
        stale = [
            alias_key
            for alias_key, target in self._aliases.items()
            if target == key and alias_key[1] is None
        ]
        for alias_key in stale:
            del self._aliases[alias_key]

        self._personalities[key] = personality
        for alias in personality.aliases:
            self._aliases[(normalize_alias(alias), None)] = key

    async def get_by_name(self, name: str) -> Personality | None:
        key = name.lower()
        if key in self._personalities:
            return self._personalities[key]
        for personality in self._personalities.values():
            if personality.name.lower() == key:
                return personality
        return None

    async def get_by_alias(self, identity: str | None, alias: str) -> Personality | None:
        key = normalize_alias(alias)
        personality_id = None
        if identity is not None:
            personality_id = self._aliases.get((key, identity))
        if personality_id is None:
            personality_id = self._aliases.get((key, None))
        if personality_id is None:
            return None
        return self._personalities.get(personality_id)

    async def register(self, personality: Personality) -> Personality:
        self._store(personality)
        return personality

    async def add_alias(
        self, personality_id: str, alias: str, owner_id: str | None = None
    ) -> None:
        key = personality_id.lower()
        if key not in self._personalities:
            raise NotFoundError(f"Unknown personality: {personality_id}")
        self._aliases[(normalize_alias(alias), owner_id)] = key

    async def list_personalities(self) -> list[Personality]:
        return sorted(self._personalities.values(), key=lambda p: p.id)


class SqlPersonalityDirectory(PersonalityDirectory):
    """Directory on the ``personalities`` and ``personality_aliases`` tables."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def _load(self, conn, personality_id: str) -> Personality | None:
        row = conn.execute(
            select(personalities).where(personalities.c.id == personality_id)
        ).fetchone()
        if row is None:
            return None
        aliases = conn.execute(
            select(personality_aliases.c.alias).where(
                personality_aliases.c.personality_id == personality_id,
                personality_aliases.c.owner_id.is_(None),
            )
        ).scalars().all()
        return Personality(
            id=row.id,
            name=row.name,
            display_name=row.display_name,
            aliases=list(aliases),
            nsfw_capable=row.nsfw_capable,
        )

    async def get_by_name(self, name: str) -> Personality | None:
        key = name.lower()
        with self.engine.connect() as conn:
            personality_id = conn.execute(
                select(personalities.c.id)
                .where(
                    or_(
                        func.lower(personalities.c.id) == key,
                        func.lower(personalities.c.name) == key,
                    )
                )
                .order_by(personalities.c.created_at)
                .limit(1)
            ).scalar()
            if personality_id is None:
                return None
            return self._load(conn, personality_id)

    async def get_by_alias(self, identity: str | None, alias: str) -> Personality | None:
        key = normalize_alias(alias)
        with self.engine.connect() as conn:
            personality_id = None
            if identity is not None:
                personality_id = conn.execute(
                    select(personality_aliases.c.personality_id).where(
                        personality_aliases.c.alias == key,
                        personality_aliases.c.owner_id == identity,
                    )
                ).scalar()
            if personality_id is None:
                personality_id = conn.execute(
                    select(personality_aliases.c.personality_id).where(
                        personality_aliases.c.alias == key,
                        personality_aliases.c.owner_id.is_(None),
                    )
                ).scalar()
            if personality_id is None:
                return None
            return self._load(conn, personality_id)

    async def register(self, personality: Personality) -> Personality:
        now = utcnow()
        with self.engine.begin() as conn:
            values = {
                "name": personality.name,
                "display_name": personality.display_name,
                "nsfw_capable": personality.nsfw_capable,
            }
            existing = conn.execute(
                select(personalities.c.id).where(personalities.c.id == personality.id)
            ).scalar()
            if existing is None:
                conn.execute(
                    personalities.insert().values(id=personality.id, created_at=now, **values)
                )
            else:
                conn.execute(
                    personalities.update()
                    .where(personalities.c.id == personality.id)
                    .values(**values)
                )
            conn.execute(
                delete(personality_aliases).where(
                    personality_aliases.c.personality_id == personality.id,
                    personality_aliases.c.owner_id.is_(None),
                )
            )
            for alias in {normalize_alias(a) for a in personality.aliases}:
                self._replace_alias(conn, personality.id, alias, None, now)

        log.info("personality_registered", personality=personality.id)
        return personality

    async def add_alias(
        self, personality_id: str, alias: str, owner_id: str | None = None
    ) -> None:
        with self.engine.begin() as conn:
            exists = conn.execute(
                select(personalities.c.id).where(personalities.c.id == personality_id)
            ).scalar()
            if exists is None:
                raise NotFoundError(f"Unknown personality: {personality_id}")
            self._replace_alias(conn, personality_id, normalize_alias(alias), owner_id, utcnow())

        log.info("alias_added", personality=personality_id, alias=alias, owner_id=owner_id)

    def _replace_alias(self, conn, personality_id, alias, owner_id, now) -> None:
        # SQLite treats NULL owners as distinct in unique indexes
        owner_clause = (
            personality_aliases.c.owner_id.is_(None)
            if owner_id is None
            else personality_aliases.c.owner_id == owner_id
        )
        conn.execute(
            delete(personality_aliases).where(personality_aliases.c.alias == alias, owner_clause)
        )
        conn.execute(
            personality_aliases.insert().values(
                alias=alias,
                personality_id=personality_id,
                owner_id=owner_id,
                created_at=now,
            )
        )

    async def list_personalities(self) -> list[Personality]:
        with self.engine.connect() as conn:
            ids = conn.execute(
                select(personalities.c.id).order_by(personalities.c.id)
            ).scalars().all()
            return [p for p in (self._load(conn, pid) for pid in ids) if p is not None]
