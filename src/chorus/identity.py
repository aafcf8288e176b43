"""Command API over authentication aggregates.

Each command loads the identity's aggregate, applies one operation, and saves
the resulting events. Domain failures come back as a failed ``CommandResult``
rather than an exception so CLI and chat commands can report them directly.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta

from pydantic import BaseModel, ConfigDict

from chorus.auth import AuthAggregate
from chorus.errors import ChorusError, InvalidStateError, NotAuthenticatedError
from chorus.logging import get_logger
from chorus.models import Token, utcnow
from chorus.repositories import AuthenticationRepository

log = get_logger("identity")


class CommandResult(BaseModel):
    """Outcome of one command: success with the aggregate, or an error message."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    ok: bool
    error: str | None = None
    aggregate: AuthAggregate | None = None

    @classmethod
    def success(cls, aggregate: AuthAggregate | None = None) -> CommandResult:
        return cls(ok=True, aggregate=aggregate)

    @classmethod
    def failure(cls, error: str, aggregate: AuthAggregate | None = None) -> CommandResult:
        return cls(ok=False, error=error, aggregate=aggregate)


class AuthenticationService:
    """Authenticate, refresh, verify and blacklist identities.

    Attributes:
        repository: Where aggregates are loaded from and saved to.
        refresh_threshold: Tokens closer than this to expiry report
            ``needs_refresh`` in ``status``.
        clock: Source of the current time.
    """

    def __init__(
        self,
        repository: AuthenticationRepository,
        refresh_threshold: timedelta = timedelta(hours=1),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repository = repository
        self.refresh_threshold = refresh_threshold
        self.clock = clock

    async def authenticate(
        self, identity: str, token_value: str, expires_at: datetime
    ) -> CommandResult:
        """Create the identity's record with a first token."""
        now = self.clock()
        try:
            if await self.repository.find_by_identity(identity) is not None:
                raise InvalidStateError(f"{identity} is already authenticated")
            token = Token.create(token_value, expires_at, now=now)
        except (ChorusError, ValueError) as e:
            return self._failed("authenticate", identity, e)

        aggregate = AuthAggregate.authenticate(identity, token, now=now)
        await self.repository.save(aggregate)
        log.info("user_authenticated", identity=identity, expires_at=expires_at.isoformat())
        return CommandResult.success(aggregate)

    async def refresh_token(
        self, identity: str, token_value: str, expires_at: datetime
    ) -> CommandResult:
        now = self.clock()
        try:
            token = Token.create(token_value, expires_at, now=now)
        except ValueError as e:
            return self._failed("refresh_token", identity, e)
        return await self._run(
            "refresh_token", identity, lambda agg: agg.refresh_token(token, now=now)
        )

    async def expire_token(self, identity: str) -> CommandResult:
        now = self.clock()
        return await self._run("expire_token", identity, lambda agg: agg.expire_token(now=now))

    async def verify_nsfw(self, identity: str) -> CommandResult:
        now = self.clock()
        return await self._run("verify_nsfw", identity, lambda agg: agg.verify_nsfw(at=now))

    async def clear_nsfw_verification(
        self, identity: str, reason: str | None = None
    ) -> CommandResult:
        now = self.clock()
        return await self._run(
            "clear_nsfw_verification",
            identity,
            lambda agg: agg.clear_nsfw_verification(reason, now=now),
        )

    async def blacklist(self, identity: str, reason: str) -> CommandResult:
        now = self.clock()
        return await self._run("blacklist", identity, lambda agg: agg.blacklist(reason, now=now))

    async def unblacklist(self, identity: str) -> CommandResult:
        now = self.clock()
        return await self._run("unblacklist", identity, lambda agg: agg.unblacklist(now=now))

    async def revoke(self, identity: str) -> CommandResult:
        """Delete the identity's record entirely."""
        if not await self.repository.delete(identity):
            return self._failed("revoke", identity, NotAuthenticatedError(f"No record for {identity}"))
        log.info("authentication_revoked", identity=identity)
        return CommandResult.success()

    async def status(self, identity: str) -> dict:
        """Snapshot for display, including derived token facts."""
        aggregate = await self.repository.find_by_identity(identity)
        if aggregate is None:
            return {"identity": identity, "authenticated": False, "exists": False}

        now = self.clock()
        snapshot = aggregate.to_dict()
        snapshot["exists"] = True
        snapshot["authenticated"] = aggregate.is_authenticated(now)
        token = aggregate.token
        if token is not None:
            snapshot["expires_in_seconds"] = int(token.time_until_expiration(now).total_seconds())
            snapshot["needs_refresh"] = token.should_refresh(self.refresh_threshold, now)
        return snapshot

    async def expire_if_lapsed(self, identity: str) -> bool:
        """Record expiry for a token whose lifetime has passed.

        Returns:
            True if an expiry event was written.
        """
        aggregate = await self.repository.find_by_identity(identity)
        if aggregate is None or aggregate.token is None:
            return False
        now = self.clock()
        if not aggregate.token.is_expired(now):
            return False
        aggregate.expire_token(now=now)
        await self.repository.save(aggregate)
        log.info("token_expired", identity=identity)
        return True

    async def _run(
        self,
        command: str,
        identity: str,
        operation: Callable[[AuthAggregate], None],
    ) -> CommandResult:
        aggregate = await self.repository.find_by_identity(identity)
        if aggregate is None:
            return self._failed(
                command, identity, NotAuthenticatedError(f"{identity} has never authenticated")
            )

        try:
            operation(aggregate)
        except ChorusError as e:
            return self._failed(command, identity, e, aggregate)

        changed = bool(aggregate.uncommitted_events())
        await self.repository.save(aggregate)
        if changed:
            log.info("auth_command_applied", command=command, identity=identity, version=aggregate.version)
        return CommandResult.success(aggregate)

    def _failed(
        self,
        command: str,
        identity: str,
        error: Exception,
        aggregate: AuthAggregate | None = None,
    ) -> CommandResult:
        log.warning(
            "auth_command_failed",
            command=command,
            identity=identity,
            error_type=type(error).__name__,
            error=str(error),
        )
        return CommandResult.failure(str(error), aggregate)
