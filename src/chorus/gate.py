"""Authorization gate for personality interactions."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict

from chorus.auth import AuthAggregate, can_access_nsfw
from chorus.logging import get_logger
from chorus.models import AuthContext, NsfwStatus, Personality

if TYPE_CHECKING:
    from chorus.repositories import AuthenticationRepository

log = get_logger("gate")


class DenyReason(str, Enum):
    """Why an interaction was refused."""

    NOT_AUTHENTICATED = "not_authenticated"
    BLACKLISTED = "blacklisted"
    NSFW_NOT_PERMITTED = "nsfw_not_permitted"


class AuthDecision(BaseModel):
    """Allow, or deny with a reason."""

    model_config = ConfigDict(frozen=True)

    allowed: bool
    reason: DenyReason | None = None

    @classmethod
    def allow(cls) -> AuthDecision:
        return cls(allowed=True)

    @classmethod
    def deny(cls, reason: DenyReason) -> AuthDecision:
        return cls(allowed=False, reason=reason)


class AuthorizationGate:
    """Combine an identity's aggregate with the event's context.

    Decision order: blacklist, then authentication, then NSFW gating for
    NSFW-capable personalities. The only I/O is reading one aggregate from
    the repository.

    Attributes:
        repository: Source of aggregate snapshots.
        require_authentication: When False, identities without a record may
            still pass (NSFW gating still applies).
    """

    def __init__(
        self,
        repository: AuthenticationRepository,
        require_authentication: bool = True,
    ) -> None:
        self.repository = repository
        self.require_authentication = require_authentication

    async def authorize(
        self,
        identity: str,
        personality: Personality,
        auth_context: AuthContext,
        now: datetime | None = None,
    ) -> AuthDecision:
        """Load the identity's aggregate and decide."""
        aggregate = await self.repository.find_by_identity(identity)
        decision = self.decide(aggregate, personality, auth_context, now)
        if not decision.allowed:
            log.info(
                "authorization_denied",
                identity=identity,
                personality=personality.id,
                channel_id=auth_context.channel_id,
                reason=decision.reason.value if decision.reason else None,
            )
        return decision

    def decide(
        self,
        aggregate: AuthAggregate | None,
        personality: Personality,
        auth_context: AuthContext,
        now: datetime | None = None,
    ) -> AuthDecision:
        """Pure decision over an already-loaded snapshot.

        Args:
            aggregate: The identity's aggregate, or None if it has no record.
            personality: Requested personality.
            auth_context: Facts about the inbound event.
            now: Reference time for token expiry.
        """
        if aggregate is not None and aggregate.blacklisted:
            return AuthDecision.deny(DenyReason.BLACKLISTED)

        authenticated = aggregate is not None and aggregate.is_authenticated(now)
        if self.require_authentication and not authenticated:
            return AuthDecision.deny(DenyReason.NOT_AUTHENTICATED)

        if personality.nsfw_capable:
            nsfw_status = aggregate.nsfw_status if aggregate is not None else NsfwStatus()
            if not can_access_nsfw(nsfw_status, auth_context):
                return AuthDecision.deny(DenyReason.NSFW_NOT_PERMITTED)

        return AuthDecision.allow()
