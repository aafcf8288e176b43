"""Event-sourced authorization state for one identity.

An ``AuthAggregate`` owns a user's token, NSFW verification and blacklist
flag. State changes only through a fixed set of operations; each one appends
exactly one domain event and folds it into the current state with
``apply_event``. Replaying the stored event stream through the same fold
reproduces the state, which is how repositories load aggregates.

Events are a closed union discriminated by ``type`` so stored rows can be
parsed back with ``parse_event`` and folded without any name-based dispatch.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from chorus.errors import BlacklistedError, InvalidStateError, NotAuthenticatedError
from chorus.models import (
    AuthContext,
    NsfwStatus,
    Personality,
    Token,
    generate_id,
    utcnow,
)


# =============================================================================
# Domain Events
# =============================================================================


class _AuthEventBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    aggregate_id: str
    event_id: str = Field(default_factory=generate_id)
    occurred_at: datetime = Field(default_factory=utcnow)


class UserAuthenticated(_AuthEventBase):
    type: Literal["user_authenticated"] = "user_authenticated"
    token_value: str
    token_expires_at: datetime


class UserTokenRefreshed(_AuthEventBase):
    type: Literal["user_token_refreshed"] = "user_token_refreshed"
    old_token_value: str | None = None
    token_value: str
    token_expires_at: datetime


class UserTokenExpired(_AuthEventBase):
    type: Literal["user_token_expired"] = "user_token_expired"
    expired_token_value: str
    expired_token_expires_at: datetime


class UserNsfwVerified(_AuthEventBase):
    type: Literal["user_nsfw_verified"] = "user_nsfw_verified"
    verified_at: datetime


class UserNsfwVerificationCleared(_AuthEventBase):
    type: Literal["user_nsfw_verification_cleared"] = "user_nsfw_verification_cleared"
    reason: str | None = None


class UserBlacklisted(_AuthEventBase):
    type: Literal["user_blacklisted"] = "user_blacklisted"
    reason: str


class UserUnblacklisted(_AuthEventBase):
    type: Literal["user_unblacklisted"] = "user_unblacklisted"


AuthEvent = Annotated[
    Union[
        UserAuthenticated,
        UserTokenRefreshed,
        UserTokenExpired,
        UserNsfwVerified,
        UserNsfwVerificationCleared,
        UserBlacklisted,
        UserUnblacklisted,
    ],
    Field(discriminator="type"),
]

_event_adapter: TypeAdapter[AuthEvent] = TypeAdapter(AuthEvent)


def parse_event(data: dict[str, Any]) -> AuthEvent:
    """Parse a stored event payload back into its event class."""
    return _event_adapter.validate_python(data)


def serialize_event(event: AuthEvent) -> dict[str, Any]:
    """Serialize an event to a JSON-compatible dict."""
    return event.model_dump(mode="json")


# =============================================================================
# State and Fold
# =============================================================================


class AuthState(BaseModel):
    """Folded authorization state. Plain data, no behavior."""

    model_config = ConfigDict(frozen=True)

    identity: str
    token: Token | None = None
    nsfw_status: NsfwStatus = Field(default_factory=NsfwStatus)
    blacklisted: bool = False
    blacklist_reason: str | None = None
    last_authenticated_at: datetime | None = None
    authentication_count: int = 0
    version: int = 0


def apply_event(state: AuthState | None, event: AuthEvent) -> AuthState:
    """Fold one event into state. Pure; never reads the clock.

    Raises:
        InvalidStateError: If the first event is not ``UserAuthenticated``.
    """
    if state is None:
        if not isinstance(event, UserAuthenticated):
            raise InvalidStateError(
                f"Event stream for {event.aggregate_id} must start with user_authenticated"
            )
        state = AuthState(identity=event.aggregate_id)

    match event:
        case UserAuthenticated():
            updates: dict[str, Any] = {
                "token": Token.restore(event.token_value, event.token_expires_at),
                "last_authenticated_at": event.occurred_at,
                "authentication_count": state.authentication_count + 1,
            }
        case UserTokenRefreshed():
            updates = {"token": Token.restore(event.token_value, event.token_expires_at)}
        case UserTokenExpired():
            updates = {"token": None}
        case UserNsfwVerified():
            updates = {"nsfw_status": state.nsfw_status.verify(event.verified_at)}
        case UserNsfwVerificationCleared():
            updates = {"nsfw_status": state.nsfw_status.clear()}
        case UserBlacklisted():
            # Blacklisting leaves no residual privilege
            updates = {
                "blacklisted": True,
                "blacklist_reason": event.reason,
                "token": None,
                "nsfw_status": state.nsfw_status.clear(),
            }
        case UserUnblacklisted():
            updates = {"blacklisted": False, "blacklist_reason": None}
        case _:
            raise InvalidStateError(f"Unknown event type: {type(event).__name__}")

    updates["version"] = state.version + 1
    return state.model_copy(update=updates)


def fold_events(events: Iterable[AuthEvent]) -> AuthState | None:
    """Fold an ordered event stream from empty state."""
    state: AuthState | None = None
    for event in events:
        state = apply_event(state, event)
    return state


def can_access_nsfw(nsfw_status: NsfwStatus, auth_context: AuthContext) -> bool:
    """NSFW decision table.

    DMs require NSFW verification. Channels marked NSFW allow every
    personality regardless of verification. Everything else is refused.
    """
    if auth_context.is_dm:
        return nsfw_status.verified
    return auth_context.is_nsfw_channel


# =============================================================================
# Aggregate
# =============================================================================


class AuthAggregate:
    """Authentication and authorization state for one identity.

    Created only through ``authenticate`` (or rebuilt with ``from_history``).
    Every mutating operation appends one event and folds it.

    Attributes:
        identity: Stable user id this aggregate belongs to.
    """

    def __init__(self, identity: str) -> None:
        if not identity or not isinstance(identity, str):
            raise ValueError("AuthAggregate requires a non-empty identity")
        self.identity = identity
        self._state: AuthState | None = None
        self._history: list[AuthEvent] = []
        self._uncommitted: list[AuthEvent] = []

    # -------------------------------------------------------------------------
    # Construction
    # -------------------------------------------------------------------------

    @classmethod
    def authenticate(
        cls, identity: str, token: Token, now: datetime | None = None
    ) -> AuthAggregate:
        """Create a newly authenticated aggregate."""
        if not isinstance(token, Token):
            raise ValueError("Invalid Token")
        aggregate = cls(identity)
        aggregate._record(
            UserAuthenticated(
                aggregate_id=identity,
                token_value=token.value,
                token_expires_at=token.expires_at,
                occurred_at=now or utcnow(),
            )
        )
        return aggregate

    @classmethod
    def from_history(cls, identity: str, events: Iterable[AuthEvent]) -> AuthAggregate:
        """Rebuild an aggregate by replaying committed events."""
        aggregate = cls(identity)
        for event in events:
            aggregate._state = apply_event(aggregate._state, event)
            aggregate._history.append(event)
        if aggregate._state is None:
            raise InvalidStateError(f"No events for identity {identity}")
        return aggregate

    # -------------------------------------------------------------------------
    # State access
    # -------------------------------------------------------------------------

    @property
    def state(self) -> AuthState:
        if self._state is None:
            raise NotAuthenticatedError(f"{self.identity} has never authenticated")
        return self._state

    @property
    def token(self) -> Token | None:
        return self.state.token

    @property
    def nsfw_status(self) -> NsfwStatus:
        return self.state.nsfw_status

    @property
    def blacklisted(self) -> bool:
        return self.state.blacklisted

    @property
    def blacklist_reason(self) -> str | None:
        return self.state.blacklist_reason

    @property
    def version(self) -> int:
        return self.state.version

    @property
    def history(self) -> list[AuthEvent]:
        return list(self._history)

    def uncommitted_events(self) -> list[AuthEvent]:
        return list(self._uncommitted)

    def mark_events_committed(self) -> None:
        self._uncommitted.clear()

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def refresh_token(self, new_token: Token, now: datetime | None = None) -> None:
        """Replace the token.

        Token validity is left to the identity provider; no expiry check here.

        Raises:
            BlacklistedError: If the identity is blacklisted.
        """
        if not isinstance(new_token, Token):
            raise ValueError("Invalid Token")
        if self.state.blacklisted:
            raise BlacklistedError("Cannot refresh token for blacklisted user")
        current = self.state.token
        self._record(
            UserTokenRefreshed(
                aggregate_id=self.identity,
                old_token_value=current.value if current else None,
                token_value=new_token.value,
                token_expires_at=new_token.expires_at,
                occurred_at=now or utcnow(),
            )
        )

    def expire_token(self, now: datetime | None = None) -> None:
        """Drop the token. No-op when there is none."""
        current = self.state.token
        if current is None:
            return
        self._record(
            UserTokenExpired(
                aggregate_id=self.identity,
                expired_token_value=current.value,
                expired_token_expires_at=current.expires_at,
                occurred_at=now or utcnow(),
            )
        )

    def verify_nsfw(self, at: datetime | None = None) -> None:
        """Record NSFW verification.

        Raises:
            BlacklistedError: If the identity is blacklisted.
            NotAuthenticatedError: If there is no token.
        """
        if self.state.blacklisted:
            raise BlacklistedError("Cannot verify NSFW for blacklisted user")
        if self.state.token is None:
            raise NotAuthenticatedError("Cannot verify NSFW without a token")
        if self.state.nsfw_status.verified:
            return
        at = at or utcnow()
        self._record(UserNsfwVerified(aggregate_id=self.identity, verified_at=at, occurred_at=at))

    def clear_nsfw_verification(self, reason: str | None = None, now: datetime | None = None) -> None:
        """Clear NSFW verification. No-op when not verified."""
        if not self.state.nsfw_status.verified:
            return
        self._record(
            UserNsfwVerificationCleared(
                aggregate_id=self.identity, reason=reason, occurred_at=now or utcnow()
            )
        )

    def blacklist(self, reason: str, now: datetime | None = None) -> None:
        """Blacklist the identity, revoking token and NSFW verification.

        Raises:
            InvalidStateError: If already blacklisted or no reason given.
        """
        if not isinstance(reason, str) or not reason.strip():
            raise InvalidStateError("Blacklist reason required")
        if self.state.blacklisted:
            raise InvalidStateError("User already blacklisted")
        self._record(
            UserBlacklisted(aggregate_id=self.identity, reason=reason, occurred_at=now or utcnow())
        )

    def unblacklist(self, now: datetime | None = None) -> None:
        """Lift a blacklist. Token and NSFW verification stay cleared.

        Raises:
            InvalidStateError: If not blacklisted.
        """
        if not self.state.blacklisted:
            raise InvalidStateError("User not blacklisted")
        self._record(UserUnblacklisted(aggregate_id=self.identity, occurred_at=now or utcnow()))

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def is_authenticated(self, now: datetime | None = None) -> bool:
        state = self.state
        if state.blacklisted or state.token is None:
            return False
        return not state.token.is_expired(now)

    def can_access_nsfw(
        self, requested_personality: Personality | None, auth_context: AuthContext
    ) -> bool:
        """Pure NSFW decision. All personalities are treated as NSFW-capable."""
        return can_access_nsfw(self.state.nsfw_status, auth_context)

    def to_dict(self) -> dict[str, Any]:
        state = self.state
        return {
            "identity": state.identity,
            "token": state.token.to_payload() if state.token else None,
            "nsfw_verified": state.nsfw_status.verified,
            "nsfw_verified_at": (
                state.nsfw_status.verified_at.isoformat()
                if state.nsfw_status.verified_at
                else None
            ),
            "blacklisted": state.blacklisted,
            "blacklist_reason": state.blacklist_reason,
            "last_authenticated_at": (
                state.last_authenticated_at.isoformat() if state.last_authenticated_at else None
            ),
            "authentication_count": state.authentication_count,
            "version": state.version,
        }

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _record(self, event: AuthEvent) -> None:
        self._state = apply_event(self._state, event)
        self._history.append(event)
        self._uncommitted.append(event)
