"""Pydantic models for Chorus.

Value objects for the authorization domain (tokens, NSFW status, per-event
auth context), the transport-neutral message snapshot the routing core works
on, and the transient results produced while routing one message.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    field_validator,
    model_validator,
)
from ulid import ULID


# =============================================================================
# Enums
# =============================================================================


class ChannelKind(str, Enum):
    """Kind of channel an event arrived in."""

    DM = "dm"
    GUILD = "guild"
    THREAD = "thread"


# =============================================================================
# Helper Functions
# =============================================================================


def generate_id() -> str:
    """Generate a new ULID for entities."""
    return str(ULID())


def utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes as UTC (SQLite drops tzinfo)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# =============================================================================
# Authorization Value Objects
# =============================================================================


class Token(BaseModel):
    """An access token issued by the identity provider.

    Immutable. The expiry must lie strictly in the future when the token is
    created; pass ``context={"now": ...}`` to ``model_validate`` to pin the
    reference time. Tokens read back from event history are rebuilt with
    ``Token.restore`` and skip that check.
    """

    model_config = ConfigDict(frozen=True)

    value: str
    expires_at: datetime

    @field_validator("value")
    @classmethod
    def validate_value(cls, v: str) -> str:
        if not v:
            raise ValueError("Token value required")
        return v

    @field_validator("expires_at")
    @classmethod
    def validate_expiry(cls, v: datetime, info: ValidationInfo) -> datetime:
        v = ensure_aware(v)
        now = (info.context or {}).get("now") or utcnow()
        if v <= now:
            raise ValueError("Token expiry must be in the future")
        return v

    @classmethod
    def create(cls, value: str, expires_at: datetime, now: datetime | None = None) -> Token:
        """Create a token, validating expiry against ``now``."""
        return cls.model_validate(
            {"value": value, "expires_at": expires_at},
            context={"now": now or utcnow()},
        )

    @classmethod
    def create_with_lifetime(
        cls, value: str, lifetime: timedelta, now: datetime | None = None
    ) -> Token:
        """Create a token that expires ``lifetime`` after ``now``."""
        now = now or utcnow()
        return cls.create(value, now + lifetime, now=now)

    @classmethod
    def restore(cls, value: str, expires_at: datetime) -> Token:
        """Rebuild a historical token without the future-expiry check."""
        return cls.model_construct(value=value, expires_at=ensure_aware(expires_at))

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def time_until_expiration(self, now: datetime | None = None) -> timedelta:
        remaining = self.expires_at - (now or utcnow())
        return max(remaining, timedelta(0))

    def should_refresh(self, threshold: timedelta, now: datetime | None = None) -> bool:
        """True when the token expires within ``threshold``."""
        return self.time_until_expiration(now) <= threshold

    def to_payload(self) -> dict[str, str]:
        return {"value": self.value, "expires_at": self.expires_at.isoformat()}


class NsfwStatus(BaseModel):
    """NSFW verification status. ``verified`` iff ``verified_at`` is set."""

    model_config = ConfigDict(frozen=True)

    verified: bool = False
    verified_at: datetime | None = None

    @model_validator(mode="after")
    def validate_consistency(self) -> NsfwStatus:
        if self.verified != (self.verified_at is not None):
            raise ValueError("verified must be set exactly when verified_at is set")
        return self

    @classmethod
    def unverified(cls) -> NsfwStatus:
        return cls()

    def verify(self, at: datetime | None = None) -> NsfwStatus:
        return NsfwStatus(verified=True, verified_at=ensure_aware(at or utcnow()))

    def clear(self) -> NsfwStatus:
        return NsfwStatus()


class AuthContext(BaseModel):
    """Channel, proxy and NSFW facts for one inbound event."""

    model_config = ConfigDict(frozen=True)

    channel_kind: ChannelKind
    channel_id: str
    is_nsfw_channel: bool = False
    is_proxy_message: bool = False
    requested_personality_id: str | None = None

    @property
    def is_dm(self) -> bool:
        return self.channel_kind == ChannelKind.DM

    @classmethod
    def for_dm(cls, channel_id: str, requested_personality_id: str | None = None) -> AuthContext:
        return cls(
            channel_kind=ChannelKind.DM,
            channel_id=channel_id,
            requested_personality_id=requested_personality_id,
        )

    @classmethod
    def for_guild(
        cls,
        channel_id: str,
        is_nsfw_channel: bool = False,
        is_proxy_message: bool = False,
        requested_personality_id: str | None = None,
    ) -> AuthContext:
        return cls(
            channel_kind=ChannelKind.GUILD,
            channel_id=channel_id,
            is_nsfw_channel=is_nsfw_channel,
            is_proxy_message=is_proxy_message,
            requested_personality_id=requested_personality_id,
        )

    @classmethod
    def for_thread(
        cls,
        channel_id: str,
        is_nsfw_channel: bool = False,
        is_proxy_message: bool = False,
        requested_personality_id: str | None = None,
    ) -> AuthContext:
        return cls(
            channel_kind=ChannelKind.THREAD,
            channel_id=channel_id,
            is_nsfw_channel=is_nsfw_channel,
            is_proxy_message=is_proxy_message,
            requested_personality_id=requested_personality_id,
        )


# =============================================================================
# Personalities
# =============================================================================


class Personality(BaseModel):
    """A named AI responder."""

    model_config = ConfigDict(from_attributes=True)

    id: str  # Canonical full name, e.g. "bambi-prime"
    name: str
    display_name: str | None = None
    aliases: list[str] = Field(default_factory=list)
    nsfw_capable: bool = True

    @property
    def label(self) -> str:
        return self.display_name or self.name


# =============================================================================
# Transport-Neutral Messages
# =============================================================================


class MessageRef(BaseModel):
    """Pointer to another message (reply reference or parsed link)."""

    model_config = ConfigDict(frozen=True)

    message_id: str
    channel_id: str
    guild_id: str | None = None


class Attachment(BaseModel):
    """File attached to a message."""

    url: str
    content_type: str | None = None
    filename: str | None = None

    @property
    def is_image(self) -> bool:
        return bool(self.content_type and self.content_type.startswith("image/"))

    @property
    def is_audio(self) -> bool:
        return bool(self.content_type and self.content_type.startswith("audio/"))


class EmbedField(BaseModel):
    name: str
    value: str


class Embed(BaseModel):
    """Structured embed on a message."""

    title: str | None = None
    description: str | None = None
    url: str | None = None
    image_url: str | None = None
    thumbnail_url: str | None = None
    fields: list[EmbedField] = Field(default_factory=list)


class InboundMessage(BaseModel):
    """Snapshot of a chat message as the routing core sees it."""

    model_config = ConfigDict(from_attributes=True)

    id: str  # Discord snowflake
    channel_id: str
    guild_id: str | None = None
    channel_kind: ChannelKind = ChannelKind.GUILD
    is_nsfw_channel: bool = False
    author_id: str
    author_name: str = ""
    author_is_bot: bool = False
    webhook_id: str | None = None
    application_id: str | None = None
    content: str = ""
    reference: MessageRef | None = None
    attachments: list[Attachment] = Field(default_factory=list)
    embeds: list[Embed] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def is_dm(self) -> bool:
        return self.channel_kind == ChannelKind.DM

    @property
    def is_webhook(self) -> bool:
        return self.webhook_id is not None


# =============================================================================
# Routing Results
# =============================================================================


class TrackedMessage(BaseModel):
    """Recently seen message body in a channel's duplicate window."""

    message_id: str
    content: str
    timestamp: datetime
    handled: bool = False
    author_id: str | None = None  # Set for human posts, None for webhooks


class MentionMatch(BaseModel):
    """A personality reference found in message text."""

    model_config = ConfigDict(frozen=True)

    matched_text: str
    word_count: int
    resolved_personality_id: str


class ReferenceChain(BaseModel):
    """Reconstructed content of a replied-to or linked message."""

    content: str
    author_id: str | None = None
    author_display_name: str = "another user"
    is_from_bot: bool = False
    personality_id: str | None = None
    media_urls: list[str] = Field(default_factory=list)
    nested_reference: ReferenceChain | None = None

    @property
    def is_from_personality(self) -> bool:
        return self.personality_id is not None
