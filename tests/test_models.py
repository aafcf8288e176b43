"""Tests for the value objects in chorus.models."""

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from chorus.models import (
    Attachment,
    AuthContext,
    ChannelKind,
    NsfwStatus,
    ReferenceChain,
    Token,
    ensure_aware,
    generate_id,
)

NOW = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


class TestToken:
    """Tests for Token construction and derived queries."""

    def test_create_with_future_expiry(self) -> None:
        token = Token.create("abc", NOW + timedelta(hours=1), now=NOW)
        assert token.value == "abc"
        assert token.expires_at == NOW + timedelta(hours=1)

    def test_past_expiry_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Token.create("abc", NOW - timedelta(seconds=1), now=NOW)

    def test_expiry_equal_to_now_rejected(self) -> None:
        """Expiry must be strictly in the future."""
        with pytest.raises(ValidationError):
            Token.create("abc", NOW, now=NOW)

    def test_empty_value_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Token.create("", NOW + timedelta(hours=1), now=NOW)

    def test_create_with_lifetime(self) -> None:
        token = Token.create_with_lifetime("abc", timedelta(days=1), now=NOW)
        assert token.expires_at == NOW + timedelta(days=1)

    def test_is_frozen(self) -> None:
        token = Token.create("abc", NOW + timedelta(hours=1), now=NOW)
        with pytest.raises(ValidationError):
            token.value = "other"

    def test_is_expired(self) -> None:
        token = Token.create("abc", NOW + timedelta(hours=1), now=NOW)
        assert not token.is_expired(NOW)
        assert token.is_expired(NOW + timedelta(hours=1))

    def test_time_until_expiration_never_negative(self) -> None:
        token = Token.create("abc", NOW + timedelta(minutes=5), now=NOW)
        assert token.time_until_expiration(NOW) == timedelta(minutes=5)
        assert token.time_until_expiration(NOW + timedelta(days=1)) == timedelta(0)

    def test_should_refresh(self) -> None:
        token = Token.create("abc", NOW + timedelta(minutes=30), now=NOW)
        assert token.should_refresh(timedelta(hours=1), NOW)
        assert not token.should_refresh(timedelta(minutes=10), NOW)

    def test_restore_skips_expiry_check(self) -> None:
        """Historical tokens rebuild even after they lapsed."""
        token = Token.restore("old", NOW - timedelta(days=3))
        assert token.is_expired(NOW)

    def test_naive_expiry_treated_as_utc(self) -> None:
        naive = datetime(2030, 1, 1, 0, 0)
        token = Token.create("abc", naive, now=NOW)
        assert token.expires_at.tzinfo is not None


class TestNsfwStatus:
    """Tests for NsfwStatus consistency."""

    def test_default_is_unverified(self) -> None:
        status = NsfwStatus.unverified()
        assert status.verified is False
        assert status.verified_at is None

    def test_verify_returns_new_instance(self) -> None:
        status = NsfwStatus()
        verified = status.verify(NOW)
        assert verified.verified
        assert verified.verified_at == NOW
        assert not status.verified

    def test_clear(self) -> None:
        assert NsfwStatus().verify(NOW).clear() == NsfwStatus()

    def test_verified_without_timestamp_rejected(self) -> None:
        with pytest.raises(ValidationError):
            NsfwStatus(verified=True)

    def test_timestamp_without_verified_rejected(self) -> None:
        with pytest.raises(ValidationError):
            NsfwStatus(verified=False, verified_at=NOW)


class TestAuthContext:
    """Tests for AuthContext constructors."""

    def test_for_dm(self) -> None:
        ctx = AuthContext.for_dm("c1", requested_personality_id="bambi")
        assert ctx.is_dm
        assert ctx.channel_kind == ChannelKind.DM
        assert ctx.is_nsfw_channel is False

    def test_for_guild(self) -> None:
        ctx = AuthContext.for_guild("c1", is_nsfw_channel=True, is_proxy_message=True)
        assert not ctx.is_dm
        assert ctx.is_nsfw_channel
        assert ctx.is_proxy_message

    def test_for_thread(self) -> None:
        ctx = AuthContext.for_thread("c1")
        assert ctx.channel_kind == ChannelKind.THREAD
        assert not ctx.is_dm


class TestHelpers:
    """Tests for id generation and small model helpers."""

    def test_generate_id_is_unique_ulid(self) -> None:
        first, second = generate_id(), generate_id()
        assert first != second
        assert len(first) == 26

    def test_ensure_aware(self) -> None:
        assert ensure_aware(datetime(2025, 1, 1)).tzinfo == timezone.utc
        assert ensure_aware(NOW) is NOW

    def test_attachment_kinds(self) -> None:
        assert Attachment(url="u", content_type="image/png").is_image
        assert Attachment(url="u", content_type="audio/ogg").is_audio
        plain = Attachment(url="u")
        assert not plain.is_image and not plain.is_audio

    def test_reference_chain_personality_flag(self) -> None:
        assert ReferenceChain(content="x", personality_id="bambi").is_from_personality
        assert not ReferenceChain(content="x").is_from_personality
