"""Tests for conversation state tracking."""

from datetime import timedelta

import pytest

from chorus.config import ConversationsConfig
from chorus.conversations import ConversationTracker

from conftest import FakeClock


@pytest.fixture
def tracker(clock: FakeClock) -> ConversationTracker:
    return ConversationTracker(clock=clock)


class TestSentAttribution:
    def test_record_and_lookup(self, tracker) -> None:
        tracker.record_sent("m1", "bambi")
        assert tracker.personality_for_message("m1") == "bambi"
        assert tracker.personality_for_message("m2") is None

    def test_attribution_expires(self, tracker, clock) -> None:
        tracker.record_sent("m1", "bambi")
        clock.advance(hours=25)
        assert tracker.personality_for_message("m1") is None


class TestActivatedChannels:
    def test_activate_and_deactivate(self, tracker) -> None:
        tracker.activate_channel("c1", "bambi")
        assert tracker.activated_personality("c1") == "bambi"
        assert tracker.deactivate_channel("c1") is True
        assert tracker.activated_personality("c1") is None
        assert tracker.deactivate_channel("c1") is False

    def test_activation_replaces(self, tracker) -> None:
        tracker.activate_channel("c1", "bambi")
        tracker.activate_channel("c1", "bambi-prime")
        assert tracker.activated_personality("c1") == "bambi-prime"


class TestActiveConversations:
    """Tests for per-user conversation continuity."""

    def test_guild_conversation_times_out(self, tracker, clock) -> None:
        tracker.record_conversation("42", "c1", "bambi")
        clock.advance(minutes=29)
        assert tracker.active_personality("42", "c1") == "bambi"
        clock.advance(minutes=2)
        assert tracker.active_personality("42", "c1") is None

    def test_conversation_is_per_user_and_channel(self, tracker) -> None:
        tracker.record_conversation("42", "c1", "bambi")
        assert tracker.active_personality("7", "c1") is None
        assert tracker.active_personality("42", "c2") is None

    def test_dm_conversation_is_sticky(self, tracker, clock) -> None:
        tracker.record_conversation("42", "dm", "bambi", is_dm=True)
        clock.advance(days=3)
        assert tracker.active_personality("42", "dm", is_dm=True) == "bambi"

    def test_dm_auto_response_disabled(self, clock) -> None:
        tracker = ConversationTracker(auto_response_in_dm=False, clock=clock)
        tracker.record_conversation("42", "dm", "bambi", is_dm=True)
        assert tracker.active_personality("42", "dm", is_dm=True) is None

    def test_clear(self, tracker) -> None:
        tracker.record_conversation("42", "c1", "bambi")
        assert tracker.clear_conversation("42", "c1") is True
        assert tracker.active_personality("42", "c1") is None
        assert tracker.clear_conversation("42", "c1") is False


class TestSweep:
    def test_sweep_keeps_dm_conversations(self, tracker, clock) -> None:
        tracker.record_conversation("42", "c1", "bambi")
        tracker.record_conversation("42", "dm", "bambi", is_dm=True)
        tracker.record_sent("m1", "bambi")
        clock.advance(hours=25)

        assert tracker.sweep() == 2
        assert tracker.active_personality("42", "dm", is_dm=True) == "bambi"

    def test_sweep_drops_dm_when_auto_response_off(self, clock) -> None:
        tracker = ConversationTracker(auto_response_in_dm=False, clock=clock)
        tracker.record_conversation("42", "dm", "bambi", is_dm=True)
        clock.advance(hours=1)
        assert tracker.sweep() == 1


class TestFromConfig:
    def test_from_config(self, clock) -> None:
        config = ConversationsConfig(conversation_timeout_minutes=5, message_attribution_hours=1)
        tracker = ConversationTracker.from_config(config, clock=clock)
        assert tracker.conversation_timeout == timedelta(minutes=5)
        assert tracker.attribution_ttl == timedelta(hours=1)
        assert tracker.auto_response_in_dm is True
