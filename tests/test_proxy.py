"""Tests for identity-proxy system support."""

import pytest

from chorus.models import Embed, EmbedField
from chorus.proxy import ProxyWebhookDetector, WebhookUserTracker, looks_like_proxy_trigger

from conftest import FakeClock, make_message

BOT_ID = "999"


def webhook_message(**overrides):
    data = {"webhook_id": "wh-1", "author_name": "Some Member", "author_is_bot": True}
    data.update(overrides)
    return make_message(**data)


class TestLooksLikeProxyTrigger:
    """Tests for the proxy trigger heuristic."""

    @pytest.mark.parametrize(
        "text",
        [
            "[hello there]",
            "{hello there}",
            "<hello there>",
            "(hello there)",
            "「hello」",
            "『hello』",
            '"hello there"',
            "'hello there'",
            "Alice: hello",
            "al- hello",
            "bob> hi",
            "pk;switch alice",
            "PK!help",
            "system: something",
            "member: alice",
        ],
    )
    def test_matches(self, text: str) -> None:
        assert looks_like_proxy_trigger(text)

    @pytest.mark.parametrize(
        "text",
        [
            "",
            "a",
            "[]",
            "hello there",
            "@bambi how are you",
            "this is a long sentence that has a colon: here",
        ],
    )
    def test_does_not_match(self, text: str) -> None:
        assert not looks_like_proxy_trigger(text)

    def test_non_string(self) -> None:
        assert not looks_like_proxy_trigger(None)


class TestProxyWebhookDetector:
    """Tests for proxy webhook recognition."""

    def test_human_message_is_not_proxy(self) -> None:
        detector = ProxyWebhookDetector(bot_user_id=BOT_ID)
        assert not detector.is_proxy_system_webhook(make_message())

    def test_own_webhook(self) -> None:
        detector = ProxyWebhookDetector(bot_user_id=BOT_ID)
        message = webhook_message(application_id=BOT_ID, author_name="PluralKit fan")
        assert detector.is_own_webhook(message)
        assert not detector.is_proxy_system_webhook(message)

    def test_match_by_application_id(self) -> None:
        detector = ProxyWebhookDetector(bot_user_id=BOT_ID)
        assert detector.is_proxy_system_webhook(webhook_message(application_id="466378653216014359"))

    def test_match_by_author_name(self) -> None:
        detector = ProxyWebhookDetector(bot_user_id=BOT_ID)
        assert detector.is_proxy_system_webhook(webhook_message(author_name="Alice | Tupperbox"))

    def test_match_by_embed_field(self) -> None:
        detector = ProxyWebhookDetector(bot_user_id=BOT_ID)
        embed = Embed(fields=[EmbedField(name="System ID", value="abcde")])
        assert detector.is_proxy_system_webhook(webhook_message(embeds=[embed]))

    def test_match_by_pk_marker(self) -> None:
        detector = ProxyWebhookDetector(bot_user_id=BOT_ID)
        embed = Embed(fields=[EmbedField(name="Info", value="see pk:abc")])
        assert detector.is_proxy_system_webhook(webhook_message(embeds=[embed]))

    def test_unrelated_webhook(self) -> None:
        detector = ProxyWebhookDetector(bot_user_id=BOT_ID)
        assert not detector.is_proxy_system_webhook(webhook_message(author_name="GitHub"))

    def test_positive_answer_cached(self, clock: FakeClock) -> None:
        detector = ProxyWebhookDetector(bot_user_id=BOT_ID, clock=clock)
        assert detector.is_proxy_system_webhook(webhook_message(author_name="PluralKit"))
        # Later posts from the same webhook need no markers
        assert detector.is_proxy_system_webhook(webhook_message(author_name="Alice"))

    def test_cache_expires(self, clock: FakeClock) -> None:
        detector = ProxyWebhookDetector(bot_user_id=BOT_ID, clock=clock)
        detector.is_proxy_system_webhook(webhook_message(author_name="PluralKit"))
        clock.advance(hours=2)
        assert detector.sweep() == 1
        assert not detector.is_proxy_system_webhook(webhook_message(author_name="Alice"))


class TestWebhookUserTracker:
    """Tests for webhook to user association."""

    def test_human_author_is_identity(self) -> None:
        tracker = WebhookUserTracker()
        assert tracker.real_user_id(make_message(author_id="42")) == "42"

    def test_unknown_webhook_falls_back_to_author(self) -> None:
        tracker = WebhookUserTracker()
        assert tracker.real_user_id(webhook_message(author_id="777")) == "777"

    def test_associated_webhook(self) -> None:
        tracker = WebhookUserTracker()
        tracker.associate("wh-1", "42")
        assert tracker.real_user_id(webhook_message(author_id="777")) == "42"

    def test_lookup_refreshes_association(self, clock: FakeClock) -> None:
        tracker = WebhookUserTracker(clock=clock)
        tracker.associate("wh-1", "42")
        clock.advance(minutes=50)
        tracker.real_user_id(webhook_message())
        clock.advance(minutes=50)
        assert tracker.sweep() == 0
        clock.advance(minutes=61)
        assert tracker.sweep() == 1

    def test_empty_values_ignored(self) -> None:
        tracker = WebhookUserTracker()
        tracker.associate("", "42")
        tracker.associate("wh-1", "")
        assert tracker.real_user_id(webhook_message(author_id="777")) == "777"
