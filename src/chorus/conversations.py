"""Conversation state kept between messages.

Three in-memory maps, all clock-injected:

- which personality posted each of our recent webhook messages, so replies
  to them can be routed back;
- channels where a personality has been activated and answers everything;
- per-user active conversations, so follow-ups need no mention.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta

from chorus.config import ConversationsConfig
from chorus.logging import get_logger
from chorus.models import utcnow

log = get_logger("conversations")


class ConversationTracker:
    def __init__(
        self,
        conversation_timeout: timedelta = timedelta(minutes=30),
        auto_response_in_dm: bool = True,
        attribution_ttl: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.conversation_timeout = conversation_timeout
        self.auto_response_in_dm = auto_response_in_dm
        self.attribution_ttl = attribution_ttl
        self.clock = clock
        self._sent: dict[str, tuple[str, datetime]] = {}
        self._activated: dict[str, str] = {}
        self._conversations: dict[tuple[str, str], tuple[str, datetime, bool]] = {}

    @classmethod
    def from_config(
        cls, config: ConversationsConfig, clock: Callable[[], datetime] = utcnow
    ) -> ConversationTracker:
        return cls(
            conversation_timeout=config.conversation_timeout,
            auto_response_in_dm=config.auto_response_in_dm,
            attribution_ttl=config.message_attribution_ttl,
            clock=clock,
        )

    # -------------------------------------------------------------------------
    # Sent message attribution
    # -------------------------------------------------------------------------

    def record_sent(self, message_id: str, personality_id: str) -> None:
        self._sent[message_id] = (personality_id, self.clock())

    def personality_for_message(self, message_id: str) -> str | None:
        entry = self._sent.get(message_id)
        if entry is None:
            return None
        personality_id, sent_at = entry
        if self.clock() - sent_at > self.attribution_ttl:
            del self._sent[message_id]
            return None
        return personality_id

    # -------------------------------------------------------------------------
    # Activated channels
    # -------------------------------------------------------------------------

    def activate_channel(self, channel_id: str, personality_id: str) -> None:
        self._activated[channel_id] = personality_id
        log.info("channel_activated", channel_id=channel_id, personality=personality_id)

    def deactivate_channel(self, channel_id: str) -> bool:
        """Returns True if a personality was active in the channel."""
        removed = self._activated.pop(channel_id, None)
        if removed is not None:
            log.info("channel_deactivated", channel_id=channel_id, personality=removed)
        return removed is not None

    def activated_personality(self, channel_id: str) -> str | None:
        return self._activated.get(channel_id)

    # -------------------------------------------------------------------------
    # Active conversations
    # -------------------------------------------------------------------------

    def record_conversation(
        self, user_id: str, channel_id: str, personality_id: str, is_dm: bool = False
    ) -> None:
        self._conversations[(user_id, channel_id)] = (personality_id, self.clock(), is_dm)

    def active_personality(self, user_id: str, channel_id: str, is_dm: bool = False) -> str | None:
        """Personality the user is currently talking to in this channel.

        Guild conversations lapse after ``conversation_timeout``. DM
        conversations never lapse while ``auto_response_in_dm`` is on.
        """
        entry = self._conversations.get((user_id, channel_id))
        if entry is None:
            return None
        if is_dm and not self.auto_response_in_dm:
            return None

        personality_id, last_seen, _ = entry
        if not is_dm and self.clock() - last_seen > self.conversation_timeout:
            del self._conversations[(user_id, channel_id)]
            return None
        return personality_id

    def clear_conversation(self, user_id: str, channel_id: str) -> bool:
        return self._conversations.pop((user_id, channel_id), None) is not None

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    def sweep(self) -> int:
        """Drop lapsed attributions and guild conversations.

        Returns:
            Number of entries removed.
        """
        now = self.clock()

        stale_sent = [mid for mid, (_, at) in self._sent.items() if now - at > self.attribution_ttl]
        for message_id in stale_sent:
            del self._sent[message_id]

        stale_conversations = [
            key
            for key, (_, at, is_dm) in self._conversations.items()
            if now - at > self.conversation_timeout
            and not (is_dm and self.auto_response_in_dm)
        ]
        for key in stale_conversations:
            del self._conversations[key]

        removed = len(stale_sent) + len(stale_conversations)
        if removed:
            log.debug("conversations_swept", removed=removed)
        return removed
