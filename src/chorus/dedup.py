"""Proxy duplicate detection.

Identity-proxy systems (PluralKit, Tupperbox) delete a user's message and
re-post it through a webhook a moment later. Both copies reach us. The
detector keeps a short per-channel window of recently seen message bodies
and reports a candidate as a duplicate when a different, already handled
message with similar content arrived within the proxy delay.
"""

from __future__ import annotations

import unicodedata
from collections import OrderedDict
from collections.abc import Callable
from datetime import datetime, timedelta
from difflib import SequenceMatcher

from chorus.config import DedupConfig
from chorus.logging import get_logger
from chorus.models import TrackedMessage, utcnow

log = get_logger("dedup")


def normalize_content(content: str) -> str:
    """Casefold, drop punctuation and symbols, collapse whitespace."""
    kept = [
        ch
        for ch in content.casefold()
        if unicodedata.category(ch)[0] not in ("P", "S")
    ]
    return " ".join("".join(kept).split())


def is_similar(
    a: str,
    b: str,
    similarity_threshold: float = 0.9,
    min_containment_ratio: float = 0.8,
) -> bool:
    """Compare two message bodies after normalization.

    Proxy systems strip their trigger tags (``[text]``, ``Name: text``) before
    re-posting, so one body containing the other counts as a match when the
    shorter one is long enough relative to the longer.
    """
    left, right = normalize_content(a), normalize_content(b)
    if not left or not right:
        return False
    if left == right:
        return True

    shorter, longer = sorted((left, right), key=len)
    if shorter in longer and len(shorter) / len(longer) >= min_containment_ratio:
        return True

    return SequenceMatcher(None, left, right).ratio() >= similarity_threshold


class ProxyDuplicateDetector:
    """Per-channel window of recent message bodies.

    Mutated only from the event loop; no locking.

    Attributes:
        proxy_delay: How recent a handled message must be to suppress a copy.
        window_ttl: How long entries stay in the window.
        max_entries: Cap on entries per channel (oldest evicted first).
    """

    def __init__(
        self,
        proxy_delay: timedelta = timedelta(seconds=2),
        window_ttl: timedelta = timedelta(seconds=30),
        max_entries: int = 10,
        similarity_threshold: float = 0.9,
        min_containment_ratio: float = 0.8,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.proxy_delay = proxy_delay
        self.window_ttl = window_ttl
        self.max_entries = max_entries
        self.similarity_threshold = similarity_threshold
        self.min_containment_ratio = min_containment_ratio
        self.clock = clock
        self._channels: dict[str, OrderedDict[str, TrackedMessage]] = {}

    @classmethod
    def from_config(
        cls, config: DedupConfig, clock: Callable[[], datetime] = utcnow
    ) -> ProxyDuplicateDetector:
        return cls(
            proxy_delay=config.proxy_delay,
            window_ttl=config.window_ttl,
            max_entries=config.max_entries_per_channel,
            similarity_threshold=config.similarity_threshold,
            min_containment_ratio=config.min_containment_ratio,
            clock=clock,
        )

    def track(
        self,
        channel_id: str,
        message_id: str,
        content: str,
        author_id: str | None = None,
    ) -> None:
        """Add a message to the channel's window as unhandled.

        Re-tracking an id already in the window refreshes its content and
        timestamp but keeps its handled flag.
        """
        now = self.clock()
        window = self._channels.setdefault(channel_id, OrderedDict())

        existing = window.pop(message_id, None)
        window[message_id] = TrackedMessage(
            message_id=message_id,
            content=content,
            timestamp=now,
            handled=existing.handled if existing else False,
            author_id=author_id or (existing.author_id if existing else None),
        )

        self._evict_expired(window, now)
        while len(window) > self.max_entries:
            window.popitem(last=False)

    def is_near_duplicate(
        self, channel_id: str, candidate_id: str, candidate_content: str
    ) -> bool:
        """True if another handled message in the window matches the candidate.

        The other message must be younger than ``proxy_delay``. Unhandled
        entries never suppress anything, so two humans saying the same thing
        both get answered.
        """
        window = self._channels.get(channel_id)
        if not window:
            return False

        now = self.clock()
        for tracked in window.values():
            if tracked.message_id == candidate_id or not tracked.handled:
                continue
            if now - tracked.timestamp >= self.proxy_delay:
                continue
            if is_similar(
                tracked.content,
                candidate_content,
                self.similarity_threshold,
                self.min_containment_ratio,
            ):
                log.info(
                    "near_duplicate_detected",
                    channel_id=channel_id,
                    candidate_id=candidate_id,
                    original_id=tracked.message_id,
                )
                return True
        return False

    def find_source(
        self, channel_id: str, candidate_id: str, candidate_content: str
    ) -> TrackedMessage | None:
        """Most recent human post in the window that the candidate is a copy of.

        Used to learn which user is behind a proxy webhook.
        """
        window = self._channels.get(channel_id)
        if not window:
            return None

        now = self.clock()
        for tracked in reversed(window.values()):
            if tracked.message_id == candidate_id or tracked.author_id is None:
                continue
            if now - tracked.timestamp > self.window_ttl:
                continue
            if is_similar(
                tracked.content,
                candidate_content,
                self.similarity_threshold,
                self.min_containment_ratio,
            ):
                return tracked
        return None

    def mark_handled(self, channel_id: str, message_id: str) -> None:
        """Flag a tracked message as handled. No-op if it is not in the window."""
        window = self._channels.get(channel_id)
        if window is None:
            return
        tracked = window.get(message_id)
        if tracked is not None:
            tracked.handled = True

    def sweep(self) -> int:
        """Drop expired entries and empty channels.

        Returns:
            Number of entries evicted.
        """
        now = self.clock()
        evicted = 0
        for channel_id in list(self._channels):
            window = self._channels[channel_id]
            evicted += self._evict_expired(window, now)
            if not window:
                del self._channels[channel_id]
        if evicted:
            log.debug("dedup_swept", evicted=evicted, channels=len(self._channels))
        return evicted

    def tracked(self, channel_id: str) -> list[TrackedMessage]:
        """Current window for a channel, oldest first."""
        return list(self._channels.get(channel_id, {}).values())

    def _evict_expired(self, window: OrderedDict[str, TrackedMessage], now: datetime) -> int:
        expired = [
            message_id
            for message_id, tracked in window.items()
            if now - tracked.timestamp > self.window_ttl
        ]
        for message_id in expired:
            del window[message_id]
        return len(expired)
