"""Identity-proxy system support.

Recognizes webhook posts made by PluralKit-style proxy systems, remembers
which real user is behind a proxy webhook, and spots message text that looks
like it is about to be proxied.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta

from chorus.config import DEFAULT_PROXY_APPLICATION_IDS, DEFAULT_PROXY_SYSTEM_NAMES
from chorus.logging import get_logger
from chorus.models import InboundMessage, utcnow

log = get_logger("proxy")

EMBED_FIELD_MARKERS = ("System ID", "Member ID")
PK_MARKER = "pk:"

_BRACKET_PAIRS = [
    ("[", "]"),
    ("{", "}"),
    ("<", ">"),
    ("(", ")"),
    ("「", "」"),
    ("『", "』"),
    ('"', '"'),
    ("'", "'"),
]
_PREFIX_PATTERN = re.compile(r"^[^\s:\-/\\~=*$#|>]{1,20}[:\-/\\~=*$#|>]\s")
_COMMAND_PATTERN = re.compile(r"pk[;:!]", re.IGNORECASE)
_TAG_PATTERN = re.compile(r"\b(system|member):", re.IGNORECASE)


def looks_like_proxy_trigger(content: str | None) -> bool:
    """Heuristic: would a proxy system likely re-post this message?

    Matches text wrapped in a bracket pair, short ``Name:``-style prefixes,
    ``pk;``/``pk:``/``pk!`` commands and ``system:``/``member:`` tags.
    """
    if not isinstance(content, str):
        return False
    text = content.strip()
    if len(text) < 2:
        return False

    for opening, closing in _BRACKET_PAIRS:
        if text.startswith(opening) and text.endswith(closing) and len(text) > 2:
            return True

    return bool(
        _PREFIX_PATTERN.match(text)
        or _COMMAND_PATTERN.search(text)
        or _TAG_PATTERN.search(text)
    )


class ProxyWebhookDetector:
    """Decide whether a webhook message came from an identity-proxy system.

    Positive answers are cached per webhook id for ``cache_ttl``.
    """

    def __init__(
        self,
        bot_user_id: str | None = None,
        proxy_application_ids: Iterable[str] = DEFAULT_PROXY_APPLICATION_IDS,
        proxy_system_names: Iterable[str] = DEFAULT_PROXY_SYSTEM_NAMES,
        cache_ttl: timedelta = timedelta(hours=1),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.bot_user_id = bot_user_id
        self.proxy_application_ids = set(proxy_application_ids)
        self.proxy_system_names = list(proxy_system_names)
        self.cache_ttl = cache_ttl
        self.clock = clock
        self._known: dict[str, datetime] = {}

    def is_own_webhook(self, message: InboundMessage) -> bool:
        """Webhook posts made by this bot (one of our personalities speaking)."""
        return (
            message.webhook_id is not None
            and self.bot_user_id is not None
            and message.application_id == self.bot_user_id
        )

    def is_proxy_system_webhook(self, message: InboundMessage) -> bool:
        webhook_id = message.webhook_id
        if webhook_id is None or self.is_own_webhook(message):
            return False

        if webhook_id in self._known:
            self._known[webhook_id] = self.clock()
            return True

        reason = self._match_reason(message)
        if reason is None:
            return False

        log.info("proxy_webhook_identified", webhook_id=webhook_id, matched_by=reason)
        self._known[webhook_id] = self.clock()
        return True

    def sweep(self) -> int:
        cutoff = self.clock() - self.cache_ttl
        stale = [wid for wid, seen in self._known.items() if seen < cutoff]
        for webhook_id in stale:
            del self._known[webhook_id]
        return len(stale)

    def _match_reason(self, message: InboundMessage) -> str | None:
        if message.application_id in self.proxy_application_ids:
            return "application_id"

        if any(name in message.author_name for name in self.proxy_system_names):
            return "author_name"

        for embed in message.embeds:
            for field in embed.fields:
                if field.name in EMBED_FIELD_MARKERS or PK_MARKER in field.value:
                    return "embed"

        return None


class WebhookUserTracker:
    """Remember which real user is behind a proxy webhook.

    Lookups refresh the association, so active proxies never age out.
    """

    def __init__(
        self,
        ttl: timedelta = timedelta(hours=1),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.ttl = ttl
        self.clock = clock
        self._associations: dict[str, tuple[str, datetime]] = {}

    def associate(self, webhook_id: str, user_id: str) -> None:
        if not webhook_id or not user_id:
            return
        self._associations[webhook_id] = (user_id, self.clock())
        log.debug("webhook_associated", webhook_id=webhook_id, user_id=user_id)

    def real_user_id(self, message: InboundMessage) -> str:
        """Identity to authorize: the associated user for known webhooks, else the author."""
        if message.webhook_id is None:
            return message.author_id

        entry = self._associations.get(message.webhook_id)
        if entry is None:
            return message.author_id

        user_id, _ = entry
        self._associations[message.webhook_id] = (user_id, self.clock())
        return user_id

    def sweep(self) -> int:
        cutoff = self.clock() - self.ttl
        stale = [wid for wid, (_, seen) in self._associations.items() if seen < cutoff]
        for webhook_id in stale:
            del self._associations[webhook_id]
        return len(stale)
