"""Reply and message-link context for an inbound message.

When a user replies to a message, or pastes a link to one, the responder
needs to see what was said there. ``ReferenceResolver`` fetches the referenced
message, works out who wrote it (a human, another bot, or one of our own
personalities), folds its media and embeds into text, and follows one further
reply level so reply-to-a-reply conversations keep their context.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

from pydantic import BaseModel

from chorus.conversations import ConversationTracker
from chorus.errors import NotFoundError, TransportError
from chorus.logging import get_logger
from chorus.models import Embed, InboundMessage, MessageRef, Personality, ReferenceChain
from chorus.proxy import ProxyWebhookDetector
from chorus.repositories import PersonalityDirectory

if TYPE_CHECKING:
    from chorus.orchestrator import MessageTransport

log = get_logger("references")

MESSAGE_LINK_PATTERN = re.compile(
    r"https://(?:ptb\.|canary\.)?discord(?:app)?\.com/channels/(\d+)/(\d+)/(\d+)"
)
DM_PERSONALITY_PREFIX = re.compile(r"^\*\*([^:]+):\*\* ")
MEDIA_MARKER_PATTERN = re.compile(r"\[(?:Image|Audio): (https?://[^\s\]]+)\]")


class ResolvedReferences(BaseModel):
    """Context gathered for one message."""

    content: str  # Outgoing text with any followed link replaced
    reply: ReferenceChain | None = None
    link: ReferenceChain | None = None
    reply_is_personality: bool = False
    reply_personality: Personality | None = None


def parse_message_link(text: str) -> MessageRef | None:
    """First transport message link in ``text``, if any."""
    match = MESSAGE_LINK_PATTERN.search(text or "")
    if match is None:
        return None
    guild_id, channel_id, message_id = match.groups()
    return MessageRef(guild_id=guild_id, channel_id=channel_id, message_id=message_id)


def embed_lines(embed: Embed) -> list[str]:
    lines = []
    if embed.title:
        lines.append(f"[Embed Title: {embed.title}]")
    if embed.description:
        lines.append(f"[Embed Description: {embed.description}]")
    for field in embed.fields:
        lines.append(f"[Embed Field - {field.name}: {field.value}]")
    return lines


def truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit].rstrip() + "..."


class ReferenceResolver:
    """Rebuild replied-to and linked messages as ``ReferenceChain`` values.

    Attributes:
        transport: Fetches messages and checks guild reachability.
        directory: Resolves personality names found on webhooks and DM transcripts.
        conversations: Attribution of our own recent webhook posts.
        proxy_detector: Tells our own webhooks apart from everyone else's.
        nested_preview_chars: Length cap on the earlier-message annotation.
        link_placeholder: Replacement for a followed link in outgoing text.
    """

    def __init__(
        self,
        transport: MessageTransport,
        directory: PersonalityDirectory,
        conversations: ConversationTracker,
        proxy_detector: ProxyWebhookDetector,
        nested_preview_chars: int = 200,
        link_placeholder: str = "[Discord message link]",
    ) -> None:
        self.transport = transport
        self.directory = directory
        self.conversations = conversations
        self.proxy_detector = proxy_detector
        self.nested_preview_chars = nested_preview_chars
        self.link_placeholder = link_placeholder

    async def resolve(
        self,
        message: InboundMessage,
        addressed: bool,
        reply_target: InboundMessage | None = None,
    ) -> ResolvedReferences:
        """Gather reply and link context for ``message``.

        Args:
            message: The inbound message.
            addressed: Whether the message is already addressed to a
                personality (mention, active or activated conversation).
                Links are only followed when it is, or when it replies to a
                personality.
            reply_target: The replied-to message when the caller already
                fetched it with ``fetch_reply_target``.
        """
        result = ResolvedReferences(content=message.content)

        if message.reference is not None:
            fetched = await self._fetch_chain(self._reply_ref(message), reply_target)
            if fetched is not None:
                result.reply, result.reply_personality = fetched
                result.reply_is_personality = result.reply.is_from_personality

        link = parse_message_link(message.content)
        if link is None or not (addressed or result.reply_is_personality):
            return result

        extra_links = len(MESSAGE_LINK_PATTERN.findall(message.content)) - 1
        if extra_links:
            log.info("extra_message_links_ignored", message_id=message.id, count=extra_links)

        result.content = MESSAGE_LINK_PATTERN.sub(
            self.link_placeholder, message.content, count=1
        ).strip()

        if not await self._guild_reachable(link.guild_id):
            log.warning("linked_guild_unreachable", guild_id=link.guild_id)
            return result

        fetched = await self._fetch_chain(link)
        if fetched is not None:
            result.link = fetched[0]
        return result

    async def fetch_reply_target(self, message: InboundMessage) -> InboundMessage | None:
        """The message ``message`` replies to, or None if there is none or it is gone."""
        if message.reference is None:
            return None
        return await self._fetch(self._reply_ref(message))

    async def reply_personality(
        self, message: InboundMessage, target: InboundMessage | None = None
    ) -> Personality | None:
        """Personality that wrote the message being replied to, if any.

        Only the direct reply target is looked at; nothing is nested or
        spliced. ``target`` skips the fetch when it is already at hand.
        """
        if target is None:
            target = await self.fetch_reply_target(message)
        if target is None:
            return None
        _, personality = await self.extract(target)
        return personality

    async def extract(self, message: InboundMessage) -> tuple[ReferenceChain, Personality | None]:
        """Build a chain from one fetched message, without following its reference."""
        content = message.content
        personality = None
        personality_id = None

        if self._is_our_webhook(message):
            personality = await self._personality_for_webhook(message)
        elif message.is_dm and message.author_id == self.proxy_detector.bot_user_id:
            prefix = DM_PERSONALITY_PREFIX.match(content)
            if prefix is not None:
                name = prefix.group(1).strip()
                content = content[prefix.end():]
                personality = await self._lookup(name)
                personality_id = name

        if personality is not None:
            personality_id = personality.id
        from_personality = personality_id is not None

        lines = [content] if content else []
        media_urls: list[str] = []

        if not from_personality:
            media_urls.extend(MEDIA_MARKER_PATTERN.findall(content))
            for attachment in message.attachments:
                if attachment.is_image:
                    lines.append(f"[Image: {attachment.url}]")
                elif attachment.is_audio:
                    lines.append(f"[Audio: {attachment.url}]")
                else:
                    continue
                media_urls.append(attachment.url)

        for embed in message.embeds:
            lines.extend(embed_lines(embed))
            image = embed.image_url or embed.thumbnail_url
            if image and not from_personality:
                lines.append(f"[Image: {image}]")
                media_urls.append(image)

        if personality is not None:
            display_name = personality.label
        elif personality_id is not None:
            display_name = personality_id
        else:
            display_name = message.author_name or "another user"

        chain = ReferenceChain(
            content="\n".join(lines),
            author_id=message.author_id,
            author_display_name=display_name,
            is_from_bot=message.author_is_bot or message.is_webhook,
            personality_id=personality_id,
            media_urls=media_urls,
        )
        return chain, personality

    def _reply_ref(self, message: InboundMessage) -> MessageRef:
        ref = message.reference
        if not ref.channel_id:
            ref = ref.model_copy(update={"channel_id": message.channel_id})
        return ref

    async def _fetch_chain(
        self, ref: MessageRef, prefetched: InboundMessage | None = None
    ) -> tuple[ReferenceChain, Personality | None] | None:
        if prefetched is not None and prefetched.id == ref.message_id:
            fetched = prefetched
        else:
            fetched = await self._fetch(ref)
        if fetched is None:
            return None

        chain, personality = await self.extract(fetched)

        # One level of nesting only; the earlier message's own reference is not followed
        if fetched.reference is not None:
            nested_ref = fetched.reference
            if not nested_ref.channel_id:
                nested_ref = nested_ref.model_copy(update={"channel_id": fetched.channel_id})
            nested_message = await self._fetch(nested_ref)
            if nested_message is not None:
                nested, _ = await self.extract(nested_message)
                preview = truncate(
                    " ".join(nested.content.split()), self.nested_preview_chars
                )
                annotation = f"[earlier message from {nested.author_display_name}: {preview}]"
                chain = chain.model_copy(
                    update={
                        "nested_reference": nested,
                        "content": f"{annotation}\n{chain.content}" if chain.content else annotation,
                    }
                )

        return chain, personality

    async def _fetch(self, ref: MessageRef) -> InboundMessage | None:
        try:
            return await self.transport.fetch_message(ref.channel_id, ref.message_id)
        except (NotFoundError, TransportError) as e:
            log.warning(
                "reference_fetch_failed",
                channel_id=ref.channel_id,
                message_id=ref.message_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            return None

    async def _guild_reachable(self, guild_id: str | None) -> bool:
        if guild_id is None:
            return True
        try:
            return await self.transport.fetch_guild(guild_id)
        except TransportError as e:
            log.warning("guild_fetch_failed", guild_id=guild_id, error=str(e))
            return False

    def _is_our_webhook(self, message: InboundMessage) -> bool:
        if not message.is_webhook:
            return False
        if self.proxy_detector.bot_user_id is None:
            return not self.proxy_detector.is_proxy_system_webhook(message)
        return self.proxy_detector.is_own_webhook(message)

    async def _personality_for_webhook(self, message: InboundMessage) -> Personality | None:
        personality_id = self.conversations.personality_for_message(message.id)
        if personality_id is not None:
            personality = await self.directory.get_by_name(personality_id)
            if personality is not None:
                return personality
        if message.author_name:
            return await self._lookup(message.author_name)
        return None

    async def _lookup(self, name: str) -> Personality | None:
        personality = await self.directory.get_by_name(name)
        if personality is None:
            personality = await self.directory.get_by_alias(None, name)
        return personality
