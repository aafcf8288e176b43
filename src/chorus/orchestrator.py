"""Per-message routing pipeline.

``InteractionOrchestrator.handle_inbound_event`` takes one inbound message
and decides what happens to it: ignored, suppressed as a proxy duplicate,
refused by authorization, or dispatched to a personality with its reply and
link context attached. Every message ends in exactly one ``Outcome``.

Pipeline:
    1. Work out who really sent the message (proxy webhooks map back to a user)
    2. Ignore our own posts, other bots and webhooks we don't recognize
    3. Suppress near duplicates of messages already handled
    4. Pick the personality: reply target, mention, active conversation,
       then activated channel
    5. Outside DMs, wait out the proxy delay and re-fetch the message
    6. Resolve reply and link context
    7. Authorize, then dispatch

Refused interactions and activated personalities in channels that are not
marked NSFW get a short notice in the channel, so the user is not left
guessing. The NSFW restriction notice is sent at most once per interval per
channel.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Mapping
from datetime import datetime, timedelta
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from chorus.config import DEFAULT_DENIAL_NOTICES, DEFAULT_RESTRICTION_NOTICE
from chorus.conversations import ConversationTracker
from chorus.dedup import ProxyDuplicateDetector
from chorus.errors import NotFoundError, TransportError
from chorus.gate import AuthorizationGate
from chorus.logging import get_logger
from chorus.mentions import MentionResolver
from chorus.models import AuthContext, ChannelKind, InboundMessage, Personality, utcnow
from chorus.proxy import ProxyWebhookDetector, WebhookUserTracker, looks_like_proxy_trigger
from chorus.references import ReferenceResolver, ResolvedReferences, parse_message_link
from chorus.repositories import PersonalityDirectory

log = get_logger("orchestrator")


# =============================================================================
# Collaborator Interfaces
# =============================================================================


class MessageTransport(ABC):
    """Chat transport primitives the core needs."""

    @abstractmethod
    async def fetch_message(self, channel_id: str, message_id: str) -> InboundMessage:
        """Fetch a message by channel and id.

        Raises:
            NotFoundError: The message is gone or not visible to us.
            TransportError: The fetch failed for infrastructure reasons.
        """
        ...

    @abstractmethod
    async def fetch_guild(self, guild_id: str) -> bool:
        """Whether the guild is reachable by the bot."""
        ...

    @abstractmethod
    async def send_notice(self, channel_id: str, text: str) -> None:
        """Post a plain system notice to a channel."""
        ...


class ResponseDispatcher(ABC):
    """Hands an authorized interaction to the responder side."""

    @abstractmethod
    async def dispatch(
        self,
        message: InboundMessage,
        personality: Personality,
        resolved: ResolvedReferences,
        auth_context: AuthContext,
    ) -> list[str]:
        """Deliver the interaction.

        Returns:
            Ids of messages posted on the personality's behalf, so replies
            to them can be routed back.
        """
        ...


class LoggingDispatcher(ResponseDispatcher):
    """Dispatcher that only records the interaction in the log."""

    async def dispatch(
        self,
        message: InboundMessage,
        personality: Personality,
        resolved: ResolvedReferences,
        auth_context: AuthContext,
    ) -> list[str]:
        log.info(
            "interaction_ready",
            message_id=message.id,
            channel_id=message.channel_id,
            personality=personality.id,
            has_reply=resolved.reply is not None,
            has_link=resolved.link is not None,
            content_length=len(resolved.content),
        )
        return []


# =============================================================================
# Outcomes
# =============================================================================


class _OutcomeBase(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    message_id: str


class Ignored(_OutcomeBase):
    kind: Literal["ignored"] = "ignored"
    reason: str


class Suppressed(_OutcomeBase):
    kind: Literal["suppressed"] = "suppressed"
    reason: str


class Unauthorized(_OutcomeBase):
    kind: Literal["unauthorized"] = "unauthorized"
    reason: str
    personality_id: str


class Dispatched(_OutcomeBase):
    kind: Literal["dispatched"] = "dispatched"
    personality: Personality
    resolved_content: ResolvedReferences
    identity: str


class Failed(_OutcomeBase):
    kind: Literal["failed"] = "failed"
    error: str


Outcome = Annotated[
    Union[Ignored, Suppressed, Unauthorized, Dispatched, Failed],
    Field(discriminator="kind"),
]


# =============================================================================
# Orchestrator
# =============================================================================


class InteractionOrchestrator:
    """Drive one inbound message through dedup, routing and authorization.

    Attributes:
        bot_user_id: Our own user id; messages from it are ignored.
        command_prefix: Messages starting with this are left to the command layer.
        proxy_delay: Seconds to wait outside DMs for a proxy system to act.
        failure_notice: Text posted to the channel when handling fails.
        denial_notices: Text posted when authorization refuses, by denial reason.
        restriction_notice: Text posted when an activated personality is used
            in a channel that is neither a DM nor marked NSFW.
        restriction_notice_interval: Minimum gap between restriction notices
            in one channel.
    """

    def __init__(
        self,
        *,
        transport: MessageTransport,
        dispatcher: ResponseDispatcher,
        directory: PersonalityDirectory,
        detector: ProxyDuplicateDetector,
        proxy_detector: ProxyWebhookDetector,
        webhook_users: WebhookUserTracker,
        mentions: MentionResolver,
        conversations: ConversationTracker,
        references: ReferenceResolver,
        gate: AuthorizationGate,
        command_prefix: str | None = None,
        proxy_delay: float = 2.0,
        failure_notice: str = "Sorry, something went wrong while handling that message.",
        denial_notices: Mapping[str, str] | None = None,
        restriction_notice: str = DEFAULT_RESTRICTION_NOTICE,
        restriction_notice_interval: timedelta = timedelta(hours=1),
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.transport = transport
        self.dispatcher = dispatcher
        self.directory = directory
        self.detector = detector
        self.proxy_detector = proxy_detector
        self.webhook_users = webhook_users
        self.mentions = mentions
        self.conversations = conversations
        self.references = references
        self.gate = gate
        self.command_prefix = command_prefix
        self.proxy_delay = proxy_delay
        self.failure_notice = failure_notice
        self.denial_notices = dict(
            DEFAULT_DENIAL_NOTICES if denial_notices is None else denial_notices
        )
        self.restriction_notice = restriction_notice
        self.restriction_notice_interval = restriction_notice_interval
        self.clock = clock
        self._sleep = sleep
        self._pending: dict[str, asyncio.Task] = {}
        self._restriction_notified: dict[str, datetime] = {}

    @property
    def bot_user_id(self) -> str | None:
        return self.proxy_detector.bot_user_id

    @property
    def pending(self) -> list[str]:
        """Message ids currently waiting out the proxy delay."""
        return list(self._pending)

    def cancel_pending(self, message_id: str) -> bool:
        """Abandon a message that is waiting out the proxy delay.

        Returns:
            True if a pending wait was cancelled.
        """
        task = self._pending.get(message_id)
        if task is None or task.done():
            return False
        task.cancel()
        log.debug("pending_interaction_cancelled", message_id=message_id)
        return True

    async def handle_inbound_event(self, message: InboundMessage) -> Outcome:
        """Route one message. Never raises except on cancellation."""
        try:
            outcome = await self._handle(message)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.exception(
                "interaction_failed",
                message_id=message.id,
                channel_id=message.channel_id,
                error_type=type(e).__name__,
            )
            await self._send_notice(message.channel_id, self.failure_notice, "failure")
            return Failed(message_id=message.id, error=str(e) or type(e).__name__)

        log.debug("interaction_outcome", message_id=message.id, outcome=outcome.kind)
        return outcome

    async def _handle(self, message: InboundMessage) -> Outcome:
        is_proxy = False

        # Step 1-2: who sent it, and do we listen to them at all
        if message.is_webhook:
            if self.proxy_detector.is_own_webhook(message):
                return Ignored(message_id=message.id, reason="own_webhook")
            if not self.proxy_detector.is_proxy_system_webhook(message):
                return Ignored(message_id=message.id, reason="unknown_webhook")
            is_proxy = True
            source = self.detector.find_source(message.channel_id, message.id, message.content)
            if source is not None and source.author_id is not None:
                self.webhook_users.associate(message.webhook_id, source.author_id)
            self.detector.track(message.channel_id, message.id, message.content)
            self.detector.mark_handled(message.channel_id, message.id)
        elif self.bot_user_id is not None and message.author_id == self.bot_user_id:
            return Ignored(message_id=message.id, reason="own_message")
        elif message.author_is_bot:
            return Ignored(message_id=message.id, reason="bot_message")
        else:
            self.detector.track(
                message.channel_id, message.id, message.content, author_id=message.author_id
            )

        identity = self.webhook_users.real_user_id(message) if is_proxy else message.author_id

        # Step 3
        if self.detector.is_near_duplicate(message.channel_id, message.id, message.content):
            return Suppressed(message_id=message.id, reason="near_duplicate")

        if self.command_prefix and message.content.startswith(self.command_prefix):
            return Ignored(message_id=message.id, reason="command")

        # Step 4
        reply_target = await self.references.fetch_reply_target(message)
        routed = await self._route(message, identity, reply_target)
        if isinstance(routed, Ignored):
            return routed
        personality = routed

        auth_context = self._auth_context(message, is_proxy, personality)

        # Step 5
        if not message.is_dm:
            current = await self._wait_for_proxy(message)
            if not isinstance(current, InboundMessage):
                return current
            if self.detector.is_near_duplicate(current.channel_id, current.id, current.content):
                return Suppressed(message_id=message.id, reason="near_duplicate")
        else:
            current = message

        # Step 6
        resolved = await self.references.resolve(
            current, addressed=True, reply_target=reply_target
        )

        # Step 7
        decision = await self.gate.authorize(identity, personality, auth_context)
        if not decision.allowed:
            reason = decision.reason.value if decision.reason else "denied"
            notice = self.denial_notices.get(reason)
            if notice:
                await self._send_notice(message.channel_id, notice, "denial")
            return Unauthorized(
                message_id=message.id,
                reason=reason,
                personality_id=personality.id,
            )

        self.detector.mark_handled(current.channel_id, current.id)
        self.conversations.record_conversation(
            identity, current.channel_id, personality.id, is_dm=current.is_dm
        )

        sent_ids = await self.dispatcher.dispatch(current, personality, resolved, auth_context)
        for sent_id in sent_ids or []:
            self.conversations.record_sent(sent_id, personality.id)

        log.info(
            "interaction_dispatched",
            message_id=message.id,
            channel_id=message.channel_id,
            personality=personality.id,
            identity=identity,
            proxy=is_proxy,
        )
        return Dispatched(
            message_id=message.id,
            personality=personality,
            resolved_content=resolved,
            identity=identity,
        )

    async def _route(
        self,
        message: InboundMessage,
        identity: str,
        reply_target: InboundMessage | None,
    ) -> Personality | Ignored:
        """Pick the addressed personality, highest priority first.

        An ongoing conversation outranks the channel's activated personality,
        so a user already talking to one personality keeps talking to it.
        """
        if reply_target is not None:
            replied = await self.references.reply_personality(message, reply_target)
            if replied is not None:
                log.debug("routed_by_reply", message_id=message.id, personality=replied.id)
                return replied

        mention = await self.mentions.resolve_personality(message.content, identity)
        if mention is not None:
            return mention[1]

        activated_id = self.conversations.activated_personality(message.channel_id)

        if message.reference is not None and activated_id is None:
            if parse_message_link(message.content) is None:
                # Replying to someone else without addressing a personality
                return Ignored(message_id=message.id, reason="reply_to_non_personality")

        active_id = self.conversations.active_personality(
            identity, message.channel_id, is_dm=message.is_dm
        )
        if active_id is not None:
            personality = await self.directory.get_by_name(active_id)
            if personality is not None:
                return personality

        if activated_id is not None:
            if not (message.is_dm or message.is_nsfw_channel):
                log.info(
                    "activated_channel_not_nsfw",
                    channel_id=message.channel_id,
                    personality=activated_id,
                )
                await self._notify_restriction(message.channel_id)
                return Ignored(message_id=message.id, reason="activated_channel_not_nsfw")
            personality = await self.directory.get_by_name(activated_id)
            if personality is not None:
                return personality

        return Ignored(message_id=message.id, reason="not_addressed")

    async def _wait_for_proxy(self, message: InboundMessage) -> InboundMessage | Suppressed:
        """Give a proxy system time to replace the message, then re-fetch it."""
        if looks_like_proxy_trigger(message.content):
            log.debug("deferring_possible_proxy_trigger", message_id=message.id)

        waiter = asyncio.ensure_future(self._sleep(self.proxy_delay))
        self._pending[message.id] = waiter
        try:
            await asyncio.wait({waiter})
        finally:
            self._pending.pop(message.id, None)
            if not waiter.done():
                waiter.cancel()

        if waiter.cancelled():
            return Suppressed(message_id=message.id, reason="cancelled")

        try:
            return await self.transport.fetch_message(message.channel_id, message.id)
        except NotFoundError:
            log.info("message_deleted_during_delay", message_id=message.id)
            return Suppressed(message_id=message.id, reason="deleted_by_proxy")
        except TransportError as e:
            log.warning("refetch_failed", message_id=message.id, error=str(e))
            return message

    def _auth_context(
        self, message: InboundMessage, is_proxy: bool, personality: Personality
    ) -> AuthContext:
        return AuthContext(
            channel_kind=message.channel_kind,
            channel_id=message.channel_id,
            is_nsfw_channel=message.is_nsfw_channel and message.channel_kind != ChannelKind.DM,
            is_proxy_message=is_proxy,
            requested_personality_id=personality.id,
        )

    async def _notify_restriction(self, channel_id: str) -> None:
        now = self.clock()
        last = self._restriction_notified.get(channel_id)
        if last is not None and now - last < self.restriction_notice_interval:
            return
        self._restriction_notified[channel_id] = now
        await self._send_notice(channel_id, self.restriction_notice, "nsfw_restriction")

    async def _send_notice(self, channel_id: str, text: str, kind: str) -> None:
        """Post a notice to the channel. Failures are logged, never raised."""
        try:
            await self.transport.send_notice(channel_id, text)
        except Exception as e:
            log.warning("notice_not_sent", channel_id=channel_id, kind=kind, error=str(e))
