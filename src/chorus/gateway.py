"""Discord gateway adapter for Chorus.

Connects to Discord with discord.py, turns gateway messages into
``InboundMessage`` snapshots and hands them to the orchestrator. Also runs
the periodic sweep that keeps the in-memory windows bounded.

The adapter is deliberately thin. Everything that decides what happens to a
message lives in the orchestrator and can be tested without a gateway.
"""

from __future__ import annotations

import asyncio
import signal
from typing import TYPE_CHECKING

import discord
from discord.ext import commands, tasks
from sqlalchemy.engine import Engine

from chorus.conversations import ConversationTracker
from chorus.dedup import ProxyDuplicateDetector
from chorus.errors import NotFoundError, TransportError
from chorus.gate import AuthorizationGate
from chorus.identity import AuthenticationService
from chorus.logging import get_logger
from chorus.mentions import MentionResolver
from chorus.models import (
    Attachment,
    ChannelKind,
    Embed,
    EmbedField,
    InboundMessage,
    MessageRef,
)
from chorus.orchestrator import (
    InteractionOrchestrator,
    LoggingDispatcher,
    MessageTransport,
    ResponseDispatcher,
)
from chorus.proxy import ProxyWebhookDetector, WebhookUserTracker
from chorus.references import ReferenceResolver
from chorus.repositories import (
    AuthenticationRepository,
    InMemoryAuthenticationRepository,
    InMemoryPersonalityDirectory,
    PersonalityDirectory,
    SqlAuthenticationRepository,
    SqlPersonalityDirectory,
)

if TYPE_CHECKING:
    from chorus.config import Config

log = get_logger("gateway")


# =============================================================================
# Message Conversion
# =============================================================================


def channel_kind_of(channel: object) -> ChannelKind:
    if isinstance(channel, (discord.DMChannel, discord.GroupChannel)):
        return ChannelKind.DM
    if isinstance(channel, discord.Thread):
        return ChannelKind.THREAD
    return ChannelKind.GUILD


def _is_nsfw(channel: object) -> bool:
    is_nsfw = getattr(channel, "is_nsfw", None)
    return bool(is_nsfw()) if callable(is_nsfw) else False


def _convert_embed(embed: discord.Embed) -> Embed:
    return Embed(
        title=embed.title,
        description=embed.description,
        url=embed.url,
        image_url=embed.image.url if embed.image else None,
        thumbnail_url=embed.thumbnail.url if embed.thumbnail else None,
        fields=[
            EmbedField(name=str(field.name or ""), value=str(field.value or ""))
            for field in embed.fields
        ],
    )


def to_inbound_message(message: discord.Message) -> InboundMessage:
    """Snapshot a discord.py message for the routing core."""
    reference = None
    if message.reference is not None and message.reference.message_id is not None:
        reference = MessageRef(
            message_id=str(message.reference.message_id),
            channel_id=str(message.reference.channel_id or message.channel.id),
            guild_id=str(message.reference.guild_id) if message.reference.guild_id else None,
        )

    application_id = getattr(message, "application_id", None)

    return InboundMessage(
        id=str(message.id),
        channel_id=str(message.channel.id),
        guild_id=str(message.guild.id) if message.guild else None,
        channel_kind=channel_kind_of(message.channel),
        is_nsfw_channel=_is_nsfw(message.channel),
        author_id=str(message.author.id),
        author_name=message.author.name or "",
        author_is_bot=message.author.bot,
        webhook_id=str(message.webhook_id) if message.webhook_id else None,
        application_id=str(application_id) if application_id else None,
        content=message.content or "",
        reference=reference,
        attachments=[
            Attachment(url=a.url, content_type=a.content_type, filename=a.filename)
            for a in message.attachments
        ],
        embeds=[_convert_embed(e) for e in message.embeds],
        created_at=message.created_at,
    )


class DiscordTransport(MessageTransport):
    """``MessageTransport`` backed by a discord.py client."""

    def __init__(self, client: discord.Client) -> None:
        self.client = client

    async def _channel(self, channel_id: str):
        channel = self.client.get_channel(int(channel_id))
        if channel is not None:
            return channel
        try:
            return await self.client.fetch_channel(int(channel_id))
        except (discord.NotFound, discord.Forbidden) as e:
            raise NotFoundError(f"Channel {channel_id} is not accessible") from e
        except discord.HTTPException as e:
            raise TransportError(f"Failed to fetch channel {channel_id}: {e}") from e

    async def fetch_message(self, channel_id: str, message_id: str) -> InboundMessage:
        channel = await self._channel(channel_id)
        if not hasattr(channel, "fetch_message"):
            raise NotFoundError(f"Channel {channel_id} has no messages")
        try:
            message = await channel.fetch_message(int(message_id))
        except (discord.NotFound, discord.Forbidden) as e:
            raise NotFoundError(f"Message {message_id} not found") from e
        except discord.HTTPException as e:
            raise TransportError(f"Failed to fetch message {message_id}: {e}") from e
        return to_inbound_message(message)

    async def fetch_guild(self, guild_id: str) -> bool:
        return self.client.get_guild(int(guild_id)) is not None

    async def send_notice(self, channel_id: str, text: str) -> None:
        channel = await self._channel(channel_id)
        try:
            await channel.send(text)
        except discord.HTTPException as e:
            raise TransportError(f"Failed to send notice to {channel_id}: {e}") from e


# =============================================================================
# Bot
# =============================================================================


class ChorusBot(commands.Bot):
    """Discord bot that routes messages to personalities.

    Builds the routing core from configuration: SQL-backed repositories when
    an engine is given, in-memory ones otherwise.

    Attributes:
        config: Application configuration.
        engine: SQLAlchemy engine, or None for an in-memory run.
        orchestrator: The per-message routing pipeline.
        auth_service: Command API used by the slash commands.
    """

    def __init__(
        self,
        config: Config,
        engine: Engine | None = None,
        dispatcher: ResponseDispatcher | None = None,
    ) -> None:
        intents = discord.Intents.default()
        intents.message_content = True  # Read message text for mentions
        intents.dm_messages = True

        super().__init__(command_prefix=config.discord.command_prefix, intents=intents)
        self.config = config
        self.engine = engine
        self._shutdown_requested = False

        self.auth_repository: AuthenticationRepository
        self.directory: PersonalityDirectory
        if engine is not None:
            self.auth_repository = SqlAuthenticationRepository(engine)
            self.directory = SqlPersonalityDirectory(engine)
        else:
            self.auth_repository = InMemoryAuthenticationRepository()
            self.directory = InMemoryPersonalityDirectory()

        self.auth_service = AuthenticationService(
            self.auth_repository,
            refresh_threshold=config.auth.token_refresh_threshold,
        )
        self.detector = ProxyDuplicateDetector.from_config(config.dedup)
        self.proxy_detector = ProxyWebhookDetector(
            bot_user_id=config.discord.bot_user_id,
            proxy_application_ids=config.discord.proxy_application_ids,
            proxy_system_names=config.discord.proxy_system_names,
        )
        self.webhook_users = WebhookUserTracker(
            ttl=config.conversations.webhook_association_ttl
        )
        self.conversations = ConversationTracker.from_config(config.conversations)
        self.transport = DiscordTransport(self)

        self.orchestrator = InteractionOrchestrator(
            transport=self.transport,
            dispatcher=dispatcher or LoggingDispatcher(),
            directory=self.directory,
            detector=self.detector,
            proxy_detector=self.proxy_detector,
            webhook_users=self.webhook_users,
            mentions=MentionResolver(
                self.directory,
                mention_char=config.messaging.mention_char,
                max_words=config.messaging.max_alias_word_count,
            ),
            conversations=self.conversations,
            references=ReferenceResolver(
                self.transport,
                self.directory,
                self.conversations,
                self.proxy_detector,
                nested_preview_chars=config.messaging.nested_preview_chars,
                link_placeholder=config.messaging.link_placeholder,
            ),
            gate=AuthorizationGate(
                self.auth_repository,
                require_authentication=config.auth.require_authentication,
            ),
            command_prefix=config.discord.command_prefix,
            proxy_delay=config.dedup.proxy_delay_seconds,
            failure_notice=config.discord.failure_notice,
            denial_notices=config.discord.denial_notices,
            restriction_notice=config.discord.restriction_notice,
            restriction_notice_interval=config.discord.restriction_notice_interval,
        )

    async def setup_hook(self) -> None:
        """Load the command cog and start the sweep loop."""
        from chorus.commands import ChorusCommands

        await self.add_cog(ChorusCommands(self))
        log.info("cog_loaded", cog="ChorusCommands")

        await self.tree.sync()
        log.info("commands_synced")

        interval = self.config.dedup.sweep_interval_seconds
        self.sweep_windows.change_interval(seconds=interval)
        self.sweep_windows.start()
        log.info("background_task_started", task="sweep_windows", interval_seconds=interval)

    async def on_ready(self) -> None:
        """Record our own user id so our posts and webhooks are recognized."""
        if self.user is not None and self.proxy_detector.bot_user_id is None:
            self.proxy_detector.bot_user_id = str(self.user.id)

        log.info(
            "discord_ready",
            user=str(self.user),
            guilds=len(self.guilds),
            bot_user_id=self.proxy_detector.bot_user_id,
        )

    async def on_disconnect(self) -> None:
        log.warning("discord_disconnected")

    async def on_resumed(self) -> None:
        log.info("discord_resumed")

    async def on_message(self, message: discord.Message) -> None:
        """Route every message through the orchestrator.

        discord.py runs each handler in its own task, so the proxy delay of
        one message never holds up another.
        """
        if self._shutdown_requested:
            return
        await self.orchestrator.handle_inbound_event(to_inbound_message(message))

    async def on_raw_message_delete(self, payload: discord.RawMessageDeleteEvent) -> None:
        """A message deleted while waiting out the proxy delay is abandoned."""
        self.orchestrator.cancel_pending(str(payload.message_id))

    @tasks.loop(seconds=60)  # Default, overridden in setup_hook
    async def sweep_windows(self) -> None:
        """Evict expired duplicate-window, conversation and webhook entries."""
        evicted = {
            "dedup": self.detector.sweep(),
            "conversations": self.conversations.sweep(),
            "webhook_users": self.webhook_users.sweep(),
            "proxy_webhooks": self.proxy_detector.sweep(),
        }
        if any(evicted.values()):
            log.debug("windows_swept", **evicted)

    @sweep_windows.before_loop
    async def before_sweep(self) -> None:
        await self.wait_until_ready()

    async def graceful_shutdown(self) -> None:
        """Stop taking messages, cancel pending delays, then disconnect."""
        log.info("shutdown_initiated")
        self._shutdown_requested = True

        if self.sweep_windows.is_running():
            self.sweep_windows.cancel()

        for message_id in self.orchestrator.pending:
            self.orchestrator.cancel_pending(message_id)

        await self.close()
        await asyncio.sleep(0)  # Allow pending aiohttp callbacks to finalize
        log.info("shutdown_complete")


def setup_signal_handlers(bot: ChorusBot, loop: asyncio.AbstractEventLoop) -> None:
    """Shut the bot down gracefully on SIGINT and SIGTERM."""

    def handle_signal(sig: signal.Signals) -> None:
        log.info("signal_received", signal=sig.name)
        loop.create_task(bot.graceful_shutdown())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda s=sig: handle_signal(s))

    log.debug("signal_handlers_registered", signals=["SIGINT", "SIGTERM"])


async def run_bot(config: Config, engine: Engine | None = None) -> None:
    """Run the bot until shutdown.

    Args:
        config: Application configuration with discord_token.
        engine: SQLAlchemy engine for persistent auth and personality data.
    """
    bot = ChorusBot(config, engine)
    loop = asyncio.get_running_loop()
    setup_signal_handlers(bot, loop)

    try:
        log.info("bot_starting")
        await bot.start(config.discord_token)  # type: ignore[arg-type]
    except asyncio.CancelledError:
        log.debug("bot_cancelled")
    finally:
        if not bot.is_closed():
            await bot.close()
