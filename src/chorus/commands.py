"""Discord slash commands for Chorus.

User commands manage conversation state and NSFW verification. Operator
commands manage the blacklist. All responses are ephemeral.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import discord
from discord import app_commands
from discord.ext import commands

from chorus.gateway import channel_kind_of
from chorus.logging import get_logger
from chorus.models import ChannelKind

if TYPE_CHECKING:
    from chorus.gateway import ChorusBot

log = get_logger("commands")


class ChorusCommands(commands.Cog):
    """Slash commands for users and operators."""

    def __init__(self, bot: ChorusBot) -> None:
        self.bot = bot
        self.config = bot.config

    def is_operator(self, interaction: discord.Interaction) -> bool:
        return str(interaction.user.id) in self.config.discord.operator_user_ids

    def can_manage_channel(self, interaction: discord.Interaction) -> bool:
        """Operators, or members allowed to manage messages in the channel."""
        if self.is_operator(interaction):
            return True
        permissions = getattr(interaction, "permissions", None)
        return bool(permissions and permissions.manage_messages)

    async def reject(self, interaction: discord.Interaction, reason: str) -> None:
        await interaction.response.send_message(
            "You are not allowed to use this command here.", ephemeral=True
        )
        log.info(
            "command_rejected",
            command=interaction.command.name if interaction.command else "unknown",
            user=str(interaction.user),
            reason=reason,
        )

    # -------------------------------------------------------------------------
    # Conversation state
    # -------------------------------------------------------------------------

    @app_commands.command(name="activate", description="Have a personality answer every message here")
    @app_commands.describe(personality="Personality name or alias")
    async def activate(self, interaction: discord.Interaction, personality: str) -> None:
        if not self.can_manage_channel(interaction):
            await self.reject(interaction, "missing_manage_messages")
            return

        found = await self.bot.directory.get_by_name(personality)
        if found is None:
            found = await self.bot.directory.get_by_alias(str(interaction.user.id), personality)
        if found is None:
            await interaction.response.send_message(
                f"No personality named `{personality}`.", ephemeral=True
            )
            return

        channel_id = str(interaction.channel_id)
        self.bot.conversations.activate_channel(channel_id, found.id)
        await interaction.response.send_message(
            f"**{found.label}** is now active in this channel.", ephemeral=True
        )

    @app_commands.command(name="deactivate", description="Stop the active personality in this channel")
    async def deactivate(self, interaction: discord.Interaction) -> None:
        if not self.can_manage_channel(interaction):
            await self.reject(interaction, "missing_manage_messages")
            return

        removed = self.bot.conversations.deactivate_channel(str(interaction.channel_id))
        text = "Personality deactivated." if removed else "No personality is active here."
        await interaction.response.send_message(text, ephemeral=True)

    @app_commands.command(name="reset", description="End your conversation in this channel")
    async def reset(self, interaction: discord.Interaction) -> None:
        cleared = self.bot.conversations.clear_conversation(
            str(interaction.user.id), str(interaction.channel_id)
        )
        text = "Conversation reset." if cleared else "You have no active conversation here."
        await interaction.response.send_message(text, ephemeral=True)
        log.info("conversation_reset", user=str(interaction.user), cleared=cleared)

    # -------------------------------------------------------------------------
    # Authorization
    # -------------------------------------------------------------------------

    @app_commands.command(name="verify", description="Verify NSFW access (run in an NSFW channel)")
    async def verify(self, interaction: discord.Interaction) -> None:
        """NSFW verification is granted by running this in a channel marked NSFW."""
        channel = interaction.channel
        is_nsfw = bool(channel is not None and getattr(channel, "is_nsfw", lambda: False)())
        if channel_kind_of(channel) == ChannelKind.DM or not is_nsfw:
            await interaction.response.send_message(
                "Run this command in a channel marked NSFW to verify.", ephemeral=True
            )
            return

        result = await self.bot.auth_service.verify_nsfw(str(interaction.user.id))
        if result.ok:
            text = "NSFW access verified. Personalities can now answer you in DMs."
        else:
            text = f"Verification failed: {result.error}"
        await interaction.response.send_message(text, ephemeral=True)

    @app_commands.command(name="auth-status", description="Show your authorization status")
    async def auth_status(self, interaction: discord.Interaction) -> None:
        status = await self.bot.auth_service.status(str(interaction.user.id))
        if not status["exists"]:
            lines = ["You are not authenticated."]
        else:
            lines = [
                f"Authenticated: {'Yes' if status['authenticated'] else 'No'}",
                f"NSFW verified: {'Yes' if status['nsfw_verified'] else 'No'}",
            ]
            if status["blacklisted"]:
                lines.append("Blacklisted: Yes")
            if status.get("needs_refresh"):
                lines.append("Your token expires soon.")
        await interaction.response.send_message("\n".join(lines), ephemeral=True)

    @app_commands.command(name="blacklist", description="Blacklist a user (operators only)")
    @app_commands.describe(user="User to blacklist", reason="Why")
    async def blacklist(
        self, interaction: discord.Interaction, user: discord.User, reason: str
    ) -> None:
        if not self.is_operator(interaction):
            await self.reject(interaction, "not_operator")
            return

        result = await self.bot.auth_service.blacklist(str(user.id), reason)
        text = f"{user} blacklisted." if result.ok else f"Failed: {result.error}"
        await interaction.response.send_message(text, ephemeral=True)

    @app_commands.command(name="unblacklist", description="Lift a blacklist (operators only)")
    @app_commands.describe(user="User to unblacklist")
    async def unblacklist(self, interaction: discord.Interaction, user: discord.User) -> None:
        if not self.is_operator(interaction):
            await self.reject(interaction, "not_operator")
            return

        result = await self.bot.auth_service.unblacklist(str(user.id))
        text = f"{user} unblacklisted." if result.ok else f"Failed: {result.error}"
        await interaction.response.send_message(text, ephemeral=True)
