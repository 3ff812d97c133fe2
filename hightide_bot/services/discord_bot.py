from __future__ import annotations

from typing import Optional

import discord
import structlog
from discord import app_commands

from ..config import BotSettings
from ..errors import PermissionBotError
from ..models import Actor
from ..utils.duration import humanize_ms, pretty_duration
from .coordinator import PermissionCoordinator

logger = structlog.get_logger(__name__)

MESSAGE_PREVIEW = 500


def actor_from_interaction(interaction: discord.Interaction) -> Actor:
    roles = getattr(interaction.user, "roles", [])
    return Actor(
        user_id=str(interaction.user.id),
        role_ids=frozenset(str(role.id) for role in roles),
    )


class HighTideDiscordApp:
    """
    discord.py front end for the permission coordinator.

    - ``/authcodegen``, ``/serverpermissions`` and ``/revokepermissions`` map to
      the coordinator's command entry points.
    - Messages and voice-state changes of elevated members are mirrored to the
      special activity log.
    """

    def __init__(self, settings: BotSettings, coordinator: Optional[PermissionCoordinator] = None) -> None:
        self._settings = settings
        intents = discord.Intents.default()
        intents.members = True
        intents.message_content = True
        intents.voice_states = True
        self.client = discord.Client(intents=intents)
        self.tree = app_commands.CommandTree(self.client)
        self.coordinator = coordinator or PermissionCoordinator(settings)
        self._guild = discord.Object(id=int(settings.discord.guild_id))
        self._register_commands()
        self._register_events()

    def _register_commands(self) -> None:
        guild = self._guild

        @self.tree.command(
            name="authcodegen",
            description="Generate a 1-minute one-time authorization code (restricted).",
            guild=guild,
        )
        @app_commands.describe(reason="Reason (required)")
        async def authcodegen(interaction: discord.Interaction, reason: str) -> None:
            await self._run_command(interaction, "authcodegen", self._generate_code(interaction, reason))

        @self.tree.command(
            name="serverpermissions",
            description="Grant temporary special permissions (requires auth code).",
            guild=guild,
        )
        @app_commands.describe(
            userid="Discord User ID to receive the special role",
            authcode="Authorization code (expires after 1 minute)",
            reason="Reason (required)",
            time="Time: 10s, 10m, 2h, 4d",
        )
        async def serverpermissions(
            interaction: discord.Interaction, userid: str, authcode: str, reason: str, time: str
        ) -> None:
            await self._run_command(
                interaction,
                "serverpermissions",
                self._grant(interaction, userid, authcode, reason, time),
            )

        @self.tree.command(
            name="revokepermissions",
            description="Revoke the special role early.",
            guild=guild,
        )
        @app_commands.describe(
            userid="Discord User ID to revoke the special role from",
            reason="Reason (required)",
        )
        async def revokepermissions(interaction: discord.Interaction, userid: str, reason: str) -> None:
            await self._run_command(interaction, "revokepermissions", self._revoke(interaction, userid, reason))

    async def _run_command(self, interaction: discord.Interaction, name: str, handler) -> None:
        structlog.contextvars.bind_contextvars(command=name, actor=str(interaction.user.id))
        try:
            # role and REST calls can outlast the 3s interaction window
            try:
                await interaction.response.defer(ephemeral=True, thinking=True)
            except discord.HTTPException as exc:
                handler.close()
                logger.error("command_defer_failed", error=str(exc))
                return
            try:
                reply = await handler
            except PermissionBotError as exc:
                reply = f"❌ {exc}"
            except Exception as exc:  # pylint: disable=broad-except
                logger.error("command_failed", error=str(exc))
                reply = "❌ Something went wrong. Check the bot logs."
            try:
                await interaction.followup.send(reply, ephemeral=True)
            except discord.HTTPException as exc:
                logger.error("command_reply_failed", error=str(exc))
        finally:
            structlog.contextvars.unbind_contextvars("command", "actor")

    async def _generate_code(self, interaction: discord.Interaction, reason: str) -> str:
        code = await self.coordinator.generate_code(actor_from_interaction(interaction), reason)
        ttl = humanize_ms(self.coordinator.codes.ttl_ms)
        return f"🔑 Authorization code: `{code}` (valid for {ttl}, single use)"

    async def _grant(
        self, interaction: discord.Interaction, userid: str, authcode: str, reason: str, time: str
    ) -> str:
        grant = await self.coordinator.grant_permissions(
            actor_from_interaction(interaction), userid, authcode, reason, time
        )
        return (
            f"✅ <@{grant.user_id}> has the special role for {pretty_duration(time)} "
            f"(expires <t:{grant.expires_at // 1000}:R>)."
        )

    async def _revoke(self, interaction: discord.Interaction, userid: str, reason: str) -> str:
        removed = await self.coordinator.revoke_permissions(actor_from_interaction(interaction), userid, reason)
        if removed is None:
            return f"ℹ️ <@{userid}> had no active grant; role removal was attempted anyway."
        return f"🗑 Special permissions revoked for <@{userid}>."

    def _holds_special_role(self, user: discord.abc.User) -> Optional[bool]:
        """Role flag from a gateway member; ``None`` when only a plain user is known."""
        if not isinstance(user, discord.Member):
            return None
        role_id = int(self._settings.roles.special_role_id)
        return user.get_role(role_id) is not None

    def _register_events(self) -> None:
        self.client.event(self.on_ready)
        self.client.event(self.on_message)
        self.client.event(self.on_voice_state_update)

    async def on_ready(self) -> None:
        logger.info("discord_ready", user=str(self.client.user))

    async def on_message(self, message: discord.Message) -> None:
        if message.author.bot or message.guild is None or message.guild.id != self._guild.id:
            return
        await self.coordinator.record_activity(
            str(message.author.id),
            "Message sent",
            {
                "Channel": f"<#{message.channel.id}>",
                "Content": (message.content or "(no text)")[:MESSAGE_PREVIEW],
                "Attachments": len(message.attachments),
            },
            has_role=self._holds_special_role(message.author),
        )

    async def on_voice_state_update(
        self,
        member: discord.Member,
        before: discord.VoiceState,
        after: discord.VoiceState,
    ) -> None:
        if member.bot or member.guild.id != self._guild.id or before.channel == after.channel:
            return
        if after.channel is None:
            title, channel = "Left voice channel", before.channel
        elif before.channel is None:
            title, channel = "Joined voice channel", after.channel
        else:
            title, channel = "Moved voice channel", after.channel
        await self.coordinator.record_activity(
            str(member.id),
            title,
            {"Channel": f"<#{channel.id}>"},
            has_role=self._holds_special_role(member),
        )

    async def run(self) -> None:
        await self.coordinator.start()
        try:
            async with self.client:
                await self.client.login(self._settings.discord.token)
                if self._settings.discord.sync_commands:
                    synced = await self.tree.sync(guild=self._guild)
                    logger.info("commands_synced", count=len(synced))
                await self.client.connect()
        finally:
            await self.coordinator.shutdown()
