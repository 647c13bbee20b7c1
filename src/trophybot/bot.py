"""Discord client: slash commands, the channel gate, and embed delivery."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal

import discord
import structlog
from discord import app_commands

from trophybot.commands.context import CommandServices, Invocation
from trophybot.commands.registry import CommandKind, execute, is_gate_exempt
from trophybot.config import Settings
from trophybot.tracking.notifier import ChannelUnavailable, TrophyMessage
from trophybot.tracking.scheduler import SyncScheduler

logger = structlog.get_logger()

GATE_DENIED = "🔒 Commands are restricted to specific channels in this server."


def render_embed(message: TrophyMessage) -> discord.Embed:
    embed = discord.Embed(title=message.title, description=message.description, color=message.color)
    for item in message.fields:
        embed.add_field(name=item.name, value=item.value, inline=False)
    if message.thumbnail_url:
        embed.set_thumbnail(url=message.thumbnail_url)
    if message.footer_text:
        embed.set_footer(text=message.footer_text, icon_url=message.footer_icon_url)
    if message.timestamp_unix is not None:
        embed.timestamp = datetime.fromtimestamp(message.timestamp_unix, tz=timezone.utc)
    return embed


class EmbedChannel:
    """Sends dispatcher messages to a Discord channel as embeds."""

    def __init__(self, channel: discord.abc.Messageable) -> None:
        self.channel = channel

    async def send(self, message: TrophyMessage) -> None:
        await self.channel.send(embed=render_embed(message))


class DiscordChannelResolver:
    """Looks channels up in the cache, falling back to a REST fetch."""

    def __init__(self, client: discord.Client) -> None:
        self.client = client

    async def resolve(self, channel_id: str) -> EmbedChannel:
        try:
            snowflake = int(channel_id)
        except ValueError as exc:
            raise ChannelUnavailable(f"invalid channel id {channel_id!r}") from exc

        channel = self.client.get_channel(snowflake)
        if channel is None:
            try:
                channel = await self.client.fetch_channel(snowflake)
            except (discord.NotFound, discord.Forbidden) as exc:
                raise ChannelUnavailable(f"channel {channel_id} is not accessible") from exc

        if not isinstance(channel, discord.abc.Messageable):
            raise ChannelUnavailable(f"channel {channel_id} cannot receive messages")
        return EmbedChannel(channel)


class GatedCommandTree(app_commands.CommandTree):
    """Command tree that consults the restriction gate before every command."""

    client: TrophyBot

    async def interaction_check(self, interaction: discord.Interaction) -> bool:
        command = interaction.command
        if command is not None:
            root = command.qualified_name.split(" ", 1)[0]
            if is_gate_exempt(root):
                return True

        services = self.client.services
        if services is None:
            return True

        guild_id = str(interaction.guild_id) if interaction.guild_id else None
        channel_id = str(interaction.channel_id) if interaction.channel_id else None
        if await services.gate.is_allowed(guild_id, channel_id):
            return True

        await interaction.response.send_message(GATE_DENIED, ephemeral=True)
        return False

    async def on_error(self, interaction: discord.Interaction, error: app_commands.AppCommandError) -> None:
        command = interaction.command.qualified_name if interaction.command else "unknown"
        logger.error("command_failed", command=command, error=str(error), exc_info=error)
        message = "❌ Something went wrong running that command."
        try:
            if interaction.response.is_done():
                await interaction.followup.send(message, ephemeral=True)
            else:
                await interaction.response.send_message(message, ephemeral=True)
        except discord.HTTPException as exc:
            logger.warning("command_error_reply_failed", command=command, error=str(exc))


def build_invocation(interaction: discord.Interaction, **options: object) -> Invocation:
    permissions = getattr(interaction.user, "guild_permissions", None)
    return Invocation(
        user_id=str(interaction.user.id),
        guild_id=str(interaction.guild_id) if interaction.guild_id else None,
        channel_id=str(interaction.channel_id) if interaction.channel_id else None,
        options=options,
        can_manage_guild=bool(permissions and permissions.manage_guild),
    )


class TrophyBot(discord.Client):
    def __init__(self, settings: Settings) -> None:
        super().__init__(intents=discord.Intents.default())
        self.settings = settings
        self.services: CommandServices | None = None
        self.scheduler: SyncScheduler | None = None
        self.started_at = datetime.now(timezone.utc)
        self.tree = GatedCommandTree(self)
        register_commands(self)

    @property
    def guild_count(self) -> int:
        return len(self.guilds)

    def configure(self, services: CommandServices, scheduler: SyncScheduler | None = None) -> None:
        self.services = services
        self.scheduler = scheduler

    async def run_command(
        self,
        interaction: discord.Interaction,
        kind: CommandKind,
        *,
        ephemeral: bool = False,
        **options: object,
    ) -> None:
        await interaction.response.defer(ephemeral=ephemeral, thinking=True)
        if self.services is None:
            await interaction.followup.send("⏳ The bot is still starting up. Try again shortly.", ephemeral=True)
            return
        logger.info("command_received", command=kind.value, discord_id=str(interaction.user.id))
        reply = await execute(kind, self.services, build_invocation(interaction, **options))
        await interaction.followup.send(reply, ephemeral=ephemeral)

    async def setup_hook(self) -> None:
        if self.settings.discord_guild_id:
            guild = discord.Object(id=self.settings.discord_guild_id)
            self.tree.copy_global_to(guild=guild)
            await self.tree.sync(guild=guild)
        else:
            await self.tree.sync()

        if self.scheduler is not None and self.settings.inline_scheduler:
            self.scheduler.start()

    async def on_ready(self) -> None:
        logger.info("bot_ready", user=str(self.user), guilds=len(self.guilds))

    async def close(self) -> None:
        if self.scheduler is not None:
            await self.scheduler.stop()
        await super().close()


def register_commands(bot: TrophyBot) -> None:
    tree = bot.tree

    @tree.command(name="check", description="Check for new trophies now")
    async def check(interaction: discord.Interaction) -> None:
        await bot.run_command(interaction, CommandKind.CHECK)

    @tree.command(name="link", description="Link your PlayStation Network account")
    @app_commands.describe(
        username="Your PSN online id",
        npsso="NPSSO token from https://ca.account.sony.com/api/v1/ssocookie",
    )
    async def link(interaction: discord.Interaction, username: str, npsso: str) -> None:
        await bot.run_command(interaction, CommandKind.LINK, ephemeral=True, username=username, npsso=npsso)

    @tree.command(name="unlink", description="Unlink your PlayStation Network account")
    async def unlink(interaction: discord.Interaction) -> None:
        await bot.run_command(interaction, CommandKind.UNLINK, ephemeral=True)

    @tree.command(name="profile", description="Show stored trophy totals and recent trophies")
    @app_commands.describe(user="Member to look up (defaults to you)")
    async def profile(interaction: discord.Interaction, user: discord.User | None = None) -> None:
        await bot.run_command(interaction, CommandKind.PROFILE, user=str(user.id) if user else None)

    @tree.command(name="notifications", description="Choose where and which trophies are announced")
    @app_commands.describe(
        channel="Channel for trophy announcements",
        trophies="Announce regular trophies",
        platinum="Announce platinum trophies",
        disable="Stop announcing anywhere",
        tracking="Keep checking for new trophies automatically",
    )
    async def notifications(
        interaction: discord.Interaction,
        channel: discord.TextChannel | None = None,
        trophies: bool | None = None,
        platinum: bool | None = None,
        disable: bool = False,
        tracking: bool | None = None,
    ) -> None:
        await bot.run_command(
            interaction,
            CommandKind.NOTIFICATIONS,
            ephemeral=True,
            channel=str(channel.id) if channel else None,
            trophies=trophies,
            platinum=platinum,
            disable=disable,
            tracking=tracking,
        )

    @tree.command(name="restrict", description="Limit bot commands to specific channels")
    @app_commands.describe(action="What to do", channel="Channel to add or remove (defaults to this one)")
    @app_commands.default_permissions(manage_guild=True)
    @app_commands.guild_only()
    async def restrict(
        interaction: discord.Interaction,
        action: Literal["add", "remove", "clear", "list"],
        channel: discord.TextChannel | None = None,
    ) -> None:
        await bot.run_command(
            interaction,
            CommandKind.RESTRICT,
            ephemeral=True,
            action=action,
            channel=str(channel.id) if channel else None,
        )

    @tree.command(name="status", description="Show bot and trophy tracking statistics")
    async def status(interaction: discord.Interaction) -> None:
        await bot.run_command(interaction, CommandKind.STATUS)

    @tree.command(name="help", description="How to use Trophy Bot")
    @app_commands.describe(topic="Show details for one topic")
    async def help_command(
        interaction: discord.Interaction,
        topic: Literal["getting-started", "linking", "notifications", "restrictions", "commands"] | None = None,
    ) -> None:
        await bot.run_command(interaction, CommandKind.HELP, ephemeral=True, topic=topic)

    @tree.command(name="search-player", description="Search PlayStation Network players by name")
    @app_commands.describe(query="Part of a PSN online id")
    async def search_player(interaction: discord.Interaction, query: app_commands.Range[str, 3, 16]) -> None:
        await bot.run_command(interaction, CommandKind.SEARCH_PLAYER, query=query)

    @tree.command(name="browse-player", description="Show any player's public trophy summary")
    @app_commands.describe(username="Exact PSN online id")
    async def browse_player(interaction: discord.Interaction, username: app_commands.Range[str, 3, 16]) -> None:
        await bot.run_command(interaction, CommandKind.BROWSE_PLAYER, username=username)
