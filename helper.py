# helper.py
# This file contains the implementation for the bot's commands and its periodic channel-name refresh.
# It is designed to keep the main `bot.py` file focused on wiring: checks, events and loops.

import io
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, List, Optional

import discord
from discord.ext import commands
from loguru import logger

from checkpoint import CheckpointStore
from exporter import BatchExportEngine, build_activity_csv, build_noroles_csv, build_unverified_csv
from fetcher import RateLimitedFetcher
from gateway import DiscordGateway, role_names
from purge import InvalidRate, PurgeError, PurgeScheduler, PurgeType
from tally import RoleBucket, bucket_percent_decimals, roleless_members, tally, unverified_members
from tools import BotConfig, BotState, build_embed, format_file_size, format_utc, handle_errors

MESSAGE_CHAR_LIMIT = 1900
PURGE_USAGE = "Usage: `!purge <noroles|unverified> rate=<N>`, `!purge status <type>`, `!purge stop <type>`"

EXTRACT_FIELDS = (
    "• User ID (for mentioning: <@user_id>)\n"
    "• Username\n"
    "• Display Name\n"
    "• Join Date (UTC)\n"
    "• Account Creation Date (UTC)"
)


def create_message_chunks(
    entries: Iterable[Any],
    process_entry: Callable[[Any], str],
    header: str = "",
    max_length: int = MESSAGE_CHAR_LIMIT,
) -> List[str]:
    """
    Splits a long list of text entries into several messages, each at most `max_length`
    characters (a single oversized entry still gets a message of its own).
    The header only opens the first message.
    """
    chunks = []
    current = header
    for entry in entries:
        line = process_entry(entry) + "\n"
        if current and len(current) + len(line) > max_length:
            chunks.append(current)
            current = ""
        current += line
    if current:
        chunks.append(current)
    return chunks

def parse_rate_argument(raw: Optional[str]) -> int:
    """Parses the `rate=<N>` argument of `!purge`; a bare number is accepted too."""
    value = (raw or "").strip().lower()
    if value.startswith("rate="):
        value = value[len("rate="):]
    try:
        rate = int(value)
    except ValueError:
        raise InvalidRate("Invalid rate. Please specify a positive number.") from None
    if rate <= 0:
        raise InvalidRate("Invalid rate. Please specify a positive number.")
    return rate

def command_access_denial(ctx, bot_config: BotConfig) -> Optional[str]:
    """Returns why the invoker may not use commands here, or None when access is granted."""
    if ctx.guild is None:
        return "Commands can only be used inside the server."
    if ctx.channel.id not in bot_config.ALLOWED_CHANNELS:
        channels = ", ".join(f"<#{channel_id}>" for channel_id in sorted(bot_config.ALLOWED_CHANNELS))
        return f"Commands can only be used in {channels}."
    author_roles = {role.name for role in getattr(ctx.author, "roles", [])}
    if not author_roles.intersection(bot_config.ALLOWED_ROLES):
        return "⛔ You do not have permission to use this command."
    return None

def csv_attachment(content: str, filename: str) -> discord.File:
    # utf-8-sig so spreadsheet apps pick up the encoding of non-ASCII names.
    return discord.File(io.BytesIO(content.encode("utf-8-sig")), filename=filename)


class BotHelper:
    """
    A class that encapsulates the logic for the bot's commands.
    Command callbacks in `bot.py` are thin wrappers that delegate here.
    """
    def __init__(
        self,
        bot: commands.Bot,
        state: BotState,
        bot_config: BotConfig,
        gateway: Optional[DiscordGateway] = None,
        scheduler: Optional[PurgeScheduler] = None,
    ):
        self.bot = bot
        self.state = state
        self.bot_config = bot_config
        self.gateway = gateway or DiscordGateway()
        self.scheduler = scheduler or PurgeScheduler(self.gateway, bot_config.VERIFIED_ROLE_ID)

    def _embed(self, title: str, description: str, color: discord.Color) -> discord.Embed:
        return build_embed(title, description, color, footer=self.bot_config.EMBED_FOOTER_TEXT,
                           footer_icon=self.bot_config.EMBED_FOOTER_ICON)

    @property
    def purge_footer(self) -> str:
        return f"Only affecting users who joined >{self.bot_config.PURGE_GRACE_HOURS}h ago"

    def build_export_engine(self) -> BatchExportEngine:
        cfg = self.bot_config
        fetcher = RateLimitedFetcher(self.gateway, delay=cfg.FETCH_DELAY_SECONDS, page_size=cfg.MESSAGE_PAGE_SIZE)
        return BatchExportEngine(
            self.gateway,
            fetcher,
            CheckpointStore(cfg.EXPORT_DIR),
            output_dir=cfg.EXPORT_DIR,
            batch_size=cfg.EXPORT_BATCH_SIZE,
            flush_rows=cfg.EXPORT_FLUSH_ROWS,
            save_every=cfg.CHECKPOINT_EVERY,
            progress_interval=cfg.PROGRESS_INTERVAL_SECONDS,
        )

    #########################################
    # Counting
    #########################################

    @handle_errors
    async def show_count(self, ctx) -> None:
        """Sends the tally embed: total members, unverified share, and one field per COUNT_ROLES bucket."""
        members = await self.gateway.fetch_all_members(ctx.guild)
        buckets = [RoleBucket(role_id) for role_id in self.bot_config.COUNT_ROLES]
        result = tally(members, buckets, self.bot_config.VERIFIED_ROLE_ID, self.bot_config.IGNORED_ROLE_ID)

        embed = self._embed(
            f"Total members: {result.total}",
            f"Unverified members: {result.unverified} ({result.percent(result.unverified):.1f}%)",
            discord.Color.blue(),
        )
        for index, bucket in enumerate(buckets):
            role = ctx.guild.get_role(bucket.role_id)
            if role is None:
                logger.warning(f"COUNT_ROLES entry {bucket.role_id} does not exist in {ctx.guild.name}")
                continue
            count = result.counts[bucket.role_id]
            decimals = bucket_percent_decimals(index)
            embed.add_field(name=role.name, value=f"{count} ({result.percent(count):.{decimals}f}%)", inline=True)

        if self.bot_config.DEBUG_MODE:
            logger.debug(
                f"Count verification: total={result.total} unverified={result.unverified} "
                f"counted={len(result.counted_ids)} unaccounted={len(result.unaccounted)}"
            )
            for member in result.unaccounted:
                logger.debug(f"Unaccounted verified member {member.username} - Roles: {', '.join(role_names(member))}")

        await ctx.send(embed=embed)

    @handle_errors
    async def list_unverified(self, ctx) -> None:
        members = unverified_members(await self.gateway.fetch_all_members(ctx.guild), self.bot_config.VERIFIED_ROLE_ID)
        if not members:
            await ctx.send("No unverified members found.")
            return

        numbered = list(enumerate(members, start=1))
        chunks = create_message_chunks(
            numbered,
            lambda entry: f"{entry[0]}. <@{entry[1].id}>",
            header=f"Total Unverified Members: {len(members)}\n\n",
        )
        for chunk in chunks:
            await ctx.send(chunk)
        logger.info(f"Listed {len(members)} unverified members in {len(chunks)} messages")

    @handle_errors
    async def count_export(self, ctx) -> None:
        """Exports the current member snapshot with the rolling message counter as a CSV attachment."""
        await ctx.send("Generating CSV export... This might take a few moments.")
        members = await self.gateway.fetch_all_members(ctx.guild)
        activity = await self.state.activity_snapshot()
        content = build_activity_csv(members, activity)

        stamp = datetime.now(timezone.utc).strftime('%Y-%m-%d-%H-%M-%S')
        await ctx.send(content="Here is your requested user export:",
                       file=csv_attachment(content, f"user_export_{stamp}.csv"))

    #########################################
    # Extraction
    #########################################

    @handle_errors
    async def extract_unverified(self, ctx) -> None:
        members = unverified_members(await self.gateway.fetch_all_members(ctx.guild), self.bot_config.VERIFIED_ROLE_ID)
        if not members:
            await ctx.send("No unverified members found.")
            return
        file_name = f"unverified_members_{datetime.now(timezone.utc).strftime('%Y-%m-%d')}.csv"
        await ctx.send(
            content=f"Found {len(members)} unverified members. Data includes:\n{EXTRACT_FIELDS}",
            file=csv_attachment(build_unverified_csv(members), file_name),
        )
        logger.info(f"Extracted {len(members)} unverified members to {file_name}")

    @handle_errors
    async def extract_noroles(self, ctx) -> None:
        members = roleless_members(await self.gateway.fetch_all_members(ctx.guild))
        if not members:
            await ctx.send("No members without roles found.")
            return
        file_name = f"norole_members_{datetime.now(timezone.utc).strftime('%Y-%m-%d')}.csv"
        await ctx.send(
            content=f"Found {len(members)} members without roles. Data includes:\n{EXTRACT_FIELDS}\n• Time Without Roles",
            file=csv_attachment(build_noroles_csv(members), file_name),
        )
        logger.info(f"Extracted {len(members)} members without roles to {file_name}")

    #########################################
    # Full export
    #########################################

    @handle_errors
    async def run_full_export(self, ctx) -> None:
        """
        Runs the resumable batch export for the invoking guild, editing a single progress message
        as it goes. Only one export per guild may be in flight; the output path is checkpointed,
        so re-running after a crash continues where the last run stopped.
        """
        guild = ctx.guild
        if guild.id in self.state.active_exports:
            await ctx.send("An export is already running for this server.")
            return
        self.state.active_exports.add(guild.id)

        try:
            progress_message = await self.gateway.send_text(ctx.channel, "🤖 Starting user data export...")

            async def report(text: str) -> None:
                await self.gateway.edit_message(progress_message, text)

            members = await self.gateway.fetch_all_members(guild)
            path = await self.build_export_engine().export(guild, members, report)
        finally:
            self.state.active_exports.discard(guild.id)

        await self._deliver_export(ctx, path)

    async def _deliver_export(self, ctx, path: Path) -> None:
        size = path.stat().st_size
        if size <= ctx.guild.filesize_limit:
            await ctx.send(content="✅ Export complete:", file=discord.File(path, filename=path.name))
        else:
            await ctx.send(f"✅ Export complete, but the file is too large to upload ({format_file_size(size)}). "
                           f"It was saved as `{path}`.")

    #########################################
    # Purge
    #########################################

    @handle_errors
    async def start_purge(self, ctx, type_arg: Optional[str], rate_arg: Optional[str]) -> None:
        if not type_arg or not rate_arg:
            await ctx.reply(PURGE_USAGE)
            return
        try:
            purge_type = PurgeType.parse(type_arg)
            rate = parse_rate_argument(rate_arg)
            operation = await self.scheduler.start(ctx.guild, purge_type, rate)
        except PurgeError as e:
            await ctx.reply(str(e))
            return

        if not operation.is_running:
            # Stopped while the first batch was still running; the stop reply already went out.
            logger.info(f"{purge_type.value} purge in guild {ctx.guild.id} was stopped during its first batch")
            return

        embed = build_embed(
            f"Started {purge_type.value} Purge Operation",
            f"Rate: {rate} users/hour\nStarted at: {format_utc(operation.start_time)} UTC",
            discord.Color.red(),
            footer=self.purge_footer,
        )
        await ctx.reply(embed=embed)

    @handle_errors
    async def purge_status(self, ctx, type_arg: Optional[str]) -> None:
        if not type_arg:
            await ctx.reply(PURGE_USAGE)
            return
        try:
            purge_type = PurgeType.parse(type_arg)
        except PurgeError as e:
            await ctx.reply(str(e))
            return

        status = self.scheduler.status(ctx.guild.id, purge_type)
        if status is None:
            await ctx.reply(f"No {purge_type.value} purge operation is running.")
            return

        embed = build_embed(f"{purge_type.value} Purge Status", "", discord.Color.red(), footer=self.purge_footer)
        embed.add_field(name="Running Time", value=status.running_time, inline=True)
        embed.add_field(name="Rate", value=f"{status.rate}/hour", inline=True)
        embed.add_field(name="Processed", value=str(status.processed_count), inline=True)
        embed.add_field(name="Skipped", value=str(status.skipped_count), inline=True)
        embed.add_field(name="Failed", value=str(status.failed_count), inline=True)
        await ctx.reply(embed=embed)

    @handle_errors
    async def stop_purge(self, ctx, type_arg: Optional[str]) -> None:
        if not type_arg:
            await ctx.reply(PURGE_USAGE)
            return
        try:
            purge_type = PurgeType.parse(type_arg)
            self.scheduler.stop(ctx.guild.id, purge_type)
        except PurgeError as e:
            await ctx.reply(str(e))
            return
        await ctx.reply(f"Stopped {purge_type.value} purge operation.")

    #########################################
    # Channel-name counters
    #########################################

    async def update_channel_names(self, guild: discord.Guild) -> None:
        """Renames the total-member channel and every SCHEDULED_ROLES channel to its current count."""
        cfg = self.bot_config
        members = await self.gateway.fetch_all_members(guild)

        if cfg.TOTAL_MEMBER_COUNT_CHANNEL_ID:
            total = sum(1 for m in members if not m.is_bot)
            await self._rename_channel(guild, cfg.TOTAL_MEMBER_COUNT_CHANNEL_ID, cfg.TOTAL_MEMBER_COUNT_NAME_FORMAT, total)

        buckets = [RoleBucket(*entry) for entry in cfg.SCHEDULED_ROLES]
        if not buckets:
            return
        result = tally(members, buckets, cfg.VERIFIED_ROLE_ID, cfg.IGNORED_ROLE_ID)
        for bucket in buckets:
            if not bucket.channel_id or not bucket.name_format:
                continue
            await self._rename_channel(guild, bucket.channel_id, bucket.name_format, result.counts[bucket.role_id])

    async def _rename_channel(self, guild: discord.Guild, channel_id: int, name_format: str, count: int) -> None:
        channel = guild.get_channel(channel_id)
        if channel is None:
            logger.warning(f"Counter channel {channel_id} not found in {guild.name}")
            return
        new_name = name_format.replace("{count}", str(count))
        if channel.name == new_name:
            return
        try:
            await channel.edit(name=new_name)
            logger.debug(f"Renamed counter channel {channel_id} to '{new_name}'")
        except discord.Forbidden:
            logger.warning(f"Missing permissions to rename channel {channel_id}.")
        except discord.HTTPException as e:
            logger.error(f"Failed to rename channel {channel_id}: {e}")

    #########################################
    # Help
    #########################################

    @handle_errors
    async def send_help_menu(self, ctx) -> None:
        commands_text = (
            "`!count` - Member totals per role bucket\n"
            "`!count unverified` - List unverified members, oldest first\n"
            "`!count export` - CSV of members with messages since the last activity reset\n"
            "`!extract unverified` - CSV of unverified members\n"
            "`!extract noroles` - CSV of members without roles\n"
            "`!export` - Full CSV export with lifetime message counts (resumable)\n"
            "`!purge <noroles|unverified> rate=<N>` - Remove up to N eligible members per hour\n"
            "`!purge status <type>` - Show a running purge\n"
            "`!purge stop <type>` - Stop a running purge"
        )
        await ctx.send(embed=self._embed("🛠️ Commands", commands_text, discord.Color.blue()))
