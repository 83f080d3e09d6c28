# bot.py
#!/usr/bin/env python
# -*- coding: utf-8 -*-

# Standard library imports
import os
import signal
import sys
from datetime import timedelta
from typing import Optional

# Third-party imports
import discord
from discord.ext import commands, tasks
from dotenv import load_dotenv
from loguru import logger


# Local application imports
try:
    import config
except ImportError:
    logger.critical("CRITICAL: config.py not found. Please create it based on the template.")
    sys.exit(1)
from gateway import DiscordGateway
from helper import BotHelper, command_access_denial
from purge import PurgeScheduler
from tools import BotConfig, BotState, configure_logging, handle_errors

# Load environment variables from the .env file
load_dotenv()

# --- VALIDATION AND INITIALIZATION ---
# Turn config.py into a BotConfig; a missing mandatory setting stops the bot here
try:
    bot_config = BotConfig.from_config_module(config)
except AttributeError as e:
    logger.critical(f"FATAL: config.py is missing a required setting: {e}")
    sys.exit(1)

log_file = configure_logging(bot_config.DEBUG_MODE, bot_config.LOG_DIR)

# Placeholder values (0, {0}, []) count as missing
required_settings = ['VERIFIED_ROLE_ID', 'ALLOWED_CHANNELS', 'ALLOWED_ROLES']
missing_settings = [
    setting for setting in required_settings
    if not getattr(bot_config, setting) or getattr(bot_config, setting) == {0}
]

if missing_settings:
    logger.critical(f"FATAL: The following required settings are missing in config.py: {', '.join(missing_settings)}")
    logger.critical("Please fill them out before starting the bot.")
    sys.exit(1)

if problems := bot_config.validate():
    for problem in problems:
        logger.critical(f"FATAL: Invalid setting in config.py: {problem}")
    sys.exit(1)

# Shared state, the Discord adapter and the purge registry
state = BotState(config=bot_config)
gateway = DiscordGateway()
scheduler = PurgeScheduler(
    gateway,
    bot_config.VERIFIED_ROLE_ID,
    interval=bot_config.PURGE_INTERVAL_SECONDS,
    grace=timedelta(hours=bot_config.PURGE_GRACE_HOURS),
    removal_delay=bot_config.PURGE_REMOVAL_DELAY_SECONDS,
)

# Initialize the Discord bot instance with required intents
intents = discord.Intents.default()
intents.message_content = True  # Required for reading commands
intents.members = True          # Required for fetching the full member list
bot = commands.Bot(command_prefix="!", help_command=None, case_insensitive=True, intents=intents)
bot.state = state # Attach the state object to the bot instance for global access in decorators

helper = BotHelper(bot, state, bot_config, gateway=gateway, scheduler=scheduler)


def resolve_guild() -> Optional[discord.Guild]:
    """The guild the background loops serve: GUILD_ID if configured, otherwise the first guild."""
    if bot_config.GUILD_ID:
        return bot.get_guild(bot_config.GUILD_ID)
    return bot.guilds[0] if bot.guilds else None

def require_command_access():
    """
    A decorator for every command: the channel must be in ALLOWED_CHANNELS and the author must
    hold at least one ALLOWED_ROLES role. Denials get a short-lived corrective reply.
    """
    async def predicate(ctx):
        denial = command_access_denial(ctx, bot_config)
        if denial is None:
            return True
        logger.debug(f"Command '{ctx.message.content}' from {ctx.author} denied: {denial}")
        await ctx.send(denial, delete_after=10)
        return False

    return commands.check(predicate)

#########################################
# Background Tasks
#########################################

@tasks.loop(minutes=bot_config.INTERVAL_MINUTES)
async def update_counter_channels() -> None:
    """Keeps the member-count channel names current."""
    try:
        guild = resolve_guild()
        if not guild: return
        await helper.update_channel_names(guild)
    except Exception as e:
        logger.opt(exception=e).error(f"Channel name update failed: {e}")

@tasks.loop(hours=bot_config.ACTIVITY_RESET_HOURS)
async def reset_activity_cache() -> None:
    tracked = await state.reset_activity()
    logger.info(f"Message activity cache cleared ({tracked} users were tracked)")

#########################################
# Events
#########################################

@bot.event
async def on_ready() -> None:
    logger.info(f"Bot is online as {bot.user} (logging to {log_file})")
    guild = resolve_guild()
    if guild is None:
        logger.warning("Configured guild not found; background counters will stay idle.")
    else:
        logger.info(f"Serving guild {guild.name} ({guild.id})")

    try:
        if not reset_activity_cache.is_running(): reset_activity_cache.start()
        if not update_counter_channels.is_running(): update_counter_channels.start()
    except Exception as e:
        logger.opt(exception=e).error(f"Error during on_ready initialization: {e}")

@bot.event
@handle_errors
async def on_message(message: discord.Message) -> None:
    if message.author.bot or not message.guild:
        return

    guild = resolve_guild()
    if guild is not None and message.guild.id == guild.id:
        await state.record_message(message.author.id)

    await bot.process_commands(message)

@bot.event
async def on_command_error(ctx: commands.Context, error: Exception) -> None:
    if isinstance(error, (commands.CheckFailure, commands.CommandNotFound)):
        return
    if isinstance(error, (commands.MissingRequiredArgument, commands.BadArgument)):
        usage = f"!{ctx.command.qualified_name} {ctx.command.signature}".strip()
        await ctx.send(f"Usage: `{usage}`")
        return
    logger.opt(exception=error).error(f"Unhandled error in command '{ctx.command}': {error}")
    await ctx.send("An unexpected error occurred while running that command.")

#########################################
# Bot Commands
#########################################
# Group checks do not cover subcommands under invoke_without_command, so every
# subcommand carries its own access check. Error handling lives in BotHelper.

@bot.command(name='help')
@require_command_access()
async def help_command(ctx):
    await helper.send_help_menu(ctx)

@bot.group(name='count', invoke_without_command=True, case_insensitive=True)
@require_command_access()
async def count(ctx) -> None: await helper.show_count(ctx)

@count.command(name='unverified')
@require_command_access()
async def count_unverified(ctx) -> None: await helper.list_unverified(ctx)

@count.command(name='export')
@require_command_access()
async def count_export(ctx) -> None: await helper.count_export(ctx)

@bot.group(name='extract', invoke_without_command=True, case_insensitive=True)
@require_command_access()
@handle_errors
async def extract(ctx) -> None:
    await ctx.send("Usage: `!extract unverified` or `!extract noroles`")

@extract.command(name='unverified')
@require_command_access()
async def extract_unverified(ctx) -> None: await helper.extract_unverified(ctx)

@extract.command(name='noroles')
@require_command_access()
async def extract_noroles(ctx) -> None: await helper.extract_noroles(ctx)

@bot.command(name='export')
@require_command_access()
async def export(ctx) -> None: await helper.run_full_export(ctx)

@bot.group(name='purge', invoke_without_command=True, case_insensitive=True)
@require_command_access()
async def purge(ctx, purge_type: Optional[str] = None, rate: Optional[str] = None) -> None:
    await helper.start_purge(ctx, purge_type, rate)

@purge.command(name='status')
@require_command_access()
async def purge_status(ctx, purge_type: Optional[str] = None) -> None:
    await helper.purge_status(ctx, purge_type)

@purge.command(name='stop')
@require_command_access()
async def purge_stop(ctx, purge_type: Optional[str] = None) -> None:
    await helper.stop_purge(ctx, purge_type)

async def _initiate_shutdown() -> None:
    if getattr(bot, "_is_shutting_down", False): return
    bot._is_shutting_down = True
    logger.critical("Shutdown initiated")
    for loop_task in (update_counter_channels, reset_activity_cache):
        if loop_task.is_running(): loop_task.cancel()
    await scheduler.shutdown()
    await bot.close()

#########################################
# Main Execution
#########################################
if __name__ == "__main__":
    required_vars = ["BOT_TOKEN"]
    if missing := [var for var in required_vars if not os.getenv(var)]:
        logger.critical(f"Missing environment variables: {', '.join(missing)}")
        sys.exit(1)

    def handle_shutdown(signum, _frame):
        logger.info("Graceful shutdown initiated by signal")
        if not getattr(bot, "_is_shutting_down", False):
            bot.loop.create_task(_initiate_shutdown())

    signal.signal(signal.SIGINT, handle_shutdown)
    signal.signal(signal.SIGTERM, handle_shutdown)

    try:
        bot.run(os.getenv("BOT_TOKEN"))
    except discord.LoginFailure as e:
        logger.critical(f"Invalid token: {e}"); sys.exit(1)
    except Exception as e:
        logger.opt(exception=e).critical(f"Fatal error during bot run: {e}"); raise
    finally:
        logger.info("Shutdown complete")
