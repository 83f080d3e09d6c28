# tools.py
# Shared plumbing for the bot: logging setup, the command error handler, the typed config,
# formatting helpers and the in-memory activity state.

import asyncio
import sys
import time
from dataclasses import dataclass
from datetime import datetime, timezone, timedelta
from functools import wraps
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple, Union

import discord
from discord.ext import commands
from loguru import logger

CONSOLE_FORMAT = "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} - {message} | {extra}"


def configure_logging(debug_mode: bool = False, log_dir: Union[str, Path] = "logs") -> Path:
    """
    Configures the Loguru logger for rich, async-safe logging.
    Console verbosity follows DEBUG_MODE; every run gets its own log file, which also
    records the structured detail attached with `logger.bind(...)`.
    """
    logger.remove() # Remove the default handler.
    logger.add(sys.stdout, colorize=True, format=CONSOLE_FORMAT, level="DEBUG" if debug_mode else "INFO")

    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)
    run_stamp = datetime.now(timezone.utc).strftime('%Y-%m-%dT%H-%M-%S')
    log_file = log_path / f"bot_{run_stamp}.log"
    # File handler with automatic rotation and compression.
    logger.add(log_file, format=FILE_FORMAT, rotation="10 MB", compression="zip", enqueue=True, level="DEBUG" if debug_mode else "INFO")
    return log_file


def sanitize_channel_name(channel_name: str) -> str:
    """Sanitizes channel names for logging by removing non-ASCII characters."""
    return ''.join(char for char in channel_name if ord(char) < 128)

async def log_command_usage(state: 'BotState', ctx: commands.Context, command_name: str) -> None:
    """
    Logs the usage of a command, with duplicate prevention.
    This helps reduce log spam from rapid repeated invocations.
    """
    try:
        user, channel = ctx.author, getattr(ctx.channel, 'name', 'DM')

        # Group identical invocations into 10-second windows.
        timestamp = int(time.time())
        log_id = f"{user.id}-{command_name}-{timestamp//10}"

        if await state.is_command_logged(log_id):
            return

        await state.log_command_usage(log_id)

        safe_channel = sanitize_channel_name(channel)
        human_time = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S')
        logger.info(
            f"COMMAND USED: '{command_name}' by {user} (ID: {user.id}) "
            f"in #{safe_channel} at {human_time}"
        )
    except Exception as e:
        logger.opt(exception=e).error(f"Error logging command usage: {e}")

def _find_context(args: Tuple[Any, ...]) -> Optional[commands.Context]:
    for arg in args:
        if isinstance(arg, commands.Context):
            return arg
    return None

def handle_errors(func: Any) -> Any:
    """
    Wraps a command or event so that any exception is logged with its traceback and answered
    with a generic reply instead of propagating into discord.py.
    """
    @wraps(func)
    async def wrapper(*args, **kwargs):
        # Works for plain command callbacks as well as BotHelper methods (ctx after self).
        ctx = _find_context(args)

        if ctx and ctx.command and hasattr(ctx.bot, 'state'):
            await log_command_usage(ctx.bot.state, ctx, ctx.command.qualified_name)

        try:
            return await func(*args, **kwargs)
        except Exception as e:
            logger.opt(exception=e).error(f"Error in {func.__name__}: {e}")
            if ctx is not None:
                try: await ctx.send("An unexpected error occurred while running that command.")
                except Exception as send_e: logger.error(f"Failed to send error message to context: {send_e}")
    return wrapper

def format_duration(delta: Union[timedelta, int, float]) -> str:
    """
    Formats a timedelta or seconds into a compact human-readable string, e.g. '3h 12m 5s'.
    Days are folded into hours, matching how long-running purge operations are reported.
    """
    if isinstance(delta, timedelta):
        total_seconds = int(delta.total_seconds())
    else:
        total_seconds = int(delta)
    if total_seconds < 0:
        total_seconds = 0

    hours, remainder = divmod(total_seconds, 3600)
    minutes, seconds = divmod(remainder, 60)
    return f"{hours}h {minutes}m {seconds}s"

def format_clock(seconds: float) -> str:
    """Formats seconds as HH:MM:SS (hours may exceed 24)."""
    seconds = max(0, int(seconds))
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"

def format_utc(dt: Optional[datetime]) -> str:
    """Formats a datetime as 'YYYY-MM-DD HH:MM:SS' in UTC; empty string for None."""
    if dt is None:
        return ""
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc)
    return dt.strftime('%Y-%m-%d %H:%M:%S')

def format_date(dt: Optional[datetime]) -> str:
    """Formats a datetime as an ISO date (UTC); empty string for None."""
    if dt is None:
        return ""
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc)
    return dt.strftime('%Y-%m-%d')

def create_progress_bar(current: int, total: int, length: int = 20) -> str:
    if total <= 0:
        filled = length
    else:
        filled = min(length, max(0, int(current / total * length)))
    return '█' * filled + '░' * (length - filled)

def format_file_size(size: int) -> str:
    if size < 1024:
        return f"{size} B"
    if size < 1024 ** 2:
        return f"{size / 1024:.1f} KB"
    if size < 1024 ** 3:
        return f"{size / 1024 ** 2:.1f} MB"
    return f"{size / 1024 ** 3:.1f} GB"

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

@dataclass
class BotConfig:
    """
    Every setting from config.py in one typed object. Optional settings fall back to
    the stock tuning, e.g. a 250 ms fetch delay and hourly purge batches.
    """
    GUILD_ID: Optional[int]
    ALLOWED_CHANNELS: Set[int]
    ALLOWED_ROLES: List[str]
    VERIFIED_ROLE_ID: int
    IGNORED_ROLE_ID: Optional[int]
    COUNT_ROLES: List[int]
    SCHEDULED_ROLES: List[Tuple[int, int, str]]
    TOTAL_MEMBER_COUNT_CHANNEL_ID: Optional[int]
    TOTAL_MEMBER_COUNT_NAME_FORMAT: str
    INTERVAL_MINUTES: int
    EMBED_FOOTER_TEXT: Optional[str]
    EMBED_FOOTER_ICON: Optional[str]
    DEBUG_MODE: bool
    LOG_DIR: str
    EXPORT_DIR: str
    FETCH_DELAY_SECONDS: float
    MESSAGE_PAGE_SIZE: int
    EXPORT_BATCH_SIZE: int
    EXPORT_FLUSH_ROWS: int
    CHECKPOINT_EVERY: int
    PROGRESS_INTERVAL_SECONDS: float
    PURGE_INTERVAL_SECONDS: int
    PURGE_GRACE_HOURS: int
    PURGE_REMOVAL_DELAY_SECONDS: float
    ACTIVITY_RESET_HOURS: int

    @staticmethod
    def from_config_module(config_module: Any) -> 'BotConfig':
        """Builds the config from the imported config.py module; only the access and verification settings are mandatory."""
        return BotConfig(
            GUILD_ID=getattr(config_module, 'GUILD_ID', None),
            ALLOWED_CHANNELS=set(config_module.ALLOWED_CHANNELS),
            ALLOWED_ROLES=list(config_module.ALLOWED_ROLES),
            VERIFIED_ROLE_ID=config_module.VERIFIED_ROLE_ID,
            IGNORED_ROLE_ID=getattr(config_module, 'IGNORED_ROLE_ID', None),
            COUNT_ROLES=[r for r in getattr(config_module, 'COUNT_ROLES', []) if r],
            SCHEDULED_ROLES=[tuple(s) for s in getattr(config_module, 'SCHEDULED_ROLES', []) if s and s[0]],
            TOTAL_MEMBER_COUNT_CHANNEL_ID=getattr(config_module, 'TOTAL_MEMBER_COUNT_CHANNEL_ID', None),
            TOTAL_MEMBER_COUNT_NAME_FORMAT=getattr(config_module, 'TOTAL_MEMBER_COUNT_NAME_FORMAT', "Members: {count}"),
            INTERVAL_MINUTES=getattr(config_module, 'INTERVAL_MINUTES', 5),
            EMBED_FOOTER_TEXT=getattr(config_module, 'EMBED_FOOTER_TEXT', None),
            EMBED_FOOTER_ICON=getattr(config_module, 'EMBED_FOOTER_ICON', None),
            DEBUG_MODE=bool(getattr(config_module, 'DEBUG_MODE', False)),
            LOG_DIR=getattr(config_module, 'LOG_DIR', "logs"),
            EXPORT_DIR=getattr(config_module, 'EXPORT_DIR', "exports"),
            FETCH_DELAY_SECONDS=getattr(config_module, 'FETCH_DELAY_SECONDS', 0.25),
            MESSAGE_PAGE_SIZE=getattr(config_module, 'MESSAGE_PAGE_SIZE', 100),
            EXPORT_BATCH_SIZE=getattr(config_module, 'EXPORT_BATCH_SIZE', 1000),
            EXPORT_FLUSH_ROWS=getattr(config_module, 'EXPORT_FLUSH_ROWS', 100),
            CHECKPOINT_EVERY=getattr(config_module, 'CHECKPOINT_EVERY', 10),
            PROGRESS_INTERVAL_SECONDS=getattr(config_module, 'PROGRESS_INTERVAL_SECONDS', 5.0),
            PURGE_INTERVAL_SECONDS=getattr(config_module, 'PURGE_INTERVAL_SECONDS', 3600),
            PURGE_GRACE_HOURS=getattr(config_module, 'PURGE_GRACE_HOURS', 24),
            PURGE_REMOVAL_DELAY_SECONDS=getattr(config_module, 'PURGE_REMOVAL_DELAY_SECONDS', 1.0),
            ACTIVITY_RESET_HOURS=getattr(config_module, 'ACTIVITY_RESET_HOURS', 24),
        )

    def validate(self) -> List[str]:
        """Returns a list of human-readable problems; an empty list means the config is usable."""
        problems = []
        if len(self.COUNT_ROLES) > 6:
            problems.append("COUNT_ROLES supports at most 6 roles")
        if len(self.SCHEDULED_ROLES) > 6:
            problems.append("SCHEDULED_ROLES supports at most 6 entries")
        for name in ('MESSAGE_PAGE_SIZE', 'EXPORT_BATCH_SIZE', 'EXPORT_FLUSH_ROWS', 'CHECKPOINT_EVERY',
                     'INTERVAL_MINUTES', 'PURGE_INTERVAL_SECONDS', 'ACTIVITY_RESET_HOURS'):
            if getattr(self, name) <= 0:
                problems.append(f"{name} must be > 0")
        for name in ('FETCH_DELAY_SECONDS', 'PROGRESS_INTERVAL_SECONDS', 'PURGE_GRACE_HOURS', 'PURGE_REMOVAL_DELAY_SECONDS'):
            if getattr(self, name) < 0:
                problems.append(f"{name} must be >= 0")
        if self.MESSAGE_PAGE_SIZE > 100:
            problems.append("MESSAGE_PAGE_SIZE cannot exceed Discord's page limit of 100")
        return problems

def build_embed(title: str, description: str, color: discord.Color, footer: Optional[str] = None, footer_icon: Optional[str] = None) -> discord.Embed:
    """A simple helper function to build a basic Discord embed."""
    embed = discord.Embed(title=title, description=description, color=color)
    if footer:
        embed.set_footer(text=footer, icon_url=footer_icon)
    return embed

class BotState:
    """
    A class to manage the bot's transient state: the rolling per-user message counter behind
    `!count export`, the guilds with an export in flight, and the command-log dedupe cache.
    None of it survives a restart; resumable exports keep their own checkpoint files.
    """
    def __init__(self, config: BotConfig) -> None:
        self.config = config

        # --- Concurrency Locks ---
        self.activity_lock = asyncio.Lock()
        self.cooldown_lock = asyncio.Lock()

        # --- State Data ---
        self.message_counts: Dict[int, int] = {}
        self.activity_window_start: datetime = utcnow()
        self.active_exports: Set[int] = set()
        self.recently_logged_commands: Set[str] = set()

    async def record_message(self, user_id: int) -> None:
        async with self.activity_lock:
            self.message_counts[user_id] = self.message_counts.get(user_id, 0) + 1

    async def activity_snapshot(self) -> Dict[int, int]:
        async with self.activity_lock:
            return dict(self.message_counts)

    async def reset_activity(self) -> int:
        """Clears the rolling message counter and returns how many users it was tracking."""
        async with self.activity_lock:
            tracked = len(self.message_counts)
            self.message_counts = {}
            self.activity_window_start = utcnow()
        return tracked

    async def is_command_logged(self, log_id: str) -> bool:
        """Checks if a command was recently logged."""
        async with self.cooldown_lock:
            return log_id in self.recently_logged_commands

    async def log_command_usage(self, log_id: str) -> None:
        """Records a command usage to prevent duplicates."""
        async with self.cooldown_lock:
            self.recently_logged_commands.add(log_id)
            # Simple clear to prevent unbounded growth over long uptimes.
            if len(self.recently_logged_commands) > 5000:
                self.recently_logged_commands = {log_id}
