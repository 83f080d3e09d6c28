# exporter.py
# CSV exports of guild members: the resumable, rate-limited batch export with lifetime message
# counts, and the quick in-memory exports behind `!count export` and `!extract`.

import asyncio
import codecs
import csv
import io
import math
import shutil
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Set, Union

import discord
from loguru import logger

from checkpoint import CheckpointStore, ExportProgress
from fetcher import RateLimitedFetcher
from gateway import MemberSnapshot
from tools import create_progress_bar, format_clock, format_date, format_utc

BATCH_SIZE = 1000
FLUSH_ROWS = 100
SAVE_INTERVAL = 10
MESSAGE_UPDATE_INTERVAL = 5.0

EXPORT_HEADER = ["User ID", "Username", "Highest Role", "Server Join Date", "Discord Join Date", "Message Count"]
ACTIVITY_HEADER = ["User ID", "Username", "Highest Role", "Server Join Date", "Discord Join Date", "Messages (Last 24h)"]
EXTRACT_HEADER = ["User ID", "Username", "Display Name", "Join Date (UTC)", "Account Created (UTC)"]

ProgressSink = Callable[[str], Awaitable[None]]


def _write_rows(rows: Iterable[Sequence[Any]]) -> str:
    buffer = io.StringIO()
    csv.writer(buffer, lineterminator="\n").writerows(rows)
    return buffer.getvalue()

def _append_rows_sync(path: Path, rows: List[List[Any]]) -> None:
    with open(path, "a", encoding="utf-8", newline="") as f:
        csv.writer(f, lineterminator="\n").writerows(rows)

def _complete_prefix_length(data: bytes) -> int:
    # A record is complete once it ends in a newline outside any quoted field.
    end = len(data)
    while end and not (data.endswith(b"\n", 0, end) and data.count(b'"', 0, end) % 2 == 0):
        end = data.rfind(b"\n", 0, end - 1) + 1
    return end

def _read_written_ids_sync(path: Path) -> Set[int]:
    with open(path, "r+b") as f:
        data = f.read()
        keep = _complete_prefix_length(data)
        if keep < len(data):
            logger.warning(f"Dropping {len(data) - keep} bytes of a partially written row from {path.name}")
            f.truncate(keep)

    written = set()
    for row in csv.reader(io.StringIO(data[:keep].decode("utf-8"), newline="")):
        if row and row[0].isdigit():
            written.add(int(row[0]))
    return written

def _finalize_sync(temp_path: Path, final_path: Path) -> None:
    # Spreadsheet apps need the BOM to detect UTF-8; stream the body so memory stays bounded.
    with open(final_path, "wb") as out, open(temp_path, "rb") as src:
        out.write(codecs.BOM_UTF8)
        shutil.copyfileobj(src, out)
    temp_path.unlink()


def format_progress_report(
    progress: ExportProgress,
    processed: int,
    total: int,
    current: Optional[str],
    run_processed: int,
    run_elapsed: float,
    now: float,
) -> str:
    """Renders the progress message shown in Discord while an export runs."""
    percent = (processed / total * 100) if total else 100.0
    remaining = max(0, total - processed)
    per_user = (run_elapsed / run_processed) if run_processed else 0.0
    eta = per_user * remaining
    lines = [
        "🤖 **Discord User Data Export**",
        "━━━━━━━━━━━━━━━━━━━━━━",
        f"Progress: {create_progress_bar(processed, total)} {percent:.2f}%",
        "",
        "📊 **Status**",
        f"• Batch: {progress.current_batch}/{progress.total_batches}",
        f"• Processed: {processed}/{total} users",
    ]
    if current:
        lines.append(f"• Current: {current}")
    lines += [
        "",
        "⏱ **Timing**",
        f"• Per User: {per_user:.1f}s",
        f"• Elapsed: {format_clock(now - progress.start_time)}",
        f"• Remaining: {format_clock(eta)}",
        "",
        f"🔄 Last Update: {format_utc(datetime.fromtimestamp(now, timezone.utc))} UTC",
    ]
    return "\n".join(lines)


class BatchExportEngine:
    """
    Streams one CSV row per non-bot member into a temporary file, resuming from a checkpoint
    when a previous run was interrupted.

    The temporary file is the source of truth for which members are done: rows are flushed
    before every checkpoint save, and on resume any ID already present in the file is treated
    as processed, so a member's row is never appended twice.
    """

    def __init__(
        self,
        gateway: Any,
        fetcher: RateLimitedFetcher,
        store: CheckpointStore,
        output_dir: Union[str, Path] = ".",
        batch_size: int = BATCH_SIZE,
        flush_rows: int = FLUSH_ROWS,
        save_every: int = SAVE_INTERVAL,
        progress_interval: float = MESSAGE_UPDATE_INTERVAL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.gateway = gateway
        self.fetcher = fetcher
        self.store = store
        self.output_dir = Path(output_dir)
        self.batch_size = batch_size
        self.flush_rows = flush_rows
        self.save_every = save_every
        self.progress_interval = progress_interval
        self.clock = clock

    @asynccontextmanager
    async def checkpoint_session(self, guild_id: int) -> AsyncIterator[ExportProgress]:
        """Yields resumed or fresh progress; the checkpoint file is removed however the export ends."""
        try:
            yield await self._open_progress(guild_id)
        finally:
            await self.store.cleanup(guild_id)

    async def export(self, guild: Any, members: Sequence[MemberSnapshot], report: ProgressSink) -> Path:
        logger.info(f"Starting CSV export for guild {guild.id} ({len(members)} members in snapshot)")
        async with self.checkpoint_session(guild.id) as progress:
            try:
                return await self._run(guild, members, progress, report)
            except Exception:
                logger.error(f"Export for guild {guild.id} failed; partial data left in {progress.temp_file}")
                raise

    async def _open_progress(self, guild_id: int) -> ExportProgress:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        progress = await self.store.load(guild_id)
        if progress is not None and progress.temp_file and Path(progress.temp_file).exists():
            written = await asyncio.to_thread(_read_written_ids_sync, Path(progress.temp_file))
            progress.processed_users |= written
            logger.info(f"Resuming export for guild {guild_id}: {len(progress.processed_users)} users already exported")
            return progress

        if progress is not None:
            logger.warning(f"Checkpoint for guild {guild_id} points at a missing file, starting fresh")
        progress = ExportProgress(guild_id=guild_id, start_time=self.clock(), last_update_time=self.clock())
        temp_path = self.output_dir / f"temp_export_{guild_id}_{int(self.clock() * 1000)}.csv"
        progress.temp_file = str(temp_path)
        await asyncio.to_thread(_append_rows_sync, temp_path, [EXPORT_HEADER])
        return progress

    async def _run(self, guild: Any, members: Sequence[MemberSnapshot], progress: ExportProgress, report: ProgressSink) -> Path:
        temp_path = Path(progress.temp_file)
        humans = [m for m in members if not m.is_bot]
        remaining = [m for m in humans if m.id not in progress.processed_users]
        total = len(humans)
        done_before = total - len(remaining)

        progress.current_batch = 0
        progress.total_batches = math.ceil(len(remaining) / self.batch_size)
        channels = self.gateway.text_channels(guild)
        logger.info(f"Exporting {len(remaining)} members in {progress.total_batches} batches across {len(channels)} channels")

        run_started = self.clock()
        last_report = run_started
        run_processed = 0
        buffer: List[List[Any]] = []

        for start in range(0, len(remaining), self.batch_size):
            progress.current_batch += 1
            for member in remaining[start:start + self.batch_size]:
                now = self.clock()
                if now - last_report >= self.progress_interval:
                    text = format_progress_report(progress, done_before + run_processed, total, member.username,
                                                  run_processed, now - run_started, now)
                    await self._send_report(report, text)
                    last_report = now
                    progress.last_update_time = now

                message_count = await self.fetcher.count_user_messages(channels, member.id)
                buffer.append(self.build_row(member, message_count))
                progress.mark_processed(member.id)
                run_processed += 1

                if len(buffer) >= self.flush_rows or run_processed % self.save_every == 0:
                    await asyncio.to_thread(_append_rows_sync, temp_path, buffer)
                    buffer = []
                    await self.store.save(progress)

        if buffer:
            await asyncio.to_thread(_append_rows_sync, temp_path, buffer)

        stamp = datetime.now(timezone.utc).strftime('%Y-%m-%dT%H-%M-%S')
        final_path = self.output_dir / f"user_data_{guild.id}_{stamp}.csv"
        await asyncio.to_thread(_finalize_sync, temp_path, final_path)

        now = self.clock()
        last_name = remaining[-1].username if remaining else None
        await self._send_report(report, format_progress_report(progress, total, total, last_name,
                                                               run_processed, now - run_started, now))
        logger.info(f"Export for guild {guild.id} complete: {total} members written to {final_path}")
        return final_path

    @staticmethod
    def build_row(member: MemberSnapshot, message_count: int) -> List[Any]:
        return [
            member.id,
            member.username,
            member.highest_role_name,
            format_date(member.joined_at),
            format_date(member.created_at),
            message_count,
        ]

    @staticmethod
    async def _send_report(report: ProgressSink, text: str) -> None:
        try:
            await report(text)
        except (discord.DiscordException, asyncio.TimeoutError) as e:
            logger.warning(f"Failed to update progress message: {e}")


def build_activity_csv(members: Iterable[MemberSnapshot], activity_counts: Dict[int, int]) -> str:
    """The `!count export` sheet: current snapshot plus the rolling message counter."""
    rows: List[Sequence[Any]] = [ACTIVITY_HEADER]
    for member in members:
        if member.is_bot:
            continue
        rows.append([
            member.id,
            member.username,
            member.highest_role_name,
            format_utc(member.joined_at),
            format_utc(member.created_at),
            activity_counts.get(member.id, 0),
        ])
    return _write_rows(rows)

def build_unverified_csv(members: Sequence[MemberSnapshot]) -> str:
    """Expects members already filtered and ordered (see `tally.unverified_members`)."""
    rows: List[Sequence[Any]] = [EXTRACT_HEADER]
    rows += [[m.id, m.username, m.display_name, format_utc(m.joined_at), format_utc(m.created_at)] for m in members]
    return _write_rows(rows)

def build_noroles_csv(members: Sequence[MemberSnapshot], now: Optional[datetime] = None) -> str:
    """Expects members already filtered and ordered (see `tally.roleless_members`)."""
    now = now or datetime.now(timezone.utc)
    rows: List[Sequence[Any]] = [EXTRACT_HEADER + ["Time Without Roles"]]
    for m in members:
        days = (now - m.joined_at).days if m.joined_at else 0
        rows.append([m.id, m.username, m.display_name, format_utc(m.joined_at), format_utc(m.created_at), f"{days} days"])
    return _write_rows(rows)
