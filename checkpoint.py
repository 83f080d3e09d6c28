# checkpoint.py
# Resume-points for long-running exports, one JSON file per guild.

import asyncio
import json
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Set, Union

from loguru import logger


@dataclass
class ExportProgress:
    guild_id: int
    processed_users: Set[int] = field(default_factory=set)
    current_batch: int = 0
    total_batches: int = 0
    start_time: float = field(default_factory=time.time)
    last_update_time: float = field(default_factory=time.time)
    temp_file: Optional[str] = None

    def mark_processed(self, member_id: int) -> None:
        self.processed_users.add(member_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "guildId": self.guild_id,
            "processedUsers": sorted(self.processed_users),
            "currentBatch": self.current_batch,
            "totalBatches": self.total_batches,
            "startTime": self.start_time,
            "lastUpdateTime": self.last_update_time,
            "tempFile": self.temp_file,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ExportProgress':
        return cls(
            guild_id=int(data["guildId"]),
            processed_users={int(uid) for uid in data.get("processedUsers", [])},
            current_batch=int(data.get("currentBatch", 0)),
            total_batches=int(data.get("totalBatches", 0)),
            start_time=float(data["startTime"]),
            last_update_time=float(data.get("lastUpdateTime") or time.time()),
            temp_file=data.get("tempFile"),
        )


def _save_checkpoint_sync(file_path: Path, data: dict) -> None:
    # Write-then-rename so a crash mid-write never leaves a truncated checkpoint behind.
    tmp_path = file_path.with_suffix(file_path.suffix + ".tmp")
    with open(tmp_path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)
    os.replace(tmp_path, file_path)

def _load_checkpoint_sync(file_path: Path) -> dict:
    with open(file_path, "r", encoding="utf-8") as f:
        return json.load(f)


class CheckpointStore:
    """
    Loads, saves and removes export checkpoints. None of the three ever raises to the caller:
    an unreadable checkpoint means "start fresh", and a failed save only widens the window of
    work a resumed run has to redo.
    """

    def __init__(self, directory: Union[str, Path] = ".") -> None:
        self.directory = Path(directory)

    def path_for(self, guild_id: int) -> Path:
        return self.directory / f"export_progress_{guild_id}.json"

    async def load(self, guild_id: int) -> Optional[ExportProgress]:
        path = self.path_for(guild_id)
        if not path.exists():
            logger.debug(f"No previous export progress for guild {guild_id}, starting fresh")
            return None
        try:
            data = await asyncio.to_thread(_load_checkpoint_sync, path)
            progress = ExportProgress.from_dict(data)
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Ignoring unreadable export checkpoint {path}: {e}")
            return None
        if progress.guild_id != guild_id:
            logger.warning(f"Ignoring export checkpoint {path}: it belongs to guild {progress.guild_id}")
            return None
        logger.info(f"Export progress loaded: {len(progress.processed_users)} users previously processed")
        return progress

    async def save(self, progress: ExportProgress) -> None:
        progress.last_update_time = time.time()
        path = self.path_for(progress.guild_id)
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            await asyncio.to_thread(_save_checkpoint_sync, path, progress.to_dict())
            logger.debug(f"Progress saved: {len(progress.processed_users)} users processed")
        except OSError as e:
            logger.opt(exception=e).error(f"Failed to save export checkpoint {path}: {e}")

    async def cleanup(self, guild_id: int) -> None:
        try:
            await asyncio.to_thread(self.path_for(guild_id).unlink)
            logger.debug(f"Export checkpoint for guild {guild_id} cleaned up")
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove export checkpoint for guild {guild_id}: {e}")
