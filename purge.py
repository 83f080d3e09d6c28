# purge.py
# Recurring, cancellable removal of role-less or unverified members, one operation per
# (guild, purge type).

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from loguru import logger

from gateway import MemberSnapshot
from tally import has_no_roles, is_verified, join_order_key
from tools import format_duration, format_utc, utcnow

PURGE_INTERVAL = 3600
GRACE_PERIOD = timedelta(hours=24)
REMOVAL_DELAY = 1.0


class PurgeError(Exception):
    """Base class for purge usage errors; the message is safe to show to the user."""

class AlreadyRunning(PurgeError):
    pass

class NotRunning(PurgeError):
    pass

class InvalidRate(PurgeError):
    pass

class UnknownPurgeType(PurgeError):
    pass


class PurgeType(str, Enum):
    NO_ROLES = "noroles"
    UNVERIFIED = "unverified"

    @classmethod
    def parse(cls, value: Optional[str]) -> 'PurgeType':
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            raise UnknownPurgeType(f"Unknown purge type `{value}`. Use `noroles` or `unverified`.") from None

    @property
    def label(self) -> str:
        return "No roles" if self is PurgeType.NO_ROLES else "Not verified"


class RepeatingTask:
    """
    Runs `callback` every `interval` seconds until cancelled. The first run happens one interval
    after `start()`. Cancelling while waiting stops immediately; cancelling while a run is in
    progress lets that run finish and prevents any further one.
    """

    def __init__(self, name: str, interval: float, callback: Callable[[], Awaitable[None]],
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep) -> None:
        self.name = name
        self.interval = interval
        self.callback = callback
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None
        self._cancelled = False
        self._in_flight = False

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done() and not self._cancelled

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=self.name)

    async def _run(self) -> None:
        while not self._cancelled:
            await self._sleep(self.interval)
            if self._cancelled:
                return
            self._in_flight = True
            try:
                await self.callback()
            except Exception as e:
                logger.opt(exception=e).error(f"Repeating task {self.name} failed: {e}")
            finally:
                self._in_flight = False

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        if self._task is not None and not self._in_flight:
            self._task.cancel()


@dataclass
class PurgeStatus:
    purge_type: PurgeType
    rate: int
    running_time: str
    processed_count: int
    skipped_count: int
    failed_count: int
    batches_run: int


@dataclass
class PurgeOperation:
    guild_id: int
    purge_type: PurgeType
    rate: int
    is_running: bool = False
    start_time: datetime = field(default_factory=utcnow)
    processed_count: int = 0
    skipped_count: int = 0
    failed_count: int = 0
    batches_run: int = 0
    task: Optional[RepeatingTask] = None

    @property
    def key(self) -> Tuple[int, PurgeType]:
        return (self.guild_id, self.purge_type)

    def status(self, now: Optional[datetime] = None) -> PurgeStatus:
        now = now or utcnow()
        return PurgeStatus(
            purge_type=self.purge_type,
            rate=self.rate,
            running_time=format_duration(now - self.start_time),
            processed_count=self.processed_count,
            skipped_count=self.skipped_count,
            failed_count=self.failed_count,
            batches_run=self.batches_run,
        )


class PurgeScheduler:
    """
    Owns the registry of live purge operations, keyed by (guild id, purge type).

    Each batch re-fetches the member list, picks the `rate` oldest eligible members, and
    re-checks each one against the live cache right before removing it. Registry changes
    happen between awaits, so the one-operation-per-key rule needs no lock.
    `sleep` only paces removals inside a batch; the hourly trigger always waits on the event loop.
    """

    def __init__(
        self,
        gateway: Any,
        verified_role_id: int,
        interval: float = PURGE_INTERVAL,
        grace: timedelta = GRACE_PERIOD,
        removal_delay: float = REMOVAL_DELAY,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self.gateway = gateway
        self.verified_role_id = verified_role_id
        self.interval = interval
        self.grace = grace
        self.removal_delay = removal_delay
        self._sleep = sleep
        self._now = now
        self._operations: Dict[Tuple[int, PurgeType], PurgeOperation] = {}

    @property
    def grace_hours(self) -> int:
        return int(self.grace.total_seconds() // 3600)

    def get(self, guild_id: int, purge_type: PurgeType) -> Optional[PurgeOperation]:
        return self._operations.get((guild_id, purge_type))

    def active_operations(self) -> List[PurgeOperation]:
        return list(self._operations.values())

    async def start(self, guild: Any, purge_type: PurgeType, rate: int) -> PurgeOperation:
        if rate <= 0:
            raise InvalidRate("Invalid rate. Please specify a positive number.")
        existing = self.get(guild.id, purge_type)
        if existing is not None and existing.is_running:
            raise AlreadyRunning(f"A {purge_type.value} purge operation is already running.")

        operation = PurgeOperation(guild_id=guild.id, purge_type=purge_type, rate=rate,
                                   is_running=True, start_time=self._now())
        operation.task = RepeatingTask(f"purge-{guild.id}-{purge_type.value}", self.interval,
                                       lambda: self._run_batch_safely(operation, guild))
        self._operations[operation.key] = operation
        self._log(operation, "START", rate=rate, type=purge_type.value, startTime=format_utc(operation.start_time))

        operation.task.start()
        await self._run_batch_safely(operation, guild)
        return operation

    def stop(self, guild_id: int, purge_type: PurgeType) -> PurgeOperation:
        operation = self._operations.pop((guild_id, purge_type), None)
        if operation is None or not operation.is_running:
            raise NotRunning(f"No {purge_type.value} purge operation is running.")
        if operation.task is not None:
            operation.task.cancel()
        operation.is_running = False
        self._log(operation, "STOP", type=purge_type.value, processedTotal=operation.processed_count,
                  skippedTotal=operation.skipped_count, failedTotal=operation.failed_count,
                  duration=format_duration(self._now() - operation.start_time))
        return operation

    def status(self, guild_id: int, purge_type: PurgeType) -> Optional[PurgeStatus]:
        operation = self.get(guild_id, purge_type)
        if operation is None or not operation.is_running:
            return None
        return operation.status(self._now())

    async def shutdown(self) -> None:
        for operation in list(self._operations.values()):
            if operation.task is not None:
                operation.task.cancel()
            operation.is_running = False
        self._operations.clear()

    def is_eligible(self, member: MemberSnapshot, purge_type: PurgeType, now: datetime) -> bool:
        if member.is_bot or member.joined_at is None:
            return False
        if member.joined_at >= now - self.grace:
            return False
        if purge_type is PurgeType.NO_ROLES:
            return has_no_roles(member)
        return not is_verified(member, self.verified_role_id)

    def select_cohort(self, members: Iterable[MemberSnapshot], purge_type: PurgeType, rate: int, now: datetime) -> List[MemberSnapshot]:
        eligible = [m for m in members if self.is_eligible(m, purge_type, now)]
        eligible.sort(key=join_order_key)
        return eligible[:rate]

    async def _run_batch_safely(self, operation: PurgeOperation, guild: Any) -> None:
        try:
            await self.run_batch(operation, guild)
        except Exception as e:
            logger.opt(exception=e).error(f"Purge batch for {operation.purge_type.value} in guild {operation.guild_id} failed: {e}")

    async def run_batch(self, operation: PurgeOperation, guild: Any) -> None:
        members = await self.gateway.fetch_all_members(guild)
        now = self._now()
        cohort = self.select_cohort(members, operation.purge_type, operation.rate, now)
        operation.batches_run += 1
        logger.info(f"Purge {operation.purge_type.value} batch {operation.batches_run} in guild {guild.id}: {len(cohort)} candidates")

        for index, candidate in enumerate(cohort):
            if index:
                await self._sleep(self.removal_delay)
            await self._process_candidate(operation, guild, candidate)

    async def _process_candidate(self, operation: PurgeOperation, guild: Any, candidate: MemberSnapshot) -> None:
        now = self._now()
        current = await self.gateway.refresh_member(guild, candidate.id)
        if current is None:
            self._skip(operation, candidate, "Member left the server")
            return
        if not self.is_eligible(current, operation.purge_type, now):
            too_new = current.joined_at is None or current.joined_at >= now - self.grace
            self._skip(operation, current, f"Joined less than {self.grace_hours}h ago" if too_new else "Conditions no longer met")
            return

        hours_in_server = int((now - current.joined_at).total_seconds() // 3600)
        reason = f"Automated purge: {operation.purge_type.label} (joined {hours_in_server}h ago)"
        if await self.gateway.remove_member(guild, current.id, reason):
            operation.processed_count += 1
            self._log(operation, "KICK", userId=current.id, username=current.username,
                      joinDate=format_utc(current.joined_at), hoursInServer=hours_in_server, reason=reason)
        else:
            operation.failed_count += 1
            self._log(operation, "ERROR", userId=current.id, username=current.username, error="Removal failed")

    def _skip(self, operation: PurgeOperation, member: MemberSnapshot, reason: str) -> None:
        operation.skipped_count += 1
        self._log(operation, "SKIP", userId=member.id, username=member.username,
                  joinDate=format_utc(member.joined_at), reason=reason)

    def _log(self, operation: PurgeOperation, action: str, **detail: Any) -> None:
        logger.bind(guild_id=operation.guild_id, action=action, **detail).info(
            f"PURGE {action}: {operation.purge_type.value} in guild {operation.guild_id}"
        )
