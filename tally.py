# tally.py
# Classification of members into mutually exclusive role buckets.

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Set, Union

from loguru import logger

from gateway import MemberSnapshot

_NEVER_JOINED = datetime.max.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class RoleBucket:
    role_id: int
    channel_id: Optional[int] = None
    name_format: Optional[str] = None


@dataclass
class TallyResult:
    total: int = 0
    unverified: int = 0
    counts: Dict[int, int] = field(default_factory=dict)
    counted_ids: Set[int] = field(default_factory=set)
    unaccounted: List[MemberSnapshot] = field(default_factory=list)

    @property
    def verified(self) -> int:
        return self.total - self.unverified

    @property
    def accounted(self) -> int:
        return sum(self.counts.values())

    def percent(self, count: int) -> float:
        return (count / self.total * 100) if self.total else 0.0


def is_verified(member: MemberSnapshot, verified_role_id: int) -> bool:
    return member.has_role(verified_role_id)

def has_no_roles(member: MemberSnapshot) -> bool:
    """True when the member holds nothing beyond the guild's base role."""
    return not member.roles

def join_order_key(member: MemberSnapshot) -> datetime:
    return member.joined_at or _NEVER_JOINED

def unverified_members(members: Iterable[MemberSnapshot], verified_role_id: int) -> List[MemberSnapshot]:
    """Non-bot members lacking the verified role, oldest join first."""
    return sorted((m for m in members if not m.is_bot and not is_verified(m, verified_role_id)), key=join_order_key)

def roleless_members(members: Iterable[MemberSnapshot]) -> List[MemberSnapshot]:
    """Non-bot members with no roles, oldest join first."""
    return sorted((m for m in members if not m.is_bot and has_no_roles(m)), key=join_order_key)

def effective_highest_role(member: MemberSnapshot, ignored_role_id: Optional[int]) -> Optional[int]:
    """
    The role a member is counted under. When the top role is the ignored role, the next
    highest non-managed role stands in for it; None if there is no such role.
    """
    if ignored_role_id is None or member.highest_role_id != ignored_role_id:
        return member.highest_role_id
    for role in member.roles:
        if role.id != ignored_role_id and not role.managed:
            return role.id
    return None

def bucket_percent_decimals(index: int) -> int:
    """Precision used when displaying bucket percentages; rarer buckets further down get more digits."""
    return 1 + min(index, 5) // 2

def tally(
    members: Iterable[MemberSnapshot],
    buckets: Sequence[Union[RoleBucket, int]],
    verified_role_id: int,
    ignored_role_id: Optional[int] = None,
) -> TallyResult:
    """
    Assigns every verified, non-bot member to at most one bucket: the one whose role equals the
    member's effective highest role. Unverified members are only counted as such; verified
    members matching no bucket end up in `unaccounted`.
    """
    bucket_ids = [b.role_id if isinstance(b, RoleBucket) else b for b in buckets]
    result = TallyResult(counts={role_id: 0 for role_id in bucket_ids})
    seen: Set[int] = set()

    for member in members:
        if member.is_bot or member.id in seen:
            continue
        seen.add(member.id)
        result.total += 1
        if not is_verified(member, verified_role_id):
            result.unverified += 1
            continue

        role_id = effective_highest_role(member, ignored_role_id)
        if role_id in result.counts:
            result.counts[role_id] += 1
            result.counted_ids.add(member.id)
            logger.debug(f"Counted member {member.username} for role {role_id}")
        else:
            result.unaccounted.append(member)

    return result
