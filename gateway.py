# gateway.py
# The narrow slice of the Discord API the bulk operations consume.
# Members are turned into immutable snapshots so a cycle never works on objects that the
# gateway cache mutates underneath it.

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any, List, Optional, Sequence, Tuple

import discord
from loguru import logger


@dataclass(frozen=True)
class RoleInfo:
    id: int
    name: str
    position: int
    managed: bool = False


@dataclass(frozen=True)
class MemberSnapshot:
    """
    An immutable view of one guild member, taken at fetch time.

    `roles` excludes the guild's base (@everyone) role and is ordered highest position first.
    `highest_role_id`/`highest_role_name` mirror Discord's top role, which is the base role
    when the member has no other roles.
    """
    id: int
    is_bot: bool
    roles: Tuple[RoleInfo, ...]
    highest_role_id: int
    highest_role_name: str
    joined_at: Optional[datetime]
    created_at: datetime
    display_name: str
    username: str

    @property
    def role_ids(self) -> Tuple[int, ...]:
        return tuple(role.id for role in self.roles)

    def has_role(self, role_id: Optional[int]) -> bool:
        return role_id is not None and any(role.id == role_id for role in self.roles)

    @classmethod
    def from_member(cls, member: discord.Member) -> 'MemberSnapshot':
        roles = sorted((r for r in member.roles if not r.is_default()), key=lambda r: r.position, reverse=True)
        top_role = member.top_role
        return cls(
            id=member.id,
            is_bot=member.bot,
            roles=tuple(RoleInfo(r.id, r.name, r.position, r.managed) for r in roles),
            highest_role_id=top_role.id,
            highest_role_name=top_role.name,
            joined_at=member.joined_at,
            created_at=member.created_at,
            display_name=member.display_name,
            username=str(member),
        )


class DiscordGateway:
    """
    Adapts discord.py objects to the operations the engines need. Every method that talks to
    the API either returns a result or raises; per-unit failure handling is the caller's job,
    except `remove_member`, which reports failure as False.
    """

    async def fetch_all_members(self, guild: discord.Guild) -> List[MemberSnapshot]:
        if not guild.chunked:
            await guild.chunk(cache=True)
        return [MemberSnapshot.from_member(m) for m in guild.members]

    async def refresh_member(self, guild: discord.Guild, member_id: int) -> Optional[MemberSnapshot]:
        """Returns the member's current state from the live cache, or None if they left."""
        member = guild.get_member(member_id)
        return MemberSnapshot.from_member(member) if member else None

    def text_channels(self, guild: discord.Guild) -> List[discord.TextChannel]:
        me = guild.me
        return [
            channel for channel in guild.text_channels
            if channel.permissions_for(me).view_channel and channel.permissions_for(me).read_message_history
        ]

    async def fetch_message_page(self, channel: discord.abc.Messageable, limit: int, before: Optional[int] = None) -> List[discord.Message]:
        """Returns up to `limit` messages, newest first, strictly older than message `before`."""
        before_obj = discord.Object(id=before) if before else None
        return [message async for message in channel.history(limit=limit, before=before_obj)]

    async def remove_member(self, guild: discord.Guild, member_id: int, reason: str) -> bool:
        try:
            await guild.kick(discord.Object(id=member_id), reason=reason)
            return True
        except discord.Forbidden:
            logger.warning(f"Missing permissions to remove member {member_id} from {guild.name}.")
        except discord.NotFound:
            logger.warning(f"Member {member_id} was already gone from {guild.name}.")
        except (discord.HTTPException, asyncio.TimeoutError) as e:
            logger.error(f"Failed to remove member {member_id} from {guild.name}: {e}")
        return False

    async def send_text(self, channel: discord.abc.Messageable, content: str, **kwargs: Any) -> discord.Message:
        return await channel.send(content, **kwargs)

    async def edit_message(self, message: discord.Message, content: str) -> None:
        await message.edit(content=content)


def role_names(member: MemberSnapshot, include_managed: bool = False) -> Sequence[str]:
    return [role.name for role in member.roles if include_managed or not role.managed]
