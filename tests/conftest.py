import asyncio
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace

import pytest

# Ensure the repository root (parent directory of this file) is on the import path,
# so the flat top-level modules import the same way bot.py imports them.
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from gateway import MemberSnapshot, RoleInfo  # noqa: E402

NOW = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)
EVERYONE = RoleInfo(1, "@everyone", 0)


def make_member(
    member_id,
    roles=(),
    joined_at=None,
    hours_ago=None,
    is_bot=False,
    username=None,
    display_name=None,
    created_at=None,
):
    ordered = tuple(sorted(roles, key=lambda r: r.position, reverse=True))
    top = ordered[0] if ordered else EVERYONE
    if joined_at is None and hours_ago is not None:
        joined_at = NOW - timedelta(hours=hours_ago)
    return MemberSnapshot(
        id=member_id,
        is_bot=is_bot,
        roles=ordered,
        highest_role_id=top.id,
        highest_role_name=top.name,
        joined_at=joined_at,
        created_at=created_at or datetime(2020, 1, 1, tzinfo=timezone.utc),
        display_name=display_name or f"Member {member_id}",
        username=username or f"user{member_id}",
    )

def make_message(message_id, author_id):
    return SimpleNamespace(id=message_id, author=SimpleNamespace(id=author_id))


class RecordingSleep:
    """Stands in for asyncio.sleep: records the requested delays and returns at once."""

    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


class FakeGateway:
    def __init__(self, members=(), channels=()):
        self.members = list(members)
        self.live = {m.id: m for m in self.members}
        self.channels = list(channels)
        self.history = {}
        self.failing_channels = set()
        self.failing_removals = set()
        self.removal_attempts = []
        self.fetch_calls = []
        self.sent = []
        self.edits = []

    async def fetch_all_members(self, guild):
        return list(self.members)

    async def refresh_member(self, guild, member_id):
        return self.live.get(member_id)

    def text_channels(self, guild):
        return list(self.channels)

    async def fetch_message_page(self, channel, limit, before=None):
        self.fetch_calls.append((channel.id, limit, before))
        if channel.id in self.failing_channels:
            raise asyncio.TimeoutError()
        messages = self.history.get(channel.id, [])
        start = 0
        if before is not None:
            start = [m.id for m in messages].index(before) + 1
        return messages[start:start + limit]

    async def remove_member(self, guild, member_id, reason):
        self.removal_attempts.append((member_id, reason))
        if member_id in self.failing_removals:
            return False
        self.live.pop(member_id, None)
        return True

    async def send_text(self, channel, content, **kwargs):
        message = SimpleNamespace(id=len(self.sent) + 1, content=content)
        self.sent.append(message)
        return message

    async def edit_message(self, message, content):
        self.edits.append(content)


@pytest.fixture
def recording_sleep():
    return RecordingSleep()

@pytest.fixture
def guild():
    return SimpleNamespace(id=42, name="Test Guild")
