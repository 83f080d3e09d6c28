import codecs
import csv
import io
from types import SimpleNamespace

import pytest

from gateway import RoleInfo
from helper import (
    PURGE_USAGE,
    BotHelper,
    command_access_denial,
    create_message_chunks,
    csv_attachment,
    parse_rate_argument,
)
from purge import InvalidRate, PurgeScheduler
from tools import BotConfig, BotState

from conftest import FakeGateway, make_member

VERIFIED = RoleInfo(100, "Verified", 1)
ALPHA = RoleInfo(10, "Alpha", 6)
BETA = RoleInfo(11, "Beta", 5)
ROLE_NAMES = {10: "Alpha", 11: "Beta", 12: "Gamma"}


class FakeContext:
    def __init__(self, guild, channel_id=5, author_roles=("Admin",)):
        self.guild = guild
        self.channel = SimpleNamespace(id=channel_id, name="commands")
        self.author = SimpleNamespace(id=7, roles=[SimpleNamespace(name=name) for name in author_roles])
        self.sent = []
        self.replies = []

    async def send(self, content=None, **kwargs):
        self.sent.append(SimpleNamespace(content=content, **kwargs))

    async def reply(self, content=None, **kwargs):
        self.replies.append(SimpleNamespace(content=content, **kwargs))


class FakeChannel:
    def __init__(self, name):
        self.name = name
        self.renames = []

    async def edit(self, name):
        self.renames.append(name)
        self.name = name


def _config(**overrides):
    settings = dict(
        ALLOWED_CHANNELS={5},
        ALLOWED_ROLES=["Admin"],
        VERIFIED_ROLE_ID=VERIFIED.id,
        COUNT_ROLES=[10, 11, 12],
        EMBED_FOOTER_TEXT="Footer",
        FETCH_DELAY_SECONDS=0,
    )
    settings.update(overrides)
    return BotConfig.from_config_module(SimpleNamespace(**settings))

def _guild(channels=None):
    channels = channels or {}
    return SimpleNamespace(
        id=42,
        name="Test Guild",
        filesize_limit=25 * 1024 * 1024,
        get_role=lambda role_id: SimpleNamespace(name=ROLE_NAMES[role_id]) if role_id in ROLE_NAMES else None,
        get_channel=channels.get,
    )

def _helper(members=(), recording_sleep=None, **config_overrides):
    config = _config(**config_overrides)
    gateway = FakeGateway(members)
    scheduler = PurgeScheduler(gateway, config.VERIFIED_ROLE_ID, sleep=recording_sleep) if recording_sleep else None
    return BotHelper(SimpleNamespace(), BotState(config), config, gateway=gateway, scheduler=scheduler), gateway


def test_chunks_stay_under_limit_and_keep_order():
    entries = list(range(1, 401))

    chunks = create_message_chunks(entries, lambda n: f"{n}. <@{10**17 + n}>", header="Total: 400\n\n")

    assert len(chunks) > 1
    assert all(len(chunk) <= 1900 for chunk in chunks)
    assert chunks[0].startswith("Total: 400\n\n")
    lines = [line for chunk in chunks for line in chunk.splitlines() if line.startswith(tuple("0123456789"))]
    assert [int(line.split(".")[0]) for line in lines] == entries


def test_rate_argument_parsing():
    assert parse_rate_argument("rate=5") == 5
    assert parse_rate_argument("RATE=12") == 12
    assert parse_rate_argument("3") == 3
    for bad in ("rate=0", "rate=-2", "rate=abc", "rate=", None):
        with pytest.raises(InvalidRate):
            parse_rate_argument(bad)


def test_command_access_requires_channel_and_role():
    config = _config()
    guild = _guild()

    assert command_access_denial(FakeContext(guild), config) is None
    assert "<#5>" in command_access_denial(FakeContext(guild, channel_id=6), config)
    assert "permission" in command_access_denial(FakeContext(guild, author_roles=("Member",)), config)
    assert command_access_denial(FakeContext(None), config) is not None


def test_csv_attachment_carries_bom():
    attachment = csv_attachment("a,b\n", "x.csv")
    assert attachment.filename == "x.csv"
    assert attachment.fp.read().startswith(codecs.BOM_UTF8)


@pytest.mark.asyncio
async def test_count_embed():
    members = [
        make_member(1, roles=[ALPHA, VERIFIED]),
        make_member(2, roles=[BETA, VERIFIED]),
        make_member(3, roles=[BETA, VERIFIED]),
        make_member(4),
        make_member(5, is_bot=True),
    ]
    helper, _ = _helper(members)
    ctx = FakeContext(_guild())

    await helper.show_count(ctx)

    embed = ctx.sent[0].embed
    assert embed.title == "Total members: 4"
    assert embed.description == "Unverified members: 1 (25.0%)"
    assert [(f.name, f.value) for f in embed.fields] == [
        ("Alpha", "1 (25.0%)"),
        ("Beta", "2 (50.0%)"),
        ("Gamma", "0 (0.00%)"),
    ]
    assert embed.footer.text == "Footer"


@pytest.mark.asyncio
async def test_unverified_list_is_numbered_oldest_first():
    members = [make_member(i, hours_ago=1000 - i) for i in range(1, 301)]
    helper, _ = _helper(members)
    ctx = FakeContext(_guild())

    await helper.list_unverified(ctx)

    texts = [message.content for message in ctx.sent]
    assert texts[0].startswith("Total Unverified Members: 300\n\n1. <@1>\n2. <@2>\n")
    assert all(len(text) <= 1900 for text in texts)
    assert texts[-1].rstrip().endswith("300. <@300>")


@pytest.mark.asyncio
async def test_extract_reports_empty_result():
    helper, _ = _helper([make_member(1, roles=[VERIFIED])])
    ctx = FakeContext(_guild())

    await helper.extract_noroles(ctx)
    await helper.extract_unverified(ctx)

    assert [m.content for m in ctx.sent] == ["No members without roles found.", "No unverified members found."]


@pytest.mark.asyncio
async def test_extract_unverified_attaches_csv():
    helper, _ = _helper([make_member(1, hours_ago=5), make_member(2, hours_ago=50), make_member(3, roles=[VERIFIED])])
    ctx = FakeContext(_guild())

    await helper.extract_unverified(ctx)

    message = ctx.sent[0]
    assert message.content.startswith("Found 2 unverified members.")
    assert message.file.filename.startswith("unverified_members_")
    rows = list(csv.reader(io.StringIO(message.file.fp.read().decode("utf-8-sig"))))
    assert [row[0] for row in rows[1:]] == ["2", "1"]


@pytest.mark.asyncio
async def test_count_export_uses_activity_counter():
    helper, _ = _helper([make_member(1), make_member(2)])
    await helper.state.record_message(2)
    await helper.state.record_message(2)
    ctx = FakeContext(_guild())

    await helper.count_export(ctx)

    attachment = ctx.sent[1].file
    rows = list(csv.reader(io.StringIO(attachment.fp.read().decode("utf-8-sig"))))
    assert rows[0][-1] == "Messages (Last 24h)"
    assert {row[0]: row[5] for row in rows[1:]} == {"1": "0", "2": "2"}


@pytest.mark.asyncio
async def test_full_export_uploads_file_and_releases_guild(tmp_path):
    helper, gateway = _helper([make_member(1), make_member(2)], EXPORT_DIR=str(tmp_path))
    ctx = FakeContext(_guild())

    await helper.run_full_export(ctx)

    assert gateway.sent[0].content.startswith("🤖")
    assert ctx.sent[-1].file.filename.startswith("user_data_42_")
    assert helper.state.active_exports == set()


@pytest.mark.asyncio
async def test_second_export_for_same_guild_is_rejected():
    helper, gateway = _helper([make_member(1)])
    helper.state.active_exports.add(42)
    ctx = FakeContext(_guild())

    await helper.run_full_export(ctx)

    assert ctx.sent[0].content == "An export is already running for this server."
    assert gateway.sent == []


@pytest.mark.asyncio
async def test_purge_commands_round_trip(recording_sleep):
    helper, gateway = _helper([make_member(1, hours_ago=100)], recording_sleep=recording_sleep)
    ctx = FakeContext(_guild())

    try:
        await helper.start_purge(ctx, "noroles", "rate=0")
        await helper.start_purge(ctx, "noroles", None)
        await helper.start_purge(ctx, "sometimes", "rate=1")
        assert ctx.replies[0].content == "Invalid rate. Please specify a positive number."
        assert ctx.replies[1].content == PURGE_USAGE
        assert ctx.replies[2].content.startswith("Unknown purge type")
        assert helper.scheduler.active_operations() == []

        await helper.start_purge(ctx, "noroles", "rate=2")
        started = ctx.replies[3].embed
        assert started.title == "Started noroles Purge Operation"
        assert started.description.startswith("Rate: 2 users/hour")
        assert started.footer.text == "Only affecting users who joined >24h ago"
        assert [member_id for member_id, _ in gateway.removal_attempts] == [1]

        await helper.start_purge(ctx, "noroles", "rate=2")
        assert ctx.replies[4].content == "A noroles purge operation is already running."

        await helper.purge_status(ctx, "noroles")
        status = {f.name: f.value for f in ctx.replies[5].embed.fields}
        assert status["Rate"] == "2/hour"
        assert status["Processed"] == "1"

        await helper.stop_purge(ctx, "noroles")
        await helper.stop_purge(ctx, "noroles")
        await helper.purge_status(ctx, "noroles")
        assert [r.content for r in ctx.replies[6:]] == [
            "Stopped noroles purge operation.",
            "No noroles purge operation is running.",
            "No noroles purge operation is running.",
        ]
    finally:
        await helper.scheduler.shutdown()


@pytest.mark.asyncio
async def test_channel_counters_rename_only_when_changed():
    members = [
        make_member(1, roles=[ALPHA, VERIFIED]),
        make_member(2, roles=[BETA, VERIFIED]),
        make_member(3, roles=[BETA, VERIFIED]),
        make_member(4, is_bot=True),
    ]
    channels = {500: FakeChannel("old"), 501: FakeChannel("old"), 502: FakeChannel("Beta: 2")}
    helper, _ = _helper(
        members,
        TOTAL_MEMBER_COUNT_CHANNEL_ID=500,
        TOTAL_MEMBER_COUNT_NAME_FORMAT="Members: {count}",
        SCHEDULED_ROLES=[(10, 501, "Alpha: {count}"), (11, 502, "Beta: {count}"), (12, 999, "Gamma: {count}")],
    )

    await helper.update_channel_names(_guild(channels))

    assert channels[500].renames == ["Members: 3"]
    assert channels[501].renames == ["Alpha: 1"]
    assert channels[502].renames == []


@pytest.mark.asyncio
async def test_purge_stopped_during_first_batch_sends_no_started_embed(recording_sleep):
    class StoppingGateway(FakeGateway):
        async def remove_member(self, guild, member_id, reason):
            removed = await super().remove_member(guild, member_id, reason)
            await helper.stop_purge(ctx, "noroles")
            return removed

    config = _config()
    gateway = StoppingGateway([make_member(1, hours_ago=100), make_member(2, hours_ago=90)])
    scheduler = PurgeScheduler(gateway, config.VERIFIED_ROLE_ID, sleep=recording_sleep)
    helper = BotHelper(SimpleNamespace(), BotState(config), config, gateway=gateway, scheduler=scheduler)
    ctx = FakeContext(_guild())

    try:
        await helper.start_purge(ctx, "noroles", "rate=1")

        assert [r.content for r in ctx.replies] == ["Stopped noroles purge operation."]
        assert not any(getattr(r, "embed", None) for r in ctx.replies)
        assert scheduler.active_operations() == []
    finally:
        await scheduler.shutdown()
