import importlib
import sys
from types import SimpleNamespace

import pytest
from discord.ext import commands
from discord.ext.commands.view import StringView
from loguru import logger

import config

ALLOWED_CHANNEL = 5
COMMAND_LINES = [
    "help",
    "count",
    "count unverified",
    "count export",
    "extract",
    "extract unverified",
    "extract noroles",
    "export",
    "purge noroles rate=5",
    "purge status unverified",
    "purge stop unverified",
]


class RecordingHelper:
    def __init__(self):
        self.calls = []

    def __getattr__(self, name):
        async def record(ctx, *args):
            self.calls.append((name, args))
        return record


class CommandContext:
    """Just enough of commands.Context for Command.invoke to parse, check and dispatch."""

    def __init__(self, bot, line, channel_id=ALLOWED_CHANNEL, role_names=("Admin",)):
        name, _, rest = line.partition(" ")
        self.bot = bot
        self.prefix = "!"
        self.view = StringView(rest)
        self.invoked_with = name
        self.invoked_parents = []
        self.invoked_subcommand = None
        self.subcommand_passed = None
        self.command = None
        self.command_failed = False
        self.cog = None
        self.interaction = None
        self.args = []
        self.kwargs = {}
        self.guild = SimpleNamespace(id=42, name="Test Guild")
        self.channel = SimpleNamespace(id=channel_id, name="general")
        self.author = SimpleNamespace(id=7, name="tester", roles=[SimpleNamespace(name=n) for n in role_names])
        self.message = SimpleNamespace(content=f"!{line}", attachments=[])
        self.sent = []

    async def send(self, content=None, **kwargs):
        self.sent.append(content)

    async def reply(self, content=None, **kwargs):
        self.sent.append(content)


@pytest.fixture(scope="module")
def bot_module(tmp_path_factory):
    patch = pytest.MonkeyPatch()
    patch.setattr(config, "VERIFIED_ROLE_ID", 100)
    patch.setattr(config, "ALLOWED_CHANNELS", {ALLOWED_CHANNEL})
    patch.setattr(config, "ALLOWED_ROLES", ["Admin"])
    patch.setattr(config, "LOG_DIR", str(tmp_path_factory.mktemp("logs")))
    try:
        yield sys.modules.get("bot") or importlib.import_module("bot")
    finally:
        patch.undo()
        logger.remove()
        logger.add(sys.stderr)


@pytest.fixture
def recorder(bot_module, monkeypatch):
    helper = RecordingHelper()
    monkeypatch.setattr(bot_module, "helper", helper)
    return helper


async def _invoke(bot_module, line, **ctx_kwargs):
    ctx = CommandContext(bot_module.bot, line, **ctx_kwargs)
    await bot_module.bot.get_command(line.split()[0]).invoke(ctx)
    return ctx


@pytest.mark.parametrize("line", COMMAND_LINES)
@pytest.mark.parametrize("ctx_kwargs", [
    {"channel_id": 999},
    {"role_names": ("Member",)},
], ids=["wrong-channel", "missing-role"])
@pytest.mark.asyncio
async def test_every_command_and_subcommand_is_gated(bot_module, recorder, line, ctx_kwargs):
    with pytest.raises(commands.CheckFailure):
        await _invoke(bot_module, line, **ctx_kwargs)

    assert recorder.calls == []


@pytest.mark.parametrize("line, expected", [
    ("count unverified", ("list_unverified", ())),
    ("extract noroles", ("extract_noroles", ())),
    ("purge stop unverified", ("stop_purge", ("unverified",))),
])
@pytest.mark.asyncio
async def test_authorized_subcommands_reach_helper(bot_module, recorder, line, expected):
    await _invoke(bot_module, line)

    assert recorder.calls == [expected]
