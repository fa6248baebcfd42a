"""
Tests for application wiring and process exit codes.
"""

import asyncio

import pytest

from markovbot.config import AppConfig, MatrixConfig, StorageConfig
from markovbot.core.events import InboundEvent, StanzaType
from markovbot.core.persistence import CorpusRepository, DatabaseManager
from markovbot.core.router import MessageRouter
from markovbot.main import (
    EXIT_CONFIG_ERROR,
    EXIT_DATABASE_ERROR,
    EXIT_OK,
    MarkovBotApp,
    main,
    parse_arguments,
)

BOT_ID = "@markovbot:example.org"
ROOM = "#room1:example.org"
ROOM_ID = "!room1:example.org"


class ScriptedTransport:
    def __init__(self, batches=None):
        self.batches = list(batches or [])
        self.closed = False
        self.sent = []

    async def open(self):
        return BOT_ID

    async def initial_sync(self):
        pass

    async def sync(self):
        await asyncio.sleep(0.01)
        batch = self.batches.pop(0) if self.batches else []
        if isinstance(batch, Exception):
            raise batch
        return batch

    async def join(self, room, nick=None):
        return {"success": True, "room_id": ROOM_ID}

    async def send_text(self, room_id, body):
        self.sent.append((room_id, body))
        return {"success": True, "event_id": "$1", "room_id": room_id}

    async def close(self):
        self.closed = True


def app_config(db_path):
    return AppConfig(
        rooms=[{"room": ROOM, "nick": "ash"}],
        matrix=MatrixConfig(homeserver="https://matrix.example.org", user_id=BOT_ID, password="pw"),
        storage=StorageConfig(db_path=str(db_path)),
    )


async def wait_for(condition, timeout=5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


@pytest.mark.unit
class TestArguments:
    def test_defaults(self):
        args = parse_arguments([])
        assert args.config is None
        assert args.log_level is None

    def test_config_and_log_level(self):
        args = parse_arguments(["bot.toml", "--log-level", "DEBUG"])
        assert args.config == "bot.toml"
        assert args.log_level == "DEBUG"


@pytest.mark.error_handling
class TestExitCodes:
    @pytest.mark.asyncio
    async def test_missing_config_file(self, tmp_path, capsys):
        assert await main([str(tmp_path / "absent.toml")]) == EXIT_CONFIG_ERROR
        assert "configuration error" in capsys.readouterr().err

    @pytest.mark.asyncio
    async def test_invalid_config_file(self, tmp_path):
        path = tmp_path / "bad.toml"
        path.write_text("[chain]\norder = 'two'\n")

        assert await main([str(path)]) == EXIT_CONFIG_ERROR

    @pytest.mark.asyncio
    async def test_database_failure(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("")
        app = MarkovBotApp(app_config(blocker / "corpus.db"), transport_factory=lambda c: ScriptedTransport())

        assert await app.run() == EXIT_DATABASE_ERROR
        assert app.session is None


@pytest.mark.integration
class TestRun:
    @pytest.mark.asyncio
    async def test_clean_shutdown_after_training(self, tmp_path):
        db_path = tmp_path / "corpus.db"
        event = InboundEvent(StanzaType.MESSAGE, ROOM_ID, "@alice:example.org", body="the cat sat", member_count=4)
        transport = ScriptedTransport(batches=[[event]])
        app = MarkovBotApp(app_config(db_path), transport_factory=lambda c: transport)

        task = asyncio.create_task(app.run())
        await wait_for(lambda: app.router is not None and app.router.stats["trained"] == 2)
        app.request_stop()

        assert await asyncio.wait_for(task, timeout=5.0) == EXIT_OK
        assert transport.closed is True

        db = DatabaseManager(str(db_path))
        try:
            repository = CorpusRepository(db)
            assert await repository.count_entries(ROOM) == 1
            assert await repository.count_entries("global") == 1
            assert set(await repository.get_snapshots()) == {ROOM, "global"}
        finally:
            await db.cleanup()

    @pytest.mark.asyncio
    async def test_routing_failure_skips_only_that_event(self, tmp_path, monkeypatch):
        route = MessageRouter.route
        routed = []

        async def flaky_route(self, event):
            routed.append(event.body)
            if event.body == "boom":
                raise RuntimeError("routing exploded")
            return await route(self, event)

        monkeypatch.setattr(MessageRouter, "route", flaky_route)
        events = [
            InboundEvent(StanzaType.MESSAGE, ROOM_ID, "@alice:example.org", body=body, member_count=4)
            for body in ("boom", "the cat sat")
        ]
        transport = ScriptedTransport(batches=[[events[0]], [events[1]]])
        app = MarkovBotApp(app_config(tmp_path / "corpus.db"), transport_factory=lambda c: transport)

        task = asyncio.create_task(app.run())
        await wait_for(lambda: app.router is not None and app.router.stats["trained"] == 2)
        app.request_stop()

        assert await asyncio.wait_for(task, timeout=5.0) == EXIT_OK
        assert routed == ["boom", "the cat sat"]
        assert transport.closed is True

    @pytest.mark.asyncio
    async def test_receive_failure_still_cleans_up(self, tmp_path):
        db_path = tmp_path / "corpus.db"
        event = InboundEvent(StanzaType.MESSAGE, ROOM_ID, "@alice:example.org", body="the cat sat", member_count=4)
        transport = ScriptedTransport(batches=[[event], RuntimeError("sync exploded")])
        app = MarkovBotApp(app_config(db_path), transport_factory=lambda c: transport)

        assert await asyncio.wait_for(app.run(), timeout=5.0) == EXIT_OK
        assert transport.closed is True

        db = DatabaseManager(str(db_path))
        try:
            assert set(await CorpusRepository(db).get_snapshots()) == {ROOM, "global"}
        finally:
            await db.cleanup()
