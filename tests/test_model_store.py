"""
Tests for the model store and its SQLite persistence.
"""

import asyncio
import random
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from markovbot.core.chain import ChainEngine
from markovbot.core.model_store import ModelStore
from markovbot.core.persistence import ChainSnapshotRecord, CorpusRepository, DatabaseManager
from markovbot.exceptions import EmptyModelError, GenerateError, PersistenceError


def make_store(db_path, order=1, tokenizer_name="whitespace", snapshot_interval=0):
    engine = ChainEngine(order=order, rng=random.Random(5))
    return ModelStore(
        DatabaseManager(str(db_path)),
        engine,
        tokenizer_name=tokenizer_name,
        snapshot_interval=snapshot_interval,
    )


def replayed_state(order, *texts):
    engine = ChainEngine(order=order)
    state = engine.new_state()
    for text in texts:
        state = engine.train(state, engine.tokenize(text))
    return state


@pytest.mark.database
class TestTrainAndGenerate:
    @pytest.mark.asyncio
    async def test_train_then_generate(self, model_store):
        entry_id = await model_store.train("room1", "the cat sat", sender="@alice:example.org")

        assert entry_id is not None
        assert model_store.scopes() == ["room1"]
        assert await model_store.generate("room1") == "the cat sat"

    @pytest.mark.asyncio
    async def test_seeded_generation_picks_known_follower(self, model_store):
        await model_store.train("room1", "the cat sat")
        await model_store.train("room1", "the cat ran")

        for _ in range(10):
            reply = await model_store.generate("room1", seed="the cat")
            assert reply in {"cat sat", "cat ran"}

    @pytest.mark.asyncio
    async def test_untrained_scope_is_empty(self, model_store):
        await model_store.train("room1", "the cat sat")

        with pytest.raises(EmptyModelError) as exc_info:
            await model_store.generate("room2")
        assert exc_info.value.scope == "room2"

    @pytest.mark.asyncio
    async def test_blank_text_is_not_recorded(self, model_store):
        assert await model_store.train("room1", "   \n ") is None
        assert await model_store.repository.count_entries() == 0
        assert model_store.snapshot("room1") is None

    @pytest.mark.asyncio
    async def test_scopes_are_independent(self, model_store):
        await model_store.train("room1", "alpha beta")
        await model_store.train("global", "gamma delta")

        assert model_store.snapshot("room1").vocabulary() == {"alpha", "beta"}
        assert model_store.snapshot("global").vocabulary() == {"gamma", "delta"}
        assert await model_store.repository.count_entries("room1") == 1

    @pytest.mark.asyncio
    async def test_word_count(self, model_store):
        await model_store.train("room1", "the cat sat")
        await model_store.train("room1", "the dog sat")

        assert model_store.word_count("room1") == 4
        assert model_store.word_count("nowhere") == 0

    @pytest.mark.asyncio
    async def test_concurrent_training_across_scopes(self, model_store):
        await asyncio.gather(*(
            model_store.train(f"room{i % 3}", f"message number {i}") for i in range(30)
        ))

        assert await model_store.repository.count_entries() == 30
        for i in range(3):
            state = model_store.snapshot(f"room{i}")
            assert state.count(("message",), "number") == 10

    @pytest.mark.asyncio
    async def test_reader_snapshot_is_stable_while_training(self, model_store):
        await model_store.train("room1", "the cat sat")
        held = model_store.snapshot("room1")

        await model_store.train("room1", "the cat ran")

        assert held.count(("cat",), "ran") == 0
        assert model_store.snapshot("room1").count(("cat",), "ran") == 1


@pytest.mark.database
@pytest.mark.error_handling
class TestFailures:
    @pytest.mark.asyncio
    async def test_write_failure_leaves_chain_untouched(self, model_store):
        await model_store.train("room1", "the cat sat")
        before = model_store.snapshot("room1")

        with patch.object(
            model_store.repository,
            "append_entry",
            AsyncMock(side_effect=OperationalError("INSERT", {}, Exception("disk I/O error"))),
        ):
            with pytest.raises(PersistenceError) as exc_info:
                await model_store.train("room1", "the dog barked")

        assert exc_info.value.operation == "train"
        assert exc_info.value.scope == "room1"
        assert model_store.snapshot("room1") is before

        # The store keeps working once the database recovers
        await model_store.train("room1", "the dog barked")
        assert model_store.snapshot("room1").count(("dog",), "barked") == 1

    @pytest.mark.asyncio
    async def test_engine_failure_becomes_generate_error(self, model_store):
        await model_store.train("room1", "the cat sat")

        with patch.object(model_store.engine, "generate", side_effect=RuntimeError("boom")):
            with pytest.raises(GenerateError, match="boom"):
                await model_store.generate("room1")

    @pytest.mark.asyncio
    async def test_snapshot_failure_is_not_raised(self, model_store):
        await model_store.train("room1", "the cat sat")

        with patch.object(
            model_store.repository, "save_snapshot", AsyncMock(side_effect=SQLAlchemyError("locked"))
        ):
            assert await model_store.persist() == 0

        assert await model_store.persist() == 1

    @pytest.mark.asyncio
    async def test_unopenable_database_raises_on_load(self, tmp_path):
        blocker = tmp_path / "not_a_dir"
        blocker.write_text("")
        store = make_store(blocker / "corpus.db")

        with pytest.raises(PersistenceError) as exc_info:
            await store.load()
        assert exc_info.value.operation == "load"


@pytest.mark.database
class TestLoadAndPersist:
    @pytest.mark.asyncio
    async def test_restart_restores_chains(self, tmp_path):
        db_path = tmp_path / "corpus.db"
        first = make_store(db_path)
        await first.load()
        await first.train("room1", "the cat sat")
        await first.train("global", "hello there")
        await first.close()

        second = make_store(db_path)
        await second.load()
        try:
            assert second.snapshot("room1") == replayed_state(1, "the cat sat")
            assert second.snapshot("global") == replayed_state(1, "hello there")
        finally:
            await second.close()

    @pytest.mark.asyncio
    async def test_snapshot_plus_newer_entries_equals_full_replay(self, tmp_path):
        db_path = tmp_path / "corpus.db"
        first = make_store(db_path)
        await first.load()
        await first.train("room1", "the cat sat")
        await first.train("room1", "the cat ran")
        await first.close()

        # Entries written after the snapshot, e.g. by a crash before the next persist
        db = DatabaseManager(str(db_path))
        repository = CorpusRepository(db)
        await repository.append_entry("room1", "a dog sat")
        await repository.append_entry("room2", "only in room two")
        await db.cleanup()

        second = make_store(db_path)
        await second.load()
        try:
            assert second.snapshot("room1") == replayed_state(1, "the cat sat", "the cat ran", "a dog sat")
            assert second.snapshot("room2") == replayed_state(1, "only in room two")
        finally:
            await second.close()

    @pytest.mark.asyncio
    async def test_snapshot_with_other_order_is_discarded(self, tmp_path):
        db_path = tmp_path / "corpus.db"
        first = make_store(db_path, order=1)
        await first.load()
        await first.train("room1", "the cat sat on the mat")
        await first.close()

        second = make_store(db_path, order=2)
        await second.load()
        try:
            assert second.snapshot("room1") == replayed_state(2, "the cat sat on the mat")
        finally:
            await second.close()

    @pytest.mark.asyncio
    async def test_snapshot_with_other_tokenizer_is_discarded(self, tmp_path):
        db_path = tmp_path / "corpus.db"
        first = make_store(db_path, tokenizer_name="whitespace")
        await first.load()
        await first.train("room1", "the cat sat")
        await first.close()

        second = make_store(db_path, tokenizer_name="lowercase")
        await second.load()
        try:
            snapshots = await second.repository.get_snapshots()
            assert snapshots["room1"].tokenizer == "whitespace"
            assert second.snapshot("room1") == replayed_state(1, "the cat sat")
            assert await second.persist() == 1
            snapshots = await second.repository.get_snapshots()
            assert snapshots["room1"].tokenizer == "lowercase"
        finally:
            await second.close()

    @pytest.mark.asyncio
    async def test_corrupt_snapshot_is_rebuilt_from_corpus(self, tmp_path):
        db_path = tmp_path / "corpus.db"
        first = make_store(db_path)
        await first.load()
        await first.train("room1", "the cat sat")
        async with first.db_manager.get_session() as session:
            await session.merge(ChainSnapshotRecord(
                scope="room1",
                chain_order=1,
                tokenizer="whitespace",
                state="{not json",
                last_corpus_id=1,
                updated_at=0.0,
            ))
            await session.commit()
        await first.db_manager.cleanup()

        second = make_store(db_path)
        await second.load()
        try:
            assert second.snapshot("room1") == replayed_state(1, "the cat sat")
        finally:
            await second.close()

    @pytest.mark.asyncio
    async def test_snapshot_written_every_interval(self, tmp_path):
        store = make_store(tmp_path / "corpus.db", snapshot_interval=2)
        await store.load()
        try:
            await store.train("room1", "one")
            assert await store.repository.get_snapshots() == {}

            await store.train("room1", "two")
            snapshots = await store.repository.get_snapshots()
            assert snapshots["room1"].last_corpus_id == 2
            assert snapshots["room1"].chain_order == 1
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_persist_only_writes_changed_scopes(self, model_store):
        await model_store.train("room1", "a b")
        await model_store.train("room2", "c d")

        assert await model_store.persist() == 2
        assert await model_store.persist() == 0

        await model_store.train("room2", "e f")
        assert await model_store.persist() == 1
