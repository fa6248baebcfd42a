"""
Model Store

Holds one ``ChainState`` per scope and keeps it in step with the corpus
table. Training is write-through: the corpus row is committed before the
in-memory chain changes, and a failed write leaves the chain untouched.

Readers never lock. Each training call builds a new immutable state and
swaps the reference, so ``generate`` always walks a complete snapshot even
while the same scope is being trained.
"""

import asyncio
import json
import logging
import time
from collections import defaultdict
from typing import Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from ..exceptions import EmptyModelError, GenerateError, PersistenceError
from ..utils.logging_config import performance_logger
from .chain import ChainEngine, ChainState
from .persistence import CorpusRecord, CorpusRepository, DatabaseManager

logger = logging.getLogger(__name__)

_DB_ERRORS = (SQLAlchemyError, OSError)


class ModelStore:
    """Per-scope chain states backed by the corpus database."""

    def __init__(
        self,
        db_manager: DatabaseManager,
        engine: ChainEngine,
        tokenizer_name: str = "whitespace",
        snapshot_interval: int = 100,
    ):
        self.db_manager = db_manager
        self.repository = CorpusRepository(db_manager)
        self.engine = engine
        self.tokenizer_name = tokenizer_name
        self.snapshot_interval = snapshot_interval

        self._chains: Dict[str, ChainState] = {}
        self._last_corpus_id: Dict[str, int] = {}
        self._since_snapshot: Dict[str, int] = defaultdict(int)
        self._dirty: set = set()
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def scopes(self) -> List[str]:
        return sorted(self._chains)

    def snapshot(self, scope: str) -> Optional[ChainState]:
        """The current chain state of ``scope``; safe to read without locking."""
        return self._chains.get(scope)

    def word_count(self, scope: str) -> int:
        state = self._chains.get(scope)
        return len(state.vocabulary()) if state is not None else 0

    async def load(self) -> None:
        """Rebuild every scope's chain from snapshots plus newer corpus entries."""
        start = time.monotonic()
        try:
            await self.db_manager.initialize()
            snapshots = await self.repository.get_snapshots()
        except _DB_ERRORS as e:
            raise PersistenceError("load", e) from e

        usable: Dict[str, int] = {}
        for scope, record in snapshots.items():
            if record.chain_order != self.engine.order or record.tokenizer != self.tokenizer_name:
                logger.info(
                    f"ModelStore: Discarding snapshot for '{scope}' "
                    f"(order {record.chain_order}/{record.tokenizer}, "
                    f"engine uses {self.engine.order}/{self.tokenizer_name})"
                )
                continue
            try:
                self._chains[scope] = ChainState.from_dict(json.loads(record.state))
            except (ValueError, KeyError, TypeError) as e:
                logger.warning(f"ModelStore: Corrupt snapshot for '{scope}', rebuilding from corpus: {e}")
                continue
            self._last_corpus_id[scope] = record.last_corpus_id
            usable[scope] = record.last_corpus_id

        try:
            replayed = 0
            for scope, high_water in usable.items():
                entries = await self.repository.get_entries(scope=scope, after_id=high_water)
                replayed += self._replay(entries)
            entries = await self.repository.get_entries(exclude_scopes=list(usable))
            replayed += self._replay(entries)
        except _DB_ERRORS as e:
            raise PersistenceError("load", e) from e

        duration_ms = (time.monotonic() - start) * 1000
        performance_logger.log_database_query("load", duration_ms, rows_affected=replayed)
        logger.info(
            f"ModelStore: Loaded {len(self._chains)} scopes "
            f"({len(usable)} from snapshots, {replayed} corpus entries replayed)"
        )

    def _replay(self, entries: List[CorpusRecord]) -> int:
        for entry in entries:
            state = self._chains.get(entry.scope) or self.engine.new_state()
            self._chains[entry.scope] = self.engine.train(state, self.engine.tokenize(entry.text))
            self._last_corpus_id[entry.scope] = entry.id
            self._dirty.add(entry.scope)
        return len(entries)

    async def train(self, scope: str, text: str, sender: Optional[str] = None) -> Optional[int]:
        """Record ``text`` in ``scope`` and fold it into the scope's chain.

        Returns the corpus entry id, or None when the text has no tokens.
        Raises PersistenceError if the entry could not be committed; the
        chain is unchanged in that case.
        """
        tokens = self.engine.tokenize(text)
        if not tokens:
            return None

        start = time.monotonic()
        async with self._locks[scope]:
            try:
                entry_id = await self.repository.append_entry(scope, text, sender)
            except _DB_ERRORS as e:
                performance_logger.log_training(scope, len(tokens), (time.monotonic() - start) * 1000, False)
                raise PersistenceError("train", e, scope=scope) from e

            state = self._chains.get(scope) or self.engine.new_state()
            self._chains[scope] = self.engine.train(state, tokens)
            self._last_corpus_id[scope] = entry_id
            self._dirty.add(scope)
            self._since_snapshot[scope] += 1

            if self.snapshot_interval and self._since_snapshot[scope] >= self.snapshot_interval:
                await self._save_snapshot(scope)

        performance_logger.log_training(scope, len(tokens), (time.monotonic() - start) * 1000, True)
        return entry_id

    async def generate(self, scope: str, seed: Optional[str] = None) -> str:
        """Generate text from the current chain of ``scope``."""
        state = self._chains.get(scope)
        if state is None or state.is_empty():
            raise EmptyModelError(scope)

        start = time.monotonic()
        try:
            tokens = await asyncio.to_thread(self.engine.generate, state, seed)
        except GenerateError:
            performance_logger.log_generation(scope, 0, (time.monotonic() - start) * 1000, False)
            raise
        except Exception as e:
            performance_logger.log_generation(scope, 0, (time.monotonic() - start) * 1000, False)
            raise GenerateError(f"Generation failed for scope '{scope}': {e}") from e

        performance_logger.log_generation(scope, len(tokens), (time.monotonic() - start) * 1000, True)
        return self.engine.detokenize(tokens)

    async def persist(self) -> int:
        """Write snapshots for every scope changed since the last persist."""
        saved = 0
        for scope in sorted(self._dirty):
            async with self._locks[scope]:
                if await self._save_snapshot(scope):
                    saved += 1
        if saved:
            logger.info(f"ModelStore: Persisted {saved} chain snapshots")
        return saved

    async def _save_snapshot(self, scope: str) -> bool:
        # Caller holds the scope lock.
        state = self._chains.get(scope)
        last_id = self._last_corpus_id.get(scope)
        if state is None or last_id is None:
            return False
        try:
            await self.repository.save_snapshot(scope, state, self.tokenizer_name, last_id)
        except _DB_ERRORS as e:
            logger.warning(f"ModelStore: Failed to save snapshot for '{scope}': {e}")
            return False
        self._dirty.discard(scope)
        self._since_snapshot[scope] = 0
        return True

    async def close(self) -> None:
        await self.persist()
        await self.db_manager.cleanup()
