"""
Corpus Persistence Layer

SQLite is the single source of truth for everything the bot has learned.
Tables are declared with SQLModel and accessed through an async SQLAlchemy
engine on the aiosqlite driver. Schema changes must stay additive:
``create_all`` only creates what is missing.
"""

import json
import logging
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import Field, SQLModel, select

from .chain import ChainState

logger = logging.getLogger(__name__)


class CorpusRecord(SQLModel, table=True):
    """One training input, attributed to exactly one scope."""

    __tablename__ = "corpus"

    id: Optional[int] = Field(default=None, primary_key=True)
    scope: str = Field(index=True, description="Scope the text was learned into")
    text: str = Field(description="Raw message text")
    sender: Optional[str] = Field(default=None, description="Sender user id")
    inserted_at: float = Field(description="Unix timestamp of insertion")


class ChainSnapshotRecord(SQLModel, table=True):
    """Materialized chain state per scope, a cache for faster cold start."""

    __tablename__ = "chain_snapshots"

    scope: str = Field(primary_key=True)
    chain_order: int = Field(description="Order the snapshot was built with")
    tokenizer: str = Field(description="Tokenizer name the snapshot was built with")
    state: str = Field(description="JSON-serialized chain state")
    last_corpus_id: int = Field(description="Highest corpus id folded into the snapshot")
    updated_at: float = Field(description="Unix timestamp of the last refresh")


class DatabaseManager:
    """Owns the async engine and hands out sessions."""

    def __init__(self, database_url: str):
        # If the provided URL doesn't look like a SQLAlchemy URL, assume it's a file path.
        if not database_url.startswith("sqlite"):
            self.db_path: Optional[Path] = Path(database_url).resolve()
            self.database_url = f"sqlite+aiosqlite:///{self.db_path}"
            logger.debug(f"Interpreted database path as SQLite URL: {self.database_url}")
        else:
            self.db_path = None
            self.database_url = database_url
        self.engine = None
        self.session_factory = None
        self._initialized = False

    async def initialize(self):
        """Open the database and create missing tables."""
        if self._initialized:
            return

        if self.db_path is not None:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self.engine = create_async_engine(
            self.database_url,
            echo=False,
            connect_args={"check_same_thread": False},
        )
        self.session_factory = sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)

        self._initialized = True
        logger.info(f"Database initialized at {self.database_url}")

    @asynccontextmanager
    async def get_session(self):
        """Get database session context manager."""
        if not self._initialized:
            await self.initialize()

        async with self.session_factory() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise

    async def cleanup(self):
        """Dispose of database connections."""
        if self.engine:
            await self.engine.dispose()
        self._initialized = False


class CorpusRepository:
    """Typed queries over the corpus and snapshot tables."""

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager

    async def append_entry(self, scope: str, text: str, sender: Optional[str] = None) -> int:
        """Insert and commit one corpus entry, returning its id."""
        record = CorpusRecord(scope=scope, text=text, sender=sender, inserted_at=time.time())

        async with self.db_manager.get_session() as session:
            session.add(record)
            await session.commit()
            await session.refresh(record)
            return record.id

    async def get_entries(
        self,
        scope: Optional[str] = None,
        after_id: int = 0,
        exclude_scopes: Sequence[str] = (),
    ) -> List[CorpusRecord]:
        """Corpus entries in insertion order."""
        async with self.db_manager.get_session() as session:
            query = select(CorpusRecord).where(CorpusRecord.id > after_id)
            if scope is not None:
                query = query.where(CorpusRecord.scope == scope)
            if exclude_scopes:
                query = query.where(CorpusRecord.scope.not_in(list(exclude_scopes)))
            query = query.order_by(CorpusRecord.id)

            result = await session.execute(query)
            return list(result.scalars().all())

    async def count_entries(self, scope: Optional[str] = None) -> int:
        async with self.db_manager.get_session() as session:
            query = select(func.count()).select_from(CorpusRecord)
            if scope is not None:
                query = query.where(CorpusRecord.scope == scope)
            result = await session.execute(query)
            return int(result.scalar_one())

    async def get_snapshots(self) -> Dict[str, ChainSnapshotRecord]:
        async with self.db_manager.get_session() as session:
            result = await session.execute(select(ChainSnapshotRecord))
            return {record.scope: record for record in result.scalars().all()}

    async def save_snapshot(
        self,
        scope: str,
        state: ChainState,
        tokenizer: str,
        last_corpus_id: int,
    ) -> None:
        """Upsert the snapshot row for ``scope``."""
        record = ChainSnapshotRecord(
            scope=scope,
            chain_order=state.order,
            tokenizer=tokenizer,
            state=json.dumps(state.to_dict()),
            last_corpus_id=last_corpus_id,
            updated_at=time.time(),
        )

        async with self.db_manager.get_session() as session:
            await session.merge(record)
            await session.commit()
