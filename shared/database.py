"""
Database layer for the RepoPulse services.

This module provides:
- Async engine and session management (PostgreSQL via asyncpg, SQLite via aiosqlite)
- Repository pattern implementation for repositories, collections and commits
- Transaction management with errors surfaced as ``StorageError``
- Database health monitoring
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from functools import wraps
from typing import Optional, List, Dict, Any, AsyncGenerator, Iterable, Tuple

from sqlalchemy import text
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.sql import select, update, func

from config.settings import get_database_url, settings
from shared.models import (
    Base,
    CollectionModel,
    CommitModel,
    SourceCommit,
    SyncStatus,
    TrackedRepositoryModel,
    collection_repository,
    ensure_utc,
)

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Raised when the activity store cannot complete a read or a write."""


class DatabaseManager:
    """Database connection and session management."""

    def __init__(self, url: Optional[str] = None):
        self.url = url or get_database_url()
        self.engine = None
        self.AsyncSessionLocal = None
        self._initialized = False

    @property
    def dialect_name(self) -> str:
        if not self._initialized:
            self.initialize()
        return self.engine.dialect.name

    def initialize(self):
        """Initialize database connections."""
        if self._initialized:
            return

        if self.url.startswith("sqlite"):
            # One shared connection keeps in-memory databases alive across sessions
            engine_kwargs = {
                "poolclass": StaticPool,
                "connect_args": {"check_same_thread": False},
            }
        else:
            engine_kwargs = {
                "pool_size": settings.database.pool_size,
                "max_overflow": settings.database.max_overflow,
                "pool_timeout": settings.database.pool_timeout,
                "pool_recycle": settings.database.pool_recycle,
                "connect_args": {"server_settings": {"application_name": "repopulse"}},
            }

        self.engine = create_async_engine(self.url, echo=settings.database.echo, **engine_kwargs)
        self.AsyncSessionLocal = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

        self._initialized = True
        logger.info("Database manager initialized successfully")

    async def create_tables(self):
        """Create all database tables."""
        if not self._initialized:
            self.initialize()

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables created successfully")

    async def drop_tables(self):
        """Drop all database tables."""
        if not self._initialized:
            self.initialize()

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
        logger.info("Database tables dropped successfully")

    @asynccontextmanager
    async def get_async_session(self) -> AsyncGenerator[AsyncSession, None]:
        """Get an asynchronous database session."""
        if not self._initialized:
            self.initialize()

        async with self.AsyncSessionLocal() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def health_check(self) -> Dict[str, Any]:
        """Perform database health check."""
        try:
            async with self.get_async_session() as session:
                result = await session.execute(text("SELECT 1"))
                result.fetchone()

            return {
                "status": "healthy",
                "dialect": self.dialect_name,
                "timestamp": datetime.now(timezone.utc),
            }
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return {"status": "unhealthy", "error": str(e), "timestamp": datetime.now(timezone.utc)}

    async def close(self):
        """Close database connections."""
        if self.engine is not None:
            await self.engine.dispose()
        self._initialized = False
        logger.info("Database connections closed")


def database_transaction(func):
    """Decorator running a repository method inside one session.

    The session is passed as the ``session`` keyword. SQLAlchemy failures are
    re-raised as ``StorageError``.
    """

    @wraps(func)
    async def wrapper(self, *args, **kwargs):
        try:
            async with self.db.get_async_session() as session:
                return await func(self, *args, **kwargs, session=session)
        except SQLAlchemyError as e:
            logger.error(f"Database transaction failed in {func.__qualname__}: {e}")
            raise StorageError(str(e)) from e

    return wrapper


class BaseRepository:
    """Base repository class with common database operations."""

    def __init__(self, db: DatabaseManager, model_class):
        self.db = db
        self.model_class = model_class

    @database_transaction
    async def get_by_id(self, record_id: int, session: AsyncSession) -> Optional[Any]:
        """Get record by ID."""
        result = await session.execute(
            select(self.model_class).where(self.model_class.id == record_id)
        )
        return result.scalar_one_or_none()

    @database_transaction
    async def count(self, session: AsyncSession) -> int:
        """Get total count of records."""
        result = await session.execute(select(func.count(self.model_class.id)))
        return result.scalar() or 0


class TrackedRepositoryRepository(BaseRepository):
    """Repository for tracked source repositories and their sync status."""

    def __init__(self, db: DatabaseManager):
        super().__init__(db, TrackedRepositoryModel)

    @database_transaction
    async def get_or_create(
        self, owner: str, name: str, session: AsyncSession
    ) -> TrackedRepositoryModel:
        """Return the repository registered as owner/name, creating it if needed."""
        result = await session.execute(
            select(TrackedRepositoryModel).where(
                TrackedRepositoryModel.owner == owner, TrackedRepositoryModel.name == name
            )
        )
        existing = result.scalar_one_or_none()
        if existing is not None:
            logger.info(f"Repository {owner}/{name} already registered")
            return existing

        instance = TrackedRepositoryModel(
            owner=owner, name=name, last_sync_status=SyncStatus.NEVER_SYNCED.value
        )
        session.add(instance)
        await session.flush()
        await session.refresh(instance)
        return instance

    @database_transaction
    async def get_by_ids(
        self, repository_ids: Iterable[int], session: AsyncSession
    ) -> List[TrackedRepositoryModel]:
        result = await session.execute(
            select(TrackedRepositoryModel)
            .where(TrackedRepositoryModel.id.in_(list(repository_ids)))
            .order_by(TrackedRepositoryModel.id)
        )
        return list(result.scalars().all())

    @database_transaction
    async def record_sync_status(
        self,
        repository_id: int,
        status: SyncStatus,
        error: Optional[str] = None,
        inserted: Optional[int] = None,
        session: AsyncSession = None,
    ) -> bool:
        """Record the outcome of a sync step; returns False for unknown repositories."""
        now = datetime.now(timezone.utc)
        values: Dict[str, Any] = {"last_sync_status": status.value, "updated_at": now}

        if status == SyncStatus.RUNNING:
            values.update(last_sync_started_at=now, last_sync_error=None)
        elif status == SyncStatus.SUCCEEDED:
            values.update(
                last_sync_finished_at=now,
                last_sync_error=None,
                last_sync_inserted=inserted,
                indexed_at=now,
            )
        elif status == SyncStatus.FAILED:
            values.update(last_sync_finished_at=now, last_sync_error=error, last_sync_inserted=inserted)

        result = await session.execute(
            update(TrackedRepositoryModel)
            .where(TrackedRepositoryModel.id == repository_id)
            .values(**values)
        )
        return result.rowcount > 0


class CollectionRepository(BaseRepository):
    """Repository for collections of repositories."""

    def __init__(self, db: DatabaseManager):
        super().__init__(db, CollectionModel)

    @database_transaction
    async def create(
        self,
        name: str,
        description: Optional[str] = None,
        repository_ids: Iterable[int] = (),
        session: AsyncSession = None,
    ) -> Tuple[CollectionModel, List[int]]:
        """Create a collection holding the given repositories."""
        instance = CollectionModel(name=name, description=description)
        session.add(instance)
        await session.flush()

        member_ids = sorted(set(repository_ids))
        if member_ids:
            await session.execute(
                collection_repository.insert(),
                [{"collection_id": instance.id, "repository_id": rid} for rid in member_ids],
            )
        await session.refresh(instance)
        return instance, member_ids

    @database_transaction
    async def get_repository_ids(self, collection_id: int, session: AsyncSession) -> List[int]:
        result = await session.execute(
            select(collection_repository.c.repository_id)
            .where(collection_repository.c.collection_id == collection_id)
            .order_by(collection_repository.c.repository_id)
        )
        return list(result.scalars().all())


class CommitRepository(BaseRepository):
    """Repository for commit operations."""

    def __init__(self, db: DatabaseManager):
        super().__init__(db, CommitModel)

    def _insert(self):
        if self.db.dialect_name == "postgresql":
            return postgresql.insert(CommitModel)
        if self.db.dialect_name == "sqlite":
            return sqlite.insert(CommitModel)
        raise StorageError(f"Unsupported database dialect: {self.db.dialect_name}")

    @database_transaction
    async def get_watermark(self, repository_id: int, session: AsyncSession) -> Optional[datetime]:
        """Newest authored_at covered by the last completed sync, or None.

        Commits stored by a sync that failed part way do not move it.
        """
        result = await session.execute(
            select(TrackedRepositoryModel.synced_through).where(
                TrackedRepositoryModel.id == repository_id
            )
        )
        return ensure_utc(result.scalar())

    @database_transaction
    async def advance_watermark(
        self, repository_id: int, session: AsyncSession
    ) -> Optional[datetime]:
        """Move the watermark to the latest authored_at stored for the repository.

        Only call this once a sync has stored everything newer than the
        previous watermark.
        """
        result = await session.execute(
            select(func.max(CommitModel.authored_at)).where(
                CommitModel.repository_id == repository_id
            )
        )
        latest = ensure_utc(result.scalar())
        await session.execute(
            update(TrackedRepositoryModel)
            .where(TrackedRepositoryModel.id == repository_id)
            .values(synced_through=latest)
        )
        return latest

    @database_transaction
    async def insert_ignore_conflicts(
        self, repository_id: int, commits: List[SourceCommit], session: AsyncSession
    ) -> int:
        """Insert commits, skipping (repository_id, revision_id) pairs already stored.

        Returns the number of rows actually inserted.
        """
        if not commits:
            return 0

        rows = [
            {
                "repository_id": repository_id,
                "revision_id": commit.revision_id,
                "message": commit.message,
                "author_name": commit.author_name,
                "authored_at": commit.authored_at,
            }
            for commit in commits
        ]
        stmt = (
            self._insert()
            .values(rows)
            .on_conflict_do_nothing(index_elements=["repository_id", "revision_id"])
            .returning(CommitModel.id)
        )
        result = await session.execute(stmt)
        return len(result.all())

    @database_transaction
    async def count_for_repository(self, repository_id: int, session: AsyncSession) -> int:
        result = await session.execute(
            select(func.count(CommitModel.id)).where(CommitModel.repository_id == repository_id)
        )
        return result.scalar() or 0

    @database_transaction
    async def get_author_activity(
        self,
        repository_ids: Optional[List[int]] = None,
        collection_id: Optional[int] = None,
        session: AsyncSession = None,
    ) -> List[Tuple[str, datetime]]:
        """(author_name, authored_at) for every commit in scope.

        The scope is either a list of repository ids or the members of a
        collection; both are bound parameters.
        """
        stmt = select(CommitModel.author_name, CommitModel.authored_at)
        if collection_id is not None:
            stmt = stmt.join(
                collection_repository,
                collection_repository.c.repository_id == CommitModel.repository_id,
            ).where(collection_repository.c.collection_id == collection_id)
        elif repository_ids:
            stmt = stmt.where(CommitModel.repository_id.in_(repository_ids))
        else:
            return []

        result = await session.execute(stmt)
        return [(author, ensure_utc(authored_at)) for author, authored_at in result.all()]


async def init_database(db: DatabaseManager):
    """Initialize database tables and connections."""
    db.initialize()
    await db.create_tables()
    logger.info("Database initialized successfully")


async def get_database_health(db: DatabaseManager) -> Dict[str, Any]:
    """Get database health status."""
    return await db.health_check()


__all__ = [
    "StorageError",
    "DatabaseManager",
    "database_transaction",
    "BaseRepository",
    "TrackedRepositoryRepository",
    "CollectionRepository",
    "CommitRepository",
    "init_database",
    "get_database_health",
]
