"""
Shared pytest fixtures.

Every database fixture runs against a fresh in-memory SQLite database.
"""

from datetime import datetime, timezone

import pytest

from shared.database import (
    CollectionRepository,
    CommitRepository,
    DatabaseManager,
    TrackedRepositoryRepository,
)
from shared.models import SourceCommit

SQLITE_URL = "sqlite+aiosqlite:///:memory:"


def make_commit(sha: str, authored_at: datetime, author: str = "alice", message: str = "") -> SourceCommit:
    """Build a source commit; naive datetimes are taken as UTC."""
    if authored_at.tzinfo is None:
        authored_at = authored_at.replace(tzinfo=timezone.utc)
    return SourceCommit(
        revision_id=sha,
        message=message or f"commit {sha}",
        author_name=author,
        authored_at=authored_at,
    )


@pytest.fixture
async def db():
    manager = DatabaseManager(SQLITE_URL)
    await manager.create_tables()
    yield manager
    await manager.close()


@pytest.fixture
def repositories(db):
    return TrackedRepositoryRepository(db)


@pytest.fixture
def collections(db):
    return CollectionRepository(db)


@pytest.fixture
def commits(db):
    return CommitRepository(db)


@pytest.fixture
async def tracked_repository(repositories):
    return await repositories.get_or_create("octocat", "hello-world")
