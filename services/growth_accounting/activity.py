"""
Activity sources for growth accounting.

A source turns a ``GrowthScope`` into the activity events the engine consumes.
Commits become one event of amount 1 on the UTC day they were authored.
"""

import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime
from typing import Dict, Iterable, List, Set, Tuple

from shared.database import CommitRepository
from shared.models import GrowthScope, ScopeKind, ensure_utc
from .engine import ActivityEvent

logger = logging.getLogger(__name__)


def commit_event(author_name: str, authored_at: datetime) -> ActivityEvent:
    return ActivityEvent(user_id=author_name, day=ensure_utc(authored_at).date(), amount=1)


class ActivitySource(ABC):
    """Abstract source of activity events for a scope."""

    @abstractmethod
    async def fetch_events(self, scope: GrowthScope) -> List[ActivityEvent]:
        """Return every activity event inside ``scope``."""


class SqlActivitySource(ActivitySource):
    """Reads commit activity from the activity store."""

    def __init__(self, commits: CommitRepository):
        self.commits = commits

    async def fetch_events(self, scope: GrowthScope) -> List[ActivityEvent]:
        if scope.kind == ScopeKind.COLLECTION:
            rows = await self.commits.get_author_activity(collection_id=scope.collection_id)
        else:
            rows = await self.commits.get_author_activity(repository_ids=scope.repository_ids)

        logger.debug(f"Loaded {len(rows)} commits for {scope.kind.value} scope")
        return [commit_event(author, authored_at) for author, authored_at in rows]


class InMemoryActivityIndex(ActivitySource):
    """Activity events held in memory, indexed by repository."""

    def __init__(self):
        self._events: Dict[int, List[ActivityEvent]] = defaultdict(list)
        self._collections: Dict[int, Set[int]] = defaultdict(set)

    def add(self, repository_id: int, event: ActivityEvent):
        self._events[repository_id].append(event)

    def add_commit(self, repository_id: int, author_name: str, authored_at: datetime):
        self.add(repository_id, commit_event(author_name, authored_at))

    def add_commits(self, repository_id: int, commits: Iterable[Tuple[str, datetime]]):
        for author_name, authored_at in commits:
            self.add_commit(repository_id, author_name, authored_at)

    def add_to_collection(self, collection_id: int, repository_ids: Iterable[int]):
        self._collections[collection_id].update(repository_ids)

    def repository_ids(self, scope: GrowthScope) -> List[int]:
        if scope.kind == ScopeKind.COLLECTION:
            return sorted(self._collections.get(scope.collection_id, set()))
        return list(scope.repository_ids)

    async def fetch_events(self, scope: GrowthScope) -> List[ActivityEvent]:
        events: List[ActivityEvent] = []
        for repository_id in self.repository_ids(scope):
            events.extend(self._events.get(repository_id, []))
        return events
