"""
Tests for activity sources.
"""

from datetime import date, datetime, timedelta, timezone

import pytest

from conftest import make_commit
from services.growth_accounting.activity import (
    InMemoryActivityIndex,
    SqlActivitySource,
    commit_event,
)
from services.growth_accounting.engine import ActivityEvent
from shared.models import GrowthScope


class TestCommitEvent:
    """Test commit to activity event mapping."""

    def test_day_is_utc(self):
        minus_five = timezone(timedelta(hours=-5))
        late_evening = datetime(2024, 1, 31, 21, 0, tzinfo=minus_five)

        assert commit_event("alice", late_evening) == ActivityEvent("alice", date(2024, 2, 1), 1)

    def test_naive_timestamp_taken_as_utc(self):
        assert commit_event("alice", datetime(2024, 1, 31, 23, 59)).day == date(2024, 1, 31)


class TestSqlActivitySource:
    """Test reading activity from the activity store."""

    @pytest.mark.asyncio
    async def test_repository_scope(self, repositories, commits):
        a = await repositories.get_or_create("octocat", "a")
        b = await repositories.get_or_create("octocat", "b")
        await commits.insert_ignore_conflicts(a.id, [make_commit("a1", datetime(2024, 1, 5, 8), "alice")])
        await commits.insert_ignore_conflicts(b.id, [make_commit("b1", datetime(2024, 1, 6, 8), "bob")])

        source = SqlActivitySource(commits)
        events = await source.fetch_events(GrowthScope.repository(a.id))

        assert events == [ActivityEvent("alice", date(2024, 1, 5), 1)]

        events = await source.fetch_events(GrowthScope.repositories([a.id, b.id]))
        assert sorted(event.user_id for event in events) == ["alice", "bob"]

    @pytest.mark.asyncio
    async def test_collection_scope(self, repositories, collections, commits):
        a = await repositories.get_or_create("octocat", "a")
        b = await repositories.get_or_create("octocat", "b")
        await commits.insert_ignore_conflicts(a.id, [make_commit("a1", datetime(2024, 1, 5), "alice")])
        await commits.insert_ignore_conflicts(b.id, [make_commit("b1", datetime(2024, 1, 6), "bob")])
        collection, _ = await collections.create("both", repository_ids=[a.id, b.id])

        events = await SqlActivitySource(commits).fetch_events(GrowthScope.collection(collection.id))

        assert sorted(event.user_id for event in events) == ["alice", "bob"]

    @pytest.mark.asyncio
    async def test_unknown_collection_is_empty(self, commits):
        assert await SqlActivitySource(commits).fetch_events(GrowthScope.collection(999)) == []


class TestInMemoryActivityIndex:
    """Test the in-memory index."""

    @pytest.mark.asyncio
    async def test_scopes(self):
        index = InMemoryActivityIndex()
        index.add_commits(1, [("alice", datetime(2024, 1, 5)), ("bob", datetime(2024, 1, 6))])
        index.add_commit(2, "carol", datetime(2024, 1, 7))
        index.add(3, ActivityEvent("dave", date(2024, 1, 8), 10))
        index.add_to_collection(7, [2, 3])

        repository = await index.fetch_events(GrowthScope.repository(1))
        assert [event.user_id for event in repository] == ["alice", "bob"]

        collection = await index.fetch_events(GrowthScope.collection(7))
        assert [event.user_id for event in collection] == ["carol", "dave"]
        assert collection[1].amount == 10

    @pytest.mark.asyncio
    async def test_unknown_scope_is_empty(self):
        index = InMemoryActivityIndex()
        assert await index.fetch_events(GrowthScope.repository(1)) == []
        assert await index.fetch_events(GrowthScope.collection(1)) == []
