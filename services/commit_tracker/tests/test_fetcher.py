"""
Tests for the incremental commit fetcher.
"""

from datetime import datetime, timezone
from typing import Dict, List, Optional

import pytest

from conftest import make_commit
from services.commit_tracker.fetcher import CommitFetcher, is_newest_first
from services.commit_tracker.source import (
    CommitPage,
    CommitSource,
    PermanentSourceError,
    TransientSourceError,
)
from shared.models import SourceCommit, SyncJob


class ScriptedSource(CommitSource):
    """Serves fixed pages; ``failures`` are raised for a page before it is served."""

    def __init__(
        self,
        pages: Dict[int, List[SourceCommit]],
        failures: Optional[Dict[int, List[Exception]]] = None,
    ):
        self.pages = pages
        self.failures = failures or {}
        self.calls: List[int] = []

    async def list_commits(self, owner, name, page, credential=None) -> CommitPage:
        self.calls.append(page)
        pending = self.failures.get(page)
        if pending:
            raise pending.pop(0)
        return CommitPage(
            number=page,
            commits=list(self.pages.get(page, [])),
            has_next=page < max(self.pages, default=0),
        )


class SleepRecorder:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float):
        self.delays.append(delay)


def rate_limited(retry_after=None) -> TransientSourceError:
    return TransientSourceError("GitHub API error 403: API rate limit exceeded", 403, retry_after)


@pytest.fixture
def job(tracked_repository):
    return SyncJob(repository_id=tracked_repository.id, owner="octocat", name="hello-world")


@pytest.fixture
def sleep():
    return SleepRecorder()


def make_fetcher(source, commits, sleep, **kwargs) -> CommitFetcher:
    options = dict(max_attempts=6, backoff_initial=1.0, backoff_max=60.0, backoff_jitter=0.5)
    options.update(kwargs)
    return CommitFetcher(source, commits, sleep=sleep, **options)


HISTORY = {
    1: [
        make_commit("c6", datetime(2024, 3, 1), "alice"),
        make_commit("c5", datetime(2024, 2, 15), "bob"),
        make_commit("c4", datetime(2024, 2, 10), "alice"),
    ],
    2: [
        make_commit("c3", datetime(2024, 1, 20), "carol"),
        make_commit("c2", datetime(2024, 1, 10), "bob"),
        make_commit("c1", datetime(2024, 1, 5), "alice"),
    ],
}


class TestIsNewestFirst:
    """Test order verification."""

    def test_descending(self):
        assert is_newest_first(HISTORY[1]) is True

    def test_ascending(self):
        assert is_newest_first(list(reversed(HISTORY[1]))) is False

    def test_page_boundary(self):
        assert is_newest_first(HISTORY[2], previous=datetime(2024, 2, 10, tzinfo=timezone.utc)) is True
        assert is_newest_first(HISTORY[1], previous=HISTORY[2][-1].authored_at) is False


class TestFullAndIncrementalSync:
    """Test watermark handling and idempotency."""

    @pytest.mark.asyncio
    async def test_full_sync(self, commits, job, sleep):
        source = ScriptedSource(HISTORY)
        result = await make_fetcher(source, commits, sleep).sync(job)

        assert result.watermark is None
        assert result.pages_fetched == 2
        assert result.commits_seen == 6
        assert result.commits_inserted == 6
        assert result.early_stop is False
        assert await commits.count_for_repository(job.repository_id) == 6

    @pytest.mark.asyncio
    async def test_second_sync_is_idempotent(self, commits, job, sleep):
        fetcher = make_fetcher(ScriptedSource(HISTORY), commits, sleep)
        await fetcher.sync(job)

        result = await fetcher.sync(job)

        assert result.commits_inserted == 0
        assert result.early_stop is True
        assert result.pages_fetched == 1
        assert await commits.count_for_repository(job.repository_id) == 6

    @pytest.mark.asyncio
    async def test_incremental_sync_stops_on_old_page(self, commits, job, sleep):
        await commits.insert_ignore_conflicts(job.repository_id, HISTORY[2])
        await commits.advance_watermark(job.repository_id)
        source = ScriptedSource({**HISTORY, 3: [make_commit("c0", datetime(2023, 12, 1))]})

        result = await make_fetcher(source, commits, sleep).sync(job)

        assert result.commits_new == 3
        assert result.commits_inserted == 3
        assert result.early_stop is True
        assert source.calls == [1, 2]
        assert await commits.count_for_repository(job.repository_id) == 6

    @pytest.mark.asyncio
    async def test_commits_at_watermark_are_skipped(self, commits, job, sleep):
        await commits.insert_ignore_conflicts(job.repository_id, [HISTORY[1][0]])
        await commits.advance_watermark(job.repository_id)
        source = ScriptedSource({1: [HISTORY[1][0], make_commit("same-time", datetime(2024, 3, 1))]})

        result = await make_fetcher(source, commits, sleep).sync(job)

        assert result.commits_new == 0
        assert await commits.count_for_repository(job.repository_id) == 1

    @pytest.mark.asyncio
    async def test_out_of_order_page_disables_early_stop(self, commits, job, sleep):
        await commits.insert_ignore_conflicts(job.repository_id, [make_commit("old", datetime(2024, 2, 1))])
        await commits.advance_watermark(job.repository_id)
        source = ScriptedSource(
            {
                1: [make_commit("a", datetime(2024, 1, 1)), make_commit("b", datetime(2024, 2, 5))],
                2: [make_commit("c", datetime(2024, 1, 15))],
                3: [make_commit("d", datetime(2024, 3, 1))],
            }
        )

        result = await make_fetcher(source, commits, sleep).sync(job)

        assert result.early_stop is False
        assert source.calls == [1, 2, 3]
        assert result.commits_inserted == 2

    @pytest.mark.asyncio
    async def test_empty_repository(self, commits, job, sleep):
        source = ScriptedSource({})
        result = await make_fetcher(source, commits, sleep).sync(job)

        assert result.pages_fetched == 1
        assert result.commits_inserted == 0
        assert await commits.count_for_repository(job.repository_id) == 0


class TestBackoff:
    """Test retry behaviour on rate limiting."""

    @pytest.mark.asyncio
    async def test_three_rate_limits_then_success(self, commits, job, sleep):
        source = ScriptedSource(
            {1: HISTORY[1]}, failures={1: [rate_limited(), rate_limited(), rate_limited()]}
        )

        result = await make_fetcher(source, commits, sleep).sync(job)

        assert source.calls == [1, 1, 1, 1]
        assert len(sleep.delays) == 3
        assert sleep.delays == sorted(sleep.delays)
        assert result.commits_inserted == 3
        assert await commits.count_for_repository(job.repository_id) == 3

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, commits, job, sleep):
        source = ScriptedSource({1: HISTORY[1]}, failures={1: [rate_limited() for _ in range(5)]})

        with pytest.raises(TransientSourceError):
            await make_fetcher(source, commits, sleep, max_attempts=3).sync(job)

        assert source.calls == [1, 1, 1]
        assert len(sleep.delays) == 2
        assert await commits.count_for_repository(job.repository_id) == 0

    @pytest.mark.asyncio
    async def test_delays_capped(self, commits, job, sleep):
        source = ScriptedSource({1: HISTORY[1]}, failures={1: [rate_limited() for _ in range(4)]})

        await make_fetcher(source, commits, sleep, backoff_max=3.0).sync(job)

        assert max(sleep.delays) <= 3.0

    @pytest.mark.asyncio
    async def test_retry_after_added_and_capped(self, commits, job, sleep):
        source = ScriptedSource(
            {1: HISTORY[1]}, failures={1: [rate_limited(retry_after=10), rate_limited(retry_after=500)]}
        )

        await make_fetcher(source, commits, sleep).sync(job)

        assert 11.0 <= sleep.delays[0] <= 11.5
        assert sleep.delays[1] == 60.0

    @pytest.mark.asyncio
    async def test_permanent_error_aborts_without_retry(self, commits, job, sleep):
        source = ScriptedSource(
            HISTORY, failures={2: [PermanentSourceError("GitHub API error 404: Not Found", 404)]}
        )

        with pytest.raises(PermanentSourceError):
            await make_fetcher(source, commits, sleep).sync(job)

        assert source.calls == [1, 2]
        assert sleep.delays == []
        # Pages stored before the failure stay stored
        assert await commits.count_for_repository(job.repository_id) == 3
        assert await commits.get_watermark(job.repository_id) is None


class TestResyncAfterFailure:
    """Test that a sync interrupted part way is completed by the next one."""

    @pytest.mark.asyncio
    async def test_rate_limit_exhaustion_on_first_sync(self, commits, job, sleep):
        source = ScriptedSource(HISTORY, failures={2: [rate_limited() for _ in range(3)]})
        fetcher = make_fetcher(source, commits, sleep, max_attempts=3)

        with pytest.raises(TransientSourceError):
            await fetcher.sync(job)

        assert await commits.count_for_repository(job.repository_id) == 3
        assert await commits.get_watermark(job.repository_id) is None

        result = await fetcher.sync(job)

        assert result.watermark is None
        assert result.early_stop is False
        assert result.commits_inserted == 3
        assert await commits.count_for_repository(job.repository_id) == 6
        assert await commits.get_watermark(job.repository_id) == datetime(2024, 3, 1, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_permanent_error_during_incremental_sync(self, commits, job, sleep):
        await make_fetcher(ScriptedSource({1: HISTORY[2]}), commits, sleep).sync(job)
        newer = [
            make_commit("n3", datetime(2024, 4, 20), "dave"),
            make_commit("n2", datetime(2024, 4, 10), "alice"),
            make_commit("n1", datetime(2024, 4, 1), "bob"),
        ]
        source = ScriptedSource(
            {1: newer, 2: HISTORY[1], 3: HISTORY[2]},
            failures={2: [PermanentSourceError("GitHub API error 502: Bad Gateway", 502)]},
        )
        fetcher = make_fetcher(source, commits, sleep)

        with pytest.raises(PermanentSourceError):
            await fetcher.sync(job)
        assert await commits.get_watermark(job.repository_id) == datetime(2024, 1, 20, tzinfo=timezone.utc)

        result = await fetcher.sync(job)

        # Page 1 was stored by the failed run but still counts as new
        assert result.commits_new == 6
        assert result.commits_inserted == 3
        assert result.early_stop is False
        assert await commits.count_for_repository(job.repository_id) == 9

        # Everything is covered now, so the next run stops on the first page
        again = await fetcher.sync(job)
        assert again.early_stop is True
        assert again.pages_fetched == 1
