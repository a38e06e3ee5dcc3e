"""
Incremental commit fetcher.

Pages through a commit source newest first and stores every commit newer than
the repository's watermark. The watermark only advances once a sync has paged
through everything newer than it; after a sync that fails part way the next
one starts again from the old watermark. Pages are retried on rate limiting
with jittered exponential backoff; any other source error aborts the sync.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, List, Optional

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)
from tenacity.wait import wait_base

from config.settings import settings
from shared.database import CommitRepository
from shared.models import SourceCommit, SyncJob
from .source import CommitPage, CommitSource, TransientSourceError

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    """Outcome of one sync run."""

    repository_id: int
    pages_fetched: int = 0
    commits_seen: int = 0
    commits_new: int = 0
    commits_inserted: int = 0
    watermark: Optional[datetime] = None
    early_stop: bool = False


class wait_rate_limited(wait_base):
    """Exponential backoff with jitter, plus any Retry-After hint, capped."""

    def __init__(self, initial: float, maximum: float, jitter: float):
        self.backoff = wait_exponential_jitter(initial=initial, max=maximum, jitter=jitter)
        self.maximum = maximum

    def __call__(self, retry_state) -> float:
        delay = self.backoff(retry_state)
        if retry_state.outcome is not None and retry_state.outcome.failed:
            retry_after = getattr(retry_state.outcome.exception(), "retry_after", None)
            if retry_after:
                delay += retry_after
        return min(delay, self.maximum)


def is_newest_first(commits: List[SourceCommit], previous: Optional[datetime] = None) -> bool:
    """True when ``commits`` continue a newest-first sequence ending at ``previous``."""
    for commit in commits:
        if previous is not None and commit.authored_at > previous:
            return False
        previous = commit.authored_at
    return True


class CommitFetcher:
    """Syncs one repository's commits from a source into the activity store."""

    def __init__(
        self,
        source: CommitSource,
        commits: CommitRepository,
        max_attempts: Optional[int] = None,
        backoff_initial: Optional[float] = None,
        backoff_max: Optional[float] = None,
        backoff_jitter: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        ingestion = settings.ingestion
        self.source = source
        self.commits = commits
        self.max_attempts = max_attempts or ingestion.max_attempts
        self.backoff_initial = ingestion.backoff_initial if backoff_initial is None else backoff_initial
        self.backoff_max = ingestion.backoff_max if backoff_max is None else backoff_max
        self.backoff_jitter = ingestion.backoff_jitter if backoff_jitter is None else backoff_jitter
        self.sleep = sleep

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            retry=retry_if_exception_type(TransientSourceError),
            wait=wait_rate_limited(self.backoff_initial, self.backoff_max, self.backoff_jitter),
            stop=stop_after_attempt(self.max_attempts),
            sleep=self.sleep,
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    async def fetch_page(self, job: SyncJob, page: int) -> CommitPage:
        """Fetch one page, retrying while the source is rate limiting."""
        async for attempt in self._retrying():
            with attempt:
                return await self.source.list_commits(job.owner, job.name, page, job.credential)

    async def sync(self, job: SyncJob) -> SyncResult:
        """Ingest every commit of ``job``'s repository newer than its watermark.

        Raises:
            TransientSourceError: rate limiting outlasted the retry budget
            PermanentSourceError: the source rejected the request
            StorageError: the activity store failed
        """
        watermark = await self.commits.get_watermark(job.repository_id)
        result = SyncResult(repository_id=job.repository_id, watermark=watermark)
        logger.info(
            f"Syncing {job.full_name} "
            f"({'full' if watermark is None else f'since {watermark.isoformat()}'})"
        )

        ordered = True
        oldest_seen: Optional[datetime] = None
        page_number = 1

        while True:
            page = await self.fetch_page(job, page_number)
            result.pages_fetched += 1
            if not page.commits:
                break

            result.commits_seen += len(page.commits)
            if ordered and not is_newest_first(page.commits, oldest_seen):
                ordered = False
                logger.warning(
                    f"Commits of {job.full_name} are not newest first on page {page_number}; "
                    f"paging to the end"
                )
            oldest_seen = page.commits[-1].authored_at

            new_commits = [
                commit
                for commit in page.commits
                if watermark is None or commit.authored_at > watermark
            ]
            result.commits_new += len(new_commits)
            result.commits_inserted += await self.commits.insert_ignore_conflicts(
                job.repository_id, new_commits
            )

            if not page.has_next:
                break
            if ordered and watermark is not None and not new_commits:
                result.early_stop = True
                break
            page_number += 1

        await self.commits.advance_watermark(job.repository_id)
        logger.info(
            f"Synced {job.full_name}: {result.pages_fetched} pages, "
            f"{result.commits_seen} seen, {result.commits_inserted} inserted"
        )
        return result
