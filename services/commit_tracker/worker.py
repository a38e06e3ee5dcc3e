"""
Background sync workers.

Each worker pops one job at a time, runs it to completion and sleeps only
when the queue is empty. Failed jobs are recorded on the repository row and
announced as ``sync.failed``; they are never re-queued.
"""

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

from shared.database import StorageError, TrackedRepositoryRepository
from shared.events import EventFactory, EventType, RedisEventPublisher, SyncData
from shared.models import SyncJob, SyncStatus
from .fetcher import CommitFetcher, SyncResult
from .job_queue import JobQueue
from .source import SourceError

logger = logging.getLogger(__name__)


class SyncWorker:
    """Consumes sync jobs from a queue."""

    def __init__(
        self,
        queue: JobQueue,
        fetcher: CommitFetcher,
        repositories: TrackedRepositoryRepository,
        publisher: Optional[RedisEventPublisher] = None,
        poll_interval: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        name: str = "sync-worker",
    ):
        self.queue = queue
        self.fetcher = fetcher
        self.repositories = repositories
        self.publisher = publisher
        self.poll_interval = poll_interval
        self.sleep = sleep
        self.name = name
        self._running = False

    async def _publish(self, event_type: EventType, data: SyncData):
        if self.publisher is None:
            return
        await self.publisher.publish(EventFactory.create_sync_event(event_type, data))

    async def _record(self, job: SyncJob, status: SyncStatus, **kwargs):
        try:
            await self.repositories.record_sync_status(job.repository_id, status, **kwargs)
        except StorageError as e:
            logger.error(f"Could not record {status.value} status for {job.full_name}: {e}")

    async def _fail(self, job: SyncJob, error: Exception, kind: str):
        await self._record(job, SyncStatus.FAILED, error=str(error))
        await self._publish(
            EventType.SYNC_FAILED,
            SyncData(
                repository_id=job.repository_id,
                full_name=job.full_name,
                error=str(error),
                error_kind=kind,
            ),
        )

    async def process(self, job: SyncJob) -> Optional[SyncResult]:
        """Run one job. Returns the sync result, or None when the job failed."""
        logger.info(f"[{self.name}] Starting sync of {job.full_name}")
        try:
            await self._record(job, SyncStatus.RUNNING)
            await self._publish(
                EventType.SYNC_STARTED,
                SyncData(repository_id=job.repository_id, full_name=job.full_name),
            )
            result = await self.fetcher.sync(job)
        except (SourceError, StorageError) as e:
            kind = e.kind.value if isinstance(e, SourceError) else "storage"
            logger.error(f"[{self.name}] Sync of {job.full_name} failed ({kind}): {e}")
            await self._fail(job, e, kind)
            return None
        except Exception as e:
            logger.exception(f"[{self.name}] Sync of {job.full_name} failed unexpectedly: {e}")
            await self._fail(job, e, "internal")
            return None

        await self._record(job, SyncStatus.SUCCEEDED, inserted=result.commits_inserted)
        await self._publish(
            EventType.SYNC_COMPLETED,
            SyncData(
                repository_id=job.repository_id,
                full_name=job.full_name,
                pages_fetched=result.pages_fetched,
                commits_inserted=result.commits_inserted,
            ),
        )
        logger.info(
            f"[{self.name}] Finished sync of {job.full_name}: "
            f"{result.commits_inserted} new commits"
        )
        return result

    async def run_once(self) -> bool:
        """Process the next job if there is one. Returns False when idle."""
        job = self.queue.pop()
        if job is None:
            return False
        try:
            await self.process(job)
        finally:
            self.queue.complete(job)
        return True

    async def run(self):
        """Poll the queue until stopped."""
        self._running = True
        logger.info(f"[{self.name}] Started")
        try:
            while self._running:
                try:
                    processed = await self.run_once()
                except Exception as e:
                    logger.exception(f"[{self.name}] Error while processing a job: {e}")
                    processed = True
                if not processed:
                    await self.sleep(self.poll_interval)
        finally:
            self._running = False
            logger.info(f"[{self.name}] Stopped")

    def stop(self):
        self._running = False


class WorkerPool:
    """Runs a fixed number of workers as asyncio tasks."""

    def __init__(self, workers: List[SyncWorker]):
        self.workers = workers
        self._tasks: List[asyncio.Task] = []

    def start(self):
        for worker in self.workers:
            self._tasks.append(asyncio.create_task(worker.run(), name=worker.name))

    async def stop(self):
        for worker in self.workers:
            worker.stop()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)
