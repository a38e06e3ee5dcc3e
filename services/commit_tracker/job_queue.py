"""
Sync job queue.

Producers call ``push`` from request handlers and never wait on the workers.
Workers poll ``pop`` and call ``complete`` when a job is done. While a
repository has a job pending or in flight, further requests for it collapse
into that job.
"""

import logging
import threading
from collections import Counter, deque
from enum import Enum
from typing import Deque, Optional, Set

from shared.models import SyncJob

logger = logging.getLogger(__name__)


class QueueOrder(str, Enum):
    """Order in which queued jobs are handed to workers."""

    FIFO = "fifo"
    LIFO = "lifo"


class JobQueue:
    """Thread-safe queue of sync jobs with a per-repository dedup key."""

    def __init__(self, order: QueueOrder = QueueOrder.FIFO, deduplicate: bool = True):
        self.order = QueueOrder(order)
        self.deduplicate = deduplicate
        self._jobs: Deque[SyncJob] = deque()
        self._active: Set[int] = set()
        self._in_flight: Counter = Counter()
        self._lock = threading.Lock()

    def push(self, job: SyncJob) -> bool:
        """Enqueue a job. Returns False when it collapsed into an existing one."""
        with self._lock:
            if self.deduplicate and job.repository_id in self._active:
                logger.info(f"Sync for {job.full_name} already pending, request collapsed")
                return False
            self._active.add(job.repository_id)
            self._jobs.append(job)

        logger.info(f"Queued sync for {job.full_name}")
        return True

    def pop(self) -> Optional[SyncJob]:
        """Take the next job, or None when the queue is empty."""
        with self._lock:
            if not self._jobs:
                return None
            if self.order == QueueOrder.FIFO:
                job = self._jobs.popleft()
            else:
                job = self._jobs.pop()
            self._in_flight[job.repository_id] += 1
            return job

    def complete(self, job: SyncJob):
        """Release the dedup key of a finished job."""
        with self._lock:
            self._in_flight[job.repository_id] -= 1
            if self._in_flight[job.repository_id] <= 0:
                del self._in_flight[job.repository_id]
            if job.repository_id in self._in_flight:
                return
            if not any(queued.repository_id == job.repository_id for queued in self._jobs):
                self._active.discard(job.repository_id)

    def is_active(self, repository_id: int) -> bool:
        with self._lock:
            return repository_id in self._active

    def is_running(self, repository_id: int) -> bool:
        """True while a worker holds a job for the repository."""
        with self._lock:
            return self._in_flight[repository_id] > 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)
