"""
Commit Tracker Service for RepoPulse.

This service provides:
- Repository and collection registration
- A background job queue feeding incremental GitHub commit syncs
- Sync status per repository and sync events on redis
- Growth accounting (MAU, MRR style, cohort LTV) per repository or collection
"""

import logging
from datetime import date, datetime, timezone
from typing import Optional

import redis.asyncio as redis
from fastapi import FastAPI, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import SecretStr

from config.settings import get_redis_url, settings
from shared.database import (
    CollectionRepository,
    CommitRepository,
    DatabaseManager,
    StorageError,
    TrackedRepositoryRepository,
    get_database_health,
    init_database,
)
from shared.events import EventFactory, EventSource, EventType, RedisEventPublisher, SyncData
from shared.models import (
    Collection,
    CollectionCreate,
    GrowthAccountingReport,
    GrowthScope,
    ModelConverter,
    SyncAccepted,
    SyncJob,
    SyncRequest,
    SyncStatus,
    TrackedRepository,
    TrackedRepositoryCreate,
)
from services.growth_accounting.activity import SqlActivitySource
from services.growth_accounting.service import GrowthAccountingService
from .fetcher import CommitFetcher
from .job_queue import JobQueue, QueueOrder
from .source import CommitSource, GitHubCommitSource
from .worker import SyncWorker, WorkerPool

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.monitoring.log_level),
    format=settings.monitoring.log_format,
)
logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title="Commit Tracker Service",
    description="GitHub commit ingestion and growth accounting service",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.service.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class ServiceError(Exception):
    """An error surfaced to HTTP clients as ``{"category", "message"}``."""

    status_codes = {
        "not_found": 404,
        "invalid_request": 400,
        "storage": 503,
        "internal": 500,
    }

    def __init__(self, category: str, message: str):
        super().__init__(message)
        self.category = category
        self.message = message

    @property
    def status_code(self) -> int:
        return self.status_codes.get(self.category, 500)


class CommitTrackerService:
    """Core commit tracker service wiring the queue, workers and read path."""

    def __init__(
        self,
        db: Optional[DatabaseManager] = None,
        source: Optional[CommitSource] = None,
        start_workers: bool = True,
    ):
        self.db = db or DatabaseManager()
        self.repositories = TrackedRepositoryRepository(self.db)
        self.collections = CollectionRepository(self.db)
        self.commits = CommitRepository(self.db)
        self.queue = JobQueue(
            order=QueueOrder(settings.ingestion.queue_order),
            deduplicate=settings.ingestion.deduplicate_jobs,
        )
        self.source = source
        self.start_workers = start_workers
        self.redis_client: Optional[redis.Redis] = None
        self.publisher: Optional[RedisEventPublisher] = None
        self.workers: Optional[WorkerPool] = None
        self.growth_accounting = GrowthAccountingService(SqlActivitySource(self.commits))

    async def initialize(self):
        """Initialize the service."""
        await init_database(self.db)

        if settings.redis.enabled:
            self.redis_client = redis.from_url(
                get_redis_url(),
                decode_responses=True,
                socket_connect_timeout=settings.redis.socket_connect_timeout,
                socket_timeout=settings.redis.socket_timeout,
                retry_on_timeout=settings.redis.retry_on_timeout,
            )
            self.publisher = RedisEventPublisher(self.redis_client, settings.redis.events_channel)

        if self.source is None:
            self.source = GitHubCommitSource()

        fetcher = CommitFetcher(self.source, self.commits)
        self.workers = WorkerPool(
            [
                SyncWorker(
                    self.queue,
                    fetcher,
                    self.repositories,
                    publisher=self.publisher,
                    poll_interval=settings.ingestion.poll_interval,
                    name=f"sync-worker-{index}",
                )
                for index in range(settings.ingestion.worker_count)
            ]
        )
        if self.start_workers:
            self.workers.start()

        logger.info("Commit tracker service initialized successfully")

    async def close(self):
        """Close service connections."""
        if self.workers is not None:
            await self.workers.stop()
        if isinstance(self.source, GitHubCommitSource):
            await self.source.close()
        if self.redis_client is not None:
            await self.redis_client.close()
        await self.db.close()
        logger.info("Commit tracker service connections closed")

    async def register_repository(self, request: TrackedRepositoryCreate) -> TrackedRepository:
        model = await self.repositories.get_or_create(request.owner, request.name)
        return ModelConverter.model_to_repository(model)

    async def get_repository(self, repository_id: int) -> TrackedRepository:
        model = await self.repositories.get_by_id(repository_id)
        if model is None:
            raise ServiceError("not_found", f"Repository {repository_id} not found")
        return ModelConverter.model_to_repository(model)

    async def request_sync(
        self, repository_id: int, credential: Optional[SecretStr] = None
    ) -> SyncAccepted:
        """Queue a sync of the repository; never waits for it to run."""
        repository = await self.get_repository(repository_id)
        job = SyncJob(
            repository_id=repository.id,
            owner=repository.owner,
            name=repository.name,
            credential=credential,
        )

        if self.queue.deduplicate and self.queue.is_active(repository.id):
            return SyncAccepted(repository_id=repository.id, queued=False)

        # QUEUED must be stored before any worker can record RUNNING, and must
        # not replace the status of a sync that is already running
        if not self.queue.is_running(repository.id):
            await self.repositories.record_sync_status(repository.id, SyncStatus.QUEUED)
        queued = self.queue.push(job)
        if queued and self.publisher is not None:
            await self.publisher.publish(
                EventFactory.create_sync_event(
                    EventType.SYNC_REQUESTED,
                    SyncData(repository_id=repository.id, full_name=repository.full_name),
                    source=EventSource.API,
                )
            )
        return SyncAccepted(repository_id=repository.id, queued=queued)

    async def create_collection(self, request: CollectionCreate) -> Collection:
        if request.repository_ids:
            known = await self.repositories.get_by_ids(request.repository_ids)
            missing = set(request.repository_ids) - {model.id for model in known}
            if missing:
                raise ServiceError(
                    "invalid_request", f"Unknown repository ids: {sorted(missing)}"
                )

        model, member_ids = await self.collections.create(
            request.name, request.description, request.repository_ids
        )
        return ModelConverter.model_to_collection(model, member_ids)

    async def repository_growth_accounting(
        self, repository_id: int, start: Optional[date] = None, end: Optional[date] = None
    ) -> GrowthAccountingReport:
        await self.get_repository(repository_id)
        return await self._compute(GrowthScope.repository(repository_id), start, end)

    async def collection_growth_accounting(
        self, collection_id: int, start: Optional[date] = None, end: Optional[date] = None
    ) -> GrowthAccountingReport:
        if await self.collections.get_by_id(collection_id) is None:
            raise ServiceError("not_found", f"Collection {collection_id} not found")
        return await self._compute(GrowthScope.collection(collection_id), start, end)

    async def _compute(
        self, scope: GrowthScope, start: Optional[date], end: Optional[date]
    ) -> GrowthAccountingReport:
        try:
            return await self.growth_accounting.compute(scope, start, end)
        except ValueError as e:
            raise ServiceError("invalid_request", str(e)) from e


# Service instance
commit_tracker_service = CommitTrackerService()


def error_response(category: str, message: str, status_code: int) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"detail": {"category": category, "message": message}},
    )


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    return error_response(exc.category, exc.message, exc.status_code)


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError):
    logger.error(f"Storage error on {request.url.path}: {exc}")
    return error_response("storage", "The activity store is unavailable", 503)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return error_response("invalid_request", str(exc.errors()), 422)


@app.exception_handler(Exception)
async def internal_error_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.url.path}: {exc}")
    return error_response("internal", "Internal server error", 500)


# API endpoints
@app.on_event("startup")
async def startup_event():
    """Initialize service on startup."""
    await commit_tracker_service.initialize()


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup on shutdown."""
    await commit_tracker_service.close()


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    db_health = await get_database_health(commit_tracker_service.db)
    workers = commit_tracker_service.workers
    body = {
        "status": db_health["status"],
        "service": "commit_tracker",
        "timestamp": datetime.now(timezone.utc),
        "database": db_health,
        "queue": {
            "pending": len(commit_tracker_service.queue),
            "order": commit_tracker_service.queue.order.value,
            "workers_running": workers.running if workers is not None else False,
        },
    }

    if db_health["status"] != "healthy":
        return JSONResponse(status_code=503, content=jsonable_encoder(body))
    return body


@app.post("/repositories", response_model=TrackedRepository, status_code=201)
async def register_repository(request: TrackedRepositoryCreate):
    """Register a GitHub repository for tracking."""
    return await commit_tracker_service.register_repository(request)


@app.get("/repositories/{repository_id}", response_model=TrackedRepository)
async def get_repository(repository_id: int):
    """Get a repository and the outcome of its last sync."""
    return await commit_tracker_service.get_repository(repository_id)


@app.post("/repositories/{repository_id}/sync", response_model=SyncAccepted, status_code=202)
async def sync_repository(repository_id: int, request: Optional[SyncRequest] = None):
    """Queue an incremental commit sync."""
    credential = request.credential if request is not None else None
    return await commit_tracker_service.request_sync(repository_id, credential)


@app.get(
    "/repositories/{repository_id}/growth-accounting", response_model=GrowthAccountingReport
)
async def repository_growth_accounting(
    repository_id: int,
    start: Optional[date] = Query(None, description="First period to include"),
    end: Optional[date] = Query(None, description="Last period to include"),
):
    """Growth accounting over one repository's commits."""
    return await commit_tracker_service.repository_growth_accounting(repository_id, start, end)


@app.post("/collections", response_model=Collection, status_code=201)
async def create_collection(request: CollectionCreate):
    """Group repositories into a collection."""
    return await commit_tracker_service.create_collection(request)


@app.get(
    "/collections/{collection_id}/growth-accounting", response_model=GrowthAccountingReport
)
async def collection_growth_accounting(
    collection_id: int,
    start: Optional[date] = Query(None, description="First period to include"),
    end: Optional[date] = Query(None, description="Last period to include"),
):
    """Growth accounting over every repository in a collection."""
    return await commit_tracker_service.collection_growth_accounting(collection_id, start, end)
