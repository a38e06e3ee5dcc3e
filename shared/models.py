"""
Data models for the RepoPulse services.

This module provides:
- Pydantic models for the API and the ingestion pipeline
- Growth accounting result models
- SQLAlchemy table mappings for the activity store
- Conversion helpers between the two
"""

import re
from datetime import datetime, date, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator, computed_field
from sqlalchemy import (
    Column,
    String,
    DateTime,
    Text,
    Integer,
    ForeignKey,
    Index,
    Table,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

Base = declarative_base()

UNKNOWN_AUTHOR = "Unknown"

_GITHUB_NAME = re.compile(r"^[A-Za-z0-9_.-]+$")


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Return ``value`` as an aware UTC datetime; naive values are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class SyncStatus(str, Enum):
    """Outcome of the most recent sync of a repository."""
    NEVER_SYNCED = "never_synced"
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class ScopeKind(str, Enum):
    """What a growth accounting query is scoped to."""
    REPOSITORY = "repository"
    REPOSITORIES = "repositories"
    COLLECTION = "collection"


# Pydantic Models for the ingestion pipeline
class SourceCommit(BaseModel):
    """A commit as returned by the source commit API."""

    revision_id: str = Field(..., min_length=1, max_length=64, description="Commit SHA")
    message: str = Field(default="", description="Commit message")
    author_name: str = Field(default=UNKNOWN_AUTHOR, description="Commit author name")
    authored_at: datetime = Field(..., description="Author date")

    @field_validator("author_name")
    @classmethod
    def validate_author_name(cls, v):
        """Blank author names are stored as the unknown author."""
        v = (v or "").strip()
        return v[:255] if v else UNKNOWN_AUTHOR

    @field_validator("authored_at")
    @classmethod
    def validate_authored_at(cls, v):
        return ensure_utc(v)


class SyncJob(BaseModel):
    """A request to sync one repository; consumed once by a worker."""

    repository_id: int = Field(..., description="Repository ID in the activity store")
    owner: str = Field(..., min_length=1, description="Repository owner on the source")
    name: str = Field(..., min_length=1, description="Repository name on the source")
    credential: Optional[SecretStr] = Field(default=None, description="Source API token")

    model_config = {"frozen": True}

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


# Pydantic Models for API
class TrackedRepositoryCreate(BaseModel):
    """Model for registering a repository."""

    owner: str = Field(..., min_length=1, max_length=255, description="Repository owner")
    name: str = Field(..., min_length=1, max_length=255, description="Repository name")

    @field_validator("owner", "name")
    @classmethod
    def validate_github_name(cls, v):
        v = v.strip()
        if not _GITHUB_NAME.match(v):
            raise ValueError("Owner and name may only contain letters, digits, '.', '-' and '_'")
        return v


class TrackedRepository(TrackedRepositoryCreate):
    """Complete repository model including its last sync outcome."""

    id: int
    indexed_at: Optional[datetime] = None
    synced_through: Optional[datetime] = None
    last_sync_status: SyncStatus = SyncStatus.NEVER_SYNCED
    last_sync_error: Optional[str] = None
    last_sync_started_at: Optional[datetime] = None
    last_sync_finished_at: Optional[datetime] = None
    last_sync_inserted: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}

    @computed_field
    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


class CollectionCreate(BaseModel):
    """Model for creating a collection of repositories."""

    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=1000)
    repository_ids: List[int] = Field(default_factory=list)


class Collection(CollectionCreate):
    """Complete collection model."""

    id: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class SyncRequest(BaseModel):
    """Body of a sync request."""

    credential: Optional[SecretStr] = Field(default=None, description="Source API token")


class SyncAccepted(BaseModel):
    """Response to a sync request."""

    repository_id: int
    queued: bool = Field(..., description="False when a sync for the repository is already pending")


# Growth accounting results
class MAUResult(BaseModel):
    """Monthly active user decomposition for one month."""

    period: date
    active: int = 0
    retained: int = 0
    new: int = 0
    resurrected: int = 0
    churned: int = Field(default=0, le=0, description="Non-positive by convention")


class MRRResult(BaseModel):
    """Value-weighted decomposition for one month."""

    period: date
    amount: float = 0
    retained: float = 0
    new: float = 0
    resurrected: float = 0
    expansion: float = 0
    contraction: float = 0
    churned: float = 0


class LTVCohortResult(BaseModel):
    """Cumulative value of one cohort at one offset."""

    cohort_period: date
    active_period: date
    periods_since_cohort_start: int = Field(..., ge=0)
    active_users: int
    cohort_size: int
    retained_pct: Optional[float] = Field(None, description="None when the cohort size is zero")
    incremental_amount: float
    cumulative_amount: float
    cumulative_amount_per_user: Optional[float] = Field(
        None, description="None when the cohort size is zero"
    )


class GrowthScope(BaseModel):
    """A typed growth accounting scope: repositories or a collection."""

    kind: ScopeKind
    repository_ids: List[int] = Field(default_factory=list)
    collection_id: Optional[int] = None

    @classmethod
    def repository(cls, repository_id: int) -> "GrowthScope":
        return cls(kind=ScopeKind.REPOSITORY, repository_ids=[repository_id])

    @classmethod
    def repositories(cls, repository_ids: List[int]) -> "GrowthScope":
        return cls(kind=ScopeKind.REPOSITORIES, repository_ids=sorted(set(repository_ids)))

    @classmethod
    def collection(cls, collection_id: int) -> "GrowthScope":
        return cls(kind=ScopeKind.COLLECTION, collection_id=collection_id)

    @model_validator(mode="after")
    def validate_scope(self):
        if self.kind == ScopeKind.COLLECTION and self.collection_id is None:
            raise ValueError("A collection scope needs a collection_id")
        if self.kind != ScopeKind.COLLECTION and not self.repository_ids:
            raise ValueError("A repository scope needs at least one repository id")
        return self


class GrowthAccountingReport(BaseModel):
    """Everything the growth accounting read path returns for a scope."""

    scope: GrowthScope
    mau: List[MAUResult] = Field(default_factory=list)
    mrr: List[MRRResult] = Field(default_factory=list)
    ltv: List[LTVCohortResult] = Field(default_factory=list, description="Weekly cohorts")
    ltv_monthly: List[LTVCohortResult] = Field(default_factory=list, description="Monthly cohorts")


# SQLAlchemy Models for Database
collection_repository = Table(
    "collection_repository",
    Base.metadata,
    Column(
        "collection_id",
        Integer,
        ForeignKey("collection.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column(
        "repository_id",
        Integer,
        ForeignKey("repository.id", ondelete="CASCADE"),
        primary_key=True,
    ),
)


class TrackedRepositoryModel(Base):
    """SQLAlchemy model for tracked repositories."""

    __tablename__ = "repository"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner = Column(String(255), nullable=False)
    name = Column(String(255), nullable=False)
    indexed_at = Column(DateTime(timezone=True), nullable=True)
    # Newest authored_at covered by the last completed sync
    synced_through = Column(DateTime(timezone=True), nullable=True)
    last_sync_status = Column(String(20), nullable=False, default=SyncStatus.NEVER_SYNCED.value)
    last_sync_error = Column(Text, nullable=True)
    last_sync_started_at = Column(DateTime(timezone=True), nullable=True)
    last_sync_finished_at = Column(DateTime(timezone=True), nullable=True)
    last_sync_inserted = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, default=func.now(), onupdate=func.now())

    collections = relationship(
        "CollectionModel", secondary=collection_repository, back_populates="repositories"
    )

    __table_args__ = (UniqueConstraint("owner", "name", name="uq_repository_owner_name"),)


class CollectionModel(Base):
    """SQLAlchemy model for collections of repositories."""

    __tablename__ = "collection"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, default=func.now(), onupdate=func.now())

    repositories = relationship(
        "TrackedRepositoryModel", secondary=collection_repository, back_populates="collections"
    )


class CommitModel(Base):
    """SQLAlchemy model for commits. Rows are never updated."""

    __tablename__ = "commit"

    id = Column(Integer, primary_key=True, autoincrement=True)
    repository_id = Column(
        Integer, ForeignKey("repository.id", ondelete="CASCADE"), nullable=False
    )
    revision_id = Column(String(64), nullable=False)
    message = Column(Text, nullable=False, default="")
    author_name = Column(String(255), nullable=False, index=True)
    authored_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())

    __table_args__ = (
        UniqueConstraint("repository_id", "revision_id", name="uq_commit_repository_revision"),
        Index("idx_commit_repository_authored_at", "repository_id", "authored_at"),
    )


class ModelConverter:
    """Utility class for converting SQLAlchemy rows to Pydantic models."""

    @staticmethod
    def model_to_repository(model: TrackedRepositoryModel) -> TrackedRepository:
        return TrackedRepository(
            id=model.id,
            owner=model.owner,
            name=model.name,
            indexed_at=ensure_utc(model.indexed_at),
            synced_through=ensure_utc(model.synced_through),
            last_sync_status=SyncStatus(model.last_sync_status),
            last_sync_error=model.last_sync_error,
            last_sync_started_at=ensure_utc(model.last_sync_started_at),
            last_sync_finished_at=ensure_utc(model.last_sync_finished_at),
            last_sync_inserted=model.last_sync_inserted,
            created_at=ensure_utc(model.created_at),
            updated_at=ensure_utc(model.updated_at),
        )

    @staticmethod
    def model_to_collection(model: CollectionModel, repository_ids: List[int]) -> Collection:
        return Collection(
            id=model.id,
            name=model.name,
            description=model.description,
            repository_ids=sorted(repository_ids),
            created_at=ensure_utc(model.created_at),
            updated_at=ensure_utc(model.updated_at),
        )


__all__ = [
    "Base", "ensure_utc", "UNKNOWN_AUTHOR",
    "SyncStatus", "ScopeKind",
    "SourceCommit", "SyncJob",
    "TrackedRepositoryCreate", "TrackedRepository",
    "CollectionCreate", "Collection", "SyncRequest", "SyncAccepted",
    "MAUResult", "MRRResult", "LTVCohortResult", "GrowthScope", "GrowthAccountingReport",
    "collection_repository", "TrackedRepositoryModel", "CollectionModel", "CommitModel",
    "ModelConverter",
]
