"""
GitHub commit source.

Pages through ``GET /repos/{owner}/{repo}/commits``. That endpoint returns
commits newest first, which the fetcher relies on for early termination, and
signals further pages with a ``Link: rel="next"`` header.

Every failure is raised as one of two exception types, decided by
``classify_response``:
- TransientSourceError: rate limited; the same request may succeed later
- PermanentSourceError: anything else (not found, bad credentials, bad payload)
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

import httpx
from pydantic import SecretStr, ValidationError

from config.settings import settings
from shared.models import SourceCommit, UNKNOWN_AUTHOR

logger = logging.getLogger(__name__)

RATE_LIMIT_SIGNAL = "rate limit"


class SourceErrorKind(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"


class SourceError(Exception):
    """Base class for commit source failures."""

    kind: SourceErrorKind = SourceErrorKind.PERMANENT

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientSourceError(SourceError):
    """The source is rate limiting us; retrying later can succeed."""

    kind = SourceErrorKind.TRANSIENT

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message, status_code)
        self.retry_after = retry_after


class PermanentSourceError(SourceError):
    """Retrying will not help; the job must be abandoned."""

    kind = SourceErrorKind.PERMANENT


@dataclass
class CommitPage:
    """One page of commits, newest first."""

    number: int
    commits: List[SourceCommit] = field(default_factory=list)
    has_next: bool = False


class CommitSource(ABC):
    """Abstract paginated commit source."""

    @abstractmethod
    async def list_commits(
        self, owner: str, name: str, page: int, credential: Optional[SecretStr] = None
    ) -> CommitPage:
        """Fetch one page (1-based) of commits, newest first."""


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(payload, dict) and payload.get("message"):
        return str(payload["message"])
    return response.reason_phrase


def _retry_after(response: httpx.Response) -> Optional[float]:
    retry_after = response.headers.get("Retry-After")
    if retry_after is not None:
        try:
            return max(0.0, float(retry_after))
        except ValueError:
            return None

    reset = response.headers.get("X-RateLimit-Reset")
    if reset is not None and response.headers.get("X-RateLimit-Remaining") == "0":
        try:
            return max(0.0, float(reset) - datetime.now(timezone.utc).timestamp())
        except ValueError:
            return None
    return None


def classify_response(response: httpx.Response) -> Optional[SourceErrorKind]:
    """Classify an HTTP response: None for success, else the failure kind.

    429, and 403 carrying a rate-limit message or an exhausted quota, are
    transient. Every other non-2xx status is permanent.
    """
    if response.is_success:
        return None

    if response.status_code == 429:
        return SourceErrorKind.TRANSIENT

    if response.status_code == 403:
        if response.headers.get("X-RateLimit-Remaining") == "0":
            return SourceErrorKind.TRANSIENT
        if RATE_LIMIT_SIGNAL in _error_message(response).lower():
            return SourceErrorKind.TRANSIENT

    return SourceErrorKind.PERMANENT


def raise_for_source_error(response: httpx.Response):
    """Raise the classified source error for a failed response."""
    kind = classify_response(response)
    if kind is None:
        return

    message = f"GitHub API error {response.status_code}: {_error_message(response)}"
    if kind == SourceErrorKind.TRANSIENT:
        raise TransientSourceError(
            message, status_code=response.status_code, retry_after=_retry_after(response)
        )
    raise PermanentSourceError(message, status_code=response.status_code)


def parse_commit(item: Dict[str, Any]) -> SourceCommit:
    """Map one item of the GitHub commits payload to a SourceCommit."""
    commit = item.get("commit") or {}
    author = commit.get("author") or {}
    committer = commit.get("committer") or {}

    authored_at = author.get("date") or committer.get("date")
    if authored_at is None:
        logger.warning(f"Commit {item.get('sha')} has no date, using current time")
        authored_at = datetime.now(timezone.utc)

    return SourceCommit(
        revision_id=item["sha"],
        message=commit.get("message") or "",
        author_name=author.get("name") or UNKNOWN_AUTHOR,
        authored_at=authored_at,
    )


class GitHubCommitSource(CommitSource):
    """Commit source backed by the GitHub REST API."""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        default_credential: Optional[SecretStr] = None,
        per_page: Optional[int] = None,
    ):
        self.client = client or httpx.AsyncClient(
            base_url=settings.github.api_url,
            timeout=settings.github.timeout,
            headers={
                "Accept": "application/vnd.github+json",
                "User-Agent": settings.github.user_agent,
            },
        )
        self.default_credential = default_credential or settings.github.access_token
        self.per_page = per_page or settings.github.per_page

    async def close(self):
        await self.client.aclose()

    def _headers(self, credential: Optional[SecretStr]) -> Dict[str, str]:
        credential = credential or self.default_credential
        if credential is None:
            return {}
        return {"Authorization": f"Bearer {credential.get_secret_value()}"}

    async def list_commits(
        self, owner: str, name: str, page: int, credential: Optional[SecretStr] = None
    ) -> CommitPage:
        try:
            response = await self.client.get(
                f"/repos/{owner}/{name}/commits",
                params={"page": page, "per_page": self.per_page},
                headers=self._headers(credential),
            )
        except httpx.HTTPError as e:
            raise PermanentSourceError(f"GitHub request failed: {e}") from e

        raise_for_source_error(response)

        try:
            payload = response.json()
            if not isinstance(payload, list):
                raise ValueError("expected a list of commits")
            commits = [parse_commit(item) for item in payload]
        except (ValueError, KeyError, TypeError, ValidationError) as e:
            raise PermanentSourceError(
                f"Malformed commits payload for {owner}/{name} page {page}: {e}",
                status_code=response.status_code,
            ) from e

        return CommitPage(number=page, commits=commits, has_next="next" in response.links)
