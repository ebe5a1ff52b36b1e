"""Job model and the persistence contract the coordinator relies on.

Claim operations must be atomic in the backing store: no two callers may
ever receive the same job while it is processing. The worker itself never
implements distributed locking.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    """Lifecycle states of a transcription job."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


def _parse_timestamp(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


@dataclass
class Job:
    """A transcription work item with its retry bookkeeping."""

    id: str
    audio_path: str | None
    organization_id: str | None
    user_id: str | None
    status: JobStatus
    retry_count: int = 0
    max_retries: int = 3
    next_attempt_at: datetime | None = None
    last_heartbeat_at: datetime | None = None
    last_error_message: str | None = None
    last_error_at: datetime | None = None
    completed_at: datetime | None = None
    output_transcript_id: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Job:
        """Build a Job from a ``transcription_jobs`` row.

        Args:
            row: Row dict as returned by PostgREST.

        Returns:
            Job with parsed status and timestamps.

        Raises:
            ValueError: If the row has no id or an unknown status.
        """
        job_id = row.get("id")
        if not job_id:
            raise ValueError("Job row is missing 'id'")

        retry_count = row.get("retry_count")
        max_retries = row.get("max_retries")

        return cls(
            id=str(job_id),
            audio_path=row.get("audio_path") or None,
            organization_id=row.get("organization_id"),
            user_id=row.get("user_id"),
            status=JobStatus(row.get("status") or JobStatus.PENDING.value),
            retry_count=int(retry_count) if retry_count is not None else 0,
            max_retries=int(max_retries) if max_retries is not None else 3,
            next_attempt_at=_parse_timestamp(row.get("next_attempt_at")),
            last_heartbeat_at=_parse_timestamp(row.get("last_heartbeat_at")),
            last_error_message=row.get("last_error_message"),
            last_error_at=_parse_timestamp(row.get("last_error_at")),
            completed_at=_parse_timestamp(row.get("completed_at")),
            output_transcript_id=row.get("output_transcript_id"),
        )

    @property
    def retries_exhausted(self) -> bool:
        return self.retry_count > self.max_retries


class JobStore(ABC):
    """Persistence operations needed to run the job lifecycle."""

    @abstractmethod
    async def claim_next(self) -> Job | None:
        """Atomically claim the next eligible pending job.

        Eligible means ``status = pending`` and ``next_attempt_at`` is null
        or in the past. The claimed job is returned already marked
        processing with a fresh heartbeat.
        """

    @abstractmethod
    async def claim_by_id(self, job_id: str) -> Job | None:
        """Atomically claim a specific job if it is still pending.

        Returns None if the job is missing or no longer pending.
        """

    @abstractmethod
    async def heartbeat(self, job_id: str, now: datetime) -> None:
        """Record that the owning worker is still alive."""

    @abstractmethod
    async def complete(
        self, job_id: str, transcript_id: str, now: datetime
    ) -> None:
        """Mark a processing job completed with its transcript."""

    @abstractmethod
    async def reschedule(
        self,
        job_id: str,
        retry_count: int,
        next_attempt_at: datetime,
        error_message: str,
        now: datetime,
    ) -> None:
        """Return a processing job to pending with retry bookkeeping."""

    @abstractmethod
    async def fail(
        self,
        job_id: str,
        error_message: str,
        now: datetime,
        retry_count: int | None = None,
    ) -> None:
        """Mark a processing job permanently failed."""

    @abstractmethod
    async def fetch(self, job_id: str) -> Job | None:
        """Read the current persisted state of a job."""

    @abstractmethod
    async def save_transcript(
        self, job: Job, text: str, segments: list[dict[str, Any]]
    ) -> str:
        """Persist the transcript for a job and return its id.

        Saving twice for the same job must yield the same transcript row.
        """
