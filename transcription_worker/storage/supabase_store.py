"""Job store backed by Supabase PostgREST.

Claims go through the ``claim_next_transcription_job`` SQL function (row
locking happens inside Postgres) or a conditional PATCH that only matches
a row still in ``pending``. Every other transition is a plain row update
keyed by job id.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from transcription_worker.storage.job_store import Job, JobStatus, JobStore
from transcription_worker.storage.supabase_client import SupabaseClient
from transcription_worker.utils.errors import StorageError

logger = logging.getLogger(__name__)

JOBS_TABLE = "transcription_jobs"
TRANSCRIPTS_TABLE = "transcripts"
CLAIM_NEXT_FUNCTION = "claim_next_transcription_job"


def _iso(value: datetime) -> str:
    return value.astimezone(UTC).isoformat()


def _first_row(data: Any) -> dict[str, Any] | None:
    """Normalise an RPC/representation payload to a single row or None."""
    if not data:
        return None
    row = data[0] if isinstance(data, list) else data
    if not isinstance(row, dict):
        return None
    # Postgres returns a row of nulls when the claim updated nothing
    if not row.get("id"):
        return None
    return row


class SupabaseJobStore(JobStore):
    """JobStore over the ``transcription_jobs`` and ``transcripts`` tables."""

    def __init__(
        self,
        client: SupabaseClient,
        heartbeat_timeout: float = 10.0,
    ) -> None:
        self._client = client
        self._heartbeat_timeout = heartbeat_timeout

    @staticmethod
    def _by_id(job_id: str) -> dict[str, str]:
        return {"id": f"eq.{job_id}"}

    async def claim_next(self) -> Job | None:
        data = await self._client.rpc(CLAIM_NEXT_FUNCTION)
        row = _first_row(data)
        if row is None:
            return None
        return Job.from_row(row)

    async def claim_by_id(self, job_id: str) -> Job | None:
        now = datetime.now(UTC)
        rows = await self._client.update(
            JOBS_TABLE,
            filters={
                **self._by_id(job_id),
                "status": f"eq.{JobStatus.PENDING.value}",
            },
            values={
                "status": JobStatus.PROCESSING.value,
                "last_heartbeat_at": _iso(now),
            },
            returning=True,
        )
        row = _first_row(rows)
        if row is None:
            return None
        return Job.from_row(row)

    async def heartbeat(self, job_id: str, now: datetime) -> None:
        await self._client.update(
            JOBS_TABLE,
            filters=self._by_id(job_id),
            values={"last_heartbeat_at": _iso(now)},
            timeout=self._heartbeat_timeout,
        )

    async def complete(
        self, job_id: str, transcript_id: str, now: datetime
    ) -> None:
        await self._client.update(
            JOBS_TABLE,
            filters=self._by_id(job_id),
            values={
                "status": JobStatus.COMPLETED.value,
                "completed_at": _iso(now),
                "output_transcript_id": transcript_id,
            },
        )

    async def reschedule(
        self,
        job_id: str,
        retry_count: int,
        next_attempt_at: datetime,
        error_message: str,
        now: datetime,
    ) -> None:
        await self._client.update(
            JOBS_TABLE,
            filters=self._by_id(job_id),
            values={
                "status": JobStatus.PENDING.value,
                "retry_count": retry_count,
                "next_attempt_at": _iso(next_attempt_at),
                "last_error_message": error_message,
                "last_error_at": _iso(now),
            },
        )

    async def fail(
        self,
        job_id: str,
        error_message: str,
        now: datetime,
        retry_count: int | None = None,
    ) -> None:
        values: dict[str, Any] = {
            "status": JobStatus.FAILED.value,
            "last_error_message": error_message,
            "last_error_at": _iso(now),
        }
        if retry_count is not None:
            values["retry_count"] = retry_count
        await self._client.update(
            JOBS_TABLE, filters=self._by_id(job_id), values=values
        )

    async def fetch(self, job_id: str) -> Job | None:
        rows = await self._client.select(JOBS_TABLE, self._by_id(job_id))
        row = _first_row(rows)
        if row is None:
            return None
        return Job.from_row(row)

    async def save_transcript(
        self, job: Job, text: str, segments: list[dict[str, Any]]
    ) -> str:
        rows = await self._client.insert(
            TRANSCRIPTS_TABLE,
            values={
                "job_id": job.id,
                "organization_id": job.organization_id,
                "text": text,
                "segments": segments,
            },
            on_conflict="job_id",
            returning=True,
        )
        row = _first_row(rows)
        if row is None:
            raise StorageError(
                "Transcript upsert returned no row",
                job_id=job.id,
                operation="save_transcript",
            )
        return str(row["id"])
