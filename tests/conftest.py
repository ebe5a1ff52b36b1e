"""Shared fixtures: an in-memory JobStore with atomic claims."""

import asyncio
import uuid
from dataclasses import replace
from datetime import UTC, datetime
from typing import Any

import pytest

from transcription_worker.storage.job_store import Job, JobStatus, JobStore
from transcription_worker.transcription.interface import (
    Transcriber,
    TranscriptionResult,
)

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)


class InMemoryJobStore(JobStore):
    """Dict-backed store. A lock makes claims atomic across tasks."""

    def __init__(self, jobs: list[Job] | None = None, clock=lambda: NOW) -> None:
        self.jobs: dict[str, Job] = {job.id: job for job in jobs or []}
        self.transcripts: dict[str, dict[str, Any]] = {}
        self.heartbeats: list[tuple[str, datetime]] = []
        self.calls: list[str] = []
        self._clock = clock
        self._lock = asyncio.Lock()

    def add(self, job: Job) -> Job:
        self.jobs[job.id] = job
        return job

    def _eligible(self, job: Job) -> bool:
        return job.status == JobStatus.PENDING and (
            job.next_attempt_at is None or job.next_attempt_at <= self._clock()
        )

    def _take(self, job: Job) -> Job:
        job.status = JobStatus.PROCESSING
        job.last_heartbeat_at = self._clock()
        return replace(job)

    async def claim_next(self) -> Job | None:
        self.calls.append("claim_next")
        async with self._lock:
            await asyncio.sleep(0)
            for job in self.jobs.values():
                if self._eligible(job):
                    return self._take(job)
        return None

    async def claim_by_id(self, job_id: str) -> Job | None:
        self.calls.append("claim_by_id")
        async with self._lock:
            await asyncio.sleep(0)
            job = self.jobs.get(job_id)
            if job is None or job.status != JobStatus.PENDING:
                return None
            return self._take(job)

    async def heartbeat(self, job_id: str, now: datetime) -> None:
        self.heartbeats.append((job_id, now))
        self.jobs[job_id].last_heartbeat_at = now

    async def complete(self, job_id: str, transcript_id: str, now: datetime) -> None:
        self.calls.append("complete")
        job = self.jobs[job_id]
        job.status = JobStatus.COMPLETED
        job.output_transcript_id = transcript_id
        job.completed_at = now

    async def reschedule(
        self,
        job_id: str,
        retry_count: int,
        next_attempt_at: datetime,
        error_message: str,
        now: datetime,
    ) -> None:
        self.calls.append("reschedule")
        job = self.jobs[job_id]
        job.status = JobStatus.PENDING
        job.retry_count = retry_count
        job.next_attempt_at = next_attempt_at
        job.last_error_message = error_message
        job.last_error_at = now

    async def fail(
        self,
        job_id: str,
        error_message: str,
        now: datetime,
        retry_count: int | None = None,
    ) -> None:
        self.calls.append("fail")
        job = self.jobs[job_id]
        job.status = JobStatus.FAILED
        job.last_error_message = error_message
        job.last_error_at = now
        if retry_count is not None:
            job.retry_count = retry_count

    async def fetch(self, job_id: str) -> Job | None:
        job = self.jobs.get(job_id)
        return replace(job) if job else None

    async def save_transcript(
        self, job: Job, text: str, segments: list[dict[str, Any]]
    ) -> str:
        self.calls.append("save_transcript")
        existing = self.transcripts.get(job.id)
        transcript_id = existing["id"] if existing else str(uuid.uuid4())
        self.transcripts[job.id] = {
            "id": transcript_id,
            "text": text,
            "segments": segments,
        }
        return transcript_id


class StubTranscriber(Transcriber):
    """Transcriber returning a fixed result or raising the queued errors."""

    provider = "stub"

    def __init__(self, errors: list[Exception] | None = None) -> None:
        self.errors = list(errors or [])
        self.calls = 0

    async def transcribe(self, audio: bytes) -> TranscriptionResult:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return TranscriptionResult(
            text="hello world",
            duration_seconds=60.0,
            model="stub-model",
            segments=[],
        )


def make_job(job_id: str = "job-1", **overrides: Any) -> Job:
    fields: dict[str, Any] = {
        "id": job_id,
        "audio_path": "recordings/org-1/call.m4a",
        "organization_id": "org-1",
        "user_id": "user-1",
        "status": JobStatus.PENDING,
    }
    fields.update(overrides)
    return Job(**fields)


@pytest.fixture
def store() -> InMemoryJobStore:
    return InMemoryJobStore()
