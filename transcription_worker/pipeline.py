"""Job lifecycle coordinator for the transcription pipeline.

Runs one claimed job through download -> transcode -> transcribe ->
persist transcript -> mark complete while a heartbeat proves liveness.
On failure the job's retry bookkeeping is re-read from the store and the
job is either rescheduled with exponential backoff or failed for good.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Literal

from transcription_worker.audio.transcode import transcode_audio
from transcription_worker.heartbeat import HEARTBEAT_INTERVAL_SECONDS, Heartbeat
from transcription_worker.observability.audit import AuditLogger
from transcription_worker.observability.metrics import (
    JobMetrics,
    StageTimer,
    estimate_transcription_cost,
    log_job_metrics,
)
from transcription_worker.storage.blob_client import BlobClient
from transcription_worker.storage.job_store import Job, JobStore
from transcription_worker.transcription.interface import (
    Transcriber,
    TranscriptionResult,
)
from transcription_worker.utils.errors import JobValidationError
from transcription_worker.utils.retry import (
    RetryDecision,
    classify_failure,
    schedule_retry,
)

logger = logging.getLogger(__name__)


class JobStage(str, Enum):
    """Pipeline stages of one job run, in execution order."""

    STARTED = "started"
    DOWNLOADING = "downloading"
    TRANSCODING = "transcoding"
    TRANSCRIBING = "transcribing"
    PERSISTING = "persisting"
    COMPLETING = "completing"


@dataclass
class JobOutcome:
    """Result of running a single job."""

    job_id: str
    status: Literal["completed", "rescheduled", "failed"]
    retry_count: int
    transcript_id: str | None = None
    error: str | None = None
    error_stage: str | None = None
    next_attempt_at: datetime | None = None
    stage_timings: dict[str, float] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == "completed"


@dataclass
class _RunState:
    stage: JobStage = JobStage.STARTED
    audio_size_bytes: int = 0
    transcoded_size_bytes: int = 0
    transcription: TranscriptionResult | None = None
    stage_timings: dict[str, float] = field(default_factory=dict)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class JobCoordinator:
    """Owns the lifecycle of one claimed job at a time.

    Args:
        store: Job persistence (claim owner bookkeeping, transcripts).
        blob_client: Audio download client.
        transcriber: Speech-to-text client.
        audit: Optional fire-and-forget audit sink.
        transcode: Blocking bytes -> bytes transcoder, run in a thread.
        heartbeat_interval: Seconds between liveness updates.
        max_retry_delay: Optional cap on the backoff delay.
        clock: Source of "now", injectable for tests.
    """

    def __init__(
        self,
        store: JobStore,
        blob_client: BlobClient,
        transcriber: Transcriber,
        audit: AuditLogger | None = None,
        transcode: Callable[[bytes], bytes] = transcode_audio,
        heartbeat_interval: float = HEARTBEAT_INTERVAL_SECONDS,
        max_retry_delay: timedelta | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._blob_client = blob_client
        self._transcriber = transcriber
        self._audit = audit
        self._transcode = transcode
        self._heartbeat_interval = heartbeat_interval
        self._max_retry_delay = max_retry_delay
        self._clock = clock

    async def run(self, job: Job) -> JobOutcome:
        """Process a claimed job to completion or to a failure decision.

        Never raises for job-level errors: they are recorded on the job
        and reflected in the returned JobOutcome.
        """
        wall_start = time.monotonic()
        state = _RunState()
        log_extra = {"job_id": job.id, "retry_count": job.retry_count}

        logger.info("Processing job %s", job.id, extra=log_extra)
        await self._emit_event(job, "job_started")

        try:
            if not job.audio_path:
                raise JobValidationError(
                    f"Job {job.id} missing audio_path",
                    job_id=job.id,
                    field="audio_path",
                )

            async with Heartbeat(
                self._store,
                job.id,
                interval=self._heartbeat_interval,
                clock=self._clock,
            ):
                transcript_id = await self._run_pipeline(job, state)
        except Exception as exc:
            return await self._handle_failure(job, exc, state, wall_start)

        wall_time = time.monotonic() - wall_start
        logger.info(
            "Job %s completed",
            job.id,
            extra={**log_extra, "duration_seconds": round(wall_time, 3)},
        )

        transcription = state.transcription
        duration = transcription.duration_seconds if transcription else 0.0
        cost = estimate_transcription_cost(duration)
        await self._emit_event(
            job, "job_completed", {"transcript_id": transcript_id}
        )
        if self._audit is not None and transcription is not None:
            await self._audit.record_usage(
                job, transcription.model, duration, cost
            )
        self._log_metrics(
            job,
            "completed",
            state,
            wall_time,
            retry_count=job.retry_count,
            audio_duration_seconds=duration,
            cost_estimate=cost,
        )

        return JobOutcome(
            job_id=job.id,
            status="completed",
            retry_count=job.retry_count,
            transcript_id=transcript_id,
            stage_timings=state.stage_timings,
        )

    async def _run_pipeline(self, job: Job, state: _RunState) -> str:
        """Execute the pipeline steps in order. Raises on failure."""
        timings = state.stage_timings
        log_extra = {"job_id": job.id}

        state.stage = JobStage.DOWNLOADING
        logger.info("Starting download", extra={**log_extra, "stage": "download"})
        with StageTimer("download", timings):
            audio = await asyncio.to_thread(
                self._blob_client.fetch_object, job.audio_path
            )
        state.audio_size_bytes = len(audio)

        state.stage = JobStage.TRANSCODING
        logger.info("Starting ffmpeg", extra={**log_extra, "stage": "transcode"})
        with StageTimer("transcode", timings):
            processed = await asyncio.to_thread(self._transcode, audio)
        state.transcoded_size_bytes = len(processed)

        state.stage = JobStage.TRANSCRIBING
        logger.info(
            "Starting transcription", extra={**log_extra, "stage": "transcribe"}
        )
        with StageTimer("transcribe", timings):
            state.transcription = await self._transcriber.transcribe(processed)

        state.stage = JobStage.PERSISTING
        with StageTimer("persist", timings):
            transcript_id = await self._store.save_transcript(
                job,
                state.transcription.text,
                state.transcription.segments,
            )

        state.stage = JobStage.COMPLETING
        with StageTimer("complete", timings):
            await self._store.complete(job.id, transcript_id, self._clock())

        return transcript_id

    async def _refetch(self, job: Job) -> Job:
        """Authoritative retry bookkeeping, or the in-memory copy if unavailable."""
        try:
            current = await self._store.fetch(job.id)
        except Exception:
            logger.warning(
                "Could not re-fetch job %s, using in-memory retry state",
                job.id,
                exc_info=True,
                extra={"job_id": job.id},
            )
            return job
        return current if current is not None else job

    async def _handle_failure(
        self,
        job: Job,
        exc: Exception,
        state: _RunState,
        wall_start: float,
    ) -> JobOutcome:
        error_message = str(exc)
        error_stage = state.stage.value
        logger.error(
            "Job %s failed at stage '%s': %s",
            job.id,
            error_stage,
            error_message,
            exc_info=True,
            extra={"job_id": job.id, "stage": error_stage},
        )

        current = await self._refetch(job)
        now = self._clock()
        decision = schedule_retry(
            current.retry_count,
            current.max_retries,
            classify_failure(exc),
            now,
            max_delay=self._max_retry_delay,
        )
        await self._apply_decision(job.id, decision, error_message, now)

        status: Literal["rescheduled", "failed"] = (
            "rescheduled" if decision.retryable else "failed"
        )
        if status == "failed":
            await self._emit_event(
                job,
                "job_failed",
                {"error_message": error_message, "stage": error_stage},
            )

        self._log_metrics(
            job,
            status,
            state,
            time.monotonic() - wall_start,
            retry_count=decision.next_retry_count,
            error_stage=error_stage,
            error_message=error_message,
        )

        return JobOutcome(
            job_id=job.id,
            status=status,
            retry_count=decision.next_retry_count,
            error=error_message,
            error_stage=error_stage,
            next_attempt_at=decision.next_attempt_at,
            stage_timings=state.stage_timings,
        )

    async def _apply_decision(
        self,
        job_id: str,
        decision: RetryDecision,
        error_message: str,
        now: datetime,
    ) -> None:
        log_extra = {"job_id": job_id, "retry_count": decision.next_retry_count}
        try:
            if decision.retryable:
                await self._store.reschedule(
                    job_id,
                    decision.next_retry_count,
                    decision.next_attempt_at,
                    error_message,
                    now,
                )
                logger.warning(
                    "Job %s rescheduled (retry %d) for %s",
                    job_id,
                    decision.next_retry_count,
                    decision.next_attempt_at.isoformat(),
                    extra=log_extra,
                )
            else:
                await self._store.fail(
                    job_id,
                    error_message,
                    now,
                    retry_count=decision.next_retry_count,
                )
                logger.error("Job %s failed permanently", job_id, extra=log_extra)
        except Exception:
            # Lease stays in processing; stale heartbeats let it be reclaimed.
            logger.error(
                "Failed to record failure for job %s",
                job_id,
                exc_info=True,
                extra=log_extra,
            )

    async def _emit_event(
        self, job: Job, action: str, details: dict | None = None
    ) -> None:
        if self._audit is None:
            return
        try:
            await self._audit.record_event(job, action, details)
        except Exception:
            logger.warning(
                "Audit event '%s' dropped for job %s",
                action,
                job.id,
                exc_info=True,
            )

    def _log_metrics(
        self,
        job: Job,
        status: str,
        state: _RunState,
        wall_time: float,
        retry_count: int,
        audio_duration_seconds: float = 0.0,
        cost_estimate: float = 0.0,
        error_stage: str | None = None,
        error_message: str | None = None,
    ) -> None:
        try:
            log_job_metrics(
                JobMetrics(
                    job_id=job.id,
                    organization_id=job.organization_id,
                    status=status,
                    processing_wall_time_seconds=wall_time,
                    audio_size_bytes=state.audio_size_bytes,
                    transcoded_size_bytes=state.transcoded_size_bytes,
                    audio_duration_seconds=audio_duration_seconds,
                    transcription_cost_estimate=cost_estimate,
                    retry_count=retry_count,
                    error_stage=error_stage,
                    error_message=error_message,
                    stage_timings=dict(state.stage_timings),
                )
            )
        except Exception:
            logger.warning("Failed to emit metrics for job %s", job.id, exc_info=True)
