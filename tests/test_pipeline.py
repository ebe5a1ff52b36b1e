"""Tests for transcription_worker.pipeline.JobCoordinator."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from conftest import NOW, InMemoryJobStore, StubTranscriber, make_job
from transcription_worker.pipeline import JobCoordinator
from transcription_worker.storage.job_store import JobStatus
from transcription_worker.utils.errors import (
    AudioFetchError,
    FailureKind,
    StorageError,
    TranscodeError,
    TranscriptionError,
)


def _rate_limit() -> TranscriptionError:
    return TranscriptionError(
        "Transcription rate limit exceeded",
        provider="openai",
        kind=FailureKind.RATE_LIMIT,
        status_code=429,
    )


def _make_coordinator(store, transcriber=None, blob_client=None, **kwargs):
    if blob_client is None:
        blob_client = MagicMock()
        blob_client.fetch_object.return_value = b"raw-audio"
    return JobCoordinator(
        store,
        blob_client,
        transcriber or StubTranscriber(),
        transcode=kwargs.pop("transcode", lambda audio: b"mp3-audio"),
        heartbeat_interval=kwargs.pop("heartbeat_interval", 30.0),
        clock=lambda: NOW,
        **kwargs,
    )


async def _claim(store: InMemoryJobStore, job):
    store.add(job)
    claimed = await store.claim_by_id(job.id)
    assert claimed is not None
    return claimed


class TestSuccessPath:
    """Tests for a job that completes."""

    async def test_completes_and_links_transcript(self, store):
        """Happy path: transcript saved, job completed with its id."""
        job = await _claim(store, make_job())
        outcome = await _make_coordinator(store).run(job)

        assert outcome.succeeded
        assert outcome.status == "completed"
        persisted = store.jobs["job-1"]
        assert persisted.status == JobStatus.COMPLETED
        assert persisted.output_transcript_id == outcome.transcript_id
        assert store.transcripts["job-1"]["text"] == "hello world"
        assert persisted.completed_at == NOW

    async def test_steps_run_in_order(self, store):
        """Transcript is saved before the job is marked complete."""
        job = await _claim(store, make_job())
        await _make_coordinator(store).run(job)
        assert store.calls[-2:] == ["save_transcript", "complete"]

    async def test_stage_timings_recorded(self, store):
        """Every stage appears in the outcome timings."""
        job = await _claim(store, make_job())
        outcome = await _make_coordinator(store).run(job)
        assert set(outcome.stage_timings) == {
            "download",
            "transcode",
            "transcribe",
            "persist",
            "complete",
        }

    async def test_download_uses_audio_path(self, store):
        """The blob client receives the job's audio locator."""
        blob_client = MagicMock()
        blob_client.fetch_object.return_value = b"raw"
        job = await _claim(store, make_job())
        await _make_coordinator(store, blob_client=blob_client).run(job)
        blob_client.fetch_object.assert_called_once_with(
            "recordings/org-1/call.m4a"
        )

    async def test_transcoded_audio_is_transcribed(self, store):
        """The transcriber receives the transcoder output."""
        transcriber = AsyncMock()
        transcriber.transcribe.return_value = MagicMock(
            text="t", segments=[], duration_seconds=1.0, model="m"
        )
        job = await _claim(store, make_job())
        await _make_coordinator(store, transcriber=transcriber).run(job)
        transcriber.transcribe.assert_awaited_once_with(b"mp3-audio")

    async def test_audit_and_usage_recorded(self, store):
        """Lifecycle events and a usage record are emitted."""
        audit = AsyncMock()
        job = await _claim(store, make_job())
        await _make_coordinator(store, audit=audit).run(job)

        actions = [c.args[1] for c in audit.record_event.await_args_list]
        assert actions == ["job_started", "job_completed"]
        audit.record_usage.assert_awaited_once()
        _, model, duration, cost = audit.record_usage.await_args.args
        assert model == "stub-model"
        assert duration == 60.0
        assert cost == pytest.approx(0.006)

    async def test_audit_failure_does_not_fail_job(self, store):
        """An exploding audit sink is ignored."""
        audit = AsyncMock()
        audit.record_event.side_effect = RuntimeError("audit down")
        job = await _claim(store, make_job())
        outcome = await _make_coordinator(store, audit=audit).run(job)
        assert outcome.succeeded

    async def test_metrics_line_emitted(self, store, capsys):
        """A job_completion metrics line is printed."""
        job = await _claim(store, make_job())
        await _make_coordinator(store).run(job)
        out = capsys.readouterr().out
        assert '"metric_type": "job_completion"' in out
        assert '"status": "completed"' in out


class TestFailurePath:
    """Tests for failure classification and retry bookkeeping."""

    async def test_missing_audio_path_fails_without_retry(self, store):
        """Null audio_path: failed, retry_count unchanged, id in message."""
        job = await _claim(store, make_job(audio_path=None, retry_count=1))
        transcriber = StubTranscriber()
        outcome = await _make_coordinator(store, transcriber=transcriber).run(job)

        persisted = store.jobs["job-1"]
        assert outcome.status == "failed"
        assert persisted.status == JobStatus.FAILED
        assert persisted.retry_count == 1
        assert "job-1" in persisted.last_error_message
        assert "audio_path" in persisted.last_error_message
        assert transcriber.calls == 0

    async def test_rate_limit_reschedules(self, store):
        """First 429: pending, retry_count 1, next attempt at now + 2 min."""
        job = await _claim(store, make_job())
        transcriber = StubTranscriber(errors=[_rate_limit()])
        outcome = await _make_coordinator(store, transcriber=transcriber).run(job)

        persisted = store.jobs["job-1"]
        assert outcome.status == "rescheduled"
        assert persisted.status == JobStatus.PENDING
        assert persisted.retry_count == 1
        assert persisted.next_attempt_at == NOW + timedelta(minutes=2)
        assert "rate limit" in persisted.last_error_message
        assert persisted.last_error_at == NOW
        assert "job-1" not in store.transcripts

    async def test_fourth_rate_limit_fails(self, store):
        """After three reschedules, the fourth rate limit is terminal."""
        job = await _claim(store, make_job(retry_count=3, max_retries=3))
        transcriber = StubTranscriber(errors=[_rate_limit()])
        outcome = await _make_coordinator(store, transcriber=transcriber).run(job)

        persisted = store.jobs["job-1"]
        assert outcome.status == "failed"
        assert persisted.status == JobStatus.FAILED
        assert persisted.retry_count == 4
        assert persisted.retries_exhausted

    async def test_full_retry_sequence(self, store):
        """Repeated rate limits walk through 2, 4, 8 minutes then fail."""
        store.add(make_job())
        transcriber = StubTranscriber(errors=[_rate_limit() for _ in range(4)])
        coordinator = _make_coordinator(store, transcriber=transcriber)

        delays = []
        statuses = []
        for _ in range(4):
            store.jobs["job-1"].next_attempt_at = None
            job = await store.claim_by_id("job-1")
            outcome = await coordinator.run(job)
            statuses.append(outcome.status)
            if outcome.next_attempt_at:
                delays.append(outcome.next_attempt_at - NOW)

        assert statuses == ["rescheduled", "rescheduled", "rescheduled", "failed"]
        assert delays == [
            timedelta(minutes=2),
            timedelta(minutes=4),
            timedelta(minutes=8),
        ]
        assert store.jobs["job-1"].status == JobStatus.FAILED

    async def test_timeout_reschedules(self, store):
        """Transcription timeouts are retried."""
        job = await _claim(store, make_job())
        transcriber = StubTranscriber(
            errors=[TranscriptionError("timed out", kind=FailureKind.TIMEOUT)]
        )
        outcome = await _make_coordinator(store, transcriber=transcriber).run(job)
        assert outcome.status == "rescheduled"

    async def test_download_failure_is_fatal(self, store):
        """A missing blob fails the job and skips later stages."""
        blob_client = MagicMock()
        blob_client.fetch_object.side_effect = AudioFetchError(
            "Audio file not found", key="call.m4a"
        )
        transcode = MagicMock()
        job = await _claim(store, make_job())
        outcome = await _make_coordinator(
            store, blob_client=blob_client, transcode=transcode
        ).run(job)

        assert outcome.status == "failed"
        assert outcome.error_stage == "downloading"
        transcode.assert_not_called()
        assert "_download_failed" in outcome.stage_timings

    async def test_transcode_failure_is_fatal(self, store):
        """ffmpeg failure is not retried."""

        def bad_transcode(audio):
            raise TranscodeError("ffmpeg exited with code 1", exit_status=1)

        job = await _claim(store, make_job())
        outcome = await _make_coordinator(store, transcode=bad_transcode).run(job)
        assert outcome.status == "failed"
        assert outcome.error_stage == "transcoding"
        assert store.jobs["job-1"].retry_count == 0

    async def test_failed_event_emitted_only_when_terminal(self, store):
        """job_failed is emitted for permanent failures only."""
        audit = AsyncMock()
        job = await _claim(store, make_job())
        transcriber = StubTranscriber(errors=[_rate_limit()])
        await _make_coordinator(store, transcriber=transcriber, audit=audit).run(job)
        actions = [c.args[1] for c in audit.record_event.await_args_list]
        assert actions == ["job_started"]

    async def test_uses_persisted_retry_count(self, store):
        """Retry bookkeeping comes from a fresh read, not the stale copy."""
        job = await _claim(store, make_job())
        store.jobs["job-1"].retry_count = 2
        transcriber = StubTranscriber(errors=[_rate_limit()])
        outcome = await _make_coordinator(store, transcriber=transcriber).run(job)
        assert outcome.retry_count == 3
        assert store.jobs["job-1"].next_attempt_at == NOW + timedelta(minutes=8)

    async def test_refetch_failure_falls_back_to_memory(self, store):
        """If the re-read fails, the in-memory job is used."""
        job = await _claim(store, make_job(retry_count=1))
        transcriber = StubTranscriber(errors=[_rate_limit()])
        with patch.object(
            store, "fetch", AsyncMock(side_effect=StorageError("down"))
        ):
            outcome = await _make_coordinator(store, transcriber=transcriber).run(
                job
            )
        assert outcome.status == "rescheduled"
        assert outcome.retry_count == 2

    async def test_store_error_while_recording_failure_is_swallowed(self, store):
        """A reschedule write failure is logged, not raised."""
        job = await _claim(store, make_job())
        transcriber = StubTranscriber(errors=[_rate_limit()])
        with patch.object(
            store, "reschedule", AsyncMock(side_effect=StorageError("down"))
        ):
            outcome = await _make_coordinator(store, transcriber=transcriber).run(
                job
            )
        assert outcome.status == "rescheduled"
        assert store.jobs["job-1"].status == JobStatus.PROCESSING

    async def test_complete_failure_is_handled(self, store):
        """A failing complete() write is treated as a fatal job failure."""
        job = await _claim(store, make_job())
        with patch.object(
            store, "complete", AsyncMock(side_effect=StorageError("down"))
        ):
            outcome = await _make_coordinator(store).run(job)
        assert outcome.status == "failed"
        assert outcome.error_stage == "completing"

    async def test_max_retry_delay_applied(self, store):
        """A configured cap bounds next_attempt_at."""
        job = await _claim(store, make_job(retry_count=2, max_retries=5))
        transcriber = StubTranscriber(errors=[_rate_limit()])
        await _make_coordinator(
            store,
            transcriber=transcriber,
            max_retry_delay=timedelta(minutes=5),
        ).run(job)
        assert store.jobs["job-1"].next_attempt_at == NOW + timedelta(minutes=5)


class TestHeartbeatScoping:
    """Tests that the heartbeat is bound to the pipeline run."""

    async def test_heartbeat_runs_during_slow_transcription(self, store):
        """Heartbeats fire while the transcription call is in flight."""

        class SlowTranscriber(StubTranscriber):
            async def transcribe(self, audio):
                await asyncio.sleep(0.06)
                return await super().transcribe(audio)

        job = await _claim(store, make_job())
        await _make_coordinator(
            store, transcriber=SlowTranscriber(), heartbeat_interval=0.01
        ).run(job)
        assert len(store.heartbeats) >= 2

    @pytest.mark.parametrize("fail", [False, True])
    async def test_heartbeat_stops_after_run(self, store, fail):
        """No heartbeats after run() returns, on success or failure."""
        errors = [TranscriptionError("bad")] if fail else []

        class SlowTranscriber(StubTranscriber):
            async def transcribe(self, audio):
                await asyncio.sleep(0.03)
                return await super().transcribe(audio)

        job = await _claim(store, make_job())
        await _make_coordinator(
            store,
            transcriber=SlowTranscriber(errors=errors),
            heartbeat_interval=0.01,
        ).run(job)

        count = len(store.heartbeats)
        await asyncio.sleep(0.05)
        assert len(store.heartbeats) == count
