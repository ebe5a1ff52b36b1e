"""Tests for project scaffold: imports, logger, and custom exceptions."""

import json
import logging
import sys

import pytest

from transcription_worker.observability.logger import (
    StructuredJsonFormatter,
    get_logger,
    setup_logging,
)
from transcription_worker.utils.errors import (
    AudioFetchError,
    ConfigurationError,
    FailureKind,
    JobValidationError,
    PipelineError,
    QueueError,
    StorageError,
    TranscodeError,
    TranscriptionError,
)


class TestModuleImports:
    """Verify all package modules are importable."""

    def test_subpackage_imports(self) -> None:
        import transcription_worker.audio.transcode
        import transcription_worker.heartbeat
        import transcription_worker.main
        import transcription_worker.observability.audit
        import transcription_worker.pipeline
        import transcription_worker.queue
        import transcription_worker.storage.supabase_store
        import transcription_worker.transcription

        assert transcription_worker.queue.get_consumer is not None
        assert transcription_worker.transcription.get_transcriber is not None


class TestCustomExceptions:
    """Verify custom exception hierarchy and string representations."""

    def test_all_exceptions_inherit_from_pipeline_error(self) -> None:
        exception_classes = [
            ConfigurationError,
            JobValidationError,
            AudioFetchError,
            TranscodeError,
            TranscriptionError,
            StorageError,
            QueueError,
        ]
        for cls in exception_classes:
            assert issubclass(cls, PipelineError), (
                f"{cls.__name__} must inherit from PipelineError"
            )

    def test_pipeline_error_str_without_job_id(self) -> None:
        error = PipelineError("something failed")
        assert str(error) == "something failed"

    def test_pipeline_error_str_with_job_id(self) -> None:
        error = PipelineError("something failed", job_id="job-123")
        assert str(error) == "[job=job-123] something failed"

    def test_default_kind_is_fatal(self) -> None:
        assert PipelineError("x").kind == FailureKind.FATAL
        assert StorageError("x").kind == FailureKind.FATAL

    def test_transcription_error_carries_kind(self) -> None:
        error = TranscriptionError(
            "slow down",
            provider="openai",
            kind=FailureKind.RATE_LIMIT,
            status_code=429,
        )
        assert error.kind == FailureKind.RATE_LIMIT
        assert error.provider == "openai"
        assert error.status_code == 429

    def test_transcode_error_includes_context(self) -> None:
        error = TranscodeError(
            "ffmpeg failed", job_id="j-1", exit_status=1, stderr="bad input"
        )
        assert error.exit_status == 1
        assert error.stderr == "bad input"
        assert "[job=j-1]" in str(error)

    def test_job_validation_error_field(self) -> None:
        error = JobValidationError("missing", job_id="j-1", field="audio_path")
        assert error.field == "audio_path"

    def test_storage_error_includes_operation(self) -> None:
        error = StorageError("write failed", operation="update:transcription_jobs")
        assert error.operation == "update:transcription_jobs"

    def test_queue_error_includes_queue(self) -> None:
        error = QueueError("ack failed", queue_id="q-1", operation="ack")
        assert error.queue_id == "q-1"
        assert error.operation == "ack"

    def test_configuration_error_setting(self) -> None:
        error = ConfigurationError("missing", setting="SUPABASE_URL")
        assert error.setting == "SUPABASE_URL"

    def test_exceptions_are_catchable_as_pipeline_error(self) -> None:
        with pytest.raises(PipelineError):
            raise TranscodeError("test error")


class TestStructuredLogger:
    """Verify structured JSON logger output format."""

    def test_logger_output_is_valid_json(self, capsys: pytest.CaptureFixture[str]) -> None:
        logger = get_logger("test.json_output")
        logger.info("test message")

        captured = capsys.readouterr()
        parsed = json.loads(captured.out.strip())

        assert "timestamp" in parsed
        assert parsed["severity"] == "INFO"
        assert parsed["message"] == "test message"
        assert parsed["logger"] == "test.json_output"

    def test_logger_includes_extra_fields(self, capsys: pytest.CaptureFixture[str]) -> None:
        logger = get_logger("test.extra")
        logger.info(
            "processing",
            extra={"job_id": "j-42", "stage": "transcode", "retry_count": 2},
        )

        captured = capsys.readouterr()
        parsed = json.loads(captured.out.strip())
        assert parsed["job_id"] == "j-42"
        assert parsed["stage"] == "transcode"
        assert parsed["retry_count"] == 2

    def test_logger_timestamp_format(self, capsys: pytest.CaptureFixture[str]) -> None:
        logger = get_logger("test.timestamp")
        logger.warning("check format")

        captured = capsys.readouterr()
        parsed = json.loads(captured.out.strip())
        timestamp = parsed["timestamp"]
        assert timestamp.endswith("Z")
        assert "T" in timestamp

    def test_exception_included(self) -> None:
        formatter = StructuredJsonFormatter()
        try:
            raise ValueError("bad value")
        except ValueError:
            record = logging.LogRecord(
                "t", logging.ERROR, __file__, 1, "failed", None, sys.exc_info()
            )
        parsed = json.loads(formatter.format(record))
        assert parsed["severity"] == "ERROR"
        assert parsed["exception"] == "bad value"

    def test_setup_logging_uses_log_level(self, monkeypatch) -> None:
        monkeypatch.setenv("LOG_LEVEL", "debug")
        root = logging.getLogger()
        original_level = root.level
        original_handlers = list(root.handlers)
        try:
            setup_logging()
            assert root.level == logging.DEBUG
            added = [h for h in root.handlers if h not in original_handlers]
            assert len(added) == 1
            assert isinstance(added[0].formatter, StructuredJsonFormatter)
        finally:
            for handler in list(root.handlers):
                if handler not in original_handlers:
                    root.removeHandler(handler)
            root.setLevel(original_level)
