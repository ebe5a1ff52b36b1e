"""Job run metrics collection and reporting.

Provides JobMetrics for structured observability data, StageTimer for
measuring pipeline stage durations, and log_job_metrics() for emitting
metrics as a single JSON line on stdout.
"""

from __future__ import annotations

import json
import time
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime

# gpt-4o-transcribe list price: $0.006 per audio minute
TRANSCRIPTION_COST_PER_SECOND = 0.006 / 60


@dataclass
class JobMetrics:
    """All metrics collected for a single job run."""

    job_id: str
    organization_id: str | None
    status: str
    processing_wall_time_seconds: float
    audio_size_bytes: int = 0
    transcoded_size_bytes: int = 0
    audio_duration_seconds: float = 0.0
    transcription_cost_estimate: float = 0.0
    retry_count: int = 0
    error_stage: str | None = None
    error_message: str | None = None
    stage_timings: dict[str, float] = field(default_factory=dict)


class StageTimer:
    """Context manager that records wall-clock duration of a pipeline stage.

    When a timings dict is given, the duration is stored under the stage
    name on success, or under ``_<stage>_failed`` if the block raised.

    Usage:
        timer = StageTimer("transcode")
        with timer:
            do_work()
        print(timer.duration_seconds)
    """

    def __init__(
        self, stage_name: str, timings: dict[str, float] | None = None
    ) -> None:
        self.stage_name = stage_name
        self.start_time: datetime | None = None
        self.end_time: datetime | None = None
        self.duration_seconds: float = 0.0
        self._timings = timings
        self._mono_start: float = 0.0

    def __enter__(self) -> StageTimer:
        self.start_time = datetime.now(UTC)
        self._mono_start = time.monotonic()
        return self

    def __exit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        elapsed = time.monotonic() - self._mono_start
        self.end_time = datetime.now(UTC)
        self.duration_seconds = elapsed
        if self._timings is not None:
            if exc_type is not None:
                self._timings[f"_{self.stage_name}_failed"] = elapsed
            else:
                self._timings[self.stage_name] = elapsed


def estimate_transcription_cost(duration_seconds: float) -> float:
    return duration_seconds * TRANSCRIPTION_COST_PER_SECOND


def log_job_metrics(metrics: JobMetrics) -> None:
    """Emit job metrics as a single structured JSON line to stdout.

    Args:
        metrics: Populated JobMetrics dataclass.
    """
    entry = {
        "timestamp": datetime.now(UTC).isoformat(),
        "severity": "INFO",
        "metric_type": "job_completion",
        **asdict(metrics),
    }
    print(json.dumps(entry))
