"""Fire-and-forget audit and usage records.

Lifecycle events go to ``audit_logs`` and transcription cost records to
``usage_logs``. A failed write is logged and dropped; it never changes
the outcome of a job.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from transcription_worker.storage.job_store import Job
from transcription_worker.storage.supabase_client import SupabaseClient

logger = logging.getLogger(__name__)

AUDIT_TABLE = "audit_logs"
USAGE_TABLE = "usage_logs"
RESOURCE_TYPE = "transcription_job"


class AuditLogger:
    """Append-only sink for job lifecycle and usage events."""

    def __init__(self, client: SupabaseClient) -> None:
        self._client = client

    async def record_event(
        self, job: Job, action: str, details: dict[str, Any] | None = None
    ) -> None:
        """Append a lifecycle event (e.g. "job_started") for a job."""
        row = {
            "organization_id": job.organization_id,
            "user_id": job.user_id,
            "action": action,
            "resource_type": RESOURCE_TYPE,
            "resource_id": job.id,
            "metadata": details or {},
            "created_at": datetime.now(UTC).isoformat(),
        }
        try:
            await self._client.insert(AUDIT_TABLE, row)
        except Exception:
            logger.warning(
                "Failed to record audit event '%s' for job %s",
                action,
                job.id,
                exc_info=True,
                extra={"job_id": job.id},
            )

    async def record_usage(
        self,
        job: Job,
        model: str,
        duration_seconds: float,
        cost_estimate: float,
    ) -> None:
        """Append a transcription usage record for billing."""
        row = {
            "organization_id": job.organization_id,
            "user_id": job.user_id,
            "job_id": job.id,
            "model": model,
            "audio_duration_seconds": duration_seconds,
            "cost_estimate": cost_estimate,
            "created_at": datetime.now(UTC).isoformat(),
        }
        try:
            await self._client.insert(USAGE_TABLE, row)
        except Exception:
            logger.warning(
                "Failed to record usage for job %s",
                job.id,
                exc_info=True,
                extra={"job_id": job.id},
            )
