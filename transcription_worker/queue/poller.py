"""Database polling consumer.

Repeatedly claims the next eligible job through the store's atomic
claim and runs it to completion before claiming again.
"""

from __future__ import annotations

import logging
import os

from transcription_worker.pipeline import JobCoordinator
from transcription_worker.queue.interface import JobConsumer
from transcription_worker.storage.job_store import JobStore

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 3.0
CLAIM_ERROR_BACKOFF_SECONDS = 2.0


class PollConsumer(JobConsumer):
    """Pull-based consumer over ``JobStore.claim_next()``.

    Configuration from environment variables:
        POLL_INTERVAL_SECONDS
    """

    mode = "poll"

    def __init__(
        self,
        store: JobStore,
        coordinator: JobCoordinator,
        poll_interval: float | None = None,
        error_backoff: float = CLAIM_ERROR_BACKOFF_SECONDS,
    ) -> None:
        super().__init__(store, coordinator)
        if poll_interval is None:
            poll_interval = float(
                os.environ.get(
                    "POLL_INTERVAL_SECONDS", DEFAULT_POLL_INTERVAL_SECONDS
                )
            )
        self.poll_interval = poll_interval
        self.error_backoff = error_backoff

    async def poll_once(self) -> bool:
        """Claim and run at most one job.

        Returns:
            True if a job was claimed and run, False if none was available
            or the claim itself failed.
        """
        try:
            job = await self.store.claim_next()
        except Exception:
            logger.error("Failed to claim job", exc_info=True)
            await self._sleep(self.error_backoff)
            return False

        if job is None:
            logger.debug("No jobs available. Sleeping...")
            await self._sleep(self.poll_interval)
            return False

        outcome = await self.coordinator.run(job)
        logger.info(
            "Job %s finished with status %s",
            job.id,
            outcome.status,
            extra={"job_id": job.id, "retry_count": outcome.retry_count},
        )
        return True

    async def run(self) -> None:
        """Start the polling loop. Runs until stopped."""
        self._running = not self._stop_event.is_set()
        logger.info("Poll consumer started", extra={"worker_mode": self.mode})

        while self._running:
            try:
                await self.poll_once()
            except Exception:
                logger.error("Unexpected error in poll cycle", exc_info=True)
                await self._sleep(self.error_backoff)

        logger.info("Poll consumer stopped", extra={"worker_mode": self.mode})
