"""Periodic liveness reporting for a job in flight.

Heartbeat runs as a background asyncio task next to the pipeline and is
scoped with ``async with``: leaving the block cancels the task whether
the pipeline returned or raised. Heartbeat failures are logged and never
abort the job.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from transcription_worker.storage.job_store import JobStore

logger = logging.getLogger(__name__)

HEARTBEAT_INTERVAL_SECONDS = 30.0


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Heartbeat:
    """Background task that calls ``store.heartbeat`` every ``interval``.

    Usage:
        async with Heartbeat(store, job.id):
            await run_pipeline()
    """

    def __init__(
        self,
        store: JobStore,
        job_id: str,
        interval: float = HEARTBEAT_INTERVAL_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._job_id = job_id
        self._interval = interval
        self._clock = clock
        self._task: asyncio.Task[None] | None = None
        self.beats = 0
        self.failures = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.create_task(
            self._run(), name=f"heartbeat-{self._job_id}"
        )

    async def stop(self) -> None:
        """Cancel the heartbeat task and wait for it. Safe to call twice."""
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.debug(
            "Heartbeat stopped for job %s after %d beats",
            self._job_id,
            self.beats,
            extra={"job_id": self._job_id},
        )

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            await self._beat()

    async def _beat(self) -> None:
        try:
            await asyncio.wait_for(
                self._store.heartbeat(self._job_id, self._clock()),
                timeout=self._interval,
            )
            self.beats += 1
        except asyncio.CancelledError:
            raise
        except Exception:
            self.failures += 1
            logger.warning(
                "Heartbeat failed for job %s",
                self._job_id,
                exc_info=True,
                extra={"job_id": self._job_id},
            )

    async def __aenter__(self) -> Heartbeat:
        self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()
