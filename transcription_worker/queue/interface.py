"""Abstract job consumer interface.

A consumer produces claimed jobs, hands each one to the JobCoordinator,
and reports the outcome back to its delivery mechanism. Exactly one
consumer runs per process; see queue.registry.get_consumer().
"""

from __future__ import annotations

import asyncio
import contextlib
from abc import ABC, abstractmethod

from transcription_worker.pipeline import JobCoordinator
from transcription_worker.storage.job_store import JobStore


class JobConsumer(ABC):
    """Base class for the poll and queue consumption loops.

    Subclasses implement run(); stop() and the interruptible sleep are
    shared.
    """

    mode: str = ""

    def __init__(self, store: JobStore, coordinator: JobCoordinator) -> None:
        self.store = store
        self.coordinator = coordinator
        self._running = False
        self._stop_event = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._running

    @abstractmethod
    async def run(self) -> None:
        """Consume jobs until stop() is called."""

    def stop(self) -> None:
        """Signal the loop to stop after the job in flight finishes."""
        self._running = False
        self._stop_event.set()

    async def close(self) -> None:
        """Release transport resources held by the consumer."""

    async def _sleep(self, seconds: float) -> None:
        """Sleep for ``seconds`` or until stop() is called."""
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
