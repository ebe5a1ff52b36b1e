"""Job consumption loops (database polling and message queue)."""

from transcription_worker.queue.registry import get_consumer

__all__ = ["get_consumer"]
