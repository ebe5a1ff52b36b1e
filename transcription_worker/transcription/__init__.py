"""Speech-to-text clients."""

from transcription_worker.transcription.registry import get_transcriber

__all__ = ["get_transcriber"]
