"""Abstract transcriber interface.

Defines the Transcriber ABC and the transcription result model.
Concrete implementations (e.g., OpenAI) subclass Transcriber.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field


@dataclass
class TranscriptionResult:
    """Text and cost-relevant metadata returned by a transcriber."""

    text: str
    duration_seconds: float
    model: str
    segments: list[dict] = field(default_factory=list)
    raw_response: dict = field(default_factory=dict)


class Transcriber(ABC):
    """Abstract base class for speech-to-text clients.

    Subclasses must implement the transcribe() method and raise
    TranscriptionError with a FailureKind on failure.
    """

    provider: str = ""

    @abstractmethod
    async def transcribe(self, audio: bytes) -> TranscriptionResult:
        """Transcribe MP3 audio bytes.

        Args:
            audio: 16kHz mono MP3 bytes produced by transcode_audio().

        Returns:
            TranscriptionResult with text and billed duration.
        """

    async def close(self) -> None:
        """Release any network resources held by the client."""
