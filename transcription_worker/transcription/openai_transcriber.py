"""OpenAI speech-to-text client implementation.

Implements transcription against the OpenAI audio API
(``gpt-4o-transcribe``) or an Azure OpenAI Whisper deployment. HTTP
failures are mapped onto FailureKind so the retry policy can tell rate
limits and timeouts apart from permanent errors.
"""

import logging
import os

import httpx

from transcription_worker.audio.transcode import estimate_duration_seconds
from transcription_worker.transcription.interface import (
    Transcriber,
    TranscriptionResult,
)
from transcription_worker.transcription.postprocess import (
    flag_consecutive_duplicates,
)
from transcription_worker.utils.errors import (
    ConfigurationError,
    FailureKind,
    TranscriptionError,
)

logger = logging.getLogger(__name__)

OPENAI_BASE_URL = "https://api.openai.com/v1"
OPENAI_MODEL = "gpt-4o-transcribe"
AZURE_API_VERSION = "2024-10-01-preview"
REQUEST_TIMEOUT_SECONDS = 300.0

RATE_LIMIT_STATUS_CODES = {429}
TIMEOUT_STATUS_CODES = {408, 504}

DEFAULT_PROMPT = (
    "Dear Sirs, Yours faithfully, witness statement, claimant, quantum, "
    "accident circumstances, opinion, recommendation, enclosures, time sheet, "
    "client interviewed, we are pleased to confirm, inspector, claim "
    "technician, solicitors, postcode, reference"
)


def _billed_duration(body: dict, audio: bytes) -> float:
    """Billed audio seconds from the response, estimated if absent."""
    usage = body.get("usage") or {}
    if usage.get("type") == "duration" and usage.get("seconds") is not None:
        return float(usage["seconds"])
    if body.get("duration") is not None:
        return float(body["duration"])
    return estimate_duration_seconds(audio)


class OpenAITranscriber(Transcriber):
    """OpenAI audio transcription client.

    Args:
        api_key: OpenAI API key. Falls back to OPENAI_API_KEY.
        model: Transcription model name.
        prompt: Vocabulary prompt. Falls back to TRANSCRIPTION_PROMPT.
        base_url: API base URL (default production endpoint).
        timeout: Request timeout in seconds.
    """

    provider = "openai"

    def __init__(
        self,
        api_key: str | None = None,
        model: str = OPENAI_MODEL,
        prompt: str | None = None,
        base_url: str = OPENAI_BASE_URL,
        timeout: float = REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        self._api_key = api_key or os.environ.get("OPENAI_API_KEY", "")
        if not self._api_key:
            raise ConfigurationError(
                "OPENAI_API_KEY is required", setting="OPENAI_API_KEY"
            )
        self.model = model
        self.prompt = prompt or os.environ.get("TRANSCRIPTION_PROMPT", DEFAULT_PROMPT)
        self._base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(timeout=timeout)

        logger.warning(
            "Using standard OpenAI API (30-day data retention). "
            "Not suitable for PHI."
        )

    def _url(self) -> str:
        return f"{self._base_url}/audio/transcriptions"

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._api_key}"}

    def _form_data(self) -> dict[str, str]:
        return {
            "model": self.model,
            "response_format": "json",
            "prompt": self.prompt,
        }

    async def close(self) -> None:
        await self._client.aclose()

    async def transcribe(self, audio: bytes) -> TranscriptionResult:
        """Send audio to the transcription endpoint.

        Args:
            audio: MP3 bytes.

        Returns:
            TranscriptionResult with duplicate paragraphs flagged.

        Raises:
            TranscriptionError: RATE_LIMIT on HTTP 429, TIMEOUT on client
                timeouts and HTTP 408/504, FATAL otherwise.
        """
        files = {"file": ("audio.mp3", audio, "audio/mpeg")}
        try:
            response = await self._client.post(
                self._url(),
                headers=self._headers(),
                data=self._form_data(),
                files=files,
            )
        except httpx.TimeoutException as exc:
            raise TranscriptionError(
                f"Transcription request timeout: {exc}",
                provider=self.provider,
                kind=FailureKind.TIMEOUT,
            ) from exc
        except httpx.RequestError as exc:
            raise TranscriptionError(
                f"Transcription request failed: {exc}",
                provider=self.provider,
            ) from exc

        status = response.status_code
        if status in RATE_LIMIT_STATUS_CODES:
            raise TranscriptionError(
                "Transcription rate limit exceeded",
                provider=self.provider,
                kind=FailureKind.RATE_LIMIT,
                status_code=status,
            )
        if status in TIMEOUT_STATUS_CODES:
            raise TranscriptionError(
                f"Transcription service timeout (HTTP {status})",
                provider=self.provider,
                kind=FailureKind.TIMEOUT,
                status_code=status,
            )
        if status != 200:
            raise TranscriptionError(
                f"Transcription failed with status {status}: {response.text}",
                provider=self.provider,
                status_code=status,
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise TranscriptionError(
                "Transcription response is not valid JSON",
                provider=self.provider,
                status_code=status,
            ) from exc

        text = body.get("text")
        if text is None:
            raise TranscriptionError(
                "No text in transcription response", provider=self.provider
            )

        return TranscriptionResult(
            text=flag_consecutive_duplicates(text),
            duration_seconds=_billed_duration(body, audio),
            model=self.model,
            segments=[],
            raw_response=body,
        )


class AzureOpenAITranscriber(OpenAITranscriber):
    """Azure OpenAI Whisper deployment client (zero data retention).

    Reads configuration from environment variables:
        AZURE_OPENAI_ENDPOINT, AZURE_OPENAI_API_KEY,
        AZURE_WHISPER_DEPLOYMENT_NAME
    """

    provider = "azure-openai"

    def __init__(
        self,
        endpoint: str | None = None,
        api_key: str | None = None,
        deployment: str | None = None,
        prompt: str | None = None,
        api_version: str = AZURE_API_VERSION,
        timeout: float = REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        endpoint = endpoint or os.environ.get("AZURE_OPENAI_ENDPOINT", "")
        self._api_key = api_key or os.environ.get("AZURE_OPENAI_API_KEY", "")
        deployment = deployment or os.environ.get(
            "AZURE_WHISPER_DEPLOYMENT_NAME", ""
        )

        if not endpoint or not self._api_key:
            raise ConfigurationError(
                "Missing Azure OpenAI credentials: AZURE_OPENAI_ENDPOINT "
                "and AZURE_OPENAI_API_KEY required",
                setting="AZURE_OPENAI_ENDPOINT",
            )
        if not deployment:
            raise ConfigurationError(
                "AZURE_WHISPER_DEPLOYMENT_NAME is required",
                setting="AZURE_WHISPER_DEPLOYMENT_NAME",
            )

        self.model = deployment
        self.prompt = prompt or os.environ.get("TRANSCRIPTION_PROMPT", DEFAULT_PROMPT)
        self.api_version = api_version
        self._base_url = endpoint.rstrip("/")
        self._client = httpx.AsyncClient(timeout=timeout)

    def _url(self) -> str:
        return (
            f"{self._base_url}/openai/deployments/{self.model}"
            f"/audio/transcriptions?api-version={self.api_version}"
        )

    def _headers(self) -> dict[str, str]:
        return {"api-key": self._api_key}
