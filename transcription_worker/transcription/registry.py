"""Transcriber registry with configuration-driven provider selection.

Maps provider name strings to transcriber classes. Use get_transcriber()
to instantiate a client by name with provider-specific configuration.
"""

import os

from transcription_worker.transcription.interface import Transcriber
from transcription_worker.transcription.openai_transcriber import (
    AzureOpenAITranscriber,
    OpenAITranscriber,
)
from transcription_worker.utils.errors import ConfigurationError

TRANSCRIBERS: dict[str, type[Transcriber]] = {
    "openai": OpenAITranscriber,
    "azure-openai": AzureOpenAITranscriber,
}


def default_provider() -> str:
    """Provider named by TRANSCRIPTION_PROVIDER, or chosen by USE_AZURE_OPENAI."""
    provider = os.environ.get("TRANSCRIPTION_PROVIDER")
    if provider:
        return provider
    if os.environ.get("USE_AZURE_OPENAI", "").lower() == "true":
        return "azure-openai"
    return "openai"


def get_transcriber(provider: str | None = None, **kwargs: object) -> Transcriber:
    """Create a transcriber instance by provider name.

    Args:
        provider: Provider name (e.g., "openai"). Defaults to
            default_provider().
        **kwargs: Client-specific configuration passed to the constructor.

    Returns:
        An initialized Transcriber instance.

    Raises:
        ConfigurationError: If the provider name is not registered.
    """
    provider = provider or default_provider()
    transcriber_cls = TRANSCRIBERS.get(provider)
    if not transcriber_cls:
        available = ", ".join(sorted(TRANSCRIBERS.keys()))
        raise ConfigurationError(
            f"Unknown transcription provider: '{provider}'. "
            f"Available: {available}",
            setting="TRANSCRIPTION_PROVIDER",
        )
    return transcriber_cls(**kwargs)
