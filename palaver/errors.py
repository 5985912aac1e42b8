"""Error taxonomy shared by the engine components."""

from __future__ import annotations


class PalaverError(Exception):
    """Base class for engine errors."""


class ConfigError(PalaverError):
    """Configuration rejected before any component starts."""


class DeviceError(PalaverError):
    """Capture or playback infrastructure unavailable.

    Logged, the current chunk or iteration is skipped and the next cycle retries.
    """


class ProviderError(PalaverError):
    """Speech-to-text, text-to-speech or response backend failure.

    Surfaced once; the current turn is abandoned and the pipeline resumes listening.
    """

    def __init__(self, provider: str, message: str):
        super().__init__(f"{provider}: {message}")
        self.provider = provider


class ModelLoadError(PalaverError):
    """Wake word model files missing or unreadable. Fatal for the provider."""
