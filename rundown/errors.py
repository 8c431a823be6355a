"""Error taxonomy shared by the mapper, the distiller and the API layer."""
from __future__ import annotations


class RundownError(Exception):
    """Base class for Rundown errors."""


class ProviderError(RundownError):
    """An embedding request failed (network, auth, rate limit, bad payload)."""


class ConfigurationError(RundownError):
    """A required credential or setting is missing."""

    def __init__(self, message: str, setting: str = ""):
        super().__init__(message)
        self.setting = setting


class DataError(RundownError, ValueError):
    """A malformed or missing input record."""
