"""Exceptions raised by the Inspectra client."""
from typing import Optional


class InspectraError(Exception):
    """Base class for all client errors."""


class TransportError(InspectraError):
    """The backend could not be reached or the connection dropped."""


class BackendError(InspectraError):
    """The backend answered but reported a failure ({success: false, error})."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class IncompletePayloadError(BackendError):
    """A scan reported success without the intelligence pillars."""


class ConfigError(InspectraError):
    """Configuration file could not be read or has the wrong shape."""
