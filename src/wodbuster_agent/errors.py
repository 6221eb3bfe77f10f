"""Exception hierarchy shared across the booking agent."""

from __future__ import annotations

from typing import Optional


class WodbusterError(Exception):
    """Base class for every error raised by the agent."""


class ValidationError(WodbusterError):
    """User supplied data (day, hour, class type, credentials) is malformed."""


class SessionError(WodbusterError):
    """Authentication could not be established or reused."""

    def __init__(self, message: str, *, stage: Optional[str] = None):
        super().__init__(message)
        self.stage = stage

    def __str__(self) -> str:
        message = super().__str__()
        if self.stage:
            return f"{self.stage}: {message}"
        return message


class AutomationError(WodbusterError):
    """An expected element or dialog never showed up within its wait budget."""

    def __init__(self, stage: str, intent: str, message: str = "element not found"):
        super().__init__(f"{stage}: {message} ({intent})")
        self.stage = stage
        self.intent = intent


class StorageError(WodbusterError):
    """Persistence layer failed or the requested record does not exist."""


class CryptoError(WodbusterError):
    """Password could not be encrypted or decrypted."""


class SchedulerError(WodbusterError):
    """The booking scheduler was used in an invalid state."""
