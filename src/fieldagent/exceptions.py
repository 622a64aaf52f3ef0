"""Exception hierarchy for the field agent."""

from typing import Optional

# Backoff used when the server sends 503 without a usable Retry-After header
DEFAULT_RETRY_SECONDS = 30


class AgentError(Exception):
    """Base class for all agent errors."""


class RetryAfterError(AgentError):
    """Server asked the agent to back off before trying again.

    Aborts only the current operation/sync cycle; never counted as an
    installation failure.
    """

    def __init__(self, seconds: int = DEFAULT_RETRY_SECONDS, message: Optional[str] = None):
        self.seconds = seconds
        super().__init__(message or f"Server busy, retry after {seconds} seconds")


class ProtocolError(AgentError, IOError):
    """Server response violated the expected HTTP/content protocol."""


class StoreCorruptedError(AgentError, IOError):
    """A feedback store file contains an unreadable record."""


class InstallationFailedError(AgentError):
    """The install operation of an update target raised."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause

    @property
    def reason(self) -> str:
        """Human readable reason, taken from the cause when present."""
        if self.cause is None:
            return str(self)
        return f"{type(self.cause).__name__}: {self.cause}"
