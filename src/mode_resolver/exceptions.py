"""
Exception classes for the mode resolver.

All exceptions inherit from ModeResolverError and carry a machine-readable
code, a message and optional details. Fetch failures are split into the
three kinds the orchestrator routes on: the request could not be built,
the transport failed, or the response could not be understood.
"""

from typing import Optional


class ModeResolverError(Exception):
    """Base exception for all mode resolver errors."""

    def __init__(
        self,
        code: str,
        message: str,
        details: Optional[dict] = None,
    ) -> None:
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"

    def to_dict(self) -> dict:
        """Convert exception to dictionary for serialization."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class FetchError(ModeResolverError):
    """Raised when an attribution or config fetch fails."""

    kind = "fetch"


class BuildError(FetchError):
    """Raised when a request cannot be constructed (missing identifiers, unserializable body)."""

    kind = "build"


class TransportError(FetchError):
    """Raised on network failure or a non-200 HTTP status."""

    kind = "transport"


class ParseError(FetchError):
    """Raised when a response body is malformed or rejected."""

    kind = "parse"


class PersistenceError(ModeResolverError):
    """Raised when the state file cannot be read or written."""

    pass


class TamperingError(PersistenceError):
    """Raised when HMAC validation of the state file fails."""

    pass


class ConfigurationError(ModeResolverError):
    """Raised when configuration cannot be loaded or is invalid."""

    pass
