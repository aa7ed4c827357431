"""
Enumeration types for the mode resolver.
"""

from enum import Enum


class Mode(Enum):
    """Operating mode presented by the application."""

    SETUP = "setup"
    OPERATIONAL = "operational"
    LEGACY = "legacy"
    DISCONNECTED = "disconnected"


class AppState(Enum):
    """Persisted app-state marker. INACTIVE is the sticky legacy marker."""

    UNSET = "unset"
    ACTIVE = "HarvestView"
    INACTIVE = "Inactive"


class EvaluationReason(Enum):
    """Which evaluation rule produced a mode."""

    EMPTY_ATTRIBUTION = "empty_attribution"
    STICKY_LEGACY = "sticky_legacy"
    AWAIT_DEEP_LINK = "await_deep_link"
    PENDING_URL = "pending_url"
    FETCH_CONFIG = "fetch_config"


class LogLevel(Enum):
    """Logging severity levels."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class FetchErrorCode(Enum):
    """Error codes for attribution and config fetches."""

    MISSING_IDENTIFIER = "missing_identifier"
    SERIALIZATION_ERROR = "serialization_error"
    NETWORK_ERROR = "network_error"
    TIMEOUT = "timeout"
    HTTP_STATUS = "http_status"
    PARSE_ERROR = "parse_error"
    REJECTED = "rejected"
    INVALID_URL = "invalid_url"
