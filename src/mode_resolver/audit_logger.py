"""
Audit Logger module for the mode resolver.

Structured logging with JSON and/or human-readable text output, minimum-level
filtering, masking of credentials (dev keys, push tokens), and an optional
audit mode that signs each entry with HMAC-SHA256.
"""

import hmac
import hashlib
import json
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, TextIO

from mode_resolver.enums import LogLevel


OUTPUT_FORMATS = ("json", "text", "both")

_LEVEL_ORDER = {
    LogLevel.DEBUG: 0,
    LogLevel.INFO: 1,
    LogLevel.WARN: 2,
    LogLevel.ERROR: 3,
}

# Substrings of keys whose values never reach the output
SENSITIVE_KEYS = frozenset({
    'token', 'secret', 'password', 'devkey', 'dev_key', 'api_key',
    'auth', 'credential', 'private_key', 'signing_key',
})

MASK_VALUE = "***MASKED***"


def _is_sensitive(key: Any) -> bool:
    lowered = str(key).lower()
    return any(pattern in lowered for pattern in SENSITIVE_KEYS)


def mask_sensitive(value: Any) -> Any:
    """Return a copy of ``value`` with credential-like keys masked at any depth."""
    if isinstance(value, dict):
        return {
            key: MASK_VALUE if _is_sensitive(key) else mask_sensitive(item)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [mask_sensitive(item) for item in value]
    return value


@dataclass
class LogEntry:
    """One emitted log record."""

    timestamp: str
    level: LogLevel
    component: str
    message: str
    data: dict = field(default_factory=dict)
    signature: Optional[str] = None

    def to_dict(self, with_signature: bool = True) -> dict:
        result = {
            "timestamp": self.timestamp,
            "level": self.level.value,
            "component": self.component,
            "message": self.message,
            "data": self.data,
        }
        if with_signature and self.signature:
            result["signature"] = self.signature
        return result


class AuditLogger:
    """
    Audit logger with dual-format output and optional signing.

    Entries below the configured minimum level are dropped before they are
    masked, signed or written. Emitted entries are also kept in memory and
    exposed through ``entries``.
    """

    SENSITIVE_KEYS = SENSITIVE_KEYS
    MASK_VALUE = MASK_VALUE

    def __init__(
        self,
        output_format: str = "text",
        output_stream: Optional[TextIO] = None,
        min_level: LogLevel = LogLevel.DEBUG,
    ):
        """
        Args:
            output_format: One of 'json', 'text' or 'both'
            output_stream: Where entries are written (sys.stderr when omitted)
            min_level: Entries below this level are discarded
        """
        if output_format not in OUTPUT_FORMATS:
            raise ValueError(f"Unknown output format: {output_format!r}")

        self._output_format = output_format
        self._stream = output_stream or sys.stderr
        self._min_level = min_level
        self._signing_key: Optional[bytes] = None
        self._entries: list[LogEntry] = []

    @classmethod
    def from_config(cls, logging_config, output_stream: Optional[TextIO] = None) -> "AuditLogger":
        """Build a logger from a LoggingConfig."""
        try:
            min_level = LogLevel(logging_config.level.lower())
        except ValueError:
            raise ValueError(f"Invalid log level: {logging_config.level}")
        logger = cls(
            output_format=logging_config.output_format,
            output_stream=output_stream,
            min_level=min_level,
        )
        if logging_config.audit_mode and logging_config.audit_signing_key:
            logger.enable_audit_mode(logging_config.audit_signing_key)
        return logger

    @property
    def output_format(self) -> str:
        return self._output_format

    @property
    def min_level(self) -> LogLevel:
        return self._min_level

    @property
    def audit_mode(self) -> bool:
        return self._signing_key is not None

    @property
    def entries(self) -> list[LogEntry]:
        return list(self._entries)

    def enable_audit_mode(self, signing_key: str) -> None:
        """Sign every following entry with HMAC-SHA256 under ``signing_key``."""
        if not signing_key:
            raise ValueError("Audit mode needs a non-empty signing key")
        self._signing_key = signing_key.encode("utf-8")

    def is_enabled_for(self, level: LogLevel) -> bool:
        return _LEVEL_ORDER[level] >= _LEVEL_ORDER[self._min_level]

    def log(
        self,
        level: LogLevel,
        component: str,
        message: str,
        data: Optional[dict] = None,
    ) -> Optional[LogEntry]:
        """
        Record and write an entry.

        Returns:
            The entry, or None when ``level`` is below the minimum level
        """
        if not self.is_enabled_for(level):
            return None

        entry = LogEntry(
            timestamp=datetime.now(timezone.utc).isoformat(),
            level=level,
            component=component,
            message=message,
            data=self.mask_sensitive_data(data or {}),
        )
        if self._signing_key is not None:
            entry.signature = self._sign(entry)

        self._entries.append(entry)
        self._write(entry)
        return entry

    def log_error(
        self,
        component: str,
        message: str,
        error: Optional[Exception] = None,
        request_url: Optional[str] = None,
        additional_data: Optional[dict] = None,
    ) -> Optional[LogEntry]:
        """
        Log an error with its context.

        Package errors contribute their ``code`` and ``details``.
        """
        data = dict(additional_data or {})

        if error is not None:
            data.update(error_type=type(error).__name__, error_message=str(error))
            code = getattr(error, "code", None)
            if code is not None:
                data["error_code"] = code
            details = getattr(error, "details", None)
            if details:
                data["error_details"] = details

        if request_url is not None:
            data["request_url"] = request_url

        return self.log(LogLevel.ERROR, component, message, data)

    def mask_sensitive_data(self, data: dict) -> dict:
        return mask_sensitive(data)

    def _sign(self, entry: LogEntry) -> str:
        content = json.dumps(
            entry.to_dict(with_signature=False),
            sort_keys=True,
            ensure_ascii=False,
            default=str,
        )
        return hmac.new(self._signing_key, content.encode("utf-8"), hashlib.sha256).hexdigest()

    def verify_signature(self, entry: LogEntry) -> bool:
        """True if ``entry`` carries a signature matching its current content."""
        if not entry.signature or self._signing_key is None:
            return False
        return hmac.compare_digest(entry.signature, self._sign(entry))

    def format_json(self, entry: LogEntry) -> str:
        return json.dumps(entry.to_dict(), ensure_ascii=False, default=str)

    def format_text(self, entry: LogEntry) -> str:
        # [TIMESTAMP] LEVEL [COMPONENT] MESSAGE {data} [sig:...]
        line = f"[{entry.timestamp}] {entry.level.value.upper()} [{entry.component}] {entry.message}"
        if entry.data:
            line += " " + json.dumps(entry.data, ensure_ascii=False, default=str)
        if entry.signature:
            line += f" [sig:{entry.signature[:16]}]"
        return line

    def _write(self, entry: LogEntry) -> None:
        lines = []
        if self._output_format in ("json", "both"):
            lines.append(self.format_json(entry))
        if self._output_format in ("text", "both"):
            lines.append(self.format_text(entry))
        self._stream.write("".join(line + "\n" for line in lines))
        self._stream.flush()
