"""
Push payload handling.

Inbound push notifications may carry a destination URL either at the top
level (``url``) or nested under ``data.url``. The URL is persisted as the
pending temporary URL right away, and a TempUrlReceived event follows after
a short delay so the host has time to come to the foreground.
"""

from collections.abc import Mapping
from typing import Callable, Optional

from .audit_logger import AuditLogger
from .enums import LogLevel
from .events import Event, TempUrlReceived
from .scheduler import Scheduler
from .state_store import StateStore

TEMP_URL_TIMER = "temp-url"


def extract_url(payload: Mapping) -> Optional[str]:
    """Return the destination URL carried by a push payload, if any."""
    url = payload.get("url")
    if isinstance(url, str) and url:
        return url
    data = payload.get("data")
    if isinstance(data, Mapping):
        nested = data.get("url")
        if isinstance(nested, str) and nested:
            return nested
    return None


class PushPayloadHandler:
    """Turns push payloads and token registrations into persisted state and events."""

    def __init__(
        self,
        submit: Callable[[Event], None],
        store: StateStore,
        scheduler: Scheduler,
        delay_seconds: float = 2.0,
        logger: Optional[AuditLogger] = None,
    ) -> None:
        self._submit = submit
        self._store = store
        self._scheduler = scheduler
        self._delay_seconds = delay_seconds
        self._logger = logger

    def handle_payload(self, payload: Mapping) -> Optional[str]:
        """
        Process a push payload.

        Returns:
            The extracted URL, or None if the payload carried none
        """
        url = extract_url(payload)
        if url is None:
            self._log(LogLevel.DEBUG, "Push payload without URL", {"keys": sorted(payload)})
            return None

        self._store.pending_temp_url = url
        self._scheduler.call_later(
            self._delay_seconds,
            lambda: self._submit(TempUrlReceived(url)),
            name=TEMP_URL_TIMER,
        )
        self._log(LogLevel.INFO, "Pushed URL stored", {"url": url})
        return url

    def register_token(self, token: str) -> None:
        """Cache the push registration token for the next config request."""
        self._store.push_token = token
        self._log(LogLevel.INFO, "Push token registered", {"push_token": token})

    def _log(self, level: LogLevel, message: str, data: dict) -> None:
        if self._logger:
            self._logger.log(level, "PushPayloadHandler", message, data)
