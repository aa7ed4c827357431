"""
Attribution collector.

Bridges the attribution SDK's two independent callbacks (conversion data and
deep-link data) into orchestrator events. Conversion data and deep-link data
are combined into a single AttributionReceived once both are present, or
once the combine window elapses with only conversion data. The combined
record is sent at most once per install.
"""

from collections.abc import Mapping
from typing import Callable, Optional

from .audit_logger import AuditLogger
from .enums import LogLevel
from .events import AttributionReceived, DeepLinkReceived, Event
from .models import AttributionRecord, DeepLinkSignal
from .scheduler import Scheduler
from .state_store import StateStore

COMBINE_TIMER = "attribution-combine"


class AttributionCollector:
    """Combines SDK callbacks into a single attribution submission."""

    def __init__(
        self,
        submit: Callable[[Event], None],
        store: StateStore,
        scheduler: Scheduler,
        combine_seconds: float = 10.0,
        logger: Optional[AuditLogger] = None,
    ) -> None:
        """
        Args:
            submit: Callable that queues an event on the orchestrator
            store: State store holding the ``tracking_sent`` flag
            scheduler: Scheduler used for the combine timer
            combine_seconds: How long conversion data waits for a deep link
            logger: Optional audit logger
        """
        self._submit = submit
        self._store = store
        self._scheduler = scheduler
        self._combine_seconds = combine_seconds
        self._logger = logger
        self._conversion: Optional[dict] = None
        self._deep_link: Optional[dict] = None
        self._sent = False

    def on_conversion_data(self, data: Mapping) -> None:
        """Handle the SDK's conversion-data callback."""
        if self._sent:
            return
        self._conversion = dict(data)
        self._log("Conversion data received", {"keys": len(self._conversion)})

        self._scheduler.call_later(self._combine_seconds, self._send, name=COMBINE_TIMER)
        if self._deep_link is not None:
            self._send()

    def on_conversion_failure(self, reason: str = "") -> None:
        """Handle a conversion-data failure by sending an empty record."""
        self._log("Conversion data unavailable", {"reason": reason}, LogLevel.WARN)
        self._conversion = {}
        self._send()

    def on_deep_link(self, data: Mapping) -> None:
        """Handle the SDK's deep-link callback."""
        if self._store.tracking_sent:
            self._log("Deep link ignored, attribution already sent", {})
            return

        self._deep_link = dict(data)
        self._submit(DeepLinkReceived(DeepLinkSignal(self._deep_link)))
        if self._conversion is not None:
            self._send()

    def _send(self) -> None:
        if self._sent:
            return
        self._sent = True
        self._scheduler.cancel(COMBINE_TIMER)

        # Conversion values win over deep-link values on key clashes
        record = AttributionRecord(self._conversion or {}).merged_with(self._deep_link)
        self._submit(AttributionReceived(record))
        self._store.tracking_sent = True
        self._log("Attribution sent", {
            "keys": len(record),
            "with_deep_link": self._deep_link is not None,
        })

    @property
    def sent(self) -> bool:
        return self._sent

    def _log(self, message: str, data: dict, level: LogLevel = LogLevel.INFO) -> None:
        if self._logger:
            self._logger.log(level, "AttributionCollector", message, data)
