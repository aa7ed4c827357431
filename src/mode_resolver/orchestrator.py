"""
Mode Orchestrator for the mode resolver.

The orchestrator owns the current mode. External collaborators submit typed
events into a single queue; one consumer task applies them in order, so all
state mutation is serialized. Network fetches run as separate tasks and
report back by queueing completion events stamped with the epoch they were
started under. Any transition published outside the running sequence bumps
the epoch, and completions from an older epoch are never allowed to publish.

Flow per evaluation:
1. Date gate closed -> LEGACY after a short delay
2. Empty attribution -> cached destination, else LEGACY
3. Sticky legacy marker -> LEGACY
4. First run, organic install -> wait for a deep link, fetch attribution,
   then fetch config
5. Pending pushed URL -> OPERATIONAL
6. Otherwise -> permission prompt or config fetch
"""

import asyncio
from datetime import datetime, timezone
from typing import Callable, Optional

from .attribution_client import AttributionClient
from .audit_logger import AuditLogger
from .config import SystemConfig
from .config_client import DeviceContext, RemoteConfigClient
from .enums import AppState, EvaluationReason, LogLevel, Mode
from .events import (
    AttributionFetchCompleted,
    AttributionReceived,
    ConfigFetchCompleted,
    ConnectivityChanged,
    DateGateElapsed,
    DeepLinkReceived,
    DeepLinkWaitElapsed,
    Event,
    PermissionAnswered,
    PermissionSkipped,
    TempUrlReceived,
)
from .exceptions import FetchError, TransportError
from .mode_evaluator import ModeEvaluator, is_date_gate_open, is_valid_url
from .models import AttributionRecord, DeepLinkSignal, ModeTransition
from .permission_gate import PermissionGate
from .scheduler import Scheduler
from .state_store import StateStore

ModeListener = Callable[[ModeTransition], None]

DEEP_LINK_TIMER = "deep-link-wait"
DATE_GATE_TIMER = "date-gate"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ModeOrchestrator:
    """
    Single-owner state machine deciding the application's operating mode.

    Use as an async context manager (or call ``start``/``stop``) inside a
    running event loop. Listeners are invoked on the event-loop thread.
    """

    async def __aenter__(self) -> "ModeOrchestrator":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()

    def __init__(
        self,
        config: SystemConfig,
        store: StateStore,
        attribution_client: AttributionClient,
        config_client: RemoteConfigClient,
        permission_gate: Optional[PermissionGate] = None,
        scheduler: Optional[Scheduler] = None,
        logger: Optional[AuditLogger] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        """
        Initialize the orchestrator.

        Args:
            config: System configuration
            store: Persistent state store (already loaded)
            attribution_client: Client for the install-attribution endpoint
            config_client: Client for the remote decision endpoint
            permission_gate: Optional gate; built from the store if omitted
            scheduler: Optional wall-clock timer scheduler
            logger: Optional audit logger
            clock: Source of the current time (aware datetime)
        """
        self._config = config
        self._store = store
        self._attribution_client = attribution_client
        self._config_client = config_client
        self._clock = clock or _utc_now
        self._gate = permission_gate or PermissionGate(
            store,
            cooldown_seconds=config.timing.permission_cooldown_seconds,
            clock=self._clock,
        )
        self._scheduler = scheduler or Scheduler()
        self._logger = logger
        self._evaluator = ModeEvaluator()
        self._cutoff = config.timing.cutoff_datetime()

        self._mode = Mode.SETUP
        self._destination_url: Optional[str] = None
        self._attribution = AttributionRecord()
        self._deep_link = DeepLinkSignal()
        self._awaiting_permission = False

        self._epoch = 0
        self._active_epoch: Optional[int] = None
        self._waiting_for_deep_link = False
        self._reevaluate_after_sequence = False

        self._listeners: list[ModeListener] = []
        self._transitions: list[ModeTransition] = []
        self._waiters: list[tuple[Callable[["ModeOrchestrator"], bool], asyncio.Future]] = []

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None
        self._fetch_tasks: set[asyncio.Task] = set()

    # -- lifecycle -------------------------------------------------------------

    async def start(self) -> None:
        """Start the consumer task on the running event loop."""
        if self._worker is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._worker = self._loop.create_task(self._consume())
        self._log_info("Orchestrator started", {
            "first_run": self._store.is_first_run,
            "app_state": self._store.app_state.value,
        })

    async def stop(self) -> None:
        """Cancel timers, in-flight fetches and the consumer task."""
        self._scheduler.cancel_all()
        tasks = list(self._fetch_tasks)
        if self._worker is not None:
            tasks.append(self._worker)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._fetch_tasks.clear()
        self._worker = None
        for _, future in self._waiters:
            if not future.done():
                future.cancel()
        self._waiters.clear()

    def submit(self, event: Event) -> None:
        """Queue an event. Must be called on the orchestrator's event loop."""
        if self._queue is None:
            raise RuntimeError("Orchestrator is not running")
        self._queue.put_nowait(event)

    def submit_threadsafe(self, event: Event) -> None:
        """Queue an event from a thread other than the event loop's."""
        if self._loop is None or self._queue is None:
            raise RuntimeError("Orchestrator is not running")
        self._loop.call_soon_threadsafe(self._queue.put_nowait, event)

    def add_listener(self, listener: ModeListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: ModeListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def _consume(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                self._handle(event)
            except Exception as e:
                if self._logger:
                    self._logger.log_error(
                        "ModeOrchestrator",
                        f"Unhandled error processing {type(event).__name__}",
                        error=e,
                    )
            finally:
                self._queue.task_done()
            self._notify_waiters()

    def _handle(self, event: Event) -> None:
        if isinstance(event, AttributionReceived):
            self._on_attribution(event)
        elif isinstance(event, DeepLinkReceived):
            self._on_deep_link(event)
        elif isinstance(event, TempUrlReceived):
            self._on_temp_url(event)
        elif isinstance(event, ConnectivityChanged):
            self._on_connectivity(event)
        elif isinstance(event, PermissionAnswered):
            self._on_permission_answered(event)
        elif isinstance(event, PermissionSkipped):
            self._on_permission_skipped()
        elif isinstance(event, DeepLinkWaitElapsed):
            self._on_deep_link_wait_elapsed(event)
        elif isinstance(event, DateGateElapsed):
            self._on_date_gate_elapsed(event)
        elif isinstance(event, AttributionFetchCompleted):
            self._on_attribution_fetched(event)
        elif isinstance(event, ConfigFetchCompleted):
            self._on_config_fetched(event)
        else:
            raise TypeError(f"Unknown event: {event!r}")

    # -- external signals ------------------------------------------------------

    def _on_attribution(self, event: AttributionReceived) -> None:
        self._attribution = event.record
        self._log_info("Attribution received", {
            "keys": len(event.record),
            "status": event.record.status,
        })
        self._evaluate()

    def _on_deep_link(self, event: DeepLinkReceived) -> None:
        self._deep_link = event.signal
        self._log_info("Deep link received", {"keys": len(event.signal)})
        if self._waiting_for_deep_link and self._active_epoch is not None:
            # Arrival ends the organic wait early
            self._scheduler.cancel(DEEP_LINK_TIMER)
            self._waiting_for_deep_link = False
            self._start_attribution_fetch(self._active_epoch)

    def _on_temp_url(self, event: TempUrlReceived) -> None:
        if not is_valid_url(event.url):
            self._log(LogLevel.WARN, "Ignoring unusable pushed URL", {"url": event.url})
            return
        if self._date_gate_closed():
            return
        self._supersede()
        self._destination_url = event.url
        self._consume_pending_url(event.url)
        self._publish(Mode.OPERATIONAL, "pushed_url")

    def _on_connectivity(self, event: ConnectivityChanged) -> None:
        if not event.online:
            if self._store.app_state == AppState.ACTIVE:
                if self._mode != Mode.DISCONNECTED:
                    self._supersede()
                    self._publish(Mode.DISCONNECTED, "connectivity_lost")
            elif not (self._mode == Mode.LEGACY and self._store.app_state == AppState.INACTIVE):
                self._activate_legacy("connectivity_lost")
            return

        if self._mode != Mode.DISCONNECTED:
            return
        if self._date_gate_closed():
            return
        if self._destination_url is not None:
            self._publish(Mode.OPERATIONAL, "connectivity_restored")
        else:
            self._publish(Mode.SETUP, "connectivity_restored")
            self._evaluate()

    def _on_permission_answered(self, event: PermissionAnswered) -> None:
        self._gate.record_response(event.granted)
        self._awaiting_permission = False
        self._log_info("Permission answered", {"granted": event.granted})
        if self._mode == Mode.LEGACY:
            self._log_info("Legacy active, answer recorded only", {})
            return
        if self._destination_url is not None:
            self._publish(Mode.OPERATIONAL, "permission_answered")
        else:
            self._request_config()

    def _on_permission_skipped(self) -> None:
        self._gate.record_skip()
        self._awaiting_permission = False
        self._log_info("Permission skipped", {})
        self._request_config()

    # -- evaluation ------------------------------------------------------------

    def _evaluate(self) -> None:
        if self._date_gate_closed():
            return

        if self._sequence_in_flight:
            self._reevaluate_after_sequence = True
            self._log_info("Resolution in flight, signal recorded", {
                "epoch": self._active_epoch,
            })
            return

        if self._awaiting_permission:
            self._log_info("Awaiting permission answer, signal recorded", {})
            return

        pending_url = self._store.pending_temp_url
        evaluation = self._evaluator.explain(
            self._attribution,
            self._store.is_first_run,
            self._destination_url,
            pending_url,
            self._store.app_state,
        )
        self._log(LogLevel.DEBUG, "Evaluated", {
            "mode": evaluation.mode.value,
            "reason": evaluation.reason.value,
        })

        if evaluation.reason == EvaluationReason.EMPTY_ATTRIBUTION:
            self._fall_back_to_cached(evaluation.reason.value)
        elif evaluation.reason == EvaluationReason.STICKY_LEGACY:
            self._activate_legacy(evaluation.reason.value)
        elif evaluation.reason == EvaluationReason.AWAIT_DEEP_LINK:
            self._start_deep_link_wait()
        elif evaluation.reason == EvaluationReason.PENDING_URL:
            self._destination_url = pending_url
            self._consume_pending_url(pending_url)
            self._publish(Mode.OPERATIONAL, evaluation.reason.value)
        elif self._destination_url is not None:
            self._log_info("Destination already resolved", {})
        elif self._gate.should_prompt():
            self._publish(Mode.SETUP, "permission_prompt", permission_prompt=True)
        else:
            self._start_config_sequence()

    def _date_gate_closed(self) -> bool:
        """True (and Legacy scheduled) while the cutoff has not been reached."""
        if is_date_gate_open(self._clock(), self._cutoff):
            return False
        if self._scheduler.get_task(DATE_GATE_TIMER) is None:
            epoch = self._epoch
            self._scheduler.call_later(
                self._config.timing.date_gate_delay_seconds,
                lambda: self.submit(DateGateElapsed(epoch)),
                name=DATE_GATE_TIMER,
            )
            self._log_info("Date gate closed, legacy scheduled", {
                "cutoff": self._cutoff.isoformat(),
            })
        return True

    def _on_date_gate_elapsed(self, event: DateGateElapsed) -> None:
        if event.epoch != self._epoch:
            return
        self._activate_legacy("date_gate")

    def _request_config(self) -> None:
        if self._store.app_state == AppState.INACTIVE or self._mode == Mode.LEGACY:
            self._log_info("Legacy active, config fetch skipped", {})
            return
        if self._date_gate_closed():
            return
        if self._sequence_in_flight:
            self._log_info("Config fetch already in flight", {"epoch": self._active_epoch})
            return
        self._start_config_sequence()

    # -- resolution sequence ---------------------------------------------------

    @property
    def _sequence_in_flight(self) -> bool:
        return self._active_epoch is not None

    def _begin_sequence(self) -> int:
        self._epoch += 1
        self._active_epoch = self._epoch
        return self._epoch

    def _end_sequence(self, epoch: int) -> bool:
        """Close the sequence for ``epoch``. Returns True if it was current."""
        if epoch == self._active_epoch:
            self._active_epoch = None
        current = epoch == self._epoch
        if not current and not self._sequence_in_flight and self._reevaluate_after_sequence:
            self._reevaluate_after_sequence = False
            self._evaluate()
        elif current:
            self._reevaluate_after_sequence = False
        return current

    def _supersede(self) -> None:
        """Invalidate the running sequence; its completions become stale."""
        self._epoch += 1
        self._awaiting_permission = False
        if self._waiting_for_deep_link:
            # Nothing else is outstanding for a sequence that is only waiting
            self._scheduler.cancel(DEEP_LINK_TIMER)
            self._waiting_for_deep_link = False
            self._active_epoch = None

    def _start_deep_link_wait(self) -> None:
        epoch = self._begin_sequence()
        self._waiting_for_deep_link = True
        self._scheduler.call_later(
            self._config.timing.deep_link_wait_seconds,
            lambda: self.submit(DeepLinkWaitElapsed(epoch)),
            name=DEEP_LINK_TIMER,
        )
        self._log_info("Organic first run, waiting for deep link", {
            "epoch": epoch,
            "wait_seconds": self._config.timing.deep_link_wait_seconds,
        })

    def _on_deep_link_wait_elapsed(self, event: DeepLinkWaitElapsed) -> None:
        if event.epoch != self._active_epoch or not self._waiting_for_deep_link:
            return
        self._waiting_for_deep_link = False
        self._start_attribution_fetch(event.epoch)

    def _start_attribution_fetch(self, epoch: int) -> None:
        tracking_id = self._store.ensure_tracking_id(self._config.device.tracking_id)
        deep_link = self._deep_link
        self._log_info("Fetching attribution", {"epoch": epoch})
        self._spawn(self._fetch_attribution(epoch, tracking_id, deep_link))

    async def _fetch_attribution(
        self, epoch: int, tracking_id: str, deep_link: DeepLinkSignal
    ) -> None:
        try:
            record = await self._attribution_client.fetch(tracking_id, deep_link)
        except FetchError as e:
            self.submit(AttributionFetchCompleted(epoch, error=e))
            return
        except Exception as e:
            self.submit(AttributionFetchCompleted(epoch, error=_unexpected(e)))
            return
        self.submit(AttributionFetchCompleted(epoch, record=record))

    def _on_attribution_fetched(self, event: AttributionFetchCompleted) -> None:
        if event.epoch != self._epoch:
            self._log_info("Discarding stale attribution result", {"epoch": event.epoch})
            self._end_sequence(event.epoch)
            return

        if event.error is not None:
            self._log_fetch_error("Attribution fetch failed", event.error)
            self._end_sequence(event.epoch)
            self._activate_legacy("attribution_failed")
            return

        # Deep links that arrived during the request only fill gaps
        self._attribution = event.record.merged_with(self._deep_link)
        if len(self._attribution) == 0:
            self._end_sequence(event.epoch)
            self._fall_back_to_cached(EvaluationReason.EMPTY_ATTRIBUTION.value)
            return
        self._start_config_fetch(event.epoch)

    def _start_config_sequence(self) -> None:
        self._start_config_fetch(self._begin_sequence())

    def _start_config_fetch(self, epoch: int) -> None:
        tracking_id = self._store.ensure_tracking_id(self._config.device.tracking_id)
        device = DeviceContext.from_config(
            self._config.device,
            app_id=self._config.attribution.app_id,
            tracking_id=tracking_id,
            push_token=self._store.push_token,
        )
        attribution = self._attribution
        self._log_info("Fetching destination config", {"epoch": epoch})
        self._spawn(self._fetch_config(epoch, attribution, device))

    async def _fetch_config(
        self, epoch: int, attribution: AttributionRecord, device: DeviceContext
    ) -> None:
        try:
            url = await self._config_client.fetch(attribution, device)
        except FetchError as e:
            self.submit(ConfigFetchCompleted(epoch, error=e))
            return
        except Exception as e:
            self.submit(ConfigFetchCompleted(epoch, error=_unexpected(e)))
            return
        self.submit(ConfigFetchCompleted(epoch, url=url))

    def _on_config_fetched(self, event: ConfigFetchCompleted) -> None:
        if event.epoch != self._epoch:
            if event.url is not None and self._store.app_state != AppState.INACTIVE:
                self._store.cache_destination(event.url)
            self._log_info("Discarding stale config result", {
                "epoch": event.epoch,
                "succeeded": event.url is not None,
            })
            self._end_sequence(event.epoch)
            return

        self._end_sequence(event.epoch)

        if event.error is not None:
            self._log_fetch_error("Config fetch failed", event.error)
            self._fall_back_to_cached("config_failed")
            return

        self._store.commit_operational(event.url)
        self._destination_url = event.url
        if self._gate.should_prompt():
            self._publish(Mode.SETUP, "permission_prompt", permission_prompt=True)
        else:
            self._publish(Mode.OPERATIONAL, "config_resolved")

    # -- terminal transitions --------------------------------------------------

    def _fall_back_to_cached(self, reason: str) -> None:
        cached = self._store.stored_destination_url
        if is_valid_url(cached):
            self._destination_url = cached
            self._publish(Mode.OPERATIONAL, f"{reason}:cached_destination")
        else:
            self._activate_legacy(reason)

    def _activate_legacy(self, reason: str) -> None:
        self._store.commit_legacy()
        self._supersede()
        self._publish(Mode.LEGACY, reason)

    def _consume_pending_url(self, url: Optional[str]) -> None:
        if url is not None and self._store.pending_temp_url == url:
            self._store.pending_temp_url = None

    def _publish(self, mode: Mode, reason: str, permission_prompt: bool = False) -> None:
        self._mode = mode
        self._awaiting_permission = permission_prompt
        transition = ModeTransition(
            mode=mode,
            destination_url=None if mode == Mode.LEGACY else self._destination_url,
            epoch=self._epoch,
            reason=reason,
            timestamp=self._clock().isoformat(),
            permission_prompt=permission_prompt,
        )
        self._transitions.append(transition)
        self._log_info(f"Mode -> {mode.value}", {
            "reason": reason,
            "epoch": self._epoch,
            "permission_prompt": permission_prompt,
        })

        for listener in list(self._listeners):
            try:
                listener(transition)
            except Exception as e:
                if self._logger:
                    self._logger.log_error("ModeOrchestrator", "Mode listener failed", error=e)

        self._notify_waiters()

    # -- waiting ---------------------------------------------------------------

    def _notify_waiters(self) -> None:
        for entry in list(self._waiters):
            predicate, future = entry
            if not future.done() and predicate(self):
                future.set_result(self.last_transition)
                self._waiters.remove(entry)

    async def wait_for(
        self,
        predicate: Callable[["ModeOrchestrator"], bool],
        timeout: Optional[float] = None,
    ) -> Optional[ModeTransition]:
        """
        Wait until ``predicate(self)`` holds after a publish.

        Raises:
            asyncio.TimeoutError: If the timeout expires first
        """
        if predicate(self):
            return self.last_transition
        future = asyncio.get_running_loop().create_future()
        entry = (predicate, future)
        self._waiters.append(entry)
        try:
            return await asyncio.wait_for(future, timeout)
        finally:
            if entry in self._waiters:
                self._waiters.remove(entry)

    async def wait_for_mode(self, *modes: Mode, timeout: Optional[float] = None) -> Optional[ModeTransition]:
        return await self.wait_for(lambda o: o.mode in modes, timeout)

    async def wait_for_resolution(self, timeout: Optional[float] = None) -> Optional[ModeTransition]:
        """Wait until the mode leaves SETUP or a permission prompt is raised."""
        return await self.wait_for(
            lambda o: o.mode != Mode.SETUP or o.awaiting_permission, timeout
        )

    async def wait_idle(self) -> None:
        """Wait until the queue is drained and no fetch is running."""
        while True:
            await self._queue.join()
            if not self._fetch_tasks:
                if self._queue.empty():
                    return
                continue
            await asyncio.gather(*list(self._fetch_tasks), return_exceptions=True)

    # -- helpers ---------------------------------------------------------------

    def _spawn(self, coro) -> None:
        task = self._loop.create_task(coro)
        self._fetch_tasks.add(task)
        task.add_done_callback(self._fetch_tasks.discard)

    def _log_fetch_error(self, message: str, error: FetchError) -> None:
        if self._logger:
            self._logger.log_error(
                "ModeOrchestrator",
                message,
                error=error,
                additional_data={"kind": error.kind},
            )

    def _log(self, level: LogLevel, message: str, data: dict) -> None:
        if self._logger:
            self._logger.log(level, "ModeOrchestrator", message, data)

    def _log_info(self, message: str, data: dict) -> None:
        self._log(LogLevel.INFO, message, data)

    # -- properties ------------------------------------------------------------

    @property
    def mode(self) -> Mode:
        return self._mode

    @property
    def destination_url(self) -> Optional[str]:
        return self._destination_url

    @property
    def awaiting_permission(self) -> bool:
        return self._awaiting_permission

    @property
    def epoch(self) -> int:
        return self._epoch

    @property
    def sequence_in_flight(self) -> bool:
        return self._sequence_in_flight

    @property
    def attribution(self) -> AttributionRecord:
        return self._attribution

    @property
    def transitions(self) -> list[ModeTransition]:
        return self._transitions.copy()

    @property
    def last_transition(self) -> Optional[ModeTransition]:
        return self._transitions[-1] if self._transitions else None

    @property
    def permission_gate(self) -> PermissionGate:
        return self._gate


def _unexpected(error: Exception) -> TransportError:
    return TransportError(
        code="unexpected_error",
        message=f"Unexpected fetch failure: {error}",
        details={"error_type": type(error).__name__},
    )
