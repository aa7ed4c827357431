"""
Connectivity monitoring.

A background task polls a probe at a fixed interval and submits a
ConnectivityChanged event whenever the observed state differs from the last
one, starting with the first observation.
"""

import asyncio
from typing import Awaitable, Callable, Optional

import httpx

from .audit_logger import AuditLogger
from .enums import LogLevel
from .events import ConnectivityChanged, Event

ConnectivityProbe = Callable[[], Awaitable[bool]]


class HttpConnectivityProbe:
    """Treats any HTTP response to a HEAD request as being online."""

    def __init__(
        self,
        url: str,
        timeout_seconds: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._url = url
        self._client = httpx.AsyncClient(
            verify=True,
            timeout=httpx.Timeout(timeout_seconds),
            transport=transport,
        )

    async def __call__(self) -> bool:
        try:
            await self._client.head(self._url)
        except httpx.HTTPError:
            return False
        return True

    async def close(self) -> None:
        await self._client.aclose()


class ConnectivityMonitor:
    """Polls a probe and reports connectivity transitions."""

    def __init__(
        self,
        submit: Callable[[Event], None],
        probe: ConnectivityProbe,
        interval_seconds: float = 5.0,
        logger: Optional[AuditLogger] = None,
    ) -> None:
        self._submit = submit
        self._probe = probe
        self._interval_seconds = interval_seconds
        self._logger = logger
        self._online: Optional[bool] = None
        self._task: Optional[asyncio.Task] = None

    async def __aenter__(self) -> "ConnectivityMonitor":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def check(self) -> bool:
        """Probe once and submit an event if the state changed."""
        online = await self._probe()
        if online != self._online:
            self._online = online
            if self._logger:
                self._logger.log(
                    LogLevel.INFO if online else LogLevel.WARN,
                    "ConnectivityMonitor",
                    "Connectivity changed",
                    {"online": online},
                )
            self._submit(ConnectivityChanged(online))
        return online

    async def _run(self) -> None:
        while True:
            await self.check()
            await asyncio.sleep(self._interval_seconds)

    @property
    def online(self) -> Optional[bool]:
        return self._online
