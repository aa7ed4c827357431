"""
Attribution Client for install-attribution lookups.

Performs a single GET against the attribution service's install-data endpoint
and normalizes the JSON object it returns into an AttributionRecord, merged
with whatever deep-link data has been collected so far. There are no
retries: the first failure is raised to the caller.
"""

import time
from typing import Mapping, Optional
from urllib.parse import urlencode

import httpx

from .audit_logger import AuditLogger
from .config import AttributionConfig
from .enums import FetchErrorCode, LogLevel
from .exceptions import BuildError, ParseError, TransportError
from .models import AttributionRecord


class AttributionClient:
    """
    Async client for the install-attribution endpoint.

    ``GET {base}/install_data/v4.0/id{app_id}?devkey={dev_key}&device_id={uid}``
    """

    ENDPOINT_PATH = "/install_data/v4.0/"

    def __init__(
        self,
        config: AttributionConfig,
        simulation_mode: bool = False,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        logger: Optional[AuditLogger] = None,
    ) -> None:
        """
        Initialize the attribution client.

        Args:
            config: App id, dev key, base URL and timeout
            simulation_mode: If True, no real network requests are made
            transport: Optional httpx transport (used by tests)
            logger: Optional audit logger
        """
        self._config = config
        self._simulation_mode = simulation_mode
        self._transport = transport
        self._logger = logger
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "AttributionClient":
        self._ensure_client()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                verify=True,
                timeout=httpx.Timeout(self._config.timeout_seconds),
                follow_redirects=True,
                transport=self._transport,
            )
        return self._client

    def build_url(self, tracking_id: str) -> str:
        """
        Build the install-data URL.

        Raises:
            BuildError: If the app id, dev key or tracking id is empty
        """
        missing = [
            name
            for name, value in (
                ("app_id", self._config.app_id),
                ("dev_key", self._config.dev_key),
                ("tracking_id", tracking_id),
            )
            if not value
        ]
        if missing:
            raise BuildError(
                code=FetchErrorCode.MISSING_IDENTIFIER.value,
                message=f"Cannot build attribution request, missing: {', '.join(missing)}",
                details={"missing": missing},
            )

        base = self._config.base_url.rstrip("/")
        query = urlencode({"devkey": self._config.dev_key, "device_id": tracking_id})
        return f"{base}{self.ENDPOINT_PATH}id{self._config.app_id}?{query}"

    async def fetch(
        self,
        tracking_id: str,
        deep_link: Optional[Mapping] = None,
    ) -> AttributionRecord:
        """
        Fetch install attribution and merge deep-link data into it.

        Deep-link values only fill keys missing from the response.

        Raises:
            BuildError: If the request cannot be built
            TransportError: On network failure or a non-200 status
            ParseError: If the body is not a JSON object
        """
        url = self.build_url(tracking_id)
        start_time = time.perf_counter()

        if self._simulation_mode:
            self._log(LogLevel.DEBUG, "Simulated attribution fetch", {})
            return AttributionRecord({"af_status": "Organic"}).merged_with(deep_link)

        client = self._ensure_client()
        try:
            response = await client.get(url, headers={"Accept": "application/json"})
        except httpx.TimeoutException:
            raise TransportError(
                code=FetchErrorCode.TIMEOUT.value,
                message=f"Attribution request timed out after {self._config.timeout_seconds}s",
            )
        except httpx.HTTPError as e:
            raise TransportError(
                code=FetchErrorCode.NETWORK_ERROR.value,
                message=f"Attribution request failed: {e}",
            )

        if response.status_code != 200:
            raise TransportError(
                code=FetchErrorCode.HTTP_STATUS.value,
                message=f"Unexpected HTTP status: {response.status_code}",
                details={"http_status_code": response.status_code},
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise ParseError(
                code=FetchErrorCode.PARSE_ERROR.value,
                message=f"Failed to parse attribution response: {e}",
            )
        if not isinstance(payload, dict):
            raise ParseError(
                code=FetchErrorCode.PARSE_ERROR.value,
                message="Attribution response is not a JSON object",
                details={"type": type(payload).__name__},
            )

        self._log(
            LogLevel.INFO,
            "Attribution fetched",
            {
                "keys": len(payload),
                "response_time_ms": (time.perf_counter() - start_time) * 1000,
            },
        )
        return AttributionRecord(payload).merged_with(deep_link)

    def _log(self, level: LogLevel, message: str, data: dict) -> None:
        if self._logger:
            self._logger.log(level, "AttributionClient", message, data)

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None
