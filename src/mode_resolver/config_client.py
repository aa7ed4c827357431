"""
Remote Config Client for destination URL resolution.

Posts the attribution record together with device context to the decision
endpoint and returns the destination URL it hands back. A response only
counts as success when it reads ``{"ok": true, "url": "<absolute url>"}``.
"""

import json
import time
from dataclasses import dataclass
from typing import Mapping, Optional

import httpx

from .audit_logger import AuditLogger
from .config import DeviceConfig, RemoteConfigConfig
from .enums import FetchErrorCode, LogLevel
from .exceptions import BuildError, ParseError, TransportError
from .mode_evaluator import is_valid_url


def locale_code(language: str) -> str:
    """Two-letter upper-case locale code, ``EN`` when unknown."""
    code = (language or "").strip()[:2]
    return code.upper() if len(code) == 2 and code.isalpha() else "EN"


@dataclass
class DeviceContext:
    """Device and app identifiers sent alongside the attribution record."""

    platform: str
    tracking_id: str
    bundle_id: str
    firebase_project_id: Optional[str]
    store_id: str
    push_token: Optional[str]
    locale: str

    @classmethod
    def from_config(
        cls,
        device: DeviceConfig,
        app_id: str,
        tracking_id: str,
        push_token: Optional[str] = None,
    ) -> "DeviceContext":
        return cls(
            platform=device.platform,
            tracking_id=tracking_id,
            bundle_id=device.bundle_id,
            firebase_project_id=device.firebase_project_id,
            store_id=f"id{app_id}",
            push_token=push_token,
            locale=locale_code(device.language),
        )

    def to_fields(self) -> dict:
        return {
            "os": self.platform,
            "af_id": self.tracking_id,
            "bundle_id": self.bundle_id,
            "firebase_project_id": self.firebase_project_id,
            "store_id": self.store_id,
            "push_token": self.push_token,
            "locale": self.locale,
        }


class RemoteConfigClient:
    """Async client for the remote decision endpoint."""

    def __init__(
        self,
        config: RemoteConfigConfig,
        simulation_mode: bool = False,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        logger: Optional[AuditLogger] = None,
    ) -> None:
        self._config = config
        self._simulation_mode = simulation_mode
        self._transport = transport
        self._logger = logger
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "RemoteConfigClient":
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

    def build_body(self, attribution: Mapping, device: DeviceContext) -> bytes:
        """
        Serialize the request body. Device fields override attribution keys.

        Raises:
            BuildError: If the body cannot be serialized as JSON
        """
        body = dict(attribution)
        body.update(device.to_fields())
        try:
            return json.dumps(body, allow_nan=False).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise BuildError(
                code=FetchErrorCode.SERIALIZATION_ERROR.value,
                message=f"Cannot serialize config request: {e}",
            )

    async def fetch(self, attribution: Mapping, device: DeviceContext) -> str:
        """
        Resolve the destination URL.

        Raises:
            BuildError: If the body cannot be serialized
            TransportError: On network failure or a non-200 status
            ParseError: If the response is malformed, not ok, or has a bad URL
        """
        body = self.build_body(attribution, device)
        start_time = time.perf_counter()

        if self._simulation_mode:
            # Conservative: a simulated run never resolves a destination
            raise TransportError(
                code=FetchErrorCode.NETWORK_ERROR.value,
                message="Simulation mode: config endpoint not contacted",
            )

        client = self._ensure_client()
        try:
            response = await client.post(
                self._config.endpoint,
                content=body,
                headers={"Content-Type": "application/json"},
            )
        except httpx.TimeoutException:
            raise TransportError(
                code=FetchErrorCode.TIMEOUT.value,
                message=f"Config request timed out after {self._config.timeout_seconds}s",
            )
        except httpx.HTTPError as e:
            raise TransportError(
                code=FetchErrorCode.NETWORK_ERROR.value,
                message=f"Config request failed: {e}",
            )

        if response.status_code != 200:
            raise TransportError(
                code=FetchErrorCode.HTTP_STATUS.value,
                message=f"Unexpected HTTP status: {response.status_code}",
                details={"http_status_code": response.status_code},
            )

        url = self._parse_response(response)
        self._log(
            LogLevel.INFO,
            "Destination resolved",
            {"response_time_ms": (time.perf_counter() - start_time) * 1000},
        )
        return url

    def _parse_response(self, response: httpx.Response) -> str:
        try:
            payload = response.json()
        except ValueError as e:
            raise ParseError(
                code=FetchErrorCode.PARSE_ERROR.value,
                message=f"Failed to parse config response: {e}",
            )

        if not isinstance(payload, dict):
            raise ParseError(
                code=FetchErrorCode.PARSE_ERROR.value,
                message="Config response is not a JSON object",
            )

        if payload.get("ok") is not True:
            raise ParseError(
                code=FetchErrorCode.REJECTED.value,
                message="Config endpoint did not return ok",
                details={"ok": payload.get("ok")},
            )

        url = payload.get("url")
        if not isinstance(url, str) or not is_valid_url(url):
            raise ParseError(
                code=FetchErrorCode.INVALID_URL.value,
                message="Config response carries no usable URL",
            )
        return url

    def _log(self, level: LogLevel, message: str, data: dict) -> None:
        if self._logger:
            self._logger.log(level, "RemoteConfigClient", message, data)

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None
