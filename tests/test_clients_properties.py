"""
Property-based tests for the attribution and remote config clients.

HTTP traffic is served by httpx.MockTransport so no network is touched.
"""

import asyncio
import json
from dataclasses import replace
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from mode_resolver.attribution_client import AttributionClient
from mode_resolver.config import AttributionConfig, DeviceConfig, RemoteConfigConfig
from mode_resolver.config_client import DeviceContext, RemoteConfigClient, locale_code
from mode_resolver.enums import FetchErrorCode
from mode_resolver.exceptions import BuildError, ParseError, TransportError
from mode_resolver.models import AttributionRecord, DeepLinkSignal


ATTRIBUTION_CONFIG = AttributionConfig(
    app_id="6751234567",
    dev_key="dev-key-123",
    base_url="https://attribution.example.com",
)
REMOTE_CONFIG = RemoteConfigConfig(endpoint="https://decide.example.com/config.php")
DEVICE = DeviceContext.from_config(
    DeviceConfig(firebase_project_id="1234567890", language="de"),
    app_id="6751234567",
    tracking_id="1700000000000-1234567890123456789",
    push_token="push-abc",
)


def _json_response(payload, status_code: int = 200) -> httpx.Response:
    return httpx.Response(status_code, content=json.dumps(payload).encode("utf-8"))


def _fetch_attribution(handler, tracking_id: str = "1700000000000-1", deep_link=None):
    async def run():
        async with AttributionClient(
            ATTRIBUTION_CONFIG, transport=httpx.MockTransport(handler)
        ) as client:
            return await client.fetch(tracking_id, deep_link)

    return asyncio.run(run())


def _fetch_config(handler, attribution=None, device: DeviceContext = DEVICE) -> str:
    async def run():
        async with RemoteConfigClient(
            REMOTE_CONFIG, transport=httpx.MockTransport(handler)
        ) as client:
            return await client.fetch(attribution or {"af_status": "Non-organic"}, device)

    return asyncio.run(run())


def attribution_payload_strategy() -> st.SearchStrategy[dict]:
    return st.dictionaries(
        keys=st.text(alphabet="abcdefghijklmnopqrstuvwxyz_", min_size=1, max_size=10),
        values=st.one_of(st.none(), st.booleans(), st.integers(), st.text(max_size=15)),
        max_size=6,
    )


class TestAttributionRequestProperty:
    """
    Property 1: The attribution request targets the install-data path with
    the dev key and device id as query parameters.
    """

    @given(tracking_id=st.text(alphabet="0123456789-", min_size=1, max_size=40))
    @settings(max_examples=50)
    def test_url_carries_identifiers(self, tracking_id: str) -> None:
        url = AttributionClient(ATTRIBUTION_CONFIG).build_url(tracking_id)
        parsed = urlparse(url)
        assert parsed.scheme == "https"
        assert parsed.path == "/install_data/v4.0/id6751234567"
        query = parse_qs(parsed.query)
        assert query["devkey"] == ["dev-key-123"]
        assert query["device_id"] == [tracking_id]

    @pytest.mark.parametrize("field", ["app_id", "dev_key"])
    def test_missing_identifier_is_build_error(self, field: str) -> None:
        config = replace(ATTRIBUTION_CONFIG, **{field: ""})
        with pytest.raises(BuildError) as exc_info:
            AttributionClient(config).build_url("1700000000000-1")
        assert exc_info.value.code == FetchErrorCode.MISSING_IDENTIFIER.value
        assert field in exc_info.value.details["missing"]

    def test_empty_tracking_id_is_build_error(self) -> None:
        with pytest.raises(BuildError):
            AttributionClient(ATTRIBUTION_CONFIG).build_url("")


class TestAttributionFetchProperty:
    """
    Property 2: A 200 JSON object becomes the record; deep-link values only
    fill missing keys.
    """

    @given(payload=attribution_payload_strategy(), deep_link=attribution_payload_strategy())
    @settings(max_examples=50)
    def test_response_merged_with_deep_link(self, payload: dict, deep_link: dict) -> None:
        record = _fetch_attribution(
            lambda request: _json_response(payload),
            deep_link=DeepLinkSignal(deep_link),
        )
        assert isinstance(record, AttributionRecord)
        for key, value in payload.items():
            assert record[key] == value
        for key, value in deep_link.items():
            if key not in payload:
                assert record[key] == value
        assert set(record) == set(payload) | set(deep_link)

    def test_request_uses_get_with_json_accept(self) -> None:
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return _json_response({"af_status": "Organic"})

        record = _fetch_attribution(handler)
        assert record.is_organic
        assert seen[0].method == "GET"
        assert seen[0].headers["Accept"] == "application/json"

    @pytest.mark.parametrize("status_code", [201, 204, 301, 404, 500, 503])
    def test_non_200_is_transport_error(self, status_code: int) -> None:
        with pytest.raises(TransportError) as exc_info:
            _fetch_attribution(lambda request: _json_response({}, status_code))
        assert exc_info.value.code == FetchErrorCode.HTTP_STATUS.value

    @pytest.mark.parametrize("body", [b"not json", b"[1, 2, 3]", b"\"text\"", b"null"])
    def test_non_object_body_is_parse_error(self, body: bytes) -> None:
        with pytest.raises(ParseError):
            _fetch_attribution(lambda request: httpx.Response(200, content=body))

    def test_connection_failure_is_transport_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(TransportError) as exc_info:
            _fetch_attribution(handler)
        assert exc_info.value.code == FetchErrorCode.NETWORK_ERROR.value

    def test_timeout_is_transport_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(TransportError) as exc_info:
            _fetch_attribution(handler)
        assert exc_info.value.code == FetchErrorCode.TIMEOUT.value

    def test_simulation_mode_makes_no_request(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("network used in simulation mode")

        async def run():
            async with AttributionClient(
                ATTRIBUTION_CONFIG,
                simulation_mode=True,
                transport=httpx.MockTransport(handler),
            ) as client:
                return await client.fetch("1700000000000-1", DeepLinkSignal({"c": "x"}))

        record = asyncio.run(run())
        assert record.is_organic
        assert record["c"] == "x"


class TestConfigRequestProperty:
    """
    Property 3: The config request body is the attribution record plus the
    device fields, which win on key clashes.
    """

    @given(attribution=attribution_payload_strategy())
    @settings(max_examples=50)
    def test_body_contains_attribution_and_device_fields(self, attribution: dict) -> None:
        client = RemoteConfigClient(REMOTE_CONFIG)
        body = json.loads(client.build_body(AttributionRecord(attribution), DEVICE))
        device_fields = DEVICE.to_fields()
        for key, value in attribution.items():
            if key not in device_fields:
                assert body[key] == value
        for key, value in device_fields.items():
            assert body[key] == value

    def test_device_fields_override_attribution(self) -> None:
        client = RemoteConfigClient(REMOTE_CONFIG)
        body = json.loads(client.build_body({"os": "spoofed", "locale": "XX"}, DEVICE))
        assert body["os"] == "iOS"
        assert body["locale"] == "DE"
        assert body["store_id"] == "id6751234567"
        assert body["push_token"] == "push-abc"
        assert body["firebase_project_id"] == "1234567890"

    def test_unserializable_value_is_build_error(self) -> None:
        client = RemoteConfigClient(REMOTE_CONFIG)
        with pytest.raises(BuildError) as exc_info:
            client.build_body({"bad": float("nan")}, DEVICE)
        assert exc_info.value.code == FetchErrorCode.SERIALIZATION_ERROR.value

    def test_request_is_json_post(self) -> None:
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return _json_response({"ok": True, "url": "https://dest.example.com/x"})

        _fetch_config(handler)
        assert seen[0].method == "POST"
        assert seen[0].headers["Content-Type"] == "application/json"
        assert json.loads(seen[0].content)["af_id"] == DEVICE.tracking_id

    @pytest.mark.parametrize("language,expected", [
        ("de", "DE"), ("en-US", "EN"), ("fr_FR", "FR"), ("", "EN"), ("1x", "EN"),
    ])
    def test_locale_code(self, language: str, expected: str) -> None:
        assert locale_code(language) == expected


class TestConfigResponseProperty:
    """
    Property 4: Only ``{"ok": true, "url": <absolute url>}`` counts as success.
    """

    @given(path=st.text(alphabet="abcdefghijklmnopqrstuvwxyz0123456789/", max_size=20))
    @settings(max_examples=50)
    def test_ok_with_valid_url_resolves(self, path: str) -> None:
        url = f"https://dest.example.com/{path}"
        assert _fetch_config(lambda request: _json_response({"ok": True, "url": url})) == url

    @pytest.mark.parametrize("payload,code", [
        ({"ok": False, "url": "https://dest.example.com/"}, FetchErrorCode.REJECTED),
        ({"ok": "true", "url": "https://dest.example.com/"}, FetchErrorCode.REJECTED),
        ({"url": "https://dest.example.com/"}, FetchErrorCode.REJECTED),
        ({"ok": True}, FetchErrorCode.INVALID_URL),
        ({"ok": True, "url": "not a url"}, FetchErrorCode.INVALID_URL),
        ({"ok": True, "url": 42}, FetchErrorCode.INVALID_URL),
        (["ok"], FetchErrorCode.PARSE_ERROR),
    ])
    def test_malformed_responses_are_parse_errors(self, payload, code: FetchErrorCode) -> None:
        with pytest.raises(ParseError) as exc_info:
            _fetch_config(lambda request: _json_response(payload))
        assert exc_info.value.code == code.value

    def test_non_200_is_transport_error(self) -> None:
        with pytest.raises(TransportError):
            _fetch_config(lambda request: _json_response({"ok": True, "url": "https://a.b/"}, 500))

    def test_simulation_mode_never_resolves(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("network used in simulation mode")

        async def run():
            async with RemoteConfigClient(
                REMOTE_CONFIG,
                simulation_mode=True,
                transport=httpx.MockTransport(handler),
            ) as client:
                return await client.fetch({"af_status": "Non-organic"}, DEVICE)

        with pytest.raises(TransportError):
            asyncio.run(run())
