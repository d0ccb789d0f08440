"""
Unit tests for the Aqara hub-cloud adapter.

Upstream is faked with httpx.MockTransport dispatching on the request intent.

Tests verify:
- Signature is md5 over sorted, lower-cased auth pairs plus the app key.
- Construction lists every missing credential.
- Invalid-token codes trigger one refresh and a retry with the new token.
- Concurrent callers with the same expired token share one refresh.
- Transport failures are retried with the fixed backoff, up to the limit.
- Other application errors are not retried.
- Resource values for many devices are read in one batched call.
- Out-of-band temperatures are discarded.

CHANGELOG:
- 2026-10-08: Add presence count tests (STORY-012)
- 2026-10-07: Add concurrent refresh test (STORY-006)
- 2026-10-06: Initial creation (STORY-006)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import hashlib
import json
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from bms.src.aqara import (
    QUERY_VALUES_INTENT,
    REFRESH_INTENT,
    RID_BATTERY,
    RID_LUX,
    RID_MOTION,
    RID_RSSI,
    RID_TEMPERATURE,
    AqaraClient,
    TokenStore,
    sanitize_temperature,
    sign_headers,
)
from bms.src.errors import (
    ConfigError,
    TransportError,
    UnknownDeviceError,
    UpstreamApplicationError,
)
from bms.src.models import Provider

MOTION_201 = "lumi1.54ef44666843"
MOTION_301 = "lumi1.54ef447baa7f"
HUB = "lumi1.54ef4474a7be"
NOW = datetime(2026, 10, 10, 12, 0, tzinfo=UTC)

Handler = Callable[[str, dict[str, Any], httpx.Request], httpx.Response]


def _ok(result: Any) -> httpx.Response:
    return httpx.Response(200, json={"code": 0, "message": "Success", "result": result})


def _client(
    handler: Handler,
    calls: list[tuple[str, str | None]],
    *,
    tokens: TokenStore | None = None,
    max_retries: int = 2,
) -> AqaraClient:
    """Build a client whose upstream is *handler*; records (intent, token)."""

    def transport(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        calls.append((body["intent"], request.headers.get("Accesstoken")))
        return handler(body["intent"], body["data"], request)

    return AqaraClient(
        region_domain="open-ger.aqara.com",
        app_id="app-1",
        app_key="secret",
        key_id="key-1",
        tokens=tokens or TokenStore("access-1", "refresh-1"),
        client=httpx.AsyncClient(transport=httpx.MockTransport(transport)),
        max_retries=max_retries,
        retry_backoff_s=1.0,
    )


class TestSignHeaders:
    """Request signing."""

    def test_signature_matches_sorted_lowercase_md5(self) -> None:
        headers = sign_headers(
            access_token="TokenA",
            app_id="App1",
            key_id="K1",
            app_key="Secret",
            nonce="n0nce",
            timestamp_ms=1700000000000,
        )

        raw = "Accesstoken=TokenA&Appid=App1&Keyid=K1&Nonce=n0nce&Time=1700000000000Secret"
        assert headers["Sign"] == hashlib.md5(raw.lower().encode()).hexdigest()
        assert headers["Accesstoken"] == "TokenA"
        assert headers["Time"] == "1700000000000"
        assert headers["Lang"] == "en"

    def test_access_token_omitted_when_empty(self) -> None:
        headers = sign_headers(
            access_token="", app_id="A", key_id="K", app_key="S", nonce="n", timestamp_ms=1
        )

        assert "Accesstoken" not in headers
        raw = "Appid=A&Keyid=K&Nonce=n&Time=1S"
        assert headers["Sign"] == hashlib.md5(raw.lower().encode()).hexdigest()

    def test_nonce_and_time_generated(self) -> None:
        headers = sign_headers(access_token="t", app_id="a", key_id="k", app_key="s")
        assert headers["Nonce"]
        assert headers["Time"].isdigit()


class TestConstruction:
    """Fail fast on missing credentials."""

    def test_missing_credentials_listed(self) -> None:
        with pytest.raises(ConfigError) as info:
            AqaraClient(
                region_domain="",
                app_id="a",
                app_key="",
                key_id="k",
                tokens=TokenStore(),
            )
        message = str(info.value)
        assert "AQARA_REGION_DOMAIN" in message
        assert "AQARA_APP_KEY" in message
        assert "AQARA_REFRESH_TOKEN" in message
        assert "AQARA_APP_ID" not in message


class TestCallRetries:
    """Token refresh and transport retry policy."""

    @pytest.mark.asyncio
    async def test_invalid_token_refreshes_then_retries(self) -> None:
        calls: list[tuple[str, str | None]] = []

        def handler(intent: str, data: dict[str, Any], request: httpx.Request) -> httpx.Response:
            if intent == REFRESH_INTENT:
                assert data == {"refreshToken": "refresh-1"}
                return _ok({"accessToken": "access-2", "refreshToken": "refresh-2"})
            if request.headers.get("Accesstoken") == "access-1":
                return httpx.Response(200, json={"code": 108, "message": "token expired"})
            return _ok([])

        client = _client(handler, calls)

        await client.call(QUERY_VALUES_INTENT, {"resources": []})

        assert calls == [
            (QUERY_VALUES_INTENT, "access-1"),
            (REFRESH_INTENT, None),
            (QUERY_VALUES_INTENT, "access-2"),
        ]
        assert client.tokens.access_token == "access-2"
        assert client.tokens.refresh_token == "refresh-2"
        assert client.tokens.generation == 1

    @pytest.mark.asyncio
    async def test_string_invalid_token_code_recognised(self) -> None:
        calls: list[tuple[str, str | None]] = []

        def handler(intent: str, data: dict[str, Any], request: httpx.Request) -> httpx.Response:
            if intent == REFRESH_INTENT:
                return _ok({"accessToken": "access-2"})
            if request.headers.get("Accesstoken") == "access-1":
                return httpx.Response(200, json={"code": "108", "message": "expired"})
            return _ok("done")

        client = _client(handler, calls)

        assert await client.call("x.y") == "done"
        assert client.tokens.refresh_token == "refresh-1"

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_refresh(self) -> None:
        calls: list[tuple[str, str | None]] = []

        def handler(intent: str, data: dict[str, Any], request: httpx.Request) -> httpx.Response:
            if intent == REFRESH_INTENT:
                return _ok({"accessToken": "access-2", "refreshToken": "refresh-2"})
            if request.headers.get("Accesstoken") == "access-1":
                return httpx.Response(200, json={"code": 108, "message": "expired"})
            return _ok([])

        client = _client(handler, calls)

        await asyncio.gather(*(client.call(QUERY_VALUES_INTENT) for _ in range(5)))

        assert [c for c in calls if c[0] == REFRESH_INTENT] == [(REFRESH_INTENT, None)]
        assert client.tokens.generation == 1

    @pytest.mark.asyncio
    async def test_refresh_without_refresh_token_is_config_error(self) -> None:
        def handler(intent: str, data: dict[str, Any], request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"code": 108, "message": "expired"})

        client = _client(handler, [], tokens=TokenStore("access-1", ""))

        with pytest.raises(ConfigError, match="no refresh token"):
            await client.call(QUERY_VALUES_INTENT)

    @pytest.mark.asyncio
    async def test_forced_refresh_returns_new_token(self) -> None:
        calls: list[tuple[str, str | None]] = []

        def handler(intent: str, data: dict[str, Any], request: httpx.Request) -> httpx.Response:
            return _ok({"accessToken": "access-2", "refreshToken": "refresh-2"})

        client = _client(handler, calls)

        assert await client.refresh_access_token() == "access-2"
        assert calls == [(REFRESH_INTENT, None)]
        assert client.tokens.generation == 1

    @pytest.mark.asyncio
    async def test_transport_failures_retried_with_backoff(self) -> None:
        calls: list[tuple[str, str | None]] = []
        attempts = {"n": 0}

        def handler(intent: str, data: dict[str, Any], request: httpx.Request) -> httpx.Response:
            attempts["n"] += 1
            if attempts["n"] < 3:
                raise httpx.ConnectError("refused", request=request)
            return _ok("ok")

        client = _client(handler, calls)

        with patch("bms.src.retry.asyncio.sleep", new_callable=AsyncMock) as sleep:
            assert await client.call("x.y") == "ok"

        assert len(calls) == 3
        assert sleep.await_count == 2
        sleep.assert_awaited_with(1.0)

    @pytest.mark.asyncio
    async def test_transport_failures_exhaust_attempts(self) -> None:
        calls: list[tuple[str, str | None]] = []

        def handler(intent: str, data: dict[str, Any], request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        client = _client(handler, calls, max_retries=1)

        with patch("bms.src.retry.asyncio.sleep", new_callable=AsyncMock):
            with pytest.raises(TransportError):
                await client.call("x.y")
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_application_error_not_retried(self) -> None:
        calls: list[tuple[str, str | None]] = []

        def handler(intent: str, data: dict[str, Any], request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"code": 302, "message": "param error"})

        client = _client(handler, calls)

        with pytest.raises(UpstreamApplicationError) as info:
            await client.call("x.y")
        assert info.value.code == 302
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_non_200_without_body_is_application_error(self) -> None:
        def handler(intent: str, data: dict[str, Any], request: httpx.Request) -> httpx.Response:
            return httpx.Response(503, text="unavailable")

        client = _client(handler, [])

        with pytest.raises(UpstreamApplicationError) as info:
            await client.call("x.y")
        assert info.value.code == 503


class TestResources:
    """Batched resource reads and reading extraction."""

    @staticmethod
    def _values_handler(values: list[dict[str, Any]]) -> Handler:
        def handler(intent: str, data: dict[str, Any], request: httpx.Request) -> httpx.Response:
            assert intent == QUERY_VALUES_INTENT
            wanted = {r["subjectId"] for r in data["resources"]}
            return _ok([v for v in values if v["subjectId"] in wanted])

        return handler

    @pytest.mark.asyncio
    async def test_many_devices_one_call(self) -> None:
        calls: list[tuple[str, str | None]] = []
        values = [
            {"subjectId": MOTION_201, "resourceId": RID_MOTION, "value": "1"},
            {"subjectId": MOTION_201, "resourceId": "0.61.85", "value": "3"},
            {"subjectId": MOTION_201, "resourceId": RID_BATTERY, "value": "87"},
            {"subjectId": MOTION_301, "resourceId": RID_MOTION, "value": "0"},
            {"subjectId": MOTION_301, "resourceId": RID_RSSI, "value": "-61"},
            {"subjectId": MOTION_301, "resourceId": RID_LUX, "value": "120"},
        ]
        client = _client(self._values_handler(values), calls)

        bundles = await client.get_many_sensor_data([MOTION_201, MOTION_301, HUB, "nope"], now=NOW)

        assert len(calls) == 1
        assert [b.sensor_id for b in bundles] == [MOTION_201, MOTION_301, HUB]
        b201, b301, hub = bundles
        assert b201.provider == Provider.AQARA
        assert b201.reading("motion").value == 1.0
        assert b201.reading("presence").value == 3.0
        assert b201.reading("battery").value == 87.0
        assert b301.reading("motion").value == 0.0
        assert b301.reading("rssi").value == -61.0
        assert b301.reading("lux").unit == "lux"
        assert hub.readings == ()
        assert hub.sensor_type == "hub"

    @pytest.mark.asyncio
    async def test_values_envelope_accepted(self) -> None:
        def handler(intent: str, data: dict[str, Any], request: httpx.Request) -> httpx.Response:
            return _ok({"values": [{"subjectId": MOTION_201, "resourceId": RID_MOTION, "value": 1}]})

        client = _client(handler, [])

        values = await client.query_resource_values([MOTION_201])
        assert values == {MOTION_201: {RID_MOTION: 1}}

    @pytest.mark.asyncio
    async def test_no_readable_devices_no_call(self) -> None:
        calls: list[tuple[str, str | None]] = []
        client = _client(self._values_handler([]), calls)

        bundles = await client.get_many_sensor_data([HUB], now=NOW)

        assert calls == []
        assert len(bundles) == 1

    @pytest.mark.asyncio
    async def test_out_of_band_temperature_dropped(self) -> None:
        values = [
            {"subjectId": MOTION_201, "resourceId": RID_TEMPERATURE, "value": "85"},
            {"subjectId": MOTION_201, "resourceId": RID_MOTION, "value": "0"},
        ]
        client = _client(self._values_handler(values), [])

        bundle = await client.get_sensor_data(MOTION_201, now=NOW)

        assert bundle.reading("temperature") is None
        assert bundle.reading("motion") is not None

    @pytest.mark.asyncio
    async def test_unknown_device(self) -> None:
        client = _client(self._values_handler([]), [])
        with pytest.raises(UnknownDeviceError):
            await client.get_sensor_data("does-not-exist")

    @pytest.mark.asyncio
    async def test_current_presence_prefers_newer_resource(self) -> None:
        values = [
            {"subjectId": MOTION_201, "resourceId": "0.60.85", "value": "1"},
            {"subjectId": MOTION_201, "resourceId": "0.61.85", "value": "4"},
        ]
        client = _client(self._values_handler(values), [])

        assert await client.get_current_presence(MOTION_201) == 4

    @pytest.mark.asyncio
    async def test_current_presence_defaults_to_zero(self) -> None:
        client = _client(self._values_handler([]), [])
        assert await client.get_current_presence(MOTION_201) == 0


class TestSanitizeTemperature:
    """Plausible band is [-20, 60] °C."""

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [("21.5", 21.5), (-20, -20.0), (60, 60.0), (60.1, None), (-25, None), ("", None), (None, None)],
    )
    def test_band(self, raw: Any, expected: float | None) -> None:
        assert sanitize_temperature(raw) == expected
