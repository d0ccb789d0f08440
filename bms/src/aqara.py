"""
Hub-cloud (Aqara open API) adapter.

Every call is a signed ``POST {region}/v3.0/open/api`` with body
``{"intent": ..., "data": ...}``. The response envelope is
``{"code", "message", "result"}``; ``code != 0`` is an application error.

Signing: the five auth headers (Accesstoken, Appid, Keyid, Nonce, Time) are
rendered as ``key=value`` pairs sorted by key, joined with ``&``, suffixed
with the app key, lower-cased and md5-hashed into the ``Sign`` header.

Retry policy (at most ``1 + max_retries`` attempts, via with_retry):

- Invalid-token result codes: refresh the access token, then retry at once.
  Concurrent callers that hit the same expired token share one refresh.
- Transport failures: fixed backoff, then retry.
- Any other application error propagates immediately.

Devices are not discoverable; DEVICE_REGISTRY is the fixed inventory and
only motion-class devices have readable resources. Resource values for many
devices are read with one batched ``query.resource.value`` call.

CHANGELOG:
- 2026-10-08: Add presence count resource and get_current_presence (STORY-012)
- 2026-10-07: Shared TokenStore refresh with generation check (STORY-006)
- 2026-10-06: Initial creation (STORY-006)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import math
import secrets
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import httpx

from bms.src.config import normalize_region_domain
from bms.src.errors import (
    ConfigError,
    DataShapeError,
    InvalidTokenError,
    TransportError,
    UnknownDeviceError,
    UpstreamApplicationError,
)
from bms.src.models import Provider, Reading, SensorBundle
from bms.src.retry import with_retry
from bms.src.units import BOOLEAN_UNIT, metric_name

if TYPE_CHECKING:
    from bms.src.config import BmsSettings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

API_PATH = "/v3.0/open/api"
REFRESH_INTENT = "config.auth.refreshToken"
QUERY_VALUES_INTENT = "query.resource.value"

RID_MOTION = "3.51.85"
RID_BATTERY = "0.4.85"
RID_RSSI = "8.0.2116"
RID_LUX = "13.27.85"
RID_TEMPERATURE = "8.0.2026"
RID_PRESENCE = ("0.61.85", "0.60.85")
"""Presence count resources, preferred first."""

TEMPERATURE_MIN_C = -20.0
TEMPERATURE_MAX_C = 60.0


@dataclass(frozen=True, slots=True)
class HubDevice:
    """One entry of the fixed hub-cloud device inventory."""

    id: str
    name: str
    location: str
    model: str
    type: str

    @property
    def readable(self) -> bool:
        return self.type == "motion"


DEVICE_REGISTRY: dict[str, HubDevice] = {
    d.id: d
    for d in (
        HubDevice("lumi1.54ef4474a7be", "Exch Floor 2", "Floor 2", "lumi.gateway.agl004", "hub"),
        HubDevice("lumi1.54ef447e68c6", "Exch Floor 3", "Floor 3", "lumi.gateway.agl004", "hub"),
        HubDevice(
            "matt.685618ce136bcf6fc6add000", "DR201", "Floor 2", "aqara.matter.4447_8194", "sensor"
        ),
        HubDevice(
            "matt.685618ce138abbe8bd043000", "SW201", "Floor 2", "aqara.matter.4897_2", "switch"
        ),
        HubDevice("lumi1.54ef447baa7f", "301m", "Floor 3", "lumi.motion.agl001", "motion"),
        HubDevice("lumi1.54ef44666843", "201", "Floor 2", "lumi.motion.agl001", "motion"),
    )
}


# ---------------------------------------------------------------------------
# Token store and signing
# ---------------------------------------------------------------------------


class TokenStore:
    """Process-wide access/refresh token pair.

    ``generation`` increases on every successful refresh. A caller passes
    the generation it saw when its request failed; if another task already
    refreshed since, :meth:`refresh` returns without calling upstream.
    """

    def __init__(self, access_token: str = "", refresh_token: str = "") -> None:
        self.access_token = access_token
        self.refresh_token = refresh_token
        self.generation = 0
        self._lock = asyncio.Lock()

    async def refresh(
        self,
        exchange: Callable[[str], Awaitable[tuple[str, str]]],
        seen_generation: int,
    ) -> bool:
        """Refresh the pair unless it changed since *seen_generation*.

        Returns:
            True if this call performed the refresh.
        """
        async with self._lock:
            if self.generation != seen_generation:
                return False
            if not self.refresh_token:
                raise ConfigError("Aqara access token expired and no refresh token is configured")
            access, refresh = await exchange(self.refresh_token)
            self.access_token = access
            if refresh:
                self.refresh_token = refresh
            self.generation += 1
            logger.info("Aqara access token refreshed (generation %d)", self.generation)
            return True


def sign_headers(
    *,
    access_token: str,
    app_id: str,
    key_id: str,
    app_key: str,
    nonce: str | None = None,
    timestamp_ms: int | None = None,
) -> dict[str, str]:
    """Build the signed request headers.

    ``Accesstoken`` is omitted from both headers and signature when empty
    (the token refresh call).
    """
    auth = {
        "Accesstoken": access_token,
        "Appid": app_id,
        "Keyid": key_id,
        "Nonce": nonce or secrets.token_hex(8),
        "Time": str(timestamp_ms if timestamp_ms is not None else int(time.time() * 1000)),
    }
    if not access_token:
        del auth["Accesstoken"]
    sign_str = "&".join(f"{k}={v}" for k, v in sorted(auth.items())) + app_key
    return {
        "Content-Type": "application/json",
        **auth,
        "Lang": "en",
        "Sign": hashlib.md5(sign_str.lower().encode("utf-8")).hexdigest(),
    }


# ---------------------------------------------------------------------------
# Value coercion
# ---------------------------------------------------------------------------


def _to_num(value: Any) -> float | None:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _to_flag(value: Any) -> float | None:
    number = _to_num(value)
    if number is None:
        return None
    return 1.0 if number == 1 else 0.0


def sanitize_temperature(value: Any) -> float | None:
    """Return the temperature in °C, or None outside the plausible band."""
    number = _to_num(value)
    if number is None or number < TEMPERATURE_MIN_C or number > TEMPERATURE_MAX_C:
        return None
    return number


def _presence_count(values: dict[str, Any]) -> int | None:
    for rid in RID_PRESENCE:
        number = _to_num(values.get(rid))
        if number is not None:
            return int(number)
    return None


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class AqaraClient:
    """Async client for the Aqara open API.

    Args:
        region_domain: Region host, with or without scheme.
        app_id: Application id.
        app_key: Application key (signing secret).
        key_id: Key id.
        tokens: Shared TokenStore.
        client: Optional shared ``httpx.AsyncClient``.
        timeout_s: Timeout per upstream request in seconds.
        max_retries: Retries after the first attempt.
        retry_backoff_s: Fixed sleep before retrying a transport failure.
        invalid_token_codes: Result codes that trigger a token refresh.

    Raises:
        ConfigError: If any credential is missing.
    """

    def __init__(
        self,
        *,
        region_domain: str,
        app_id: str,
        app_key: str,
        key_id: str,
        tokens: TokenStore,
        client: httpx.AsyncClient | None = None,
        timeout_s: float = 15.0,
        max_retries: int = 2,
        retry_backoff_s: float = 1.0,
        invalid_token_codes: Iterable[int] = (108,),
    ) -> None:
        region = normalize_region_domain(region_domain)
        missing = [
            name
            for name, value in (
                ("AQARA_REGION_DOMAIN", region),
                ("AQARA_APP_ID", app_id),
                ("AQARA_APP_KEY", app_key),
                ("AQARA_KEY_ID", key_id),
            )
            if not value
        ]
        if not (tokens.access_token or tokens.refresh_token):
            missing.append("AQARA_ACCESS_TOKEN or AQARA_REFRESH_TOKEN")
        if missing:
            raise ConfigError(f"Missing Aqara configuration: {', '.join(missing)}")

        self._base_url = f"{region}{API_PATH}"
        self._app_id = app_id
        self._app_key = app_key
        self._key_id = key_id
        self._tokens = tokens
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient()
        self._timeout_s = timeout_s
        self._max_attempts = 1 + max_retries
        self._retry_backoff_s = retry_backoff_s
        self._invalid_token_codes = frozenset(invalid_token_codes)

    @classmethod
    def from_settings(
        cls,
        settings: BmsSettings,
        *,
        tokens: TokenStore | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> AqaraClient:
        """Build a client from :class:`~bms.src.config.BmsSettings`."""
        return cls(
            region_domain=settings.aqara_region_domain,
            app_id=settings.aqara_app_id,
            app_key=settings.aqara_app_key,
            key_id=settings.aqara_key_id,
            tokens=tokens
            or TokenStore(settings.aqara_access_token, settings.aqara_refresh_token),
            client=client,
            timeout_s=settings.request_timeout_s,
            max_retries=settings.aqara_max_retries,
            retry_backoff_s=settings.aqara_retry_backoff_s,
            invalid_token_codes=settings.invalid_token_codes,
        )

    @property
    def tokens(self) -> TokenStore:
        return self._tokens

    async def aclose(self) -> None:
        """Close the HTTP client if this adapter created it."""
        if self._owns_client:
            await self._client.aclose()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _post(self, intent: str, data: dict[str, Any], *, access_token: str) -> Any:
        """Perform one signed request and return ``result``.

        Raises:
            TransportError: Timeout, connection failure or non-JSON body.
            InvalidTokenError: Result code in the invalid-token set.
            UpstreamApplicationError: Non-200 or any other non-zero code.
        """
        headers = sign_headers(
            access_token=access_token,
            app_id=self._app_id,
            key_id=self._key_id,
            app_key=self._app_key,
        )
        try:
            response = await self._client.post(
                self._base_url,
                json={"intent": intent, "data": data},
                headers=headers,
                timeout=self._timeout_s,
            )
        except httpx.TimeoutException as exc:
            raise TransportError(f"Timeout calling Aqara {intent}") from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"Aqara {intent} request failed: {exc}") from exc

        try:
            body = response.json()
        except ValueError as exc:
            if response.status_code != 200:
                raise UpstreamApplicationError(response.status_code, response.text[:200]) from exc
            raise TransportError(f"Non-JSON body from Aqara {intent}") from exc

        code = body.get("code") if isinstance(body, dict) else None
        if isinstance(code, str) and code.lstrip("-").isdigit():
            code = int(code)
        elif not isinstance(code, int):
            code = None
        message = str(body.get("message") or "") if isinstance(body, dict) else ""
        if code in self._invalid_token_codes:
            raise InvalidTokenError(code, message)
        if response.status_code != 200 or code != 0:
            raise UpstreamApplicationError(
                code if code is not None else response.status_code, message
            )
        return body.get("result")

    async def call(self, intent: str, data: dict[str, Any] | None = None) -> Any:
        """Call *intent* with token refresh and transport retries."""
        payload = data or {}
        seen = {"generation": self._tokens.generation}

        async def attempt() -> Any:
            seen["generation"] = self._tokens.generation
            return await self._post(intent, payload, access_token=self._tokens.access_token)

        async def before_retry(exc: BaseException, attempt_no: int) -> None:
            if isinstance(exc, InvalidTokenError):
                logger.info("Aqara %s rejected the access token (code %s)", intent, exc.code)
                await self._tokens.refresh(self._exchange_refresh_token, seen["generation"])

        return await with_retry(
            attempt,
            max_attempts=self._max_attempts,
            is_retryable=lambda exc: isinstance(exc, (InvalidTokenError, TransportError)),
            before_retry=before_retry,
            backoff_s=lambda exc: 0.0 if isinstance(exc, InvalidTokenError) else self._retry_backoff_s,
        )

    async def _exchange_refresh_token(self, refresh_token: str) -> tuple[str, str]:
        result = await with_retry(
            lambda: self._post(REFRESH_INTENT, {"refreshToken": refresh_token}, access_token=""),
            max_attempts=self._max_attempts,
            is_retryable=lambda exc: isinstance(exc, TransportError),
            backoff_s=self._retry_backoff_s,
        )
        if not isinstance(result, dict) or not result.get("accessToken"):
            raise DataShapeError("Aqara token refresh returned no accessToken")
        return str(result["accessToken"]), str(result.get("refreshToken") or "")

    async def refresh_access_token(self) -> str:
        """Force a token refresh and return the new access token."""
        await self._tokens.refresh(self._exchange_refresh_token, self._tokens.generation)
        return self._tokens.access_token

    # ------------------------------------------------------------------
    # Resources
    # ------------------------------------------------------------------

    async def query_resource_values(self, subject_ids: Iterable[str]) -> dict[str, dict[str, Any]]:
        """Read all resources of *subject_ids* in one batched call.

        Returns:
            ``{subjectId: {resourceId: value}}``.
        """
        ids = list(dict.fromkeys(subject_ids))
        if not ids:
            return {}
        result = await self.call(
            QUERY_VALUES_INTENT, {"resources": [{"subjectId": i} for i in ids]}
        )
        if isinstance(result, list):
            rows = result
        elif isinstance(result, dict) and isinstance(result.get("values"), list):
            rows = result["values"]
        else:
            rows = []

        by_subject: dict[str, dict[str, Any]] = {}
        for row in rows:
            if not isinstance(row, dict):
                continue
            subject, resource = row.get("subjectId"), row.get("resourceId")
            if subject and resource is not None:
                by_subject.setdefault(str(subject), {})[str(resource)] = row.get("value")
        return by_subject

    @staticmethod
    def _readings(values: dict[str, Any], now: datetime) -> list[Reading]:
        candidates = (
            ("motion", _to_flag(values.get(RID_MOTION)), BOOLEAN_UNIT),
            ("presence", _presence_count(values), "persons"),
            ("battery", _to_num(values.get(RID_BATTERY)), "%"),
            ("rssi", _to_num(values.get(RID_RSSI)), "dBm"),
            ("lux", _to_num(values.get(RID_LUX)), "lux"),
            ("temperature", sanitize_temperature(values.get(RID_TEMPERATURE)), "°C"),
        )
        return [
            Reading(
                metric_id=metric_id,
                metric_name=metric_name(metric_id),
                value=float(value),
                unit=unit,
                timestamp=now,
            )
            for metric_id, value, unit in candidates
            if value is not None
        ]

    async def get_many_sensor_data(
        self,
        sensor_ids: Iterable[str],
        *,
        now: datetime | None = None,
    ) -> list[SensorBundle]:
        """Return bundles for every known id with a single upstream call.

        Unknown ids are skipped with a warning. Known devices without
        readable resources get a bundle with no readings.
        """
        now = now or datetime.now(tz=UTC)
        devices: list[HubDevice] = []
        for sensor_id in dict.fromkeys(sensor_ids):
            device = DEVICE_REGISTRY.get(sensor_id)
            if device is None:
                logger.warning("Aqara device %s is not in the registry, skipping", sensor_id)
                continue
            devices.append(device)

        values = await self.query_resource_values(d.id for d in devices if d.readable)
        return [
            SensorBundle(
                sensor_id=d.id,
                sensor_name=d.name,
                sensor_type=d.type,
                readings=tuple(self._readings(values.get(d.id, {}), now)) if d.readable else (),
                last_update=now,
                provider=Provider.AQARA,
            )
            for d in devices
        ]

    async def get_sensor_data(self, sensor_id: str, *, now: datetime | None = None) -> SensorBundle:
        """Return the bundle for one device.

        Raises:
            UnknownDeviceError: If *sensor_id* is not in the registry.
        """
        if sensor_id not in DEVICE_REGISTRY:
            raise UnknownDeviceError(f"Device with ID {sensor_id} not found")
        bundles = await self.get_many_sensor_data([sensor_id], now=now)
        return bundles[0]

    async def get_current_presence(self, sensor_id: str) -> int:
        """Return the current presence count reported by *sensor_id* (0 if none)."""
        values = await self.query_resource_values([sensor_id])
        return _presence_count(values.get(sensor_id, {})) or 0
