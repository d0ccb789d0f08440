"""
Telemetry core configuration loaded from environment variables.

Uses Pydantic BaseSettings for automatic env var loading and validation.
Credentials for the two upstream clouds are optional at this level; each
adapter checks its own credentials at construction time and raises
ConfigError when they are missing.

CHANGELOG:
- 2026-10-16: Add aggregator task deadline (STORY-009)
- 2026-10-09: Add tariff timezone and day/night band hours (STORY-011)
- 2026-10-06: Add Aqara retry and invalid-token settings (STORY-006)
- 2026-10-02: Initial creation (STORY-001)

TODO:
- None
"""

from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings


def normalize_region_domain(domain: str) -> str:
    """Return *domain* with an ``https://`` scheme and no trailing slash."""
    domain = domain.strip()
    if not domain:
        return ""
    if not domain.lower().startswith(("http://", "https://")):
        domain = f"https://{domain}"
    return domain.rstrip("/")


class BmsSettings(BaseSettings):
    """Telemetry core configuration.

    All values are loaded from environment variables. Adapter credentials
    default to empty strings so that a process serving only one provider
    can still start; the adapter itself fails fast when used unconfigured.

    Attributes:
        aranet_api_key: API key for the Aranet cloud.
        aranet_base_url: Aranet cloud API base URL.
        aranet_history_fallback: Fall back to 24h history when the
            ``/last`` endpoints return nothing.
        aqara_region_domain: Aqara open API region host (scheme optional).
        aqara_app_id: Aqara application id.
        aqara_app_key: Aqara application key (signing secret).
        aqara_key_id: Aqara key id.
        aqara_access_token: Initial Aqara access token.
        aqara_refresh_token: Aqara refresh token used to renew access tokens.
        aqara_invalid_token_codes: Comma-separated result codes that mean
            the access token must be refreshed.
        aqara_max_retries: Retries after the first Aqara attempt.
        aqara_retry_backoff_s: Fixed sleep before retrying a network failure.
        request_timeout_s: Timeout per upstream call in seconds.
        aggregate_timeout_s: Deadline per aggregator task in seconds; 0 derives
            it from the per-call timeout and the Aqara retry settings.
        power_metric_id: Aranet metric id carrying power telemetry.
        price_per_kwh: Default electricity price when no settings row exists.
        tariff_timezone: IANA timezone used for the day/night band hour.
        day_band_start_hour: Local hour the day tariff starts.
        night_band_start_hour: Local hour the night tariff starts.
        database_url: SQLAlchemy async database URL.
        redis_url: Redis URL for the sensor response cache.
        cache_ttl_s: TTL of cached sensor responses in seconds.
    """

    aranet_api_key: str = ""
    aranet_base_url: str = "https://aranet.cloud/api/v1"
    aranet_history_fallback: bool = True

    aqara_region_domain: str = ""
    aqara_app_id: str = ""
    aqara_app_key: str = ""
    aqara_key_id: str = ""
    aqara_access_token: str = ""
    aqara_refresh_token: str = ""
    aqara_invalid_token_codes: str = "108"
    aqara_max_retries: int = 2
    aqara_retry_backoff_s: float = 1.0

    request_timeout_s: float = 15.0
    aggregate_timeout_s: float = 0.0

    power_metric_id: str = ""
    price_per_kwh: float = 0.16
    tariff_timezone: str = "UTC"
    day_band_start_hour: int = 8
    night_band_start_hour: int = 23

    database_url: str = ""
    redis_url: str = ""
    cache_ttl_s: int = 5

    @field_validator("aqara_region_domain")
    @classmethod
    def _normalize_region_domain(cls, v: str) -> str:
        """Add a scheme to the region domain and drop any trailing slash."""
        return normalize_region_domain(v)

    @field_validator("aranet_base_url")
    @classmethod
    def _strip_base_url(cls, v: str) -> str:
        """Drop a trailing slash so endpoint paths can be appended."""
        return v.rstrip("/")

    @field_validator("request_timeout_s")
    @classmethod
    def request_timeout_must_be_positive(cls, v: float) -> float:
        """Validate the upstream timeout is a positive number of seconds."""
        if v <= 0:
            raise ValueError("REQUEST_TIMEOUT_S must be > 0")
        return v

    @field_validator("aggregate_timeout_s")
    @classmethod
    def aggregate_timeout_must_be_non_negative(cls, v: float) -> float:
        """Validate the aggregator deadline is 0 (derived) or positive."""
        if v < 0:
            raise ValueError("AGGREGATE_TIMEOUT_S must be >= 0")
        return v

    @field_validator("aqara_max_retries")
    @classmethod
    def max_retries_must_be_non_negative(cls, v: int) -> int:
        """Validate the Aqara retry count is non-negative."""
        if v < 0:
            raise ValueError("AQARA_MAX_RETRIES must be >= 0")
        return v

    @field_validator("day_band_start_hour", "night_band_start_hour")
    @classmethod
    def band_hour_must_be_valid(cls, v: int) -> int:
        """Validate tariff band hours are within a day."""
        if v < 0 or v > 23:
            raise ValueError("Tariff band hours must be between 0 and 23")
        return v

    @field_validator("price_per_kwh")
    @classmethod
    def price_must_be_non_negative(cls, v: float) -> float:
        """Validate the default price is non-negative."""
        if v < 0:
            raise ValueError("PRICE_PER_KWH must be >= 0")
        return v

    @field_validator("tariff_timezone")
    @classmethod
    def tariff_timezone_must_exist(cls, v: str) -> str:
        """Validate the tariff timezone is a known IANA name."""
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown TARIFF_TIMEZONE '{v}'") from exc
        return v

    @model_validator(mode="after")
    def _bands_must_differ(self) -> "BmsSettings":
        """Day and night bands need distinct start hours."""
        if self.day_band_start_hour == self.night_band_start_hour:
            raise ValueError(
                "DAY_BAND_START_HOUR and NIGHT_BAND_START_HOUR must differ"
            )
        return self

    @property
    def aggregate_deadline_s(self) -> float:
        """Deadline for one aggregator task.

        A task may chain several upstream calls: an Aqara call with all its
        retries plus a token refresh with its own retries, or the Aranet live
        calls followed by the history fallback and the unit lookup. The
        derived deadline covers the longest such chain.
        """
        if self.aggregate_timeout_s > 0:
            return self.aggregate_timeout_s
        attempts = self.aqara_max_retries + 1
        calls = max(3, 2 * attempts)
        backoffs = 2 * self.aqara_max_retries
        return self.request_timeout_s * calls + self.aqara_retry_backoff_s * backoffs

    @property
    def invalid_token_codes(self) -> frozenset[int]:
        """Parsed set of Aqara result codes that trigger a token refresh."""
        codes: set[int] = set()
        for part in self.aqara_invalid_token_codes.split(","):
            part = part.strip()
            if part.lstrip("-").isdigit():
                codes.add(int(part))
        return frozenset(codes)

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}
