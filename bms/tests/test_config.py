"""
Unit tests for telemetry core configuration (BmsSettings).

Tests verify:
- Config loads from environment variables with correct defaults.
- The Aqara region domain is normalised (scheme added, trailing slash dropped).
- Numeric and timezone constraints are enforced.
- Invalid-token codes are parsed from a comma list.
- The aggregator task deadline is derived from the retry budget unless set.

CHANGELOG:
- 2026-10-16: Add aggregator deadline tests (STORY-009)
- 2026-10-09: Add tariff band validation tests (STORY-011)
- 2026-10-02: Initial creation (STORY-001)

TODO:
- None
"""

import pytest
from pydantic import ValidationError

from bms.src.config import BmsSettings, normalize_region_domain


class TestBmsSettingsLoadsFromEnv:
    """Config loads all values from environment variables."""

    def test_loads_all_env_vars(self, env_vars_full: dict[str, str]) -> None:
        """All env vars are read and assigned correctly."""
        settings = BmsSettings()

        assert settings.aranet_api_key == env_vars_full["ARANET_API_KEY"]
        assert settings.aranet_base_url == "https://aranet.example.com/api/v1"
        assert settings.aqara_app_id == env_vars_full["AQARA_APP_ID"]
        assert settings.aqara_refresh_token == env_vars_full["AQARA_REFRESH_TOKEN"]
        assert settings.power_metric_id == "15"
        assert settings.price_per_kwh == 0.25

    def test_defaults_applied_when_vars_missing(self) -> None:
        """Every field has a default so the process can start unconfigured."""
        settings = BmsSettings()

        assert settings.aranet_api_key == ""
        assert settings.aranet_base_url == "https://aranet.cloud/api/v1"
        assert settings.aranet_history_fallback is True
        assert settings.aqara_max_retries == 2
        assert settings.aqara_retry_backoff_s == 1.0
        assert settings.request_timeout_s == 15.0
        assert settings.price_per_kwh == 0.16
        assert settings.tariff_timezone == "UTC"
        assert settings.day_band_start_hour == 8
        assert settings.night_band_start_hour == 23
        assert settings.database_url == ""
        assert settings.cache_ttl_s == 5


class TestRegionDomain:
    """The hub-cloud region domain is normalised."""

    def test_scheme_added(self, env_vars_full: dict[str, str]) -> None:
        settings = BmsSettings()
        assert settings.aqara_region_domain == "https://open-ger.aqara.com"

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("open-cn.aqara.com/", "https://open-cn.aqara.com"),
            ("https://open-usa.aqara.com", "https://open-usa.aqara.com"),
            ("HTTP://local.test/", "HTTP://local.test"),
            ("  ", ""),
        ],
    )
    def test_normalize_region_domain(self, raw: str, expected: str) -> None:
        assert normalize_region_domain(raw) == expected


class TestValidation:
    """Numeric and timezone constraints are enforced."""

    def test_zero_timeout_rejected(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("REQUEST_TIMEOUT_S", "0")
        with pytest.raises(ValidationError, match="REQUEST_TIMEOUT_S"):
            BmsSettings()

    def test_negative_retries_rejected(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("AQARA_MAX_RETRIES", "-1")
        with pytest.raises(ValidationError, match="AQARA_MAX_RETRIES"):
            BmsSettings()

    def test_band_hour_out_of_range_rejected(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("DAY_BAND_START_HOUR", "24")
        with pytest.raises(ValidationError, match="between 0 and 23"):
            BmsSettings()

    def test_equal_band_hours_rejected(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("DAY_BAND_START_HOUR", "7")
        monkeypatch.setenv("NIGHT_BAND_START_HOUR", "7")
        with pytest.raises(ValidationError, match="must differ"):
            BmsSettings()

    def test_unknown_timezone_rejected(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("TARIFF_TIMEZONE", "Mars/Olympus_Mons")
        with pytest.raises(ValidationError, match="TARIFF_TIMEZONE"):
            BmsSettings()

    def test_negative_price_rejected(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("PRICE_PER_KWH", "-0.1")
        with pytest.raises(ValidationError, match="PRICE_PER_KWH"):
            BmsSettings()


class TestInvalidTokenCodes:
    """AQARA_INVALID_TOKEN_CODES is parsed into a set of ints."""

    def test_default_code(self) -> None:
        assert BmsSettings().invalid_token_codes == frozenset({108})

    def test_comma_list_with_junk(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("AQARA_INVALID_TOKEN_CODES", "108, 109,abc,,-3")
        assert BmsSettings().invalid_token_codes == frozenset({108, 109, -3})


class TestAggregateDeadline:
    """The aggregator task deadline covers chained upstream calls."""

    def test_derived_from_retry_budget(self) -> None:
        # 2 retries: 3 attempts plus a refresh with 3 attempts, 4 backoffs.
        assert BmsSettings().aggregate_deadline_s == 15.0 * 6 + 1.0 * 4

    def test_derived_never_below_three_calls(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("AQARA_MAX_RETRIES", "0")
        monkeypatch.setenv("REQUEST_TIMEOUT_S", "2")
        assert BmsSettings().aggregate_deadline_s == 6.0

    def test_explicit_value_wins(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("AGGREGATE_TIMEOUT_S", "40")
        assert BmsSettings().aggregate_deadline_s == 40.0

    def test_negative_rejected(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("AGGREGATE_TIMEOUT_S", "-1")
        with pytest.raises(ValidationError, match="AGGREGATE_TIMEOUT_S"):
            BmsSettings()
