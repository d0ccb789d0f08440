"""
Typed error hierarchy for upstream telemetry access.

Callers match on the exception class to decide retry eligibility instead of
inspecting messages:

- TransportError: timeout, connection failure, unreadable body.
- UpstreamApplicationError: non-2xx response or non-zero result code.
  InvalidTokenError marks the hub cloud's expired/invalid token codes.
- DataShapeError: a payload whose shape is mandatory could not be used.
- ConfigError: missing credentials or settings for an adapter.
- UnknownDeviceError: device id not present in the hub device registry.

Row-level shape problems (a reading without metric id or value) are not
errors; the normalizer drops those rows.

CHANGELOG:
- 2026-10-06: Add UnknownDeviceError for hub registry lookups (STORY-006)
- 2026-10-02: Initial creation (STORY-002)

TODO:
- None
"""

from __future__ import annotations


class BmsError(Exception):
    """Base class for all telemetry core errors."""


class TransportError(BmsError):
    """Network-level failure talking to an upstream cloud."""


class UpstreamApplicationError(BmsError):
    """Upstream answered, but with an application-level error.

    Attributes:
        code: Provider result code, or the HTTP status when the provider
            returned no code of its own.
        message: Provider message, if any.
    """

    def __init__(self, code: int | None, message: str = "") -> None:
        self.code = code
        self.message = message
        super().__init__(f"Upstream error {code}: {message}".strip())


class InvalidTokenError(UpstreamApplicationError):
    """The hub cloud rejected the access token (refresh and retry)."""


class DataShapeError(BmsError):
    """A payload that must have a known shape could not be interpreted."""


class ConfigError(BmsError):
    """Required configuration is missing or invalid."""


class UnknownDeviceError(BmsError):
    """A device id is not part of the known device registry."""
