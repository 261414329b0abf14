from __future__ import annotations

from typing import Optional


class PidashError(RuntimeError):
    """Base class for errors raised by the dashboard backend."""


class CalendarFetchError(PidashError):
    """A single calendar source could not be fetched or parsed.

    ``kind`` is one of ``invalid_key``, ``permission_denied``, ``not_found``,
    ``network``, ``upstream``, ``parse`` or ``config``.
    """

    def __init__(self, message: str, kind: str = "upstream", status: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.status = status


class SourceConfigError(CalendarFetchError):
    """A calendar source's ``config`` does not carry what its ``type`` needs."""

    def __init__(self, message: str) -> None:
        super().__init__(message, kind="config")


class SettingsError(PidashError):
    """The settings store could not be read."""


class WeatherError(PidashError):
    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status = status


class RateLimitExceeded(WeatherError):
    def __init__(self, message: str = "API rate limit exceeded. Please wait a moment and try again.") -> None:
        super().__init__(message, status=429)
