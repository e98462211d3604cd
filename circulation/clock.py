from __future__ import annotations

from datetime import datetime, timedelta, timezone

from flask import current_app


class SystemClock:
    """Naive UTC wall clock, matching how timestamps are stored."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc).replace(tzinfo=None)


class FixedClock:
    """Clock pinned to a given instant; tests move it with ``advance``."""

    def __init__(self, at: datetime):
        self._at = at

    def now(self) -> datetime:
        return self._at

    def set(self, at: datetime) -> None:
        self._at = at

    def advance(self, days: int = 0, **kwargs) -> datetime:
        self._at = self._at + timedelta(days=days, **kwargs)
        return self._at


_system_clock = SystemClock()


def get_clock():
    return current_app.extensions.get("clock", _system_clock)


def now() -> datetime:
    return get_clock().now()
