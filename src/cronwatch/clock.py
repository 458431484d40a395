from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .utils import parse_iso


class Clock:
    def now(self) -> datetime:
        raise NotImplementedError

    def sleep(self, seconds: float) -> None:
        raise NotImplementedError


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)


class FixedClock(Clock):
    """Clock pinned to one instant; sleeps are recorded, never performed."""

    def __init__(self, now: datetime) -> None:
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        self._now = now.astimezone(timezone.utc)
        self.slept: list[float] = []

    def now(self) -> datetime:
        return self._now

    def advance(self, **delta: float) -> datetime:
        self._now = self._now + timedelta(**delta)
        return self._now

    def sleep(self, seconds: float) -> None:
        self.slept.append(seconds)


def resolve_zone(name: str | None) -> ZoneInfo | None:
    if not name:
        return None
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return None


@dataclass(frozen=True)
class TimePolicy:
    """Every wall-clock rule the monitor applies, evaluated against one clock.

    "Today" always means the tenant's or recipient's local calendar day, never
    the server's. Timezone names that cannot be resolved fall back to
    ``default_timezone`` for day boundaries, but a recipient with an
    unresolvable zone is never considered past its delivery window.
    """

    clock: Clock
    default_timezone: str = "UTC"
    morning_window_end_hour: int = 7
    send_hour_local: int = 7
    grace_hours: int = 1
    unknown_timezone_cutoff_hour_utc: int = 12

    @classmethod
    def from_config(cls, config: Any, clock: Clock) -> "TimePolicy":
        return cls(
            clock=clock,
            default_timezone=config.app.timezone,
            morning_window_end_hour=config.health.morning_window_end_hour,
            send_hour_local=config.email.send_hour_local,
            grace_hours=config.email.grace_hours,
            unknown_timezone_cutoff_hour_utc=config.email.unknown_timezone_cutoff_hour_utc,
        )

    def now(self) -> datetime:
        return self.clock.now()

    def zone(self, tz_name: str | None) -> ZoneInfo:
        return resolve_zone(tz_name) or resolve_zone(self.default_timezone) or ZoneInfo("UTC")

    def local_now(self, tz_name: str | None) -> datetime:
        return self.now().astimezone(self.zone(tz_name))

    def local_today(self, tz_name: str | None) -> date:
        return self.local_now(tz_name).date()

    def is_local_today(self, value: str | datetime | None, tz_name: str | None) -> bool:
        parsed = parse_iso(value) if not isinstance(value, datetime) else value
        if parsed is None:
            return False
        return parsed.astimezone(self.zone(tz_name)).date() == self.local_today(tz_name)

    def morning_window_passed(self, tz_name: str | None) -> bool:
        if not tz_name:
            return True
        return self.local_now(tz_name).hour >= self.morning_window_end_hour

    def delivery_window_passed(self, tz_name: str | None) -> bool:
        if not tz_name:
            return self.now().hour >= self.unknown_timezone_cutoff_hour_utc
        zone = resolve_zone(tz_name)
        if zone is None:
            return False
        return self.now().astimezone(zone).hour >= self.send_hour_local + self.grace_hours

    def expected_send_window(self, tz_name: str | None) -> tuple[datetime, datetime]:
        """UTC hour window that contains the recipient's local send time today."""
        zone = self.zone(tz_name)
        today = self.local_today(tz_name)
        local_send = datetime(today.year, today.month, today.day, self.send_hour_local, tzinfo=zone)
        start = local_send.astimezone(timezone.utc).replace(minute=0, second=0, microsecond=0)
        return start, start + timedelta(hours=1)

    def utc_today(self) -> date:
        return self.now().date()

    def is_sunday(self) -> bool:
        return self.now().weekday() == 6
