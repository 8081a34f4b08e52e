"""
Quiet hours: the daily window during which automatic submission to the
authority is suspended.

All functions are pure. ``now`` is a naive UTC datetime (the convention used
for every stored timestamp); the window itself is expressed in local
wall-clock hours of ``tz``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo


@dataclass(frozen=True)
class QuietHours:
    start_hour: int = 1
    end_hour: int = 6
    tz: str = "Europe/Belgrade"

    @classmethod
    def from_settings(cls, settings) -> "QuietHours":
        return cls(
            start_hour=settings.QUIET_HOURS_START,
            end_hour=settings.QUIET_HOURS_END,
            tz=settings.QUIET_HOURS_TZ,
        )

    def _local(self, now: datetime) -> datetime:
        return now.replace(tzinfo=timezone.utc).astimezone(ZoneInfo(self.tz))

    def is_active(self, now: datetime) -> bool:
        hour = self._local(now).hour
        if self.start_hour == self.end_hour:
            return False
        if self.start_hour < self.end_hour:
            return self.start_hour <= hour < self.end_hour
        # window wraps midnight, e.g. 22:00-05:00
        return hour >= self.start_hour or hour < self.end_hour

    def window_end(self, now: datetime) -> Optional[datetime]:
        """Naive UTC instant the current window ends, or None outside the window."""
        if not self.is_active(now):
            return None
        local = self._local(now)
        end = local.replace(hour=self.end_hour, minute=0, second=0, microsecond=0)
        if end <= local:
            end = end + timedelta(days=1)
        return end.astimezone(timezone.utc).replace(tzinfo=None)

    def delay_ms(self, now: datetime) -> int:
        end = self.window_end(now)
        if end is None:
            return 0
        return max(int((end - now).total_seconds() * 1000), 0)


def is_quiet_hours(now: datetime, window: Optional[QuietHours] = None) -> bool:
    return (window or QuietHours()).is_active(now)


def quiet_hours_delay_ms(now: datetime, window: Optional[QuietHours] = None) -> int:
    return (window or QuietHours()).delay_ms(now)
