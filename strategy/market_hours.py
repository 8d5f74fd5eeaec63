from datetime import datetime, time as dtime, timezone
from typing import Optional
from zoneinfo import ZoneInfo


def _parse_hhmm(value: str) -> dtime:
    hours, minutes = str(value).split(':', 1)
    return dtime(int(hours), int(minutes))


class ExchangeCalendar:
    """Fixed regular-session hours in the exchange timezone; weekends closed, no holidays."""

    def __init__(self, timezone_name: str = 'America/New_York', open_at: str = '09:30', close_at: str = '16:00'):
        self.tz = ZoneInfo(timezone_name)
        self.open_at = _parse_hhmm(open_at)
        self.close_at = _parse_hhmm(close_at)

    @classmethod
    def from_settings(cls, calendar) -> 'ExchangeCalendar':
        return cls(calendar.timezone, calendar.open, calendar.close)

    def local(self, now: Optional[datetime] = None) -> datetime:
        now = now or datetime.now(timezone.utc)
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return now.astimezone(self.tz)

    def is_trading_day(self, now: Optional[datetime] = None) -> bool:
        return self.local(now).weekday() < 5

    def is_open(self, now: Optional[datetime] = None) -> bool:
        local = self.local(now)
        if local.weekday() >= 5:
            return False
        return self.open_at <= local.time().replace(tzinfo=None) < self.close_at

    def minutes_to_close(self, now: Optional[datetime] = None) -> float:
        """Minutes until today's close; negative once the session has ended."""
        local = self.local(now)
        close_minutes = self.close_at.hour * 60 + self.close_at.minute
        current = local.hour * 60 + local.minute + local.second / 60.0
        return close_minutes - current
