# durations.py
import calendar
import re
from dataclasses import dataclass
from datetime import datetime, timedelta

# Based on https://en.wikipedia.org/wiki/ISO_8601#Durations
_DURATION_RE = re.compile(
    r"^P(?!$)"
    r"(?:(?P<years>\d+)Y)?"
    r"(?:(?P<months>\d+)M)?"
    r"(?:(?P<weeks>\d+)W)?"
    r"(?:(?P<days>\d+)D)?"
    r"(?:T(?=\d)"
    r"(?:(?P<hours>\d+)H)?"
    r"(?:(?P<minutes>\d+)M)?"
    r"(?:(?P<seconds>\d+)S)?"
    r")?$"
)


@dataclass(frozen=True)
class Duration:
    """A calendar-aware span: years and months move along the calendar, the rest is exact."""

    years: int = 0
    months: int = 0
    weeks: int = 0
    days: int = 0
    hours: int = 0
    minutes: int = 0
    seconds: int = 0

    @property
    def fixed_part(self) -> timedelta:
        return timedelta(weeks=self.weeks, days=self.days, hours=self.hours,
                         minutes=self.minutes, seconds=self.seconds)

    def add_to(self, moment: datetime) -> datetime:
        total_months = moment.month - 1 + self.months + self.years * 12
        year = moment.year + total_months // 12
        month = total_months % 12 + 1
        day = min(moment.day, calendar.monthrange(year, month)[1])
        return moment.replace(year=year, month=month, day=day) + self.fixed_part


def parse_duration(value: str) -> Duration:
    match = _DURATION_RE.match(value.strip()) if value else None
    if not match:
        raise ValueError(f"Invalid ISO-8601 duration: {value!r}")
    parts = {name: int(amount) for name, amount in match.groupdict().items() if amount}
    return Duration(**parts)
