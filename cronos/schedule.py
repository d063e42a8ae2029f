"""
Recurrence rules for jobs.

A schedule is either daily at a wall-clock time or weekly on one weekday at a
wall-clock time. Weekdays are numbered 1=Sunday .. 7=Saturday.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Union, Dict, Any

from tzlocal import get_localzone

WEEKDAY_NAMES = {
    1: "Sunday",
    2: "Monday",
    3: "Tuesday",
    4: "Wednesday",
    5: "Thursday",
    6: "Friday",
    7: "Saturday",
}
WEEKDAY_BY_NAME = {name.lower(): number for number, name in WEEKDAY_NAMES.items()}


def local_now() -> datetime:
    """Current time as an aware datetime in the host's local zone."""
    return datetime.now(get_localzone())


def _validate_time(hour: int, minute: int):
    if not 0 <= hour <= 23:
        raise ValueError(f"hour must be in 0..23, got {hour}")
    if not 0 <= minute <= 59:
        raise ValueError(f"minute must be in 0..59, got {minute}")


def _at(day: datetime, hour: int, minute: int) -> datetime:
    return day.replace(hour=hour, minute=minute, second=0, microsecond=0)


@dataclass(frozen=True)
class DailySchedule:
    """Runs every day at hour:minute."""
    hour: int
    minute: int

    def __post_init__(self):
        _validate_time(self.hour, self.minute)

    def next_run(self, after: Optional[datetime] = None) -> datetime:
        """
        Earliest occurrence strictly later than `after`.

        Args:
            after: Reference time (default: now, local zone). The result is
                   expressed in the same zone as `after`.
        """
        if after is None:
            after = local_now()
        candidate = _at(after, self.hour, self.minute)
        if candidate <= after:
            # Calendar-day step: same wall-clock time across DST changes
            candidate = _at(candidate + timedelta(days=1), self.hour, self.minute)
        return candidate

    @property
    def display_string(self) -> str:
        return f"Daily at {self.hour:02d}:{self.minute:02d}"

    def to_dict(self) -> Dict[str, Any]:
        return {'type': 'daily', 'hour': self.hour, 'minute': self.minute}


@dataclass(frozen=True)
class WeeklySchedule:
    """Runs once a week on `weekday` (1=Sunday .. 7=Saturday) at hour:minute."""
    weekday: int
    hour: int
    minute: int

    def __post_init__(self):
        if self.weekday not in WEEKDAY_NAMES:
            raise ValueError(f"weekday must be in 1..7, got {self.weekday}")
        _validate_time(self.hour, self.minute)

    @property
    def python_weekday(self) -> int:
        """Weekday in datetime.weekday() numbering (Monday=0)."""
        return (self.weekday + 5) % 7

    def next_run(self, after: Optional[datetime] = None) -> datetime:
        """
        Earliest occurrence strictly later than `after`.

        Args:
            after: Reference time (default: now, local zone). The result is
                   expressed in the same zone as `after`.
        """
        if after is None:
            after = local_now()
        days_ahead = (self.python_weekday - after.weekday()) % 7
        candidate = _at(after + timedelta(days=days_ahead), self.hour, self.minute)
        if candidate <= after:
            candidate = _at(candidate + timedelta(days=7), self.hour, self.minute)
        return candidate

    @property
    def display_string(self) -> str:
        return (
            f"Weekly on {WEEKDAY_NAMES[self.weekday]} "
            f"at {self.hour:02d}:{self.minute:02d}"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': 'weekly',
            'weekday': self.weekday,
            'hour': self.hour,
            'minute': self.minute,
        }


Schedule = Union[DailySchedule, WeeklySchedule]


def schedule_from_dict(data: Dict[str, Any]) -> Schedule:
    """Decode a schedule written by to_dict()."""
    schedule_type = data.get('type')
    if schedule_type == 'daily':
        return DailySchedule(hour=int(data['hour']), minute=int(data['minute']))
    if schedule_type == 'weekly':
        return WeeklySchedule(
            weekday=int(data['weekday']),
            hour=int(data['hour']),
            minute=int(data['minute']),
        )
    raise ValueError(f"Unknown schedule type: {schedule_type!r}")


def parse_time(value: str) -> tuple:
    """Parse 'HH:MM' into (hour, minute)."""
    try:
        hour_text, minute_text = value.strip().split(':')
        hour, minute = int(hour_text), int(minute_text)
    except ValueError:
        raise ValueError(f"Invalid time {value!r}, expected HH:MM")
    _validate_time(hour, minute)
    return hour, minute


def parse_weekday(value: str) -> int:
    """Parse a weekday name ('monday', 'Mon') or number ('2') into 1..7."""
    text = value.strip().lower()
    if text.isdigit():
        number = int(text)
        if number in WEEKDAY_NAMES:
            return number
    for name, number in WEEKDAY_BY_NAME.items():
        if len(text) >= 3 and name.startswith(text):
            return number
    raise ValueError(f"Invalid weekday {value!r}")
