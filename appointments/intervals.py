"""
Half-open time intervals and the buffered overlap rule.

An Interval is [start, end): an appointment ending at 15:00 and another
starting at 15:00 touch but do not overlap. Buffer time widens both margins
once, so with a 15 minute buffer the same pair collides.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta

from django.utils import timezone

from appointments.exceptions import ValidationError


def to_buffer(buffer) -> timedelta:
    """Normalise a buffer given as a timedelta or as whole minutes."""
    if buffer is None:
        return timedelta(0)
    if isinstance(buffer, timedelta):
        value = buffer
    elif isinstance(buffer, int) and not isinstance(buffer, bool):
        value = timedelta(minutes=buffer)
    else:
        raise ValidationError("Buffer must be a number of minutes or a timedelta.", code="invalid_buffer")
    if value < timedelta(0):
        raise ValidationError("Buffer time cannot be negative.", code="invalid_buffer")
    return value


def _is_aware(value: datetime) -> bool:
    return value.tzinfo is not None and value.tzinfo.utcoffset(value) is not None


@dataclass(frozen=True)
class Interval:
    start: datetime
    end: datetime

    def __post_init__(self):
        if not isinstance(self.start, datetime) or not isinstance(self.end, datetime):
            raise ValidationError("Interval bounds must be datetimes.", code="invalid_interval")
        if _is_aware(self.start) != _is_aware(self.end):
            raise ValidationError(
                "Cannot mix naive and timezone-aware datetimes in one interval.",
                code="invalid_interval",
            )
        if self.end <= self.start:
            raise ValidationError("End time must be after start time.", code="invalid_interval")

    @classmethod
    def from_duration(cls, start: datetime, minutes: int) -> "Interval":
        return cls(start, start + timedelta(minutes=minutes))

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def expanded(self, buffer) -> "Interval":
        """The interval widened by `buffer` on both sides."""
        margin = to_buffer(buffer)
        return Interval(self.start - margin, self.end + margin)

    def contains(self, other: "Interval") -> bool:
        return self.start <= other.start and other.end <= self.end

    def overlaps(self, other: "Interval", buffer=None) -> bool:
        return overlaps(self, other, buffer)

    def __str__(self):
        return f"[{self.start.isoformat()}, {self.end.isoformat()})"


def overlaps(a: Interval, b: Interval, buffer=None) -> bool:
    """
    True when `a` and `b` collide once buffer time is accounted for.

    The buffer is symmetric and applied once: a.start < b.end + buffer and
    b.start < a.end + buffer. Adjacent intervals with no buffer do not overlap.
    """
    margin = to_buffer(buffer)
    return a.start < b.end + margin and b.start < a.end + margin


def to_local(value: datetime) -> datetime:
    """Aware datetimes in the active time zone; naive ones are already wall-clock."""
    if _is_aware(value):
        return timezone.localtime(value)
    return value
