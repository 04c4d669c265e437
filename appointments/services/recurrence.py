"""
Recurrence expansion.

Turns a seed interval plus a RecurrenceRule into the concrete intervals of a
series. Expansion is pure computation: nothing is read from or written to the
database, and expanding the same seed with the same rule always yields the
same instances.

Every instance keeps the seed's local wall-clock start time and duration, so
a 09:00 weekly booking stays at 09:00 across daylight-saving changes.

Bounds:
- AFTER_COUNT(n) emits at most n instances, the seed included
- ON_DATE(d) emits instances whose local start date is <= d
- NEVER emits at most SCHEDULING["RECURRENCE_MAX_INSTANCES"]
- nothing starts more than SCHEDULING["RECURRENCE_MAX_HORIZON_DAYS"] after the seed
"""

from datetime import datetime, timedelta

from dateutil.relativedelta import relativedelta

from appointments.conf import scheduling_setting
from appointments.exceptions import ValidationError
from appointments.intervals import Interval, to_local
from appointments.models import RecurrenceRule

BIWEEKLY = "BIWEEKLY"

Frequency = RecurrenceRule.Frequency
Termination = RecurrenceRule.Termination


def normalize_frequency(frequency, interval=1):
    """Map the BIWEEKLY shorthand onto WEEKLY every two weeks."""
    if frequency == BIWEEKLY:
        return Frequency.WEEKLY, 2 * (interval or 1)
    return frequency, interval


def _is_int(value):
    return isinstance(value, int) and not isinstance(value, bool)


def validate_rule(rule: RecurrenceRule, seed: Interval, max_instances=None) -> None:
    """Raise ValidationError unless `rule` can be expanded from `seed`."""
    if max_instances is None:
        max_instances = scheduling_setting("RECURRENCE_MAX_INSTANCES")

    if rule.frequency not in Frequency.values:
        raise ValidationError(f"Unknown recurrence frequency: {rule.frequency}.", code="invalid_recurrence")

    if not _is_int(rule.interval) or rule.interval < 1:
        raise ValidationError("Recurrence interval must be at least 1.", code="invalid_recurrence")

    weekdays = list(rule.weekdays or [])
    if rule.frequency == Frequency.WEEKLY:
        if not weekdays:
            raise ValidationError("Weekly recurrence needs at least one weekday.", code="invalid_recurrence")
        for day in weekdays:
            if not _is_int(day) or not 0 <= day <= 6:
                raise ValidationError(
                    f"Weekday {day!r} is out of range (0 = Monday ... 6 = Sunday).",
                    code="invalid_recurrence",
                )
    elif weekdays:
        raise ValidationError("Weekdays only apply to weekly recurrence.", code="invalid_recurrence")

    if rule.month_day is not None:
        if rule.frequency != Frequency.MONTHLY:
            raise ValidationError("A day of month only applies to monthly recurrence.", code="invalid_recurrence")
        if not _is_int(rule.month_day) or not 1 <= rule.month_day <= 31:
            raise ValidationError("Day of month must be between 1 and 31.", code="invalid_recurrence")

    if rule.termination == Termination.AFTER_COUNT:
        if not _is_int(rule.count) or rule.count <= 0:
            raise ValidationError("Occurrence count must be a positive number.", code="invalid_recurrence")
        if rule.count > max_instances:
            raise ValidationError(
                f"A series cannot have more than {max_instances} occurrences.",
                code="invalid_recurrence",
            )
    elif rule.termination == Termination.ON_DATE:
        if rule.end_date is None:
            raise ValidationError("An end date is required.", code="invalid_recurrence")
        if rule.end_date < to_local(seed.start).date():
            raise ValidationError("End date cannot be before the first occurrence.", code="invalid_recurrence")
    elif rule.termination != Termination.NEVER:
        raise ValidationError(f"Unknown termination: {rule.termination}.", code="invalid_recurrence")


class RecurrenceExpansion:
    """
    Lazy, finite, restartable sequence of instance intervals.

    Each iter() starts a fresh generator, so the expansion can be walked
    more than once (e.g. preview, then commit).
    """

    def __init__(self, seed: Interval, rule: RecurrenceRule, max_instances=None, horizon_days=None):
        self.seed = seed
        self.rule = rule
        self.max_instances = max_instances or scheduling_setting("RECURRENCE_MAX_INSTANCES")
        self.horizon_days = horizon_days or scheduling_setting("RECURRENCE_MAX_HORIZON_DAYS")

    def __iter__(self):
        return self._generate()

    def _limit(self):
        if self.rule.termination == Termination.AFTER_COUNT:
            return min(self.rule.count, self.max_instances)
        return self.max_instances

    def _last_date(self, first_date):
        last = first_date + timedelta(days=self.horizon_days)
        if self.rule.termination == Termination.ON_DATE:
            last = min(last, self.rule.end_date)
        return last

    def _candidate_dates(self, first_date):
        rule = self.rule
        if rule.frequency == Frequency.DAILY:
            k = 0
            while True:
                yield first_date + timedelta(days=k * rule.interval)
                k += 1
        elif rule.frequency == Frequency.WEEKLY:
            weekdays = set(rule.weekdays)
            week_start = first_date - timedelta(days=first_date.weekday())
            day = first_date
            while True:
                week_index = (day - week_start).days // 7
                if day.weekday() in weekdays and week_index % rule.interval == 0:
                    yield day
                day += timedelta(days=1)
        else:
            k = 0
            while True:
                # Offset from the seed, not the previous instance.
                step = relativedelta(months=k * rule.interval)
                if rule.month_day is not None:
                    step += relativedelta(day=rule.month_day)
                candidate = first_date + step
                if candidate >= first_date:
                    yield candidate
                k += 1

    def _generate(self):
        local_start = to_local(self.seed.start)
        first_date = local_start.date()
        wall_clock = local_start.time()
        tzinfo = local_start.tzinfo
        duration = self.seed.duration
        limit = self._limit()
        last_date = self._last_date(first_date)

        emitted = 0
        for day in self._candidate_dates(first_date):
            if emitted >= limit or day > last_date:
                return
            start = datetime.combine(day, wall_clock, tzinfo=tzinfo)
            yield Interval(start, start + duration)
            emitted += 1


def expand(seed: Interval, rule: RecurrenceRule) -> RecurrenceExpansion:
    """Validate `rule` against `seed` and return its expansion."""
    validate_rule(rule, seed)
    return RecurrenceExpansion(seed, rule)
