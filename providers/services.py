"""
Weekly availability for providers.

Availability is advisory: it answers "is this inside declared hours?" and
drives slot suggestions, but the conflict detector never rejects a booking
for falling outside it. Times are interpreted in the site's time zone
(settings.TIME_ZONE).

Slot generation is based on:
1. The provider's rule for that weekday (AvailabilityRule)
2. The service duration
3. Everything already committed on the provider's calendar, buffer included
"""

import logging
from datetime import date, datetime, time, timedelta

from django.db import IntegrityError, transaction
from django.utils import timezone

from appointments.conf import scheduling_setting
from appointments.exceptions import ValidationError
from appointments.intervals import Interval, to_local

from .models import AvailabilityRule, BlockedRange

logger = logging.getLogger(__name__)


def _validate_day(day_of_week):
    if isinstance(day_of_week, bool) or not isinstance(day_of_week, int) or not 0 <= day_of_week <= 6:
        raise ValidationError(
            "Day of week must be between 0 (Monday) and 6 (Sunday).",
            code="invalid_day",
        )


def is_within_working_hours(provider, interval: Interval) -> bool:
    """
    True when `interval` sits entirely inside the provider's declared hours
    for its weekday and overlaps no blocked range.

    Intervals crossing local midnight are never within working hours.
    """
    local_start = to_local(interval.start)
    local_end = to_local(interval.end)
    if local_start.date() != local_end.date():
        return False

    rule = AvailabilityRule.objects.filter(
        provider=provider,
        day_of_week=local_start.weekday(),
    ).first()
    if rule is None:
        return False
    day = local_start.date()
    working = Interval(
        timezone.make_aware(datetime.combine(day, rule.start_time)),
        timezone.make_aware(datetime.combine(day, rule.end_time)),
    )
    if not working.contains(interval):
        return False

    blocked = BlockedRange.objects.filter(
        provider=provider,
        start_time__lt=interval.end,
        end_time__gt=interval.start,
    ).exists()
    return not blocked


def upsert_day_rule(provider, day_of_week: int, start_time: time, end_time: time) -> AvailabilityRule:
    """
    Set the open hours for one weekday, replacing any existing rule for it.
    """
    _validate_day(day_of_week)
    if start_time >= end_time:
        raise ValidationError("End time must be after start time.", code="invalid_hours")

    try:
        with transaction.atomic():
            rule, created = AvailabilityRule.objects.update_or_create(
                provider=provider,
                day_of_week=day_of_week,
                defaults={"start_time": start_time, "end_time": end_time},
            )
    except IntegrityError:
        # Lost a race with another writer for the same day; theirs is in place now.
        rule = AvailabilityRule.objects.get(provider=provider, day_of_week=day_of_week)
        rule.start_time = start_time
        rule.end_time = end_time
        rule.save()
        created = False

    logger.info(
        "Availability %s for provider=%s day=%s %s-%s",
        "created" if created else "updated",
        provider.pk, day_of_week, start_time, end_time,
    )
    return rule


def remove_day_rule(provider, day_of_week: int) -> bool:
    """Close a weekday entirely. Returns whether a rule existed."""
    _validate_day(day_of_week)
    deleted, _ = AvailabilityRule.objects.filter(provider=provider, day_of_week=day_of_week).delete()
    if deleted:
        logger.info("Availability removed for provider=%s day=%s", provider.pk, day_of_week)
    return bool(deleted)


def get_weekly_schedule(provider) -> list[dict]:
    """Seven entries, Monday first; closed days carry None for their hours."""
    rules = {rule.day_of_week: rule for rule in AvailabilityRule.objects.filter(provider=provider)}
    schedule = []
    for day, name in AvailabilityRule.DAY_CHOICES:
        rule = rules.get(day)
        schedule.append(
            {
                "day_of_week": day,
                "day_name": name,
                "is_open": rule is not None,
                "start_time": rule.start_time if rule else None,
                "end_time": rule.end_time if rule else None,
            }
        )
    return schedule


def generate_slots_for_date(provider, target_date: date, duration_minutes: int) -> list[dict]:
    """
    Generate time slots for a provider on a specific date.

    Args:
        provider: ProviderProfile.
        target_date: The date to generate slots for.
        duration_minutes: Slot duration from the Service.

    Returns:
        List of dicts: [{"start_time": datetime, "end_time": datetime, "is_available": bool}, ...]
    """
    from appointments.services.conflicts import check_conflict

    if duration_minutes <= 0:
        raise ValidationError("Duration must be positive.", code="invalid_duration")

    rule = AvailabilityRule.objects.filter(
        provider=provider,
        day_of_week=target_date.weekday(),
    ).first()
    if rule is None:
        return []

    tz = timezone.get_current_timezone()
    current = datetime.combine(target_date, rule.start_time, tzinfo=tz)
    block_end = datetime.combine(target_date, rule.end_time, tzinfo=tz)
    duration = timedelta(minutes=duration_minutes)
    now = timezone.now()

    slots = []
    while current + duration <= block_end:
        candidate = Interval(current, current + duration)
        is_available = current > now and not check_conflict(provider, candidate).has_conflict
        slots.append(
            {
                "start_time": candidate.start,
                "end_time": candidate.end,
                "is_available": is_available,
            }
        )
        current += duration

    return slots


def update_provider_settings(provider, buffer_time_minutes=None, auto_confirm_bookings=None):
    """Change buffer time and/or the auto-confirm policy."""
    update_fields = []
    if buffer_time_minutes is not None:
        max_buffer = scheduling_setting("MAX_BUFFER_MINUTES")
        if (
            isinstance(buffer_time_minutes, bool)
            or not isinstance(buffer_time_minutes, int)
            or not 0 <= buffer_time_minutes <= max_buffer
        ):
            raise ValidationError(
                f"Buffer time must be between 0 and {max_buffer} minutes.",
                code="invalid_buffer",
            )
        provider.buffer_time_minutes = buffer_time_minutes
        update_fields.append("buffer_time_minutes")
    if auto_confirm_bookings is not None:
        provider.auto_confirm_bookings = bool(auto_confirm_bookings)
        update_fields.append("auto_confirm_bookings")

    if update_fields:
        provider.save(update_fields=update_fields + ["updated_at"])
        logger.info(
            "Settings updated for provider=%s buffer=%s auto_confirm=%s",
            provider.pk, provider.buffer_time_minutes, provider.auto_confirm_bookings,
        )
    return provider
