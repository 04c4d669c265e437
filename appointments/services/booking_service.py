"""
Appointment booking service.

Single entry point for everything that writes to a provider's calendar:

1. Validate the service exists, belongs to the provider and is active
2. Build the candidate interval (and, for a series, expand the recurrence)
3. Acquire the provider lock
4. Check for conflicts under the lock
5. Create / move / transition the record
6. Release the lock on commit

Series are committed instance by instance: every instance takes the lock on
its own, so a conflicting instance is reported without undoing the ones
already accepted (unless the caller asked for ALL_OR_NOTHING).
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import NamedTuple, Optional

from django.contrib.auth import get_user_model
from django.utils import timezone

from appointments.exceptions import (
    ConflictError,
    NotFoundError,
    StateTransitionError,
    ValidationError,
)
from appointments.intervals import Interval
from appointments.models import Appointment, RecurrenceRule
from appointments.services.conflicts import (
    APPOINTMENT,
    BLOCKED_RANGE,
    ConflictResult,
    EntityRef,
    check_conflict as detect_conflict,
    ensure_no_conflict,
)
from appointments.services.locking import provider_lock, with_storage_retry
from appointments.services.recurrence import expand
from appointments.services.state_machine import (
    AUTO_CONFIRM,
    apply_appointment_action,
    appointment_machine,
)
from providers import services as availability
from providers.models import BlockedRange, ProviderProfile, Service

logger = logging.getLogger(__name__)


class ConflictPolicy:
    """What to do when one instance of a recurring request conflicts."""

    SKIP = "SKIP"
    STOP = "STOP"
    ALL_OR_NOTHING = "ALL_OR_NOTHING"

    choices = (SKIP, STOP, ALL_OR_NOTHING)


class RejectedInstance(NamedTuple):
    start: datetime
    reason: str
    code: str


@dataclass
class SeriesResult:
    created: list = field(default_factory=list)
    rejected: list = field(default_factory=list)
    stopped_early: bool = False


# ── Lookups ──────────────────────────────────────────────────────────────────


def _get_provider(provider_id) -> ProviderProfile:
    try:
        return ProviderProfile.objects.get(pk=provider_id)
    except ProviderProfile.DoesNotExist:
        raise NotFoundError("Provider not found.")


def _get_appointment(appointment_id) -> Appointment:
    try:
        return Appointment.objects.select_related("service", "provider").get(pk=appointment_id)
    except Appointment.DoesNotExist:
        raise NotFoundError("Appointment not found.")


def _promote_next_series_head(head: Appointment) -> None:
    """Hand the series over to the earliest remaining instance before `head` goes."""
    instances = head.series_instances.order_by("start_time", "pk")
    successor = instances.first()
    if successor is None:
        return
    instances.exclude(pk=successor.pk).update(series_parent=successor)
    Appointment.objects.filter(pk=successor.pk).update(series_parent=None)
    logger.info("[BOOKING] Series head %s -> %s", head.pk, successor.pk)


def _get_client(client_id):
    User = get_user_model()
    try:
        return User.objects.get(pk=client_id, is_active=True)
    except User.DoesNotExist:
        raise NotFoundError("Client not found.")


def _get_bookable_service(provider, service_id) -> Service:
    try:
        service = Service.objects.get(pk=service_id, provider=provider)
    except Service.DoesNotExist:
        raise NotFoundError("Service not found for this provider.")
    if not service.active:
        raise ValidationError("This service is not currently offered.", code="inactive_service")
    return service


def _ensure_future(interval: Interval):
    if interval.start <= timezone.now():
        raise ValidationError("Cannot book appointments in the past.", code="past_date")


# ── Conflict check ───────────────────────────────────────────────────────────


def check_conflict(provider_id, start, end, exclude: Optional[EntityRef] = None) -> ConflictResult:
    """Read-only conflict check; takes no lock and writes nothing."""
    provider = _get_provider(provider_id)
    return detect_conflict(provider, Interval(start, end), exclude=exclude)


# ── Booking ──────────────────────────────────────────────────────────────────


def _save_new_appointment(provider, client, service, interval, notes, rule, parent) -> Appointment:
    """Create a PENDING appointment, auto-confirming it when the provider allows."""
    appointment = Appointment(
        provider=provider,
        client=client,
        service=service,
        start_time=interval.start,
        end_time=interval.end,
        notes=notes,
        recurrence_rule=rule,
        series_parent=parent,
    )
    if provider.auto_confirm_bookings and availability.is_within_working_hours(provider, interval):
        apply_appointment_action(appointment, AUTO_CONFIRM)
    appointment.save()
    return appointment


@with_storage_retry
def _commit_instance(provider_id, client, service, interval, notes, rule=None, parent=None) -> Appointment:
    """
    Conflict-check and create one appointment under the provider lock.

    An unsaved `rule` is saved together with the first instance that
    commits, so a series whose every instance conflicts leaves no rule
    behind.
    """
    rule_saved_here = False
    try:
        with provider_lock(provider_id) as provider:
            ensure_no_conflict(provider, interval)

            if rule is not None and rule.pk is None:
                rule.save()
                rule_saved_here = True

            appointment = _save_new_appointment(provider, client, service, interval, notes, rule, parent)
    except Exception:
        # The transaction rolled back, so the rule row no longer exists.
        if rule_saved_here:
            rule.pk = None
        raise

    logger.info(
        "[BOOKING] Created appointment=%s provider=%s client=%s %s status=%s",
        appointment.pk, provider_id, client.pk, interval, appointment.status,
    )
    return appointment


@with_storage_retry
def _commit_series_atomically(provider_id, client, service, instances, notes, rule) -> list:
    created = []
    try:
        with provider_lock(provider_id) as provider:
            rule.save()
            parent = None
            for interval in instances:
                ensure_no_conflict(provider, interval)
                appointment = _save_new_appointment(provider, client, service, interval, notes, rule, parent)
                parent = parent or appointment
                created.append(appointment)
    except Exception:
        rule.pk = None
        raise
    return created


def create_appointment(
    *,
    provider_id,
    client_id,
    service_id,
    start: datetime,
    recurrence: Optional[RecurrenceRule] = None,
    notes: str = "",
    conflict_policy: str = ConflictPolicy.SKIP,
    cancel_event=None,
) -> SeriesResult:
    """
    Book a single appointment or a recurring series.

    Args:
        provider_id: ProviderProfile id.
        client_id: The client user's id.
        service_id: Service id; its duration sets the end time.
        start: Start of the (first) appointment, timezone-aware.
        recurrence: Unsaved RecurrenceRule, or None for a one-off booking.
        notes: Free text copied onto every instance.
        conflict_policy: SKIP, STOP or ALL_OR_NOTHING (series only).
        cancel_event: Optional threading.Event; when set, no further
            instances are attempted. Committed instances are kept.

    Returns:
        SeriesResult with the created appointments and, for a series, the
        rejected candidate starts with their reason and error code.

    Raises:
        ValidationError: Bad input, past start or inactive service.
        NotFoundError: Unknown provider, client or service.
        ConflictError: One-off booking (or ALL_OR_NOTHING series) collides.
        StorageUnavailableError: The database stayed unavailable.
    """
    if conflict_policy not in ConflictPolicy.choices:
        raise ValidationError(f"Unknown conflict policy: {conflict_policy}.", code="invalid_policy")

    provider = _get_provider(provider_id)
    client = _get_client(client_id)
    service = _get_bookable_service(provider, service_id)
    seed = Interval.from_duration(start, service.duration_minutes)
    _ensure_future(seed)

    result = SeriesResult()

    if recurrence is None:
        result.created.append(_commit_instance(provider.pk, client, service, seed, notes))
        return result

    # Pure computation; nothing is locked while the series is expanded.
    instances = list(expand(seed, recurrence))
    if not instances:
        raise ValidationError("This recurrence produces no occurrences.", code="invalid_recurrence")

    if conflict_policy == ConflictPolicy.ALL_OR_NOTHING:
        result.created = _commit_series_atomically(provider.pk, client, service, instances, notes, recurrence)
        logger.info(
            "[BOOKING] Series rule=%s provider=%s committed atomically: %d instances",
            recurrence.pk, provider.pk, len(result.created),
        )
        return result

    parent = None
    for interval in instances:
        if cancel_event is not None and cancel_event.is_set():
            result.stopped_early = True
            logger.info("[BOOKING] Series for provider=%s cancelled by caller", provider.pk)
            break
        try:
            appointment = _commit_instance(
                provider.pk, client, service, interval, notes, rule=recurrence, parent=parent,
            )
        except ConflictError as e:
            result.rejected.append(RejectedInstance(interval.start, e.message, e.code))
            if conflict_policy == ConflictPolicy.STOP:
                result.stopped_early = True
                break
            continue
        parent = parent or appointment
        result.created.append(appointment)

    logger.info(
        "[BOOKING] Series rule=%s provider=%s created=%d rejected=%d",
        recurrence.pk, provider.pk, len(result.created), len(result.rejected),
    )
    return result


@with_storage_retry
def reschedule_appointment(appointment_id, new_start: datetime) -> Appointment:
    """Move an appointment, keeping its duration. It never conflicts with itself."""
    provider_id = _get_appointment(appointment_id).provider_id

    with provider_lock(provider_id) as provider:
        appointment = _get_appointment(appointment_id)
        if appointment_machine.is_terminal(appointment.status):
            raise StateTransitionError(
                appointment.status,
                "reschedule",
                message=f"Cannot reschedule a {appointment.get_status_display().lower()} appointment.",
            )
        new_interval = Interval(new_start, new_start + appointment.interval.duration)
        _ensure_future(new_interval)
        ensure_no_conflict(provider, new_interval, exclude=EntityRef(APPOINTMENT, appointment.pk))

        old_start = appointment.start_time
        appointment.start_time = new_interval.start
        appointment.end_time = new_interval.end
        appointment.save(update_fields=["start_time", "end_time", "updated_at"])

    logger.info(
        "[BOOKING] Rescheduled appointment=%s from %s to %s",
        appointment.pk, old_start.isoformat(), new_interval.start.isoformat(),
    )
    return appointment


@with_storage_retry
def update_appointment_status(appointment_id, new_status: str) -> Appointment:
    """Drive the appointment lifecycle to `new_status`."""
    provider_id = _get_appointment(appointment_id).provider_id

    with provider_lock(provider_id):
        appointment = _get_appointment(appointment_id)
        old_status = appointment.status
        action = appointment_machine.action_for(old_status, new_status)
        apply_appointment_action(appointment, action)
        appointment.save(update_fields=["status", "confirmed_at", "cancelled_at", "updated_at"])

    logger.info(
        "[BOOKING] Appointment=%s %s -> %s",
        appointment.pk, old_status, appointment.status,
    )
    return appointment


@with_storage_retry
def delete_appointment(appointment_id) -> None:
    """
    Hard-delete an upcoming PENDING or CONFIRMED appointment.

    History is never deleted: anything terminal or already started must be
    cancelled instead.
    """
    provider_id = _get_appointment(appointment_id).provider_id

    with provider_lock(provider_id):
        appointment = _get_appointment(appointment_id)
        deletable = appointment.status in (Appointment.Status.PENDING, Appointment.Status.CONFIRMED)
        if not deletable or appointment.start_time <= timezone.now():
            raise StateTransitionError(
                appointment.status,
                "delete",
                message="Only upcoming pending or confirmed appointments can be deleted. Cancel it instead.",
            )
        if appointment.series_parent_id is None:
            _promote_next_series_head(appointment)
        appointment.delete()

    logger.info("[BOOKING] Deleted appointment=%s provider=%s", appointment_id, provider_id)


# ── Blocked ranges ───────────────────────────────────────────────────────────


@with_storage_retry
def create_blocked_range(provider_id, start: datetime, end: datetime, label: str, notes: str = "") -> BlockedRange:
    interval = Interval(start, end)
    label = (label or "").strip()
    if not label:
        raise ValidationError("A label is required.", code="invalid_label")

    with provider_lock(provider_id) as provider:
        ensure_no_conflict(provider, interval)
        block = BlockedRange.objects.create(
            provider=provider,
            start_time=interval.start,
            end_time=interval.end,
            label=label,
            notes=notes,
        )

    logger.info("[BOOKING] Blocked %s for provider=%s (%s)", interval, provider_id, label)
    return block


@with_storage_retry
def update_blocked_range(block_id, start: datetime, end: datetime) -> BlockedRange:
    try:
        provider_id = BlockedRange.objects.values_list("provider_id", flat=True).get(pk=block_id)
    except BlockedRange.DoesNotExist:
        raise NotFoundError("Blocked range not found.")

    interval = Interval(start, end)
    with provider_lock(provider_id) as provider:
        try:
            block = BlockedRange.objects.get(pk=block_id)
        except BlockedRange.DoesNotExist:
            # Removed while waiting for the lock.
            raise NotFoundError("Blocked range not found.")
        ensure_no_conflict(provider, interval, exclude=EntityRef(BLOCKED_RANGE, block.pk))
        block.start_time = interval.start
        block.end_time = interval.end
        block.save(update_fields=["start_time", "end_time", "updated_at"])
    return block


def delete_blocked_range(block_id) -> None:
    deleted, _ = BlockedRange.objects.filter(pk=block_id).delete()
    if not deleted:
        raise NotFoundError("Blocked range not found.")
    logger.info("[BOOKING] Removed blocked range=%s", block_id)


# ── Availability and settings ────────────────────────────────────────────────


def upsert_availability_rule(provider_id, day_of_week, start_time, end_time):
    return availability.upsert_day_rule(_get_provider(provider_id), day_of_week, start_time, end_time)


def remove_availability_rule(provider_id, day_of_week) -> bool:
    return availability.remove_day_rule(_get_provider(provider_id), day_of_week)


@with_storage_retry
def update_provider_settings(provider_id, buffer_time_minutes=None, auto_confirm_bookings=None):
    with provider_lock(provider_id) as provider:
        return availability.update_provider_settings(
            provider,
            buffer_time_minutes=buffer_time_minutes,
            auto_confirm_bookings=auto_confirm_bookings,
        )
