"""
Group-session capacity tracking.

GroupSession.current_participants is a cached count of the session's
non-cancelled registrations. It is only ever changed here, inside
session_lock(), in the same transaction as the registration row it
accounts for:

- try_register:        capacity check + create + increment
- cancel_registration: transition + decrement (exactly once)

A full session is not a time conflict; it simply rejects further
registrations with CapacityExceededError.
"""

import logging

from django.contrib.auth import get_user_model
from django.db import IntegrityError
from django.db.models import F
from django.utils import timezone

from appointments.exceptions import (
    AlreadyRegisteredError,
    CapacityExceededError,
    NotFoundError,
    StateTransitionError,
    ValidationError,
)
from appointments.intervals import Interval
from appointments.services.conflicts import ensure_no_conflict
from appointments.services.locking import provider_lock, session_lock, with_storage_retry
from appointments.services.state_machine import (
    CANCEL,
    apply_registration_action,
    registration_machine,
)

from .models import GroupClass, GroupSession, Registration

logger = logging.getLogger(__name__)


def _live_registrations(session):
    return Registration.objects.filter(session=session).exclude(status=Registration.Status.CANCELLED)


def _registration_session_id(registration_id):
    try:
        return Registration.objects.values_list("session_id", flat=True).get(pk=registration_id)
    except Registration.DoesNotExist:
        raise NotFoundError("Registration not found.")


def _session_provider_id(session_id):
    try:
        return GroupSession.objects.values_list("provider_id", flat=True).get(pk=session_id)
    except GroupSession.DoesNotExist:
        raise NotFoundError("Session not found.")


# ── Registration ─────────────────────────────────────────────────────────────


@with_storage_retry
def try_register(session_id, client) -> Registration:
    """
    Register `client` for a session if a seat is free.

    Raises:
        ValidationError: The session is cancelled, completed or already started.
        AlreadyRegisteredError: The client already holds a live registration.
        CapacityExceededError: No seat left.
    """
    try:
        with session_lock(session_id) as session:
            if session.status != GroupSession.Status.SCHEDULED:
                raise ValidationError("This session is not open for registration.", code="session_closed")
            if session.start_time <= timezone.now():
                raise ValidationError("This session has already started.", code="session_started")
            if _live_registrations(session).filter(client=client).exists():
                raise AlreadyRegisteredError()
            if session.current_participants >= session.max_participants:
                logger.info(
                    "[CAPACITY] Rejected client=%s for full session=%s (%d/%d)",
                    client.pk, session.pk, session.current_participants, session.max_participants,
                )
                raise CapacityExceededError()

            initial_status = (
                Registration.Status.CONFIRMED
                if session.provider.auto_confirm_bookings
                else Registration.Status.REGISTERED
            )
            registration = Registration.objects.create(session=session, client=client, status=initial_status)
            GroupSession.objects.filter(pk=session.pk).update(
                current_participants=F("current_participants") + 1,
            )
    except IntegrityError:
        # Another process committed first and a constraint rejected this row.
        if Registration.objects.filter(session_id=session_id, client=client).exclude(
            status=Registration.Status.CANCELLED
        ).exists():
            raise AlreadyRegisteredError()
        raise CapacityExceededError()

    logger.info(
        "[CAPACITY] Registered client=%s for session=%s (%d/%d) status=%s",
        client.pk, session.pk, session.current_participants + 1, session.max_participants, registration.status,
    )
    return registration


def register_client(session_id, client_id) -> Registration:
    """Register an existing client on their behalf (provider side)."""
    User = get_user_model()
    client = User.objects.filter(pk=client_id, is_active=True).first()
    if client is None:
        raise NotFoundError("Client not found.")
    return try_register(session_id, client)


@with_storage_retry
def cancel_registration(registration_id) -> Registration:
    """
    Cancel a registration and free its seat.

    Cancelling an already-cancelled registration is a no-op, so the counter
    is decremented exactly once per registration.
    """
    session_id = _registration_session_id(registration_id)

    with session_lock(session_id) as session:
        registration = Registration.objects.select_for_update().get(pk=registration_id)
        if registration.status == Registration.Status.CANCELLED:
            return registration

        apply_registration_action(registration, CANCEL)
        registration.save(update_fields=["status", "cancelled_at", "updated_at"])
        GroupSession.objects.filter(pk=session.pk).update(
            current_participants=F("current_participants") - 1,
        )

    logger.info("[CAPACITY] Cancelled registration=%s for session=%s", registration.pk, session_id)
    return registration


@with_storage_retry
def _transition_registration(registration_id, new_status) -> Registration:
    session_id = _registration_session_id(registration_id)

    with session_lock(session_id):
        registration = Registration.objects.select_for_update().get(pk=registration_id)
        old_status = registration.status
        action = registration_machine.action_for(old_status, new_status)
        apply_registration_action(registration, action)
        registration.save(update_fields=["status", "cancelled_at", "updated_at"])

    logger.info("[CAPACITY] Registration=%s %s -> %s", registration.pk, old_status, registration.status)
    return registration


def update_registration_status(registration_id, new_status) -> Registration:
    """Drive the registration lifecycle; cancellation also frees the seat."""
    if new_status == Registration.Status.CANCELLED:
        return cancel_registration(registration_id)
    return _transition_registration(registration_id, new_status)


# ── Counter repair ───────────────────────────────────────────────────────────


@with_storage_retry
def reconcile_participants(session_id):
    """
    Recompute current_participants from the registrations.

    Returns:
        (old_count, new_count)
    """
    with session_lock(session_id) as session:
        old_count = session.current_participants
        new_count = _live_registrations(session).count()
        if new_count > session.max_participants:
            logger.error(
                "[CAPACITY] Session=%s has %d live registrations for %d seats",
                session.pk, new_count, session.max_participants,
            )
            raise CapacityExceededError(
                f"Session {session.pk} has {new_count} live registrations for "
                f"{session.max_participants} seats."
            )
        if new_count != old_count:
            GroupSession.objects.filter(pk=session.pk).update(current_participants=new_count)
            logger.warning(
                "[CAPACITY] Session=%s counter repaired %d -> %d",
                session.pk, old_count, new_count,
            )
    return old_count, new_count


# ── Session lifecycle ────────────────────────────────────────────────────────


@with_storage_retry
def create_group_session(group_class_id, start, notes="", max_participants=None) -> GroupSession:
    """Schedule a session of `group_class` at `start` if the provider is free."""
    try:
        group_class = GroupClass.objects.get(pk=group_class_id)
    except GroupClass.DoesNotExist:
        raise NotFoundError("Group class not found.")
    if not group_class.active:
        raise ValidationError("This class is not currently offered.", code="inactive_class")

    capacity = max_participants or group_class.max_participants
    if capacity < 1:
        raise ValidationError("A session needs at least one seat.", code="invalid_capacity")

    interval = Interval.from_duration(start, group_class.duration_minutes)
    if interval.start <= timezone.now():
        raise ValidationError("Cannot schedule sessions in the past.", code="past_date")

    with provider_lock(group_class.provider_id) as provider:
        ensure_no_conflict(provider, interval)
        session = GroupSession.objects.create(
            group_class=group_class,
            provider=provider,
            start_time=interval.start,
            end_time=interval.end,
            max_participants=capacity,
            notes=notes,
        )

    logger.info(
        "[CAPACITY] Scheduled session=%s class=%s %s seats=%d",
        session.pk, group_class.pk, interval, capacity,
    )
    return session


@with_storage_retry
def cancel_group_session(session_id) -> GroupSession:
    """
    Cancel a session together with every live registration.

    The session leaves the provider's committed calendar and its counter
    ends at 0. Cancelling twice is a no-op.
    """
    provider_id = _session_provider_id(session_id)

    # Lock order is always provider, then session.
    with provider_lock(provider_id):
        with session_lock(session_id) as session:
            if session.status == GroupSession.Status.CANCELLED:
                return session
            if session.status != GroupSession.Status.SCHEDULED:
                raise StateTransitionError(session.status, "cancel")

            now = timezone.now()
            cancelled = _live_registrations(session).update(
                status=Registration.Status.CANCELLED,
                cancelled_at=now,
                updated_at=now,
            )
            session.status = GroupSession.Status.CANCELLED
            session.current_participants = 0
            session.save(update_fields=["status", "current_participants", "updated_at"])

    logger.info("[CAPACITY] Cancelled session=%s and %d registrations", session_id, cancelled)
    return session
