"""
Calendar projections.

Read-side views that merge appointments, group sessions and blocked ranges
into one time-ordered list. Nothing merged here is ever stored; each source
stays in its own table and keeps its own lifecycle.

Every item is a plain dict with a "kind" key ("appointment",
"group_session" or "blocked_range"), its id, start/end and a display title.
"""

from django.utils import timezone

from appointments.intervals import Interval
from appointments.models import Appointment
from appointments.services.conflicts import APPOINTMENT, BLOCKED_RANGE, GROUP_SESSION
from group_sessions.models import GroupSession, Registration
from providers.models import BlockedRange

# Appointments that are still live/upcoming
_UPCOMING_STATUSES = (
    Appointment.Status.PENDING,
    Appointment.Status.CONFIRMED,
)

_LIVE_REGISTRATION_STATUSES = (
    Registration.Status.REGISTERED,
    Registration.Status.CONFIRMED,
)


# ── Internal helpers ─────────────────────────────────────────────────────────


def _serialize_appointment(appointment):
    return {
        "kind": APPOINTMENT,
        "id": appointment.id,
        "start_time": appointment.start_time,
        "end_time": appointment.end_time,
        "title": appointment.service.name,
        "status": appointment.status,
        "status_display": appointment.get_status_display(),
        "client_name": appointment.client.name,
        "provider_id": appointment.provider_id,
        "is_recurring": appointment.is_recurring,
        "series_parent_id": appointment.series_parent_id,
    }


def _serialize_session(session):
    return {
        "kind": GROUP_SESSION,
        "id": session.id,
        "start_time": session.start_time,
        "end_time": session.end_time,
        "title": session.group_class.name,
        "status": session.status,
        "status_display": session.get_status_display(),
        "provider_id": session.provider_id,
        "current_participants": session.current_participants,
        "max_participants": session.max_participants,
        "spots_left": session.spots_left,
    }


def _serialize_block(block):
    return {
        "kind": BLOCKED_RANGE,
        "id": block.id,
        "start_time": block.start_time,
        "end_time": block.end_time,
        "title": block.label,
        "status": None,
        "provider_id": block.provider_id,
        "notes": block.notes,
    }


def _sort_key(item):
    return (item["start_time"], item["end_time"], item["kind"], item["id"])


# ── Public API ───────────────────────────────────────────────────────────────


def get_provider_calendar(provider, start, end, include_cancelled=False):
    """
    Everything on `provider`'s calendar intersecting [start, end).

    Args:
        provider: ProviderProfile.
        start, end: Window bounds (timezone-aware).
        include_cancelled: Also list cancelled appointments and sessions.

    Returns:
        list of dicts ordered by start time.
    """
    window = Interval(start, end)

    appointments = Appointment.objects.filter(
        provider=provider,
        start_time__lt=window.end,
        end_time__gt=window.start,
    ).select_related("service", "client")
    sessions = GroupSession.objects.filter(
        provider=provider,
        start_time__lt=window.end,
        end_time__gt=window.start,
    ).select_related("group_class")
    if not include_cancelled:
        appointments = appointments.exclude(status=Appointment.Status.CANCELLED)
        sessions = sessions.exclude(status=GroupSession.Status.CANCELLED)

    blocks = BlockedRange.objects.filter(
        provider=provider,
        start_time__lt=window.end,
        end_time__gt=window.start,
    )

    items = (
        [_serialize_appointment(a) for a in appointments]
        + [_serialize_session(s) for s in sessions]
        + [_serialize_block(b) for b in blocks]
    )
    return sorted(items, key=_sort_key)


def get_client_agenda(client, limit=None):
    """
    Upcoming appointments and live session registrations of one client,
    soonest first.
    """
    now = timezone.now()

    appointments = Appointment.objects.filter(
        client=client,
        start_time__gte=now,
        status__in=_UPCOMING_STATUSES,
    ).select_related("service", "client")

    registrations = Registration.objects.filter(
        client=client,
        status__in=_LIVE_REGISTRATION_STATUSES,
        session__start_time__gte=now,
        session__status=GroupSession.Status.SCHEDULED,
    ).select_related("session", "session__group_class")

    items = [_serialize_appointment(a) for a in appointments]
    for registration in registrations:
        item = _serialize_session(registration.session)
        item["registration_id"] = registration.id
        item["registration_status"] = registration.status
        items.append(item)

    items.sort(key=_sort_key)
    return items[:limit] if limit is not None else items
