"""
Conflict detection for a provider's calendar.

A candidate interval conflicts with every committed interval of the same
provider whose buffer-expanded range it overlaps. Committed means:

- Appointments in any status except CANCELLED
- BlockedRanges (always)
- GroupSessions in any status except CANCELLED

Callers that intend to write must run the check inside provider_lock() so
that check and commit are a single atomic unit.
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional

from appointments.exceptions import ConflictError
from appointments.intervals import Interval, overlaps, to_buffer
from appointments.models import Appointment

logger = logging.getLogger(__name__)

APPOINTMENT = "appointment"
GROUP_SESSION = "group_session"
BLOCKED_RANGE = "blocked_range"

_LABELS = {
    APPOINTMENT: "an existing appointment",
    GROUP_SESSION: "a group session",
    BLOCKED_RANGE: "a blocked period",
}


@dataclass(frozen=True)
class EntityRef:
    """Opaque reference to a committed entity: its kind and primary key."""

    kind: str
    pk: int

    def as_dict(self):
        return {"type": self.kind, "id": self.pk}


@dataclass
class ConflictResult:
    has_conflict: bool = False
    conflict_with: Optional[EntityRef] = None
    reason: str = ""
    conflicts: list = field(default_factory=list)

    def as_dict(self):
        return {
            "has_conflict": self.has_conflict,
            "conflicts": [
                {**ref.as_dict(), "start_time": iv.start.isoformat(), "end_time": iv.end.isoformat()}
                for ref, iv in self.conflicts
            ],
            "message": self.reason or "No conflict.",
        }


def _provider_buffer(provider) -> timedelta:
    return to_buffer(provider.buffer_time_minutes or 0)


def committed_intervals(provider, window: Interval):
    """
    Yield (EntityRef, Interval) for every committed entity of `provider`
    whose stored range intersects `window`.

    The queries are plain range filters on (provider, start_time) so they
    stay on the composite indexes.
    """
    from group_sessions.models import GroupSession
    from providers.models import BlockedRange

    appointments = (
        Appointment.objects.filter(
            provider=provider,
            start_time__lt=window.end,
            end_time__gt=window.start,
        )
        .exclude(status=Appointment.Status.CANCELLED)
        .values_list("pk", "start_time", "end_time")
    )
    for pk, start, end in appointments:
        yield EntityRef(APPOINTMENT, pk), Interval(start, end)

    sessions = (
        GroupSession.objects.filter(
            provider=provider,
            start_time__lt=window.end,
            end_time__gt=window.start,
        )
        .exclude(status=GroupSession.Status.CANCELLED)
        .values_list("pk", "start_time", "end_time")
    )
    for pk, start, end in sessions:
        yield EntityRef(GROUP_SESSION, pk), Interval(start, end)

    blocks = BlockedRange.objects.filter(
        provider=provider,
        start_time__lt=window.end,
        end_time__gt=window.start,
    ).values_list("pk", "start_time", "end_time")
    for pk, start, end in blocks:
        yield EntityRef(BLOCKED_RANGE, pk), Interval(start, end)


def check_conflict(provider, candidate: Interval, exclude: Optional[EntityRef] = None) -> ConflictResult:
    """
    Check `candidate` against everything committed on `provider`'s calendar.

    Args:
        provider: ProviderProfile whose calendar is scanned.
        candidate: The proposed interval.
        exclude: The entity being edited, ignored so it never conflicts
            with its own current slot.

    Returns:
        ConflictResult; `conflicts` is ordered by start time and
        `conflict_with` is its first element.
    """
    buffer = _provider_buffer(provider)
    window = candidate.expanded(buffer)

    found = []
    for ref, interval in committed_intervals(provider, window):
        if exclude is not None and ref == exclude:
            continue
        if overlaps(candidate, interval, buffer):
            found.append((ref, interval))

    if not found:
        return ConflictResult()

    found.sort(key=lambda item: (item[1].start, item[0].kind, item[0].pk))
    first_ref, first_interval = found[0]
    reason = (
        f"Overlaps {_LABELS[first_ref.kind]} "
        f"({first_interval.start:%Y-%m-%d %H:%M} - {first_interval.end:%H:%M})"
    )
    if buffer:
        reason += f" including the {int(buffer.total_seconds() // 60)} minute buffer"
    reason += "."

    logger.info(
        "[CONFLICT] provider=%s candidate=%s conflicts=%d first=%s#%s",
        provider.pk, candidate, len(found), first_ref.kind, first_ref.pk,
    )
    return ConflictResult(
        has_conflict=True,
        conflict_with=first_ref,
        reason=reason,
        conflicts=found,
    )


def ensure_no_conflict(provider, candidate: Interval, exclude: Optional[EntityRef] = None) -> None:
    """Raise ConflictError when `candidate` collides with a committed interval."""
    result = check_conflict(provider, candidate, exclude=exclude)
    if result.has_conflict:
        raise ConflictError(result.reason, conflict_with=result.conflict_with)
