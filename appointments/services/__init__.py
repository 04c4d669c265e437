# appointments/services package
#
# Re-exports the public scheduling API so callers can simply do:
#
#   from appointments.services import create_appointment, ConflictPolicy
#   from appointments.services import get_provider_calendar

from appointments.services.booking_service import (  # noqa: F401
    ConflictPolicy,
    RejectedInstance,
    SeriesResult,
    check_conflict,
    create_appointment,
    create_blocked_range,
    delete_appointment,
    delete_blocked_range,
    remove_availability_rule,
    reschedule_appointment,
    update_appointment_status,
    update_blocked_range,
    update_provider_settings,
    upsert_availability_rule,
)

from appointments.services.calendar_service import (  # noqa: F401
    get_client_agenda,
    get_provider_calendar,
)

from appointments.services.conflicts import (  # noqa: F401
    ConflictResult,
    EntityRef,
)
