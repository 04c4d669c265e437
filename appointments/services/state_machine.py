"""
Lifecycle transitions for appointments and group-session registrations.

Each machine is a table keyed by (current status, action). Anything not in
the table, including every action from a terminal status, raises
StateTransitionError and leaves the entity untouched.
"""

from django.utils import timezone

from appointments.exceptions import StateTransitionError, ValidationError
from appointments.models import Appointment
from group_sessions.models import Registration

CONFIRM = "confirm"
AUTO_CONFIRM = "auto_confirm"
CANCEL = "cancel"
COMPLETE = "complete"
NO_SHOW = "no_show"
ATTEND = "attend"


class StateMachine:
    def __init__(self, transitions, terminal, target_actions):
        self.transitions = transitions
        self.terminal = frozenset(terminal)
        # Requested target status → action a caller may use to reach it
        self.target_actions = target_actions

    def is_terminal(self, status):
        return status in self.terminal

    def next_status(self, current, action):
        try:
            return self.transitions[(current, action)]
        except KeyError:
            raise StateTransitionError(current, action)

    def can(self, current, action):
        return (current, action) in self.transitions

    def action_for(self, current, target):
        """The action that moves `current` to `target`."""
        action = self.target_actions.get(target)
        if action is None:
            raise ValidationError(f"Unknown or unsupported status: {target}.", code="invalid_status")
        # Raises with the real current status.
        self.next_status(current, action)
        return action


_A = Appointment.Status

appointment_machine = StateMachine(
    transitions={
        (_A.PENDING, CONFIRM): _A.CONFIRMED,
        (_A.PENDING, AUTO_CONFIRM): _A.CONFIRMED,
        (_A.PENDING, CANCEL): _A.CANCELLED,
        (_A.CONFIRMED, CANCEL): _A.CANCELLED,
        (_A.CONFIRMED, COMPLETE): _A.COMPLETED,
        (_A.CONFIRMED, NO_SHOW): _A.NO_SHOW,
    },
    terminal=(_A.COMPLETED, _A.CANCELLED, _A.NO_SHOW),
    target_actions={
        _A.CONFIRMED: CONFIRM,
        _A.CANCELLED: CANCEL,
        _A.COMPLETED: COMPLETE,
        _A.NO_SHOW: NO_SHOW,
    },
)


_R = Registration.Status

registration_machine = StateMachine(
    transitions={
        (_R.REGISTERED, CONFIRM): _R.CONFIRMED,
        (_R.REGISTERED, CANCEL): _R.CANCELLED,
        (_R.CONFIRMED, CANCEL): _R.CANCELLED,
        (_R.CONFIRMED, ATTEND): _R.ATTENDED,
        (_R.CONFIRMED, NO_SHOW): _R.NO_SHOW,
    },
    terminal=(_R.CANCELLED, _R.ATTENDED, _R.NO_SHOW),
    target_actions={
        _R.CONFIRMED: CONFIRM,
        _R.CANCELLED: CANCEL,
        _R.ATTENDED: ATTEND,
        _R.NO_SHOW: NO_SHOW,
    },
)


def apply_appointment_action(appointment, action, now=None):
    """
    Move `appointment` along `action` in memory and stamp the matching
    timestamp. The caller saves.
    """
    new_status = appointment_machine.next_status(appointment.status, action)
    now = now or timezone.now()
    appointment.status = new_status
    if new_status == _A.CONFIRMED:
        appointment.confirmed_at = now
    elif new_status == _A.CANCELLED:
        appointment.cancelled_at = now
    return appointment


def apply_registration_action(registration, action, now=None):
    new_status = registration_machine.next_status(registration.status, action)
    registration.status = new_status
    if new_status == _R.CANCELLED:
        registration.cancelled_at = now or timezone.now()
    return registration
