"""
Tests for the database-free scheduling core.

Covers:
- Interval construction and the buffered overlap rule
- Recurrence validation and expansion (daily / weekly / monthly, bounds, DST)
- Appointment and registration state machines
- The keyed lock registry
"""

import threading
from datetime import date, datetime, timedelta

from django.test import SimpleTestCase
from django.utils import timezone

from appointments.exceptions import StateTransitionError, ValidationError
from appointments.intervals import Interval, overlaps, to_buffer
from appointments.models import Appointment, RecurrenceRule
from appointments.services.locking import KeyedLockRegistry
from appointments.services.recurrence import (
    RecurrenceExpansion,
    expand,
    normalize_frequency,
    validate_rule,
)
from appointments.services.state_machine import (
    ATTEND,
    AUTO_CONFIRM,
    CANCEL,
    COMPLETE,
    CONFIRM,
    apply_appointment_action,
    apply_registration_action,
    appointment_machine,
    registration_machine,
)
from group_sessions.models import Registration

Frequency = RecurrenceRule.Frequency
Termination = RecurrenceRule.Termination


def aware(*args):
    return timezone.make_aware(datetime(*args))


class IntervalTests(SimpleTestCase):
    def setUp(self):
        self.existing = Interval(datetime(2027, 1, 4, 14, 0), datetime(2027, 1, 4, 15, 0))

    def test_partial_overlap(self):
        candidate = Interval(datetime(2027, 1, 4, 14, 30), datetime(2027, 1, 4, 15, 30))
        self.assertTrue(overlaps(self.existing, candidate))
        self.assertTrue(overlaps(candidate, self.existing))

    def test_adjacent_intervals_do_not_overlap(self):
        candidate = Interval(datetime(2027, 1, 4, 15, 0), datetime(2027, 1, 4, 16, 0))
        self.assertFalse(overlaps(self.existing, candidate))

    def test_buffer_makes_adjacent_intervals_overlap(self):
        candidate = Interval(datetime(2027, 1, 4, 15, 0), datetime(2027, 1, 4, 16, 0))
        self.assertTrue(overlaps(self.existing, candidate, buffer=15))
        self.assertTrue(self.existing.overlaps(candidate, buffer=timedelta(minutes=15)))

    def test_buffer_gap_exactly_met(self):
        candidate = Interval(datetime(2027, 1, 4, 15, 15), datetime(2027, 1, 4, 16, 0))
        self.assertFalse(overlaps(self.existing, candidate, buffer=15))

    def test_containment_counts_as_overlap(self):
        inner = Interval(datetime(2027, 1, 4, 14, 15), datetime(2027, 1, 4, 14, 45))
        self.assertTrue(overlaps(self.existing, inner))
        self.assertTrue(self.existing.contains(inner))
        self.assertFalse(inner.contains(self.existing))

    def test_end_must_follow_start(self):
        with self.assertRaises(ValidationError):
            Interval(datetime(2027, 1, 4, 15, 0), datetime(2027, 1, 4, 15, 0))
        with self.assertRaises(ValidationError):
            Interval(datetime(2027, 1, 4, 15, 0), datetime(2027, 1, 4, 14, 0))

    def test_mixed_awareness_rejected(self):
        with self.assertRaises(ValidationError):
            Interval(aware(2027, 1, 4, 14, 0), datetime(2027, 1, 4, 15, 0))

    def test_from_duration_and_expanded(self):
        interval = Interval.from_duration(datetime(2027, 1, 4, 9, 0), 45)
        self.assertEqual(interval.end, datetime(2027, 1, 4, 9, 45))
        self.assertEqual(interval.duration, timedelta(minutes=45))

        wide = interval.expanded(10)
        self.assertEqual(wide.start, datetime(2027, 1, 4, 8, 50))
        self.assertEqual(wide.end, datetime(2027, 1, 4, 9, 55))

    def test_negative_buffer_rejected(self):
        with self.assertRaises(ValidationError):
            to_buffer(-5)
        with self.assertRaises(ValidationError):
            to_buffer(True)
        self.assertEqual(to_buffer(None), timedelta(0))


class RecurrenceExpansionTests(SimpleTestCase):
    """2027-01-04 is a Monday."""

    def setUp(self):
        self.seed = Interval.from_duration(aware(2027, 1, 4, 9, 0), 60)

    def rule(self, **kwargs):
        kwargs.setdefault("interval", 1)
        kwargs.setdefault("weekdays", [])
        kwargs.setdefault("termination", Termination.AFTER_COUNT)
        return RecurrenceRule(**kwargs)

    def local_starts(self, rule, seed=None):
        return [timezone.localtime(i.start) for i in expand(seed or self.seed, rule)]

    def test_daily_every_other_day(self):
        starts = self.local_starts(self.rule(frequency=Frequency.DAILY, interval=2, count=3))
        self.assertEqual([s.date() for s in starts], [date(2027, 1, 4), date(2027, 1, 6), date(2027, 1, 8)])

    def test_weekly_on_several_weekdays(self):
        starts = self.local_starts(self.rule(frequency=Frequency.WEEKLY, weekdays=[0, 2], count=4))
        self.assertEqual(
            [s.date() for s in starts],
            [date(2027, 1, 4), date(2027, 1, 6), date(2027, 1, 11), date(2027, 1, 13)],
        )
        self.assertTrue(all(s.hour == 9 for s in starts))

    def test_biweekly(self):
        frequency, interval = normalize_frequency("BIWEEKLY")
        self.assertEqual((frequency, interval), (Frequency.WEEKLY, 2))

        starts = self.local_starts(self.rule(frequency=frequency, interval=interval, weekdays=[0], count=3))
        self.assertEqual([s.date() for s in starts], [date(2027, 1, 4), date(2027, 1, 18), date(2027, 2, 1)])

    def test_weekly_seed_outside_weekdays_is_not_emitted(self):
        starts = self.local_starts(self.rule(frequency=Frequency.WEEKLY, weekdays=[2], count=2))
        self.assertEqual([s.date() for s in starts], [date(2027, 1, 6), date(2027, 1, 13)])

    def test_monthly_clamps_to_month_end(self):
        seed = Interval.from_duration(aware(2027, 1, 31, 9, 0), 60)
        starts = self.local_starts(self.rule(frequency=Frequency.MONTHLY, count=4), seed=seed)
        self.assertEqual(
            [s.date() for s in starts],
            [date(2027, 1, 31), date(2027, 2, 28), date(2027, 3, 31), date(2027, 4, 30)],
        )

    def test_monthly_on_fixed_day(self):
        seed = Interval.from_duration(aware(2027, 1, 10, 9, 0), 60)
        starts = self.local_starts(self.rule(frequency=Frequency.MONTHLY, month_day=15, count=3), seed=seed)
        self.assertEqual([s.date() for s in starts], [date(2027, 1, 15), date(2027, 2, 15), date(2027, 3, 15)])

    def test_on_date_is_inclusive(self):
        rule = self.rule(
            frequency=Frequency.WEEKLY,
            weekdays=[0],
            termination=Termination.ON_DATE,
            end_date=date(2027, 1, 18),
        )
        starts = self.local_starts(rule)
        self.assertEqual([s.date() for s in starts], [date(2027, 1, 4), date(2027, 1, 11), date(2027, 1, 18)])

    def test_never_is_capped_by_max_instances(self):
        rule = self.rule(frequency=Frequency.DAILY, termination=Termination.NEVER)
        instances = list(RecurrenceExpansion(self.seed, rule, max_instances=10))
        self.assertEqual(len(instances), 10)

    def test_never_is_capped_by_horizon(self):
        rule = self.rule(frequency=Frequency.WEEKLY, interval=4, weekdays=[0], termination=Termination.NEVER)
        instances = list(RecurrenceExpansion(self.seed, rule, max_instances=500, horizon_days=365))
        self.assertEqual(len(instances), 14)
        self.assertLessEqual(instances[-1].start, self.seed.start + timedelta(days=365))

    def test_wall_clock_kept_across_dst(self):
        """Europe/Paris switches to summer time on 2027-03-28."""
        seed = Interval.from_duration(aware(2027, 3, 22, 9, 0), 60)
        starts = self.local_starts(self.rule(frequency=Frequency.WEEKLY, weekdays=[0], count=2), seed=seed)
        self.assertEqual([s.hour for s in starts], [9, 9])
        self.assertNotEqual(starts[0].utcoffset(), starts[1].utcoffset())

    def test_duration_preserved(self):
        for instance in expand(self.seed, self.rule(frequency=Frequency.DAILY, count=3)):
            self.assertEqual(instance.duration, timedelta(minutes=60))

    def test_expansion_is_restartable(self):
        expansion = expand(self.seed, self.rule(frequency=Frequency.DAILY, count=5))
        self.assertEqual(list(expansion), list(expansion))


class RecurrenceValidationTests(SimpleTestCase):
    def setUp(self):
        self.seed = Interval.from_duration(aware(2027, 1, 4, 9, 0), 60)

    def assertInvalid(self, **kwargs):
        kwargs.setdefault("interval", 1)
        kwargs.setdefault("weekdays", [])
        kwargs.setdefault("termination", Termination.AFTER_COUNT)
        kwargs.setdefault("count", 3)
        with self.assertRaises(ValidationError) as ctx:
            validate_rule(RecurrenceRule(**kwargs), self.seed)
        self.assertEqual(ctx.exception.code, "invalid_recurrence")

    def test_weekly_without_weekdays(self):
        self.assertInvalid(frequency=Frequency.WEEKLY)

    def test_weekday_out_of_range(self):
        self.assertInvalid(frequency=Frequency.WEEKLY, weekdays=[7])

    def test_weekdays_on_daily_rule(self):
        self.assertInvalid(frequency=Frequency.DAILY, weekdays=[1])

    def test_month_day_on_weekly_rule(self):
        self.assertInvalid(frequency=Frequency.WEEKLY, weekdays=[0], month_day=3)

    def test_zero_interval(self):
        self.assertInvalid(frequency=Frequency.DAILY, interval=0)

    def test_zero_count(self):
        self.assertInvalid(frequency=Frequency.DAILY, count=0)

    def test_count_above_maximum(self):
        self.assertInvalid(frequency=Frequency.DAILY, count=105)

    def test_on_date_without_end_date(self):
        self.assertInvalid(frequency=Frequency.DAILY, termination=Termination.ON_DATE, count=None)

    def test_end_date_before_seed(self):
        self.assertInvalid(
            frequency=Frequency.DAILY,
            termination=Termination.ON_DATE,
            end_date=date(2027, 1, 3),
            count=None,
        )

    def test_unknown_frequency(self):
        self.assertInvalid(frequency="HOURLY")


class StateMachineTests(SimpleTestCase):
    def test_appointment_happy_path(self):
        appointment = Appointment(status=Appointment.Status.PENDING)
        apply_appointment_action(appointment, CONFIRM)
        self.assertEqual(appointment.status, Appointment.Status.CONFIRMED)
        self.assertIsNotNone(appointment.confirmed_at)

        apply_appointment_action(appointment, COMPLETE)
        self.assertEqual(appointment.status, Appointment.Status.COMPLETED)

    def test_auto_confirm_only_from_pending(self):
        self.assertTrue(appointment_machine.can(Appointment.Status.PENDING, AUTO_CONFIRM))
        self.assertFalse(appointment_machine.can(Appointment.Status.CONFIRMED, AUTO_CONFIRM))

    def test_terminal_statuses_accept_nothing(self):
        for status in (Appointment.Status.COMPLETED, Appointment.Status.CANCELLED, Appointment.Status.NO_SHOW):
            self.assertTrue(appointment_machine.is_terminal(status))
            appointment = Appointment(status=status)
            with self.assertRaises(StateTransitionError):
                apply_appointment_action(appointment, CANCEL)
            self.assertEqual(appointment.status, status)

    def test_action_for_names_current_status(self):
        with self.assertRaises(StateTransitionError) as ctx:
            appointment_machine.action_for(Appointment.Status.PENDING, Appointment.Status.COMPLETED)
        self.assertEqual(ctx.exception.current, Appointment.Status.PENDING)
        self.assertEqual(ctx.exception.attempted, COMPLETE)

    def test_action_for_unknown_target(self):
        with self.assertRaises(ValidationError):
            appointment_machine.action_for(Appointment.Status.PENDING, Appointment.Status.PENDING)

    def test_registration_attend_requires_confirmation(self):
        registration = Registration(status=Registration.Status.REGISTERED)
        with self.assertRaises(StateTransitionError):
            apply_registration_action(registration, ATTEND)

        apply_registration_action(registration, CONFIRM)
        apply_registration_action(registration, ATTEND)
        self.assertEqual(registration.status, Registration.Status.ATTENDED)
        self.assertTrue(registration_machine.is_terminal(registration.status))

    def test_registration_cancel_stamps_time(self):
        registration = Registration(status=Registration.Status.CONFIRMED)
        apply_registration_action(registration, CANCEL)
        self.assertEqual(registration.status, Registration.Status.CANCELLED)
        self.assertIsNotNone(registration.cancelled_at)


class KeyedLockRegistryTests(SimpleTestCase):
    def test_entry_dropped_after_release(self):
        registry = KeyedLockRegistry()
        with registry.hold(1):
            self.assertEqual(len(registry), 1)
        self.assertEqual(len(registry), 0)

    def test_keys_are_independent(self):
        registry = KeyedLockRegistry()
        with registry.hold(1), registry.hold(2):
            self.assertEqual(len(registry), 2)
        self.assertEqual(len(registry), 0)

    def test_entry_dropped_when_body_raises(self):
        registry = KeyedLockRegistry()
        with self.assertRaises(ValueError):
            with registry.hold(1):
                raise ValueError
        self.assertEqual(len(registry), 0)

    def test_waiting_thread_gets_the_lock_after_release(self):
        registry = KeyedLockRegistry()
        entered = threading.Event()
        done = []

        def worker():
            entered.set()
            with registry.hold(7):
                done.append(len(registry))

        with registry.hold(7):
            thread = threading.Thread(target=worker)
            thread.start()
            entered.wait()
            self.assertEqual(len(registry), 1)
        thread.join()

        self.assertEqual(done, [1])
        self.assertEqual(len(registry), 0)
