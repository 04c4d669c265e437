"""
Tests for the appointment booking feature.

Covers:
- Booking service (happy path, buffers, conflicts across entity kinds)
- Recurring series (partial success, conflict policies, cancellation)
- Lifecycle (reschedule, status transitions, hard delete)
- Storage retry at the persistence boundary
- Concurrent overlapping bookings
- Admin pages cannot edit the schedule
- API endpoints under /appointments/api/
"""

import threading
from datetime import datetime, time, timedelta
from decimal import Decimal
from unittest.mock import patch

from django.contrib import admin
from django.contrib.auth import get_user_model
from django.db import OperationalError, connection
from django.test import Client, RequestFactory, TestCase, TransactionTestCase
from django.urls import reverse
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APIClient

from appointments.exceptions import (
    ConflictError,
    NotFoundError,
    StateTransitionError,
    StorageUnavailableError,
    ValidationError,
)
from appointments.models import Appointment, RecurrenceRule
from appointments.services import (
    ConflictPolicy,
    EntityRef,
    check_conflict,
    create_appointment,
    create_blocked_range,
    delete_appointment,
    locking,
    reschedule_appointment,
    update_appointment_status,
    update_blocked_range,
)
from group_sessions.models import GroupClass, GroupSession
from providers.models import AvailabilityRule, BlockedRange, ProviderProfile, Service

User = get_user_model()


def next_weekday(weekday, weeks_ahead=1):
    """A date on `weekday` (0 = Monday) at least `weeks_ahead` weeks from today."""
    today = timezone.localdate()
    return today + timedelta(days=(weekday - today.weekday()) % 7 + 7 * weeks_ahead)


def at(day, hour, minute=0):
    return timezone.make_aware(datetime.combine(day, time(hour, minute)))


class BookingTestMixin:
    """Shared setup for booking tests."""

    def setUp(self):
        self.provider_user = User.objects.create_user(
            email="provider@example.com",
            password="testpass123",
            name="Dana Provider",
            role="PROVIDER",
        )
        self.provider = ProviderProfile.objects.create(user=self.provider_user)
        self.client_user = User.objects.create_user(
            email="client@example.com",
            password="testpass123",
            name="Sam Client",
            role="CLIENT",
        )
        self.other_client = User.objects.create_user(
            email="other@example.com",
            password="testpass123",
            name="Alex Other",
            role="CLIENT",
        )
        self.service = Service.objects.create(
            provider=self.provider,
            name="Consultation",
            duration_minutes=60,
            price=Decimal("50.00"),
        )
        self.monday = next_weekday(0)

    def book(self, start, client=None, **kwargs):
        result = create_appointment(
            provider_id=self.provider.id,
            client_id=(client or self.client_user).id,
            service_id=self.service.id,
            start=start,
            **kwargs,
        )
        return result


# ════════════════════════════════════════════════════════════════════════
#  Service Layer Tests
# ════════════════════════════════════════════════════════════════════════


class BookingServiceTests(BookingTestMixin, TestCase):
    """Tests for create_appointment (one-off bookings)."""

    def test_successful_booking(self):
        result = self.book(at(self.monday, 14))

        self.assertEqual(len(result.created), 1)
        self.assertEqual(result.rejected, [])
        appointment = result.created[0]
        self.assertEqual(appointment.status, Appointment.Status.PENDING)
        self.assertEqual(appointment.start_time, at(self.monday, 14))
        self.assertEqual(appointment.end_time, at(self.monday, 15))
        self.assertIsNone(appointment.recurrence_rule)
        self.assertIsNone(appointment.confirmed_at)

    def test_overlapping_booking_conflicts(self):
        first = self.book(at(self.monday, 14)).created[0]

        with self.assertRaises(ConflictError) as ctx:
            self.book(at(self.monday, 14, 30), client=self.other_client)

        self.assertEqual(ctx.exception.conflict_with, EntityRef("appointment", first.id))
        self.assertEqual(ctx.exception.code, "conflict")
        self.assertEqual(Appointment.objects.count(), 1)

    def test_adjacent_booking_allowed(self):
        """An appointment ending at 15:00 does not block one starting at 15:00."""
        self.book(at(self.monday, 14))
        result = self.book(at(self.monday, 15), client=self.other_client)
        self.assertEqual(len(result.created), 1)

    def test_buffer_blocks_adjacent_booking(self):
        self.provider.buffer_time_minutes = 15
        self.provider.save()
        self.book(at(self.monday, 14))

        with self.assertRaises(ConflictError):
            self.book(at(self.monday, 15), client=self.other_client)

        result = self.book(at(self.monday, 15, 15), client=self.other_client)
        self.assertEqual(len(result.created), 1)

    def test_cancelled_slot_can_be_rebooked(self):
        first = self.book(at(self.monday, 14)).created[0]
        update_appointment_status(first.id, Appointment.Status.CANCELLED)

        result = self.book(at(self.monday, 14), client=self.other_client)
        self.assertEqual(len(result.created), 1)

    def test_blocked_range_conflicts(self):
        block = BlockedRange.objects.create(
            provider=self.provider,
            start_time=at(self.monday, 12),
            end_time=at(self.monday, 13),
            label="Lunch",
        )
        with self.assertRaises(ConflictError) as ctx:
            self.book(at(self.monday, 12, 30))
        self.assertEqual(ctx.exception.conflict_with, EntityRef("blocked_range", block.id))

    def test_group_session_conflicts(self):
        group_class = GroupClass.objects.create(
            provider=self.provider,
            name="Yoga",
            duration_minutes=60,
            max_participants=5,
        )
        session = GroupSession.objects.create(
            group_class=group_class,
            provider=self.provider,
            start_time=at(self.monday, 10),
            end_time=at(self.monday, 11),
            max_participants=5,
        )
        with self.assertRaises(ConflictError) as ctx:
            self.book(at(self.monday, 10))
        self.assertEqual(ctx.exception.conflict_with, EntityRef("group_session", session.id))

    def test_cancelled_group_session_does_not_conflict(self):
        group_class = GroupClass.objects.create(
            provider=self.provider,
            name="Yoga",
            duration_minutes=60,
            max_participants=5,
        )
        GroupSession.objects.create(
            group_class=group_class,
            provider=self.provider,
            start_time=at(self.monday, 10),
            end_time=at(self.monday, 11),
            max_participants=5,
            status=GroupSession.Status.CANCELLED,
        )
        result = self.book(at(self.monday, 10))
        self.assertEqual(len(result.created), 1)

    def test_other_provider_calendar_is_independent(self):
        other_user = User.objects.create_user(
            email="second@example.com", password="testpass123", name="Second", role="PROVIDER",
        )
        other_provider = ProviderProfile.objects.create(user=other_user)
        other_service = Service.objects.create(provider=other_provider, name="Massage", duration_minutes=60)
        self.book(at(self.monday, 14))

        result = create_appointment(
            provider_id=other_provider.id,
            client_id=self.client_user.id,
            service_id=other_service.id,
            start=at(self.monday, 14),
        )
        self.assertEqual(len(result.created), 1)

    def test_inactive_service_raises_error(self):
        self.service.active = False
        self.service.save()
        with self.assertRaises(ValidationError):
            self.book(at(self.monday, 14))

    def test_service_of_other_provider_not_found(self):
        other_user = User.objects.create_user(
            email="second@example.com", password="testpass123", name="Second", role="PROVIDER",
        )
        other_provider = ProviderProfile.objects.create(user=other_user)
        foreign_service = Service.objects.create(provider=other_provider, name="Massage", duration_minutes=30)

        with self.assertRaises(NotFoundError):
            create_appointment(
                provider_id=self.provider.id,
                client_id=self.client_user.id,
                service_id=foreign_service.id,
                start=at(self.monday, 14),
            )

    def test_past_start_raises_error(self):
        with self.assertRaises(ValidationError):
            self.book(timezone.now() - timedelta(hours=2))

    def test_unknown_provider_raises_not_found(self):
        with self.assertRaises(NotFoundError):
            create_appointment(
                provider_id=999999,
                client_id=self.client_user.id,
                service_id=self.service.id,
                start=at(self.monday, 14),
            )

    def test_auto_confirm_inside_working_hours(self):
        self.provider.auto_confirm_bookings = True
        self.provider.save()
        AvailabilityRule.objects.create(
            provider=self.provider, day_of_week=0, start_time=time(9), end_time=time(17),
        )

        appointment = self.book(at(self.monday, 14)).created[0]

        self.assertEqual(appointment.status, Appointment.Status.CONFIRMED)
        self.assertIsNotNone(appointment.confirmed_at)

    def test_auto_confirm_skipped_outside_working_hours(self):
        self.provider.auto_confirm_bookings = True
        self.provider.save()
        AvailabilityRule.objects.create(
            provider=self.provider, day_of_week=0, start_time=time(9), end_time=time(17),
        )

        appointment = self.book(at(self.monday, 17)).created[0]

        self.assertEqual(appointment.status, Appointment.Status.PENDING)

    def test_check_conflict_is_read_only(self):
        self.book(at(self.monday, 14))

        result = check_conflict(self.provider.id, at(self.monday, 14, 30), at(self.monday, 15, 30))
        self.assertTrue(result.has_conflict)
        self.assertEqual(len(result.conflicts), 1)
        self.assertIn("appointment", result.reason)

        result = check_conflict(self.provider.id, at(self.monday, 15), at(self.monday, 16))
        self.assertFalse(result.has_conflict)
        self.assertEqual(Appointment.objects.count(), 1)

    def test_provider_lock_not_kept_after_booking(self):
        self.book(at(self.monday, 14))
        with self.assertRaises(ConflictError):
            self.book(at(self.monday, 14), client=self.other_client)

        self.assertEqual(len(locking._provider_locks), 0)


class _StopAfter:
    """Stand-in for threading.Event that reports 'set' after n checks."""

    def __init__(self, n):
        self.n = n
        self.calls = 0

    def is_set(self):
        self.calls += 1
        return self.calls > self.n


class RecurringBookingTests(BookingTestMixin, TestCase):
    """Tests for recurring series creation."""

    def weekly_rule(self, count=4, weekdays=(0,)):
        return RecurrenceRule(
            frequency=RecurrenceRule.Frequency.WEEKLY,
            weekdays=list(weekdays),
            termination=RecurrenceRule.Termination.AFTER_COUNT,
            count=count,
        )

    def test_weekly_series_created(self):
        result = self.book(at(self.monday, 9), recurrence=self.weekly_rule(count=4))

        self.assertEqual(len(result.created), 4)
        self.assertEqual(result.rejected, [])
        starts = [a.start_time for a in result.created]
        self.assertEqual(starts, [at(self.monday + timedelta(weeks=k), 9) for k in range(4)])

        seed = result.created[0]
        self.assertIsNotNone(seed.recurrence_rule_id)
        self.assertIsNone(seed.series_parent_id)
        for instance in result.created[1:]:
            self.assertEqual(instance.recurrence_rule_id, seed.recurrence_rule_id)
            self.assertEqual(instance.series_parent_id, seed.id)
        self.assertEqual(RecurrenceRule.objects.count(), 1)

    def test_conflicting_instance_is_skipped(self):
        """Week 2 is taken; the other three instances are still booked."""
        week2 = self.monday + timedelta(weeks=1)
        self.book(at(week2, 9), client=self.other_client)

        result = self.book(at(self.monday, 9), recurrence=self.weekly_rule(count=4))

        self.assertEqual(len(result.created), 3)
        self.assertEqual(len(result.rejected), 1)
        rejected = result.rejected[0]
        self.assertEqual(rejected.start, at(week2, 9))
        self.assertEqual(rejected.code, "conflict")
        self.assertFalse(result.stopped_early)

    def test_stop_policy_halts_at_first_conflict(self):
        week2 = self.monday + timedelta(weeks=1)
        self.book(at(week2, 9), client=self.other_client)

        result = self.book(
            at(self.monday, 9),
            recurrence=self.weekly_rule(count=4),
            conflict_policy=ConflictPolicy.STOP,
        )

        self.assertEqual(len(result.created), 1)
        self.assertEqual(len(result.rejected), 1)
        self.assertTrue(result.stopped_early)

    def test_all_or_nothing_creates_nothing_on_conflict(self):
        week3 = self.monday + timedelta(weeks=2)
        self.book(at(week3, 9), client=self.other_client)

        with self.assertRaises(ConflictError):
            self.book(
                at(self.monday, 9),
                recurrence=self.weekly_rule(count=4),
                conflict_policy=ConflictPolicy.ALL_OR_NOTHING,
            )

        self.assertEqual(Appointment.objects.filter(client=self.client_user).count(), 0)
        self.assertEqual(RecurrenceRule.objects.count(), 0)

    def test_all_or_nothing_commits_whole_series(self):
        result = self.book(
            at(self.monday, 9),
            recurrence=self.weekly_rule(count=3),
            conflict_policy=ConflictPolicy.ALL_OR_NOTHING,
        )
        self.assertEqual(len(result.created), 3)
        self.assertEqual(RecurrenceRule.objects.count(), 1)

    def test_fully_conflicting_series_leaves_no_rule(self):
        for k in range(2):
            self.book(at(self.monday + timedelta(weeks=k), 9), client=self.other_client)

        result = self.book(at(self.monday, 9), recurrence=self.weekly_rule(count=2))

        self.assertEqual(result.created, [])
        self.assertEqual(len(result.rejected), 2)
        self.assertEqual(RecurrenceRule.objects.count(), 0)

    def test_cancel_event_stops_series_early(self):
        result = self.book(
            at(self.monday, 9),
            recurrence=self.weekly_rule(count=5),
            cancel_event=_StopAfter(2),
        )

        self.assertEqual(len(result.created), 2)
        self.assertTrue(result.stopped_early)
        self.assertEqual(Appointment.objects.count(), 2)

    def test_invalid_rule_creates_nothing(self):
        rule = RecurrenceRule(
            frequency=RecurrenceRule.Frequency.WEEKLY,
            weekdays=[],
            termination=RecurrenceRule.Termination.AFTER_COUNT,
            count=3,
        )
        with self.assertRaises(ValidationError):
            self.book(at(self.monday, 9), recurrence=rule)
        self.assertEqual(Appointment.objects.count(), 0)

    def test_unknown_conflict_policy_rejected(self):
        with self.assertRaises(ValidationError):
            self.book(at(self.monday, 9), recurrence=self.weekly_rule(), conflict_policy="MAYBE")

    def test_deleting_series_head_promotes_next_instance(self):
        first, second, third = self.book(at(self.monday, 9), recurrence=self.weekly_rule(count=3)).created

        delete_appointment(first.id)

        second.refresh_from_db()
        third.refresh_from_db()
        self.assertIsNone(second.series_parent_id)
        self.assertEqual(third.series_parent_id, second.id)
        self.assertEqual(third.recurrence_rule_id, second.recurrence_rule_id)

    def test_deleting_instance_keeps_series_head(self):
        first, second, third = self.book(at(self.monday, 9), recurrence=self.weekly_rule(count=3)).created

        delete_appointment(second.id)

        third.refresh_from_db()
        self.assertEqual(third.series_parent_id, first.id)


class AppointmentLifecycleTests(BookingTestMixin, TestCase):
    """Tests for reschedule, status transitions and deletion."""

    def setUp(self):
        super().setUp()
        self.appointment = self.book(at(self.monday, 14)).created[0]

    def test_reschedule_to_free_slot(self):
        moved = reschedule_appointment(self.appointment.id, at(self.monday, 16))
        self.assertEqual(moved.start_time, at(self.monday, 16))
        self.assertEqual(moved.end_time, at(self.monday, 17))

    def test_reschedule_overlapping_its_own_slot(self):
        """Moving by 30 minutes overlaps only the appointment itself."""
        moved = reschedule_appointment(self.appointment.id, at(self.monday, 14, 30))
        self.assertEqual(moved.start_time, at(self.monday, 14, 30))

    def test_reschedule_into_conflict(self):
        self.book(at(self.monday, 16), client=self.other_client)
        with self.assertRaises(ConflictError):
            reschedule_appointment(self.appointment.id, at(self.monday, 16, 30))

        self.appointment.refresh_from_db()
        self.assertEqual(self.appointment.start_time, at(self.monday, 14))

    def test_reschedule_terminal_appointment(self):
        update_appointment_status(self.appointment.id, Appointment.Status.CANCELLED)
        with self.assertRaises(StateTransitionError):
            reschedule_appointment(self.appointment.id, at(self.monday, 16))

    def test_confirm_then_complete(self):
        confirmed = update_appointment_status(self.appointment.id, Appointment.Status.CONFIRMED)
        self.assertEqual(confirmed.status, Appointment.Status.CONFIRMED)
        self.assertIsNotNone(confirmed.confirmed_at)

        completed = update_appointment_status(self.appointment.id, Appointment.Status.COMPLETED)
        self.assertEqual(completed.status, Appointment.Status.COMPLETED)

    def test_complete_from_pending_not_allowed(self):
        with self.assertRaises(StateTransitionError):
            update_appointment_status(self.appointment.id, Appointment.Status.COMPLETED)

    def test_terminal_state_is_final(self):
        update_appointment_status(self.appointment.id, Appointment.Status.CONFIRMED)
        update_appointment_status(self.appointment.id, Appointment.Status.NO_SHOW)

        with self.assertRaises(StateTransitionError) as ctx:
            update_appointment_status(self.appointment.id, Appointment.Status.CANCELLED)

        self.assertEqual(ctx.exception.current, Appointment.Status.NO_SHOW)
        self.appointment.refresh_from_db()
        self.assertEqual(self.appointment.status, Appointment.Status.NO_SHOW)

    def test_cancel_sets_timestamp(self):
        cancelled = update_appointment_status(self.appointment.id, Appointment.Status.CANCELLED)
        self.assertIsNotNone(cancelled.cancelled_at)

    def test_delete_upcoming_pending(self):
        delete_appointment(self.appointment.id)
        self.assertFalse(Appointment.objects.filter(id=self.appointment.id).exists())

    def test_delete_cancelled_not_allowed(self):
        update_appointment_status(self.appointment.id, Appointment.Status.CANCELLED)
        with self.assertRaises(StateTransitionError):
            delete_appointment(self.appointment.id)
        self.assertTrue(Appointment.objects.filter(id=self.appointment.id).exists())

    def test_delete_started_appointment_not_allowed(self):
        Appointment.objects.filter(id=self.appointment.id).update(
            start_time=timezone.now() - timedelta(minutes=30),
            end_time=timezone.now() + timedelta(minutes=30),
        )
        with self.assertRaises(StateTransitionError):
            delete_appointment(self.appointment.id)

    def test_delete_unknown_appointment(self):
        with self.assertRaises(NotFoundError):
            delete_appointment(999999)


class BlockedRangeServiceTests(BookingTestMixin, TestCase):
    def test_create_blocked_range(self):
        block = create_blocked_range(self.provider.id, at(self.monday, 12), at(self.monday, 13), "Lunch")
        self.assertEqual(block.label, "Lunch")

    def test_blocked_range_over_appointment_conflicts(self):
        self.book(at(self.monday, 14))
        with self.assertRaises(ConflictError):
            create_blocked_range(self.provider.id, at(self.monday, 13), at(self.monday, 14, 30), "Training")
        self.assertEqual(BlockedRange.objects.count(), 0)

    def test_blocked_range_requires_label(self):
        with self.assertRaises(ValidationError):
            create_blocked_range(self.provider.id, at(self.monday, 12), at(self.monday, 13), "  ")

    def test_blocked_range_requires_positive_length(self):
        with self.assertRaises(ValidationError):
            create_blocked_range(self.provider.id, at(self.monday, 13), at(self.monday, 13), "Nothing")

    def test_move_blocked_range_ignores_itself(self):
        block = create_blocked_range(self.provider.id, at(self.monday, 12), at(self.monday, 13), "Lunch")
        moved = update_blocked_range(block.id, at(self.monday, 12, 30), at(self.monday, 13, 30))
        self.assertEqual(moved.start_time, at(self.monday, 12, 30))

    def test_move_unknown_blocked_range(self):
        with self.assertRaises(NotFoundError):
            update_blocked_range(999999, at(self.monday, 12), at(self.monday, 13))

    def test_move_blocked_range_removed_while_waiting_for_lock(self):
        block = create_blocked_range(self.provider.id, at(self.monday, 12), at(self.monday, 13), "Lunch")

        # The first lookup still finds the row; it is gone once the lock is held.
        with patch.object(BlockedRange.objects, "get", side_effect=BlockedRange.DoesNotExist):
            with self.assertRaises(NotFoundError):
                update_blocked_range(block.id, at(self.monday, 12, 30), at(self.monday, 13, 30))


class StorageRetryTests(BookingTestMixin, TestCase):
    """Transient database errors are retried; domain errors are not."""

    @patch("appointments.services.locking.time.sleep")
    @patch("appointments.services.booking_service.ensure_no_conflict")
    def test_transient_error_is_retried(self, mock_check, mock_sleep):
        mock_check.side_effect = [OperationalError("database is locked"), None]

        result = self.book(at(self.monday, 14))

        self.assertEqual(len(result.created), 1)
        self.assertEqual(mock_check.call_count, 2)
        mock_sleep.assert_called_once()

    @patch("appointments.services.locking.time.sleep")
    @patch("appointments.services.booking_service.ensure_no_conflict")
    def test_persistent_error_surfaces_as_unavailable(self, mock_check, mock_sleep):
        mock_check.side_effect = OperationalError("database is locked")

        with self.assertRaises(StorageUnavailableError) as ctx:
            self.book(at(self.monday, 14))

        self.assertEqual(ctx.exception.http_status, status.HTTP_503_SERVICE_UNAVAILABLE)
        self.assertEqual(mock_check.call_count, 3)
        self.assertEqual(Appointment.objects.count(), 0)

    @patch("appointments.services.booking_service.ensure_no_conflict")
    def test_conflict_is_not_retried(self, mock_check):
        mock_check.side_effect = ConflictError()

        with self.assertRaises(ConflictError):
            self.book(at(self.monday, 14))

        self.assertEqual(mock_check.call_count, 1)


class ConcurrentBookingTests(BookingTestMixin, TransactionTestCase):
    """Two overlapping bookings racing for one provider: exactly one commits."""

    def test_only_one_overlapping_booking_commits(self):
        barrier = threading.Barrier(2)
        outcomes = []
        outcomes_lock = threading.Lock()

        def book(start, client):
            try:
                barrier.wait()
                try:
                    self.book(start, client=client)
                    outcome = "ok"
                except ConflictError as e:
                    outcome = e.code
                with outcomes_lock:
                    outcomes.append(outcome)
            finally:
                connection.close()

        threads = [
            threading.Thread(target=book, args=(at(self.monday, 14), self.client_user)),
            threading.Thread(target=book, args=(at(self.monday, 14, 30), self.other_client)),
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(sorted(outcomes), ["conflict", "ok"])
        self.assertEqual(Appointment.objects.count(), 1)


class AppointmentAdminTests(BookingTestMixin, TestCase):
    """The admin may annotate appointments but never move or transition them."""

    def setUp(self):
        super().setUp()
        self.admin_user = User.objects.create_superuser(
            email="admin@example.com", password="testpass123", name="Site Admin",
        )
        self.browser = Client()
        self.browser.force_login(self.admin_user)
        self.model_admin = admin.site._registry[Appointment]

    def test_schedule_fields_are_read_only(self):
        appointment = self.book(at(self.monday, 12)).created[0]
        request = RequestFactory().get("/")
        request.user = self.admin_user

        form_class = self.model_admin.get_form(request, appointment)

        self.assertEqual(list(form_class.base_fields), ["notes"])
        self.assertFalse(self.model_admin.has_add_permission(request))
        self.assertFalse(self.model_admin.has_delete_permission(request, appointment))

    def test_change_form_cannot_move_onto_taken_slot(self):
        self.book(at(self.monday, 10))
        other = self.book(at(self.monday, 12), client=self.other_client).created[0]
        url = reverse("admin:appointments_appointment_change", args=[other.id])

        response = self.browser.post(url, {
            "notes": "Moved by admin",
            "start_time_0": self.monday.isoformat(),
            "start_time_1": "10:00:00",
            "end_time_0": self.monday.isoformat(),
            "end_time_1": "11:00:00",
            "status": Appointment.Status.COMPLETED,
            "series_instances-TOTAL_FORMS": "0",
            "series_instances-INITIAL_FORMS": "0",
            "series_instances-MIN_NUM_FORMS": "0",
            "series_instances-MAX_NUM_FORMS": "1000",
            "_save": "Save",
        })

        self.assertEqual(response.status_code, 302)
        other.refresh_from_db()
        self.assertEqual(other.notes, "Moved by admin")
        self.assertEqual(other.start_time, at(self.monday, 12))
        self.assertEqual(other.status, Appointment.Status.PENDING)


# ════════════════════════════════════════════════════════════════════════
#  API Tests
# ════════════════════════════════════════════════════════════════════════


class AppointmentAPITests(BookingTestMixin, TestCase):
    """Tests for the /appointments/api/ endpoints."""

    def setUp(self):
        super().setUp()
        self.client = APIClient()
        self.client.force_authenticate(user=self.client_user)
        self.url = reverse("appointments:api_create_appointment")

    def payload(self, start, **extra):
        data = {
            "provider_id": self.provider.id,
            "service_id": self.service.id,
            "start_time": start.isoformat(),
        }
        data.update(extra)
        return data

    def test_successful_api_booking(self):
        response = self.client.post(self.url, self.payload(at(self.monday, 14)), format="json")

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(len(response.data["created"]), 1)
        self.assertEqual(response.data["rejected"], [])
        created = response.data["created"][0]
        self.assertEqual(created["status"], "PENDING")
        self.assertEqual(created["client"], self.client_user.id)
        self.assertEqual(created["service_name"], "Consultation")

    def test_unauthenticated_rejected(self):
        self.client.force_authenticate(user=None)
        response = self.client.post(self.url, self.payload(at(self.monday, 14)), format="json")
        self.assertIn(response.status_code, (status.HTTP_401_UNAUTHORIZED, status.HTTP_403_FORBIDDEN))

    def test_missing_fields_returns_400(self):
        response = self.client.post(self.url, {"provider_id": self.provider.id}, format="json")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn("service_id", response.data)
        self.assertIn("start_time", response.data)

    def test_conflict_returns_409(self):
        self.book(at(self.monday, 14), client=self.other_client)

        response = self.client.post(self.url, self.payload(at(self.monday, 14, 30)), format="json")

        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.data["code"], "conflict")
        self.assertEqual(response.data["conflict_with"]["type"], "appointment")

    def test_inactive_service_returns_400(self):
        self.service.active = False
        self.service.save()
        response = self.client.post(self.url, self.payload(at(self.monday, 14)), format="json")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data["code"], "inactive_service")

    def test_recurring_booking_reports_rejections(self):
        week2 = self.monday + timedelta(weeks=1)
        self.book(at(week2, 9), client=self.other_client)

        response = self.client.post(
            self.url,
            self.payload(
                at(self.monday, 9),
                recurrence={"frequency": "WEEKLY", "weekdays": [0], "termination": "AFTER_COUNT", "count": 3},
            ),
            format="json",
        )

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(len(response.data["created"]), 2)
        self.assertEqual(len(response.data["rejected"]), 1)
        self.assertEqual(response.data["rejected"][0]["code"], "conflict")

    def test_biweekly_is_weekly_every_two_weeks(self):
        response = self.client.post(
            self.url,
            self.payload(
                at(self.monday, 9),
                recurrence={"frequency": "BIWEEKLY", "weekdays": [0], "termination": "AFTER_COUNT", "count": 3},
            ),
            format="json",
        )

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        rule = RecurrenceRule.objects.get()
        self.assertEqual(rule.frequency, RecurrenceRule.Frequency.WEEKLY)
        self.assertEqual(rule.interval, 2)
        starts = list(Appointment.objects.order_by("start_time").values_list("start_time", flat=True))
        self.assertEqual(starts, [at(self.monday + timedelta(weeks=2 * k), 9) for k in range(3)])

    def test_invalid_recurrence_returns_400(self):
        response = self.client.post(
            self.url,
            self.payload(
                at(self.monday, 9),
                recurrence={"frequency": "WEEKLY", "termination": "AFTER_COUNT", "count": 3},
            ),
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data["code"], "invalid_recurrence")

    def test_weekday_out_of_range_returns_400(self):
        response = self.client.post(
            self.url,
            self.payload(
                at(self.monday, 9),
                recurrence={"frequency": "WEEKLY", "weekdays": [7], "termination": "AFTER_COUNT", "count": 3},
            ),
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_client_cannot_book_for_someone_else(self):
        response = self.client.post(
            self.url,
            self.payload(at(self.monday, 14), client_id=self.other_client.id),
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_provider_can_book_for_client(self):
        self.client.force_authenticate(user=self.provider_user)
        response = self.client.post(
            self.url,
            self.payload(at(self.monday, 14), client_id=self.client_user.id),
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data["created"][0]["client"], self.client_user.id)


class AppointmentDetailAPITests(BookingTestMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.appointment = self.book(at(self.monday, 14)).created[0]
        self.client = APIClient()
        self.client.force_authenticate(user=self.client_user)
        self.detail_url = reverse("appointments:api_appointment_detail", args=[self.appointment.id])
        self.status_url = reverse("appointments:api_appointment_status", args=[self.appointment.id])

    def test_get_own_appointment(self):
        response = self.client.get(self.detail_url)
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["id"], self.appointment.id)

    def test_stranger_gets_404(self):
        self.client.force_authenticate(user=self.other_client)
        response = self.client.get(self.detail_url)
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_reschedule(self):
        new_start = at(self.monday, 16)
        response = self.client.patch(self.detail_url, {"start_time": new_start.isoformat()}, format="json")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.appointment.refresh_from_db()
        self.assertEqual(self.appointment.start_time, new_start)

    def test_reschedule_conflict_returns_409(self):
        self.book(at(self.monday, 16), client=self.other_client)
        response = self.client.patch(
            self.detail_url, {"start_time": at(self.monday, 16).isoformat()}, format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)

    def test_delete_returns_204(self):
        response = self.client.delete(self.detail_url)
        self.assertEqual(response.status_code, status.HTTP_204_NO_CONTENT)
        self.assertFalse(Appointment.objects.filter(id=self.appointment.id).exists())

    def test_client_may_cancel(self):
        response = self.client.patch(self.status_url, {"status": "CANCELLED"}, format="json")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["status"], "CANCELLED")

    def test_client_may_not_confirm(self):
        response = self.client.patch(self.status_url, {"status": "CONFIRMED"}, format="json")
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_provider_confirms(self):
        self.client.force_authenticate(user=self.provider_user)
        response = self.client.patch(self.status_url, {"status": "CONFIRMED"}, format="json")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["status"], "CONFIRMED")

    def test_invalid_transition_returns_409(self):
        self.client.force_authenticate(user=self.provider_user)
        response = self.client.patch(self.status_url, {"status": "COMPLETED"}, format="json")
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.data["code"], "invalid_transition")
        self.assertEqual(response.data["current_status"], "PENDING")

    def test_unknown_status_returns_400(self):
        self.client.force_authenticate(user=self.provider_user)
        response = self.client.patch(self.status_url, {"status": "LOST"}, format="json")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_client_agenda(self):
        response = self.client.get(reverse("appointments:api_client_agenda"))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["count"], 1)
        self.assertEqual(response.data["results"][0]["kind"], "appointment")
        self.assertEqual(response.data["results"][0]["id"], self.appointment.id)
