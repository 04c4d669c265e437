"""
Tests for group sessions and their capacity counter.

Covers:
- Registration (capacity, duplicates, auto-confirm, closed sessions)
- Cancellation freeing exactly one seat
- Concurrent registrations for the last seat
- Counter reconciliation service and management command
- Session scheduling and cancellation
- Provider-side participant list and registration on a client's behalf
- Admin pages cannot edit schedule, status or capacity
- API endpoints under /sessions/api/
"""

import threading
from datetime import datetime, time, timedelta
from io import StringIO

from django.contrib import admin
from django.contrib.auth import get_user_model
from django.core.management import call_command
from django.db import connection
from django.test import RequestFactory, TestCase, TransactionTestCase
from django.urls import reverse
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APIClient

from appointments.exceptions import (
    AlreadyRegisteredError,
    CapacityExceededError,
    ConflictError,
    NotFoundError,
    SchedulingError,
    StateTransitionError,
    ValidationError,
)
from appointments.models import Appointment
from group_sessions.models import GroupClass, GroupSession, Registration
from group_sessions.services import (
    cancel_group_session,
    cancel_registration,
    create_group_session,
    reconcile_participants,
    register_client,
    try_register,
    update_registration_status,
)
from providers.models import ProviderProfile, Service

User = get_user_model()


def next_weekday(weekday, weeks_ahead=1):
    today = timezone.localdate()
    return today + timedelta(days=(weekday - today.weekday()) % 7 + 7 * weeks_ahead)


def at(day, hour, minute=0):
    return timezone.make_aware(datetime.combine(day, time(hour, minute)))


class GroupSessionTestMixin:
    """Shared setup: a provider running a 3-seat class next Wednesday."""

    def setUp(self):
        self.provider_user = User.objects.create_user(
            email="provider@example.com",
            password="testpass123",
            name="Dana Provider",
            role="PROVIDER",
        )
        self.provider = ProviderProfile.objects.create(user=self.provider_user)
        self.group_class = GroupClass.objects.create(
            provider=self.provider,
            name="Morning Yoga",
            duration_minutes=60,
            max_participants=3,
        )
        self.wednesday = next_weekday(2)
        self.session = GroupSession.objects.create(
            group_class=self.group_class,
            provider=self.provider,
            start_time=at(self.wednesday, 9),
            end_time=at(self.wednesday, 10),
            max_participants=3,
        )
        self.clients = [
            User.objects.create_user(
                email=f"client{i}@example.com",
                password="testpass123",
                name=f"Client {i}",
                role="CLIENT",
            )
            for i in range(4)
        ]

    def reload_session(self):
        self.session.refresh_from_db()
        return self.session


# ════════════════════════════════════════════════════════════════════════
#  Service Layer Tests
# ════════════════════════════════════════════════════════════════════════


class RegistrationTests(GroupSessionTestMixin, TestCase):
    def test_fill_session_then_reject(self):
        for client in self.clients[:3]:
            try_register(self.session.id, client)

        self.assertEqual(self.reload_session().current_participants, 3)
        self.assertTrue(self.session.is_full)

        with self.assertRaises(CapacityExceededError) as ctx:
            try_register(self.session.id, self.clients[3])
        self.assertEqual(ctx.exception.code, "capacity_exceeded")
        self.assertEqual(self.reload_session().current_participants, 3)
        self.assertEqual(Registration.objects.filter(session=self.session).count(), 3)

    def test_cancel_frees_a_seat(self):
        registrations = [try_register(self.session.id, client) for client in self.clients[:3]]

        cancel_registration(registrations[0].id)
        self.assertEqual(self.reload_session().current_participants, 2)

        try_register(self.session.id, self.clients[3])
        self.assertEqual(self.reload_session().current_participants, 3)

    def test_double_cancel_decrements_once(self):
        registration = try_register(self.session.id, self.clients[0])
        try_register(self.session.id, self.clients[1])

        cancel_registration(registration.id)
        cancel_registration(registration.id)

        self.assertEqual(self.reload_session().current_participants, 1)
        registration.refresh_from_db()
        self.assertEqual(registration.status, Registration.Status.CANCELLED)
        self.assertIsNotNone(registration.cancelled_at)

    def test_already_registered(self):
        try_register(self.session.id, self.clients[0])
        with self.assertRaises(AlreadyRegisteredError):
            try_register(self.session.id, self.clients[0])
        self.assertEqual(self.reload_session().current_participants, 1)

    def test_can_register_again_after_cancelling(self):
        registration = try_register(self.session.id, self.clients[0])
        cancel_registration(registration.id)

        again = try_register(self.session.id, self.clients[0])

        self.assertNotEqual(again.id, registration.id)
        self.assertEqual(self.reload_session().current_participants, 1)

    def test_default_status_is_registered(self):
        registration = try_register(self.session.id, self.clients[0])
        self.assertEqual(registration.status, Registration.Status.REGISTERED)

    def test_auto_confirm(self):
        self.provider.auto_confirm_bookings = True
        self.provider.save()
        registration = try_register(self.session.id, self.clients[0])
        self.assertEqual(registration.status, Registration.Status.CONFIRMED)

    def test_cancelled_session_is_closed(self):
        GroupSession.objects.filter(id=self.session.id).update(status=GroupSession.Status.CANCELLED)
        with self.assertRaises(ValidationError) as ctx:
            try_register(self.session.id, self.clients[0])
        self.assertEqual(ctx.exception.code, "session_closed")

    def test_started_session_is_closed(self):
        GroupSession.objects.filter(id=self.session.id).update(
            start_time=timezone.now() - timedelta(minutes=5),
            end_time=timezone.now() + timedelta(minutes=55),
        )
        with self.assertRaises(ValidationError) as ctx:
            try_register(self.session.id, self.clients[0])
        self.assertEqual(ctx.exception.code, "session_started")

    def test_registration_lifecycle(self):
        registration = try_register(self.session.id, self.clients[0])

        registration = update_registration_status(registration.id, Registration.Status.CONFIRMED)
        self.assertEqual(registration.status, Registration.Status.CONFIRMED)

        registration = update_registration_status(registration.id, Registration.Status.ATTENDED)
        self.assertEqual(registration.status, Registration.Status.ATTENDED)
        self.assertEqual(self.reload_session().current_participants, 1)

        with self.assertRaises(StateTransitionError):
            update_registration_status(registration.id, Registration.Status.NO_SHOW)

    def test_status_update_cancel_frees_seat(self):
        registration = try_register(self.session.id, self.clients[0])
        update_registration_status(registration.id, Registration.Status.CANCELLED)
        self.assertEqual(self.reload_session().current_participants, 0)

    def test_register_client_by_id(self):
        registration = register_client(self.session.id, self.clients[2].id)
        self.assertEqual(registration.client, self.clients[2])
        self.assertEqual(self.reload_session().current_participants, 1)

    def test_register_unknown_client(self):
        with self.assertRaises(NotFoundError):
            register_client(self.session.id, 999999)
        self.assertEqual(self.reload_session().current_participants, 0)

    def test_register_inactive_client(self):
        User.objects.filter(id=self.clients[2].id).update(is_active=False)
        with self.assertRaises(NotFoundError):
            register_client(self.session.id, self.clients[2].id)


class ReconcileTests(GroupSessionTestMixin, TestCase):
    def test_repairs_drifted_counter(self):
        for client in self.clients[:2]:
            Registration.objects.create(session=self.session, client=client)
        Registration.objects.create(
            session=self.session, client=self.clients[2], status=Registration.Status.CANCELLED,
        )

        self.assertEqual(reconcile_participants(self.session.id), (0, 2))
        self.assertEqual(self.reload_session().current_participants, 2)

    def test_consistent_counter_untouched(self):
        try_register(self.session.id, self.clients[0])
        self.assertEqual(reconcile_participants(self.session.id), (1, 1))

    def test_overbooked_session_reported(self):
        for client in self.clients:
            Registration.objects.create(session=self.session, client=client)
        with self.assertRaises(CapacityExceededError):
            reconcile_participants(self.session.id)

    def test_management_command(self):
        Registration.objects.create(session=self.session, client=self.clients[0])
        out = StringIO()

        call_command("reconcile_session_counters", stdout=out)

        self.assertIn("Reconciled 1 sessions: 1 repaired, 0 failed.", out.getvalue())
        self.assertEqual(self.reload_session().current_participants, 1)

    def test_management_command_reports_failures(self):
        for client in self.clients:
            Registration.objects.create(session=self.session, client=client)
        out = StringIO()

        call_command("reconcile_session_counters", "--session", str(self.session.id), stdout=out)

        self.assertIn("0 repaired, 1 failed.", out.getvalue())


class SessionLifecycleTests(GroupSessionTestMixin, TestCase):
    def test_create_session(self):
        session = create_group_session(self.group_class.id, at(self.wednesday, 11))

        self.assertEqual(session.end_time, at(self.wednesday, 12))
        self.assertEqual(session.max_participants, 3)
        self.assertEqual(session.current_participants, 0)

    def test_create_session_with_own_capacity(self):
        session = create_group_session(self.group_class.id, at(self.wednesday, 11), max_participants=10)
        self.assertEqual(session.max_participants, 10)

    def test_create_session_conflicts_with_appointment(self):
        client = self.clients[0]
        service = Service.objects.create(provider=self.provider, name="Private lesson", duration_minutes=60)
        Appointment.objects.create(
            provider=self.provider,
            client=client,
            service=service,
            start_time=at(self.wednesday, 11),
            end_time=at(self.wednesday, 12),
        )
        with self.assertRaises(ConflictError):
            create_group_session(self.group_class.id, at(self.wednesday, 11, 30))

    def test_create_session_conflicts_with_session(self):
        with self.assertRaises(ConflictError) as ctx:
            create_group_session(self.group_class.id, at(self.wednesday, 9, 30))
        self.assertEqual(ctx.exception.conflict_with.pk, self.session.id)

    def test_create_session_in_past(self):
        with self.assertRaises(ValidationError):
            create_group_session(self.group_class.id, timezone.now() - timedelta(days=1))

    def test_inactive_class(self):
        self.group_class.active = False
        self.group_class.save()
        with self.assertRaises(ValidationError):
            create_group_session(self.group_class.id, at(self.wednesday, 11))

    def test_cancel_session_cancels_registrations(self):
        for client in self.clients[:2]:
            try_register(self.session.id, client)

        session = cancel_group_session(self.session.id)

        self.assertEqual(session.status, GroupSession.Status.CANCELLED)
        self.assertEqual(self.reload_session().current_participants, 0)
        self.assertFalse(
            Registration.objects.filter(session=self.session).exclude(status=Registration.Status.CANCELLED).exists()
        )
        # Cancelling again is a no-op.
        cancel_group_session(self.session.id)

    def test_cancelled_session_frees_calendar(self):
        cancel_group_session(self.session.id)
        session = create_group_session(self.group_class.id, at(self.wednesday, 9))
        self.assertEqual(session.status, GroupSession.Status.SCHEDULED)

    def test_completed_session_cannot_be_cancelled(self):
        GroupSession.objects.filter(id=self.session.id).update(status=GroupSession.Status.COMPLETED)
        with self.assertRaises(StateTransitionError):
            cancel_group_session(self.session.id)


class ConcurrentRegistrationTests(GroupSessionTestMixin, TransactionTestCase):
    """Two clients racing for the last seat: exactly one gets it."""

    def setUp(self):
        super().setUp()
        GroupSession.objects.filter(id=self.session.id).update(max_participants=1)

    def test_only_one_registration_wins(self):
        barrier = threading.Barrier(2)
        outcomes = []
        outcomes_lock = threading.Lock()

        def register(client):
            try:
                barrier.wait()
                try:
                    try_register(self.session.id, client)
                    outcome = "registered"
                except SchedulingError as e:
                    outcome = e.code
                with outcomes_lock:
                    outcomes.append(outcome)
            finally:
                connection.close()

        threads = [threading.Thread(target=register, args=(client,)) for client in self.clients[:2]]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(sorted(outcomes), ["capacity_exceeded", "registered"])
        self.assertEqual(self.reload_session().current_participants, 1)
        self.assertEqual(
            Registration.objects.filter(session=self.session).exclude(status=Registration.Status.CANCELLED).count(),
            1,
        )


# ════════════════════════════════════════════════════════════════════════
#  API Tests
# ════════════════════════════════════════════════════════════════════════


class GroupSessionAPITests(GroupSessionTestMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.client = APIClient()
        self.client.force_authenticate(user=self.clients[0])

    def test_session_detail(self):
        response = self.client.get(reverse("group_sessions:api_session_detail", args=[self.session.id]))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["spots_left"], 3)
        self.assertEqual(response.data["class_name"], "Morning Yoga")

    def test_register(self):
        response = self.client.post(reverse("group_sessions:api_session_register", args=[self.session.id]))
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data["client"], self.clients[0].id)
        self.assertEqual(response.data["status"], "REGISTERED")

    def test_register_full_session_returns_409(self):
        GroupSession.objects.filter(id=self.session.id).update(max_participants=1)
        try_register(self.session.id, self.clients[1])

        response = self.client.post(reverse("group_sessions:api_session_register", args=[self.session.id]))

        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.data["code"], "capacity_exceeded")

    def test_register_twice_returns_409(self):
        url = reverse("group_sessions:api_session_register", args=[self.session.id])
        self.client.post(url)
        response = self.client.post(url)
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.data["code"], "already_registered")

    def test_register_unknown_session_returns_404(self):
        response = self.client.post(reverse("group_sessions:api_session_register", args=[999999]))
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_client_cancels_own_registration(self):
        registration = try_register(self.session.id, self.clients[0])
        url = reverse("group_sessions:api_registration_status", args=[registration.id])

        response = self.client.patch(url, {"status": "CANCELLED"}, format="json")

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(self.reload_session().current_participants, 0)

    def test_client_cannot_mark_attended(self):
        registration = try_register(self.session.id, self.clients[0])
        url = reverse("group_sessions:api_registration_status", args=[registration.id])
        response = self.client.patch(url, {"status": "ATTENDED"}, format="json")
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_other_client_cannot_see_registration(self):
        registration = try_register(self.session.id, self.clients[1])
        url = reverse("group_sessions:api_registration_status", args=[registration.id])
        response = self.client.patch(url, {"status": "CANCELLED"}, format="json")
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_provider_confirms_registration(self):
        registration = try_register(self.session.id, self.clients[0])
        self.client.force_authenticate(user=self.provider_user)
        url = reverse("group_sessions:api_registration_status", args=[registration.id])

        response = self.client.patch(url, {"status": "CONFIRMED"}, format="json")

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["status"], "CONFIRMED")

    def test_provider_schedules_session(self):
        self.client.force_authenticate(user=self.provider_user)
        url = reverse("group_sessions:api_class_sessions", args=[self.group_class.id])

        response = self.client.post(url, {"start_time": at(self.wednesday, 18).isoformat()}, format="json")

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data["max_participants"], 3)

        response = self.client.get(url)
        self.assertEqual(len(response.data["results"]), 2)

    def test_schedule_conflict_returns_409(self):
        self.client.force_authenticate(user=self.provider_user)
        url = reverse("group_sessions:api_class_sessions", args=[self.group_class.id])
        response = self.client.post(url, {"start_time": at(self.wednesday, 9, 30).isoformat()}, format="json")
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.data["conflict_with"]["type"], "group_session")

    def test_client_cannot_schedule_session(self):
        url = reverse("group_sessions:api_class_sessions", args=[self.group_class.id])
        response = self.client.post(url, {"start_time": at(self.wednesday, 18).isoformat()}, format="json")
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_provider_cancels_session(self):
        try_register(self.session.id, self.clients[0])
        self.client.force_authenticate(user=self.provider_user)

        response = self.client.post(reverse("group_sessions:api_session_cancel", args=[self.session.id]))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["status"], "CANCELLED")
        self.assertEqual(response.data["current_participants"], 0)

    def test_client_agenda_lists_registration(self):
        try_register(self.session.id, self.clients[0])
        response = self.client.get(reverse("appointments:api_client_agenda"))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["results"][0]["kind"], "group_session")
        self.assertEqual(response.data["results"][0]["registration_status"], "REGISTERED")

    def test_provider_lists_registrations(self):
        try_register(self.session.id, self.clients[0])
        cancelled = try_register(self.session.id, self.clients[1])
        cancel_registration(cancelled.id)
        self.client.force_authenticate(user=self.provider_user)

        response = self.client.get(reverse("group_sessions:api_session_registrations", args=[self.session.id]))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["current_participants"], 1)
        rows = response.data["results"]
        self.assertEqual([row["client"] for row in rows], [self.clients[0].id, self.clients[1].id])
        self.assertEqual([row["status"] for row in rows], ["REGISTERED", "CANCELLED"])

    def test_client_cannot_list_registrations(self):
        response = self.client.get(reverse("group_sessions:api_session_registrations", args=[self.session.id]))
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_list_registrations_unknown_session_returns_404(self):
        self.client.force_authenticate(user=self.provider_user)
        response = self.client.get(reverse("group_sessions:api_session_registrations", args=[999999]))
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_provider_adds_client(self):
        self.client.force_authenticate(user=self.provider_user)
        url = reverse("group_sessions:api_session_registrations", args=[self.session.id])

        response = self.client.post(url, {"client_id": self.clients[3].id}, format="json")

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data["client"], self.clients[3].id)
        self.assertEqual(self.reload_session().current_participants, 1)

        response = self.client.post(url, {"client_id": self.clients[3].id}, format="json")
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.data["code"], "already_registered")

    def test_provider_adds_client_to_full_session_returns_409(self):
        GroupSession.objects.filter(id=self.session.id).update(max_participants=1)
        try_register(self.session.id, self.clients[0])
        self.client.force_authenticate(user=self.provider_user)

        response = self.client.post(
            reverse("group_sessions:api_session_registrations", args=[self.session.id]),
            {"client_id": self.clients[1].id},
            format="json",
        )

        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.data["code"], "capacity_exceeded")

    def test_provider_adds_unknown_client_returns_404(self):
        self.client.force_authenticate(user=self.provider_user)
        response = self.client.post(
            reverse("group_sessions:api_session_registrations", args=[self.session.id]),
            {"client_id": 999999},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_add_client_requires_client_id(self):
        self.client.force_authenticate(user=self.provider_user)
        response = self.client.post(
            reverse("group_sessions:api_session_registrations", args=[self.session.id]), {}, format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_client_cannot_add_others(self):
        response = self.client.post(
            reverse("group_sessions:api_session_registrations", args=[self.session.id]),
            {"client_id": self.clients[1].id},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
        self.assertEqual(self.reload_session().current_participants, 0)


class GroupSessionAdminTests(GroupSessionTestMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.admin_user = User.objects.create_superuser(
            email="admin@example.com", password="testpass123", name="Site Admin",
        )
        self.request = RequestFactory().get("/")
        self.request.user = self.admin_user

    def test_session_capacity_and_schedule_are_read_only(self):
        model_admin = admin.site._registry[GroupSession]

        form_class = model_admin.get_form(self.request, self.session)

        for name in ("start_time", "end_time", "status", "max_participants", "current_participants"):
            self.assertNotIn(name, form_class.base_fields)
        self.assertFalse(model_admin.has_add_permission(self.request))

    def test_registration_cannot_be_edited_or_removed(self):
        registration = try_register(self.session.id, self.clients[0])
        model_admin = admin.site._registry[Registration]

        form_class = model_admin.get_form(self.request, registration)

        self.assertEqual(list(form_class.base_fields), [])
        self.assertFalse(model_admin.has_add_permission(self.request))
        self.assertFalse(model_admin.has_delete_permission(self.request, registration))
