"""
Tests for provider availability, blocked ranges and calendar views.

Covers:
- AvailabilityRule model validation
- Availability service (upsert/remove day rules, weekly schedule, working hours)
- Slot generation against committed intervals and buffer time
- Provider settings
- Blocked-range admin cannot move a block
- API endpoints under /providers/api/
"""

from datetime import datetime, time, timedelta
from decimal import Decimal

from django.contrib import admin
from django.contrib.auth import get_user_model
from django.core.exceptions import ValidationError as ModelValidationError
from django.test import RequestFactory, TestCase
from django.urls import reverse
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APIClient

from appointments.exceptions import ValidationError
from appointments.intervals import Interval
from appointments.models import Appointment
from group_sessions.models import GroupClass, GroupSession
from providers.models import AvailabilityRule, BlockedRange, ProviderProfile, Service
from providers.services import (
    generate_slots_for_date,
    get_weekly_schedule,
    is_within_working_hours,
    remove_day_rule,
    update_provider_settings,
    upsert_day_rule,
)

User = get_user_model()


def next_weekday(weekday, weeks_ahead=1):
    today = timezone.localdate()
    return today + timedelta(days=(weekday - today.weekday()) % 7 + 7 * weeks_ahead)


def at(day, hour, minute=0):
    return timezone.make_aware(datetime.combine(day, time(hour, minute)))


class ProviderTestMixin:
    """Shared setup: one provider with a 60 minute service, one client."""

    def setUp(self):
        self.provider_user = User.objects.create_user(
            email="provider@example.com",
            password="testpass123",
            name="Dana Provider",
            role="PROVIDER",
        )
        self.provider = ProviderProfile.objects.create(user=self.provider_user, display_name="Dana's Studio")
        self.client_user = User.objects.create_user(
            email="client@example.com",
            password="testpass123",
            name="Sam Client",
            role="CLIENT",
        )
        self.service = Service.objects.create(
            provider=self.provider,
            name="Consultation",
            duration_minutes=60,
            price=Decimal("50.00"),
        )
        self.monday = next_weekday(0)

    def add_appointment(self, start, status=Appointment.Status.CONFIRMED):
        return Appointment.objects.create(
            provider=self.provider,
            client=self.client_user,
            service=self.service,
            start_time=start,
            end_time=start + timedelta(minutes=self.service.duration_minutes),
            status=status,
        )


# ════════════════════════════════════════════════════════════════════════
#  Model & Service Tests
# ════════════════════════════════════════════════════════════════════════


class AvailabilityRuleModelTests(ProviderTestMixin, TestCase):
    def test_end_must_follow_start(self):
        with self.assertRaises(ModelValidationError):
            AvailabilityRule.objects.create(
                provider=self.provider, day_of_week=0, start_time=time(17), end_time=time(9),
            )

    def test_str(self):
        rule = AvailabilityRule.objects.create(
            provider=self.provider, day_of_week=0, start_time=time(9), end_time=time(17),
        )
        self.assertEqual(str(rule), "Dana's Studio - Monday (09:00-17:00)")


class AvailabilityServiceTests(ProviderTestMixin, TestCase):
    def test_upsert_creates_then_replaces(self):
        upsert_day_rule(self.provider, 0, time(9), time(17))
        upsert_day_rule(self.provider, 0, time(10), time(14))

        rules = AvailabilityRule.objects.filter(provider=self.provider, day_of_week=0)
        self.assertEqual(rules.count(), 1)
        self.assertEqual(rules.get().start_time, time(10))
        self.assertEqual(rules.get().end_time, time(14))

    def test_upsert_rejects_inverted_hours(self):
        with self.assertRaises(ValidationError) as ctx:
            upsert_day_rule(self.provider, 0, time(17), time(9))
        self.assertEqual(ctx.exception.code, "invalid_hours")

    def test_upsert_rejects_bad_day(self):
        with self.assertRaises(ValidationError):
            upsert_day_rule(self.provider, 7, time(9), time(17))

    def test_remove_day_rule(self):
        upsert_day_rule(self.provider, 2, time(9), time(17))
        self.assertTrue(remove_day_rule(self.provider, 2))
        self.assertFalse(remove_day_rule(self.provider, 2))

    def test_weekly_schedule_lists_seven_days(self):
        upsert_day_rule(self.provider, 0, time(9), time(17))
        upsert_day_rule(self.provider, 4, time(8), time(12))

        schedule = get_weekly_schedule(self.provider)

        self.assertEqual(len(schedule), 7)
        self.assertEqual(schedule[0]["day_name"], "Monday")
        self.assertTrue(schedule[0]["is_open"])
        self.assertEqual(schedule[4]["start_time"], time(8))
        self.assertFalse(schedule[6]["is_open"])
        self.assertIsNone(schedule[6]["start_time"])

    def test_within_working_hours(self):
        upsert_day_rule(self.provider, 0, time(9), time(17))

        self.assertTrue(is_within_working_hours(self.provider, Interval(at(self.monday, 9), at(self.monday, 10))))
        self.assertTrue(is_within_working_hours(self.provider, Interval(at(self.monday, 16), at(self.monday, 17))))
        self.assertFalse(is_within_working_hours(self.provider, Interval(at(self.monday, 8), at(self.monday, 10))))
        self.assertFalse(is_within_working_hours(self.provider, Interval(at(self.monday, 16), at(self.monday, 18))))

        tuesday = self.monday + timedelta(days=1)
        self.assertFalse(is_within_working_hours(self.provider, Interval(at(tuesday, 10), at(tuesday, 11))))

    def test_blocked_range_is_outside_working_hours(self):
        upsert_day_rule(self.provider, 0, time(9), time(17))
        BlockedRange.objects.create(
            provider=self.provider, start_time=at(self.monday, 12), end_time=at(self.monday, 13), label="Lunch",
        )
        self.assertFalse(
            is_within_working_hours(self.provider, Interval(at(self.monday, 12, 30), at(self.monday, 13, 30)))
        )

    def test_update_settings(self):
        update_provider_settings(self.provider, buffer_time_minutes=15, auto_confirm_bookings=True)
        self.provider.refresh_from_db()
        self.assertEqual(self.provider.buffer_time_minutes, 15)
        self.assertTrue(self.provider.auto_confirm_bookings)

    def test_update_settings_rejects_out_of_range_buffer(self):
        for value in (-1, 121, True, "10"):
            with self.assertRaises(ValidationError):
                update_provider_settings(self.provider, buffer_time_minutes=value)
        self.provider.refresh_from_db()
        self.assertEqual(self.provider.buffer_time_minutes, 0)


class SlotGenerationTests(ProviderTestMixin, TestCase):
    def setUp(self):
        super().setUp()
        upsert_day_rule(self.provider, 0, time(9), time(12))

    def availability(self):
        slots = generate_slots_for_date(self.provider, self.monday, 60)
        return [(timezone.localtime(s["start_time"]).hour, s["is_available"]) for s in slots]

    def test_all_free(self):
        self.assertEqual(self.availability(), [(9, True), (10, True), (11, True)])

    def test_booked_slot_unavailable(self):
        self.add_appointment(at(self.monday, 10))
        self.assertEqual(self.availability(), [(9, True), (10, False), (11, True)])

    def test_cancelled_appointment_frees_slot(self):
        self.add_appointment(at(self.monday, 10), status=Appointment.Status.CANCELLED)
        self.assertEqual(self.availability(), [(9, True), (10, True), (11, True)])

    def test_buffer_blocks_neighbouring_slots(self):
        self.provider.buffer_time_minutes = 15
        self.provider.save()
        self.add_appointment(at(self.monday, 10))
        self.assertEqual(self.availability(), [(9, False), (10, False), (11, False)])

    def test_group_session_blocks_slot(self):
        group_class = GroupClass.objects.create(
            provider=self.provider, name="Pilates", duration_minutes=60, max_participants=4,
        )
        GroupSession.objects.create(
            group_class=group_class,
            provider=self.provider,
            start_time=at(self.monday, 11),
            end_time=at(self.monday, 12),
            max_participants=4,
        )
        self.assertEqual(self.availability(), [(9, True), (10, True), (11, False)])

    def test_closed_day_has_no_slots(self):
        self.assertEqual(generate_slots_for_date(self.provider, self.monday + timedelta(days=1), 60), [])

    def test_partial_trailing_slot_dropped(self):
        slots = generate_slots_for_date(self.provider, self.monday, 45)
        self.assertEqual(len(slots), 4)
        self.assertEqual(timezone.localtime(slots[-1]["end_time"]).time(), time(12))


class BlockedRangeAdminTests(ProviderTestMixin, TestCase):
    def test_block_times_are_read_only(self):
        block = BlockedRange.objects.create(
            provider=self.provider,
            start_time=at(self.monday, 12),
            end_time=at(self.monday, 13),
            label="Lunch",
        )
        admin_user = User.objects.create_superuser(
            email="admin@example.com", password="testpass123", name="Site Admin",
        )
        request = RequestFactory().get("/")
        request.user = admin_user
        model_admin = admin.site._registry[BlockedRange]

        form_class = model_admin.get_form(request, block)

        self.assertEqual(sorted(form_class.base_fields), ["label", "notes"])
        self.assertFalse(model_admin.has_add_permission(request))


# ════════════════════════════════════════════════════════════════════════
#  API Tests
# ════════════════════════════════════════════════════════════════════════


class ProviderAPITestMixin(ProviderTestMixin):
    def setUp(self):
        super().setUp()
        self.client = APIClient()
        self.client.force_authenticate(user=self.provider_user)
        self.other_provider_user = User.objects.create_user(
            email="second@example.com",
            password="testpass123",
            name="Second Provider",
            role="PROVIDER",
        )
        self.other_provider = ProviderProfile.objects.create(user=self.other_provider_user)


class AvailabilityAPITests(ProviderAPITestMixin, TestCase):
    def test_put_day_rule(self):
        url = reverse("providers:api_availability_day", args=[self.provider.id, 0])
        response = self.client.put(url, {"start_time": "09:00", "end_time": "17:00"}, format="json")

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["day_name"], "Monday")
        self.assertTrue(AvailabilityRule.objects.filter(provider=self.provider, day_of_week=0).exists())

    def test_put_inverted_hours_returns_400(self):
        url = reverse("providers:api_availability_day", args=[self.provider.id, 0])
        response = self.client.put(url, {"start_time": "17:00", "end_time": "09:00"}, format="json")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_put_bad_day_returns_400(self):
        url = reverse("providers:api_availability_day", args=[self.provider.id, 9])
        response = self.client.put(url, {"start_time": "09:00", "end_time": "17:00"}, format="json")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data["code"], "invalid_day")

    def test_cannot_edit_other_provider(self):
        url = reverse("providers:api_availability_day", args=[self.other_provider.id, 0])
        response = self.client.put(url, {"start_time": "09:00", "end_time": "17:00"}, format="json")
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_delete_day_rule(self):
        upsert_day_rule(self.provider, 0, time(9), time(17))
        url = reverse("providers:api_availability_day", args=[self.provider.id, 0])
        response = self.client.delete(url)
        self.assertEqual(response.status_code, status.HTTP_204_NO_CONTENT)
        self.assertFalse(AvailabilityRule.objects.filter(provider=self.provider).exists())

    def test_weekly_schedule_visible_to_clients(self):
        upsert_day_rule(self.provider, 0, time(9), time(17))
        self.client.force_authenticate(user=self.client_user)

        response = self.client.get(reverse("providers:api_weekly_schedule", args=[self.provider.id]))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(len(response.data["results"]), 7)
        self.assertEqual(response.data["results"][0]["start_time"], "09:00")

    def test_unknown_provider_returns_404(self):
        response = self.client.get(reverse("providers:api_weekly_schedule", args=[999999]))
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)


class AvailableSlotsAPITests(ProviderAPITestMixin, TestCase):
    def setUp(self):
        super().setUp()
        upsert_day_rule(self.provider, 0, time(9), time(12))
        self.client.force_authenticate(user=self.client_user)
        self.url = reverse("providers:api_available_slots", args=[self.provider.id])

    def test_slots_for_date(self):
        self.add_appointment(at(self.monday, 10))
        response = self.client.get(self.url, {"date": self.monday.isoformat(), "service_id": self.service.id})

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["duration_minutes"], 60)
        self.assertEqual([s["is_available"] for s in response.data["results"]], [True, False, True])

    def test_missing_params(self):
        response = self.client.get(self.url)
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn("date", response.data)
        self.assertIn("service_id", response.data)

    def test_bad_date_format(self):
        response = self.client.get(self.url, {"date": "next monday", "service_id": self.service.id})
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_past_date(self):
        yesterday = timezone.localdate() - timedelta(days=1)
        response = self.client.get(self.url, {"date": yesterday.isoformat(), "service_id": self.service.id})
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_unknown_service(self):
        response = self.client.get(self.url, {"date": self.monday.isoformat(), "service_id": 999999})
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)


class ProviderSettingsAPITests(ProviderAPITestMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.url = reverse("providers:api_provider_settings", args=[self.provider.id])

    def test_get_settings(self):
        response = self.client.get(self.url)
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["buffer_time_minutes"], 0)
        self.assertFalse(response.data["auto_confirm_bookings"])

    def test_patch_settings(self):
        response = self.client.patch(self.url, {"buffer_time_minutes": 15}, format="json")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["buffer_time_minutes"], 15)

    def test_buffer_out_of_range(self):
        response = self.client.patch(self.url, {"buffer_time_minutes": 500}, format="json")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_empty_payload(self):
        response = self.client.patch(self.url, {}, format="json")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_client_cannot_change_settings(self):
        self.client.force_authenticate(user=self.client_user)
        response = self.client.patch(self.url, {"auto_confirm_bookings": True}, format="json")
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)


class BlockedRangeAPITests(ProviderAPITestMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.url = reverse("providers:api_blocked_ranges", args=[self.provider.id])

    def payload(self, start, end, label="Training"):
        return {"start_time": start.isoformat(), "end_time": end.isoformat(), "label": label}

    def test_create_and_list(self):
        response = self.client.post(self.url, self.payload(at(self.monday, 12), at(self.monday, 13)), format="json")
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data["provider"], self.provider.id)

        response = self.client.get(self.url)
        self.assertEqual(len(response.data["results"]), 1)

    def test_overlapping_appointment_returns_409(self):
        appointment = self.add_appointment(at(self.monday, 12))
        response = self.client.post(self.url, self.payload(at(self.monday, 11), at(self.monday, 13)), format="json")

        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.data["conflict_with"], {"type": "appointment", "id": appointment.id})

    def test_inverted_range_returns_400(self):
        response = self.client.post(self.url, self.payload(at(self.monday, 13), at(self.monday, 12)), format="json")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_move_and_delete(self):
        block = BlockedRange.objects.create(
            provider=self.provider, start_time=at(self.monday, 12), end_time=at(self.monday, 13), label="Lunch",
        )
        detail_url = reverse("providers:api_blocked_range_detail", args=[block.id])

        response = self.client.patch(
            detail_url,
            {"start_time": at(self.monday, 12, 30).isoformat(), "end_time": at(self.monday, 13, 30).isoformat()},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        block.refresh_from_db()
        self.assertEqual(block.start_time, at(self.monday, 12, 30))

        response = self.client.delete(detail_url)
        self.assertEqual(response.status_code, status.HTTP_204_NO_CONTENT)
        self.assertFalse(BlockedRange.objects.filter(id=block.id).exists())

    def test_other_provider_block_is_hidden(self):
        block = BlockedRange.objects.create(
            provider=self.other_provider, start_time=at(self.monday, 12), end_time=at(self.monday, 13), label="Off",
        )
        response = self.client.delete(reverse("providers:api_blocked_range_detail", args=[block.id]))
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.assertTrue(BlockedRange.objects.filter(id=block.id).exists())


class CheckConflictAPITests(ProviderAPITestMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.client.force_authenticate(user=self.client_user)
        self.url = reverse("providers:api_check_conflict", args=[self.provider.id])
        self.appointment = self.add_appointment(at(self.monday, 14))

    def test_reports_conflict(self):
        response = self.client.post(
            self.url,
            {"start_time": at(self.monday, 14, 30).isoformat(), "end_time": at(self.monday, 15, 30).isoformat()},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertTrue(response.data["has_conflict"])
        self.assertEqual(response.data["conflicts"][0]["id"], self.appointment.id)

    def test_excluded_entity_ignored(self):
        response = self.client.post(
            self.url,
            {
                "start_time": at(self.monday, 14, 30).isoformat(),
                "end_time": at(self.monday, 15, 30).isoformat(),
                "exclude_type": "appointment",
                "exclude_id": self.appointment.id,
            },
            format="json",
        )
        self.assertFalse(response.data["has_conflict"])
        self.assertEqual(response.data["message"], "No conflict.")

    def test_exclude_type_without_id(self):
        response = self.client.post(
            self.url,
            {
                "start_time": at(self.monday, 14, 30).isoformat(),
                "end_time": at(self.monday, 15, 30).isoformat(),
                "exclude_type": "appointment",
            },
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)


class ProviderCalendarAPITests(ProviderAPITestMixin, TestCase):
    def test_calendar_merges_all_kinds(self):
        self.add_appointment(at(self.monday, 14))
        self.add_appointment(at(self.monday, 16), status=Appointment.Status.CANCELLED)
        group_class = GroupClass.objects.create(
            provider=self.provider, name="Pilates", duration_minutes=60, max_participants=4,
        )
        GroupSession.objects.create(
            group_class=group_class,
            provider=self.provider,
            start_time=at(self.monday, 9),
            end_time=at(self.monday, 10),
            max_participants=4,
        )
        BlockedRange.objects.create(
            provider=self.provider, start_time=at(self.monday, 12), end_time=at(self.monday, 13), label="Lunch",
        )

        response = self.client.get(
            reverse("providers:api_provider_calendar", args=[self.provider.id]),
            {"start": at(self.monday, 0).isoformat(), "end": at(self.monday, 23).isoformat()},
        )

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["count"], 3)
        self.assertEqual(
            [item["kind"] for item in response.data["results"]],
            ["group_session", "blocked_range", "appointment"],
        )

    def test_calendar_requires_range(self):
        response = self.client.get(reverse("providers:api_provider_calendar", args=[self.provider.id]))
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_calendar_private_to_owner(self):
        self.client.force_authenticate(user=self.client_user)
        response = self.client.get(
            reverse("providers:api_provider_calendar", args=[self.provider.id]),
            {"start": at(self.monday, 0).isoformat(), "end": at(self.monday, 23).isoformat()},
        )
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
