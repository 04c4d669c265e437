from datetime import datetime

from django.utils import timezone
from rest_framework import status
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from accounts.permissions import can_manage_provider
from appointments.exceptions import SchedulingError
from appointments.services import (
    EntityRef,
    check_conflict,
    create_blocked_range,
    delete_blocked_range,
    get_provider_calendar,
    remove_availability_rule,
    update_blocked_range,
    update_provider_settings,
    upsert_availability_rule,
)

from .models import BlockedRange, ProviderProfile, Service
from .serializers import (
    AvailabilityRuleSerializer,
    AvailableSlotSerializer,
    BlockedRangeSerializer,
    CalendarQuerySerializer,
    ConflictCheckSerializer,
    DayRuleSerializer,
    MoveBlockedRangeSerializer,
    ProviderProfileSerializer,
    ProviderSettingsSerializer,
    ServiceSerializer,
    WeeklyScheduleDaySerializer,
)
from .services import generate_slots_for_date, get_weekly_schedule


def _error_response(e):
    return Response(e.as_dict(), status=e.http_status)


def _not_found():
    return Response({"detail": "Provider not found."}, status=status.HTTP_404_NOT_FOUND)


def _forbidden():
    return Response(
        {"detail": "You can only manage your own calendar."},
        status=status.HTTP_403_FORBIDDEN,
    )


class ProviderScopedAPIView(APIView):
    """
    Base view for /providers/api/<provider_id>/... endpoints.

    Resolves the provider and, for views with manage_required, checks the
    requesting user owns that calendar (or is staff).
    """

    permission_classes = [IsAuthenticated]
    manage_required = True

    def resolve_provider(self, request, provider_id):
        """Returns (provider, error_response)."""
        provider = ProviderProfile.objects.select_related("user").filter(id=provider_id).first()
        if provider is None:
            return None, _not_found()
        if self.manage_required and not can_manage_provider(request.user, provider):
            return None, _forbidden()
        return provider, None


class ProviderServicesAPIView(ProviderScopedAPIView):
    """
    GET /providers/api/<provider_id>/services/

    Active services a client can book with this provider.
    """

    manage_required = False

    def get(self, request, provider_id):
        provider, error = self.resolve_provider(request, provider_id)
        if error:
            return error
        services = Service.objects.filter(provider=provider, active=True)
        return Response(
            {
                "provider": ProviderProfileSerializer(provider).data,
                "results": ServiceSerializer(services, many=True).data,
            },
            status=status.HTTP_200_OK,
        )


class CheckConflictAPIView(ProviderScopedAPIView):
    """
    POST /providers/api/<provider_id>/check-conflict/

    Request body:
        {"start_time": "...", "end_time": "...", "exclude_type": "appointment", "exclude_id": 7}

    Response (200): {"has_conflict": bool, "conflicts": [...], "message": "..."}
    """

    manage_required = False

    def post(self, request, provider_id):
        provider, error = self.resolve_provider(request, provider_id)
        if error:
            return error

        serializer = ConflictCheckSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
        data = serializer.validated_data

        exclude = None
        if "exclude_type" in data:
            exclude = EntityRef(data["exclude_type"], data["exclude_id"])

        try:
            result = check_conflict(provider.id, data["start_time"], data["end_time"], exclude=exclude)
        except SchedulingError as e:
            return _error_response(e)

        return Response(result.as_dict(), status=status.HTTP_200_OK)


class WeeklyScheduleAPIView(ProviderScopedAPIView):
    """
    GET /providers/api/<provider_id>/availability/

    The provider's seven days, Monday first, with their open hours.
    """

    manage_required = False

    def get(self, request, provider_id):
        provider, error = self.resolve_provider(request, provider_id)
        if error:
            return error
        schedule = get_weekly_schedule(provider)
        return Response(
            {"results": WeeklyScheduleDaySerializer(schedule, many=True).data},
            status=status.HTTP_200_OK,
        )


class AvailabilityDayAPIView(ProviderScopedAPIView):
    """
    PUT    /providers/api/<provider_id>/availability/<day>/  : {"start_time": "09:00", "end_time": "17:00"}
    DELETE /providers/api/<provider_id>/availability/<day>/  : close that day

    day: 0 = Monday ... 6 = Sunday.
    """

    def put(self, request, provider_id, day):
        provider, error = self.resolve_provider(request, provider_id)
        if error:
            return error

        serializer = DayRuleSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        try:
            rule = upsert_availability_rule(
                provider.id,
                day,
                serializer.validated_data["start_time"],
                serializer.validated_data["end_time"],
            )
        except SchedulingError as e:
            return _error_response(e)

        return Response(AvailabilityRuleSerializer(rule).data, status=status.HTTP_200_OK)

    def delete(self, request, provider_id, day):
        provider, error = self.resolve_provider(request, provider_id)
        if error:
            return error

        try:
            remove_availability_rule(provider.id, day)
        except SchedulingError as e:
            return _error_response(e)

        return Response(status=status.HTTP_204_NO_CONTENT)


class AvailableSlotsAPIView(ProviderScopedAPIView):
    """
    GET /providers/api/<provider_id>/available-slots/?date=YYYY-MM-DD&service_id=Y

    Returns computed bookable time slots for a specific date.
    """

    manage_required = False

    def get(self, request, provider_id):
        provider, error = self.resolve_provider(request, provider_id)
        if error:
            return error

        date_str = request.query_params.get("date")
        service_id = request.query_params.get("service_id")

        errors = {}
        if not date_str:
            errors["date"] = "This query parameter is required (format: YYYY-MM-DD)."
        if not service_id:
            errors["service_id"] = "This query parameter is required."
        if errors:
            return Response(errors, status=status.HTTP_400_BAD_REQUEST)

        try:
            target_date = datetime.strptime(date_str, "%Y-%m-%d").date()
        except ValueError:
            return Response(
                {"date": "Invalid date format. Use YYYY-MM-DD."},
                status=status.HTTP_400_BAD_REQUEST,
            )

        if target_date < timezone.localdate():
            return Response(
                {"date": "Cannot view slots for past dates."},
                status=status.HTTP_400_BAD_REQUEST,
            )

        service = Service.objects.filter(id=service_id, provider=provider, active=True).first()
        if service is None:
            return Response(
                {"service_id": "Service not found for this provider."},
                status=status.HTTP_404_NOT_FOUND,
            )

        slots = generate_slots_for_date(provider, target_date, service.duration_minutes)

        return Response(
            {
                "date": date_str,
                "day_of_week": target_date.strftime("%A"),
                "provider_id": provider.id,
                "service": service.name,
                "duration_minutes": service.duration_minutes,
                "results": AvailableSlotSerializer(slots, many=True).data,
            },
            status=status.HTTP_200_OK,
        )


class ProviderSettingsAPIView(ProviderScopedAPIView):
    """
    GET   /providers/api/<provider_id>/settings/
    PATCH /providers/api/<provider_id>/settings/  : {"buffer_time_minutes": 15, "auto_confirm_bookings": true}
    """

    def get(self, request, provider_id):
        provider, error = self.resolve_provider(request, provider_id)
        if error:
            return error
        return Response(ProviderProfileSerializer(provider).data, status=status.HTTP_200_OK)

    def patch(self, request, provider_id):
        provider, error = self.resolve_provider(request, provider_id)
        if error:
            return error

        serializer = ProviderSettingsSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        try:
            provider = update_provider_settings(provider.id, **serializer.validated_data)
        except SchedulingError as e:
            return _error_response(e)

        return Response(ProviderProfileSerializer(provider).data, status=status.HTTP_200_OK)


class BlockedRangeListCreateAPIView(ProviderScopedAPIView):
    """
    GET  /providers/api/<provider_id>/blocked-ranges/
    POST /providers/api/<provider_id>/blocked-ranges/  : {"start_time", "end_time", "label", "notes"}

    Creating a range that overlaps anything already committed answers 409.
    """

    def get(self, request, provider_id):
        provider, error = self.resolve_provider(request, provider_id)
        if error:
            return error
        blocks = BlockedRange.objects.filter(provider=provider, end_time__gt=timezone.now())
        return Response(
            {"results": BlockedRangeSerializer(blocks, many=True).data},
            status=status.HTTP_200_OK,
        )

    def post(self, request, provider_id):
        provider, error = self.resolve_provider(request, provider_id)
        if error:
            return error

        serializer = BlockedRangeSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
        data = serializer.validated_data

        try:
            block = create_blocked_range(
                provider.id,
                data["start_time"],
                data["end_time"],
                data["label"],
                notes=data.get("notes", ""),
            )
        except SchedulingError as e:
            return _error_response(e)

        return Response(BlockedRangeSerializer(block).data, status=status.HTTP_201_CREATED)


class BlockedRangeDetailAPIView(APIView):
    """
    PATCH  /providers/api/blocked-ranges/<block_id>/  : move: {"start_time", "end_time"}
    DELETE /providers/api/blocked-ranges/<block_id>/
    """

    permission_classes = [IsAuthenticated]

    def _get_block(self, request, block_id):
        block = BlockedRange.objects.select_related("provider").filter(id=block_id).first()
        if block is None or not can_manage_provider(request.user, block.provider):
            return None
        return block

    def patch(self, request, block_id):
        if self._get_block(request, block_id) is None:
            return Response({"detail": "Blocked range not found."}, status=status.HTTP_404_NOT_FOUND)

        serializer = MoveBlockedRangeSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        try:
            block = update_blocked_range(
                block_id,
                serializer.validated_data["start_time"],
                serializer.validated_data["end_time"],
            )
        except SchedulingError as e:
            return _error_response(e)

        return Response(BlockedRangeSerializer(block).data, status=status.HTTP_200_OK)

    def delete(self, request, block_id):
        if self._get_block(request, block_id) is None:
            return Response({"detail": "Blocked range not found."}, status=status.HTTP_404_NOT_FOUND)

        try:
            delete_blocked_range(block_id)
        except SchedulingError as e:
            return _error_response(e)

        return Response(status=status.HTTP_204_NO_CONTENT)


class ProviderCalendarAPIView(ProviderScopedAPIView):
    """
    GET /providers/api/<provider_id>/calendar/?start=...&end=...&include_cancelled=false

    Appointments, group sessions and blocked ranges in one time-ordered list.
    """

    def get(self, request, provider_id):
        provider, error = self.resolve_provider(request, provider_id)
        if error:
            return error

        query = CalendarQuerySerializer(data=request.query_params)
        if not query.is_valid():
            return Response(query.errors, status=status.HTTP_400_BAD_REQUEST)

        try:
            items = get_provider_calendar(
                provider,
                query.validated_data["start"],
                query.validated_data["end"],
                include_cancelled=query.validated_data["include_cancelled"],
            )
        except SchedulingError as e:
            return _error_response(e)

        return Response({"results": items, "count": len(items)}, status=status.HTTP_200_OK)
