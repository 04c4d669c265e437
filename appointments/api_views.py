from rest_framework import status
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from accounts.permissions import can_manage_provider
from providers.models import ProviderProfile

from .exceptions import SchedulingError
from .models import Appointment
from .serializers import (
    AppointmentResponseSerializer,
    AppointmentStatusSerializer,
    CreateAppointmentSerializer,
    RejectedInstanceSerializer,
    RescheduleAppointmentSerializer,
)
from .services import (
    create_appointment,
    delete_appointment,
    get_client_agenda,
    reschedule_appointment,
    update_appointment_status,
)


def _error_response(e):
    return Response(e.as_dict(), status=e.http_status)


def _get_owned_appointment(request, appointment_id):
    """
    The appointment if the requesting user is its client or manages its
    provider; otherwise None (reported as 404 so ids are not probed).
    """
    try:
        appointment = Appointment.objects.select_related("provider").get(id=appointment_id)
    except Appointment.DoesNotExist:
        return None
    if appointment.client_id == request.user.id or can_manage_provider(request.user, appointment.provider):
        return appointment
    return None


class AppointmentCreateAPIView(APIView):
    """
    POST /appointments/api/

    Book an appointment, or a recurring series of them.

    Request body:
        {
            "provider_id": 5,
            "service_id": 3,
            "start_time": "2026-02-20T14:00:00+01:00",
            "notes": "",                                  (optional)
            "client_id": 12,                              (provider/staff only)
            "recurrence": {                               (optional)
                "frequency": "WEEKLY",
                "weekdays": [0, 2],
                "termination": "AFTER_COUNT",
                "count": 8
            },
            "conflict_policy": "SKIP"                     (optional)
        }

    Success Response (201):
        {"created": [...appointments], "rejected": [{start_time, reason, code}], "stopped_early": false}

    Error Responses:
        400: Validation errors.
        403: Booking on behalf of someone without managing the provider.
        404: Unknown provider / service / client.
        409: The one-off booking (or an all-or-nothing series) conflicts.
    """

    permission_classes = [IsAuthenticated]

    def post(self, request):
        serializer = CreateAppointmentSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
        data = serializer.validated_data

        client_id = data.get("client_id", request.user.id)
        if client_id != request.user.id:
            provider = ProviderProfile.objects.filter(id=data["provider_id"]).first()
            if provider is None or not can_manage_provider(request.user, provider):
                return Response(
                    {"detail": "You can only book appointments for yourself."},
                    status=status.HTTP_403_FORBIDDEN,
                )

        try:
            result = create_appointment(
                provider_id=data["provider_id"],
                client_id=client_id,
                service_id=data["service_id"],
                start=data["start_time"],
                recurrence=serializer.build_rule(),
                notes=data.get("notes", ""),
                conflict_policy=data["conflict_policy"],
            )
        except SchedulingError as e:
            return _error_response(e)

        return Response(
            {
                "created": AppointmentResponseSerializer(result.created, many=True).data,
                "rejected": RejectedInstanceSerializer(result.rejected, many=True).data,
                "stopped_early": result.stopped_early,
            },
            status=status.HTTP_201_CREATED,
        )


class AppointmentDetailAPIView(APIView):
    """
    GET    /appointments/api/<id>/  : appointment details
    PATCH  /appointments/api/<id>/  : reschedule: {"start_time": "..."}
    DELETE /appointments/api/<id>/  : hard-delete an upcoming, non-terminal appointment
    """

    permission_classes = [IsAuthenticated]

    def get(self, request, appointment_id):
        appointment = _get_owned_appointment(request, appointment_id)
        if appointment is None:
            return Response({"detail": "Appointment not found."}, status=status.HTTP_404_NOT_FOUND)
        return Response(AppointmentResponseSerializer(appointment).data, status=status.HTTP_200_OK)

    def patch(self, request, appointment_id):
        if _get_owned_appointment(request, appointment_id) is None:
            return Response({"detail": "Appointment not found."}, status=status.HTTP_404_NOT_FOUND)

        serializer = RescheduleAppointmentSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        try:
            appointment = reschedule_appointment(appointment_id, serializer.validated_data["start_time"])
        except SchedulingError as e:
            return _error_response(e)

        return Response(AppointmentResponseSerializer(appointment).data, status=status.HTTP_200_OK)

    def delete(self, request, appointment_id):
        if _get_owned_appointment(request, appointment_id) is None:
            return Response({"detail": "Appointment not found."}, status=status.HTTP_404_NOT_FOUND)

        try:
            delete_appointment(appointment_id)
        except SchedulingError as e:
            return _error_response(e)

        return Response(status=status.HTTP_204_NO_CONTENT)


class AppointmentStatusAPIView(APIView):
    """
    PATCH /appointments/api/<id>/status/

    Request body: {"status": "CONFIRMED" | "CANCELLED" | "COMPLETED" | "NO_SHOW"}

    Clients may only cancel their own appointments; the provider (or staff)
    drives every other transition.
    """

    permission_classes = [IsAuthenticated]

    def patch(self, request, appointment_id):
        appointment = _get_owned_appointment(request, appointment_id)
        if appointment is None:
            return Response({"detail": "Appointment not found."}, status=status.HTTP_404_NOT_FOUND)

        serializer = AppointmentStatusSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
        new_status = serializer.validated_data["status"]

        is_manager = can_manage_provider(request.user, appointment.provider)
        if not is_manager and new_status != Appointment.Status.CANCELLED:
            return Response(
                {"detail": "Only the provider can change this appointment's status."},
                status=status.HTTP_403_FORBIDDEN,
            )

        try:
            appointment = update_appointment_status(appointment_id, new_status)
        except SchedulingError as e:
            return _error_response(e)

        return Response(AppointmentResponseSerializer(appointment).data, status=status.HTTP_200_OK)


class ClientAgendaAPIView(APIView):
    """
    GET /appointments/api/mine/

    Upcoming appointments and group-session registrations of the requesting
    user, soonest first.
    """

    permission_classes = [IsAuthenticated]

    def get(self, request):
        items = get_client_agenda(request.user)
        return Response({"results": items, "count": len(items)}, status=status.HTTP_200_OK)
