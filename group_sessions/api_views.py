from rest_framework import status
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from accounts.permissions import can_manage_provider
from appointments.exceptions import SchedulingError

from .models import GroupClass, GroupSession, Registration
from .serializers import (
    AddParticipantSerializer,
    CreateGroupSessionSerializer,
    GroupSessionSerializer,
    RegistrationSerializer,
    RegistrationStatusSerializer,
)
from .services import (
    cancel_group_session,
    create_group_session,
    register_client,
    try_register,
    update_registration_status,
)


def _error_response(e):
    return Response(e.as_dict(), status=e.http_status)


class GroupSessionDetailAPIView(APIView):
    """
    GET /sessions/api/<session_id>/

    Session details including seats left.
    """

    permission_classes = [IsAuthenticated]

    def get(self, request, session_id):
        session = GroupSession.objects.select_related("group_class").filter(id=session_id).first()
        if session is None:
            return Response({"detail": "Session not found."}, status=status.HTTP_404_NOT_FOUND)
        return Response(GroupSessionSerializer(session).data, status=status.HTTP_200_OK)


class RegisterForSessionAPIView(APIView):
    """
    POST /sessions/api/<session_id>/register/

    Register the requesting user for a group session.

    Success Response (201): the registration.

    Error Responses:
        400: Session cancelled, completed or already started.
        404: Unknown session.
        409: Session full (capacity_exceeded) or already registered.
    """

    permission_classes = [IsAuthenticated]

    def post(self, request, session_id):
        try:
            registration = try_register(session_id, request.user)
        except SchedulingError as e:
            return _error_response(e)

        return Response(RegistrationSerializer(registration).data, status=status.HTTP_201_CREATED)


class SessionRegistrationsAPIView(APIView):
    """
    GET  /sessions/api/<session_id>/registrations/  : every registration, oldest first
    POST /sessions/api/<session_id>/registrations/  : {"client_id"} registers a client

    Provider (or staff) only. Adding a client takes a seat exactly like a
    self-registration does.

    Error Responses:
        403: Not the session's provider.
        404: Unknown session or client.
        409: Session full (capacity_exceeded) or already registered.
    """

    permission_classes = [IsAuthenticated]

    def _get_managed_session(self, request, session_id):
        session = GroupSession.objects.select_related("provider").filter(id=session_id).first()
        if session is None:
            return None, Response({"detail": "Session not found."}, status=status.HTTP_404_NOT_FOUND)
        if not can_manage_provider(request.user, session.provider):
            return None, Response(
                {"detail": "You can only manage participants of your own sessions."},
                status=status.HTTP_403_FORBIDDEN,
            )
        return session, None

    def get(self, request, session_id):
        session, error = self._get_managed_session(request, session_id)
        if error:
            return error

        registrations = session.registrations.select_related("client").order_by("registered_at", "id")
        return Response(
            {
                "session": session.id,
                "current_participants": session.current_participants,
                "max_participants": session.max_participants,
                "results": RegistrationSerializer(registrations, many=True).data,
            },
            status=status.HTTP_200_OK,
        )

    def post(self, request, session_id):
        session, error = self._get_managed_session(request, session_id)
        if error:
            return error

        serializer = AddParticipantSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        try:
            registration = register_client(session.id, serializer.validated_data["client_id"])
        except SchedulingError as e:
            return _error_response(e)

        return Response(RegistrationSerializer(registration).data, status=status.HTTP_201_CREATED)


class RegistrationStatusAPIView(APIView):
    """
    PATCH /sessions/api/registrations/<registration_id>/status/

    Request body: {"status": "CONFIRMED" | "CANCELLED" | "ATTENDED" | "NO_SHOW"}

    Clients may only cancel their own registration; the provider (or staff)
    drives every other transition.
    """

    permission_classes = [IsAuthenticated]

    def patch(self, request, registration_id):
        registration = (
            Registration.objects.select_related("session__provider")
            .filter(id=registration_id)
            .first()
        )
        if registration is None:
            return Response({"detail": "Registration not found."}, status=status.HTTP_404_NOT_FOUND)

        is_owner = registration.client_id == request.user.id
        is_manager = can_manage_provider(request.user, registration.session.provider)
        if not (is_owner or is_manager):
            return Response({"detail": "Registration not found."}, status=status.HTTP_404_NOT_FOUND)

        serializer = RegistrationStatusSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
        new_status = serializer.validated_data["status"]

        if not is_manager and new_status != Registration.Status.CANCELLED:
            return Response(
                {"detail": "Only the provider can change this registration's status."},
                status=status.HTTP_403_FORBIDDEN,
            )

        try:
            registration = update_registration_status(registration_id, new_status)
        except SchedulingError as e:
            return _error_response(e)

        return Response(RegistrationSerializer(registration).data, status=status.HTTP_200_OK)


class GroupClassSessionsAPIView(APIView):
    """
    GET  /sessions/api/classes/<class_id>/sessions/  : upcoming scheduled sessions
    POST /sessions/api/classes/<class_id>/sessions/  : {"start_time", "max_participants"?, "notes"?}

    Scheduling a session conflict-checks it against the provider's calendar (409).
    """

    permission_classes = [IsAuthenticated]

    def get(self, request, class_id):
        group_class = GroupClass.objects.filter(id=class_id).first()
        if group_class is None:
            return Response({"detail": "Group class not found."}, status=status.HTTP_404_NOT_FOUND)
        sessions = group_class.sessions.filter(status=GroupSession.Status.SCHEDULED).select_related("group_class")
        return Response(
            {"results": GroupSessionSerializer(sessions, many=True).data},
            status=status.HTTP_200_OK,
        )

    def post(self, request, class_id):
        group_class = GroupClass.objects.select_related("provider").filter(id=class_id).first()
        if group_class is None:
            return Response({"detail": "Group class not found."}, status=status.HTTP_404_NOT_FOUND)
        if not can_manage_provider(request.user, group_class.provider):
            return Response(
                {"detail": "You can only schedule sessions on your own calendar."},
                status=status.HTTP_403_FORBIDDEN,
            )

        serializer = CreateGroupSessionSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
        data = serializer.validated_data

        try:
            session = create_group_session(
                group_class.id,
                data["start_time"],
                notes=data.get("notes", ""),
                max_participants=data.get("max_participants"),
            )
        except SchedulingError as e:
            return _error_response(e)

        return Response(GroupSessionSerializer(session).data, status=status.HTTP_201_CREATED)


class CancelGroupSessionAPIView(APIView):
    """
    POST /sessions/api/<session_id>/cancel/

    Cancel a session and every live registration in it.
    """

    permission_classes = [IsAuthenticated]

    def post(self, request, session_id):
        session = GroupSession.objects.select_related("provider").filter(id=session_id).first()
        if session is None:
            return Response({"detail": "Session not found."}, status=status.HTTP_404_NOT_FOUND)
        if not can_manage_provider(request.user, session.provider):
            return Response(
                {"detail": "You can only cancel sessions on your own calendar."},
                status=status.HTTP_403_FORBIDDEN,
            )

        try:
            session = cancel_group_session(session_id)
        except SchedulingError as e:
            return _error_response(e)

        return Response(GroupSessionSerializer(session).data, status=status.HTTP_200_OK)
