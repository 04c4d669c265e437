from django.urls import path
from . import api_views

app_name = "appointments"

urlpatterns = [
    path(
        "api/",
        api_views.AppointmentCreateAPIView.as_view(),
        name="api_create_appointment",
    ),
    path(
        "api/mine/",
        api_views.ClientAgendaAPIView.as_view(),
        name="api_client_agenda",
    ),
    path(
        "api/<int:appointment_id>/",
        api_views.AppointmentDetailAPIView.as_view(),
        name="api_appointment_detail",
    ),
    path(
        "api/<int:appointment_id>/status/",
        api_views.AppointmentStatusAPIView.as_view(),
        name="api_appointment_status",
    ),
]
