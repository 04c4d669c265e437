from django.urls import path
from . import api_views

app_name = "group_sessions"

urlpatterns = [
    path(
        "api/<int:session_id>/",
        api_views.GroupSessionDetailAPIView.as_view(),
        name="api_session_detail",
    ),
    path(
        "api/<int:session_id>/register/",
        api_views.RegisterForSessionAPIView.as_view(),
        name="api_session_register",
    ),
    path(
        "api/<int:session_id>/registrations/",
        api_views.SessionRegistrationsAPIView.as_view(),
        name="api_session_registrations",
    ),
    path(
        "api/<int:session_id>/cancel/",
        api_views.CancelGroupSessionAPIView.as_view(),
        name="api_session_cancel",
    ),
    path(
        "api/registrations/<int:registration_id>/status/",
        api_views.RegistrationStatusAPIView.as_view(),
        name="api_registration_status",
    ),
    path(
        "api/classes/<int:class_id>/sessions/",
        api_views.GroupClassSessionsAPIView.as_view(),
        name="api_class_sessions",
    ),
]
