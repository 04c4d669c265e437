"""
URL configuration for practice_scheduler project.

Each app exposes its JSON API under its own prefix; see the app's urls.py.
"""

from django.contrib import admin
from django.urls import include, path

urlpatterns = [
    path("admin/", admin.site.urls),
    path("api/auth/", include("accounts.urls")),
    path("providers/", include("providers.urls")),
    path("appointments/", include("appointments.urls")),
    path("sessions/", include("group_sessions.urls")),
]
