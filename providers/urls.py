from django.urls import path
from . import api_views

app_name = "providers"

urlpatterns = [
    path(
        "api/<int:provider_id>/services/",
        api_views.ProviderServicesAPIView.as_view(),
        name="api_provider_services",
    ),
    path(
        "api/<int:provider_id>/check-conflict/",
        api_views.CheckConflictAPIView.as_view(),
        name="api_check_conflict",
    ),
    path(
        "api/<int:provider_id>/availability/",
        api_views.WeeklyScheduleAPIView.as_view(),
        name="api_weekly_schedule",
    ),
    path(
        "api/<int:provider_id>/availability/<int:day>/",
        api_views.AvailabilityDayAPIView.as_view(),
        name="api_availability_day",
    ),
    path(
        "api/<int:provider_id>/available-slots/",
        api_views.AvailableSlotsAPIView.as_view(),
        name="api_available_slots",
    ),
    path(
        "api/<int:provider_id>/settings/",
        api_views.ProviderSettingsAPIView.as_view(),
        name="api_provider_settings",
    ),
    path(
        "api/<int:provider_id>/blocked-ranges/",
        api_views.BlockedRangeListCreateAPIView.as_view(),
        name="api_blocked_ranges",
    ),
    path(
        "api/blocked-ranges/<int:block_id>/",
        api_views.BlockedRangeDetailAPIView.as_view(),
        name="api_blocked_range_detail",
    ),
    path(
        "api/<int:provider_id>/calendar/",
        api_views.ProviderCalendarAPIView.as_view(),
        name="api_provider_calendar",
    ),
]
