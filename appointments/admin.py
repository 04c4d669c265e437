from django.contrib import admin
from .models import Appointment, RecurrenceRule


class SeriesInstanceInline(admin.TabularInline):
    model = Appointment
    fk_name = "series_parent"
    extra = 0
    fields = ["start_time", "end_time", "status"]
    readonly_fields = fields
    can_delete = False
    show_change_link = True

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(Appointment)
class AppointmentAdmin(admin.ModelAdmin):
    list_display = ["id", "client", "provider", "service", "start_time", "end_time", "status"]
    list_filter = ["status", "provider"]
    search_fields = ["client__name", "client__email", "service__name"]
    date_hierarchy = "start_time"
    # Schedule and status changes go through the booking service.
    readonly_fields = [
        "provider", "client", "service", "start_time", "end_time", "status",
        "recurrence_rule", "series_parent",
        "confirmed_at", "cancelled_at", "created_at", "updated_at",
    ]
    inlines = [SeriesInstanceInline]

    fieldsets = (
        (None, {"fields": ("provider", "client", "service")}),
        ("Schedule", {"fields": ("start_time", "end_time", "status", "notes")}),
        ("Series", {"fields": ("recurrence_rule", "series_parent")}),
        ("Timestamps", {"fields": ("confirmed_at", "cancelled_at", "created_at", "updated_at")}),
    )

    def has_add_permission(self, request):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(RecurrenceRule)
class RecurrenceRuleAdmin(admin.ModelAdmin):
    list_display = ["id", "frequency", "interval", "weekdays", "month_day", "termination", "end_date", "count"]
    list_filter = ["frequency", "termination"]
