from django.contrib import admin
from .models import AvailabilityRule, BlockedRange, ProviderProfile, Service


class AvailabilityRuleInline(admin.TabularInline):
    model = AvailabilityRule
    extra = 0
    max_num = 7
    ordering = ["day_of_week"]


class ServiceInline(admin.TabularInline):
    model = Service
    extra = 0
    fields = ["name", "duration_minutes", "price", "active"]


@admin.register(ProviderProfile)
class ProviderProfileAdmin(admin.ModelAdmin):
    list_display = ["user", "display_name", "buffer_time_minutes", "auto_confirm_bookings"]
    list_filter = ["auto_confirm_bookings"]
    search_fields = ["user__name", "user__email", "display_name"]
    raw_id_fields = ["user"]
    inlines = [AvailabilityRuleInline, ServiceInline]


@admin.register(AvailabilityRule)
class AvailabilityRuleAdmin(admin.ModelAdmin):
    list_display = ["provider", "get_day_display", "start_time", "end_time"]
    list_filter = ["day_of_week"]
    search_fields = ["provider__user__name", "provider__display_name"]
    ordering = ["provider", "day_of_week"]

    def get_day_display(self, obj):
        return obj.get_day_of_week_display()
    get_day_display.short_description = "Day"
    get_day_display.admin_order_field = "day_of_week"


@admin.register(Service)
class ServiceAdmin(admin.ModelAdmin):
    list_display = ["name", "provider", "duration_minutes", "price", "active"]
    list_filter = ["active", "provider"]
    search_fields = ["name", "provider__user__name"]
    list_editable = ["active"]


@admin.register(BlockedRange)
class BlockedRangeAdmin(admin.ModelAdmin):
    list_display = ["label", "provider", "start_time", "end_time"]
    list_filter = ["provider"]
    search_fields = ["label", "notes"]
    date_hierarchy = "start_time"
    readonly_fields = ["provider", "start_time", "end_time"]

    def has_add_permission(self, request):
        return False
