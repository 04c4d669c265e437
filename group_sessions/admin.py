from django.contrib import admin
from .models import GroupClass, GroupSession, Registration


@admin.register(GroupClass)
class GroupClassAdmin(admin.ModelAdmin):
    list_display = ["name", "provider", "duration_minutes", "max_participants", "price", "active"]
    list_filter = ["active", "provider"]
    search_fields = ["name", "provider__user__name"]
    list_editable = ["active"]


class RegistrationInline(admin.TabularInline):
    model = Registration
    extra = 0
    fields = ["client", "status", "registered_at", "cancelled_at"]
    readonly_fields = fields
    can_delete = False

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(GroupSession)
class GroupSessionAdmin(admin.ModelAdmin):
    list_display = ["group_class", "provider", "start_time", "current_participants", "max_participants", "status"]
    list_filter = ["status", "provider"]
    search_fields = ["group_class__name"]
    date_hierarchy = "start_time"
    # Schedule, status and capacity are owned by the session service.
    readonly_fields = [
        "group_class", "provider", "start_time", "end_time", "status",
        "max_participants", "current_participants", "created_at", "updated_at",
    ]
    inlines = [RegistrationInline]

    def has_add_permission(self, request):
        return False


@admin.register(Registration)
class RegistrationAdmin(admin.ModelAdmin):
    list_display = ["client", "session", "status", "registered_at"]
    list_filter = ["status"]
    search_fields = ["client__name", "client__email", "session__group_class__name"]
    readonly_fields = ["client", "session", "status", "registered_at", "cancelled_at"]

    def has_add_permission(self, request):
        return False

    def has_delete_permission(self, request, obj=None):
        return False
