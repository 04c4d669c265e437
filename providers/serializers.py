from rest_framework import serializers

from .models import AvailabilityRule, BlockedRange, ProviderProfile, Service


class ProviderProfileSerializer(serializers.ModelSerializer):
    name = serializers.CharField(source="user.name", read_only=True)

    class Meta:
        model = ProviderProfile
        fields = ["id", "name", "display_name", "buffer_time_minutes", "auto_confirm_bookings"]
        read_only_fields = fields


class ServiceSerializer(serializers.ModelSerializer):
    """Serializer for services offered by a provider."""

    class Meta:
        model = Service
        fields = ["id", "name", "description", "duration_minutes", "price", "active"]


class AvailabilityRuleSerializer(serializers.ModelSerializer):
    day_name = serializers.CharField(source="get_day_of_week_display", read_only=True)

    class Meta:
        model = AvailabilityRule
        fields = ["id", "day_of_week", "day_name", "start_time", "end_time"]


class WeeklyScheduleDaySerializer(serializers.Serializer):
    day_of_week = serializers.IntegerField()
    day_name = serializers.CharField()
    is_open = serializers.BooleanField()
    start_time = serializers.TimeField(format="%H:%M", allow_null=True)
    end_time = serializers.TimeField(format="%H:%M", allow_null=True)


class DayRuleSerializer(serializers.Serializer):
    """Request body for setting one weekday's hours."""

    start_time = serializers.TimeField()
    end_time = serializers.TimeField()

    def validate(self, attrs):
        if attrs["start_time"] >= attrs["end_time"]:
            raise serializers.ValidationError({"end_time": "End time must be after start time."})
        return attrs


class AvailableSlotSerializer(serializers.Serializer):
    """Serializer for computed available time slots."""

    start_time = serializers.DateTimeField()
    end_time = serializers.DateTimeField()
    is_available = serializers.BooleanField()


class ProviderSettingsSerializer(serializers.Serializer):
    buffer_time_minutes = serializers.IntegerField(min_value=0, max_value=120, required=False)
    auto_confirm_bookings = serializers.BooleanField(required=False)

    def validate(self, attrs):
        if not attrs:
            raise serializers.ValidationError("Provide buffer_time_minutes and/or auto_confirm_bookings.")
        return attrs


class BlockedRangeSerializer(serializers.ModelSerializer):
    class Meta:
        model = BlockedRange
        fields = ["id", "provider", "start_time", "end_time", "label", "notes", "created_at"]
        read_only_fields = ["id", "provider", "created_at"]

    def validate(self, attrs):
        start = attrs.get("start_time")
        end = attrs.get("end_time")
        if start and end and end <= start:
            raise serializers.ValidationError({"end_time": "End time must be after start time."})
        return attrs


class MoveBlockedRangeSerializer(serializers.Serializer):
    start_time = serializers.DateTimeField()
    end_time = serializers.DateTimeField()


class CalendarQuerySerializer(serializers.Serializer):
    start = serializers.DateTimeField()
    end = serializers.DateTimeField()
    include_cancelled = serializers.BooleanField(required=False, default=False)

    def validate(self, attrs):
        if attrs["end"] <= attrs["start"]:
            raise serializers.ValidationError({"end": "End must be after start."})
        return attrs


class ConflictCheckSerializer(serializers.Serializer):
    """
    Request serializer for a read-only conflict check.

    exclude_type / exclude_id name the entity being edited so it does not
    conflict with its own current slot.
    """

    start_time = serializers.DateTimeField()
    end_time = serializers.DateTimeField()
    exclude_type = serializers.ChoiceField(
        choices=["appointment", "group_session", "blocked_range"],
        required=False,
    )
    exclude_id = serializers.IntegerField(required=False)

    def validate(self, attrs):
        if attrs["end_time"] <= attrs["start_time"]:
            raise serializers.ValidationError({"end_time": "End time must be after start time."})
        if ("exclude_type" in attrs) != ("exclude_id" in attrs):
            raise serializers.ValidationError("exclude_type and exclude_id must be given together.")
        return attrs
