from rest_framework import serializers

from .models import Appointment, RecurrenceRule
from .services.booking_service import ConflictPolicy
from .services.recurrence import BIWEEKLY, normalize_frequency


class RecurrenceSerializer(serializers.Serializer):
    """
    Request serializer for a recurrence rule.

    Field-level checks only; whether the rule can actually be expanded from
    the requested start is decided by the recurrence expander.
    BIWEEKLY is shorthand for WEEKLY every 2 weeks.
    """

    frequency = serializers.ChoiceField(choices=RecurrenceRule.Frequency.values + [BIWEEKLY])
    interval = serializers.IntegerField(min_value=1, default=1)
    weekdays = serializers.ListField(
        child=serializers.IntegerField(min_value=0, max_value=6),
        required=False,
        default=list,
        help_text="0 = Monday ... 6 = Sunday. Weekly rules only.",
    )
    month_day = serializers.IntegerField(min_value=1, max_value=31, required=False, allow_null=True)
    termination = serializers.ChoiceField(
        choices=RecurrenceRule.Termination.values,
        default=RecurrenceRule.Termination.AFTER_COUNT,
    )
    end_date = serializers.DateField(required=False, allow_null=True)
    count = serializers.IntegerField(min_value=1, required=False, allow_null=True)

    def validate(self, attrs):
        frequency, interval = normalize_frequency(attrs["frequency"], attrs.get("interval", 1))
        attrs["frequency"] = frequency
        attrs["interval"] = interval
        attrs["weekdays"] = sorted(set(attrs.get("weekdays") or []))
        return attrs


class CreateAppointmentSerializer(serializers.Serializer):
    """
    Request serializer for booking an appointment or a recurring series.

    client_id defaults to the requesting user; only the provider (or staff)
    may book on someone else's behalf.
    """

    provider_id = serializers.IntegerField()
    service_id = serializers.IntegerField()
    client_id = serializers.IntegerField(required=False)
    start_time = serializers.DateTimeField(
        help_text="Start of the first appointment, ISO 8601.",
    )
    notes = serializers.CharField(required=False, allow_blank=True, default="")
    recurrence = RecurrenceSerializer(required=False, allow_null=True)
    conflict_policy = serializers.ChoiceField(
        choices=ConflictPolicy.choices,
        default=ConflictPolicy.SKIP,
    )

    def build_rule(self):
        """An unsaved RecurrenceRule for the series, or None for a one-off booking."""
        data = self.validated_data.get("recurrence")
        if not data:
            return None
        return RecurrenceRule(
            frequency=data["frequency"],
            interval=data["interval"],
            weekdays=data["weekdays"],
            month_day=data.get("month_day"),
            termination=data["termination"],
            end_date=data.get("end_date"),
            count=data.get("count"),
        )


class RescheduleAppointmentSerializer(serializers.Serializer):
    start_time = serializers.DateTimeField()


class AppointmentStatusSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=Appointment.Status.choices)


class AppointmentResponseSerializer(serializers.ModelSerializer):
    """
    Response serializer for an appointment.
    """

    client_name = serializers.CharField(source="client.name", read_only=True)
    service_name = serializers.CharField(source="service.name", read_only=True)
    service_duration = serializers.IntegerField(source="service.duration_minutes", read_only=True)
    status_display = serializers.CharField(source="get_status_display", read_only=True)

    class Meta:
        model = Appointment
        fields = [
            "id",
            "provider",
            "client",
            "client_name",
            "service",
            "service_name",
            "service_duration",
            "start_time",
            "end_time",
            "status",
            "status_display",
            "notes",
            "recurrence_rule",
            "series_parent",
            "confirmed_at",
            "cancelled_at",
            "created_at",
        ]
        read_only_fields = fields


class RejectedInstanceSerializer(serializers.Serializer):
    start_time = serializers.DateTimeField(source="start")
    reason = serializers.CharField()
    code = serializers.CharField()
