from rest_framework import serializers

from .models import GroupClass, GroupSession, Registration


class GroupClassSerializer(serializers.ModelSerializer):
    class Meta:
        model = GroupClass
        fields = ["id", "provider", "name", "description", "duration_minutes", "max_participants", "price", "active"]
        read_only_fields = fields


class GroupSessionSerializer(serializers.ModelSerializer):
    """Response serializer for a scheduled group session."""

    class_name = serializers.CharField(source="group_class.name", read_only=True)
    spots_left = serializers.IntegerField(read_only=True)
    status_display = serializers.CharField(source="get_status_display", read_only=True)

    class Meta:
        model = GroupSession
        fields = [
            "id",
            "group_class",
            "class_name",
            "provider",
            "start_time",
            "end_time",
            "max_participants",
            "current_participants",
            "spots_left",
            "status",
            "status_display",
            "notes",
        ]
        read_only_fields = fields


class CreateGroupSessionSerializer(serializers.Serializer):
    start_time = serializers.DateTimeField()
    max_participants = serializers.IntegerField(min_value=1, required=False)
    notes = serializers.CharField(required=False, allow_blank=True, default="")


class RegistrationSerializer(serializers.ModelSerializer):
    client_name = serializers.CharField(source="client.name", read_only=True)
    status_display = serializers.CharField(source="get_status_display", read_only=True)

    class Meta:
        model = Registration
        fields = ["id", "session", "client", "client_name", "status", "status_display", "registered_at", "cancelled_at"]
        read_only_fields = fields


class RegistrationStatusSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=Registration.Status.choices)


class AddParticipantSerializer(serializers.Serializer):
    client_id = serializers.IntegerField(min_value=1)
