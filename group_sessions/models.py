from django.conf import settings
from django.core.validators import MinValueValidator
from django.db import models

from appointments.intervals import Interval


class GroupClass(models.Model):
    """Template a provider schedules concrete group sessions from."""

    provider = models.ForeignKey(
        "providers.ProviderProfile",
        on_delete=models.CASCADE,
        related_name="group_classes",
    )
    name = models.CharField(max_length=200)
    description = models.TextField(blank=True)
    duration_minutes = models.PositiveIntegerField(validators=[MinValueValidator(1)])
    max_participants = models.PositiveIntegerField(validators=[MinValueValidator(1)])
    price = models.DecimalField(max_digits=8, decimal_places=2, default=0)
    active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["name"]
        verbose_name = "Group Class"
        verbose_name_plural = "Group Classes"

    def __str__(self):
        return f"{self.name} (max {self.max_participants})"


class GroupSession(models.Model):
    """
    One scheduled occurrence of a GroupClass.

    current_participants is a cached count of non-cancelled registrations.
    It is only written by group_sessions.services under the session lock;
    the check constraints below reject anything that slips past it.
    """

    class Status(models.TextChoices):
        SCHEDULED = "SCHEDULED", "Scheduled"
        CANCELLED = "CANCELLED", "Cancelled"
        COMPLETED = "COMPLETED", "Completed"

    group_class = models.ForeignKey(
        GroupClass,
        on_delete=models.CASCADE,
        related_name="sessions",
    )
    provider = models.ForeignKey(
        "providers.ProviderProfile",
        on_delete=models.CASCADE,
        related_name="group_sessions",
    )
    start_time = models.DateTimeField()
    end_time = models.DateTimeField()
    max_participants = models.PositiveIntegerField(validators=[MinValueValidator(1)])
    current_participants = models.PositiveIntegerField(default=0)
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.SCHEDULED)
    notes = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["start_time"]
        verbose_name = "Group Session"
        verbose_name_plural = "Group Sessions"
        indexes = [
            models.Index(fields=["provider", "start_time"], name="session_provider_start_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(current_participants__gte=0),
                name="session_participants_non_negative",
            ),
            models.CheckConstraint(
                condition=models.Q(current_participants__lte=models.F("max_participants")),
                name="session_participants_within_capacity",
            ),
            models.CheckConstraint(
                condition=models.Q(end_time__gt=models.F("start_time")),
                name="session_end_after_start",
            ),
        ]

    def __str__(self):
        return f"{self.group_class.name} on {self.start_time:%Y-%m-%d %H:%M}"

    @property
    def interval(self):
        return Interval(self.start_time, self.end_time)

    @property
    def spots_left(self):
        return max(0, self.max_participants - self.current_participants)

    @property
    def is_full(self):
        return self.current_participants >= self.max_participants


class Registration(models.Model):
    """A client's seat in a group session."""

    class Status(models.TextChoices):
        REGISTERED = "REGISTERED", "Registered"
        CONFIRMED = "CONFIRMED", "Confirmed"
        CANCELLED = "CANCELLED", "Cancelled"
        ATTENDED = "ATTENDED", "Attended"
        NO_SHOW = "NO_SHOW", "No Show"

    session = models.ForeignKey(
        GroupSession,
        on_delete=models.CASCADE,
        related_name="registrations",
    )
    client = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="session_registrations",
    )
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.REGISTERED)
    registered_at = models.DateTimeField(auto_now_add=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["registered_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["session", "client"],
                condition=~models.Q(status="CANCELLED"),
                name="unique_live_registration_per_client",
            ),
        ]

    def __str__(self):
        return f"{self.client.name} → {self.session} ({self.status})"
