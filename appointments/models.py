from django.conf import settings
from django.db import models

from appointments.intervals import Interval


class RecurrenceRule(models.Model):
    """
    How a seed appointment repeats.

    Owned by the seed (first created instance) of a series; every instance
    points at the same rule. weekdays only applies to WEEKLY rules and uses
    Python's weekday() numbering (0 = Monday ... 6 = Sunday).
    """

    class Frequency(models.TextChoices):
        DAILY = "DAILY", "Daily"
        WEEKLY = "WEEKLY", "Weekly"
        MONTHLY = "MONTHLY", "Monthly"

    class Termination(models.TextChoices):
        NEVER = "NEVER", "Never"
        ON_DATE = "ON_DATE", "On date"
        AFTER_COUNT = "AFTER_COUNT", "After count"

    frequency = models.CharField(max_length=10, choices=Frequency.choices)
    interval = models.PositiveIntegerField(default=1)
    weekdays = models.JSONField(default=list, blank=True)
    month_day = models.PositiveSmallIntegerField(null=True, blank=True)
    termination = models.CharField(
        max_length=12, choices=Termination.choices, default=Termination.AFTER_COUNT
    )
    end_date = models.DateField(null=True, blank=True)
    count = models.PositiveIntegerField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = "Recurrence Rule"
        verbose_name_plural = "Recurrence Rules"

    def __str__(self):
        every = f"every {self.interval} " if self.interval > 1 else ""
        return f"{self.get_frequency_display()} {every}({self.get_termination_display()})".strip()


class Appointment(models.Model):
    """Core appointment booking record."""

    class Status(models.TextChoices):
        PENDING = "PENDING", "Pending"
        CONFIRMED = "CONFIRMED", "Confirmed"
        COMPLETED = "COMPLETED", "Completed"
        CANCELLED = "CANCELLED", "Cancelled"
        NO_SHOW = "NO_SHOW", "No Show"

    provider = models.ForeignKey(
        "providers.ProviderProfile",
        on_delete=models.CASCADE,
        related_name="appointments",
    )
    client = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="appointments_as_client",
    )
    service = models.ForeignKey(
        "providers.Service",
        on_delete=models.PROTECT,
        related_name="appointments",
    )
    start_time = models.DateTimeField()
    end_time = models.DateTimeField()
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.PENDING)
    recurrence_rule = models.ForeignKey(
        RecurrenceRule,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="appointments",
    )
    series_parent = models.ForeignKey(
        "self",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="series_instances",
    )
    notes = models.TextField(blank=True)
    confirmed_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["start_time"]
        verbose_name = "Appointment"
        verbose_name_plural = "Appointments"
        indexes = [
            models.Index(fields=["provider", "start_time"], name="appt_provider_start_idx"),
            models.Index(fields=["client", "start_time"], name="appt_client_start_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(end_time__gt=models.F("start_time")),
                name="appointment_end_after_start",
            ),
        ]

    def __str__(self):
        return f"{self.client.name} - {self.service.name} on {self.start_time:%Y-%m-%d %H:%M}"

    @property
    def interval(self):
        return Interval(self.start_time, self.end_time)

    @property
    def is_recurring(self):
        return self.recurrence_rule_id is not None
