from django.conf import settings
from django.core.exceptions import ValidationError
from django.core.validators import MaxValueValidator, MinValueValidator
from django.db import models


class ProviderProfile(models.Model):
    """
    Scheduling profile of an independent service provider.

    Follows the same pattern as the rest of the site:
        CustomUser (auth/identity) ← OneToOne → ProviderProfile (domain data)

    The profile row is also the per-provider lock target: every
    "conflict check + commit" selects it FOR UPDATE.
    """

    user = models.OneToOneField(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="provider_profile",
        limit_choices_to={"role": "PROVIDER"},
    )
    display_name = models.CharField(max_length=255, blank=True)
    buffer_time_minutes = models.PositiveIntegerField(
        default=0,
        validators=[MaxValueValidator(120)],
        help_text="Minimum gap required around every committed interval (0-120).",
    )
    auto_confirm_bookings = models.BooleanField(
        default=False,
        help_text="Confirm in-hours, conflict-free bookings without manual review.",
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = "Provider Profile"
        verbose_name_plural = "Provider Profiles"

    def __str__(self):
        return self.display_name or self.user.name


class AvailabilityRule(models.Model):
    """
    Recurring weekly open hours for a provider.

    At most one rule per provider per day; no rule means closed that day.
    Updating a day replaces its rule rather than adding a second one.

    day_of_week uses Python's weekday() convention:
        0 = Monday, 1 = Tuesday, ..., 6 = Sunday
    """

    DAY_CHOICES = [
        (0, "Monday"),
        (1, "Tuesday"),
        (2, "Wednesday"),
        (3, "Thursday"),
        (4, "Friday"),
        (5, "Saturday"),
        (6, "Sunday"),
    ]

    provider = models.ForeignKey(
        ProviderProfile,
        on_delete=models.CASCADE,
        related_name="availability_rules",
    )
    day_of_week = models.IntegerField(choices=DAY_CHOICES)
    start_time = models.TimeField()
    end_time = models.TimeField()
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = "Availability Rule"
        verbose_name_plural = "Availability Rules"
        ordering = ["day_of_week"]
        constraints = [
            models.UniqueConstraint(
                fields=["provider", "day_of_week"],
                name="unique_availability_rule_per_provider_day",
            )
        ]

    def __str__(self):
        day = self.get_day_of_week_display()
        return f"{self.provider} - {day} ({self.start_time:%H:%M}-{self.end_time:%H:%M})"

    def clean(self):
        super().clean()
        if self.start_time and self.end_time and self.start_time >= self.end_time:
            raise ValidationError({"end_time": "End time must be after start time."})

    def save(self, *args, **kwargs):
        self.full_clean()
        super().save(*args, **kwargs)


class Service(models.Model):
    """A bookable service; its duration drives every appointment's end time."""

    provider = models.ForeignKey(
        ProviderProfile,
        on_delete=models.CASCADE,
        related_name="services",
    )
    name = models.CharField(max_length=200)
    description = models.TextField(blank=True)
    duration_minutes = models.PositiveIntegerField(validators=[MinValueValidator(1)])
    price = models.DecimalField(max_digits=8, decimal_places=2, default=0)
    active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["name"]

    def __str__(self):
        return f"{self.name} ({self.duration_minutes}min)"


class BlockedRange(models.Model):
    """
    An explicit absence (holiday, break, training...).

    Behaves as a committed interval for conflict purposes but carries
    no client or service. It has no lifecycle: it exists or is deleted.
    """

    provider = models.ForeignKey(
        ProviderProfile,
        on_delete=models.CASCADE,
        related_name="blocked_ranges",
    )
    start_time = models.DateTimeField()
    end_time = models.DateTimeField()
    label = models.CharField(max_length=200)
    notes = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = "Blocked Range"
        verbose_name_plural = "Blocked Ranges"
        ordering = ["start_time"]
        indexes = [
            models.Index(fields=["provider", "start_time"], name="blocked_provider_start_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(end_time__gt=models.F("start_time")),
                name="blocked_range_end_after_start",
            ),
        ]

    def __str__(self):
        return f"{self.label} ({self.start_time:%Y-%m-%d %H:%M} - {self.end_time:%H:%M})"
