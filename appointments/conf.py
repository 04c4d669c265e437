from django.conf import settings

DEFAULTS = {
    "RECURRENCE_MAX_INSTANCES": 104,
    "RECURRENCE_MAX_HORIZON_DAYS": 730,
    "STORAGE_RETRY_ATTEMPTS": 3,
    "STORAGE_RETRY_BACKOFF_SECONDS": 0.05,
    "DEFAULT_BUFFER_MINUTES": 0,
    "MAX_BUFFER_MINUTES": 120,
}


def scheduling_setting(name):
    """Read one key of settings.SCHEDULING, falling back to the built-in default."""
    return getattr(settings, "SCHEDULING", {}).get(name, DEFAULTS[name])
