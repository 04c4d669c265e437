from django.apps import AppConfig


class GroupSessionsConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "group_sessions"
    verbose_name = "Group Sessions"
