"""Django app configuration for the alerts app."""

from django.apps import AppConfig


class AlertsConfig(AppConfig):
    """Configuration for the Alert Discovery app."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "apps.alerts"
    verbose_name = "Alert Discovery"
