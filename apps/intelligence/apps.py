"""Django app configuration for the intelligence app."""

from django.apps import AppConfig


class IntelligenceConfig(AppConfig):
    """Configuration for the Triage Providers app."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "apps.intelligence"
    verbose_name = "Triage Providers"
