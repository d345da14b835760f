"""Django app configuration for the evidence app."""

from django.apps import AppConfig


class EvidenceConfig(AppConfig):
    """Configuration for the Evidence Gathering app."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "apps.evidence"
    verbose_name = "Evidence Gathering"
