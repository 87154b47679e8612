"""
Django app configuration for dj_settlement.
"""

from django.apps import AppConfig


class SettlementConfig(AppConfig):
    """Configuration for the settlement application."""

    name = "dj_settlement"
    verbose_name = "Ledger & Settlement"
    default_auto_field = "django.db.models.BigAutoField"

    def ready(self):
        """Import signals when the app is ready."""
        from . import signals  # noqa: F401
