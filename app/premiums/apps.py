"""
Premiums app configuration.

This app provides the premium engine:
- M-Pesa STK-push collection and callback reconciliation
- Commission split per confirmed payment
- Daily settlement batches
- B2C commission payouts with bounded retry
"""

from django.apps import AppConfig


class PremiumsConfig(AppConfig):
    """Configuration for the premiums application."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "premiums"
    verbose_name = "Premiums"

    def ready(self):
        # Register callback handlers with the dispatch registry
        import premiums.webhooks.handlers  # noqa: F401
