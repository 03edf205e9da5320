from django.apps import AppConfig


class MembershipConfig(AppConfig):
    """Configuration for the membership lookup application."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "membership"
    verbose_name = "Membership"
