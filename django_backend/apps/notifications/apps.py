"""
Notifications application configuration.

The engine only builds notification descriptors; delivery belongs to
an external transport.
"""
from django.apps import AppConfig
from django.utils.translation import gettext_lazy as _


class NotificationsConfig(AppConfig):
    """Configuration class for the notifications application."""

    default_auto_field = 'django.db.models.BigAutoField'
    name = 'apps.notifications'
    verbose_name = _('Notifications')
