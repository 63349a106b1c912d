"""
Common application configuration.
"""

from django.apps import AppConfig
from django.conf import settings
from django.core.checks import Warning, register


def check_workflow_settings(app_configs=None, **kwargs):
    """Flag ``CASE_WORKFLOW`` keys that no engine reads."""
    from apps.common.utils import DEFAULT_WORKFLOW_SETTINGS

    configured = getattr(settings, 'CASE_WORKFLOW', {}) or {}
    return [
        Warning(
            f'Unknown CASE_WORKFLOW setting "{key}"',
            hint=f"Known settings: {', '.join(sorted(DEFAULT_WORKFLOW_SETTINGS))}",
            id='common.W001',
        )
        for key in sorted(configured)
        if key not in DEFAULT_WORKFLOW_SETTINGS
    ]


class CommonConfig(AppConfig):
    """Shared utilities, exceptions and engine settings."""

    default_auto_field = 'django.db.models.BigAutoField'
    name = 'apps.common'
    verbose_name = 'Case Workflow Common'

    def ready(self) -> None:
        register(check_workflow_settings, 'common')
