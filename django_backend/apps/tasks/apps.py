"""
Task application configuration.

Registers system checks for the task template catalog, the scheduling
tunables, the engine state backend and the Celery broker settings.
"""

import logging
from typing import List

from django.apps import AppConfig
from django.conf import settings
from django.core.checks import Error, Warning, register
from django.utils.translation import gettext_lazy as _

logger = logging.getLogger(__name__)


def check_task_template_catalog(app_configs=None, **kwargs) -> List[Error]:
    """
    Validate every template in the shared template catalog.

    Args:
        app_configs: List of application configurations to check.
        **kwargs: Additional keyword arguments.

    Returns:
        One Error per template validation problem.
    """
    from apps.tasks.templates import task_template_engine

    errors = []
    for template in task_template_engine.get_templates():
        for problem in task_template_engine.validate_template(template):
            errors.append(
                Error(
                    f'Task template "{template.id}" is invalid: {problem}',
                    hint='Fix the template definition before it is instantiated',
                    obj='apps.tasks',
                    id='tasks.E001'
                )
            )
    return errors


def check_scheduling_configuration(app_configs=None, **kwargs) -> List[Error]:
    """Validate the CASE_WORKFLOW scheduling tunables and Celery settings."""
    from apps.common.utils import get_workflow_setting

    errors = []

    threshold = get_workflow_setting('WORKLOAD_THRESHOLD')
    if not isinstance(threshold, (int, float)) or not 0 < threshold <= 1:
        errors.append(
            Error(
                f'CASE_WORKFLOW["WORKLOAD_THRESHOLD"] must be in (0, 1], got {threshold!r}',
                obj='apps.tasks',
                id='tasks.E002'
            )
        )

    hours = get_workflow_setting('AVAILABLE_HOURS_PER_WEEK')
    if not isinstance(hours, (int, float)) or hours <= 0:
        errors.append(
            Error(
                f'CASE_WORKFLOW["AVAILABLE_HOURS_PER_WEEK"] must be positive, got {hours!r}',
                obj='apps.tasks',
                id='tasks.E003'
            )
        )

    if not getattr(settings, 'CELERY_BROKER_URL', None):
        errors.append(
            Warning(
                'CELERY_BROKER_URL is not configured',
                hint='Delayed automations and recurring tasks need a Redis broker',
                obj='apps.tasks',
                id='tasks.W001'
            )
        )

    backend = str(get_workflow_setting('STATE_BACKEND')).lower()
    if backend not in ('memory', 'redis'):
        errors.append(
            Error(
                f'CASE_WORKFLOW["STATE_BACKEND"] must be "memory" or "redis", got {backend!r}',
                obj='apps.tasks',
                id='tasks.E004'
            )
        )
    elif backend == 'memory' and not getattr(settings, 'CELERY_TASK_ALWAYS_EAGER', False):
        errors.append(
            Warning(
                'Engine state is kept in process memory while Celery runs in separate workers',
                hint='Set CASE_WORKFLOW["STATE_BACKEND"] to "redis" so workers see queued automations '
                     'and scheduled tasks',
                obj='apps.tasks',
                id='tasks.W002'
            )
        )

    return errors


class TasksConfig(AppConfig):
    """Configuration class for the tasks application."""

    default_auto_field = 'django.db.models.BigAutoField'
    name = 'apps.tasks'
    label = 'tasks'
    verbose_name = _('Task Templates & Scheduling')

    def ready(self) -> None:
        """Register the template and scheduling system checks."""
        register(check_task_template_catalog, 'tasks')
        register(check_scheduling_configuration, 'tasks')
        logger.debug('Task system checks registered')
