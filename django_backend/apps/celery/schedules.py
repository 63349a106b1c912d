"""
Celery Beat schedule configuration.

Intervals come from the CASE_WORKFLOW settings dict so deployments can tune
the drain and recurrence cadence without code changes.
"""

import logging
from datetime import timedelta
from typing import Any, Dict

from celery.schedules import crontab
from django.conf import settings

from apps.common.utils import get_workflow_setting

logger = logging.getLogger(__name__)


class ScheduleConfig:
    """
    Configuration class for Celery Beat schedules.

    Every entry targets a task in ``apps.celery.tasks``.
    """

    DATE_TRIGGER_MINUTE = 0

    @classmethod
    def get_beat_schedule(cls) -> Dict[str, Dict[str, Any]]:
        """
        Generate the Celery Beat schedule.

        Returns:
            Dict[str, Dict[str, Any]]: Complete schedule configuration for Celery Beat

        Note:
            All times are in UTC. Adjust CELERY_TIMEZONE in settings for local time.
        """
        drain_seconds = get_workflow_setting('PENDING_AUTOMATION_DRAIN_SECONDS', 60)
        recurring_minutes = get_workflow_setting('RECURRING_TASKS_INTERVAL_MINUTES', 15)

        return {
            # Delayed automation actions
            'drain-pending-automations': {
                'task': 'apps.celery.tasks.drain_pending_automations',
                'schedule': timedelta(seconds=drain_seconds),
                'options': {
                    'expires': drain_seconds,  # A later run picks up the same jobs
                    'retry': False,
                },
            },

            # Next occurrences of completed recurring tasks
            'process-recurring-tasks': {
                'task': 'apps.celery.tasks.process_recurring_tasks',
                'schedule': timedelta(minutes=recurring_minutes),
                'options': {
                    'expires': recurring_minutes * 60,
                    'retry': True,
                    'retry_policy': {
                        'max_retries': 2,
                        'interval_start': 0,
                        'interval_step': 0.2,
                        'interval_max': 0.2,
                    }
                },
            },

            # Daily overdue escalation sweep
            'process-date-based-triggers': {
                'task': 'apps.celery.tasks.process_date_based_triggers',
                'schedule': crontab(
                    hour=get_workflow_setting('DATE_TRIGGER_HOUR', 7),
                    minute=cls.DATE_TRIGGER_MINUTE
                ),
                'options': {
                    'expires': 3600,
                    'retry': True,
                    'retry_policy': {
                        'max_retries': 3,
                        'interval_start': 0,
                        'interval_step': 0.5,
                        'interval_max': 0.5,
                    }
                },
            },
        }


class DevelopmentScheduleConfig(ScheduleConfig):
    """Shorter intervals for local work."""

    @classmethod
    def get_beat_schedule(cls) -> Dict[str, Dict[str, Any]]:
        schedule = super().get_beat_schedule()

        if getattr(settings, 'DEBUG', False):
            # Run the date sweep hourly so escalations show up while testing
            schedule['process-date-based-triggers']['schedule'] = timedelta(hours=1)
            schedule['process-recurring-tasks']['schedule'] = timedelta(minutes=1)

        return schedule


class ProductionScheduleConfig(ScheduleConfig):
    """Adds event tracking to every entry."""

    @classmethod
    def get_beat_schedule(cls) -> Dict[str, Dict[str, Any]]:
        schedule = super().get_beat_schedule()

        for task_config in schedule.values():
            task_config['options'].update({
                'track_started': True,
                'send_events': True,
            })

        return schedule


def get_schedule_config() -> Dict[str, Dict[str, Any]]:
    """
    Pick the schedule for the current ``ENVIRONMENT`` setting.

    Returns:
        Dict[str, Dict[str, Any]]: Environment-specific schedule configuration
    """
    try:
        environment = getattr(settings, 'ENVIRONMENT', 'development').lower()

        if environment == 'production':
            return ProductionScheduleConfig.get_beat_schedule()
        elif environment == 'development':
            return DevelopmentScheduleConfig.get_beat_schedule()
        else:
            return ScheduleConfig.get_beat_schedule()

    except Exception as exc:
        logger.warning(f"Failed to load environment-specific schedule: {exc}")
        return ScheduleConfig.get_beat_schedule()
