"""
Celery configuration for the case workflow backend.

This module configures Celery with Redis as broker and result backend,
wires worker logging to Django's LOGGING setting and installs the beat
schedule that drains delayed automations and expands recurring tasks.
"""

import os
import logging
from typing import Dict

from celery import Celery, signals

# Set the default Django settings module for the 'celery' program.
os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'config.settings.docker')

logger = logging.getLogger('celery')

app = Celery('case_workflow_backend')


class CeleryConfig:
    """Celery configuration class."""

    # Broker settings
    broker_url: str = os.environ.get('CELERY_BROKER_URL', 'redis://redis:6379/0')
    result_backend: str = os.environ.get('CELERY_RESULT_BACKEND', 'redis://redis:6379/0')

    # Serialization settings
    task_serializer: str = 'json'
    result_serializer: str = 'json'
    accept_content: list = ['json']

    timezone: str = 'UTC'
    enable_utc: bool = True

    # Task execution settings
    task_always_eager: bool = os.environ.get('CELERY_ALWAYS_EAGER', 'False').lower() == 'true'
    task_eager_propagates: bool = True
    task_ignore_result: bool = False

    # Worker settings
    worker_prefetch_multiplier: int = 1
    worker_max_tasks_per_child: int = 1000
    worker_log_format: str = '[%(asctime)s: %(levelname)s/%(processName)s] %(message)s'
    worker_task_log_format: str = '[%(asctime)s: %(levelname)s/%(processName)s][%(task_name)s(%(task_id)s)] %(message)s'

    result_expires: int = 3600  # 1 hour

    # Task routing
    task_routes: Dict[str, Dict[str, str]] = {
        'apps.celery.tasks.drain_pending_automations': {'queue': 'workflows'},
        'apps.celery.tasks.process_recurring_tasks': {'queue': 'scheduling'},
        'apps.celery.tasks.process_date_based_triggers': {'queue': 'workflows'},
    }

    task_default_queue: str = 'default'

    # Retry settings
    task_acks_late: bool = True
    task_reject_on_worker_lost: bool = True
    task_soft_time_limit: int = 300  # 5 minutes
    task_time_limit: int = 600  # 10 minutes

    worker_send_task_events: bool = True
    task_send_sent_event: bool = True

    beat_scheduler: str = 'django_celery_beat.schedulers:DatabaseScheduler'


app.config_from_object(CeleryConfig)

# Values under the CELERY_ namespace in Django settings win over the class defaults.
app.config_from_object('django.conf:settings', namespace='CELERY')

app.autodiscover_tasks(['apps.celery'])


@app.on_after_configure.connect
def setup_beat_schedule(sender, **kwargs) -> None:
    """Install the environment specific beat schedule once settings are loaded."""
    from apps.celery.schedules import get_schedule_config

    sender.conf.beat_schedule = get_schedule_config()


@signals.setup_logging.connect
def setup_celery_logging(**kwargs) -> None:
    """Configure logging for Celery workers."""
    import logging.config
    from django.conf import settings

    if hasattr(settings, 'LOGGING'):
        logging.config.dictConfig(settings.LOGGING)


AUTOMATION_JOB_PREFIX = 'apps.celery.tasks.'

# Result keys worth surfacing in the worker log, per job.
JOB_SUMMARY_KEYS = (
    'pendingAutomationsProcessed', 'tasksChecked', 'triggersFired', 'tasksEscalated',
    'tasksScheduled', 'recurring_tasks_processed',
)


def summarize_job_result(result) -> str:
    """Compact ``key=value`` summary of an automation job result dict."""
    if not isinstance(result, dict):
        return ''
    return ', '.join(f"{key}={result[key]}" for key in JOB_SUMMARY_KEYS if key in result)


@signals.worker_ready.connect
def worker_ready_handler(sender=None, **kwargs) -> None:
    """Log engine health once the worker can take automation jobs."""
    from apps.workflows.integration import case_task_integration_service

    health = case_task_integration_service.get_integration_health()
    logger.info(f"Worker {sender.hostname} ready, workflow engines {health['overall']}")


@signals.task_postrun.connect
def automation_job_postrun_handler(sender=None, task_id=None, retval=None, state=None, **kwargs) -> None:
    """Log the counters returned by the periodic automation jobs."""
    if sender is None or not sender.name.startswith(AUTOMATION_JOB_PREFIX):
        return
    summary = summarize_job_result(retval)
    if summary:
        logger.info(f"{sender.name}[{task_id}] {state}: {summary}")


@signals.task_failure.connect
def task_failure_handler(sender=None, task_id=None, exception=None, einfo=None, **kwargs) -> None:
    """Log automation jobs that gave up after their retries."""
    logger.error(
        f"Automation job {sender.name}[{task_id}] failed: {exception}",
        extra={'task_id': task_id, 'task_name': sender.name},
        exc_info=einfo
    )


@signals.task_retry.connect
def task_retry_handler(sender=None, request=None, reason=None, **kwargs) -> None:
    """Log each retry with the attempt number."""
    attempt = request.retries + 1 if request is not None else '?'
    logger.warning(f"Automation job {sender.name} retry {attempt}: {reason}")


__all__ = ['app', 'summarize_job_result']
