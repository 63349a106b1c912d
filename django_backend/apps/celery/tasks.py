"""
Celery tasks for the case workflow backend.

Periodic entry points driven by Celery Beat: draining delayed automation
actions, spawning recurring task occurrences and firing date-based
automation rules. Each task returns a JSON serializable summary.
"""

import logging
from typing import Any, Dict, List, Optional

from celery import shared_task
from django.utils import timezone

from apps.common.utils import coerce_datetime
from apps.tasks.scheduling import task_scheduling_engine
from apps.workflows.integration import case_task_integration_service

logger = logging.getLogger(__name__)


class AutomationTaskError(Exception):
    """Raised when a periodic automation task gives up after its retries."""
    pass


def _retry_or_fail(task, exc: Exception, base_delay: int) -> None:
    """Retry with exponential backoff, then raise AutomationTaskError."""
    if task.request.retries < task.max_retries:
        retry_delay = base_delay * (2 ** task.request.retries)
        raise task.retry(exc=exc, countdown=retry_delay)

    raise AutomationTaskError(f"Max retries exceeded: {exc}")


# =============================================================================
# AUTOMATION TASKS
# =============================================================================

@shared_task(bind=True, max_retries=3, default_retry_delay=30)
def drain_pending_automations(self, reference_time: Optional[str] = None) -> Dict[str, Any]:
    """
    Run delayed automation actions whose fire time has passed.

    Tasks created by those actions are placed on the schedule.

    Args:
        reference_time: ISO timestamp used instead of the current time

    Returns:
        Dict with the drain counters, errors and warnings
    """
    try:
        run = case_task_integration_service.process_scheduled_automations(
            reference_time=coerce_datetime(reference_time),
            include_recurring=False,
        )

        result = {
            **run.to_dict(),
            'processed_at': timezone.now().isoformat(),
        }
        if run.pending_automations_processed:
            logger.info(f"Drained {run.pending_automations_processed} pending automations")
        if run.errors:
            logger.warning(f"Pending automation drain finished with errors: {run.errors}")
        return result

    except Exception as exc:
        logger.error(f"Pending automation drain failed: {exc}")
        _retry_or_fail(self, exc, base_delay=30)


@shared_task(bind=True, max_retries=2)
def process_date_based_triggers(self, events: Optional[List[Dict[str, Any]]] = None,
                                reference_time: Optional[str] = None) -> Dict[str, Any]:
    """
    Fire date-based automation rules.

    Overdue scheduled tasks are escalated. ``events`` holds extra case
    level events such as ``{'eventType': 'filing_deadline', 'metadata':
    {...}}`` queued by callers that know the case deadlines.
    """
    try:
        run = case_task_integration_service.process_date_based_triggers(
            events=events,
            reference_time=coerce_datetime(reference_time),
        )
        return {
            **run.to_dict(),
            'processed_at': timezone.now().isoformat(),
        }

    except Exception as exc:
        logger.error(f"Date-based trigger processing failed: {exc}")
        _retry_or_fail(self, exc, base_delay=300)


# =============================================================================
# SCHEDULING TASKS
# =============================================================================

@shared_task(bind=True, max_retries=3)
def process_recurring_tasks(self) -> Dict[str, Any]:
    """
    Spawn the next occurrence of every completed recurring task.

    Returns:
        Dict with the spawned task ids
    """
    try:
        spawned = task_scheduling_engine.process_recurring_tasks()

        result = {
            'recurring_tasks_processed': len(spawned),
            'task_ids': [task.task_id for task in spawned],
            'processed_at': timezone.now().isoformat(),
        }
        logger.info(f"Recurring task processing completed: {result['recurring_tasks_processed']} spawned")
        return result

    except Exception as exc:
        logger.error(f"Recurring task processing failed: {exc}")
        _retry_or_fail(self, exc, base_delay=120)
