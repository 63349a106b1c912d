"""
Notification choices.

Channel, urgency and type constants used when the engines build
notification descriptors.
"""

from django.db import models
from django.utils.translation import gettext_lazy as _


class NotificationType(models.TextChoices):
    """Business events the workflow engines announce."""

    TASK_CREATED = 'task_created', _('Task Created')
    TASK_ASSIGNED = 'task_assigned', _('Task Assigned')
    TASK_ESCALATED = 'task_escalated', _('Task Escalated')
    TASK_OVERDUE = 'task_overdue', _('Task Overdue')
    TASK_REMINDER = 'task_reminder', _('Task Reminder')
    TASK_COMPLETED = 'task_completed', _('Task Completed')
    REVIEW_REQUESTED = 'review_requested', _('Review Requested')
    DEADLINE_APPROACHING = 'deadline_approaching', _('Deadline Approaching')
    WORKFLOW_SUMMARY = 'workflow_summary', _('Workflow Summary')


class NotificationChannel(models.TextChoices):
    """Delivery channels a descriptor can ask for."""

    EMAIL = 'email', _('Email')
    SMS = 'sms', _('SMS')
    IN_APP = 'in_app', _('In-App Notification')
    PUSH = 'push', _('Push Notification')


class NotificationUrgency(models.TextChoices):
    LOW = 'low', _('Low')
    MEDIUM = 'medium', _('Medium')
    HIGH = 'high', _('High')
    CRITICAL = 'critical', _('Critical')
