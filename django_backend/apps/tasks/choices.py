from django.db import models
from django.utils.translation import gettext_lazy as _


class TaskStatus(models.TextChoices):
    """Task status values mirrored from the external task store."""

    PENDING = 'PENDING', _('Pending')
    IN_PROGRESS = 'IN_PROGRESS', _('In Progress')
    COMPLETED = 'COMPLETED', _('Completed')
    CANCELLED = 'CANCELLED', _('Cancelled')
    OVERDUE = 'OVERDUE', _('Overdue')

    @classmethod
    def get_active_statuses(cls):
        """Get statuses that represent open work."""
        return [cls.PENDING, cls.IN_PROGRESS]

    @classmethod
    def get_closed_statuses(cls):
        return [cls.COMPLETED, cls.CANCELLED]


class TaskPriority(models.TextChoices):
    """Task priority levels with clear hierarchy."""

    LOW = 'LOW', _('Low')
    MEDIUM = 'MEDIUM', _('Medium')
    HIGH = 'HIGH', _('High')
    URGENT = 'URGENT', _('Urgent')

    @classmethod
    def get_priority_order(cls):
        """Get priorities in ascending order of urgency."""
        return [cls.LOW, cls.MEDIUM, cls.HIGH, cls.URGENT]

    @classmethod
    def get_estimated_hours(cls):
        """Get the per-task hour estimate used for workload accounting."""
        return {
            cls.LOW: 1,
            cls.MEDIUM: 2,
            cls.HIGH: 3,
            cls.URGENT: 4,
        }

    @classmethod
    def get_calendar_colors(cls):
        return {
            cls.URGENT: '#dc3545',
            cls.HIGH: '#fd7e14',
            cls.MEDIUM: '#ffc107',
            cls.LOW: '#28a745',
        }

    @classmethod
    def get_high_priorities(cls):
        return [cls.HIGH, cls.URGENT]


class RecurrenceType(models.TextChoices):
    """Recurrence units for repeating tasks."""

    DAILY = 'daily', _('Daily')
    WEEKLY = 'weekly', _('Weekly')
    MONTHLY = 'monthly', _('Monthly')
    YEARLY = 'yearly', _('Yearly')


class ConflictType(models.TextChoices):
    """Kinds of scheduling conflicts."""

    TIME_OVERLAP = 'time_overlap', _('Time Overlap')
    DEPENDENCY_CONFLICT = 'dependency_conflict', _('Dependency Conflict')
    RESOURCE_CONFLICT = 'resource_conflict', _('Resource Conflict')


class ConflictSeverity(models.TextChoices):
    LOW = 'low', _('Low')
    MEDIUM = 'medium', _('Medium')
    HIGH = 'high', _('High')


class CapacityStatus(models.TextChoices):
    """Workload bands derived from utilization."""

    UNDER_CAPACITY = 'under_capacity', _('Under Capacity')
    AT_CAPACITY = 'at_capacity', _('At Capacity')
    OVER_CAPACITY = 'over_capacity', _('Over Capacity')


class TemplateVariableType(models.TextChoices):
    """Value types accepted by task template variables."""

    STRING = 'string', _('String')
    NUMBER = 'number', _('Number')
    DATE = 'date', _('Date')
    BOOLEAN = 'boolean', _('Boolean')
    SELECT = 'select', _('Select')
    MULTISELECT = 'multiselect', _('Multi-select')
    USER = 'user', _('User')
    CASE = 'case', _('Case')


class TemplateStepStatus(models.TextChoices):
    """Progress states of a step inside a template instance."""

    PENDING = 'PENDING', _('Pending')
    IN_PROGRESS = 'IN_PROGRESS', _('In Progress')
    COMPLETED = 'COMPLETED', _('Completed')
    SKIPPED = 'SKIPPED', _('Skipped')


class TemplateCategory(models.TextChoices):
    """Kind of work a task template produces."""

    DOCUMENT_PREPARATION = 'document_preparation', _('Document Preparation')
    CLIENT_COMMUNICATION = 'client_communication', _('Client Communication')
    COURT_FILING = 'court_filing', _('Court Filing')
    RESEARCH = 'research', _('Research')
    NEGOTIATION = 'negotiation', _('Negotiation')
    HEARING_PREPARATION = 'hearing_preparation', _('Hearing Preparation')
    ADMINISTRATIVE = 'administrative', _('Administrative')


class TemplateInstanceStatus(models.TextChoices):
    ACTIVE = 'active', _('Active')
    COMPLETED = 'completed', _('Completed')
    CANCELLED = 'cancelled', _('Cancelled')
    PAUSED = 'paused', _('Paused')
