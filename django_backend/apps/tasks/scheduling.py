"""
Task scheduling engine.

Keeps scheduled-task records together with their calendar events,
reminder plans and per-user workload totals. Workload totals are adjusted
incrementally on every schedule, cancel and recurrence; they are never
recomputed from the task list.

``schedule_task`` is the one operation that raises: invalid requests raise
``ValidationException`` and high severity conflicts raise
``ConflictException``. Callers that need a result object (the integration
service) catch both.
"""

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from apps.common.exceptions import ConflictException, SchedulingException, ValidationException
from apps.common.utils import (
    add_months,
    add_years,
    calculate_percentage,
    coerce_datetime,
    generate_id,
    get_workflow_setting,
    hours_between,
    now,
    safe_divide,
)
from apps.notifications.choices import NotificationChannel
from apps.users.choices import UserRole
from apps.workflows.stores import HistoryStore, KeyedStore, ScheduleStore, build_history_store, build_keyed_store
from .choices import (
    CapacityStatus,
    ConflictSeverity,
    ConflictType,
    RecurrenceType,
    TaskPriority,
    TaskStatus,
)

logger = logging.getLogger(__name__)


@dataclass
class RecurrenceRule:
    type: str = RecurrenceType.DAILY
    interval: int = 1
    end_date: Optional[datetime] = None
    max_occurrences: Optional[int] = None
    days_of_week: List[int] = field(default_factory=list)
    day_of_month: Optional[int] = None
    month_of_year: Optional[int] = None
    exceptions: List[datetime] = field(default_factory=list)

    def validate(self, reference_time: Optional[datetime] = None) -> List[str]:
        errors = []
        if self.interval is None or self.interval <= 0:
            errors.append('Recurrence interval must be positive')
        if self.end_date and self.end_date <= (reference_time or now()):
            errors.append('Recurrence end date must be in the future')
        if self.max_occurrences is not None and self.max_occurrences <= 0:
            errors.append('Max occurrences must be positive')
        if any(day < 0 or day > 6 for day in self.days_of_week):
            errors.append('Days of week must be between 0 and 6')
        if self.day_of_month is not None and not 1 <= self.day_of_month <= 31:
            errors.append('Day of month must be between 1 and 31')
        if self.month_of_year is not None and not 1 <= self.month_of_year <= 12:
            errors.append('Month of year must be between 1 and 12')
        return errors


@dataclass
class Reminder:
    id: str
    channel: str
    time_offset: int  # minutes before the due date
    recipients: List[str]
    message: str = ''


@dataclass
class ReminderSettings:
    enabled: bool = False
    reminders: List[Reminder] = field(default_factory=list)


def _reminder(reminder_id, channel, hours, recipients, message) -> Reminder:
    return Reminder(id=reminder_id, channel=channel, time_offset=hours * 60, recipients=recipients, message=message)


DEFAULT_REMINDER_TIERS: Dict[str, List[Reminder]] = {
    'urgent': [
        _reminder('urgent_24h', NotificationChannel.EMAIL, 24, ['assignee', 'supervisor'],
                  'URGENT: Task due in 24 hours - {taskTitle}'),
        _reminder('urgent_2h', NotificationChannel.IN_APP, 2, ['assignee'],
                  'URGENT: Task due in 2 hours - {taskTitle}'),
    ],
    'high': [
        _reminder('high_48h', NotificationChannel.EMAIL, 48, ['assignee'],
                  'High priority task due in 2 days - {taskTitle}'),
        _reminder('high_24h', NotificationChannel.IN_APP, 24, ['assignee'],
                  'High priority task due tomorrow - {taskTitle}'),
    ],
    'medium': [
        _reminder('medium_72h', NotificationChannel.IN_APP, 72, ['assignee'],
                  'Task due in 3 days - {taskTitle}'),
    ],
    'deadline': [
        _reminder('deadline_7d', NotificationChannel.EMAIL, 7 * 24, ['assignee', 'case_attorney'],
                  'Deadline approaching: {taskTitle} due in 7 days'),
        _reminder('deadline_3d', NotificationChannel.EMAIL, 3 * 24, ['assignee', 'supervisor'],
                  'URGENT: Deadline in 3 days - {taskTitle}'),
        _reminder('deadline_1d', NotificationChannel.SMS, 24, ['assignee'],
                  'FINAL REMINDER: {taskTitle} due tomorrow'),
    ],
}


@dataclass
class ScheduleRequest:
    task_id: str
    case_id: str
    title: str
    scheduled_time: datetime
    assigned_to: str
    assigned_by: str
    priority: str = TaskPriority.MEDIUM
    description: Optional[str] = None
    due_date: Optional[datetime] = None
    recurrence: Optional[RecurrenceRule] = None
    reminder_settings: Optional[ReminderSettings] = None
    dependencies: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ScheduledTask:
    id: str
    task_id: str
    case_id: str
    title: str
    scheduled_time: datetime
    assigned_to: str
    assigned_by: str
    priority: str = TaskPriority.MEDIUM
    status: str = TaskStatus.PENDING
    description: Optional[str] = None
    due_date: Optional[datetime] = None
    recurrence: Optional[RecurrenceRule] = None
    reminder_settings: ReminderSettings = field(default_factory=ReminderSettings)
    dependencies: List[str] = field(default_factory=list)
    estimated_hours: float = 0
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=now)
    updated_at: datetime = field(default_factory=now)

    @property
    def is_overdue(self) -> bool:
        return bool(self.due_date and self.due_date < now() and self.status != TaskStatus.COMPLETED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'taskId': self.task_id,
            'caseId': self.case_id,
            'title': self.title,
            'description': self.description,
            'scheduledTime': self.scheduled_time,
            'dueDate': self.due_date,
            'priority': self.priority,
            'status': self.status,
            'assignedTo': self.assigned_to,
            'assignedBy': self.assigned_by,
            'recurring': self.recurrence is not None,
            'dependencies': list(self.dependencies),
            'estimatedHours': self.estimated_hours,
            'metadata': dict(self.metadata),
        }


@dataclass
class CalendarEvent:
    id: str
    task_id: str
    title: str
    start_time: datetime
    end_time: datetime
    attendees: List[str]
    description: Optional[str] = None
    all_day: bool = False
    color: Optional[str] = None
    recurring: bool = False
    recurrence_rule: Optional[RecurrenceRule] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class UpcomingReminder:
    task_id: str
    reminder: Reminder
    fire_time: datetime
    message: str


@dataclass
class ScheduleConflict:
    task_id: str
    conflicting_task_id: str
    conflict_type: str
    severity: str
    description: str
    suggested_resolution: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            'taskId': self.task_id,
            'conflictingTaskId': self.conflicting_task_id,
            'conflictType': str(self.conflict_type),
            'severity': str(self.severity),
            'description': self.description,
            'suggestedResolution': self.suggested_resolution,
        }


@dataclass
class UserWorkload:
    user_id: str
    user_name: str = ''
    role: str = UserRole.ATTORNEY
    total_tasks: int = 0
    active_tasks: int = 0
    overdue_tasks: int = 0
    high_priority_tasks: int = 0
    total_hours: float = 0
    available_hours: float = 40
    utilization_rate: float = 0
    capacity_status: str = CapacityStatus.UNDER_CAPACITY

    @property
    def id(self) -> str:
        return self.user_id

    def refresh(self) -> None:
        """Recompute the derived utilization rate and capacity status."""
        self.utilization_rate = safe_divide(self.total_hours, self.available_hours) * 100
        if self.utilization_rate < 80:
            self.capacity_status = CapacityStatus.UNDER_CAPACITY
        elif self.utilization_rate <= 100:
            self.capacity_status = CapacityStatus.AT_CAPACITY
        else:
            self.capacity_status = CapacityStatus.OVER_CAPACITY

    def to_dict(self) -> Dict[str, Any]:
        return {
            'userId': self.user_id,
            'userName': self.user_name,
            'role': self.role,
            'totalTasks': self.total_tasks,
            'activeTasks': self.active_tasks,
            'overdueTasks': self.overdue_tasks,
            'highPriorityTasks': self.high_priority_tasks,
            'totalHours': self.total_hours,
            'availableHours': self.available_hours,
            'utilizationRate': round(self.utilization_rate, 2),
            'capacityStatus': str(self.capacity_status),
        }


class OptimizationStrategy:
    BALANCE_WORKLOAD = 'balance_workload'
    MINIMIZE_DELAYS = 'minimize_delays'
    MAXIMIZE_EFFICIENCY = 'maximize_efficiency'
    MEET_DEADLINES = 'meet_deadlines'


@dataclass
class ScheduleOptimizationRequest:
    strategy: str
    start_date: datetime
    end_date: datetime
    user_id: Optional[str] = None
    case_id: Optional[str] = None
    constraints: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ScheduleOptimizationResult:
    success: bool = True
    optimized_tasks: List[ScheduledTask] = field(default_factory=list)
    conflicts_resolved: int = 0
    workload_improvement: float = 0
    time_saved: float = 0
    recommendations: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


@dataclass
class ScheduleHistoryEntry:
    id: str
    action: str
    scheduled_id: str
    task_id: str
    case_id: str
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=now)


def _priority_rank(priority: str) -> int:
    order = TaskPriority.get_priority_order()
    return order.index(priority) if priority in order else 1


def estimate_task_hours(priority: str) -> float:
    """Fixed per-priority workload estimate; unknown priorities count as medium."""
    return TaskPriority.get_estimated_hours().get(priority, 2)


class TaskSchedulingEngine:
    """Scheduled tasks, calendar, reminders, workload and recurrence."""

    def __init__(
        self,
        schedule_store: Optional[ScheduleStore] = None,
        history_store: Optional[HistoryStore] = None,
        reminder_tiers: Optional[Dict[str, List[Reminder]]] = None,
        calendar_store: Optional[KeyedStore] = None,
        workload_store: Optional[KeyedStore] = None,
    ):
        self.scheduled_tasks = schedule_store if schedule_store is not None else build_keyed_store('scheduling:tasks')
        self.calendar_events = calendar_store if calendar_store is not None else build_keyed_store('scheduling:calendar')
        self.workloads = workload_store if workload_store is not None else build_keyed_store('scheduling:workloads')
        self.history = history_store if history_store is not None else build_history_store('scheduling')
        self.reminder_tiers = reminder_tiers or DEFAULT_REMINDER_TIERS
        self._lock = threading.RLock()

    # Scheduling

    def schedule_task(self, request: ScheduleRequest) -> ScheduledTask:
        """
        Place a task on the calendar.

        Args:
            request: Task identity, timing, assignment and recurrence

        Returns:
            The stored ScheduledTask

        Raises:
            ValidationException: When the request is invalid
            ConflictException: When a high severity conflict exists
        """
        errors = self.validate_schedule_request(request)
        if errors:
            raise ValidationException(
                f"Schedule validation failed: {', '.join(errors)}",
                details={'errors': errors}
            )

        with self._lock:
            conflicts = self.check_schedule_conflicts(request)
            blocking = [c for c in conflicts if c.severity == ConflictSeverity.HIGH]
            if blocking:
                raise ConflictException(
                    f"High priority schedule conflicts: {', '.join(c.description for c in blocking)}",
                    details={'conflicts': [c.to_dict() for c in blocking]}
                )

            task = ScheduledTask(
                id=generate_id('scheduled'),
                task_id=request.task_id,
                case_id=request.case_id,
                title=request.title,
                description=request.description,
                scheduled_time=request.scheduled_time,
                due_date=request.due_date,
                priority=request.priority,
                assigned_to=request.assigned_to,
                assigned_by=request.assigned_by,
                recurrence=request.recurrence,
                reminder_settings=request.reminder_settings or self.get_default_reminder_settings(
                    request.priority, request.metadata
                ),
                dependencies=list(request.dependencies),
                estimated_hours=estimate_task_hours(request.priority),
                metadata=dict(request.metadata),
            )
            self._store(task)
            self._apply_workload(task)

        for conflict in conflicts:
            logger.warning(f"Scheduled task {task.task_id} with conflict: {conflict.description}")

        self._log('task_scheduled', task, {
            'title': task.title,
            'assignedTo': task.assigned_to,
            'scheduledTime': task.scheduled_time,
            'conflicts': len(conflicts),
        })
        logger.info(f"Scheduled task {task.task_id} for {task.assigned_to} at {task.scheduled_time.isoformat()}")
        return task

    def validate_schedule_request(self, request: ScheduleRequest) -> List[str]:
        errors = []
        reference_time = now()

        if not request.title or not request.title.strip():
            errors.append('Task title is required')
        if not request.assigned_to:
            errors.append('Assignee is required')
        if not request.assigned_by:
            errors.append('Assigned by is required')
        if not request.scheduled_time:
            errors.append('Scheduled time is required')
        elif request.scheduled_time < reference_time - timedelta(
                seconds=get_workflow_setting('SCHEDULE_PAST_TOLERANCE_SECONDS')):
            errors.append('Scheduled time cannot be in the past')
        if request.due_date and request.scheduled_time and request.due_date < request.scheduled_time:
            errors.append('Due date must be after scheduled time')
        if request.recurrence:
            errors.extend(request.recurrence.validate(reference_time))

        return errors

    def reschedule_task(self, task_id: str, new_scheduled_time: datetime,
                        new_due_date: Optional[datetime] = None, reason: Optional[str] = None) -> bool:
        """Move a scheduled task; returns False when the task is unknown."""
        with self._lock:
            task = self.get_scheduled_task(task_id)
            if task is None:
                return False
            if task.status == TaskStatus.COMPLETED:
                raise SchedulingException(
                    f"Cannot reschedule completed task {task_id}",
                    details={'taskId': task_id, 'status': task.status}
                )

            due_date = new_due_date or task.due_date
            if due_date and due_date < new_scheduled_time:
                raise ValidationException(
                    'Due date must be after scheduled time',
                    details={'errors': ['Due date must be after scheduled time']}
                )

            old_time, old_due = task.scheduled_time, task.due_date
            task.scheduled_time = new_scheduled_time
            task.due_date = due_date
            task.updated_at = now()
            self._store(task)

        self._log('task_rescheduled', task, {
            'title': task.title,
            'oldScheduledTime': old_time,
            'newScheduledTime': new_scheduled_time,
            'oldDueDate': old_due,
            'newDueDate': task.due_date,
            'reason': reason,
        })
        return True

    def cancel_task_schedule(self, task_id: str, reason: Optional[str] = None) -> bool:
        """Remove a task's schedule and give its hours back to the assignee."""
        with self._lock:
            task = self.get_scheduled_task(task_id)
            if task is None:
                return False

            self.scheduled_tasks.delete(task.id)
            self.calendar_events.delete(f"event_{task.id}")
            self._apply_workload(task, remove=True)

        self._log('task_cancelled', task, {
            'title': task.title,
            'originalScheduledTime': task.scheduled_time,
            'reason': reason,
        })
        return True

    def update_task_status(self, task_id: str, status: str) -> Optional[ScheduledTask]:
        if status not in TaskStatus.values:
            raise ValidationException(f"Invalid task status: {status}")

        with self._lock:
            task = self.get_scheduled_task(task_id)
            if task is None:
                return None

            old_status = task.status
            task.status = status
            task.updated_at = now()
            if status == TaskStatus.COMPLETED:
                task.metadata['completedAt'] = task.updated_at
            self._store(task)

            active = TaskStatus.get_active_statuses()
            workload = self._get_or_create_workload(task.assigned_to)
            if old_status in active and status not in active:
                workload.active_tasks = max(0, workload.active_tasks - 1)
            elif old_status not in active and status in active:
                workload.active_tasks += 1
            self.workloads.save(workload)

        self._log('status_changed', task, {'oldStatus': old_status, 'newStatus': status})
        return task

    def update_task_metadata(self, task_id: str, changes: Dict[str, Any]) -> Optional[ScheduledTask]:
        """Merge ``changes`` into a scheduled task's metadata."""
        with self._lock:
            task = self.get_scheduled_task(task_id)
            if task is None:
                return None
            task.metadata.update(changes)
            task.updated_at = now()
            self._store(task)

        self._log('metadata_updated', task, {'changes': dict(changes)})
        return task

    def _store(self, task: ScheduledTask) -> None:
        self.scheduled_tasks.save(task)
        self.calendar_events.save(self._build_calendar_event(task))

    # Queries

    def get_scheduled_task(self, task_id: str) -> Optional[ScheduledTask]:
        """Look a schedule up by the external task id."""
        return next((task for task in self.scheduled_tasks.all() if task.task_id == task_id), None)

    def get_scheduled_tasks(self, user_id: Optional[str] = None, case_id: Optional[str] = None,
                            start_date: Optional[datetime] = None, end_date: Optional[datetime] = None,
                            priority: Optional[str] = None, status: Optional[str] = None) -> List[ScheduledTask]:
        tasks = self.scheduled_tasks.all()
        if user_id:
            tasks = [task for task in tasks if task.assigned_to == user_id]
        if case_id:
            tasks = [task for task in tasks if task.case_id == case_id]
        if start_date:
            tasks = [task for task in tasks if task.scheduled_time >= start_date]
        if end_date:
            tasks = [task for task in tasks if task.scheduled_time <= end_date]
        if priority:
            tasks = [task for task in tasks if task.priority == priority]
        if status:
            tasks = [task for task in tasks if task.status == status]
        return sorted(tasks, key=lambda task: task.scheduled_time)

    def check_schedule_conflicts(self, request: ScheduleRequest) -> List[ScheduleConflict]:
        """
        Time overlaps for the assignee and late dependencies.

        Another active task of the same user starting within the conflict
        threshold is a medium conflict. A dependency due after the
        requested start is a high conflict.
        """
        conflicts = []
        window = timedelta(hours=get_workflow_setting('CONFLICT_WINDOW_HOURS'))
        threshold = timedelta(minutes=get_workflow_setting('CONFLICT_THRESHOLD_MINUTES'))

        nearby = self.get_scheduled_tasks(
            user_id=request.assigned_to,
            start_date=request.scheduled_time - window,
            end_date=request.scheduled_time + window,
        )
        for task in nearby:
            if task.task_id == request.task_id or task.status not in TaskStatus.get_active_statuses():
                continue
            if abs(task.scheduled_time - request.scheduled_time) < threshold:
                conflicts.append(ScheduleConflict(
                    task_id=request.task_id,
                    conflicting_task_id=task.task_id,
                    conflict_type=ConflictType.TIME_OVERLAP,
                    severity=ConflictSeverity.MEDIUM,
                    description=f'Time overlap with task "{task.title}"',
                    suggested_resolution='Reschedule one of the tasks to avoid overlap',
                ))

        for dependency_id in request.dependencies or []:
            dependency = self.get_scheduled_task(dependency_id)
            if dependency and dependency.due_date and dependency.due_date > request.scheduled_time:
                conflicts.append(ScheduleConflict(
                    task_id=request.task_id,
                    conflicting_task_id=dependency_id,
                    conflict_type=ConflictType.DEPENDENCY_CONFLICT,
                    severity=ConflictSeverity.HIGH,
                    description=f'Scheduled before dependency "{dependency.title}" is complete',
                    suggested_resolution=f"Reschedule after {dependency.due_date.date().isoformat()}",
                ))

        return conflicts

    # Calendar and reminders

    def _build_calendar_event(self, task: ScheduledTask) -> CalendarEvent:
        return CalendarEvent(
            id=f"event_{task.id}",
            task_id=task.task_id,
            title=task.title,
            description=task.description,
            start_time=task.scheduled_time,
            end_time=task.due_date or task.scheduled_time + timedelta(hours=1),
            attendees=[user for user in (task.assigned_to, task.assigned_by) if user],
            color=TaskPriority.get_calendar_colors().get(task.priority, '#6c757d'),
            recurring=task.recurrence is not None,
            recurrence_rule=task.recurrence,
            metadata={'caseId': task.case_id, 'priority': task.priority, 'status': task.status},
        )

    def get_calendar_events(self, user_id: Optional[str] = None, start_date: Optional[datetime] = None,
                            end_date: Optional[datetime] = None) -> List[CalendarEvent]:
        events = self.calendar_events.all()
        if user_id:
            events = [event for event in events if user_id in event.attendees]
        if start_date:
            events = [event for event in events if event.start_time >= start_date]
        if end_date:
            events = [event for event in events if event.end_time <= end_date]
        return sorted(events, key=lambda event: event.start_time)

    def get_default_reminder_settings(self, priority: str,
                                      metadata: Optional[Dict[str, Any]] = None) -> ReminderSettings:
        """Reminder plan for a priority; tasks flagged ``isDeadline`` use the deadline tier."""
        tier = 'deadline' if (metadata or {}).get('isDeadline') else str(priority).lower()
        reminders = [
            replace(reminder, id=generate_id(reminder.id), recipients=list(reminder.recipients))
            for reminder in self.reminder_tiers.get(tier, [])
        ]
        return ReminderSettings(enabled=bool(reminders), reminders=reminders)

    def get_upcoming_reminders(self, user_id: Optional[str] = None, hours_ahead: float = 24) -> List[UpcomingReminder]:
        """Reminders firing between now and ``hours_ahead`` hours from now, earliest first."""
        start = now()
        end = start + timedelta(hours=hours_ahead)
        upcoming = []

        for task in self.scheduled_tasks.all():
            if user_id and task.assigned_to != user_id:
                continue
            if not task.due_date or not task.reminder_settings.enabled:
                continue
            for reminder in task.reminder_settings.reminders:
                fire_time = task.due_date - timedelta(minutes=reminder.time_offset)
                if start <= fire_time <= end:
                    upcoming.append(UpcomingReminder(
                        task_id=task.task_id,
                        reminder=reminder,
                        fire_time=fire_time,
                        message=reminder.message.replace('{taskTitle}', task.title),
                    ))

        return sorted(upcoming, key=lambda item: item.fire_time)

    # Workload

    def _get_or_create_workload(self, user_id: str) -> UserWorkload:
        workload = self.workloads.get(user_id)
        if workload is None:
            workload = UserWorkload(
                user_id=user_id,
                user_name=f"User {user_id}",
                available_hours=get_workflow_setting('AVAILABLE_HOURS_PER_WEEK'),
            )
        return workload

    def _apply_workload(self, task: ScheduledTask, remove: bool = False) -> None:
        with self._lock:
            workload = self._get_or_create_workload(task.assigned_to)
            step = -1 if remove else 1
            workload.total_tasks = max(0, workload.total_tasks + step)
            workload.total_hours = max(0, workload.total_hours + step * task.estimated_hours)
            if task.status in TaskStatus.get_active_statuses():
                workload.active_tasks = max(0, workload.active_tasks + step)
            if task.priority in TaskPriority.get_high_priorities():
                workload.high_priority_tasks = max(0, workload.high_priority_tasks + step)
            workload.refresh()
            self.workloads.save(workload)

    def get_user_workload(self, user_id: str) -> Optional[UserWorkload]:
        with self._lock:
            workload = self.workloads.get(user_id)
            return replace(workload) if workload else None

    def get_user_workloads(self, user_id: Optional[str] = None) -> List[UserWorkload]:
        """Workload snapshots, most utilized first."""
        with self._lock:
            workloads = [replace(w) for w in self.workloads.all() if not user_id or w.user_id == user_id]
        return sorted(workloads, key=lambda workload: workload.utilization_rate, reverse=True)

    # Recurrence

    def calculate_next_occurrence(self, rule: RecurrenceRule, current: datetime,
                                  occurrence: int = 0, anchor: Optional[datetime] = None) -> Optional[datetime]:
        """
        Next occurrence after ``current``.

        Args:
            rule: Recurrence rule of the series
            current: Scheduled time of the latest occurrence
            occurrence: Number of occurrences already generated
            anchor: Scheduled time of the first occurrence; monthly and
                yearly series count whole periods from it so a clamped
                day (Jan 31 -> Feb 29) does not carry into later months

        Returns:
            The next datetime, or None when the series is exhausted
        """
        if rule.max_occurrences and occurrence >= rule.max_occurrences:
            return None

        anchor = anchor or current
        interval = rule.interval or 1
        recurrence_type = str(rule.type)
        if recurrence_type == RecurrenceType.DAILY:
            next_time = current + timedelta(days=interval)
        elif recurrence_type == RecurrenceType.WEEKLY:
            next_time = current + timedelta(weeks=interval)
        elif recurrence_type == RecurrenceType.MONTHLY:
            elapsed = (current.year - anchor.year) * 12 + current.month - anchor.month
            next_time = self._next_period(anchor, current, interval, elapsed, add_months)
        elif recurrence_type == RecurrenceType.YEARLY:
            next_time = self._next_period(anchor, current, interval, current.year - anchor.year, add_years)
        else:
            return None

        if rule.end_date and next_time > rule.end_date:
            return None

        skipped = {coerce_datetime(exception).date() for exception in rule.exceptions if coerce_datetime(exception)}
        if next_time.date() in skipped:
            return self.calculate_next_occurrence(rule, next_time, occurrence, anchor)

        return next_time

    @staticmethod
    def _next_period(anchor: datetime, current: datetime, interval: int, elapsed: int, shift) -> datetime:
        periods = max(elapsed, 0) // interval + 1
        next_time = shift(anchor, interval * periods)
        while next_time <= current:
            periods += 1
            next_time = shift(anchor, interval * periods)
        return next_time

    def process_recurring_tasks(self) -> List[ScheduledTask]:
        """
        Spawn the next occurrence of every completed recurring task.

        A completed task spawns once; the new occurrence keeps the
        original's offset between scheduled time and due date.
        """
        spawned = []
        with self._lock:
            for task in self.scheduled_tasks.all():
                if task.recurrence is None or task.status != TaskStatus.COMPLETED:
                    continue
                if task.metadata.get('nextOccurrenceTaskId') or task.metadata.get('recurrenceFinished'):
                    continue

                occurrence = task.metadata.get('occurrenceNumber', 0)
                anchor = coerce_datetime(task.metadata.get('recurrenceAnchor')) or task.scheduled_time
                next_time = self.calculate_next_occurrence(task.recurrence, task.scheduled_time, occurrence, anchor)
                if next_time is None:
                    task.metadata['recurrenceFinished'] = True
                    self.scheduled_tasks.save(task)
                    continue

                new_task = self._spawn_occurrence(task, next_time, occurrence + 1, anchor)
                task.metadata['nextOccurrenceTaskId'] = new_task.task_id
                self.scheduled_tasks.save(task)
                spawned.append(new_task)

        if spawned:
            logger.info(f"Spawned {len(spawned)} recurring task occurrences")
        return spawned

    def _spawn_occurrence(self, original: ScheduledTask, next_time: datetime, occurrence: int,
                          anchor: datetime) -> ScheduledTask:
        due_date = None
        if original.due_date:
            due_date = next_time + (original.due_date - original.scheduled_time)

        new_task = replace(
            original,
            id=generate_id('scheduled'),
            task_id=generate_id('task'),
            scheduled_time=next_time,
            due_date=due_date,
            status=TaskStatus.PENDING,
            reminder_settings=self.get_default_reminder_settings(original.priority, original.metadata),
            dependencies=list(original.dependencies),
            metadata={
                **{k: v for k, v in original.metadata.items() if k not in ('nextOccurrenceTaskId', 'completedAt')},
                'recurringTaskId': original.metadata.get('recurringTaskId', original.task_id),
                'occurrenceNumber': occurrence,
                'recurrenceAnchor': anchor,
            },
            created_at=now(),
            updated_at=now(),
        )
        self._store(new_task)
        self._apply_workload(new_task)
        self._log('task_recurred', new_task, {'previousTaskId': original.task_id, 'occurrence': occurrence})
        return new_task

    # Optimization and statistics

    def optimize_schedule(self, request: ScheduleOptimizationRequest) -> ScheduleOptimizationResult:
        """
        Order the tasks in a timeframe by the requested strategy.

        Tasks are not moved; the result lists them in the suggested order
        together with recommendations.
        """
        result = ScheduleOptimizationResult()
        try:
            tasks = [
                task for task in self.get_scheduled_tasks(user_id=request.user_id, case_id=request.case_id)
                if request.start_date <= task.scheduled_time <= request.end_date
            ]
            tasks.sort(key=lambda task: _priority_rank(task.priority), reverse=True)

            if request.strategy == OptimizationStrategy.BALANCE_WORKLOAD:
                result.recommendations.extend(self._balance_workload(tasks))
            elif request.strategy == OptimizationStrategy.MINIMIZE_DELAYS:
                tasks.sort(key=lambda task: (
                    task.due_date is None,
                    task.due_date or task.scheduled_time,
                    -_priority_rank(task.priority),
                ))
            elif request.strategy == OptimizationStrategy.MAXIMIZE_EFFICIENCY:
                tasks.sort(key=lambda task: (task.case_id, task.scheduled_time))
            elif request.strategy == OptimizationStrategy.MEET_DEADLINES:
                tasks.sort(key=lambda task: (task.due_date is None, task.due_date or task.scheduled_time))
            else:
                result.warnings.append(f"Unknown optimization strategy: {request.strategy}")

            result.optimized_tasks = tasks
            result.recommendations.extend(self._recommendations(tasks))
        except Exception as e:
            logger.exception(f"Schedule optimization failed: {str(e)}")
            result.success = False
            result.warnings.append(f"Optimization failed: {str(e)}")
        return result

    def _balance_workload(self, tasks: List[ScheduledTask]) -> List[str]:
        hours: Dict[str, float] = {}
        for task in tasks:
            hours[task.assigned_to] = hours.get(task.assigned_to, 0) + task.estimated_hours
        if len(hours) < 2:
            return []

        busiest = max(hours, key=hours.get)
        lightest = min(hours, key=hours.get)
        gap = hours[busiest] - hours[lightest]
        if gap <= max(estimate_task_hours(priority) for priority in TaskPriority.values):
            return []
        return [f"Move about {gap / 2:g} hours of work from {busiest} to {lightest}"]

    def _recommendations(self, tasks: List[ScheduledTask]) -> List[str]:
        recommendations = []
        overdue = [task for task in tasks if task.is_overdue]
        if overdue:
            recommendations.append(f"Consider rescheduling or prioritizing {len(overdue)} overdue tasks")
        high_priority = [task for task in tasks if task.priority in TaskPriority.get_high_priorities()]
        if len(high_priority) > 5:
            recommendations.append('High concentration of high-priority tasks - consider resource allocation')
        return recommendations

    def get_schedule_stats(self, user_id: Optional[str] = None, case_id: Optional[str] = None) -> Dict[str, Any]:
        tasks = self.get_scheduled_tasks(user_id=user_id, case_id=case_id)
        reference_time = now()
        next_week = reference_time + timedelta(days=7)

        conflicts = sum(
            len(self.check_schedule_conflicts(ScheduleRequest(
                task_id=task.task_id, case_id=task.case_id, title=task.title,
                scheduled_time=task.scheduled_time, assigned_to=task.assigned_to,
                assigned_by=task.assigned_by, priority=task.priority, due_date=task.due_date,
                dependencies=task.dependencies,
            )))
            for task in tasks
        )
        durations = [
            hours_between(task.scheduled_time, task.due_date) if task.due_date else 2
            for task in tasks
        ]
        total_hours = sum(task.estimated_hours for task in tasks)

        return {
            'totalTasks': len(tasks),
            'scheduledTasks': sum(1 for task in tasks if task.status == TaskStatus.PENDING),
            'overdueTasks': sum(1 for task in tasks if task.is_overdue),
            'upcomingTasks': sum(
                1 for task in tasks if task.due_date and reference_time <= task.due_date <= next_week
            ),
            'conflicts': conflicts,
            'averageTaskDuration': round(safe_divide(sum(durations), len(durations)), 2),
            'utilizationRate': min(
                calculate_percentage(total_hours, get_workflow_setting('AVAILABLE_HOURS_PER_WEEK')), 100.0
            ),
        }

    # History

    def _log(self, action: str, task: ScheduledTask, details: Dict[str, Any]) -> None:
        self.history.append(ScheduleHistoryEntry(
            id=generate_id('history'),
            action=action,
            scheduled_id=task.id,
            task_id=task.task_id,
            case_id=task.case_id,
            details=details,
        ))

    def get_schedule_history(self, task_id: Optional[str] = None, limit: Optional[int] = None,
                             case_id: Optional[str] = None) -> List[ScheduleHistoryEntry]:
        """History entries, newest first."""
        history = list(reversed(self.history.entries()))
        if task_id:
            history = [entry for entry in history if entry.task_id == task_id]
        if case_id:
            history = [entry for entry in history if entry.case_id == case_id]
        return history[:limit] if limit else history


task_scheduling_engine = TaskSchedulingEngine()
