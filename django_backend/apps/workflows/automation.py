"""
Trigger-driven task automation.

Automation rules react to three kinds of events: case phase changes,
task status changes and date-based events raised by the periodic Celery
tasks. A rule runs when one of its triggers matches the event and its
conditions hold. Actions with a delay go into a delayed-action queue that
``process_pending_automations`` drains; the Celery beat schedule calls it
every minute.
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from apps.common.exceptions import CaseWorkflowException, ValidationException, WorkflowException
from apps.common.utils import calculate_percentage, generate_id, now
from apps.notifications.choices import NotificationChannel, NotificationUrgency
from apps.notifications.services import NotificationDescriptor, NotificationService, notification_service
from apps.tasks.choices import TaskPriority, TaskStatus
from apps.tasks.templates import TaskTemplateEngine, task_template_engine
from apps.users.choices import UserRole
from .actions import Action, ActionType, AssignmentStrategy
from .conditions import Condition, ConditionOperator, condition_evaluator
from .engines import CreatedTask, UpdatedTask
from .rules import BusinessRuleEngine, RuleEvaluationContext, TriggerEventType, business_rule_engine
from .stores import (
    AutomationRuleStore,
    DelayedActionQueue,
    HistoryStore,
    InMemoryStore,
    build_delayed_queue,
    build_history_store,
)

logger = logging.getLogger(__name__)


class TriggerType(str, Enum):
    CASE_PHASE_CHANGE = "case_phase_change"
    TASK_STATUS_CHANGE = "task_status_change"
    DATE_BASED = "date_based"
    CONDITION_BASED = "condition_based"
    EXTERNAL_EVENT = "external_event"


@dataclass
class AutomationContext:
    """The event an automation run reacts to."""

    trigger_type: TriggerType
    trigger_condition: Dict[str, Any] = field(default_factory=dict)
    trigger_id: Optional[str] = None
    case_id: Optional[str] = None
    task_id: Optional[str] = None
    user_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=now)

    def condition_data(self) -> Dict[str, Any]:
        data = {'caseId': self.case_id, 'taskId': self.task_id, 'userId': self.user_id}
        data.update(self.metadata)
        return data


@dataclass
class AutomationTrigger:
    """
    Event filter of an automation rule.

    ``condition`` keys by trigger type:
        case_phase_change: ``phase`` or ``anyPhaseChange``
        task_status_change: optional ``status`` and ``priority``
        date_based: ``eventType`` (plus informational ``daysBefore``)
    """

    type: TriggerType
    condition: Dict[str, Any] = field(default_factory=dict)
    id: Optional[str] = None
    name: str = ''
    is_active: bool = True
    priority: int = 1

    def matches(self, context: AutomationContext) -> bool:
        if not self.is_active or TriggerType(self.type) != context.trigger_type:
            return False

        expected = self.condition
        event = context.trigger_condition

        if context.trigger_type == TriggerType.CASE_PHASE_CHANGE:
            return bool(expected.get('anyPhaseChange')) or expected.get('phase') == event.get('phase')
        if context.trigger_type == TriggerType.TASK_STATUS_CHANGE:
            return (
                (not expected.get('status') or expected['status'] == event.get('status'))
                and (not expected.get('priority') or expected['priority'] == event.get('priority'))
            )
        if context.trigger_type == TriggerType.DATE_BASED:
            return expected.get('eventType') == event.get('eventType')
        return True


@dataclass
class AutomationRule:
    id: str
    name: str
    triggers: List[AutomationTrigger]
    actions: List[Action]
    conditions: List[Condition] = field(default_factory=list)
    description: str = ''
    is_active: bool = True
    priority: int = 1
    created_at: datetime = field(default_factory=now)
    updated_at: datetime = field(default_factory=now)
    last_triggered: Optional[datetime] = None
    trigger_count: int = 0


@dataclass
class AutomationResult:
    success: bool = True
    actions_executed: List[Action] = field(default_factory=list)
    created_tasks: List[CreatedTask] = field(default_factory=list)
    updated_tasks: List[UpdatedTask] = field(default_factory=list)
    notifications: List[NotificationDescriptor] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def merge(self, other: 'AutomationResult') -> None:
        self.actions_executed.extend(other.actions_executed)
        self.created_tasks.extend(other.created_tasks)
        self.updated_tasks.extend(other.updated_tasks)
        self.notifications.extend(other.notifications)
        self.errors.extend(other.errors)
        self.warnings.extend(other.warnings)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'actionsExecuted': [action.type.value for action in self.actions_executed],
            'createdTasks': [task.to_dict() for task in self.created_tasks],
            'updatedTasks': [task.to_dict() for task in self.updated_tasks],
            'notifications': [notification.to_dict() for notification in self.notifications],
            'errors': list(self.errors),
            'warnings': list(self.warnings),
        }


@dataclass
class PhaseChangeRequest:
    """Task generation request raised by a case phase change."""

    case_id: str
    case_type: str
    current_phase: str
    previous_phase: Optional[str] = None
    trigger: str = 'phase_change'
    user_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PendingAutomation:
    rule: AutomationRule
    action: Action
    context: AutomationContext


@dataclass
class AutomationHistoryEntry:
    id: str
    rule_id: str
    rule_name: str
    context: AutomationContext
    result: AutomationResult
    timestamp: datetime = field(default_factory=now)
    delayed: bool = False


def _trigger(trigger_type, trigger_id, name, trigger_priority, **condition) -> AutomationTrigger:
    return AutomationTrigger(type=trigger_type, condition=condition, id=trigger_id, name=name,
                             priority=trigger_priority)


def default_automation_rules() -> List[AutomationRule]:
    return [
        AutomationRule(
            id='phase_change_task_creation',
            name='Phase Change Task Creation',
            description='Automatically create tasks when case phase changes',
            priority=1,
            triggers=[_trigger(TriggerType.CASE_PHASE_CHANGE, 'phase_change_trigger', 'Case Phase Change', 1,
                               anyPhaseChange=True)],
            actions=[Action.build(ActionType.CREATE_TASK, source='phase_change', use_templates=True)],
        ),
        AutomationRule(
            id='overdue_task_escalation',
            name='Overdue Task Escalation',
            description='Escalate overdue tasks to supervisors',
            priority=2,
            triggers=[_trigger(TriggerType.DATE_BASED, 'overdue_trigger', 'Task Overdue', 2,
                               eventType='task_overdue')],
            conditions=[
                Condition('task.status', ConditionOperator.EQUALS, TaskStatus.PENDING),
                Condition('task.dueDate', ConditionOperator.LESS_THAN, 'now'),
                Condition('task.escalationLevel', ConditionOperator.LESS_THAN, 3),
            ],
            actions=[
                Action.build(ActionType.ESCALATE_TASK, increment_level=1, notify_supervisor=True),
                Action.build(ActionType.SEND_NOTIFICATION, channel=NotificationChannel.EMAIL,
                             template='task_overdue_escalation', recipients=['supervisor', 'assignee'],
                             urgency=NotificationUrgency.HIGH),
            ],
        ),
        AutomationRule(
            id='high_priority_assignment',
            name='High Priority Task Assignment',
            description='Automatically assign high priority tasks to available attorneys',
            priority=3,
            triggers=[_trigger(TriggerType.TASK_STATUS_CHANGE, 'high_priority_trigger', 'High Priority Task', 3,
                               priority=TaskPriority.HIGH, status=TaskStatus.PENDING)],
            conditions=[
                Condition('task.priority', ConditionOperator.EQUALS, TaskPriority.HIGH),
                Condition('task.assignedTo', ConditionOperator.NOT_EXISTS),
            ],
            actions=[Action.build(ActionType.ASSIGN_TASK, strategy=AssignmentStrategy.WORKLOAD_BALANCE,
                                  required_role=UserRole.ATTORNEY)],
        ),
        AutomationRule(
            id='task_completion_followup',
            name='Task Completion Follow-up',
            description='Create a review task after important tasks are completed',
            priority=4,
            triggers=[_trigger(TriggerType.TASK_STATUS_CHANGE, 'task_completion_trigger', 'Task Completed', 4,
                               status=TaskStatus.COMPLETED)],
            conditions=[
                Condition('task.status', ConditionOperator.EQUALS, TaskStatus.COMPLETED),
                Condition('task.priority', ConditionOperator.IN, [TaskPriority.HIGH, TaskPriority.URGENT]),
            ],
            actions=[
                Action.build(ActionType.CREATE_TASK, delay_hours=24, template='follow_up_review',
                             assign_to_creator=True),
                Action.build(ActionType.SEND_NOTIFICATION, channel=NotificationChannel.IN_APP,
                             template='task_completed_review', recipients=['creator', 'supervisor']),
            ],
        ),
        AutomationRule(
            id='case_deadline_reminder',
            name='Case Deadline Reminder',
            description='Remind the case team a week before a case deadline',
            priority=5,
            triggers=[_trigger(TriggerType.DATE_BASED, 'deadline_reminder_trigger', 'Deadline Approaching', 5,
                               eventType='deadline_approaching', daysBefore=7)],
            conditions=[
                Condition('case.hasDeadline', ConditionOperator.EQUALS, True),
                Condition('case.deadline', ConditionOperator.LESS_THAN, timedelta(days=7)),
            ],
            actions=[
                Action.build(ActionType.SEND_NOTIFICATION, channel=NotificationChannel.EMAIL,
                             template='case_deadline_reminder', recipients=['attorney', 'client']),
                Action.build(ActionType.CREATE_TASK, template='deadline_preparation',
                             priority=TaskPriority.HIGH, assign_to_case_attorney=True),
            ],
        ),
        AutomationRule(
            id='document_filing_deadline',
            name='Document Filing Deadline',
            description='Create an urgent filing task three days before a filing deadline',
            priority=6,
            triggers=[_trigger(TriggerType.DATE_BASED, 'filing_deadline_trigger', 'Filing Deadline', 6,
                               eventType='filing_deadline', daysBefore=3)],
            conditions=[Condition('case.hasPendingFilings', ConditionOperator.EQUALS, True)],
            actions=[
                Action.build(ActionType.CREATE_TASK, template='complete_filing',
                             priority=TaskPriority.URGENT, assign_to_case_attorney=True),
                Action.build(ActionType.SEND_NOTIFICATION, channel=NotificationChannel.EMAIL,
                             template='filing_deadline_urgent', recipients=['attorney', 'paralegal'],
                             urgency=NotificationUrgency.HIGH),
            ],
        ),
    ]


class TaskAutomationEngine:
    """
    Runs automation rules for case and task events.

    Processing methods always return results; rule and action failures
    become entries in ``errors``.
    """

    def __init__(
        self,
        template_engine: Optional[TaskTemplateEngine] = None,
        rule_engine: Optional[BusinessRuleEngine] = None,
        rule_store: Optional[AutomationRuleStore] = None,
        history_store: Optional[HistoryStore] = None,
        delayed_queue: Optional[DelayedActionQueue] = None,
        notifications: Optional[NotificationService] = None,
        load_defaults: bool = True,
    ):
        self.template_engine = template_engine or task_template_engine
        self.rule_engine = rule_engine or business_rule_engine
        self.rules = rule_store if rule_store is not None else InMemoryStore()
        self.history = history_store if history_store is not None else build_history_store('automation')
        self.delayed_queue = delayed_queue if delayed_queue is not None else build_delayed_queue('automation:delayed')
        self.notifications = notifications or notification_service

        if load_defaults:
            for rule in default_automation_rules():
                self.add_automation_rule(rule)

    # Event entry points

    def process_case_phase_change(self, request: PhaseChangeRequest) -> AutomationResult:
        context = AutomationContext(
            trigger_type=TriggerType.CASE_PHASE_CHANGE,
            trigger_condition={'phase': request.current_phase},
            trigger_id='phase_change',
            case_id=request.case_id,
            user_id=request.user_id,
            metadata={
                **request.metadata,
                'caseType': request.case_type,
                'currentPhase': request.current_phase,
                'previousPhase': request.previous_phase,
                'trigger': request.trigger,
            },
        )
        return self._process(context)

    def process_task_status_change(self, task_id: str, old_status: str, new_status: str, case_id: str,
                                   user_id: Optional[str] = None,
                                   metadata: Optional[Dict[str, Any]] = None) -> AutomationResult:
        """
        Run automation for a task status change.

        The task snapshot seen by rule conditions is ``metadata['task']``
        overlaid with the new status and, when given, ``taskPriority`` and
        ``taskAssignee`` from the metadata.
        """
        metadata = dict(metadata or {})
        task = dict(metadata.get('task') or {})
        task.update({'id': task_id, 'status': new_status})
        if metadata.get('taskPriority'):
            task['priority'] = metadata['taskPriority']
        if metadata.get('taskAssignee'):
            task['assignedTo'] = metadata['taskAssignee']

        context = AutomationContext(
            trigger_type=TriggerType.TASK_STATUS_CHANGE,
            trigger_condition={
                'oldStatus': old_status,
                'status': new_status,
                'priority': task.get('priority'),
            },
            trigger_id='task_status_change',
            case_id=case_id,
            task_id=task_id,
            user_id=user_id,
            metadata={**metadata, 'task': task, 'oldStatus': old_status, 'newStatus': new_status},
        )
        return self._process(context)

    def process_date_based_trigger(self, event_type: str,
                                   metadata: Optional[Dict[str, Any]] = None) -> List[AutomationResult]:
        """
        Run the rules listening for a date-based event.

        Returns one result per rule that matched.
        """
        metadata = dict(metadata or {})
        task = metadata.get('task') or {}
        context = AutomationContext(
            trigger_type=TriggerType.DATE_BASED,
            trigger_condition={'eventType': event_type},
            trigger_id=event_type,
            case_id=metadata.get('caseId'),
            task_id=metadata.get('taskId') or task.get('id'),
            user_id=metadata.get('userId'),
            metadata=metadata,
        )

        results = []
        try:
            for rule in self._matching_rules(context):
                results.append(self._run_guarded(rule, context))
        except Exception as e:
            logger.exception(f"Date-based automation '{event_type}' failed: {str(e)}")
            results.append(AutomationResult(success=False, errors=[f"Automation processing failed: {str(e)}"]))
        return results

    def process_pending_automations(self, reference_time: Optional[datetime] = None) -> List[AutomationResult]:
        """Run every delayed action whose fire time has passed."""
        results = []
        for job in self.delayed_queue.pop_due(reference_time or now()):
            pending: PendingAutomation = job.payload
            try:
                result = self._execute_actions(pending.rule, pending.context, [pending.action], delayed=True)
            except Exception as e:
                logger.exception(f"Error processing pending automation {job.id}: {str(e)}")
                result = AutomationResult(
                    success=False, errors=[f"Error processing pending automation {job.id}: {str(e)}"]
                )
            self.history.append(AutomationHistoryEntry(
                id=generate_id('history'),
                rule_id=pending.rule.id,
                rule_name=pending.rule.name,
                context=pending.context,
                result=result,
                delayed=True,
            ))
            results.append(result)

        if results:
            logger.info(f"Processed {len(results)} pending automations")
        return results

    # Rule execution

    def _process(self, context: AutomationContext) -> AutomationResult:
        result = AutomationResult()
        try:
            for rule in self._matching_rules(context):
                rule_result = self._run_guarded(rule, context)
                result.merge(rule_result)
                if not rule_result.success:
                    result.success = False
        except Exception as e:
            logger.exception(f"Automation processing failed: {str(e)}")
            result.success = False
            result.errors.append(f"Automation processing failed: {str(e)}")
        return result

    def _matching_rules(self, context: AutomationContext) -> List[AutomationRule]:
        data = context.condition_data()
        matching = []
        for rule in self.get_automation_rules(active_only=True):
            if not any(trigger.matches(context) for trigger in rule.triggers):
                continue
            evaluation = condition_evaluator.evaluate_all(rule.conditions, data, reference_time=context.timestamp)
            if evaluation.matched:
                matching.append(rule)
        return matching

    def _run_guarded(self, rule: AutomationRule, context: AutomationContext) -> AutomationResult:
        try:
            result = self._execute_actions(rule, context, rule.actions)
        except Exception as e:
            logger.exception(f"Error executing rule {rule.name}: {str(e)}")
            result = AutomationResult(success=False, errors=[f"Error executing rule {rule.name}: {str(e)}"])

        timestamp = now()
        rule.last_triggered = timestamp
        rule.updated_at = timestamp
        rule.trigger_count += 1

        self.history.append(AutomationHistoryEntry(
            id=generate_id('history'),
            rule_id=rule.id,
            rule_name=rule.name,
            context=context,
            result=result,
        ))
        return result

    def _execute_actions(self, rule: AutomationRule, context: AutomationContext,
                         actions: List[Action], delayed: bool = False) -> AutomationResult:
        result = AutomationResult()
        for action in actions:
            if action.delay_hours and action.delay_hours > 0 and not delayed:
                self.delayed_queue.push(
                    fire_time=context.timestamp + timedelta(hours=action.delay_hours),
                    payload=PendingAutomation(rule=rule, action=action, context=context),
                    created_at=now(),
                )
                result.warnings.append(f"Action {action.type.value} scheduled for {action.delay_hours:g} hours later")
                continue

            action_result = self.execute_action(action, context, rule)
            result.merge(action_result)
            result.actions_executed.append(action)

            if action_result.errors and action.stops_on_failure:
                result.success = False
                break
        return result

    def execute_action(self, action: Action, context: AutomationContext,
                       rule: Optional[AutomationRule] = None) -> AutomationResult:
        """Run one action; failures come back as result errors."""
        result = AutomationResult()
        try:
            if action.type == ActionType.CREATE_TASK:
                result.created_tasks.extend(self._create_tasks(action, context, rule))
            elif action.type == ActionType.SEND_NOTIFICATION:
                result.notifications.append(self._build_notification(action, context, rule))
            elif action.type == ActionType.UPDATE_STATUS:
                result.updated_tasks.extend(self._update_status(action, context))
            else:
                result.updated_tasks.append(self._delegate(action, context))
        except CaseWorkflowException as e:
            result.errors.append(f"Error executing action {action.type.value}: {e.message}")
        except Exception as e:
            logger.exception(f"Unexpected error executing action {action.type.value}: {str(e)}")
            result.errors.append(f"Error executing action {action.type.value}: {str(e)}")
        return result

    def _create_tasks(self, action: Action, context: AutomationContext,
                      rule: Optional[AutomationRule]) -> List[CreatedTask]:
        params = action.params
        if not context.case_id:
            raise ValidationException('Case ID is required for task creation')

        metadata = context.metadata
        base_metadata = {'autoGenerated': True, 'automationRule': rule.id if rule else None}
        if params.source:
            base_metadata['source'] = params.source

        if params.assign_to_creator:
            assignee = metadata.get('createdBy') or context.user_id or 'system'
        elif params.assign_to_case_attorney:
            assignee = condition_evaluator.get_field_value(metadata, 'case.attorneyId') or context.user_id or 'system'
        else:
            assignee = context.user_id or 'system'

        if params.use_templates:
            templates = self.template_engine.get_auto_create_templates(
                metadata.get('caseType'), metadata.get('currentPhase')
            )
            template_ids = [template.id for template in templates]
        elif params.template:
            template_ids = [params.template]
        else:
            template_ids = []

        created = []
        for template_id in template_ids:
            task_data = self.template_engine.generate_task_from_template(template_id, context.case_id, metadata)
            if task_data is None:
                continue
            created.append(CreatedTask(
                id=generate_id('task'),
                title=task_data.title,
                description=task_data.description,
                case_id=context.case_id,
                assigned_to=assignee,
                assigned_by='system',
                due_date=task_data.due_date,
                priority=params.priority or task_data.priority,
                metadata={**base_metadata, 'templateId': template_id},
            ))

        if not created and not params.use_templates:
            title = params.title or (params.template or 'automated_task').replace('_', ' ').capitalize()
            created.append(CreatedTask(
                id=generate_id('task'),
                title=title,
                case_id=context.case_id,
                assigned_to=assignee,
                assigned_by='system',
                priority=params.priority or TaskPriority.MEDIUM,
                metadata={**base_metadata, 'templateId': params.template, 'parentTaskId': context.task_id},
            ))

        return created

    def _build_notification(self, action: Action, context: AutomationContext,
                            rule: Optional[AutomationRule]) -> NotificationDescriptor:
        params = action.params
        return self.notifications.build(
            notification_type=params.template or 'automation',
            recipients=params.recipients or [context.user_id or 'system'],
            subject=params.subject or 'Automation Notification',
            message=params.message or 'You have a new notification',
            channel=params.channel,
            template=params.template,
            urgency=params.urgency,
            metadata={
                'automationRule': rule.id if rule else None,
                'caseId': context.case_id,
                'taskId': context.task_id,
                'timestamp': context.timestamp.isoformat(),
            },
        )

    def _update_status(self, action: Action, context: AutomationContext) -> List[UpdatedTask]:
        params = action.params
        if params.activate_dependents:
            dependents = condition_evaluator.get_field_value(context.metadata, 'task.dependents') or []
            return [
                UpdatedTask(id=task_id, changes={'status': TaskStatus.PENDING},
                            reason=f"Dependency {context.task_id} completed")
                for task_id in dependents
            ]

        if not context.task_id:
            raise ValidationException('Task ID is required for status updates')
        if params.new_status not in TaskStatus.values:
            raise ValidationException(f"Invalid task status: {params.new_status}")
        return [UpdatedTask(id=context.task_id, changes={'status': params.new_status}, reason='Automation')]

    def _delegate(self, action: Action, context: AutomationContext) -> UpdatedTask:
        rule_context = RuleEvaluationContext(
            case_id=context.case_id,
            task_id=context.task_id,
            user_id=context.user_id,
            trigger_event=TriggerEventType.SYSTEM_EVENT,
            event_details={'automationTrigger': context.trigger_type.value},
            metadata=context.metadata,
            timestamp=context.timestamp,
        )
        action_result = self.rule_engine.execute_action(action, rule_context)
        if not action_result.success:
            raise WorkflowException(action_result.error)
        return UpdatedTask(
            id=context.task_id,
            changes=action_result.result,
            reason=f"Automation: {action.type.value}",
        )

    # Rule management

    def add_automation_rule(self, rule: AutomationRule) -> AutomationRule:
        errors = []
        if not rule.id:
            errors.append('Rule id is required')
        if not rule.triggers:
            errors.append('At least one trigger is required')
        if not rule.actions:
            errors.append('At least one action is required')
        if errors:
            raise ValidationException(f"Invalid automation rule: {', '.join(errors)}", details={'errors': errors})
        return self.rules.save(rule)

    def get_automation_rule(self, rule_id: str) -> Optional[AutomationRule]:
        return self.rules.get(rule_id)

    def get_automation_rules(self, active_only: bool = True) -> List[AutomationRule]:
        rules = [rule for rule in self.rules.all() if rule.is_active or not active_only]
        return sorted(rules, key=lambda rule: rule.priority)

    def update_automation_rule(self, rule_id: str, **updates) -> bool:
        rule = self.rules.get(rule_id)
        if rule is None:
            return False
        updates.pop('id', None)
        self.rules.save(replace(rule, updated_at=now(), **updates))
        return True

    def delete_automation_rule(self, rule_id: str) -> bool:
        return self.rules.delete(rule_id)

    def activate_automation_rule(self, rule_id: str) -> bool:
        return self.update_automation_rule(rule_id, is_active=True)

    def deactivate_automation_rule(self, rule_id: str) -> bool:
        return self.update_automation_rule(rule_id, is_active=False)

    # Queries

    def get_pending_automations(self) -> List[Dict[str, Any]]:
        """Delayed actions waiting to run, earliest first."""
        return [
            {
                'id': job.id,
                'ruleId': job.payload.rule.id,
                'actionType': job.payload.action.type.value,
                'caseId': job.payload.context.case_id,
                'scheduledTime': job.fire_time,
            }
            for job in self.delayed_queue.peek_all()
        ]

    def cancel_pending_automation(self, job_id: str) -> bool:
        return self.delayed_queue.remove(job_id)

    def get_automation_history(self, limit: Optional[int] = None,
                               case_id: Optional[str] = None) -> List[AutomationHistoryEntry]:
        """History entries, newest first."""
        history = list(reversed(self.history.entries()))
        if case_id:
            history = [entry for entry in history if entry.context.case_id == case_id]
        return history[:limit] if limit else history

    def get_automation_stats(self) -> Dict[str, Any]:
        rules = self.rules.all()
        history = self.history.entries()
        yesterday = now() - timedelta(hours=24)

        trigger_counts: Dict[str, int] = {}
        for entry in history:
            key = entry.context.trigger_type.value
            trigger_counts[key] = trigger_counts.get(key, 0) + 1

        successful = sum(1 for entry in history if entry.result.success and not entry.result.errors)

        return {
            'totalRules': len(rules),
            'activeRules': sum(1 for rule in rules if rule.is_active),
            'totalTriggers': sum(rule.trigger_count for rule in rules),
            'pendingAutomations': len(self.delayed_queue),
            'recentHistory': sum(1 for entry in history if entry.timestamp > yesterday),
            'successRate': calculate_percentage(successful, len(history)),
            'triggerCounts': trigger_counts,
        }


task_automation_engine = TaskAutomationEngine()
