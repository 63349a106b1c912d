"""
Business rule engine for task assignment, escalation and review.

Rules are weighted condition lists paired with ordered actions. Active
rules run in ascending priority; a rule whose conditions match executes
its actions one by one, honouring each action's failure strategy. The
engine also owns the escalation path table keyed by assignee role.
"""

import logging
import threading
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from apps.common.exceptions import (
    AssignmentException,
    CaseWorkflowException,
    EscalationException,
    ResourceNotFoundException,
    ValidationException,
)
from apps.common.utils import coerce_datetime, elapsed_ms, generate_id, now
from apps.notifications.choices import NotificationChannel, NotificationType, NotificationUrgency
from apps.notifications.services import NotificationService, notification_service
from apps.tasks.choices import TaskPriority, TaskStatus
from apps.tasks.templates import interpolate_template
from apps.users.choices import UserRole
from apps.users.directory import Candidate, CandidateDirectory, StaticCandidateDirectory, resolve_candidates
from .actions import (
    Action,
    ActionResult,
    ActionType,
    AssignmentStrategy,
    DeadlineStrategy,
    FailureStrategy,
)
from .conditions import Condition, ConditionOperator, condition_evaluator
from .stores import HistoryStore, InMemoryHistoryStore, InMemoryStore, RuleStore

logger = logging.getLogger(__name__)


class RuleCategory(str, Enum):
    TASK_ASSIGNMENT = "task_assignment"
    ESCALATION = "escalation"
    DEADLINE_MANAGEMENT = "deadline_management"
    WORKLOAD_BALANCE = "workload_balance"
    COMPLIANCE = "compliance"
    QUALITY_CONTROL = "quality_control"


class TriggerEventType(str, Enum):
    """Events that lead callers to evaluate business rules."""

    TASK_CREATED = "task_created"
    TASK_UPDATED = "task_updated"
    PHASE_CHANGED = "phase_changed"
    DEADLINE_APPROACHING = "deadline_approaching"
    USER_ACTION = "user_action"
    SYSTEM_EVENT = "system_event"


@dataclass
class BusinessRule:
    """A weighted condition list and the actions it triggers."""

    id: str
    name: str
    category: str
    priority: int
    conditions: List[Condition] = field(default_factory=list)
    actions: List[Action] = field(default_factory=list)
    description: str = ''
    is_active: bool = True
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=now)
    updated_at: datetime = field(default_factory=now)
    last_triggered: Optional[datetime] = None
    trigger_count: int = 0
    success_count: int = 0
    failure_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'category': str(getattr(self.category, 'value', self.category)),
            'priority': self.priority,
            'isActive': self.is_active,
            'conditions': [condition.describe() for condition in self.conditions],
            'actions': [action.to_dict() for action in self.actions],
            'triggerCount': self.trigger_count,
            'successCount': self.success_count,
            'failureCount': self.failure_count,
            'lastTriggered': self.last_triggered,
        }


@dataclass(frozen=True)
class EscalationNotification:
    channel: str
    recipients: List[str]
    template: str
    urgency: str = NotificationUrgency.MEDIUM

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': str(self.channel),
            'recipients': list(self.recipients),
            'template': self.template,
            'urgency': str(self.urgency),
        }


@dataclass(frozen=True)
class EscalationPath:
    """One escalation step available to tasks held by ``from_role``."""

    level: int
    from_role: str
    to_role: str
    conditions: List[Condition] = field(default_factory=list)
    notification_rules: List[EscalationNotification] = field(default_factory=list)
    approval_required: bool = False


@dataclass
class RuleEvaluationContext:
    """
    Request-scoped input for one rule evaluation run.

    ``metadata`` carries the case and task snapshots (``task``, ``case``)
    and may carry a ``candidates`` list for assignment actions.
    """

    case_id: Optional[str] = None
    task_id: Optional[str] = None
    user_id: Optional[str] = None
    trigger_event: str = TriggerEventType.SYSTEM_EVENT
    event_details: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=now)

    def condition_data(self) -> Dict[str, Any]:
        """Data the rule conditions are evaluated against."""
        data = {
            'caseId': self.case_id,
            'taskId': self.task_id,
            'userId': self.user_id,
            'event': {'type': str(getattr(self.trigger_event, 'value', self.trigger_event)),
                      'details': self.event_details},
        }
        data.update(self.metadata)
        return data

    @property
    def task(self) -> Dict[str, Any]:
        return self.metadata.get('task') or {}


@dataclass
class RuleResult:
    rule_id: str
    rule_name: str
    matched: bool = False
    score: float = 0.0
    confidence: float = 0.0
    executed_actions: List[Action] = field(default_factory=list)
    results: List[ActionResult] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    execution_time: float = 0.0

    @property
    def success(self) -> bool:
        return not self.errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            'ruleId': self.rule_id,
            'ruleName': self.rule_name,
            'matched': self.matched,
            'score': self.score,
            'confidence': self.confidence,
            'actionsExecuted': [action.type.value for action in self.executed_actions],
            'results': [result.to_dict() for result in self.results],
            'errors': list(self.errors),
            'warnings': list(self.warnings),
            'executionTime': self.execution_time,
        }


@dataclass
class RulePerformance:
    evaluation_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    average_execution_time: float = 0.0
    last_evaluation: Optional[datetime] = None


@dataclass
class EvaluationRecord:
    id: str
    context: RuleEvaluationContext
    results: List[RuleResult]
    timestamp: datetime = field(default_factory=now)


def _conditions(*specs) -> List[Condition]:
    return [Condition(field_path, operator, value, weight=weight, id=condition_id)
            for condition_id, field_path, operator, value, weight in specs]


def default_business_rules() -> List[BusinessRule]:
    """The rule set every engine starts with."""
    return [
        BusinessRule(
            id='expertise_based_assignment',
            name='Expertise-Based Task Assignment',
            description='Assign tasks to users with relevant expertise',
            category=RuleCategory.TASK_ASSIGNMENT,
            priority=1,
            conditions=_conditions(
                ('has_expertise', 'task.requiredExpertise', ConditionOperator.EXISTS, None, 0.8),
                ('not_assigned', 'task.assignedTo', ConditionOperator.NOT_EXISTS, None, 0.5),
            ),
            actions=[Action.build(ActionType.ASSIGN_TASK, strategy=AssignmentStrategy.EXPERTISE_BASED)],
            metadata={'tags': ['assignment', 'expertise', 'automation']},
        ),
        BusinessRule(
            id='workload_balance_assignment',
            name='Workload-Based Assignment',
            description='Assign tasks to users with lowest current workload',
            category=RuleCategory.TASK_ASSIGNMENT,
            priority=2,
            conditions=_conditions(
                ('unassigned_task', 'task.assignedTo', ConditionOperator.NOT_EXISTS, None, 0.7),
                ('normal_priority', 'task.priority', ConditionOperator.IN,
                 [TaskPriority.LOW, TaskPriority.MEDIUM], 0.3),
            ),
            actions=[Action.build(ActionType.ASSIGN_TASK, strategy=AssignmentStrategy.WORKLOAD_BALANCE,
                                  workload_threshold=0.8)],
            metadata={'tags': ['assignment', 'workload', 'balance']},
        ),
        BusinessRule(
            id='high_priority_assignment',
            name='High Priority Task Assignment',
            description='Immediately assign high priority tasks to available senior staff',
            category=RuleCategory.TASK_ASSIGNMENT,
            priority=3,
            conditions=_conditions(
                ('high_priority', 'task.priority', ConditionOperator.IN,
                 [TaskPriority.HIGH, TaskPriority.URGENT], 0.9),
                ('unassigned', 'task.assignedTo', ConditionOperator.NOT_EXISTS, None, 0.8),
            ),
            actions=[
                Action.build(ActionType.ASSIGN_TASK, failure_strategy=FailureStrategy.STOP,
                             strategy=AssignmentStrategy.PRIORITY_BASED, required_role=UserRole.ATTORNEY),
                Action.build(ActionType.SEND_NOTIFICATION, channel=NotificationChannel.EMAIL,
                             recipients=['supervisor'], template='high_priority_task_assigned',
                             urgency=NotificationUrgency.HIGH),
            ],
            metadata={'tags': ['assignment', 'high_priority', 'urgent']},
        ),
        BusinessRule(
            id='overdue_task_escalation',
            name='Overdue Task Escalation',
            description='Escalate overdue tasks to supervisors',
            category=RuleCategory.ESCALATION,
            priority=4,
            conditions=_conditions(
                ('task_overdue', 'task.dueDate', ConditionOperator.LESS_THAN, 'now', 0.9),
                ('not_completed', 'task.status', ConditionOperator.NOT_EQUALS, TaskStatus.COMPLETED, 0.8),
                ('low_escalation_level', 'task.escalationLevel', ConditionOperator.LESS_THAN, 3, 0.6),
            ),
            actions=[
                Action.build(ActionType.ESCALATE_TASK, increment_level=1, notify_supervisor=True),
                Action.build(ActionType.SEND_NOTIFICATION, channel=NotificationChannel.IN_APP,
                             recipients=['assignee'], template='task_escalated',
                             urgency=NotificationUrgency.HIGH),
            ],
            metadata={'tags': ['escalation', 'overdue', 'deadline']},
        ),
        BusinessRule(
            id='deadline_adjustment',
            name='Intelligent Deadline Adjustment',
            description='Automatically adjust deadlines based on complexity and dependencies',
            category=RuleCategory.DEADLINE_MANAGEMENT,
            priority=5,
            conditions=_conditions(
                ('has_dependencies', 'task.dependencies', ConditionOperator.EXISTS, None, 0.7),
                ('complex_task', 'task.estimatedDuration', ConditionOperator.GREATER_THAN, 8, 0.6),
            ),
            actions=[Action.build(ActionType.SET_DEADLINE, strategy=DeadlineStrategy.COMPLEXITY_BASED,
                                  buffer_percentage=0.2, min_extension_hours=24)],
            metadata={'tags': ['deadline', 'planning', 'complexity']},
        ),
        BusinessRule(
            id='compliance_review_required',
            name='Compliance Review Requirement',
            description='Require compliance review for certain case types',
            category=RuleCategory.COMPLIANCE,
            priority=6,
            conditions=_conditions(
                ('regulated_case_type', 'case.type', ConditionOperator.IN,
                 ['CRIMINAL_DEFENSE', 'MEDICAL_MALPRACTICE'], 0.9),
                ('critical_task', 'task.category', ConditionOperator.IN,
                 ['court_filing', 'evidence_handling'], 0.8),
            ),
            actions=[
                Action.build(ActionType.REQUEST_REVIEW, failure_strategy=FailureStrategy.STOP,
                             review_type='compliance', requested_from=UserRole.ADMIN,
                             deadline_offset_hours=48),
                Action.build(ActionType.SEND_NOTIFICATION, channel=NotificationChannel.EMAIL,
                             recipients=['compliance_officer'], template='compliance_review_required',
                             urgency=NotificationUrgency.HIGH),
            ],
            metadata={'tags': ['compliance', 'review', 'regulatory']},
        ),
        BusinessRule(
            id='quality_check_before_completion',
            name='Quality Check Before Task Completion',
            description='Ensure quality checks are performed before marking tasks complete',
            category=RuleCategory.QUALITY_CONTROL,
            priority=7,
            conditions=_conditions(
                ('high_value_task', 'task.value', ConditionOperator.GREATER_THAN, 10000, 0.8),
                ('completion_attempted', 'event.type', ConditionOperator.EQUALS,
                 'task_completion_attempted', 0.9),
            ),
            actions=[Action.build(
                ActionType.REQUEST_REVIEW, failure_strategy=FailureStrategy.STOP,
                review_type='quality', requested_from=UserRole.ATTORNEY, deadline_offset_hours=24,
                checklist=['document_accuracy', 'client_communication', 'deadline_compliance'],
            )],
            metadata={'tags': ['quality', 'review', 'validation']},
        ),
        BusinessRule(
            id='dependency_auto_activation',
            name='Dependency-Based Task Activation',
            description='Automatically activate tasks when dependencies are completed',
            category=RuleCategory.TASK_ASSIGNMENT,
            priority=8,
            conditions=_conditions(
                ('has_completed_dependencies', 'task.completedDependencies', ConditionOperator.GREATER_THAN, 0, 0.8),
                ('waiting_for_dependencies', 'task.status', ConditionOperator.EQUALS, 'WAITING_DEPENDENCIES', 0.9),
            ),
            actions=[Action.build(ActionType.UPDATE_STATUS, new_status=TaskStatus.PENDING)],
            metadata={'tags': ['dependencies', 'automation', 'workflow']},
        ),
    ]


def default_escalation_paths() -> Dict[str, List[EscalationPath]]:
    return {
        UserRole.ASSISTANT: [
            EscalationPath(
                level=1, from_role=UserRole.ASSISTANT, to_role=UserRole.ATTORNEY,
                conditions=[Condition('escalationLevel', ConditionOperator.EQUALS, 1)],
                notification_rules=[EscalationNotification(
                    NotificationChannel.EMAIL, ['attorney'], 'task_escalated_to_attorney', NotificationUrgency.MEDIUM
                )],
            ),
            EscalationPath(
                level=2, from_role=UserRole.ASSISTANT, to_role=UserRole.ADMIN,
                conditions=[Condition('escalationLevel', ConditionOperator.EQUALS, 2)],
                notification_rules=[EscalationNotification(
                    NotificationChannel.EMAIL, ['admin'], 'task_escalated_to_admin', NotificationUrgency.HIGH
                )],
                approval_required=True,
            ),
        ],
        UserRole.ATTORNEY: [
            EscalationPath(
                level=1, from_role=UserRole.ATTORNEY, to_role=UserRole.ADMIN,
                conditions=[Condition('escalationLevel', ConditionOperator.EQUALS, 1)],
                notification_rules=[EscalationNotification(
                    NotificationChannel.EMAIL, ['admin'], 'attorney_task_escalated', NotificationUrgency.HIGH
                )],
            ),
        ],
    }


Handler = Callable[[Action, RuleEvaluationContext, Dict[str, Any]], Dict[str, Any]]


class BusinessRuleEngine:
    """
    Evaluates business rules against request-scoped contexts.

    Evaluation never raises: condition or action errors are recorded on
    the ``RuleResult`` and in the rule's failure counter.
    """

    def __init__(
        self,
        rule_store: Optional[RuleStore] = None,
        history_store: Optional[HistoryStore] = None,
        candidate_directory: Optional[CandidateDirectory] = None,
        notifications: Optional[NotificationService] = None,
        load_defaults: bool = True,
    ):
        self.rules = rule_store if rule_store is not None else InMemoryStore()
        self.history = history_store if history_store is not None else InMemoryHistoryStore()
        self.candidate_directory = candidate_directory or StaticCandidateDirectory()
        self.notifications = notifications or notification_service
        self.escalation_paths: Dict[str, List[EscalationPath]] = {}
        self.performance: Dict[str, RulePerformance] = {}
        self._lock = threading.RLock()

        self._handlers: Dict[ActionType, Handler] = {
            ActionType.ASSIGN_TASK: self._handle_assign_task,
            ActionType.ESCALATE_TASK: self._handle_escalate_task,
            ActionType.CHANGE_PRIORITY: self._handle_change_priority,
            ActionType.SET_DEADLINE: self._handle_set_deadline,
            ActionType.SEND_NOTIFICATION: self._handle_send_notification,
            ActionType.CREATE_DEPENDENCY: self._handle_create_dependency,
            ActionType.UPDATE_STATUS: self._handle_update_status,
            ActionType.REQUEST_REVIEW: self._handle_request_review,
            ActionType.REASSIGN_TASK: self._handle_reassign_task,
            ActionType.CREATE_TASK: self._handle_create_task,
        }

        if load_defaults:
            for rule in default_business_rules():
                self.add_rule(rule)
            for role, paths in default_escalation_paths().items():
                for path in paths:
                    self.add_escalation_path(role, path)
            logger.info(f"Initialized {self.rules.count()} default business rules")

    # Evaluation

    def evaluate_rules(self, context: RuleEvaluationContext) -> List[RuleResult]:
        """
        Evaluate every active rule in ascending priority.

        Rules with equal priority keep their registration order.

        Returns:
            One result per active rule, in evaluation order
        """
        results: List[RuleResult] = []
        try:
            for rule in self.get_rules(active_only=True):
                result = self.evaluate_rule(rule, context)
                results.append(result)
                self._update_performance(rule.id, result)
        except Exception as e:
            logger.exception(f"Error evaluating business rules: {str(e)}")

        self.history.append(EvaluationRecord(
            id=generate_id('evaluation'),
            context=context,
            results=results,
        ))
        return results

    def evaluate_rule(self, rule: BusinessRule, context: RuleEvaluationContext) -> RuleResult:
        """Evaluate one rule and run its actions when it matches."""
        return self._evaluate(rule, context, execute=True)

    def test_rule(self, rule: Union[str, BusinessRule], context: RuleEvaluationContext) -> RuleResult:
        """
        Dry-run a rule: conditions only, no actions and no counters.

        Raises:
            ResourceNotFoundException: When a rule id is unknown
        """
        if isinstance(rule, str):
            rule_id = rule
            rule = self.rules.get(rule_id)
            if rule is None:
                raise ResourceNotFoundException(f"Rule not found: {rule_id}")
        return self._evaluate(rule, context, execute=False)

    def _evaluate(self, rule: BusinessRule, context: RuleEvaluationContext, execute: bool) -> RuleResult:
        started = time.perf_counter()
        result = RuleResult(rule_id=rule.id, rule_name=rule.name)

        if execute and not rule.is_active:
            result.warnings.append(f"Rule {rule.id} is inactive")
            return result

        try:
            evaluation = condition_evaluator.evaluate_all(
                rule.conditions, context.condition_data(), reference_time=context.timestamp
            )
            result.matched = evaluation.matched
            result.score = evaluation.score
            result.confidence = evaluation.confidence

            if result.matched and execute:
                for action in rule.actions:
                    action_result = self.execute_action(action, context)
                    result.executed_actions.append(action)
                    result.results.append(action_result)

                    if action_result.success:
                        continue
                    if action.stops_on_failure:
                        result.errors.append(
                            f"Action {action.type.value} failed and rule execution stopped: {action_result.error}"
                        )
                        break
                    result.warnings.append(f"Action {action.type.value} failed: {action_result.error}")

                timestamp = now()
                rule.last_triggered = timestamp
                rule.updated_at = timestamp
                rule.trigger_count += 1
                if result.errors:
                    rule.failure_count += 1
                else:
                    rule.success_count += 1
        except Exception as e:
            logger.exception(f"Rule {rule.id} evaluation failed: {str(e)}")
            result.errors.append(f"Rule evaluation failed: {str(e)}")
            if execute:
                rule.failure_count += 1
                rule.updated_at = now()

        result.execution_time = elapsed_ms(started)
        return result

    def execute_action(self, action: Action, context: RuleEvaluationContext) -> ActionResult:
        """
        Run one action through its handler.

        Handler errors are captured on the returned result.
        """
        started = time.perf_counter()
        handler = self._handlers.get(action.type)

        try:
            if handler is None:
                raise ValidationException(f"Unknown action type: {action.type}")
            payload = handler(action, context, context.condition_data())
        except CaseWorkflowException as e:
            logger.warning(f"Action {action.type.value} failed: {e.message}")
            return ActionResult(action.type.value, False, error=e.message, execution_time=elapsed_ms(started))
        except Exception as e:
            logger.exception(f"Unexpected error in action {action.type.value}: {str(e)}")
            return ActionResult(action.type.value, False, error=str(e), execution_time=elapsed_ms(started))

        return ActionResult(action.type.value, True, result=payload, execution_time=elapsed_ms(started))

    # Action handlers

    def _handle_assign_task(self, action, context, data):
        params = action.params
        candidates = resolve_candidates(self.candidate_directory, context.metadata)
        strategy = AssignmentStrategy(params.strategy)

        if strategy == AssignmentStrategy.EXPERTISE_BASED:
            selected = self._select_by_expertise(candidates, data)
        elif strategy == AssignmentStrategy.WORKLOAD_BALANCE:
            selected = self._select_by_workload(candidates, params.workload_threshold)
        elif strategy == AssignmentStrategy.PRIORITY_BASED:
            selected = self._select_by_role(candidates, params.required_role)
        else:
            selected = candidates[0] if candidates else None

        if selected is None:
            raise AssignmentException(
                f"No assignment candidate available for strategy {strategy.value}",
                details={'candidatesConsidered': len(candidates)}
            )

        logger.info(f"Task {context.task_id} assigned to {selected.user_id} ({strategy.value})")
        return {
            'assignedTo': selected.user_id,
            'assignmentStrategy': strategy.value,
            'candidatesConsidered': len(candidates),
            'selectedScore': selected.score,
        }

    def _select_by_expertise(self, candidates: List[Candidate], data: Dict[str, Any]) -> Optional[Candidate]:
        required = condition_evaluator.get_field_value(data, 'task.requiredExpertise') or []
        if isinstance(required, str):
            required = [required]
        matching = [c for c in candidates if set(required).issubset(c.expertise)]
        return max(matching, key=lambda c: c.score, default=None)

    def _select_by_workload(self, candidates: List[Candidate], threshold: float) -> Optional[Candidate]:
        eligible = [c for c in candidates if c.current_workload <= threshold]
        return min(eligible, key=lambda c: c.current_workload, default=None)

    def _select_by_role(self, candidates: List[Candidate], role: Optional[str]) -> Optional[Candidate]:
        eligible = [c for c in candidates if not role or c.role == role]
        return max(eligible, key=lambda c: c.score, default=None)

    def _handle_escalate_task(self, action, context, data):
        task = context.task
        assignee = task.get('assignedTo')
        role = assignee.get('role') if isinstance(assignee, dict) else task.get('assigneeRole')
        level = task.get('escalationLevel') or 0

        if not role:
            raise EscalationException('Cannot escalate task without current assignee role')

        with self._lock:
            paths = list(self.escalation_paths.get(role, []))
        if not paths:
            raise EscalationException(f"No escalation path defined for role: {role}")

        target_level = level + action.params.increment_level
        next_path = next((path for path in paths if path.level == target_level), None)
        if next_path is None:
            raise EscalationException(
                f"No next escalation level found for level {level}",
                details={'role': role, 'escalationLevel': level}
            )

        path_data = {**data, **task, 'escalationLevel': target_level, 'previousLevel': level}
        evaluation = condition_evaluator.evaluate_all(next_path.conditions, path_data, context.timestamp)
        if not evaluation.matched:
            raise EscalationException(
                f"Escalation to level {target_level} blocked: "
                + ', '.join(condition.describe() for condition in evaluation.failed_conditions),
                details={'role': role, 'escalationLevel': level}
            )

        for rule in next_path.notification_rules:
            self.notifications.build(
                notification_type=NotificationType.TASK_ESCALATED,
                recipients=rule.recipients,
                subject=f"Task {context.task_id} escalated to {next_path.to_role}",
                message=f"Task {context.task_id} reached escalation level {target_level}",
                channel=rule.channel,
                template=rule.template,
                urgency=rule.urgency,
                metadata={'caseId': context.case_id, 'taskId': context.task_id},
            )

        logger.info(f"Task {context.task_id} escalated from {role} to {next_path.to_role} (level {target_level})")
        return {
            'escalatedTo': str(next_path.to_role),
            'escalationLevel': target_level,
            'approvalRequired': next_path.approval_required,
            'notifications': [rule.to_dict() for rule in next_path.notification_rules],
        }

    def _handle_change_priority(self, action, context, data):
        new_priority = action.params.new_priority
        if new_priority not in TaskPriority.values:
            raise ValidationException(f"Invalid priority: {new_priority}")
        return {
            'oldPriority': context.task.get('priority'),
            'newPriority': new_priority,
            'reason': action.params.reason,
            'changedBy': context.user_id,
            'timestamp': now(),
        }

    def _handle_set_deadline(self, action, context, data):
        params = action.params
        task = context.task
        current_deadline = coerce_datetime(task.get('dueDate'))
        strategy = DeadlineStrategy(params.strategy)

        if strategy == DeadlineStrategy.COMPLEXITY_BASED:
            estimated = task.get('estimatedDuration') or 4
            hours = max(estimated * (1 + params.buffer_percentage), params.min_extension_hours)
            new_deadline = now() + timedelta(hours=hours)
        elif strategy == DeadlineStrategy.DEPENDENCY_BASED:
            due_dates = [
                coerce_datetime(dependency.get('dueDate'))
                for dependency in task.get('dependencies') or [] if isinstance(dependency, dict)
            ]
            latest = max([due for due in due_dates if due is not None] + [now()])
            new_deadline = latest + timedelta(hours=24)
        else:
            new_deadline = current_deadline or now()

        return {
            'newDeadline': new_deadline,
            'oldDeadline': current_deadline,
            'strategy': strategy.value,
        }

    def _handle_send_notification(self, action, context, data):
        params = action.params
        descriptor = self.notifications.build(
            notification_type=params.template or NotificationType.TASK_ASSIGNED,
            recipients=params.recipients,
            subject=params.subject or f"Task update for case {context.case_id}",
            message=params.message or interpolate_template(params.template or '', data),
            channel=params.channel,
            template=params.template,
            urgency=params.urgency,
            metadata={'caseId': context.case_id, 'taskId': context.task_id},
        )
        return {
            'notificationId': descriptor.id,
            'type': descriptor.channel,
            'recipients': descriptor.recipients,
            'template': descriptor.template,
            'urgency': descriptor.urgency,
            'queued': True,
        }

    def _handle_create_dependency(self, action, context, data):
        if not context.task_id:
            raise ValidationException('Cannot create a dependency without a task')
        return {
            'taskId': context.task_id,
            'dependsOn': action.params.depends_on_task_id,
            'dependencyType': action.params.dependency_type,
            'created': True,
        }

    def _handle_update_status(self, action, context, data):
        params = action.params
        if params.activate_dependents:
            dependents = context.task.get('dependents') or []
            return {
                'taskId': context.task_id,
                'activatedDependents': list(dependents),
                'newStatus': TaskStatus.PENDING,
            }

        if params.new_status not in TaskStatus.values:
            raise ValidationException(f"Invalid task status: {params.new_status}")
        return {
            'taskId': context.task_id,
            'oldStatus': context.task.get('status'),
            'newStatus': params.new_status,
            'updatedBy': context.user_id,
            'timestamp': now(),
        }

    def _handle_request_review(self, action, context, data):
        params = action.params
        return {
            'reviewType': params.review_type,
            'requestedFrom': params.requested_from,
            'deadline': now() + timedelta(hours=params.deadline_offset_hours or 24),
            'autoApprove': params.auto_approve,
            'checklist': list(params.checklist),
        }

    def _handle_reassign_task(self, action, context, data):
        assignee = context.task.get('assignedTo')
        current = assignee.get('id') if isinstance(assignee, dict) else assignee
        candidates = [
            c for c in resolve_candidates(self.candidate_directory, context.metadata)
            if c.user_id != current
        ]
        if not candidates:
            raise AssignmentException(f"No reassignment candidate available for task {context.task_id}")

        return {
            'reassignedTo': candidates[0].user_id,
            'previousAssignee': current,
            'reassignedBy': context.user_id,
            'reason': action.params.reason,
        }

    def _handle_create_task(self, action, context, data):
        params = action.params
        if not context.case_id:
            raise ValidationException('Case ID is required for task creation')

        title = params.title or (params.template or 'follow_up').replace('_', ' ').title()
        return {
            'caseId': context.case_id,
            'title': interpolate_template(title, data),
            'priority': params.priority or TaskPriority.MEDIUM,
            'template': params.template,
            'status': TaskStatus.PENDING,
        }

    # Rule management

    def add_rule(self, rule: BusinessRule) -> BusinessRule:
        errors = []
        if not rule.id:
            errors.append('Rule id is required')
        if not rule.name:
            errors.append('Rule name is required')
        if not rule.actions:
            errors.append('At least one action is required')
        if errors:
            raise ValidationException(f"Invalid business rule: {', '.join(errors)}", details={'errors': errors})

        self.rules.save(rule)
        return rule

    def get_rule(self, rule_id: str) -> Optional[BusinessRule]:
        return self.rules.get(rule_id)

    def get_rules(self, category: Optional[str] = None, active_only: bool = True) -> List[BusinessRule]:
        rules = self.rules.all()
        if category:
            rules = [rule for rule in rules if rule.category == category]
        if active_only:
            rules = [rule for rule in rules if rule.is_active]
        return sorted(rules, key=lambda rule: rule.priority)

    def update_rule(self, rule_id: str, **updates) -> bool:
        rule = self.rules.get(rule_id)
        if rule is None:
            return False
        updates.pop('id', None)
        self.rules.save(replace(rule, updated_at=now(), **updates))
        return True

    def delete_rule(self, rule_id: str) -> bool:
        with self._lock:
            self.performance.pop(rule_id, None)
        return self.rules.delete(rule_id)

    def activate_rule(self, rule_id: str) -> bool:
        return self.update_rule(rule_id, is_active=True)

    def deactivate_rule(self, rule_id: str) -> bool:
        return self.update_rule(rule_id, is_active=False)

    # Escalation paths

    def get_escalation_paths(self, role: Optional[str] = None) -> List[EscalationPath]:
        with self._lock:
            if role:
                return list(self.escalation_paths.get(role, []))
            return [path for paths in self.escalation_paths.values() for path in paths]

    def add_escalation_path(self, role: str, path: EscalationPath) -> None:
        """
        Append an escalation step for ``role``.

        Raises:
            ValidationException: When the level does not follow the last one
        """
        if path.from_role != role:
            raise ValidationException(f"Escalation path from {path.from_role} cannot be registered for {role}")
        with self._lock:
            paths = self.escalation_paths.setdefault(role, [])
            if path.level < 1 or (paths and path.level <= paths[-1].level):
                raise ValidationException(
                    f"Escalation level {path.level} must be greater than "
                    f"{paths[-1].level if paths else 0} for role {role}"
                )
            paths.append(path)

    # Statistics

    def _update_performance(self, rule_id: str, result: RuleResult) -> None:
        with self._lock:
            metrics = self.performance.setdefault(rule_id, RulePerformance())
            metrics.evaluation_count += 1
            metrics.last_evaluation = now()

            if result.errors:
                metrics.failure_count += 1
            elif result.matched:
                metrics.success_count += 1

            metrics.average_execution_time = (
                metrics.average_execution_time * (metrics.evaluation_count - 1) + result.execution_time
            ) / metrics.evaluation_count

    def get_rule_performance(self, rule_id: str) -> Optional[RulePerformance]:
        with self._lock:
            return self.performance.get(rule_id)

    def get_stats(self) -> Dict[str, Any]:
        rules = self.rules.all()
        with self._lock:
            metrics = list(self.performance.values())
        total_evaluations = sum(m.evaluation_count for m in metrics)
        total_time = sum(m.average_execution_time * m.evaluation_count for m in metrics)

        top_rules = sorted(rules, key=lambda rule: rule.trigger_count, reverse=True)[:5]

        categories: Dict[str, Dict[str, int]] = {}
        for rule in rules:
            key = str(getattr(rule.category, 'value', rule.category))
            entry = categories.setdefault(key, {'ruleCount': 0, 'executionCount': 0})
            entry['ruleCount'] += 1
            entry['executionCount'] += rule.trigger_count

        return {
            'totalRules': len(rules),
            'activeRules': sum(1 for rule in rules if rule.is_active),
            'totalEvaluations': total_evaluations,
            'successfulExecutions': sum(m.success_count for m in metrics),
            'failedExecutions': sum(m.failure_count for m in metrics),
            'averageExecutionTime': total_time / total_evaluations if total_evaluations else 0.0,
            'topPerformingRules': [
                {
                    'ruleId': rule.id,
                    'ruleName': rule.name,
                    'executionCount': rule.trigger_count,
                    'successRate': (
                        round(rule.success_count / rule.trigger_count * 100, 2) if rule.trigger_count else 0.0
                    ),
                }
                for rule in top_rules
            ],
            'ruleCategories': [
                {'category': category, **counts} for category, counts in categories.items()
            ],
            'evaluationHistorySize': len(self.history.entries()),
        }

    def get_evaluation_history(self, limit: Optional[int] = None) -> List[EvaluationRecord]:
        """Evaluation runs, newest first."""
        history = list(reversed(self.history.entries()))
        return history[:limit] if limit else history


business_rule_engine = BusinessRuleEngine()
