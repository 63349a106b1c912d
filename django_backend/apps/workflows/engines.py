"""
Workflow engine for case phase transitions.

A phase transition is validated by the case state machine, recorded in the
per-case workflow history, and then run through the engine's task-rule
table. Template creation runs on every accepted transition: each active
auto-create phase template of the new phase yields one task. The rule
table covers overdue escalation, high priority assignment and dependency
activation for the task snapshot carried in the metadata.
"""

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from apps.cases.choices import CasePhase, CaseType
from apps.cases.state_machine import CaseState, CaseStateMachine, TransitionResult, case_state_machine
from apps.common.exceptions import CaseWorkflowException, ValidationException, WorkflowException
from apps.common.utils import generate_id, now
from apps.notifications.choices import NotificationChannel, NotificationType
from apps.notifications.services import NotificationDescriptor, NotificationService, notification_service
from apps.tasks.choices import TaskPriority, TaskStatus
from apps.tasks.templates import interpolate_template
from apps.users.choices import UserRole
from .actions import Action, ActionType, AssignmentStrategy
from .conditions import Condition, ConditionOperator, NOW, condition_evaluator
from .rules import BusinessRuleEngine, RuleEvaluationContext, business_rule_engine
from .stores import InMemoryStore, RuleStore

logger = logging.getLogger(__name__)


@dataclass
class TaskRule:
    """Entry of the workflow engine's own rule table."""

    id: str
    name: str
    conditions: List[Condition]
    actions: List[Action]
    description: str = ''
    priority: int = 1
    is_active: bool = True


@dataclass
class PhaseTaskTemplate:
    """Task created automatically when a case enters ``phase``."""

    id: str
    name: str
    case_type: str
    phase: str
    title_template: str
    description: str = ''
    description_template: Optional[str] = None
    default_priority: str = TaskPriority.MEDIUM
    default_assignee_role: Optional[str] = None
    due_date_offset: Optional[int] = None
    required_fields: List[str] = field(default_factory=list)
    conditions: List[Condition] = field(default_factory=list)
    auto_create: bool = True
    is_active: bool = True


@dataclass
class WorkflowContext:
    case_id: Optional[str]
    case_type: Optional[str] = None
    current_phase: Optional[str] = None
    previous_phase: Optional[str] = None
    user_id: Optional[str] = None
    user_role: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=now)

    @property
    def phase_changed(self) -> bool:
        return self.current_phase is not None and self.previous_phase != self.current_phase

    def condition_data(self) -> Dict[str, Any]:
        """Metadata with ``case``, ``user`` and ``timestamp`` laid over it."""
        data = dict(self.metadata)
        data['case'] = {
            **(self.metadata.get('case') or {}),
            'id': self.case_id,
            'type': self.case_type,
            'phase': self.current_phase,
            'previousPhase': self.previous_phase,
            'phaseChanged': self.phase_changed,
        }
        data['user'] = {'id': self.user_id, 'role': self.user_role}
        data['timestamp'] = self.timestamp
        return data


@dataclass
class CreatedTask:
    """Plain record of a task the engines want created."""

    id: str
    title: str
    case_id: str
    assigned_to: str
    assigned_by: str
    priority: str
    status: str = TaskStatus.PENDING
    description: Optional[str] = None
    due_date: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'title': self.title,
            'description': self.description,
            'caseId': self.case_id,
            'assignedTo': self.assigned_to,
            'assignedBy': self.assigned_by,
            'dueDate': self.due_date,
            'priority': self.priority,
            'status': self.status,
            'metadata': dict(self.metadata),
        }


@dataclass
class UpdatedTask:
    id: Optional[str]
    changes: Dict[str, Any]
    previous_values: Dict[str, Any] = field(default_factory=dict)
    reason: str = ''

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'changes': dict(self.changes),
            'previousValues': dict(self.previous_values),
            'reason': self.reason,
        }


@dataclass
class WorkflowResult:
    success: bool = True
    created_tasks: List[CreatedTask] = field(default_factory=list)
    updated_tasks: List[UpdatedTask] = field(default_factory=list)
    notifications: List[NotificationDescriptor] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'createdTasks': [task.to_dict() for task in self.created_tasks],
            'updatedTasks': [task.to_dict() for task in self.updated_tasks],
            'notifications': [notification.to_dict() for notification in self.notifications],
            'errors': list(self.errors),
            'warnings': list(self.warnings),
        }


def default_task_rules() -> List[TaskRule]:
    return [
        TaskRule(
            id='overdue_escalation',
            name='Overdue Task Escalation',
            description='Escalate overdue tasks to supervisors',
            priority=1,
            conditions=[
                Condition('task.status', ConditionOperator.EQUALS, TaskStatus.PENDING),
                Condition('task.dueDate', ConditionOperator.LESS_THAN, NOW),
                Condition('task.escalationLevel', ConditionOperator.LESS_THAN, 2),
            ],
            actions=[
                Action.build(ActionType.ESCALATE_TASK, increment_level=1),
                Action.build(ActionType.SEND_NOTIFICATION, channel=NotificationChannel.EMAIL,
                             template=NotificationType.TASK_OVERDUE),
            ],
        ),
        TaskRule(
            id='high_priority_assignment',
            name='High Priority Task Assignment',
            description='Assign high priority tasks to available attorneys',
            priority=2,
            conditions=[
                Condition('task.priority', ConditionOperator.EQUALS, TaskPriority.HIGH),
                Condition('task.assignedTo', ConditionOperator.NOT_EXISTS),
            ],
            actions=[Action.build(ActionType.ASSIGN_TASK, strategy=AssignmentStrategy.WORKLOAD_BALANCE)],
        ),
        TaskRule(
            id='task_dependency_completion',
            name='Task Dependency Completion',
            description='Activate dependent tasks when prerequisites are completed',
            priority=4,
            conditions=[
                Condition('task.status', ConditionOperator.EQUALS, TaskStatus.COMPLETED),
                Condition('task.hasDependents', ConditionOperator.EQUALS, True),
            ],
            actions=[Action.build(ActionType.UPDATE_STATUS, activate_dependents=True)],
        ),
    ]


def default_phase_templates() -> List[PhaseTaskTemplate]:
    return [
        PhaseTaskTemplate(
            id='criminal_intake_risk_assessment',
            name='Criminal Intake Risk Assessment',
            description='Complete initial risk assessment for criminal case',
            case_type=CaseType.CRIMINAL_DEFENSE,
            phase=CasePhase.INTAKE_RISK_ASSESSMENT,
            title_template='Complete Risk Assessment - {caseTitle}',
            description_template='Conduct thorough risk assessment including bail analysis, '
                                 'evidence review, and potential defenses',
            default_priority=TaskPriority.HIGH,
            default_assignee_role=UserRole.ATTORNEY,
            due_date_offset=3,
            required_fields=['clientStatement', 'policeReport', 'arrestRecords'],
        ),
        PhaseTaskTemplate(
            id='criminal_bail_hearing',
            name='Bail Hearing Preparation',
            description='Prepare and conduct bail hearing',
            case_type=CaseType.CRIMINAL_DEFENSE,
            phase=CasePhase.PRE_PROCEEDING_PREPARATION,
            title_template='Prepare Bail Hearing - {caseTitle}',
            description_template='Prepare bail application, gather character references, '
                                 'and prepare arguments for bail hearing',
            default_priority=TaskPriority.URGENT,
            default_assignee_role=UserRole.ATTORNEY,
            due_date_offset=1,
            required_fields=['clientFinancialInfo', 'characterReferences', 'bailApplication'],
        ),
        PhaseTaskTemplate(
            id='divorce_mediation',
            name='Divorce Mediation',
            description='Conduct divorce mediation sessions',
            case_type=CaseType.DIVORCE_FAMILY,
            phase=CasePhase.PRE_PROCEEDING_PREPARATION,
            title_template='Conduct Mediation - {caseTitle}',
            description_template='Schedule and conduct mediation sessions to resolve divorce disputes amicably',
            default_priority=TaskPriority.MEDIUM,
            default_assignee_role=UserRole.ATTORNEY,
            due_date_offset=14,
            required_fields=['mediationAgreement', 'financialDisclosures'],
        ),
        PhaseTaskTemplate(
            id='divorce_custody_evaluation',
            name='Child Custody Evaluation',
            description='Complete child custody evaluation',
            case_type=CaseType.DIVORCE_FAMILY,
            phase=CasePhase.FORMAL_PROCEEDINGS,
            title_template='Complete Custody Evaluation - {caseTitle}',
            description_template='Coordinate with custody evaluator, provide necessary documentation, '
                                 'and prepare for custody hearing',
            default_priority=TaskPriority.HIGH,
            default_assignee_role=UserRole.ATTORNEY,
            due_date_offset=21,
            required_fields=['custodyQuestionnaire', 'homeStudy', 'childInterviewNotes'],
        ),
        PhaseTaskTemplate(
            id='medical_record_review',
            name='Medical Record Review',
            description='Review medical records for potential malpractice',
            case_type=CaseType.MEDICAL_MALPRACTICE,
            phase=CasePhase.INTAKE_RISK_ASSESSMENT,
            title_template='Review Medical Records - {caseTitle}',
            description_template='Thoroughly review medical records to identify potential '
                                 'standard of care violations',
            default_priority=TaskPriority.HIGH,
            default_assignee_role=UserRole.ATTORNEY,
            due_date_offset=7,
            required_fields=['medicalRecords', 'expertConsultationReport'],
        ),
        PhaseTaskTemplate(
            id='expert_witness_coordination',
            name='Expert Witness Coordination',
            description='Coordinate with medical expert witnesses',
            case_type=CaseType.MEDICAL_MALPRACTICE,
            phase=CasePhase.PRE_PROCEEDING_PREPARATION,
            title_template='Coordinate Expert Witnesses - {caseTitle}',
            description_template='Identify, retain, and prepare medical expert witnesses for case',
            default_priority=TaskPriority.MEDIUM,
            default_assignee_role=UserRole.ATTORNEY,
            due_date_offset=10,
            required_fields=['expertRetainerAgreement', 'expertReport'],
        ),
    ]


class WorkflowEngine:
    """Main workflow engine that orchestrates phase transitions."""

    def __init__(
        self,
        state_machine: Optional[CaseStateMachine] = None,
        rule_store: Optional[RuleStore] = None,
        template_store=None,
        rule_engine: Optional[BusinessRuleEngine] = None,
        notifications: Optional[NotificationService] = None,
        load_defaults: bool = True,
    ):
        self.state_machine = state_machine or case_state_machine
        self.task_rules = rule_store if rule_store is not None else InMemoryStore()
        self.phase_templates = template_store if template_store is not None else InMemoryStore()
        self.notifications = notifications or notification_service
        self.rule_engine = rule_engine or business_rule_engine
        self._history: Dict[str, List[WorkflowContext]] = {}
        self._history_lock = threading.RLock()

        if load_defaults:
            for rule in default_task_rules():
                self.add_task_rule(rule)
            for template in default_phase_templates():
                self.add_task_template(template)

    def process_phase_transition(
        self,
        case_id: str,
        from_phase: Optional[str],
        to_phase: str,
        case_type: str,
        user_role: str,
        user_id: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> WorkflowResult:
        """
        Validate a phase transition and run the task rules for it.

        Args:
            case_id: Case moving between phases
            from_phase: Current phase; None when the case is being opened
            to_phase: Requested phase
            case_type: Case type, used for edges and templates
            user_role: Role of the user requesting the move
            user_id: User requesting the move; receives created tasks
            metadata: Case data for requirements, conditions and titles

        Returns:
            WorkflowResult; a rejected transition carries the state
            machine errors and no tasks
        """
        metadata = dict(metadata or {})
        context = WorkflowContext(
            case_id=case_id,
            case_type=case_type,
            current_phase=to_phase,
            previous_phase=from_phase,
            user_id=user_id,
            user_role=user_role,
            metadata=metadata,
        )

        transition = self._validate_transition(from_phase, to_phase, case_type, user_role, metadata)
        if not transition.success:
            logger.info(f"Phase transition {from_phase} -> {to_phase} rejected for case {case_id}")
            return WorkflowResult(
                success=False,
                errors=list(transition.errors) or ['Phase transition validation failed'],
            )

        try:
            self._add_to_history(case_id, context)
            created = self.create_phase_tasks(context)
            result = self.evaluate_task_rules(context)
            result.created_tasks[:0] = created
            self._add_summary_notification(context, result)
        except Exception as e:
            logger.exception(f"Workflow processing failed for case {case_id}: {str(e)}")
            return WorkflowResult(success=False, errors=[str(e) or 'Unknown error occurred'])

        logger.info(
            f"Case {case_id} moved {from_phase} -> {to_phase}: "
            f"{len(result.created_tasks)} tasks created, {len(result.errors)} errors"
        )
        return result

    def _validate_transition(self, from_phase: Optional[str], to_phase: str, case_type: str,
                             user_role: str, metadata: Dict[str, Any]) -> TransitionResult:
        # A case entering its first phase has no edge to check.
        if from_phase is None:
            return TransitionResult(success=True, message=f"Case opened in {to_phase}")
        return self.state_machine.can_transition(
            CaseState(phase=from_phase, case_type=case_type, metadata=metadata),
            to_phase, user_role, metadata,
        )

    def process_task_event(self, task: Dict[str, Any], event: str,
                           metadata: Optional[Dict[str, Any]] = None) -> WorkflowResult:
        """Run the task rules against a single task snapshot."""
        metadata = dict(metadata or {})
        case = metadata.get('case') or {}
        context = WorkflowContext(
            case_id=task.get('caseId') or case.get('id'),
            case_type=case.get('type'),
            current_phase=case.get('phase'),
            previous_phase=case.get('phase'),
            user_id=metadata.get('userId'),
            user_role=metadata.get('userRole'),
            metadata={**metadata, 'task': task, 'event': event},
        )
        try:
            return self.evaluate_task_rules(context)
        except Exception as e:
            logger.exception(f"Task event {event} failed for task {task.get('id')}: {str(e)}")
            return WorkflowResult(success=False, errors=[str(e)])

    def evaluate_task_rules(self, context: WorkflowContext) -> WorkflowResult:
        """Run every active task rule whose conditions hold, in priority order."""
        result = WorkflowResult()
        data = context.condition_data()

        for rule in self.get_task_rules():
            if not condition_evaluator.evaluate_all(rule.conditions, data, context.timestamp).matched:
                continue
            logger.debug(f"Executing task rule {rule.id} for case {context.case_id}")
            for action in rule.actions:
                error = self._execute_action(rule, action, context, result)
                if error:
                    result.errors.append(f"Rule {rule.name}: {error}")
                    if action.stops_on_failure:
                        break

        result.success = not result.errors
        return result

    def create_phase_tasks(self, context: WorkflowContext) -> List[CreatedTask]:
        """One task per active auto-create template of the phase being entered."""
        created = []
        for template in self.phase_templates.all():
            if template.case_type != context.case_type or template.phase != context.current_phase:
                continue
            if not (template.is_active and template.auto_create):
                continue
            if not condition_evaluator.evaluate_all(template.conditions, context.metadata,
                                                    context.timestamp).matched:
                continue
            created.append(self.create_task_from_template(template, context))
        return created

    def _execute_action(self, rule: TaskRule, action: Action, context: WorkflowContext,
                        result: WorkflowResult) -> Optional[str]:
        try:
            if action.type == ActionType.CREATE_TASK:
                result.created_tasks.append(self._handle_create_task(action, context))
            elif action.type == ActionType.SEND_NOTIFICATION:
                result.notifications.append(self._handle_notify(rule, action, context))
            else:
                result.updated_tasks.append(self._delegate(action, context))
        except CaseWorkflowException as e:
            logger.warning(f"Task rule {rule.id} action {action.type.value} failed: {e.message}")
            return e.message
        return None

    def _handle_create_task(self, action: Action, context: WorkflowContext) -> CreatedTask:
        template_id = action.params.template
        template = self.phase_templates.get(template_id) if template_id else None
        if template is None:
            raise ValidationException(f"Unknown phase template: {template_id}")
        return self.create_task_from_template(template, context)

    def create_task_from_template(self, template: PhaseTaskTemplate, context: WorkflowContext) -> CreatedTask:
        due_date = None
        if template.due_date_offset:
            due_date = context.timestamp + timedelta(days=template.due_date_offset)

        return CreatedTask(
            id=generate_id('task'),
            title=interpolate_template(template.title_template, context.metadata),
            description=(
                interpolate_template(template.description_template, context.metadata)
                if template.description_template else None
            ),
            case_id=context.case_id,
            assigned_to=context.user_id,
            assigned_by=context.user_id,
            due_date=due_date,
            priority=template.default_priority,
            metadata={
                'templateId': template.id,
                'phase': context.current_phase,
                'assigneeRole': template.default_assignee_role,
                'autoGenerated': True,
            },
        )

    def _handle_notify(self, rule: TaskRule, action: Action, context: WorkflowContext) -> NotificationDescriptor:
        params = action.params
        return self.notifications.build(
            notification_type=params.template or 'task_notification',
            recipients=params.recipients or [context.user_id],
            subject=params.subject or 'Task Notification',
            message=params.message or 'You have a new task notification',
            channel=params.channel,
            template=params.template,
            urgency=params.urgency,
            metadata={'caseId': context.case_id, 'ruleId': rule.id},
        )

    def _delegate(self, action: Action, context: WorkflowContext) -> UpdatedTask:
        task = context.metadata.get('task') or {}
        rule_context = RuleEvaluationContext(
            case_id=context.case_id,
            task_id=task.get('id'),
            user_id=context.user_id,
            metadata=context.metadata,
            timestamp=context.timestamp,
        )
        action_result = self.rule_engine.execute_action(action, rule_context)
        if not action_result.success:
            raise WorkflowException(action_result.error)

        changes = dict(action_result.result)
        return UpdatedTask(
            id=task.get('id'),
            changes=changes,
            previous_values={key: task.get(key) for key in changes if key in task},
            reason=action.type.value,
        )

    def _add_summary_notification(self, context: WorkflowContext, result: WorkflowResult) -> None:
        if not result.created_tasks:
            return
        result.notifications.append(self.notifications.summary_for_new_tasks(
            case_id=context.case_id,
            phase=context.current_phase,
            task_count=len(result.created_tasks),
            recipient=context.user_id,
            metadata={'timestamp': context.timestamp.isoformat()},
        ))

    def _add_to_history(self, case_id: str, context: WorkflowContext) -> None:
        with self._history_lock:
            self._history.setdefault(case_id, []).append(context)

    def get_workflow_history(self, case_id: str) -> List[WorkflowContext]:
        with self._history_lock:
            return list(self._history.get(case_id, []))

    def get_task_templates(self, case_type: Optional[str] = None,
                           phase: Optional[str] = None) -> List[PhaseTaskTemplate]:
        return [
            template for template in self.phase_templates.all()
            if (not case_type or template.case_type == case_type)
            and (not phase or template.phase == phase)
        ]

    def get_task_rules(self, active_only: bool = True) -> List[TaskRule]:
        rules = [rule for rule in self.task_rules.all() if rule.is_active or not active_only]
        return sorted(rules, key=lambda rule: rule.priority)

    def add_task_template(self, template: PhaseTaskTemplate) -> PhaseTaskTemplate:
        return self.phase_templates.save(template)

    def update_task_template(self, template_id: str, **updates) -> bool:
        template = self.phase_templates.get(template_id)
        if template is None:
            return False
        updates.pop('id', None)
        self.phase_templates.save(replace(template, **updates))
        return True

    def remove_task_template(self, template_id: str) -> bool:
        return self.phase_templates.delete(template_id)

    def add_task_rule(self, rule: TaskRule) -> TaskRule:
        return self.task_rules.save(rule)

    def update_task_rule(self, rule_id: str, **updates) -> bool:
        rule = self.task_rules.get(rule_id)
        if rule is None:
            return False
        updates.pop('id', None)
        self.task_rules.save(replace(rule, **updates))
        return True

    def remove_task_rule(self, rule_id: str) -> bool:
        return self.task_rules.delete(rule_id)


# Global workflow engine instance
workflow_engine = WorkflowEngine()
