"""
Case-task integration service.

Entry point used by case and task views and by the Celery tickers. A phase
transition runs through the state machine, the workflow engine, the
automation engine and the business rules; every task created on the way is
placed on the schedule. Results are aggregated into one object and the
methods here never raise.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from apps.cases.choices import CasePhase, CaseType
from apps.cases.state_machine import CaseState, CaseStateMachine, TransitionResult, case_state_machine
from apps.common.exceptions import CaseWorkflowException
from apps.common.utils import calculate_percentage, get_workflow_setting, log_execution_time, now, safe_divide
from apps.notifications.services import NotificationDescriptor
from apps.tasks.choices import CapacityStatus, TaskPriority, TaskStatus
from apps.tasks.scheduling import ScheduledTask, ScheduleRequest, TaskSchedulingEngine, task_scheduling_engine
from apps.tasks.templates import TaskTemplate, TaskTemplateEngine, TemplateSearchCriteria, task_template_engine
from .automation import AutomationResult, PhaseChangeRequest, TaskAutomationEngine, task_automation_engine
from .engines import CreatedTask, WorkflowEngine, WorkflowResult, workflow_engine
from .rules import BusinessRuleEngine, RuleEvaluationContext, RuleResult, TriggerEventType, business_rule_engine

logger = logging.getLogger(__name__)

HEALTHY = 'healthy'
DEGRADED = 'degraded'


@dataclass
class CaseTaskIntegration:
    """Snapshot of a case handed over by the caller for one transition."""

    case_id: str
    case_type: str
    current_phase: str
    user_id: str
    user_role: str
    previous_phase: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PhaseTransitionResult:
    success: bool = False
    phase_transition_valid: bool = False
    tasks_created: int = 0
    tasks_updated: int = 0
    notifications_sent: int = 0
    business_rules_evaluated: int = 0
    business_rules_matched: int = 0
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    workflow_results: List[WorkflowResult] = field(default_factory=list)
    automation_results: List[AutomationResult] = field(default_factory=list)
    scheduled_tasks: List[ScheduledTask] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'phaseTransitionValid': self.phase_transition_valid,
            'tasksCreated': self.tasks_created,
            'tasksUpdated': self.tasks_updated,
            'notificationsSent': self.notifications_sent,
            'businessRulesEvaluated': self.business_rules_evaluated,
            'businessRulesMatched': self.business_rules_matched,
            'errors': list(self.errors),
            'warnings': list(self.warnings),
            'workflowResults': [result.to_dict() for result in self.workflow_results],
            'automationResults': [result.to_dict() for result in self.automation_results],
            'scheduledTasks': [task.to_dict() for task in self.scheduled_tasks],
        }


@dataclass
class TaskCompletionResult:
    success: bool = False
    follow_up_tasks: List[CreatedTask] = field(default_factory=list)
    scheduled_tasks: List[ScheduledTask] = field(default_factory=list)
    notifications: List[NotificationDescriptor] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'followUpTasks': [task.to_dict() for task in self.follow_up_tasks],
            'scheduledTasks': [task.to_dict() for task in self.scheduled_tasks],
            'notifications': [notification.to_dict() for notification in self.notifications],
            'errors': list(self.errors),
            'warnings': list(self.warnings),
        }


@dataclass
class TaskWorkflowOrchestration:
    case_id: str
    phase: str
    active_tasks: int = 0
    completed_tasks: int = 0
    overdue_tasks: int = 0
    upcoming_deadlines: int = 0
    automation_rules_triggered: int = 0
    business_rules_evaluated: int = 0
    workload_balance: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'caseId': self.case_id,
            'phase': self.phase,
            'activeTasks': self.active_tasks,
            'completedTasks': self.completed_tasks,
            'overdueTasks': self.overdue_tasks,
            'upcomingDeadlines': self.upcoming_deadlines,
            'automationRulesTriggered': self.automation_rules_triggered,
            'businessRulesEvaluated': self.business_rules_evaluated,
            'workloadBalance': self.workload_balance,
        }


@dataclass
class ScheduledAutomationRun:
    recurring_tasks_processed: int = 0
    pending_automations_processed: int = 0
    tasks_scheduled: int = 0
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'recurringTasksProcessed': self.recurring_tasks_processed,
            'pendingAutomationsProcessed': self.pending_automations_processed,
            'tasksScheduled': self.tasks_scheduled,
            'errors': list(self.errors),
            'warnings': list(self.warnings),
        }


@dataclass
class DateTriggerRun:
    tasks_checked: int = 0
    triggers_fired: int = 0
    tasks_escalated: int = 0
    tasks_scheduled: int = 0
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'tasksChecked': self.tasks_checked,
            'triggersFired': self.triggers_fired,
            'tasksEscalated': self.tasks_escalated,
            'tasksScheduled': self.tasks_scheduled,
            'errors': list(self.errors),
            'warnings': list(self.warnings),
        }


def calculate_default_due_date(phase: str, case_type: Optional[str] = None,
                               reference_time: Optional[datetime] = None) -> datetime:
    """
    Due date for a task created without one.

    The phase's default duration is scaled by the case type multiplier and
    rounded up to whole days.
    """
    base_days = CasePhase.get_default_durations().get(phase, get_workflow_setting('DEFAULT_PHASE_DURATION_DAYS'))
    multiplier = CaseType.get_due_date_multipliers().get(case_type, 1.0) if case_type else 1.0
    return (reference_time or now()) + timedelta(days=math.ceil(base_days * multiplier))


class CaseTaskIntegrationService:
    """Facade over the case state machine and the task engines."""

    def __init__(
        self,
        workflow: Optional[WorkflowEngine] = None,
        automation: Optional[TaskAutomationEngine] = None,
        templates: Optional[TaskTemplateEngine] = None,
        scheduling: Optional[TaskSchedulingEngine] = None,
        rules: Optional[BusinessRuleEngine] = None,
        state_machine: Optional[CaseStateMachine] = None,
    ):
        self.workflow = workflow or workflow_engine
        self.automation = automation or task_automation_engine
        self.templates = templates or task_template_engine
        self.scheduling = scheduling or task_scheduling_engine
        self.rules = rules or business_rule_engine
        self.state_machine = state_machine or case_state_machine

    # Phase transitions

    @log_execution_time(logger)
    def handle_case_phase_transition(self, integration: CaseTaskIntegration) -> PhaseTransitionResult:
        """
        Run every engine for a case phase transition.

        Args:
            integration: Case snapshot with the previous and the new phase

        Returns:
            PhaseTransitionResult; ``success`` is False when any stage
            reported an error
        """
        result = PhaseTransitionResult()

        try:
            validation = self.validate_phase_transition(integration)
            result.phase_transition_valid = validation.success
            if not validation.success:
                result.errors.extend(validation.errors)
                return result

            workflow_result = self.workflow.process_phase_transition(
                integration.case_id,
                integration.previous_phase,
                integration.current_phase,
                integration.case_type,
                integration.user_role,
                integration.user_id,
                integration.metadata,
            )
            result.workflow_results.append(workflow_result)
            self._collect(result, workflow_result)

            automation_result = self.automation.process_case_phase_change(PhaseChangeRequest(
                case_id=integration.case_id,
                case_type=integration.case_type,
                current_phase=integration.current_phase,
                previous_phase=integration.previous_phase,
                user_id=integration.user_id,
                metadata=integration.metadata,
            ))
            result.automation_results.append(automation_result)
            self._collect(result, automation_result)

            for task in workflow_result.created_tasks + automation_result.created_tasks:
                scheduled = self._schedule_created_task(task, integration, result.warnings)
                if scheduled:
                    result.scheduled_tasks.append(scheduled)

            for rule_result in self._evaluate_business_rules(integration):
                result.business_rules_evaluated += 1
                if rule_result.matched:
                    result.business_rules_matched += 1
                result.errors.extend(rule_result.errors)
                result.warnings.extend(rule_result.warnings)

            orchestration = self.get_task_workflow_orchestration(integration.case_id)
            if orchestration.overdue_tasks > 0:
                result.warnings.append(f"Case has {orchestration.overdue_tasks} overdue tasks")
            if orchestration.workload_balance > 0.9:
                result.warnings.append('High workload detected for assigned team members')

            result.success = not result.errors
            logger.info(
                f"Case {integration.case_id} entered {integration.current_phase}: "
                f"{result.tasks_created} tasks created, {len(result.scheduled_tasks)} scheduled, "
                f"{len(result.errors)} errors"
            )
        except Exception as e:
            logger.exception(f"Integration failed for case {integration.case_id}: {str(e)}")
            result.success = False
            result.errors.append(f"Integration error: {str(e)}")

        return result

    def validate_phase_transition(self, integration: CaseTaskIntegration) -> TransitionResult:
        if not integration.previous_phase:
            return TransitionResult(success=True, message=f"Case opened in {integration.current_phase}")

        return self.state_machine.can_transition(
            CaseState(
                phase=integration.previous_phase,
                case_type=integration.case_type,
                metadata=integration.metadata,
            ),
            integration.current_phase,
            integration.user_role,
            integration.metadata,
        )

    @staticmethod
    def _collect(result: PhaseTransitionResult, stage) -> None:
        result.tasks_created += len(stage.created_tasks)
        result.tasks_updated += len(stage.updated_tasks)
        result.notifications_sent += len(stage.notifications)
        result.errors.extend(stage.errors)
        result.warnings.extend(stage.warnings)

    def _evaluate_business_rules(self, integration: CaseTaskIntegration) -> List[RuleResult]:
        details = {'from': integration.previous_phase, 'to': integration.current_phase}
        context = RuleEvaluationContext(
            case_id=integration.case_id,
            user_id=integration.user_id,
            trigger_event=TriggerEventType.PHASE_CHANGED,
            event_details=details,
            metadata={
                **integration.metadata,
                'caseType': integration.case_type,
                'currentPhase': integration.current_phase,
                'previousPhase': integration.previous_phase,
                'triggerEvent': {'type': TriggerEventType.PHASE_CHANGED.value, 'details': details},
            },
        )
        return self.rules.evaluate_rules(context)

    def _schedule_created_task(self, task: CreatedTask, integration: Optional[CaseTaskIntegration],
                               warnings: List[str]) -> Optional[ScheduledTask]:
        """Place a created task on the schedule; failures become warnings."""
        metadata = dict(task.metadata)
        due_date = task.due_date
        if integration is not None:
            metadata.update({
                'caseType': integration.case_type,
                'phase': integration.current_phase,
                'autoGenerated': True,
            })
            due_date = due_date or calculate_default_due_date(integration.current_phase, integration.case_type)

        request = ScheduleRequest(
            task_id=task.id,
            case_id=task.case_id,
            title=task.title,
            description=task.description,
            scheduled_time=now(),
            due_date=due_date,
            priority=task.priority,
            assigned_to=task.assigned_to,
            assigned_by=task.assigned_by,
            metadata=metadata,
        )
        try:
            return self.scheduling.schedule_task(request)
        except CaseWorkflowException as e:
            logger.warning(f"Could not schedule task {task.id}: {e.message}")
            warnings.append(f"Could not schedule task {task.id}: {e.message}")
            return None

    # Task completion

    def handle_task_completion(self, task_id: str, case_id: str, user_id: str,
                               metadata: Optional[Dict[str, Any]] = None) -> TaskCompletionResult:
        """
        Close a task's schedule and run the completion automation.

        Recurring tasks are marked completed so the next occurrence can be
        spawned; other tasks are removed from the schedule. Follow-up tasks
        created by automation are scheduled right away.
        """
        result = TaskCompletionResult()
        metadata = dict(metadata or {})

        try:
            scheduled = self.scheduling.get_scheduled_task(task_id)
            if scheduled is None or scheduled.case_id != case_id:
                result.errors.append('Task not found')
                return result

            old_status = scheduled.status
            if scheduled.recurrence is not None:
                self.scheduling.update_task_status(task_id, TaskStatus.COMPLETED)
            else:
                self.scheduling.cancel_task_schedule(task_id, reason='completed')

            automation_result = self.automation.process_task_status_change(
                task_id, old_status, TaskStatus.COMPLETED, case_id, user_id,
                {
                    **metadata,
                    'task': {**scheduled.to_dict(), **(metadata.get('task') or {})},
                    'taskPriority': scheduled.priority,
                    'taskAssignee': scheduled.assigned_to,
                    'caseType': scheduled.metadata.get('caseType'),
                },
            )
            result.follow_up_tasks = list(automation_result.created_tasks)
            result.notifications = list(automation_result.notifications)
            result.errors.extend(automation_result.errors)
            result.warnings.extend(automation_result.warnings)

            for task in result.follow_up_tasks:
                follow_up = self._schedule_created_task(task, None, result.warnings)
                if follow_up:
                    result.scheduled_tasks.append(follow_up)

            result.success = not result.errors
        except Exception as e:
            logger.exception(f"Completion handling failed for task {task_id}: {str(e)}")
            result.success = False
            result.errors.append(f"Task completion error: {str(e)}")

        return result

    # Periodic processing

    def process_scheduled_automations(self, reference_time: Optional[datetime] = None,
                                      include_recurring: bool = True) -> ScheduledAutomationRun:
        """Spawn recurring occurrences and drain due delayed actions."""
        result = ScheduledAutomationRun()

        try:
            if include_recurring:
                result.recurring_tasks_processed = len(self.scheduling.process_recurring_tasks())

            pending_results = self.automation.process_pending_automations(reference_time)
            result.pending_automations_processed = len(pending_results)
            for pending in pending_results:
                result.errors.extend(pending.errors)
                result.warnings.extend(pending.warnings)
                for task in pending.created_tasks:
                    if self._schedule_created_task(task, None, result.warnings):
                        result.tasks_scheduled += 1
        except Exception as e:
            logger.exception(f"Scheduled automation processing failed: {str(e)}")
            result.errors.append(f"Scheduled automation processing error: {str(e)}")

        return result

    def process_date_based_triggers(self, events: Optional[List[Dict[str, Any]]] = None,
                                    reference_time: Optional[datetime] = None) -> DateTriggerRun:
        """
        Fire date-based automation rules.

        Every open scheduled task whose due date has passed raises a
        ``task_overdue`` event. Case level events such as
        ``deadline_approaching`` carry case data the scheduler does not
        hold, so callers pass them in ``events`` as
        ``{'eventType': ..., 'metadata': {...}}`` dicts.

        Args:
            events: Extra date events to fire after the overdue sweep
            reference_time: Instant the due dates are compared against

        Returns:
            DateTriggerRun with counters and collected errors
        """
        result = DateTriggerRun()
        reference_time = reference_time or now()
        active = TaskStatus.get_active_statuses()

        try:
            overdue = [
                task for task in self.scheduling.get_scheduled_tasks()
                if task.status in active and task.due_date and task.due_date < reference_time
            ]
            result.tasks_checked = len(overdue)

            for scheduled in overdue:
                level = scheduled.metadata.get('escalationLevel', 0)
                trigger_results = self.automation.process_date_based_trigger('task_overdue', {
                    'caseId': scheduled.case_id,
                    'taskId': scheduled.task_id,
                    'userId': scheduled.assigned_to,
                    'task': {
                        **scheduled.to_dict(),
                        'escalationLevel': level,
                        'assigneeRole': scheduled.metadata.get('assigneeRole'),
                    },
                })
                for trigger_result in trigger_results:
                    self._collect_trigger_result(trigger_result, result)
                    for update in trigger_result.updated_tasks:
                        new_level = update.changes.get('escalationLevel')
                        if new_level is not None and new_level != level:
                            self.scheduling.update_task_metadata(scheduled.task_id, {
                                'escalationLevel': new_level,
                                'escalatedTo': update.changes.get('escalatedTo'),
                            })
                            result.tasks_escalated += 1

            for event in events or []:
                for trigger_result in self.automation.process_date_based_trigger(
                        event['eventType'], event.get('metadata')):
                    self._collect_trigger_result(trigger_result, result)
        except Exception as e:
            logger.exception(f"Date-based trigger processing failed: {str(e)}")
            result.errors.append(f"Date-based trigger error: {str(e)}")

        logger.info(
            f"Date triggers: {result.tasks_checked} overdue tasks, {result.triggers_fired} rules fired, "
            f"{result.tasks_escalated} escalated"
        )
        return result

    def _collect_trigger_result(self, trigger_result: AutomationResult, run: DateTriggerRun) -> None:
        run.triggers_fired += 1
        run.errors.extend(trigger_result.errors)
        run.warnings.extend(trigger_result.warnings)
        for task in trigger_result.created_tasks:
            if self._schedule_created_task(task, None, run.warnings):
                run.tasks_scheduled += 1

    # Read-only views

    def get_task_workflow_orchestration(self, case_id: str) -> TaskWorkflowOrchestration:
        tasks = self.scheduling.get_scheduled_tasks(case_id=case_id)
        reference_time = now()
        next_week = reference_time + timedelta(days=7)

        active = [task for task in tasks if task.status in TaskStatus.get_active_statuses()]
        workloads = self.scheduling.get_user_workloads()
        average_utilization = safe_divide(sum(w.utilization_rate for w in workloads), len(workloads))

        return TaskWorkflowOrchestration(
            case_id=case_id,
            phase=self._current_phase(case_id, active),
            active_tasks=len(active),
            completed_tasks=sum(1 for task in tasks if task.status == TaskStatus.COMPLETED),
            overdue_tasks=sum(1 for task in tasks if task.is_overdue),
            upcoming_deadlines=sum(
                1 for task in tasks if task.due_date and reference_time <= task.due_date <= next_week
            ),
            automation_rules_triggered=sum(
                1 for rule in self.automation.get_automation_rules() if rule.trigger_count > 0
            ),
            business_rules_evaluated=len(self.rules.get_rules()),
            workload_balance=min(average_utilization / 100, 1.0),
        )

    def _current_phase(self, case_id: str, active_tasks: List[ScheduledTask]) -> str:
        history = self.workflow.get_workflow_history(case_id)
        if history:
            return history[-1].current_phase
        for task in active_tasks:
            if task.metadata.get('phase'):
                return task.metadata['phase']
        return CasePhase.INTAKE_RISK_ASSESSMENT

    def get_available_phase_transitions(self, case_id: str, current_phase: str, case_type: str,
                                        user_role: str) -> List[str]:
        return self.state_machine.get_available_transitions(
            CaseState(phase=current_phase, case_type=case_type), user_role
        )

    def get_phase_requirements(self, phase: str, case_type: str) -> List[str]:
        return self.state_machine.get_phase_requirements(phase, case_type)

    def get_case_task_templates(self, case_type: str, phase: Optional[str] = None) -> List[TaskTemplate]:
        return self.templates.get_templates(TemplateSearchCriteria(case_type=case_type, phase=phase, is_active=True))

    def get_case_workflow_history(self, case_id: str):
        return self.workflow.get_workflow_history(case_id)

    def get_case_automation_history(self, case_id: str):
        return self.automation.get_automation_history(case_id=case_id)

    def get_case_schedule_history(self, case_id: str):
        return self.scheduling.get_schedule_history(case_id=case_id)

    def get_case_task_statistics(self, case_id: str) -> Dict[str, Any]:
        """
        Task counts and derived health figures for one case.

        ``workflowHealth`` starts at 100, loses 10 per overdue task (at most
        50) and gains up to 30 for automatically generated tasks, capped at
        100.
        """
        tasks = self.scheduling.get_scheduled_tasks(case_id=case_id)
        total = len(tasks)
        overdue = sum(1 for task in tasks if task.is_overdue)
        auto_generated = sum(1 for task in tasks if task.metadata.get('autoGenerated'))
        automation_efficiency = calculate_percentage(auto_generated, total)

        completion_hours = [
            (task.metadata['completedAt'] - task.scheduled_time).total_seconds() / 3600
            for task in tasks
            if task.status == TaskStatus.COMPLETED and task.metadata.get('completedAt')
        ]

        overdue_penalty = min(overdue * 10, 50)
        efficiency_bonus = min(automation_efficiency * 0.3, 30)

        return {
            'totalTasks': total,
            'activeTasks': sum(1 for task in tasks if task.status in TaskStatus.get_active_statuses()),
            'completedTasks': sum(1 for task in tasks if task.status == TaskStatus.COMPLETED),
            'overdueTasks': overdue,
            'highPriorityTasks': sum(1 for task in tasks if task.priority in TaskPriority.get_high_priorities()),
            'automationEfficiency': automation_efficiency,
            'averageCompletionTime': round(safe_divide(sum(completion_hours), len(completion_hours)), 2),
            'workflowHealth': min(100, max(0, 100 - overdue_penalty + efficiency_bonus)),
        }

    def get_integration_health(self) -> Dict[str, Any]:
        """Per-engine status snapshot; ``overall`` is degraded when any engine is."""
        task_rules = self.workflow.get_task_rules()
        phase_templates = self.workflow.get_task_templates()
        workflow = {
            'status': HEALTHY if task_rules and phase_templates else DEGRADED,
            'rulesCount': len(task_rules),
            'templatesCount': len(phase_templates),
        }

        pending = self.automation.get_pending_automations()
        stale_before = now() - timedelta(seconds=2 * get_workflow_setting('PENDING_AUTOMATION_DRAIN_SECONDS'))
        stale = sum(1 for job in pending if job['scheduledTime'] < stale_before)
        automation = {
            'status': DEGRADED if stale else HEALTHY,
            'activeRules': len(self.automation.get_automation_rules(active_only=True)),
            'pendingAutomations': len(pending),
            'stalePendingAutomations': stale,
        }

        over_capacity = sum(
            1 for workload in self.scheduling.get_user_workloads()
            if workload.capacity_status == CapacityStatus.OVER_CAPACITY
        )
        scheduling = {
            'status': DEGRADED if over_capacity else HEALTHY,
            'scheduledTasks': len(self.scheduling.get_scheduled_tasks()),
            'conflicts': self.scheduling.get_schedule_stats()['conflicts'],
            'overCapacityUsers': over_capacity,
        }

        rule_stats = self.rules.get_stats()
        executions = rule_stats['successfulExecutions'] + rule_stats['failedExecutions']
        evaluation_rate = (
            calculate_percentage(rule_stats['successfulExecutions'], executions) if executions else 100.0
        )
        business_rules = {
            'status': HEALTHY if evaluation_rate >= 90 else DEGRADED,
            'activeRules': rule_stats['activeRules'],
            'evaluationRate': evaluation_rate,
        }

        case_integration = {
            'status': HEALTHY,
            'supportedCaseTypes': len(CaseType.values),
            'phaseTransitions': len(self.state_machine.get_all_transitions()),
        }

        components = [workflow, automation, scheduling, business_rules, case_integration]
        return {
            'workflowEngine': workflow,
            'taskAutomation': automation,
            'taskScheduling': scheduling,
            'businessRules': business_rules,
            'caseIntegration': case_integration,
            'overall': HEALTHY if all(c['status'] == HEALTHY for c in components) else DEGRADED,
        }


case_task_integration_service = CaseTaskIntegrationService()
