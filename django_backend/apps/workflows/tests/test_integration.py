"""
Tests for the case-task integration service.
"""

from datetime import datetime, timedelta, timezone as dt_timezone
from unittest.mock import patch

from django.test import SimpleTestCase
from freezegun import freeze_time

from apps.cases.choices import CasePhase, CaseType
from apps.common.exceptions import ConflictException
from apps.notifications.services import NotificationService
from apps.tasks.choices import RecurrenceType, TaskPriority, TaskStatus
from apps.tasks.scheduling import RecurrenceRule, TaskSchedulingEngine
from apps.tasks.templates import TaskTemplateEngine
from apps.users.choices import UserRole
from apps.workflows.automation import AutomationResult, TaskAutomationEngine
from apps.workflows.engines import WorkflowEngine
from apps.workflows.integration import CaseTaskIntegrationService, calculate_default_due_date
from apps.workflows.rules import BusinessRuleEngine
from apps.workflows.tests.factories import CaseTaskIntegrationFactory, ScheduleRequestFactory


NOW = datetime(2024, 1, 15, 9, 0, tzinfo=dt_timezone.utc)

CRIMINAL_INTAKE_METADATA = {
    'caseTitle': 'State v. Morgan',
    'riskAssessmentCompleted': True,
    'clientInformation': 'x',
    'caseDescription': 'y',
    'initialEvidence': 'z',
}


class BaseIntegrationTestCase(SimpleTestCase):

    def setUp(self):
        freezer = freeze_time(NOW)
        self.clock = freezer.start()
        self.addCleanup(freezer.stop)

        notifications = NotificationService()
        self.rules = BusinessRuleEngine(notifications=notifications)
        self.templates = TaskTemplateEngine()
        self.scheduling = TaskSchedulingEngine()
        self.workflow = WorkflowEngine(rule_engine=self.rules, notifications=notifications)
        self.automation = TaskAutomationEngine(
            template_engine=self.templates, rule_engine=self.rules, notifications=notifications
        )
        self.service = CaseTaskIntegrationService(
            workflow=self.workflow,
            automation=self.automation,
            templates=self.templates,
            scheduling=self.scheduling,
            rules=self.rules,
        )

    def integration(self, **overrides):
        values = {'case_id': 'case_1', 'user_id': 'user1', 'metadata': dict(CRIMINAL_INTAKE_METADATA)}
        values.update(overrides)
        return CaseTaskIntegrationFactory(**values)

    def schedule(self, task_id='task_1', **overrides):
        values = {'title': f'Draft motion {task_id}', 'priority': TaskPriority.HIGH}
        values.update(overrides)
        return self.scheduling.schedule_task(ScheduleRequestFactory(task_id=task_id, **values))


class DefaultDueDateTestCase(SimpleTestCase):

    def test_phase_duration_scaled_by_case_type(self):
        self.assertEqual(
            calculate_default_due_date(CasePhase.INTAKE_RISK_ASSESSMENT, CaseType.MEDICAL_MALPRACTICE, NOW),
            NOW + timedelta(days=6)
        )
        self.assertEqual(
            calculate_default_due_date(CasePhase.PRE_PROCEEDING_PREPARATION, CaseType.CRIMINAL_DEFENSE, NOW),
            NOW + timedelta(days=9)
        )

    def test_without_case_type_uses_phase_duration(self):
        self.assertEqual(
            calculate_default_due_date(CasePhase.FORMAL_PROCEEDINGS, reference_time=NOW),
            NOW + timedelta(days=14)
        )

    def test_unknown_phase_uses_configured_default(self):
        self.assertEqual(calculate_default_due_date('UNKNOWN', reference_time=NOW), NOW + timedelta(days=7))


class PhaseTransitionTestCase(BaseIntegrationTestCase):

    def test_transition_creates_and_schedules_tasks(self):
        result = self.service.handle_case_phase_transition(self.integration())

        self.assertTrue(result.success)
        self.assertTrue(result.phase_transition_valid)
        self.assertEqual(result.errors, [])
        self.assertEqual(result.tasks_created, 2)
        self.assertEqual(result.notifications_sent, 1)
        self.assertEqual(len(result.scheduled_tasks), 2)
        self.assertEqual(result.business_rules_evaluated, len(self.rules.get_rules()))

        workflow_task = result.workflow_results[0].created_tasks[0]
        scheduled = self.scheduling.get_scheduled_task(workflow_task.id)
        self.assertEqual(scheduled.title, 'Prepare Bail Hearing - State v. Morgan')
        self.assertEqual(scheduled.due_date, NOW + timedelta(days=1))
        self.assertEqual(scheduled.metadata['caseType'], CaseType.CRIMINAL_DEFENSE)
        self.assertEqual(scheduled.metadata['phase'], CasePhase.PRE_PROCEEDING_PREPARATION)
        self.assertTrue(scheduled.metadata['autoGenerated'])

    def test_rejected_transition_stops_before_engines(self):
        result = self.service.handle_case_phase_transition(self.integration(user_role=UserRole.ASSISTANT))

        self.assertFalse(result.success)
        self.assertFalse(result.phase_transition_valid)
        self.assertEqual(result.errors, ['Insufficient permissions for transition'])
        self.assertEqual(result.tasks_created, 0)
        self.assertEqual(self.scheduling.get_scheduled_tasks(), [])
        self.assertEqual(self.service.get_case_workflow_history('case_1'), [])

    def test_opening_a_case_needs_no_transition_check(self):
        result = self.service.handle_case_phase_transition(self.integration(
            previous_phase=None,
            current_phase=CasePhase.INTAKE_RISK_ASSESSMENT,
            metadata={'caseTitle': 'State v. Morgan'},
        ))

        self.assertTrue(result.success)
        self.assertTrue(result.phase_transition_valid)
        self.assertEqual(
            sorted(task.metadata['templateId'] for task in result.scheduled_tasks),
            ['criminal_intake_assessment', 'criminal_intake_risk_assessment']
        )

    def test_scheduling_failure_is_a_warning(self):
        conflict = ConflictException('High priority schedule conflicts: blocked')
        with patch.object(self.scheduling, 'schedule_task', side_effect=conflict):
            result = self.service.handle_case_phase_transition(self.integration())

        self.assertTrue(result.success)
        self.assertEqual(result.scheduled_tasks, [])
        self.assertEqual(len([w for w in result.warnings if w.startswith('Could not schedule task')]), 2)

    def test_unexpected_error_becomes_result_error(self):
        with patch.object(self.automation, 'process_case_phase_change', side_effect=RuntimeError('queue down')):
            result = self.service.handle_case_phase_transition(self.integration())

        self.assertFalse(result.success)
        self.assertEqual(result.errors, ['Integration error: queue down'])

    def test_failed_automation_action_fails_the_transition(self):
        partial = AutomationResult(errors=['Action send_notification failed: no recipients'])
        with patch.object(self.automation, 'process_case_phase_change', return_value=partial):
            result = self.service.handle_case_phase_transition(self.integration())

        self.assertFalse(result.success)
        self.assertEqual(result.tasks_created, 1)
        self.assertIn('Action send_notification failed: no recipients', result.errors)
        self.assertNotIn('Action send_notification failed: no recipients', result.warnings)

    def test_orchestration_after_transition(self):
        self.service.handle_case_phase_transition(self.integration())

        orchestration = self.service.get_task_workflow_orchestration('case_1')

        self.assertEqual(orchestration.phase, CasePhase.PRE_PROCEEDING_PREPARATION)
        self.assertEqual(orchestration.active_tasks, 2)
        self.assertEqual(orchestration.upcoming_deadlines, 2)
        self.assertEqual(orchestration.overdue_tasks, 0)
        self.assertEqual(orchestration.automation_rules_triggered, 1)
        self.assertLess(orchestration.workload_balance, 0.9)

    def test_case_histories(self):
        self.service.handle_case_phase_transition(self.integration())

        self.assertEqual(len(self.service.get_case_workflow_history('case_1')), 1)
        self.assertEqual(len(self.service.get_case_automation_history('case_1')), 1)
        self.assertEqual(
            {entry.action for entry in self.service.get_case_schedule_history('case_1')},
            {'task_scheduled'}
        )
        self.assertEqual(self.service.get_case_schedule_history('case_2'), [])


class TaskCompletionTestCase(BaseIntegrationTestCase):

    def test_unknown_task(self):
        result = self.service.handle_task_completion('missing', 'case_1', 'user1')

        self.assertFalse(result.success)
        self.assertEqual(result.errors, ['Task not found'])

    def test_task_from_other_case_is_not_found(self):
        self.schedule()

        result = self.service.handle_task_completion('task_1', 'case_2', 'user1')

        self.assertEqual(result.errors, ['Task not found'])
        self.assertIsNotNone(self.scheduling.get_scheduled_task('task_1'))

    def test_completion_releases_schedule_and_queues_follow_up(self):
        self.schedule()

        result = self.service.handle_task_completion('task_1', 'case_1', 'user1', {'createdBy': 'user5'})

        self.assertTrue(result.success)
        self.assertIsNone(self.scheduling.get_scheduled_task('task_1'))
        self.assertEqual(self.scheduling.get_user_workload('user1').total_hours, 0)
        self.assertEqual(result.follow_up_tasks, [])
        self.assertEqual(len(result.notifications), 1)
        self.assertIn('Action create_task scheduled for 24 hours later', result.warnings)
        self.assertEqual(len(self.automation.get_pending_automations()), 1)

        self.clock.tick(timedelta(hours=25))
        run = self.service.process_scheduled_automations()

        self.assertEqual(run.pending_automations_processed, 1)
        self.assertEqual(run.tasks_scheduled, 1)
        self.assertEqual(run.errors, [])
        follow_up = self.scheduling.get_scheduled_tasks(user_id='user5')[0]
        self.assertEqual(follow_up.title, 'Follow up review')

    def test_recurring_task_is_completed_and_recurs(self):
        self.schedule(
            priority=TaskPriority.LOW,
            recurrence=RecurrenceRule(type=RecurrenceType.WEEKLY, max_occurrences=4),
        )

        result = self.service.handle_task_completion('task_1', 'case_1', 'user1')

        self.assertTrue(result.success)
        self.assertEqual(self.scheduling.get_scheduled_task('task_1').status, TaskStatus.COMPLETED)

        run = self.service.process_scheduled_automations()
        self.assertEqual(run.recurring_tasks_processed, 1)
        self.assertEqual(len(self.scheduling.get_scheduled_tasks(case_id='case_1')), 2)

    def test_drain_without_recurrence(self):
        self.schedule(recurrence=RecurrenceRule(type=RecurrenceType.DAILY))
        self.scheduling.update_task_status('task_1', TaskStatus.COMPLETED)

        run = self.service.process_scheduled_automations(include_recurring=False)

        self.assertEqual(run.recurring_tasks_processed, 0)
        self.assertEqual(len(self.scheduling.get_scheduled_tasks()), 1)


class DateTriggerTestCase(BaseIntegrationTestCase):

    def schedule_overdue(self):
        self.schedule(due_date=NOW + timedelta(hours=2), metadata={'assigneeRole': UserRole.ATTORNEY})
        self.clock.tick(timedelta(hours=3))

    def test_overdue_task_is_escalated_once(self):
        self.schedule_overdue()

        run = self.service.process_date_based_triggers()

        self.assertEqual(run.tasks_checked, 1)
        self.assertEqual(run.triggers_fired, 1)
        self.assertEqual(run.tasks_escalated, 1)
        self.assertEqual(run.errors, [])
        task = self.scheduling.get_scheduled_task('task_1')
        self.assertEqual(task.metadata['escalationLevel'], 1)
        self.assertEqual(task.metadata['escalatedTo'], 'ADMIN')

        second = self.service.process_date_based_triggers()

        self.assertEqual(second.tasks_escalated, 0)
        self.assertTrue(any('No next escalation level found for level 1' in error for error in second.errors))

    def test_tasks_not_yet_due_are_skipped(self):
        self.schedule(due_date=NOW + timedelta(days=2))

        run = self.service.process_date_based_triggers()

        self.assertEqual(run.tasks_checked, 0)
        self.assertEqual(run.triggers_fired, 0)

    def test_completed_tasks_are_not_escalated(self):
        self.schedule_overdue()
        self.scheduling.update_task_status('task_1', TaskStatus.COMPLETED)

        self.assertEqual(self.service.process_date_based_triggers().tasks_checked, 0)

    def test_case_events_create_and_schedule_tasks(self):
        run = self.service.process_date_based_triggers(events=[{
            'eventType': 'filing_deadline',
            'metadata': {'caseId': 'case_9', 'case': {'hasPendingFilings': True, 'attorneyId': 'att_1'}},
        }])

        self.assertEqual(run.triggers_fired, 1)
        self.assertEqual(run.tasks_scheduled, 1)
        scheduled = self.scheduling.get_scheduled_tasks(user_id='att_1')[0]
        self.assertEqual(scheduled.title, 'Complete filing')
        self.assertEqual(scheduled.priority, TaskPriority.URGENT)


class StatisticsTestCase(BaseIntegrationTestCase):

    def test_case_task_statistics(self):
        self.schedule('task_1', due_date=NOW + timedelta(days=1), metadata={'autoGenerated': True})
        self.schedule('task_2', due_date=NOW + timedelta(days=1), priority=TaskPriority.LOW,
                      scheduled_time=NOW + timedelta(hours=5))
        self.clock.tick(timedelta(days=2))

        stats = self.service.get_case_task_statistics('case_1')

        self.assertEqual(stats['totalTasks'], 2)
        self.assertEqual(stats['activeTasks'], 2)
        self.assertEqual(stats['overdueTasks'], 2)
        self.assertEqual(stats['highPriorityTasks'], 1)
        self.assertEqual(stats['automationEfficiency'], 50.0)
        self.assertEqual(stats['workflowHealth'], 95.0)

    def test_average_completion_time(self):
        self.schedule(recurrence=RecurrenceRule(type=RecurrenceType.DAILY))
        self.clock.tick(timedelta(hours=4))
        self.scheduling.update_task_status('task_1', TaskStatus.COMPLETED)

        stats = self.service.get_case_task_statistics('case_1')

        self.assertEqual(stats['completedTasks'], 1)
        self.assertEqual(stats['averageCompletionTime'], 3.0)

    def test_empty_case(self):
        stats = self.service.get_case_task_statistics('case_9')

        self.assertEqual(stats['totalTasks'], 0)
        self.assertEqual(stats['automationEfficiency'], 0.0)
        self.assertEqual(stats['workflowHealth'], 100)


class HealthAndLookupTestCase(BaseIntegrationTestCase):

    def test_fresh_engines_are_healthy(self):
        health = self.service.get_integration_health()

        self.assertEqual(health['overall'], 'healthy')
        self.assertEqual(health['workflowEngine']['rulesCount'], 3)
        self.assertEqual(health['workflowEngine']['templatesCount'], 6)
        self.assertEqual(health['caseIntegration']['supportedCaseTypes'], 9)
        self.assertEqual(health['businessRules']['evaluationRate'], 100.0)
        self.assertEqual(health['taskScheduling']['scheduledTasks'], 0)

    def test_over_capacity_degrades_scheduling(self):
        for day in range(1, 12):
            self.schedule(f'task_{day}', priority=TaskPriority.URGENT, scheduled_time=NOW + timedelta(days=day))

        health = self.service.get_integration_health()

        self.assertEqual(health['taskScheduling']['status'], 'degraded')
        self.assertEqual(health['taskScheduling']['overCapacityUsers'], 1)
        self.assertEqual(health['overall'], 'degraded')

    def test_undrained_delayed_actions_degrade_automation(self):
        self.schedule()
        self.service.handle_task_completion('task_1', 'case_1', 'user1')
        self.clock.tick(timedelta(hours=26))

        health = self.service.get_integration_health()

        self.assertEqual(health['taskAutomation']['stalePendingAutomations'], 1)
        self.assertEqual(health['overall'], 'degraded')

    def test_phase_lookups(self):
        self.assertEqual(
            self.service.get_available_phase_transitions(
                'case_1', CasePhase.INTAKE_RISK_ASSESSMENT, CaseType.CRIMINAL_DEFENSE, UserRole.ATTORNEY
            )[0],
            CasePhase.PRE_PROCEEDING_PREPARATION
        )
        self.assertIn(
            'clientInformation',
            self.service.get_phase_requirements(CasePhase.INTAKE_RISK_ASSESSMENT, CaseType.CRIMINAL_DEFENSE)
        )
        self.assertEqual(
            [t.id for t in self.service.get_case_task_templates(
                CaseType.CRIMINAL_DEFENSE, CasePhase.PRE_PROCEEDING_PREPARATION
            )],
            ['bail_hearing_preparation']
        )
