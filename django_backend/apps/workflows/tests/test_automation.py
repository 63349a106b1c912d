"""
Tests for the task automation engine.
"""

from datetime import timedelta

from django.test import SimpleTestCase
from django.utils import timezone
from freezegun import freeze_time

from apps.cases.choices import CasePhase, CaseType
from apps.common.exceptions import ValidationException
from apps.notifications.services import NotificationService
from apps.tasks.choices import TaskPriority, TaskStatus
from apps.tasks.templates import TaskTemplateEngine
from apps.workflows.actions import Action, ActionType, FailureStrategy
from apps.workflows.automation import (
    AutomationRule,
    AutomationTrigger,
    PhaseChangeRequest,
    TaskAutomationEngine,
    TriggerType,
    default_automation_rules,
)
from apps.workflows.rules import BusinessRuleEngine


class BaseAutomationTestCase(SimpleTestCase):

    def setUp(self):
        self.notifications = NotificationService()
        self.engine = TaskAutomationEngine(
            template_engine=TaskTemplateEngine(),
            rule_engine=BusinessRuleEngine(notifications=self.notifications),
            notifications=self.notifications,
        )

    def overdue_task(self, **overrides):
        task = {
            'id': 'task_7',
            'status': TaskStatus.PENDING,
            'dueDate': timezone.now() - timedelta(days=2),
            'escalationLevel': 0,
            'assigneeRole': 'ASSISTANT',
        }
        task.update(overrides)
        return task


class PhaseChangeTestCase(BaseAutomationTestCase):

    def test_auto_create_templates_become_tasks(self):
        result = self.engine.process_case_phase_change(PhaseChangeRequest(
            case_id='case_1',
            case_type=CaseType.CRIMINAL_DEFENSE,
            current_phase=CasePhase.INTAKE_RISK_ASSESSMENT,
            user_id='user1',
            metadata={'caseTitle': 'State v. Morgan'},
        ))

        self.assertTrue(result.success)
        self.assertEqual(len(result.created_tasks), 1)
        task = result.created_tasks[0]
        self.assertEqual(task.title, 'Complete Intake Assessment - State v. Morgan')
        self.assertEqual(task.priority, TaskPriority.HIGH)
        self.assertEqual(task.assigned_to, 'user1')
        self.assertEqual(task.metadata['templateId'], 'criminal_intake_assessment')
        self.assertEqual(task.metadata['automationRule'], 'phase_change_task_creation')
        self.assertTrue(task.metadata['autoGenerated'])

    def test_phase_without_templates_creates_nothing(self):
        result = self.engine.process_case_phase_change(PhaseChangeRequest(
            case_id='case_1',
            case_type=CaseType.LABOR_DISPUTE,
            current_phase=CasePhase.FORMAL_PROCEEDINGS,
        ))

        self.assertTrue(result.success)
        self.assertEqual(result.created_tasks, [])

    def test_rule_counters_and_history(self):
        self.engine.process_case_phase_change(PhaseChangeRequest(
            case_id='case_1', case_type=CaseType.CRIMINAL_DEFENSE,
            current_phase=CasePhase.INTAKE_RISK_ASSESSMENT,
        ))

        rule = self.engine.get_automation_rule('phase_change_task_creation')
        self.assertEqual(rule.trigger_count, 1)
        self.assertIsNotNone(rule.last_triggered)

        history = self.engine.get_automation_history(case_id='case_1')
        self.assertEqual(len(history), 1)
        self.assertEqual(history[0].rule_id, 'phase_change_task_creation')
        self.assertEqual(self.engine.get_automation_history(case_id='case_2'), [])


class TaskStatusChangeTestCase(BaseAutomationTestCase):

    def test_high_priority_task_is_assigned_by_workload(self):
        result = self.engine.process_task_status_change(
            'task_2', TaskStatus.IN_PROGRESS, TaskStatus.PENDING, 'case_1', 'user1',
            {'taskPriority': TaskPriority.HIGH},
        )

        self.assertEqual(result.errors, [])
        self.assertEqual(len(result.updated_tasks), 1)
        self.assertEqual(result.updated_tasks[0].changes['assignedTo'], 'user2')

    def test_assigned_task_is_left_alone(self):
        result = self.engine.process_task_status_change(
            'task_2', TaskStatus.IN_PROGRESS, TaskStatus.PENDING, 'case_1', 'user1',
            {'taskPriority': TaskPriority.HIGH, 'taskAssignee': 'user1'},
        )

        self.assertEqual(result.updated_tasks, [])

    def test_trigger_priority_must_match(self):
        result = self.engine.process_task_status_change(
            'task_2', TaskStatus.IN_PROGRESS, TaskStatus.PENDING, 'case_1', 'user1',
            {'taskPriority': TaskPriority.LOW},
        )

        self.assertEqual(result.actions_executed, [])

    def test_completion_follow_up_is_delayed(self):
        result = self.engine.process_task_status_change(
            'task_3', TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED, 'case_1', 'user1',
            {'taskPriority': TaskPriority.URGENT, 'createdBy': 'user5'},
        )

        self.assertEqual(result.created_tasks, [])
        self.assertEqual(result.warnings, ['Action create_task scheduled for 24 hours later'])
        self.assertEqual(len(result.notifications), 1)
        self.assertEqual(result.notifications[0].recipients, ['creator', 'supervisor'])

        pending = self.engine.get_pending_automations()
        self.assertEqual(len(pending), 1)
        self.assertEqual(pending[0]['ruleId'], 'task_completion_followup')
        self.assertEqual(pending[0]['actionType'], 'create_task')

    def test_low_priority_completion_has_no_follow_up(self):
        result = self.engine.process_task_status_change(
            'task_3', TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED, 'case_1', 'user1',
            {'taskPriority': TaskPriority.LOW},
        )

        self.assertEqual(result.notifications, [])
        self.assertEqual(self.engine.get_pending_automations(), [])


class DelayedActionTestCase(BaseAutomationTestCase):

    def complete_urgent_task(self):
        self.engine.process_task_status_change(
            'task_3', TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED, 'case_1', 'user1',
            {'taskPriority': TaskPriority.URGENT, 'createdBy': 'user5'},
        )

    def test_pending_action_waits_for_its_fire_time(self):
        with freeze_time("2024-03-01 09:00:00") as frozen:
            self.complete_urgent_task()

            frozen.tick(timedelta(hours=23))
            self.assertEqual(self.engine.process_pending_automations(), [])

            frozen.tick(timedelta(hours=2))
            results = self.engine.process_pending_automations()

        self.assertEqual(len(results), 1)
        task = results[0].created_tasks[0]
        self.assertEqual(task.title, 'Follow up review')
        self.assertEqual(task.assigned_to, 'user5')
        self.assertEqual(task.metadata['parentTaskId'], 'task_3')
        self.assertEqual(self.engine.get_pending_automations(), [])

    def test_delayed_run_is_recorded_in_history(self):
        self.complete_urgent_task()
        self.engine.process_pending_automations(timezone.now() + timedelta(hours=25))

        latest = self.engine.get_automation_history(limit=1)[0]
        self.assertTrue(latest.delayed)
        self.assertEqual(latest.rule_id, 'task_completion_followup')

    def test_cancel_pending_automation(self):
        self.complete_urgent_task()
        job_id = self.engine.get_pending_automations()[0]['id']

        self.assertTrue(self.engine.cancel_pending_automation(job_id))
        self.assertFalse(self.engine.cancel_pending_automation(job_id))
        self.assertEqual(self.engine.process_pending_automations(timezone.now() + timedelta(days=2)), [])


class DateBasedTriggerTestCase(BaseAutomationTestCase):

    def test_overdue_task_is_escalated(self):
        results = self.engine.process_date_based_trigger('task_overdue', {
            'caseId': 'case_1', 'task': self.overdue_task(),
        })

        self.assertEqual(len(results), 1)
        result = results[0]
        self.assertEqual(result.errors, [])
        self.assertEqual(result.updated_tasks[0].id, 'task_7')
        self.assertEqual(result.updated_tasks[0].changes['escalatedTo'], 'ATTORNEY')
        self.assertEqual(result.updated_tasks[0].changes['escalationLevel'], 1)
        self.assertEqual(result.notifications[0].channel, 'email')

    def test_escalation_ceiling_stops_matching(self):
        results = self.engine.process_date_based_trigger('task_overdue', {
            'caseId': 'case_1', 'task': self.overdue_task(escalationLevel=3),
        })

        self.assertEqual(results, [])

    def test_failed_escalation_continues_to_notification(self):
        results = self.engine.process_date_based_trigger('task_overdue', {
            'caseId': 'case_1', 'task': self.overdue_task(assigneeRole=None),
        })

        result = results[0]
        self.assertEqual(result.errors, [
            'Error executing action escalate_task: Cannot escalate task without current assignee role'
        ])
        self.assertEqual(len(result.notifications), 1)

    def test_filing_deadline_creates_urgent_task_for_case_attorney(self):
        results = self.engine.process_date_based_trigger('filing_deadline', {
            'caseId': 'case_9', 'case': {'hasPendingFilings': True, 'attorneyId': 'att_1'},
        })

        task = results[0].created_tasks[0]
        self.assertEqual(task.title, 'Complete filing')
        self.assertEqual(task.priority, TaskPriority.URGENT)
        self.assertEqual(task.assigned_to, 'att_1')
        self.assertEqual(results[0].notifications[0].recipients, ['attorney', 'paralegal'])

    def test_task_creation_needs_a_case(self):
        results = self.engine.process_date_based_trigger('filing_deadline', {
            'case': {'hasPendingFilings': True},
        })

        self.assertEqual(results[0].errors, [
            'Error executing action create_task: Case ID is required for task creation'
        ])
        self.assertEqual(len(results[0].notifications), 1)

    @freeze_time("2024-03-01 09:00:00")
    def test_deadline_reminder_window(self):
        metadata = {'caseId': 'case_4', 'case': {
            'hasDeadline': True, 'deadline': timezone.now() + timedelta(days=3),
        }}
        results = self.engine.process_date_based_trigger('deadline_approaching', metadata)

        self.assertEqual(len(results), 1)
        self.assertEqual(results[0].notifications[0].template, 'case_deadline_reminder')
        self.assertEqual(results[0].created_tasks[0].priority, TaskPriority.HIGH)

        metadata['case']['deadline'] = timezone.now() + timedelta(days=30)
        self.assertEqual(self.engine.process_date_based_trigger('deadline_approaching', metadata), [])

    def test_unknown_event_matches_nothing(self):
        self.assertEqual(self.engine.process_date_based_trigger('court_holiday', {}), [])


class RuleManagementTestCase(BaseAutomationTestCase):

    def stop_rule(self):
        return AutomationRule(
            id='strict_filing',
            name='Strict Filing',
            priority=0,
            triggers=[AutomationTrigger(TriggerType.DATE_BASED, {'eventType': 'strict_filing'})],
            actions=[
                Action.build(ActionType.CREATE_TASK, failure_strategy=FailureStrategy.STOP,
                             template='complete_filing'),
                Action.build(ActionType.SEND_NOTIFICATION, recipients=['attorney']),
            ],
        )

    def test_stop_strategy_aborts_remaining_actions(self):
        self.engine.add_automation_rule(self.stop_rule())

        result = self.engine.process_date_based_trigger('strict_filing', {})[0]

        self.assertFalse(result.success)
        self.assertEqual(result.notifications, [])
        self.assertEqual(len(result.errors), 1)

    def test_rules_are_ordered_by_priority(self):
        self.engine.add_automation_rule(self.stop_rule())

        priorities = [rule.priority for rule in self.engine.get_automation_rules()]
        self.assertEqual(priorities, sorted(priorities))
        self.assertEqual(self.engine.get_automation_rules()[0].id, 'strict_filing')

    def test_invalid_rule_is_rejected(self):
        with self.assertRaises(ValidationException) as ctx:
            self.engine.add_automation_rule(AutomationRule(id='empty', name='Empty', triggers=[], actions=[]))

        self.assertEqual(ctx.exception.details['errors'], [
            'At least one trigger is required', 'At least one action is required',
        ])

    def test_deactivated_rule_does_not_run(self):
        self.assertTrue(self.engine.deactivate_automation_rule('document_filing_deadline'))

        results = self.engine.process_date_based_trigger('filing_deadline', {
            'caseId': 'case_9', 'case': {'hasPendingFilings': True},
        })
        self.assertEqual(results, [])
        self.assertEqual(len(self.engine.get_automation_rules(active_only=False)), 6)

    def test_update_and_delete(self):
        self.assertTrue(self.engine.update_automation_rule('case_deadline_reminder', priority=9))
        self.assertEqual(self.engine.get_automation_rule('case_deadline_reminder').priority, 9)
        self.assertFalse(self.engine.update_automation_rule('missing', priority=1))

        self.assertTrue(self.engine.delete_automation_rule('case_deadline_reminder'))
        self.assertIsNone(self.engine.get_automation_rule('case_deadline_reminder'))

    def test_stats(self):
        self.engine.process_date_based_trigger('task_overdue', {
            'caseId': 'case_1', 'task': self.overdue_task(),
        })
        self.engine.process_date_based_trigger('task_overdue', {
            'caseId': 'case_1', 'task': self.overdue_task(assigneeRole=None),
        })

        stats = self.engine.get_automation_stats()

        self.assertEqual(stats['totalRules'], 6)
        self.assertEqual(stats['activeRules'], 6)
        self.assertEqual(stats['totalTriggers'], 2)
        self.assertEqual(stats['recentHistory'], 2)
        self.assertEqual(stats['successRate'], 50.0)
        self.assertEqual(stats['triggerCounts'], {'date_based': 2})
        self.assertEqual(stats['pendingAutomations'], 0)


class DefaultRuleCatalogTestCase(SimpleTestCase):

    def test_trigger_priority_is_separate_from_task_priority_filter(self):
        rules = {rule.id: rule for rule in default_automation_rules()}

        trigger = rules['high_priority_assignment'].triggers[0]

        self.assertEqual(trigger.priority, 3)
        self.assertEqual(trigger.condition, {'priority': TaskPriority.HIGH, 'status': TaskStatus.PENDING})

    def test_module_engine_loads_every_default_rule(self):
        from apps.workflows.automation import task_automation_engine

        self.assertEqual(
            {rule.id for rule in task_automation_engine.get_automation_rules(active_only=False)},
            {rule.id for rule in default_automation_rules()},
        )
