"""
Tests for the workflow engine.
"""

from datetime import timedelta
from unittest.mock import patch

from django.test import SimpleTestCase
from django.utils import timezone
from freezegun import freeze_time

from apps.cases.choices import CasePhase, CaseType
from apps.notifications.services import NotificationService
from apps.tasks.choices import TaskPriority, TaskStatus
from apps.users.choices import UserRole
from apps.workflows.actions import Action, ActionType
from apps.workflows.conditions import Condition, ConditionOperator, LogicalOperator
from apps.workflows.engines import PhaseTaskTemplate, TaskRule, WorkflowEngine
from apps.workflows.rules import BusinessRuleEngine


CRIMINAL_INTAKE_METADATA = {
    'riskAssessmentCompleted': True,
    'clientInformation': 'x',
    'caseDescription': 'y',
    'initialEvidence': 'z',
}


class BaseWorkflowEngineTestCase(SimpleTestCase):

    def setUp(self):
        self.notifications = NotificationService()
        self.engine = WorkflowEngine(
            rule_engine=BusinessRuleEngine(notifications=self.notifications),
            notifications=self.notifications,
        )

    def transition(self, role=UserRole.ATTORNEY, metadata=None, **overrides):
        arguments = {
            'case_id': 'case_1',
            'from_phase': CasePhase.INTAKE_RISK_ASSESSMENT,
            'to_phase': CasePhase.PRE_PROCEEDING_PREPARATION,
            'case_type': CaseType.CRIMINAL_DEFENSE,
            'user_role': role,
            'user_id': 'user1',
            'metadata': dict(CRIMINAL_INTAKE_METADATA, **(metadata or {})),
        }
        arguments.update(overrides)
        return self.engine.process_phase_transition(**arguments)


class PhaseTransitionTestCase(BaseWorkflowEngineTestCase):

    @freeze_time("2024-01-15 09:00:00")
    def test_criminal_intake_to_preparation_creates_bail_hearing_task(self):
        result = self.transition(metadata={'caseTitle': 'State v. Morgan'})

        self.assertTrue(result.success)
        self.assertEqual(result.errors, [])
        self.assertEqual(len(result.created_tasks), 1)

        task = result.created_tasks[0]
        self.assertEqual(task.title, 'Prepare Bail Hearing - State v. Morgan')
        self.assertEqual(task.priority, TaskPriority.URGENT)
        self.assertEqual(task.status, TaskStatus.PENDING)
        self.assertEqual(task.assigned_to, 'user1')
        self.assertEqual(task.due_date, timezone.now() + timedelta(days=1))
        self.assertEqual(task.metadata['templateId'], 'criminal_bail_hearing')

    def test_summary_notification_is_added(self):
        result = self.transition()

        self.assertEqual(len(result.notifications), 1)
        notification = result.notifications[0]
        self.assertEqual(notification.recipients, ['user1'])
        self.assertEqual(notification.subject, 'New Tasks Created for case_1')
        self.assertEqual(notification.metadata['taskCount'], 1)

    def test_unresolved_title_placeholder_is_kept(self):
        result = self.transition()

        self.assertEqual(result.created_tasks[0].title, 'Prepare Bail Hearing - {caseTitle}')

    def test_unauthorized_role_is_rejected(self):
        result = self.transition(role=UserRole.ASSISTANT)

        self.assertFalse(result.success)
        self.assertEqual(result.created_tasks, [])
        self.assertEqual(result.errors, ['Insufficient permissions for transition'])
        self.assertEqual(self.engine.get_workflow_history('case_1'), [])

    def test_missing_requirements_are_reported(self):
        result = self.transition(metadata={'riskAssessmentCompleted': False})

        self.assertFalse(result.success)
        self.assertEqual(result.errors, ['Condition failed: riskAssessmentCompleted equals true'])

    def test_history_is_kept_per_case(self):
        self.transition()
        self.transition(case_id='case_2')

        history = self.engine.get_workflow_history('case_1')
        self.assertEqual(len(history), 1)
        self.assertEqual(history[0].previous_phase, CasePhase.INTAKE_RISK_ASSESSMENT)
        self.assertEqual(history[0].current_phase, CasePhase.PRE_PROCEEDING_PREPARATION)
        self.assertEqual(self.engine.get_workflow_history('unknown'), [])

    def test_template_conditions_filter_creation(self):
        self.engine.add_task_template(PhaseTaskTemplate(
            id='criminal_discovery_request',
            name='Discovery Request',
            case_type=CaseType.CRIMINAL_DEFENSE,
            phase=CasePhase.PRE_PROCEEDING_PREPARATION,
            title_template='Request discovery',
            conditions=[Condition('discoveryNeeded', ConditionOperator.EQUALS, True)],
        ))

        self.assertEqual(len(self.transition().created_tasks), 1)
        self.assertEqual(len(self.transition(metadata={'discoveryNeeded': True}).created_tasks), 2)

    def test_templates_apply_without_any_task_rule(self):
        for rule in self.engine.get_task_rules(active_only=False):
            self.engine.remove_task_rule(rule.id)

        result = self.transition()

        self.assertTrue(result.success)
        self.assertEqual([t.metadata['templateId'] for t in result.created_tasks], ['criminal_bail_hearing'])
        self.assertEqual(len(result.notifications), 1)

    def test_inactive_or_manual_templates_are_skipped(self):
        self.engine.update_task_template('criminal_bail_hearing', is_active=False)
        self.engine.add_task_template(PhaseTaskTemplate(
            id='criminal_plea_review',
            name='Plea Review',
            case_type=CaseType.CRIMINAL_DEFENSE,
            phase=CasePhase.PRE_PROCEEDING_PREPARATION,
            title_template='Review plea offer',
            auto_create=False,
        ))

        result = self.transition()

        self.assertTrue(result.success)
        self.assertEqual(result.created_tasks, [])
        self.assertEqual(result.notifications, [])

    def test_template_conditions_honour_or_links(self):
        self.engine.add_task_template(PhaseTaskTemplate(
            id='criminal_expedited_review',
            name='Expedited Review',
            case_type=CaseType.CRIMINAL_DEFENSE,
            phase=CasePhase.PRE_PROCEEDING_PREPARATION,
            title_template='Expedited review',
            conditions=[
                Condition('clientInCustody', ConditionOperator.EQUALS, True, logical_operator=LogicalOperator.OR),
                Condition('trialDateSet', ConditionOperator.EQUALS, True),
            ],
        ))

        result = self.transition(metadata={'clientInCustody': True})

        self.assertIn('criminal_expedited_review', [t.metadata['templateId'] for t in result.created_tasks])

    def test_opening_case_skips_transition_check(self):
        result = self.transition(
            from_phase=None, to_phase=CasePhase.INTAKE_RISK_ASSESSMENT, role=UserRole.ASSISTANT, metadata={}
        )

        self.assertTrue(result.success)
        self.assertEqual([t.metadata['templateId'] for t in result.created_tasks], ['criminal_intake_risk_assessment'])
        self.assertTrue(self.engine.get_workflow_history('case_1')[0].phase_changed)

    @patch('apps.workflows.engines.logger')
    def test_unexpected_error_becomes_result_error(self, mock_logger):
        with patch.object(self.engine, 'evaluate_task_rules', side_effect=RuntimeError('store offline')):
            result = self.transition()

        self.assertFalse(result.success)
        self.assertEqual(result.errors, ['store offline'])
        mock_logger.exception.assert_called_once()


class TaskRuleTableTestCase(BaseWorkflowEngineTestCase):

    def test_high_priority_unassigned_task_is_assigned(self):
        result = self.engine.process_task_event(
            {'id': 'task_1', 'caseId': 'case_1', 'priority': TaskPriority.HIGH}, 'created'
        )

        self.assertTrue(result.success)
        self.assertEqual(result.updated_tasks[0].id, 'task_1')
        self.assertEqual(result.updated_tasks[0].changes['assignedTo'], 'user2')

    def test_overdue_task_is_escalated_and_notified(self):
        task = {
            'id': 'task_2', 'caseId': 'case_1', 'status': TaskStatus.PENDING,
            'dueDate': timezone.now() - timedelta(hours=3), 'escalationLevel': 0,
            'assigneeRole': UserRole.ATTORNEY,
        }
        result = self.engine.process_task_event(task, 'overdue', {'userId': 'user1'})

        self.assertEqual(result.updated_tasks[0].changes['escalatedTo'], 'ADMIN')
        self.assertEqual(result.notifications[0].channel, 'email')

    def test_escalation_past_last_level_is_an_error(self):
        task = {
            'id': 'task_2', 'caseId': 'case_1', 'status': TaskStatus.PENDING,
            'dueDate': timezone.now() - timedelta(hours=3), 'escalationLevel': 1,
            'assigneeRole': UserRole.ATTORNEY,
        }
        result = self.engine.process_task_event(task, 'overdue')

        self.assertFalse(result.success)
        self.assertEqual(result.errors, [
            'Rule Overdue Task Escalation: No next escalation level found for level 1'
        ])
        self.assertEqual(len(result.notifications), 1)

    def test_completed_task_activates_dependents(self):
        task = {
            'id': 'task_3', 'caseId': 'case_1', 'status': TaskStatus.COMPLETED,
            'hasDependents': True, 'dependents': ['task_4', 'task_5'],
        }
        result = self.engine.process_task_event(task, 'completed')

        self.assertEqual(result.updated_tasks[0].changes['activatedDependents'], ['task_4', 'task_5'])

    def test_task_event_never_creates_phase_tasks(self):
        result = self.engine.process_task_event({'id': 'task_9', 'caseId': 'case_1'}, 'updated', {
            'case': {'type': CaseType.CRIMINAL_DEFENSE, 'phase': CasePhase.PRE_PROCEEDING_PREPARATION},
        })

        self.assertEqual(result.created_tasks, [])

    def test_rules_run_in_priority_order(self):
        self.engine.add_task_rule(TaskRule(
            id='first', name='First', priority=0,
            conditions=[], actions=[Action.build(ActionType.CHANGE_PRIORITY, new_priority=TaskPriority.LOW)],
        ))

        self.assertEqual([rule.id for rule in self.engine.get_task_rules()][:2], ['first', 'overdue_escalation'])

        result = self.engine.process_task_event({'id': 'task_1', 'priority': TaskPriority.HIGH}, 'created')
        self.assertEqual(
            [update.reason for update in result.updated_tasks],
            ['change_priority', 'assign_task']
        )

    def test_rule_conditions_honour_or_links(self):
        self.engine.add_task_rule(TaskRule(
            id='stalled_or_urgent', name='Stalled or Urgent', priority=5,
            conditions=[
                Condition('task.priority', ConditionOperator.EQUALS, TaskPriority.URGENT,
                          logical_operator=LogicalOperator.OR),
                Condition('task.status', ConditionOperator.EQUALS, TaskStatus.OVERDUE),
            ],
            actions=[Action.build(ActionType.CHANGE_PRIORITY, new_priority=TaskPriority.URGENT)],
        ))

        result = self.engine.process_task_event(
            {'id': 'task_1', 'priority': TaskPriority.LOW, 'status': TaskStatus.OVERDUE, 'assignedTo': 'user1'},
            'updated'
        )

        self.assertTrue(result.success)
        self.assertEqual([update.reason for update in result.updated_tasks], ['change_priority'])

    def test_create_task_rule_uses_named_template(self):
        self.engine.add_task_rule(TaskRule(
            id='custody_follow_up', name='Custody Follow Up', priority=6,
            conditions=[Condition('task.status', ConditionOperator.EQUALS, TaskStatus.COMPLETED)],
            actions=[Action.build(ActionType.CREATE_TASK, template='divorce_custody_evaluation')],
        ))

        result = self.engine.process_task_event(
            {'id': 'task_7', 'caseId': 'case_1', 'status': TaskStatus.COMPLETED}, 'completed'
        )

        self.assertEqual([t.metadata['templateId'] for t in result.created_tasks], ['divorce_custody_evaluation'])


class CatalogTestCase(BaseWorkflowEngineTestCase):

    def test_default_templates_by_case_type_and_phase(self):
        self.assertEqual(len(self.engine.get_task_templates()), 6)
        self.assertEqual(
            [t.id for t in self.engine.get_task_templates(CaseType.MEDICAL_MALPRACTICE)],
            ['medical_record_review', 'expert_witness_coordination']
        )
        self.assertEqual(
            [t.id for t in self.engine.get_task_templates(phase=CasePhase.FORMAL_PROCEEDINGS)],
            ['divorce_custody_evaluation']
        )

    def test_rule_management(self):
        self.assertEqual(len(self.engine.get_task_rules()), 3)
        self.assertTrue(self.engine.update_task_rule('overdue_escalation', is_active=False))
        self.assertEqual(len(self.engine.get_task_rules()), 2)
        self.assertEqual(len(self.engine.get_task_rules(active_only=False)), 3)
        self.assertFalse(self.engine.update_task_rule('missing', priority=2))

        self.assertTrue(self.engine.remove_task_rule('overdue_escalation'))
        self.assertFalse(self.engine.remove_task_rule('overdue_escalation'))
        self.assertTrue(self.engine.remove_task_template('divorce_mediation'))

    def test_template_update(self):
        self.assertTrue(self.engine.update_task_template('divorce_mediation', default_priority=TaskPriority.URGENT))
        self.assertFalse(self.engine.update_task_template('missing', auto_create=False))

        template = self.engine.get_task_templates(CaseType.DIVORCE_FAMILY)[0]
        self.assertEqual(template.id, 'divorce_mediation')
        self.assertEqual(template.default_priority, TaskPriority.URGENT)
