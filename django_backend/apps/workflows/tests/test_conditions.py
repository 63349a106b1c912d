"""
Tests for the shared condition evaluator.
"""

from datetime import timedelta
from unittest.mock import patch

from django.test import SimpleTestCase
from django.utils import timezone
from freezegun import freeze_time

from apps.tasks.choices import TaskPriority
from apps.workflows.conditions import (
    Condition,
    ConditionEvaluator,
    ConditionOperator,
    LogicalOperator,
    build_conditions,
)


class BaseConditionTestCase(SimpleTestCase):

    def setUp(self):
        self.evaluator = ConditionEvaluator()
        self.data = {
            'task': {
                'priority': 'HIGH',
                'status': 'PENDING',
                'escalationLevel': 1,
                'tags': ['court_filing', 'evidence'],
                'assignedTo': None,
                'dueDate': '2024-01-10T09:00:00+00:00',
            },
            'case': {'type': 'CRIMINAL_DEFENSE', 'reference': 'CR-2024-0042'},
            'flag': True,
            'count': 1,
        }


class FieldLookupTestCase(BaseConditionTestCase):

    def test_nested_lookup(self):
        self.assertEqual(self.evaluator.get_field_value(self.data, 'task.priority'), 'HIGH')

    def test_missing_segment_is_none(self):
        self.assertIsNone(self.evaluator.get_field_value(self.data, 'task.missing.deeper'))
        self.assertIsNone(self.evaluator.get_field_value(self.data, 'nothing'))

    def test_list_index(self):
        self.assertEqual(self.evaluator.get_field_value(self.data, 'task.tags.1'), 'evidence')

    def test_attribute_lookup(self):
        class Holder:
            status = 'COMPLETED'

        self.assertEqual(self.evaluator.get_field_value({'task': Holder()}, 'task.status'), 'COMPLETED')


class OperatorTestCase(BaseConditionTestCase):

    def check(self, field, operator, value=None):
        return self.evaluator.evaluate(Condition(field=field, operator=operator, value=value), self.data)

    def test_equals_is_strict(self):
        self.assertTrue(self.check('flag', 'equals', True))
        self.assertFalse(self.check('count', 'equals', True))
        self.assertFalse(self.check('flag', 'equals', 1))
        self.assertTrue(self.check('task.priority', 'equals', TaskPriority.HIGH))

    def test_not_equals(self):
        self.assertTrue(self.check('task.status', 'not_equals', 'COMPLETED'))
        self.assertFalse(self.check('task.status', 'not_equals', 'PENDING'))

    def test_contains_list_and_substring(self):
        self.assertTrue(self.check('task.tags', 'contains', 'evidence'))
        self.assertFalse(self.check('task.tags', 'contains', 'billing'))
        self.assertTrue(self.check('case.reference', 'contains', '2024'))
        self.assertFalse(self.check('count', 'contains', 1))

    def test_exists_and_not_exists(self):
        self.assertTrue(self.check('task.priority', 'exists'))
        self.assertFalse(self.check('task.assignedTo', 'exists'))
        self.assertTrue(self.check('task.assignedTo', 'not_exists'))
        self.assertTrue(self.check('task.reviewer', 'not_exists'))

    def test_numeric_comparisons(self):
        self.assertTrue(self.check('task.escalationLevel', 'less_than', 3))
        self.assertFalse(self.check('task.escalationLevel', 'greater_than', 3))

    def test_incomparable_values_do_not_match(self):
        self.assertFalse(self.check('task.priority', 'greater_than', 3))
        self.assertFalse(self.check('task.missing', 'less_than', 3))

    @freeze_time("2024-01-15 12:00:00")
    def test_now_resolves_to_current_time(self):
        self.assertTrue(self.check('task.dueDate', 'less_than', 'now'))
        self.data['task']['dueDate'] = timezone.now() + timedelta(days=1)
        self.assertFalse(self.check('task.dueDate', 'less_than', 'now'))
        self.assertTrue(self.check('task.dueDate', 'greater_than', 'now'))

    @freeze_time("2024-01-15 12:00:00")
    def test_timedelta_is_relative_to_now(self):
        self.data['task']['dueDate'] = timezone.now() + timedelta(days=5)

        self.assertTrue(self.check('task.dueDate', 'less_than', timedelta(days=7)))
        self.assertFalse(self.check('task.dueDate', 'less_than', timedelta(days=3)))

    def test_in_requires_a_list(self):
        self.assertTrue(self.check('task.priority', 'in', ['HIGH', 'URGENT']))
        self.assertFalse(self.check('task.priority', 'in', 'HIGH'))
        self.assertTrue(self.check('task.priority', 'not_in', ['LOW', 'MEDIUM']))
        self.assertFalse(self.check('task.priority', 'not_in', 'LOW'))

    def test_matches_pattern(self):
        self.assertTrue(self.check('case.reference', 'matches_pattern', r'^CR-\d{4}-\d+$'))
        self.assertFalse(self.check('case.reference', 'matches_pattern', r'^DV-'))

    @patch('apps.workflows.conditions.logger')
    def test_invalid_pattern_does_not_match(self, mock_logger):
        self.assertFalse(self.check('case.reference', 'matches_pattern', '[unclosed'))
        mock_logger.warning.assert_called_once()

    @patch('apps.workflows.conditions.logger')
    def test_unknown_operator_does_not_match(self, mock_logger):
        self.assertFalse(self.check('task.priority', 'sounds_like', 'HIGH'))
        mock_logger.warning.assert_called_once()


class FoldingTestCase(BaseConditionTestCase):

    def test_empty_list_matches_fully(self):
        evaluation = self.evaluator.evaluate_all([], self.data)

        self.assertTrue(evaluation.matched)
        self.assertEqual(evaluation.score, 100.0)
        self.assertEqual(evaluation.confidence, 1.0)

    def test_and_requires_every_condition(self):
        conditions = [
            Condition('task.priority', ConditionOperator.EQUALS, 'HIGH', weight=0.75),
            Condition('task.status', ConditionOperator.EQUALS, 'COMPLETED', weight=0.25),
        ]
        evaluation = self.evaluator.evaluate_all(conditions, self.data)

        self.assertFalse(evaluation.matched)
        self.assertEqual(evaluation.score, 75.0)
        self.assertEqual(evaluation.confidence, 0.5)
        self.assertEqual(evaluation.failed_conditions, [conditions[1]])

    def test_or_matches_when_second_condition_is_true(self):
        conditions = [
            Condition('task.status', 'equals', 'COMPLETED', logical_operator=LogicalOperator.OR),
            Condition('task.priority', 'equals', 'HIGH'),
        ]
        evaluation = self.evaluator.evaluate_all(conditions, self.data)

        self.assertTrue(evaluation.matched)
        self.assertEqual(evaluation.confidence, 0.5)
        self.assertEqual(evaluation.matched_count, 1)

    def test_and_binds_tighter_than_or(self):
        # (status == COMPLETED and priority == HIGH) or case.type == CRIMINAL_DEFENSE
        conditions = [
            Condition('task.status', 'equals', 'COMPLETED'),
            Condition('task.priority', 'equals', 'HIGH', logical_operator='OR'),
            Condition('case.type', 'equals', 'CRIMINAL_DEFENSE'),
        ]
        self.assertTrue(self.evaluator.evaluate_all(conditions, self.data).matched)

        # status == COMPLETED or (priority == LOW and case.type == CRIMINAL_DEFENSE)
        conditions = [
            Condition('task.status', 'equals', 'COMPLETED', logical_operator='OR'),
            Condition('task.priority', 'equals', 'LOW'),
            Condition('case.type', 'equals', 'CRIMINAL_DEFENSE'),
        ]
        self.assertFalse(self.evaluator.evaluate_all(conditions, self.data).matched)

    def test_trailing_or_is_ignored(self):
        conditions = [
            Condition('task.priority', 'equals', 'HIGH'),
            Condition('task.status', 'equals', 'COMPLETED', logical_operator='OR'),
        ]
        self.assertFalse(self.evaluator.evaluate_all(conditions, self.data).matched)

    def test_evaluation_is_deterministic(self):
        conditions = build_conditions([
            {'field': 'task.priority', 'operator': 'in', 'value': ['HIGH', 'URGENT'], 'weight': 0.9},
            {'field': 'task.assignedTo', 'operator': 'not_exists', 'weight': 0.8, 'logicalOperator': 'OR'},
            {'field': 'task.escalationLevel', 'operator': 'greater_than', 'value': 2, 'weight': 0.3},
        ])
        first = self.evaluator.evaluate_all(conditions, self.data)

        for _ in range(5):
            again = self.evaluator.evaluate_all(conditions, self.data)
            self.assertEqual(again.matched, first.matched)
            self.assertEqual(again.score, first.score)
            self.assertEqual(again.confidence, first.confidence)


class ConditionDescribeTestCase(SimpleTestCase):

    def test_describe_renders_booleans_and_null(self):
        self.assertEqual(
            Condition('riskAssessmentCompleted', 'equals', True).describe(),
            'riskAssessmentCompleted equals true'
        )
        self.assertEqual(
            Condition('custodyAgreement', ConditionOperator.EXISTS).describe(),
            'custodyAgreement exists null'
        )
