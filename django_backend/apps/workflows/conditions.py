"""
Condition evaluation shared by every rule table.

The case state machine, the workflow engine task rules, the automation
rules and the business rules all describe their guards as lists of
``Condition`` objects. ``ConditionEvaluator`` is the single place that
knows how to resolve a dot-notation field against context data, apply an
operator and fold a list of conditions into a weighted match.

Folding: a condition's ``logical_operator`` links it to the next one.
``OR`` links split the list into groups, ``AND`` binds tighter, and the
list matches when every condition of at least one group matches. The
score is the matched weight over the total weight (0-100) and the
confidence is the fraction of conditions that matched.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from apps.common.utils import coerce_datetime, now

logger = logging.getLogger(__name__)


class ConditionOperator(str, Enum):
    """Operators understood by the evaluator."""

    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    EXISTS = "exists"
    NOT_EXISTS = "not_exists"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    IN = "in"
    NOT_IN = "not_in"
    MATCHES_PATTERN = "matches_pattern"


class LogicalOperator(str, Enum):
    AND = "AND"
    OR = "OR"


# Comparison value that resolves to the evaluation time. A timedelta value
# resolves to the evaluation time plus that offset.
NOW = "now"


@dataclass(frozen=True)
class Condition:
    """A single guard on context data."""

    field: str
    operator: str
    value: Any = None
    weight: float = 1.0
    logical_operator: str = LogicalOperator.AND
    id: Optional[str] = None
    category: Optional[str] = None

    def describe(self) -> str:
        operator = self.operator.value if isinstance(self.operator, Enum) else self.operator
        value = self.value
        if isinstance(value, bool):
            value = str(value).lower()
        elif value is None:
            value = "null"
        return f"{self.field} {operator} {value}"


@dataclass
class ConditionOutcome:
    condition: Condition
    matched: bool
    actual_value: Any = None


@dataclass
class ConditionEvaluation:
    """Result of folding a list of conditions."""

    matched: bool
    score: float
    confidence: float
    matched_count: int = 0
    outcomes: List[ConditionOutcome] = field(default_factory=list)

    @property
    def failed_conditions(self) -> List[Condition]:
        return [outcome.condition for outcome in self.outcomes if not outcome.matched]


class ConditionEvaluator:
    """Pure evaluator: identical inputs always produce identical results."""

    def get_field_value(self, data: Any, path: str) -> Any:
        """
        Resolve a dot-notation path through nested mappings and attributes.

        Missing segments resolve to None.
        """
        current = data
        for key in path.split('.'):
            if current is None:
                return None
            if isinstance(current, Mapping):
                current = current.get(key)
            elif isinstance(current, (list, tuple)) and key.isdigit():
                index = int(key)
                current = current[index] if index < len(current) else None
            else:
                current = getattr(current, key, None)
        return current

    def evaluate(self, condition: Condition, data: Any, reference_time: Optional[datetime] = None) -> bool:
        """Evaluate one condition against context data."""
        actual = self.get_field_value(data, condition.field)
        return self._apply(condition, actual, reference_time)

    def evaluate_all(self, conditions: Sequence[Condition], data: Any,
                     reference_time: Optional[datetime] = None) -> ConditionEvaluation:
        """
        Fold a condition list into a match, a weighted score and a confidence.

        An empty list always matches with full score and confidence.
        """
        if not conditions:
            return ConditionEvaluation(matched=True, score=100.0, confidence=1.0)

        reference_time = reference_time or now()
        outcomes: List[ConditionOutcome] = []
        total_weight = 0.0
        matched_weight = 0.0

        groups: List[List[bool]] = [[]]
        for index, condition in enumerate(conditions):
            actual = self.get_field_value(data, condition.field)
            matched = self._apply(condition, actual, reference_time)
            outcomes.append(ConditionOutcome(condition=condition, matched=matched, actual_value=actual))

            weight = condition.weight if condition.weight is not None else 1.0
            total_weight += weight
            if matched:
                matched_weight += weight

            groups[-1].append(matched)
            is_last = index == len(conditions) - 1
            if not is_last and _is_or(condition.logical_operator):
                groups.append([])

        matched_count = sum(1 for outcome in outcomes if outcome.matched)
        score = (matched_weight / total_weight) * 100 if total_weight > 0 else 0.0

        return ConditionEvaluation(
            matched=any(group and all(group) for group in groups),
            score=round(score, 4),
            confidence=matched_count / len(conditions),
            matched_count=matched_count,
            outcomes=outcomes,
        )

    def _apply(self, condition: Condition, actual: Any, reference_time: Optional[datetime]) -> bool:
        operator = _operator_value(condition.operator)
        expected = condition.value

        try:
            if operator == ConditionOperator.EQUALS:
                return _strict_equals(actual, expected)
            if operator == ConditionOperator.NOT_EQUALS:
                return not _strict_equals(actual, expected)
            if operator == ConditionOperator.CONTAINS:
                if isinstance(actual, str):
                    return isinstance(expected, str) and expected in actual
                if isinstance(actual, (list, tuple, set, frozenset)):
                    return any(_strict_equals(item, expected) for item in actual)
                return False
            if operator == ConditionOperator.EXISTS:
                return actual is not None
            if operator == ConditionOperator.NOT_EXISTS:
                return actual is None
            if operator == ConditionOperator.GREATER_THAN:
                return _compare(actual, expected, reference_time) > 0
            if operator == ConditionOperator.LESS_THAN:
                return _compare(actual, expected, reference_time) < 0
            if operator == ConditionOperator.IN:
                return isinstance(expected, (list, tuple, set, frozenset)) and \
                    any(_strict_equals(actual, item) for item in expected)
            if operator == ConditionOperator.NOT_IN:
                return isinstance(expected, (list, tuple, set, frozenset)) and \
                    not any(_strict_equals(actual, item) for item in expected)
            if operator == ConditionOperator.MATCHES_PATTERN:
                if actual is None or expected is None:
                    return False
                return re.search(str(expected), str(actual)) is not None
        except re.error as exc:
            logger.warning(f"Invalid pattern in condition '{condition.describe()}': {exc}")
            return False
        except _Incomparable:
            return False

        logger.warning(f"Unknown condition operator '{operator}' on field '{condition.field}'")
        return False


class _Incomparable(Exception):
    pass


def _operator_value(operator: Any) -> str:
    return operator.value if isinstance(operator, Enum) else str(operator)


def _is_or(logical_operator: Any) -> bool:
    if logical_operator is None:
        return False
    value = logical_operator.value if isinstance(logical_operator, Enum) else str(logical_operator)
    return value.upper() == LogicalOperator.OR.value


def _strict_equals(actual: Any, expected: Any) -> bool:
    # bool is an int subclass; True must not equal 1.
    if isinstance(actual, bool) or isinstance(expected, bool):
        return isinstance(actual, bool) and isinstance(expected, bool) and actual is expected
    return actual == expected


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _compare(actual: Any, expected: Any, reference_time: Optional[datetime]) -> int:
    if actual is None or expected is None:
        raise _Incomparable()

    if isinstance(expected, timedelta):
        expected = (reference_time or now()) + expected
    elif expected == NOW:
        expected = reference_time or now()

    if _is_number(actual) and _is_number(expected):
        left, right = actual, expected
    elif isinstance(actual, datetime) or isinstance(expected, datetime):
        left, right = coerce_datetime(actual), coerce_datetime(expected)
        if left is None or right is None:
            raise _Incomparable()
    elif isinstance(actual, str) and isinstance(expected, str):
        left, right = actual, expected
    else:
        raise _Incomparable()

    return (left > right) - (left < right)


condition_evaluator = ConditionEvaluator()


def build_conditions(specs: Iterable[Dict[str, Any]]) -> List[Condition]:
    """Build ``Condition`` objects from plain dicts (camelCase or snake_case keys)."""
    conditions = []
    for spec in specs:
        conditions.append(Condition(
            field=spec['field'],
            operator=spec['operator'],
            value=spec.get('value'),
            weight=spec.get('weight', 1.0),
            logical_operator=spec.get('logical_operator', spec.get('logicalOperator', LogicalOperator.AND)),
            id=spec.get('id'),
            category=spec.get('category'),
        ))
    return conditions
