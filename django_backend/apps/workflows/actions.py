"""
Rule actions.

An ``Action`` pairs an ``ActionType`` with a parameter object whose class
is fixed by that type, so handlers read typed attributes instead of
probing a loose dict. ``Action.build`` takes keyword parameters and picks
the parameter class from the type.
"""

import logging
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Optional, Type

from apps.common.exceptions import ValidationException
from apps.common.utils import generate_id

logger = logging.getLogger(__name__)


class ActionType(str, Enum):
    ASSIGN_TASK = "assign_task"
    ESCALATE_TASK = "escalate_task"
    CHANGE_PRIORITY = "change_priority"
    SET_DEADLINE = "set_deadline"
    SEND_NOTIFICATION = "send_notification"
    CREATE_DEPENDENCY = "create_dependency"
    UPDATE_STATUS = "update_status"
    REQUEST_REVIEW = "request_review"
    REASSIGN_TASK = "reassign_task"
    CREATE_TASK = "create_task"


class FailureStrategy(str, Enum):
    """What happens to the remaining actions of a rule when one fails."""

    CONTINUE = "continue"
    STOP = "stop"


class AssignmentStrategy(str, Enum):
    EXPERTISE_BASED = "expertise_based"
    WORKLOAD_BALANCE = "workload_balance"
    PRIORITY_BASED = "priority_based"
    DEFAULT = "default"


class DeadlineStrategy(str, Enum):
    COMPLEXITY_BASED = "complexity_based"
    DEPENDENCY_BASED = "dependency_based"
    DEFAULT = "default"


@dataclass
class AssignTaskParams:
    strategy: str = AssignmentStrategy.DEFAULT
    required_role: Optional[str] = None
    workload_threshold: float = 0.8


@dataclass
class EscalateTaskParams:
    increment_level: int = 1
    notify_supervisor: bool = False


@dataclass
class ChangePriorityParams:
    new_priority: str = ""
    reason: str = ""


@dataclass
class SetDeadlineParams:
    strategy: str = DeadlineStrategy.DEFAULT
    buffer_percentage: float = 0.2
    min_extension_hours: float = 24


@dataclass
class SendNotificationParams:
    channel: str = "in_app"
    recipients: List[str] = field(default_factory=list)
    template: Optional[str] = None
    urgency: str = "medium"
    subject: Optional[str] = None
    message: Optional[str] = None


@dataclass
class CreateDependencyParams:
    dependency_type: str = "blocking"
    depends_on_task_id: Optional[str] = None


@dataclass
class UpdateStatusParams:
    new_status: Optional[str] = None
    activate_dependents: bool = False


@dataclass
class RequestReviewParams:
    review_type: str = "general"
    requested_from: Optional[str] = None
    deadline_offset_hours: float = 24
    auto_approve: bool = False
    checklist: List[str] = field(default_factory=list)


@dataclass
class ReassignTaskParams:
    reason: str = "Automatic reassignment"


@dataclass
class CreateTaskParams:
    source: Optional[str] = None
    use_templates: bool = False
    template: Optional[str] = None
    title: Optional[str] = None
    priority: Optional[str] = None
    assign_to_creator: bool = False
    assign_to_case_attorney: bool = False


ACTION_PARAMETERS: Dict[ActionType, Type] = {
    ActionType.ASSIGN_TASK: AssignTaskParams,
    ActionType.ESCALATE_TASK: EscalateTaskParams,
    ActionType.CHANGE_PRIORITY: ChangePriorityParams,
    ActionType.SET_DEADLINE: SetDeadlineParams,
    ActionType.SEND_NOTIFICATION: SendNotificationParams,
    ActionType.CREATE_DEPENDENCY: CreateDependencyParams,
    ActionType.UPDATE_STATUS: UpdateStatusParams,
    ActionType.REQUEST_REVIEW: RequestReviewParams,
    ActionType.REASSIGN_TASK: ReassignTaskParams,
    ActionType.CREATE_TASK: CreateTaskParams,
}


@dataclass
class Action:
    """One step of a rule."""

    type: ActionType
    params: Any = None
    failure_strategy: FailureStrategy = FailureStrategy.CONTINUE
    delay_hours: float = 0
    id: str = field(default_factory=lambda: generate_id('action'))

    def __post_init__(self):
        try:
            self.type = ActionType(self.type)
        except ValueError:
            raise ValidationException(
                f"Unknown action type: {self.type}",
                details={'errors': [f"Unknown action type: {self.type}"]}
            )

        params_class = ACTION_PARAMETERS[self.type]
        if self.params is None:
            self.params = params_class()
        elif not isinstance(self.params, params_class):
            raise ValidationException(
                f"Action {self.type.value} expects {params_class.__name__}, "
                f"got {type(self.params).__name__}"
            )
        self.failure_strategy = FailureStrategy(self.failure_strategy)

    @classmethod
    def build(cls, action_type, failure_strategy=FailureStrategy.CONTINUE,
              delay_hours: float = 0, **params) -> 'Action':
        """Build an action from keyword parameters for its type."""
        action_type = ActionType(action_type)
        params_class = ACTION_PARAMETERS[action_type]
        try:
            typed_params = params_class(**params)
        except TypeError as e:
            raise ValidationException(
                f"Invalid parameters for action {action_type.value}: {str(e)}",
                details={'errors': [str(e)]}
            )
        return cls(
            type=action_type,
            params=typed_params,
            failure_strategy=failure_strategy,
            delay_hours=delay_hours,
        )

    @property
    def stops_on_failure(self) -> bool:
        return self.failure_strategy == FailureStrategy.STOP

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'type': self.type.value,
            'parameters': asdict(self.params),
            'failureStrategy': self.failure_strategy.value,
            'delayHours': self.delay_hours,
        }


@dataclass
class ActionResult:
    """Outcome of one executed action."""

    action_type: str
    success: bool
    result: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    execution_time: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
