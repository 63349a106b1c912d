"""
Case phase state machine.

Decides whether a case may move from one phase to another. Legality
depends on the adjacency table (base edges plus per case type edges),
the role of the user asking, required metadata fields and edge
conditions. Rejections are returned as a ``TransitionResult`` with
errors; nothing here raises for an illegal move.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from apps.users.choices import UserRole
from apps.workflows.conditions import Condition, ConditionOperator, condition_evaluator
from .choices import CasePhase, CaseStatus, CaseType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StateTransition:
    """A directed edge between two phases."""

    from_phase: str
    to_phase: str
    allowed_roles: Tuple[str, ...] = (UserRole.ATTORNEY, UserRole.ADMIN)
    conditions: Tuple[Condition, ...] = ()
    required_fields: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'from': self.from_phase,
            'to': self.to_phase,
            'allowedRoles': list(self.allowed_roles),
            'conditions': [condition.describe() for condition in self.conditions],
            'requiredFields': list(self.required_fields),
        }


@dataclass
class CaseState:
    phase: str
    case_type: str
    status: str = CaseStatus.ACTIVE
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class TransitionResult:
    success: bool
    message: str = ''
    errors: List[str] = field(default_factory=list)


def _flag(name: str) -> Condition:
    return Condition(field=name, operator=ConditionOperator.EQUALS, value=True)


def _present(name: str) -> Condition:
    return Condition(field=name, operator=ConditionOperator.EXISTS)


BASE_TRANSITIONS: Dict[str, List[StateTransition]] = {
    CasePhase.INTAKE_RISK_ASSESSMENT: [
        StateTransition(
            from_phase=CasePhase.INTAKE_RISK_ASSESSMENT,
            to_phase=CasePhase.PRE_PROCEEDING_PREPARATION,
            conditions=(_flag('riskAssessmentCompleted'),),
            required_fields=('clientInformation', 'caseDescription', 'initialEvidence'),
        ),
        StateTransition(
            from_phase=CasePhase.INTAKE_RISK_ASSESSMENT,
            to_phase=CasePhase.CLOSURE_REVIEW_ARCHIVING,
            conditions=(_flag('caseRejected'),),
        ),
    ],
    CasePhase.PRE_PROCEEDING_PREPARATION: [
        StateTransition(
            from_phase=CasePhase.PRE_PROCEEDING_PREPARATION,
            to_phase=CasePhase.FORMAL_PROCEEDINGS,
            conditions=(_flag('preparationCompleted'),),
            required_fields=('legalResearch', 'documentPreparation', 'witnessPreparation'),
        ),
        StateTransition(
            from_phase=CasePhase.PRE_PROCEEDING_PREPARATION,
            to_phase=CasePhase.CLOSURE_REVIEW_ARCHIVING,
            conditions=(_flag('caseSettled'),),
        ),
    ],
    CasePhase.FORMAL_PROCEEDINGS: [
        StateTransition(
            from_phase=CasePhase.FORMAL_PROCEEDINGS,
            to_phase=CasePhase.RESOLUTION_POST_PROCEEDING,
            conditions=(_flag('proceedingsCompleted'),),
        ),
        StateTransition(
            from_phase=CasePhase.FORMAL_PROCEEDINGS,
            to_phase=CasePhase.CLOSURE_REVIEW_ARCHIVING,
            conditions=(_flag('caseDismissed'),),
        ),
    ],
    CasePhase.RESOLUTION_POST_PROCEEDING: [
        StateTransition(
            from_phase=CasePhase.RESOLUTION_POST_PROCEEDING,
            to_phase=CasePhase.CLOSURE_REVIEW_ARCHIVING,
            conditions=(_flag('resolutionCompleted'),),
            required_fields=('finalJudgment', 'settlementAgreement', 'appealPeriod'),
        ),
    ],
    CasePhase.CLOSURE_REVIEW_ARCHIVING: [],
}


CASE_TYPE_TRANSITIONS: Dict[str, List[StateTransition]] = {
    CaseType.CRIMINAL_DEFENSE: [
        StateTransition(
            from_phase=CasePhase.INTAKE_RISK_ASSESSMENT,
            to_phase=CasePhase.PRE_PROCEEDING_PREPARATION,
            conditions=(_flag('bailHearingScheduled'), _flag('evidenceSecured')),
            required_fields=('arrestRecords', 'policeReports', 'witnessStatements'),
        ),
    ],
    CaseType.DIVORCE_FAMILY: [
        StateTransition(
            from_phase=CasePhase.PRE_PROCEEDING_PREPARATION,
            to_phase=CasePhase.FORMAL_PROCEEDINGS,
            conditions=(_flag('mediationAttempted'), _present('custodyAgreement')),
            required_fields=('marriageCertificate', 'financialDisclosures', 'childCustodyPlan'),
        ),
    ],
    CaseType.MEDICAL_MALPRACTICE: [
        StateTransition(
            from_phase=CasePhase.INTAKE_RISK_ASSESSMENT,
            to_phase=CasePhase.PRE_PROCEEDING_PREPARATION,
            conditions=(_flag('medicalRecordsReviewed'), _flag('expertConsultationCompleted')),
            required_fields=('medicalRecords', 'expertReports', 'hospitalDocumentation'),
        ),
    ],
    CaseType.CONTRACT_DISPUTE: [
        StateTransition(
            from_phase=CasePhase.PRE_PROCEEDING_PREPARATION,
            to_phase=CasePhase.FORMAL_PROCEEDINGS,
            conditions=(_flag('contractAnalyzed'), _flag('breachDocumented')),
            required_fields=('contractDocument', 'breachEvidence', 'correspondence'),
        ),
    ],
    CaseType.LABOR_DISPUTE: [
        StateTransition(
            from_phase=CasePhase.PRE_PROCEEDING_PREPARATION,
            to_phase=CasePhase.FORMAL_PROCEEDINGS,
            conditions=(_flag('laborBoardNotified'), _flag('employmentHistoryVerified')),
            required_fields=('employmentContract', 'payrollRecords', 'grievanceDocumentation'),
        ),
    ],
    CaseType.INHERITANCE_DISPUTE: [
        StateTransition(
            from_phase=CasePhase.INTAKE_RISK_ASSESSMENT,
            to_phase=CasePhase.PRE_PROCEEDING_PREPARATION,
            conditions=(_present('willLocated'), _flag('heirsIdentified')),
            required_fields=('deathCertificate', 'willDocument', 'probateCourtFiling'),
        ),
    ],
    CaseType.ADMINISTRATIVE_CASE: [
        StateTransition(
            from_phase=CasePhase.FORMAL_PROCEEDINGS,
            to_phase=CasePhase.RESOLUTION_POST_PROCEEDING,
            conditions=(_flag('administrativeHearingCompleted'), _flag('evidenceSubmitted')),
            required_fields=('agencyDecision', 'appealDocumentation', 'complianceReport'),
        ),
    ],
    CaseType.DEMOLITION_CASE: [
        StateTransition(
            from_phase=CasePhase.PRE_PROCEEDING_PREPARATION,
            to_phase=CasePhase.FORMAL_PROCEEDINGS,
            conditions=(_flag('propertyInspectionCompleted'), _flag('noticesServed')),
            required_fields=('propertySurvey', 'demolitionPermit', 'environmentalAssessment'),
        ),
    ],
    CaseType.SPECIAL_MATTERS: [
        StateTransition(
            from_phase=CasePhase.INTAKE_RISK_ASSESSMENT,
            to_phase=CasePhase.PRE_PROCEEDING_PREPARATION,
            conditions=(_flag('specializedAssessmentCompleted'), _flag('expertConsultationScheduled')),
            required_fields=('caseAssessment', 'expertReferral', 'specializedDocumentation'),
        ),
    ],
}


class CaseStateMachine:
    """
    Phase transition authority for cases.

    Base edges are consulted before case-type edges leaving the same
    phase; the first edge reaching the target phase is the one checked.
    """

    def __init__(self, base_transitions=None, case_type_transitions=None):
        self._transitions = {
            phase: list(edges)
            for phase, edges in (base_transitions or BASE_TRANSITIONS).items()
        }
        self._case_type_transitions = {
            case_type: list(edges)
            for case_type, edges in (case_type_transitions or CASE_TYPE_TRANSITIONS).items()
        }

    def _candidate_edges(self, phase: str, case_type: Optional[str]) -> List[StateTransition]:
        edges = list(self._transitions.get(phase, []))
        edges.extend(
            edge for edge in self._case_type_transitions.get(case_type, [])
            if edge.from_phase == phase
        )
        return edges

    def can_transition(self, current_state: CaseState, target_phase: str, user_role: str,
                       metadata: Optional[Dict[str, Any]] = None) -> TransitionResult:
        """
        Check whether a case may move to ``target_phase``.

        Args:
            current_state: Phase and case type of the case
            target_phase: Requested phase
            user_role: Role of the user asking for the move
            metadata: Case data used for required fields and conditions

        Returns:
            TransitionResult with ``success`` and any errors
        """
        metadata = metadata if metadata is not None else (current_state.metadata or {})
        phase = current_state.phase

        if phase not in self._transitions:
            message = f"Invalid current phase: {phase}"
            return TransitionResult(success=False, message=message, errors=[message])

        edge = next(
            (edge for edge in self._candidate_edges(phase, current_state.case_type)
             if edge.to_phase == target_phase),
            None
        )
        if edge is None:
            return TransitionResult(
                success=False,
                message=f"Cannot transition from {phase} to {target_phase}",
                errors=[f"Invalid transition from {phase} to {target_phase}"],
            )

        if user_role not in edge.allowed_roles:
            return TransitionResult(
                success=False,
                message=f"User role {user_role} is not authorized for this transition",
                errors=["Insufficient permissions for transition"],
            )

        missing_fields = [name for name in edge.required_fields if name not in metadata]
        if missing_fields:
            message = f"Missing required fields: {', '.join(missing_fields)}"
            return TransitionResult(success=False, message=message, errors=[message])

        failed = [
            condition for condition in edge.conditions
            if not condition_evaluator.evaluate(condition, metadata)
        ]
        if failed:
            return TransitionResult(
                success=False,
                message="Transition conditions not met",
                errors=[f"Condition failed: {condition.describe()}" for condition in failed],
            )

        return TransitionResult(
            success=True,
            message=f"Transition from {phase} to {target_phase} is allowed",
        )

    def get_available_transitions(self, current_state: CaseState, user_role: str) -> List[str]:
        """Target phases the role may request from the current phase, without duplicates."""
        targets = []
        for edge in self._candidate_edges(current_state.phase, current_state.case_type):
            if user_role in edge.allowed_roles and edge.to_phase not in targets:
                targets.append(edge.to_phase)
        return targets

    def get_phase_requirements(self, phase: str, case_type: str) -> List[str]:
        """Union of the required fields of every edge leaving ``phase``."""
        requirements = []
        for edge in self._candidate_edges(phase, case_type):
            for name in edge.required_fields:
                if name not in requirements:
                    requirements.append(name)
        return requirements

    def get_case_type_workflow(self, case_type: str) -> List[StateTransition]:
        return list(self._case_type_transitions.get(case_type, []))

    def get_all_transitions(self) -> List[StateTransition]:
        transitions = []
        for edges in self._transitions.values():
            transitions.extend(edges)
        for edges in self._case_type_transitions.values():
            transitions.extend(edges)
        return transitions

    def is_terminal(self, phase: str) -> bool:
        return not self._transitions.get(phase) and phase in CasePhase.get_terminal_phases()


case_state_machine = CaseStateMachine()
