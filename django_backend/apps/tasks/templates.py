"""
Task template engine.

Templates describe the tasks a firm creates over and over for a case
type and phase: a title and description with ``{variable}`` placeholders,
default priority and assignee role, typed variables with validation and
an optional list of ordered steps. Instances track one use of a template
on a case, step by step.
"""

import copy
import logging
import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from apps.cases.choices import CasePhase, CaseType
from apps.common.exceptions import (
    InvalidOperationException,
    ResourceNotFoundException,
    TemplateException,
    ValidationException,
)
from apps.common.utils import coerce_datetime, generate_id, now
from apps.users.choices import UserRole
from apps.workflows.conditions import condition_evaluator
from apps.workflows.stores import InMemoryStore, TemplateStore
from .choices import (
    TaskPriority,
    TemplateCategory,
    TemplateInstanceStatus,
    TemplateStepStatus,
    TemplateVariableType,
)

logger = logging.getLogger(__name__)

PLACEHOLDER_PATTERN = re.compile(r'\{([^}]+)\}')


def interpolate_template(text: str, data: Dict[str, Any]) -> str:
    """
    Replace ``{key}`` placeholders with values from ``data``.

    Keys may use dot notation. Placeholders with no value are left as they
    are so a missing variable stays visible in the generated text.
    """
    def substitute(match):
        value = condition_evaluator.get_field_value(data, match.group(1))
        return match.group(0) if value is None else str(value)

    return PLACEHOLDER_PATTERN.sub(substitute, text)


@dataclass
class TemplateVariable:
    name: str
    type: str = TemplateVariableType.STRING
    description: str = ''
    required: bool = False
    default: Any = None
    options: List[str] = field(default_factory=list)
    pattern: Optional[str] = None
    min_value: Optional[float] = None
    max_value: Optional[float] = None
    custom: Optional[Callable[[Any], bool]] = None


@dataclass
class TemplateValidationRule:
    """
    Template-level check on the variable bag.

    ``type`` is one of required, pattern, min, max or custom. A custom
    ``condition`` is called with the field value and the whole bag.
    """

    field: str
    type: str
    message: str
    condition: Any = True


@dataclass
class TemplateStep:
    id: str
    name: str
    description: str = ''
    order: int = 0
    required: bool = True
    assignee_role: Optional[str] = None
    due_date_offset: Optional[int] = None
    dependencies: List[str] = field(default_factory=list)
    outputs: List[str] = field(default_factory=list)


@dataclass
class TemplateTrigger:
    type: str
    condition: Dict[str, Any] = field(default_factory=dict)
    delay_hours: float = 0


@dataclass
class TaskTemplate:
    id: str
    name: str
    case_type: str
    phases: List[str]
    title_template: str
    description: str = ''
    category: str = TemplateCategory.ADMINISTRATIVE
    description_template: Optional[str] = None
    instructions: Optional[str] = None
    default_priority: str = TaskPriority.MEDIUM
    default_assignee_role: Optional[str] = None
    estimated_hours: Optional[float] = None
    due_date_offset: Optional[int] = None
    variables: List[TemplateVariable] = field(default_factory=list)
    validation_rules: List[TemplateValidationRule] = field(default_factory=list)
    steps: List[TemplateStep] = field(default_factory=list)
    triggers: List[TemplateTrigger] = field(default_factory=list)
    prerequisites: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    auto_create: bool = False
    auto_assign: bool = False
    is_active: bool = True
    is_system_template: bool = False
    version: str = '1.0.0'
    created_by: str = 'system'
    created_at: datetime = field(default_factory=now)
    updated_at: datetime = field(default_factory=now)
    last_used: Optional[datetime] = None
    usage_count: int = 0


@dataclass
class TemplateSearchCriteria:
    case_type: Optional[str] = None
    phase: Optional[str] = None
    category: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    auto_create: Optional[bool] = None
    is_active: Optional[bool] = None
    created_by: Optional[str] = None
    search_query: Optional[str] = None
    limit: Optional[int] = None
    offset: Optional[int] = None


@dataclass
class TaskData:
    """Task fields generated from a template."""

    template_id: str
    case_id: str
    title: str
    priority: str
    description: Optional[str] = None
    estimated_hours: Optional[float] = None
    due_date: Optional[datetime] = None
    assignee_role: Optional[str] = None
    steps: List[TemplateStep] = field(default_factory=list)


@dataclass
class StepInstance:
    step_id: str
    name: str
    required: bool = True
    dependencies: List[str] = field(default_factory=list)
    status: str = TemplateStepStatus.PENDING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


@dataclass
class TemplateInstance:
    id: str
    template_id: str
    case_id: str
    variables: Dict[str, Any]
    task_id: Optional[str] = None
    steps: List[StepInstance] = field(default_factory=list)
    current_step: Optional[str] = None
    status: str = TemplateInstanceStatus.ACTIVE
    progress: float = 0.0
    created_by: Optional[str] = None
    started_at: datetime = field(default_factory=now)
    completed_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def get_step(self, step_id: str) -> Optional[StepInstance]:
        return next((step for step in self.steps if step.step_id == step_id), None)


def _custody_arrangement_required(value, variables) -> bool:
    return not value or bool(variables.get('childCustodyArrangement'))


DEFAULT_TEMPLATES = [
    TaskTemplate(
        id='criminal_intake_assessment',
        name='Criminal Case Intake Assessment',
        description='Comprehensive intake assessment for criminal defense cases',
        case_type=CaseType.CRIMINAL_DEFENSE,
        phases=[CasePhase.INTAKE_RISK_ASSESSMENT],
        category=TemplateCategory.RESEARCH,
        title_template='Complete Intake Assessment - {caseTitle}',
        description_template='Conduct thorough intake assessment for criminal case {caseTitle}',
        instructions='Review police reports, interview client, assess evidence, determine defense strategy',
        default_priority=TaskPriority.HIGH,
        default_assignee_role=UserRole.ATTORNEY,
        estimated_hours=8,
        due_date_offset=3,
        variables=[
            TemplateVariable('clientStatement', required=True, min_value=100, max_value=5000,
                             description="Client's statement about the incident"),
            TemplateVariable('arrestDate', TemplateVariableType.DATE, required=True),
            TemplateVariable('charges', required=True),
            TemplateVariable('bailAmount', TemplateVariableType.NUMBER, min_value=0),
            TemplateVariable('evidenceStrength', TemplateVariableType.SELECT, required=True,
                             options=['Strong', 'Moderate', 'Weak', 'Insufficient']),
        ],
        validation_rules=[
            TemplateValidationRule('clientStatement', 'required', 'Client statement is required'),
            TemplateValidationRule('arrestDate', 'required', 'Arrest date is required'),
        ],
        triggers=[TemplateTrigger('phase_change', {'phase': CasePhase.INTAKE_RISK_ASSESSMENT})],
        tags=['criminal', 'intake', 'assessment'],
        auto_create=True,
        auto_assign=True,
        is_system_template=True,
    ),
    TaskTemplate(
        id='bail_hearing_preparation',
        name='Bail Hearing Preparation',
        description='Complete preparation for bail hearing including motions and arguments',
        case_type=CaseType.CRIMINAL_DEFENSE,
        phases=[CasePhase.PRE_PROCEEDING_PREPARATION],
        category=TemplateCategory.HEARING_PREPARATION,
        title_template='Prepare Bail Hearing - {clientName}',
        description_template='Prepare and file bail application for {clientName}',
        instructions='Prepare bail application, gather character references, draft legal arguments',
        default_priority=TaskPriority.URGENT,
        default_assignee_role=UserRole.ATTORNEY,
        estimated_hours=6,
        due_date_offset=1,
        variables=[
            TemplateVariable('clientName', required=True),
            TemplateVariable('hearingDate', TemplateVariableType.DATE, required=True),
            TemplateVariable('bailAmountRequested', TemplateVariableType.NUMBER, required=True, min_value=0),
            TemplateVariable('characterReferences'),
        ],
        steps=[
            TemplateStep('gather_documents', 'Gather Required Documents', order=1, due_date_offset=0,
                         outputs=['policeReport', 'clientAffidavit', 'characterReferences']),
            TemplateStep('prepare_application', 'Prepare Bail Application', order=2,
                         dependencies=['gather_documents'], outputs=['bailApplication']),
            TemplateStep('file_application', 'File Bail Application', order=3,
                         dependencies=['prepare_application'], outputs=['filedApplication', 'proofOfService']),
        ],
        triggers=[TemplateTrigger('phase_change', {'phase': CasePhase.PRE_PROCEEDING_PREPARATION})],
        prerequisites=['criminal_intake_assessment'],
        tags=['criminal', 'bail', 'hearing', 'urgent'],
        auto_create=True,
        auto_assign=True,
        is_system_template=True,
    ),
    TaskTemplate(
        id='divorce_filing',
        name='Divorce Petition Filing',
        description='Prepare and file divorce petition with all required documentation',
        case_type=CaseType.DIVORCE_FAMILY,
        phases=[CasePhase.PRE_PROCEEDING_PREPARATION],
        category=TemplateCategory.COURT_FILING,
        title_template='File Divorce Petition - {clientName}',
        description_template='Prepare and file divorce petition for {clientName}',
        instructions='Draft petition, prepare financial disclosures, file with court',
        default_priority=TaskPriority.MEDIUM,
        default_assignee_role=UserRole.ATTORNEY,
        estimated_hours=10,
        due_date_offset=7,
        variables=[
            TemplateVariable('clientName', required=True),
            TemplateVariable('spouseName', required=True),
            TemplateVariable('marriageDate', TemplateVariableType.DATE, required=True),
            TemplateVariable('separationDate', TemplateVariableType.DATE, required=True),
            TemplateVariable('hasChildren', TemplateVariableType.BOOLEAN, required=True),
            TemplateVariable('childCustodyArrangement', TemplateVariableType.SELECT, options=[
                'Sole custody to client', 'Sole custody to spouse', 'Joint custody', 'To be determined',
            ]),
        ],
        validation_rules=[
            TemplateValidationRule(
                'hasChildren', 'custom',
                'Child custody arrangement is required when children are involved',
                condition=_custody_arrangement_required,
            ),
        ],
        triggers=[TemplateTrigger('phase_change', {'phase': CasePhase.PRE_PROCEEDING_PREPARATION})],
        tags=['divorce', 'family', 'filing', 'petition'],
        auto_create=True,
        auto_assign=True,
        is_system_template=True,
    ),
    TaskTemplate(
        id='medical_record_review',
        name='Medical Record Review and Analysis',
        description='Comprehensive review of medical records to identify potential malpractice',
        case_type=CaseType.MEDICAL_MALPRACTICE,
        phases=[CasePhase.INTAKE_RISK_ASSESSMENT],
        category=TemplateCategory.RESEARCH,
        title_template='Review Medical Records - {caseTitle}',
        description_template='Analyze medical records for {patientName} to identify standard of care violations',
        instructions='Review all medical records, identify deviations from standard of care, consult with medical experts',
        default_priority=TaskPriority.HIGH,
        default_assignee_role=UserRole.ATTORNEY,
        estimated_hours=15,
        due_date_offset=10,
        variables=[
            TemplateVariable('patientName', required=True),
            TemplateVariable('medicalFacility', required=True),
            TemplateVariable('treatmentDates', required=True),
            TemplateVariable('allegedMalpractice', required=True),
            TemplateVariable('expertConsultationRequired', TemplateVariableType.BOOLEAN, required=True, default=True),
        ],
        steps=[
            TemplateStep('collect_records', 'Collect Medical Records', order=1, due_date_offset=3,
                         outputs=['medicalRecords']),
            TemplateStep('review_records', 'Review Medical Records', order=2,
                         dependencies=['collect_records'], outputs=['recordReviewNotes']),
            TemplateStep('consult_expert', 'Consult Medical Expert', order=3,
                         dependencies=['review_records'], outputs=['expertReport']),
        ],
        triggers=[TemplateTrigger('phase_change', {'phase': CasePhase.INTAKE_RISK_ASSESSMENT})],
        tags=['medical', 'malpractice', 'records', 'expert'],
        auto_create=True,
        auto_assign=True,
        is_system_template=True,
    ),
    TaskTemplate(
        id='contract_analysis',
        name='Contract Analysis and Breach Assessment',
        description='Analyze contract and assess potential breach claims',
        case_type=CaseType.CONTRACT_DISPUTE,
        phases=[CasePhase.INTAKE_RISK_ASSESSMENT],
        category=TemplateCategory.RESEARCH,
        title_template='Analyze Contract - {caseTitle}',
        description_template='Review contract and assess breach claims for {clientName}',
        instructions='Analyze contract terms, identify potential breaches, assess damages',
        default_priority=TaskPriority.MEDIUM,
        default_assignee_role=UserRole.ATTORNEY,
        estimated_hours=8,
        due_date_offset=5,
        variables=[
            TemplateVariable('contractType', TemplateVariableType.SELECT, required=True,
                             options=['Employment', 'Service', 'Sales', 'Lease', 'Partnership', 'Other']),
            TemplateVariable('contractDate', TemplateVariableType.DATE, required=True),
            TemplateVariable('breachDescription', required=True),
            TemplateVariable('damagesSought', TemplateVariableType.NUMBER, min_value=0),
        ],
        triggers=[TemplateTrigger('phase_change', {'phase': CasePhase.INTAKE_RISK_ASSESSMENT})],
        tags=['contract', 'breach', 'analysis', 'dispute'],
        auto_create=True,
        auto_assign=True,
        is_system_template=True,
    ),
]


class TaskTemplateEngine:
    """
    Template catalog and instance tracking.

    Lookups return None for unknown ids; structural problems raise
    ``ValidationException`` carrying every error in ``details['errors']``.
    """

    def __init__(self, template_store: Optional[TemplateStore] = None,
                 instance_store: Optional[TemplateStore] = None, load_defaults: bool = True):
        self.templates = template_store if template_store is not None else InMemoryStore()
        self.instances = instance_store if instance_store is not None else InMemoryStore()
        if load_defaults:
            for template in DEFAULT_TEMPLATES:
                self.add_template(copy.deepcopy(template))

    # Catalog

    def add_template(self, template: TaskTemplate) -> TaskTemplate:
        errors = self.validate_template(template)
        if errors:
            raise ValidationException(
                f"Invalid template {template.id}: {'; '.join(errors)}",
                details={'errors': errors, 'template_id': template.id}
            )
        self.templates.save(template)
        logger.debug(f"Registered task template {template.id}")
        return template

    def get_template(self, template_id: str) -> Optional[TaskTemplate]:
        return self.templates.get(template_id)

    def get_templates(self, criteria: Optional[TemplateSearchCriteria] = None) -> List[TaskTemplate]:
        """
        Search the catalog.

        Results are ordered by usage count, most used first, then paginated
        with ``offset``/``limit``.
        """
        criteria = criteria or TemplateSearchCriteria()
        templates = self.templates.all()

        if criteria.case_type:
            templates = [t for t in templates if t.case_type == criteria.case_type]
        if criteria.phase:
            templates = [t for t in templates if criteria.phase in t.phases]
        if criteria.category:
            templates = [t for t in templates if t.category == criteria.category]
        if criteria.tags:
            templates = [t for t in templates if any(tag in t.tags for tag in criteria.tags)]
        if criteria.auto_create is not None:
            templates = [t for t in templates if t.auto_create == criteria.auto_create]
        if criteria.is_active is not None:
            templates = [t for t in templates if t.is_active == criteria.is_active]
        if criteria.created_by:
            templates = [t for t in templates if t.created_by == criteria.created_by]
        if criteria.search_query:
            query = criteria.search_query.lower()
            templates = [
                t for t in templates
                if query in t.name.lower()
                or query in t.description.lower()
                or any(query in tag.lower() for tag in t.tags)
            ]

        templates.sort(key=lambda t: t.usage_count, reverse=True)

        if criteria.offset is not None or criteria.limit is not None:
            start = criteria.offset or 0
            end = start + criteria.limit if criteria.limit else None
            templates = templates[start:end]

        return templates

    def get_templates_by_case_type(self, case_type: str) -> List[TaskTemplate]:
        return self.get_templates(TemplateSearchCriteria(case_type=case_type, is_active=True))

    def get_templates_by_phase(self, phase: str) -> List[TaskTemplate]:
        return self.get_templates(TemplateSearchCriteria(phase=phase, is_active=True))

    def get_auto_create_templates(self, case_type: str, phase: str) -> List[TaskTemplate]:
        """Active templates that create tasks on their own for this case type and phase."""
        return self.get_templates(TemplateSearchCriteria(
            case_type=case_type, phase=phase, is_active=True, auto_create=True
        ))

    def update_template(self, template_id: str, **updates) -> Optional[TaskTemplate]:
        """
        Apply field updates to a template.

        Returns None for an unknown template. The updated template is
        validated before it replaces the stored one.
        """
        template = self.templates.get(template_id)
        if template is None:
            return None

        updates.pop('id', None)
        try:
            updated = replace(template, **updates)
        except TypeError as e:
            raise ValidationException(f"Invalid template update: {str(e)}", details={'errors': [str(e)]})

        errors = self.validate_template(updated)
        if errors:
            raise ValidationException(
                f"Invalid template {template_id}: {'; '.join(errors)}",
                details={'errors': errors, 'template_id': template_id}
            )
        updated.updated_at = now()
        self.templates.save(updated)
        return updated

    def delete_template(self, template_id: str) -> bool:
        return self.templates.delete(template_id)

    def activate_template(self, template_id: str) -> bool:
        return self._set_active(template_id, True)

    def deactivate_template(self, template_id: str) -> bool:
        return self._set_active(template_id, False)

    def _set_active(self, template_id: str, active: bool) -> bool:
        template = self.templates.get(template_id)
        if template is None:
            return False
        template.is_active = active
        template.updated_at = now()
        return True

    def duplicate_template(self, template_id: str, new_id: Optional[str] = None) -> Optional[TaskTemplate]:
        template = self.templates.get(template_id)
        if template is None:
            return None

        timestamp = now()
        duplicate = replace(
            copy.deepcopy(template),
            id=new_id or f"{template.id}_copy_{int(timestamp.timestamp() * 1000)}",
            name=f"{template.name} (Copy)",
            usage_count=0,
            last_used=None,
            is_system_template=False,
            created_at=timestamp,
            updated_at=timestamp,
        )
        return self.add_template(duplicate)

    def validate_template(self, template: TaskTemplate) -> List[str]:
        """Structural checks on a template; returns every problem found."""
        errors = []

        if not template.name or not template.name.strip():
            errors.append('Template name is required')
        if not template.title_template or not template.title_template.strip():
            errors.append('Title template is required')
        if not template.case_type:
            errors.append('Case type is required')
        if not template.phases:
            errors.append('At least one applicable phase is required')

        variable_names = set()
        for variable in template.variables:
            if not variable.name or not variable.name.strip():
                errors.append('Variable name is required')
            elif variable.name in variable_names:
                errors.append(f"Duplicate variable name: {variable.name}")
            variable_names.add(variable.name)

            if variable.type in (TemplateVariableType.SELECT, TemplateVariableType.MULTISELECT) \
                    and not variable.options:
                errors.append(f"Options are required for select variable: {variable.name}")

            if variable.pattern:
                try:
                    re.compile(variable.pattern)
                except re.error as e:
                    errors.append(f"Invalid pattern for variable {variable.name}: {str(e)}")

        step_ids = set()
        for step in template.steps:
            if step.id in step_ids:
                errors.append(f"Duplicate step ID: {step.id}")
            step_ids.add(step.id)

        for step in template.steps:
            for dependency in step.dependencies:
                if dependency not in step_ids:
                    errors.append(f"Step {step.id} depends on non-existent step: {dependency}")
                elif dependency == step.id:
                    errors.append(f"Step {step.id} cannot depend on itself")

        return errors

    # Variables

    def resolve_variables(self, template: TaskTemplate, variables: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """Variables with template defaults filled in for missing names."""
        resolved = dict(variables or {})
        for variable in template.variables:
            if variable.name not in resolved and variable.default is not None:
                resolved[variable.name] = variable.default
        return resolved

    def validate_template_variables(self, template: TaskTemplate, variables: Dict[str, Any]) -> List[str]:
        """
        Validate a variable bag against a template.

        Runs the required check, then per-variable type and range checks,
        then template-level rules. Every error is collected.

        Returns:
            List of error messages, empty when the bag is valid
        """
        values = self.resolve_variables(template, variables)
        errors = []

        for variable in template.variables:
            if variable.required and variable.name not in values:
                errors.append(f"{variable.name} is required")

        for variable in template.variables:
            if variable.name not in values or values[variable.name] is None:
                continue
            errors.extend(self._validate_variable(variable, values[variable.name]))

        for rule in template.validation_rules:
            try:
                passed = self._check_rule(rule, values)
            except Exception as e:
                logger.warning(f"Template rule {rule.type} on {rule.field} raised: {str(e)}")
                passed = False
            if not passed:
                errors.append(rule.message)

        return errors

    def _validate_variable(self, variable: TemplateVariable, value: Any) -> List[str]:
        errors = []
        name = variable.name
        variable_type = variable.type

        if variable_type == TemplateVariableType.NUMBER:
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                return [f"{name} must be a number"]
        elif variable_type == TemplateVariableType.BOOLEAN:
            if not isinstance(value, bool):
                return [f"{name} must be a boolean"]
        elif variable_type == TemplateVariableType.DATE:
            if coerce_datetime(value) is None:
                return [f"{name} must be a valid date"]
        elif variable_type == TemplateVariableType.SELECT:
            if value not in variable.options:
                return [f"{name} must be one of: {', '.join(variable.options)}"]
        elif variable_type == TemplateVariableType.MULTISELECT:
            if not isinstance(value, (list, tuple)) or any(item not in variable.options for item in value):
                return [f"{name} must be a list of: {', '.join(variable.options)}"]

        if isinstance(value, str):
            if variable.min_value is not None and len(value) < variable.min_value:
                errors.append(f"{name} must be at least {variable.min_value} characters")
            if variable.max_value is not None and len(value) > variable.max_value:
                errors.append(f"{name} must be at most {variable.max_value} characters")
            if variable.pattern:
                try:
                    if not re.search(variable.pattern, value):
                        errors.append(f"{name} format is invalid")
                except re.error as e:
                    logger.warning(f"Invalid pattern on template variable {name}: {str(e)}")
                    errors.append(f"{name} has an invalid pattern: {str(e)}")
        elif isinstance(value, (int, float)) and not isinstance(value, bool):
            if variable.min_value is not None and value < variable.min_value:
                errors.append(f"{name} must be at least {variable.min_value}")
            if variable.max_value is not None and value > variable.max_value:
                errors.append(f"{name} must be at most {variable.max_value}")

        if variable.custom is not None:
            try:
                passed = bool(variable.custom(value))
            except Exception as e:
                logger.warning(f"Custom validator for {name} raised: {str(e)}")
                passed = False
            if not passed:
                errors.append(f"{name} failed custom validation")

        return errors

    def _check_rule(self, rule: TemplateValidationRule, values: Dict[str, Any]) -> bool:
        value = condition_evaluator.get_field_value(values, rule.field)

        if rule.type == 'required':
            return value is not None and value != ''
        if rule.type == 'pattern':
            return value is not None and re.search(str(rule.condition), str(value)) is not None
        if rule.type in ('min', 'max'):
            if value is None:
                return False
            try:
                return value >= rule.condition if rule.type == 'min' else value <= rule.condition
            except TypeError:
                return False
        if rule.type == 'custom':
            return bool(rule.condition(value, values))

        logger.warning(f"Unknown template validation rule type '{rule.type}' on field {rule.field}")
        return True

    # Generation

    def generate_task_from_template(self, template_id: str, case_id: str,
                                    variables: Optional[Dict[str, Any]] = None) -> Optional[TaskData]:
        """
        Build task fields from a template.

        Returns None when the template does not exist.
        """
        template = self.templates.get(template_id)
        if template is None:
            return None

        values = self.resolve_variables(template, variables)
        due_date = now() + timedelta(days=template.due_date_offset) if template.due_date_offset else None

        return TaskData(
            template_id=template.id,
            case_id=case_id,
            title=interpolate_template(template.title_template, values),
            description=(
                interpolate_template(template.description_template, values)
                if template.description_template else None
            ),
            priority=template.default_priority,
            estimated_hours=template.estimated_hours,
            due_date=due_date,
            assignee_role=template.default_assignee_role,
            steps=list(template.steps),
        )

    # Instances

    def create_template_instance(self, template_id: str, case_id: str, variables: Dict[str, Any],
                                 created_by: Optional[str] = None,
                                 task_id: Optional[str] = None) -> Optional[TemplateInstance]:
        """
        Start using a template on a case.

        Raises:
            ValidationException: When the variables fail validation
            TemplateException: When the template is deactivated
        """
        template = self.templates.get(template_id)
        if template is None:
            return None
        if not template.is_active:
            raise TemplateException(f"Template {template_id} is inactive", details={'template_id': template_id})

        errors = self.validate_template_variables(template, variables)
        if errors:
            raise ValidationException(
                f"Template validation failed: {', '.join(errors)}",
                details={'errors': errors, 'template_id': template_id}
            )

        steps = [
            StepInstance(
                step_id=step.id,
                name=step.name,
                required=step.required,
                dependencies=list(step.dependencies),
            )
            for step in sorted(template.steps, key=lambda s: s.order)
        ]
        instance = TemplateInstance(
            id=generate_id('instance'),
            template_id=template_id,
            case_id=case_id,
            task_id=task_id,
            variables=self.resolve_variables(template, variables),
            steps=steps,
            created_by=created_by,
        )
        instance.current_step = self._next_step_id(instance)
        self.instances.save(instance)

        template.usage_count += 1
        template.last_used = now()

        logger.info(f"Created instance {instance.id} of template {template_id} for case {case_id}")
        return instance

    def get_template_instance(self, instance_id: str) -> Optional[TemplateInstance]:
        return self.instances.get(instance_id)

    def get_case_instances(self, case_id: str) -> List[TemplateInstance]:
        return [instance for instance in self.instances.all() if instance.case_id == case_id]

    def update_instance_step(self, instance_id: str, step_id: str, status: str) -> TemplateInstance:
        """
        Move one step of an instance to a new status.

        A step cannot start or complete while any of its dependencies is
        still open, required steps cannot be skipped, and finished steps
        are final. Completing the last open step completes the instance.

        Raises:
            ResourceNotFoundException: Unknown instance or step
            InvalidOperationException: Illegal step move
        """
        instance = self.instances.get(instance_id)
        if instance is None:
            raise ResourceNotFoundException(f"Template instance {instance_id} not found")
        if instance.status != TemplateInstanceStatus.ACTIVE:
            raise InvalidOperationException(f"Template instance {instance_id} is {instance.status}")

        step = instance.get_step(step_id)
        if step is None:
            raise ResourceNotFoundException(f"Step {step_id} not found in instance {instance_id}")

        try:
            status = TemplateStepStatus(status)
        except ValueError:
            raise ValidationException(f"Invalid step status: {status}")

        finished = (TemplateStepStatus.COMPLETED, TemplateStepStatus.SKIPPED)
        if step.status in finished:
            raise InvalidOperationException(f"Step {step_id} is already {step.status}")

        if status == TemplateStepStatus.SKIPPED and step.required:
            raise InvalidOperationException(f"Required step {step_id} cannot be skipped")

        if status in (TemplateStepStatus.IN_PROGRESS, TemplateStepStatus.COMPLETED):
            blocking = [
                dependency for dependency in step.dependencies
                if instance.get_step(dependency) is None or instance.get_step(dependency).status not in finished
            ]
            if blocking:
                raise InvalidOperationException(
                    f"Step {step_id} is blocked by incomplete dependencies: {', '.join(blocking)}"
                )

        timestamp = now()
        if status == TemplateStepStatus.IN_PROGRESS:
            step.started_at = timestamp
        elif status in finished:
            step.started_at = step.started_at or timestamp
            step.completed_at = timestamp
        step.status = status

        done = sum(1 for s in instance.steps if s.status in finished)
        instance.progress = round(done / len(instance.steps) * 100, 2)
        instance.current_step = self._next_step_id(instance)

        if done == len(instance.steps):
            self.complete_template_instance(instance_id)

        return instance

    def complete_template_instance(self, instance_id: str) -> bool:
        instance = self.instances.get(instance_id)
        if instance is None or instance.status == TemplateInstanceStatus.COMPLETED:
            return False

        instance.status = TemplateInstanceStatus.COMPLETED
        instance.progress = 100.0
        instance.current_step = None
        instance.completed_at = now()
        return True

    def _next_step_id(self, instance: TemplateInstance) -> Optional[str]:
        finished = (TemplateStepStatus.COMPLETED, TemplateStepStatus.SKIPPED)
        for step in instance.steps:
            if step.status in finished:
                continue
            dependencies = [instance.get_step(dependency) for dependency in step.dependencies]
            if all(dep is not None and dep.status in finished for dep in dependencies):
                return step.step_id
        return None

    # Catalog statistics

    def get_template_categories(self) -> List[str]:
        return sorted({str(template.category) for template in self.templates.all()})

    def get_template_tags(self) -> List[str]:
        return sorted({tag for template in self.templates.all() for tag in template.tags})

    def get_template_usage_stats(self) -> List[Dict[str, Any]]:
        stats = [
            {
                'templateId': template.id,
                'templateName': template.name,
                'usageCount': template.usage_count,
                'lastUsed': template.last_used,
            }
            for template in self.templates.all()
        ]
        return sorted(stats, key=lambda entry: entry['usageCount'], reverse=True)


task_template_engine = TaskTemplateEngine()
