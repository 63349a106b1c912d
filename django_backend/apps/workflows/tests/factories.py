"""
Test data factories for the case workflow engines.

The engines work on plain dataclasses, so every factory here is a plain
``factory.Factory`` building one of them with Faker filled defaults.
"""

from datetime import timedelta

import factory
from faker import Faker

from apps.cases.choices import CasePhase, CaseType
from apps.common.utils import now
from apps.tasks.choices import TaskPriority
from apps.tasks.scheduling import ScheduleRequest
from apps.users.choices import UserRole
from apps.users.directory import Candidate
from apps.workflows.integration import CaseTaskIntegration

fake = Faker()

PRACTICE_AREAS = ['criminal_defense', 'divorce', 'medical_malpractice', 'contract_dispute', 'labor_dispute']


class CaseTaskIntegrationFactory(factory.Factory):
    """A criminal case moving from intake into preparation."""

    class Meta:
        model = CaseTaskIntegration

    case_id = factory.Sequence(lambda n: f"case_{n}")
    case_type = CaseType.CRIMINAL_DEFENSE
    previous_phase = CasePhase.INTAKE_RISK_ASSESSMENT
    current_phase = CasePhase.PRE_PROCEEDING_PREPARATION
    user_id = factory.Sequence(lambda n: f"user{n}")
    user_role = UserRole.ATTORNEY
    metadata = factory.LazyAttribute(lambda obj: {
        'caseTitle': f"State v. {fake.last_name()}",
        'riskAssessmentCompleted': True,
        'clientInformation': fake.name(),
        'caseDescription': fake.paragraph(nb_sentences=2),
        'initialEvidence': fake.sentence(),
    })


class ScheduleRequestFactory(factory.Factory):
    """A one-off task starting an hour from now."""

    class Meta:
        model = ScheduleRequest

    task_id = factory.Sequence(lambda n: f"task_{n}")
    case_id = 'case_1'
    title = factory.LazyAttribute(lambda obj: f"{fake.word().capitalize()} {obj.task_id}")
    scheduled_time = factory.LazyFunction(lambda: now() + timedelta(hours=1))
    assigned_to = 'user1'
    assigned_by = 'user2'
    priority = TaskPriority.MEDIUM
    description = factory.LazyAttribute(lambda obj: fake.sentence())


class CandidateFactory(factory.Factory):
    """An available attorney with a moderate workload."""

    class Meta:
        model = Candidate

    user_id = factory.Sequence(lambda n: f"candidate_{n}")
    name = factory.LazyAttribute(lambda obj: fake.name())
    role = UserRole.ATTORNEY
    score = factory.LazyAttribute(lambda obj: fake.random_int(50, 95) / 100)
    current_workload = factory.LazyAttribute(lambda obj: fake.random_int(10, 60) / 100)
    expertise = factory.LazyAttribute(lambda obj: set(fake.random_elements(PRACTICE_AREAS, length=2, unique=True)))
    available = True
