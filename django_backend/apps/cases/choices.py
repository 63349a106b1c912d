from django.db import models
from django.utils.translation import gettext_lazy as _


class CaseType(models.TextChoices):
    """Practice areas handled by the firm."""

    CRIMINAL_DEFENSE = 'CRIMINAL_DEFENSE', _('Criminal Defense')
    DIVORCE_FAMILY = 'DIVORCE_FAMILY', _('Divorce & Family')
    MEDICAL_MALPRACTICE = 'MEDICAL_MALPRACTICE', _('Medical Malpractice')
    CONTRACT_DISPUTE = 'CONTRACT_DISPUTE', _('Contract Dispute')
    LABOR_DISPUTE = 'LABOR_DISPUTE', _('Labor Dispute')
    INHERITANCE_DISPUTE = 'INHERITANCE_DISPUTE', _('Inheritance Dispute')
    ADMINISTRATIVE_CASE = 'ADMINISTRATIVE_CASE', _('Administrative Case')
    DEMOLITION_CASE = 'DEMOLITION_CASE', _('Demolition Case')
    SPECIAL_MATTERS = 'SPECIAL_MATTERS', _('Special Matters')

    @classmethod
    def get_due_date_multipliers(cls):
        """Factor applied to phase durations when a task has no due date."""
        return {
            cls.CRIMINAL_DEFENSE: 1.2,
            cls.DIVORCE_FAMILY: 1.5,
            cls.MEDICAL_MALPRACTICE: 2.0,
            cls.CONTRACT_DISPUTE: 1.0,
            cls.LABOR_DISPUTE: 1.3,
            cls.INHERITANCE_DISPUTE: 1.4,
            cls.ADMINISTRATIVE_CASE: 1.1,
            cls.DEMOLITION_CASE: 0.8,
            cls.SPECIAL_MATTERS: 1.8,
        }


class CasePhase(models.TextChoices):
    """Lifecycle phases of a case, in their normal forward order."""

    INTAKE_RISK_ASSESSMENT = 'INTAKE_RISK_ASSESSMENT', _('Intake & Risk Assessment')
    PRE_PROCEEDING_PREPARATION = 'PRE_PROCEEDING_PREPARATION', _('Pre-Proceeding Preparation')
    FORMAL_PROCEEDINGS = 'FORMAL_PROCEEDINGS', _('Formal Proceedings')
    RESOLUTION_POST_PROCEEDING = 'RESOLUTION_POST_PROCEEDING', _('Resolution & Post-Proceeding')
    CLOSURE_REVIEW_ARCHIVING = 'CLOSURE_REVIEW_ARCHIVING', _('Closure, Review & Archiving')

    @classmethod
    def get_phase_order(cls):
        """Get phases in forward order."""
        return [
            cls.INTAKE_RISK_ASSESSMENT,
            cls.PRE_PROCEEDING_PREPARATION,
            cls.FORMAL_PROCEEDINGS,
            cls.RESOLUTION_POST_PROCEEDING,
            cls.CLOSURE_REVIEW_ARCHIVING,
        ]

    @classmethod
    def get_terminal_phases(cls):
        return [cls.CLOSURE_REVIEW_ARCHIVING]

    @classmethod
    def get_default_durations(cls):
        """Default working time of a phase, in days."""
        return {
            cls.INTAKE_RISK_ASSESSMENT: 3,
            cls.PRE_PROCEEDING_PREPARATION: 7,
            cls.FORMAL_PROCEEDINGS: 14,
            cls.RESOLUTION_POST_PROCEEDING: 10,
            cls.CLOSURE_REVIEW_ARCHIVING: 5,
        }


class CaseStatus(models.TextChoices):
    """Administrative status of a case, independent of its phase."""

    ACTIVE = 'ACTIVE', _('Active')
    ON_HOLD = 'ON_HOLD', _('On Hold')
    CLOSED = 'CLOSED', _('Closed')
