"""
Workflow Automation Module

Phase-driven task automation for legal cases: rule evaluation, task
creation from templates, escalation and delayed actions.

Core Components:
    - ConditionEvaluator: Weighted condition matching shared by every rule table
    - WorkflowEngine: Validates phase transitions and creates phase tasks
    - BusinessRuleEngine: Assignment, escalation, deadline and review rules
    - TaskAutomationEngine: Trigger-driven automation with delayed actions
    - CaseTaskIntegrationService: Facade tying the engines to scheduling

Usage:
    >>> from apps.workflows import get_integration_service
    >>> service = get_integration_service()
    >>> result = service.handle_case_phase_transition(integration)

Thread Safety:
    Engines keep their state in in-memory stores guarded by a lock each,
    so one module-level instance can serve request threads and the Celery
    worker of the same process.

Configuration:
    Engine tunables are read from the ``CASE_WORKFLOW`` settings dict.
"""

import logging

__version__ = "1.0.0"

logger = logging.getLogger(__name__)


# Lazy accessors keep app loading free of engine construction.
def get_workflow_engine():
    """Get the shared workflow engine."""
    from .engines import workflow_engine
    return workflow_engine


def get_business_rule_engine():
    """Get the shared business rule engine."""
    from .rules import business_rule_engine
    return business_rule_engine


def get_automation_engine():
    """Get the shared task automation engine."""
    from .automation import task_automation_engine
    return task_automation_engine


def get_integration_service():
    """Get the shared case-task integration service."""
    from .integration import case_task_integration_service
    return case_task_integration_service


__all__ = [
    "get_workflow_engine",
    "get_business_rule_engine",
    "get_automation_engine",
    "get_integration_service",
]
