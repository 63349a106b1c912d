"""
Django application configuration for the workflows module.

This module handles phase-driven task workflows, automation rules
and business rules for legal cases.
"""

import logging

from django.apps import AppConfig

logger = logging.getLogger(__name__)


class WorkflowsConfig(AppConfig):
    """
    Application configuration for the workflows module.

    Loads the default rule tables once Django is ready so that the
    first request does not pay for building them.
    """

    default_auto_field = 'django.db.models.BigAutoField'
    name = 'apps.workflows'
    verbose_name = 'Case Workflows & Automation'

    def ready(self) -> None:
        """
        Initialize workflow engines when Django starts.

        Builds the shared engines with their default rules, templates and
        escalation paths.
        """
        self._initialize_workflow_engines()

    def _initialize_workflow_engines(self) -> None:
        try:
            from apps.workflows.integration import case_task_integration_service

            health = case_task_integration_service.get_integration_health()
            logger.info(f"Workflow engines initialized: {health['overall']}")
        except ImportError as exc:
            logger.warning(
                f"Could not initialize workflow engines: {exc}. "
                "Workflow automation may be unavailable."
            )
