"""
Exception hierarchy for the case workflow engine.

Engines raise these at the few call sites that must not proceed
(scheduling validation, template instantiation, escalation lookups);
orchestration methods convert them into result errors. The DRF handler
at the bottom maps them to HTTP responses at the edge.
"""

from typing import Any, Dict, Optional

from rest_framework import status
from rest_framework.views import exception_handler
from rest_framework.response import Response
from django.core.exceptions import ValidationError as DjangoValidationError


class CaseWorkflowException(Exception):
    """Base exception for the case workflow engine."""

    default_message = "An error occurred in the case workflow engine"
    default_code = "case_workflow_error"

    def __init__(
        self,
        message: str = None,
        code: str = None,
        details: Dict[str, Any] = None
    ):
        self.message = message or self.default_message
        self.code = code or self.default_code
        self.details = details or {}
        super().__init__(self.message)


class ValidationException(CaseWorkflowException):
    """Exception raised when a request or definition fails validation."""

    default_message = "Validation failed"
    default_code = "validation_error"

    @property
    def errors(self):
        return self.details.get('errors', [])


class BusinessLogicException(CaseWorkflowException):
    """Exception raised when business rules are violated."""

    default_message = "Business logic violation"
    default_code = "business_logic_error"


class PermissionDeniedException(CaseWorkflowException):
    """Exception raised when a role may not perform an operation."""

    default_message = "Permission denied"
    default_code = "permission_denied"


class ResourceNotFoundException(CaseWorkflowException):
    """Exception raised when a rule, template or scheduled task is unknown."""

    default_message = "Resource not found"
    default_code = "resource_not_found"


class ConflictException(CaseWorkflowException):
    """Exception raised when a schedule collides with existing work."""

    default_message = "Conflict with current state"
    default_code = "conflict_error"


class InvalidOperationException(CaseWorkflowException):
    """Exception raised when an invalid operation is attempted."""

    default_message = "Invalid operation"
    default_code = "invalid_operation"


class WorkflowException(BusinessLogicException):
    """Exception raised when workflow processing fails."""

    default_message = "Workflow processing failed"
    default_code = "workflow_error"


class EscalationException(WorkflowException):
    """Exception raised when no escalation path applies."""

    default_message = "Task escalation failed"
    default_code = "escalation_error"


class AssignmentException(BusinessLogicException):
    """Exception raised when task assignment fails."""

    default_message = "Task assignment failed"
    default_code = "assignment_error"


class SchedulingException(BusinessLogicException):
    """Exception raised when a scheduling operation cannot be applied."""

    default_message = "Scheduling failed"
    default_code = "scheduling_error"


class TemplateException(BusinessLogicException):
    """Exception raised when a task template cannot be used."""

    default_message = "Template processing failed"
    default_code = "template_error"


def custom_exception_handler(exc: Exception, context: Dict[str, Any]) -> Optional[Response]:
    """
    Exception handler for DRF that renders engine errors consistently.

    Args:
        exc: The exception that was raised
        context: Context information about the request and view

    Returns:
        Response with standardized error format or None
    """
    if isinstance(exc, CaseWorkflowException):
        return Response(
            {
                'error': {
                    'message': exc.message,
                    'code': exc.code,
                    'details': exc.details
                }
            },
            status=get_status_code_for_exception(exc)
        )

    if isinstance(exc, DjangoValidationError):
        return Response(
            {
                'error': {
                    'message': 'Validation failed',
                    'code': 'validation_error',
                    'details': _format_django_validation_error(exc)
                }
            },
            status=status.HTTP_400_BAD_REQUEST
        )

    return exception_handler(exc, context)


def get_status_code_for_exception(exc: CaseWorkflowException) -> int:
    """Get the HTTP status code for an engine exception."""

    # Subclasses precede their bases.
    status_mapping = (
        (ValidationException, status.HTTP_400_BAD_REQUEST),
        (PermissionDeniedException, status.HTTP_403_FORBIDDEN),
        (ResourceNotFoundException, status.HTTP_404_NOT_FOUND),
        (ConflictException, status.HTTP_409_CONFLICT),
        (InvalidOperationException, status.HTTP_400_BAD_REQUEST),
        (BusinessLogicException, status.HTTP_422_UNPROCESSABLE_ENTITY),
    )

    for exception_class, status_code in status_mapping:
        if isinstance(exc, exception_class):
            return status_code

    return status.HTTP_500_INTERNAL_SERVER_ERROR


def _format_django_validation_error(exc: DjangoValidationError) -> Dict[str, Any]:
    """Format Django validation error for consistent response."""

    if hasattr(exc, 'error_dict'):
        return {field: [message for error in errors for message in error.messages]
                for field, errors in exc.error_dict.items()}
    elif hasattr(exc, 'error_list'):
        return {'non_field_errors': list(exc.messages)}
    else:
        return {'non_field_errors': [str(exc)]}
