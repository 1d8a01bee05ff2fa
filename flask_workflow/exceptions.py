"""
Workflow engine exception hierarchy.

Every error raised by the engine carries an HTTP-like ``status_code`` so
the surrounding request layer can translate it without a lookup table.
"""

from typing import Any, Dict, Optional


class WorkflowError(Exception):
    """Base exception for workflow engine errors."""

    status_code = 500
    default_error_code = "WORKFLOW_ERROR"

    def __init__(self, message: str, error_code: str = None,
                 process_instance_id: int = None, step_instance_id: int = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.default_error_code
        self.process_instance_id = process_instance_id
        self.step_instance_id = step_instance_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status': 'error',
            'message': self.message,
            'error_code': self.error_code,
        }


class NotFoundError(WorkflowError):
    """A template, instance, step or user does not exist."""
    status_code = 404
    default_error_code = "NOT_FOUND"


class InvalidStateError(WorkflowError):
    """The operation is not allowed from the entity's current status."""
    status_code = 400
    default_error_code = "INVALID_STATE"


class StateTransitionError(InvalidStateError):
    """A (state, event) pair that the transition table does not list."""
    default_error_code = "INVALID_TRANSITION"

    def __init__(self, message: str, from_state: str = None, event: str = None, **kwargs):
        super().__init__(message, **kwargs)
        self.from_state = from_state
        self.event = event


class ConcurrentModificationError(InvalidStateError):
    """The row was changed by someone else between read and write."""
    status_code = 409
    default_error_code = "CONCURRENT_MODIFICATION"


class InvalidInputError(WorkflowError):
    """A caller supplied value that cannot be parsed or is out of range."""
    status_code = 400
    default_error_code = "VALIDATION_ERROR"


class ForbiddenError(WorkflowError):
    """The actor is not assigned to, or does not own, the target."""
    status_code = 403
    default_error_code = "FORBIDDEN"


class TemplateValidationError(WorkflowError):
    """Malformed template graph."""
    status_code = 422
    default_error_code = "TEMPLATE_INVALID"

    def __init__(self, message: str, messages: Optional[Dict[str, Any]] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.messages = messages or {}

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data['errors'] = self.messages
        return data


class StepNotCompletableError(InvalidStateError, ForbiddenError):
    """
    The step is no longer pending or in progress.

    Both an invalid state and a failed completion check, so callers
    handling either case catch it.
    """
    default_error_code = "STEP_NOT_COMPLETABLE"
