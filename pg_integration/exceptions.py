"""
Exception Types

Pipelines never let these escape their public entry points; they are turned
into failure results there. The job layer raises them to its callers.
"""

import threading
from typing import List, Optional


class IntegrationError(Exception):
    """Base class for all pg_integration errors."""


class ValidationError(IntegrationError):
    """Request rejected before any I/O took place."""

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__('; '.join(self.errors) or 'Validation failed')


class JobNotFoundError(IntegrationError):
    """No job with the requested id exists."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job '{job_id}' not found")


class QueueFullError(IntegrationError):
    """The background job queue stayed full for the whole enqueue timeout."""


class JobStateError(IntegrationError):
    """A job change would move the job backwards through its lifecycle."""


class OperationCancelledError(IntegrationError):
    """Cancellation was requested while a pipeline was running."""

    def __init__(self, message: str = 'Operation was cancelled'):
        super().__init__(message)


class DocumentConversionError(IntegrationError):
    """A single document could not be turned into a row."""


def check_cancelled(cancel_event: Optional[threading.Event]) -> None:
    """Raise OperationCancelledError if the event has been set."""
    if cancel_event is not None and cancel_event.is_set():
        raise OperationCancelledError()
