"""
Core Exceptions
================

Custom exceptions for the application following clean architecture principles.

These exceptions define domain-specific errors that can be caught and handled
appropriately at the application boundaries.
"""

from typing import Optional, List


class ApplicationException(Exception):
    """Base exception for all application errors."""

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class RepositoryException(ApplicationException):
    """Base exception for repository/data access errors."""


class ValidationException(ApplicationException):
    """Exception for validation errors."""


class ConfigurationException(ApplicationException):
    """Exception for configuration errors."""


# ========== Triage ==========

class InvalidTicketError(ValidationException):
    """Ticket payload cannot be processed (e.g. missing identifier)."""


# ========== Configuration store ==========

class ConfigValidationError(ValidationException):
    """
    A configuration update violated one or more rules.

    ``errors`` lists every violated rule; the store is left unchanged.
    """

    def __init__(self, errors: List[str], details: Optional[dict] = None):
        self.errors = list(errors)
        super().__init__(
            f"Configuration validation failed: {', '.join(self.errors)}",
            details or {"errors": self.errors}
        )


# ========== Scheduler ==========

class SchedulerException(ApplicationException):
    """Base exception for queue scheduler errors."""


class QueueNotFoundError(SchedulerException):
    """Operation referenced a queue that was never registered."""

    def __init__(self, queue_name: str):
        self.queue_name = queue_name
        super().__init__(f"Queue {queue_name} not found", {"queue": queue_name})


class DuplicateQueueError(SchedulerException):
    """Queue re-registered with settings that differ from the existing ones."""

    def __init__(self, queue_name: str, details: Optional[dict] = None):
        self.queue_name = queue_name
        super().__init__(
            f"Queue {queue_name} already registered with different settings",
            details or {"queue": queue_name}
        )


class ProcessorAlreadyRegisteredError(SchedulerException):
    """A handler is already bound to the queue."""

    def __init__(self, queue_name: str):
        self.queue_name = queue_name
        super().__init__(f"Queue {queue_name} already has a processor", {"queue": queue_name})


class BrokerConnectionError(SchedulerException):
    """The job broker is unreachable."""


class UnrecoverableJobError(ApplicationException):
    """Raised by a job handler to fail the job without further retries."""
