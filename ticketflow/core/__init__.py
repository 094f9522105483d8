"""
Core Module
============

Shared core utilities and abstractions used across the application.

This module contains framework-agnostic code that defines the fundamental
building blocks of the system.
"""

from ticketflow.core.exceptions import (
    ApplicationException,
    RepositoryException,
    ValidationException,
    ConfigurationException,
    InvalidTicketError,
    ConfigValidationError,
    SchedulerException,
    QueueNotFoundError,
    DuplicateQueueError,
    ProcessorAlreadyRegisteredError,
    BrokerConnectionError,
    UnrecoverableJobError,
)

__all__ = [
    "ApplicationException",
    "RepositoryException",
    "ValidationException",
    "ConfigurationException",
    "InvalidTicketError",
    "ConfigValidationError",
    "SchedulerException",
    "QueueNotFoundError",
    "DuplicateQueueError",
    "ProcessorAlreadyRegisteredError",
    "BrokerConnectionError",
    "UnrecoverableJobError",
]
