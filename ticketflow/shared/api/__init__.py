"""Shared API middleware and exception handlers."""

from ticketflow.shared.api.middleware import (
    CorrelationIDMiddleware,
    TimingMiddleware,
    LoggingMiddleware,
    application_exception_handler,
    global_exception_handler,
)

__all__ = [
    "CorrelationIDMiddleware",
    "TimingMiddleware",
    "LoggingMiddleware",
    "application_exception_handler",
    "global_exception_handler",
]
