"""
Triage Domain Layer
===================

Domain layer for the ticket triage pipeline.

Contains:
- Entities: Ticket, stage outputs, ProcessingResult
- Value Objects: AutoResolutionGate (pure policy), priority ranking

This layer has no dependencies on infrastructure - pure Python business logic.
"""

from ticketflow.triage.domain.entities import (
    Ticket,
    Classification,
    KnowledgeMatch,
    SuggestedResponse,
    StageError,
    ProcessingResult,
    BatchOutcome,
)
from ticketflow.triage.domain.value_objects import AutoResolutionGate, priority_rank

__all__ = [
    # Entities
    "Ticket",
    "Classification",
    "KnowledgeMatch",
    "SuggestedResponse",
    "StageError",
    "ProcessingResult",
    "BatchOutcome",
    # Value Objects
    "AutoResolutionGate",
    "priority_rank",
]
