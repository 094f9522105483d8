"""
Triage Infrastructure Layer
===========================

Stub stage collaborators used when no real engines are plugged in.
"""

from ticketflow.triage.infrastructure.external import (
    StubClassificationEngine,
    StubKnowledgeSearch,
    StubResponseGenerator,
    StubConfidenceScorer,
)

__all__ = [
    "StubClassificationEngine",
    "StubKnowledgeSearch",
    "StubResponseGenerator",
    "StubConfidenceScorer",
]
