"""
Triage Stub Collaborators
=========================

Stand-in stage collaborators for local runs and demos.

They make no external calls and return neutral, low-confidence output, so
a pipeline wired to them never auto-resolves a ticket.
"""

from typing import Any, Dict, List, Optional, Sequence

from ticketflow.config import HealthStatus, TicketCategory
from ticketflow.shared.infrastructure.logging import get_logger
from ticketflow.triage.application import (
    IClassificationEngine,
    IConfidenceScorer,
    IKnowledgeSearch,
    IResponseGenerator,
)
from ticketflow.triage.domain import Classification, KnowledgeMatch, SuggestedResponse, Ticket

logger = get_logger(__name__)

STUB_CONFIDENCE = 0.1

# classification 40%, response 60%
CLASSIFICATION_WEIGHT = 0.4
RESPONSE_WEIGHT = 0.6


def _stub_health() -> Dict[str, Any]:
    return {"status": HealthStatus.HEALTHY, "mode": "stub"}


class StubClassificationEngine(IClassificationEngine):
    async def classify(self, ticket: Ticket) -> Classification:
        return Classification(
            category=ticket.category or TicketCategory.GENERAL,
            confidence=STUB_CONFIDENCE,
            reasoning="stub classifier"
        )

    async def get_health(self) -> Dict[str, Any]:
        return _stub_health()


class StubKnowledgeSearch(IKnowledgeSearch):
    """Finds nothing; indexing only counts what it was given."""

    async def search(
        self,
        ticket: Ticket,
        classification: Optional[Classification]
    ) -> Sequence[KnowledgeMatch]:
        return []

    async def index_articles(self, articles: List[Dict[str, Any]]) -> Dict[str, Any]:
        logger.info("Stub knowledge indexing", extra={"article_count": len(articles)})
        return {"indexed": len(articles), "skipped": 0}

    async def get_health(self) -> Dict[str, Any]:
        return _stub_health()


class StubResponseGenerator(IResponseGenerator):
    async def generate(
        self,
        ticket: Ticket,
        classification: Optional[Classification],
        matches: Sequence[KnowledgeMatch]
    ) -> SuggestedResponse:
        return SuggestedResponse(
            content=(
                "Thank you for contacting support. We have received your request"
                f"{f' about {ticket.subject!r}' if ticket.subject else ''} and an agent will follow up shortly."
            ),
            type="solution" if matches else "acknowledgment",
            confidence=STUB_CONFIDENCE,
            citations=tuple(match.article_id for match in matches)
        )

    async def get_health(self) -> Dict[str, Any]:
        return _stub_health()


class StubConfidenceScorer(IConfidenceScorer):
    """Weighted average of the classification and response confidences."""

    async def calculate(
        self,
        ticket: Ticket,
        classification: Optional[Classification],
        matches: Sequence[KnowledgeMatch],
        response: Optional[SuggestedResponse]
    ) -> float:
        classification_confidence = classification.confidence if classification else 0.0
        response_confidence = response.confidence if response else 0.0
        score = classification_confidence * CLASSIFICATION_WEIGHT + response_confidence * RESPONSE_WEIGHT
        return round(min(max(score, 0.0), 1.0), 4)

    async def get_health(self) -> Dict[str, Any]:
        return _stub_health()
