"""
Triage Domain Value Objects
===========================

Auto-resolution policy.

The gate is a pure function of a ProcessingResult and the configuration
snapshot; it never performs I/O.
"""

from typing import Optional

from ticketflow.aiconfig.domain import TriageConfig
from ticketflow.config import PRIORITY_ORDER, Priority, Recommendation
from ticketflow.triage.domain.entities import Classification, ProcessingResult, Ticket


def priority_rank(priority: Optional[str]) -> Optional[int]:
    """
    Position of ``priority`` in low < medium < high < urgent.

    ``critical`` ranks as urgent; anything unrecognised returns None.
    """
    if priority is None:
        return None
    normalized = str(priority).strip().lower()
    if normalized == Priority.CRITICAL:
        normalized = Priority.URGENT
    try:
        return PRIORITY_ORDER.index(normalized)
    except ValueError:
        return None


class AutoResolutionGate:
    """
    Decides whether a processed ticket may be closed without a human.

    All of these must hold:
    - auto-resolution is enabled
    - no pipeline stage failed
    - confidence >= auto_resolve_threshold
    - the category is in the allow-list
    - the priority ranks at or below max_priority (unknown priority: never)
    - at least one knowledge match, when require_knowledge_match is set
    """

    @staticmethod
    def effective_priority(ticket: Ticket, classification: Optional[Classification]) -> Optional[str]:
        """The ticket's own priority, else the one the classifier suggested."""
        if ticket.priority:
            return ticket.priority
        if classification is not None and classification.priority:
            return classification.priority
        return None

    def decide(self, result: ProcessingResult, config: TriageConfig) -> bool:
        policy = config.auto_resolution

        if not (config.enabled and policy.enabled):
            return False
        if result.has_errors:
            return False
        if result.confidence < config.auto_resolve_threshold:
            return False
        if result.category is None or result.category not in policy.categories:
            return False

        rank = priority_rank(result.priority)
        if rank is None or rank > priority_rank(policy.max_priority):
            return False

        if policy.require_knowledge_match and not result.knowledge_matches:
            return False
        return True

    def recommend(self, result: ProcessingResult, config: TriageConfig) -> str:
        """Next action for the ticket: auto-resolve, or which review band it falls in."""
        if self.decide(result, config):
            return Recommendation.AUTO_RESOLVE
        if result.confidence >= config.review.agent_review_threshold:
            return Recommendation.AGENT_REVIEW
        if result.confidence >= config.review.human_review_threshold:
            return Recommendation.HUMAN_REVIEW
        return Recommendation.ESCALATE
