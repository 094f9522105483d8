"""
Triage Domain Entities
======================

Domain entities for the ticket triage pipeline.

Contains pure Python business objects: the ticket under triage, the
outputs of each pipeline stage and the final ProcessingResult.
"""

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from ticketflow.config import Recommendation


@dataclass(frozen=True)
class Ticket:
    """
    Support ticket as seen by the pipeline.

    Only ``id`` is required for processing; everything else is context for
    the stage collaborators.
    """
    id: Optional[str]
    subject: str = ""
    description: str = ""
    priority: Optional[str] = None
    category: Optional[str] = None
    customer_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Union["Ticket", Mapping[str, Any]]) -> "Ticket":
        """
        Build a ticket from a queue payload or API body.

        Accepts ``id``, ``ticket_id`` or ``_id`` as the identifier; keys the
        ticket does not model are kept in ``metadata``.
        """
        if isinstance(payload, Ticket):
            return payload
        if not isinstance(payload, Mapping):
            raise TypeError(f"Ticket payload must be a mapping, got {type(payload).__name__}")

        data = dict(payload)
        ticket_id = data.pop("id", None)
        for alias in ("ticket_id", "_id"):
            value = data.pop(alias, None)
            if ticket_id is None:
                ticket_id = value

        known = {f.name for f in fields(cls)} - {"id", "metadata"}
        values = {key: data.pop(key) for key in list(data) if key in known}
        metadata = dict(data.pop("metadata", None) or {})
        metadata.update(data)

        return cls(
            id=str(ticket_id) if ticket_id is not None else None,
            metadata=metadata,
            **values
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Classification:
    """Category (and optionally a suggested priority) assigned to a ticket."""
    category: str
    confidence: float
    tags: Tuple[str, ...] = ()
    priority: Optional[str] = None
    priority_confidence: Optional[float] = None
    reasoning: str = ""

    @classmethod
    def from_value(cls, value: Union["Classification", Mapping[str, Any]]) -> "Classification":
        """Accept a Classification or a ``{category, confidence, tags}`` mapping."""
        if isinstance(value, Classification):
            return value
        if not isinstance(value, Mapping) or not value.get("category"):
            raise ValueError(f"Classification needs a category, got {value!r}")
        return cls(
            category=str(value["category"]),
            confidence=float(value.get("confidence", 0.0)),
            tags=tuple(value.get("tags") or ()),
            priority=value.get("priority"),
            priority_confidence=value.get("priority_confidence", value.get("priorityConfidence")),
            reasoning=value.get("reasoning", ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["tags"] = list(self.tags)
        return data


@dataclass(frozen=True)
class KnowledgeMatch:
    """Knowledge base article relevant to a ticket."""
    article_id: str
    title: str
    score: float
    excerpt: str = ""
    url: Optional[str] = None

    @classmethod
    def from_value(cls, value: Union["KnowledgeMatch", Mapping[str, Any]]) -> "KnowledgeMatch":
        """
        Accept a KnowledgeMatch or a mapping such as
        ``{articleId, score, snippet}``.

        Raises:
            ValueError: the match carries no article identifier
        """
        if isinstance(value, KnowledgeMatch):
            return value
        if not isinstance(value, Mapping):
            raise ValueError(f"Knowledge match must be a mapping, got {type(value).__name__}")

        article_id = next(
            (value[key] for key in ("article_id", "articleId", "id", "_id") if value.get(key)),
            None
        )
        if article_id is None:
            raise ValueError(f"Knowledge match has no article id: {dict(value)!r}")

        excerpt = next(
            (value[key] for key in ("excerpt", "snippet", "summary") if value.get(key)),
            ""
        )
        return cls(
            article_id=str(article_id),
            title=value.get("title", ""),
            score=float(value.get("score", 0.0)),
            excerpt=excerpt,
            url=value.get("url"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class SuggestedResponse:
    """Draft reply for an agent or for auto-resolution."""
    content: str
    type: str = "acknowledgment"  # or "solution" when backed by knowledge matches
    confidence: float = 0.0
    citations: Tuple[str, ...] = ()

    @classmethod
    def from_value(cls, value: Union["SuggestedResponse", Mapping[str, Any]]) -> "SuggestedResponse":
        """Accept a SuggestedResponse or a ``{text, citedArticleIds}`` mapping."""
        if isinstance(value, SuggestedResponse):
            return value
        if not isinstance(value, Mapping):
            raise ValueError(f"Suggested response must be a mapping, got {type(value).__name__}")

        content = value.get("content", value.get("text"))
        if content is None:
            raise ValueError("Suggested response has no text")
        citations = value.get("citations", value.get("citedArticleIds")) or ()
        return cls(
            content=str(content),
            type=value.get("type", "solution" if citations else "acknowledgment"),
            confidence=float(value.get("confidence", 0.0)),
            citations=tuple(str(citation) for citation in citations),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["citations"] = list(self.citations)
        return data



@dataclass(frozen=True)
class StageError:
    """A pipeline stage that failed; the pipeline carried on without it."""
    step: str
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {"step": self.step, "message": self.message}


@dataclass(frozen=True)
class ProcessingResult:
    """
    Outcome of running one ticket through the pipeline.

    Immutable once returned. ``auto_resolve`` is only ever True when
    ``errors`` is empty and the confidence cleared the configured threshold.
    """
    ticket_id: str
    timestamp: datetime
    processing_time_ms: int
    classification: Optional[Classification]
    knowledge_matches: Tuple[KnowledgeMatch, ...]
    suggested_response: Optional[SuggestedResponse]
    confidence: float
    auto_resolve: bool
    errors: Tuple[StageError, ...]
    priority: Optional[str] = None
    recommendation: str = Recommendation.ESCALATE
    skipped_steps: Tuple[str, ...] = ()

    @property
    def has_errors(self) -> bool:
        return len(self.errors) > 0

    @property
    def category(self) -> Optional[str]:
        return self.classification.category if self.classification else None

    def to_dict(self) -> Dict[str, Any]:
        """JSON-ready representation (suitable as a job return value)."""
        return {
            "ticket_id": self.ticket_id,
            "timestamp": self.timestamp.isoformat(),
            "processing_time_ms": self.processing_time_ms,
            "classification": self.classification.to_dict() if self.classification else None,
            "knowledge_matches": [match.to_dict() for match in self.knowledge_matches],
            "suggested_response": self.suggested_response.to_dict() if self.suggested_response else None,
            "confidence": self.confidence,
            "auto_resolve": self.auto_resolve,
            "errors": [error.to_dict() for error in self.errors],
            "priority": self.priority,
            "recommendation": self.recommendation,
            "skipped_steps": list(self.skipped_steps),
        }


BatchOutcome = Union[ProcessingResult, Dict[str, Any]]
