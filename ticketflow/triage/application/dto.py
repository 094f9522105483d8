"""
Triage Application DTOs
=======================

Data Transfer Objects for the triage API layer.

Pydantic models for request/response validation.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from ticketflow.queueing.domain import Job


# ========== Type Aliases for Literals ==========
QueuePriorityStr = Literal["low", "normal", "medium", "high", "urgent", "critical"]


def _timestamp(value: Optional[float]) -> Optional[datetime]:
    return datetime.fromtimestamp(value, tz=timezone.utc) if value is not None else None


# ========== Request DTOs ==========

class TicketRequest(BaseModel):
    """Ticket submitted for triage."""
    id: str = Field(..., description="Ticket identifier")
    subject: str = Field(default="", description="Ticket subject")
    description: str = Field(default="", description="Ticket body")
    priority: Optional[str] = Field(None, description="low, medium, high, urgent or critical")
    category: Optional[str] = Field(None, description="Category assigned by the requester, if any")
    customer_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("description")
    @classmethod
    def validate_description_length(cls, v: str) -> str:
        """Ensure the body stays within what the collaborators accept."""
        if len(v) > 10000:
            raise ValueError("Description too long (max 10000 characters)")
        return v


class BatchRequest(BaseModel):
    """Tickets processed one after another in a single call."""
    tickets: List[TicketRequest] = Field(..., min_length=1, max_length=100)


class QueueTicketRequest(BaseModel):
    """Request model for background ticket processing."""
    ticket: TicketRequest
    priority: Optional[QueuePriorityStr] = Field(
        None, description="Queue priority; defaults to the ticket's priority"
    )


class KnowledgeIndexRequest(BaseModel):
    """Articles to hand to the knowledge search backend."""
    articles: List[Dict[str, Any]] = Field(..., min_length=1, max_length=500)


class CleanQueueRequest(BaseModel):
    grace_seconds: float = Field(default=24 * 60 * 60, ge=0, description="Keep jobs finished within this window")


class ConfigImportRequest(BaseModel):
    """Configuration document as produced by the export endpoint."""
    type: str
    version: Optional[str] = None
    timestamp: Optional[str] = None
    config: Dict[str, Any]


# ========== Response DTOs ==========

class ClassificationInfo(BaseModel):
    category: str
    confidence: float
    tags: List[str] = []
    priority: Optional[str] = None
    priority_confidence: Optional[float] = None
    reasoning: str = ""


class KnowledgeMatchInfo(BaseModel):
    article_id: str
    title: str
    score: float
    excerpt: str = ""
    url: Optional[str] = None


class SuggestedResponseInfo(BaseModel):
    content: str
    type: str
    confidence: float
    citations: List[str] = Field(default_factory=list)


class StageErrorInfo(BaseModel):
    step: str
    message: str


class ProcessingResultResponse(BaseModel):
    """Response model for a processed ticket."""
    ticket_id: str
    timestamp: datetime
    processing_time_ms: int
    classification: Optional[ClassificationInfo] = None
    knowledge_matches: List[KnowledgeMatchInfo] = Field(default_factory=list)
    suggested_response: Optional[SuggestedResponseInfo] = None
    confidence: float = Field(..., ge=0.0, le=1.0)
    auto_resolve: bool
    errors: List[StageErrorInfo] = Field(default_factory=list)
    priority: Optional[str] = None
    recommendation: str
    skipped_steps: List[str] = Field(default_factory=list)


class BatchItemError(BaseModel):
    ticket_id: Optional[str] = None
    error: str


class BatchResponse(BaseModel):
    results: List[ProcessingResultResponse]
    errors: List[BatchItemError]
    processed: int
    failed: int


class JobResponse(BaseModel):
    """Snapshot of a queued job."""
    id: str
    queue_name: str
    state: str
    priority: int
    attempts_made: int
    max_attempts: int
    created_at: datetime
    processed_on: Optional[datetime] = None
    finished_on: Optional[datetime] = None
    failed_reason: Optional[str] = None
    return_value: Any = None
    stalled_count: int = 0
    retry_delays: List[float] = Field(default_factory=list)
    payload: Any = None

    @classmethod
    def from_domain(cls, job: Job) -> "JobResponse":
        return cls(
            id=job.id,
            queue_name=job.queue_name,
            state=job.state,
            priority=job.priority,
            attempts_made=job.attempts_made,
            max_attempts=job.max_attempts,
            created_at=_timestamp(job.created_at),
            processed_on=_timestamp(job.processed_on),
            finished_on=_timestamp(job.finished_on),
            failed_reason=job.failed_reason,
            return_value=job.return_value,
            stalled_count=job.stalled_count,
            retry_delays=list(job.retry_delays),
            payload=job.payload,
        )


class QueueStatsResponse(BaseModel):
    queue: str
    waiting: int
    active: int
    completed: int
    failed: int
    delayed: int
    concurrency: int
    paused: bool
    workers: int


class CleanQueueResponse(BaseModel):
    queue: str
    completed: int
    failed: int


class ConfigResponse(BaseModel):
    revision: int
    loaded_at: Optional[datetime] = None
    config: Dict[str, Any]
