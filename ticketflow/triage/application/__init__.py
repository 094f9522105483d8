"""
Triage Application Layer
========================

Contains:
- Collaborator interfaces for the four pipeline stages
- TriagePipeline and TriageAgentService
- DTOs for the API layer
"""

from ticketflow.triage.application.services import (
    IClassificationEngine,
    IKnowledgeSearch,
    IResponseGenerator,
    IConfidenceScorer,
    TriagePipeline,
    TriageAgentService,
    MANAGED_QUEUES,
    job_priority_for,
    job_defaults_for,
)
from ticketflow.triage.application.dto import (
    TicketRequest,
    BatchRequest,
    QueueTicketRequest,
    KnowledgeIndexRequest,
    CleanQueueRequest,
    ConfigImportRequest,
    ProcessingResultResponse,
    SuggestedResponseInfo,
    BatchItemError,
    BatchResponse,
    JobResponse,
    QueueStatsResponse,
    CleanQueueResponse,
    ConfigResponse,
)

__all__ = [
    # Interfaces
    "IClassificationEngine",
    "IKnowledgeSearch",
    "IResponseGenerator",
    "IConfidenceScorer",
    # Services
    "TriagePipeline",
    "TriageAgentService",
    "MANAGED_QUEUES",
    "job_priority_for",
    "job_defaults_for",
    # DTOs
    "TicketRequest",
    "BatchRequest",
    "QueueTicketRequest",
    "KnowledgeIndexRequest",
    "CleanQueueRequest",
    "ConfigImportRequest",
    "ProcessingResultResponse",
    "SuggestedResponseInfo",
    "BatchItemError",
    "BatchResponse",
    "JobResponse",
    "QueueStatsResponse",
    "CleanQueueResponse",
    "ConfigResponse",
]
