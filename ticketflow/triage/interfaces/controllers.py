"""
Triage Controllers (API Routes)
===============================

FastAPI routes for ticket triage, queue operations and configuration.

Controllers delegate to the TriageAgentService held in ``app.state``;
domain exceptions are mapped to HTTP responses by the application's
exception handlers.
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Request, status

from ticketflow.aiconfig.application import ConfigStore
from ticketflow.queueing.application import QueueScheduler
from ticketflow.shared.infrastructure.logging import get_context_logger, get_logger
from ticketflow.triage.application import (
    BatchItemError,
    BatchRequest,
    BatchResponse,
    CleanQueueRequest,
    CleanQueueResponse,
    ConfigImportRequest,
    ConfigResponse,
    JobResponse,
    KnowledgeIndexRequest,
    ProcessingResultResponse,
    QueueStatsResponse,
    QueueTicketRequest,
    SuggestedResponseInfo,
    TicketRequest,
    TriageAgentService,
)

logger = get_logger(__name__)
router = APIRouter(prefix="/triage", tags=["Ticket Triage"])


# ========== Example payloads for Swagger ==========

PROCESS_REQUEST_EXAMPLE = {
    "id": "TICKET-001",
    "subject": "Cannot log in",
    "description": "I forgot my password and the reset email never arrived.",
    "priority": "medium"
}

PROCESS_RESPONSE_EXAMPLE = {
    "ticket_id": "TICKET-001",
    "timestamp": "2024-01-01T12:00:00+00:00",
    "processing_time_ms": 42,
    "classification": {
        "category": "password_reset",
        "confidence": 0.93,
        "priority": "medium",
        "priority_confidence": 0.84,
        "reasoning": "Mentions password reset"
    },
    "knowledge_matches": [
        {"article_id": "kb-12", "title": "Resetting your password", "score": 0.91, "excerpt": "", "url": None}
    ],
    "suggested_response": {
        "content": "You can reset your password from the sign-in page...",
        "type": "solution",
        "confidence": 0.9,
        "citations": ["kb-12"]
    },
    "confidence": 0.9,
    "auto_resolve": True,
    "errors": [],
    "priority": "medium",
    "recommendation": "auto_resolve",
    "skipped_steps": []
}


# ========== Dependencies ==========

def get_triage_service(request: Request) -> TriageAgentService:
    """Get the triage service from app state."""
    service = getattr(request.app.state, "triage_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Triage service not available"
        )
    return service


def get_config_store(service: TriageAgentService = Depends(get_triage_service)) -> ConfigStore:
    return service.config_store


def get_scheduler(service: TriageAgentService = Depends(get_triage_service)) -> QueueScheduler:
    return service.scheduler


def _config_response(store: ConfigStore) -> ConfigResponse:
    return ConfigResponse(revision=store.revision, loaded_at=store.loaded_at, config=store.get_all())


# ========== Processing ==========

@router.post(
    "/process",
    response_model=ProcessingResultResponse,
    summary="Run a ticket through the triage pipeline",
    description="""
    Classify the ticket, search the knowledge base, draft a response, score
    confidence and decide auto-resolution, synchronously.

    Stage failures do not fail the request; they are listed in `errors` and
    the ticket is never auto-resolved when any stage failed.
    """,
    responses={
        200: {
            "description": "Ticket processed",
            "content": {"application/json": {"example": PROCESS_RESPONSE_EXAMPLE}}
        },
        422: {"description": "Invalid ticket"}
    }
)
async def process_ticket(
    request: Request,
    payload: TicketRequest = Body(..., examples=[PROCESS_REQUEST_EXAMPLE]),
    service: TriageAgentService = Depends(get_triage_service)
):
    request_logger = get_context_logger(__name__, getattr(request.state, "correlation_id", None))
    request_logger.info(f"Processing ticket {payload.id}")

    result = await service.process_ticket(payload.model_dump())
    return result.to_dict()


@router.post("/batch", response_model=BatchResponse, summary="Process several tickets in one call")
async def process_batch(
    payload: BatchRequest,
    service: TriageAgentService = Depends(get_triage_service)
):
    outcomes = await service.process_batch([ticket.model_dump() for ticket in payload.tickets])

    results, errors = [], []
    for outcome in outcomes:
        if isinstance(outcome, dict):
            errors.append(BatchItemError(**outcome))
        else:
            results.append(outcome.to_dict())

    logger.info("Batch processed", extra={"processed": len(results), "failed": len(errors)})
    return BatchResponse(results=results, errors=errors, processed=len(results), failed=len(errors))


@router.post(
    "/queue",
    response_model=JobResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Queue a ticket for background processing"
)
async def queue_ticket(
    payload: QueueTicketRequest,
    service: TriageAgentService = Depends(get_triage_service)
):
    job = await service.queue_ticket_processing(payload.ticket.model_dump(), payload.priority)
    return JobResponse.from_domain(job)


@router.post(
    "/respond",
    response_model=SuggestedResponseInfo,
    summary="Draft a reply for a ticket without gating it"
)
async def generate_response(
    payload: TicketRequest,
    service: TriageAgentService = Depends(get_triage_service)
):
    response = await service.generate_response(payload.model_dump())
    return response.to_dict()


@router.post(
    "/respond/queue",
    response_model=JobResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Queue reply drafting for a ticket"
)
async def queue_response_generation(
    payload: TicketRequest,
    service: TriageAgentService = Depends(get_triage_service)
):
    job = await service.queue_response_generation(payload.model_dump())
    return JobResponse.from_domain(job)


@router.post(
    "/knowledge/index",
    response_model=JobResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Queue knowledge base articles for indexing"
)
async def queue_knowledge_indexing(
    payload: KnowledgeIndexRequest,
    service: TriageAgentService = Depends(get_triage_service)
):
    job = await service.queue_knowledge_indexing(payload.articles)
    return JobResponse.from_domain(job)


# ========== Queues ==========

@router.get("/jobs/{queue_name}/{job_id}", response_model=JobResponse, summary="Get job status")
async def get_job(
    queue_name: str,
    job_id: str,
    scheduler: QueueScheduler = Depends(get_scheduler)
):
    job = await scheduler.get_job_status(queue_name, job_id)
    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Job {job_id} not found in queue {queue_name}"
        )
    return JobResponse.from_domain(job)


@router.get("/queues/{queue_name}/stats", response_model=QueueStatsResponse, summary="Get queue statistics")
async def get_queue_stats(queue_name: str, scheduler: QueueScheduler = Depends(get_scheduler)):
    return await scheduler.get_queue_stats(queue_name)


@router.post("/queues/{queue_name}/pause", response_model=QueueStatsResponse, summary="Pause a queue")
async def pause_queue(queue_name: str, scheduler: QueueScheduler = Depends(get_scheduler)):
    await scheduler.pause_queue(queue_name)
    return await scheduler.get_queue_stats(queue_name)


@router.post("/queues/{queue_name}/resume", response_model=QueueStatsResponse, summary="Resume a queue")
async def resume_queue(queue_name: str, scheduler: QueueScheduler = Depends(get_scheduler)):
    await scheduler.resume_queue(queue_name)
    return await scheduler.get_queue_stats(queue_name)


@router.post(
    "/queues/{queue_name}/clean",
    response_model=CleanQueueResponse,
    summary="Purge finished jobs older than the grace period"
)
async def clean_queue(
    queue_name: str,
    payload: Optional[CleanQueueRequest] = None,
    scheduler: QueueScheduler = Depends(get_scheduler)
):
    payload = payload or CleanQueueRequest()
    removed = await scheduler.clean_queue(queue_name, payload.grace_seconds)
    return CleanQueueResponse(queue=queue_name, **removed)


# ========== Configuration ==========

@router.get("/config", response_model=ConfigResponse, summary="Get the current triage configuration")
async def get_config(store: ConfigStore = Depends(get_config_store)):
    return _config_response(store)


@router.patch("/config", response_model=ConfigResponse, summary="Update part of the triage configuration")
async def update_config(
    payload: Dict[str, Any] = Body(..., examples=[{"auto_resolve_threshold": 0.9}]),
    store: ConfigStore = Depends(get_config_store)
):
    await store.update(payload)
    return _config_response(store)


@router.post("/config/reset", response_model=ConfigResponse, summary="Reset the configuration to defaults")
async def reset_config(store: ConfigStore = Depends(get_config_store)):
    await store.reset_to_defaults()
    return _config_response(store)


@router.get("/config/export", summary="Export the configuration document")
async def export_config(store: ConfigStore = Depends(get_config_store)):
    return store.export_config()


@router.post("/config/import", response_model=ConfigResponse, summary="Import a configuration document")
async def import_config(
    payload: ConfigImportRequest,
    store: ConfigStore = Depends(get_config_store)
):
    await store.import_config(payload.model_dump())
    return _config_response(store)


# ========== Health ==========

@router.get("/health", summary="Triage service health")
async def triage_health(service: TriageAgentService = Depends(get_triage_service)):
    return await service.get_health_status()


__all__ = ["router", "get_triage_service"]
