"""
Triage Application Services
===========================

Application services for the triage pipeline.

- TriagePipeline runs the four stages for one ticket and isolates stage
  failures into ProcessingResult.errors.
- TriageAgentService wires the pipeline to the job queues and keeps the
  queues in step with the configuration store.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from ticketflow.aiconfig.application import ConfigStore
from ticketflow.aiconfig.domain import TriageConfig
from ticketflow.config import HealthStatus, JobPriority, PipelineStep, Priority, QueueName
from ticketflow.core import ConfigurationException, InvalidTicketError, UnrecoverableJobError
from ticketflow.queueing.application import QueueScheduler
from ticketflow.queueing.domain import BackoffPolicy, BackoffType, Job
from ticketflow.shared.infrastructure.logging import get_logger
from ticketflow.triage.domain import (
    AutoResolutionGate,
    BatchOutcome,
    Classification,
    KnowledgeMatch,
    ProcessingResult,
    StageError,
    SuggestedResponse,
    Ticket,
)

logger = get_logger(__name__)

TicketInput = Union[Ticket, Mapping[str, Any]]


# ========== Collaborator Interfaces ==========

class IClassificationEngine(ABC):
    """Assigns a category (and optionally a priority) to a ticket."""

    @abstractmethod
    async def classify(self, ticket: Ticket) -> Classification:
        """Classify the ticket: a Classification or a ``{category, confidence, tags}`` mapping."""

    async def get_health(self) -> Dict[str, Any]:
        return {"status": HealthStatus.HEALTHY}


class IKnowledgeSearch(ABC):
    """Finds knowledge base articles relevant to a ticket."""

    @abstractmethod
    async def search(
        self,
        ticket: Ticket,
        classification: Optional[Classification]
    ) -> Sequence[KnowledgeMatch]:
        """
        Return matches, best first; an empty sequence when nothing matches.

        Matches may be KnowledgeMatch objects or ``{articleId, score, snippet}``
        mappings.
        """

    async def index_articles(self, articles: List[Dict[str, Any]]) -> Dict[str, Any]:
        """Add articles to the search index."""
        raise NotImplementedError(f"{type(self).__name__} does not support indexing")

    async def get_health(self) -> Dict[str, Any]:
        return {"status": HealthStatus.HEALTHY}


class IResponseGenerator(ABC):
    """Drafts a reply from the ticket and whatever the earlier stages found."""

    @abstractmethod
    async def generate(
        self,
        ticket: Ticket,
        classification: Optional[Classification],
        matches: Sequence[KnowledgeMatch]
    ) -> SuggestedResponse:
        """Draft a reply: a SuggestedResponse or a ``{text, citedArticleIds}`` mapping."""

    async def get_health(self) -> Dict[str, Any]:
        return {"status": HealthStatus.HEALTHY}


class IConfidenceScorer(ABC):
    """Scores how much the pipeline's output can be trusted, in [0, 1]."""

    @abstractmethod
    async def calculate(
        self,
        ticket: Ticket,
        classification: Optional[Classification],
        matches: Sequence[KnowledgeMatch],
        response: Optional[SuggestedResponse]
    ) -> float:
        """Return the overall confidence."""

    async def get_health(self) -> Dict[str, Any]:
        return {"status": HealthStatus.HEALTHY}


# ========== Pipeline ==========

class TriagePipeline:
    """
    Runs classify -> knowledge search -> response -> confidence -> gate.

    Stateless with respect to queues: one configuration snapshot is read per
    ticket and nothing is persisted. Only a missing ticket identifier aborts
    processing; every stage failure is recorded and the pipeline carries on
    with that stage's neutral output.
    """

    def __init__(
        self,
        config_store: ConfigStore,
        classifier: IClassificationEngine,
        knowledge_search: IKnowledgeSearch,
        response_generator: IResponseGenerator,
        confidence_scorer: IConfidenceScorer,
        gate: Optional[AutoResolutionGate] = None
    ):
        self._config_store = config_store
        self._classifier = classifier
        self._knowledge_search = knowledge_search
        self._response_generator = response_generator
        self._confidence_scorer = confidence_scorer
        self._gate = gate or AutoResolutionGate()

    async def process_ticket(self, ticket: TicketInput) -> ProcessingResult:
        """
        Run one ticket through the pipeline.

        Raises:
            InvalidTicketError: the ticket has no usable identifier
        """
        start_time = time.perf_counter()
        ticket = self._coerce_ticket(ticket)
        config = self._config_store.current

        errors: List[StageError] = []
        skipped: List[str] = []

        logger.info("Processing ticket", extra={"ticket_id": ticket.id})

        # Step 1: classification
        classification: Optional[Classification] = None
        if self._stage_enabled(config, "classification"):
            try:
                classification = Classification.from_value(await self._classifier.classify(ticket))
            except Exception as e:
                errors.append(self._stage_error(ticket, PipelineStep.CLASSIFICATION, e))
        else:
            skipped.append(PipelineStep.CLASSIFICATION)

        # Step 2: knowledge search
        matches: List[KnowledgeMatch] = []
        if self._stage_enabled(config, "knowledge_search"):
            try:
                found = await self._knowledge_search.search(ticket, classification)
                matches = [KnowledgeMatch.from_value(match) for match in found or []]
                matches = matches[:config.knowledge_search.max_results]
            except Exception as e:
                matches = []
                errors.append(self._stage_error(ticket, PipelineStep.KNOWLEDGE_SEARCH, e))
        else:
            skipped.append(PipelineStep.KNOWLEDGE_SEARCH)

        # Step 3: response generation
        response: Optional[SuggestedResponse] = None
        if self._stage_enabled(config, "response_generation"):
            try:
                response = SuggestedResponse.from_value(
                    await self._response_generator.generate(ticket, classification, tuple(matches))
                )
            except Exception as e:
                errors.append(self._stage_error(ticket, PipelineStep.RESPONSE_GENERATION, e))
        else:
            skipped.append(PipelineStep.RESPONSE_GENERATION)

        # Step 4: confidence
        confidence = 0.0
        if self._stage_enabled(config, None):
            try:
                score = await self._confidence_scorer.calculate(
                    ticket, classification, tuple(matches), response
                )
                confidence = self._check_confidence(score)
            except Exception as e:
                confidence = 0.0
                errors.append(self._stage_error(ticket, PipelineStep.CONFIDENCE_CALCULATION, e))
        else:
            skipped.append(PipelineStep.CONFIDENCE_CALCULATION)

        # Step 5: auto-resolution gate
        draft = ProcessingResult(
            ticket_id=ticket.id,
            timestamp=datetime.now(timezone.utc),
            processing_time_ms=0,
            classification=classification,
            knowledge_matches=tuple(matches),
            suggested_response=response,
            confidence=confidence,
            auto_resolve=False,
            errors=tuple(errors),
            priority=self._gate.effective_priority(ticket, classification),
            skipped_steps=tuple(skipped),
        )
        result = replace(
            draft,
            auto_resolve=self._gate.decide(draft, config),
            recommendation=self._gate.recommend(draft, config),
            processing_time_ms=int((time.perf_counter() - start_time) * 1000),
        )

        logger.info(
            "Ticket processed",
            extra={
                "ticket_id": ticket.id,
                "confidence": result.confidence,
                "auto_resolve": result.auto_resolve,
                "recommendation": result.recommendation,
                "error_count": len(result.errors),
                "processing_time_ms": result.processing_time_ms
            }
        )
        return result

    async def process_batch(self, tickets: Iterable[TicketInput]) -> List[BatchOutcome]:
        """
        Process tickets one after another.

        An invalid ticket yields ``{"ticket_id": ..., "error": ...}`` in its
        slot instead of stopping the batch.
        """
        outcomes: List[BatchOutcome] = []
        for ticket in tickets:
            try:
                outcomes.append(await self.process_ticket(ticket))
            except InvalidTicketError as e:
                outcomes.append({"ticket_id": self._raw_ticket_id(ticket), "error": e.message})
        return outcomes

    @staticmethod
    def _coerce_ticket(ticket: TicketInput) -> Ticket:
        try:
            ticket = Ticket.from_payload(ticket)
        except TypeError as e:
            raise InvalidTicketError(str(e)) from e
        if ticket.id is None or not str(ticket.id).strip():
            raise InvalidTicketError("Ticket identifier is required")
        return ticket

    @staticmethod
    def _raw_ticket_id(ticket: Any) -> Optional[str]:
        if isinstance(ticket, Ticket):
            return ticket.id
        if isinstance(ticket, Mapping):
            return ticket.get("id") or ticket.get("ticket_id")
        return None

    @staticmethod
    def _stage_enabled(config: TriageConfig, section: Optional[str]) -> bool:
        if not config.enabled:
            return False
        if section is None:
            return True
        return getattr(config, section).enabled

    @staticmethod
    def _check_confidence(score: Any) -> float:
        if isinstance(score, bool) or not isinstance(score, (int, float)):
            raise ValueError(f"Confidence must be a number, got {score!r}")
        if not 0.0 <= score <= 1.0:
            raise ValueError(f"Confidence {score} is outside [0, 1]")
        return float(score)

    @staticmethod
    def _stage_error(ticket: Ticket, step: str, error: Exception) -> StageError:
        message = str(error) or type(error).__name__
        logger.warning(
            f"{step} failed",
            extra={"ticket_id": ticket.id, "step": step, "error": message}
        )
        return StageError(step=step, message=message)


# ========== Triage Agent Service ==========

_PRIORITY_TO_JOB = {
    Priority.URGENT: JobPriority.URGENT,
    Priority.CRITICAL: JobPriority.URGENT,
    Priority.HIGH: JobPriority.HIGH,
}

MANAGED_QUEUES = (
    QueueName.TICKET_PROCESSING,
    QueueName.KNOWLEDGE_INDEXING,
    QueueName.RESPONSE_GENERATION,
)


def job_priority_for(priority: Optional[str]) -> int:
    """urgent (or critical) -> 1, high -> 2, anything else -> 3."""
    return _PRIORITY_TO_JOB.get(str(priority or "").lower(), JobPriority.NORMAL)


def job_defaults_for(config: TriageConfig) -> Dict[str, Any]:
    """Queue default job options derived from the triage configuration."""
    return {
        "attempts": config.queue.retry_attempts,
        "backoff": BackoffPolicy(BackoffType.EXPONENTIAL, config.queue.retry_delay_ms / 1000),
        "timeout": config.max_processing_time_ms / 1000,
    }


class TriageAgentService:
    """
    Entry point for triage: synchronous processing, queued processing and
    health.

    Registers processors for the triage queues and re-applies queue
    concurrency and retry settings whenever the configuration changes.
    """

    def __init__(
        self,
        config_store: ConfigStore,
        scheduler: QueueScheduler,
        pipeline: TriagePipeline,
        classifier: IClassificationEngine,
        knowledge_search: IKnowledgeSearch,
        response_generator: IResponseGenerator,
        confidence_scorer: IConfidenceScorer
    ):
        self._config_store = config_store
        self._scheduler = scheduler
        self._pipeline = pipeline
        self._classifier = classifier
        self._knowledge_search = knowledge_search
        self._response_generator = response_generator
        self._engines = {
            "classification": classifier,
            "knowledge": knowledge_search,
            "response": response_generator,
            "confidence": confidence_scorer,
        }
        self._initialized = False

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def config_store(self) -> ConfigStore:
        return self._config_store

    @property
    def scheduler(self) -> QueueScheduler:
        return self._scheduler

    @property
    def pipeline(self) -> TriagePipeline:
        return self._pipeline

    async def initialize(self) -> None:
        """Load configuration, register the queues and their processors."""
        if self._initialized:
            return

        logger.info("Initializing triage agent service")
        config = await self._config_store.load()

        defaults = job_defaults_for(config)
        for name in MANAGED_QUEUES:
            self._scheduler.create_queue(
                name,
                concurrency=config.queue.concurrency.get(name, 1),
                default_options=defaults
            )

        self._scheduler.add_processor(QueueName.TICKET_PROCESSING, self._process_ticket_job)
        self._scheduler.add_processor(QueueName.KNOWLEDGE_INDEXING, self._index_knowledge_job)
        self._scheduler.add_processor(QueueName.RESPONSE_GENERATION, self._generate_response_job)

        self._config_store.add_watcher(self._on_config_change)
        self._initialized = True
        logger.info("Triage agent service initialized", extra={"queues": list(MANAGED_QUEUES)})

    async def shutdown(self) -> None:
        logger.info("Shutting down triage agent service")
        self._config_store.remove_watcher(self._on_config_change)
        await self._scheduler.shutdown()
        self._initialized = False

    # ---------- Processing ----------

    async def process_ticket(self, ticket: TicketInput) -> ProcessingResult:
        return await self._pipeline.process_ticket(ticket)

    async def process_batch(self, tickets: Iterable[TicketInput]) -> List[BatchOutcome]:
        return await self._pipeline.process_batch(tickets)

    async def queue_ticket_processing(self, ticket: TicketInput, priority: Optional[str] = None) -> Job:
        """
        Enqueue a ticket for background processing.

        ``priority`` defaults to the ticket's own priority.
        """
        self._ensure_initialized()
        ticket = TriagePipeline._coerce_ticket(ticket)
        job_priority = job_priority_for(priority or ticket.priority)

        job = await self._scheduler.add_job(
            QueueName.TICKET_PROCESSING,
            ticket.to_dict(),
            {"priority": job_priority}
        )
        logger.info(
            "Ticket queued for processing",
            extra={"ticket_id": ticket.id, "job_id": job.id, "priority": job_priority}
        )
        return job

    async def queue_knowledge_indexing(self, articles: List[Dict[str, Any]]) -> Job:
        self._ensure_initialized()
        return await self._scheduler.add_job(QueueName.KNOWLEDGE_INDEXING, {"articles": articles})

    async def queue_response_generation(self, ticket: TicketInput) -> Job:
        self._ensure_initialized()
        ticket = TriagePipeline._coerce_ticket(ticket)
        return await self._scheduler.add_job(QueueName.RESPONSE_GENERATION, {"ticket": ticket.to_dict()})

    async def generate_response(self, ticket: TicketInput) -> SuggestedResponse:
        """Classify, search and draft a reply without scoring or gating."""
        ticket = TriagePipeline._coerce_ticket(ticket)
        classification = Classification.from_value(await self._classifier.classify(ticket))
        matches = await self._knowledge_search.search(ticket, classification)
        matches = tuple(KnowledgeMatch.from_value(match) for match in matches or [])
        return SuggestedResponse.from_value(
            await self._response_generator.generate(ticket, classification, matches)
        )

    # ---------- Health ----------

    async def get_health_status(self) -> Dict[str, Any]:
        status: Dict[str, Any] = {
            "service": "triage-agent",
            "status": HealthStatus.HEALTHY if self._initialized else "initializing",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "engines": {},
            "queues": {},
            "config": self._config_store.get_health_status(),
        }
        if not self._initialized:
            return status

        for name, engine in self._engines.items():
            try:
                status["engines"][name] = await engine.get_health()
            except Exception as e:
                status["engines"][name] = {"status": HealthStatus.UNHEALTHY, "error": str(e)}

        status["queues"] = await self._scheduler.get_health()

        statuses = [status["queues"]["status"], status["config"]["status"]]
        statuses += [engine.get("status", HealthStatus.HEALTHY) for engine in status["engines"].values()]
        if HealthStatus.UNHEALTHY in statuses:
            status["status"] = HealthStatus.UNHEALTHY
        elif HealthStatus.DEGRADED in statuses:
            status["status"] = HealthStatus.DEGRADED
        return status

    # ---------- Queue processors ----------

    async def _process_ticket_job(self, job: Job) -> Dict[str, Any]:
        try:
            result = await self._pipeline.process_ticket(job.payload)
        except InvalidTicketError as e:
            raise UnrecoverableJobError(e.message) from e
        return result.to_dict()

    async def _index_knowledge_job(self, job: Job) -> Dict[str, Any]:
        articles = (job.payload or {}).get("articles")
        if not isinstance(articles, list):
            raise UnrecoverableJobError("Knowledge indexing job requires a list of articles")
        return await self._knowledge_search.index_articles(articles)

    async def _generate_response_job(self, job: Job) -> Dict[str, Any]:
        try:
            response = await self.generate_response((job.payload or {}).get("ticket") or {})
        except InvalidTicketError as e:
            raise UnrecoverableJobError(e.message) from e
        return response.to_dict()

    # ---------- Config propagation ----------

    async def _on_config_change(self, config: TriageConfig) -> None:
        defaults = job_defaults_for(config)
        for name in MANAGED_QUEUES:
            if name not in self._scheduler.queue_names:
                continue
            await self._scheduler.update_queue(
                name,
                concurrency=config.queue.concurrency.get(name),
                default_options=defaults
            )

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            raise ConfigurationException("Triage agent service not initialized")
