"""
Ticketflow - Main Application
=============================

Support ticket triage service.

Modules:
- AI Config: validated, hot-reloadable triage configuration store
- Queueing: priority job queues with retries, leases and stall recovery
- Triage: classification, knowledge search, response drafting and the
  auto-resolution gate

Clean Architecture Layers:
- Interfaces: FastAPI controllers
- Application: Services and DTOs
- Domain: Entities and value objects
- Infrastructure: Database, Redis broker, file watching, background jobs
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

# Configuration and Core
from ticketflow.config import Settings, get_settings
from ticketflow.core import ApplicationException

# Infrastructure
from ticketflow.infrastructure.database import init_database, close_database, create_tables

# AI Config Module
from ticketflow.aiconfig.application import ConfigStore, IConfigRepository
from ticketflow.aiconfig.infrastructure import (
    ConfigFileWatcher,
    SQLAlchemyConfigRepository,
    YAMLConfigRepository,
)

# Queueing Module
from ticketflow.queueing.application import IBroker, QueueScheduler
from ticketflow.queueing.infrastructure import (
    InMemoryBroker,
    JobEventLogger,
    QueueMaintenanceScheduler,
    RedisBroker,
)

# Triage Module
from ticketflow.triage.application import TriageAgentService, TriagePipeline
from ticketflow.triage.infrastructure import (
    StubClassificationEngine,
    StubConfidenceScorer,
    StubKnowledgeSearch,
    StubResponseGenerator,
)
from ticketflow.triage.interfaces import triage_router

# Shared
from ticketflow.shared.api.middleware import (
    CorrelationIDMiddleware,
    LoggingMiddleware,
    TimingMiddleware,
    application_exception_handler,
    global_exception_handler,
)
from ticketflow.shared.infrastructure.logging import setup_logging, get_logger

logger = get_logger(__name__)


# ========== Service Wiring ==========

@dataclass
class ServiceContainer:
    """Everything the lifespan starts and stops, in start order."""
    settings: Settings
    config_store: ConfigStore
    scheduler: QueueScheduler
    triage_service: TriageAgentService
    event_logger: JobEventLogger
    maintenance: Optional[QueueMaintenanceScheduler] = None
    config_watcher: Optional[ConfigFileWatcher] = None


def build_config_repository(settings: Settings) -> IConfigRepository:
    if settings.config_backend == "file":
        return YAMLConfigRepository(settings.config_file_path)
    return SQLAlchemyConfigRepository()


def build_broker(settings: Settings) -> IBroker:
    if settings.broker_backend == "memory":
        return InMemoryBroker()
    return RedisBroker(settings.redis_url, prefix=settings.redis_key_prefix)


def build_container(settings: Settings) -> ServiceContainer:
    """Wire the services for ``settings`` without starting anything."""
    config_store = ConfigStore(build_config_repository(settings))

    scheduler = QueueScheduler(
        build_broker(settings),
        lock_duration=settings.queue_lock_duration_seconds,
        stall_interval=settings.queue_stall_interval_seconds,
        max_stalled_count=settings.queue_max_stalled_count,
        poll_interval=settings.queue_poll_interval_seconds,
        drain_timeout=settings.queue_drain_timeout_seconds,
        event_buffer_size=settings.queue_event_buffer_size,
    )

    classifier = StubClassificationEngine()
    knowledge_search = StubKnowledgeSearch()
    response_generator = StubResponseGenerator()
    confidence_scorer = StubConfidenceScorer()

    pipeline = TriagePipeline(
        config_store, classifier, knowledge_search, response_generator, confidence_scorer
    )
    triage_service = TriageAgentService(
        config_store,
        scheduler,
        pipeline,
        classifier,
        knowledge_search,
        response_generator,
        confidence_scorer
    )

    maintenance = None
    if settings.queue_clean_interval_seconds > 0:
        maintenance = QueueMaintenanceScheduler(
            scheduler,
            interval_seconds=settings.queue_clean_interval_seconds,
            grace_seconds=settings.queue_clean_grace_seconds
        )

    config_watcher = None
    if settings.config_backend == "file" and settings.config_watch_enabled:
        config_watcher = ConfigFileWatcher(config_store, settings.config_file_path)

    return ServiceContainer(
        settings=settings,
        config_store=config_store,
        scheduler=scheduler,
        triage_service=triage_service,
        event_logger=JobEventLogger(scheduler),
        maintenance=maintenance,
        config_watcher=config_watcher,
    )


# ========== Lifespan ==========

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """
    Application lifespan manager.

    STARTUP:
    1. Setup structured logging
    2. Initialize database (database config backend)
    3. Load configuration, register queues and processors
    4. Start queue workers, event logger and retention sweep
    5. Start the config file watcher (file config backend)

    SHUTDOWN runs the same steps in reverse.
    """
    settings: Settings = app.state.settings

    # === STARTUP ===
    setup_logging(settings.log_level, settings.environment)
    logger.info("Starting Ticketflow", extra={
        "version": settings.app_version,
        "environment": settings.environment,
        "config_backend": settings.config_backend,
        "broker_backend": settings.broker_backend
    })

    if settings.config_backend == "database":
        logger.info("Initializing database")
        init_database(settings)
        await create_tables()

    container = build_container(settings)
    await container.triage_service.initialize()
    await container.scheduler.start()
    container.event_logger.start()
    if container.maintenance:
        await container.maintenance.start()
    if container.config_watcher:
        container.config_watcher.start()

    app.state.container = container
    app.state.triage_service = container.triage_service
    logger.info("Ticketflow started successfully")

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Shutting down Ticketflow")

    if container.config_watcher:
        container.config_watcher.stop()
    if container.maintenance:
        await container.maintenance.stop()
    await container.triage_service.shutdown()
    await container.event_logger.stop()

    if settings.config_backend == "database":
        await close_database()

    app.state.triage_service = None
    logger.info("Ticketflow shutdown complete")


# ========== Application Factory ==========

def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()

    app = FastAPI(
        title="Ticketflow API",
        description="""
    ## Support Ticket Triage Service

    Classifies incoming tickets, searches the knowledge base, drafts a reply
    and decides whether the ticket can be auto-resolved.

    ---

    ### Triage
    - `POST /triage/process` - Run a ticket through the pipeline
    - `POST /triage/batch` - Process up to 100 tickets
    - `POST /triage/queue` - Queue a ticket for background processing
    - `POST /triage/respond` - Draft a reply without gating

    ### Queues
    - `GET /triage/jobs/{queue}/{job_id}` - Job status
    - `GET /triage/queues/{queue}/stats` - Job counts per state
    - `POST /triage/queues/{queue}/pause|resume|clean`

    ### Configuration
    - `GET|PATCH /triage/config` - Read or update the triage configuration
    - `POST /triage/config/reset` - Restore defaults
    - `GET /triage/config/export`, `POST /triage/config/import`
    """,
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )
    app.state.settings = settings

    # === CORS Middleware ===
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # === Custom Middleware (from shared) ===
    app.add_middleware(TimingMiddleware)
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(CorrelationIDMiddleware)
    app.add_exception_handler(ApplicationException, application_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)

    # === Include Module Routers ===
    app.include_router(triage_router)

    # === Health Check Endpoint ===

    @app.get("/health", tags=["Health"])
    async def health_check(request: Request):
        """Overall health: configuration store, queues and triage engines."""
        service = getattr(request.app.state, "triage_service", None)
        if service is None:
            return {"status": "initializing", "version": settings.app_version}

        health = await service.get_health_status()
        health["version"] = settings.app_version
        health["environment"] = settings.environment
        return health

    @app.get("/", tags=["Root"])
    async def root():
        """Root endpoint with API information."""
        return {
            "service": settings.app_name,
            "version": settings.app_version,
            "architecture": "Clean Architecture / Modular Monolith",
            "docs": "/docs",
            "health": "/health"
        }

    return app


app = create_app()


# === Development Entry Point ===

if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "ticketflow.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.environment == "development",
        log_level="info"
    )
