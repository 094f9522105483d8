"""
Configuration Module
====================

Process settings and shared constants using Pydantic.

Process settings (connection strings, queue timing, logging) come from the
environment. Tunable triage behaviour lives in the hot-reloadable config
store (see ``ticketflow.aiconfig``), not here.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator
from functools import lru_cache
from pathlib import Path
from typing import List


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Uses Pydantic for validation and type safety.
    """

    # ========== Application ==========
    app_name: str = Field(default="ticketflow", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: str = Field(default="development", description="Environment name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Root log level")

    # ========== Server ==========
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port", ge=1, le=65535)

    # ========== Database ==========
    database_url: str = Field(
        default="postgresql+asyncpg://localhost:5432/tickets",
        description="PostgreSQL connection URL (async)"
    )
    db_pool_size: int = Field(default=5, description="Database connection pool size", ge=1)
    db_max_overflow: int = Field(default=10, description="Max overflow connections", ge=0)

    # ========== Triage Configuration Store ==========
    config_backend: str = Field(
        default="database",
        description="Where triage configuration is persisted: database or file"
    )
    config_file_path: Path = Field(
        default=Path("triage_config.yaml"),
        description="Path to the triage configuration YAML file (file backend)"
    )
    config_watch_enabled: bool = Field(
        default=True,
        description="Hot-reload the configuration file when it changes"
    )

    # ========== Queue / Broker ==========
    broker_backend: str = Field(
        default="redis",
        description="Job broker implementation: redis or memory"
    )
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis connection URL for the job broker"
    )
    redis_key_prefix: str = Field(default="ticketflow", description="Redis key namespace")
    queue_lock_duration_seconds: float = Field(
        default=30.0,
        description="Lease length a worker holds on an active job",
        gt=0
    )
    queue_stall_interval_seconds: float = Field(
        default=30.0,
        description="Seconds between stalled-job checks",
        gt=0
    )
    queue_max_stalled_count: int = Field(
        default=1,
        description="Times a job may stall before it is failed",
        ge=0
    )
    queue_poll_interval_seconds: float = Field(
        default=1.0,
        description="Idle worker poll interval",
        gt=0
    )
    queue_drain_timeout_seconds: float = Field(
        default=10.0,
        description="Seconds to wait for in-flight jobs on shutdown",
        ge=0
    )
    queue_event_buffer_size: int = Field(
        default=1000,
        description="Capacity of the job event channel",
        ge=1
    )
    queue_clean_interval_seconds: int = Field(
        default=3600,
        description="Seconds between retention sweeps (0 disables)",
        ge=0
    )
    queue_clean_grace_seconds: float = Field(
        default=24 * 60 * 60,
        description="Age after which finished jobs are purged by the sweep",
        ge=0
    )

    # ========== CORS ==========
    cors_origins: List[str] = Field(
        default=["http://localhost:3000", "http://localhost:8080"],
        description="Allowed CORS origins"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Ensure environment is one of allowed values."""
        allowed = {"development", "staging", "production", "test"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v

    @field_validator("config_backend")
    @classmethod
    def validate_config_backend(cls, v: str) -> str:
        if v not in ("database", "file"):
            raise ValueError("config_backend must be 'database' or 'file'")
        return v

    @field_validator("broker_backend")
    @classmethod
    def validate_broker_backend(cls, v: str) -> str:
        if v not in ("redis", "memory"):
            raise ValueError("broker_backend must be 'redis' or 'memory'")
        return v


@lru_cache()
def get_settings() -> Settings:
    """Returns cached Settings instance."""
    return Settings()


# ========== Constants ==========

class Priority(str):
    """Ticket priority levels, lowest first."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"
    CRITICAL = "critical"   # treated as urgent


class TicketCategory(str):
    """Categories produced by the classification engine."""
    PASSWORD_RESET = "password_reset"
    ACCOUNT_UNLOCK = "account_unlock"
    BASIC_INFO = "basic_info"
    TECHNICAL = "technical"
    BILLING = "billing"
    FEATURE_REQUEST = "feature_request"
    GENERAL = "general"


class JobState(str):
    """Lifecycle states of a scheduled job."""
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class JobPriority(int):
    """Numeric job priorities (lower is dispatched first)."""
    URGENT = 1
    HIGH = 2
    NORMAL = 3
    LOW = 4


class QueueName(str):
    """Named queues the triage service registers."""
    TICKET_PROCESSING = "ticket-processing"
    KNOWLEDGE_INDEXING = "knowledge-indexing"
    RESPONSE_GENERATION = "response-generation"


class PipelineStep(str):
    """Pipeline stage names as reported in ProcessingResult.errors."""
    CLASSIFICATION = "classification"
    KNOWLEDGE_SEARCH = "knowledge_search"
    RESPONSE_GENERATION = "response_generation"
    CONFIDENCE_CALCULATION = "confidence_calculation"


class Recommendation(str):
    """Next action suggested for a processed ticket."""
    AUTO_RESOLVE = "auto_resolve"
    AGENT_REVIEW = "agent_review"
    HUMAN_REVIEW = "human_review"
    ESCALATE = "escalate"


class HealthStatus(str):
    """Aggregate health states."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


# ========== Lists for validation ==========

PRIORITY_ORDER = [Priority.LOW, Priority.MEDIUM, Priority.HIGH, Priority.URGENT]
VALID_PRIORITIES = PRIORITY_ORDER + [Priority.CRITICAL]
VALID_JOB_STATES = [
    JobState.WAITING, JobState.DELAYED, JobState.ACTIVE,
    JobState.COMPLETED, JobState.FAILED
]
TERMINAL_JOB_STATES = [JobState.COMPLETED, JobState.FAILED]
PIPELINE_STEPS = [
    PipelineStep.CLASSIFICATION, PipelineStep.KNOWLEDGE_SEARCH,
    PipelineStep.RESPONSE_GENERATION, PipelineStep.CONFIDENCE_CALCULATION
]
