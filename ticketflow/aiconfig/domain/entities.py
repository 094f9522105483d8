"""
Triage Configuration Entities
==============================

Typed, versioned configuration for the triage pipeline and queue layer.

Every tunable lives in a named field with a declared validator; the store
only ever holds a fully validated ``TriageConfig``. Models are frozen so a
snapshot handed to a reader cannot change underneath it.
"""

import copy
from typing import Any, Dict, List, Literal, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from ticketflow.config import QueueName, TicketCategory

CONFIG_TYPE = "ai_agent"
CONFIG_SCHEMA_VERSION = "1.0"

MIN_QUEUE_CONCURRENCY = 1
MAX_QUEUE_CONCURRENCY = 20


class _Section(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class ClassificationSettings(_Section):
    enabled: bool = True
    engine: Literal["deterministic", "llm", "hybrid"] = "hybrid"
    confidence_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    fallback_to_rules: bool = True


class KnowledgeSearchSettings(_Section):
    enabled: bool = True
    max_results: int = Field(default=10, ge=1, le=50)
    semantic_search_enabled: bool = True
    keyword_fallback: bool = True
    min_similarity_score: float = Field(default=0.6, ge=0.0, le=1.0)


class ResponseGenerationSettings(_Section):
    enabled: bool = True
    engine: Literal["template", "llm", "hybrid"] = "template"
    max_length: int = Field(default=2000, ge=1)
    include_knowledge_links: bool = True
    personalize_response: bool = True


class OpenAISettings(_Section):
    """External LLM provider; enabling it requires a credential."""
    enabled: bool = False
    api_key: Optional[str] = None
    model: str = "gpt-3.5-turbo"
    max_tokens: int = Field(default=1000, ge=1)
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    rate_limit_per_minute: int = Field(default=60, ge=1)

    @model_validator(mode="after")
    def require_api_key_when_enabled(self) -> "OpenAISettings":
        if self.enabled and not self.api_key:
            raise ValueError("OpenAI API key is required when OpenAI is enabled")
        return self


class QueueTuning(_Section):
    concurrency: Dict[str, int] = Field(
        default_factory=lambda: {
            QueueName.TICKET_PROCESSING: 5,
            QueueName.KNOWLEDGE_INDEXING: 2,
            QueueName.RESPONSE_GENERATION: 3,
        }
    )
    retry_attempts: int = Field(default=3, ge=1)
    retry_delay_ms: int = Field(default=2000, ge=0)

    @field_validator("concurrency")
    @classmethod
    def validate_concurrency(cls, v: Dict[str, int]) -> Dict[str, int]:
        """Each queue's worker count must stay within the supported range."""
        bad = [
            f"Queue concurrency for {name} must be between "
            f"{MIN_QUEUE_CONCURRENCY} and {MAX_QUEUE_CONCURRENCY}"
            for name, value in v.items()
            if not MIN_QUEUE_CONCURRENCY <= value <= MAX_QUEUE_CONCURRENCY
        ]
        if bad:
            raise ValueError("; ".join(bad))
        return v


class AutoResolutionSettings(_Section):
    enabled: bool = True
    categories: List[str] = Field(
        default_factory=lambda: [
            TicketCategory.PASSWORD_RESET,
            TicketCategory.ACCOUNT_UNLOCK,
            TicketCategory.BASIC_INFO,
        ]
    )
    # won't auto-resolve anything ranked above this
    max_priority: Literal["low", "medium", "high", "urgent"] = "medium"
    require_knowledge_match: bool = True


class ReviewSettings(_Section):
    """Confidence bands for tickets that are not auto-resolved."""
    agent_review_threshold: float = Field(default=0.6, ge=0.0, le=1.0)
    human_review_threshold: float = Field(default=0.3, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def check_band_order(self) -> "ReviewSettings":
        if self.human_review_threshold > self.agent_review_threshold:
            raise ValueError("human_review_threshold must not exceed agent_review_threshold")
        return self


class LearningSettings(_Section):
    enabled: bool = True
    feedback_weight: float = Field(default=0.3, ge=0.0, le=1.0)
    adapt_thresholds: bool = True
    track_performance: bool = True


class TriageConfig(_Section):
    """
    Complete triage configuration snapshot.

    Defaults mirror the compiled-in configuration; persisted overrides are
    merged over them key by key.
    """
    enabled: bool = True
    stub_mode: bool = False
    auto_resolve_threshold: float = Field(default=0.85, ge=0.0, le=1.0)
    max_processing_time_ms: int = Field(default=30000, ge=1000)

    classification: ClassificationSettings = Field(default_factory=ClassificationSettings)
    knowledge_search: KnowledgeSearchSettings = Field(default_factory=KnowledgeSearchSettings)
    response_generation: ResponseGenerationSettings = Field(default_factory=ResponseGenerationSettings)
    openai: OpenAISettings = Field(default_factory=OpenAISettings)
    queue: QueueTuning = Field(default_factory=QueueTuning)
    auto_resolution: AutoResolutionSettings = Field(default_factory=AutoResolutionSettings)
    review: ReviewSettings = Field(default_factory=ReviewSettings)
    learning: LearningSettings = Field(default_factory=LearningSettings)

    def to_dict(self) -> Dict[str, Any]:
        """Plain, independent copy of the configuration."""
        return self.model_dump(mode="json")


def default_config() -> TriageConfig:
    return TriageConfig()


def deep_merge(base: Mapping[str, Any], overrides: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Merge ``overrides`` into a copy of ``base``.

    Nested mappings merge key by key; any other value (lists included)
    replaces the base value outright.
    """
    merged = copy.deepcopy(dict(base))
    for key, value in overrides.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def format_validation_errors(exc: ValidationError) -> List[str]:
    """Flatten pydantic errors into one readable line per violated rule."""
    messages = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error["loc"])
        message = error["msg"].removeprefix("Value error, ")
        messages.append(f"{location}: {message}" if location else message)
    return messages


def build_config(data: Mapping[str, Any]) -> TriageConfig:
    """Validate a full settings mapping; raises pydantic ValidationError."""
    return TriageConfig.model_validate(dict(data))
