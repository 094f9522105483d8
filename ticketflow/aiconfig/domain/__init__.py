"""
Configuration Domain Layer
==========================

Typed configuration model and the pure helpers that build it.

This layer has no dependencies on infrastructure - pydantic models only.
"""

from ticketflow.aiconfig.domain.entities import (
    CONFIG_TYPE,
    CONFIG_SCHEMA_VERSION,
    MIN_QUEUE_CONCURRENCY,
    MAX_QUEUE_CONCURRENCY,
    ClassificationSettings,
    KnowledgeSearchSettings,
    ResponseGenerationSettings,
    OpenAISettings,
    QueueTuning,
    AutoResolutionSettings,
    ReviewSettings,
    LearningSettings,
    TriageConfig,
    default_config,
    deep_merge,
    format_validation_errors,
    build_config,
)

__all__ = [
    "CONFIG_TYPE",
    "CONFIG_SCHEMA_VERSION",
    "MIN_QUEUE_CONCURRENCY",
    "MAX_QUEUE_CONCURRENCY",
    # Sections
    "ClassificationSettings",
    "KnowledgeSearchSettings",
    "ResponseGenerationSettings",
    "OpenAISettings",
    "QueueTuning",
    "AutoResolutionSettings",
    "ReviewSettings",
    "LearningSettings",
    "TriageConfig",
    # Helpers
    "default_config",
    "deep_merge",
    "format_validation_errors",
    "build_config",
]
