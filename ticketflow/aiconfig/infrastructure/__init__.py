"""
Configuration Infrastructure Layer
==================================

Persistence backends (database row, YAML file) and the file watcher.
"""

from ticketflow.aiconfig.infrastructure.models import ConfigModel
from ticketflow.aiconfig.infrastructure.repositories import (
    SQLAlchemyConfigRepository,
    YAMLConfigRepository,
)
from ticketflow.aiconfig.infrastructure.external import ConfigFileWatcher

__all__ = [
    "ConfigModel",
    "SQLAlchemyConfigRepository",
    "YAMLConfigRepository",
    "ConfigFileWatcher",
]
