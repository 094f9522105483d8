"""
Configuration Application Layer
===============================

Contains:
- Repository interface for configuration persistence
- ConfigStore: validated snapshot, persistence and watcher fan-out
"""

from ticketflow.aiconfig.application.services import (
    ConfigStore,
    ConfigWatcher,
    IConfigRepository,
)

__all__ = [
    "ConfigStore",
    "ConfigWatcher",
    "IConfigRepository",
]
