"""
Triage Configuration Module
===========================

Bounded Context for the hot-reloadable triage configuration.

Responsibilities:
- Hold a validated, versioned configuration snapshot
- Merge persisted overrides over compiled-in defaults
- Persist updates (database or YAML file) and notify watchers
- Export/import configuration documents
"""

__version__ = "1.0.0"
