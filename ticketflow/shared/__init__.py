"""
Shared Kernel Module
====================

This module contains shared infrastructure used across all bounded
contexts (triage pipeline, queue scheduling, configuration store).

Architecture Pattern: Modular Monolith
- Each module (aiconfig, queueing, triage) is a bounded context
- Shared kernel contains only generic infrastructure
- Domain models are extended within each module

DO NOT add business logic from the bounded contexts to shared kernel.
"""

__version__ = "1.0.0"
