"""
Triage Interfaces Layer
========================

Interface adapters (controllers) for the triage module.

Contains:
- Controllers: FastAPI route handlers for triage, queues and configuration
"""

from ticketflow.triage.interfaces.controllers import router as triage_router

__all__ = ["triage_router"]
