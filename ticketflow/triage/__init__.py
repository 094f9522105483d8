"""
Triage Module
=============

Bounded Context for automated ticket triage.

Responsibilities:
- Run tickets through classify -> knowledge search -> response -> confidence
- Tolerate per-stage failures and report them on the result
- Decide auto-resolution against the current configuration
- Feed tickets through the job queues for background processing
"""

__version__ = "1.0.0"
