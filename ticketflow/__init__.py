"""
Ticketflow
==========

Support-ticket triage service: configuration store, job queues and the
classification pipeline with its auto-resolution gate.
"""

__version__ = "1.0.0"
