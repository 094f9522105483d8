"""
Infrastructure
==============

Shared connection management: SQLAlchemy database engine and Redis client.
"""
