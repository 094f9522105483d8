"""
Configuration Infrastructure Models
===================================

SQLAlchemy ORM model for the persisted triage configuration.
"""

from datetime import datetime, timezone
from typing import Any, Dict
from uuid import UUID, uuid4

from sqlalchemy import JSON, DateTime, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from ticketflow.infrastructure.database import Base
from ticketflow.aiconfig.domain import CONFIG_TYPE


class ConfigModel(Base):
    """
    Database model for a configuration document.

    Maps to the 'ai_configs' table; one row per configuration type.
    """
    __tablename__ = "ai_configs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    type: Mapped[str] = mapped_column(String(50), unique=True, index=True, nullable=False, default=CONFIG_TYPE)
    settings: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))

    def __repr__(self) -> str:
        return f"<ConfigModel(type={self.type}, updated_at={self.updated_at})>"
