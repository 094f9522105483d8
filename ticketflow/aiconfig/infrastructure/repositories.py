"""
Configuration Infrastructure Repositories
=========================================

Concrete implementations of IConfigRepository:
- SQLAlchemyConfigRepository: one JSON row in 'ai_configs'
- YAMLConfigRepository: a YAML file on disk
"""

import asyncio
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncContextManager, Callable, Dict, Optional

import yaml
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ticketflow.aiconfig.application import IConfigRepository
from ticketflow.aiconfig.domain import CONFIG_TYPE
from ticketflow.aiconfig.infrastructure.models import ConfigModel
from ticketflow.core import RepositoryException
from ticketflow.infrastructure.database import get_session_context
from ticketflow.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

SessionFactory = Callable[[], AsyncContextManager[AsyncSession]]


class SQLAlchemyConfigRepository(IConfigRepository):
    """
    SQLAlchemy implementation of configuration persistence.

    Opens a short-lived session per call; the session context commits on
    success and rolls back on error.
    """

    def __init__(
        self,
        session_factory: SessionFactory = get_session_context,
        config_type: str = CONFIG_TYPE
    ):
        self._session_factory = session_factory
        self._config_type = config_type

    async def load_config(self) -> Optional[Dict[str, Any]]:
        async with self._session_factory() as session:
            stmt = select(ConfigModel).where(ConfigModel.type == self._config_type)
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()

        if model is None:
            return None
        if not isinstance(model.settings, dict):
            raise RepositoryException(
                f"Stored {self._config_type} configuration is not a mapping"
            )
        return dict(model.settings)

    async def save_config(self, settings: Dict[str, Any]) -> None:
        now = datetime.now(timezone.utc)
        async with self._session_factory() as session:
            stmt = select(ConfigModel).where(ConfigModel.type == self._config_type)
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()

            if model is None:
                session.add(ConfigModel(
                    type=self._config_type,
                    settings=settings,
                    created_at=now,
                    updated_at=now
                ))
            else:
                model.settings = settings
                model.updated_at = now

            await session.flush()

        logger.debug("Configuration row saved", extra={"type": self._config_type})


class YAMLConfigRepository(IConfigRepository):
    """
    File-backed configuration persistence.

    Writes go to a sibling temp file that is then renamed over the target,
    so a reader never sees a half-written document.
    """

    def __init__(self, path: Path):
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    async def load_config(self) -> Optional[Dict[str, Any]]:
        return await asyncio.to_thread(self._read)

    async def save_config(self, settings: Dict[str, Any]) -> None:
        await asyncio.to_thread(self._write, settings)

    def _read(self) -> Optional[Dict[str, Any]]:
        if not self._path.exists():
            return None

        with open(self._path, "r", encoding="utf-8") as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise RepositoryException(f"Invalid YAML in {self._path}: {e}") from e

        if data is None:
            return None
        if not isinstance(data, dict):
            raise RepositoryException(f"Configuration file {self._path} must contain a mapping")
        return data

    def _write(self, settings: Dict[str, Any]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_name(f".{self._path.name}.tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            yaml.safe_dump(settings, f, default_flow_style=False, sort_keys=True)
        os.replace(tmp_path, self._path)
