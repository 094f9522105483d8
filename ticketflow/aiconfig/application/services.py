"""
Configuration Application Services
==================================

The configuration store: the single writer of the triage configuration.

Every change goes through the same path - merge, validate, persist, swap,
notify - so a snapshot is either fully applied or not applied at all.
Readers get the frozen ``TriageConfig`` held by the store and never take a
lock.
"""

import asyncio
import inspect
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

from pydantic import ValidationError

from ticketflow.aiconfig.domain import (
    CONFIG_SCHEMA_VERSION,
    CONFIG_TYPE,
    TriageConfig,
    build_config,
    deep_merge,
    default_config,
    format_validation_errors,
)
from ticketflow.config import HealthStatus
from ticketflow.core import ApplicationException, ConfigValidationError, RepositoryException
from ticketflow.shared.infrastructure.logging import get_logger, log_latency

logger = get_logger(__name__)

ConfigWatcher = Callable[[TriageConfig], Union[None, Awaitable[None]]]

_MISSING = object()


# ========== Repository Interface ==========

class IConfigRepository(ABC):
    """Interface for configuration persistence."""

    @abstractmethod
    async def load_config(self) -> Optional[Dict[str, Any]]:
        """Return the persisted settings mapping, or None if nothing is stored."""

    @abstractmethod
    async def save_config(self, settings: Dict[str, Any]) -> None:
        """Persist the full settings mapping, replacing what was stored."""


# ========== Configuration Store ==========

class ConfigStore:
    """
    Validated, versioned configuration with watcher notification.

    Updates are serialized through an asyncio.Lock; the persisted copy is
    written before the in-memory snapshot is swapped, so a persistence
    failure leaves the store exactly as it was.
    """

    def __init__(self, repository: IConfigRepository):
        self._repository = repository
        self._config: TriageConfig = default_config()
        self._watchers: List[ConfigWatcher] = []
        self._lock = asyncio.Lock()
        self._revision = 0
        self._loaded_at: Optional[datetime] = None
        self._last_error: Optional[str] = None

    # ---------- Snapshot access ----------

    @property
    def current(self) -> TriageConfig:
        """Frozen snapshot of the active configuration."""
        return self._config

    @property
    def revision(self) -> int:
        return self._revision

    @property
    def loaded_at(self) -> Optional[datetime]:
        return self._loaded_at

    def get(self, key: str, fallback: Any = None) -> Any:
        """
        Read one value by key.

        Dotted keys walk into nested sections, e.g.
        ``store.get("auto_resolution.categories")``. Returns ``fallback``
        when any segment is missing.
        """
        value: Any = self._config.to_dict()
        for part in key.split("."):
            if not isinstance(value, dict):
                return fallback
            value = value.get(part, _MISSING)
            if value is _MISSING:
                return fallback
        return value

    def get_all(self) -> Dict[str, Any]:
        """Fresh copy of the whole configuration."""
        return self._config.to_dict()

    def is_enabled(self, feature: str) -> bool:
        """True when the triage agent and the named section are both enabled."""
        if not self._config.enabled:
            return False
        section = getattr(self._config, feature, None)
        return bool(getattr(section, "enabled", False))

    # ---------- Lifecycle ----------

    async def load(self) -> TriageConfig:
        """
        Load persisted overrides over the defaults.

        Nothing persisted: the defaults are written back. Unreadable or
        invalid content: the store runs on defaults and records the error.
        """
        async with self._lock:
            config = default_config()
            self._last_error = None
            try:
                persisted = await self._repository.load_config()
                if persisted is None:
                    logger.info("No persisted triage configuration, saving defaults")
                    await self._repository.save_config(config.to_dict())
                else:
                    config = build_config(deep_merge(config.to_dict(), persisted))
            except ValidationError as e:
                self._last_error = "; ".join(format_validation_errors(e))
                logger.error(
                    "Persisted triage configuration is invalid, using defaults",
                    extra={"errors": format_validation_errors(e)}
                )
            except Exception as e:
                self._last_error = str(e)
                logger.error(
                    f"Failed to load triage configuration, using defaults: {e}",
                    exc_info=True
                )

            self._swap(config)
            logger.info(
                "Triage configuration loaded",
                extra={"revision": self._revision, "enabled": config.enabled}
            )

        await self.notify_watchers()
        return config

    async def reload(self) -> bool:
        """
        Re-read persistence after an external change.

        Returns True when a new snapshot was applied. Invalid content is
        logged and ignored; identical content does not notify watchers.
        """
        async with self._lock:
            try:
                persisted = await self._repository.load_config()
                if persisted is None:
                    return False
                config = build_config(deep_merge(default_config().to_dict(), persisted))
            except ValidationError as e:
                logger.warning(
                    "Ignoring invalid triage configuration on reload",
                    extra={"errors": format_validation_errors(e)}
                )
                return False
            except Exception as e:
                logger.error(f"Failed to reload triage configuration: {e}", exc_info=True)
                return False

            if config == self._config:
                return False

            self._swap(config)
            logger.info("Triage configuration reloaded", extra={"revision": self._revision})

        await self.notify_watchers()
        return True

    # ---------- Writes ----------

    async def update(self, partial: Mapping[str, Any]) -> TriageConfig:
        """
        Merge ``partial`` over the current configuration and apply it.

        Raises:
            ConfigValidationError: the merged candidate breaks one or more rules
            RepositoryException: the candidate could not be persisted
        """
        if not isinstance(partial, Mapping):
            raise ConfigValidationError(["settings must be a mapping"])

        async with self._lock:
            candidate = deep_merge(self._config.to_dict(), partial)
            config = self._validate(candidate)
            await self._persist(config)
            self._swap(config)
            logger.info(
                "Triage configuration updated",
                extra={"revision": self._revision, "keys": sorted(partial.keys())}
            )

        await self.notify_watchers()
        return config

    async def reset_to_defaults(self) -> TriageConfig:
        """Replace the configuration with the compiled-in defaults."""
        async with self._lock:
            config = default_config()
            await self._persist(config)
            self._swap(config)
            logger.info("Triage configuration reset to defaults", extra={"revision": self._revision})

        await self.notify_watchers()
        return config

    # ---------- Watchers ----------

    def add_watcher(self, callback: ConfigWatcher) -> None:
        """Register a callback invoked with every new snapshot."""
        if callback not in self._watchers:
            self._watchers.append(callback)

    def remove_watcher(self, callback: ConfigWatcher) -> None:
        if callback in self._watchers:
            self._watchers.remove(callback)

    async def notify_watchers(self) -> None:
        """Call every watcher with the current snapshot; failures are logged and skipped."""
        config = self._config
        for callback in list(self._watchers):
            try:
                result = callback(config)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(
                    f"Config watcher failed: {e}",
                    extra={"watcher": getattr(callback, "__qualname__", repr(callback))},
                    exc_info=True
                )

    # ---------- Export / Import ----------

    def export_config(self) -> Dict[str, Any]:
        """Configuration document suitable for import_config()."""
        return {
            "type": CONFIG_TYPE,
            "version": CONFIG_SCHEMA_VERSION,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "config": self._config.to_dict(),
        }

    async def import_config(self, document: Mapping[str, Any]) -> TriageConfig:
        """Apply an exported configuration document as an update."""
        if not isinstance(document, Mapping) or document.get("type") != CONFIG_TYPE:
            raise ConfigValidationError(["Invalid configuration type"])

        settings = document.get("config")
        if not isinstance(settings, Mapping):
            raise ConfigValidationError(["config: must be a mapping"])

        logger.info(
            "Importing triage configuration",
            extra={"version": document.get("version"), "exported_at": document.get("timestamp")}
        )
        return await self.update(settings)

    # ---------- Health ----------

    def get_health_status(self) -> Dict[str, Any]:
        if self._loaded_at is None:
            status = HealthStatus.UNHEALTHY
        elif self._last_error:
            status = HealthStatus.DEGRADED
        else:
            status = HealthStatus.HEALTHY

        return {
            "status": status,
            "config_loaded": self._loaded_at is not None,
            "loaded_at": self._loaded_at.isoformat() if self._loaded_at else None,
            "revision": self._revision,
            "watchers": len(self._watchers),
            "enabled": self._config.enabled,
            "stub_mode": self._config.stub_mode,
            "last_error": self._last_error,
        }

    # ---------- Internals ----------

    def _validate(self, candidate: Mapping[str, Any]) -> TriageConfig:
        try:
            return build_config(candidate)
        except ValidationError as e:
            errors = format_validation_errors(e)
            logger.warning("Rejected triage configuration update", extra={"errors": errors})
            raise ConfigValidationError(errors) from e

    async def _persist(self, config: TriageConfig) -> None:
        try:
            with log_latency(logger, "config_persist"):
                await self._repository.save_config(config.to_dict())
        except ApplicationException:
            raise
        except Exception as e:
            raise RepositoryException(f"Failed to persist triage configuration: {e}") from e

    def _swap(self, config: TriageConfig) -> None:
        self._config = config
        self._revision += 1
        self._loaded_at = datetime.now(timezone.utc)
