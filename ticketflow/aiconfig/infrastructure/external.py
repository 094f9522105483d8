"""
Configuration File Watcher
==========================

Hot-reloads the YAML configuration file when it changes on disk.

watchdog delivers events on its own thread; the reload is handed back to
the application's event loop so the store's lock and watchers stay on a
single loop.
"""

import asyncio
from pathlib import Path
from typing import Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from ticketflow.aiconfig.application import ConfigStore
from ticketflow.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


class ConfigFileHandler(FileSystemEventHandler):
    """Watchdog event handler for configuration file changes."""

    def __init__(self, watcher: "ConfigFileWatcher"):
        self.watcher = watcher
        super().__init__()

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self.watcher.handle_change(event.src_path)

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self.watcher.handle_change(event.src_path)

    def on_moved(self, event: FileSystemEvent) -> None:
        # atomic saves land as a rename onto the target
        if not event.is_directory:
            self.watcher.handle_change(event.dest_path)


class ConfigFileWatcher:
    """Watches one configuration file and triggers ConfigStore.reload()."""

    def __init__(
        self,
        store: ConfigStore,
        path: Path,
        loop: Optional[asyncio.AbstractEventLoop] = None
    ):
        self._store = store
        self._path = Path(path)
        self._loop = loop
        self._observer = None

    @property
    def is_watching(self) -> bool:
        return self._observer is not None

    def handle_change(self, changed_path: str) -> None:
        """Schedule a reload if ``changed_path`` is the watched file."""
        if Path(changed_path).resolve() != self._path.resolve():
            return
        if self._loop is None or self._loop.is_closed():
            return

        logger.info(f"Config file changed: {changed_path}")
        future = asyncio.run_coroutine_threadsafe(self._store.reload(), self._loop)
        future.add_done_callback(self._log_reload_result)

    def start(self) -> None:
        """
        Start watching the configuration file's directory.

        Skips watching when the directory does not exist or the platform
        does not support file notifications.
        """
        if self._loop is None:
            self._loop = asyncio.get_running_loop()

        directory = self._path.parent.resolve()
        if not directory.exists():
            logger.info(f"Config directory doesn't exist, skipping file watch: {directory}")
            return

        try:
            self._observer = Observer()
            self._observer.schedule(ConfigFileHandler(self), str(directory), recursive=False)
            self._observer.start()
            logger.info(f"Started watching config file: {self._path}")
        except OSError as e:
            logger.warning(f"File watching not available, using static config: {e}")
            self._observer = None

    def stop(self) -> None:
        """Stop watching (safe to call even if not watching)."""
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None

    @staticmethod
    def _log_reload_result(future) -> None:
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.error(f"Config reload after file change failed: {error}")
        elif future.result():
            logger.info("Config file change applied")
