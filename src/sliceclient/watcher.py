"""
Settings file watcher.

Uses the watchdog library to notice edits to the workspace settings file and
trigger a configuration re-read.
"""

from __future__ import annotations

import functools
import logging
import os
import threading
from collections.abc import Callable
from pathlib import Path

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.api import BaseObserver

logger = logging.getLogger(__name__)


class DebouncedCallback:
    """
    Runs ``callback`` once calls have been quiet for ``delay`` seconds.

    Editors often write a settings file several times per save; only the
    final state is reported.
    """

    def __init__(self, callback: Callable[[], None], delay: float = 0.2) -> None:
        self.callback = callback
        self.delay = delay
        self._lock = threading.Lock()
        self._timer: threading.Timer | None = None
        self._generation = 0
        self._running = True

    def __call__(self) -> None:
        """Restart the quiet period."""
        with self._lock:
            if not self._running:
                return
            if self._timer is not None:
                self._timer.cancel()
            self._generation += 1
            self._timer = threading.Timer(self.delay, self._fire, args=(self._generation,))
            self._timer.daemon = True
            self._timer.start()

    def _fire(self, generation: int) -> None:
        with self._lock:
            # A timer cancelled after it started waiting for the lock is stale.
            if not self._running or generation != self._generation:
                return
            self._timer = None

        try:
            self.callback()
        except Exception:
            logger.exception("Error in settings change callback")

    def shutdown(self) -> None:
        """Cancel the pending callback and ignore later calls."""
        with self._lock:
            self._running = False
            timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()


class SettingsFileHandler(FileSystemEventHandler):
    """Forwards events that touch one watched file."""

    def __init__(self, target: Path, on_changed: Callable[[], None]) -> None:
        super().__init__()
        self._target = os.path.normcase(os.path.realpath(target))
        self._on_changed = on_changed

    def _matches(self, path: str | bytes) -> bool:
        if isinstance(path, bytes):
            path = os.fsdecode(path)
        return os.path.normcase(os.path.realpath(path)) == self._target

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        paths = [event.src_path, getattr(event, "dest_path", "")]
        if any(path and self._matches(path) for path in paths):
            logger.debug("Settings file %s: %s", event.event_type, self._target)
            self._on_changed()


class SettingsWatcher:
    """
    Watches a settings file for changes.

    The parent directory is observed when it exists; otherwise ``root`` is
    observed recursively so that creating the file later is noticed.
    """

    def __init__(
        self,
        settings_file: str | Path,
        on_changed: Callable[[str], None],
        *,
        root: str | Path | None = None,
        debounce_delay: float = 0.2,
    ) -> None:
        self.settings_file = Path(settings_file).absolute()
        self.root = Path(root).absolute() if root is not None else self.settings_file.parent
        self._callback = DebouncedCallback(
            functools.partial(on_changed, str(self.settings_file)), debounce_delay
        )
        self._handler = SettingsFileHandler(self.settings_file, self._callback)
        self._observer: BaseObserver | None = None
        self._started = False

    def start(self) -> None:
        if self._started:
            return

        if self.settings_file.parent.is_dir():
            watch_dir, recursive = self.settings_file.parent, False
        elif self.root.is_dir():
            watch_dir, recursive = self.root, True
        else:
            raise ValueError(f"Watch path is not a directory: {self.root}")

        self._observer = Observer()
        self._observer.schedule(self._handler, str(watch_dir), recursive=recursive)
        self._observer.start()
        self._started = True
        logger.info("Watching settings file: %s", self.settings_file)

    def stop(self) -> None:
        if not self._started:
            return

        self._callback.shutdown()
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5.0)
            self._observer = None

        self._started = False
        logger.info("Stopped watching settings file: %s", self.settings_file)

    @property
    def is_watching(self) -> bool:
        return self._started
