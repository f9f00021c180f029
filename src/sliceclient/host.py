"""
Host-side capabilities consumed by the orchestrator.

``HostContext`` is the narrow interface the orchestrator needs from an editor.
``WorkspaceHost`` implements it for headless use: settings come from a JSON
file that is re-read whenever watchdog reports a change, and messages go to
the ``sliceclient.ui`` logger.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any, Protocol

from anyio.from_thread import BlockingPortal

from .errors import ConfigurationValidationError
from .models import ConfigurationSnapshot
from .notifications import MessageDisplay
from .settings import load_snapshot, settings_path
from .watcher import SettingsWatcher

logger = logging.getLogger(__name__)
ui_logger = logging.getLogger("sliceclient.ui")

ConfigurationListener = Callable[[ConfigurationSnapshot], None]


class HostContext(Protocol):
    """What the orchestrator consumes from the editor host."""

    @property
    def extension_path(self) -> Path: ...

    @property
    def workspace_root(self) -> Path: ...

    @property
    def display(self) -> MessageDisplay: ...

    def read_configuration(self) -> ConfigurationSnapshot: ...

    def on_configuration_changed(self, listener: ConfigurationListener) -> Callable[[], None]:
        """Register a listener; returns a callable that unregisters it."""
        ...


class LoggingDisplay:
    """Message display that writes to a logger."""

    def __init__(self, target: logging.Logger | None = None) -> None:
        self._logger = target or ui_logger

    def show_info(self, message: str) -> None:
        self._logger.info("%s", message)

    def show_warning(self, message: str) -> None:
        self._logger.warning("%s", message)

    def show_error(self, message: str) -> None:
        self._logger.error("%s", message)


class WorkspaceHost:
    """File-backed host context for running the client outside an editor.

    Use as an async context manager so that file-watcher callbacks can be
    marshalled back onto the event loop.
    """

    def __init__(
        self,
        workspace_root: str | Path,
        extension_path: str | Path,
        *,
        settings_file: str | Path | None = None,
        display: MessageDisplay | None = None,
        watch: bool = True,
        debounce_delay: float = 0.2,
    ) -> None:
        self._workspace_root = Path(workspace_root).resolve()
        self._extension_path = Path(extension_path).resolve()
        self._settings_file = (
            Path(settings_file) if settings_file is not None else settings_path(self._workspace_root)
        )
        self._display = display or LoggingDisplay()
        self._watch = watch
        self._debounce_delay = debounce_delay
        self._listeners: list[ConfigurationListener] = []
        self._last: ConfigurationSnapshot | None = None
        self._portal: BlockingPortal | None = None
        self._watcher: SettingsWatcher | None = None

    @property
    def extension_path(self) -> Path:
        return self._extension_path

    @property
    def workspace_root(self) -> Path:
        return self._workspace_root

    @property
    def settings_file(self) -> Path:
        return self._settings_file

    @property
    def display(self) -> MessageDisplay:
        return self._display

    async def __aenter__(self) -> WorkspaceHost:
        if self._watch:
            self._portal = BlockingPortal()
            await self._portal.__aenter__()
            self._watcher = SettingsWatcher(
                self._settings_file,
                self._on_settings_file_changed,
                root=self._workspace_root,
                debounce_delay=self._debounce_delay,
            )
            self._watcher.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        if self._watcher is not None:
            self._watcher.stop()
            self._watcher = None
        if self._portal is not None:
            portal, self._portal = self._portal, None
            await portal.__aexit__(*exc_info)

    def read_configuration(self) -> ConfigurationSnapshot:
        """Read the settings file, falling back to defaults when it is unusable."""
        try:
            snapshot = load_snapshot(self._settings_file)
        except ConfigurationValidationError as exc:
            logger.warning("Using default Slice settings: %s", exc)
            snapshot = ConfigurationSnapshot()
        self._last = snapshot
        return snapshot

    def on_configuration_changed(self, listener: ConfigurationListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def reload(self) -> None:
        """Re-read settings and notify listeners when the snapshot changed."""
        try:
            snapshot = load_snapshot(self._settings_file)
        except ConfigurationValidationError as exc:
            logger.warning("Ignoring settings change: %s", exc)
            self._display.show_warning(f"Invalid Slice settings ignored: {exc}")
            return

        if snapshot == self._last:
            return
        self._last = snapshot
        for listener in list(self._listeners):
            listener(snapshot)

    def _on_settings_file_changed(self, _path: str) -> None:
        # Called from the debounce worker thread.
        portal = self._portal
        if portal is None:
            return
        try:
            portal.call(self.reload)
        except RuntimeError as exc:
            logger.debug("Settings change after shutdown ignored: %s", exc)
