"""
Entry point composing resolver, supervisor, synchronizer and relay.

Typical use::

    async with WorkspaceHost(workspace, extension) as host, Orchestrator() as client:
        await client.activate(host)
        ...
        await client.deactivate()
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

import anyio
from anyio.abc import TaskGroup

from .config_sync import SETTINGS_SECTION, ConfigurationSynchronizer
from .errors import ConfigurationValidationError, SliceClientError
from .host import HostContext
from .models import ConfigurationSnapshot, ServerCommand, SessionState, validate_snapshot
from .notifications import NotificationRelay, display_sink
from .resolver import BuildMode, resolve_for_host
from .supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)

SERVER_DIR = Path("server") / "target"
BUILT_IN_SLICE_DIR = "slice"
START_FAILURE_MESSAGE = "Slice Language Server failed to start. See the trace for more information."


class Orchestrator:
    """Host-facing activate/deactivate lifecycle for the language client."""

    def __init__(
        self,
        *,
        build_mode: BuildMode | None = None,
        resolve_command: Callable[[HostContext], ServerCommand] | None = None,
        handshake_timeout: float = 10.0,
        shutdown_timeout: float = 5.0,
    ) -> None:
        self._build_mode = build_mode
        self._resolve_command = resolve_command
        self._handshake_timeout = handshake_timeout
        self._shutdown_timeout = shutdown_timeout

        self._task_group: TaskGroup | None = None
        self._context: HostContext | None = None
        self._supervisor: ProcessSupervisor | None = None
        self._synchronizer: ConfigurationSynchronizer | None = None
        self._unsubscribe: Callable[[], None] | None = None
        self._sync_scope: anyio.CancelScope | None = None

    async def __aenter__(self) -> Orchestrator:
        self._task_group = anyio.create_task_group()
        await self._task_group.__aenter__()
        return self

    async def __aexit__(self, *exc_info: Any) -> bool | None:
        task_group = self._task_group
        with anyio.CancelScope(shield=True):
            await self.deactivate()
        self._task_group = None
        if task_group is None:
            return None
        task_group.cancel_scope.cancel()
        return await task_group.__aexit__(*exc_info)

    @property
    def state(self) -> SessionState:
        if self._supervisor is None:
            return SessionState.STOPPED
        return self._supervisor.state

    @property
    def supervisor(self) -> ProcessSupervisor | None:
        return self._supervisor

    @property
    def synchronizer(self) -> ConfigurationSynchronizer | None:
        return self._synchronizer

    def _resolve(self) -> ServerCommand:
        context = self._require_context()
        if self._resolve_command is not None:
            return self._resolve_command(context)
        return resolve_for_host(context.extension_path / SERVER_DIR, self._build_mode)

    def _require_context(self) -> HostContext:
        if self._context is None:
            raise RuntimeError("Orchestrator is not activated")
        return self._context

    def _initialization_options(self, snapshot: ConfigurationSnapshot) -> dict[str, Any]:
        context = self._require_context()
        return {
            "builtInSlicePath": str(context.extension_path / BUILT_IN_SLICE_DIR),
            "configurations": snapshot.to_settings(context.workspace_root)["configurations"],
        }

    def _answer_configuration_request(self, params: Any) -> list[Any]:
        """Serve ``workspace/configuration`` requests from the current snapshot."""
        items = params.get("items", []) if isinstance(params, dict) else []
        snapshot = self._synchronizer.current if self._synchronizer else ConfigurationSnapshot()
        workspace_root = self._context.workspace_root if self._context else None
        settings = snapshot.to_settings(workspace_root)

        results: list[Any] = []
        for item in items:
            section = item.get("section") if isinstance(item, dict) else None
            if section == SETTINGS_SECTION:
                results.append(settings)
            elif section == f"{SETTINGS_SECTION}.configurations":
                results.append(settings["configurations"])
            else:
                results.append(None)
        return results

    async def activate(self, context: HostContext) -> None:
        """Read settings, register the change listener and start if enabled."""
        if self._task_group is None:
            raise RuntimeError("Orchestrator must be entered with 'async with' before activate()")
        if self._context is not None:
            logger.debug("Orchestrator already activated")
            return

        logger.info("Activating Slice language client")
        self._context = context
        sink = display_sink(context.display)

        snapshot = context.read_configuration()
        try:
            validate_snapshot(snapshot)
        except ConfigurationValidationError as exc:
            logger.warning("Initial Slice configuration rejected: %s", exc)
            context.display.show_warning(f"Invalid Slice configuration ignored: {exc}")
            snapshot = ConfigurationSnapshot(enabled=snapshot.enabled)

        self._supervisor = ProcessSupervisor(
            self._task_group,
            workspace_root=context.workspace_root,
            relay=NotificationRelay(),
            sink=sink,
            request_handlers={"workspace/configuration": self._answer_configuration_request},
            handshake_timeout=self._handshake_timeout,
            shutdown_timeout=self._shutdown_timeout,
        )
        self._synchronizer = ConfigurationSynchronizer(
            self._supervisor,
            self._resolve,
            initial=snapshot,
            options_builder=self._initialization_options,
            sink=sink,
            workspace_root=context.workspace_root,
        )
        # Registered regardless of the enable flag so that enabling later starts the server.
        self._unsubscribe = context.on_configuration_changed(self._synchronizer.submit)

        if snapshot.enabled:
            try:
                command = self._resolve()
                await self._supervisor.start(
                    command, initialization_options=self._initialization_options(snapshot)
                )
            except SliceClientError as exc:
                logger.error("Failed to start client: %s", exc)
                context.display.show_error(START_FAILURE_MESSAGE)
        else:
            logger.info("Slice language server is disabled in settings")

        # Changes queued during the initial start are applied only now.
        self._sync_scope = anyio.CancelScope()
        self._task_group.start_soon(self._run_synchronizer, self._synchronizer, self._sync_scope)

    async def _run_synchronizer(
        self, synchronizer: ConfigurationSynchronizer, scope: anyio.CancelScope
    ) -> None:
        with scope:
            await synchronizer.run()

    async def deactivate(self) -> None:
        """Stop the server if it is running; safe to call repeatedly."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._synchronizer is not None:
            self._synchronizer.close()
        if self._sync_scope is not None:
            # Pending changes must not start a server after deactivation.
            self._sync_scope.cancel()
            self._sync_scope = None
        if self._supervisor is not None:
            await self._supervisor.stop()
        self._context = None
