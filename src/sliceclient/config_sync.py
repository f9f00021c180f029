"""
Configuration synchronization between host settings and the running server.

Only the enable flag drives process lifecycle. Any other change made while the
server is running is forwarded live as ``workspace/didChangeConfiguration``.
Change events are queued and applied one at a time in arrival order.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from enum import Enum
from pathlib import Path
from typing import Any

import anyio

from .errors import ConfigurationValidationError, SliceClientError
from .models import ConfigurationSnapshot, NotificationEvent, ServerCommand, Severity, validate_snapshot
from .notifications import NotificationSink
from .supervisor import ClientSession, ProcessSupervisor

logger = logging.getLogger(__name__)

DID_CHANGE_CONFIGURATION = "workspace/didChangeConfiguration"
SETTINGS_SECTION = "slice"

OptionsBuilder = Callable[[ConfigurationSnapshot], dict[str, Any]]


class SyncAction(Enum):
    START = "start"
    STOP = "stop"
    FORWARD = "forward"
    NONE = "none"


def decide(
    previous: ConfigurationSnapshot,
    current: ConfigurationSnapshot,
    has_session: bool,
) -> SyncAction:
    """Pick the action for a configuration change; first matching rule wins."""
    if not previous.enabled and current.enabled and not has_session:
        return SyncAction.START
    if previous.enabled and not current.enabled and has_session:
        return SyncAction.STOP
    if previous.enabled and current.enabled and has_session:
        return SyncAction.FORWARD
    return SyncAction.NONE


def did_change_configuration_params(
    snapshot: ConfigurationSnapshot, workspace_root: str | Path | None = None
) -> dict[str, Any]:
    return {"settings": {SETTINGS_SECTION: snapshot.to_settings(workspace_root)}}


def default_initialization_options(snapshot: ConfigurationSnapshot) -> dict[str, Any]:
    return {"configurations": list(snapshot.to_settings()["configurations"])}


class ConfigurationSynchronizer:
    """Apply configuration snapshots to the supervised server in order."""

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        resolve_command: Callable[[], ServerCommand],
        *,
        initial: ConfigurationSnapshot | None = None,
        options_builder: OptionsBuilder = default_initialization_options,
        sink: NotificationSink | None = None,
        workspace_root: str | Path | None = None,
    ) -> None:
        self._supervisor = supervisor
        self._resolve_command = resolve_command
        self._options_builder = options_builder
        self._sink = sink
        self._workspace_root = workspace_root
        self._current = initial if initial is not None else ConfigurationSnapshot()
        self._send, self._receive = anyio.create_memory_object_stream[ConfigurationSnapshot](
            math.inf
        )

    @property
    def current(self) -> ConfigurationSnapshot:
        return self._current

    def _report(self, severity: Severity, message: str) -> None:
        if self._sink is not None:
            self._sink(NotificationEvent(severity=severity, message=message))

    async def on_configuration_changed(
        self,
        previous: ConfigurationSnapshot,
        current: ConfigurationSnapshot,
        session: ClientSession | None,
    ) -> SyncAction:
        """Execute the lifecycle decision for one change.

        Raises:
            ConfigurationValidationError: ``current`` contains a configuration
                set without paths; nothing is started, stopped or forwarded.
        """
        validate_snapshot(current)

        action = decide(previous, current, session is not None)
        logger.debug("Configuration change -> %s", action.value)

        if action is SyncAction.START:
            command = self._resolve_command()
            await self._supervisor.start(
                command, initialization_options=self._options_builder(current)
            )
        elif action is SyncAction.STOP:
            await self._supervisor.stop()
        elif action is SyncAction.FORWARD:
            await self._supervisor.notify(
                DID_CHANGE_CONFIGURATION,
                did_change_configuration_params(current, self._workspace_root),
            )
        return action

    async def apply(self, snapshot: ConfigurationSnapshot) -> SyncAction | None:
        """Apply one snapshot against the current state.

        Invalid snapshots are rejected whole and the previous snapshot stays
        in effect. Returns the action taken, or ``None`` when rejected.
        """
        previous = self._current
        try:
            validate_snapshot(snapshot)
        except ConfigurationValidationError as exc:
            logger.warning("Rejected Slice configuration: %s", exc)
            self._report(Severity.WARNING, f"Invalid Slice configuration ignored: {exc}")
            return None

        self._current = snapshot
        session = self._supervisor.session
        try:
            return await self.on_configuration_changed(previous, snapshot, session)
        except SliceClientError as exc:
            if decide(previous, snapshot, session is not None) is SyncAction.FORWARD:
                logger.warning("Could not forward configuration to language server: %s", exc)
                return SyncAction.FORWARD
            logger.error("Failed to apply configuration change: %s", exc)
            self._report(
                Severity.ERROR,
                "Slice Language Server failed to start. See the trace for more information.",
            )
            return None

    def submit(self, snapshot: ConfigurationSnapshot) -> None:
        """Queue a snapshot for in-order application by ``run``."""
        try:
            self._send.send_nowait(snapshot)
        except (anyio.ClosedResourceError, anyio.BrokenResourceError):
            logger.debug("Configuration synchronizer closed; dropping change")

    async def run(self) -> None:
        """Consume queued snapshots until ``close`` is called."""
        async with self._receive:
            async for snapshot in self._receive:
                await self.apply(snapshot)

    def close(self) -> None:
        self._send.close()
