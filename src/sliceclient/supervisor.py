"""
Lifecycle supervision for the language server process.

``ProcessSupervisor`` owns at most one ``ClientSession`` at a time. Start,
stop and restart are serialized by a lifecycle lock, so a new session is only
created once the previous process has been released.
"""

from __future__ import annotations

import contextlib
import logging
import os
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any

import anyio
from anyio.abc import Process, TaskGroup
from anyio.streams.text import TextReceiveStream

from .errors import ProcessSpawnError, TransportError
from .jsonrpc import JsonRpcConnection, RequestHandler
from .models import NotificationEvent, ServerCommand, SessionState, Severity
from .notifications import NotificationRelay, NotificationSink

logger = logging.getLogger(__name__)
server_logger = logging.getLogger("sliceclient.server")

LOG_MESSAGE = "window/logMessage"
_LOG_LEVELS = {1: logging.ERROR, 2: logging.WARNING, 3: logging.INFO, 4: logging.DEBUG}


class ClientSession:
    """One live connection to a running server process."""

    def __init__(self, command: ServerCommand, process: Process, connection: JsonRpcConnection) -> None:
        self.command = command
        self.process = process
        self.connection = connection
        self.state = SessionState.STARTING
        self.server_info: dict[str, Any] | None = None
        self.scope = anyio.CancelScope()

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> int | None:
        return self.process.returncode

    async def notify(self, method: str, params: Any = None) -> None:
        await self.connection.notify(method, params)


def _log_server_message(params: Any) -> None:
    if not isinstance(params, dict):
        return
    message_type = params.get("type")
    level = _LOG_LEVELS.get(message_type, logging.DEBUG) if isinstance(message_type, int) else logging.DEBUG
    server_logger.log(level, "%s", params.get("message", ""))


async def _aclose_quietly(resource: Any) -> None:
    if resource is None:
        return
    with contextlib.suppress(Exception):
        await resource.aclose()


class ProcessSupervisor:
    """Start, stop and restart the single language server session."""

    def __init__(
        self,
        task_group: TaskGroup,
        *,
        workspace_root: str | Path | None = None,
        relay: NotificationRelay | None = None,
        sink: NotificationSink | None = None,
        request_handlers: Mapping[str, RequestHandler] | None = None,
        handshake_timeout: float = 10.0,
        shutdown_timeout: float = 5.0,
        on_state_change: Callable[[SessionState], None] | None = None,
    ) -> None:
        self._task_group = task_group
        self._workspace_root = Path(workspace_root) if workspace_root is not None else None
        self._relay = relay
        self._sink = sink
        self._request_handlers = dict(request_handlers or {})
        self._handshake_timeout = handshake_timeout
        self._shutdown_timeout = shutdown_timeout
        self._on_state_change = on_state_change

        self._lock = anyio.Lock()
        self._session: ClientSession | None = None
        self._state = SessionState.STOPPED

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def session(self) -> ClientSession | None:
        return self._session

    @property
    def is_running(self) -> bool:
        return self._state is SessionState.RUNNING

    def _set_state(self, state: SessionState, session: ClientSession | None = None) -> None:
        if session is not None:
            session.state = state
        if state is self._state:
            return
        logger.debug("Language server state: %s -> %s", self._state.value, state.value)
        self._state = state
        if self._on_state_change is not None:
            self._on_state_change(state)

    def _report(self, event: NotificationEvent) -> None:
        if self._sink is not None:
            self._sink(event)

    def _initialize_params(self, initialization_options: Mapping[str, Any] | None) -> dict[str, Any]:
        root = self._workspace_root or Path.cwd()
        root = root.resolve()
        return {
            "processId": os.getpid(),
            "rootUri": root.as_uri(),
            "rootPath": str(root),
            "capabilities": {
                "workspace": {"configuration": True, "didChangeConfiguration": {}},
                "textDocument": {
                    "hover": {"contentFormat": ["markdown", "plaintext"]},
                    "definition": {"linkSupport": False},
                    "publishDiagnostics": {"relatedInformation": True},
                },
            },
            "initializationOptions": dict(initialization_options or {}),
            "clientInfo": {"name": "sliceclient"},
        }

    async def start(
        self,
        command: ServerCommand,
        *,
        initialization_options: Mapping[str, Any] | None = None,
    ) -> ClientSession:
        """Start a session, or return the running one.

        Raises:
            ProcessSpawnError: the executable could not be launched.
            TransportError: the initialize handshake did not complete.
        """
        async with self._lock:
            return await self._start_locked(command, initialization_options)

    async def stop(self) -> None:
        """Stop the running session; a no-op when already stopped."""
        async with self._lock:
            await self._stop_locked()

    async def restart(
        self,
        command: ServerCommand,
        *,
        initialization_options: Mapping[str, Any] | None = None,
    ) -> ClientSession:
        """Stop and start again as one operation under the lifecycle lock."""
        async with self._lock:
            await self._stop_locked()
            return await self._start_locked(command, initialization_options)

    async def notify(self, method: str, params: Any = None) -> None:
        """Send a notification to the running session.

        Raises:
            TransportError: no session is running or the write failed.
        """
        async with self._lock:
            session = self._session
            if session is None or session.state is not SessionState.RUNNING:
                raise TransportError(f"cannot send {method}: language server is not running")
            await session.notify(method, params)

    async def _start_locked(
        self,
        command: ServerCommand,
        initialization_options: Mapping[str, Any] | None,
    ) -> ClientSession:
        existing = self._session
        if existing is not None:
            if existing.state is SessionState.RUNNING:
                return existing
            await self._stop_locked()

        self._set_state(SessionState.STARTING)
        logger.info("Starting language server: %s", " ".join(command.argv))

        try:
            process = await anyio.open_process(
                command.argv,
                env=dict(command.env) if command.env is not None else None,
                cwd=command.cwd,
            )
        except OSError as exc:
            self._set_state(SessionState.STOPPED)
            raise ProcessSpawnError(f"Failed to launch {command.executable}: {exc}") from exc

        if process.stdin is None or process.stdout is None:
            with anyio.CancelScope(shield=True):
                await _aclose_quietly(process)
            self._set_state(SessionState.STOPPED)
            raise TransportError("language server process has no stdio pipes")

        connection = JsonRpcConnection(process.stdin, process.stdout)
        session = ClientSession(command, process, connection)
        self._session = session
        self._set_state(SessionState.STARTING, session)

        connection.on_notification(LOG_MESSAGE, _log_server_message)
        for method, handler in self._request_handlers.items():
            connection.on_request(method, handler)
        if self._relay is not None and self._sink is not None:
            self._relay.attach(session, self._sink)

        self._task_group.start_soon(self._watch, session)

        handshake_done = False
        try:
            result = await connection.request(
                "initialize",
                self._initialize_params(initialization_options),
                timeout=self._handshake_timeout,
            )
            await connection.notify("initialized", {})
            handshake_done = True
        except TransportError as exc:
            logger.warning("Language server handshake failed: %s", exc)
            raise
        finally:
            if not handshake_done:
                with anyio.CancelScope(shield=True):
                    await self._release(session)

        if isinstance(result, dict) and isinstance(result.get("serverInfo"), dict):
            session.server_info = result["serverInfo"]

        self._set_state(SessionState.RUNNING, session)
        logger.info("Language server running (pid %s)", session.pid)
        return session

    async def _stop_locked(self) -> None:
        session = self._session
        if session is None:
            return

        self._set_state(SessionState.STOPPING, session)
        try:
            with anyio.move_on_after(self._shutdown_timeout):
                await session.connection.request("shutdown", timeout=self._shutdown_timeout)
                await session.connection.notify("exit")
        except TransportError as exc:
            logger.debug("Graceful shutdown of language server failed: %s", exc)
        finally:
            with anyio.CancelScope(shield=True):
                await self._release(session)

    async def _release(self, session: ClientSession) -> None:
        """Free the session's transport and process on every exit path."""
        if self._relay is not None:
            self._relay.detach()

        await session.connection.aclose()
        await self._terminate(session.process)
        session.scope.cancel()
        await _aclose_quietly(session.process.stdout)
        await _aclose_quietly(session.process.stderr)

        if self._session is session:
            self._session = None
        self._set_state(SessionState.STOPPED, session)
        logger.info("Language server stopped (exit code %s)", session.returncode)

    async def _terminate(self, process: Process) -> None:
        if process.returncode is not None:
            return

        with anyio.move_on_after(self._shutdown_timeout):
            await process.wait()
        if process.returncode is not None:
            return

        logger.warning(
            "Language server did not exit within %.1fs; terminating pid %s",
            self._shutdown_timeout,
            process.pid,
        )
        with contextlib.suppress(ProcessLookupError):
            process.terminate()
        with anyio.move_on_after(1.0):
            await process.wait()
        if process.returncode is not None:
            return

        with contextlib.suppress(ProcessLookupError):
            process.kill()
        with anyio.move_on_after(1.0):
            await process.wait()

    async def _drain_stderr(self, session: ClientSession) -> None:
        stderr = session.process.stderr
        if stderr is None:
            return

        pending = ""
        with contextlib.suppress(anyio.ClosedResourceError, anyio.BrokenResourceError):
            async for chunk in TextReceiveStream(stderr, errors="replace"):
                pending += chunk
                *lines, pending = pending.split("\n")
                for line in lines:
                    if line.strip():
                        server_logger.debug("%s", line.rstrip())
        if pending.strip():
            server_logger.debug("%s", pending.rstrip())

    async def _watch(self, session: ClientSession) -> None:
        """Pump the transport and detect unexpected process exit."""
        with session.scope:
            async with anyio.create_task_group() as tg:
                tg.start_soon(session.connection.serve)
                tg.start_soon(self._drain_stderr, session)
                returncode = await session.process.wait()
            await self._on_process_exit(session, returncode)

    async def _on_process_exit(self, session: ClientSession, returncode: int) -> None:
        async with self._lock:
            if self._session is not session or session.state is not SessionState.RUNNING:
                return
            logger.error("Language server exited unexpectedly with code %s", returncode)
            self._report(
                NotificationEvent(
                    severity=Severity.ERROR,
                    message=f"Slice Language Server exited unexpectedly (exit code {returncode}).",
                )
            )
            with anyio.CancelScope(shield=True):
                await self._release(session)
