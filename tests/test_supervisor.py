"""Tests for the process supervisor against a real subprocess."""

from __future__ import annotations

import contextlib
import sys
from pathlib import Path

import anyio
import pytest

from helpers import FAKE_SERVER, fake_server_command, methods, read_log, wait_until
from sliceclient.errors import ProcessSpawnError, TransportError
from sliceclient.models import NotificationEvent, ServerCommand, SessionState, Severity
from sliceclient.notifications import NotificationRelay
from sliceclient.supervisor import ProcessSupervisor


@contextlib.asynccontextmanager
async def supervised(tmp_path: Path, **kwargs):
    """Yield a supervisor whose session is always stopped on exit."""
    async with anyio.create_task_group() as tg:
        supervisor = ProcessSupervisor(tg, workspace_root=tmp_path, **kwargs)
        try:
            yield supervisor
        finally:
            with anyio.CancelScope(shield=True):
                await supervisor.stop()


class TestStartStop:
    @pytest.mark.asyncio
    async def test_start_runs_handshake(self, tmp_path, server_log):
        states: list[SessionState] = []
        async with supervised(tmp_path, on_state_change=states.append) as supervisor:
            session = await supervisor.start(fake_server_command(server_log))

            assert supervisor.state is SessionState.RUNNING
            assert supervisor.is_running
            assert session.server_info == {"name": "fake-slice-server"}
            assert methods(server_log) == ["initialize", "initialized"]

            await supervisor.stop()

            assert supervisor.state is SessionState.STOPPED
            assert supervisor.session is None
            assert session.returncode is not None
            assert methods(server_log) == ["initialize", "initialized", "shutdown", "exit"]

        assert states == [
            SessionState.STARTING,
            SessionState.RUNNING,
            SessionState.STOPPING,
            SessionState.STOPPED,
        ]

    @pytest.mark.asyncio
    async def test_initialize_carries_options_and_root(self, tmp_path, server_log):
        options = {"builtInSlicePath": "/ext/slice", "configurations": [{"paths": ["/proj"]}]}
        async with supervised(tmp_path) as supervisor:
            await supervisor.start(fake_server_command(server_log), initialization_options=options)

        initialize = read_log(server_log)[0]
        assert initialize["params"]["initializationOptions"] == options
        assert initialize["params"]["rootUri"] == tmp_path.resolve().as_uri()

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, tmp_path, server_log):
        async with supervised(tmp_path) as supervisor:
            first = await supervisor.start(fake_server_command(server_log))
            second = await supervisor.start(fake_server_command(server_log))

            assert first is second
            assert methods(server_log).count("initialize") == 1

    @pytest.mark.asyncio
    async def test_stop_when_stopped_is_noop(self, tmp_path):
        async with supervised(tmp_path) as supervisor:
            await supervisor.stop()
            await supervisor.stop()
            assert supervisor.state is SessionState.STOPPED

    @pytest.mark.asyncio
    async def test_restart_replaces_process(self, tmp_path, server_log):
        async with supervised(tmp_path) as supervisor:
            first = await supervisor.start(fake_server_command(server_log))
            second = await supervisor.restart(fake_server_command(server_log))

            assert second is not first
            assert first.returncode is not None
            assert second.pid != first.pid
            assert supervisor.session is second
            assert methods(server_log) == [
                "initialize",
                "initialized",
                "shutdown",
                "exit",
                "initialize",
                "initialized",
            ]

    @pytest.mark.asyncio
    async def test_notify_reaches_running_server(self, tmp_path, server_log):
        async with supervised(tmp_path) as supervisor:
            await supervisor.start(fake_server_command(server_log))
            await supervisor.notify("workspace/didChangeConfiguration", {"settings": {}})
            await wait_until(lambda: "workspace/didChangeConfiguration" in methods(server_log))

    @pytest.mark.asyncio
    async def test_notify_without_session_raises(self, tmp_path):
        async with supervised(tmp_path) as supervisor:
            with pytest.raises(TransportError, match="not running"):
                await supervisor.notify("workspace/didChangeConfiguration", {})


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_concurrent_lifecycle_calls_leave_one_live_process(self, tmp_path, server_log):
        sessions = []

        async with supervised(tmp_path) as supervisor:
            command = fake_server_command(server_log)

            async def start() -> None:
                sessions.append(await supervisor.start(command))

            async def restart() -> None:
                sessions.append(await supervisor.restart(command))

            async with anyio.create_task_group() as calls:
                for operation in (start, restart, start, restart, start):
                    calls.start_soon(operation)

            live = supervisor.session
            assert live is not None
            assert supervisor.state is SessionState.RUNNING
            assert len(sessions) == 5
            assert live in sessions
            assert {session.pid for session in sessions if session.returncode is None} == {live.pid}
            assert methods(server_log).count("initialize") - methods(server_log).count("exit") == 1


class TestFailures:
    @pytest.mark.asyncio
    async def test_missing_executable(self, tmp_path):
        async with supervised(tmp_path) as supervisor:
            with pytest.raises(ProcessSpawnError):
                await supervisor.start(ServerCommand(executable=tmp_path / "missing-server"))
            assert supervisor.state is SessionState.STOPPED
            assert supervisor.session is None

    @pytest.mark.asyncio
    async def test_handshake_timeout_releases_process(self, tmp_path, server_log):
        async with supervised(tmp_path, handshake_timeout=0.5) as supervisor:
            with pytest.raises(TransportError, match="initialize"):
                await supervisor.start(fake_server_command(server_log, mode="silent"))
            assert supervisor.state is SessionState.STOPPED
            assert supervisor.session is None

    @pytest.mark.asyncio
    async def test_unexpected_exit_is_reported(self, tmp_path, server_log):
        events: list[NotificationEvent] = []
        async with supervised(tmp_path, sink=events.append) as supervisor:
            session = await supervisor.start(fake_server_command(server_log, mode="crash_after_init"))
            await wait_until(lambda: supervisor.state is SessionState.STOPPED)

            assert supervisor.session is None
            assert session.returncode == 3
            assert events == [
                NotificationEvent(
                    Severity.ERROR, "Slice Language Server exited unexpectedly (exit code 3)."
                )
            ]

    @pytest.mark.asyncio
    async def test_unresponsive_server_is_killed(self, tmp_path, server_log):
        async with supervised(tmp_path, shutdown_timeout=0.5) as supervisor:
            session = await supervisor.start(fake_server_command(server_log, mode="ignore_exit"))
            with anyio.fail_after(10):
                await supervisor.stop()

            assert supervisor.state is SessionState.STOPPED
            assert session.returncode is not None


class TestRelayWiring:
    @pytest.mark.asyncio
    async def test_server_notifications_reach_sink(self, tmp_path, server_log):
        events: list[NotificationEvent] = []
        relay = NotificationRelay()
        command = fake_server_command(
            server_log,
            notifications=[
                {"message": "Config invalid", "message_type": "Warning"},
                {"message": "oops", "message_type": "Verbose"},
            ],
        )
        async with supervised(tmp_path, relay=relay, sink=events.append) as supervisor:
            await supervisor.start(command)
            assert relay.attached
            await wait_until(lambda: len(events) >= 1)
            await anyio.sleep(0.1)

            assert events == [NotificationEvent(Severity.WARNING, "Config invalid")]

        assert not relay.attached


class TestEnvironment:
    @pytest.mark.asyncio
    async def test_command_without_env_inherits_parent_environment(
        self, tmp_path, server_log, monkeypatch
    ):
        monkeypatch.setenv("FAKE_LSP_LOG", str(server_log))
        monkeypatch.setenv("FAKE_LSP_MODE", "normal")
        command = ServerCommand(executable=Path(sys.executable), args=(str(FAKE_SERVER),))
        assert command.env is None

        async with supervised(tmp_path) as supervisor:
            await supervisor.start(command)

        # The server found its log path only through the inherited environment.
        assert methods(server_log) == ["initialize", "initialized", "shutdown", "exit"]
