"""Shared test utilities."""

from __future__ import annotations

import json
import os
import sys
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Any

import anyio

from sliceclient.models import ServerCommand

FAKE_SERVER = Path(__file__).with_name("fake_slice_server.py")


def fake_server_command(
    log_path: Path,
    *,
    mode: str = "normal",
    notifications: Iterable[dict[str, Any]] = (),
) -> ServerCommand:
    """Command launching the scriptable fake server with the running interpreter."""
    env = dict(os.environ)
    env.update(
        {
            "FAKE_LSP_LOG": str(log_path),
            "FAKE_LSP_MODE": mode,
            "FAKE_LSP_NOTIFICATIONS": json.dumps(list(notifications)),
        }
    )
    return ServerCommand(executable=Path(sys.executable), args=(str(FAKE_SERVER),), env=env)


def read_log(log_path: Path) -> list[dict[str, Any]]:
    """Messages received by the fake server, in arrival order."""
    if not log_path.exists():
        return []
    return [json.loads(line) for line in log_path.read_text().splitlines() if line.strip()]


def methods(log_path: Path) -> list[str]:
    return [message.get("method") for message in read_log(log_path)]


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    """Poll until ``predicate`` holds or fail after ``timeout`` seconds."""
    with anyio.fail_after(timeout):
        while not predicate():
            await anyio.sleep(0.02)


class RecordingDisplay:
    """Message display capturing (severity, message) pairs."""

    def __init__(self) -> None:
        self.messages: list[tuple[str, str]] = []

    def show_info(self, message: str) -> None:
        self.messages.append(("info", message))

    def show_warning(self, message: str) -> None:
        self.messages.append(("warning", message))

    def show_error(self, message: str) -> None:
        self.messages.append(("error", message))
