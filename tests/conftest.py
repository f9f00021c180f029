"""Global pytest fixtures for deterministic test behavior."""

import pytest

from sliceclient.resolver import BUILD_MODE_ENV_VAR, SERVER_COMMAND_ENV_VAR


@pytest.fixture(autouse=True)
def _isolate_resolver_env(monkeypatch):
    """Keep developer overrides from leaking into command resolution."""
    monkeypatch.delenv(SERVER_COMMAND_ENV_VAR, raising=False)
    monkeypatch.delenv(BUILD_MODE_ENV_VAR, raising=False)


@pytest.fixture
def server_log(tmp_path):
    """Path the fake server appends received messages to."""
    return tmp_path / "server-messages.jsonl"
