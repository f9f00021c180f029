"""Tests for shared value types."""

from __future__ import annotations

import dataclasses
from pathlib import Path

import pytest
from pydantic import ValidationError

from sliceclient.errors import ConfigurationValidationError
from sliceclient.models import (
    ConfigurationSet,
    ConfigurationSnapshot,
    ServerCommand,
    validate_snapshot,
)


class TestServerCommand:
    def test_argv_starts_with_executable(self):
        command = ServerCommand(executable=Path("/opt/slice/server"), args=("--stdio",))
        assert command.argv == ["/opt/slice/server", "--stdio"]

    def test_env_is_read_only_copy(self):
        source = {"RUST_LOG": "debug"}
        command = ServerCommand(executable=Path("server"), env=source)
        source["RUST_LOG"] = "trace"

        assert command.env["RUST_LOG"] == "debug"
        with pytest.raises(TypeError):
            command.env["OTHER"] = "x"  # type: ignore[index]

    def test_env_defaults_to_inherit(self):
        assert ServerCommand(executable=Path("server")).env is None

    def test_frozen(self):
        command = ServerCommand(executable=Path("server"))
        with pytest.raises(dataclasses.FrozenInstanceError):
            command.executable = Path("other")  # type: ignore[misc]


class TestConfigurationSnapshot:
    def test_defaults(self):
        snapshot = ConfigurationSnapshot()
        assert snapshot.enabled is True
        assert snapshot.configurations == ()

    def test_wire_aliases(self):
        snapshot = ConfigurationSnapshot.model_validate(
            {
                "enableLanguageServer": False,
                "configurations": [{"paths": ["/proj"], "addWellKnownTypes": False}],
            }
        )
        assert snapshot.enabled is False
        assert snapshot.configurations[0].paths == ("/proj",)
        assert snapshot.configurations[0].add_well_known_types is False

    def test_well_known_types_default_true(self):
        config_set = ConfigurationSet.model_validate({"paths": ["/proj"]})
        assert config_set.add_well_known_types is True

    def test_to_settings_uses_wire_names(self):
        snapshot = ConfigurationSnapshot(configurations=(ConfigurationSet(paths=("/proj",)),))
        assert snapshot.to_settings() == {
            "enableLanguageServer": True,
            "configurations": [{"paths": ["/proj"], "addWellKnownTypes": True}],
        }

    def test_to_settings_with_workspace_root_fills_default(self, tmp_path):
        settings = ConfigurationSnapshot(enabled=False).to_settings(tmp_path)
        assert settings == {
            "enableLanguageServer": False,
            "configurations": [{"paths": [str(tmp_path)], "addWellKnownTypes": True}],
        }

    def test_to_settings_with_workspace_root_keeps_explicit_sets(self, tmp_path):
        snapshot = ConfigurationSnapshot(configurations=(ConfigurationSet(paths=("/a",)),))
        assert snapshot.to_settings(tmp_path) == snapshot.to_settings()

    def test_snapshots_are_immutable(self):
        snapshot = ConfigurationSnapshot()
        with pytest.raises(ValidationError):
            snapshot.enabled = False  # type: ignore[misc]

    def test_equal_snapshots_compare_equal(self):
        first = ConfigurationSnapshot(configurations=(ConfigurationSet(paths=("/a",)),))
        second = ConfigurationSnapshot.model_validate({"configurations": [{"paths": ["/a"]}]})
        assert first == second

    def test_effective_configurations_default_to_workspace(self, tmp_path):
        effective = ConfigurationSnapshot().effective_configurations(tmp_path)
        assert effective == (ConfigurationSet(paths=(str(tmp_path),)),)

    def test_effective_configurations_keep_explicit_sets(self, tmp_path):
        sets = (ConfigurationSet(paths=("/a",)), ConfigurationSet(paths=("/b",)))
        snapshot = ConfigurationSnapshot(configurations=sets)
        assert snapshot.effective_configurations(tmp_path) == sets


class TestValidateSnapshot:
    def test_accepts_non_empty_paths(self):
        snapshot = ConfigurationSnapshot(configurations=(ConfigurationSet(paths=("/proj",)),))
        assert validate_snapshot(snapshot) is snapshot

    def test_accepts_no_configuration_sets(self):
        validate_snapshot(ConfigurationSnapshot())

    @pytest.mark.parametrize("paths", [(), ("",), ("/proj", "  ")])
    def test_rejects_empty_paths(self, paths):
        snapshot = ConfigurationSnapshot(
            configurations=(ConfigurationSet(paths=("/ok",)), ConfigurationSet(paths=paths))
        )
        with pytest.raises(ConfigurationValidationError, match="#1"):
            validate_snapshot(snapshot)
