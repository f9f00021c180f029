"""Value types shared by the resolver, supervisor, synchronizer, and relay."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .errors import ConfigurationValidationError


@dataclass(frozen=True)
class ServerCommand:
    """Resolved launch command for one server session."""

    executable: Path
    args: tuple[str, ...] = ()
    env: Mapping[str, str] | None = None
    cwd: Path | None = None

    def __post_init__(self) -> None:
        # None inherits the parent environment; otherwise keep a read-only copy.
        if self.env is not None:
            object.__setattr__(self, "env", MappingProxyType(dict(self.env)))
        object.__setattr__(self, "args", tuple(self.args))

    @property
    def argv(self) -> list[str]:
        return [os.fspath(self.executable), *self.args]


class SessionState(Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class Severity(Enum):
    """Presentation severity, valued by the server's wire tag."""

    INFO = "Info"
    WARNING = "Warning"
    ERROR = "Error"


@dataclass(frozen=True)
class NotificationEvent:
    severity: Severity
    message: str


class ConfigurationSet(BaseModel):
    """Search paths compiled together by the server."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    paths: tuple[str, ...] = ()
    add_well_known_types: bool = Field(True, alias="addWellKnownTypes")


class ConfigurationSnapshot(BaseModel):
    """Immutable view of the user settings relevant to the server."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    enabled: bool = Field(True, alias="enableLanguageServer")
    configurations: tuple[ConfigurationSet, ...] = ()

    def effective_configurations(self, workspace_root: str | Path) -> tuple[ConfigurationSet, ...]:
        """Configured sets, or one default set rooted at the workspace."""
        if self.configurations:
            return self.configurations
        return (ConfigurationSet(paths=(os.fspath(workspace_root),)),)

    def to_settings(self, workspace_root: str | Path | None = None) -> dict[str, Any]:
        """Render the ``slice`` settings section sent to the server.

        When ``workspace_root`` is given, an empty configuration list is sent
        as the workspace default set.
        """
        settings = self.model_dump(mode="json", by_alias=True)
        if workspace_root is not None:
            settings["configurations"] = [
                config_set.model_dump(mode="json", by_alias=True)
                for config_set in self.effective_configurations(workspace_root)
            ]
        return settings


def validate_snapshot(snapshot: ConfigurationSnapshot) -> ConfigurationSnapshot:
    """Reject snapshots containing a configuration set without paths."""
    for index, config_set in enumerate(snapshot.configurations):
        if not config_set.paths or not all(path.strip() for path in config_set.paths):
            raise ConfigurationValidationError(
                f"configuration set #{index} must list at least one non-empty path"
            )
    return snapshot
