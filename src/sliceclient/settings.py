"""Load Slice settings from a workspace JSON settings file."""

from __future__ import annotations

import json
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from .errors import ConfigurationValidationError
from .models import ConfigurationSnapshot

SETTINGS_DIR = ".vscode"
SETTINGS_FILENAME = "settings.json"
ENABLED_KEY = "slice.languageServer.enabled"
CONFIGURATIONS_KEY = "slice.configurations"

_MISSING = object()


def settings_path(workspace: str | Path) -> Path:
    """Default settings file for a workspace."""
    return Path(workspace) / SETTINGS_DIR / SETTINGS_FILENAME


def _lookup(settings: Mapping[str, Any], dotted_key: str) -> Any:
    """Find a key written either flat (``a.b.c``) or nested (``{"a": {"b": ...}}``)."""
    if dotted_key in settings:
        return settings[dotted_key]

    head, _, rest = dotted_key.partition(".")
    node = settings.get(head, _MISSING)
    if not rest or not isinstance(node, Mapping):
        return node
    return _lookup(node, rest)


def snapshot_from_settings(settings: Mapping[str, Any]) -> ConfigurationSnapshot:
    """Build a snapshot from raw settings, applying defaults for missing keys.

    Raises:
        ConfigurationValidationError: a setting has the wrong shape.
    """
    payload: dict[str, Any] = {}

    enabled = _lookup(settings, ENABLED_KEY)
    if enabled is not _MISSING:
        payload["enableLanguageServer"] = enabled

    configurations = _lookup(settings, CONFIGURATIONS_KEY)
    if configurations is not _MISSING and configurations is not None:
        payload["configurations"] = configurations

    try:
        return ConfigurationSnapshot.model_validate(payload)
    except ValidationError as exc:
        raise ConfigurationValidationError(f"invalid Slice settings: {exc}") from exc


def load_settings(path: str | Path) -> dict[str, Any]:
    """Read a settings file; a missing file yields empty settings.

    Raises:
        ConfigurationValidationError: the file is unreadable or not a JSON object.
    """
    settings_file = Path(path)
    if not settings_file.exists():
        return {}

    try:
        payload = json.loads(settings_file.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ConfigurationValidationError(f"cannot read {settings_file}: {exc}") from exc

    if not isinstance(payload, dict):
        raise ConfigurationValidationError(f"{settings_file} does not contain a JSON object")
    return payload


def load_snapshot(path: str | Path) -> ConfigurationSnapshot:
    return snapshot_from_settings(load_settings(path))
