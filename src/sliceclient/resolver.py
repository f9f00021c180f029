"""Map (platform, architecture, build mode) to the language server executable."""

from __future__ import annotations

import os
import platform as _platform
import shlex
import sys
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from .errors import UnsupportedPlatformError
from .models import ServerCommand

SERVER_BINARY = "slice-language-server"
SERVER_COMMAND_ENV_VAR = "SLICE_SERVER_COMMAND"
BUILD_MODE_ENV_VAR = "SLICE_BUILD_MODE"
VERBOSE_LOG_ENV = {"RUST_LOG": "debug"}


class BuildMode(Enum):
    PRODUCTION = "production"
    DEVELOPMENT = "development"


@dataclass(frozen=True)
class TargetSpec:
    """Release binaries shipped for one (platform, architecture) pair.

    ``triples`` are probed in order when ``probe`` is set; otherwise the first
    triple is used without touching the filesystem.
    """

    platform: str
    architecture: str
    triples: tuple[str, ...]
    executable_suffix: str = ""
    probe: bool = False


def bundled_targets() -> tuple[TargetSpec, ...]:
    """Return the release target table."""
    return (
        TargetSpec("darwin", "arm64", ("aarch64-apple-darwin",)),
        TargetSpec("darwin", "x64", ("x86_64-apple-darwin",)),
        TargetSpec("linux", "x64", ("x86_64-unknown-linux-gnu",)),
        TargetSpec("linux", "arm64", ("aarch64-unknown-linux-gnu",)),
        TargetSpec(
            "win32",
            "x64",
            ("x86_64-pc-windows-msvc", "x86_64-pc-windows-gnu"),
            executable_suffix=".exe",
            probe=True,
        ),
    )


_TARGETS: dict[tuple[str, str], TargetSpec] = {
    (spec.platform, spec.architecture): spec for spec in bundled_targets()
}

_ARCH_ALIASES = {
    "x86_64": "x64",
    "amd64": "x64",
    "x64": "x64",
    "aarch64": "arm64",
    "arm64": "arm64",
}


def current_platform() -> str:
    """Normalize ``sys.platform`` into the target table's identifiers."""
    if sys.platform.startswith("linux"):
        return "linux"
    if sys.platform in ("win32", "cygwin"):
        return "win32"
    return sys.platform


def current_architecture() -> str:
    machine = _platform.machine().lower()
    return _ARCH_ALIASES.get(machine, machine)


def build_mode_from_env(env: Mapping[str, str] | None = None) -> BuildMode:
    """Read the build mode from the environment, defaulting to production."""
    source = os.environ if env is None else env
    value = source.get(BUILD_MODE_ENV_VAR, "").strip().lower()
    if value == BuildMode.DEVELOPMENT.value:
        return BuildMode.DEVELOPMENT
    return BuildMode.PRODUCTION


def server_environment(
    build_mode: BuildMode, base_env: Mapping[str, str] | None = None
) -> dict[str, str]:
    """Inherited environment plus verbose logging outside production."""
    env = dict(os.environ if base_env is None else base_env)
    if build_mode is not BuildMode.PRODUCTION:
        env.update(VERBOSE_LOG_ENV)
    return env


def _release_path(base_path: Path, triple: str, suffix: str) -> Path:
    return base_path / triple / "release" / f"{SERVER_BINARY}{suffix}"


def _debug_path(base_path: Path, platform: str) -> Path:
    suffix = ".exe" if platform == "win32" else ""
    return base_path / "debug" / f"{SERVER_BINARY}{suffix}"


def resolve(
    platform: str,
    architecture: str,
    build_mode: BuildMode,
    base_path: str | Path,
    *,
    base_env: Mapping[str, str] | None = None,
) -> ServerCommand:
    """Resolve the server command for a platform.

    Development builds always get the debug path; a missing debug binary is
    reported later, when the process is spawned.

    Raises:
        UnsupportedPlatformError: no release binary exists for the pair, or
            none of the probed Windows candidates is present on disk.
    """
    base = Path(base_path)
    env = server_environment(build_mode, base_env)

    if build_mode is BuildMode.DEVELOPMENT:
        return ServerCommand(executable=_debug_path(base, platform), env=env)

    spec = _TARGETS.get((platform, architecture))
    if spec is None:
        raise UnsupportedPlatformError(platform, architecture)

    candidates = [_release_path(base, triple, spec.executable_suffix) for triple in spec.triples]
    if not spec.probe:
        return ServerCommand(executable=candidates[0], env=env)

    for candidate in candidates:
        if candidate.is_file():
            return ServerCommand(executable=candidate, env=env)

    raise UnsupportedPlatformError(
        platform,
        architecture,
        "no server binary found (looked for "
        + ", ".join(str(candidate) for candidate in candidates)
        + ")",
    )


def parse_command(command: str) -> list[str]:
    """Split a shell-style command string into an argv list."""
    return [part for part in shlex.split(command) if part]


def resolve_for_host(
    base_path: str | Path,
    build_mode: BuildMode | None = None,
    *,
    env: Mapping[str, str] | None = None,
) -> ServerCommand:
    """Resolve for the running interpreter, honouring ``SLICE_SERVER_COMMAND``."""
    source = os.environ if env is None else env
    mode = build_mode if build_mode is not None else build_mode_from_env(source)

    override = parse_command(source.get(SERVER_COMMAND_ENV_VAR, ""))
    if override:
        return ServerCommand(
            executable=Path(override[0]),
            args=tuple(override[1:]),
            env=server_environment(mode, source),
        )

    return resolve(current_platform(), current_architecture(), mode, base_path, base_env=source)
