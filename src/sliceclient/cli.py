#!/usr/bin/env python3
"""Command line entry point for running and diagnosing the Slice language client."""

import argparse
import json
import logging
import sys
from pathlib import Path

import anyio

from . import __version__
from .errors import UnsupportedPlatformError
from .host import WorkspaceHost
from .orchestrator import SERVER_DIR, Orchestrator
from .resolver import (
    SERVER_COMMAND_ENV_VAR,
    BuildMode,
    build_mode_from_env,
    current_architecture,
    current_platform,
    resolve_for_host,
)
from .settings import settings_path

logger = logging.getLogger(__name__)


def _build_mode(args: argparse.Namespace) -> BuildMode:
    if args.development:
        return BuildMode.DEVELOPMENT
    return build_mode_from_env()


def _collect_doctor_report(extension_path: Path, build_mode: BuildMode) -> dict:
    """Resolve the server command and report whether it can be launched."""
    report = {
        "platform": current_platform(),
        "architecture": current_architecture(),
        "build_mode": build_mode.value,
        "extension_path": str(extension_path),
        "command": None,
        "available": False,
        "reason": None,
    }
    try:
        command = resolve_for_host(extension_path / SERVER_DIR, build_mode)
    except UnsupportedPlatformError as exc:
        report["reason"] = str(exc)
        return report

    report["command"] = command.argv
    report["available"] = command.executable.is_file()
    if not report["available"]:
        report["reason"] = f"executable not found: {command.executable}"
    return report


def _print_doctor(report: dict, as_json: bool) -> None:
    if as_json:
        print(json.dumps(report, indent=2))
        return

    state = "OK" if report["available"] else "MISSING"
    print("Slice language client doctor")
    print(f"  platform: {report['platform']} ({report['architecture']}), {report['build_mode']} build")
    command = " ".join(report["command"]) if report["command"] else "<unresolved>"
    print(f"[{state}] {command}")
    if report["reason"]:
        print(f"      note: {report['reason']}")
        print(f"      hint: set {SERVER_COMMAND_ENV_VAR} to override the server command")


async def _serve(args: argparse.Namespace) -> None:
    host = WorkspaceHost(
        args.workspace,
        args.extension_path,
        settings_file=args.settings,
        watch=not args.no_watch,
    )
    async with host, Orchestrator(
        build_mode=_build_mode(args),
        handshake_timeout=args.handshake_timeout,
        shutdown_timeout=args.shutdown_timeout,
    ) as orchestrator:
        await orchestrator.activate(host)
        logger.info("Language client state: %s", orchestrator.state.value)
        await anyio.sleep_forever()


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Supervise the Slice language server for a workspace"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    def add_common(sub: argparse.ArgumentParser) -> None:
        sub.add_argument(
            "--extension-path",
            type=Path,
            default=Path.cwd(),
            help="Directory containing server/target and the built-in slice files",
        )
        sub.add_argument(
            "--development",
            action="store_true",
            help="Use the debug server build instead of the release table",
        )

    run_parser = subparsers.add_parser("run", help="Run the language client until interrupted")
    add_common(run_parser)
    run_parser.add_argument("--workspace", type=Path, default=Path.cwd(), help="Workspace root")
    run_parser.add_argument(
        "--settings",
        type=Path,
        default=None,
        help="Settings JSON file (default: <workspace>/.vscode/settings.json)",
    )
    run_parser.add_argument(
        "--no-watch", action="store_true", help="Do not watch the settings file for changes"
    )
    run_parser.add_argument("--handshake-timeout", type=float, default=10.0)
    run_parser.add_argument("--shutdown-timeout", type=float, default=5.0)

    doctor_parser = subparsers.add_parser("doctor", help="Show which server binary would be used")
    add_common(doctor_parser)
    doctor_parser.add_argument("--json", action="store_true", help="Output as JSON")

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "doctor":
        report = _collect_doctor_report(args.extension_path.resolve(), _build_mode(args))
        _print_doctor(report, as_json=args.json)
        if not report["available"]:
            sys.exit(1)

    elif args.command == "run":
        if args.settings is None:
            args.settings = settings_path(args.workspace)
        try:
            anyio.run(_serve, args)
        except KeyboardInterrupt:
            logger.info("Interrupted; language client stopped")

    else:
        parser.print_help()


if __name__ == "__main__":
    main()
