"""Public CLI contract and entrypoint."""

from __future__ import annotations

import argparse
import logging as py_logging
import sys
from collections.abc import Callable, Sequence
from pathlib import Path

from pydantic import ValidationError

from .config import AppConfig, load_config
from .errors import AgentVmError, ExitCode, user_facing_error
from .logging import configure_logging, default_log_path
from .orchestrator import Orchestrator, build_orchestrator, parse_command

_VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARN", "ERROR")


def _log_level_type(value: str) -> str:
    normalized = value.upper()
    if normalized == "WARNING":
        normalized = "WARN"
    if normalized not in _VALID_LOG_LEVELS:
        accepted = ", ".join(_VALID_LOG_LEVELS)
        raise argparse.ArgumentTypeError(f"--log-level must be one of: {accepted}")
    return normalized


def _positive_int(flag: str) -> Callable[[str], int]:
    def parse(value: str) -> int:
        try:
            number = int(value)
        except ValueError as exc:
            raise argparse.ArgumentTypeError(f"{flag} must be an integer") from exc
        if number < 1:
            raise argparse.ArgumentTypeError(f"{flag} must be positive")
        return number

    return parse


def _add_repo(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--repo", type=Path, default=None, help="Host git repository (default: cwd)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="agentvm")
    parser.add_argument("--config", type=Path, default=None)
    parser.add_argument("--log-level", type=_log_level_type, default="INFO")
    parser.add_argument("--log-file", type=Path, default=None)
    commands = parser.add_subparsers(dest="kind", required=True, metavar="command")

    connect = commands.add_parser("connect", help="Start the VM if needed and open a workspace shell")
    connect.add_argument("name", nargs="?", default=None, help="Branch name (default: current branch)")
    connect.add_argument("--root", action="store_true", dest="as_root")
    connect.add_argument("-c", "--command", dest="command", default=None, help="Run one command instead of a shell")
    connect.add_argument("--memory", type=_positive_int("--memory"), default=None, dest="memory_mb")
    connect.add_argument("--vcpus", type=_positive_int("--vcpus"), default=None)
    connect.add_argument("--disk", type=_positive_int("--disk"), default=None, dest="disk_gb")
    connect.add_argument("--gcp-credentials", type=Path, default=None, dest="credentials_path")
    connect.add_argument("--vertex-project-id", default=None, help="Vertex AI project (default: $ANTHROPIC_VERTEX_PROJECT_ID)")
    connect.add_argument("--vertex-region", default=None, help="Vertex AI region (default: $CLOUD_ML_REGION or us-central1)")
    _add_repo(connect)

    push = commands.add_parser("push", help="Push a host branch into its workspace")
    push.add_argument("name", nargs="?", default=None)
    _add_repo(push)

    fetch = commands.add_parser("fetch", help="Fetch workspace commits back to the host")
    fetch.add_argument("name", nargs="?", default=None)
    fetch.add_argument("--unmount", action="store_true")
    _add_repo(fetch)

    for kind, summary in (
        ("list", "List workspaces in the VM"),
        ("clean-all", "Remove every workspace"),
        ("destroy", "Destroy the VM"),
        ("status", "Show VM and mount state"),
    ):
        _add_repo(commands.add_parser(kind, help=summary))

    clean = commands.add_parser("clean", help="Remove one workspace")
    clean.add_argument("name")
    _add_repo(clean)
    return parser


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = build_parser()
    return parser.parse_args(argv)


def command_payload(namespace: argparse.Namespace) -> dict[str, object]:
    payload: dict[str, object] = {"kind": namespace.kind, "repo_dir": namespace.repo}
    if namespace.kind in {"connect", "push", "fetch", "clean"}:
        payload["name"] = namespace.name
    if namespace.kind == "fetch":
        payload["unmount"] = namespace.unmount
    if namespace.kind == "connect":
        payload["as_root"] = namespace.as_root
        payload["command"] = namespace.command
        payload["credentials_path"] = namespace.credentials_path
        payload["vertex_project_id"] = namespace.vertex_project_id
        payload["vertex_region"] = namespace.vertex_region
        payload["overrides"] = {
            "memory_mb": namespace.memory_mb,
            "vcpus": namespace.vcpus,
            "disk_gb": namespace.disk_gb,
        }
    return payload


def main(
    argv: Sequence[str] | None = None,
    *,
    orchestrator_factory: Callable[[AppConfig], Orchestrator] | None = None,
) -> int:
    log_path = default_log_path()
    logger = configure_logging(log_file=log_path)
    parser = build_parser()
    try:
        namespace = parser.parse_args(argv)
    except SystemExit as exc:
        if exc.code not in (None, 0):
            logger.warning("Argument parsing failed with exit code %s", exc.code)
        return int(exc.code or 0)

    if namespace.log_file is not None:
        log_path = namespace.log_file.expanduser()
    logger = configure_logging(level=namespace.log_level, log_file=log_path, command=namespace.kind)

    try:
        try:
            command = parse_command(command_payload(namespace))
        except ValidationError as exc:
            raise AgentVmError(
                "Invalid command arguments.",
                code=ExitCode.INVALID_ARGS,
                hint=str(exc.errors()[0].get("msg", "")) if exc.errors() else "",
            ) from exc

        config = load_config(namespace.config)
        factory = orchestrator_factory or build_orchestrator
        orchestrator = factory(config)
        logger.debug("Starting %s flow", command.kind)
        result = orchestrator.execute(
            command,
            out=print,
            err=lambda line: print(line, file=sys.stderr),
        )
        return int(result.exit_code)
    except AgentVmError as exc:
        logger.error(
            "Handled AgentVmError (code=%s): %s",
            int(exc.code),
            exc.message,
            exc_info=logger.isEnabledFor(py_logging.DEBUG),
        )
        print(user_facing_error(exc.message, hint=exc.hint), file=sys.stderr)
        return int(exc.code)
    except KeyboardInterrupt:
        logger.warning("Interrupted by user")
        return int(ExitCode.RUNTIME_ERROR)
    except Exception:
        logger.exception("Unhandled exception in CLI entrypoint")
        try:
            hint = f"Inspect logs: {log_path}"
            print(user_facing_error("Unexpected runtime failure", hint=hint), file=sys.stderr)
        except Exception:
            pass
        return int(ExitCode.RUNTIME_ERROR)


def run(argv: Sequence[str] | None = None) -> int:
    return main(argv)
