"""Bulwark CLI entry point.

Diagnostic front-end over the security pipeline: every subcommand prints
one JSON document on stdout and logs to stderr.

Exit status: 0 clean/valid/completed, 1 blocked/invalid/failed/killed,
2 usage or configuration error.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from bulwark.audit import verify_chain
from bulwark.config import ConfigError, load_config
from bulwark.models import ExecutionStatus
from bulwark.pipeline import SecurityPipeline, build_pipeline

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_REJECTED = 1
EXIT_ERROR = 2


def _emit(data: object) -> None:
    print(json.dumps(data, indent=2, default=str))


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bulwark",
        description="Bulwark: security pipeline for autonomous agent tool execution",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to a bulwark.yaml config file (default: built-in policy)",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: WARNING)",
    )

    subparsers = parser.add_subparsers(dest="command")

    # bulwark sanitize
    sanitize_parser = subparsers.add_parser("sanitize", help="Run text through the perimeter sanitizer")
    sanitize_parser.add_argument("text", nargs="+", help="Text to sanitize")
    sanitize_parser.add_argument("--source", default="cli", help="Source label (default: cli)")

    # bulwark validate
    validate_parser = subparsers.add_parser("validate", help="Validate a shell command")
    validate_parser.add_argument("cmd", nargs="+", metavar="COMMAND", help="Command to validate")

    # bulwark validate-path
    path_parser = subparsers.add_parser("validate-path", help="Validate a file path")
    path_parser.add_argument("path", help="File path to validate")
    path_parser.add_argument(
        "--operation",
        default="read",
        choices=["read", "write", "edit", "delete", "list"],
        help="File operation (default: read)",
    )

    # bulwark exec
    exec_parser = subparsers.add_parser("exec", help="Validate and run a command in the sandbox")
    exec_parser.add_argument("cmd", nargs="+", metavar="COMMAND", help="Command to run")
    exec_parser.add_argument("--timeout-ms", type=int, default=None, help="Wall-clock timeout")
    exec_parser.add_argument("--workspace", default=None, help="Working directory inside the workspace")
    exec_parser.add_argument("--network", action="store_true", help="Allow network access")

    # bulwark status
    subparsers.add_parser("status", help="Show layer configuration and sandbox availability")

    # bulwark verify-audit
    audit_parser = subparsers.add_parser("verify-audit", help="Verify audit log hash chain")
    audit_parser.add_argument(
        "file",
        nargs="?",
        type=Path,
        default=None,
        help="Audit NDJSON file (default: today's file in the configured log dir)",
    )

    return parser


def _run(args: argparse.Namespace, pipeline: SecurityPipeline) -> int:
    if args.command == "sanitize":
        result = pipeline.process_message(" ".join(args.text), args.source)
        _emit(result.model_dump(mode="json"))
        return EXIT_REJECTED if result.blocked else EXIT_OK

    if args.command == "validate":
        result = pipeline.validator.validate_command(" ".join(args.cmd))
        _emit(result.model_dump(mode="json"))
        return EXIT_OK if result.valid else EXIT_REJECTED

    if args.command == "validate-path":
        result = pipeline.validator.validate_file_path(args.path, args.operation)
        _emit(result.model_dump(mode="json"))
        return EXIT_OK if result.valid else EXIT_REJECTED

    if args.command == "exec":
        params: dict[str, object] = {"command": " ".join(args.cmd), "network": args.network}
        if args.timeout_ms:
            params["timeout_ms"] = args.timeout_ms
        if args.workspace:
            params["workdir"] = args.workspace
        outcome = asyncio.run(pipeline.execute_tool("exec", params))
        _emit(outcome.summary())
        completed = (
            outcome.execution is not None
            and outcome.execution.status is ExecutionStatus.COMPLETED
        )
        return EXIT_OK if completed else EXIT_REJECTED

    if args.command == "status":
        _emit(pipeline.security_status())
        return EXIT_OK

    if args.command == "verify-audit":
        ok, message = pipeline.audit.verify_chain()
        _emit({"ok": ok, "message": message})
        return EXIT_OK if ok else EXIT_REJECTED

    raise ValueError(f"unknown command: {args.command}")


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help(sys.stderr)
        return EXIT_ERROR

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
    )

    # An explicit audit file needs no pipeline (or workspace) at all.
    if args.command == "verify-audit" and args.file is not None:
        ok, message = verify_chain(args.file)
        _emit({"ok": ok, "message": message})
        return EXIT_OK if ok else EXIT_REJECTED

    try:
        config = load_config(args.config)
        pipeline = build_pipeline(config)
    except (ConfigError, FileNotFoundError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_ERROR

    return _run(args, pipeline)


if __name__ == "__main__":
    sys.exit(main())
