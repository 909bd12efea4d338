"""Pipeline coordinator: sanitize → validate → sandbox.

The orchestrator calls :meth:`SecurityPipeline.process_message` on every
inbound message and :meth:`SecurityPipeline.execute_tool` on every tool
call.  Command tools are validated and run in the sandbox; file tools
are validated and handed back for the orchestrator to perform; any other
tool name passes through untouched.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from bulwark.audit import AuditLog
from bulwark.config import BulwarkConfig, ConfigError
from bulwark.models import (
    ExecuteOptions,
    ExecutionStatus,
    SanitizationResult,
    Severity,
    ToolOutcome,
    ValidationIssue,
)
from bulwark.patterns import POLICY_VERSION
from bulwark.perimeter import PerimeterSanitizer
from bulwark.sandbox.detection import BackendAvailability
from bulwark.sandbox.executor import SandboxExecutor
from bulwark.secrets_store import SecretsStore
from bulwark.validator import CommandValidator

logger = logging.getLogger(__name__)

COMMAND_TOOLS = frozenset({"exec", "bash", "shell"})
FILE_TOOLS = frozenset({"read", "write", "edit", "delete", "list"})


def _describe(issues: tuple[ValidationIssue, ...]) -> str:
    return "; ".join(f"{i.kind.value}: {i.detail}" for i in issues if i.severity is Severity.CRITICAL)


class SecurityPipeline:
    """Wires the four security layers together for one agent process."""

    def __init__(
        self,
        config: BulwarkConfig,
        *,
        sanitizer: PerimeterSanitizer,
        validator: CommandValidator,
        executor: SandboxExecutor,
        secrets: SecretsStore,
        audit: AuditLog,
    ) -> None:
        self.config = config
        self.sanitizer = sanitizer
        self.validator = validator
        self.executor = executor
        self.secrets = secrets
        self.audit = audit

    # ── Inbound text ─────────────────────────────────────────────────────────

    def process_message(self, text: str, source: str = "unknown") -> SanitizationResult:
        return self.sanitizer.sanitize(text, source)

    # ── Tool interception ────────────────────────────────────────────────────

    async def execute_tool(self, name: str, params: Mapping[str, Any] | None = None) -> ToolOutcome:
        params = params or {}
        if name in COMMAND_TOOLS:
            outcome = await self._run_command(name, params)
        elif name in FILE_TOOLS:
            outcome = self._check_file(name, params)
        else:
            outcome = ToolOutcome(tool=name, decision="passthrough")

        if outcome.decision != "passthrough":
            self.audit.record(
                "pipeline",
                outcome.decision,
                {"tool": name, "reason": outcome.reason},
            )
        return outcome

    async def _run_command(self, name: str, params: Mapping[str, Any]) -> ToolOutcome:
        command = params.get("command")
        if not isinstance(command, str) or not command.strip():
            return ToolOutcome(tool=name, decision="blocked", reason="missing command")

        validation = self.validator.validate_command(command)
        if not validation.valid:
            return ToolOutcome(
                tool=name,
                decision="blocked",
                reason="command blocked: " + _describe(validation.issues),
                validation=validation,
            )

        workspace = self.validator.workspace_root
        workdir = params.get("workdir")
        if workdir:
            workdir_check = self.validator.validate_file_path(str(workdir), "list")
            if not workdir_check.valid:
                return ToolOutcome(
                    tool=name,
                    decision="blocked",
                    reason="workdir blocked: " + _describe(workdir_check.issues),
                    validation=validation,
                    path_validation=workdir_check,
                )
            workspace = Path(workdir_check.resolved_path)

        timeout = params.get("timeout_ms") or params.get("timeout")
        try:
            options = ExecuteOptions(
                workspace=str(workspace),
                timeout_ms=int(timeout) if timeout else None,
                network=bool(params.get("network", False)),
            )
        except (TypeError, ValueError) as exc:
            return ToolOutcome(
                tool=name,
                decision="blocked",
                reason=f"invalid execution options: {exc}",
                validation=validation,
            )
        execution = await self.executor.execute(command, options)
        reason = "" if execution.status is ExecutionStatus.COMPLETED else (
            execution.error or f"exit code {execution.exit_code}"
        )
        return ToolOutcome(
            tool=name,
            decision="executed",
            reason=reason,
            validation=validation,
            execution=execution,
        )

    def _check_file(self, name: str, params: Mapping[str, Any]) -> ToolOutcome:
        path = params.get("file_path") or params.get("path")
        if not isinstance(path, str) or not path:
            return ToolOutcome(tool=name, decision="blocked", reason="missing file path")

        result = self.validator.validate_file_path(path, name)  # type: ignore[arg-type]
        if not result.valid:
            return ToolOutcome(
                tool=name,
                decision="blocked",
                reason="path blocked: " + _describe(result.issues),
                path_validation=result,
            )
        return ToolOutcome(tool=name, decision="allowed", path_validation=result)

    # ── Status ───────────────────────────────────────────────────────────────

    def security_status(self) -> dict[str, Any]:
        perimeter = self.config.perimeter
        validator = self.config.validator
        return {
            "policy_version": POLICY_VERSION,
            "workspace_root": str(self.validator.workspace_root),
            "layers": {
                "perimeter": {
                    "normalize_unicode": perimeter.normalize_unicode,
                    "remove_zero_width": perimeter.remove_zero_width,
                    "detect_bidi": perimeter.detect_bidi,
                    "detect_homographs": perimeter.detect_homographs,
                    "detect_prompt_injection": perimeter.detect_prompt_injection,
                    "detect_delimiter_confusion": perimeter.detect_delimiter_confusion,
                    "max_input_length": perimeter.max_input_length,
                },
                "validator": {
                    "command_allowlist": validator.command_allowlist_enabled,
                    "domain_allowlist": validator.domain_allowlist_enabled,
                    "allow_private_network": validator.allow_private_network,
                    "blocked_paths": len(validator.blocked_paths),
                },
                "sandbox": self.executor.availability.as_dict(),
                "secrets": self.secrets.summary(),
            },
            "audit": {
                "log_dir": str(self.audit.log_dir) if self.audit.log_dir else None,
            },
        }

    def refresh_backends(self) -> BackendAvailability:
        availability = self.executor.refresh()
        logger.info("Sandbox backends refreshed: %s", availability.as_dict())
        return availability


def build_pipeline(
    config: BulwarkConfig | None = None,
    environ: Mapping[str, str] | None = None,
    *,
    availability: BackendAvailability | None = None,
) -> SecurityPipeline:
    """Construct a pipeline from config, failing fast on bad setup.

    Raises:
        ConfigError: Missing workspace root, malformed secrets payload or
            missing required secrets.
    """
    config = config or BulwarkConfig()
    workspace = config.workspace_path
    if not workspace.is_dir():
        raise ConfigError(f"workspace root does not exist: {workspace}")

    audit = AuditLog(
        Path(config.audit.log_dir).expanduser() if config.audit.log_dir else None,
        log_clean_events=config.audit.log_clean_events,
    )
    audit.start()

    secrets = SecretsStore(config.secrets, environ)
    secrets.validate_required()

    sanitizer = PerimeterSanitizer(config.perimeter, audit=audit)
    validator = CommandValidator(config.validator, workspace, audit=audit)
    executor = SandboxExecutor(
        config.sandbox,
        availability,
        secrets=secrets,
        audit=audit,
        workspace_root=workspace,
    )
    logger.info("Security pipeline ready (workspace=%s)", workspace)
    return SecurityPipeline(
        config,
        sanitizer=sanitizer,
        validator=validator,
        executor=executor,
        secrets=secrets,
        audit=audit,
    )
