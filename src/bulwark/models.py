"""Core data models for Bulwark.

Every layer hands back one of these records instead of raising: the
sanitizer returns a :class:`SanitizationResult`, the validator a
:class:`ValidationResult` / :class:`PathValidationResult`, the executor a
:class:`SandboxExecution`.  Records are frozen once returned.
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


# ── Severity & Kinds ─────────────────────────────────────────────────────────


class Severity(str, enum.Enum):
    """Finding severity, ordered low → critical."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class ThreatKind(str, enum.Enum):
    """Categories reported by the perimeter sanitizer."""

    SIZE_LIMIT = "size-limit"
    BIDI_OVERRIDE = "bidi-override"
    HOMOGRAPH = "homograph"
    PROMPT_INJECTION = "prompt-injection"
    DELIMITER_CONFUSION = "delimiter-confusion"
    NESTING_DEPTH = "nesting-depth"


class IssueKind(str, enum.Enum):
    """Categories reported by the command & path validator."""

    BLOCKED_COMMAND = "blocked-command"
    PATH_TRAVERSAL = "path-traversal"
    COMMAND_CHAINING = "command-chaining"
    ENVIRONMENT_ACCESS = "environment-access"
    CREDENTIAL_EXPOSURE = "credential-exposure"
    BLOCKED_DOMAIN = "blocked-domain"
    OUTSIDE_WORKSPACE = "outside-workspace"


class BackendKind(str, enum.Enum):
    """Sandbox backends, in priority order."""

    DOCKER = "docker"
    LIGHTWEIGHT = "lightweight-sandbox"
    RESTRICTED = "restricted-process"


class ExecutionStatus(str, enum.Enum):
    """SandboxExecution lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    KILLED = "killed"


FileOperation = Literal["read", "write", "edit", "delete", "list"]


# ── Perimeter ────────────────────────────────────────────────────────────────


class ThreatFinding(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: ThreatKind
    severity: Severity
    evidence: str = Field(description="Matched text, truncated")
    normalized_form: str | None = None


class SanitizationResult(BaseModel):
    """Outcome of one sanitize() call.

    When ``blocked`` is true, ``sanitized_text`` must not be forwarded.
    """

    model_config = ConfigDict(frozen=True)

    source: str = "unknown"
    original_length: int
    sanitized_text: str
    actions_taken: tuple[str, ...] = ()
    threats: tuple[ThreatFinding, ...] = ()
    blocked: bool = False

    def kinds(self) -> set[ThreatKind]:
        return {t.kind for t in self.threats}


# ── Validator ────────────────────────────────────────────────────────────────


class ValidationIssue(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: IssueKind
    severity: Severity
    detail: str


def _worst(issues: tuple[ValidationIssue, ...] | list[ValidationIssue]) -> Severity:
    worst = Severity.LOW
    for issue in issues:
        if issue.severity.rank > worst.rank:
            worst = issue.severity
    return worst


class ValidationResult(BaseModel):
    """Outcome of validate_command().

    ``valid`` is false exactly when at least one issue is critical;
    ``risk_level`` is the worst issue severity (low when clean).
    """

    model_config = ConfigDict(frozen=True)

    raw_command: str
    normalized_command: str
    issues: tuple[ValidationIssue, ...] = ()
    risk_level: Severity = Severity.LOW
    valid: bool = True

    @classmethod
    def from_issues(
        cls, raw: str, normalized: str, issues: list[ValidationIssue]
    ) -> ValidationResult:
        return cls(
            raw_command=raw,
            normalized_command=normalized,
            issues=tuple(issues),
            risk_level=_worst(issues),
            valid=not any(i.severity is Severity.CRITICAL for i in issues),
        )

    def kinds(self) -> set[IssueKind]:
        return {i.kind for i in self.issues}


class PathValidationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    path: str
    operation: FileOperation = "read"
    resolved_path: str
    issues: tuple[ValidationIssue, ...] = ()
    valid: bool = True

    def kinds(self) -> set[IssueKind]:
        return {i.kind for i in self.issues}


# ── Sandbox ──────────────────────────────────────────────────────────────────


class ExecuteOptions(BaseModel):
    """Per-invocation knobs for SandboxExecutor.execute().

    Unset fields fall back to the executor's SandboxConfig.
    """

    workspace: str | None = None
    timeout_ms: int | None = Field(default=None, gt=0)
    env: dict[str, str] | None = None
    network: bool = False
    backend: BackendKind | None = None


class SandboxExecution(BaseModel):
    """Finalized record of one sandboxed run."""

    model_config = ConfigDict(frozen=True)

    id: str
    command: str
    backend: BackendKind | None
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    status: ExecutionStatus
    exit_code: int | None = None
    stdout: str = ""
    stderr: str = ""
    stdout_truncated: bool = False
    stderr_truncated: bool = False
    killed_by_timeout: bool = False
    duration_ms: int = 0
    error: str | None = None
    enforced_limits: tuple[str, ...] = ()
    fallbacks: tuple[str, ...] = Field(
        default=(), description="Backends that were tried and found unusable"
    )

    @property
    def success(self) -> bool:
        return self.status is ExecutionStatus.COMPLETED


# ── Pipeline ─────────────────────────────────────────────────────────────────


ToolDecision = Literal["blocked", "executed", "allowed", "passthrough"]


class ToolOutcome(BaseModel):
    """What the pipeline decided for one executeTool() interception."""

    model_config = ConfigDict(frozen=True)

    tool: str
    decision: ToolDecision
    reason: str = ""
    validation: ValidationResult | None = None
    path_validation: PathValidationResult | None = None
    execution: SandboxExecution | None = None

    def summary(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)
