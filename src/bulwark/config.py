"""Configuration loading for Bulwark.

Reads an optional YAML file (``bulwark.yaml``) into pydantic models, then
applies ``BULWARK_*`` environment overrides.  Every section has working
defaults, so ``load_config()`` with no file yields a usable policy.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from bulwark.models import BackendKind

logger = logging.getLogger(__name__)


class ConfigError(ValueError):
    """Fatal configuration problem, raised at startup only."""


# ── Section Models ───────────────────────────────────────────────────────────


class PerimeterConfig(BaseModel):
    """Perimeter sanitizer stage toggles and thresholds."""

    normalize_unicode: bool = True
    remove_zero_width: bool = True
    detect_bidi: bool = True
    detect_homographs: bool = True
    detect_prompt_injection: bool = True
    detect_delimiter_confusion: bool = True
    max_input_length: int = Field(default=100_000, gt=0)
    max_nesting_depth: int = Field(default=10, ge=0)
    extra_injection_patterns: list[str] = Field(default_factory=list)
    extra_homographs: dict[str, str] = Field(default_factory=dict)

    @field_validator("extra_homographs")
    @classmethod
    def _single_char_keys(cls, v: dict[str, str]) -> dict[str, str]:
        for key in v:
            if len(key) != 1:
                raise ValueError(f"homograph keys must be single characters, got {key!r}")
        return v


class ValidatorConfig(BaseModel):
    """Command & path validator policy."""

    blocked_paths: list[str] = Field(
        default_factory=lambda: [
            "/etc/ssh",
            "/etc/passwd",
            "/etc/shadow",
            "~/.ssh",
            "~/.aws",
            "~/.config",
            "/var/log",
            "/proc",
            "/sys",
            "/dev",
            "C:\\Windows",
            "C:\\Program Files",
            "C:\\ProgramData",
        ]
    )
    # Paths outside the workspace that stay usable (exact path or subtree).
    allowed_paths: list[str] = Field(default_factory=lambda: ["/tmp/agent", "/dev/null"])
    extra_blocked_commands: list[str] = Field(default_factory=list)
    command_allowlist_enabled: bool = False
    allowed_commands: list[str] = Field(
        default_factory=lambda: [
            "ls", "dir", "cat", "type", "head", "tail", "less", "more",
            "grep", "find", "findstr", "wc", "sort", "uniq", "diff", "cmp",
            "git", "npm", "node", "python", "python3", "echo", "printf",
            "pwd", "cd", "mkdir", "rmdir", "touch", "cp", "copy", "mv",
            "move", "rm", "del", "tar", "zip", "unzip", "gzip",
        ]
    )
    blocked_domains: list[str] = Field(
        default_factory=lambda: [
            "pastebin.com",
            "hastebin.com",
            "ghostbin.co",
            "termbin.com",
            "requestbin.net",
            "transfer.sh",
            "webhook.site",
        ]
    )
    domain_allowlist_enabled: bool = False
    allowed_domains: list[str] = Field(
        default_factory=lambda: [
            "github.com",
            "api.github.com",
            "raw.githubusercontent.com",
            "pypi.org",
            "registry.npmjs.org",
            "api.openai.com",
            "api.anthropic.com",
        ]
    )
    allow_private_network: bool = False
    # DNS lookups make validation perform I/O; off unless asked for.
    resolve_hostnames: bool = False
    network_commands: list[str] = Field(
        default_factory=lambda: [
            "curl", "wget", "invoke-webrequest", "iwr", "http", "https", "aria2c", "fetch",
        ]
    )


class SandboxConfig(BaseModel):
    """Sandbox executor defaults and resource bounds."""

    preferred_backend: BackendKind | None = None
    timeout_ms: int = Field(default=30_000, gt=0)
    grace_period_ms: int = Field(default=5_000, ge=0)
    max_output_chars: int = Field(default=100_000, gt=0)
    memory_limit_mb: int = Field(default=256, gt=0)
    cpu_limit: float = Field(default=0.5, gt=0)
    pids_limit: int = Field(default=100, gt=0)
    nofile_limit: int = Field(default=64, gt=0)
    docker_image: str = "alpine:latest"
    docker_socket: str = "/var/run/docker.sock"
    firejail_path: str = "/usr/bin/firejail"
    workspace_mount: str = "/workspace"
    read_only_mounts: list[str] = Field(default_factory=lambda: ["/etc/resolv.conf"])
    safe_path: str = "/usr/local/bin:/usr/bin:/bin"
    home_dir: str = "/tmp"
    # Wrap the restricted backend in ``unshare --net`` (needs user namespaces).
    restricted_namespaces: bool = False


class SecretsConfig(BaseModel):
    """Two-tier secrets sources and the protected-name blocklist."""

    protected_env_var: str = "SECRETS"
    exposed_env_var: str = "LLM_SECRETS"
    protected_keys: list[str] = Field(
        default_factory=lambda: [
            "GITHUB_TOKEN",
            "GH_TOKEN",
            "ANTHROPIC_API_KEY",
            "OPENAI_API_KEY",
            "GOOGLE_API_KEY",
            "AWS_ACCESS_KEY_ID",
            "AWS_SECRET_ACCESS_KEY",
            "AWS_SESSION_TOKEN",
            "AZURE_CLIENT_SECRET",
            "GCP_SERVICE_ACCOUNT_KEY",
            "TELEGRAM_BOT_TOKEN",
            "MOONSHOT_API_KEY",
            "DISCORD_BOT_TOKEN",
            "SLACK_BOT_TOKEN",
            "NOTION_API_KEY",
            "LINEAR_API_KEY",
            "SSH_PRIVATE_KEY",
            "DOCKER_AUTH_CONFIG",
            "KUBECONFIG",
        ]
    )
    required_keys: list[str] = Field(default_factory=list)


class AuditConfig(BaseModel):
    log_dir: str | None = None  # None → logger only, no NDJSON file
    log_clean_events: bool = True


class BulwarkConfig(BaseModel):
    """Top-level configuration."""

    workspace_root: str = "."
    perimeter: PerimeterConfig = Field(default_factory=PerimeterConfig)
    validator: ValidatorConfig = Field(default_factory=ValidatorConfig)
    sandbox: SandboxConfig = Field(default_factory=SandboxConfig)
    secrets: SecretsConfig = Field(default_factory=SecretsConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)

    @property
    def workspace_path(self) -> Path:
        return Path(self.workspace_root).expanduser().resolve()


# ── Config Loader ────────────────────────────────────────────────────────────


def _apply_env_overrides(raw: dict[str, Any], environ: dict[str, str]) -> dict[str, Any]:
    workspace = environ.get("BULWARK_WORKSPACE_ROOT")
    if workspace:
        raw["workspace_root"] = workspace

    audit_dir = environ.get("BULWARK_AUDIT_DIR")
    if audit_dir:
        audit_raw = raw.get("audit") if isinstance(raw.get("audit"), dict) else {}
        audit_raw["log_dir"] = audit_dir
        raw["audit"] = audit_raw

    backend = environ.get("BULWARK_SANDBOX_BACKEND")
    if backend:
        sandbox_raw = raw.get("sandbox") if isinstance(raw.get("sandbox"), dict) else {}
        sandbox_raw["preferred_backend"] = backend
        raw["sandbox"] = sandbox_raw

    return raw


def load_config(
    config_path: Path | None = None,
    environ: dict[str, str] | None = None,
) -> BulwarkConfig:
    """Load Bulwark configuration.

    Args:
        config_path: Optional YAML file.  ``None`` means defaults only.
        environ: Environment to read overrides from (default ``os.environ``).

    Returns:
        Validated BulwarkConfig.

    Raises:
        FileNotFoundError: If ``config_path`` is given but doesn't exist.
        ConfigError: If the file or overrides fail schema validation.
    """
    raw: dict[str, Any] = {}
    if config_path is not None:
        if not config_path.exists():
            raise FileNotFoundError(f"Bulwark config not found: {config_path}")
        with open(config_path) as f:
            loaded = yaml.safe_load(f) or {}
        if not isinstance(loaded, dict):
            raise ConfigError(f"{config_path}: top level must be a mapping")
        raw = loaded

    raw = _apply_env_overrides(raw, dict(os.environ if environ is None else environ))

    try:
        config = BulwarkConfig(**raw)
    except ValidationError as exc:
        raise ConfigError(f"invalid configuration: {exc}") from exc

    logger.info(
        "Loaded Bulwark config: workspace=%s source=%s",
        config.workspace_root,
        config_path or "defaults",
    )
    return config
