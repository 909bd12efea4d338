"""Pre-execution validation of shell commands and filesystem paths.

All command checks run against a normalized form (lowercased, whitespace
collapsed, ``~`` expanded) so case and spacing tricks cannot slip past
them.  Checks never short-circuit: every call returns the full issue list
and ``valid`` is false exactly when one of them is critical.

Hostname resolution is the only optional I/O and is off by default.
"""

from __future__ import annotations

import ipaddress
import logging
import os
import posixpath
import re
import socket
from collections.abc import Callable
from pathlib import Path
from urllib.parse import urlsplit

from bulwark.audit import AuditLog
from bulwark.config import ValidatorConfig
from bulwark.models import (
    FileOperation,
    IssueKind,
    PathValidationResult,
    Severity,
    ValidationIssue,
    ValidationResult,
)
from bulwark.patterns import (
    BLOCKED_COMMAND_RULES,
    CHAINING_OPERATORS,
    CREDENTIAL_RULES,
    ENV_VAR_RULES,
    URL_PATTERN,
    PatternRule,
    PatternTable,
    blocked_command_rule,
)

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"[^\S\n]+")
_LINE_BREAKS = re.compile(r"\s*[\r\n]\s*")
_NUMERIC_HOST = re.compile(r"^(?=.*\d)[0-9a-fx.]+$")
_HOME_SHORTHAND = re.compile(r"(?<![\w~/.\-])~(?=/|$|\s)")
_TRAVERSAL = re.compile(r"(?:^|[\s/\\'\"=])\.\.(?:[/\\]|$|\s|['\"])")
_SEGMENT_SPLIT = re.compile(r"\|\||&&|\$\(|[;|&`()\n]")
_WORD = re.compile(r"""[^\s'"`;|&()<>]+""")
_ENV_ASSIGNMENT = re.compile(r"^[a-z_][a-z0-9_]*=")
_REDIRECT_PREFIX = re.compile(r"^\d*[<>]+&?")
_WINDOWS_ABS = re.compile(r"^[a-z]:\\")
_PATH_END = r"(?=$|[/\\\s'\"`;|&)<>])"

Resolver = Callable[[str], list[str]]


def _default_resolver(host: str) -> list[str]:
    infos = socket.getaddrinfo(host, None)
    return sorted({info[4][0] for info in infos})


def is_private_address(host: str) -> bool:
    """True for loopback, private, link-local, reserved or unspecified hosts.

    Accepts IPv4/IPv6 literals (brackets allowed), decimal-integer IPv4
    (``2130706433``), the shorthand, hex and octal IPv4 forms that curl
    and wget accept (``127.1``, ``0x7f000001``, ``0177.0.0.1``) and
    ``localhost`` names.  Other hostnames are not resolved here and
    return False.
    """
    host = host.strip("[]").lower()
    if host == "localhost" or host.endswith(".localhost"):
        return True
    try:
        ip = ipaddress.ip_address(int(host) if host.isdigit() else host)
    except ValueError:
        if not _NUMERIC_HOST.match(host):
            return False
        try:
            ip = ipaddress.IPv4Address(socket.inet_aton(host))
        except OSError:
            return False
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    return (
        ip.is_private
        or ip.is_loopback
        or ip.is_link_local
        or ip.is_reserved
        or ip.is_unspecified
        or ip.is_multicast
    )


def _domain_matches(host: str, domain: str) -> bool:
    domain = domain.lower().lstrip(".")
    return host == domain or host.endswith("." + domain)


class CommandValidator:
    """Validates commands and file paths against the configured policy."""

    def __init__(
        self,
        config: ValidatorConfig | None = None,
        workspace_root: Path | str = ".",
        *,
        audit: AuditLog | None = None,
        blocked_rules: PatternTable | None = None,
        credential_rules: PatternTable | None = None,
        env_rules: PatternTable | None = None,
        home: str | None = None,
        resolver: Resolver | None = None,
    ) -> None:
        self._config = config or ValidatorConfig()
        self._workspace = Path(workspace_root).expanduser().resolve()
        self._audit = audit
        self._home = (home or os.path.expanduser("~")).rstrip("/") or "/"
        self._resolver = resolver or _default_resolver

        blocked = blocked_rules or BLOCKED_COMMAND_RULES
        extra = tuple(
            blocked_command_rule(tok.lower(), "custom") for tok in self._config.extra_blocked_commands
        )
        self._blocked_rules = PatternTable(blocked.name, blocked.version, blocked.rules + extra)
        self._credential_rules = credential_rules or CREDENTIAL_RULES
        self._env_rules = env_rules or ENV_VAR_RULES
        # Trailing ":" excluded so "http" the client is not "http://" the scheme.
        self._network_rules: tuple[PatternRule, ...] = tuple(
            PatternRule(
                name=f"network:{cmd.lower()}",
                pattern=rf"(?<![\w.\-]){re.escape(cmd.lower())}(?![\w.\-/:])",
                severity=Severity.CRITICAL,
                kind=IssueKind.BLOCKED_DOMAIN,
            )
            for cmd in self._config.network_commands
        )
        self._allowed_commands = {c.lower() for c in self._config.allowed_commands}

        self._blocked_paths: list[tuple[str, str]] = [
            (p, self._expand_home(p).lower().rstrip("/\\")) for p in self._config.blocked_paths
        ]
        self._allowed_paths = [
            posixpath.normpath(self._expand_home(p)) for p in self._config.allowed_paths
        ]

    @property
    def workspace_root(self) -> Path:
        return self._workspace

    # ── Normalization ────────────────────────────────────────────────────────

    def _expand_home(self, path: str) -> str:
        if path == "~" or path.startswith("~/"):
            return self._home + path[1:]
        return path

    def normalize(self, command: str) -> str:
        # Line breaks are command separators and are kept as "\n".
        normalized = _LINE_BREAKS.sub("\n", command.lower().strip())
        normalized = _WHITESPACE.sub(" ", normalized)
        return _HOME_SHORTHAND.sub(lambda _: self._home.lower(), normalized)

    @staticmethod
    def _segments(normalized: str) -> list[list[str]]:
        """Split into simple-command word lists (operators and subshells removed)."""
        segments: list[list[str]] = []
        for part in _SEGMENT_SPLIT.split(normalized):
            words = [_REDIRECT_PREFIX.sub("", w) for w in _WORD.findall(part)]
            words = [w for w in words if w]
            if words:
                segments.append(words)
        return segments

    @staticmethod
    def _program_index(words: list[str]) -> int:
        """Index of the program word, skipping leading VAR=value assignments."""
        for i, word in enumerate(words):
            if not _ENV_ASSIGNMENT.match(word):
                return i
        return len(words)

    # ── Path helpers ─────────────────────────────────────────────────────────

    def _is_allowed_path(self, path: str) -> bool:
        for allowed in self._allowed_paths:
            a = allowed.lower()
            if path == a or path.startswith(a.rstrip("/") + "/"):
                return True
        return False

    def _within_workspace(self, path: str) -> bool:
        ws = str(self._workspace).lower()
        return path == ws or path.startswith(ws.rstrip("/") + "/")

    def _sensitive_match(self, path: str) -> str | None:
        """Return the configured blocked path that ``path`` falls under."""
        path = path.lower()
        for original, expanded in self._blocked_paths:
            if path == expanded or path.startswith(expanded + "/") or path.startswith(expanded + "\\"):
                return original
        return None

    # ── Command checks ───────────────────────────────────────────────────────

    def _check_blocked_commands(self, normalized: str, segments: list[list[str]]) -> list[ValidationIssue]:
        issues = []
        for rule, m in self._blocked_rules.matches(normalized):
            category = rule.name.split(":", 1)[0]
            issues.append(
                ValidationIssue(
                    kind=IssueKind.BLOCKED_COMMAND,
                    severity=Severity.CRITICAL,
                    detail=f"blocked command {m.group(0)!r} ({category})",
                )
            )
        if self._config.command_allowlist_enabled:
            for words in segments:
                idx = self._program_index(words)
                if idx >= len(words):
                    continue
                program = posixpath.basename(words[idx].replace("\\", "/"))
                if program not in self._allowed_commands:
                    issues.append(
                        ValidationIssue(
                            kind=IssueKind.BLOCKED_COMMAND,
                            severity=Severity.CRITICAL,
                            detail=f"{program!r} is not in the command allowlist",
                        )
                    )
        return issues

    def _check_paths(self, normalized: str, segments: list[list[str]]) -> list[ValidationIssue]:
        issues = []
        if _TRAVERSAL.search(normalized):
            issues.append(
                ValidationIssue(
                    kind=IssueKind.PATH_TRAVERSAL,
                    severity=Severity.CRITICAL,
                    detail="relative '..' traversal",
                )
            )

        flagged_sensitive: set[str] = set()
        flagged_outside: set[str] = set()
        for words in segments:
            program_idx = self._program_index(words)
            for i, word in enumerate(words):
                if "://" in word:
                    continue
                candidate = word.split("=", 1)[1] if "=" in word and i != program_idx else word
                if not (candidate.startswith("/") or _WINDOWS_ABS.match(candidate)):
                    continue
                if candidate.startswith("/"):
                    candidate = posixpath.normpath(candidate)
                if self._is_allowed_path(candidate):
                    continue
                sensitive = self._sensitive_match(candidate)
                if sensitive and sensitive not in flagged_sensitive:
                    flagged_sensitive.add(sensitive)
                    issues.append(
                        ValidationIssue(
                            kind=IssueKind.PATH_TRAVERSAL,
                            severity=Severity.CRITICAL,
                            detail=f"access to sensitive path {sensitive}",
                        )
                    )
                if i == program_idx:
                    continue
                if not self._within_workspace(candidate) and candidate not in flagged_outside:
                    flagged_outside.add(candidate)
                    issues.append(
                        ValidationIssue(
                            kind=IssueKind.OUTSIDE_WORKSPACE,
                            severity=Severity.CRITICAL,
                            detail=f"absolute path outside workspace: {candidate}",
                        )
                    )

        # Blocked paths that contain spaces never survive word splitting.
        for original, expanded in self._blocked_paths:
            if original in flagged_sensitive or " " not in expanded:
                continue
            if re.search(rf"(?<![\w.\-]){re.escape(expanded)}{_PATH_END}", normalized):
                flagged_sensitive.add(original)
                issues.append(
                    ValidationIssue(
                        kind=IssueKind.PATH_TRAVERSAL,
                        severity=Severity.CRITICAL,
                        detail=f"access to sensitive path {original}",
                    )
                )
        return issues

    @staticmethod
    def _check_chaining(normalized: str) -> list[ValidationIssue]:
        scratch = normalized
        found: list[str] = []
        for op in CHAINING_OPERATORS:
            if op in scratch:
                found.append("\\n" if op == "\n" else op)
                scratch = scratch.replace(op, " ")
        if not found:
            return []
        return [
            ValidationIssue(
                kind=IssueKind.COMMAND_CHAINING,
                severity=Severity.HIGH,
                detail="chaining/injection operators: " + " ".join(found),
            )
        ]

    def _check_env_access(self, normalized: str) -> list[ValidationIssue]:
        found: list[str] = []
        for rule in self._env_rules.rules:
            for m in rule.regex.finditer(normalized):
                if m.group(0) not in found:
                    found.append(m.group(0))
        if not found:
            return []
        return [
            ValidationIssue(
                kind=IssueKind.ENVIRONMENT_ACCESS,
                severity=Severity.MEDIUM,
                detail="environment variable access: " + ", ".join(found),
            )
        ]

    def _check_credentials(self, normalized: str) -> list[ValidationIssue]:
        # Never echo the matched value back.
        return [
            ValidationIssue(
                kind=IssueKind.CREDENTIAL_EXPOSURE,
                severity=Severity.CRITICAL,
                detail=f"inline credential pattern: {rule.name}",
            )
            for rule, _ in self._credential_rules.matches(normalized)
        ]

    def _invokes_network_tool(self, normalized: str) -> bool:
        return any(rule.search(normalized) for rule in self._network_rules)

    def _network_targets(self, normalized: str, segments: list[list[str]]) -> list[str]:
        targets = URL_PATTERN.findall(normalized)
        for words in segments:
            idx = self._program_index(words)
            if idx >= len(words):
                continue
            program = posixpath.basename(words[idx])
            if program not in {c.lower() for c in self._config.network_commands}:
                continue
            for word in words[idx + 1 :]:
                if word.startswith(("-", "/", ".")) or "://" in word or "." not in word:
                    continue
                targets.append("http://" + word)
        return targets

    def _check_target(self, target: str) -> ValidationIssue | None:
        cfg = self._config
        try:
            host = urlsplit(target).hostname
        except ValueError:
            host = None
        if not host:
            return ValidationIssue(
                kind=IssueKind.BLOCKED_DOMAIN,
                severity=Severity.CRITICAL,
                detail=f"unparseable URL: {target[:80]}",
            )
        host = host.lower().rstrip(".")

        for domain in cfg.blocked_domains:
            if _domain_matches(host, domain):
                return ValidationIssue(
                    kind=IssueKind.BLOCKED_DOMAIN,
                    severity=Severity.CRITICAL,
                    detail=f"blocked domain: {host}",
                )
        if cfg.domain_allowlist_enabled and not any(
            _domain_matches(host, d) for d in cfg.allowed_domains
        ):
            return ValidationIssue(
                kind=IssueKind.BLOCKED_DOMAIN,
                severity=Severity.CRITICAL,
                detail=f"domain not in allowlist: {host}",
            )
        if cfg.allow_private_network:
            return None
        if is_private_address(host):
            return ValidationIssue(
                kind=IssueKind.BLOCKED_DOMAIN,
                severity=Severity.CRITICAL,
                detail=f"private/loopback address: {host}",
            )
        if cfg.resolve_hostnames:
            try:
                addresses = self._resolver(host)
            except OSError:
                logger.debug("Could not resolve %s during validation", host)
                return None
            private = [a for a in addresses if is_private_address(a)]
            if private:
                return ValidationIssue(
                    kind=IssueKind.BLOCKED_DOMAIN,
                    severity=Severity.CRITICAL,
                    detail=f"{host} resolves to private address {private[0]}",
                )
        return None

    def validate_network_command(self, command: str) -> list[ValidationIssue]:
        """Check every URL/host a network-fetch command would contact."""
        normalized = self.normalize(command)
        if not self._invokes_network_tool(normalized):
            return []
        issues: list[ValidationIssue] = []
        seen: set[str] = set()
        for target in self._network_targets(normalized, self._segments(normalized)):
            if target in seen:
                continue
            seen.add(target)
            issue = self._check_target(target)
            if issue is not None:
                issues.append(issue)
        return issues

    # ── Public API ───────────────────────────────────────────────────────────

    def validate_command(self, command: str) -> ValidationResult:
        normalized = self.normalize(command)
        segments = self._segments(normalized)

        issues: list[ValidationIssue] = []
        issues += self._check_blocked_commands(normalized, segments)
        issues += self._check_paths(normalized, segments)
        issues += self._check_chaining(normalized)
        issues += self._check_env_access(normalized)
        issues += self._check_credentials(normalized)
        issues += self.validate_network_command(normalized)

        result = ValidationResult.from_issues(command, normalized, issues)
        self._log(
            "command",
            result.valid,
            {
                "command": normalized,
                "risk": result.risk_level.value,
                "issues": [f"{i.kind.value}:{i.severity.value}" for i in result.issues],
            },
        )
        return result

    def validate_file_path(self, path: str, operation: FileOperation = "read") -> PathValidationResult:
        issues: list[ValidationIssue] = []

        parts = re.split(r"[/\\]", path)
        if ".." in parts:
            issues.append(
                ValidationIssue(
                    kind=IssueKind.PATH_TRAVERSAL,
                    severity=Severity.CRITICAL,
                    detail="path contains '..' traversal segment",
                )
            )

        expanded = self._expand_home(path)
        candidate = Path(expanded)
        if not candidate.is_absolute() and not _WINDOWS_ABS.match(expanded.lower()):
            candidate = self._workspace / candidate
        lexical = posixpath.normpath(str(candidate))
        resolved = str(candidate.resolve(strict=False))

        allowed = self._is_allowed_path(lexical.lower()) or self._is_allowed_path(resolved.lower())

        if not allowed:
            for form in (lexical, resolved, expanded):
                sensitive = self._sensitive_match(form)
                if sensitive:
                    issues.append(
                        ValidationIssue(
                            kind=IssueKind.PATH_TRAVERSAL,
                            severity=Severity.CRITICAL,
                            detail=f"access to {sensitive} is blocked",
                        )
                    )
                    break

            # Compare the symlink-resolved path so links cannot escape.
            if not Path(resolved).is_relative_to(self._workspace):
                issues.append(
                    ValidationIssue(
                        kind=IssueKind.OUTSIDE_WORKSPACE,
                        severity=Severity.CRITICAL,
                        detail=f"path outside workspace: {resolved}",
                    )
                )

        result = PathValidationResult(
            path=path,
            operation=operation,
            resolved_path=resolved,
            issues=tuple(issues),
            valid=not any(i.severity is Severity.CRITICAL for i in issues),
        )
        self._log(
            "path",
            result.valid,
            {
                "path": path,
                "operation": operation,
                "resolved": resolved,
                "issues": [i.kind.value for i in result.issues],
            },
        )
        return result

    def _log(self, what: str, valid: bool, detail: dict) -> None:
        outcome = "valid" if valid else "invalid"
        if self._audit is not None:
            self._audit.record("validator", outcome, {"target": what, **detail})
        elif not valid:
            logger.warning("validator rejected %s: %s", what, detail)
        else:
            logger.debug("validator accepted %s: %s", what, detail)
