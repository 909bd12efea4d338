"""Security pattern tables: the single source of truth for the policy set.

Every table is plain data (``PatternRule`` entries grouped in a versioned
``PatternTable``) so the matching engine can be exercised with custom
tables in tests and extended from config without touching the sanitizer
or validator code.

The built-in tables are a starting policy, not complete coverage:
heuristic phrase lists cannot enumerate every prompt-injection wording,
and the confusable table is a hand-picked subset rather than a full
Unicode skeleton mapping.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from bulwark.models import IssueKind, Severity, ThreatKind

POLICY_VERSION = "2024.2"


# ── Engine ───────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class PatternRule:
    """One regex rule: what it matches, how bad a hit is, what kind it is."""

    name: str
    pattern: str
    severity: Severity
    kind: ThreatKind | IssueKind
    flags: int = re.IGNORECASE
    regex: re.Pattern = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "regex", re.compile(self.pattern, self.flags))

    def search(self, text: str) -> re.Match | None:
        return self.regex.search(text)


@dataclass(frozen=True)
class PatternTable:
    """An ordered, versioned collection of rules."""

    name: str
    version: str
    rules: tuple[PatternRule, ...]

    def matches(self, text: str) -> list[tuple[PatternRule, re.Match]]:
        """Return every rule that matches ``text`` with its first match."""
        hits: list[tuple[PatternRule, re.Match]] = []
        for rule in self.rules:
            m = rule.search(text)
            if m:
                hits.append((rule, m))
        return hits

    def extended(
        self,
        patterns: list[str],
        *,
        severity: Severity,
        kind: ThreatKind | IssueKind,
        prefix: str = "custom",
    ) -> PatternTable:
        """Return a copy with ``patterns`` appended as extra rules."""
        if not patterns:
            return self
        extra = tuple(
            PatternRule(name=f"{prefix}-{i}", pattern=p, severity=severity, kind=kind)
            for i, p in enumerate(patterns, 1)
        )
        return PatternTable(name=self.name, version=self.version, rules=self.rules + extra)


def _table(name: str, kind, severity: Severity, entries: list[tuple[str, str]]) -> PatternTable:
    return PatternTable(
        name=name,
        version=POLICY_VERSION,
        rules=tuple(
            PatternRule(name=n, pattern=p, severity=severity, kind=kind) for n, p in entries
        ),
    )


# ── Perimeter: invisible, directional and confusable characters ─────────────

ZERO_WIDTH_CHARS: frozenset[str] = frozenset(
    {
        "\u200b",  # zero-width space
        "\u200c",  # zero-width non-joiner
        "\u200d",  # zero-width joiner
        "\u2060",  # word joiner
        "\ufeff",  # zero-width no-break space / BOM
        "\u180e",  # mongolian vowel separator
        "\u00ad",  # soft hyphen
        "\u034f",  # combining grapheme joiner
    }
)

BIDI_CHARS: frozenset[str] = frozenset(
    {
        "\u202a",  # LRE
        "\u202b",  # RLE
        "\u202c",  # PDF
        "\u202d",  # LRO
        "\u202e",  # RLO
        "\u2066",  # LRI
        "\u2067",  # RLI
        "\u2068",  # FSI
        "\u2069",  # PDI
    }
)

# Confusable → Latin replacement.
HOMOGRAPHS: dict[str, str] = {
    # Cyrillic lowercase
    "\u0430": "a",
    "\u0435": "e",
    "\u043e": "o",
    "\u0440": "p",
    "\u0441": "c",
    "\u0443": "y",
    "\u0445": "x",
    "\u0456": "i",
    "\u0458": "j",
    "\u0455": "s",
    "\u04bb": "h",
    "\u0501": "d",
    "\u051b": "q",
    "\u051d": "w",
    # Cyrillic uppercase
    "\u0410": "A",
    "\u0412": "B",
    "\u0415": "E",
    "\u041a": "K",
    "\u041c": "M",
    "\u041d": "H",
    "\u041e": "O",
    "\u0420": "P",
    "\u0421": "C",
    "\u0422": "T",
    "\u0425": "X",
    "\u0406": "I",
    "\u0408": "J",
    "\u0405": "S",
    # Greek
    "\u03bf": "o",
    "\u039f": "O",
    "\u0391": "A",
    "\u0392": "B",
    "\u0395": "E",
    "\u0396": "Z",
    "\u0397": "H",
    "\u0399": "I",
    "\u039a": "K",
    "\u039c": "M",
    "\u039d": "N",
    "\u03a1": "P",
    "\u03a4": "T",
    "\u03a5": "Y",
    "\u03a7": "X",
}


# ── Perimeter: prompt injection phrases ──────────────────────────────────────

INJECTION_RULES = _table(
    "prompt-injection",
    ThreatKind.PROMPT_INJECTION,
    Severity.CRITICAL,
    [
        # Direct override
        ("ignore-previous", r"ignore\s+(all\s+)?(the\s+)?(previous|earlier|above|prior)"),
        ("forget-context", r"forget\s+(everything|all|previous|context)"),
        ("disregard-instructions", r"disregard\s+(all\s+)?(the\s+)?(system|instructions?|prompt|previous|prior)"),
        ("override-security", r"override\s+(all\s+)?security"),
        ("bypass-restrictions", r"bypass\s+(all\s+)?restrictions"),
        # System prompt / role manipulation
        ("system-override", r"system\s*(override|prompt|instruction)"),
        ("you-are-now", r"you\s+are\s+now\s+"),
        ("new-role", r"new\s+(role|personality|mode)\b"),
        ("enter-mode", r"enter\s+(admin|debug|developer|maintenance|jailbreak)\s+mode"),
        ("fake-system-tag", r"\[\s*system\s*\]|<\s*system\s*>|###\s*system\s*:"),
        # Authority abuse
        ("administrator-says", r"administrator\s+says?"),
        ("developer-mode", r"developer\s+mode"),
        ("dan-mode", r"\bDAN\s*(mode|do\s+anything\s+now)"),
        ("do-anything-now", r"do\s+anything\s+now"),
        ("jailbreak", r"jailbreak"),
        ("already-authorized", r"the\s+user\s+has\s+(already\s+)?approved|pre-?authorized"),
        # Delimiter smuggling
        ("fenced-system", r"```\s*system"),
        ("fenced-ignore", r"```\s*ignore"),
        ("html-comment-system", r"<!--\s*system"),
        ("line-comment-system", r"//\s*system"),
        # Context manipulation
        ("context-window-bypass", r"context\s*window\s*(ignore|bypass)"),
        ("token-overflow", r"token\s*overflow"),
        ("attention-override", r"attention\s*override"),
        # Anti-transparency
        ("hide-from-user", r"do\s+not\s+(inform|tell|notify|alert)\s+(the\s+)?user"),
    ],
)


# Delimited regions; the ``inner`` group is inspected for override keywords.
DELIMITER_RULES = PatternTable(
    name="delimiter-confusion",
    version=POLICY_VERSION,
    rules=(
        PatternRule(
            name="code-block",
            pattern=r"```(?P<inner>[\s\S]*?)```",
            severity=Severity.HIGH,
            kind=ThreatKind.DELIMITER_CONFUSION,
        ),
        PatternRule(
            name="html-comment",
            pattern=r"<!--(?P<inner>[\s\S]*?)-->",
            severity=Severity.HIGH,
            kind=ThreatKind.DELIMITER_CONFUSION,
        ),
        PatternRule(
            name="c-comment",
            pattern=r"/\*(?P<inner>[\s\S]*?)\*/",
            severity=Severity.HIGH,
            kind=ThreatKind.DELIMITER_CONFUSION,
        ),
        PatternRule(
            name="sgml-declaration",
            pattern=r"<!(?!--)(?P<inner>[\s\S]*?)>",
            severity=Severity.HIGH,
            kind=ThreatKind.DELIMITER_CONFUSION,
        ),
    ),
)

DELIMITER_KEYWORDS: tuple[str, ...] = ("system", "ignore", "override")

NESTING_BRACKETS: dict[str, str] = {"(": ")", "[": "]", "{": "}", "<": ">"}


# ── Validator: blocked commands ──────────────────────────────────────────────

# (token, category).  Multi-word tokens match with any run of whitespace.
BLOCKED_COMMANDS: tuple[tuple[str, str], ...] = (
    # Privilege escalation
    ("sudo", "privilege-escalation"),
    ("su", "privilege-escalation"),
    ("doas", "privilege-escalation"),
    ("pkexec", "privilege-escalation"),
    # Destructive disk operations
    ("mkfs", "destructive"),
    ("format", "destructive"),
    ("fdisk", "destructive"),
    ("dd", "destructive"),
    ("shred", "destructive"),
    ("wipe", "destructive"),
    ("scrub", "destructive"),
    # Permission / ownership / account changes
    ("chmod", "permissions"),
    ("chown", "permissions"),
    ("chgrp", "permissions"),
    ("usermod", "permissions"),
    ("useradd", "permissions"),
    ("passwd", "permissions"),
    # Raw network listeners
    ("nc", "network-listener"),
    ("netcat", "network-listener"),
    ("ncat", "network-listener"),
    ("socat", "network-listener"),
    ("telnet", "network-listener"),
    # Interactive / reverse shells
    ("bash -i", "reverse-shell"),
    ("sh -i", "reverse-shell"),
    ("zsh -i", "reverse-shell"),
    # Process kill utilities
    ("kill", "process-kill"),
    ("killall", "process-kill"),
    ("pkill", "process-kill"),
    # Risky package installs
    ("pip install", "package-install"),
    ("pip3 install", "package-install"),
    ("npm install -g", "package-install"),
    # Windows-specific
    ("powershell -enc", "platform"),
    ("powershell -encodedcommand", "platform"),
    ("cmd /c", "platform"),
    ("cmd /k", "platform"),
    ("rundll32", "platform"),
    ("regsvr32", "platform"),
    ("msiexec", "platform"),
)

# Characters that extend a token; a blocked word must not touch them.
_TOKEN_CHARS = r"\w.\-"


def blocked_command_rule(token: str, category: str) -> PatternRule:
    """Compile a whole-token rule for ``token``.

    The token may be preceded by a path (``/usr/bin/sudo``) but never by
    another token character, and must not be followed by one, so
    ``pseudo-util`` or ``sudoku`` do not match ``sudo``.
    """
    body = r"\s+".join(re.escape(part) for part in token.split())
    pattern = rf"(?<![{_TOKEN_CHARS}]){body}(?![{_TOKEN_CHARS}/])"
    return PatternRule(
        name=f"{category}:{token}",
        pattern=pattern,
        severity=Severity.CRITICAL,
        kind=IssueKind.BLOCKED_COMMAND,
    )


BLOCKED_COMMAND_RULES = PatternTable(
    name="blocked-commands",
    version=POLICY_VERSION,
    rules=tuple(blocked_command_rule(tok, cat) for tok, cat in BLOCKED_COMMANDS),
)


# ── Validator: chaining, environment, credentials ────────────────────────────

# Longest operators first so "&&" is reported before "&" variants.
CHAINING_OPERATORS: tuple[str, ...] = ("$(", "&&", "||", ";", "\n", "|", "`", "$")

ENV_VAR_RULES = _table(
    "environment-access",
    IssueKind.ENVIRONMENT_ACCESS,
    Severity.MEDIUM,
    [
        ("braced", r"\$\{[a-z_][a-z0-9_]*\}"),
        ("posix", r"\$(?!\{|\()[a-z_][a-z0-9_]*"),
        ("windows", r"%[a-z_][a-z0-9_]*%"),
        ("powershell", r"\$env:[a-z_][a-z0-9_]*"),
    ],
)

CREDENTIAL_RULES = _table(
    "credential-exposure",
    IssueKind.CREDENTIAL_EXPOSURE,
    Severity.CRITICAL,
    [
        ("password-assignment", r"password\s*=\s*\S+"),
        ("token-assignment", r"token\s*=\s*\S+"),
        ("secret-assignment", r"secret\s*=\s*\S+"),
        ("key-assignment", r"key\s*=\s*[a-z0-9]{20,}"),
        ("api-key-assignment", r"api[_-]?key\s*[=:]\s*\S+"),
        ("auth-token-assignment", r"auth[_-]?token\s*=\s*\S+"),
        ("bearer-token", r"bearer\s+[a-z0-9\-_\.]{20,}"),
        ("openai-key", r"sk-[a-z0-9_\-]{20,}"),
        ("github-token", r"gh[pousr]_[a-z0-9_]{20,}"),
        ("github-pat", r"github_pat_[a-z0-9_]{20,}"),
        ("aws-access-key", r"akia[0-9a-z]{16}"),
        ("slack-token", r"xox[abposr]-[a-z0-9\-]{10,}"),
        ("private-key-pem", r"-----begin (rsa |ec |openssh )?private key-----"),
    ],
)

URL_PATTERN = re.compile(r"""(?:https?|ftp)://[^\s"'<>|;`]+""", re.IGNORECASE)
