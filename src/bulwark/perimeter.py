"""Perimeter sanitizer, the first-line filter for all inbound text.

Runs a fixed sequence of stages over every string before it may enter a
model prompt or a tool argument:

1. size check (short-circuits when exceeded)
2. NFKC unicode normalization
3. zero-width character stripping
4. bidi override detection (blocks)
5. homograph detection + substitution (does not block)
6. prompt-injection phrase detection (blocks)
7. delimiter-confusion detection (informational)
8. bracket nesting depth (informational)

Findings are returned as data; nothing here raises on hostile input.
"""

from __future__ import annotations

import logging
import unicodedata

from bulwark.audit import AuditLog
from bulwark.config import PerimeterConfig
from bulwark.models import SanitizationResult, Severity, ThreatFinding, ThreatKind
from bulwark.patterns import (
    BIDI_CHARS,
    DELIMITER_KEYWORDS,
    DELIMITER_RULES,
    HOMOGRAPHS,
    INJECTION_RULES,
    NESTING_BRACKETS,
    ZERO_WIDTH_CHARS,
    PatternTable,
)

logger = logging.getLogger(__name__)

_EVIDENCE_MAX = 50
# Transforms only delete or compose characters, so this is never reached
# in practice; it bounds the loop against a pathological table.
_MAX_CONVERGE_PASSES = 8


# ── Stage helpers ────────────────────────────────────────────────────────────


def _codepoint(ch: str) -> str:
    return f"U+{ord(ch):04X}"


def remove_zero_width_chars(text: str, chars: frozenset[str] = ZERO_WIDTH_CHARS) -> str:
    return "".join(ch for ch in text if ch not in chars)


def detect_bidi_chars(text: str, chars: frozenset[str] = BIDI_CHARS) -> list[str]:
    """Return the distinct bidi control code points in ``text`` (``U+XXXX``)."""
    return sorted({_codepoint(ch) for ch in text if ch in chars})


def detect_homographs(text: str, table: dict[str, str] = HOMOGRAPHS) -> list[tuple[str, str]]:
    """Return distinct ``(confusable, latin)`` pairs in order of appearance."""
    seen: dict[str, str] = {}
    for ch in text:
        if ch in table and ch not in seen:
            seen[ch] = table[ch]
    return list(seen.items())


def normalize_homographs(text: str, table: dict[str, str] = HOMOGRAPHS) -> str:
    return text.translate(str.maketrans(table))


def detect_prompt_injection(text: str, rules: PatternTable = INJECTION_RULES) -> list[dict]:
    return [
        {"rule": rule.name, "match": m.group(0)[:_EVIDENCE_MAX]}
        for rule, m in rules.matches(text)
    ]


def detect_delimiter_confusion(
    text: str,
    rules: PatternTable = DELIMITER_RULES,
    keywords: tuple[str, ...] = DELIMITER_KEYWORDS,
) -> list[dict]:
    """Find delimited regions whose inner content carries override keywords.

    Reports at most one region per delimiter type.
    """
    found: list[dict] = []
    for rule in rules.rules:
        for m in rule.regex.finditer(text):
            inner = (m.groupdict().get("inner") or "").lower()
            hit = next((kw for kw in keywords if kw in inner), None)
            if hit:
                found.append(
                    {"delimiter": rule.name, "keyword": hit, "match": m.group(0)[:_EVIDENCE_MAX]}
                )
                break
    return found


def nesting_depth(text: str, brackets: dict[str, str] = NESTING_BRACKETS) -> int:
    """Maximum bracket nesting depth, counting all bracket kinds together.

    Unbalanced closers never drive the running depth below zero.
    """
    closers = set(brackets.values())
    depth = max_depth = 0
    for ch in text:
        if ch in brackets:
            depth += 1
            if depth > max_depth:
                max_depth = depth
        elif ch in closers and depth > 0:
            depth -= 1
    return max_depth


# ── Sanitizer ────────────────────────────────────────────────────────────────


class PerimeterSanitizer:
    """Normalizes and inspects untrusted text.

    Pattern tables are injectable so tests and deployments can swap the
    policy set without changing the stage logic.
    """

    def __init__(
        self,
        config: PerimeterConfig | None = None,
        *,
        audit: AuditLog | None = None,
        injection_rules: PatternTable | None = None,
        delimiter_rules: PatternTable | None = None,
        homographs: dict[str, str] | None = None,
    ) -> None:
        self._config = config or PerimeterConfig()
        self._audit = audit
        rules = injection_rules or INJECTION_RULES
        self._injection_rules = rules.extended(
            self._config.extra_injection_patterns,
            severity=Severity.CRITICAL,
            kind=ThreatKind.PROMPT_INJECTION,
        )
        self._delimiter_rules = delimiter_rules or DELIMITER_RULES
        self._homographs = {**(homographs or HOMOGRAPHS), **self._config.extra_homographs}

    @property
    def config(self) -> PerimeterConfig:
        return self._config

    def _transform(self, text: str) -> str:
        cfg = self._config
        if cfg.normalize_unicode:
            text = unicodedata.normalize("NFKC", text)
        if cfg.remove_zero_width:
            text = remove_zero_width_chars(text)
        if cfg.detect_homographs:
            text = normalize_homographs(text, self._homographs)
        return text

    def _converge(self, text: str) -> str:
        """Re-apply the text transforms until the output is stable.

        Stripping a joiner or substituting a confusable can expose a new
        composable sequence; converging here keeps sanitize() idempotent.
        """
        for _ in range(_MAX_CONVERGE_PASSES):
            nxt = self._transform(text)
            if nxt == text:
                return text
            text = nxt
        return text

    def sanitize(self, text: str, source: str = "unknown") -> SanitizationResult:
        cfg = self._config
        actions: list[str] = []
        threats: list[ThreatFinding] = []
        blocked = False

        # 1. Size limit
        if len(text) > cfg.max_input_length:
            finding = ThreatFinding(
                kind=ThreatKind.SIZE_LIMIT,
                severity=Severity.HIGH,
                evidence=f"input length {len(text)} exceeds maximum {cfg.max_input_length}",
            )
            result = SanitizationResult(
                source=source,
                original_length=len(text),
                sanitized_text="",
                threats=(finding,),
                blocked=True,
            )
            self._log(result)
            return result

        current = text

        # 2. Unicode normalization
        if cfg.normalize_unicode:
            normalized = unicodedata.normalize("NFKC", current)
            if normalized != current:
                actions.append("unicode-normalized (NFKC)")
                current = normalized

        # 3. Zero-width stripping
        if cfg.remove_zero_width:
            stripped = remove_zero_width_chars(current)
            if stripped != current:
                actions.append(f"removed {len(current) - len(stripped)} zero-width chars")
                current = stripped

        # 4. Bidi overrides
        if cfg.detect_bidi:
            bidi = detect_bidi_chars(current)
            if bidi:
                threats.append(
                    ThreatFinding(
                        kind=ThreatKind.BIDI_OVERRIDE,
                        severity=Severity.CRITICAL,
                        evidence=", ".join(bidi),
                    )
                )
                blocked = True

        # 5. Homographs
        if cfg.detect_homographs:
            pairs = detect_homographs(current, self._homographs)
            for confusable, latin in pairs:
                threats.append(
                    ThreatFinding(
                        kind=ThreatKind.HOMOGRAPH,
                        severity=Severity.HIGH,
                        evidence=f"{_codepoint(confusable)} {confusable!r}",
                        normalized_form=latin,
                    )
                )
            if pairs:
                replaced = sum(1 for ch in current if ch in self._homographs)
                current = normalize_homographs(current, self._homographs)
                actions.append(f"replaced {replaced} homograph chars")

        current = self._converge(current)

        # 6. Prompt injection
        if cfg.detect_prompt_injection:
            for hit in detect_prompt_injection(current, self._injection_rules):
                threats.append(
                    ThreatFinding(
                        kind=ThreatKind.PROMPT_INJECTION,
                        severity=Severity.CRITICAL,
                        evidence=f"{hit['rule']}: {hit['match']}",
                    )
                )
                blocked = True

        # 7. Delimiter confusion
        if cfg.detect_delimiter_confusion:
            for hit in detect_delimiter_confusion(current, self._delimiter_rules):
                threats.append(
                    ThreatFinding(
                        kind=ThreatKind.DELIMITER_CONFUSION,
                        severity=Severity.HIGH,
                        evidence=f"{hit['delimiter']} containing {hit['keyword']!r}: {hit['match']}",
                    )
                )

        # 8. Nesting depth
        depth = nesting_depth(current)
        if depth > cfg.max_nesting_depth:
            threats.append(
                ThreatFinding(
                    kind=ThreatKind.NESTING_DEPTH,
                    severity=Severity.MEDIUM,
                    evidence=f"nesting depth {depth} exceeds {cfg.max_nesting_depth}",
                )
            )

        result = SanitizationResult(
            source=source,
            original_length=len(text),
            sanitized_text=current,
            actions_taken=tuple(actions),
            threats=tuple(threats),
            blocked=blocked,
        )
        self._log(result)
        return result

    def _log(self, result: SanitizationResult) -> None:
        if result.blocked:
            outcome = "blocked"
        elif result.threats:
            outcome = "flagged"
        else:
            outcome = "sanitized"
        detail = {
            "source": result.source,
            "threats": len(result.threats),
            "kinds": sorted({t.kind.value for t in result.threats}),
            "actions": list(result.actions_taken),
        }
        if self._audit is not None:
            self._audit.record("perimeter", outcome, detail)
        else:
            level = logging.INFO if outcome == "sanitized" else logging.WARNING
            logger.log(level, "perimeter %s: %s", outcome, detail)
